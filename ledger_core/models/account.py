"""
Ledger account model (chart of accounts).

Every account in the books — bank, receivables, payables,
income, expenses — is a row here. Entries are posted against
these accounts, and the running balance is maintained only
by the LedgerService.
"""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import String, Boolean, Date, DateTime, Numeric, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_core.models.base import Base
from ledger_core.models.enums import AccountType, DEBIT_NORMAL_TYPES


class Account(Base):
    """
    A single account in the chart of accounts.

    Once referenced by an entry, an account is never deleted,
    only deactivated via is_active=False.
    """

    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(
        String(20), unique=True, nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    account_type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType, name="account_type_enum"),
        nullable=False,
    )
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default="USD"
    )
    balance: Mapped[Decimal] = mapped_column(
        Numeric(19, 4), nullable=False, default=Decimal("0")
    )
    opening_balance: Mapped[Decimal] = mapped_column(
        Numeric(19, 4), nullable=False, default=Decimal("0")
    )
    last_reconciled_date: Mapped[date | None] = mapped_column(
        Date, nullable=True
    )
    last_reconciled_balance: Mapped[Decimal | None] = mapped_column(
        Numeric(19, 4), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )

    entries: Mapped[list["LedgerEntry"]] = relationship(
        back_populates="account"
    )

    @property
    def is_debit_normal(self) -> bool:
        return self.account_type in DEBIT_NORMAL_TYPES

    def signed_amount(self, debit: Decimal, credit: Decimal) -> Decimal:
        """Effect of one entry on this account's balance."""
        if self.is_debit_normal:
            return Decimal(debit) - Decimal(credit)
        return Decimal(credit) - Decimal(debit)

    def __repr__(self) -> str:
        return f"<Account {self.code} ({self.account_type.value})>"
