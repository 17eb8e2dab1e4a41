"""
Ledger entry model.

Each entry is one debit or credit line against a single
account, owned by exactly one transaction. For any
transaction the sum of debits equals the sum of credits.
Entries are removed only as a whole set, when their
transaction is unposted.
"""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import String, Date, DateTime, Numeric, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_core.models.base import Base


class LedgerEntry(Base):
    """
    One half (or one leg) of a balanced posting.

    By convention exactly one of debit/credit is nonzero.
    The balance law is enforced by the LedgerService, not by
    the model — the model is just the data structure.
    """

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False, index=True
    )
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"), nullable=False, index=True
    )
    debit: Mapped[Decimal] = mapped_column(
        Numeric(19, 4), nullable=False, default=Decimal("0")
    )
    credit: Mapped[Decimal] = mapped_column(
        Numeric(19, 4), nullable=False, default=Decimal("0")
    )
    description: Mapped[str] = mapped_column(
        String(255), nullable=False, default=""
    )
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )

    account: Mapped["Account"] = relationship(back_populates="entries")

    def __repr__(self) -> str:
        side = f"DR {self.debit}" if self.debit else f"CR {self.credit}"
        return f"<LedgerEntry txn={self.transaction_id} acct={self.account_id} {side}>"
