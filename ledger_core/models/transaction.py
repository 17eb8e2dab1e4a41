"""
Transaction and line item models.

A transaction is a business document (invoice, bill, payment,
credit, journal entry, ...) that owns a balanced set of
ledger entries. `amount` is the original total and never
changes after posting; `balance` is the remaining unsettled
(or, for credits, unapplied) part of it.

Only the TransactionService changes `balance` and `status`.
"""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    String, Date, DateTime, Numeric, ForeignKey, UniqueConstraint,
    Enum as SAEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_core.models.base import Base
from ledger_core.models.enums import (
    TransactionType,
    TransactionStatus,
    SETTLEABLE_TYPES,
)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint(
            "transaction_type", "reference",
            name="uq_transactions_type_reference",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    transaction_type: Mapped[TransactionType] = mapped_column(
        SAEnum(
            TransactionType,
            name="transaction_type_enum",
            create_constraint=True,
        ),
        nullable=False,
        index=True,
    )
    reference: Mapped[str] = mapped_column(String(50), nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(
        String(100), unique=True, nullable=True, index=True
    )
    status: Mapped[TransactionStatus] = mapped_column(
        SAEnum(
            TransactionStatus,
            name="transaction_status_enum",
            create_constraint=True,
        ),
        nullable=False,
        default=TransactionStatus.DRAFT,
    )
    transaction_date: Mapped[date] = mapped_column(
        "date", Date, nullable=False
    )
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    description: Mapped[str] = mapped_column(
        String(255), nullable=False, default=""
    )
    amount: Mapped[Decimal] = mapped_column(
        Numeric(19, 4), nullable=False
    )
    balance: Mapped[Decimal] = mapped_column(
        Numeric(19, 4), nullable=False
    )
    contact_id: Mapped[int | None] = mapped_column(
        ForeignKey("contacts.id"), nullable=True, index=True
    )
    currency: Mapped[str] = mapped_column(
        String(3), nullable=False, default="USD"
    )
    exchange_rate: Mapped[Decimal] = mapped_column(
        Numeric(19, 8), nullable=False, default=Decimal("1")
    )
    # Set on an overpayment credit: the payment it was spawned from
    source_transaction_id: Mapped[int | None] = mapped_column(
        ForeignKey("transactions.id"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )

    contact: Mapped["Contact | None"] = relationship()
    line_items: Mapped[list["LineItem"]] = relationship(
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="LineItem.id",
    )
    source_transaction: Mapped["Transaction | None"] = relationship(
        remote_side=[id]
    )

    def is_overdue(self, today: date) -> bool:
        """An open or partial invoice/bill past its due date."""
        return (
            self.transaction_type in SETTLEABLE_TYPES
            and self.status in (TransactionStatus.OPEN, TransactionStatus.PARTIAL)
            and self.due_date is not None
            and self.due_date < today
        )

    def __repr__(self) -> str:
        return (
            f"<Transaction {self.transaction_type.value} #{self.reference} "
            f"{self.amount} {self.currency} ({self.status.value})>"
        )


class LineItem(Base):
    __tablename__ = "line_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False, index=True
    )
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(
        Numeric(19, 4), nullable=False, default=Decimal("1")
    )
    unit_price: Mapped[Decimal] = mapped_column(
        Numeric(19, 4), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    tax_account_id: Mapped[int | None] = mapped_column(
        ForeignKey("accounts.id"), nullable=True
    )
    tax_amount: Mapped[Decimal] = mapped_column(
        Numeric(19, 4), nullable=False, default=Decimal("0")
    )

    transaction: Mapped["Transaction"] = relationship(
        back_populates="line_items"
    )

    def __repr__(self) -> str:
        return f"<LineItem {self.description} {self.amount}>"
