"""
Reconciliation sessions.

Sessions form an append-only chain per account: each new
session opens at the ending balance of the previous completed
one. Items record which ledger entries were matched (cleared)
against the bank statement.
"""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean, Date, DateTime, Numeric, ForeignKey, UniqueConstraint,
    Enum as SAEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_core.models.base import Base
from ledger_core.models.enums import ReconciliationStatus


class Reconciliation(Base):
    __tablename__ = "reconciliations"

    id: Mapped[int] = mapped_column(primary_key=True)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"), nullable=False, index=True
    )
    statement_date: Mapped[date] = mapped_column(Date, nullable=False)
    statement_ending_balance: Mapped[Decimal] = mapped_column(
        Numeric(19, 4), nullable=False
    )
    opening_balance: Mapped[Decimal] = mapped_column(
        Numeric(19, 4), nullable=False
    )
    status: Mapped[ReconciliationStatus] = mapped_column(
        SAEnum(
            ReconciliationStatus,
            name="reconciliation_status_enum",
            create_constraint=True,
        ),
        nullable=False,
        default=ReconciliationStatus.IN_PROGRESS,
    )
    previous_reconciliation_id: Mapped[int | None] = mapped_column(
        ForeignKey("reconciliations.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )

    items: Mapped[list["ReconciliationItem"]] = relationship(
        back_populates="reconciliation",
        cascade="all, delete-orphan",
    )
    previous: Mapped["Reconciliation | None"] = relationship(
        remote_side=[id]
    )

    def __repr__(self) -> str:
        return (
            f"<Reconciliation account={self.account_id} "
            f"{self.statement_date} ({self.status.value})>"
        )


class ReconciliationItem(Base):
    __tablename__ = "reconciliation_items"
    __table_args__ = (
        UniqueConstraint(
            "reconciliation_id", "ledger_entry_id",
            name="uq_reconciliation_items_entry",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    reconciliation_id: Mapped[int] = mapped_column(
        ForeignKey("reconciliations.id"), nullable=False, index=True
    )
    ledger_entry_id: Mapped[int] = mapped_column(
        ForeignKey("ledger_entries.id"), nullable=False, index=True
    )
    is_cleared: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )

    reconciliation: Mapped["Reconciliation"] = relationship(
        back_populates="items"
    )
