"""
Settlement events and application links.

A SettlementEvent records one reduction of a transaction's
balance under an idempotency key, so a retried settlement is
recognised instead of applied twice.

An ApplicationLink ties an amount of a payment or credit to
the invoice/bill it settles. It is the only evidence used to
decide whether a credit has been applied and what must be
restored when a payment or credit is deleted.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, Numeric, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_core.models.base import Base


class SettlementEvent(Base):
    __tablename__ = "settlement_events"

    id: Mapped[int] = mapped_column(primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(
        String(150), unique=True, nullable=False, index=True
    )
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )

    def __repr__(self) -> str:
        return f"<SettlementEvent {self.idempotency_key} {self.amount}>"


class ApplicationLink(Base):
    __tablename__ = "application_links"

    id: Mapped[int] = mapped_column(primary_key=True)
    idempotency_key: Mapped[str] = mapped_column(
        String(150), unique=True, nullable=False, index=True
    )
    source_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False, index=True
    )
    target_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False, index=True
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    # The settlement event this link produced on the target
    settlement_key: Mapped[str] = mapped_column(String(150), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )

    source: Mapped["Transaction"] = relationship(foreign_keys=[source_id])
    target: Mapped["Transaction"] = relationship(foreign_keys=[target_id])

    def __repr__(self) -> str:
        return (
            f"<ApplicationLink {self.source_id} -> {self.target_id} "
            f"{self.amount}>"
        )
