"""
Audit log model.

Records every state change the engine makes: postings,
settlements, credit applications and reversals, cascade
deletes, reconciliations and administrative repairs. In
bookkeeping, auditability is not optional.
"""

from datetime import datetime

from sqlalchemy import String, Integer, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column

from ledger_core.models.base import Base


class AuditLog(Base):
    """
    Immutable record of a system event.

    Like ledger entries of a live transaction, audit logs are
    append-only. You never update or delete an audit record.
    """

    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    details: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
