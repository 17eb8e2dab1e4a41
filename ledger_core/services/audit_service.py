"""
Audit service — append-only record of state changes.

Every service that changes balances or links writes an audit
row in the same unit of work, so the record commits or rolls
back together with the change it describes.
"""

import json
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_core.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


class AuditEvent:
    """Constants for audit event types."""
    ACCOUNT_CREATED = "ACCOUNT_CREATED"
    ENTRIES_POSTED = "ENTRIES_POSTED"
    ENTRIES_UNPOSTED = "ENTRIES_UNPOSTED"
    TRANSACTION_CREATED = "TRANSACTION_CREATED"
    TRANSACTION_FINALIZED = "TRANSACTION_FINALIZED"
    TRANSACTION_SETTLED = "TRANSACTION_SETTLED"
    TRANSACTION_UNSETTLED = "TRANSACTION_UNSETTLED"
    TRANSACTION_VOIDED = "TRANSACTION_VOIDED"
    TRANSACTION_DELETED = "TRANSACTION_DELETED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    CREDIT_APPLIED = "CREDIT_APPLIED"
    APPLICATION_REVERSED = "APPLICATION_REVERSED"
    PAYMENT_DELETED = "PAYMENT_DELETED"
    RECURRING_INVOICE_GENERATED = "RECURRING_INVOICE_GENERATED"
    RECONCILIATION_STARTED = "RECONCILIATION_STARTED"
    RECONCILIATION_COMPLETED = "RECONCILIATION_COMPLETED"
    INTEGRITY_REPAIR = "INTEGRITY_REPAIR"


class AuditService:

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        event_type: str,
        entity_type: str,
        entity_id: int | None = None,
        **details,
    ) -> AuditLog:
        entry = AuditLog(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            details=json.dumps(details, default=str, sort_keys=True),
        )
        self.db.add(entry)
        logger.debug("audit %s %s#%s", event_type, entity_type, entity_id)
        return entry

    def history(self, entity_type: str, entity_id: int) -> list[AuditLog]:
        """All audit rows for one entity, oldest first."""
        rows = self.db.execute(
            select(AuditLog)
            .where(
                AuditLog.entity_type == entity_type,
                AuditLog.entity_id == entity_id,
            )
            .order_by(AuditLog.id)
        ).scalars().all()
        return list(rows)
