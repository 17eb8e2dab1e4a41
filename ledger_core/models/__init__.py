"""
Database models package.

All models must be imported here so that Alembic can discover
them through Base.metadata when generating migrations.
"""

from ledger_core.models.base import Base
from ledger_core.models.enums import (
    AccountType,
    ContactType,
    TransactionType,
    TransactionStatus,
    Frequency,
    FrequencyUnit,
    TemplateStatus,
    RunStatus,
    ReconciliationStatus,
)
from ledger_core.models.audit_log import AuditLog
from ledger_core.models.account import Account
from ledger_core.models.contact import Contact
from ledger_core.models.transaction import Transaction, LineItem
from ledger_core.models.ledger_entry import LedgerEntry
from ledger_core.models.application_link import SettlementEvent, ApplicationLink
from ledger_core.models.recurring import (
    RecurringTemplate,
    RecurringLine,
    RecurringHistory,
)
from ledger_core.models.reconciliation import Reconciliation, ReconciliationItem

__all__ = [
    "Base",
    "AccountType",
    "ContactType",
    "TransactionType",
    "TransactionStatus",
    "Frequency",
    "FrequencyUnit",
    "TemplateStatus",
    "RunStatus",
    "ReconciliationStatus",
    "AuditLog",
    "Account",
    "Contact",
    "Transaction",
    "LineItem",
    "LedgerEntry",
    "SettlementEvent",
    "ApplicationLink",
    "RecurringTemplate",
    "RecurringLine",
    "RecurringHistory",
    "Reconciliation",
    "ReconciliationItem",
]
