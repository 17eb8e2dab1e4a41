"""Business logic services."""

from ledger_core.services.ledger_service import LedgerService
from ledger_core.services.transaction_service import TransactionService
from ledger_core.services.credit_service import CreditService
from ledger_core.services.recurring_service import RecurringService, RecurringScheduler
from ledger_core.services.reconciliation_service import ReconciliationService
from ledger_core.services.integrity_service import IntegrityService
from ledger_core.services.operations import LedgerOperations

__all__ = [
    "LedgerService",
    "TransactionService",
    "CreditService",
    "RecurringService",
    "RecurringScheduler",
    "ReconciliationService",
    "IntegrityService",
    "LedgerOperations",
]
