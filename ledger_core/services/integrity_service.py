"""
Integrity service — explicit, audited consistency checks.

verify() rebuilds every derived value from the records that
define it: account balances from ledger entries, invoice and
bill balances from settlement events, credit balances from
application links. repair() writes the rebuilt values back
and records one audit row per fix. Neither runs implicitly.
"""

import logging
from decimal import Decimal

from sqlalchemy import select, func
from sqlalchemy.orm import Session

from ledger_core.models.account import Account
from ledger_core.models.application_link import ApplicationLink, SettlementEvent
from ledger_core.models.enums import (
    TransactionStatus,
    SETTLEABLE_TYPES,
    CREDIT_TYPES,
)
from ledger_core.models.transaction import Transaction
from ledger_core.money import ZERO, money_equal, quantize, to_minor_units
from ledger_core.schemas.ledger import (
    RepairResult,
    TransactionDrift,
    VerificationReport,
)
from ledger_core.services.audit_service import AuditEvent, AuditService
from ledger_core.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

SKIPPED_STATUSES = (TransactionStatus.DRAFT, TransactionStatus.VOIDED)


def expected_status(txn: Transaction, balance: Decimal) -> TransactionStatus:
    units = to_minor_units(balance)
    if txn.transaction_type in SETTLEABLE_TYPES:
        if units == 0:
            return TransactionStatus.COMPLETED
        if units == to_minor_units(txn.amount):
            return TransactionStatus.OPEN
        return TransactionStatus.PARTIAL
    if txn.transaction_type in CREDIT_TYPES:
        if units == 0:
            return TransactionStatus.APPLIED_CREDIT
        return TransactionStatus.UNAPPLIED_CREDIT
    return TransactionStatus.COMPLETED


class IntegrityService:

    def __init__(self, db: Session):
        self.db = db
        self.ledger_service = LedgerService(db)
        self.audit = AuditService(db)

    def _sums_by(self, column, amount_column) -> dict[int, Decimal]:
        rows = self.db.execute(
            select(column, func.sum(amount_column)).group_by(column)
        ).all()
        return {key: quantize(Decimal(str(total))) for key, total in rows}

    def transaction_drift(self) -> list[TransactionDrift]:
        settled = self._sums_by(SettlementEvent.transaction_id, SettlementEvent.amount)
        applied = self._sums_by(ApplicationLink.source_id, ApplicationLink.amount)

        drift = []
        transactions = self.db.execute(
            select(Transaction)
            .where(Transaction.status.not_in(SKIPPED_STATUSES))
            .order_by(Transaction.id)
        ).scalars()
        for txn in transactions:
            amount = quantize(txn.amount)
            if txn.transaction_type in SETTLEABLE_TYPES:
                expected = amount - settled.get(txn.id, ZERO)
            elif txn.transaction_type in CREDIT_TYPES:
                expected = amount - applied.get(txn.id, ZERO)
            else:
                expected = ZERO
            status = expected_status(txn, expected)

            if not money_equal(txn.balance, expected) or txn.status != status:
                drift.append(TransactionDrift(
                    transaction_id=txn.id,
                    reference=txn.reference,
                    stored_balance=quantize(txn.balance),
                    expected_balance=expected,
                    stored_status=txn.status,
                    expected_status=status,
                ))
        return drift

    def verify(self) -> VerificationReport:
        ledger = self.ledger_service.check_integrity()
        drift = self.transaction_drift()
        report = VerificationReport(
            ledger=ledger,
            transaction_drift=drift,
            is_consistent=ledger.is_balanced and not ledger.drifted_accounts and not drift,
        )
        if not report.is_consistent:
            logger.warning(
                "Integrity check failed: %d unbalanced transactions, "
                "%d drifted accounts, %d drifted documents",
                len(ledger.unbalanced_transaction_ids),
                len(ledger.drifted_accounts),
                len(drift),
            )
        return report

    def repair(self, dry_run: bool = True) -> RepairResult:
        """
        Write rebuilt balances and statuses back.

        With dry_run=True (the default) nothing is changed and
        the result lists what would be fixed.
        """
        report = self.verify()
        result = RepairResult(
            dry_run=dry_run,
            accounts_fixed=[d.account_id for d in report.ledger.drifted_accounts],
            transactions_fixed=[d.transaction_id for d in report.transaction_drift],
            unbalanced_transaction_ids=report.ledger.unbalanced_transaction_ids,
        )
        if dry_run:
            return result

        for drift in report.ledger.drifted_accounts:
            account = self.db.execute(
                select(Account).where(Account.id == drift.account_id).with_for_update()
            ).scalar_one()
            account.balance = drift.derived_balance
            self.audit.record(
                AuditEvent.INTEGRITY_REPAIR, "account", account.id,
                stored_balance=drift.stored_balance,
                derived_balance=drift.derived_balance,
            )

        for drift in report.transaction_drift:
            txn = self.db.execute(
                select(Transaction)
                .where(Transaction.id == drift.transaction_id)
                .with_for_update()
            ).scalar_one()
            txn.balance = drift.expected_balance
            txn.status = drift.expected_status
            self.audit.record(
                AuditEvent.INTEGRITY_REPAIR, "transaction", txn.id,
                stored_balance=drift.stored_balance,
                expected_balance=drift.expected_balance,
                stored_status=drift.stored_status.value,
                expected_status=drift.expected_status.value,
            )

        self.db.flush()
        logger.info(
            "Repaired %d accounts and %d documents",
            len(result.accounts_fixed), len(result.transactions_fixed),
        )
        return result
