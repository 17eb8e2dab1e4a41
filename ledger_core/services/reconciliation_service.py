"""
Reconciliation service — matching ledger entries to bank statements.

Sessions chain per account: a new session opens at the
statement ending balance of the last completed one, or at the
account's opening balance when there is none. A session only
completes when opening balance plus cleared entries equals the
statement ending balance exactly.

Reads the ledger; never posts to it.
"""

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select, delete
from sqlalchemy.orm import Session

from ledger_core.exceptions import (
    InvalidAccountError,
    InvalidStateError,
    NotFoundError,
    ReconciliationMismatchError,
)
from ledger_core.models.account import Account
from ledger_core.models.enums import ReconciliationStatus
from ledger_core.models.ledger_entry import LedgerEntry
from ledger_core.models.reconciliation import Reconciliation, ReconciliationItem
from ledger_core.money import ZERO, quantize, to_minor_units
from ledger_core.schemas.reconciliation import ReconciliationStart, ReconciliationSummary
from ledger_core.services.audit_service import AuditEvent, AuditService
from ledger_core.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)


class ReconciliationService:

    def __init__(self, db: Session):
        self.db = db
        self.ledger_service = LedgerService(db)
        self.audit = AuditService(db)

    # --- Sessions ---

    def get_session(self, session_id: int) -> Reconciliation:
        session = self.db.get(Reconciliation, session_id)
        if not session:
            raise NotFoundError(f"Reconciliation {session_id} not found")
        return session

    def get_in_progress(self, account_id: int) -> Reconciliation | None:
        return self.db.execute(
            select(Reconciliation)
            .where(
                Reconciliation.account_id == account_id,
                Reconciliation.status == ReconciliationStatus.IN_PROGRESS,
            )
            .order_by(Reconciliation.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def last_completed(self, account_id: int) -> Reconciliation | None:
        return self.db.execute(
            select(Reconciliation)
            .where(
                Reconciliation.account_id == account_id,
                Reconciliation.status == ReconciliationStatus.COMPLETED,
            )
            .order_by(Reconciliation.completed_at.desc(), Reconciliation.id.desc())
            .limit(1)
        ).scalar_one_or_none()

    def history(self, account_id: int) -> list[Reconciliation]:
        """Completed sessions of an account, newest first."""
        rows = self.db.execute(
            select(Reconciliation)
            .where(
                Reconciliation.account_id == account_id,
                Reconciliation.status == ReconciliationStatus.COMPLETED,
            )
            .order_by(Reconciliation.completed_at.desc(), Reconciliation.id.desc())
        ).scalars().all()
        return list(rows)

    def start(self, request: ReconciliationStart) -> Reconciliation:
        """
        Open a session for an account.

        Only one session per account may be in progress.
        """
        account = self.ledger_service.get_account(request.account_id)
        if not account.is_active:
            raise InvalidAccountError(f"Account {account.code} is not active")
        if self.get_in_progress(account.id):
            raise InvalidStateError(
                f"Account {account.code} already has a reconciliation in progress"
            )

        previous = self.last_completed(account.id)
        opening = (
            previous.statement_ending_balance if previous
            else account.opening_balance
        )
        session = Reconciliation(
            account_id=account.id,
            statement_date=request.statement_date,
            statement_ending_balance=quantize(request.statement_ending_balance),
            opening_balance=quantize(opening),
            status=ReconciliationStatus.IN_PROGRESS,
            previous_reconciliation_id=previous.id if previous else None,
        )
        self.db.add(session)
        self.db.flush()

        self.audit.record(
            AuditEvent.RECONCILIATION_STARTED, "reconciliation", session.id,
            account_id=account.id, opening_balance=session.opening_balance,
            statement_ending_balance=session.statement_ending_balance,
        )
        logger.info(
            "Started reconciliation %s for %s at %s",
            session.id, account.code, session.opening_balance,
        )
        return session

    # --- Matching ---

    def _cleared_elsewhere(self, account_id: int):
        """Entry ids cleared by completed sessions of the account."""
        return (
            select(ReconciliationItem.ledger_entry_id)
            .join(Reconciliation)
            .where(
                Reconciliation.account_id == account_id,
                Reconciliation.status == ReconciliationStatus.COMPLETED,
                ReconciliationItem.is_cleared.is_(True),
            )
        )

    def get_reconcilable_entries(self, session_id: int) -> list[LedgerEntry]:
        """
        Entries that may be matched in a session: on the account,
        dated on or before the statement date, and not already
        cleared by a completed session.
        """
        session = self.get_session(session_id)
        rows = self.db.execute(
            select(LedgerEntry)
            .where(
                LedgerEntry.account_id == session.account_id,
                LedgerEntry.entry_date <= session.statement_date,
                LedgerEntry.id.not_in(self._cleared_elsewhere(session.account_id)),
            )
            .order_by(LedgerEntry.entry_date, LedgerEntry.id)
        ).scalars().all()
        return list(rows)

    def mark_cleared(
        self, session_id: int, entry_ids: list[int], is_cleared: bool = True
    ) -> Reconciliation:
        """Set the cleared flag of entries, replacing any earlier mark."""
        session = self._in_progress(session_id)
        if not entry_ids:
            return session

        allowed = {e.id for e in self.get_reconcilable_entries(session.id)}
        unknown = set(entry_ids) - allowed
        if unknown:
            raise InvalidStateError(
                f"Entries {sorted(unknown)} cannot be reconciled in session {session.id}"
            )

        self.db.execute(
            delete(ReconciliationItem).where(
                ReconciliationItem.reconciliation_id == session.id,
                ReconciliationItem.ledger_entry_id.in_(entry_ids),
            )
        )
        for entry_id in sorted(set(entry_ids)):
            self.db.add(ReconciliationItem(
                reconciliation_id=session.id,
                ledger_entry_id=entry_id,
                is_cleared=is_cleared,
            ))
        self.db.flush()
        self.db.expire(session, ["items"])
        return session

    def cleared_total(self, session: Reconciliation) -> Decimal:
        """Net effect of the cleared entries on the account balance."""
        account = self.db.get(Account, session.account_id)
        entries = self.db.execute(
            select(LedgerEntry)
            .join(ReconciliationItem, ReconciliationItem.ledger_entry_id == LedgerEntry.id)
            .where(
                ReconciliationItem.reconciliation_id == session.id,
                ReconciliationItem.is_cleared.is_(True),
            )
        ).scalars().all()
        return quantize(sum(
            (account.signed_amount(e.debit, e.credit) for e in entries), ZERO
        ))

    def summary(self, session_id: int) -> ReconciliationSummary:
        session = self.get_session(session_id)
        cleared = self.cleared_total(session)
        opening = quantize(session.opening_balance)
        ending = quantize(session.statement_ending_balance)
        return ReconciliationSummary(
            reconciliation_id=session.id,
            opening_balance=opening,
            cleared_total=cleared,
            statement_ending_balance=ending,
            difference=ending - (opening + cleared),
        )

    def difference(self, session_id: int) -> Decimal:
        return self.summary(session_id).difference

    # --- Completion ---

    def _in_progress(self, session_id: int) -> Reconciliation:
        session = self.get_session(session_id)
        if session.status != ReconciliationStatus.IN_PROGRESS:
            raise InvalidStateError(
                f"Reconciliation {session.id} is {session.status.value}"
            )
        return session

    def _lock_account(self, account_id: int) -> Account:
        return self.db.execute(
            select(Account).where(Account.id == account_id).with_for_update()
        ).scalar_one()

    def complete(self, session_id: int) -> Reconciliation:
        """
        Complete a session whose cleared entries tie out.

        Raises ReconciliationMismatchError otherwise; nothing is
        forced through.
        """
        session = self._in_progress(session_id)
        account = self._lock_account(session.account_id)
        summary = self.summary(session.id)

        if to_minor_units(summary.difference) != 0:
            logger.warning(
                "Reconciliation %s does not tie out: difference %s",
                session.id, summary.difference,
            )
            raise ReconciliationMismatchError(
                f"Reconciliation does not balance: opening={summary.opening_balance}, "
                f"cleared={summary.cleared_total}, "
                f"statement={summary.statement_ending_balance}, "
                f"difference={summary.difference}"
            )

        session.status = ReconciliationStatus.COMPLETED
        session.completed_at = datetime.utcnow()
        account.last_reconciled_date = session.statement_date
        account.last_reconciled_balance = session.statement_ending_balance
        self.db.flush()

        self.audit.record(
            AuditEvent.RECONCILIATION_COMPLETED, "reconciliation", session.id,
            account_id=account.id,
            statement_ending_balance=session.statement_ending_balance,
        )
        logger.info(
            "Completed reconciliation %s for %s at %s",
            session.id, account.code, session.statement_ending_balance,
        )
        return session

    def undo(self, session_id: int) -> Reconciliation:
        """
        Reopen the most recent completed session of an account.

        The account's last-reconciled stamp falls back to the
        previous completed session, if any.
        """
        session = self.get_session(session_id)
        if session.status != ReconciliationStatus.COMPLETED:
            raise InvalidStateError(f"Reconciliation {session.id} is not completed")
        latest = self.last_completed(session.account_id)
        if latest.id != session.id:
            raise InvalidStateError(
                "Cannot undo: there are newer completed reconciliations"
            )
        if self.get_in_progress(session.account_id):
            raise InvalidStateError(
                "Cannot undo while another reconciliation is in progress"
            )

        account = self._lock_account(session.account_id)
        session.status = ReconciliationStatus.IN_PROGRESS
        session.completed_at = None
        self.db.flush()

        previous = self.last_completed(account.id)
        account.last_reconciled_date = previous.statement_date if previous else None
        account.last_reconciled_balance = (
            previous.statement_ending_balance if previous else None
        )
        self.db.flush()
        logger.info("Reopened reconciliation %s", session.id)
        return session
