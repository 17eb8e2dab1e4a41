"""
Tests for bank reconciliation sessions.
"""

from datetime import date
from decimal import Decimal

import pytest

from ledger_core.exceptions import (
    DanglingReferenceError,
    InvalidStateError,
    ReconciliationMismatchError,
)
from ledger_core.models import AccountType, ReconciliationStatus, TransactionType
from ledger_core.schemas.ledger import AccountCreate
from ledger_core.schemas.reconciliation import ReconciliationStart
from ledger_core.schemas.transaction import (
    AccountMapping,
    LineItemCreate,
    TransactionCreate,
)
from ledger_core.services.ledger_service import LedgerService
from ledger_core.services.reconciliation_service import ReconciliationService
from ledger_core.services.transaction_service import TransactionService


@pytest.fixture
def checking(db_session, chart):
    account = LedgerService(db_session).create_account(AccountCreate(
        code="1050",
        name="Checking",
        account_type=AccountType.BANK,
        opening_balance=Decimal("1000.00"),
    ))
    db_session.commit()
    return account


def bank_line(db_session, chart, checking, transaction_type, amount, on):
    """Helper: a deposit or expense through the checking account; returns its bank entry."""
    line_account = chart.income if transaction_type == TransactionType.DEPOSIT else chart.expense
    txn = TransactionService(db_session).create(TransactionCreate(
        transaction_type=transaction_type,
        transaction_date=on,
        line_items=[LineItemCreate(
            description=transaction_type.value,
            unit_price=Decimal(amount),
            account_id=line_account.id,
        )],
        accounts=AccountMapping(bank_account_id=checking.id),
    ))
    entries = LedgerService(db_session).get_entries_by_transaction(txn.id)
    return next(e for e in entries if e.account_id == checking.id)


@pytest.fixture
def statement(db_session, chart, checking):
    """Deposit and expense in March, one deposit after the statement date."""
    entries = {
        "deposit": bank_line(
            db_session, chart, checking, TransactionType.DEPOSIT, "4000.00", date(2024, 3, 1)
        ),
        "expense": bank_line(
            db_session, chart, checking, TransactionType.EXPENSE, "250.00", date(2024, 3, 20)
        ),
        "later": bank_line(
            db_session, chart, checking, TransactionType.DEPOSIT, "75.00", date(2024, 4, 5)
        ),
    }
    db_session.commit()
    return entries


def start(db_session, checking, ending, on=date(2024, 3, 31)):
    return ReconciliationService(db_session).start(ReconciliationStart(
        account_id=checking.id,
        statement_date=on,
        statement_ending_balance=Decimal(ending),
    ))


# --- Start Tests ---

class TestStart:

    def test_first_session_opens_at_opening_balance(self, db_session, checking):
        session = start(db_session, checking, "5000.00")

        assert session.status == ReconciliationStatus.IN_PROGRESS
        assert session.opening_balance == Decimal("1000.00")
        assert session.previous_reconciliation_id is None

    def test_one_session_in_progress_per_account(self, db_session, checking):
        start(db_session, checking, "5000.00")

        with pytest.raises(InvalidStateError, match="in progress"):
            start(db_session, checking, "6000.00")

    def test_reconcilable_entries_stop_at_statement_date(
        self, db_session, checking, statement
    ):
        session = start(db_session, checking, "5000.00")

        entries = ReconciliationService(db_session).get_reconcilable_entries(session.id)

        assert [e.id for e in entries] == [
            statement["deposit"].id, statement["expense"].id
        ]


# --- Matching Tests ---

class TestMarkCleared:

    def test_summary_tracks_cleared_entries(self, db_session, checking, statement):
        service = ReconciliationService(db_session)
        session = start(db_session, checking, "5000.00")

        service.mark_cleared(session.id, [statement["deposit"].id, statement["expense"].id])
        summary = service.summary(session.id)

        assert summary.opening_balance == Decimal("1000.00")
        assert summary.cleared_total == Decimal("3750.00")
        assert summary.difference == Decimal("250.00")

    def test_unmarking_replaces_earlier_mark(self, db_session, checking, statement):
        service = ReconciliationService(db_session)
        session = start(db_session, checking, "5000.00")
        service.mark_cleared(session.id, [statement["expense"].id])

        service.mark_cleared(session.id, [statement["expense"].id], is_cleared=False)

        assert service.cleared_total(session) == Decimal("0")
        assert service.difference(session.id) == Decimal("4000.00")

    def test_entry_after_statement_date_rejected(self, db_session, checking, statement):
        service = ReconciliationService(db_session)
        session = start(db_session, checking, "5000.00")

        with pytest.raises(InvalidStateError, match="cannot be reconciled"):
            service.mark_cleared(session.id, [statement["later"].id])

    def test_entry_of_other_account_rejected(self, db_session, chart, checking, statement):
        service = ReconciliationService(db_session)
        session = start(db_session, checking, "5000.00")
        income_entry = next(
            e for e in LedgerService(db_session).get_entries_by_transaction(
                statement["deposit"].transaction_id
            )
            if e.account_id == chart.income.id
        )

        with pytest.raises(InvalidStateError):
            service.mark_cleared(session.id, [income_entry.id])


# --- Completion Tests ---

class TestComplete:

    def test_balanced_session_completes_and_chains(self, db_session, checking, statement):
        service = ReconciliationService(db_session)
        first = start(db_session, checking, "5000.00")
        service.mark_cleared(first.id, [statement["deposit"].id])

        service.complete(first.id)
        db_session.commit()

        assert first.status == ReconciliationStatus.COMPLETED
        assert first.completed_at is not None
        assert checking.last_reconciled_date == date(2024, 3, 31)
        assert checking.last_reconciled_balance == Decimal("5000.00")

        second = start(db_session, checking, "4825.00", on=date(2024, 4, 30))
        assert second.opening_balance == Decimal("5000.00")
        assert second.previous_reconciliation_id == first.id
        remaining = service.get_reconcilable_entries(second.id)
        assert [e.id for e in remaining] == [
            statement["expense"].id, statement["later"].id
        ]

    def test_mismatch_is_never_forced(self, db_session, checking, statement):
        service = ReconciliationService(db_session)
        session = start(db_session, checking, "5000.00")
        service.mark_cleared(session.id, [statement["deposit"].id, statement["expense"].id])

        with pytest.raises(ReconciliationMismatchError, match="does not balance"):
            service.complete(session.id)

        assert session.status == ReconciliationStatus.IN_PROGRESS
        assert checking.last_reconciled_date is None

    def test_completed_session_cannot_change(self, db_session, checking, statement):
        service = ReconciliationService(db_session)
        session = start(db_session, checking, "5000.00")
        service.mark_cleared(session.id, [statement["deposit"].id])
        service.complete(session.id)

        with pytest.raises(InvalidStateError):
            service.complete(session.id)
        with pytest.raises(InvalidStateError):
            service.mark_cleared(session.id, [statement["expense"].id])

    def test_cleared_entries_cannot_be_unposted(self, db_session, checking, statement):
        service = ReconciliationService(db_session)
        session = start(db_session, checking, "5000.00")
        service.mark_cleared(session.id, [statement["deposit"].id])
        service.complete(session.id)

        with pytest.raises(DanglingReferenceError, match="reconciliation"):
            TransactionService(db_session).delete(statement["deposit"].transaction_id)


class TestUndo:

    def test_undo_reopens_latest_session(self, db_session, checking, statement):
        service = ReconciliationService(db_session)
        session = start(db_session, checking, "5000.00")
        service.mark_cleared(session.id, [statement["deposit"].id])
        service.complete(session.id)

        service.undo(session.id)

        assert session.status == ReconciliationStatus.IN_PROGRESS
        assert session.completed_at is None
        assert checking.last_reconciled_date is None
        assert service.history(checking.id) == []

    def test_only_latest_session_can_be_undone(self, db_session, checking, statement):
        service = ReconciliationService(db_session)
        first = start(db_session, checking, "5000.00")
        service.mark_cleared(first.id, [statement["deposit"].id])
        service.complete(first.id)
        second = start(db_session, checking, "5000.00", on=date(2024, 4, 1))
        service.complete(second.id)

        with pytest.raises(InvalidStateError, match="newer"):
            service.undo(first.id)

        service.undo(second.id)
        assert checking.last_reconciled_date == date(2024, 3, 31)
        assert [s.id for s in service.history(checking.id)] == [first.id]
