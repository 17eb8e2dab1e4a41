"""
Tests for the operation boundary.

Every operation runs in its own session and commits on its
own, so these tests read results back through db_session
after expiring it.
"""

import logging
from datetime import date, datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from ledger_core.exceptions import InsufficientBalanceError, ReconciliationMismatchError
from ledger_core.models import (
    ApplicationLink,
    AccountType,
    Frequency,
    LedgerEntry,
    ReconciliationStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from ledger_core.schemas.ledger import AccountCreate
from ledger_core.schemas.recurring import RecurringTemplateCreate
from ledger_core.schemas.transaction import (
    AccountMapping,
    LineItemCreate,
    PaymentApplication,
    PaymentCreate,
    TransactionCreate,
)
from ledger_core.services.ledger_service import LedgerService
from ledger_core.services.operations import LedgerOperations
from ledger_core.services.transaction_service import TransactionService


@pytest.fixture
def ops(session_factory):
    return LedgerOperations(session_factory)


def invoice_request(chart, customer, net, tax="0"):
    return TransactionCreate(
        transaction_type=TransactionType.INVOICE,
        transaction_date=date(2024, 3, 1),
        due_date=date(2024, 3, 31),
        contact_id=customer.id,
        line_items=[LineItemCreate(
            description="Consulting",
            unit_price=Decimal(net),
            account_id=chart.income.id,
            tax_account_id=chart.tax.id if Decimal(tax) else None,
            tax_amount=Decimal(tax),
        )],
    )


def count(db_session, model):
    return db_session.execute(select(func.count(model.id))).scalar_one()


class TestPaymentLifecycle:

    def test_overpay_apply_and_delete(self, ops, db_session, chart, customer):
        first = ops.post_transaction(invoice_request(chart, customer, "1050.00", "105.00"))
        second = ops.post_transaction(invoice_request(chart, customer, "700.00", "70.00"))

        paid = ops.receive_payment(PaymentCreate(
            contact_id=customer.id,
            amount=Decimal("1540.00"),
            transaction_date=date(2024, 3, 10),
            applications=[PaymentApplication(target_id=first.id, amount=Decimal("1155.00"))],
            idempotency_key="pay-1",
        ))
        assert paid.credit.balance == Decimal("385.00")
        assert paid.credit.status == TransactionStatus.UNAPPLIED_CREDIT

        link = ops.apply_credit(paid.credit.id, second.id, Decimal("385.00"))
        assert link.source_id == paid.credit.id

        result = ops.delete_payment_cascade(paid.payment.id)

        db_session.expire_all()
        restored = {doc.id: doc.new_balance for doc in result.invoices_restored}
        assert restored == {first.id: Decimal("1155.00"), second.id: Decimal("770.00")}
        assert db_session.get(Transaction, first.id).status == TransactionStatus.OPEN
        assert db_session.get(Transaction, second.id).status == TransactionStatus.OPEN
        assert db_session.get(Transaction, paid.credit.id) is None
        ledger = LedgerService(db_session)
        assert ledger.get_account_balance(chart.receivable.id) == Decimal("1925.00")
        assert ledger.get_account_balance(chart.bank.id) == Decimal("0")
        assert ops.verify_integrity().is_consistent is True

    def test_failure_rolls_back_whole_payment(
        self, ops, db_session, chart, customer, monkeypatch
    ):
        invoice = ops.post_transaction(invoice_request(chart, customer, "1155.00"))

        def fail(self, payment, amount):
            raise RuntimeError("connection lost")

        monkeypatch.setattr(TransactionService, "create_overpayment_credit", fail)

        with pytest.raises(RuntimeError):
            ops.receive_payment(PaymentCreate(
                contact_id=customer.id,
                amount=Decimal("1540.00"),
                transaction_date=date(2024, 3, 10),
                applications=[PaymentApplication(
                    target_id=invoice.id, amount=Decimal("1155.00"),
                )],
                idempotency_key="pay-1",
            ))

        db_session.expire_all()
        stored = db_session.get(Transaction, invoice.id)
        assert stored.balance == Decimal("1155.00")
        assert stored.status == TransactionStatus.OPEN
        assert count(db_session, ApplicationLink) == 0
        assert count(db_session, Transaction) == 1
        assert LedgerService(db_session).get_account_balance(chart.bank.id) == Decimal("0")

    def test_settle_retry_applies_once(self, ops, db_session, chart, customer):
        invoice = ops.post_transaction(invoice_request(chart, customer, "500.00"))

        ops.settle_transaction(invoice.id, Decimal("200.00"), "settle-1")
        again = ops.settle_transaction(invoice.id, Decimal("200.00"), "settle-1")

        assert again.balance == Decimal("300.00")
        assert again.status == TransactionStatus.PARTIAL

    def test_rejection_is_logged_and_reraised(self, ops, chart, customer, caplog):
        invoice = ops.post_transaction(invoice_request(chart, customer, "500.00"))

        with caplog.at_level(logging.WARNING):
            with pytest.raises(InsufficientBalanceError):
                ops.settle_transaction(invoice.id, Decimal("600.00"), "settle-1")

        assert "settle_transaction rejected" in caplog.text


class TestDraftAndVoid:

    def test_finalize_then_void(self, ops, db_session, chart, customer):
        draft = ops.post_transaction(invoice_request(chart, customer, "300.00"), draft=True)
        assert draft.status == TransactionStatus.DRAFT

        final = ops.finalize_transaction(draft.id)
        assert final.status == TransactionStatus.OPEN

        voided = ops.void_transaction(draft.id)
        assert voided.status == TransactionStatus.VOIDED
        assert count(db_session, LedgerEntry) == 0

    def test_delete_transaction(self, ops, db_session, chart, customer):
        invoice = ops.post_transaction(invoice_request(chart, customer, "300.00"))

        assert ops.delete_transaction(invoice.id) is None

        db_session.expire_all()
        assert db_session.get(Transaction, invoice.id) is None


class TestRecurringOperations:

    @pytest.fixture
    def template(self, ops, chart, customer):
        return ops.create_recurring_template(RecurringTemplateCreate(
            template_name="Hosting",
            customer_id=customer.id,
            frequency=Frequency.MONTHLY,
            day_of_month=31,
            start_date=date(2024, 1, 31),
            lines=[LineItemCreate(
                description="Hosting", unit_price=Decimal("99.00"),
                account_id=chart.income.id,
            )],
        ))

    def test_compute_next_run(self, ops, template):
        assert ops.compute_next_run(template.id) == date(2024, 2, 29)

    def test_generate_saves_nothing(self, ops, db_session, template):
        draft = ops.generate_recurring_invoice(template.id, today=date(2024, 1, 31))

        assert draft.total == Decimal("99.00")
        assert draft.transaction.reference == "1001"
        assert count(db_session, Transaction) == 0

    def test_run_recurring(self, ops, db_session, template):
        result = ops.run_recurring(datetime(2024, 1, 31, 6, 0))

        assert list(result.generated) == [template.id]
        db_session.expire_all()
        invoice = db_session.get(Transaction, result.generated[template.id])
        assert invoice.amount == Decimal("99.00")
        assert ops.compute_next_run(template.id) == date(2024, 3, 31)


class TestReconciliationOperations:

    def test_reconcile_deposit(self, ops, chart):
        bank = ops.create_account(AccountCreate(
            code="1001", name="Payroll Bank", account_type=AccountType.BANK,
            opening_balance=Decimal("1000.00"),
        ))
        deposit = ops.post_transaction(TransactionCreate(
            transaction_type=TransactionType.DEPOSIT,
            transaction_date=date(2024, 3, 5),
            line_items=[LineItemCreate(
                description="Capital", unit_price=Decimal("4000.00"),
                account_id=chart.equity.id,
            )],
            accounts=AccountMapping(bank_account_id=bank.id),
        ))
        [entry] = ops.account_entries(bank.id)
        assert entry.transaction_id == deposit.id
        assert entry.debit == Decimal("4000.00")
        entry_id = entry.id

        session = ops.start_reconciliation(bank.id, date(2024, 3, 31), Decimal("5000.00"))
        assert session.opening_balance == Decimal("1000.00")

        with pytest.raises(ReconciliationMismatchError):
            ops.complete_reconciliation(session.id)

        summary = ops.mark_cleared(session.id, [entry_id])
        assert summary.difference == Decimal("0")

        completed = ops.complete_reconciliation(session.id)
        assert completed.status == ReconciliationStatus.COMPLETED

        following = ops.start_reconciliation(bank.id, date(2024, 4, 30), Decimal("5000.00"))
        assert following.opening_balance == Decimal("5000.00")


class TestIntegrityOperations:

    def test_repair_through_operations(self, ops, db_session, chart, customer):
        ops.post_transaction(invoice_request(chart, customer, "500.00"))
        db_session.expire_all()
        LedgerService(db_session).get_account(chart.receivable.id).balance = Decimal("1.00")
        db_session.commit()

        preview = ops.repair_integrity()
        assert preview.accounts_fixed == [chart.receivable.id]
        assert ops.verify_integrity().is_consistent is False

        ops.repair_integrity(dry_run=False)
        assert ops.verify_integrity().is_consistent is True
