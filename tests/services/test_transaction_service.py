"""
Comprehensive tests for the TransactionService.
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from ledger_core.exceptions import (
    DanglingReferenceError,
    InsufficientBalanceError,
    InvalidAccountError,
    InvalidContactTypeError,
    InvalidStateError,
    UnbalancedEntriesError,
)
from ledger_core.models import (
    AccountType,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from ledger_core.schemas.ledger import AccountCreate, LedgerEntryCreate
from ledger_core.schemas.transaction import (
    AccountMapping,
    LineItemCreate,
    TransactionCreate,
)
from ledger_core.services.ledger_service import LedgerService
from ledger_core.services.transaction_service import TransactionService


def invoice_request(customer, chart, amount="1155.00", tax="0", **kwargs):
    """Helper: a one-line invoice for a customer."""
    return TransactionCreate(
        transaction_type=TransactionType.INVOICE,
        transaction_date=date(2024, 3, 1),
        due_date=date(2024, 3, 31),
        description="Consulting",
        contact_id=customer.id,
        line_items=[LineItemCreate(
            description="Consulting hours",
            unit_price=Decimal(amount),
            account_id=chart.income.id,
            tax_account_id=chart.tax.id if Decimal(tax) else None,
            tax_amount=Decimal(tax),
        )],
        **kwargs,
    )


def count_transactions(db_session):
    return db_session.execute(select(func.count(Transaction.id))).scalar_one()


# --- Create Tests ---

class TestCreate:

    def test_invoice_posts_receivable_against_income_and_tax(
        self, db_session, chart, customer
    ):
        service = TransactionService(db_session)
        ledger = LedgerService(db_session)

        invoice = service.create(invoice_request(customer, chart, "1050.00", tax="105.00"))
        db_session.commit()

        assert invoice.reference == "1001"
        assert invoice.status == TransactionStatus.OPEN
        assert invoice.amount == Decimal("1155.00")
        assert invoice.balance == Decimal("1155.00")
        assert ledger.get_account_balance(chart.receivable.id) == Decimal("1155.00")
        assert ledger.get_account_balance(chart.income.id) == Decimal("1050.00")
        assert ledger.get_account_balance(chart.tax.id) == Decimal("105.00")

        entries = ledger.get_entries_by_transaction(invoice.id)
        assert sum(e.debit for e in entries) == sum(e.credit for e in entries)

    def test_references_are_numbered_per_type(self, db_session, chart, customer):
        service = TransactionService(db_session)

        first = service.create(invoice_request(customer, chart))
        second = service.create(invoice_request(customer, chart))

        assert (first.reference, second.reference) == ("1001", "1002")

    def test_duplicate_reference_rejected(self, db_session, chart, customer):
        service = TransactionService(db_session)
        service.create(invoice_request(customer, chart, reference="INV-7"))
        db_session.commit()

        with pytest.raises(ValueError, match="already exists"):
            service.create(invoice_request(customer, chart, reference="INV-7"))

    def test_invoice_requires_customer(self, db_session, chart, vendor):
        service = TransactionService(db_session)

        with pytest.raises(InvalidContactTypeError, match="customer"):
            service.create(invoice_request(vendor, chart))

        assert count_transactions(db_session) == 0

    def test_bill_requires_vendor(self, db_session, chart, customer):
        service = TransactionService(db_session)

        with pytest.raises(InvalidContactTypeError, match="vendor"):
            service.create(TransactionCreate(
                transaction_type=TransactionType.BILL,
                transaction_date=date(2024, 3, 1),
                contact_id=customer.id,
                line_items=[LineItemCreate(
                    description="Paper", unit_price=Decimal("80.00"),
                    account_id=chart.expense.id,
                )],
            ))

    def test_bill_posts_expense_against_payable(self, db_session, chart, vendor):
        service = TransactionService(db_session)
        ledger = LedgerService(db_session)

        bill = service.create(TransactionCreate(
            transaction_type=TransactionType.BILL,
            transaction_date=date(2024, 3, 1),
            contact_id=vendor.id,
            line_items=[LineItemCreate(
                description="Paper", quantity=Decimal("4"),
                unit_price=Decimal("20.00"), account_id=chart.expense.id,
            )],
        ))
        db_session.commit()

        assert bill.status == TransactionStatus.OPEN
        assert bill.amount == Decimal("80.00")
        assert ledger.get_account_balance(chart.expense.id) == Decimal("80.00")
        assert ledger.get_account_balance(chart.payable.id) == Decimal("80.00")

    def test_expense_is_completed_immediately(self, db_session, chart):
        service = TransactionService(db_session)
        ledger = LedgerService(db_session)

        expense = service.create(TransactionCreate(
            transaction_type=TransactionType.EXPENSE,
            transaction_date=date(2024, 3, 1),
            line_items=[LineItemCreate(
                description="Coffee", unit_price=Decimal("12.50"),
                account_id=chart.expense.id,
            )],
        ))
        db_session.commit()

        assert expense.status == TransactionStatus.COMPLETED
        assert expense.balance == Decimal("0")
        assert ledger.get_account_balance(chart.bank.id) == Decimal("-12.50")

    def test_journal_entry_amount_is_total_debits(self, db_session, chart):
        service = TransactionService(db_session)

        journal = service.create(TransactionCreate(
            transaction_type=TransactionType.JOURNAL_ENTRY,
            transaction_date=date(2024, 3, 1),
            entries=[
                LedgerEntryCreate(account_id=chart.bank.id, debit=Decimal("300.00")),
                LedgerEntryCreate(account_id=chart.equity.id, credit=Decimal("300.00")),
            ],
        ))

        assert journal.amount == Decimal("300.00")
        assert journal.status == TransactionStatus.COMPLETED

    def test_unbalanced_journal_writes_nothing(self, db_session, chart):
        service = TransactionService(db_session)

        with pytest.raises(UnbalancedEntriesError):
            service.create(TransactionCreate(
                transaction_type=TransactionType.JOURNAL_ENTRY,
                transaction_date=date(2024, 3, 1),
                entries=[
                    LedgerEntryCreate(account_id=chart.bank.id, debit=Decimal("300.00")),
                    LedgerEntryCreate(account_id=chart.equity.id, credit=Decimal("299.99")),
                ],
            ))

        assert count_transactions(db_session) == 0

    def test_transfer_between_banks(self, db_session, chart):
        ledger = LedgerService(db_session)
        savings = ledger.create_account(AccountCreate(
            code="1010", name="Savings", account_type=AccountType.BANK,
        ))
        service = TransactionService(db_session)

        transfer = service.create(TransactionCreate(
            transaction_type=TransactionType.TRANSFER,
            transaction_date=date(2024, 3, 1),
            amount=Decimal("250.00"),
            accounts=AccountMapping(destination_account_id=savings.id),
        ))

        assert transfer.status == TransactionStatus.COMPLETED
        assert ledger.get_account_balance(savings.id) == Decimal("250.00")
        assert ledger.get_account_balance(chart.bank.id) == Decimal("-250.00")

    def test_transfer_to_same_account_rejected(self, db_session, chart):
        service = TransactionService(db_session)

        with pytest.raises(InvalidAccountError, match="same account"):
            service.create(TransactionCreate(
                transaction_type=TransactionType.TRANSFER,
                transaction_date=date(2024, 3, 1),
                amount=Decimal("250.00"),
                accounts=AccountMapping(
                    bank_account_id=chart.bank.id,
                    destination_account_id=chart.bank.id,
                ),
            ))

    def test_wrong_control_account_type_rejected(self, db_session, chart, customer):
        service = TransactionService(db_session)

        with pytest.raises(InvalidAccountError, match="cannot be used"):
            service.create(invoice_request(
                customer, chart,
                accounts=AccountMapping(receivable_account_id=chart.bank.id),
            ))

    def test_foreign_currency_lines_converted_to_home(self, db_session, chart, customer):
        service = TransactionService(db_session)
        ledger = LedgerService(db_session)

        invoice = service.create(invoice_request(
            customer, chart, "100.00", currency="EUR", exchange_rate=Decimal("1.1"),
        ))

        assert invoice.amount == Decimal("100.00")
        assert ledger.get_account_balance(chart.receivable.id) == Decimal("110.00")
        assert ledger.get_account_balance(chart.income.id) == Decimal("110.00")

    def test_idempotency_key_returns_existing(self, db_session, chart, customer):
        service = TransactionService(db_session)

        first = service.create(invoice_request(customer, chart, idempotency_key="inv-1"))
        db_session.commit()
        second = service.create(invoice_request(customer, chart, idempotency_key="inv-1"))

        assert first.id == second.id
        assert count_transactions(db_session) == 1

    def test_idempotency_key_of_other_type_rejected(self, db_session, chart, customer):
        service = TransactionService(db_session)
        service.create(invoice_request(customer, chart, idempotency_key="doc-1"))

        with pytest.raises(InvalidStateError, match="was used for invoice"):
            service.create(TransactionCreate(
                transaction_type=TransactionType.PAYMENT,
                transaction_date=date(2024, 3, 1),
                contact_id=customer.id,
                amount=Decimal("50.00"),
                idempotency_key="doc-1",
            ))

        assert count_transactions(db_session) == 1

    def test_journal_with_sub_cent_pair_rejected(self, db_session, chart):
        service = TransactionService(db_session)

        with pytest.raises(UnbalancedEntriesError, match="exactly one nonzero side"):
            service.create(TransactionCreate(
                transaction_type=TransactionType.JOURNAL_ENTRY,
                transaction_date=date(2024, 3, 1),
                entries=[
                    LedgerEntryCreate(account_id=chart.bank.id, debit=Decimal("100.00")),
                    LedgerEntryCreate(account_id=chart.equity.id, credit=Decimal("100.00")),
                    LedgerEntryCreate(account_id=chart.bank.id, debit=Decimal("0.004")),
                    LedgerEntryCreate(account_id=chart.equity.id, credit=Decimal("0.004")),
                ],
            ))

        assert count_transactions(db_session) == 0


# --- Draft Tests ---

class TestDraft:

    def test_draft_has_no_entries_until_finalized(self, db_session, chart, customer):
        service = TransactionService(db_session)
        ledger = LedgerService(db_session)

        draft = service.create(invoice_request(customer, chart), draft=True)
        db_session.commit()

        assert draft.status == TransactionStatus.DRAFT
        assert ledger.get_entries_by_transaction(draft.id) == []

        invoice = service.finalize(draft.id)
        db_session.commit()

        assert invoice.status == TransactionStatus.OPEN
        assert len(ledger.get_entries_by_transaction(invoice.id)) == 2
        assert ledger.get_account_balance(chart.receivable.id) == Decimal("1155.00")

    def test_finalize_twice_rejected(self, db_session, chart, customer):
        service = TransactionService(db_session)
        draft = service.create(invoice_request(customer, chart), draft=True)
        service.finalize(draft.id)

        with pytest.raises(InvalidStateError, match="Only drafts"):
            service.finalize(draft.id)

    def test_journal_entry_cannot_be_draft(self, db_session, chart):
        service = TransactionService(db_session)

        with pytest.raises(InvalidStateError, match="draft"):
            service.create(TransactionCreate(
                transaction_type=TransactionType.JOURNAL_ENTRY,
                transaction_date=date(2024, 3, 1),
                entries=[
                    LedgerEntryCreate(account_id=chart.bank.id, debit=Decimal("5.00")),
                    LedgerEntryCreate(account_id=chart.equity.id, credit=Decimal("5.00")),
                ],
            ), draft=True)


# --- Settlement Tests ---

class TestSettle:

    def test_partial_then_full_settlement(self, db_session, chart, customer):
        service = TransactionService(db_session)
        invoice = service.create(invoice_request(customer, chart, "770.00"))

        service.settle(invoice.id, Decimal("385.00"), "settle-1")
        assert invoice.balance == Decimal("385.00")
        assert invoice.status == TransactionStatus.PARTIAL

        service.settle(invoice.id, Decimal("385.00"), "settle-2")
        assert invoice.balance == Decimal("0")
        assert invoice.status == TransactionStatus.COMPLETED
        assert invoice.completed_at is not None

    def test_retry_with_same_key_is_noop(self, db_session, chart, customer):
        service = TransactionService(db_session)
        invoice = service.create(invoice_request(customer, chart, "770.00"))

        service.settle(invoice.id, Decimal("100.00"), "settle-1")
        db_session.commit()
        service.settle(invoice.id, Decimal("100.00"), "settle-1")

        assert invoice.balance == Decimal("670.00")

    def test_key_reused_for_other_transaction_rejected(self, db_session, chart, customer):
        service = TransactionService(db_session)
        first = service.create(invoice_request(customer, chart))
        second = service.create(invoice_request(customer, chart))
        service.settle(first.id, Decimal("10.00"), "settle-1")

        with pytest.raises(InvalidStateError, match="was used"):
            service.settle(second.id, Decimal("10.00"), "settle-1")

    def test_settlement_above_balance_rejected(self, db_session, chart, customer):
        service = TransactionService(db_session)
        invoice = service.create(invoice_request(customer, chart, "100.00"))

        with pytest.raises(InsufficientBalanceError):
            service.settle(invoice.id, Decimal("100.01"), "settle-1")

        assert invoice.balance == Decimal("100.00")
        assert invoice.status == TransactionStatus.OPEN

    def test_only_invoices_and_bills_settle(self, db_session, chart):
        service = TransactionService(db_session)
        expense = service.create(TransactionCreate(
            transaction_type=TransactionType.EXPENSE,
            transaction_date=date(2024, 3, 1),
            line_items=[LineItemCreate(
                description="Coffee", unit_price=Decimal("12.50"),
                account_id=chart.expense.id,
            )],
        ))

        with pytest.raises(InvalidStateError, match="cannot be settled"):
            service.settle(expense.id, Decimal("1.00"), "settle-1")

    def test_unsettle_restores_exactly(self, db_session, chart, customer):
        service = TransactionService(db_session)
        invoice = service.create(invoice_request(customer, chart, "770.00"))
        service.settle(invoice.id, Decimal("770.00"), "settle-1")

        service.unsettle(invoice.id, "settle-1")

        assert invoice.balance == Decimal("770.00")
        assert invoice.status == TransactionStatus.OPEN
        assert invoice.completed_at is None


# --- Void and Delete Tests ---

class TestVoid:

    def test_void_unposts_and_keeps_balance(self, db_session, chart, customer):
        service = TransactionService(db_session)
        ledger = LedgerService(db_session)
        invoice = service.create(invoice_request(customer, chart, "500.00"))

        service.void(invoice.id)
        db_session.commit()

        assert invoice.status == TransactionStatus.VOIDED
        assert invoice.balance == Decimal("500.00")
        assert ledger.get_entries_by_transaction(invoice.id) == []
        assert ledger.get_account_balance(chart.receivable.id) == Decimal("0")
        assert service.outstanding_balance(customer.id) == Decimal("0")

    def test_void_with_recorded_settlement_rejected(self, db_session, chart, customer):
        service = TransactionService(db_session)
        ledger = LedgerService(db_session)
        invoice = service.create(invoice_request(customer, chart, "100.00"))
        service.settle(invoice.id, Decimal("40.00"), "evt-1")

        with pytest.raises(InvalidStateError, match="recorded settlements"):
            service.void(invoice.id)

        assert invoice.status == TransactionStatus.PARTIAL
        assert ledger.get_account_balance(chart.receivable.id) == Decimal("100.00")

    def test_void_allowed_after_settlement_undone(self, db_session, chart, customer):
        service = TransactionService(db_session)
        invoice = service.create(invoice_request(customer, chart, "100.00"))
        service.settle(invoice.id, Decimal("40.00"), "evt-1")
        service.unsettle(invoice.id, "evt-1")

        service.void(invoice.id)

        assert invoice.status == TransactionStatus.VOIDED
        assert invoice.balance == Decimal("100.00")

    def test_void_completed_rejected(self, db_session, chart, customer):
        service = TransactionService(db_session)
        invoice = service.create(invoice_request(customer, chart, "500.00"))
        service.settle(invoice.id, Decimal("500.00"), "settle-1")

        with pytest.raises(InvalidStateError, match="Cannot void"):
            service.void(invoice.id)

    def test_outstanding_balance_excludes_drafts(self, db_session, chart, customer):
        service = TransactionService(db_session)
        service.create(invoice_request(customer, chart, "500.00"))
        service.create(invoice_request(customer, chart, "250.00"), draft=True)

        assert service.outstanding_balance(customer.id) == Decimal("500.00")


class TestDelete:

    def test_delete_unposts_before_removing_row(self, db_session, chart, customer):
        service = TransactionService(db_session)
        ledger = LedgerService(db_session)
        invoice = service.create(invoice_request(customer, chart, "500.00"))
        invoice_id = invoice.id
        db_session.commit()

        service.delete(invoice_id)
        db_session.commit()

        assert db_session.get(Transaction, invoice_id) is None
        assert ledger.get_entries_by_transaction(invoice_id) == []
        assert ledger.get_account_balance(chart.receivable.id) == Decimal("0")
        assert ledger.get_account_balance(chart.income.id) == Decimal("0")

    def test_delete_payment_with_spawned_credit_rejected(self, db_session, chart, customer):
        service = TransactionService(db_session)
        payment = service.create(TransactionCreate(
            transaction_type=TransactionType.PAYMENT,
            transaction_date=date(2024, 3, 1),
            contact_id=customer.id,
            amount=Decimal("50.00"),
        ))
        service.create_overpayment_credit(payment, Decimal("50.00"))

        with pytest.raises(DanglingReferenceError):
            service.delete(payment.id)


class TestOverdue:

    def test_open_invoice_past_due_is_overdue(self, db_session, chart, customer):
        service = TransactionService(db_session)
        invoice = service.create(invoice_request(customer, chart))

        assert invoice.is_overdue(date(2024, 4, 1)) is True
        assert invoice.is_overdue(date(2024, 3, 31)) is False
