"""
Operation boundary for the UI/API layer.

Each method is one atomic unit of work: it opens a session,
runs the service calls, commits, and returns pydantic response
models. Any exception rolls the whole unit back and reaches
the caller unchanged, so no operation is ever observed half
applied.
"""

import logging
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal

from ledger_core.exceptions import LedgerError, NotFoundError
from ledger_core.models.base import session_scope
from ledger_core.models.contact import Contact
from ledger_core.models.enums import TransactionType
from ledger_core.schemas.ledger import (
    AccountCreate,
    AccountResponse,
    LedgerEntryResponse,
    RepairResult,
    VerificationReport,
)
from ledger_core.schemas.reconciliation import (
    ReconciliationResponse,
    ReconciliationStart,
    ReconciliationSummary,
)
from ledger_core.schemas.recurring import (
    DraftInvoice,
    RecurringTemplateCreate,
    RecurringTemplateResponse,
    SchedulerRunResult,
)
from ledger_core.schemas.transaction import (
    AccountMapping,
    ApplicationLinkResponse,
    DeletePaymentResult,
    PaymentCreate,
    PaymentResult,
    TransactionCreate,
    TransactionResponse,
)
from ledger_core.services.credit_service import CreditService, PaymentOutcome
from ledger_core.services.integrity_service import IntegrityService
from ledger_core.services.ledger_service import LedgerService
from ledger_core.services.reconciliation_service import ReconciliationService
from ledger_core.services.recurring_service import (
    RecurringScheduler,
    RecurringService,
    generate,
    next_run_date,
)
from ledger_core.services.transaction_service import TransactionService

logger = logging.getLogger(__name__)


def _payment_result(outcome: PaymentOutcome) -> PaymentResult:
    return PaymentResult(
        payment=TransactionResponse.model_validate(outcome.payment),
        links=[ApplicationLinkResponse.model_validate(link) for link in outcome.links],
        credit=(
            TransactionResponse.model_validate(outcome.credit)
            if outcome.credit else None
        ),
    )


class LedgerOperations:

    def __init__(self, session_factory=None):
        self.session_factory = session_factory

    @contextmanager
    def _unit(self, operation: str):
        try:
            with session_scope(self.session_factory) as db:
                yield db
        except LedgerError as exc:
            logger.warning("%s rejected: %s", operation, exc)
            raise

    # --- Accounts ---

    def create_account(self, request: AccountCreate) -> AccountResponse:
        with self._unit("create_account") as db:
            account = LedgerService(db).create_account(request)
            return AccountResponse.model_validate(account)

    def account_entries(self, account_id: int) -> list[LedgerEntryResponse]:
        with self._unit("account_entries") as db:
            entries = LedgerService(db).get_entries_by_account(account_id)
            return [LedgerEntryResponse.model_validate(e) for e in entries]

    # --- Transactions ---

    def post_transaction(
        self, request: TransactionCreate, draft: bool = False
    ) -> TransactionResponse:
        with self._unit("post_transaction") as db:
            txn = TransactionService(db).create(request, draft=draft)
            return TransactionResponse.model_validate(txn)

    def finalize_transaction(
        self, transaction_id: int, accounts: AccountMapping | None = None
    ) -> TransactionResponse:
        with self._unit("finalize_transaction") as db:
            txn = TransactionService(db).finalize(transaction_id, accounts)
            return TransactionResponse.model_validate(txn)

    def settle_transaction(
        self, transaction_id: int, amount: Decimal, idempotency_key: str
    ) -> TransactionResponse:
        with self._unit("settle_transaction") as db:
            txn = TransactionService(db).settle(transaction_id, amount, idempotency_key)
            return TransactionResponse.model_validate(txn)

    def void_transaction(self, transaction_id: int) -> TransactionResponse:
        with self._unit("void_transaction") as db:
            txn = TransactionService(db).void(transaction_id)
            return TransactionResponse.model_validate(txn)

    def delete_transaction(
        self, transaction_id: int, cascade: bool = False
    ) -> DeletePaymentResult | None:
        with self._unit("delete_transaction") as db:
            return CreditService(db).delete_transaction(transaction_id, cascade=cascade)

    # --- Payments and credits ---

    def receive_payment(self, request: PaymentCreate) -> PaymentResult:
        with self._unit("receive_payment") as db:
            return _payment_result(CreditService(db).receive_payment(request))

    def pay_bills(self, request: PaymentCreate) -> PaymentResult:
        with self._unit("pay_bills") as db:
            return _payment_result(CreditService(db).pay_bills(request))

    def apply_credit(
        self,
        credit_id: int,
        target_id: int,
        amount: Decimal,
        idempotency_key: str | None = None,
    ) -> ApplicationLinkResponse:
        with self._unit("apply_credit") as db:
            link = CreditService(db).apply_credit(
                credit_id, target_id, amount, idempotency_key
            )
            return ApplicationLinkResponse.model_validate(link)

    def reverse_application(self, link_id: int) -> None:
        with self._unit("reverse_application") as db:
            CreditService(db).reverse_application(link_id)

    def delete_payment_cascade(self, payment_id: int) -> DeletePaymentResult:
        with self._unit("delete_payment_cascade") as db:
            return CreditService(db).delete_payment_cascade(payment_id)

    # --- Recurring invoices ---

    def create_recurring_template(
        self, request: RecurringTemplateCreate
    ) -> RecurringTemplateResponse:
        with self._unit("create_recurring_template") as db:
            template = RecurringService(db).create_template(request)
            return RecurringTemplateResponse.model_validate(template)

    def compute_next_run(self, template_id: int) -> date:
        with self._unit("compute_next_run") as db:
            return next_run_date(RecurringService(db).get_template(template_id))

    def generate_recurring_invoice(
        self, template_id: int, today: date | None = None
    ) -> DraftInvoice:
        """Draft the template's next invoice without saving anything."""
        with self._unit("generate_recurring_invoice") as db:
            template = RecurringService(db).get_template(template_id)
            customer = db.get(Contact, template.customer_id)
            if customer is None:
                raise NotFoundError(f"Contact {template.customer_id} not found")
            return generate(
                template,
                template.lines,
                customer,
                TransactionService(db).next_reference(TransactionType.INVOICE),
                today=today,
            )

    def run_recurring(self, now: datetime | None = None) -> SchedulerRunResult:
        return RecurringScheduler(self.session_factory).run_due(now)

    # --- Reconciliation ---

    def start_reconciliation(
        self,
        account_id: int,
        statement_date: date,
        statement_ending_balance: Decimal,
    ) -> ReconciliationResponse:
        with self._unit("start_reconciliation") as db:
            session = ReconciliationService(db).start(ReconciliationStart(
                account_id=account_id,
                statement_date=statement_date,
                statement_ending_balance=statement_ending_balance,
            ))
            return ReconciliationResponse.model_validate(session)

    def mark_cleared(
        self, session_id: int, entry_ids: list[int], is_cleared: bool = True
    ) -> ReconciliationSummary:
        with self._unit("mark_cleared") as db:
            service = ReconciliationService(db)
            service.mark_cleared(session_id, entry_ids, is_cleared)
            return service.summary(session_id)

    def complete_reconciliation(self, session_id: int) -> ReconciliationResponse:
        with self._unit("complete_reconciliation") as db:
            session = ReconciliationService(db).complete(session_id)
            return ReconciliationResponse.model_validate(session)

    # --- Administration ---

    def verify_integrity(self) -> VerificationReport:
        with self._unit("verify_integrity") as db:
            return IntegrityService(db).verify()

    def repair_integrity(self, dry_run: bool = True) -> RepairResult:
        with self._unit("repair_integrity") as db:
            return IntegrityService(db).repair(dry_run=dry_run)
