"""
Recurring invoices — schedule calculation and generation.

The calculator functions at the top of this module are pure:
they read a template and return a date or a draft, and never
change the template. RecurringService owns template state and
RecurringScheduler fires due templates, one claim at a time.
"""

import logging
from datetime import date, datetime, timedelta

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, update, or_
from sqlalchemy.orm import Session

from ledger_core.config import get_settings
from ledger_core.exceptions import (
    ClaimLostError,
    InvalidContactTypeError,
    InvalidStateError,
    NotFoundError,
)
from ledger_core.models.base import session_scope
from ledger_core.models.contact import Contact
from ledger_core.models.enums import (
    Frequency,
    FrequencyUnit,
    RunStatus,
    TemplateStatus,
    TransactionType,
)
from ledger_core.models.recurring import (
    LAST_BUSINESS_DAY,
    RecurringHistory,
    RecurringLine,
    RecurringTemplate,
)
from ledger_core.models.transaction import Transaction
from ledger_core.money import ZERO, quantize
from ledger_core.schemas.recurring import (
    DraftInvoice,
    RecurringTemplateCreate,
    SchedulerRunResult,
)
from ledger_core.schemas.transaction import LineItemCreate, TransactionCreate
from ledger_core.services.audit_service import AuditEvent, AuditService
from ledger_core.services.transaction_service import TransactionService

logger = logging.getLogger(__name__)

# Returned by next_run_date when a template must not run again
EPOCH = date(1970, 1, 1)

FIXED_STEPS = {
    Frequency.DAILY: relativedelta(days=1),
    Frequency.WEEKLY: relativedelta(weeks=1),
    Frequency.BIWEEKLY: relativedelta(weeks=2),
    Frequency.QUARTERLY: relativedelta(months=3),
    Frequency.YEARLY: relativedelta(years=1),
}

CUSTOM_UNITS = {
    FrequencyUnit.DAYS: "days",
    FrequencyUnit.WEEKS: "weeks",
    FrequencyUnit.MONTHS: "months",
}


def _today(now) -> date:
    return now.date() if isinstance(now, datetime) else now


def _last_business_day(day: date) -> date:
    # Weekends only; holidays are not skipped
    while day.weekday() >= 5:
        day -= timedelta(days=1)
    return day


def _advance(template, current: date) -> date:
    if template.frequency in FIXED_STEPS:
        return current + FIXED_STEPS[template.frequency]

    if template.frequency == Frequency.MONTHLY:
        if template.day_of_month == LAST_BUSINESS_DAY:
            # day=31 lands on the last calendar day of the month
            return _last_business_day(current + relativedelta(months=1, day=31))
        if template.day_of_month:
            return current + relativedelta(months=1, day=template.day_of_month)
        return current + relativedelta(months=1)

    if template.frequency == Frequency.CUSTOM:
        if not template.frequency_value or not template.frequency_unit:
            raise InvalidStateError(
                f"Template {template.template_name} has an incomplete custom frequency"
            )
        unit = CUSTOM_UNITS[FrequencyUnit(template.frequency_unit)]
        return current + relativedelta(**{unit: template.frequency_value})

    raise InvalidStateError(f"Unknown frequency {template.frequency}")


def next_run_date(template) -> date:
    """
    Next occurrence after the template's current next_run_at.

    Monthly schedules with a day_of_month clamp to the end of
    short months (day 31 in February gives the 28th or 29th);
    day_of_month -1 means the last weekday of the month.
    Returns EPOCH once the end date is passed or the
    occurrence cap is reached.
    """
    current = template.next_run_at or template.start_date
    candidate = _advance(template, current)

    if template.end_date and candidate > template.end_date:
        return EPOCH
    if (
        template.max_occurrences
        and (template.current_occurrences or 0) >= template.max_occurrences
    ):
        return EPOCH
    return candidate


def should_run(template, now) -> bool:
    today = _today(now)
    if template.status != TemplateStatus.ACTIVE:
        return False
    if template.next_run_at is None or template.next_run_at <= EPOCH:
        return False
    if template.next_run_at > today:
        return False
    if (
        template.max_occurrences
        and (template.current_occurrences or 0) >= template.max_occurrences
    ):
        return False
    if template.end_date and today > template.end_date:
        return False
    return True


def generate(
    template,
    lines,
    customer: Contact,
    next_invoice_number: str,
    today: date | None = None,
) -> DraftInvoice:
    """
    Build the next invoice for a template without saving it.

    Neither the template nor its lines are changed; the caller
    creates the invoice and only then advances the schedule.
    """
    if customer.id != template.customer_id or not customer.is_customer:
        raise InvalidContactTypeError(
            f"Contact {customer.id} is not the customer of template "
            f"{template.template_name}"
        )
    today = today or date.today()

    line_items = [
        LineItemCreate(
            description=line.description,
            quantity=line.quantity,
            unit_price=line.unit_price,
            amount=line.amount,
            account_id=line.account_id,
            tax_account_id=line.tax_account_id,
            tax_amount=line.tax_amount or ZERO,
        )
        for line in lines
    ]
    subtotal = quantize(sum((quantize(item.amount) for item in line_items), ZERO))
    tax_amount = quantize(sum((quantize(item.tax_amount) for item in line_items), ZERO))

    terms = template.payment_terms_days
    if terms is None:
        terms = get_settings().DEFAULT_PAYMENT_TERMS_DAYS

    transaction = TransactionCreate(
        transaction_type=TransactionType.INVOICE,
        reference=next_invoice_number,
        transaction_date=today,
        due_date=today + timedelta(days=terms),
        description=template.memo or template.template_name,
        contact_id=customer.id,
        currency=template.currency,
        exchange_rate=template.exchange_rate,
        line_items=line_items,
    )
    return DraftInvoice(
        template_id=template.id,
        transaction=transaction,
        lines=line_items,
        subtotal=subtotal,
        tax_amount=tax_amount,
        total=subtotal + tax_amount,
    )


def format_frequency(
    frequency: Frequency,
    frequency_value: int | None = None,
    frequency_unit: FrequencyUnit | None = None,
) -> str:
    labels = {
        Frequency.DAILY: "Daily",
        Frequency.WEEKLY: "Weekly",
        Frequency.BIWEEKLY: "Every 2 weeks",
        Frequency.MONTHLY: "Monthly",
        Frequency.QUARTERLY: "Quarterly",
        Frequency.YEARLY: "Yearly",
    }
    if frequency == Frequency.CUSTOM:
        unit = frequency_unit.value if frequency_unit else ""
        return f"Every {frequency_value} {unit}".strip()
    return labels.get(frequency, str(frequency))


class RecurringService:

    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditService(db)

    def create_template(self, request: RecurringTemplateCreate) -> RecurringTemplate:
        customer = self.db.get(Contact, request.customer_id)
        if customer is None or not customer.is_customer:
            raise InvalidContactTypeError(
                f"Recurring invoices require a customer contact "
                f"(got {request.customer_id})"
            )

        template = RecurringTemplate(
            template_name=request.template_name,
            customer_id=request.customer_id,
            frequency=request.frequency,
            frequency_value=request.frequency_value,
            frequency_unit=request.frequency_unit,
            day_of_month=request.day_of_month,
            start_date=request.start_date,
            end_date=request.end_date,
            max_occurrences=request.max_occurrences,
            current_occurrences=0,
            next_run_at=request.start_date,
            status=TemplateStatus.ACTIVE,
            currency=request.currency,
            exchange_rate=request.exchange_rate,
            memo=request.memo,
            payment_terms_days=request.payment_terms_days,
        )
        for line in request.lines:
            template.lines.append(RecurringLine(
                description=line.description,
                quantity=line.quantity,
                unit_price=line.unit_price,
                amount=line.amount,
                account_id=line.account_id,
                tax_account_id=line.tax_account_id,
                tax_amount=line.tax_amount,
            ))
        self.db.add(template)
        self.db.flush()
        logger.info(
            "Created recurring template %s (%s)",
            template.template_name, format_frequency(
                template.frequency, template.frequency_value, template.frequency_unit
            ),
        )
        return template

    def get_template(self, template_id: int) -> RecurringTemplate:
        template = self.db.get(RecurringTemplate, template_id)
        if not template:
            raise NotFoundError(f"Recurring template {template_id} not found")
        return template

    def pause(self, template_id: int) -> RecurringTemplate:
        template = self.get_template(template_id)
        if template.status != TemplateStatus.ACTIVE:
            raise InvalidStateError(
                f"Only active templates can be paused (status: {template.status.value})"
            )
        template.status = TemplateStatus.PAUSED
        self.db.flush()
        return template

    def resume(self, template_id: int) -> RecurringTemplate:
        template = self.get_template(template_id)
        if template.status != TemplateStatus.PAUSED:
            raise InvalidStateError(
                f"Only paused templates can be resumed (status: {template.status.value})"
            )
        template.status = TemplateStatus.ACTIVE
        self.db.flush()
        return template

    def advance(self, template: RecurringTemplate, run_at: datetime) -> RecurringTemplate:
        """
        Count one occurrence and move next_run_at forward.

        The occurrence is counted before the next date is
        computed, so a template with max_occurrences=N completes
        right after its Nth run.
        """
        template.current_occurrences = (template.current_occurrences or 0) + 1
        next_date = next_run_date(template)
        template.next_run_at = next_date
        template.last_run_at = run_at
        if next_date == EPOCH:
            template.status = TemplateStatus.COMPLETED
        self.db.flush()
        return template

    def due_templates(self, now) -> list[RecurringTemplate]:
        rows = self.db.execute(
            select(RecurringTemplate)
            .where(
                RecurringTemplate.status == TemplateStatus.ACTIVE,
                RecurringTemplate.next_run_at <= _today(now),
            )
            .order_by(RecurringTemplate.next_run_at, RecurringTemplate.id)
        ).scalars().all()
        return [t for t in rows if should_run(t, now)]

    def history(self, template_id: int) -> list[RecurringHistory]:
        rows = self.db.execute(
            select(RecurringHistory)
            .where(RecurringHistory.template_id == template_id)
            .order_by(RecurringHistory.run_at, RecurringHistory.id)
        ).scalars().all()
        return list(rows)

    def lock_template(self, template_id: int) -> RecurringTemplate:
        template = self.db.execute(
            select(RecurringTemplate)
            .where(RecurringTemplate.id == template_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if not template:
            raise NotFoundError(f"Recurring template {template_id} not found")
        return template

    def fire(
        self,
        template_id: int,
        now: datetime,
        claimed_at: datetime | None = None,
        observed: date | None = None,
    ) -> Transaction:
        """
        Create the invoice for one due template, then advance it.

        Both happen in the caller's unit of work, so a failed
        invoice never moves the schedule. With claimed_at, the
        template row stays locked for the run and must still
        carry that claim (and the observed next_run_at), or
        ClaimLostError is raised before anything is written.
        """
        template = self.lock_template(template_id)
        if claimed_at is not None and (
            template.running_since != claimed_at
            or (observed is not None and template.next_run_at != observed)
        ):
            raise ClaimLostError(
                f"Template {template_id} is no longer claimed by the run "
                f"started at {claimed_at}"
            )
        customer = self.db.get(Contact, template.customer_id)
        if customer is None:
            raise NotFoundError(f"Contact {template.customer_id} not found")

        transactions = TransactionService(self.db)
        draft = generate(
            template,
            template.lines,
            customer,
            transactions.next_reference(TransactionType.INVOICE),
            today=_today(now),
        )
        invoice = transactions.create(draft.transaction)

        self.advance(template, now)
        template.running_since = None
        self.db.add(RecurringHistory(
            template_id=template.id,
            transaction_id=invoice.id,
            run_at=now,
            status=RunStatus.SUCCESS,
        ))
        self.db.flush()

        self.audit.record(
            AuditEvent.RECURRING_INVOICE_GENERATED, "recurring_template", template.id,
            transaction_id=invoice.id, reference=invoice.reference,
            occurrence=template.current_occurrences, next_run_at=template.next_run_at,
        )
        logger.info(
            "Generated invoice %s from template %s (next run %s)",
            invoice.reference, template.template_name, template.next_run_at,
        )
        return invoice


class RecurringScheduler:
    """
    Background firing of due templates.

    Each template is claimed with a conditional update on
    running_since and next_run_at; only the instance whose
    update touched exactly one row goes on to generate the
    invoice. A claim older than RECURRING_CLAIM_TIMEOUT_SECONDS
    is treated as abandoned.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def run_due(self, now: datetime | None = None) -> SchedulerRunResult:
        now = now or datetime.utcnow()
        result = SchedulerRunResult()

        with session_scope(self.session_factory) as db:
            candidates = [
                (t.id, t.next_run_at)
                for t in RecurringService(db).due_templates(now)
            ]

        for template_id, observed in candidates:
            if not self.claim(template_id, observed, now):
                logger.info("Template %s claimed elsewhere, skipping", template_id)
                result.skipped.append(template_id)
                continue
            try:
                with session_scope(self.session_factory) as db:
                    invoice = RecurringService(db).fire(
                        template_id, now, claimed_at=now, observed=observed,
                    )
                    result.generated[template_id] = invoice.id
            except ClaimLostError:
                logger.warning("Template %s claim taken over, skipping", template_id)
                result.skipped.append(template_id)
            except Exception as exc:
                logger.exception("Recurring template %s failed", template_id)
                self._record_failure(template_id, now, exc)
                result.failed[template_id] = str(exc)

        return result

    def claim(self, template_id: int, observed: date, now: datetime) -> bool:
        stale = now - timedelta(seconds=get_settings().RECURRING_CLAIM_TIMEOUT_SECONDS)
        with session_scope(self.session_factory) as db:
            claimed = db.execute(
                update(RecurringTemplate)
                .where(
                    RecurringTemplate.id == template_id,
                    RecurringTemplate.status == TemplateStatus.ACTIVE,
                    RecurringTemplate.next_run_at == observed,
                    or_(
                        RecurringTemplate.running_since.is_(None),
                        RecurringTemplate.running_since < stale,
                    ),
                )
                .values(running_since=now)
                .execution_options(synchronize_session=False)
            )
            return claimed.rowcount == 1

    def _record_failure(self, template_id: int, now: datetime, exc: Exception) -> None:
        with session_scope(self.session_factory) as db:
            db.execute(
                update(RecurringTemplate)
                .where(
                    RecurringTemplate.id == template_id,
                    RecurringTemplate.running_since == now,
                )
                .values(running_since=None)
                .execution_options(synchronize_session=False)
            )
            db.add(RecurringHistory(
                template_id=template_id,
                run_at=now,
                status=RunStatus.FAILED,
                error_message=str(exc)[:500],
            ))
