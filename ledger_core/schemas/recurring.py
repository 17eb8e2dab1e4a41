"""
Pydantic schemas for recurring invoice templates.
"""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from ledger_core.models.enums import Frequency, FrequencyUnit, TemplateStatus
from ledger_core.models.recurring import LAST_BUSINESS_DAY
from ledger_core.schemas.transaction import LineItemCreate, TransactionCreate


class RecurringTemplateCreate(BaseModel):
    template_name: str = Field(min_length=1, max_length=255)
    customer_id: int
    frequency: Frequency
    frequency_value: int | None = Field(default=None, gt=0)
    frequency_unit: FrequencyUnit | None = None
    day_of_month: int | None = None
    start_date: date
    end_date: date | None = None
    max_occurrences: int | None = Field(default=None, gt=0)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    exchange_rate: Decimal = Field(default=Decimal("1"), gt=0)
    memo: str | None = None
    payment_terms_days: int | None = Field(default=None, ge=0)
    lines: list[LineItemCreate] = Field(min_length=1)

    @model_validator(mode="after")
    def check_schedule(self):
        if self.frequency == Frequency.CUSTOM and (
            self.frequency_value is None or self.frequency_unit is None
        ):
            raise ValueError(
                "custom frequency requires frequency_value and frequency_unit"
            )
        if self.day_of_month is not None and not (
            self.day_of_month == LAST_BUSINESS_DAY or 1 <= self.day_of_month <= 31
        ):
            raise ValueError("day_of_month must be 1-31 or -1 (last business day)")
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("end_date is before start_date")
        return self


class RecurringTemplateResponse(BaseModel):
    id: int
    template_name: str
    customer_id: int
    frequency: Frequency
    frequency_value: int | None
    frequency_unit: FrequencyUnit | None
    day_of_month: int | None
    start_date: date
    end_date: date | None
    max_occurrences: int | None
    current_occurrences: int
    next_run_at: date
    status: TemplateStatus
    last_run_at: datetime | None

    model_config = {"from_attributes": True}


class DraftInvoice(BaseModel):
    """
    An invoice built from a template, not yet persisted.

    `transaction` is ready to hand to TransactionService.create.
    """
    template_id: int
    transaction: TransactionCreate
    lines: list[LineItemCreate]
    subtotal: Decimal
    tax_amount: Decimal
    total: Decimal


class SchedulerRunResult(BaseModel):
    generated: dict[int, int] = {}  # template id -> transaction id
    failed: dict[int, str] = {}  # template id -> error message
    skipped: list[int] = []  # templates claimed by another worker
