"""
Recurring invoice templates.

A template describes an invoice that is generated on a
schedule. `next_run_at` and `current_occurrences` are only
advanced after the invoice for a run has been created, and
`running_since` is the claim marker that keeps two scheduler
instances from firing the same template at once.
"""

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    String, Integer, Date, DateTime, Numeric, Text, ForeignKey,
    Enum as SAEnum,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_core.models.base import Base
from ledger_core.models.enums import (
    Frequency,
    FrequencyUnit,
    TemplateStatus,
    RunStatus,
)

# dayOfMonth sentinel meaning "last business day of the month"
LAST_BUSINESS_DAY = -1


class RecurringTemplate(Base):
    __tablename__ = "recurring_templates"

    id: Mapped[int] = mapped_column(primary_key=True)
    template_name: Mapped[str] = mapped_column(String(255), nullable=False)
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("contacts.id"), nullable=False, index=True
    )
    frequency: Mapped[Frequency] = mapped_column(
        SAEnum(Frequency, name="frequency_enum", create_constraint=True),
        nullable=False,
    )
    frequency_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    frequency_unit: Mapped[FrequencyUnit | None] = mapped_column(
        SAEnum(FrequencyUnit, name="frequency_unit_enum", create_constraint=True),
        nullable=True,
    )
    day_of_month: Mapped[int | None] = mapped_column(Integer, nullable=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    max_occurrences: Mapped[int | None] = mapped_column(Integer, nullable=True)
    current_occurrences: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    next_run_at: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    status: Mapped[TemplateStatus] = mapped_column(
        SAEnum(TemplateStatus, name="template_status_enum", create_constraint=True),
        nullable=False,
        default=TemplateStatus.ACTIVE,
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    exchange_rate: Mapped[Decimal] = mapped_column(
        Numeric(19, 8), nullable=False, default=Decimal("1")
    )
    memo: Mapped[str | None] = mapped_column(Text, nullable=True)
    payment_terms_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    running_since: Mapped[datetime | None] = mapped_column(
        DateTime, nullable=True
    )
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )

    lines: Mapped[list["RecurringLine"]] = relationship(
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="RecurringLine.id",
    )

    def __repr__(self) -> str:
        return (
            f"<RecurringTemplate {self.template_name} "
            f"{self.frequency.value} next={self.next_run_at}>"
        )


class RecurringLine(Base):
    __tablename__ = "recurring_lines"

    id: Mapped[int] = mapped_column(primary_key=True)
    template_id: Mapped[int] = mapped_column(
        ForeignKey("recurring_templates.id"), nullable=False, index=True
    )
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(
        Numeric(19, 4), nullable=False, default=Decimal("1")
    )
    unit_price: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id"), nullable=False
    )
    tax_account_id: Mapped[int | None] = mapped_column(
        ForeignKey("accounts.id"), nullable=True
    )
    tax_amount: Mapped[Decimal] = mapped_column(
        Numeric(19, 4), nullable=False, default=Decimal("0")
    )

    template: Mapped["RecurringTemplate"] = relationship(back_populates="lines")


class RecurringHistory(Base):
    """One scheduler run of a template, successful or not."""

    __tablename__ = "recurring_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    template_id: Mapped[int] = mapped_column(
        ForeignKey("recurring_templates.id"), nullable=False, index=True
    )
    transaction_id: Mapped[int | None] = mapped_column(
        ForeignKey("transactions.id"), nullable=True
    )
    run_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
    status: Mapped[RunStatus] = mapped_column(
        SAEnum(RunStatus, name="run_status_enum", create_constraint=True),
        nullable=False,
    )
    error_message: Mapped[str | None] = mapped_column(String(500), nullable=True)
