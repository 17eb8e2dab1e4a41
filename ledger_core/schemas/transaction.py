"""
Pydantic schemas for transaction, payment and credit operations.
"""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from ledger_core.models.enums import TransactionType, TransactionStatus
from ledger_core.schemas.ledger import LedgerEntryCreate


class LineItemCreate(BaseModel):
    description: str = Field(min_length=1, max_length=255)
    quantity: Decimal = Field(default=Decimal("1"), gt=0, decimal_places=4)
    unit_price: Decimal = Field(ge=0, decimal_places=4)
    amount: Decimal | None = Field(default=None, ge=0, decimal_places=4)
    account_id: int
    tax_account_id: int | None = None
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=4)

    @model_validator(mode="after")
    def default_amount(self):
        if self.amount is None:
            self.amount = self.quantity * self.unit_price
        if self.tax_amount > 0 and self.tax_account_id is None:
            raise ValueError("tax_amount requires a tax_account_id")
        return self


class AccountMapping(BaseModel):
    """
    Control accounts a posting touches besides the line accounts.

    Any mapping left empty is resolved to the lowest-coded
    active account of the matching type.
    """
    receivable_account_id: int | None = None
    payable_account_id: int | None = None
    bank_account_id: int | None = None
    destination_account_id: int | None = None


class TransactionCreate(BaseModel):
    transaction_type: TransactionType
    reference: str | None = Field(default=None, max_length=50)
    transaction_date: date
    due_date: date | None = None
    description: str = Field(default="", max_length=255)
    contact_id: int | None = None
    currency: str = Field(default="USD", min_length=3, max_length=3)
    exchange_rate: Decimal = Field(default=Decimal("1"), gt=0)
    # Required for journal entries and transfers; otherwise derived
    amount: Decimal | None = Field(default=None, gt=0, decimal_places=4)
    line_items: list[LineItemCreate] = []
    entries: list[LedgerEntryCreate] = []
    accounts: AccountMapping = Field(default_factory=AccountMapping)
    idempotency_key: str | None = Field(default=None, max_length=100)


class PaymentApplication(BaseModel):
    """Part of a payment applied to one invoice or bill."""
    target_id: int
    amount: Decimal = Field(gt=0, decimal_places=4)


class PaymentCreate(BaseModel):
    """Customer payment (or vendor payment for pay_bills)."""
    contact_id: int
    amount: Decimal = Field(gt=0, decimal_places=4)
    transaction_date: date
    reference: str | None = Field(default=None, max_length=50)
    description: str = Field(default="", max_length=255)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    exchange_rate: Decimal = Field(default=Decimal("1"), gt=0)
    applications: list[PaymentApplication] = []
    accounts: AccountMapping = Field(default_factory=AccountMapping)
    idempotency_key: str = Field(min_length=1, max_length=100)

    @model_validator(mode="after")
    def applications_within_amount(self):
        applied = sum((a.amount for a in self.applications), Decimal("0"))
        if applied > self.amount:
            raise ValueError(
                f"applications total {applied} exceeds payment amount {self.amount}"
            )
        targets = [a.target_id for a in self.applications]
        if len(targets) != len(set(targets)):
            raise ValueError("each document may appear only once per payment")
        return self


# --- Response Schemas ---

class LineItemResponse(BaseModel):
    id: int
    description: str
    quantity: Decimal
    unit_price: Decimal
    amount: Decimal
    account_id: int
    tax_account_id: int | None
    tax_amount: Decimal

    model_config = {"from_attributes": True}


class TransactionResponse(BaseModel):
    id: int
    transaction_type: TransactionType
    reference: str
    status: TransactionStatus
    transaction_date: date
    due_date: date | None
    description: str
    amount: Decimal
    balance: Decimal
    contact_id: int | None
    currency: str
    exchange_rate: Decimal
    source_transaction_id: int | None
    created_at: datetime
    completed_at: datetime | None
    line_items: list[LineItemResponse] = []

    model_config = {"from_attributes": True}


class ApplicationLinkResponse(BaseModel):
    id: int
    source_id: int
    target_id: int
    amount: Decimal
    idempotency_key: str
    created_at: datetime

    model_config = {"from_attributes": True}


class PaymentResult(BaseModel):
    payment: TransactionResponse
    links: list[ApplicationLinkResponse]
    credit: TransactionResponse | None = None


class RestoredDocument(BaseModel):
    id: int
    reference: str
    previous_balance: Decimal
    new_balance: Decimal
    status: TransactionStatus


class DeletedDocument(BaseModel):
    id: int
    reference: str


class DeletePaymentResult(BaseModel):
    payment_id: int
    credits_deleted: list[DeletedDocument]
    invoices_restored: list[RestoredDocument]
