"""
Pydantic schemas for ledger operations.

These define the contract — what data comes in, what data
goes out. They are separate from the database models because
the request shape and the storage shape are often different.
"""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field, model_validator

from ledger_core.models.enums import AccountType, TransactionStatus


# --- Request Schemas ---

class AccountCreate(BaseModel):
    """Request to create a chart-of-accounts entry."""
    code: str = Field(min_length=1, max_length=20)
    name: str = Field(min_length=1, max_length=100)
    account_type: AccountType
    currency: str = Field(default="USD", min_length=3, max_length=3)
    opening_balance: Decimal = Field(default=Decimal("0"), decimal_places=4)


class LedgerEntryCreate(BaseModel):
    """A single debit or credit line. Exactly one side is nonzero."""
    account_id: int
    debit: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=4)
    credit: Decimal = Field(default=Decimal("0"), ge=0, decimal_places=4)
    description: str = Field(default="", max_length=255)

    @model_validator(mode="after")
    def exactly_one_side(self):
        if (self.debit > 0) == (self.credit > 0):
            raise ValueError(
                "exactly one of debit or credit must be a positive amount"
            )
        return self


# --- Response Schemas ---

class AccountResponse(BaseModel):
    id: int
    code: str
    name: str
    account_type: AccountType
    currency: str
    balance: Decimal
    opening_balance: Decimal
    last_reconciled_date: date | None
    last_reconciled_balance: Decimal | None
    is_active: bool

    model_config = {"from_attributes": True}


class LedgerEntryResponse(BaseModel):
    id: int
    transaction_id: int
    account_id: int
    debit: Decimal
    credit: Decimal
    description: str
    entry_date: date
    created_at: datetime

    model_config = {"from_attributes": True}


class AccountDrift(BaseModel):
    account_id: int
    code: str
    stored_balance: Decimal
    derived_balance: Decimal


class IntegrityReport(BaseModel):
    """Result of a global ledger consistency check."""
    total_debits: Decimal
    total_credits: Decimal
    difference: Decimal
    is_balanced: bool
    unbalanced_transaction_ids: list[int] = []
    drifted_accounts: list[AccountDrift] = []


class TransactionDrift(BaseModel):
    transaction_id: int
    reference: str
    stored_balance: Decimal
    expected_balance: Decimal
    stored_status: TransactionStatus
    expected_status: TransactionStatus


class VerificationReport(BaseModel):
    """Ledger check plus document balances rebuilt from settlements and links."""
    ledger: IntegrityReport
    transaction_drift: list[TransactionDrift] = []
    is_consistent: bool


class RepairResult(BaseModel):
    dry_run: bool
    accounts_fixed: list[int] = []
    transactions_fixed: list[int] = []
    # Unbalanced postings are reported, never rewritten
    unbalanced_transaction_ids: list[int] = []
