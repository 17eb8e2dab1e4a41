"""
Pydantic schemas for bank reconciliation.
"""

from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from ledger_core.models.enums import ReconciliationStatus


class ReconciliationStart(BaseModel):
    account_id: int
    statement_date: date
    statement_ending_balance: Decimal = Field(decimal_places=4)


class ReconciliationResponse(BaseModel):
    id: int
    account_id: int
    statement_date: date
    statement_ending_balance: Decimal
    opening_balance: Decimal
    status: ReconciliationStatus
    previous_reconciliation_id: int | None
    created_at: datetime
    completed_at: datetime | None

    model_config = {"from_attributes": True}


class ReconciliationSummary(BaseModel):
    reconciliation_id: int
    opening_balance: Decimal
    cleared_total: Decimal
    statement_ending_balance: Decimal
    difference: Decimal
