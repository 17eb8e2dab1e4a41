"""
Shared enumerations for database models.

Using Python enums mapped to database enums ensures that
only valid values can be stored. An invalid account type
or transaction status is caught at the database level, not
just in Python validation.
"""

import enum


class AccountType(str, enum.Enum):
    """Chart of accounts taxonomy."""
    ACCOUNTS_RECEIVABLE = "accounts_receivable"
    CURRENT_ASSETS = "current_assets"
    BANK = "bank"
    PROPERTY_PLANT_EQUIPMENT = "property_plant_equipment"
    LONG_TERM_ASSETS = "long_term_assets"
    ACCOUNTS_PAYABLE = "accounts_payable"
    CREDIT_CARD = "credit_card"
    OTHER_CURRENT_LIABILITIES = "other_current_liabilities"
    LONG_TERM_LIABILITIES = "long_term_liabilities"
    EQUITY = "equity"
    INCOME = "income"
    OTHER_INCOME = "other_income"
    COST_OF_GOODS_SOLD = "cost_of_goods_sold"
    EXPENSES = "expenses"
    OTHER_EXPENSE = "other_expense"


# Accounts that increase on debit. Everything else increases on credit.
DEBIT_NORMAL_TYPES = frozenset({
    AccountType.ACCOUNTS_RECEIVABLE,
    AccountType.CURRENT_ASSETS,
    AccountType.BANK,
    AccountType.PROPERTY_PLANT_EQUIPMENT,
    AccountType.LONG_TERM_ASSETS,
    AccountType.COST_OF_GOODS_SOLD,
    AccountType.EXPENSES,
    AccountType.OTHER_EXPENSE,
})


class ContactType(str, enum.Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    BOTH = "both"


class TransactionType(str, enum.Enum):
    INVOICE = "invoice"
    BILL = "bill"
    EXPENSE = "expense"
    PAYMENT = "payment"
    BILL_PAYMENT = "bill_payment"
    DEPOSIT = "deposit"
    CUSTOMER_CREDIT = "customer_credit"
    VENDOR_CREDIT = "vendor_credit"
    JOURNAL_ENTRY = "journal_entry"
    TRANSFER = "transfer"
    CHEQUE = "cheque"
    SALES_RECEIPT = "sales_receipt"


class TransactionStatus(str, enum.Enum):
    DRAFT = "draft"
    OPEN = "open"
    PARTIAL = "partial"
    COMPLETED = "completed"
    VOIDED = "voided"
    UNAPPLIED_CREDIT = "unapplied_credit"
    APPLIED_CREDIT = "applied_credit"


# Documents that carry an outstanding balance and can be settled
SETTLEABLE_TYPES = frozenset({TransactionType.INVOICE, TransactionType.BILL})

# Documents that carry unapplied value for invoices/bills
CREDIT_TYPES = frozenset({
    TransactionType.CUSTOMER_CREDIT,
    TransactionType.VENDOR_CREDIT,
})

PAYMENT_TYPES = frozenset({
    TransactionType.PAYMENT,
    TransactionType.BILL_PAYMENT,
})

# Which document a credit may settle
CREDIT_TARGET_TYPE = {
    TransactionType.CUSTOMER_CREDIT: TransactionType.INVOICE,
    TransactionType.VENDOR_CREDIT: TransactionType.BILL,
}

# Which document a payment may settle, and the credit it spawns
PAYMENT_TARGET_TYPE = {
    TransactionType.PAYMENT: TransactionType.INVOICE,
    TransactionType.BILL_PAYMENT: TransactionType.BILL,
}
PAYMENT_CREDIT_TYPE = {
    TransactionType.PAYMENT: TransactionType.CUSTOMER_CREDIT,
    TransactionType.BILL_PAYMENT: TransactionType.VENDOR_CREDIT,
}

# Receivable-side documents need a customer, payable-side a vendor
CUSTOMER_TYPES = frozenset({
    TransactionType.INVOICE,
    TransactionType.PAYMENT,
    TransactionType.CUSTOMER_CREDIT,
    TransactionType.SALES_RECEIPT,
})
VENDOR_TYPES = frozenset({
    TransactionType.BILL,
    TransactionType.BILL_PAYMENT,
    TransactionType.VENDOR_CREDIT,
})


class Frequency(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class FrequencyUnit(str, enum.Enum):
    DAYS = "days"
    WEEKS = "weeks"
    MONTHS = "months"


class TemplateStatus(str, enum.Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class RunStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"


class ReconciliationStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
