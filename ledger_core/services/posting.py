"""
Posting rules — the ledger entries implied by each transaction type.

    invoice          DR receivable      CR line accounts + tax
    sales_receipt    DR bank            CR line accounts + tax
    deposit          DR bank            CR line accounts + tax
    customer_credit  DR line + tax      CR receivable
    bill             DR line + tax      CR payable
    expense, cheque  DR line + tax      CR bank
    vendor_credit    DR payable         CR line accounts + tax
    payment          DR bank            CR receivable
    bill_payment     DR payable         CR bank
    transfer         DR destination     CR bank
    journal_entry    entries supplied by the caller

Line amounts are converted to home currency one by one and
the control-account leg is the sum of the converted lines,
so rounding can never unbalance a posting.
"""

from collections import OrderedDict
from decimal import Decimal

from ledger_core.exceptions import InvalidAccountError
from ledger_core.models.account import Account
from ledger_core.models.enums import AccountType, TransactionType
from ledger_core.money import ZERO, convert, quantize, to_minor_units
from ledger_core.schemas.ledger import LedgerEntryCreate
from ledger_core.schemas.transaction import AccountMapping

DEBIT = "debit"
CREDIT = "credit"

RECEIVABLE = "receivable_account_id"
PAYABLE = "payable_account_id"
BANK = "bank_account_id"
DESTINATION = "destination_account_id"

# Line-item documents: (control account, side of the control leg)
LINE_RULES = {
    TransactionType.INVOICE: (RECEIVABLE, DEBIT),
    TransactionType.SALES_RECEIPT: (BANK, DEBIT),
    TransactionType.DEPOSIT: (BANK, DEBIT),
    TransactionType.CUSTOMER_CREDIT: (RECEIVABLE, CREDIT),
    TransactionType.BILL: (PAYABLE, CREDIT),
    TransactionType.EXPENSE: (BANK, CREDIT),
    TransactionType.CHEQUE: (BANK, CREDIT),
    TransactionType.VENDOR_CREDIT: (PAYABLE, DEBIT),
}

# Amount-only documents: (debit account, credit account)
AMOUNT_RULES = {
    TransactionType.PAYMENT: (BANK, RECEIVABLE),
    TransactionType.BILL_PAYMENT: (PAYABLE, BANK),
    TransactionType.TRANSFER: (DESTINATION, BANK),
}

CASH_LIKE_TYPES = frozenset({
    AccountType.BANK,
    AccountType.CREDIT_CARD,
    AccountType.CURRENT_ASSETS,
})

# Which account types each mapping slot accepts, and its fallback type
SLOT_TYPES = {
    RECEIVABLE: (frozenset({AccountType.ACCOUNTS_RECEIVABLE}), AccountType.ACCOUNTS_RECEIVABLE),
    PAYABLE: (frozenset({AccountType.ACCOUNTS_PAYABLE}), AccountType.ACCOUNTS_PAYABLE),
    BANK: (CASH_LIKE_TYPES, AccountType.BANK),
    DESTINATION: (CASH_LIKE_TYPES, None),
}


def required_slots(transaction_type: TransactionType) -> tuple[str, ...]:
    if transaction_type in LINE_RULES:
        return (LINE_RULES[transaction_type][0],)
    if transaction_type in AMOUNT_RULES:
        return AMOUNT_RULES[transaction_type]
    return ()


def resolve_accounts(ledger, transaction_type: TransactionType,
                     mapping: AccountMapping) -> AccountMapping:
    """
    Fill in and check the control accounts a posting needs.

    An empty slot falls back to the default account of its
    type; a supplied account must exist, be active and be of
    an accepted type.
    """
    resolved = mapping.model_copy()
    for slot in required_slots(transaction_type):
        accepted, fallback = SLOT_TYPES[slot]
        account_id = getattr(mapping, slot)
        if account_id is None:
            if fallback is None:
                raise InvalidAccountError(
                    f"{transaction_type.value} requires {slot}"
                )
            account = ledger.get_default_account(fallback)
        else:
            account = ledger.db.get(Account, account_id)
            if account is None or not account.is_active:
                raise InvalidAccountError(
                    f"Account {account_id} for {slot} is missing or inactive"
                )
            if account.account_type not in accepted:
                raise InvalidAccountError(
                    f"Account {account.code} ({account.account_type.value}) "
                    f"cannot be used as {slot}"
                )
        setattr(resolved, slot, account.id)
    if (
        transaction_type == TransactionType.TRANSFER
        and resolved.bank_account_id == resolved.destination_account_id
    ):
        raise InvalidAccountError("Cannot transfer to the same account")
    return resolved


def line_total(lines) -> Decimal:
    """Document total in transaction currency: line amounts plus tax."""
    return quantize(sum(
        (quantize(line.amount) + quantize(line.tax_amount or ZERO) for line in lines),
        ZERO,
    ))


def _line_legs(lines, exchange_rate) -> "OrderedDict[int, Decimal]":
    legs: OrderedDict[int, Decimal] = OrderedDict()
    for line in lines:
        legs[line.account_id] = legs.get(line.account_id, ZERO) + convert(
            line.amount, exchange_rate
        )
        if line.tax_amount and line.tax_account_id is not None:
            legs[line.tax_account_id] = legs.get(line.tax_account_id, ZERO) + convert(
                line.tax_amount, exchange_rate
            )
    return legs


def _entry(account_id: int, side: str, amount: Decimal, description: str):
    if side == DEBIT:
        return LedgerEntryCreate(account_id=account_id, debit=amount, description=description)
    return LedgerEntryCreate(account_id=account_id, credit=amount, description=description)


def build_entries(
    transaction_type: TransactionType,
    accounts: AccountMapping,
    description: str,
    lines=(),
    amount: Decimal | None = None,
    exchange_rate: Decimal = Decimal("1"),
    entries=(),
) -> list[LedgerEntryCreate]:
    """Return the balanced entries for one transaction."""
    if transaction_type == TransactionType.JOURNAL_ENTRY:
        return list(entries)

    if transaction_type in AMOUNT_RULES:
        debit_slot, credit_slot = AMOUNT_RULES[transaction_type]
        home_amount = convert(amount, exchange_rate)
        return [
            _entry(getattr(accounts, debit_slot), DEBIT, home_amount, description),
            _entry(getattr(accounts, credit_slot), CREDIT, home_amount, description),
        ]

    control_slot, control_side = LINE_RULES[transaction_type]
    line_side = CREDIT if control_side == DEBIT else DEBIT
    legs = _line_legs(lines, exchange_rate)
    control_amount = quantize(sum(legs.values(), ZERO))

    result = [_entry(getattr(accounts, control_slot), control_side, control_amount, description)]
    for account_id, leg_amount in legs.items():
        if to_minor_units(leg_amount) > 0:
            result.append(_entry(account_id, line_side, quantize(leg_amount), description))
    return result
