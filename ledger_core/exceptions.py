"""
Domain errors raised by the ledger services.

Every error derives from LedgerError, which is a ValueError,
so a caller can catch the whole family or one specific case.
None of these are ever corrected automatically; they are
surfaced to the caller and the unit of work is rolled back.
"""


class LedgerError(ValueError):
    """Base class for all ledger engine errors."""


class NotFoundError(LedgerError):
    """A referenced row does not exist."""


class UnbalancedEntriesError(LedgerError):
    """Total debits and total credits of a posting differ."""


class InvalidAccountError(LedgerError):
    """An account is missing, inactive, or of the wrong type."""


class InvalidContactTypeError(LedgerError):
    """
    A contact does not fit the transaction.

    Receivable-side documents need a customer, payable-side
    documents need a vendor, and a credit can only settle
    documents of its own contact.
    """


class InsufficientCreditError(LedgerError):
    """A credit does not have enough unapplied balance."""


class InsufficientBalanceError(LedgerError):
    """A settlement exceeds the remaining balance of the target."""


class DanglingReferenceError(LedgerError):
    """A delete would leave live application links or dependents behind."""


class ReconciliationMismatchError(LedgerError):
    """Opening balance plus cleared entries does not equal the statement."""


class InvalidStateError(LedgerError):
    """The requested lifecycle transition is not allowed."""


class ClaimLostError(InvalidStateError):
    """A scheduler claim was taken over before its run finished."""
