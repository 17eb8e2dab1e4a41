"""
Ledger service — the core of the bookkeeping engine.

This service enforces the fundamental rules:
1. Every posting must balance (debits = credits)
2. Accounts must exist and be active
3. Account running balances change only here, by exactly
   the effect of the entries posted or unposted
4. A transaction's entries are written and removed as a set

No other service writes ledger entries or account balances.
All financial operations go through this service.
"""

import logging
from datetime import date
from decimal import Decimal

from sqlalchemy import select, func, delete
from sqlalchemy.orm import Session

from ledger_core.config import get_settings
from ledger_core.exceptions import (
    DanglingReferenceError,
    InvalidAccountError,
    NotFoundError,
    UnbalancedEntriesError,
)
from ledger_core.models.account import Account
from ledger_core.models.enums import AccountType, ReconciliationStatus
from ledger_core.models.ledger_entry import LedgerEntry
from ledger_core.models.reconciliation import Reconciliation, ReconciliationItem
from ledger_core.models.transaction import Transaction
from ledger_core.money import from_minor_units, quantize, to_minor_units
from ledger_core.schemas.ledger import (
    AccountCreate,
    AccountDrift,
    IntegrityReport,
    LedgerEntryCreate,
)
from ledger_core.services.audit_service import AuditEvent, AuditService

logger = logging.getLogger(__name__)


class LedgerService:
    """
    All ledger and account-balance operations pass through here.

    The service takes a database session as a constructor
    argument. This means the caller controls the transaction
    boundary — they decide when to commit or rollback.
    """

    def __init__(self, db: Session):
        self.db = db
        self.audit = AuditService(db)

    # --- Account registry ---

    def create_account(self, request: AccountCreate) -> Account:
        """
        Create a new chart-of-accounts entry.

        Raises ValueError if the account code already exists.
        The opening balance is informational (it seeds the first
        reconciliation); the running balance starts at zero and
        is moved only by postings.
        """
        existing = self.db.execute(
            select(Account).where(Account.code == request.code)
        ).scalar_one_or_none()

        if existing:
            raise ValueError(f"Account with code '{request.code}' already exists")

        account = Account(
            code=request.code,
            name=request.name,
            account_type=request.account_type,
            currency=request.currency,
            balance=Decimal("0"),
            opening_balance=quantize(request.opening_balance),
        )
        self.db.add(account)
        self.db.flush()
        self.audit.record(
            AuditEvent.ACCOUNT_CREATED, "account", account.id,
            code=account.code, account_type=account.account_type.value,
        )
        return account

    def get_account(self, account_id: int) -> Account:
        account = self.db.get(Account, account_id)
        if not account:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    def get_default_account(self, account_type: AccountType) -> Account:
        """Lowest-coded active account of a type."""
        account = self.db.execute(
            select(Account)
            .where(
                Account.account_type == account_type,
                Account.is_active.is_(True),
            )
            .order_by(Account.code)
            .limit(1)
        ).scalar_one_or_none()
        if not account:
            raise InvalidAccountError(
                f"No active {account_type.value} account is configured"
            )
        return account

    def deactivate_account(self, account_id: int) -> Account:
        account = self.get_account(account_id)
        account.is_active = False
        self.db.flush()
        return account

    def delete_account(self, account_id: int) -> None:
        """Delete an account that no entry has ever referenced."""
        account = self.get_account(account_id)
        referenced = self.db.execute(
            select(LedgerEntry.id)
            .where(LedgerEntry.account_id == account_id)
            .limit(1)
        ).scalar_one_or_none()
        if referenced is not None:
            raise DanglingReferenceError(
                f"Account {account.code} has ledger entries; deactivate it instead"
            )
        self.db.delete(account)
        self.db.flush()

    # --- Posting ---

    def validate_entries(
        self, entries: list[LedgerEntryCreate]
    ) -> dict[int, Account]:
        """
        Check a proposed posting without writing anything.

        Returns the referenced accounts, locked for update in
        ascending id order.
        """
        if len(entries) < 2:
            raise UnbalancedEntriesError(
                "A posting needs at least one debit and one credit"
            )

        # One side per entry, after rounding to stored precision
        for entry in entries:
            if (to_minor_units(entry.debit) > 0) == (to_minor_units(entry.credit) > 0):
                raise UnbalancedEntriesError(
                    f"Entry for account {entry.account_id} must have exactly one "
                    f"nonzero side at currency precision "
                    f"(debit={entry.debit}, credit={entry.credit})"
                )

        account_ids = sorted({entry.account_id for entry in entries})
        accounts = self.db.execute(
            select(Account)
            .where(Account.id.in_(account_ids))
            .order_by(Account.id)
            .with_for_update()
        ).scalars().all()

        accounts_by_id = {a.id: a for a in accounts}

        # Check all accounts exist
        missing = set(account_ids) - set(accounts_by_id.keys())
        if missing:
            raise InvalidAccountError(f"Accounts not found: {sorted(missing)}")

        # Check all accounts are active
        for account in accounts_by_id.values():
            if not account.is_active:
                raise InvalidAccountError(f"Account {account.code} is not active")

        # --- Enforce balance rule, in minor units ---
        total_debits = sum(to_minor_units(e.debit) for e in entries)
        total_credits = sum(to_minor_units(e.credit) for e in entries)
        tolerance = get_settings().BALANCE_TOLERANCE_MINOR_UNITS

        if total_debits == 0 or abs(total_debits - total_credits) > tolerance:
            raise UnbalancedEntriesError(
                f"Transaction does not balance: "
                f"debits={from_minor_units(total_debits)}, "
                f"credits={from_minor_units(total_credits)}"
            )

        return accounts_by_id

    def post_entries(
        self,
        transaction: Transaction,
        entries: list[LedgerEntryCreate],
        entry_date: date | None = None,
    ) -> list[LedgerEntry]:
        """
        Post a balanced set of ledger entries for a transaction.

        This is the most critical method in the entire system.
        It enforces:
        - The transaction row exists
        - All referenced accounts exist and are active
        - Total debits equal total credits
        - Each account balance moves by exactly its entries

        If any check fails, nothing is written. Posting a
        transaction that already has entries returns them
        unchanged (idempotent retry). The caller is responsible
        for committing after this method returns successfully.
        """
        if transaction.id is None:
            raise NotFoundError("Transaction must be saved before it is posted")

        existing = self.get_entries_by_transaction(transaction.id)
        if existing:
            return existing

        accounts_by_id = self.validate_entries(entries)

        ledger_entries = []
        for entry_data in entries:
            debit = quantize(entry_data.debit)
            credit = quantize(entry_data.credit)
            entry = LedgerEntry(
                transaction_id=transaction.id,
                account_id=entry_data.account_id,
                debit=debit,
                credit=credit,
                description=entry_data.description or transaction.description,
                entry_date=entry_date or transaction.transaction_date,
            )
            account = accounts_by_id[entry_data.account_id]
            account.balance = quantize(
                Decimal(account.balance) + account.signed_amount(debit, credit)
            )
            self.db.add(entry)
            ledger_entries.append(entry)

        self.db.flush()
        total = sum((e.debit for e in ledger_entries), Decimal("0"))
        self.audit.record(
            AuditEvent.ENTRIES_POSTED, "transaction", transaction.id,
            entries=len(ledger_entries), total=total,
        )
        logger.info(
            "Posted %d entries for transaction %s (total %s)",
            len(ledger_entries), transaction.id, total,
        )
        return ledger_entries

    def unpost(self, transaction_id: int) -> int:
        """
        Delete every entry of a transaction and reverse its effect.

        Must run while the transaction row still exists. It is
        the first step of removing a transaction, never a cleanup
        afterwards. Entries already cleared by a completed
        reconciliation cannot be removed.

        Returns the number of entries removed.
        """
        if self.db.get(Transaction, transaction_id) is None:
            raise NotFoundError(
                f"Transaction {transaction_id} not found; "
                f"entries must be unposted before the transaction is deleted"
            )

        entries = self.get_entries_by_transaction(transaction_id)
        if not entries:
            return 0

        entry_ids = [e.id for e in entries]
        reconciled = self.db.execute(
            select(ReconciliationItem.ledger_entry_id)
            .join(Reconciliation)
            .where(
                ReconciliationItem.ledger_entry_id.in_(entry_ids),
                ReconciliationItem.is_cleared.is_(True),
                Reconciliation.status == ReconciliationStatus.COMPLETED,
            )
            .limit(1)
        ).scalar_one_or_none()
        if reconciled is not None:
            raise DanglingReferenceError(
                f"Transaction {transaction_id} has entries cleared in a "
                f"completed reconciliation"
            )

        account_ids = sorted({e.account_id for e in entries})
        accounts = self.db.execute(
            select(Account)
            .where(Account.id.in_(account_ids))
            .order_by(Account.id)
            .with_for_update()
        ).scalars().all()
        accounts_by_id = {a.id: a for a in accounts}

        for entry in entries:
            account = accounts_by_id[entry.account_id]
            account.balance = quantize(
                Decimal(account.balance)
                - account.signed_amount(entry.debit, entry.credit)
            )

        # Items of in-progress reconciliations simply drop out
        self.db.execute(
            delete(ReconciliationItem).where(
                ReconciliationItem.ledger_entry_id.in_(entry_ids)
            )
        )
        for entry in entries:
            self.db.delete(entry)
        self.db.flush()

        self.audit.record(
            AuditEvent.ENTRIES_UNPOSTED, "transaction", transaction_id,
            entries=len(entries),
        )
        logger.info(
            "Unposted %d entries for transaction %s", len(entries), transaction_id
        )
        return len(entries)

    # --- Queries ---

    def get_account_balance(self, account_id: int) -> Decimal:
        """The running balance maintained by postings."""
        return Decimal(self.get_account(account_id).balance)

    def get_derived_balance(self, account_id: int) -> Decimal:
        """
        Recalculate an account's balance from its entries.

        For debit-normal accounts: balance = debits - credits
        For credit-normal accounts: balance = credits - debits
        """
        account = self.get_account(account_id)

        total_debits, total_credits = self.db.execute(
            select(
                func.coalesce(func.sum(LedgerEntry.debit), 0),
                func.coalesce(func.sum(LedgerEntry.credit), 0),
            ).where(LedgerEntry.account_id == account_id)
        ).one()

        return quantize(
            account.signed_amount(
                Decimal(str(total_debits)), Decimal(str(total_credits))
            )
        )

    def get_entries_by_account(self, account_id: int) -> list[LedgerEntry]:
        """Return all entries for an account, newest first."""
        entries = self.db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.account_id == account_id)
            .order_by(LedgerEntry.entry_date.desc(), LedgerEntry.id.desc())
        ).scalars().all()
        return list(entries)

    def get_entries_by_transaction(self, transaction_id: int) -> list[LedgerEntry]:
        """Return all entries for a transaction."""
        entries = self.db.execute(
            select(LedgerEntry)
            .where(LedgerEntry.transaction_id == transaction_id)
            .order_by(LedgerEntry.id)
        ).scalars().all()
        return list(entries)

    def check_integrity(self) -> IntegrityReport:
        """
        Verify the whole ledger.

        Checks that global debits equal global credits, that
        every transaction's entries balance, and that each
        account's running balance equals the balance derived
        from its entries.
        """
        total_debits, total_credits = self.db.execute(
            select(
                func.coalesce(func.sum(LedgerEntry.debit), 0),
                func.coalesce(func.sum(LedgerEntry.credit), 0),
            )
        ).one()
        total_debits = quantize(Decimal(str(total_debits)))
        total_credits = quantize(Decimal(str(total_credits)))

        per_transaction = self.db.execute(
            select(
                LedgerEntry.transaction_id,
                func.sum(LedgerEntry.debit),
                func.sum(LedgerEntry.credit),
            ).group_by(LedgerEntry.transaction_id)
        ).all()
        unbalanced = sorted(
            txn_id for txn_id, debits, credits in per_transaction
            if to_minor_units(Decimal(str(debits))) != to_minor_units(Decimal(str(credits)))
        )

        drifted = []
        for account in self.db.execute(select(Account).order_by(Account.id)).scalars():
            derived = self.get_derived_balance(account.id)
            if to_minor_units(account.balance) != to_minor_units(derived):
                drifted.append(AccountDrift(
                    account_id=account.id,
                    code=account.code,
                    stored_balance=quantize(account.balance),
                    derived_balance=derived,
                ))

        difference = total_debits - total_credits
        return IntegrityReport(
            total_debits=total_debits,
            total_credits=total_credits,
            difference=difference,
            is_balanced=difference == 0 and not unbalanced,
            unbalanced_transaction_ids=unbalanced,
            drifted_accounts=drifted,
        )
