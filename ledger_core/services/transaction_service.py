"""
Transaction service — the lifecycle of business documents.

Each posting operation:
1. Checks the contact fits the document type
2. Resolves the control accounts and builds the entries
3. Validates the entries (nothing is written if they fail)
4. Creates the transaction record
5. Posts the ledger entries through LedgerService
6. Sets the initial status and balance for the type

Balance and status of a transaction change only here:
settle/unsettle for invoices and bills, consume/restore for
credits. The caller controls the commit.
"""

import logging
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select, func, or_, update, delete
from sqlalchemy.orm import Session

from ledger_core.config import get_settings
from ledger_core.exceptions import (
    DanglingReferenceError,
    InsufficientBalanceError,
    InsufficientCreditError,
    InvalidContactTypeError,
    InvalidStateError,
    NotFoundError,
)
from ledger_core.models.application_link import ApplicationLink, SettlementEvent
from ledger_core.models.contact import Contact
from ledger_core.models.enums import (
    TransactionType,
    TransactionStatus,
    SETTLEABLE_TYPES,
    CREDIT_TYPES,
    CUSTOMER_TYPES,
    VENDOR_TYPES,
    PAYMENT_CREDIT_TYPE,
)
from ledger_core.models.recurring import RecurringHistory
from ledger_core.models.transaction import Transaction, LineItem
from ledger_core.money import ZERO, quantize, to_minor_units
from ledger_core.schemas.transaction import AccountMapping, TransactionCreate
from ledger_core.services import posting
from ledger_core.services.audit_service import AuditEvent, AuditService
from ledger_core.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

OUTSTANDING_STATUSES = (TransactionStatus.OPEN, TransactionStatus.PARTIAL)


class TransactionService:

    def __init__(self, db: Session):
        self.db = db
        self.ledger_service = LedgerService(db)
        self.audit = AuditService(db)

    # --- Lookups ---

    def get_transaction(self, transaction_id: int) -> Transaction:
        """Get a transaction by ID."""
        txn = self.db.get(Transaction, transaction_id)
        if not txn:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return txn

    def find_by_idempotency_key(self, idempotency_key: str) -> Transaction | None:
        """Return existing transaction if key was used before."""
        return self.db.execute(
            select(Transaction).where(
                Transaction.idempotency_key == idempotency_key
            )
        ).scalar_one_or_none()

    def lock_transactions(self, transaction_ids) -> dict[int, Transaction]:
        """
        Lock transactions for update in ascending id order.

        Every service that changes more than one transaction
        takes its locks through here, so two operations touching
        the same rows always queue instead of deadlocking.
        """
        ids = sorted(set(transaction_ids))
        rows = self.db.execute(
            select(Transaction)
            .where(Transaction.id.in_(ids))
            .order_by(Transaction.id)
            .with_for_update()
        ).scalars().all()
        by_id = {t.id: t for t in rows}
        missing = set(ids) - set(by_id)
        if missing:
            raise NotFoundError(f"Transactions not found: {sorted(missing)}")
        return by_id

    def lock_transaction(self, transaction_id: int) -> Transaction:
        return self.lock_transactions([transaction_id])[transaction_id]

    def next_reference(self, transaction_type: TransactionType) -> str:
        """Next free document number for a type."""
        references = self.db.execute(
            select(Transaction.reference).where(
                Transaction.transaction_type == transaction_type
            )
        ).scalars().all()
        numbers = [int(ref) for ref in references if ref.isdigit()]
        first = get_settings().FIRST_DOCUMENT_NUMBER
        return str(max(numbers) + 1 if numbers else first)

    def has_links(self, transaction_id: int) -> bool:
        """True if any application link has this transaction at either end."""
        link_id = self.db.execute(
            select(ApplicationLink.id)
            .where(or_(
                ApplicationLink.source_id == transaction_id,
                ApplicationLink.target_id == transaction_id,
            ))
            .limit(1)
        ).scalar_one_or_none()
        return link_id is not None

    def spawned_credits(self, transaction_id: int) -> list[Transaction]:
        """Credits created from a payment's unapplied remainder."""
        rows = self.db.execute(
            select(Transaction)
            .where(Transaction.source_transaction_id == transaction_id)
            .order_by(Transaction.id)
        ).scalars().all()
        return list(rows)

    def outstanding_balance(
        self,
        contact_id: int | None = None,
        types=SETTLEABLE_TYPES,
    ) -> Decimal:
        """
        Total still owed on open and partial documents.

        Voided and draft documents keep their last balance but
        never count as outstanding.
        """
        query = select(func.coalesce(func.sum(Transaction.balance), 0)).where(
            Transaction.transaction_type.in_(list(types)),
            Transaction.status.in_(OUTSTANDING_STATUSES),
        )
        if contact_id is not None:
            query = query.where(Transaction.contact_id == contact_id)
        return quantize(Decimal(str(self.db.execute(query).scalar_one())))

    # --- Creation ---

    def _check_contact(
        self, transaction_type: TransactionType, contact_id: int | None
    ) -> Contact | None:
        """
        Receivable-side documents need a customer and payable-side
        documents a vendor. Anything else may name any contact.
        """
        contact = self.db.get(Contact, contact_id) if contact_id else None
        if contact_id and contact is None:
            raise NotFoundError(f"Contact {contact_id} not found")

        if transaction_type in CUSTOMER_TYPES:
            if contact is None or not contact.is_customer:
                raise InvalidContactTypeError(
                    f"{transaction_type.value} requires a customer contact"
                )
        elif transaction_type in VENDOR_TYPES:
            if contact is None or not contact.is_vendor:
                raise InvalidContactTypeError(
                    f"{transaction_type.value} requires a vendor contact"
                )
        return contact

    def _document_amount(self, request: TransactionCreate) -> Decimal:
        transaction_type = request.transaction_type
        if transaction_type == TransactionType.JOURNAL_ENTRY:
            if not request.entries:
                raise InvalidStateError("A journal entry needs ledger entries")
            return quantize(sum((quantize(e.debit) for e in request.entries), ZERO))
        if transaction_type in posting.AMOUNT_RULES:
            if request.amount is None:
                raise InvalidStateError(
                    f"{transaction_type.value} requires an amount"
                )
            return quantize(request.amount)
        if not request.line_items:
            raise InvalidStateError(
                f"{transaction_type.value} requires at least one line item"
            )
        return posting.line_total(request.line_items)

    def _ensure_reference_free(
        self, transaction_type: TransactionType, reference: str
    ) -> None:
        taken = self.db.execute(
            select(Transaction.id).where(
                Transaction.transaction_type == transaction_type,
                Transaction.reference == reference,
            )
        ).scalar_one_or_none()
        if taken is not None:
            raise ValueError(
                f"{transaction_type.value} reference '{reference}' already exists"
            )

    def _apply_initial_state(self, txn: Transaction) -> None:
        if txn.transaction_type in SETTLEABLE_TYPES:
            txn.status = TransactionStatus.OPEN
            txn.balance = txn.amount
        elif txn.transaction_type in CREDIT_TYPES:
            txn.status = TransactionStatus.UNAPPLIED_CREDIT
            txn.balance = txn.amount
        else:
            txn.status = TransactionStatus.COMPLETED
            txn.balance = ZERO
            txn.completed_at = datetime.utcnow()

    def create(self, request: TransactionCreate, draft: bool = False) -> Transaction:
        """
        Create a document and post its ledger entries.

        With draft=True only line-item documents are accepted;
        they are stored without entries until finalize().
        """
        if request.idempotency_key:
            existing = self.find_by_idempotency_key(request.idempotency_key)
            if existing:
                if existing.transaction_type != request.transaction_type:
                    raise InvalidStateError(
                        f"Idempotency key '{request.idempotency_key}' was used "
                        f"for {existing.transaction_type.value} {existing.reference}"
                    )
                return existing

        transaction_type = request.transaction_type
        self._check_contact(transaction_type, request.contact_id)
        amount = self._document_amount(request)

        entries = []
        if draft:
            if transaction_type not in posting.LINE_RULES:
                raise InvalidStateError(
                    f"{transaction_type.value} cannot be saved as a draft"
                )
        else:
            accounts = posting.resolve_accounts(
                self.ledger_service, transaction_type, request.accounts
            )
            entries = posting.build_entries(
                transaction_type,
                accounts,
                request.description,
                lines=request.line_items,
                amount=amount,
                exchange_rate=request.exchange_rate,
                entries=request.entries,
            )
            # Reject before any row is written
            self.ledger_service.validate_entries(entries)

        reference = request.reference or self.next_reference(transaction_type)
        self._ensure_reference_free(transaction_type, reference)

        txn = Transaction(
            transaction_type=transaction_type,
            reference=reference,
            idempotency_key=request.idempotency_key,
            status=TransactionStatus.DRAFT,
            transaction_date=request.transaction_date,
            due_date=request.due_date,
            description=request.description,
            amount=amount,
            balance=amount,
            contact_id=request.contact_id,
            currency=request.currency,
            exchange_rate=request.exchange_rate,
        )
        for line in request.line_items:
            txn.line_items.append(LineItem(
                description=line.description,
                quantity=line.quantity,
                unit_price=line.unit_price,
                amount=quantize(line.amount),
                account_id=line.account_id,
                tax_account_id=line.tax_account_id,
                tax_amount=quantize(line.tax_amount),
            ))
        self.db.add(txn)
        self.db.flush()

        if not draft:
            self.ledger_service.post_entries(txn, entries)
            self._apply_initial_state(txn)
            self.db.flush()

        self.audit.record(
            AuditEvent.TRANSACTION_CREATED, "transaction", txn.id,
            transaction_type=transaction_type.value, reference=reference,
            amount=amount, status=txn.status.value,
        )
        logger.info(
            "Created %s %s for %s (%s)",
            transaction_type.value, reference, amount, txn.status.value,
        )
        return txn

    def finalize(
        self, transaction_id: int, accounts: AccountMapping | None = None
    ) -> Transaction:
        """Post a draft's entries and move it to its initial status."""
        txn = self.lock_transaction(transaction_id)
        if txn.status != TransactionStatus.DRAFT:
            raise InvalidStateError(
                f"Only drafts can be finalized (status: {txn.status.value})"
            )
        resolved = posting.resolve_accounts(
            self.ledger_service, txn.transaction_type, accounts or AccountMapping()
        )
        entries = posting.build_entries(
            txn.transaction_type,
            resolved,
            txn.description,
            lines=txn.line_items,
            exchange_rate=txn.exchange_rate,
        )
        self.ledger_service.post_entries(txn, entries)
        self._apply_initial_state(txn)
        self.db.flush()

        self.audit.record(
            AuditEvent.TRANSACTION_FINALIZED, "transaction", txn.id,
            status=txn.status.value,
        )
        logger.info("Finalized %s %s", txn.transaction_type.value, txn.reference)
        return txn

    def create_overpayment_credit(
        self, payment: Transaction, amount: Decimal
    ) -> Transaction:
        """
        Spawn the credit that holds a payment's unapplied remainder.

        The credit has no entries of its own: the payment already
        posted the full receipt against the control account.
        """
        credit_type = PAYMENT_CREDIT_TYPE[payment.transaction_type]
        amount = quantize(amount)
        credit = Transaction(
            transaction_type=credit_type,
            reference=self.next_reference(credit_type),
            status=TransactionStatus.UNAPPLIED_CREDIT,
            transaction_date=payment.transaction_date,
            description=f"Unapplied credit from payment {payment.reference}",
            amount=amount,
            balance=amount,
            contact_id=payment.contact_id,
            currency=payment.currency,
            exchange_rate=payment.exchange_rate,
            source_transaction_id=payment.id,
        )
        self.db.add(credit)
        self.db.flush()

        self.audit.record(
            AuditEvent.TRANSACTION_CREATED, "transaction", credit.id,
            transaction_type=credit_type.value, reference=credit.reference,
            amount=amount, source_transaction_id=payment.id,
        )
        logger.info(
            "Created %s %s for %s from payment %s",
            credit_type.value, credit.reference, amount, payment.reference,
        )
        return credit

    # --- Settlement ---

    def settle(
        self, transaction_id: int, amount: Decimal, idempotency_key: str
    ) -> Transaction:
        """
        Reduce an invoice or bill balance by a settled amount.

        A retry with an idempotency key that was already recorded
        returns the transaction unchanged.
        """
        existing = self.db.execute(
            select(SettlementEvent).where(
                SettlementEvent.idempotency_key == idempotency_key
            )
        ).scalar_one_or_none()
        if existing:
            if existing.transaction_id != transaction_id:
                raise InvalidStateError(
                    f"Settlement key '{idempotency_key}' was used for "
                    f"transaction {existing.transaction_id}"
                )
            return self.get_transaction(transaction_id)

        txn = self.lock_transaction(transaction_id)
        if txn.transaction_type not in SETTLEABLE_TYPES:
            raise InvalidStateError(
                f"{txn.transaction_type.value} cannot be settled"
            )
        if txn.status not in OUTSTANDING_STATUSES:
            raise InvalidStateError(
                f"Cannot settle {txn.reference} (status: {txn.status.value})"
            )

        amount = quantize(amount)
        if to_minor_units(amount) <= 0:
            raise InsufficientBalanceError("Settlement amount must be positive")
        if to_minor_units(amount) > to_minor_units(txn.balance):
            logger.warning(
                "Rejected settlement of %s on %s (balance %s)",
                amount, txn.reference, txn.balance,
            )
            raise InsufficientBalanceError(
                f"Insufficient balance: {txn.reference} has {quantize(txn.balance)}, "
                f"requested={amount}"
            )

        txn.balance = quantize(txn.balance) - amount
        self._recompute_status(txn)
        self.db.add(SettlementEvent(
            idempotency_key=idempotency_key,
            transaction_id=txn.id,
            amount=amount,
        ))
        self.db.flush()

        self.audit.record(
            AuditEvent.TRANSACTION_SETTLED, "transaction", txn.id,
            amount=amount, balance=txn.balance, key=idempotency_key,
        )
        logger.info(
            "Settled %s on %s, balance now %s (%s)",
            amount, txn.reference, txn.balance, txn.status.value,
        )
        return txn

    def unsettle(self, transaction_id: int, settlement_key: str) -> Transaction:
        """Undo exactly one recorded settlement."""
        event = self.db.execute(
            select(SettlementEvent).where(
                SettlementEvent.idempotency_key == settlement_key,
                SettlementEvent.transaction_id == transaction_id,
            )
        ).scalar_one_or_none()
        if not event:
            raise NotFoundError(
                f"Settlement '{settlement_key}' not found for "
                f"transaction {transaction_id}"
            )

        txn = self.lock_transaction(transaction_id)
        restored = quantize(txn.balance) + quantize(event.amount)
        if to_minor_units(restored) > to_minor_units(txn.amount):
            raise InvalidStateError(
                f"Restoring {event.amount} would take {txn.reference} "
                f"above its amount {txn.amount}"
            )

        txn.balance = restored
        self._recompute_status(txn)
        self.db.delete(event)
        self.db.flush()

        self.audit.record(
            AuditEvent.TRANSACTION_UNSETTLED, "transaction", txn.id,
            amount=event.amount, balance=txn.balance, key=settlement_key,
        )
        logger.info(
            "Unsettled %s on %s, balance now %s (%s)",
            event.amount, txn.reference, txn.balance, txn.status.value,
        )
        return txn

    def _recompute_status(self, txn: Transaction) -> None:
        balance = to_minor_units(txn.balance)
        if balance == 0:
            txn.status = TransactionStatus.COMPLETED
            txn.completed_at = datetime.utcnow()
        elif balance == to_minor_units(txn.amount):
            txn.status = TransactionStatus.OPEN
            txn.completed_at = None
        else:
            txn.status = TransactionStatus.PARTIAL
            txn.completed_at = None

    # --- Credits ---

    def consume_credit(self, credit: Transaction, amount: Decimal) -> Transaction:
        """
        Take an amount out of a credit's unapplied balance.

        A fully consumed credit becomes APPLIED_CREDIT; a partly
        consumed one stays UNAPPLIED_CREDIT with what is left.
        """
        if credit.transaction_type not in CREDIT_TYPES:
            raise InvalidStateError(
                f"{credit.transaction_type.value} is not a credit"
            )
        if credit.status != TransactionStatus.UNAPPLIED_CREDIT:
            raise InsufficientCreditError(
                f"Credit {credit.reference} has nothing left to apply "
                f"(status: {credit.status.value})"
            )
        amount = quantize(amount)
        if to_minor_units(amount) <= 0:
            raise InsufficientCreditError("Applied credit amount must be positive")
        if to_minor_units(amount) > to_minor_units(credit.balance):
            logger.warning(
                "Rejected applying %s from credit %s (available %s)",
                amount, credit.reference, credit.balance,
            )
            raise InsufficientCreditError(
                f"Insufficient credit: {credit.reference} has "
                f"{quantize(credit.balance)}, requested={amount}"
            )

        credit.balance = quantize(credit.balance) - amount
        if to_minor_units(credit.balance) == 0:
            credit.status = TransactionStatus.APPLIED_CREDIT
            credit.completed_at = datetime.utcnow()
        self.db.flush()
        return credit

    def restore_credit(self, credit: Transaction, amount: Decimal) -> Transaction:
        """Give an amount back to a credit's unapplied balance."""
        restored = quantize(credit.balance) + quantize(amount)
        if to_minor_units(restored) > to_minor_units(credit.amount):
            raise InvalidStateError(
                f"Restoring {amount} would take credit {credit.reference} "
                f"above its amount {credit.amount}"
            )
        credit.balance = restored
        credit.status = TransactionStatus.UNAPPLIED_CREDIT
        credit.completed_at = None
        self.db.flush()
        return credit

    # --- Void and delete ---

    def void(self, transaction_id: int) -> Transaction:
        """
        Void a draft, open or partial document.

        Entries are unposted; the balance is kept as it was for
        the record but no longer counts as outstanding.
        """
        txn = self.lock_transaction(transaction_id)
        if txn.status not in (TransactionStatus.DRAFT, *OUTSTANDING_STATUSES):
            raise InvalidStateError(
                f"Cannot void {txn.reference} (status: {txn.status.value})"
            )
        if self.has_links(txn.id):
            logger.warning("Rejected void of %s: live application links", txn.reference)
            raise DanglingReferenceError(
                f"{txn.reference} has live application links; reverse them first"
            )
        settled = self.db.execute(
            select(SettlementEvent.id)
            .where(SettlementEvent.transaction_id == txn.id)
            .limit(1)
        ).scalar_one_or_none()
        if settled is not None:
            logger.warning("Rejected void of %s: recorded settlements", txn.reference)
            raise InvalidStateError(
                f"{txn.reference} has recorded settlements; unsettle them first"
            )

        self.ledger_service.unpost(txn.id)
        txn.status = TransactionStatus.VOIDED
        self.db.flush()

        self.audit.record(
            AuditEvent.TRANSACTION_VOIDED, "transaction", txn.id,
            balance=txn.balance,
        )
        logger.info("Voided %s %s", txn.transaction_type.value, txn.reference)
        return txn

    def delete(self, transaction_id: int) -> None:
        """
        Delete a transaction that nothing depends on.

        Raises DanglingReferenceError if the transaction is either
        end of an application link or spawned a credit. Entries
        are unposted before the row is removed.
        """
        txn = self.lock_transaction(transaction_id)
        if self.has_links(txn.id) or self.spawned_credits(txn.id):
            logger.warning("Rejected delete of %s: dependents exist", txn.reference)
            raise DanglingReferenceError(
                f"{txn.reference} has live application links or credits; "
                f"reverse them or delete with cascade"
            )

        self.ledger_service.unpost(txn.id)
        self.db.execute(
            delete(SettlementEvent).where(SettlementEvent.transaction_id == txn.id)
        )
        self.db.execute(
            update(RecurringHistory)
            .where(RecurringHistory.transaction_id == txn.id)
            .values(transaction_id=None)
        )
        self.audit.record(
            AuditEvent.TRANSACTION_DELETED, "transaction", txn.id,
            transaction_type=txn.transaction_type.value, reference=txn.reference,
            amount=txn.amount,
        )
        logger.info("Deleted %s %s", txn.transaction_type.value, txn.reference)
        self.db.delete(txn)
        self.db.flush()
