"""
Credit service — payments, credit application and reversal.

Money received or paid against invoices and bills always
moves through an ApplicationLink. A link is created together
with the settlement it causes and removed together with the
reversal of that settlement, so the links are the complete
record of what settled what.

Deletes that touch linked documents run in a fixed order:
links, then dependent balances, then ledger entries, then
rows. The payment row is always removed last.
"""

import logging
import uuid
from collections import OrderedDict
from decimal import Decimal
from typing import NamedTuple

from sqlalchemy import select, or_
from sqlalchemy.orm import Session

from ledger_core.exceptions import (
    DanglingReferenceError,
    InsufficientBalanceError,
    InvalidContactTypeError,
    InvalidStateError,
    NotFoundError,
)
from ledger_core.models.application_link import ApplicationLink
from ledger_core.models.enums import (
    TransactionType,
    TransactionStatus,
    CREDIT_TYPES,
    PAYMENT_TYPES,
    CREDIT_TARGET_TYPE,
    PAYMENT_TARGET_TYPE,
)
from ledger_core.models.transaction import Transaction
from ledger_core.money import ZERO, quantize, to_minor_units
from ledger_core.schemas.transaction import (
    PaymentCreate,
    TransactionCreate,
    DeletedDocument,
    RestoredDocument,
    DeletePaymentResult,
)
from ledger_core.services.audit_service import AuditEvent, AuditService
from ledger_core.services.transaction_service import (
    TransactionService,
    OUTSTANDING_STATUSES,
)

logger = logging.getLogger(__name__)


class PaymentOutcome(NamedTuple):
    payment: Transaction
    links: list[ApplicationLink]
    credit: Transaction | None


class CreditService:

    def __init__(self, db: Session):
        self.db = db
        self.transactions = TransactionService(db)
        self.ledger_service = self.transactions.ledger_service
        self.audit = AuditService(db)

    # --- Queries ---

    def get_link(self, link_id: int) -> ApplicationLink:
        link = self.db.get(ApplicationLink, link_id)
        if not link:
            raise NotFoundError(f"Application link {link_id} not found")
        return link

    def links_for(self, transaction_id: int) -> list[ApplicationLink]:
        """Links with the transaction at either end, oldest first."""
        rows = self.db.execute(
            select(ApplicationLink)
            .where(or_(
                ApplicationLink.source_id == transaction_id,
                ApplicationLink.target_id == transaction_id,
            ))
            .order_by(ApplicationLink.id)
        ).scalars().all()
        return list(rows)

    def links_from(self, source_id: int) -> list[ApplicationLink]:
        rows = self.db.execute(
            select(ApplicationLink)
            .where(ApplicationLink.source_id == source_id)
            .order_by(ApplicationLink.id)
        ).scalars().all()
        return list(rows)

    def is_credit_applied(self, credit: Transaction) -> bool:
        """
        Whether any part of a credit has been used.

        Evidence is the tracked balance or an explicit link,
        never the description text.
        """
        if to_minor_units(credit.balance) < to_minor_units(credit.amount):
            return True
        return bool(self.links_from(credit.id))

    # --- Payments ---

    def receive_payment(self, request: PaymentCreate) -> PaymentOutcome:
        """
        Record a customer payment and apply it to invoices.

        Accounting:
            DEBIT  Bank (full amount received)
            CREDIT Accounts Receivable (full amount received)

        Each application settles one invoice through a link.
        Whatever is left becomes an unapplied customer credit.
        """
        return self._record_payment(TransactionType.PAYMENT, request)

    def pay_bills(self, request: PaymentCreate) -> PaymentOutcome:
        """
        Record a payment to a vendor and apply it to bills.

        Accounting:
            DEBIT  Accounts Payable (full amount paid)
            CREDIT Bank (full amount paid)
        """
        return self._record_payment(TransactionType.BILL_PAYMENT, request)

    def _record_payment(
        self, payment_type: TransactionType, request: PaymentCreate
    ) -> PaymentOutcome:
        existing = self.transactions.find_by_idempotency_key(request.idempotency_key)
        if existing:
            credits = self.transactions.spawned_credits(existing.id)
            return PaymentOutcome(
                existing,
                self.links_from(existing.id),
                credits[0] if credits else None,
            )

        # Check every target before anything is written
        targets = self.transactions.lock_transactions(
            [a.target_id for a in request.applications]
        ) if request.applications else {}
        for application in request.applications:
            target = targets[application.target_id]
            self._check_target(
                target, PAYMENT_TARGET_TYPE[payment_type],
                request.contact_id, application.amount,
                request.currency, request.exchange_rate,
            )

        payment = self.transactions.create(TransactionCreate(
            transaction_type=payment_type,
            reference=request.reference,
            transaction_date=request.transaction_date,
            description=request.description,
            contact_id=request.contact_id,
            currency=request.currency,
            exchange_rate=request.exchange_rate,
            amount=request.amount,
            accounts=request.accounts,
            idempotency_key=request.idempotency_key,
        ))

        links = []
        applied = ZERO
        for application in request.applications:
            target = targets[application.target_id]
            links.append(self._link(
                payment, target, application.amount,
                f"{request.idempotency_key}:{target.id}",
            ))
            applied += quantize(application.amount)

        credit = None
        remainder = quantize(request.amount) - applied
        if to_minor_units(remainder) > 0:
            credit = self.transactions.create_overpayment_credit(payment, remainder)

        self.audit.record(
            AuditEvent.PAYMENT_RECEIVED, "transaction", payment.id,
            amount=payment.amount, applied=applied, unapplied=remainder,
            targets=[link.target_id for link in links],
        )
        logger.info(
            "Recorded %s %s of %s: applied %s to %d documents, unapplied %s",
            payment_type.value, payment.reference, payment.amount,
            applied, len(links), remainder,
        )
        return PaymentOutcome(payment, links, credit)

    # --- Credit application ---

    def apply_credit(
        self,
        credit_id: int,
        target_id: int,
        amount: Decimal,
        idempotency_key: str | None = None,
    ) -> ApplicationLink:
        """
        Apply part or all of an unapplied credit to an invoice or bill.

        A customer credit only settles that customer's invoices
        and a vendor credit only that vendor's bills. Repeating
        a call with the same idempotency key returns the first
        link.
        """
        if idempotency_key:
            existing = self.db.execute(
                select(ApplicationLink).where(
                    ApplicationLink.idempotency_key == idempotency_key
                )
            ).scalar_one_or_none()
            if existing:
                if (existing.source_id, existing.target_id) != (credit_id, target_id):
                    raise InvalidStateError(
                        f"Application key '{idempotency_key}' was used for "
                        f"another credit or document"
                    )
                return existing
        else:
            idempotency_key = f"credit:{uuid.uuid4().hex}"

        # Credit and target locked together, ascending id
        locked = self.transactions.lock_transactions([credit_id, target_id])
        credit = locked[credit_id]
        target = locked[target_id]

        if credit.transaction_type not in CREDIT_TYPES:
            raise InvalidStateError(f"{credit.reference} is not a credit")
        self._check_target(
            target, CREDIT_TARGET_TYPE[credit.transaction_type],
            credit.contact_id, amount,
            credit.currency, credit.exchange_rate,
        )

        self.transactions.consume_credit(credit, amount)
        link = self._link(credit, target, amount, idempotency_key)

        self.audit.record(
            AuditEvent.CREDIT_APPLIED, "transaction", credit.id,
            target_id=target.id, amount=link.amount, credit_balance=credit.balance,
        )
        logger.info(
            "Applied %s of credit %s to %s (credit balance %s, %s balance %s)",
            link.amount, credit.reference, target.reference,
            credit.balance, target.reference, target.balance,
        )
        return link

    def _check_target(
        self,
        target: Transaction,
        expected_type: TransactionType,
        contact_id: int | None,
        amount: Decimal,
        currency: str,
        exchange_rate: Decimal,
    ) -> None:
        """
        An applied amount is in the target's currency and moves
        the control account by the same home amount on both
        sides, so source and target must share currency and rate.
        """
        if to_minor_units(amount) <= 0:
            raise InsufficientBalanceError("Applied amount must be positive")
        if target.transaction_type != expected_type:
            raise InvalidContactTypeError(
                f"{target.reference} is a {target.transaction_type.value}; "
                f"expected a {expected_type.value}"
            )
        if target.contact_id != contact_id:
            raise InvalidContactTypeError(
                f"{target.reference} belongs to a different contact"
            )
        if target.status not in OUTSTANDING_STATUSES:
            raise InvalidStateError(
                f"{target.reference} is not open (status: {target.status.value})"
            )
        if target.currency != currency:
            raise InvalidStateError(
                f"Cannot apply {currency} to {target.reference} in {target.currency}"
            )
        if Decimal(str(target.exchange_rate)) != Decimal(str(exchange_rate)):
            raise InvalidStateError(
                f"Cannot apply at rate {exchange_rate} to {target.reference} "
                f"booked at {target.exchange_rate}"
            )
        if to_minor_units(amount) > to_minor_units(target.balance):
            logger.warning(
                "Rejected applying %s to %s (balance %s)",
                amount, target.reference, target.balance,
            )
            raise InsufficientBalanceError(
                f"Insufficient balance: {target.reference} has "
                f"{quantize(target.balance)}, requested={quantize(amount)}"
            )

    def _link(
        self,
        source: Transaction,
        target: Transaction,
        amount: Decimal,
        idempotency_key: str,
    ) -> ApplicationLink:
        settlement_key = f"{idempotency_key}:settle"
        self.transactions.settle(target.id, amount, settlement_key)
        link = ApplicationLink(
            idempotency_key=idempotency_key,
            source_id=source.id,
            target_id=target.id,
            amount=quantize(amount),
            settlement_key=settlement_key,
        )
        self.db.add(link)
        self.db.flush()
        return link

    # --- Reversal ---

    def reverse_application(
        self, link_id: int, respawn_credit: bool = True
    ) -> Transaction | None:
        """
        Undo one link exactly.

        The target gets the linked amount back on its balance.
        A credit source gets it back as unapplied balance; a
        payment source that still exists turns it into a new
        unapplied credit, which is returned.
        """
        link = self.get_link(link_id)
        locked = self.transactions.lock_transactions([link.source_id, link.target_id])
        source = locked[link.source_id]
        target = locked[link.target_id]
        amount = quantize(link.amount)

        self.transactions.unsettle(target.id, link.settlement_key)

        spawned = None
        if source.transaction_type in CREDIT_TYPES:
            self.transactions.restore_credit(source, amount)
        elif respawn_credit:
            spawned = self.transactions.create_overpayment_credit(source, amount)

        self.db.delete(link)
        self.db.flush()

        self.audit.record(
            AuditEvent.APPLICATION_REVERSED, "transaction", source.id,
            target_id=target.id, amount=amount,
        )
        logger.info(
            "Reversed %s from %s to %s (%s balance %s)",
            amount, source.reference, target.reference,
            target.reference, target.balance,
        )
        return spawned

    # --- Deletion ---

    def delete_payment_cascade(self, payment_id: int) -> DeletePaymentResult:
        """
        Delete a payment and everything that depends on it.

        As one unit of work:
        1. reverse links sourced from the payment's spawned credits
        2. reverse links sourced from the payment itself
        3. unpost and delete the spawned credits
        4. unpost and delete the payment

        Every invoice or bill the payment or its credits settled
        ends at its pre-payment balance and status.
        """
        payment = self.transactions.get_transaction(payment_id)
        if payment.transaction_type not in PAYMENT_TYPES:
            raise InvalidStateError(
                f"{payment.reference} is a {payment.transaction_type.value}, "
                f"not a payment"
            )

        credits = self.transactions.spawned_credits(payment.id)
        credit_links = [
            link for credit in credits for link in self.links_from(credit.id)
        ]
        payment_links = self.links_from(payment.id)

        locked = self.transactions.lock_transactions(
            [payment.id]
            + [credit.id for credit in credits]
            + [link.target_id for link in credit_links + payment_links]
        )

        previous_balances = OrderedDict()
        for link in credit_links + payment_links:
            target = locked[link.target_id]
            previous_balances.setdefault(target.id, quantize(target.balance))

        for link in credit_links:
            self.reverse_application(link.id)
        for link in payment_links:
            self.reverse_application(link.id, respawn_credit=False)

        credits_deleted = []
        for credit in credits:
            credits_deleted.append(DeletedDocument(id=credit.id, reference=credit.reference))
            self.transactions.delete(credit.id)

        reference = payment.reference
        self.transactions.delete(payment.id)

        invoices_restored = []
        for target_id, previous in previous_balances.items():
            target = locked[target_id]
            invoices_restored.append(RestoredDocument(
                id=target.id,
                reference=target.reference,
                previous_balance=previous,
                new_balance=quantize(target.balance),
                status=target.status,
            ))

        self.audit.record(
            AuditEvent.PAYMENT_DELETED, "transaction", payment_id,
            reference=reference,
            credits_deleted=[c.id for c in credits_deleted],
            documents_restored=list(previous_balances),
        )
        logger.info(
            "Deleted payment %s: %d credits removed, %d documents restored",
            reference, len(credits_deleted), len(invoices_restored),
        )
        return DeletePaymentResult(
            payment_id=payment_id,
            credits_deleted=credits_deleted,
            invoices_restored=invoices_restored,
        )

    def delete_transaction(
        self, transaction_id: int, cascade: bool = False
    ) -> DeletePaymentResult | None:
        """
        Delete any transaction.

        Without cascade, a transaction that is either end of a
        link (or spawned a credit) is refused with
        DanglingReferenceError. With cascade, its links are
        reversed first; payments go through the full payment
        cascade. A credit spawned from a payment holds part of
        that payment's receipt and goes only with the payment.
        """
        txn = self.transactions.get_transaction(transaction_id)
        if txn.source_transaction_id is not None:
            logger.warning(
                "Rejected delete of %s: spawned from payment %s",
                txn.reference, txn.source_transaction_id,
            )
            raise DanglingReferenceError(
                f"{txn.reference} holds the unapplied part of payment "
                f"{txn.source_transaction_id}; delete the payment instead"
            )
        if not cascade:
            self.transactions.delete(txn.id)
            return None

        if txn.transaction_type in PAYMENT_TYPES:
            return self.delete_payment_cascade(txn.id)

        links = self.links_for(txn.id)
        self.transactions.lock_transactions(
            [txn.id] + [link.source_id for link in links]
            + [link.target_id for link in links]
        )
        for link in links:
            self.reverse_application(link.id)
        self.transactions.delete(txn.id)
        return None

    def unapplied_credits(self, contact_id: int) -> list[Transaction]:
        """Credits of a contact with balance left to apply, oldest first."""
        rows = self.db.execute(
            select(Transaction)
            .where(
                Transaction.contact_id == contact_id,
                Transaction.transaction_type.in_(list(CREDIT_TYPES)),
                Transaction.status == TransactionStatus.UNAPPLIED_CREDIT,
            )
            .order_by(Transaction.transaction_date, Transaction.id)
        ).scalars().all()
        return list(rows)
