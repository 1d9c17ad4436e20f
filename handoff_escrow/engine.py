# handoff_escrow/engine.py
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

from sqlalchemy import select, update, or_

from .errors import (
    AlreadyCapturedError,
    AlreadyConfirmedError,
    CaptureError,
    ConflictError,
    ExpiredError,
    GatewayError,
    InvalidSecretError,
    InvalidStateError,
    NotFoundError,
    SellerNotPayableError,
    UnauthorizedError,
)
from .gateway import PaymentGateway
from .models import (
    OPEN_STATUSES,
    Handoff,
    Transaction,
    TransactionStatus,
    User,
    new_id,
    utcnow,
)
from .validation import (
    build_qr_payload,
    generate_confirmation_code,
    parse_qr_payload,
    validate_amount,
    validate_coordinates,
    validate_currency,
    validate_parties,
)

logger = logging.getLogger(__name__)


@dataclass
class PresentedSecret:
    """A confirmation secret as presented by an actor, typed in or scanned."""
    code: str
    transaction_id: Optional[str] = None

    @classmethod
    def from_code(cls, code):
        return cls(code=code if isinstance(code, str) else "")

    @classmethod
    def from_qr(cls, payload):
        transaction_id, code = parse_qr_payload(payload)
        return cls(code=code, transaction_id=transaction_id)

    def matches(self, handoff):
        if self.transaction_id is not None and self.transaction_id != handoff.transaction_id:
            return False
        return self.code == handoff.confirmation_code


@dataclass
class OpenedTransaction:
    transaction: Transaction
    handoff: Handoff
    client_secret: Optional[str]


@dataclass
class ConfirmResult:
    handoff: Handoff
    transaction: Transaction
    released: bool


class EscrowEngine:
    def __init__(self, session_factory, gateway: PaymentGateway,
                 clock: Callable = utcnow,
                 handoff_ttl: timedelta = timedelta(hours=24),
                 on_capture_failed: Optional[Callable[[str], None]] = None,
                 capture_lease: timedelta = timedelta(minutes=5)):
        self.session_factory = session_factory
        self.gateway = gateway
        self.clock = clock
        self.handoff_ttl = handoff_ttl
        self.on_capture_failed = on_capture_failed
        self.capture_lease = capture_lease

    # ------------------------------------------------------------------
    # open
    # ------------------------------------------------------------------
    def open_transaction(self, buyer_id, seller_id, amount, currency, meeting_point) -> OpenedTransaction:
        validate_parties(buyer_id, seller_id)
        amount = validate_amount(amount)
        currency = validate_currency(currency)
        lat, lng = validate_coordinates(*meeting_point)

        with self.session_factory() as session:
            seller = session.get(User, seller_id)
        if seller is None:
            raise NotFoundError("Seller not found")
        if not seller.is_payable:
            raise SellerNotPayableError(
                "Seller has not set up payment account. Please complete payee onboarding."
            )
        payee_ref = seller.payee_account_ref

        # gateway errors surface as-is; nothing has been written yet
        authorization = self.gateway.authorize(amount, currency, buyer_id, payee_ref)

        now = self.clock()
        transaction_id = new_id()
        code = generate_confirmation_code()
        try:
            with self.session_factory() as session:
                with session.begin():
                    tx = Transaction(
                        id=transaction_id,
                        buyer_id=buyer_id,
                        seller_id=seller_id,
                        amount=amount,
                        currency=currency,
                        status=TransactionStatus.PENDING,
                        gateway_intent_id=authorization.intent_id,
                        gateway_payee_account_ref=payee_ref,
                        client_secret=authorization.client_secret,
                        created_at=now,
                        updated_at=now,
                    )
                    handoff = Handoff(
                        id=new_id(),
                        transaction_id=transaction_id,
                        meeting_lat=lat,
                        meeting_lng=lng,
                        confirmation_code=code,
                        qr_payload=build_qr_payload(transaction_id, code),
                        buyer_confirmed=False,
                        seller_confirmed=False,
                        expires_at=now + self.handoff_ttl,
                        created_at=now,
                    )
                    session.add(tx)
                    session.add(handoff)
        except Exception:
            self._release_hold(authorization.intent_id, "open_transaction rollback")
            raise

        logger.info(f"Opened transaction {transaction_id} ({amount} {currency}) buyer={buyer_id} seller={seller_id}")
        tx, handoff = self._load_by_transaction(transaction_id)
        return OpenedTransaction(transaction=tx, handoff=handoff, client_secret=authorization.client_secret)

    # ------------------------------------------------------------------
    # confirm
    # ------------------------------------------------------------------
    def confirm(self, handoff_id, actor_id, presented: PresentedSecret) -> ConfirmResult:
        handoff, tx = self._load_handoff(handoff_id)
        role = tx.role_of(actor_id)
        if role is None:
            raise UnauthorizedError("Unauthorized to confirm this handoff")
        if not presented.matches(handoff):
            raise InvalidSecretError()

        now = self.clock()
        if handoff.is_expired(now) and not handoff.both_confirmed:
            # partial confirmation does not buy extra time; no-op if already closed
            self.expire(handoff_id)
            raise ExpiredError()
        if not tx.is_open:
            raise InvalidStateError("Transaction is not in a valid state for confirmation")
        if handoff.confirmed_by(role):
            raise AlreadyConfirmedError()

        flag = Handoff.buyer_confirmed if role == "buyer" else Handoff.seller_confirmed
        with self.session_factory() as session:
            with session.begin():
                still_open = (
                    select(Transaction.id)
                    .where(Transaction.id == tx.id, Transaction.status.in_(OPEN_STATUSES))
                    .exists()
                )
                flagged = session.execute(
                    update(Handoff)
                    .where(Handoff.id == handoff_id, flag.is_(False), still_open)
                    .values({flag: True})
                    .execution_options(synchronize_session=False)
                )
                if flagged.rowcount == 0:
                    current = session.get(Transaction, tx.id)
                    if current is not None and not current.is_open:
                        raise InvalidStateError("Transaction is not in a valid state for confirmation")
                    raise AlreadyConfirmedError()
                owns_capture = self._claim_capture(session, tx.id, handoff_id, now)

        logger.info(f"Handoff {handoff_id} confirmed by {role} {actor_id}")

        if owns_capture:
            tx = self._capture(tx.id, handoff_id, now)
            handoff, tx = self._load_handoff(handoff_id)
            return ConfirmResult(handoff=handoff, transaction=tx, released=True)

        # first confirmation, or the other party's racing confirmation owns the release
        handoff, tx = self._load_handoff(handoff_id)
        return ConfirmResult(handoff=handoff, transaction=tx, released=False)

    def retry_capture(self, transaction_id) -> Transaction:
        """Re-drive a capture for a transaction both parties already confirmed."""
        tx, handoff = self._load_by_transaction(transaction_id)
        if not tx.is_open:
            raise InvalidStateError(f"Transaction is {tx.status.value}, nothing to capture")
        if not handoff.both_confirmed:
            raise InvalidStateError("Handoff has not been confirmed by both parties")

        now = self.clock()
        with self.session_factory() as session:
            with session.begin():
                owns_capture = self._claim_capture(session, tx.id, handoff.id, now)
        if not owns_capture:
            raise ConflictError("Capture is already in progress")
        return self._capture(tx.id, handoff.id, now)

    def _claim_capture(self, session, transaction_id, handoff_id, now):
        both_confirmed = (
            select(Handoff.id)
            .where(
                Handoff.id == handoff_id,
                Handoff.buyer_confirmed.is_(True),
                Handoff.seller_confirmed.is_(True),
            )
            .exists()
        )
        claimed = session.execute(
            update(Transaction)
            .where(
                Transaction.id == transaction_id,
                Transaction.status.in_(OPEN_STATUSES),
                or_(
                    Transaction.capture_started_at.is_(None),
                    # a claim past its lease belongs to a dead attempt
                    Transaction.capture_started_at < now - self.capture_lease,
                ),
                both_confirmed,
            )
            .values(capture_started_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return claimed.rowcount == 1

    def _capture(self, transaction_id, handoff_id, claimed_at) -> Transaction:
        tx, _ = self._load_by_transaction(transaction_id)
        try:
            self.gateway.capture(tx.gateway_intent_id, tx.gateway_payee_account_ref)
        except AlreadyCapturedError:
            logger.info(f"Intent {tx.gateway_intent_id} already captured, completing transaction {transaction_id}")
        except Exception as e:
            logger.error(f"Capture failed for transaction {transaction_id}: {e}")
            now = self.clock()
            with self.session_factory() as session:
                with session.begin():
                    session.execute(
                        update(Transaction)
                        .where(Transaction.id == transaction_id, Transaction.capture_started_at == claimed_at)
                        .values(capture_started_at=None, last_capture_error=str(e)[:2000], updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
            if self.on_capture_failed is not None:
                self.on_capture_failed(transaction_id)
            message = e.message if isinstance(e, GatewayError) else str(e)
            raise CaptureError(f"Failed to release payment: {message}") from e

        now = self.clock()
        with self.session_factory() as session:
            with session.begin():
                session.execute(
                    update(Transaction)
                    .where(Transaction.id == transaction_id, Transaction.status.in_(OPEN_STATUSES))
                    .values(status=TransactionStatus.COMPLETED, last_capture_error=None, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                session.execute(
                    update(Handoff)
                    .where(Handoff.id == handoff_id, Handoff.confirmed_at.is_(None))
                    .values(confirmed_at=now)
                    .execution_options(synchronize_session=False)
                )
        logger.info(f"Transaction {transaction_id} completed, payment released")
        tx, _ = self._load_by_transaction(transaction_id)
        return tx

    # ------------------------------------------------------------------
    # cancel / expire
    # ------------------------------------------------------------------
    def cancel(self, transaction_id, actor_id) -> Transaction:
        tx, _ = self._load_by_transaction(transaction_id)
        if tx.role_of(actor_id) is None:
            raise UnauthorizedError("Unauthorized to cancel this transaction")
        if tx.status == TransactionStatus.COMPLETED:
            raise InvalidStateError("Cannot cancel completed transaction")
        if tx.status == TransactionStatus.CANCELLED:
            raise InvalidStateError("Transaction already cancelled")
        if not tx.is_open:
            raise InvalidStateError(f"Cannot cancel {tx.status.value.lower()} transaction")

        if not self._close(transaction_id, TransactionStatus.CANCELLED):
            current, _ = self._load_by_transaction(transaction_id)
            if current.is_open:
                raise ConflictError("Payment release is in progress, transaction can no longer be cancelled")
            raise InvalidStateError(f"Transaction is already {current.status.value}")

        logger.info(f"Transaction {transaction_id} cancelled by {actor_id}")
        self._release_hold(tx.gateway_intent_id, "cancel")
        tx, _ = self._load_by_transaction(transaction_id)
        return tx

    def expire(self, handoff_id) -> Optional[Transaction]:
        """Move an unconfirmed handoff's transaction to EXPIRED. Returns None when there was nothing to do."""
        handoff, tx = self._load_handoff(handoff_id)
        if not tx.is_open or handoff.confirmed_at is not None:
            return None
        if handoff.both_confirmed:
            # consent is recorded, only the capture retry may close this one
            return None
        if not self._close(tx.id, TransactionStatus.EXPIRED):
            return None

        logger.info(f"Transaction {tx.id} expired (handoff {handoff_id})")
        self._release_hold(tx.gateway_intent_id, "expire")
        tx, _ = self._load_by_transaction(tx.id)
        return tx

    def _close(self, transaction_id, status) -> bool:
        with self.session_factory() as session:
            with session.begin():
                result = session.execute(
                    update(Transaction)
                    .where(
                        Transaction.id == transaction_id,
                        Transaction.status.in_(OPEN_STATUSES),
                        Transaction.capture_started_at.is_(None),
                    )
                    .values(status=status, updated_at=self.clock())
                    .execution_options(synchronize_session=False)
                )
        return result.rowcount == 1

    def _release_hold(self, intent_id, reason):
        if not intent_id:
            return
        try:
            self.gateway.cancel(intent_id)
        except Exception as e:
            # orphaned hold, left for out-of-band reconciliation
            logger.warning(f"Could not cancel payment intent {intent_id} during {reason}: {e}")

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    def get_transaction(self, transaction_id, actor_id) -> Transaction:
        tx, _ = self._load_by_transaction(transaction_id)
        if tx.role_of(actor_id) is None:
            raise UnauthorizedError("Unauthorized to view this transaction")
        return tx

    def get_handoff(self, handoff_id, actor_id) -> Handoff:
        handoff, tx = self._load_handoff(handoff_id)
        if tx.role_of(actor_id) is None:
            raise UnauthorizedError("Unauthorized to view this handoff")
        return handoff

    def list_transactions(self, actor_id):
        with self.session_factory() as session:
            return session.execute(
                select(Transaction)
                .where(or_(Transaction.buyer_id == actor_id, Transaction.seller_id == actor_id))
                .order_by(Transaction.created_at.desc())
            ).unique().scalars().all()

    def parties(self, handoff_id):
        _, tx = self._load_handoff(handoff_id)
        return tx.buyer_id, tx.seller_id

    def _load_handoff(self, handoff_id):
        with self.session_factory() as session:
            handoff = session.get(Handoff, handoff_id)
            if handoff is None:
                raise NotFoundError("Handoff not found")
            return handoff, handoff.transaction

    def _load_by_transaction(self, transaction_id):
        with self.session_factory() as session:
            tx = session.get(Transaction, transaction_id)
            if tx is None:
                raise NotFoundError("Transaction not found")
            return tx, tx.handoff
