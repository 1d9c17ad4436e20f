# handoff_escrow/reconciler.py
import json
import logging

import stripe
from sqlalchemy import select, update

from .errors import SignatureError
from .models import OPEN_STATUSES, PayeeStatus, Transaction, TransactionStatus, User, utcnow

logger = logging.getLogger(__name__)

AUTHORIZED_EVENTS = ("payment_intent.amount_capturable_updated", "payment_intent.succeeded")
FAILED_EVENTS = ("payment_intent.payment_failed",)
ACCOUNT_EVENTS = ("account.updated",)


class GatewayEventReconciler:
    def __init__(self, session_factory, webhook_secret, clock=utcnow,
                 tolerance=stripe.Webhook.DEFAULT_TOLERANCE):
        self.session_factory = session_factory
        self.webhook_secret = webhook_secret
        self.clock = clock
        self.tolerance = tolerance

    def verify(self, raw_payload, signature_header):
        """Check the signature over the raw body and decode it. Raises ``SignatureError``."""
        if not signature_header:
            raise SignatureError("Missing signature header")
        if not self.webhook_secret:
            raise SignatureError("Webhook secret not configured")
        payload = raw_payload.decode("utf-8") if isinstance(raw_payload, bytes) else raw_payload
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature_header, self.webhook_secret, self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Rejected gateway event: {e}")
            raise SignatureError("Invalid signature") from e
        try:
            event = json.loads(payload)
        except json.JSONDecodeError as e:
            raise SignatureError("Invalid payload") from e
        if not isinstance(event, dict):
            raise SignatureError("Invalid payload")
        return event

    def handle(self, raw_payload, signature_header):
        event = self.verify(raw_payload, signature_header)
        return self.apply(event)

    def apply(self, event):
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}

        if event_type in AUTHORIZED_EVENTS:
            return self._authorization_succeeded(obj.get("id"))
        if event_type in FAILED_EVENTS:
            return self._authorization_failed(obj.get("id"))
        if event_type in ACCOUNT_EVENTS:
            return self._account_updated(obj)

        logger.info(f"Unhandled event type: {event_type}")
        return "ignored"

    def _authorization_succeeded(self, intent_id):
        if not intent_id:
            return "ignored"
        with self.session_factory() as session:
            with session.begin():
                result = session.execute(
                    update(Transaction)
                    .where(
                        Transaction.gateway_intent_id == intent_id,
                        Transaction.status == TransactionStatus.PENDING,
                    )
                    .values(status=TransactionStatus.AUTHORIZED, updated_at=self.clock())
                    .execution_options(synchronize_session=False)
                )
        if result.rowcount == 0:
            logger.info(f"Dropped authorization event for intent {intent_id}: no pending transaction")
            return "ignored"
        logger.info(f"Intent {intent_id} authorized")
        return "authorized"

    def _authorization_failed(self, intent_id):
        if not intent_id:
            return "ignored"
        with self.session_factory() as session:
            with session.begin():
                result = session.execute(
                    update(Transaction)
                    .where(
                        Transaction.gateway_intent_id == intent_id,
                        Transaction.status.in_(OPEN_STATUSES),
                        Transaction.capture_started_at.is_(None),
                    )
                    .values(status=TransactionStatus.CANCELLED, updated_at=self.clock())
                    .execution_options(synchronize_session=False)
                )
        if result.rowcount == 0:
            logger.info(f"Dropped authorization failure for intent {intent_id}: no open transaction")
            return "ignored"
        logger.info(f"Intent {intent_id} failed authorization, transaction cancelled")
        return "cancelled"

    def _account_updated(self, account):
        account_ref = account.get("id")
        if not account_ref:
            return "ignored"
        if account.get("payouts_enabled"):
            status = PayeeStatus.ENABLED
        elif (account.get("requirements") or {}).get("disabled_reason"):
            status = PayeeStatus.RESTRICTED
        else:
            status = PayeeStatus.PENDING

        with self.session_factory() as session:
            with session.begin():
                user = session.execute(
                    select(User).where(User.payee_account_ref == account_ref)
                ).scalar_one_or_none()
                if user is None:
                    return "ignored"
                user.payee_status = status
        logger.info(f"Payee account {account_ref} for user {user.id} is now {status.value}")
        return "account_updated"
