# handoff_escrow/gateway.py
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

import stripe

from .config import APP_URL, GATEWAY_TIMEOUT_SECONDS, STRIPE_SECRET_KEY
from .errors import AlreadyCapturedError, GatewayError

logger = logging.getLogger(__name__)


@dataclass
class Authorization:
    intent_id: str
    client_secret: Optional[str] = None


@dataclass
class PayeeAccount:
    account_ref: str
    onboarding_url: Optional[str] = None


class PaymentGateway:
    """Contract every payment processor adapter implements."""

    def open(self):
        pass

    def close(self):
        pass

    def authorize(self, amount: int, currency: str, payer_ref: str, payee_ref: str) -> Authorization:
        raise NotImplementedError

    def capture(self, intent_id: str, payee_ref: str) -> None:
        """Move held funds to the payee. Raises ``AlreadyCapturedError`` if that already happened."""
        raise NotImplementedError

    def cancel(self, intent_id: str) -> None:
        """Release the hold. Cancelling an already cancelled hold is a no-op."""
        raise NotImplementedError

    def create_payee_account(self, email: str, user_id: str) -> PayeeAccount:
        raise NotImplementedError


class StripeGateway(PaymentGateway):
    def __init__(self, client=None, api_key: str = STRIPE_SECRET_KEY,
                 timeout: float = GATEWAY_TIMEOUT_SECONDS, app_url: str = APP_URL):
        self._client = client
        self._api_key = api_key
        self._timeout = timeout
        self._app_url = app_url
        self._http_client = None

    def open(self):
        if self._client is not None:
            return
        if not self._api_key:
            raise GatewayError("STRIPE_SECRET_KEY not configured")
        self._http_client = stripe.RequestsClient(timeout=self._timeout)
        self._client = stripe.StripeClient(
            self._api_key,
            http_client=self._http_client,
            max_network_retries=2,
        )
        logger.info("Stripe gateway opened")

    def close(self):
        if self._http_client is not None:
            self._http_client.close()
            self._http_client = None
        logger.info("Stripe gateway closed")

    @property
    def client(self):
        if self._client is None:
            self.open()
        return self._client

    def authorize(self, amount, currency, payer_ref, payee_ref):
        try:
            intent = self.client.payment_intents.create(
                params={
                    "amount": amount,
                    "currency": currency,
                    "capture_method": "manual",
                    "payment_method_types": ["card"],
                    "metadata": {"buyerId": payer_ref, "sellerAccountId": payee_ref},
                },
                options={"idempotency_key": f"authorize-{uuid.uuid4()}"},
            )
        except stripe.StripeError as e:
            raise GatewayError(f"authorization failed: {e.user_message or e}") from e
        return Authorization(intent_id=intent.id, client_secret=intent.client_secret)

    def capture(self, intent_id, payee_ref):
        already_captured = False
        try:
            intent = self.client.payment_intents.capture(
                intent_id, options={"idempotency_key": f"capture-{intent_id}"}
            )
        except stripe.InvalidRequestError as e:
            intent = self._retrieve(intent_id)
            if intent.status != "succeeded":
                raise GatewayError(f"capture failed: {e.user_message or e}") from e
            already_captured = True
        except stripe.StripeError as e:
            raise GatewayError(f"capture failed: {e.user_message or e}") from e

        # same key on every attempt, so a retried release never pays the seller twice
        try:
            self.client.transfers.create(
                params={
                    "amount": intent.amount_received or intent.amount,
                    "currency": intent.currency,
                    "destination": payee_ref,
                    "metadata": {"payment_intent_id": intent_id},
                },
                options={"idempotency_key": f"transfer-{intent_id}"},
            )
        except stripe.StripeError as e:
            raise GatewayError(f"transfer to payee failed: {e.user_message or e}") from e

        if already_captured:
            raise AlreadyCapturedError(f"payment intent {intent_id} was already captured")

    def cancel(self, intent_id):
        try:
            self.client.payment_intents.cancel(intent_id)
        except stripe.InvalidRequestError as e:
            intent = self._retrieve(intent_id)
            if intent.status != "canceled":
                raise GatewayError(f"cancel failed: {e.user_message or e}") from e
        except stripe.StripeError as e:
            raise GatewayError(f"cancel failed: {e.user_message or e}") from e

    def create_payee_account(self, email, user_id):
        try:
            account = self.client.accounts.create(
                params={
                    "type": "express",
                    "email": email,
                    "capabilities": {
                        "card_payments": {"requested": True},
                        "transfers": {"requested": True},
                    },
                    "metadata": {"userId": user_id},
                }
            )
            link = self.client.account_links.create(
                params={
                    "account": account.id,
                    "refresh_url": f"{self._app_url}/payee/reauth",
                    "return_url": f"{self._app_url}/payee/return",
                    "type": "account_onboarding",
                }
            )
        except stripe.StripeError as e:
            raise GatewayError(f"payee account creation failed: {e.user_message or e}") from e
        return PayeeAccount(account_ref=account.id, onboarding_url=link.url)

    def _retrieve(self, intent_id):
        try:
            return self.client.payment_intents.retrieve(intent_id)
        except stripe.StripeError as e:
            raise GatewayError(f"could not read payment intent {intent_id}: {e.user_message or e}") from e
