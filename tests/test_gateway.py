from unittest.mock import MagicMock

import pytest
import stripe

from handoff_escrow.errors import AlreadyCapturedError, GatewayError
from handoff_escrow.gateway import StripeGateway


def unexpected_state(message="This PaymentIntent could not be captured"):
    return stripe.InvalidRequestError(message, None, code="payment_intent_unexpected_state")


@pytest.fixture
def client():
    client = MagicMock()
    client.payment_intents.create.return_value = MagicMock(id="pi_123", client_secret="pi_123_secret_x")
    client.payment_intents.capture.return_value = MagicMock(
        id="pi_123", amount=2500, amount_received=2500, currency="usd", status="succeeded"
    )
    client.accounts.create.return_value = MagicMock(id="acct_new")
    client.account_links.create.return_value = MagicMock(url="https://connect.stripe.test/onboard")
    return client


@pytest.fixture
def gateway(client):
    return StripeGateway(client=client, app_url="https://app.test")


def test_authorize_places_manual_capture_hold(gateway, client):
    authorization = gateway.authorize(2500, "usd", "B", "acct_S")

    assert authorization.intent_id == "pi_123"
    assert authorization.client_secret == "pi_123_secret_x"
    params = client.payment_intents.create.call_args.kwargs["params"]
    assert params["amount"] == 2500
    assert params["currency"] == "usd"
    assert params["capture_method"] == "manual"
    assert params["metadata"] == {"buyerId": "B", "sellerAccountId": "acct_S"}


def test_authorize_failure_is_a_gateway_error(gateway, client):
    client.payment_intents.create.side_effect = stripe.CardError("Your card was declined.", None, "card_declined")
    with pytest.raises(GatewayError):
        gateway.authorize(2500, "usd", "B", "acct_S")


def test_capture_transfers_to_payee_with_stable_idempotency_key(gateway, client):
    gateway.capture("pi_123", "acct_S")

    client.payment_intents.capture.assert_called_once()
    transfer = client.transfers.create.call_args.kwargs
    assert transfer["params"]["destination"] == "acct_S"
    assert transfer["params"]["amount"] == 2500
    assert transfer["options"] == {"idempotency_key": "transfer-pi_123"}


def test_capture_of_captured_intent_reports_already_captured(gateway, client):
    client.payment_intents.capture.side_effect = unexpected_state()
    client.payment_intents.retrieve.return_value = MagicMock(
        amount=2500, amount_received=2500, currency="usd", status="succeeded"
    )

    with pytest.raises(AlreadyCapturedError):
        gateway.capture("pi_123", "acct_S")
    # the transfer is re-driven in case the earlier attempt stopped after capturing
    client.transfers.create.assert_called_once()


def test_capture_rejected_for_other_reasons(gateway, client):
    client.payment_intents.capture.side_effect = unexpected_state()
    client.payment_intents.retrieve.return_value = MagicMock(status="canceled")
    with pytest.raises(GatewayError) as info:
        gateway.capture("pi_123", "acct_S")
    assert not isinstance(info.value, AlreadyCapturedError)
    client.transfers.create.assert_not_called()


def test_capture_timeout_is_a_gateway_error(gateway, client):
    client.payment_intents.capture.side_effect = stripe.APIConnectionError("Request timed out")
    with pytest.raises(GatewayError):
        gateway.capture("pi_123", "acct_S")


def test_cancel_of_cancelled_intent_is_a_noop(gateway, client):
    client.payment_intents.cancel.side_effect = unexpected_state("already canceled")
    client.payment_intents.retrieve.return_value = MagicMock(status="canceled")
    gateway.cancel("pi_123")


def test_cancel_failure(gateway, client):
    client.payment_intents.cancel.side_effect = stripe.APIConnectionError("Request timed out")
    with pytest.raises(GatewayError):
        gateway.cancel("pi_123")


def test_create_payee_account(gateway, client):
    account = gateway.create_payee_account("seller@example.com", "S")

    assert account.account_ref == "acct_new"
    assert account.onboarding_url == "https://connect.stripe.test/onboard"
    link = client.account_links.create.call_args.kwargs["params"]
    assert link["account"] == "acct_new"
    assert link["return_url"] == "https://app.test/payee/return"


def test_open_requires_api_key():
    with pytest.raises(GatewayError):
        StripeGateway(api_key="").open()
