import json
import time

import pytest

from conftest import BUYER, SELLER, SELLER_ACCOUNT, WEBHOOK_SECRET, code_of, load, sign
from handoff_escrow.errors import SignatureError
from handoff_escrow.models import PayeeStatus, TransactionStatus, User
from handoff_escrow.reconciler import GatewayEventReconciler


def event(event_type, obj):
    return json.dumps({"id": "evt_1", "type": event_type, "data": {"object": obj}})


@pytest.fixture
def reconciler(session_factory):
    return GatewayEventReconciler(session_factory, WEBHOOK_SECRET)


def status_of(escrow, opened):
    return escrow.get_transaction(opened.transaction.id, BUYER).status


def test_authorization_success_moves_pending_to_authorized(reconciler, escrow, opened):
    payload = event("payment_intent.amount_capturable_updated", {"id": opened.transaction.gateway_intent_id})
    assert reconciler.handle(payload.encode(), sign(payload)) == "authorized"
    assert status_of(escrow, opened) == TransactionStatus.AUTHORIZED


def test_duplicate_authorization_event_is_dropped(reconciler, escrow, opened):
    payload = event("payment_intent.succeeded", {"id": opened.transaction.gateway_intent_id})
    reconciler.handle(payload, sign(payload))
    assert reconciler.handle(payload, sign(payload)) == "ignored"
    assert status_of(escrow, opened) == TransactionStatus.AUTHORIZED


def test_authorization_failure_cancels(reconciler, escrow, opened):
    payload = event("payment_intent.payment_failed", {"id": opened.transaction.gateway_intent_id})
    assert reconciler.handle(payload, sign(payload)) == "cancelled"
    assert status_of(escrow, opened) == TransactionStatus.CANCELLED


def test_events_for_terminal_transactions_are_dropped(reconciler, escrow, opened):
    escrow.confirm(opened.handoff.id, BUYER, code_of(opened))
    escrow.confirm(opened.handoff.id, SELLER, code_of(opened))

    for event_type in ("payment_intent.succeeded", "payment_intent.payment_failed"):
        payload = event(event_type, {"id": opened.transaction.gateway_intent_id})
        assert reconciler.handle(payload, sign(payload)) == "ignored"
    assert status_of(escrow, opened) == TransactionStatus.COMPLETED


def test_unmatched_and_unknown_events_are_dropped(reconciler):
    for payload in (
        event("payment_intent.succeeded", {"id": "pi_unknown"}),
        event("charge.refunded", {"id": "ch_1"}),
        json.dumps({"type": "payment_intent.succeeded"}),
    ):
        assert reconciler.handle(payload, sign(payload)) == "ignored"


def test_bad_signature_is_rejected_without_mutation(reconciler, escrow, opened):
    payload = event("payment_intent.payment_failed", {"id": opened.transaction.gateway_intent_id})
    with pytest.raises(SignatureError):
        reconciler.handle(payload, sign(payload, secret="whsec_wrong"))
    with pytest.raises(SignatureError):
        reconciler.handle(payload, "")
    tampered = payload.replace("payment_failed", "succeeded")
    with pytest.raises(SignatureError):
        reconciler.handle(tampered, sign(payload))
    assert status_of(escrow, opened) == TransactionStatus.PENDING


def test_stale_signature_is_rejected(reconciler, escrow, opened):
    payload = event("payment_intent.payment_failed", {"id": opened.transaction.gateway_intent_id})
    with pytest.raises(SignatureError):
        reconciler.handle(payload, sign(payload, timestamp=int(time.time()) - 3600))
    assert status_of(escrow, opened) == TransactionStatus.PENDING


def test_signed_garbage_is_rejected(reconciler):
    with pytest.raises(SignatureError):
        reconciler.handle("not json", sign("not json"))


def test_unconfigured_secret_rejects_everything(session_factory):
    reconciler = GatewayEventReconciler(session_factory, "")
    payload = event("payment_intent.succeeded", {"id": "pi_1"})
    with pytest.raises(SignatureError):
        reconciler.handle(payload, sign(payload))


@pytest.mark.parametrize("account, expected", [
    ({"payouts_enabled": True}, PayeeStatus.ENABLED),
    ({"payouts_enabled": False, "requirements": {"disabled_reason": "rejected.fraud"}}, PayeeStatus.RESTRICTED),
    ({"payouts_enabled": False, "requirements": {"disabled_reason": None}}, PayeeStatus.PENDING),
])
def test_account_updates_track_payee_status(reconciler, session_factory, users, account, expected):
    payload = event("account.updated", dict(account, id=SELLER_ACCOUNT))
    assert reconciler.handle(payload, sign(payload)) == "account_updated"
    assert load(session_factory, User, SELLER).payee_status == expected


def test_account_update_for_unknown_account(reconciler, users):
    payload = event("account.updated", {"id": "acct_unknown", "payouts_enabled": True})
    assert reconciler.handle(payload, sign(payload)) == "ignored"
