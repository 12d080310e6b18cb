"""Webhook delivery: signature gate, event routing, order transitions, hooks."""
import asyncio
import json
from decimal import Decimal

import pytest
from structlog.testing import capture_logs

from conftest import HookRecorder, event_body, run, sign
from pipeline.errors import ProviderCallError
from schemas.orders import FailureCategory, Order
from services.hooks import HookEvent


def deliver(gateway, event_type, obj=None, **extra):
    return run(gateway.process_webhook(event_body(event_type, obj, **extra), None))


def stored(gateway, transaction_id):
    return run(gateway.orders.get_by_transaction_id(transaction_id))


def messages_for(gateway, order):
    return [m.message for m in run(gateway.messages.list_for_order(order.id))]


# =============================================================================
# END-TO-END SCENARIOS
# =============================================================================

def test_charge_succeeded_completes_pending_order(client, gateway, pending_order):
    r = client.post("/stripe/webhook", content=event_body("charge.succeeded", {"id": "ch_1"}))
    assert r.status_code == 200
    assert r.json() == {"success": True}
    assert stored(gateway, "ch_1").is_completed


def test_charge_succeeded_replay_is_idempotent(client, gateway, pending_order, hooks):
    body = event_body("charge.succeeded", {"id": "ch_1"})
    first = client.post("/stripe/webhook", content=body)
    second = client.post("/stripe/webhook", content=body)

    assert first.status_code == second.status_code == 200
    assert second.json() == {"success": True}
    order = stored(gateway, "ch_1")
    assert order.is_completed
    assert hooks.count(HookEvent.ORDER_COMPLETE) == 1
    assert messages_for(gateway, order) == ["charge.succeeded", "charge.succeeded"]


def test_unknown_event_type_is_not_processed(client, order_store, hooks):
    r = client.post("/stripe/webhook", content=json.dumps({"type": "unknown.event"}).encode())
    assert r.status_code == 200
    assert r.json() == {"success": False}
    assert order_store.lookups == 0
    assert hooks.fired == []


def test_event_without_type_is_not_processed(client, order_store):
    r = client.post("/stripe/webhook", content=b'{"data": {"object": {"id": "ch_1"}}}')
    assert r.status_code == 200
    assert r.json() == {"success": False}
    assert order_store.lookups == 0


def test_invalid_signature_rejected_before_lookup(secured_client, order_store):
    r = secured_client.post(
        "/stripe/webhook",
        content=event_body("charge.succeeded", {"id": "ch_1"}),
        headers={"stripe-signature": "t=1,v1=deadbeef"},
    )
    assert r.status_code == 400
    assert r.content == b""
    assert order_store.lookups == 0


def test_tampered_body_rejected(secured_client, order_store):
    header = sign(event_body("charge.succeeded", {"id": "ch_1"}))
    r = secured_client.post(
        "/stripe/webhook",
        content=event_body("charge.succeeded", {"id": "ch_2"}),
        headers={"stripe-signature": header},
    )
    assert r.status_code == 400
    assert order_store.lookups == 0


def test_missing_signature_rejected_when_secret_configured(secured_client):
    r = secured_client.post("/stripe/webhook", content=event_body("charge.succeeded", {"id": "ch_1"}))
    assert r.status_code == 400


def test_valid_signature_accepted(secured_client, order_store):
    body = event_body("charge.succeeded", {"id": "ch_1"})
    r = secured_client.post("/stripe/webhook", content=body, headers={"stripe-signature": sign(body)})
    assert r.status_code == 200
    assert r.json() == {"success": True}
    assert order_store.lookups == 1


def test_unparseable_body_rejected(client):
    r = client.post("/stripe/webhook", content=b"{not json")
    assert r.status_code == 400
    assert r.content == b""


def test_non_object_body_rejected(gateway):
    assert run(gateway.process_webhook(b"[1, 2, 3]", None)) == (400, None)


@pytest.mark.parametrize(
    "body, success",
    [
        (b'{"type": "charge.succeeded", "data": {"object": "ch_1"}}', True),
        (b'{"type": "charge.succeeded", "data": [1]}', True),
        (b'{"type": "charge.captured", "data": {"object": {"id": ["ch_1"], "captured": true}}}', True),
        (b'{"type": ["charge.succeeded"], "data": {"object": {"id": "ch_1"}}}', False),
        (b'{"type": 42}', False),
    ],
)
def test_malformed_envelope_is_a_no_op(client, gateway, pending_order, body, success):
    r = client.post("/stripe/webhook", content=body)
    assert r.status_code == 200
    assert r.json() == {"success": success}
    assert not stored(gateway, "ch_1").is_completed


# =============================================================================
# NO-OP SAFETY & MONOTONIC COMPLETION
# =============================================================================

def test_unmatched_transaction_is_a_no_op(gateway, hooks):
    for event_type in ("charge.succeeded", "charge.failed", "source.failed", "source.canceled",
                       "source.chargeable", "charge.captured", "charge.pending"):
        assert deliver(gateway, event_type, {"id": "ch_missing", "captured": True}) == (200, {"success": True})

    assert run(gateway.orders.list_all()) == []
    assert hooks.count(HookEvent.ORDER_COMPLETE) == 0
    assert hooks.count(HookEvent.WEBHOOK_RECEIVED) == 7
    assert all(order is None for _, order in hooks.fired)


def test_event_without_object_id_is_tolerated(gateway, order_store):
    assert deliver(gateway, "charge.succeeded", {}) == (200, {"success": True})
    assert order_store.lookups == 0


def test_failure_events_never_uncomplete(gateway, pending_order):
    deliver(gateway, "charge.succeeded", {"id": "ch_1"})
    for event_type in ("source.failed", "source.canceled", "charge.failed", "charge.pending"):
        deliver(gateway, event_type, {"id": "ch_1"})

    order = stored(gateway, "ch_1")
    assert order.is_completed
    assert messages_for(gateway, order) == [
        "charge.succeeded", "source.failed", "source.canceled", "charge.failed", "charge.pending",
    ]


def test_charge_failed_leaves_order_pending(gateway, pending_order):
    deliver(gateway, "charge.failed", {"id": "ch_1"})
    order = stored(gateway, "ch_1")
    assert not order.is_completed
    assert messages_for(gateway, order) == ["charge.failed"]


# =============================================================================
# MANUAL CAPTURE
# =============================================================================

def test_capture_binds_to_the_charge_object(gateway, hooks):
    run(gateway.orders.save(Order(stripe_transaction_id="ch_envelope")))
    run(gateway.orders.save(Order(stripe_transaction_id="ch_captured")))

    deliver(gateway, "charge.captured", {"id": "ch_captured", "captured": True}, id="ch_envelope")

    assert stored(gateway, "ch_captured").is_completed
    assert not stored(gateway, "ch_envelope").is_completed


def test_capture_notifies_once_without_completion_hook(gateway, hooks):
    run(gateway.orders.save(Order(stripe_transaction_id="ch_auth")))

    deliver(gateway, "charge.captured", {"id": "ch_auth", "captured": True})
    deliver(gateway, "charge.captured", {"id": "ch_auth", "captured": True})

    order = stored(gateway, "ch_auth")
    assert order.is_completed
    assert hooks.count(HookEvent.ORDER_CAPTURE) == 1
    assert hooks.count(HookEvent.ORDER_COMPLETE) == 0
    assert messages_for(gateway, order) == [
        "Webhook - Payment captured", "charge.captured", "charge.captured",
    ]


def test_uncaptured_charge_is_ignored(gateway, hooks):
    run(gateway.orders.save(Order(stripe_transaction_id="ch_auth")))
    deliver(gateway, "charge.captured", {"id": "ch_auth", "captured": False})
    assert not stored(gateway, "ch_auth").is_completed
    assert hooks.count(HookEvent.ORDER_CAPTURE) == 0


# =============================================================================
# CHECKOUT-DERIVED ORDERS
# =============================================================================

def test_checkout_with_payment_intent_creates_order(gateway, stripe_client, hooks):
    stripe_client.payment_intents["pi_1"] = {
        "id": "pi_1", "amount": 2500, "currency": "eur", "status": "succeeded",
        "payment_method_types": ["card"],
    }
    session = {
        "id": "cs_1",
        "payment_intent": "pi_1",
        "subscription": "sub_ignored",
        "payment_status": "paid",
        "customer_details": {"email": "buyer@example.com"},
        "metadata": {"form_id": "1", "quantity": "2"},
    }

    assert deliver(gateway, "checkout.session.completed", session) == (200, {"success": True})

    order = stored(gateway, "pi_1")
    assert order.total_price == Decimal("25")
    assert order.currency == "eur"
    assert order.email == "buyer@example.com"
    assert order.quantity == 2
    assert order.form_id == 1
    assert order.is_completed
    assert not order.is_subscription
    assert stripe_client.called("retrieve_subscription") == []
    assert hooks.count(HookEvent.ORDER_COMPLETE) == 1
    assert messages_for(gateway, order) == ["checkout.session.completed"]


def test_checkout_redelivery_creates_one_order(gateway, stripe_client, hooks):
    stripe_client.payment_intents["pi_1"] = {"id": "pi_1", "amount": 1000, "status": "succeeded"}
    event = json.loads(event_body("checkout.session.completed", {"id": "cs_1", "payment_intent": "pi_1"}))

    first = run(gateway.dispatcher.dispatch(event))
    second = run(gateway.dispatcher.dispatch(event))

    assert first.side_effects_applied
    assert not second.side_effects_applied
    assert first.order.number == second.order.number
    assert len(run(gateway.orders.list_all())) == 1
    assert hooks.count(HookEvent.ORDER_COMPLETE) == 1


def test_checkout_with_subscription_creates_subscription_order(gateway, stripe_client):
    stripe_client.subscriptions["sub_9"] = {"id": "sub_9", "status": "active"}
    session = {"id": "cs_2", "payment_intent": None, "subscription": "sub_9", "amount_total": 1000, "currency": "usd"}

    deliver(gateway, "checkout.session.completed", session)

    order = stored(gateway, "sub_9")
    assert order.is_subscription
    assert order.subscription_status == "active"
    assert order.total_price == Decimal("10")
    assert order.is_completed
    assert stripe_client.called("retrieve_payment_intent") == []


def test_checkout_without_intent_or_subscription_creates_nothing(gateway, stripe_client, hooks):
    with capture_logs() as logs:
        assert deliver(gateway, "checkout.session.completed", {"id": "cs_3"}) == (200, {"success": True})

    assert run(gateway.orders.list_all()) == []
    assert stripe_client.calls == []
    assert hooks.count(HookEvent.WEBHOOK_RECEIVED) == 1
    errors = [entry for entry in logs if entry["event"] == "checkout_order_not_created"]
    assert len(errors) == 1
    assert errors[0]["log_level"] == "error"
    assert errors[0]["session_id"] == "cs_3"


def test_checkout_with_unparseable_metadata_still_creates_order(client, gateway, stripe_client):
    stripe_client.payment_intents["pi_5"] = {"id": "pi_5", "amount": 900, "currency": "usd", "status": "succeeded"}
    session = {"id": "cs_5", "payment_intent": "pi_5", "metadata": {"quantity": "two", "form_id": "donation"}}

    with capture_logs() as logs:
        r = client.post("/stripe/webhook", content=event_body("checkout.session.completed", session))

    assert r.status_code == 200
    order = stored(gateway, "pi_5")
    assert order.quantity == 1
    assert order.form_id is None
    warned = [entry["key"] for entry in logs if entry["event"] == "checkout_metadata_invalid"]
    assert sorted(warned) == ["form_id", "quantity"]


def test_checkout_provider_failure_creates_nothing(gateway, stripe_client):
    stripe_client.failures["retrieve_payment_intent"] = ProviderCallError(FailureCategory.NETWORK, "timeout")
    assert deliver(gateway, "checkout.session.completed", {"id": "cs_4", "payment_intent": "pi_x"}) == (
        200, {"success": True}
    )
    assert run(gateway.orders.list_all()) == []


# =============================================================================
# DELAYED-PAYMENT SOURCES
# =============================================================================

def test_chargeable_source_is_charged(gateway, stripe_client):
    order = run(gateway.orders.save(Order(stripe_transaction_id="src_1", email="a@example.com", currency="eur")))

    deliver(gateway, "source.chargeable", {"id": "src_1", "type": "ideal", "amount": 1500, "currency": "eur"})

    params = stripe_client.called("create_charge")[0]["params"]
    assert params["source"] == "src_1"
    assert params["amount"] == 1500
    assert params["metadata"] == {"order_number": order.number}

    charged = run(gateway.orders.get_by_number(order.number))
    assert charged.stripe_transaction_id.startswith("ch_")
    assert charged.transaction_info == "src_1"
    assert charged.payment_type == "ideal"
    assert charged.is_completed


def test_pending_source_charge_completes_on_charge_succeeded(gateway, stripe_client):
    stripe_client.charge_status = "pending"
    order = run(gateway.orders.save(Order(stripe_transaction_id="src_2", email="a@example.com")))

    deliver(gateway, "source.chargeable", {"id": "src_2", "type": "sofort", "amount": 900})
    charged = run(gateway.orders.get_by_number(order.number))
    assert not charged.is_completed

    deliver(gateway, "charge.succeeded", {"id": charged.stripe_transaction_id})
    assert run(gateway.orders.get_by_number(order.number)).is_completed


def test_source_charge_failure_leaves_order_unchanged(gateway, stripe_client):
    stripe_client.failures["create_charge"] = ProviderCallError(FailureCategory.CARD_DECLINED, "declined")
    run(gateway.orders.save(Order(stripe_transaction_id="src_3")))

    assert deliver(gateway, "source.chargeable", {"id": "src_3", "type": "ideal"}) == (200, {"success": True})

    order = stored(gateway, "src_3")
    assert order is not None
    assert not order.is_completed


# =============================================================================
# HOOKS
# =============================================================================

def test_failing_hook_does_not_abort_transition(gateway, pending_order):
    async def boom(**context):
        raise RuntimeError("mailer down")

    gateway.hooks.register(HookEvent.ORDER_COMPLETE, boom)
    gateway.hooks.register(HookEvent.WEBHOOK_RECEIVED, boom)
    recorder = HookRecorder(gateway.hooks)

    assert deliver(gateway, "charge.succeeded", {"id": "ch_1"}) == (200, {"success": True})
    assert stored(gateway, "ch_1").is_completed
    assert recorder.count(HookEvent.ORDER_COMPLETE) == 1
    assert recorder.count(HookEvent.WEBHOOK_RECEIVED) == 1


def test_webhook_received_carries_resolved_order(gateway, pending_order, hooks):
    deliver(gateway, "charge.pending", {"id": "ch_1"})
    (event, order), = hooks.fired
    assert event == HookEvent.WEBHOOK_RECEIVED
    assert order.number == pending_order.number


def test_webhook_received_carries_event_payload(gateway, pending_order):
    received = []

    @gateway.hooks.on(HookEvent.WEBHOOK_RECEIVED)
    async def record(event, order, **context):
        received.append((event["type"], event["data"]["object"]["id"], order.number))

    assert deliver(gateway, "charge.succeeded", {"id": "ch_1"}) == (200, {"success": True})
    assert received == [("charge.succeeded", "ch_1", pending_order.number)]


# =============================================================================
# CONCURRENT DELIVERIES
# =============================================================================

def test_concurrent_redeliveries_complete_once(gateway, pending_order, hooks):
    event = json.loads(event_body("charge.succeeded", {"id": "ch_1"}))

    async def deliver_twice():
        return await asyncio.gather(gateway.dispatcher.dispatch(event), gateway.dispatcher.dispatch(event))

    first, second = run(deliver_twice())

    assert [first.side_effects_applied, second.side_effects_applied].count(True) == 1
    assert hooks.count(HookEvent.ORDER_COMPLETE) == 1
    assert gateway.dispatcher._transaction_locks == {}


def test_transaction_locks_are_released_after_delivery(gateway, pending_order):
    for transaction_id in ("ch_1", "ch_2", "ch_3"):
        deliver(gateway, "charge.pending", {"id": transaction_id})
    deliver(gateway, "checkout.session.completed", {"id": "cs_9"})

    assert gateway.dispatcher._transaction_locks == {}
    assert gateway.dispatcher._transaction_lock_users == {}
