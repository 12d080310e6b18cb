"""Pytest fixtures: in-memory gateway, fake Stripe client, signed webhook deliveries."""
import asyncio
import hashlib
import hmac
import itertools
import json
import time
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from pipeline.gateway import PaymentGateway
from pipeline.settings import PaymentSettings
from pipeline.stripe_client import IStripeClient
from schemas.orders import Order, PaymentForm, PlanOption, SubscriptionType
from services.hooks import HookEvent, HookRegistry
from storage.order_store import InMemoryOrderStore, InMemoryPaymentFormStore

WEBHOOK_SECRET = "whsec_test_secret"


def run(coro):
    return asyncio.run(coro)


class FakeStripeClient(IStripeClient):
    """Records every provider call; ``failures`` maps an operation name to the error it raises."""

    def __init__(self):
        self.calls = []
        self.failures = {}
        self.charge_status = "succeeded"
        self.subscription_status = "active"
        self.customers = {}
        self.payment_intents = {}
        self.subscriptions = {}
        self._ids = itertools.count(1)

    def _record(self, name, **kwargs):
        self.calls.append((name, kwargs))
        if name in self.failures:
            raise self.failures[name]

    def called(self, name):
        return [kwargs for call, kwargs in self.calls if call == name]

    def retrieve_customer(self, customer_id):
        self._record("retrieve_customer", customer_id=customer_id)
        return self.customers.get(customer_id, {"id": customer_id})

    def create_customer(self, email, source):
        self._record("create_customer", email=email, source=source)
        customer = {"id": f"cus_{next(self._ids)}", "email": email}
        self.customers[customer["id"]] = customer
        return customer

    def attach_source(self, customer_id, source):
        self._record("attach_source", customer_id=customer_id, source=source)
        return {"id": f"card_{next(self._ids)}", "customer": customer_id}

    def create_charge(self, params):
        self._record("create_charge", params=params)
        return {
            "id": f"ch_{next(self._ids)}",
            "status": self.charge_status,
            "amount": params["amount"],
            "payment_method_details": {"type": "card"},
        }

    def retrieve_plan(self, plan_id):
        self._record("retrieve_plan", plan_id=plan_id)
        return {"id": plan_id}

    def create_plan(self, params):
        self._record("create_plan", params=params)
        return dict(params)

    def create_subscription(self, customer_id, plan_id, metadata, source=None):
        self._record("create_subscription", customer_id=customer_id, plan_id=plan_id, metadata=metadata, source=source)
        return {"id": f"sub_{next(self._ids)}", "status": self.subscription_status}

    def create_invoice_item(self, customer_id, amount, currency, description):
        self._record(
            "create_invoice_item",
            customer_id=customer_id,
            amount=amount,
            currency=currency,
            description=description,
        )
        return {"id": f"ii_{next(self._ids)}"}

    def retrieve_payment_intent(self, payment_intent_id):
        self._record("retrieve_payment_intent", payment_intent_id=payment_intent_id)
        return self.payment_intents[payment_intent_id]

    def retrieve_subscription(self, subscription_id):
        self._record("retrieve_subscription", subscription_id=subscription_id)
        return self.subscriptions[subscription_id]


class CountingOrderStore(InMemoryOrderStore):
    """In-memory store that counts transaction-id lookups"""

    def __init__(self):
        super().__init__()
        self.lookups = 0

    async def get_by_transaction_id(self, transaction_id):
        self.lookups += 1
        return await super().get_by_transaction_id(transaction_id)


class HookRecorder:
    """Registers on every hook event and keeps (event, order) pairs"""

    def __init__(self, hooks: HookRegistry):
        self.fired = []
        for event in HookEvent:
            hooks.register(event, self._recorder(event))

    def _recorder(self, event):
        async def record(order=None, **context):
            self.fired.append((event, order))
        return record

    def count(self, event):
        return len([e for e, _ in self.fired if e == event])


def sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Stripe-Signature header for ``payload``"""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed_payload = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def event_body(event_type, obj=None, **extra) -> bytes:
    event = {"id": "evt_test", "object": "event", "type": event_type, "data": {"object": obj or {}}}
    event.update(extra)
    return json.dumps(event).encode("utf-8")


def one_time_form(**overrides) -> PaymentForm:
    values = {"id": 1, "name": "Donation", "handle": "donation", "currency": "usd"}
    values.update(overrides)
    return PaymentForm(**values)


def single_plan_form(**overrides) -> PaymentForm:
    values = {
        "id": 2,
        "name": "Membership",
        "enable_subscriptions": True,
        "subscription_type": SubscriptionType.SINGLE_PLAN,
        "single_plan_id": "plan_gold",
    }
    values.update(overrides)
    return PaymentForm(**values)


def multi_plan_form(**overrides) -> PaymentForm:
    values = {
        "id": 3,
        "name": "Tiers",
        "enable_subscriptions": True,
        "subscription_type": SubscriptionType.MULTIPLE_PLANS,
        "multiple_plans": [
            PlanOption(plan_id="plan_basic"),
            PlanOption(plan_id="plan_pro", setup_fee=Decimal("25")),
        ],
    }
    values.update(overrides)
    return PaymentForm(**values)


@pytest.fixture
def stripe_client():
    return FakeStripeClient()


@pytest.fixture
def order_store():
    return CountingOrderStore()


@pytest.fixture
def forms():
    return InMemoryPaymentFormStore([one_time_form(), single_plan_form(), multi_plan_form()])


@pytest.fixture
def make_gateway(stripe_client, order_store, forms):
    """Factory: in-memory gateway, optionally with a webhook signing secret."""
    def factory(secret: str = "") -> PaymentGateway:
        settings = PaymentSettings(test_mode=True, test_webhook_secret=secret)
        return PaymentGateway(
            settings=settings,
            order_store=order_store,
            form_store=forms,
            stripe_client=stripe_client,
        )
    return factory


@pytest.fixture
def gateway(make_gateway):
    return make_gateway()


@pytest.fixture
def hooks(gateway):
    return HookRecorder(gateway.hooks)


@pytest.fixture
def pending_order(gateway):
    """A stored, not yet completed order for transaction ch_1"""
    return run(gateway.orders.save(Order(stripe_transaction_id="ch_1", email="buyer@example.com")))


@pytest.fixture
def client(gateway):
    """TestClient over an app wired to the in-memory gateway."""
    with TestClient(create_app(gateway)) as c:
        yield c


@pytest.fixture
def secured_client(make_gateway):
    with TestClient(create_app(make_gateway(secret=WEBHOOK_SECRET))) as c:
        yield c
