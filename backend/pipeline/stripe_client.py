# pipeline/stripe_client.py
# ============================================================================
# STRIPE PAYMENTS — PROVIDER CLIENT
# ============================================================================
# The provider capability boundary: charges, customers, plans, subscriptions,
# invoice items, payment intents. Every SDK failure leaves here as a
# ProviderCallError carrying its category.
# ============================================================================

from abc import ABC, abstractmethod
from functools import wraps
from typing import Any, Dict, Optional

import stripe
import structlog

from pipeline.errors import ProviderCallError
from schemas.orders import FailureCategory


def classify_stripe_error(exc: Exception) -> FailureCategory:
    """Map an SDK exception onto a failure category."""
    if isinstance(exc, stripe.CardError):
        return FailureCategory.CARD_DECLINED
    if isinstance(exc, stripe.RateLimitError):
        return FailureCategory.RATE_LIMITED
    if isinstance(exc, stripe.InvalidRequestError):
        return FailureCategory.INVALID_REQUEST
    if isinstance(exc, stripe.AuthenticationError):
        return FailureCategory.AUTHENTICATION
    if isinstance(exc, stripe.APIConnectionError):
        return FailureCategory.NETWORK
    if isinstance(exc, stripe.StripeError):
        return FailureCategory.PROVIDER
    return FailureCategory.UNEXPECTED


def as_dict(obj: Any) -> Dict[str, Any]:
    """Convert SDK objects into plain dicts."""
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return obj
    to_dict = getattr(obj, "to_dict", None) or getattr(obj, "to_dict_recursive", None)
    if callable(to_dict):
        return to_dict()
    return dict(obj)


def provider_call(operation: str):
    """Translate SDK exceptions raised by ``operation`` into ProviderCallError."""
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except stripe.StripeError as e:
                category = classify_stripe_error(e)
                raise ProviderCallError(category, f"{operation}: {e.user_message or str(e)}") from e
        return wrapper
    return decorator


# =============================================================================
# INTERFACE
# =============================================================================

class IStripeClient(ABC):
    """Provider operations the reconciliation engine relies on"""

    @abstractmethod
    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def create_customer(self, email: str, source: Optional[str]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def attach_source(self, customer_id: str, source: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def create_charge(self, params: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def retrieve_plan(self, plan_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def create_plan(self, params: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def create_subscription(
        self,
        customer_id: str,
        plan_id: str,
        metadata: Dict[str, str],
        source: Optional[str] = None,
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    def create_invoice_item(self, customer_id: str, amount: int, currency: str, description: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        pass


# =============================================================================
# STRIPE SDK IMPLEMENTATION
# =============================================================================

class StripeSdkClient(IStripeClient):
    """
    IStripeClient backed by the ``stripe`` package.

    The API key is passed on every call instead of being assigned to
    ``stripe.api_key``, so test and live clients can coexist in one process.
    """

    def __init__(self, api_key: str):
        self._api_key = api_key
        self._logger = structlog.get_logger().bind(component="stripe_client")

    @provider_call("retrieve customer")
    def retrieve_customer(self, customer_id: str) -> Dict[str, Any]:
        return as_dict(stripe.Customer.retrieve(customer_id, api_key=self._api_key))

    @provider_call("create customer")
    def create_customer(self, email: str, source: Optional[str]) -> Dict[str, Any]:
        params: Dict[str, Any] = {"email": email}
        if source:
            params["source"] = source
        return as_dict(stripe.Customer.create(api_key=self._api_key, **params))

    @provider_call("attach source")
    def attach_source(self, customer_id: str, source: str) -> Dict[str, Any]:
        return as_dict(stripe.Customer.create_source(customer_id, source=source, api_key=self._api_key))

    @provider_call("create charge")
    def create_charge(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return as_dict(stripe.Charge.create(api_key=self._api_key, **params))

    @provider_call("retrieve plan")
    def retrieve_plan(self, plan_id: str) -> Dict[str, Any]:
        return as_dict(stripe.Plan.retrieve(plan_id, api_key=self._api_key))

    @provider_call("create plan")
    def create_plan(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return as_dict(stripe.Plan.create(api_key=self._api_key, **params))

    @provider_call("create subscription")
    def create_subscription(
        self,
        customer_id: str,
        plan_id: str,
        metadata: Dict[str, str],
        source: Optional[str] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "customer": customer_id,
            "items": [{"plan": plan_id}],
            "metadata": metadata,
        }
        if source:
            params["default_source"] = source
        return as_dict(stripe.Subscription.create(api_key=self._api_key, **params))

    @provider_call("create invoice item")
    def create_invoice_item(self, customer_id: str, amount: int, currency: str, description: str) -> Dict[str, Any]:
        return as_dict(stripe.InvoiceItem.create(
            customer=customer_id,
            amount=amount,
            currency=currency,
            description=description,
            api_key=self._api_key,
        ))

    @provider_call("retrieve payment intent")
    def retrieve_payment_intent(self, payment_intent_id: str) -> Dict[str, Any]:
        return as_dict(stripe.PaymentIntent.retrieve(payment_intent_id, api_key=self._api_key))

    @provider_call("retrieve subscription")
    def retrieve_subscription(self, subscription_id: str) -> Dict[str, Any]:
        return as_dict(stripe.Subscription.retrieve(subscription_id, api_key=self._api_key))
