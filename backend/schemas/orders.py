# schemas/orders.py
# ============================================================================
# STRIPE PAYMENTS — ORDER & PAYMENT SCHEMAS
# ============================================================================
# Pydantic models shared by the stores, the reconciliation engine and the API
# ============================================================================

import secrets
import string
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, computed_field, field_validator


ORDER_NUMBER_LENGTH = 12
ORDER_NUMBER_ALPHABET = string.digits + string.ascii_letters


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def generate_order_number(length: int = ORDER_NUMBER_LENGTH) -> str:
    """Random alphanumeric order number from a CSPRNG."""
    return "".join(secrets.choice(ORDER_NUMBER_ALPHABET) for _ in range(length))


def flatten_metadata(values: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """
    Collapse posted form values into provider-safe metadata.

    Multi-value fields (checkboxes, multi-selects) are joined with " - ".
    """
    metadata: Dict[str, str] = {}
    for key, item in (values or {}).items():
        if isinstance(item, (list, tuple)):
            metadata[str(key)] = " - ".join(str(v) for v in item)
        elif item is None:
            metadata[str(key)] = ""
        else:
            metadata[str(key)] = str(item)
    return metadata


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(IntEnum):
    """Fulfillment state, independent of payment completion."""
    NEW = 1
    SHIPPED = 2

    @property
    def color(self) -> str:
        return {OrderStatus.NEW: "green", OrderStatus.SHIPPED: "blue"}[self]

    @property
    def label(self) -> str:
        return self.name.title()


class SubscriptionType(str, Enum):
    SINGLE_PLAN = "single_plan"
    MULTIPLE_PLANS = "multiple_plans"


class FailureCategory(str, Enum):
    CARD_DECLINED = "card_declined"
    RATE_LIMITED = "rate_limited"
    INVALID_REQUEST = "invalid_request"
    AUTHENTICATION = "authentication"
    NETWORK = "network"
    PROVIDER = "provider"
    UNEXPECTED = "unexpected"


# =============================================================================
# DOMAIN MODELS
# =============================================================================

class Address(BaseModel):
    """Shipping snapshot captured when the order is created"""
    name: str = ""
    line1: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = ""
    country_code: str = ""


class Order(BaseModel):
    """Core order entity"""
    id: Optional[int] = None
    number: str = Field(default_factory=generate_order_number, min_length=1)
    stripe_transaction_id: Optional[str] = None
    transaction_info: Optional[str] = None

    order_status_id: OrderStatus = OrderStatus.NEW
    form_id: Optional[int] = None
    user_id: Optional[int] = None
    test_mode: bool = True
    payment_type: Optional[str] = None

    currency: str = "usd"
    total_price: Decimal = Decimal("0")
    shipping: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    discount: Decimal = Decimal("0")
    quantity: int = 1

    is_completed: bool = False
    is_subscription: bool = False
    subscription_status: Optional[str] = None
    refunded: bool = False
    date_refunded: Optional[datetime] = None

    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    address: Address = Field(default_factory=Address)

    variants: Dict[str, str] = Field(default_factory=dict)
    post_data: Dict[str, Any] = Field(default_factory=dict)
    message: Optional[str] = None

    date_ordered: Optional[datetime] = None
    date_created: datetime = Field(default_factory=utc_now)
    date_updated: datetime = Field(default_factory=utc_now)

    @computed_field
    @property
    def base_price(self) -> Decimal:
        return self.total_price - self.tax - self.shipping

    @computed_field
    @property
    def payment_status(self) -> str:
        return "succeeded" if self.is_completed else "pending"

    @computed_field
    @property
    def payment_kind(self) -> str:
        return "Subscription" if self.is_subscription else "One-Time"

    def shipping_address(self) -> Dict[str, str]:
        return {
            "addressName": self.address.name,
            "addressStreet": self.address.line1,
            "addressCity": self.address.city,
            "addressState": self.address.state,
            "addressZip": self.address.zip,
            "addressCountry": self.address.country,
        }

    def __str__(self) -> str:
        return self.number


class OrderMessage(BaseModel):
    """Append-only audit trail entry for an order"""
    id: Optional[int] = None
    order_id: int
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    date_created: datetime = Field(default_factory=utc_now)


class CustomerRecord(BaseModel):
    """Local cache of provider customers, keyed by (email, test_mode)"""
    email: str
    stripe_id: str
    test_mode: bool = True


class PlanOption(BaseModel):
    plan_id: str
    setup_fee: Optional[Decimal] = None


class PaymentForm(BaseModel):
    """Payment button configuration the engine reads (and writes, for stock)"""
    id: int
    name: str
    handle: str = ""
    currency: str = "usd"

    enable_subscriptions: bool = False
    subscription_type: SubscriptionType = SubscriptionType.SINGLE_PLAN
    single_plan_id: Optional[str] = None
    single_plan_setup_fee: Optional[Decimal] = None
    single_plan_trial_period: Optional[int] = None
    enable_custom_plan_amount: bool = False
    custom_plan_interval: int = 1
    custom_plan_frequency: str = "month"
    multiple_plans: List[PlanOption] = Field(default_factory=list)
    recurring_payment_type: str = "month"

    has_unlimited_stock: bool = True
    quantity: int = 0

    def setup_fee_for_plan(self, plan_id: str) -> Optional[Decimal]:
        for plan in self.multiple_plans:
            if plan.plan_id == plan_id and plan.setup_fee:
                return plan.setup_fee
        return None

    def offers_plan(self, plan_id: str) -> bool:
        return any(plan.plan_id == plan_id for plan in self.multiple_plans)


# =============================================================================
# REQUEST / RESULT MODELS
# =============================================================================

class PaymentSubmission(BaseModel):
    """Posted payment form fields"""
    token: Optional[str] = None
    form_id: Optional[int] = Field(default=None, alias="formId")
    email: str
    amount: int = Field(ge=0, description="Amount in cents")
    quantity: int = Field(default=1, ge=1)
    shipping_amount: Decimal = Field(default=Decimal("0"), alias="shippingAmount")
    tax_amount: Decimal = Field(default=Decimal("0"), alias="taxAmount")
    discount_amount: Decimal = Field(default=Decimal("0"), alias="discountAmount")
    address: Optional[Address] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    custom_amount: Optional[Decimal] = Field(default=None, alias="customAmount")
    custom_plan_amount: Optional[Decimal] = Field(default=None, alias="customPlanAmount")
    multi_plan_id: Optional[str] = Field(default=None, alias="enupalMultiPlan")
    recurring_toggle: Optional[str] = Field(default=None, alias="recurringToggle")
    test_mode: bool = Field(default=True, alias="testMode")

    model_config = {"populate_by_name": True}

    @field_validator("email")
    @classmethod
    def _email_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("email is required")
        return v

    @property
    def wants_recurring(self) -> bool:
        return self.recurring_toggle == "on"


class ChargeResult(BaseModel):
    transaction_id: Optional[str] = None
    status: Optional[str] = None
    failure: Optional[FailureCategory] = None
    charge: Dict[str, Any] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.transaction_id is not None


class SubscriptionResult(BaseModel):
    transaction_id: Optional[str] = None
    status: Optional[str] = None
    failure: Optional[FailureCategory] = None
    subscription: Dict[str, Any] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.transaction_id is not None


class DispatchResult(BaseModel):
    """Outcome of routing one webhook event"""
    accepted: bool
    event_type: Optional[str] = None
    order: Optional[Order] = None
    side_effects_applied: bool = False
