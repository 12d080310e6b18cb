# schemas/__init__.py
# ============================================================================
# STRIPE PAYMENTS — SCHEMAS MODULE
# ============================================================================

from schemas.orders import (
    Address,
    ChargeResult,
    CustomerRecord,
    DispatchResult,
    FailureCategory,
    Order,
    OrderMessage,
    OrderStatus,
    PaymentForm,
    PaymentSubmission,
    PlanOption,
    SubscriptionResult,
    SubscriptionType,
    flatten_metadata,
    generate_order_number,
)

__all__ = [
    "Address",
    "ChargeResult",
    "CustomerRecord",
    "DispatchResult",
    "FailureCategory",
    "Order",
    "OrderMessage",
    "OrderStatus",
    "PaymentForm",
    "PaymentSubmission",
    "PlanOption",
    "SubscriptionResult",
    "SubscriptionType",
    "flatten_metadata",
    "generate_order_number",
]
