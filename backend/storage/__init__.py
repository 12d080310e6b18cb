# storage/__init__.py
# ============================================================================
# STRIPE PAYMENTS — STORAGE MODULE
# ============================================================================
# Store interfaces and in-memory adapters for orders, customers, audit
# messages and payment forms
# ============================================================================

from storage.order_store import (
    ICustomerStore,
    IMessageLog,
    IOrderStore,
    IPaymentFormStore,
    InMemoryCustomerStore,
    InMemoryMessageLog,
    InMemoryOrderStore,
    InMemoryPaymentFormStore,
    OrderPersistenceError,
)

__all__ = [
    "ICustomerStore",
    "IMessageLog",
    "IOrderStore",
    "IPaymentFormStore",
    "InMemoryCustomerStore",
    "InMemoryMessageLog",
    "InMemoryOrderStore",
    "InMemoryPaymentFormStore",
    "OrderPersistenceError",
]
