# storage/order_store.py
# ============================================================================
# STRIPE PAYMENTS — STORE INTERFACES
# ============================================================================
# Persistence abstractions the reconciliation core depends on, plus the
# in-memory adapters used by tests and local runs. PostgreSQL adapters live
# in database.py.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from schemas.orders import (
    CustomerRecord,
    Order,
    OrderMessage,
    OrderStatus,
    PaymentForm,
    utc_now,
)


class OrderPersistenceError(Exception):
    """Raised when a store rejects a write (constraint violation, missing row)."""


# =============================================================================
# PERSISTENCE INTERFACES
# =============================================================================

class IOrderStore(ABC):
    """Order lookup and persistence"""

    @abstractmethod
    async def get_by_id(self, order_id: int) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_number(self, number: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_all(self) -> list[Order]:
        pass

    @abstractmethod
    async def list_by_status(self, status: OrderStatus) -> list[Order]:
        pass

    @abstractmethod
    async def save(self, order: Order) -> Order:
        """Insert when ``order.id`` is unset, update otherwise. Returns the stored order."""
        pass


class ICustomerStore(ABC):
    """Provider customer cache keyed by (email, test_mode)"""

    @abstractmethod
    async def get(self, email: str, test_mode: bool) -> Optional[CustomerRecord]:
        pass

    @abstractmethod
    async def save(self, record: CustomerRecord) -> CustomerRecord:
        pass


class IMessageLog(ABC):
    """Append-only audit messages per order"""

    @abstractmethod
    async def append(self, order_id: int, message: str, details: Optional[Dict[str, Any]] = None) -> OrderMessage:
        pass

    @abstractmethod
    async def list_for_order(self, order_id: int) -> list[OrderMessage]:
        pass


class IPaymentFormStore(ABC):

    @abstractmethod
    async def get_by_id(self, form_id: int) -> Optional[PaymentForm]:
        pass

    @abstractmethod
    async def save(self, form: PaymentForm) -> PaymentForm:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATIONS
# =============================================================================

class InMemoryOrderStore(IOrderStore):
    """Lock-guarded in-memory order store. Hands out copies, never live objects."""

    def __init__(self):
        self._orders: dict[int, Order] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()

    async def get_by_id(self, order_id: int) -> Optional[Order]:
        async with self._lock:
            order = self._orders.get(order_id)
            return order.model_copy(deep=True) if order else None

    async def get_by_number(self, number: str) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if order.number == number:
                    return order.model_copy(deep=True)
            return None

    async def get_by_transaction_id(self, transaction_id: str) -> Optional[Order]:
        if not transaction_id:
            return None
        async with self._lock:
            for order in self._orders.values():
                if order.stripe_transaction_id == transaction_id:
                    return order.model_copy(deep=True)
            return None

    async def list_all(self) -> list[Order]:
        async with self._lock:
            return [o.model_copy(deep=True) for o in self._orders.values()]

    async def list_by_status(self, status: OrderStatus) -> list[Order]:
        async with self._lock:
            return [o.model_copy(deep=True) for o in self._orders.values() if o.order_status_id == status]

    async def save(self, order: Order) -> Order:
        async with self._lock:
            if order.id is not None and order.id not in self._orders:
                raise OrderPersistenceError(f"No order exists with the ID {order.id}")
            if order.id is not None and self._orders[order.id].number != order.number:
                raise OrderPersistenceError(
                    f"Order number {self._orders[order.id].number} cannot be changed to {order.number}"
                )

            for existing in self._orders.values():
                if existing.id == order.id:
                    continue
                if existing.number == order.number:
                    raise OrderPersistenceError(f"Order number {order.number} is already taken")
                if order.stripe_transaction_id and existing.stripe_transaction_id == order.stripe_transaction_id:
                    raise OrderPersistenceError(
                        f"An order already exists for transaction {order.stripe_transaction_id}"
                    )

            stored = order.model_copy(deep=True)
            if stored.id is None:
                stored.id = self._next_id
                self._next_id += 1
                stored.date_ordered = stored.date_ordered or utc_now()
            stored.date_updated = utc_now()
            self._orders[stored.id] = stored
            return stored.model_copy(deep=True)


class InMemoryCustomerStore(ICustomerStore):

    def __init__(self):
        self._customers: dict[tuple[str, bool], CustomerRecord] = {}
        self._lock = asyncio.Lock()

    async def get(self, email: str, test_mode: bool) -> Optional[CustomerRecord]:
        async with self._lock:
            return self._customers.get((email, test_mode))

    async def save(self, record: CustomerRecord) -> CustomerRecord:
        async with self._lock:
            self._customers[(record.email, record.test_mode)] = record
            return record


class InMemoryMessageLog(IMessageLog):
    """Append-only message log"""

    def __init__(self):
        self._messages: list[OrderMessage] = []
        self._lock = asyncio.Lock()

    async def append(self, order_id: int, message: str, details: Optional[Dict[str, Any]] = None) -> OrderMessage:
        async with self._lock:
            entry = OrderMessage(
                id=len(self._messages) + 1,
                order_id=order_id,
                message=message,
                details=details or {},
            )
            self._messages.append(entry)
            return entry

    async def list_for_order(self, order_id: int) -> list[OrderMessage]:
        async with self._lock:
            return [m for m in self._messages if m.order_id == order_id]


class InMemoryPaymentFormStore(IPaymentFormStore):

    def __init__(self, forms: Optional[list[PaymentForm]] = None):
        self._forms: dict[int, PaymentForm] = {f.id: f for f in (forms or [])}
        self._lock = asyncio.Lock()

    async def get_by_id(self, form_id: int) -> Optional[PaymentForm]:
        async with self._lock:
            form = self._forms.get(form_id)
            return form.model_copy(deep=True) if form else None

    async def save(self, form: PaymentForm) -> PaymentForm:
        async with self._lock:
            self._forms[form.id] = form.model_copy(deep=True)
            return form
