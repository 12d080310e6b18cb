# pipeline/dispatcher.py
# ============================================================================
# STRIPE PAYMENTS — EVENT DISPATCHER
# ============================================================================
# Classifies a verified provider event, resolves it to zero or one local
# order and hands it to the matching transition rule. Every resolved order
# gets an audit message; every recognised event fires WEBHOOK_RECEIVED.
# ============================================================================

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Tuple

import structlog

from pipeline.reconciliation import OrderReconciliationEngine
from pipeline.webhook_router import WebhookRouter
from schemas.orders import DispatchResult, Order
from services.hooks import HookEvent, HookRegistry
from storage.order_store import IMessageLog, IOrderStore

Outcome = Tuple[Optional[Order], bool]


def event_object(event: Dict[str, Any]) -> Dict[str, Any]:
    """``data.object`` of an event, or {} when the envelope is malformed."""
    data = event.get("data")
    if not isinstance(data, dict):
        return {}
    obj = data.get("object")
    return obj if isinstance(obj, dict) else {}


def object_id(event: Dict[str, Any]) -> Optional[str]:
    value = event_object(event).get("id")
    return value if isinstance(value, str) and value else None


class EventDispatcher:
    """
    Routes provider events onto the reconciliation engine.

    Deliveries touching the same transaction id are serialized with a
    per-id lock, so a redelivered event observes the state left by the
    first one.
    """

    def __init__(
        self,
        engine: OrderReconciliationEngine,
        orders: IOrderStore,
        messages: IMessageLog,
        hooks: HookRegistry,
    ):
        self.engine = engine
        self.orders = orders
        self.messages = messages
        self.hooks = hooks

        self.router = WebhookRouter()
        self._register_handlers()

        self._transaction_locks: dict[str, asyncio.Lock] = {}
        self._transaction_lock_users: dict[str, int] = defaultdict(int)
        self._transaction_locks_mutex = asyncio.Lock()

        self._logger = structlog.get_logger().bind(component="event_dispatcher")

    @asynccontextmanager
    async def _transaction_lock(self, key: str):
        """Hold the lock for ``key``; it is dropped once no delivery uses it."""
        async with self._transaction_locks_mutex:
            lock = self._transaction_locks.setdefault(key, asyncio.Lock())
            self._transaction_lock_users[key] += 1
        try:
            async with lock:
                yield
        finally:
            async with self._transaction_locks_mutex:
                self._transaction_lock_users[key] -= 1
                if not self._transaction_lock_users[key]:
                    del self._transaction_lock_users[key]
                    del self._transaction_locks[key]

    @property
    def supported_events(self) -> list[str]:
        return self.router.supported_events

    async def dispatch(self, event: Dict[str, Any]) -> DispatchResult:
        event_type = event.get("type")
        if not isinstance(event_type, str) or not self.router.handles(event_type):
            self._logger.info("event_ignored", event_type=event_type, stripe_event_id=event.get("id"))
            return DispatchResult(accepted=False, event_type=event_type if isinstance(event_type, str) else None)

        transaction_id = object_id(event)
        log = self._logger.bind(event_type=event_type, stripe_event_id=event.get("id"), transaction_id=transaction_id)
        log.info("webhook_received")

        async with self._transaction_lock(transaction_id or event_type):
            order = await self.orders.get_by_transaction_id(transaction_id) if transaction_id else None
            order, applied = await self.router.route(event, order)

            if order is not None:
                await self.messages.append(order.id, event_type, event)

        await self.hooks.fire(HookEvent.WEBHOOK_RECEIVED, event=event, order=order)

        log.info(
            "webhook_processed",
            order_number=order.number if order else None,
            side_effects_applied=applied,
        )
        return DispatchResult(accepted=True, event_type=event_type, order=order, side_effects_applied=applied)

    # =========================================================================
    # TRANSITION RULES (Registered with Router)
    # =========================================================================

    def _register_handlers(self):
        """Register one rule per supported event type"""

        @self.router.register("source.chargeable")
        async def handle_source_chargeable(event: dict, order: Optional[Order]) -> Outcome:
            if order is None:
                return None, False
            before = order.stripe_transaction_id
            order = await self.engine.asynchronous_charge(order, event_object(event))
            return order, order.stripe_transaction_id != before

        @self.router.register("source.failed")
        async def handle_source_failed(event: dict, order: Optional[Order]) -> Outcome:
            if order is not None:
                self._logger.error("source_failed", order_number=order.number)
            return order, False

        @self.router.register("source.canceled")
        async def handle_source_canceled(event: dict, order: Optional[Order]) -> Outcome:
            if order is not None:
                self._logger.error("source_canceled", order_number=order.number)
            return order, False

        @self.router.register("charge.pending")
        async def handle_charge_pending(event: dict, order: Optional[Order]) -> Outcome:
            return order, False

        @self.router.register("charge.succeeded")
        async def handle_charge_succeeded(event: dict, order: Optional[Order]) -> Outcome:
            if order is None:
                return None, False
            return await self.engine.complete_order(order)

        @self.router.register("charge.failed")
        async def handle_charge_failed(event: dict, order: Optional[Order]) -> Outcome:
            if order is not None:
                self._logger.error("charge_failed", order_number=order.number)
            return order, False

        @self.router.register("charge.captured")
        async def handle_charge_captured(event: dict, order: Optional[Order]) -> Outcome:
            charge = event_object(event)
            charge_id = object_id(event)
            captured = await self.orders.get_by_transaction_id(charge_id) if charge_id else None
            if captured is None:
                return None, False
            if not charge.get("captured"):
                return captured, False
            return await self.engine.capture_order(captured, charge)

        @self.router.register("checkout.session.completed")
        async def handle_checkout_completed(event: dict, order: Optional[Order]) -> Outcome:
            session = event_object(event)
            derived, created = await self.engine.derive_order_from_checkout(session)
            if derived is None:
                self._logger.error("checkout_order_not_created", session_id=session.get("id"))
            return derived, created
