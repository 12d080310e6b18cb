# services/hooks.py
# ============================================================================
# STRIPE PAYMENTS — HOOK REGISTRY
# ============================================================================
# Observer registration for completion, capture and webhook notification
# points. Handlers run in registration order; a failing handler is logged
# and skipped so it can never abort the transition that fired it.
# ============================================================================

from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import structlog

from schemas.orders import Order


class HookEvent(str, Enum):
    ORDER_COMPLETE = "order_complete"
    ORDER_CAPTURE = "order_capture"
    WEBHOOK_RECEIVED = "webhook_received"


HookHandler = Callable[..., Awaitable[Any]]


class HookRegistry:
    """
    Ordered async handlers per HookEvent.

    Example:
        hooks = HookRegistry()

        @hooks.on(HookEvent.ORDER_COMPLETE)
        async def send_receipt(order, **context):
            ...
    """

    def __init__(self):
        self._handlers: Dict[HookEvent, list[HookHandler]] = {event: [] for event in HookEvent}
        self._logger = structlog.get_logger().bind(component="hook_registry")

    def on(self, event: HookEvent):
        """Decorator to register a handler for ``event``"""
        def decorator(handler: HookHandler):
            self.register(event, handler)
            return handler
        return decorator

    def register(self, event: HookEvent, handler: HookHandler) -> None:
        self._handlers[event].append(handler)
        self._logger.debug("hook_registered", hook=event.value, handler=getattr(handler, "__name__", repr(handler)))

    def handlers(self, event: HookEvent) -> list[HookHandler]:
        return list(self._handlers[event])

    async def fire(self, hook: HookEvent, **context: Any) -> int:
        """
        Call every handler registered for ``hook`` with ``context``.

        Returns the number of handlers that completed without raising.
        """
        completed = 0
        for handler in self._handlers[hook]:
            try:
                await handler(**context)
                completed += 1
            except Exception as e:
                self._logger.error(
                    "hook_failed",
                    hook=hook.value,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                    error_type=type(e).__name__,
                )
        return completed


# =============================================================================
# WEBHOOK RE-BROADCAST
# =============================================================================

class WebhookRebroadcaster:
    """Forwards every received provider event, with its resolved order, to a custom URL."""

    def __init__(self, url: str, timeout_seconds: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None
        self._logger = structlog.get_logger().bind(component="webhook_rebroadcaster")

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def __call__(self, event: Dict[str, Any], order: Optional[Order] = None, **_: Any) -> None:
        client = await self._get_client()
        response = await client.post(
            self.url,
            json={
                "event": event,
                "order": order.model_dump(mode="json") if order else None,
            },
        )
        response.raise_for_status()
        self._logger.info(
            "webhook_rebroadcast",
            url=self.url,
            event_type=event.get("type"),
            status_code=response.status_code,
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
