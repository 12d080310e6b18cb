# pipeline/webhook_router.py
# ============================================================================
# STRIPE PAYMENTS — WEBHOOK ROUTER
# ============================================================================

from typing import Any, Awaitable, Callable, Optional, Tuple

import structlog

from schemas.orders import Order

# (event, resolved order or None) -> (resulting order or None, transition applied)
WebhookHandler = Callable[[dict, Optional[Order]], Awaitable[Tuple[Optional[Order], bool]]]


class WebhookRouter:
    """
    Maps event type tags onto handlers.
    Separates routing logic from the transition rules.
    """

    def __init__(self):
        self._handlers: dict[str, WebhookHandler] = {}
        self._logger = structlog.get_logger().bind(component="webhook_router")

    def register(self, event_type: str):
        """Decorator to register handler for event type"""
        def decorator(handler: WebhookHandler):
            self._handlers[event_type] = handler
            self._logger.debug("handler_registered", event_type=event_type)
            return handler
        return decorator

    def handles(self, event_type: Optional[str]) -> bool:
        return event_type in self._handlers

    async def route(self, event: dict, order: Optional[Order]) -> Optional[Any]:
        """Route event to its handler. Unknown types return None."""
        event_type = event.get("type")

        handler = self._handlers.get(event_type)
        if not handler:
            self._logger.info("no_handler", event_type=event_type)
            return None

        return await handler(event, order)

    @property
    def supported_events(self) -> list[str]:
        return list(self._handlers.keys())
