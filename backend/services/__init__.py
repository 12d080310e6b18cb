# services/__init__.py
# ============================================================================
# STRIPE PAYMENTS — SERVICES MODULE
# ============================================================================
# Notification hooks and bundled observers
# ============================================================================

from services.hooks import (
    HookEvent,
    HookHandler,
    HookRegistry,
    WebhookRebroadcaster,
)

__all__ = [
    "HookEvent",
    "HookHandler",
    "HookRegistry",
    "WebhookRebroadcaster",
]
