# pipeline/gateway.py
# ============================================================================
# STRIPE PAYMENTS — PAYMENT GATEWAY
# ============================================================================
# Facade wiring the signature verifier, dispatcher, reconciliation engine,
# stores and hooks together. Collaborators are injected; anything missing
# defaults to an in-memory implementation.
# ============================================================================

import json
from typing import Any, Dict, Optional, Tuple

import structlog

from pipeline.dispatcher import EventDispatcher
from pipeline.reconciliation import OrderReconciliationEngine
from pipeline.settings import PaymentSettings
from pipeline.signature import SignatureVerifier
from pipeline.stripe_client import IStripeClient, StripeSdkClient
from schemas.orders import Order, OrderMessage, OrderStatus, PaymentSubmission
from services.hooks import HookEvent, HookRegistry, WebhookRebroadcaster
from storage.order_store import (
    ICustomerStore,
    IMessageLog,
    IOrderStore,
    IPaymentFormStore,
    InMemoryCustomerStore,
    InMemoryMessageLog,
    InMemoryOrderStore,
    InMemoryPaymentFormStore,
)

WebhookReply = Tuple[int, Optional[Dict[str, Any]]]


class PaymentGateway:
    """
    Entry point for webhook deliveries, payment submissions and order lookups.

    Example:
        gateway = PaymentGateway(settings=PaymentSettings.from_env())
        status, body = await gateway.process_webhook(raw_body, signature_header)
        order = await gateway.process_payment(submission)
    """

    def __init__(
        self,
        settings: Optional[PaymentSettings] = None,
        order_store: Optional[IOrderStore] = None,
        customer_store: Optional[ICustomerStore] = None,
        message_log: Optional[IMessageLog] = None,
        form_store: Optional[IPaymentFormStore] = None,
        stripe_client: Optional[IStripeClient] = None,
        hooks: Optional[HookRegistry] = None,
        verifier: Optional[SignatureVerifier] = None,
    ):
        # Dependency injection with defaults
        self.settings = settings or PaymentSettings()
        self.orders = order_store or InMemoryOrderStore()
        self.customers = customer_store or InMemoryCustomerStore()
        self.messages = message_log or InMemoryMessageLog()
        self.forms = form_store or InMemoryPaymentFormStore()
        self.stripe = stripe_client or StripeSdkClient(self.settings.active_secret_key)
        self.hooks = hooks or HookRegistry()
        self.verifier = verifier or SignatureVerifier(self.settings.webhook_tolerance_seconds)

        self.rebroadcaster: Optional[WebhookRebroadcaster] = None
        if self.settings.rebroadcast_url:
            self.rebroadcaster = WebhookRebroadcaster(
                self.settings.rebroadcast_url,
                timeout_seconds=self.settings.rebroadcast_timeout_seconds,
            )
            self.hooks.register(HookEvent.WEBHOOK_RECEIVED, self.rebroadcaster)

        self.engine = OrderReconciliationEngine(
            stripe_client=self.stripe,
            orders=self.orders,
            customers=self.customers,
            messages=self.messages,
            forms=self.forms,
            hooks=self.hooks,
        )
        self.dispatcher = EventDispatcher(
            engine=self.engine,
            orders=self.orders,
            messages=self.messages,
            hooks=self.hooks,
        )

        self._logger = structlog.get_logger().bind(component="payment_gateway")

    # =========================================================================
    # WEBHOOK PROCESSING
    # =========================================================================

    async def process_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookReply:
        """
        Verify, parse and dispatch one webhook delivery.

        Returns ``(status_code, body)``; the body is None for rejected
        deliveries, which are answered with an empty 400.
        """
        # Verify signature BEFORE parsing
        if not self.verifier.verify(payload, signature, self.settings.active_webhook_secret):
            return 400, None

        try:
            event = json.loads(payload)
        except ValueError as e:
            self._logger.warning("webhook_parse_error", error=str(e))
            return 400, None

        if not isinstance(event, dict):
            self._logger.warning("webhook_parse_error", error="payload is not a JSON object")
            return 400, None

        result = await self.dispatcher.dispatch(event)
        return 200, {"success": result.accepted}

    # =========================================================================
    # PAYMENT SUBMISSION
    # =========================================================================

    async def process_payment(self, submission: PaymentSubmission) -> Optional[Order]:
        return await self.engine.process_payment(submission)

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    async def get_order(self, number: str) -> Optional[Order]:
        """Get order by number"""
        return await self.orders.get_by_number(number)

    async def get_order_by_transaction(self, transaction_id: str) -> Optional[Order]:
        return await self.orders.get_by_transaction_id(transaction_id)

    async def list_orders(self, status: Optional[OrderStatus] = None) -> list[Order]:
        if status is None:
            return await self.orders.list_all()
        return await self.orders.list_by_status(status)

    async def get_messages(self, number: str) -> Optional[list[OrderMessage]]:
        """Audit trail for an order, or None when the order does not exist"""
        order = await self.orders.get_by_number(number)
        if order is None:
            return None
        return await self.messages.list_for_order(order.id)

    async def close(self) -> None:
        if self.rebroadcaster is not None:
            await self.rebroadcaster.close()
