# pipeline/__init__.py
# ============================================================================
# STRIPE PAYMENTS — PIPELINE MODULE
# ============================================================================
# Webhook verification, provider client, dispatcher, reconciliation engine
# ============================================================================

from pipeline.errors import PaymentValidationError, ProviderCallError
from pipeline.settings import PaymentSettings
from pipeline.signature import SignatureVerifier
from pipeline.stripe_client import IStripeClient, StripeSdkClient, classify_stripe_error
from pipeline.webhook_router import WebhookRouter
from pipeline.reconciliation import OrderReconciliationEngine
from pipeline.dispatcher import EventDispatcher
from pipeline.gateway import PaymentGateway

__all__ = [
    "PaymentValidationError",
    "ProviderCallError",
    "PaymentSettings",
    "SignatureVerifier",
    "IStripeClient",
    "StripeSdkClient",
    "classify_stripe_error",
    "WebhookRouter",
    "OrderReconciliationEngine",
    "EventDispatcher",
    "PaymentGateway",
]
