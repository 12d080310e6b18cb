# pipeline/signature.py
# ============================================================================
# STRIPE PAYMENTS — WEBHOOK SIGNATURE VERIFIER
# ============================================================================
# Checks the Stripe-Signature header (t=<timestamp>,v1=<hmac>) against the
# raw request body. Must run before the body is parsed.
# ============================================================================

from typing import Optional

import stripe
import structlog

DEFAULT_TOLERANCE_SECONDS = 300


class SignatureVerifier:
    """
    Validates inbound webhook bodies with the environment's signing secret.

    No secret configured means verification is skipped and the body is
    accepted. That permissive default is kept on purpose for installs that
    never set a secret; configure one in production.
    """

    def __init__(self, tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS):
        self.tolerance_seconds = tolerance_seconds
        self._logger = structlog.get_logger().bind(component="signature_verifier")

    def verify(self, raw_body: bytes, signature_header: Optional[str], secret: Optional[str]) -> bool:
        if not secret:
            self._logger.debug("signature_check_skipped", reason="no_secret_configured")
            return True

        if not signature_header:
            self._logger.warning("webhook_signature_missing")
            return False

        try:
            payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
            stripe.WebhookSignature.verify_header(
                payload, signature_header, secret, self.tolerance_seconds
            )
        except UnicodeDecodeError:
            self._logger.error("webhook_payload_invalid", error="body is not utf-8")
            return False
        except stripe.SignatureVerificationError as e:
            self._logger.error("webhook_signature_invalid", error=str(e))
            return False

        return True
