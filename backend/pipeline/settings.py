# pipeline/settings.py
# ============================================================================
# STRIPE PAYMENTS — SETTINGS
# ============================================================================

import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class PaymentSettings:
    """Provider keys and webhook options, resolved per environment (test/live)."""
    test_mode: bool = True
    test_secret_key: str = ""
    live_secret_key: str = ""
    test_webhook_secret: str = ""
    live_webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300
    rebroadcast_url: Optional[str] = None
    rebroadcast_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls) -> "PaymentSettings":
        return cls(
            test_mode=_env_bool("STRIPE_TEST_MODE", "true"),
            test_secret_key=os.getenv("STRIPE_TEST_SECRET_KEY", ""),
            live_secret_key=os.getenv("STRIPE_LIVE_SECRET_KEY", ""),
            test_webhook_secret=os.getenv("STRIPE_TEST_WEBHOOK_SECRET", ""),
            live_webhook_secret=os.getenv("STRIPE_LIVE_WEBHOOK_SECRET", ""),
            webhook_tolerance_seconds=int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300")),
            rebroadcast_url=os.getenv("WEBHOOK_REBROADCAST_URL") or None,
            rebroadcast_timeout_seconds=float(os.getenv("WEBHOOK_REBROADCAST_TIMEOUT", "5.0")),
        )

    @property
    def active_secret_key(self) -> str:
        return self.test_secret_key if self.test_mode else self.live_secret_key

    @property
    def active_webhook_secret(self) -> Optional[str]:
        secret = self.test_webhook_secret if self.test_mode else self.live_webhook_secret
        return secret.strip() or None
