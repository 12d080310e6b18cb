# pipeline/errors.py
# ============================================================================
# STRIPE PAYMENTS — ERRORS
# ============================================================================

from typing import Iterable

from schemas.orders import FailureCategory


class ProviderCallError(Exception):
    """A provider API call failed; ``category`` says how."""

    def __init__(self, category: FailureCategory, message: str):
        super().__init__(message)
        self.category = category
        self.message = message


class PaymentValidationError(Exception):
    """The payment submission cannot be processed as posted."""

    def __init__(self, messages: Iterable[str]):
        self.messages = list(messages)
        super().__init__("; ".join(self.messages))
