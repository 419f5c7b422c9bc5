"""
Error taxonomy for checkout and payment orchestration.

Every error carries a stable ``code`` (used to pick a localized message) and
an HTTP status the API layer renders it with.
"""
from __future__ import annotations
from typing import Optional


class CheckoutError(Exception):
    status_code = 400
    code = "checkout_failed"

    def __init__(self, message: str, *, code: Optional[str] = None,
                 **params) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.params = params


class ValidationError(CheckoutError):
    """Bad input shape or range. Raised before anything is persisted."""
    status_code = 400
    code = "invalid_input"


class InventoryError(CheckoutError):
    """Availability, sales pause or per-order limit violation."""
    status_code = 409
    code = "inventory_unavailable"

    def __init__(self, message: str, *, ticket_type_id: str, reason: str,
                 **params) -> None:
        super().__init__(message, code=f"inventory_{reason}",
                         ticket_type_id=ticket_type_id, **params)
        self.ticket_type_id = ticket_type_id
        self.reason = reason


class PaymentProviderError(CheckoutError):
    status_code = 502
    code = "payment_failed"

    def __init__(self, message: str, *, provider: str,
                 provider_message: Optional[str] = None,
                 transient: bool = False, **params) -> None:
        text = message
        if provider_message:
            text = f"{message}: {provider_message}"
        super().__init__(text, **params)
        self.provider = provider
        self.provider_message = provider_message
        self.transient = transient


class ReconciliationError(CheckoutError):
    status_code = 409
    code = "verification_failed"


class ConfigurationError(CheckoutError):
    status_code = 500
    code = "misconfigured"


class PaymentNotFoundError(ReconciliationError):
    status_code = 404
    code = "payment_not_found"


class OrderNotFoundError(CheckoutError):
    status_code = 404
    code = "order_not_found"
