"""Error taxonomy shared by the order service and its HTTP surface.

Every error carries the HTTP status it maps to, so route handlers can raise
domain errors and let the registered exception handler render them.
"""


class OrderflowError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class ValidationError(OrderflowError):
    """Bad cart or stock at checkout; correctable by the user."""

    status_code = 400


class ProviderError(OrderflowError):
    """Checkout session creation failed at the payment provider."""

    status_code = 502


class InvalidSignature(OrderflowError):
    """Webhook authenticity check failed. Never retried."""

    status_code = 400


class OrderNotFound(OrderflowError):
    """No order is linked yet; the client should retry with backoff."""

    status_code = 404


class Unauthenticated(OrderflowError):
    status_code = 401


class AccessDenied(OrderflowError):
    status_code = 403


class StoreError(OrderflowError):
    """Underlying persistence failure; callers retry with backoff."""

    status_code = 503
