"""Webhook authenticity checks and event parsing.

Verification runs on the exact bytes received; re-serializing a parsed body
changes whitespace/key order and breaks the HMAC.
"""

import hashlib
import hmac
import time
from typing import Any

import stripe
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from orderflow.common.errors import InvalidSignature
from orderflow.common.logging import logger
from orderflow.common.state_machine import FAILED

CHECKOUT_COMPLETED = "checkout.session.completed"
ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"
CHECKOUT_EXPIRED = "checkout.session.expired"


class WebhookEventData(BaseModel):
    object: dict[str, Any]


class WebhookEvent(BaseModel):
    """The subset of a provider event the coordinator reads."""

    id: str
    type: str
    created: int | None = None
    data: WebhookEventData

    @property
    def session(self) -> dict[str, Any]:
        return self.data.object

    @property
    def session_id(self) -> str | None:
        return self.session.get("id")

    @property
    def metadata(self) -> dict[str, str]:
        return self.session.get("metadata") or {}


class SignatureVerifier:
    """Checks `Stripe-Signature` headers against the shared webhook secret."""

    def __init__(self, secret: str, tolerance_seconds: int = 300) -> None:
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds

    def verify(self, raw_body: bytes, signature_header: str | None) -> WebhookEvent:
        if not self.secret:
            logger.error("webhook_secret_missing")
            raise InvalidSignature("webhook secret is not configured")
        if not signature_header:
            raise InvalidSignature("missing signature header")
        try:
            stripe.WebhookSignature.verify_header(
                raw_body.decode("utf-8"), signature_header, self.secret, self.tolerance_seconds
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            raise InvalidSignature(f"signature verification failed: {exc}") from exc
        try:
            return WebhookEvent.model_validate_json(raw_body)
        except PydanticValidationError as exc:
            raise InvalidSignature("signed payload is not a provider event") from exc


def build_signature_header(payload: bytes | str, secret: str, timestamp: int | None = None) -> str:
    """Produce a header in the provider's `t=...,v1=...` format."""

    if isinstance(payload, bytes):
        payload = payload.decode("utf-8")
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def dispatch_event(coordinator, event: WebhookEvent) -> str:
    """Route a verified event to the coordinator; returns the action taken."""

    if event.type in (CHECKOUT_COMPLETED, ASYNC_PAYMENT_SUCCEEDED):
        # Delayed payment methods complete the session before funds arrive.
        if event.type == CHECKOUT_COMPLETED and event.session.get("payment_status") == "unpaid":
            logger.info("checkout_completed_unpaid session_id=%s", event.session_id)
            return "awaiting_payment"
        confirmation = coordinator.confirm_from_webhook(event)
        if confirmation.transitioned:
            return "confirmed"
        if confirmation.order.payment_status == FAILED:
            return "paid_on_failed_order"
        return "already_processed"
    if event.type in (CHECKOUT_EXPIRED, ASYNC_PAYMENT_FAILED):
        reason = "session_expired" if event.type == CHECKOUT_EXPIRED else "async_payment_failed"
        failure = coordinator.fail_from_webhook(event, reason=reason)
        if failure is None:
            return "unknown_session"
        return "failed" if failure.transitioned else "already_processed"
    logger.info("webhook_event_ignored type=%s event_id=%s", event.type, event.id)
    return "ignored"
