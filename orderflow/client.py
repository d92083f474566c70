"""Buyer-side confirmation poller used right after the payment redirect.

The order may not be linked or paid yet when the buyer lands on the success
page, so the poller retries `POST /orders/confirm-payment` with bounded
exponential backoff. When the wait budget runs out it reports `processing`
instead of failing: the webhook remains the system of record.
"""

import asyncio
from dataclasses import dataclass

import httpx

from orderflow.common.logging import logger

CONFIRMED = "confirmed"
PROCESSING = "processing"
FAILED = "failed"

CHECK_HISTORY_MESSAGE = "Your payment is still being processed. Check your order history in a few minutes."

# Not linked yet, request timeout, throttled by a gateway.
RETRYABLE_STATUS_CODES = {404, 408, 429}


def _json_or_none(resp: httpx.Response):
    try:
        return resp.json()
    except ValueError:
        return None


@dataclass(frozen=True)
class ConfirmationResult:
    status: str
    order: dict | None = None
    message: str = ""
    attempts: int = 0


class ConfirmationClient:
    """Polls the order service until the order behind a session is settled."""

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient | None = None,
        base_delay: float = 0.5,
        max_delay: float = 4.0,
        max_wait_seconds: float = 20.0,
        timeout: float = 5.0,
        sleep=asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_wait_seconds = max_wait_seconds
        self.timeout = timeout
        self._sleep = sleep

    async def confirm(self, session_id: str) -> ConfirmationResult:
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        waited = 0.0
        delay = self.base_delay
        attempts = 0
        last_order = None
        try:
            while True:
                attempts += 1
                result, order = await self._attempt(client, session_id)
                if order is not None:
                    last_order = order
                if result is not None:
                    return ConfirmationResult(result.status, result.order, result.message, attempts)
                if waited + delay > self.max_wait_seconds:
                    break
                await self._sleep(delay)
                waited += delay
                delay = min(delay * 2, self.max_delay)
        finally:
            if self._client is None:
                await client.aclose()
        logger.info("confirmation_poll_exhausted session_id=%s attempts=%s waited_s=%s", session_id, attempts, waited)
        return ConfirmationResult(PROCESSING, last_order, CHECK_HISTORY_MESSAGE, attempts)

    async def _attempt(self, client: httpx.AsyncClient, session_id: str):
        """One confirmation call; (result, order) where result None means retry."""

        try:
            resp = await client.post(f"{self.base_url}/orders/confirm-payment", json={"sessionId": session_id})
        except httpx.TransportError as exc:
            logger.warning("confirmation_poll_transport_error session_id=%s error=%s", session_id, exc)
            return None, None
        if resp.status_code in RETRYABLE_STATUS_CODES or resp.status_code >= 500:
            return None, None
        body = _json_or_none(resp)
        if resp.status_code >= 400:
            detail = body.get("detail", resp.text) if isinstance(body, dict) else resp.text
            return ConfirmationResult(FAILED, None, f"Confirmation was rejected: {detail}"), None
        if not isinstance(body, dict):
            logger.warning("confirmation_poll_unreadable_body session_id=%s status=%s", session_id, resp.status_code)
            return None, None

        order = body
        payment_status = order.get("paymentStatus")
        if payment_status == "paid":
            return ConfirmationResult(CONFIRMED, order, "Order confirmed."), order
        if payment_status == "failed":
            return ConfirmationResult(FAILED, order, "Payment was not completed."), order
        return None, order
