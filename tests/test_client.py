"""Buyer-side confirmation poller against a mocked order service."""

import asyncio
import json

import httpx

from orderflow.client import CHECK_HISTORY_MESSAGE, ConfirmationClient


def run_poller(handler, **kwargs):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            poller = ConfirmationClient("http://orders.test", client=http, sleep=fake_sleep, **kwargs)
            return await poller.confirm("cs_123")

    return asyncio.run(main()), sleeps


def order(payment_status):
    return {"orderId": "o-1", "paymentStatus": payment_status, "orderStatus": "pending"}


def test_retries_not_found_until_paid():
    responses = iter([httpx.Response(404), httpx.Response(404), httpx.Response(200, json=order("paid"))])

    result, sleeps = run_poller(lambda request: next(responses))

    assert result.status == "confirmed"
    assert result.order["orderId"] == "o-1"
    assert result.attempts == 3
    assert sleeps == [0.5, 1.0]


def test_request_carries_session_id():
    seen = []

    def handler(request):
        seen.append((request.url.path, json.loads(request.content)))
        return httpx.Response(200, json=order("paid"))

    run_poller(handler)

    assert seen == [("/orders/confirm-payment", {"sessionId": "cs_123"})]


def test_backoff_is_capped_and_bounded():
    result, sleeps = run_poller(
        lambda request: httpx.Response(200, json=order("pending")),
        base_delay=0.5,
        max_delay=4.0,
        max_wait_seconds=20.0,
    )

    assert result.status == "processing"
    assert result.message == CHECK_HISTORY_MESSAGE
    assert result.order["paymentStatus"] == "pending"
    assert max(sleeps) == 4.0
    assert sum(sleeps) <= 20.0
    assert result.attempts == len(sleeps) + 1


def test_server_and_transport_errors_are_retried():
    calls = {"count": 0}

    def handler(request):
        calls["count"] += 1
        if calls["count"] == 1:
            raise httpx.ConnectError("connection refused", request=request)
        if calls["count"] == 2:
            return httpx.Response(503, json={"detail": "store unavailable"})
        return httpx.Response(200, json=order("paid"))

    result, sleeps = run_poller(handler)

    assert result.status == "confirmed"
    assert len(sleeps) == 2


def test_failed_payment_stops_polling():
    result, sleeps = run_poller(lambda request: httpx.Response(200, json=order("failed")))

    assert result.status == "failed"
    assert sleeps == []


def test_rejected_request_is_not_retried():
    result, sleeps = run_poller(lambda request: httpx.Response(400, json={"detail": "sessionId is required"}))

    assert result.status == "failed"
    assert "sessionId is required" in result.message
    assert sleeps == []


def test_throttled_html_response_is_retried():
    responses = iter(
        [
            httpx.Response(429, text="<html>Too Many Requests</html>"),
            httpx.Response(408, text="Request Timeout"),
            httpx.Response(200, json=order("paid")),
        ]
    )

    result, sleeps = run_poller(lambda request: next(responses))

    assert result.status == "confirmed"
    assert len(sleeps) == 2


def test_non_json_rejection_reports_body_text():
    result, sleeps = run_poller(lambda request: httpx.Response(400, text="<html>Bad Request</html>"))

    assert result.status == "failed"
    assert "<html>Bad Request</html>" in result.message
    assert sleeps == []


def test_unreadable_success_body_keeps_polling():
    result, sleeps = run_poller(
        lambda request: httpx.Response(200, text="<html>maintenance</html>"),
        max_wait_seconds=2.0,
    )

    assert result.status == "processing"
    assert result.message == CHECK_HISTORY_MESSAGE
    assert sleeps
