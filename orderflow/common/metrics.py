"""Prometheus metric definitions for the order service."""

from prometheus_client import Counter, Gauge, Histogram, generate_latest
from starlette.responses import Response


checkout_sessions_total = Counter(
    "checkout_sessions_total",
    "Checkout session attempts by outcome",
    ["service", "outcome"],
)
confirmations_total = Counter(
    "order_confirmations_total",
    "Confirmation attempts by entry point and outcome",
    ["service", "source", "outcome"],
)
webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries rejected for authenticity",
    ["service"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Verified webhook events by type",
    ["service", "event_type"],
)
inventory_adjustment_failures_total = Counter(
    "inventory_adjustment_failures_total",
    "Per-product stock decrements that were skipped",
    ["service", "reason"],
)
checkout_to_paid_seconds = Histogram(
    "checkout_to_paid_seconds",
    "Seconds from order creation to the winning paid transition",
    ["service", "source"],
)
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["service", "route", "method", "status_code"],
)
http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration seconds",
    ["service", "route", "method"],
)
outbox_pending_total = Gauge(
    "outbox_pending_total",
    "Current count of outbox events not yet sent",
    ["service"],
)
outbox_oldest_pending_age_seconds = Gauge(
    "outbox_oldest_pending_age_seconds",
    "Age in seconds of the oldest pending outbox event",
    ["service"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
