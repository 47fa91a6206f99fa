"""Prometheus metric definitions for the payment service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


payment_initializations_total = Counter(
    "payment_initializations_total",
    "Checkout initializations by purpose and result",
    ["service", "purpose", "result"],
)
reconciliation_outcomes_total = Counter(
    "reconciliation_outcomes_total",
    "Reconciliation calls by entry point and outcome",
    ["service", "source", "outcome"],
)
reconciliation_latency_seconds = Histogram(
    "reconciliation_latency_seconds",
    "Reserve-verify-commit duration seconds",
    ["service", "source"],
)
payment_success_total = Counter("payment_success_total", "Total successful payments", ["service"])
payment_failure_total = Counter("payment_failure_total", "Total failed payments", ["service", "reason"])
integrity_failures_total = Counter(
    "integrity_failures_total",
    "Gateway amount/currency mismatches against the recorded attempt",
    ["service", "reason"],
)
webhook_rejections_total = Counter(
    "webhook_rejections_total",
    "Webhook requests rejected at the boundary",
    ["service", "reason"],
)
gateway_request_seconds = Histogram(
    "gateway_request_seconds",
    "Outbound payment gateway call duration seconds",
    ["service", "operation", "result"],
)
notification_failures_total = Counter(
    "notification_failures_total",
    "Best-effort notification deliveries that failed",
    ["service", "channel"],
)
rate_limited_total = Counter("rate_limited_total", "Requests rejected by the token bucket", ["service", "scope"])
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


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
