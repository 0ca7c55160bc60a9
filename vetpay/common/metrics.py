"""Prometheus metric definitions for the payments service."""

from prometheus_client import Counter, Histogram, generate_latest
from starlette.responses import Response


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
payment_intents_created_total = Counter(
    "payment_intents_created_total",
    "Total payment intents created",
    ["service", "provider"],
)
payment_intent_transitions_total = Counter(
    "payment_intent_transitions_total",
    "Payment intent status changes by target status",
    ["service", "to_status"],
)
provider_request_duration_seconds = Histogram(
    "provider_request_duration_seconds",
    "Latency of calls to external payment provider APIs",
    ["service", "provider", "operation"],
)
provider_errors_total = Counter(
    "provider_errors_total",
    "Failed calls to external payment provider APIs",
    ["service", "provider", "operation", "retryable"],
)
webhook_events_total = Counter(
    "webhook_events_total",
    "Provider webhook deliveries by outcome",
    ["service", "provider", "outcome"],
)
duplicate_events_skipped_total = Counter(
    "duplicate_events_skipped_total",
    "Provider notifications that did not change any transaction",
    ["service", "provider"],
)


def metrics_response() -> Response:
    """Expose all registered Prometheus metrics in text format."""

    return Response(content=generate_latest(), media_type="text/plain")
