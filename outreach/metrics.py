"""
Prometheus metrics for the outreach engine.

This module provides:
- HTTP request counter and latency histogram (method, path)
- Delivery outcome counter (transport, result)
- Reply import outcome counter (source, result)
- Follow-up sweep item counter (result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# transport: gmail, sendgrid; result: success, error, unavailable
outreach_deliveries_total = Counter(
    "outreach_deliveries_total",
    "Delivery attempts per transport",
    labelnames=["transport", "result"]
)

# source: mailbox, webhook; result: imported, skipped, error
replies_imported_total = Counter(
    "replies_imported_total",
    "Inbound reply import outcomes",
    labelnames=["source", "result"]
)

# result: sent, failed, cancelled, skipped
follow_up_sweep_items_total = Counter(
    "follow_up_sweep_items_total",
    "Follow-up sweep outcomes per due item",
    labelnames=["result"]
)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_delivery(transport: str, result: str) -> None:
    outreach_deliveries_total.labels(transport=transport, result=result).inc()


def record_reply_import(source: str, result: str) -> None:
    replies_imported_total.labels(source=source, result=result).inc()


def record_sweep_item(result: str) -> None:
    follow_up_sweep_items_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """Generate Prometheus exposition format metrics."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
