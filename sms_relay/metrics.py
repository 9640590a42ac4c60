"""
Prometheus metrics for the SMS relay.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Intake outcome counter (result)
- Relay publish counter (result) and queue size gauge
- Device status event counter (status) and correlation miss counter
- Transport reconnect counter

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

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

# result: queued, rejected
sms_submissions_total = Counter(
    "sms_submissions_total",
    "Send requests admitted or rejected at intake",
    labelnames=["result"]
)

# result: ok, retry, failed
relay_publish_total = Counter(
    "relay_publish_total",
    "Publish attempts to the relay broker",
    labelnames=["result"]
)

relay_queue_size = Gauge(
    "relay_queue_size",
    "Entries waiting in the delivery queue"
)

# status: SENDING, SENT, FAILED
delivery_status_events_total = Counter(
    "delivery_status_events_total",
    "Status reports received from the device",
    labelnames=["status"]
)

correlation_misses_total = Counter(
    "correlation_misses_total",
    "Status reports that matched no queued or pending record"
)

transport_reconnects_total = Counter(
    "transport_reconnects_total",
    "Reconnect attempts to the relay broker"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """`path` is the route template, e.g. /sms/status/{sms_id}."""
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_submission(result: str, count: int = 1) -> None:
    if count:
        sms_submissions_total.labels(result=result).inc(count)


def record_publish(result: str) -> None:
    relay_publish_total.labels(result=result).inc()


def set_queue_size(size: int) -> None:
    relay_queue_size.set(size)


def record_status_event(status: str) -> None:
    delivery_status_events_total.labels(status=status).inc()


def record_correlation_miss() -> None:
    correlation_misses_total.inc()


def record_reconnect() -> None:
    transport_reconnects_total.inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
