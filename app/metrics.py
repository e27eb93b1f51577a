"""
Prometheus metrics for the SMS daemon.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Modem count and stored message gauges, refreshed at scrape time
- Poll cycle, message outcome and modem deletion counters

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

modem_count = Gauge(
    "modem_count",
    "Total number of modems"
)

stored_messages = Gauge(
    "stored_messages",
    "Total SMS messages in the message store"
)

# result: ok, failed (modem enumeration failed)
poll_cycles_total = Counter(
    "poll_cycles_total",
    "Total poll cycles run",
    labelnames=["result"]
)

# result: stored, duplicate, skipped
sms_messages_total = Counter(
    "sms_messages_total",
    "Total SMS messages seen on modems by processing outcome",
    labelnames=["result"]
)

# result: ok, failed
sms_deletions_total = Counter(
    "sms_deletions_total",
    "Total SMS deletions requested from modems",
    labelnames=["result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Collapse per-device paths to avoid high-cardinality labels
    normalized_path = path.split("?")[0]
    if normalized_path.startswith("/messages/"):
        normalized_path = "/messages/{device_identity}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_poll_cycle(result: str) -> None:
    poll_cycles_total.labels(result=result).inc()


def record_message_outcome(result: str) -> None:
    """
    Record how one pending SMS was handled.

    Args:
        result: Processing result - one of:
            - "stored": New message persisted
            - "duplicate": Already stored by an earlier cycle
            - "skipped": Store failed, message left on the modem
    """
    sms_messages_total.labels(result=result).inc()


def record_deletion(ok: bool) -> None:
    sms_deletions_total.labels(result="ok" if ok else "failed").inc()


def set_modem_count(count: int) -> None:
    modem_count.set(count)


def set_stored_message_count(count: int) -> None:
    stored_messages.set(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """Content type string for Prometheus exposition format."""
    return CONTENT_TYPE_LATEST
