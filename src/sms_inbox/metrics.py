"""
Prometheus metrics for the inbox service.

Counters cover HTTP traffic, webhook outcomes, outbound send outcomes and
individual carrier delivery attempts. Metrics live in-process via
prometheus-client and are exposed at ``GET /metrics``.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"],
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"],
)

# result: stored, duplicate, invalid_signature, validation_error, storage_error
inbound_webhooks_total = Counter(
    "inbound_webhooks_total",
    "Inbound SMS webhook outcomes",
    labelnames=["result"],
)

# result: sent, failed, translation_error
outbound_sends_total = Counter(
    "outbound_sends_total",
    "Volunteer reply outcomes",
    labelnames=["result"],
)

delivery_attempts_total = Counter(
    "delivery_attempts_total",
    "Individual carrier send attempts",
    labelnames=["outcome"],
)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]
    http_requests_total.labels(method=method, path=normalized_path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=normalized_path).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    inbound_webhooks_total.labels(result=result).inc()


def record_send_outcome(result: str) -> None:
    outbound_sends_total.labels(result=result).inc()


def record_delivery_attempt(outcome: str) -> None:
    delivery_attempts_total.labels(outcome=outcome).inc()


def get_metrics() -> bytes:
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
