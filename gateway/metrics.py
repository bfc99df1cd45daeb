"""
Prometheus metrics for the gateway.

All series live in a gateway-owned registry so that building several
apps in one process (tests) does not trip duplicate registration.
"""

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

registry = CollectorRegistry()

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"],
    registry=registry,
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"],
    registry=registry,
)

# result: challenge_ok, invalid_parameters, invalid_signature, decode_error,
# event_*, text_answered, text_degraded, text_failed, unsupported_type, error
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Webhook deliveries by dispatch result",
    labelnames=["result"],
    registry=registry,
)

model_requests_total = Counter(
    "model_requests_total",
    "Model backend exchanges by outcome",
    labelnames=["outcome"],
    registry=registry,
)

# Bounded by OPENAI_TIMEOUT_SECONDS, so the top buckets stop at 10s
model_latency_seconds = Histogram(
    "model_latency_seconds",
    "Model backend call latency in seconds",
    buckets=(0.25, 0.5, 1.0, 2.0, 3.0, 5.0, 10.0),
    registry=registry,
)

# status: ok, failed, dropped
background_jobs_total = Counter(
    "background_jobs_total",
    "Fire-and-forget jobs by final status",
    labelnames=["job", "status"],
    registry=registry,
)


def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    path = path.split("?")[0]
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    request_latency_seconds.labels(method=method, path=path).observe(latency_seconds)


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_model_outcome(outcome: str, latency_seconds: float) -> None:
    """
    Args:
        outcome: answered, degraded or failed
        latency_seconds: wall time of the model call, timeouts included
    """
    model_requests_total.labels(outcome=outcome).inc()
    model_latency_seconds.observe(latency_seconds)


def record_background_job(job: str, status: str) -> None:
    background_jobs_total.labels(job=job, status=status).inc()


def get_metrics() -> bytes:
    """Render the gateway registry in Prometheus text format."""
    return generate_latest(registry)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
