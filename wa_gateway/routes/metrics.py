"""
Prometheus metrics endpoint.

Exposes system metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Webhook Delivery Metrics
# ============================================

webhook_deliveries_enqueued = Counter(
    'webhook_deliveries_enqueued_total',
    'Total webhook deliveries written to the durable queue',
    ['account_id']
)

webhook_deliveries_sent = Counter(
    'webhook_deliveries_sent_total',
    'Total webhook delivery attempts by outcome',
    ['account_id', 'status']
)

webhook_deliveries_dead_lettered = Counter(
    'webhook_deliveries_dead_lettered_total',
    'Total webhook deliveries that exhausted their retries',
    ['account_id']
)

webhook_fallback_attempts = Counter(
    'webhook_fallback_attempts_total',
    'Total best-effort deliveries made while the durable queue is unavailable',
    ['account_id', 'status']
)

webhook_delivery_duration = Histogram(
    'webhook_delivery_duration_seconds',
    'Outbound webhook request duration in seconds',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

webhook_queue_depth = Gauge(
    'webhook_queue_records',
    'Current number of delivery records per status',
    ['status']
)


# ============================================
# Metrics Collector
# ============================================

class DeliveryMetrics:
    """
    Collector used by the delivery worker and queue facade.

    Services receive an instance instead of touching module globals, so tests
    can pass a Mock.
    """

    def delivery_enqueued(self, account_id: str):
        webhook_deliveries_enqueued.labels(account_id=account_id).inc()

    def delivery_attempted(self, account_id: str, success: bool, duration_ms: float = 0.0):
        webhook_deliveries_sent.labels(
            account_id=account_id,
            status="success" if success else "failure"
        ).inc()
        webhook_delivery_duration.observe(duration_ms / 1000)

    def delivery_dead_lettered(self, account_id: str):
        webhook_deliveries_dead_lettered.labels(account_id=account_id).inc()

    def fallback_attempted(self, account_id: str, success: bool):
        webhook_fallback_attempts.labels(
            account_id=account_id,
            status="success" if success else "failure"
        ).inc()

    def update_queue_depth(self, stats: dict[str, int]):
        for status, count in stats.items():
            webhook_queue_depth.labels(status=status).set(count)


delivery_metrics = DeliveryMetrics()


def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.

    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()

    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.

    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
