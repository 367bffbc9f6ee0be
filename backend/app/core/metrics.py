"""
Metrics instrumentation for observability.
Exposes Prometheus-compatible metrics at /metrics endpoint.
"""

from prometheus_client import Counter, Histogram, Gauge, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

# Booking metrics
booking_attempts = Counter(
    'booking_attempts_total',
    'Total booking creation attempts',
    ['status']  # success, sold_out, closed, error
)

booking_transitions = Counter(
    'booking_transitions_total',
    'Booking state transitions',
    ['to_status']
)

booking_latency = Histogram(
    'booking_latency_seconds',
    'Booking request latency',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)

# Inventory metrics
inventory_retries = Counter(
    'inventory_retry_attempts_total',
    'Inventory update retries due to version conflicts',
    ['operation']  # reserve, release
)

# Payment gateway metrics
gateway_requests = Counter(
    'payment_gateway_requests_total',
    'Calls made to the payment gateway',
    ['operation', 'result']  # auth/order/payment_key/inquiry/refund, ok/error
)

webhook_events = Counter(
    'webhook_events_total',
    'Payment webhook deliveries by outcome',
    ['outcome']  # confirmed, failed, processing, ignored, invalid_signature, not_found
)

# Background jobs
sweeper_expired = Counter(
    'sweeper_expired_bookings_total',
    'Bookings expired by the sweeper'
)

sweeper_errors = Counter(
    'sweeper_errors_total',
    'Per-booking failures during a sweep'
)

job_runs = Counter(
    'scheduled_job_runs_total',
    'Scheduled job executions',
    ['job', 'result']  # ok, error, skipped
)

bookings_by_status = Gauge(
    'bookings_by_status',
    'Current number of bookings per status',
    ['status']
)

payments_by_status = Gauge(
    'payments_by_status',
    'Current number of payment records per status',
    ['status']
)

# HTTP
http_requests = Histogram(
    'http_request_duration_seconds',
    'HTTP request latency by route',
    ['method', 'route', 'status'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)

# Cache metrics
cache_operations = Counter(
    'cache_operations_total',
    'Cache operations',
    ['operation', 'result']  # get/set/invalidate, hit/miss/error
)


def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Usage:
        @app.get("/metrics")
        def metrics():
            return metrics_endpoint()
    """
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST
    )


# Convenience functions for instrumentation
def record_booking_attempt(status: str):
    """Record booking attempt. Status: success, sold_out, closed, error"""
    booking_attempts.labels(status=status).inc()


def record_transition(to_status: str):
    booking_transitions.labels(to_status=to_status).inc()


def record_inventory_retry(operation: str):
    inventory_retries.labels(operation=operation).inc()


def record_gateway_call(operation: str, ok: bool):
    gateway_requests.labels(operation=operation, result="ok" if ok else "error").inc()


def record_webhook(outcome: str):
    webhook_events.labels(outcome=outcome).inc()


def record_job_run(job: str, result: str):
    job_runs.labels(job=job, result=result).inc()


def record_cache_operation(operation: str, result: str):
    """Record cache operation. Result: hit, miss, ok, error"""
    cache_operations.labels(operation=operation, result=result).inc()


def record_http_request(method: str, route: str, status: int, seconds: float):
    http_requests.labels(method=method, route=route, status=str(status)).observe(seconds)
