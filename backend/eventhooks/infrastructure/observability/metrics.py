from __future__ import annotations

from contextlib import contextmanager
from time import perf_counter

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

REQUESTS_TOTAL = Counter(
    "total_requests",
    "Total HTTP requests",
    labelnames=("method", "path", "status"),
)
REQUEST_LATENCY_SECONDS = Histogram(
    "request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path"),
)
DB_QUERY_DURATION_SECONDS = Histogram(
    "db_query_duration_seconds",
    "Database query duration in seconds",
    labelnames=("operation",),
)
REDIS_LATENCY_SECONDS = Histogram(
    "redis_latency_seconds",
    "Redis command latency in seconds",
    labelnames=("operation",),
)
WEBHOOK_EVENTS_EMITTED_TOTAL = Counter(
    "webhook_events_emitted_total",
    "Number of domain events stored for webhook dispatch",
)
WEBHOOK_DELIVERY_LATENCY_SECONDS = Histogram(
    "webhook_delivery_latency_seconds",
    "Outbound webhook request latency in seconds",
)
WEBHOOK_DELIVERIES_SUCCEEDED_TOTAL = Counter(
    "webhook_deliveries_succeeded_total",
    "Number of webhook delivery attempts answered with 2xx",
)
WEBHOOK_DELIVERIES_FAILED_TOTAL = Counter(
    "webhook_deliveries_failed_total",
    "Number of webhook delivery attempts that failed",
)
WEBHOOK_RETRIES_SCHEDULED_TOTAL = Counter(
    "webhook_retries_scheduled_total",
    "Number of webhook deliveries moved to retrying",
)
WEBHOOK_SUBSCRIPTIONS_FAILED_TOTAL = Counter(
    "webhook_subscriptions_failed_total",
    "Number of subscriptions disabled after exhausting retries",
)

# Worker-side counters live in another process; they are mirrored through Redis.
BACKGROUND_COUNTERS = {
    "webhook_deliveries_succeeded_total": ("metrics:webhook_deliveries_succeeded_total", WEBHOOK_DELIVERIES_SUCCEEDED_TOTAL),
    "webhook_deliveries_failed_total": ("metrics:webhook_deliveries_failed_total", WEBHOOK_DELIVERIES_FAILED_TOTAL),
    "webhook_retries_scheduled_total": ("metrics:webhook_retries_scheduled_total", WEBHOOK_RETRIES_SCHEDULED_TOTAL),
    "webhook_subscriptions_failed_total": ("metrics:webhook_subscriptions_failed_total", WEBHOOK_SUBSCRIPTIONS_FAILED_TOTAL),
}
_last_background_counter_values: dict[str, float] = {metric_name: 0.0 for metric_name in BACKGROUND_COUNTERS}


def record_request(method: str, path: str, status_code: int, duration_seconds: float) -> None:
    REQUESTS_TOTAL.labels(method=method, path=path, status=str(status_code)).inc()
    REQUEST_LATENCY_SECONDS.labels(method=method, path=path).observe(duration_seconds)


def observe_db_query(duration_seconds: float, operation: str = "sql") -> None:
    DB_QUERY_DURATION_SECONDS.labels(operation=operation).observe(duration_seconds)


def observe_redis_latency(duration_seconds: float, operation: str) -> None:
    REDIS_LATENCY_SECONDS.labels(operation=operation).observe(duration_seconds)


def observe_webhook_delivery(duration_seconds: float) -> None:
    WEBHOOK_DELIVERY_LATENCY_SECONDS.observe(duration_seconds)


def increment_background_counter(metric_name: str, amount: int = 1) -> None:
    entry = BACKGROUND_COUNTERS.get(metric_name)
    if entry is None:
        return
    redis_key, _ = entry
    try:
        from eventhooks.infrastructure.cache.redis_client import get_redis_client

        redis_client = get_redis_client()
        with measure_redis("metrics_background_counter_incr"):
            redis_client.incrby(redis_key, amount)
    except Exception:
        # Metrics mirroring never interrupts delivery.
        return


def _sync_background_counters_from_redis() -> None:
    try:
        from eventhooks.infrastructure.cache.redis_client import get_redis_client

        redis_client = get_redis_client()
        with measure_redis("metrics_background_counter_sync"):
            raw_values = redis_client.mget([redis_key for redis_key, _ in BACKGROUND_COUNTERS.values()])
    except Exception:
        return

    for idx, (metric_name, (_, collector)) in enumerate(BACKGROUND_COUNTERS.items()):
        raw_value = raw_values[idx] if raw_values else None
        current_value = float(raw_value or 0.0)
        delta = current_value - _last_background_counter_values.get(metric_name, 0.0)
        if delta > 0:
            collector.inc(delta)
        _last_background_counter_values[metric_name] = current_value


@contextmanager
def measure_redis(operation: str):
    started_at = perf_counter()
    try:
        yield
    finally:
        observe_redis_latency(perf_counter() - started_at, operation=operation)


def metrics_response() -> Response:
    _sync_background_counters_from_redis()
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
