import asyncio
import logging
from datetime import UTC, datetime
from uuid import UUID, uuid4

from celery.exceptions import MaxRetriesExceededError
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from eventhooks.application.services.dispatcher import dispatch_event
from eventhooks.application.services.retry_scheduler import redispatch_due_deliveries
from eventhooks.core.config import settings
from eventhooks.infrastructure.cache.redis_client import get_redis_client
from eventhooks.infrastructure.observability.metrics import measure_redis
from workers.celery_app import celery_app

logger = logging.getLogger(__name__)

DISPATCH_MAX_TASK_RETRIES = 5
RETRY_SWEEP_LOCK_KEY = "lock:webhook_retry_sweep"


def _acquire_sweep_lock(redis_client) -> str | None:
    token = str(uuid4())
    ttl_seconds = max(30, int(settings.webhook_retry_sweep_interval_seconds * 4))
    with measure_redis("webhook_retry_sweep_lock_acquire"):
        acquired = redis_client.set(RETRY_SWEEP_LOCK_KEY, token, nx=True, ex=ttl_seconds)
    if not acquired:
        return None
    return token


def _release_sweep_lock(redis_client, token: str) -> None:
    try:
        with measure_redis("webhook_retry_sweep_lock_release"):
            redis_client.eval(
                """
                if redis.call("get", KEYS[1]) == ARGV[1] then
                    return redis.call("del", KEYS[1])
                else
                    return 0
                end
                """,
                1,
                RETRY_SWEEP_LOCK_KEY,
                token,
            )
    except RedisError:
        logger.exception("webhook_retry_sweep_lock_release_failed")


@celery_app.task(name="workers.tasks.worker_heartbeat")
def worker_heartbeat() -> dict:
    redis_client = get_redis_client()
    now = datetime.now(UTC).isoformat()
    with measure_redis("worker_heartbeat_set"):
        redis_client.set(
            settings.worker_heartbeat_key,
            now,
            ex=max(15, settings.worker_heartbeat_ttl_seconds),
        )
    return {"heartbeat_at": now}


@celery_app.task(
    bind=True,
    name="workers.tasks.dispatch_webhook_event",
    max_retries=DISPATCH_MAX_TASK_RETRIES,
    acks_late=True,
)
def dispatch_webhook_event(self, event_id: str) -> dict:
    attempt = self.request.retries + 1
    try:
        outcomes = asyncio.run(dispatch_event(UUID(event_id)))
    except SQLAlchemyError as exc:
        # Raised only while loading the event or preparing the fan-out, before anything was sent.
        countdown = min(300, 10 * (2 ** (attempt - 1)))
        logger.warning(
            "webhook_dispatch_retry event_id=%s attempt=%s countdown=%s error=%s",
            event_id,
            attempt,
            countdown,
            str(exc),
        )
        try:
            raise self.retry(exc=exc, countdown=countdown)
        except MaxRetriesExceededError:
            logger.exception("webhook_dispatch_max_retries event_id=%s", event_id)
            return {"status": "failed", "error": str(exc)}

    succeeded = sum(1 for outcome in outcomes if outcome.success)
    logger.info(
        "webhook_dispatch_completed event_id=%s deliveries=%s succeeded=%s failed=%s",
        event_id,
        len(outcomes),
        succeeded,
        len(outcomes) - succeeded,
    )
    return {"status": "ok", "deliveries": len(outcomes), "succeeded": succeeded}


@celery_app.task(name="workers.tasks.process_due_webhook_retries")
def process_due_webhook_retries() -> dict:
    redis_client = get_redis_client()
    try:
        lock_token = _acquire_sweep_lock(redis_client)
    except RedisError:
        # The claim query is safe without the lock; it only avoids overlapping sweeps.
        logger.exception("webhook_retry_sweep_lock_unavailable")
        lock_token = ""
    if lock_token is None:
        logger.info("webhook_retry_sweep_skipped_locked")
        return {"status": "skipped", "reason": "lock_not_acquired"}

    try:
        result = asyncio.run(redispatch_due_deliveries())
    finally:
        if lock_token:
            _release_sweep_lock(redis_client, lock_token)

    return {
        "status": "ok",
        "claimed": result.claimed,
        "redispatched": result.redispatched,
        "abandoned": result.abandoned,
    }
