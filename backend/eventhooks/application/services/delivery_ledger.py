import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import func, select, tuple_, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from eventhooks.application.services.retry_policy import FailureDecision, RetryPolicy, decide_after_failure
from eventhooks.core.config import settings
from eventhooks.domain.models.webhook_delivery import DeliveryStatus, WebhookDelivery
from eventhooks.domain.models.webhook_event import WebhookEvent
from eventhooks.domain.models.webhook_subscription import SubscriptionStatus, WebhookSubscription
from eventhooks.infrastructure.observability.metrics import increment_background_counter

logger = logging.getLogger(__name__)

DELIVERY_UNIQUE_CONSTRAINT = "uq_webhook_deliveries_subscription_event"


@dataclass(frozen=True)
class DeliveryOutcome:
    subscription_id: UUID
    event_id: UUID
    delivery_id: str
    success: bool
    duration_ms: int
    status_code: int | None = None
    response_body: str | None = None
    response_headers: dict = field(default_factory=dict)
    error_message: str | None = None
    error_code: str | None = None


def truncate_response_body(body: str | None) -> str | None:
    if body is None:
        return None
    return body[: settings.webhook_response_body_max_chars]


def ensure_pending_delivery(db: Session, *, tenant_id: UUID, subscription_id: UUID, event_id: UUID) -> None:
    db.execute(
        insert(WebhookDelivery)
        .values(
            id=uuid4(),
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            event_id=event_id,
            status=DeliveryStatus.PENDING.value,
            attempts=0,
            response_headers_json={},
        )
        .on_conflict_do_nothing(constraint=DELIVERY_UNIQUE_CONSTRAINT)
    )


def touch_pending_deliveries(db: Session, *, keys: list[tuple[UUID, UUID]], now: datetime) -> None:
    """Refresh ``updated_at`` on pending rows keyed by (subscription_id, event_id)."""
    if not keys:
        return
    db.execute(
        update(WebhookDelivery)
        .where(
            tuple_(WebhookDelivery.subscription_id, WebhookDelivery.event_id).in_(keys),
            WebhookDelivery.status == DeliveryStatus.PENDING.value,
        )
        .values(updated_at=now)
        .execution_options(synchronize_session=False)
    )


def _upsert_attempt(
    db: Session,
    *,
    tenant_id: UUID,
    subscription_id: UUID,
    event_id: UUID,
    values: dict,
    keep_success: bool,
) -> None:
    statement = insert(WebhookDelivery).values(
        id=uuid4(),
        tenant_id=tenant_id,
        subscription_id=subscription_id,
        event_id=event_id,
        attempts=1,
        **values,
    )
    statement = statement.on_conflict_do_update(
        constraint=DELIVERY_UNIQUE_CONSTRAINT,
        set_={
            **values,
            "attempts": WebhookDelivery.attempts + 1,
            "updated_at": func.now(),
        },
        # A late failure must never overwrite a delivery that already succeeded.
        where=(WebhookDelivery.status != DeliveryStatus.SUCCESS.value) if keep_success else None,
    )
    db.execute(statement)


def record_success(
    db: Session,
    *,
    tenant_id: UUID,
    outcome: DeliveryOutcome,
    now: datetime,
) -> None:
    _upsert_attempt(
        db,
        tenant_id=tenant_id,
        subscription_id=outcome.subscription_id,
        event_id=outcome.event_id,
        values={
            "status": DeliveryStatus.SUCCESS.value,
            "response_code": outcome.status_code,
            "response_body": truncate_response_body(outcome.response_body),
            "response_headers_json": outcome.response_headers or {},
            "error_message": None,
            "next_retry_at": None,
            "delivered_at": now,
        },
        keep_success=False,
    )
    db.execute(
        update(WebhookSubscription)
        .where(WebhookSubscription.id == outcome.subscription_id)
        .values(failure_count=0, last_triggered=now)
        .execution_options(synchronize_session=False)
    )
    increment_background_counter("webhook_deliveries_succeeded_total")


def _increment_failure_streak(db: Session, *, subscription_id: UUID):
    return db.execute(
        update(WebhookSubscription)
        .where(WebhookSubscription.id == subscription_id)
        .values(failure_count=WebhookSubscription.failure_count + 1)
        .returning(
            WebhookSubscription.failure_count,
            WebhookSubscription.max_retries,
            WebhookSubscription.retry_delay_seconds,
            WebhookSubscription.exponential_backoff,
        )
        .execution_options(synchronize_session=False)
    ).one_or_none()


def _fail_exhausted_subscription(db: Session, *, subscription_id: UUID) -> bool:
    """Move an active subscription past its limit to ``failed``; True only for the call that moved it."""
    moved = db.execute(
        update(WebhookSubscription)
        .where(
            WebhookSubscription.id == subscription_id,
            WebhookSubscription.status == SubscriptionStatus.ACTIVE.value,
            WebhookSubscription.failure_count > WebhookSubscription.max_retries,
        )
        .values(status=SubscriptionStatus.FAILED.value)
        .returning(WebhookSubscription.id)
        .execution_options(synchronize_session=False)
    ).first()
    return moved is not None


def record_failure(
    db: Session,
    *,
    tenant_id: UUID,
    outcome: DeliveryOutcome,
    now: datetime,
) -> FailureDecision | None:
    increment_background_counter("webhook_deliveries_failed_total")
    row = _increment_failure_streak(db, subscription_id=outcome.subscription_id)
    if row is None:
        logger.warning(
            "webhook_failure_for_missing_subscription subscription_id=%s event_id=%s",
            outcome.subscription_id,
            outcome.event_id,
        )
        return None

    policy = RetryPolicy(
        max_retries=row.max_retries,
        retry_delay_seconds=row.retry_delay_seconds,
        exponential_backoff=row.exponential_backoff,
    )
    decision = decide_after_failure(policy, row.failure_count, now=now)
    _upsert_attempt(
        db,
        tenant_id=tenant_id,
        subscription_id=outcome.subscription_id,
        event_id=outcome.event_id,
        values={
            "status": DeliveryStatus.FAILED.value if decision.exhausted else DeliveryStatus.RETRYING.value,
            "response_code": outcome.status_code,
            "response_body": truncate_response_body(outcome.response_body),
            "response_headers_json": outcome.response_headers or {},
            "error_message": outcome.error_message,
            "next_retry_at": decision.next_retry_at,
        },
        keep_success=True,
    )

    if decision.exhausted:
        # Concurrent failures serialize on the row lock; only one of them sees the active -> failed move.
        if _fail_exhausted_subscription(db, subscription_id=outcome.subscription_id):
            increment_background_counter("webhook_subscriptions_failed_total")
            logger.warning(
                "webhook_subscription_failed subscription_id=%s failure_count=%s max_retries=%s",
                outcome.subscription_id,
                row.failure_count,
                policy.max_retries,
            )
    else:
        increment_background_counter("webhook_retries_scheduled_total")
        logger.info(
            "webhook_retry_scheduled subscription_id=%s event_id=%s failure_count=%s delay_seconds=%s",
            outcome.subscription_id,
            outcome.event_id,
            row.failure_count,
            decision.delay_seconds,
        )
    return decision


def mark_delivery_abandoned(db: Session, *, delivery_id: UUID, reason: str) -> bool:
    result = db.execute(
        update(WebhookDelivery)
        .where(
            WebhookDelivery.id == delivery_id,
            WebhookDelivery.status.in_([DeliveryStatus.RETRYING.value, DeliveryStatus.PENDING.value]),
        )
        .values(status=DeliveryStatus.FAILED.value, error_message=reason, next_retry_at=None)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


def list_deliveries(
    db: Session,
    *,
    tenant_id: UUID,
    subscription_id: UUID | None = None,
    status: str | None = None,
    limit: int = 100,
) -> list[tuple[WebhookDelivery, str, str, str]]:
    query = (
        select(WebhookDelivery, WebhookSubscription.name, WebhookEvent.event_type, WebhookEvent.source_app)
        .join(WebhookSubscription, WebhookSubscription.id == WebhookDelivery.subscription_id)
        .join(WebhookEvent, WebhookEvent.id == WebhookDelivery.event_id)
        .where(WebhookDelivery.tenant_id == tenant_id, WebhookSubscription.tenant_id == tenant_id)
    )
    if subscription_id is not None:
        query = query.where(WebhookDelivery.subscription_id == subscription_id)
    if status is not None:
        query = query.where(WebhookDelivery.status == status)
    query = query.order_by(
        func.coalesce(WebhookDelivery.delivered_at, WebhookDelivery.updated_at).desc(),
    ).limit(max(1, min(limit, 500)))
    return [tuple(row) for row in db.execute(query).all()]
