"""Re-dispatch of deliveries waiting in ``retrying``.

The scheduler only talks to the dispatcher through the deliveries table: a
row is due when ``status = 'retrying'`` and ``next_retry_at <= now``. Claiming
moves the row back to ``pending`` with a conditional UPDATE, so a delivery
that already succeeded, or that another worker claimed first, is skipped.
Rows left ``pending`` by a worker that died mid-attempt are claimed again once
they go stale. A live worker keeps refreshing ``updated_at`` on the rows it
still holds, queued or starting, so those are never taken for abandoned ones.
"""
import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import UUID

import httpx
from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from eventhooks.application.services.delivery_ledger import DeliveryOutcome, mark_delivery_abandoned
from eventhooks.application.services.dispatcher import (
    PairHook,
    OutcomeRecorder,
    create_http_client,
    deliver_pairs,
    mark_deliveries_alive,
    record_delivery_outcome,
)
from eventhooks.application.services.matcher import EventSnapshot, SubscriptionSnapshot
from eventhooks.core.config import settings
from eventhooks.domain.models.webhook_delivery import DeliveryStatus, WebhookDelivery
from eventhooks.domain.models.webhook_event import WebhookEvent
from eventhooks.domain.models.webhook_subscription import SubscriptionStatus, WebhookSubscription
from eventhooks.infrastructure.db.session import SessionLocal

logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class ClaimedDelivery:
    id: UUID
    subscription_id: UUID
    event_id: UUID


@dataclass(frozen=True)
class RetrySweepResult:
    claimed: int
    redispatched: int
    abandoned: int
    outcomes: tuple[DeliveryOutcome, ...] = ()


def claim_due_deliveries(db: Session, *, now: datetime, limit: int) -> list[ClaimedDelivery]:
    stale_before = now - timedelta(seconds=settings.webhook_pending_stale_after_seconds)
    due = (
        select(WebhookDelivery.id)
        .where(
            or_(
                and_(
                    WebhookDelivery.status == DeliveryStatus.RETRYING.value,
                    WebhookDelivery.next_retry_at.is_not(None),
                    WebhookDelivery.next_retry_at <= now,
                ),
                and_(
                    WebhookDelivery.status == DeliveryStatus.PENDING.value,
                    WebhookDelivery.updated_at <= stale_before,
                ),
            )
        )
        .order_by(WebhookDelivery.next_retry_at.asc().nulls_first())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    rows = db.execute(
        update(WebhookDelivery)
        .where(WebhookDelivery.id.in_(due))
        .values(status=DeliveryStatus.PENDING.value, next_retry_at=None, updated_at=now)
        .returning(WebhookDelivery.id, WebhookDelivery.subscription_id, WebhookDelivery.event_id)
        .execution_options(synchronize_session=False)
    ).all()
    return [ClaimedDelivery(id=row.id, subscription_id=row.subscription_id, event_id=row.event_id) for row in rows]


def _load_targets(
    db: Session, claimed: list[ClaimedDelivery]
) -> tuple[dict[UUID, SubscriptionSnapshot], dict[UUID, EventSnapshot]]:
    subscription_ids = {item.subscription_id for item in claimed}
    event_ids = {item.event_id for item in claimed}
    subscriptions = {
        row.id: SubscriptionSnapshot.from_model(row)
        for row in db.execute(select(WebhookSubscription).where(WebhookSubscription.id.in_(subscription_ids))).scalars()
    }
    events = {
        row.id: EventSnapshot.from_model(row)
        for row in db.execute(select(WebhookEvent).where(WebhookEvent.id.in_(event_ids))).scalars()
    }
    return subscriptions, events


async def redispatch_due_deliveries(
    *,
    now: datetime | None = None,
    limit: int | None = None,
    client: httpx.AsyncClient | None = None,
    record_outcome: OutcomeRecorder = record_delivery_outcome,
    keep_alive: PairHook | None = mark_deliveries_alive,
) -> RetrySweepResult:
    now = now or datetime.now(UTC)
    limit = limit or settings.webhook_retry_batch_size

    pairs: list[tuple[SubscriptionSnapshot, EventSnapshot]] = []
    abandoned = 0
    with SessionLocal() as db:
        claimed = claim_due_deliveries(db, now=now, limit=limit)
        if not claimed:
            db.commit()
            return RetrySweepResult(claimed=0, redispatched=0, abandoned=0)

        subscriptions, events = _load_targets(db, claimed)
        for item in claimed:
            subscription = subscriptions.get(item.subscription_id)
            event = events.get(item.event_id)
            if subscription is None or event is None:
                continue
            if subscription.status != SubscriptionStatus.ACTIVE.value:
                if mark_delivery_abandoned(db, delivery_id=item.id, reason=f"Subscription is {subscription.status}"):
                    abandoned += 1
                continue
            pairs.append((subscription, event))
        db.commit()

    # All due retries share one concurrency bound, whichever event they belong to.
    owned_client = client is None
    http_client = client or create_http_client()
    try:
        outcomes = await deliver_pairs(
            http_client,
            pairs,
            record_outcome=record_outcome,
            keep_alive=keep_alive,
        )
    finally:
        if owned_client:
            await http_client.aclose()

    logger.info(
        "webhook_retry_sweep_completed claimed=%s redispatched=%s abandoned=%s",
        len(claimed),
        len(outcomes),
        abandoned,
    )
    return RetrySweepResult(
        claimed=len(claimed),
        redispatched=len(outcomes),
        abandoned=abandoned,
        outcomes=tuple(outcomes),
    )
