import logging
import re
from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from eventhooks.domain.models.webhook_event import WebhookEvent
from eventhooks.domain.models.webhook_subscription import SubscriptionStatus, WebhookSubscription

logger = logging.getLogger(__name__)

WILDCARD_SUFFIX = ".*"
EVENT_TYPE_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+(\.[A-Za-z0-9_\-]+)+$")
WILDCARD_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+\.\*$")


@dataclass(frozen=True)
class EventSnapshot:
    id: UUID
    tenant_id: UUID
    event_type: str
    source_app: str
    payload: Mapping[str, Any]
    created_at: datetime
    user_id: UUID | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, event: WebhookEvent) -> "EventSnapshot":
        return cls(
            id=event.id,
            tenant_id=event.tenant_id,
            event_type=event.event_type,
            source_app=event.source_app,
            payload=dict(event.payload_json or {}),
            created_at=event.created_at,
            user_id=event.user_id,
            metadata=dict(event.metadata_json or {}),
        )


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """Point-in-time copy of a subscription taken at match time."""

    id: UUID
    tenant_id: UUID
    name: str
    event_types: tuple[str, ...]
    endpoint_url: str
    secret: str
    status: str
    max_retries: int
    retry_delay_seconds: int
    exponential_backoff: bool
    filters: Mapping[str, Any] = field(default_factory=dict)
    failure_count: int = 0

    @classmethod
    def from_model(cls, subscription: WebhookSubscription) -> "SubscriptionSnapshot":
        return cls(
            id=subscription.id,
            tenant_id=subscription.tenant_id,
            name=subscription.name,
            event_types=tuple(subscription.event_types or ()),
            endpoint_url=subscription.endpoint_url,
            secret=subscription.secret,
            status=subscription.status,
            max_retries=subscription.max_retries,
            retry_delay_seconds=subscription.retry_delay_seconds,
            exponential_backoff=subscription.exponential_backoff,
            filters=dict(subscription.filters_json or {}),
            failure_count=subscription.failure_count,
        )


def is_valid_event_type(event_type: str) -> bool:
    return bool(EVENT_TYPE_PATTERN.match(event_type or ""))


def is_valid_subscription_pattern(pattern: str) -> bool:
    return is_valid_event_type(pattern) or bool(WILDCARD_PATTERN.match(pattern or ""))


def wildcard_pattern_for(event_type: str) -> str | None:
    """Return the one-level wildcard that covers ``event_type``.

    Only two-segment event types have a wildcard: ``order.created`` is covered
    by ``order.*`` while ``order.created.detail`` is not covered by anything.
    """
    segments = event_type.split(".")
    if len(segments) != 2 or not segments[0]:
        return None
    return f"{segments[0]}{WILDCARD_SUFFIX}"


def subscription_matches(event_types: Collection[str], event_type: str) -> bool:
    if event_type in event_types:
        return True
    wildcard = wildcard_pattern_for(event_type)
    return wildcard is not None and wildcard in event_types


def _active_subscriptions_with_pattern(db: Session, *, tenant_id: UUID, pattern: str) -> list[WebhookSubscription]:
    return list(
        db.execute(
            select(WebhookSubscription).where(
                WebhookSubscription.tenant_id == tenant_id,
                WebhookSubscription.status == SubscriptionStatus.ACTIVE.value,
                WebhookSubscription.event_types.contains([pattern]),
            )
        )
        .scalars()
        .all()
    )


def resolve_subscriptions(db: Session, event: EventSnapshot) -> list[SubscriptionSnapshot]:
    matched: dict[UUID, WebhookSubscription] = {}
    for row in _active_subscriptions_with_pattern(db, tenant_id=event.tenant_id, pattern=event.event_type):
        matched[row.id] = row

    wildcard = wildcard_pattern_for(event.event_type)
    if wildcard is not None:
        for row in _active_subscriptions_with_pattern(db, tenant_id=event.tenant_id, pattern=wildcard):
            matched.setdefault(row.id, row)

    logger.debug(
        "webhook_subscriptions_resolved event_type=%s wildcard=%s matched=%s",
        event.event_type,
        wildcard,
        len(matched),
    )
    return [SubscriptionSnapshot.from_model(row) for row in matched.values()]
