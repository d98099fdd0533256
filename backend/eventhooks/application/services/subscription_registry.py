import logging
from collections.abc import Iterable, Mapping
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.orm import Session

from eventhooks.application.services.filters import validate_filters
from eventhooks.application.services.matcher import is_valid_subscription_pattern
from eventhooks.application.services.retry_policy import RetryPolicy, validate_retry_config
from eventhooks.application.services.signing import generate_secret, validate_secret
from eventhooks.core.config import settings
from eventhooks.core.exceptions import ConfigurationError, NotFoundError
from eventhooks.domain.models.webhook_subscription import SubscriptionStatus, WebhookSubscription

logger = logging.getLogger(__name__)

ADMIN_SETTABLE_STATUSES = {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.PAUSED.value}
MAX_EVENT_TYPES_PER_SUBSCRIPTION = 100


def validate_event_patterns(event_types: Iterable[str] | None) -> list[str]:
    if event_types is None or isinstance(event_types, str):
        raise ConfigurationError("event_types must be a list of event type patterns")
    patterns: list[str] = []
    for pattern in event_types:
        if not isinstance(pattern, str) or not is_valid_subscription_pattern(pattern.strip()):
            raise ConfigurationError(
                f"Invalid event type pattern '{pattern}': use 'namespace.verb' or 'namespace.*'"
            )
        if pattern.strip() not in patterns:
            patterns.append(pattern.strip())
    if not patterns:
        raise ConfigurationError("At least one event type pattern is required")
    if len(patterns) > MAX_EVENT_TYPES_PER_SUBSCRIPTION:
        raise ConfigurationError(f"A subscription accepts at most {MAX_EVENT_TYPES_PER_SUBSCRIPTION} event types")
    return patterns


def validate_endpoint_url(endpoint_url: str) -> str:
    candidate = (endpoint_url or "").strip()
    try:
        url = httpx.URL(candidate)
    except httpx.InvalidURL as exc:
        raise ConfigurationError(f"Invalid endpoint_url: {exc}") from exc

    allowed_schemes = {"https", "http"} if settings.http_endpoints_allowed else {"https"}
    if url.scheme not in allowed_schemes:
        raise ConfigurationError(f"endpoint_url must use one of: {', '.join(sorted(allowed_schemes))}")
    if not url.host:
        raise ConfigurationError("endpoint_url must include a host")
    return candidate


def _validate_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ConfigurationError("name is required")
    if len(cleaned) > 255:
        raise ConfigurationError("name must be at most 255 characters")
    return cleaned


def _apply_retry_policy(subscription: WebhookSubscription, policy: RetryPolicy) -> None:
    subscription.max_retries = policy.max_retries
    subscription.retry_delay_seconds = policy.retry_delay_seconds
    subscription.exponential_backoff = policy.exponential_backoff


def create_subscription(
    db: Session,
    *,
    tenant_id: UUID,
    app_id: str,
    name: str,
    event_types: Iterable[str],
    endpoint_url: str,
    filters: Mapping[str, Any] | None = None,
    retry_config: Mapping[str, Any] | None = None,
    created_by: str | None = None,
) -> WebhookSubscription:
    if not app_id or not app_id.strip():
        raise ConfigurationError("app_id is required")

    subscription = WebhookSubscription(
        tenant_id=tenant_id,
        app_id=app_id.strip(),
        name=_validate_name(name),
        event_types=validate_event_patterns(event_types),
        endpoint_url=validate_endpoint_url(endpoint_url),
        secret=validate_secret(generate_secret()),
        status=SubscriptionStatus.ACTIVE.value,
        filters_json=validate_filters(filters),
        failure_count=0,
        created_by=created_by,
    )
    _apply_retry_policy(subscription, validate_retry_config(retry_config))
    db.add(subscription)
    db.flush()
    logger.info(
        "webhook_subscription_created subscription_id=%s app_id=%s event_types=%s",
        subscription.id,
        subscription.app_id,
        ",".join(subscription.event_types),
    )
    return subscription


def list_subscriptions(db: Session, *, tenant_id: UUID, app_id: str | None = None) -> list[WebhookSubscription]:
    query = select(WebhookSubscription).where(WebhookSubscription.tenant_id == tenant_id)
    if app_id:
        query = query.where(WebhookSubscription.app_id == app_id)
    return list(db.execute(query.order_by(WebhookSubscription.created_at.desc())).scalars().all())


def get_subscription(db: Session, *, tenant_id: UUID, subscription_id: UUID) -> WebhookSubscription:
    subscription = db.execute(
        select(WebhookSubscription).where(
            WebhookSubscription.id == subscription_id,
            WebhookSubscription.tenant_id == tenant_id,
        )
    ).scalar_one_or_none()
    if subscription is None:
        raise NotFoundError("Subscription not found")
    return subscription


def update_subscription(
    db: Session,
    *,
    tenant_id: UUID,
    subscription_id: UUID,
    changes: Mapping[str, Any],
) -> WebhookSubscription:
    subscription = get_subscription(db, tenant_id=tenant_id, subscription_id=subscription_id)

    if "name" in changes:
        subscription.name = _validate_name(changes["name"])
    if "event_types" in changes:
        subscription.event_types = validate_event_patterns(changes["event_types"])
    if "endpoint_url" in changes:
        subscription.endpoint_url = validate_endpoint_url(changes["endpoint_url"])
    if "filters" in changes:
        subscription.filters_json = validate_filters(changes["filters"])
    if "retry_config" in changes:
        base = RetryPolicy.from_subscription(subscription)
        _apply_retry_policy(subscription, validate_retry_config(changes["retry_config"], base=base))
    if "status" in changes:
        status = changes["status"]
        if status not in ADMIN_SETTABLE_STATUSES:
            raise ConfigurationError("status must be 'active' or 'paused'; use reactivate for failed subscriptions")
        if subscription.status == SubscriptionStatus.FAILED.value and status == SubscriptionStatus.ACTIVE.value:
            raise ConfigurationError("Failed subscriptions must be reactivated explicitly")
        subscription.status = status

    db.add(subscription)
    db.flush()
    logger.info(
        "webhook_subscription_updated subscription_id=%s fields=%s",
        subscription.id,
        ",".join(sorted(changes.keys())),
    )
    return subscription


def reactivate_subscription(db: Session, *, tenant_id: UUID, subscription_id: UUID) -> WebhookSubscription:
    """Return a failed or paused subscription to ``active``; the failure streak is kept."""
    subscription = get_subscription(db, tenant_id=tenant_id, subscription_id=subscription_id)
    previous_status = subscription.status
    subscription.status = SubscriptionStatus.ACTIVE.value
    db.add(subscription)
    db.flush()
    logger.info(
        "webhook_subscription_reactivated subscription_id=%s previous_status=%s failure_count=%s",
        subscription.id,
        previous_status,
        subscription.failure_count,
    )
    return subscription


def delete_subscription(db: Session, *, tenant_id: UUID, subscription_id: UUID) -> None:
    subscription = get_subscription(db, tenant_id=tenant_id, subscription_id=subscription_id)
    db.delete(subscription)
    db.flush()
    logger.info("webhook_subscription_deleted subscription_id=%s", subscription_id)
