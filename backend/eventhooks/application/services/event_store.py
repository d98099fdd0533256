import logging
from collections.abc import Mapping
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from eventhooks.application.services.matcher import is_valid_event_type
from eventhooks.core.exceptions import ConfigurationError, NotFoundError, StorageError
from eventhooks.domain.models.webhook_event import WebhookEvent
from eventhooks.infrastructure.observability.metrics import WEBHOOK_EVENTS_EMITTED_TOTAL

logger = logging.getLogger(__name__)


def validate_event_fields(*, event_type: str, source_app: str, payload: Any, metadata: Any) -> None:
    if not is_valid_event_type(event_type):
        raise ConfigurationError(
            f"Invalid event_type '{event_type}': expected dot-separated segments such as 'user.created'"
        )
    if not source_app or not source_app.strip():
        raise ConfigurationError("source_app is required")
    if not isinstance(payload, Mapping):
        raise ConfigurationError("payload must be an object")
    if metadata is not None and not isinstance(metadata, Mapping):
        raise ConfigurationError("metadata must be an object")


def emit_event(
    db: Session,
    *,
    tenant_id: UUID,
    event_type: str,
    source_app: str,
    payload: Mapping[str, Any],
    user_id: UUID | None = None,
    metadata: Mapping[str, Any] | None = None,
    enqueue: bool = True,
) -> WebhookEvent:
    """Store an event durably, then hand it to the dispatch worker.

    The caller gets the stored row back as soon as the commit succeeds; matching
    and delivery happen in the background and never fail this call.
    """
    validate_event_fields(event_type=event_type, source_app=source_app, payload=payload, metadata=metadata)

    event = WebhookEvent(
        tenant_id=tenant_id,
        event_type=event_type,
        source_app=source_app.strip(),
        user_id=user_id,
        payload_json=dict(payload),
        metadata_json=dict(metadata or {}),
    )
    try:
        db.add(event)
        db.commit()
        db.refresh(event)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("webhook_event_store_failed event_type=%s source_app=%s", event_type, source_app)
        raise StorageError("Failed to store webhook event") from exc

    WEBHOOK_EVENTS_EMITTED_TOTAL.inc()
    logger.info(
        "webhook_event_emitted event_id=%s event_type=%s source_app=%s",
        event.id,
        event.event_type,
        event.source_app,
    )
    if enqueue:
        dispatch_event_async(event.id)
    return event


def dispatch_event_async(event_id: UUID) -> bool:
    from workers.tasks import dispatch_webhook_event  # local import to avoid import cycle

    try:
        dispatch_webhook_event.apply_async(kwargs={"event_id": str(event_id)})
    except Exception:
        # The event stays stored; the failure is only reported.
        logger.exception("webhook_dispatch_enqueue_failed event_id=%s", event_id)
        return False
    logger.info("webhook_dispatch_enqueued event_id=%s", event_id)
    return True


def get_event(db: Session, *, tenant_id: UUID, event_id: UUID) -> WebhookEvent:
    event = db.execute(
        select(WebhookEvent).where(WebhookEvent.id == event_id, WebhookEvent.tenant_id == tenant_id)
    ).scalar_one_or_none()
    if event is None:
        raise NotFoundError("Event not found")
    return event
