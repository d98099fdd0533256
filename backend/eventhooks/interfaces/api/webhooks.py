from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from eventhooks.application.services.delivery_ledger import list_deliveries
from eventhooks.application.services.event_store import emit_event, get_event
from eventhooks.application.services.subscription_registry import (
    create_subscription,
    delete_subscription,
    get_subscription,
    list_subscriptions,
    reactivate_subscription,
    update_subscription,
)
from eventhooks.domain.models.webhook_delivery import DeliveryStatus, WebhookDelivery
from eventhooks.domain.models.webhook_event import WebhookEvent
from eventhooks.domain.models.webhook_subscription import WebhookSubscription
from eventhooks.infrastructure.db.session import get_db
from eventhooks.interfaces.api.deps import require_tenant_id

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


class EventEmitRequest(BaseModel):
    event_type: str = Field(min_length=3, max_length=128)
    source_app: str = Field(min_length=1, max_length=128)
    user_id: UUID | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] | None = None


class SubscriptionCreateRequest(BaseModel):
    app_id: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=255)
    event_types: list[str] = Field(min_length=1)
    endpoint_url: str = Field(min_length=1, max_length=2048)
    filters: dict[str, Any] | None = None
    retry_config: dict[str, Any] | None = None
    created_by: str | None = Field(default=None, max_length=128)


class SubscriptionUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    event_types: list[str] | None = None
    endpoint_url: str | None = Field(default=None, min_length=1, max_length=2048)
    filters: dict[str, Any] | None = None
    retry_config: dict[str, Any] | None = None
    status: str | None = None


def _isoformat(value) -> str | None:
    return value.isoformat() if value is not None else None


def _serialize_event(event: WebhookEvent) -> dict:
    return {
        "id": str(event.id),
        "tenant_id": str(event.tenant_id),
        "event_type": event.event_type,
        "source_app": event.source_app,
        "user_id": str(event.user_id) if event.user_id else None,
        "payload": event.payload_json or {},
        "metadata": event.metadata_json or {},
        "created_at": _isoformat(event.created_at),
    }


def _serialize_subscription(subscription: WebhookSubscription, *, include_secret: bool = False) -> dict:
    payload = {
        "id": str(subscription.id),
        "tenant_id": str(subscription.tenant_id),
        "app_id": subscription.app_id,
        "name": subscription.name,
        "event_types": list(subscription.event_types or []),
        "endpoint_url": subscription.endpoint_url,
        "status": subscription.status,
        "retry_config": subscription.retry_config,
        "filters": subscription.filters_json or {},
        "failure_count": subscription.failure_count,
        "last_triggered": _isoformat(subscription.last_triggered),
        "created_by": subscription.created_by,
        "created_at": _isoformat(subscription.created_at),
        "updated_at": _isoformat(subscription.updated_at),
    }
    if include_secret:
        payload["secret"] = subscription.secret
    return payload


def _serialize_delivery(delivery: WebhookDelivery, subscription_name: str, event_type: str, source_app: str) -> dict:
    return {
        "id": str(delivery.id),
        "subscription_id": str(delivery.subscription_id),
        "subscription_name": subscription_name,
        "event_id": str(delivery.event_id),
        "event_type": event_type,
        "source_app": source_app,
        "status": delivery.status,
        "attempts": delivery.attempts,
        "response_code": delivery.response_code,
        "response_body": delivery.response_body,
        "error_message": delivery.error_message,
        "next_retry_at": _isoformat(delivery.next_retry_at),
        "delivered_at": _isoformat(delivery.delivered_at),
        "created_at": _isoformat(delivery.created_at),
        "updated_at": _isoformat(delivery.updated_at),
    }


@router.post("/events", status_code=status.HTTP_202_ACCEPTED)
def emit_webhook_event(
    payload: EventEmitRequest,
    db: Session = Depends(get_db),
    tenant_id: UUID = Depends(require_tenant_id),
) -> dict:
    event = emit_event(
        db,
        tenant_id=tenant_id,
        event_type=payload.event_type.strip(),
        source_app=payload.source_app,
        user_id=payload.user_id,
        payload=payload.payload,
        metadata=payload.metadata,
    )
    return _serialize_event(event)


@router.get("/events/{event_id}", status_code=status.HTTP_200_OK)
def read_webhook_event(
    event_id: UUID,
    db: Session = Depends(get_db),
    tenant_id: UUID = Depends(require_tenant_id),
) -> dict:
    return _serialize_event(get_event(db, tenant_id=tenant_id, event_id=event_id))


@router.post("/subscriptions", status_code=status.HTTP_201_CREATED)
def create_webhook_subscription(
    payload: SubscriptionCreateRequest,
    db: Session = Depends(get_db),
    tenant_id: UUID = Depends(require_tenant_id),
) -> dict:
    subscription = create_subscription(
        db,
        tenant_id=tenant_id,
        app_id=payload.app_id,
        name=payload.name,
        event_types=payload.event_types,
        endpoint_url=payload.endpoint_url,
        filters=payload.filters,
        retry_config=payload.retry_config,
        created_by=payload.created_by,
    )
    db.commit()
    db.refresh(subscription)
    return _serialize_subscription(subscription, include_secret=True)


@router.get("/subscriptions", status_code=status.HTTP_200_OK)
def list_webhook_subscriptions(
    app_id: str | None = Query(default=None, max_length=128),
    db: Session = Depends(get_db),
    tenant_id: UUID = Depends(require_tenant_id),
) -> dict:
    rows = list_subscriptions(db, tenant_id=tenant_id, app_id=app_id)
    return {"items": [_serialize_subscription(subscription) for subscription in rows]}


@router.get("/subscriptions/{subscription_id}", status_code=status.HTTP_200_OK)
def read_webhook_subscription(
    subscription_id: UUID,
    db: Session = Depends(get_db),
    tenant_id: UUID = Depends(require_tenant_id),
) -> dict:
    return _serialize_subscription(get_subscription(db, tenant_id=tenant_id, subscription_id=subscription_id))


@router.patch("/subscriptions/{subscription_id}", status_code=status.HTTP_200_OK)
def update_webhook_subscription(
    subscription_id: UUID,
    payload: SubscriptionUpdateRequest,
    db: Session = Depends(get_db),
    tenant_id: UUID = Depends(require_tenant_id),
) -> dict:
    subscription = update_subscription(
        db,
        tenant_id=tenant_id,
        subscription_id=subscription_id,
        changes=payload.model_dump(exclude_unset=True),
    )
    db.commit()
    db.refresh(subscription)
    return _serialize_subscription(subscription)


@router.post("/subscriptions/{subscription_id}/reactivate", status_code=status.HTTP_200_OK)
def reactivate_webhook_subscription(
    subscription_id: UUID,
    db: Session = Depends(get_db),
    tenant_id: UUID = Depends(require_tenant_id),
) -> dict:
    subscription = reactivate_subscription(db, tenant_id=tenant_id, subscription_id=subscription_id)
    db.commit()
    db.refresh(subscription)
    return _serialize_subscription(subscription)


@router.delete("/subscriptions/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_webhook_subscription(
    subscription_id: UUID,
    db: Session = Depends(get_db),
    tenant_id: UUID = Depends(require_tenant_id),
) -> Response:
    delete_subscription(db, tenant_id=tenant_id, subscription_id=subscription_id)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/deliveries", status_code=status.HTTP_200_OK)
def list_webhook_deliveries(
    subscription_id: UUID | None = Query(default=None),
    delivery_status: DeliveryStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
    db: Session = Depends(get_db),
    tenant_id: UUID = Depends(require_tenant_id),
) -> dict:
    rows = list_deliveries(
        db,
        tenant_id=tenant_id,
        subscription_id=subscription_id,
        status=delivery_status.value if delivery_status is not None else None,
        limit=limit,
    )
    return {"items": [_serialize_delivery(*row) for row in rows]}
