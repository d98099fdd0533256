"""Outbound webhook delivery.

Fan-out runs one asyncio task per (subscription, event) pair. Each task
signs, POSTs with its own time bound and records its outcome independently, so
a slow or failing endpoint never holds back delivery to any other endpoint.
"""
import asyncio
import logging
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from time import perf_counter
from uuid import UUID, uuid4

import httpx
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from eventhooks.application.services.delivery_ledger import (
    DeliveryOutcome,
    ensure_pending_delivery,
    record_failure,
    record_success,
    touch_pending_deliveries,
)
from eventhooks.application.services.filters import passes
from eventhooks.application.services.matcher import EventSnapshot, SubscriptionSnapshot, resolve_subscriptions
from eventhooks.application.services.signing import canonical_json, sign_bytes, signature_header_value
from eventhooks.core.config import settings
from eventhooks.core.exceptions import (
    DeliveryError,
    PermanentDeliveryError,
    TransientDeliveryError,
    classify_status_code,
)
from eventhooks.domain.models.webhook_delivery import DeliveryStatus, WebhookDelivery
from eventhooks.domain.models.webhook_event import WebhookEvent
from eventhooks.infrastructure.db.session import SessionLocal
from eventhooks.infrastructure.logging.context import webhook_log_context
from eventhooks.infrastructure.observability.metrics import observe_webhook_delivery

logger = logging.getLogger(__name__)

OutcomeRecorder = Callable[[SubscriptionSnapshot, EventSnapshot, DeliveryOutcome], None]
DeliveryPair = tuple[SubscriptionSnapshot, EventSnapshot]
PairHook = Callable[[list[DeliveryPair]], None]


def build_delivery_body(event: EventSnapshot) -> dict:
    created_at = event.created_at
    return {
        "event_id": str(event.id),
        "event_type": event.event_type,
        "timestamp": created_at.isoformat() if isinstance(created_at, datetime) else str(created_at),
        "source_app": event.source_app,
        "data": dict(event.payload),
    }


def build_delivery_headers(*, event_type: str, signature: str, delivery_id: str) -> dict[str, str]:
    prefix = settings.webhook_header_prefix
    return {
        "Content-Type": "application/json",
        f"{prefix}-Signature": signature_header_value(signature),
        f"{prefix}-Event": event_type,
        f"{prefix}-Delivery": delivery_id,
        "User-Agent": settings.webhook_user_agent,
    }


async def read_capped_body(response: httpx.Response, max_chars: int) -> str:
    """Read at most ``max_chars`` bytes of the body; the rest is never pulled off the socket."""
    chunks: list[bytes] = []
    received = 0
    async for chunk in response.aiter_bytes():
        chunks.append(chunk)
        received += len(chunk)
        if received >= max_chars:
            break
    raw = b"".join(chunks)[:max_chars]
    return raw.decode(response.charset_encoding or "utf-8", errors="ignore")


def create_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.webhook_request_timeout_seconds),
        follow_redirects=False,
    )


async def send_webhook(
    client: httpx.AsyncClient,
    subscription: SubscriptionSnapshot,
    event: EventSnapshot,
    *,
    timeout_seconds: float | None = None,
) -> DeliveryOutcome:
    """Perform one signed POST; never raises for transport or HTTP failures."""
    timeout_seconds = timeout_seconds or settings.webhook_request_timeout_seconds
    body = canonical_json(build_delivery_body(event))
    delivery_id = str(uuid4())
    headers = build_delivery_headers(
        event_type=event.event_type,
        signature=sign_bytes(body, subscription.secret),
        delivery_id=delivery_id,
    )

    started_at = perf_counter()
    error: DeliveryError | None = None
    response: httpx.Response | None = None
    response_body: str | None = None
    try:
        async with asyncio.timeout(timeout_seconds):
            async with client.stream("POST", subscription.endpoint_url, content=body, headers=headers) as response:
                response_body = await read_capped_body(response, settings.webhook_response_body_max_chars)
    except (TimeoutError, httpx.TimeoutException):
        response = None
        error = TransientDeliveryError("Request timed out")
    except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
        response = None
        error = PermanentDeliveryError(f"Malformed endpoint: {exc}")
    except httpx.RequestError as exc:
        response = None
        error = TransientDeliveryError(f"{exc.__class__.__name__}: {exc}")

    duration_seconds = perf_counter() - started_at
    observe_webhook_delivery(duration_seconds)
    duration_ms = int(duration_seconds * 1000)

    if response is not None:
        if response.is_success:
            return DeliveryOutcome(
                subscription_id=subscription.id,
                event_id=event.id,
                delivery_id=delivery_id,
                success=True,
                duration_ms=duration_ms,
                status_code=response.status_code,
                response_body=response_body,
                response_headers=dict(response.headers),
            )
        error = classify_status_code(response.status_code, body=response_body)
        return DeliveryOutcome(
            subscription_id=subscription.id,
            event_id=event.id,
            delivery_id=delivery_id,
            success=False,
            duration_ms=duration_ms,
            status_code=response.status_code,
            response_body=response_body,
            response_headers=dict(response.headers),
            error_message=str(error),
            error_code=error.error_code,
        )

    return DeliveryOutcome(
        subscription_id=subscription.id,
        event_id=event.id,
        delivery_id=delivery_id,
        success=False,
        duration_ms=duration_ms,
        error_message=str(error),
        error_code=error.error_code if error is not None else "delivery_error",
    )


def record_delivery_outcome(
    subscription: SubscriptionSnapshot,
    event: EventSnapshot,
    outcome: DeliveryOutcome,
) -> None:
    now = datetime.now(UTC)
    with SessionLocal() as db:
        try:
            if outcome.success:
                record_success(db, tenant_id=event.tenant_id, outcome=outcome, now=now)
            else:
                record_failure(db, tenant_id=event.tenant_id, outcome=outcome, now=now)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception(
                "webhook_delivery_record_failed subscription_id=%s event_id=%s success=%s",
                subscription.id,
                event.id,
                outcome.success,
            )


def mark_deliveries_alive(pairs: list[DeliveryPair]) -> None:
    with SessionLocal() as db:
        try:
            touch_pending_deliveries(
                db,
                keys=[(subscription.id, event.id) for subscription, event in pairs],
                now=datetime.now(UTC),
            )
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("webhook_delivery_keepalive_failed pending=%s", len(pairs))


async def deliver(
    client: httpx.AsyncClient,
    subscription: SubscriptionSnapshot,
    event: EventSnapshot,
    *,
    record_outcome: OutcomeRecorder = record_delivery_outcome,
) -> DeliveryOutcome:
    try:
        outcome = await send_webhook(client, subscription, event)
    except Exception as exc:
        logger.exception("webhook_delivery_unhandled_exception subscription_id=%s", subscription.id)
        outcome = DeliveryOutcome(
            subscription_id=subscription.id,
            event_id=event.id,
            delivery_id=str(uuid4()),
            success=False,
            duration_ms=0,
            error_message=str(exc),
            error_code="unhandled_delivery_exception",
        )

    if outcome.success:
        logger.info(
            "webhook_delivered subscription_id=%s status=%s duration_ms=%s",
            subscription.id,
            outcome.status_code,
            outcome.duration_ms,
        )
    else:
        logger.warning(
            "webhook_delivery_failed subscription_id=%s status=%s error_code=%s error=%s",
            subscription.id,
            outcome.status_code,
            outcome.error_code,
            outcome.error_message,
        )

    # Ledger writes are blocking; keep them off the loop so sibling deliveries proceed.
    await asyncio.to_thread(record_outcome, subscription, event, outcome)
    return outcome


async def deliver_pairs(
    client: httpx.AsyncClient,
    pairs: Iterable[DeliveryPair],
    *,
    record_outcome: OutcomeRecorder = record_delivery_outcome,
    keep_alive: PairHook | None = None,
    max_concurrency: int | None = None,
) -> list[DeliveryOutcome]:
    """Deliver every (subscription, event) pair concurrently behind one shared bound.

    Pairs may belong to different events; no pair waits on another pair's outcome.
    ``keep_alive`` is called for each pair as its attempt starts, and periodically
    for the pairs still queued behind the bound.
    """
    semaphore = asyncio.Semaphore(max_concurrency or settings.webhook_max_concurrent_deliveries)
    pairs = list(pairs)
    queued = set(range(len(pairs)))

    async def _bounded(index: int, subscription: SubscriptionSnapshot, event: EventSnapshot) -> DeliveryOutcome:
        async with semaphore:
            queued.discard(index)
            with webhook_log_context(tenant_id=event.tenant_id, event_id=event.id):
                if keep_alive is not None:
                    await asyncio.to_thread(keep_alive, [(subscription, event)])
                return await deliver(client, subscription, event, record_outcome=record_outcome)

    async def _refresh_queued() -> None:
        while True:
            await asyncio.sleep(settings.webhook_pending_keepalive_seconds)
            waiting = [pairs[index] for index in sorted(queued)]
            if waiting:
                await asyncio.to_thread(keep_alive, waiting)

    refresher = asyncio.create_task(_refresh_queued()) if keep_alive is not None and pairs else None
    try:
        results = await asyncio.gather(
            *(_bounded(index, subscription, event) for index, (subscription, event) in enumerate(pairs)),
            return_exceptions=True,
        )
    finally:
        if refresher is not None:
            refresher.cancel()
            await asyncio.gather(refresher, return_exceptions=True)

    outcomes: list[DeliveryOutcome] = []
    for (subscription, event), result in zip(pairs, results):
        if isinstance(result, BaseException):
            logger.error(
                "webhook_delivery_task_crashed subscription_id=%s event_id=%s error=%s",
                subscription.id,
                event.id,
                result,
            )
            continue
        outcomes.append(result)
    return outcomes


async def deliver_to_subscriptions(
    client: httpx.AsyncClient,
    subscriptions: Iterable[SubscriptionSnapshot],
    event: EventSnapshot,
    *,
    record_outcome: OutcomeRecorder = record_delivery_outcome,
    keep_alive: PairHook | None = None,
    max_concurrency: int | None = None,
) -> list[DeliveryOutcome]:
    return await deliver_pairs(
        client,
        ((subscription, event) for subscription in subscriptions),
        record_outcome=record_outcome,
        keep_alive=keep_alive,
        max_concurrency=max_concurrency,
    )


def load_event_snapshot(event_id: UUID) -> EventSnapshot | None:
    with SessionLocal() as db:
        event = db.execute(select(WebhookEvent).where(WebhookEvent.id == event_id)).scalar_one_or_none()
        return EventSnapshot.from_model(event) if event is not None else None


def _settled_subscription_ids(db: Session, *, event_id: UUID) -> set[UUID]:
    return set(
        db.execute(
            select(WebhookDelivery.subscription_id).where(
                WebhookDelivery.event_id == event_id,
                WebhookDelivery.status != DeliveryStatus.PENDING.value,
            )
        )
        .scalars()
        .all()
    )


def prepare_fan_out(event: EventSnapshot) -> list[SubscriptionSnapshot]:
    """Resolve and filter matching subscriptions, creating their pending delivery rows.

    Subscriptions that already have a settled or retrying delivery for this event
    are skipped, so a redelivered dispatch task does not send twice.
    """
    with SessionLocal() as db:
        candidates = resolve_subscriptions(db, event)
        settled = _settled_subscription_ids(db, event_id=event.id)
        selected = [
            subscription
            for subscription in candidates
            if subscription.id not in settled and passes(subscription, event)
        ]
        for subscription in selected:
            ensure_pending_delivery(
                db,
                tenant_id=event.tenant_id,
                subscription_id=subscription.id,
                event_id=event.id,
            )
        db.commit()
    logger.info(
        "webhook_fan_out_prepared event_type=%s candidates=%s selected=%s",
        event.event_type,
        len(candidates),
        len(selected),
    )
    return selected


async def dispatch_event(event_id: UUID, *, client: httpx.AsyncClient | None = None) -> list[DeliveryOutcome]:
    event = load_event_snapshot(event_id)
    if event is None:
        logger.warning("webhook_dispatch_event_missing event_id=%s", event_id)
        return []

    with webhook_log_context(tenant_id=event.tenant_id, event_id=event.id):
        subscriptions = prepare_fan_out(event)
        if not subscriptions:
            return []
        if client is not None:
            return await deliver_to_subscriptions(
                client, subscriptions, event, keep_alive=mark_deliveries_alive
            )
        async with create_http_client() as owned_client:
            return await deliver_to_subscriptions(
                owned_client, subscriptions, event, keep_alive=mark_deliveries_alive
            )
