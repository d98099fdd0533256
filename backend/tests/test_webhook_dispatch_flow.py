import asyncio
import os
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import httpx
import pytest
from sqlalchemy import create_engine, select, text, update
from sqlalchemy.orm import sessionmaker

from eventhooks.application.services import delivery_ledger, dispatcher, retry_scheduler
from eventhooks.application.services.delivery_ledger import (
    DeliveryOutcome,
    ensure_pending_delivery,
    record_failure,
    record_success,
)
from eventhooks.application.services.event_store import emit_event
from eventhooks.application.services.matcher import EventSnapshot, SubscriptionSnapshot
from eventhooks.application.services.subscription_registry import create_subscription, reactivate_subscription
from eventhooks.domain import models  # noqa: F401
from eventhooks.domain.models.webhook_delivery import DeliveryStatus, WebhookDelivery
from eventhooks.domain.models.webhook_subscription import SubscriptionStatus, WebhookSubscription
from eventhooks.infrastructure.db.base import Base

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", os.getenv("DATABASE_URL", ""))


@pytest.fixture(scope="session")
def db_engine():
    if not TEST_DATABASE_URL:
        pytest.skip("TEST_DATABASE_URL or DATABASE_URL is required for integration tests")

    try:
        engine = create_engine(TEST_DATABASE_URL, pool_pre_ping=True)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        pytest.skip(f"Database unavailable for integration tests: {exc}")

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session(db_engine, monkeypatch):
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=db_engine)
    monkeypatch.setattr(dispatcher, "SessionLocal", testing_session_local)
    monkeypatch.setattr(retry_scheduler, "SessionLocal", testing_session_local)
    session = testing_session_local()
    try:
        yield session
    finally:
        session.close()


def _subscription(db, tenant_id, *, event_types, endpoint_url, filters=None, retry_config=None):
    subscription = create_subscription(
        db,
        tenant_id=tenant_id,
        app_id="billing-hooks",
        name=endpoint_url,
        event_types=event_types,
        endpoint_url=endpoint_url,
        filters=filters,
        retry_config=retry_config,
    )
    db.commit()
    return subscription


def _event(db, tenant_id, payload, event_type="invoice.paid"):
    return emit_event(
        db,
        tenant_id=tenant_id,
        event_type=event_type,
        source_app="billing",
        payload=payload,
        enqueue=False,
    )


def _failed_outcome(subscription_id, event_id, status_code=500) -> DeliveryOutcome:
    return DeliveryOutcome(
        subscription_id=subscription_id,
        event_id=event_id,
        delivery_id=str(uuid4()),
        success=False,
        duration_ms=12,
        status_code=status_code,
        response_body="upstream error",
        error_message=f"HTTP {status_code}",
        error_code="transient_delivery_error",
    )


def _success_outcome(subscription_id, event_id) -> DeliveryOutcome:
    return DeliveryOutcome(
        subscription_id=subscription_id,
        event_id=event_id,
        delivery_id=str(uuid4()),
        success=True,
        duration_ms=8,
        status_code=200,
        response_body="ok",
    )


def _dispatch(event_id, handler):
    async def _go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await dispatcher.dispatch_event(event_id, client=client)

    return asyncio.run(_go())


def _delivery(db, subscription_id, event_id) -> WebhookDelivery | None:
    db.expire_all()
    return db.execute(
        select(WebhookDelivery).where(
            WebhookDelivery.subscription_id == subscription_id,
            WebhookDelivery.event_id == event_id,
        )
    ).scalar_one_or_none()


def _reload_subscription(db, subscription_id) -> WebhookSubscription:
    db.expire_all()
    return db.execute(select(WebhookSubscription).where(WebhookSubscription.id == subscription_id)).scalar_one()


def test_invoice_paid_fan_out_respects_wildcards_and_filters(db_session):
    tenant_id = uuid4()
    exact = _subscription(db_session, tenant_id, event_types=["invoice.paid"], endpoint_url="https://s1.example.test/hook")
    wildcard = _subscription(
        db_session,
        tenant_id,
        event_types=["invoice.*"],
        endpoint_url="https://s2.example.test/hook",
        filters={"amount": 100},
    )
    hits: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hits.append(request.url.host)
        return httpx.Response(200, text="ok")

    small = _event(db_session, tenant_id, {"amount": 50})
    _dispatch(small.id, handler)
    assert hits == ["s1.example.test"]
    assert _delivery(db_session, exact.id, small.id).status == DeliveryStatus.SUCCESS.value
    assert _delivery(db_session, wildcard.id, small.id) is None

    hits.clear()
    large = _event(db_session, tenant_id, {"amount": 100})
    outcomes = _dispatch(large.id, handler)
    assert sorted(hits) == ["s1.example.test", "s2.example.test"]
    assert all(outcome.success for outcome in outcomes)
    delivery = _delivery(db_session, wildcard.id, large.id)
    assert delivery.status == DeliveryStatus.SUCCESS.value
    assert delivery.attempts == 1
    assert delivery.response_code == 200
    assert _reload_subscription(db_session, exact.id).last_triggered is not None


def test_fan_out_skips_other_tenants_and_inactive_subscriptions(db_session):
    tenant_id = uuid4()
    other = _subscription(db_session, uuid4(), event_types=["user.created"], endpoint_url="https://other.example.test")
    paused = _subscription(db_session, tenant_id, event_types=["user.*"], endpoint_url="https://paused.example.test")
    paused.status = SubscriptionStatus.PAUSED.value
    db_session.commit()
    hits: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hits.append(request.url.host)
        return httpx.Response(200)

    event = _event(db_session, tenant_id, {}, event_type="user.created")
    assert _dispatch(event.id, handler) == []
    assert hits == []
    assert _delivery(db_session, other.id, event.id) is None


def test_redelivered_dispatch_does_not_send_twice(db_session):
    tenant_id = uuid4()
    subscription = _subscription(db_session, tenant_id, event_types=["order.created"], endpoint_url="https://once.example.test")
    event = _event(db_session, tenant_id, {"id": 1}, event_type="order.created")
    hits: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hits.append(request.url.host)
        return httpx.Response(200)

    _dispatch(event.id, handler)
    _dispatch(event.id, handler)
    assert hits == ["once.example.test"]
    assert _delivery(db_session, subscription.id, event.id).attempts == 1


def test_consecutive_failures_back_off_then_fail_subscription(db_session):
    tenant_id = uuid4()
    subscription = _subscription(
        db_session,
        tenant_id,
        event_types=["invoice.paid"],
        endpoint_url="https://flaky.example.test",
        retry_config={"max_retries": 3, "retry_delay": 5, "exponential_backoff": True},
    )
    now = datetime.now(UTC)

    decisions = []
    events = []
    for _ in range(4):
        event = _event(db_session, tenant_id, {"amount": 1})
        events.append(event)
        decisions.append(
            record_failure(db_session, tenant_id=tenant_id, outcome=_failed_outcome(subscription.id, event.id), now=now)
        )
        db_session.commit()

    assert [decision.delay_seconds for decision in decisions[:3]] == [5, 10, 20]
    assert decisions[3].exhausted is True

    reloaded = _reload_subscription(db_session, subscription.id)
    assert reloaded.failure_count == 4
    assert reloaded.status == SubscriptionStatus.FAILED.value

    retrying = _delivery(db_session, subscription.id, events[0].id)
    assert retrying.status == DeliveryStatus.RETRYING.value
    assert retrying.next_retry_at == now + timedelta(seconds=5)
    assert retrying.response_code == 500
    terminal = _delivery(db_session, subscription.id, events[3].id)
    assert terminal.status == DeliveryStatus.FAILED.value
    assert terminal.next_retry_at is None


def test_success_resets_failure_streak_and_is_never_overwritten(db_session):
    tenant_id = uuid4()
    subscription = _subscription(db_session, tenant_id, event_types=["invoice.paid"], endpoint_url="https://recovering.example.test")
    now = datetime.now(UTC)
    first = _event(db_session, tenant_id, {})
    second = _event(db_session, tenant_id, {})

    record_failure(db_session, tenant_id=tenant_id, outcome=_failed_outcome(subscription.id, first.id), now=now)
    record_failure(db_session, tenant_id=tenant_id, outcome=_failed_outcome(subscription.id, second.id), now=now)
    db_session.commit()
    assert _reload_subscription(db_session, subscription.id).failure_count == 2

    record_success(db_session, tenant_id=tenant_id, outcome=_success_outcome(subscription.id, first.id), now=now)
    db_session.commit()
    reloaded = _reload_subscription(db_session, subscription.id)
    assert reloaded.failure_count == 0
    assert reloaded.status == SubscriptionStatus.ACTIVE.value

    record_failure(db_session, tenant_id=tenant_id, outcome=_failed_outcome(subscription.id, first.id), now=now)
    db_session.commit()
    delivery = _delivery(db_session, subscription.id, first.id)
    assert delivery.status == DeliveryStatus.SUCCESS.value
    assert delivery.response_code == 200


def test_claim_skips_succeeded_and_already_claimed_deliveries(db_session):
    tenant_id = uuid4()
    subscription = _subscription(
        db_session,
        tenant_id,
        event_types=["invoice.paid"],
        endpoint_url="https://claims.example.test",
        retry_config={"retry_delay": 5},
    )
    now = datetime.now(UTC)
    retrying_event = _event(db_session, tenant_id, {})
    succeeded_event = _event(db_session, tenant_id, {})
    record_failure(db_session, tenant_id=tenant_id, outcome=_failed_outcome(subscription.id, retrying_event.id), now=now)
    record_failure(db_session, tenant_id=tenant_id, outcome=_failed_outcome(subscription.id, succeeded_event.id), now=now)
    record_success(db_session, tenant_id=tenant_id, outcome=_success_outcome(subscription.id, succeeded_event.id), now=now)
    db_session.commit()

    later = now + timedelta(seconds=30)
    claimed = retry_scheduler.claim_due_deliveries(db_session, now=later, limit=500)
    db_session.commit()
    claimed_events = {item.event_id for item in claimed}
    assert retrying_event.id in claimed_events
    assert succeeded_event.id not in claimed_events
    assert _delivery(db_session, subscription.id, retrying_event.id).status == DeliveryStatus.PENDING.value

    again = retry_scheduler.claim_due_deliveries(db_session, now=later, limit=500)
    db_session.commit()
    assert retrying_event.id not in {item.event_id for item in again}


def test_retry_sweep_redelivers_due_deliveries(db_session):
    tenant_id = uuid4()
    subscription = _subscription(
        db_session,
        tenant_id,
        event_types=["invoice.paid"],
        endpoint_url="https://sweep.example.test",
        retry_config={"retry_delay": 5},
    )
    now = datetime.now(UTC)
    event = _event(db_session, tenant_id, {"amount": 10})
    record_failure(db_session, tenant_id=tenant_id, outcome=_failed_outcome(subscription.id, event.id), now=now)
    db_session.commit()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="recovered")

    async def _go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await retry_scheduler.redispatch_due_deliveries(now=now + timedelta(seconds=6), client=client)

    result = asyncio.run(_go())

    assert result.claimed >= 1
    delivery = _delivery(db_session, subscription.id, event.id)
    assert delivery.status == DeliveryStatus.SUCCESS.value
    assert delivery.attempts == 2
    assert delivery.response_body == "recovered"
    assert _reload_subscription(db_session, subscription.id).failure_count == 0


def test_retry_sweep_abandons_deliveries_of_paused_subscriptions(db_session):
    tenant_id = uuid4()
    subscription = _subscription(
        db_session,
        tenant_id,
        event_types=["invoice.paid"],
        endpoint_url="https://paused-sweep.example.test",
        retry_config={"retry_delay": 5},
    )
    now = datetime.now(UTC)
    event = _event(db_session, tenant_id, {})
    record_failure(db_session, tenant_id=tenant_id, outcome=_failed_outcome(subscription.id, event.id), now=now)
    subscription.status = SubscriptionStatus.PAUSED.value
    db_session.commit()

    hits: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hits.append(request.url.host)
        return httpx.Response(200)

    async def _go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await retry_scheduler.redispatch_due_deliveries(now=now + timedelta(seconds=6), client=client)

    result = asyncio.run(_go())

    assert result.abandoned >= 1
    assert "paused-sweep.example.test" not in hits
    delivery = _delivery(db_session, subscription.id, event.id)
    assert delivery.status == DeliveryStatus.FAILED.value
    assert delivery.error_message == "Subscription is paused"


def test_failing_again_after_reactivation_reports_the_transition(db_session, monkeypatch):
    counted: list[str] = []
    monkeypatch.setattr(delivery_ledger, "increment_background_counter", counted.append)
    tenant_id = uuid4()
    subscription = _subscription(
        db_session,
        tenant_id,
        event_types=["invoice.paid"],
        endpoint_url="https://relapse.example.test",
        retry_config={"max_retries": 1, "retry_delay": 5},
    )
    now = datetime.now(UTC)

    for _ in range(2):
        event = _event(db_session, tenant_id, {})
        record_failure(db_session, tenant_id=tenant_id, outcome=_failed_outcome(subscription.id, event.id), now=now)
        db_session.commit()
    assert _reload_subscription(db_session, subscription.id).status == SubscriptionStatus.FAILED.value
    assert counted.count("webhook_subscriptions_failed_total") == 1

    reactivate_subscription(db_session, tenant_id=tenant_id, subscription_id=subscription.id)
    db_session.commit()

    event = _event(db_session, tenant_id, {})
    decision = record_failure(
        db_session, tenant_id=tenant_id, outcome=_failed_outcome(subscription.id, event.id), now=now
    )
    db_session.commit()

    reloaded = _reload_subscription(db_session, subscription.id)
    assert decision.exhausted is True
    assert reloaded.failure_count == 3
    assert reloaded.status == SubscriptionStatus.FAILED.value
    assert counted.count("webhook_subscriptions_failed_total") == 2

    # Already failed: another failure does not report a second transition.
    event = _event(db_session, tenant_id, {})
    record_failure(db_session, tenant_id=tenant_id, outcome=_failed_outcome(subscription.id, event.id), now=now)
    db_session.commit()
    assert counted.count("webhook_subscriptions_failed_total") == 2


def test_pending_rows_kept_alive_are_not_reclaimed_as_stale(db_session):
    tenant_id = uuid4()
    queued = _subscription(db_session, tenant_id, event_types=["invoice.paid"], endpoint_url="https://queued.example.test")
    orphaned = _subscription(db_session, tenant_id, event_types=["invoice.paid"], endpoint_url="https://orphan.example.test")
    event = _event(db_session, tenant_id, {})
    for subscription in (queued, orphaned):
        ensure_pending_delivery(db_session, tenant_id=tenant_id, subscription_id=subscription.id, event_id=event.id)
    long_ago = datetime.now(UTC) - timedelta(hours=1)
    db_session.execute(
        update(WebhookDelivery).where(WebhookDelivery.event_id == event.id).values(updated_at=long_ago)
    )
    db_session.commit()

    dispatcher.mark_deliveries_alive([(SubscriptionSnapshot.from_model(queued), EventSnapshot.from_model(event))])

    claimed = retry_scheduler.claim_due_deliveries(db_session, now=datetime.now(UTC), limit=500)
    db_session.commit()
    claimed_subscriptions = {item.subscription_id for item in claimed if item.event_id == event.id}
    assert claimed_subscriptions == {orphaned.id}
