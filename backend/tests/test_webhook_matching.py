from datetime import UTC, datetime
from uuid import uuid4

import pytest

from eventhooks.application.services.filters import passes, passes_filters, resolve_path, validate_filters
from eventhooks.application.services.matcher import (
    EventSnapshot,
    SubscriptionSnapshot,
    is_valid_event_type,
    is_valid_subscription_pattern,
    subscription_matches,
    wildcard_pattern_for,
)
from eventhooks.core.exceptions import ConfigurationError


def _event(payload: dict, event_type: str = "invoice.paid") -> EventSnapshot:
    return EventSnapshot(
        id=uuid4(),
        tenant_id=uuid4(),
        event_type=event_type,
        source_app="billing",
        payload=payload,
        created_at=datetime.now(UTC),
    )


def _subscription(filters: dict | None = None, event_types: tuple[str, ...] = ("invoice.paid",)) -> SubscriptionSnapshot:
    return SubscriptionSnapshot(
        id=uuid4(),
        tenant_id=uuid4(),
        name="Billing hook",
        event_types=event_types,
        endpoint_url="https://example.test/hook",
        secret="a" * 64,
        status="active",
        max_retries=3,
        retry_delay_seconds=60,
        exponential_backoff=True,
        filters=filters or {},
    )


def test_wildcard_matches_exactly_one_level():
    patterns = ["order.*"]
    assert subscription_matches(patterns, "order.created")
    assert subscription_matches(patterns, "order.shipped")
    assert not subscription_matches(patterns, "orders.created")
    assert not subscription_matches(patterns, "order.created.detail")


def test_exact_pattern_matches_verbatim_only():
    assert subscription_matches(["user.created"], "user.created")
    assert not subscription_matches(["user.created"], "user.updated")
    assert subscription_matches(["user.created", "invoice.*"], "invoice.paid")


def test_wildcard_pattern_for_event_types():
    assert wildcard_pattern_for("order.created") == "order.*"
    assert wildcard_pattern_for("order.created.detail") is None
    assert wildcard_pattern_for("order") is None


def test_event_type_and_pattern_validation():
    assert is_valid_event_type("user.created")
    assert is_valid_event_type("crm.contact.merged")
    assert not is_valid_event_type("user")
    assert not is_valid_event_type("user.*")
    assert not is_valid_event_type("user..created")
    assert is_valid_subscription_pattern("user.*")
    assert is_valid_subscription_pattern("user.created")
    assert not is_valid_subscription_pattern("*")
    assert not is_valid_subscription_pattern("user.*.created")


def test_filters_scalar_equality_and_membership():
    assert passes_filters({"amount": 100}, {"amount": 100})
    assert not passes_filters({"amount": 100}, {"amount": 50})
    assert passes_filters({"currency": ["USD", "EUR"]}, {"currency": "EUR"})
    assert not passes_filters({"currency": ["USD", "EUR"]}, {"currency": "GBP"})


def test_filters_are_conjunctive_and_follow_dotted_paths():
    payload = {"customer": {"tier": "gold", "region": "eu"}, "amount": 100}
    assert passes_filters({"customer.tier": "gold", "amount": 100}, payload)
    assert not passes_filters({"customer.tier": "gold", "amount": 99}, payload)
    assert passes_filters({}, payload)
    assert passes_filters(None, payload)


def test_missing_path_never_matches():
    assert not passes_filters({"customer.tier": "gold"}, {"customer": "gold"})
    assert not passes_filters({"missing": None}, {"amount": 1})
    assert passes_filters({"present": None}, {"present": None})
    assert resolve_path({"a": {"b": 1}}, "a.b") == 1


def test_booleans_do_not_equal_integers():
    assert not passes_filters({"flag": True}, {"flag": 1})
    assert not passes_filters({"count": 1}, {"count": True})
    assert passes_filters({"flag": True}, {"flag": True})


def test_passes_uses_subscription_filters_and_is_pure():
    payload = {"amount": 100}
    event = _event(payload)
    subscription = _subscription({"amount": [100, 200]})

    assert passes(subscription, event) is True
    assert passes(subscription, event) is True
    assert payload == {"amount": 100}
    assert passes(_subscription({"amount": 50}), event) is False


def test_validate_filters_normalizes_and_rejects():
    assert validate_filters(None) == {}
    assert validate_filters({"amount": (100, 200)}) == {"amount": [100, 200]}

    with pytest.raises(ConfigurationError):
        validate_filters(["amount"])
    with pytest.raises(ConfigurationError):
        validate_filters({"customer..tier": "gold"})
    with pytest.raises(ConfigurationError):
        validate_filters({"customer": {"tier": "gold"}})
    with pytest.raises(ConfigurationError):
        validate_filters({"amount": []})
