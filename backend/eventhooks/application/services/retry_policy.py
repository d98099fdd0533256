from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from eventhooks.core.config import settings
from eventhooks.core.exceptions import ConfigurationError

MAX_RETRIES_UPPER_BOUND = 50
MAX_RETRY_DELAY_SECONDS = 86400


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int
    retry_delay_seconds: int
    exponential_backoff: bool

    @classmethod
    def from_subscription(cls, subscription) -> "RetryPolicy":
        return cls(
            max_retries=int(subscription.max_retries),
            retry_delay_seconds=int(subscription.retry_delay_seconds),
            exponential_backoff=bool(subscription.exponential_backoff),
        )


@dataclass(frozen=True)
class FailureDecision:
    failure_count: int
    exhausted: bool
    delay_seconds: int | None = None
    next_retry_at: datetime | None = None


def default_retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.webhook_default_max_retries,
        retry_delay_seconds=settings.webhook_default_retry_delay_seconds,
        exponential_backoff=settings.webhook_default_exponential_backoff,
    )


def validate_retry_config(raw: Mapping[str, Any] | None, *, base: RetryPolicy | None = None) -> RetryPolicy:
    """Merge a partial ``{max_retries, retry_delay, exponential_backoff}`` object over ``base``."""
    policy = base or default_retry_policy()
    if raw is None:
        return policy
    if not isinstance(raw, Mapping):
        raise ConfigurationError("retry_config must be an object")

    max_retries = raw.get("max_retries", policy.max_retries)
    retry_delay = raw.get("retry_delay", policy.retry_delay_seconds)
    exponential_backoff = raw.get("exponential_backoff", policy.exponential_backoff)

    if isinstance(max_retries, bool) or not isinstance(max_retries, int) or not 0 <= max_retries <= MAX_RETRIES_UPPER_BOUND:
        raise ConfigurationError(f"retry_config.max_retries must be an integer between 0 and {MAX_RETRIES_UPPER_BOUND}")
    if isinstance(retry_delay, bool) or not isinstance(retry_delay, int) or not 1 <= retry_delay <= MAX_RETRY_DELAY_SECONDS:
        raise ConfigurationError(f"retry_config.retry_delay must be an integer between 1 and {MAX_RETRY_DELAY_SECONDS}")
    if not isinstance(exponential_backoff, bool):
        raise ConfigurationError("retry_config.exponential_backoff must be a boolean")

    return RetryPolicy(
        max_retries=max_retries,
        retry_delay_seconds=retry_delay,
        exponential_backoff=exponential_backoff,
    )


def compute_retry_delay_seconds(policy: RetryPolicy, failure_count: int) -> int:
    normalized = max(1, failure_count)
    if not policy.exponential_backoff:
        return policy.retry_delay_seconds
    return policy.retry_delay_seconds * (2 ** (normalized - 1))


def decide_after_failure(policy: RetryPolicy, failure_count: int, *, now: datetime) -> FailureDecision:
    """``failure_count`` is the subscription's streak after counting the failure being handled."""
    if failure_count > policy.max_retries:
        return FailureDecision(failure_count=failure_count, exhausted=True)
    delay_seconds = compute_retry_delay_seconds(policy, failure_count)
    return FailureDecision(
        failure_count=failure_count,
        exhausted=False,
        delay_seconds=delay_seconds,
        next_retry_at=now + timedelta(seconds=delay_seconds),
    )
