from collections.abc import Mapping
from typing import Any

from eventhooks.core.exceptions import ConfigurationError

_ABSENT = object()
_COLLECTION_TYPES = (list, tuple, set, frozenset)
_SCALAR_TYPES = (str, int, float, bool, type(None))


def resolve_path(payload: Any, path: str) -> Any:
    current = payload
    for key in path.split("."):
        if not isinstance(current, Mapping) or key not in current:
            return _ABSENT
        current = current[key]
    return current


def _values_equal(left: Any, right: Any) -> bool:
    # JSON keeps booleans and numbers apart; Python's True == 1 must not leak into filters.
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    return left == right


def filter_matches(expected: Any, actual: Any) -> bool:
    if actual is _ABSENT:
        return False
    if isinstance(expected, _COLLECTION_TYPES):
        return any(_values_equal(actual, candidate) for candidate in expected)
    return _values_equal(actual, expected)


def passes_filters(filters: Mapping[str, Any] | None, payload: Mapping[str, Any] | None) -> bool:
    if not filters:
        return True
    for path, expected in filters.items():
        if not filter_matches(expected, resolve_path(payload or {}, path)):
            return False
    return True


def passes(subscription, event) -> bool:
    """Conjunctive payload predicate for one subscription; tenant and type scoping happen in the matcher."""
    return passes_filters(subscription.filters, event.payload)


def validate_filters(filters: Any) -> dict[str, Any]:
    if filters is None:
        return {}
    if not isinstance(filters, Mapping):
        raise ConfigurationError("Filters must be an object mapping payload paths to values")

    normalized: dict[str, Any] = {}
    for path, expected in filters.items():
        if not isinstance(path, str) or not path.strip():
            raise ConfigurationError("Filter keys must be non-empty strings")
        if any(not segment for segment in path.split(".")):
            raise ConfigurationError(f"Filter key '{path}' is not a valid dotted path")
        if isinstance(expected, _COLLECTION_TYPES):
            values = list(expected)
            if not values:
                raise ConfigurationError(f"Filter '{path}' must list at least one value")
            if not all(isinstance(value, _SCALAR_TYPES) for value in values):
                raise ConfigurationError(f"Filter '{path}' may only list scalar values")
            normalized[path] = values
        elif isinstance(expected, _SCALAR_TYPES):
            normalized[path] = expected
        else:
            raise ConfigurationError(f"Filter '{path}' must be a scalar or a list of scalars")
    return normalized
