from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
_tenant_id_ctx: ContextVar[str | None] = ContextVar("tenant_id", default=None)
_event_id_ctx: ContextVar[str | None] = ContextVar("event_id", default=None)


def set_request_id(request_id: str | None) -> object:
    return _request_id_ctx.set(request_id)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


def reset_request_id(token: object) -> None:
    _request_id_ctx.reset(token)


def set_tenant_id(tenant_id: str | None) -> object:
    return _tenant_id_ctx.set(tenant_id)


def get_tenant_id() -> str | None:
    return _tenant_id_ctx.get()


def reset_tenant_id(token: object) -> None:
    _tenant_id_ctx.reset(token)


def get_event_id() -> str | None:
    return _event_id_ctx.get()


@contextmanager
def webhook_log_context(*, tenant_id: object | None, event_id: object | None) -> Iterator[None]:
    """Bind tenant and event ids for log records emitted inside worker code."""
    tenant_token = _tenant_id_ctx.set(str(tenant_id) if tenant_id is not None else None)
    event_token = _event_id_ctx.set(str(event_id) if event_id is not None else None)
    try:
        yield
    finally:
        _event_id_ctx.reset(event_token)
        _tenant_id_ctx.reset(tenant_token)
