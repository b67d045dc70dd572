"""Request context management using contextvars.

Each request carries a request id plus the caller's user and tenant ids.
Values are read by the logging processors, so every log line emitted while
serving a request (including those from the progress service) is tagged
with them without passing parameters explicitly.
"""

from contextvars import ContextVar, Token
from typing import Any
from uuid import UUID, uuid4


request_id_var: ContextVar[str] = ContextVar("request_id", default="")
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
tenant_id_var: ContextVar[str | None] = ContextVar("tenant_id", default=None)
correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)

_OPTIONAL_VARS: dict[str, ContextVar[str | None]] = {
    "user_id": user_id_var,
    "tenant_id": tenant_id_var,
    "correlation_id": correlation_id_var,
}


def generate_request_id() -> str:
    """Generate a new unique request ID."""
    return str(uuid4())


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


def set_request_id(request_id: str | None = None) -> str:
    """Set the request ID for the current context.

    Args:
        request_id: Optional request ID. If not provided, generates a new one.

    Returns:
        The request ID that was set.
    """
    rid = request_id or generate_request_id()
    request_id_var.set(rid)
    return rid


def _as_str(value: str | UUID | None) -> str | None:
    return str(value) if value is not None else None


def get_user_id() -> str | None:
    """Get the current user ID."""
    return user_id_var.get()


def set_user_id(user_id: str | UUID | None) -> None:
    """Set the user ID for the current context."""
    user_id_var.set(_as_str(user_id))


def get_tenant_id() -> str | None:
    """Get the current tenant ID."""
    return tenant_id_var.get()


def set_tenant_id(tenant_id: str | UUID | None) -> None:
    """Set the tenant ID for the current context."""
    tenant_id_var.set(_as_str(tenant_id))


def get_correlation_id() -> str | None:
    """Get the current correlation ID."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: str | None) -> None:
    """Set the correlation ID for the current context."""
    correlation_id_var.set(correlation_id)


def get_context() -> dict[str, Any]:
    """Get all populated context variables as a dictionary."""
    context: dict[str, Any] = {}

    request_id = get_request_id()
    if request_id:
        context["request_id"] = request_id

    for name, var in _OPTIONAL_VARS.items():
        value = var.get()
        if value:
            context[name] = value

    return context


def clear_context() -> None:
    """Clear all context variables.

    Called at the end of each request so values never leak between requests.
    """
    request_id_var.set("")
    for var in _OPTIONAL_VARS.values():
        var.set(None)


class RequestContext:
    """Context manager for work outside an HTTP request (workers, scripts).

    Usage:
        with RequestContext(user_id=..., tenant_id=...):
            logger.info("certificate_issued")  # tagged with both ids
    """

    def __init__(
        self,
        request_id: str | None = None,
        user_id: str | UUID | None = None,
        tenant_id: str | UUID | None = None,
        correlation_id: str | None = None,
    ) -> None:
        self.request_id = request_id
        self.values = {
            "user_id": _as_str(user_id),
            "tenant_id": _as_str(tenant_id),
            "correlation_id": correlation_id,
        }
        self._tokens: list[tuple[ContextVar, Token]] = []

    def __enter__(self) -> "RequestContext":
        self._tokens.append(
            (request_id_var, request_id_var.set(self.request_id or generate_request_id()))
        )
        for name, value in self.values.items():
            if value is not None:
                var = _OPTIONAL_VARS[name]
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, *_: object) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()
