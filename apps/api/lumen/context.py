"""Context variables shared by request handling, logging and event envelopes.

The correlation id is bound once per HTTP request by the correlation-id
middleware. The actor and operation are bound around each lifecycle operation
so that every log line emitted inside it names who did what.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
actor_var: ContextVar[str | None] = ContextVar("actor", default=None)
operation_var: ContextVar[str | None] = ContextVar("operation", default=None)

LOG_CONTEXT_KEYS = ("correlation_id", "actor", "operation")


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


@contextmanager
def bind_operation(operation: str, actor: str | None) -> Iterator[None]:
    operation_token = operation_var.set(operation)
    actor_token = actor_var.set(actor)
    try:
        yield
    finally:
        actor_var.reset(actor_token)
        operation_var.reset(operation_token)


def get_log_context() -> dict[str, str | None]:
    return {
        "correlation_id": correlation_id_var.get(),
        "actor": actor_var.get(),
        "operation": operation_var.get(),
    }
