from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.sql import Select

from lumen.metrics import observe_scope_denied
from lumen.platform.security.context import AuthContext
from lumen.platform.security.errors import AuthorizationError

logger = logging.getLogger("lumen.security")

_OWNER_ALIASES = ("user_id", "owner_id")


def is_admin_bypass(ctx: AuthContext) -> bool:
    if ctx.is_super_admin:
        return True
    role_set = {item.lower() for item in ctx.roles}
    return "admin" in role_set or "system.admin" in role_set


def apply_owner_filter(query: Select[Any], resource: str, ctx: AuthContext) -> Select[Any]:
    """Restrict a query to rows owned by the caller for models exposing a user_id column."""

    if is_admin_bypass(ctx):
        return query

    for description in query.column_descriptions:
        model = description.get("entity")
        if model is None:
            continue
        for alias in _OWNER_ALIASES:
            if hasattr(model, alias):
                query = query.where(getattr(model, alias) == ctx.user_id)
                break

    return query


def validate_owner_scope(resource: str, ctx: AuthContext, *, owner_id: str | None, action: str = "read") -> None:
    """Validate that a record loaded by id belongs to the caller."""

    if is_admin_bypass(ctx):
        return
    if owner_id is not None and owner_id == ctx.user_id:
        return

    _emit_scope_denied(resource=resource, action=action, ctx=ctx)
    raise AuthorizationError(f"Out-of-scope record for resource '{resource}'", resource=resource)


def require_admin(resource: str, ctx: AuthContext, *, action: str) -> None:
    if is_admin_bypass(ctx):
        return

    _emit_scope_denied(resource=resource, action=action, ctx=ctx)
    raise AuthorizationError(f"Admin role required to {action} '{resource}'", resource=resource)


def _emit_scope_denied(*, resource: str, action: str, ctx: AuthContext) -> None:
    observe_scope_denied(resource=resource, operation=action)
    logger.warning(
        "security.scope_denied",
        extra={"action": action, "resource": resource, "user_id": ctx.user_id},
    )
