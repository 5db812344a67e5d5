from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from lumen.platform.security.context import AuthContext
from lumen.platform.security.rls import apply_owner_filter, require_admin, validate_owner_scope


class BaseRepository:
    resource = ""

    def apply_scope_query(self, query: Select[Any], ctx: AuthContext) -> Select[Any]:
        return apply_owner_filter(query, self.resource, ctx)

    def validate_read_scope(self, ctx: AuthContext, *, owner_id: str | None, action: str = "read") -> None:
        validate_owner_scope(self.resource, ctx, owner_id=owner_id, action=action)

    def validate_write_scope(self, ctx: AuthContext, *, owner_id: str | None, action: str = "write") -> None:
        validate_owner_scope(self.resource, ctx, owner_id=owner_id, action=action)

    def validate_admin_write(self, ctx: AuthContext, *, action: str = "write") -> None:
        require_admin(self.resource, ctx, action=action)
