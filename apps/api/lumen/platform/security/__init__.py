from lumen.platform.security.context import AuthContext
from lumen.platform.security.errors import AuthorizationError
from lumen.platform.security.repository import BaseRepository
from lumen.platform.security.rls import apply_owner_filter, is_admin_bypass, require_admin, validate_owner_scope

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "BaseRepository",
    "apply_owner_filter",
    "is_admin_bypass",
    "require_admin",
    "validate_owner_scope",
]
