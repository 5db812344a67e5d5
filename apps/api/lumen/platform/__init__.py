from lumen.platform.security.context import AuthContext
from lumen.platform.security.errors import AuthorizationError
from lumen.platform.security.repository import BaseRepository

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "BaseRepository",
]
