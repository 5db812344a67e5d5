from dataclasses import dataclass

from fastapi import Depends
from jose import JWTError, jwt
from starlette.requests import Request

from lumen.context import get_correlation_id
from lumen.core.config import get_settings
from lumen.platform.security.context import AuthContext


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


def _token_from_header(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""


async def get_current_user(request: Request) -> AuthUser:
    """Resolve the caller from an identity-provider issued bearer token.

    Missing or unverifiable tokens resolve to the anonymous guest, which owns
    no subscriptions and holds no roles beyond ``guest``.
    """
    token = _token_from_header(request)
    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    request.state.user_sub = subject
    return AuthUser(sub=subject, roles=[str(role) for role in roles])


def get_auth_context(request: Request, auth_user: AuthUser = Depends(get_current_user)) -> AuthContext:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    roles = [str(item) for item in auth_user.roles]
    normalized = {item.lower() for item in roles}

    return AuthContext(
        user_id=auth_user.sub,
        correlation_id=correlation_id,
        is_super_admin=("admin" in normalized or "system.admin" in normalized),
        roles=roles,
    )
