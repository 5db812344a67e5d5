from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class AuthContext:
    """Caller identity used by ownership scoping and lifecycle log metadata."""

    user_id: str
    correlation_id: str | None = None
    is_super_admin: bool = False
    roles: list[str] = field(default_factory=list)

    @classmethod
    def system(cls, correlation_id: str | None = None) -> AuthContext:
        return cls(user_id="system.lifecycle", correlation_id=correlation_id, is_super_admin=True, roles=["system"])
