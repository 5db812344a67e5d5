from __future__ import annotations


class AuthorizationError(Exception):
    """Raised when a caller acts outside its ownership scope."""

    code = "forbidden"
    status_code = 403

    def __init__(self, message: str, *, resource: str | None = None) -> None:
        self.message = message
        self.resource = resource
        super().__init__(message)
