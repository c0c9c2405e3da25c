"""
Error kinds raised by the Stashvault store.

Every error carries a stable ``kind`` string and a human-readable message so
the HTTP and tool-call layers can map it without parsing text.
"""

from typing import Any, Dict


class VaultError(Exception):
    """Base error with a stable kind, a status code and optional context."""

    kind = "internal_error"
    status_code = 500

    def __init__(self, message: str, **context: Any) -> None:
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the error to a response payload."""
        payload = {"error": self.kind, "message": self.message}
        if self.context:
            payload["details"] = dict(self.context)
        return payload


class ValidationError(VaultError):
    """Malformed or missing required input."""

    kind = "validation_error"
    status_code = 400


class AuthError(VaultError):
    """Missing, invalid or expired credential."""

    kind = "auth_error"
    status_code = 401


class ForbiddenError(VaultError):
    """Valid credential without the required scope."""

    kind = "forbidden"
    status_code = 403


class NotFoundError(VaultError):
    """Unknown stash, version, token or session."""

    kind = "not_found"
    status_code = 404


class ConflictError(VaultError):
    """Concurrent writers collided on the same stash version."""

    kind = "conflict"
    status_code = 409


def format_pydantic_error(error) -> str:
    """Join pydantic error entries into a single ``path: message`` string."""
    parts = []
    for issue in error.errors():
        path = ".".join(str(p) for p in issue.get("loc", ()))
        message = issue.get("msg", "Invalid value")
        parts.append(f"{path}: {message}" if path else message)
    return "; ".join(parts)
