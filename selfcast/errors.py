"""Error types for Selfcast.

Every error carries the HTTP status it maps to so the API layer can turn
any of them into a JSON response without a lookup table.

Key classes:
- SelfcastError: Base class for all Selfcast errors.
- Unauthorized / AuthenticationError: Identity problems.
- NotFound / ConflictError / ValidationError: Caller mistakes.
- StoreFailure / RegenerationFailure: Recoverable I/O failures.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .revalidation import RevalidationOutcome


class SelfcastError(Exception):
    """Base error for all Selfcast operations.

    Attributes:
        message: Human-readable error message.
        status: HTTP status code used by the API layer.
    """

    status = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"message": self.message}


class AuthenticationError(SelfcastError):
    """No identity could be established for the request."""

    status = 401


class Unauthorized(SelfcastError):
    """The caller lacks rights to the target project or path."""

    status = 403


class NotFound(SelfcastError):
    """Unknown project."""

    status = 404


class ConflictError(SelfcastError):
    """A project with the same identifier already exists."""

    status = 409


class ValidationError(SelfcastError):
    """Malformed content items or request payload.

    Attributes:
        errors: Optional mapping of field name to error message.
    """

    status = 400

    def __init__(self, message: str, errors: dict[str, str] | None = None):
        super().__init__(message)
        self.errors = dict(errors or {})

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.errors:
            payload["errors"] = self.errors
        return payload


class ConfigError(SelfcastError):
    """Invalid or missing configuration."""


class StoreFailure(SelfcastError):
    """Persistence I/O failed; the caller may retry.

    Attributes:
        original_error: The underlying exception, if any.
    """

    def __init__(self, message: str, original_error: Exception | None = None):
        super().__init__(message)
        self.original_error = original_error


class RegenerationFailure(SelfcastError):
    """The render boundary failed to regenerate a path.

    The last revalidated fingerprint is left untouched, so the next save
    retries automatically.

    Attributes:
        path: Path whose regeneration failed.
        outcome: Trigger outcome, when raised by the trigger.
    """

    def __init__(
        self,
        message: str,
        path: str = "",
        outcome: RevalidationOutcome | None = None,
    ):
        super().__init__(message)
        self.path = path
        self.outcome = outcome
