"""
core/errors.py -- Error kinds shared by the auth subsystem and the API layer.

Every failure the auth subsystem reports is one of five kinds:

  ValidationError      malformed or empty input; message is safe to expose.
  UnauthorizedError    bad credential, bad/expired/revoked token, bad signature.
  ConflictError        duplicate refresh-token string.
  NotFoundError        lookup miss (used internally; never leaks out of Login).
  InternalServerError  hashing, signing or storage failure.

Each class carries an HTTP status_code and a stable error_code so the API layer
can translate any ServiceError into the JSON error envelope without a lookup
table. `context` holds diagnostic key/values for logs only -- it is never sent
to the client.

Layer rule: core/ is the kernel. No imports from api/ or auth/.
"""

from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for auth-subsystem errors mapped to HTTP responses."""

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(self, message: str, *, context: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def with_context(self, **context: Any) -> "ServiceError":
        """Attach diagnostic key/values and return self, for `raise err.with_context(...)`."""
        self.context.update(context)
        return self


class ValidationError(ServiceError):
    """Caller supplied empty or malformed input (400)."""

    status_code = 400
    error_code = "validation_error"


class UnauthorizedError(ServiceError):
    """Credential or token rejected (401)."""

    status_code = 401
    error_code = "unauthorized"


class PermissionDeniedError(UnauthorizedError):
    """Authenticated, but the role gate did not match (403).

    Still an UnauthorizedError so callers that only distinguish the coarse
    kinds treat it like any other authorization failure.
    """

    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Lookup miss (404)."""

    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Uniqueness violation, e.g. a refresh token stored twice (409)."""

    status_code = 409
    error_code = "conflict"


class InternalServerError(ServiceError):
    """System failure: hashing, signing or storage I/O (500)."""

    status_code = 500
    error_code = "server_error"


class OperationCancelledError(InternalServerError):
    """The caller's cancel token fired before the operation finished."""

    status_code = 499
    error_code = "cancelled"


__all__ = [
    "ConflictError",
    "InternalServerError",
    "NotFoundError",
    "OperationCancelledError",
    "PermissionDeniedError",
    "ServiceError",
    "UnauthorizedError",
    "ValidationError",
]
