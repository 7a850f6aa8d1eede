from __future__ import annotations

from typing import Any, Mapping, Optional


class ServiceError(Exception):
    """Failure raised by the auth services and rendered as ``{error, code, details}``.

    ``status_code`` and ``error_code`` are class defaults; ``detail`` becomes
    the ``details`` object of the response body.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[Mapping[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})
        if error_code is not None:
            self.error_code = error_code


class ValidationError(ServiceError):
    """Input rejected (400)."""


class BadRequestError(ValidationError):
    """Well-formed request the account's current state cannot satisfy (400)."""

    error_code = "bad_request"


class AuthenticationError(ServiceError):
    """Credentials, tokens or codes rejected (401).

    Messages never say which check failed.
    """

    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Caller is known but the operation is not open to this account (403)."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Resource absent or not owned by the caller (404)."""

    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Mutation lost to state that already changed (409).

    ``current`` is the latest known state and is returned as
    ``details.current``.
    """

    status_code = 409
    error_code = "conflict"

    def __init__(
        self,
        message: str,
        *,
        current: Optional[Mapping[str, Any]] = None,
        detail: Optional[Mapping[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message, detail=detail, error_code=error_code)
        if current is not None:
            self.detail["current"] = dict(current)
        self.current = self.detail.get("current")


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"
