from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Every failure the identity provider can report to a caller."""

    VALIDATION = "validation_error"
    BAD_CREDENTIAL = "bad_credential"
    ACCOUNT_NOT_FOUND = "account_not_found"
    SECOND_FACTOR_REQUIRED = "second_factor_required"
    BAD_SECOND_FACTOR = "bad_second_factor"
    REFRESH_REVOKED = "refresh_revoked"
    INVALID_ACCESS_TOKEN = "invalid_access_token"
    INVALID_CLIENT = "invalid_client"
    ACCOUNT_DISABLED = "account_disabled"
    INSUFFICIENT_SCOPE = "insufficient_scope"
    APPLICATION_MISMATCH = "application_mismatch"
    TICKET_NOT_FOUND = "ticket_not_found"
    QUOTA_EXCEEDED = "quota_exceeded"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    INTERNAL = "internal_error"


class SsoError(Exception):
    """Base class for failures that are rendered as an error body.

    Subclasses pin ``kind``; the HTTP status, errno and public message come
    from the translation table in ``feblr_sso.api.error_handling`` so the
    service layer never decides what a caller gets to see. ``message`` and
    ``detail`` are for logs only.
    """

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(
        self,
        message: str = "",
        *,
        field: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message or self.kind.value)
        self.message = message or self.kind.value
        self.field = field
        self.detail = detail or {}


class ValidationError(SsoError):
    """Malformed input (400)."""

    kind = ErrorKind.VALIDATION


class BadCredential(SsoError):
    kind = ErrorKind.BAD_CREDENTIAL


class AccountNotFound(SsoError):
    """Unknown account; rendered exactly like BadCredential."""

    kind = ErrorKind.ACCOUNT_NOT_FOUND


class SecondFactorRequired(SsoError):
    kind = ErrorKind.SECOND_FACTOR_REQUIRED


class BadSecondFactor(SsoError):
    kind = ErrorKind.BAD_SECOND_FACTOR


class RefreshRevoked(SsoError):
    """Refresh token is unknown, expired, revoked or already rotated."""

    kind = ErrorKind.REFRESH_REVOKED


class InvalidAccessToken(SsoError):
    kind = ErrorKind.INVALID_ACCESS_TOKEN


class InvalidClient(SsoError):
    """Application id unknown or client secret wrong."""

    kind = ErrorKind.INVALID_CLIENT


class AccountDisabled(SsoError):
    kind = ErrorKind.ACCOUNT_DISABLED


class InsufficientScope(SsoError):
    kind = ErrorKind.INSUFFICIENT_SCOPE


class ApplicationMismatch(SsoError):
    kind = ErrorKind.APPLICATION_MISMATCH


class TicketNotFound(SsoError):
    """Ticket missing, expired or already consumed."""

    kind = ErrorKind.TICKET_NOT_FOUND


class QuotaExceeded(SsoError):
    kind = ErrorKind.QUOTA_EXCEEDED

    def __init__(
        self,
        message: str = "",
        *,
        limit: int,
        retry_after: int,
        route: Optional[str] = None,
    ) -> None:
        super().__init__(message, detail={"limit": limit, "route": route})
        self.limit = limit
        self.retry_after = retry_after
        self.route = route


class StorageUnavailable(SsoError):
    """Durable or fast store unreachable, timed out or refused the operation."""

    kind = ErrorKind.STORAGE_UNAVAILABLE


class InternalError(SsoError):
    kind = ErrorKind.INTERNAL


__all__ = [
    "ErrorKind",
    "SsoError",
    "ValidationError",
    "BadCredential",
    "AccountNotFound",
    "SecondFactorRequired",
    "BadSecondFactor",
    "RefreshRevoked",
    "InvalidAccessToken",
    "InvalidClient",
    "AccountDisabled",
    "InsufficientScope",
    "ApplicationMismatch",
    "TicketNotFound",
    "QuotaExceeded",
    "StorageUnavailable",
    "InternalError",
]
