from __future__ import annotations

from typing import Dict, NamedTuple, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from feblr_sso.api.schemas import ErrorBody
from feblr_sso.logging import get_logger
from feblr_sso.service.errors import ErrorKind, QuotaExceeded, SsoError

logger = get_logger(__name__)


class ErrorRendering(NamedTuple):
    status_code: int
    errno: str
    errmsg: str
    expose_field: bool = False


# What a caller sees for each failure kind. Kinds sharing a rendering are
# indistinguishable on the wire.
ERROR_TABLE: Dict[ErrorKind, ErrorRendering] = {
    ErrorKind.VALIDATION: ErrorRendering(400, "40000000", "invalid parameter", True),
    ErrorKind.BAD_CREDENTIAL: ErrorRendering(401, "40100001", "invalid credentials"),
    ErrorKind.ACCOUNT_NOT_FOUND: ErrorRendering(401, "40100001", "invalid credentials"),
    ErrorKind.SECOND_FACTOR_REQUIRED: ErrorRendering(401, "40100002", "second factor required"),
    ErrorKind.BAD_SECOND_FACTOR: ErrorRendering(401, "40100003", "invalid second factor"),
    ErrorKind.REFRESH_REVOKED: ErrorRendering(401, "40100004", "refresh token is invalid"),
    ErrorKind.INVALID_ACCESS_TOKEN: ErrorRendering(401, "40100005", "invalid access token"),
    ErrorKind.INVALID_CLIENT: ErrorRendering(401, "40100006", "invalid client credentials"),
    ErrorKind.ACCOUNT_DISABLED: ErrorRendering(403, "40300001", "account is disabled"),
    ErrorKind.INSUFFICIENT_SCOPE: ErrorRendering(
        403, "40300002", "requested scope is not permitted"
    ),
    ErrorKind.APPLICATION_MISMATCH: ErrorRendering(
        403, "40300003", "ticket was not issued to this application"
    ),
    ErrorKind.TICKET_NOT_FOUND: ErrorRendering(404, "40400001", "ticket not found"),
    ErrorKind.QUOTA_EXCEEDED: ErrorRendering(429, "42900001", "reach quota limit"),
    ErrorKind.INTERNAL: ErrorRendering(500, "50000000", "internal server error"),
    ErrorKind.STORAGE_UNAVAILABLE: ErrorRendering(503, "50300001", "internal server error"),
}

_unmapped = set(ErrorKind) - set(ERROR_TABLE)
if _unmapped:
    raise RuntimeError(
        "error kinds without a rendering: {}".format(", ".join(sorted(k.value for k in _unmapped)))
    )

_LOCATION_PREFIXES = {"body", "query", "path", "header", "cookie"}


def _error_response(
    status_code: int,
    errno: str,
    errmsg: str,
    *,
    field: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    body = ErrorBody(errno=errno, errmsg=errmsg, field=field)
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(exclude_none=True),
        headers=headers,
    )


def render_error(exc: SsoError) -> JSONResponse:
    rendering = ERROR_TABLE[exc.kind]
    headers: Optional[Dict[str, str]] = None
    if isinstance(exc, QuotaExceeded):
        headers = {
            "Retry-After": str(exc.retry_after),
            "X-RateLimit-Limit": str(exc.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(exc.retry_after),
        }
    return _error_response(
        rendering.status_code,
        rendering.errno,
        rendering.errmsg,
        field=exc.field if rendering.expose_field else None,
        headers=headers,
    )


def log_error(request_method: str, path: str, exc: SsoError) -> None:
    """Log the real failure kind; the response body may hide it."""
    status_code = ERROR_TABLE[exc.kind].status_code
    log_fn = logger.error if status_code >= 500 else logger.warning
    log_fn(
        "request_failed",
        path=path,
        method=request_method,
        status_code=status_code,
        kind=exc.kind.value,
        message=exc.message,
        detail=exc.detail,
    )


def _field_from_location(loc) -> Optional[str]:
    parts = [str(p) for p in loc if not isinstance(p, int)]
    if parts and parts[0] in _LOCATION_PREFIXES:
        parts = parts[1:]
    return ".".join(parts) or None


def register_exception_handlers(app: FastAPI) -> None:
    """Render every failure as an errno/errmsg body."""

    @app.exception_handler(SsoError)
    async def handle_sso_error(request: Request, exc: SsoError):
        log_error(request.method, request.url.path, exc)
        return render_error(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        field = _field_from_location(errors[0].get("loc", ())) if errors else None
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            field=field,
            error_count=len(errors),
        )
        rendering = ERROR_TABLE[ErrorKind.VALIDATION]
        return _error_response(
            rendering.status_code, rendering.errno, rendering.errmsg, field=field
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        errmsg = exc.detail if isinstance(exc.detail, str) else "http error"
        return _error_response(
            exc.status_code,
            f"{exc.status_code}00000",
            errmsg.lower(),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        rendering = ERROR_TABLE[ErrorKind.INTERNAL]
        return _error_response(rendering.status_code, rendering.errno, rendering.errmsg)
