from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from feblr_sso.api.error_handling import register_exception_handlers
from feblr_sso.api.middleware import QuotaMiddleware
from feblr_sso.api.routes import extract_bearer, router
from feblr_sso.config import get_settings
from feblr_sso.logging import get_logger, set_correlation_id
from feblr_sso.service.errors import SsoError
from feblr_sso.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime eagerly so configuration errors surface at startup."""
    runtime = get_runtime()
    logger.info("app_started", version=__version__)
    yield
    await runtime.shutdown()


def _bearer_identity(request: Request) -> Optional[str]:
    token = extract_bearer(request.headers.get("authorization"))
    if token is None:
        return None
    try:
        claims = get_runtime().tokens.verify_access_token(token)
    except SsoError:
        # An invalid token counts against the anonymous fingerprint
        return None
    return f"account:{claims.sub}"


def _quota_guard():
    return get_runtime().quota


app = FastAPI(title="Feblr SSO", version=__version__, lifespan=lifespan)

app.add_middleware(
    QuotaMiddleware,
    guard_provider=_quota_guard,
    identity_resolver=_bearer_identity,
    exempt_paths=get_settings().quota_exempt_paths,
)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Tickets and tokens must never sit in a shared cache
    response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault("Pragma", "no-cache")
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with X-Request-ID (client-supplied or new)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> JSONResponse:
    """Probe the durable and fast stores."""
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    cache_ok = await _run_bounded("cache", runtime.cache.verify_connection)
    checks["cache"] = {
        "status": "healthy" if cache_ok else "unhealthy",
        "type": type(runtime.cache).__name__,
    }

    healthy = db_ok and cache_ok
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "healthy" if healthy else "unhealthy", "checks": checks},
    )


def create_app() -> FastAPI:
    return app
