from __future__ import annotations

import asyncio
import secrets
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from feblr_sso.config import Settings, get_settings, reset_settings_cache
from feblr_sso.logging import get_logger
from feblr_sso.service.authorization import AuthorizationService
from feblr_sso.service.credentials import CredentialVerifier
from feblr_sso.service.permissions import PermissionResolver
from feblr_sso.service.quota import QuotaGuard
from feblr_sso.service.tickets import TicketIssuer
from feblr_sso.service.tokens import AccessTokenCodec, TokenExchanger
from feblr_sso.storage.local_cache import LocalCache
from feblr_sso.storage.memory import MemoryStore
from feblr_sso.storage.postgres import PostgresStore
from feblr_sso.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _second_factor_key(settings: Settings) -> str:
    key = settings.second_factor_key or settings.jwt_secret
    if key:
        return key
    if settings.test_mode:
        return secrets.token_urlsafe(32)
    raise RuntimeError("SECOND_FACTOR_KEY is required when access tokens are not HMAC-signed")


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        factor_key = _second_factor_key(self.settings)

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore(second_factor_key=factor_key)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    second_factor_key=factor_key,
                    timeout=self.settings.store_timeout_seconds,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, LocalCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url, socket_timeout=self.settings.store_timeout_seconds
                )
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        if self.cache is None:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for tickets and request quotas; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for the in-process fallback."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; tickets and quota "
                    "counters are local to this process."
                ),
                mode=fallback_mode,
            )
            self.cache = LocalCache()

        self.verifier = CredentialVerifier(self.store, self.settings)
        self.permissions = PermissionResolver(self.store)
        self.tickets = TicketIssuer(self.cache, ttl_seconds=self.settings.ticket_ttl_seconds)
        self.codec = AccessTokenCodec(self.settings)
        self.tokens = TokenExchanger(
            self.store, self.tickets, self.verifier, self.codec, self.settings
        )
        self.authorizations = AuthorizationService(
            self.store, self.verifier, self.permissions, self.tickets
        )
        self.quota = QuotaGuard(
            self.cache,
            window_seconds=self.settings.quota_window_seconds,
            default_limit=self.settings.quota_default_limit,
            route_limits=self.settings.quota_route_limits,
            fail_open=self.settings.quota_fail_open,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=isinstance(self.cache, RedisCache),
            jwt_algorithm=self.settings.jwt_algorithm.value,
            quota_window_seconds=self.settings.quota_window_seconds,
        )

    async def shutdown(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()
        logger.info("runtime_shutdown")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists, the slow path re-checks under the lock before creating.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_previous(previous: Runtime) -> None:
    previous.store.close()
    if not isinstance(previous.cache, RedisCache):
        return
    try:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(previous.cache.close())
        else:
            loop.create_task(previous.cache.close())
    except (RedisError, OSError) as exc:
        logger.warning("runtime_cache_close_failed", error=str(exc))


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            _close_previous(runtime)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
