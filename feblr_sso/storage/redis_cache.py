from __future__ import annotations

import hashlib
import json
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError, ResponseError

from feblr_sso.logging import get_logger
from feblr_sso.storage.errors import StorageUnavailable

logger = get_logger(__name__)

TICKET_PREFIX = "ticket:"


def quota_key(identity: str, route: str, window_start: int) -> str:
    """Collision-resistant counter key for one identity, route and window.

    The subject is hashed so neither delimiters in the route template nor
    client-controlled identity text can alias another counter.
    """
    subject = json.dumps([identity, route], separators=(",", ":"))
    digest = hashlib.sha256(subject.encode()).hexdigest()
    return f"quota:{digest}:{window_start}"


def _decode_ticket(code: str, raw: Optional[str]) -> Optional[dict]:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        # Already deleted; an unreadable ticket is as good as a missing one
        logger.error("ticket_payload_corrupt", ticket_code=code)
        return None


class RedisCache:
    """Fast store for tickets and quota counters."""

    # Counter expiry is only set by the increment that creates the key
    _WINDOW_COUNTER_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = redis.call('TTL', KEYS[1])
if count == 1 or ttl < 0 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    _POP_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 2.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._window_counter = self.client.register_script(self._WINDOW_COUNTER_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving traffic."""
        # Short-lived synchronous client so the async pool is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def put_ticket(self, code: str, payload: dict, ttl_seconds: int) -> bool:
        """Store a ticket only if the code is unused. Returns False on collision."""
        try:
            stored = await self.client.set(
                f"{TICKET_PREFIX}{code}", json.dumps(payload), ex=ttl_seconds, nx=True
            )
        except RedisError as exc:
            logger.error("redis_ticket_store_failed", error=str(exc))
            raise StorageUnavailable("ticket store unavailable") from exc
        return bool(stored)

    async def pop_ticket(self, code: str) -> Optional[dict]:
        """Atomically read and delete a ticket.

        Two concurrent exchanges of the same code cannot both observe the
        payload: GETDEL (Redis 6.2+) or the equivalent Lua script runs as a
        single command on the server.
        """
        key = f"{TICKET_PREFIX}{code}"
        try:
            try:
                raw = await self.client.getdel(key)
            except (AttributeError, ResponseError):
                raw = await self.client.eval(self._POP_SCRIPT, 1, key)
        except RedisError as exc:
            logger.error("redis_ticket_pop_failed", error=str(exc))
            raise StorageUnavailable("ticket store unavailable") from exc
        return _decode_ticket(code, raw)

    async def incr_quota(
        self, identity: str, route: str, window_start: int, window_seconds: int
    ) -> Tuple[int, int]:
        """Increment the counter for the current window.

        Returns:
            Tuple of (count after increment, seconds until the counter expires)
        """
        key = quota_key(identity, route, window_start)
        try:
            count, ttl = await self._window_counter(keys=[key], args=[window_seconds])
        except RedisError as exc:
            logger.error("redis_quota_incr_failed", error=str(exc))
            raise StorageUnavailable("quota store unavailable") from exc
        return int(count), int(ttl)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
