from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Optional, Tuple

from feblr_sso.storage.redis_cache import quota_key


class LocalCache:
    """In-process stand-in for RedisCache used by tests and local development.

    Mirrors the RedisCache coroutine API. Entries carry an absolute expiry
    read from ``clock`` and are dropped on access or on the next write, so
    tests can move time forward without sleeping. A single lock makes
    put-if-absent, pop-once and increment atomic across threads of one
    process.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._tickets: Dict[str, Tuple[dict, float]] = {}
        self._counters: Dict[str, Tuple[int, float]] = {}

    def verify_connection(self) -> None:
        return None

    def _live_ticket(self, code: str, now: float) -> Optional[dict]:
        entry = self._tickets.get(code)
        if entry is None:
            return None
        payload, expires_at = entry
        if now >= expires_at:
            del self._tickets[code]
            return None
        return payload

    async def put_ticket(self, code: str, payload: dict, ttl_seconds: int) -> bool:
        with self._lock:
            now = self._clock()
            if self._live_ticket(code, now) is not None:
                return False
            self._tickets[code] = (dict(payload), now + ttl_seconds)
            self._purge_tickets(now)
            return True

    async def pop_ticket(self, code: str) -> Optional[dict]:
        with self._lock:
            payload = self._live_ticket(code, self._clock())
            self._tickets.pop(code, None)
            return payload

    async def incr_quota(
        self, identity: str, route: str, window_start: int, window_seconds: int
    ) -> Tuple[int, int]:
        key = quota_key(identity, route, window_start)
        with self._lock:
            now = self._clock()
            count, expires_at = self._counters.get(key, (0, 0.0))
            if count == 0 or now >= expires_at:
                count, expires_at = 0, now + window_seconds
            count += 1
            self._counters[key] = (count, expires_at)
            self._purge_counters(now)
            return count, max(1, int(expires_at - now + 0.999))

    def _purge_tickets(self, now: float) -> None:
        stale = [code for code, (_, expires_at) in self._tickets.items() if now >= expires_at]
        for code in stale:
            del self._tickets[code]

    def _purge_counters(self, now: float) -> None:
        stale = [key for key, (_, expires_at) in self._counters.items() if now >= expires_at]
        for key in stale:
            del self._counters[key]

    async def close(self) -> None:
        with self._lock:
            self._tickets.clear()
            self._counters.clear()
