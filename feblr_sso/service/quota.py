from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, MutableMapping, Optional, Protocol, Tuple

from feblr_sso.logging import get_logger
from feblr_sso.service.errors import QuotaExceeded, StorageUnavailable

logger = get_logger(__name__)


class QuotaCounter(Protocol):
    async def incr_quota(
        self, identity: str, route: str, window_start: int, window_seconds: int
    ) -> Tuple[int, int]: ...


@dataclass
class QuotaDecision:
    """Outcome of one admitted request, used for X-RateLimit-* headers."""

    route: str
    limit: int
    remaining: int
    reset_after: int
    enforced: bool = True

    def apply_headers(self, headers: MutableMapping[str, str]) -> None:
        if not self.enforced:
            return
        headers["X-RateLimit-Limit"] = str(self.limit)
        headers["X-RateLimit-Remaining"] = str(self.remaining)
        headers["X-RateLimit-Reset"] = str(self.reset_after)


class QuotaGuard:
    """Fixed-window request quota per (identity, route).

    Windows are aligned to multiples of ``window_seconds`` since the epoch,
    so every node agrees on the window boundaries without coordination. A
    client can burst up to twice the limit across a boundary; that is the
    accepted price of a single counter per window.
    """

    def __init__(
        self,
        counter: QuotaCounter,
        *,
        window_seconds: int = 60,
        default_limit: int = 120,
        route_limits: Optional[Mapping[str, int]] = None,
        fail_open: bool = False,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.counter = counter
        self.window_seconds = window_seconds
        self.default_limit = default_limit
        self.route_limits: Dict[str, int] = dict(route_limits or {})
        self.fail_open = fail_open
        self._clock = clock

    def limit_for(self, route: str) -> int:
        """Limit for ``"METHOD /template"``, falling back to the bare template."""
        if route in self.route_limits:
            return self.route_limits[route]
        _, _, path = route.partition(" ")
        if path and path in self.route_limits:
            return self.route_limits[path]
        return self.default_limit

    def window_start(self, now: float) -> int:
        return int(now // self.window_seconds) * self.window_seconds

    async def enforce(self, identity: str, route: str) -> QuotaDecision:
        limit = self.limit_for(route)
        if limit <= 0:
            return QuotaDecision(route=route, limit=0, remaining=0, reset_after=0, enforced=False)

        now = self._clock()
        start = self.window_start(now)
        reset_after = max(1, math.ceil(start + self.window_seconds - now))
        try:
            count, _ = await self.counter.incr_quota(identity, route, start, self.window_seconds)
        except StorageUnavailable:
            if not self.fail_open:
                raise
            logger.warning("quota_store_unavailable_fail_open", route=route)
            return QuotaDecision(
                route=route, limit=limit, remaining=limit, reset_after=reset_after, enforced=False
            )

        if count > limit:
            logger.warning(
                "quota_exceeded",
                identity=identity,
                route=route,
                limit=limit,
                count=count,
                retry_after=reset_after,
            )
            raise QuotaExceeded(limit=limit, retry_after=reset_after, route=route)
        return QuotaDecision(
            route=route,
            limit=limit,
            remaining=max(0, limit - count),
            reset_after=reset_after,
        )
