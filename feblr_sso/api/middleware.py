from __future__ import annotations

import hashlib
from typing import Callable, Iterable, Optional

from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.routing import Match
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from feblr_sso.api.error_handling import log_error, render_error
from feblr_sso.logging import get_logger
from feblr_sso.service.errors import SsoError
from feblr_sso.service.quota import QuotaGuard

logger = get_logger(__name__)

IdentityResolver = Callable[[Request], Optional[str]]


def anonymous_identity(request: Request) -> str:
    """Fingerprint of client address and user agent for unauthenticated callers."""
    host = request.client.host if request.client else "unknown"
    agent = request.headers.get("user-agent", "")
    digest = hashlib.sha256(f"{host}|{agent}".encode()).hexdigest()[:32]
    return f"anon:{digest}"


def route_id(scope: Scope) -> str:
    """``"METHOD /template"`` for the route that will serve ``scope``.

    Using the template rather than the concrete path keeps ``/v1/tickets/a``
    and ``/v1/tickets/b`` on the same counter. Unmatched paths count under
    their raw path.
    """
    method = scope.get("method", "GET")
    app = scope.get("app")
    router = getattr(app, "router", None)
    template = None
    for route in getattr(router, "routes", ()):
        match, _ = route.matches(scope)
        if match == Match.FULL:
            template = getattr(route, "path", None)
            break
        if match == Match.PARTIAL and template is None:
            template = getattr(route, "path", None)
    return f"{method} {template or scope.get('path', '/')}"


class QuotaMiddleware:
    """ASGI middleware that admits or rejects every request against a QuotaGuard.

    The guard is looked up per request through ``guard_provider`` so the
    runtime can be rebuilt (tests) without rebuilding the middleware stack.
    Admitted responses carry ``X-RateLimit-*`` headers; rejected requests
    never reach the route.
    """

    def __init__(
        self,
        app: ASGIApp,
        guard_provider: Callable[[], QuotaGuard],
        *,
        identity_resolver: Optional[IdentityResolver] = None,
        exempt_paths: Iterable[str] = ("/healthz",),
    ) -> None:
        self.app = app
        self.guard_provider = guard_provider
        self.identity_resolver = identity_resolver
        self.exempt_paths = frozenset(exempt_paths)

    def _identity(self, request: Request) -> str:
        if self.identity_resolver is not None:
            identity = self.identity_resolver(request)
            if identity:
                return identity
        return anonymous_identity(request)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("path") in self.exempt_paths:
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        route = route_id(scope)
        try:
            decision = await self.guard_provider().enforce(self._identity(request), route)
        except SsoError as exc:
            log_error(request.method, request.url.path, exc)
            response = render_error(exc)
            await response(scope, receive, send)
            return

        async def send_with_quota_headers(message: Message) -> None:
            if message["type"] == "http.response.start":
                decision.apply_headers(MutableHeaders(scope=message))
            await send(message)

        await self.app(scope, receive, send_with_quota_headers)
