from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, FrozenSet, Iterable, Optional, Protocol

from feblr_sso.config import MAX_TICKET_TTL_SECONDS
from feblr_sso.logging import get_logger
from feblr_sso.service.errors import StorageUnavailable
from feblr_sso.storage.models import AuthorizationTicket, utcnow

logger = get_logger(__name__)

CODE_BYTES = 32


class TicketCache(Protocol):
    async def put_ticket(self, code: str, payload: dict, ttl_seconds: int) -> bool: ...

    async def pop_ticket(self, code: str) -> Optional[dict]: ...


def generate_code() -> str:
    return secrets.token_urlsafe(CODE_BYTES)


class TicketIssuer:
    """Mints single-use authorization codes into the fast store."""

    MAX_ATTEMPTS = 3

    def __init__(
        self,
        cache: TicketCache,
        *,
        ttl_seconds: int = 120,
        code_factory: Callable[[], str] = generate_code,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        if not 1 <= ttl_seconds <= MAX_TICKET_TTL_SECONDS:
            raise ValueError(f"ticket TTL must be between 1 and {MAX_TICKET_TTL_SECONDS} seconds")
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._code_factory = code_factory
        self._now = now

    async def issue(
        self, account_id: str, application_id: str, scopes: Iterable[str]
    ) -> AuthorizationTicket:
        scope_set: FrozenSet[str] = frozenset(scopes)
        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            issued_at = self._now()
            ticket = AuthorizationTicket(
                code=self._code_factory(),
                account_id=account_id,
                application_id=application_id,
                scopes=scope_set,
                issued_at=issued_at,
                expires_at=issued_at + timedelta(seconds=self.ttl_seconds),
            )
            if await self.cache.put_ticket(ticket.code, ticket.to_payload(), self.ttl_seconds):
                logger.info(
                    "ticket_issued",
                    account_id=account_id,
                    application_id=application_id,
                    scopes=sorted(scope_set),
                )
                return ticket
            logger.warning("ticket_code_collision", attempt=attempt)
        raise StorageUnavailable("could not allocate a unique ticket code")

    async def consume(self, code: str) -> Optional[AuthorizationTicket]:
        """Remove and return the ticket, or None when missing or expired."""
        payload = await self.cache.pop_ticket(code)
        if payload is None:
            return None
        ticket = AuthorizationTicket.from_payload(code, payload, consumed=True)
        # Redis expiry is second-granular; the recorded deadline is authoritative
        if ticket.is_expired(self._now()):
            return None
        return ticket
