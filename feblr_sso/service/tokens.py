from __future__ import annotations

import secrets
import uuid
from datetime import datetime
from typing import Callable, FrozenSet, Iterable, Optional, Protocol, Tuple

import jwt

from feblr_sso.config import Settings
from feblr_sso.logging import get_logger
from feblr_sso.service.credentials import CredentialVerifier
from feblr_sso.service.errors import (
    AccountDisabled,
    ApplicationMismatch,
    InvalidAccessToken,
    RefreshRevoked,
    TicketNotFound,
    ValidationError,
)
from feblr_sso.service.tickets import TicketIssuer
from feblr_sso.storage.common import token_digest
from feblr_sso.storage.models import (
    AccessTokenClaims,
    Account,
    RefreshTokenRecord,
    TokenPair,
    utcnow,
)

logger = get_logger(__name__)

REFRESH_TOKEN_BYTES = 48
_REQUIRED_CLAIMS = ["sub", "app", "scope", "iat", "exp", "iss", "aud", "jti"]


class RefreshStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord: ...

    def get_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]: ...

    def rotate_refresh_token(
        self, token_id: str, successor: RefreshTokenRecord, *, now: Optional[datetime] = None
    ) -> bool: ...

    def revoke_refresh_token(self, token_id: str) -> bool: ...

    def revoke_refresh_family(self, family_id: str) -> int: ...


class AccessTokenCodec:
    """Signs and verifies access tokens with PyJWT.

    HMAC algorithms use ``jwt_secret``; RSA/ECDSA algorithms sign with the
    private key and verify with the public one, so resource servers only
    ever need the public half.
    """

    def __init__(self, settings: Settings) -> None:
        self.algorithm = settings.jwt_algorithm.value
        if settings.jwt_algorithm.symmetric:
            self._signing_key = settings.jwt_secret
            self._verify_key = settings.jwt_secret
        else:
            self._signing_key = settings.jwt_private_key
            self._verify_key = settings.jwt_public_key
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.ttl_seconds = settings.access_token_ttl_seconds
        self.leeway = settings.jwt_leeway_seconds

    def encode(
        self,
        account_id: str,
        application_id: str,
        scopes: Iterable[str],
        *,
        now: Optional[datetime] = None,
    ) -> Tuple[str, AccessTokenClaims]:
        issued = now or utcnow()
        iat = int(issued.timestamp())
        claims = AccessTokenClaims(
            sub=account_id,
            app=application_id,
            scope=sorted(set(scopes)),
            iat=iat,
            exp=iat + self.ttl_seconds,
            iss=self.issuer,
            aud=self.audience,
            jti=str(uuid.uuid4()),
        )
        token = jwt.encode(
            {
                "sub": claims.sub,
                "app": claims.app,
                "scope": claims.scope,
                "iat": claims.iat,
                "exp": claims.exp,
                "iss": claims.iss,
                "aud": claims.aud,
                "jti": claims.jti,
            },
            self._signing_key,
            algorithm=self.algorithm,
        )
        return token, claims

    def decode(self, token: str) -> AccessTokenClaims:
        try:
            payload = jwt.decode(
                token,
                self._verify_key,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                leeway=self.leeway,
                options={"require": _REQUIRED_CLAIMS},
            )
        except jwt.InvalidTokenError as exc:
            logger.warning("access_token_rejected", reason=type(exc).__name__)
            raise InvalidAccessToken(str(exc)) from exc
        scope = payload.get("scope")
        if not isinstance(scope, list) or not all(isinstance(s, str) for s in scope):
            raise InvalidAccessToken("scope claim must be a list of strings")
        return AccessTokenClaims(
            sub=str(payload["sub"]),
            app=str(payload["app"]),
            scope=scope,
            iat=int(payload["iat"]),
            exp=int(payload["exp"]),
            iss=payload["iss"],
            aud=payload["aud"],
            jti=str(payload["jti"]),
        )


class TokenExchanger:
    """Turns tickets into token pairs and keeps refresh tokens rotating."""

    def __init__(
        self,
        store: RefreshStore,
        tickets: TicketIssuer,
        verifier: CredentialVerifier,
        codec: AccessTokenCodec,
        settings: Settings,
        *,
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.tickets = tickets
        self.verifier = verifier
        self.codec = codec
        self.settings = settings
        self._now = now

    def _issue_pair(
        self,
        account_id: str,
        application_id: str,
        scopes: FrozenSet[str],
        *,
        parent: Optional[RefreshTokenRecord] = None,
    ) -> Tuple[TokenPair, RefreshTokenRecord]:
        now = self._now()
        raw_refresh = secrets.token_urlsafe(REFRESH_TOKEN_BYTES)
        record = RefreshTokenRecord.new(
            token_digest(raw_refresh),
            account_id,
            application_id,
            scopes,
            self.settings.refresh_token_ttl_seconds,
            parent=parent,
            now=now,
        )
        access_token, claims = self.codec.encode(account_id, application_id, scopes, now=now)
        pair = TokenPair(
            access_token=access_token,
            refresh_token=raw_refresh,
            expires_in=claims.exp - claims.iat,
            scopes=claims.scope,
        )
        return pair, record

    def _require_active(self, account_id: str) -> None:
        account = self.store.get_account(account_id)
        if account is None or not account.is_active:
            logger.warning("token_account_inactive", account_id=account_id)
            raise AccountDisabled(detail={"account_id": account_id})

    async def exchange(self, code: str, client_id: str, client_secret: str) -> TokenPair:
        """Consume a ticket and issue the first token pair of a new lineage.

        The client is authenticated before the ticket is touched, so a
        mistyped secret does not burn a valid code. Once consumed, a ticket
        stays consumed even when it turns out to belong to another
        application.
        """
        application = self.verifier.authenticate_client(client_id, client_secret)
        ticket = await self.tickets.consume(code)
        if ticket is None:
            logger.warning("ticket_not_found", client_id=client_id)
            raise TicketNotFound()
        if ticket.application_id != application.id:
            logger.warning(
                "ticket_application_mismatch",
                client_id=client_id,
                ticket_application_id=ticket.application_id,
                account_id=ticket.account_id,
            )
            raise ApplicationMismatch(detail={"client_id": client_id})
        self._require_active(ticket.account_id)

        pair, record = self._issue_pair(ticket.account_id, application.id, ticket.scopes)
        self.store.insert_refresh_token(record)
        logger.info(
            "ticket_exchanged",
            account_id=ticket.account_id,
            application_id=application.id,
            scopes=pair.scopes,
        )
        return pair

    async def refresh(
        self,
        refresh_token: str,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
    ) -> TokenPair:
        if bool(client_id) != bool(client_secret):
            raise ValidationError(
                "client_id and client_secret go together",
                field="client_secret" if client_id else "client_id",
            )
        digest = token_digest(refresh_token)
        record = self.store.get_refresh_token(digest)
        now = self._now()
        if record is None:
            logger.warning("refresh_token_unknown")
            raise RefreshRevoked()
        if record.revoked:
            self._handle_reuse(record)
            raise RefreshRevoked()
        if not record.is_usable(now):
            logger.info("refresh_token_expired", account_id=record.account_id)
            raise RefreshRevoked()

        if client_id and client_secret:
            application = self.verifier.authenticate_client(client_id, client_secret)
            if application.id != record.application_id:
                logger.warning(
                    "refresh_application_mismatch",
                    client_id=client_id,
                    account_id=record.account_id,
                )
                raise ApplicationMismatch(detail={"client_id": client_id})
        self._require_active(record.account_id)

        pair, successor = self._issue_pair(
            record.account_id, record.application_id, record.scopes, parent=record
        )
        if not self.store.rotate_refresh_token(digest, successor, now=now):
            # Another request rotated or revoked this token first
            logger.warning("refresh_rotation_conflict", account_id=record.account_id)
            raise RefreshRevoked()
        logger.info(
            "refresh_token_rotated",
            account_id=record.account_id,
            application_id=record.application_id,
            generation=successor.generation,
        )
        return pair

    def _handle_reuse(self, record: RefreshTokenRecord) -> None:
        logger.warning(
            "refresh_token_reuse_detected",
            account_id=record.account_id,
            application_id=record.application_id,
            generation=record.generation,
        )
        if self.settings.revoke_family_on_reuse:
            revoked = self.store.revoke_refresh_family(record.family_id)
            logger.warning(
                "refresh_family_revoked", account_id=record.account_id, revoked=revoked
            )

    async def revoke(self, refresh_token: str) -> None:
        """Revoke a refresh token; unknown or already revoked tokens are ignored."""
        if self.store.revoke_refresh_token(token_digest(refresh_token)):
            logger.info("refresh_token_revoked")

    def verify_access_token(self, token: str) -> AccessTokenClaims:
        return self.codec.decode(token)
