from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, List, Optional

ACCOUNT_ACTIVE = "active"
ACCOUNT_DISABLED = "disabled"

SCOPE_PATTERN = re.compile(r"^[A-Za-z0-9_.:\-]{1,64}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_scope(name: str) -> bool:
    return bool(SCOPE_PATTERN.match(name))


@dataclass
class Account:
    id: str
    status: str = ACCOUNT_ACTIVE
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == ACCOUNT_ACTIVE


@dataclass
class PasswordRecord:
    account_id: str
    password_hash: str
    password_algo: str = "argon2id"
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class SecondFactor:
    account_id: str
    secret: str
    enabled: bool = True
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Application:
    id: str
    name: str
    secret_hash: str
    redirect_uri: str
    allowed_scopes: FrozenSet[str] = frozenset()
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuthorizationTicket:
    """Single-use grant living only in the fast store."""

    code: str
    account_id: str
    application_id: str
    scopes: FrozenSet[str]
    issued_at: datetime
    expires_at: datetime
    consumed: bool = False

    def to_payload(self) -> dict:
        return {
            "account_id": self.account_id,
            "application_id": self.application_id,
            "scopes": sorted(self.scopes),
            "issued_at": self.issued_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_payload(cls, code: str, payload: dict, *, consumed: bool = False) -> "AuthorizationTicket":
        return cls(
            code=code,
            account_id=payload["account_id"],
            application_id=payload["application_id"],
            scopes=frozenset(payload.get("scopes") or []),
            issued_at=datetime.fromisoformat(payload["issued_at"]),
            expires_at=datetime.fromisoformat(payload["expires_at"]),
            consumed=consumed,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class RefreshTokenRecord:
    """Durable refresh token row keyed by the SHA-256 digest of the raw token."""

    id: str
    account_id: str
    application_id: str
    scopes: FrozenSet[str]
    created_at: datetime
    expires_at: datetime
    family_id: str
    parent_id: Optional[str] = None
    generation: int = 0
    revoked: bool = False
    revoked_at: Optional[datetime] = None

    @classmethod
    def new(
        cls,
        token_digest: str,
        account_id: str,
        application_id: str,
        scopes: FrozenSet[str],
        ttl_seconds: int,
        *,
        parent: Optional["RefreshTokenRecord"] = None,
        now: Optional[datetime] = None,
    ) -> "RefreshTokenRecord":
        created = now or utcnow()
        return cls(
            id=token_digest,
            account_id=account_id,
            application_id=application_id,
            scopes=frozenset(scopes),
            created_at=created,
            expires_at=created + timedelta(seconds=ttl_seconds),
            family_id=parent.family_id if parent else token_digest,
            parent_id=parent.id if parent else None,
            generation=parent.generation + 1 if parent else 0,
        )

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return not self.revoked and (now or utcnow()) < self.expires_at


@dataclass
class AuthorizationGrant:
    """Consent an account gave an application, refreshed on every new ticket."""

    account_id: str
    application_id: str
    scopes: FrozenSet[str]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    scopes: List[str]
    token_type: str = "bearer"


@dataclass
class AccessTokenClaims:
    sub: str
    app: str
    scope: List[str]
    iat: int
    exp: int
    iss: str
    aud: str
    jti: str
