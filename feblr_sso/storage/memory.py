from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

from feblr_sso.logging import get_logger
from feblr_sso.storage.common import SecretCipher
from feblr_sso.storage.errors import ConstraintViolation
from feblr_sso.storage.models import (
    ACCOUNT_ACTIVE,
    ACCOUNT_DISABLED,
    Account,
    Application,
    AuthorizationGrant,
    PasswordRecord,
    RefreshTokenRecord,
    SecondFactor,
    utcnow,
)


class MemoryStore:
    """In-process durable store used by tests and single-node development.

    Every method takes ``_data_lock`` so that compound operations (refresh
    rotation above all) are atomic with respect to other requests served by
    the same process.
    """

    def __init__(self, *, second_factor_key: str) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.passwords: Dict[str, PasswordRecord] = {}
        self.second_factors: Dict[str, SecondFactor] = {}
        self.roles: Dict[str, Set[str]] = {}
        self.account_roles: Dict[str, Set[str]] = {}
        self.applications: Dict[str, Application] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        self.grants: Dict[Tuple[str, str], AuthorizationGrant] = {}
        self._data_lock = threading.RLock()
        self._cipher = SecretCipher(second_factor_key)

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # -- accounts ---------------------------------------------------------

    def create_account(self, account_id: str, *, status: str = ACCOUNT_ACTIVE) -> Account:
        if status not in (ACCOUNT_ACTIVE, ACCOUNT_DISABLED):
            raise ConstraintViolation("invalid account status", {"status": status})
        with self._data_lock:
            if account_id in self.accounts:
                raise ConstraintViolation("account exists", {"account_id": account_id})
            account = Account(id=account_id, status=status)
            self.accounts[account_id] = account
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def set_account_status(self, account_id: str, status: str) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            self.accounts[account_id] = replace(account, status=status)

    def set_password(self, account_id: str, password_hash: str, password_algo: str = "argon2id") -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            self.passwords[account_id] = PasswordRecord(
                account_id=account_id, password_hash=password_hash, password_algo=password_algo
            )

    def get_password_record(self, account_id: str) -> Optional[PasswordRecord]:
        with self._data_lock:
            return self.passwords.get(account_id)

    def set_second_factor(self, account_id: str, secret: str, *, enabled: bool = True) -> SecondFactor:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            record = SecondFactor(
                account_id=account_id, secret=self._cipher.encrypt(secret), enabled=enabled
            )
            self.second_factors[account_id] = record
            return replace(record, secret=secret)

    def get_second_factor(self, account_id: str) -> Optional[SecondFactor]:
        with self._data_lock:
            record = self.second_factors.get(account_id)
            if not record:
                return None
            return replace(record, secret=self._cipher.decrypt(record.secret))

    # -- roles ------------------------------------------------------------

    def create_role(self, name: str, permissions: Iterable[str]) -> None:
        with self._data_lock:
            self.roles[name] = set(permissions)

    def assign_role(self, account_id: str, role: str) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            if role not in self.roles:
                raise ConstraintViolation("role not found", {"role": role})
            self.account_roles.setdefault(account_id, set()).add(role)

    def get_account_permissions(self, account_id: str) -> Set[str]:
        with self._data_lock:
            permissions: Set[str] = set()
            for role in self.account_roles.get(account_id, ()):
                permissions |= self.roles.get(role, set())
            return permissions

    # -- applications -----------------------------------------------------

    def create_application(self, application: Application) -> Application:
        with self._data_lock:
            if application.id in self.applications:
                raise ConstraintViolation("application exists", {"application_id": application.id})
            self.applications[application.id] = application
            return application

    def get_application(self, application_id: str) -> Optional[Application]:
        with self._data_lock:
            return self.applications.get(application_id)

    # -- refresh tokens ---------------------------------------------------

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._data_lock:
            if record.id in self.refresh_tokens:
                raise ConstraintViolation("refresh token exists", {"id": record.id[:8]})
            self.refresh_tokens[record.id] = record
            return record

    def get_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._data_lock:
            return self.refresh_tokens.get(token_id)

    def rotate_refresh_token(
        self, token_id: str, successor: RefreshTokenRecord, *, now: Optional[datetime] = None
    ) -> bool:
        """Revoke ``token_id`` and insert ``successor`` as one step.

        Returns False, leaving both untouched, when ``token_id`` is no longer
        usable because another request already rotated or revoked it.
        """
        now = now or utcnow()
        with self._data_lock:
            current = self.refresh_tokens.get(token_id)
            if current is None or not current.is_usable(now):
                return False
            if successor.id in self.refresh_tokens:
                raise ConstraintViolation("refresh token exists", {"id": successor.id[:8]})
            self.refresh_tokens[token_id] = replace(current, revoked=True, revoked_at=now)
            self.refresh_tokens[successor.id] = successor
            return True

    def revoke_refresh_token(self, token_id: str) -> bool:
        with self._data_lock:
            current = self.refresh_tokens.get(token_id)
            if current is None or current.revoked:
                return False
            self.refresh_tokens[token_id] = replace(current, revoked=True, revoked_at=utcnow())
            return True

    def _revoke_where(self, predicate) -> int:
        now = utcnow()
        revoked = 0
        for token_id, record in list(self.refresh_tokens.items()):
            if not record.revoked and predicate(record):
                self.refresh_tokens[token_id] = replace(record, revoked=True, revoked_at=now)
                revoked += 1
        return revoked

    def revoke_refresh_family(self, family_id: str) -> int:
        with self._data_lock:
            return self._revoke_where(lambda r: r.family_id == family_id)

    def revoke_refresh_tokens_for(self, account_id: str, application_id: str) -> int:
        with self._data_lock:
            return self._revoke_where(
                lambda r: r.account_id == account_id and r.application_id == application_id
            )

    # -- authorizations ---------------------------------------------------

    def upsert_authorization(
        self, account_id: str, application_id: str, scopes: Iterable[str]
    ) -> AuthorizationGrant:
        with self._data_lock:
            if application_id not in self.applications:
                raise ConstraintViolation(
                    "application not found", {"application_id": application_id}
                )
            key = (account_id, application_id)
            existing = self.grants.get(key)
            if existing:
                grant = replace(existing, scopes=frozenset(scopes), updated_at=utcnow())
            else:
                grant = AuthorizationGrant(
                    account_id=account_id,
                    application_id=application_id,
                    scopes=frozenset(scopes),
                )
            self.grants[key] = grant
            return grant

    def list_authorizations(self, account_id: str) -> List[AuthorizationGrant]:
        with self._data_lock:
            grants = [g for (acct, _), g in self.grants.items() if acct == account_id]
            return sorted(grants, key=lambda g: g.created_at)

    def delete_authorization(self, account_id: str, application_id: str) -> bool:
        with self._data_lock:
            return self.grants.pop((account_id, application_id), None) is not None
