from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from feblr_sso.config import Settings
from feblr_sso.logging import get_logger
from feblr_sso.service.errors import (
    AccountDisabled,
    AccountNotFound,
    BadCredential,
    BadSecondFactor,
    InvalidClient,
    SecondFactorRequired,
)
from feblr_sso.storage.models import Account, Application, PasswordRecord, SecondFactor

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class CredentialStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_password_record(self, account_id: str) -> Optional[PasswordRecord]: ...

    def get_second_factor(self, account_id: str) -> Optional[SecondFactor]: ...

    def get_application(self, application_id: str) -> Optional[Application]: ...


@dataclass
class AuthenticationResult:
    account: Account
    second_factor_verified: bool = False


def build_password_hasher(settings: Settings) -> PasswordHasher:
    return PasswordHasher(
        time_cost=settings.password_time_cost,
        memory_cost=settings.password_memory_cost,
        parallelism=settings.password_parallelism,
        type=Type.ID,
    )


def generate_totp(
    secret: str, timestamp: float, *, interval: int = 30, digits: int = 6
) -> str:
    """RFC 6238 code for ``timestamp`` (HMAC-SHA1 over the step counter)."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, casefold=True)
    except (binascii.Error, ValueError):
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


class CredentialVerifier:
    """Checks who is asking: account password, second factor and client secret.

    Verification never writes anything. Unknown accounts still pay for one
    argon2 verification against a throwaway hash so that response time does
    not tell a caller whether the account exists.
    """

    # Adjacent TOTP steps accepted either side of the current one
    TOTP_SKEW_STEPS = 1

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self._hasher = hasher or build_password_hasher(settings)
        self._clock = clock
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))

    def hash_secret(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def _check_hash(self, encoded: str, candidate: str) -> bool:
        try:
            return self._hasher.verify(encoded, candidate)
        except (VerifyMismatchError, VerificationError, InvalidHash):
            return False

    def verify(
        self,
        account_id: str,
        password: str,
        second_factor_code: Optional[str] = None,
    ) -> AuthenticationResult:
        account = self.store.get_account(account_id)
        if account is None:
            self._check_hash(self._dummy_hash, password)
            logger.warning("credential_account_not_found", account_id=account_id)
            raise AccountNotFound(detail={"account_id": account_id})

        record = self.store.get_password_record(account_id)
        if record is None or record.password_algo != PASSWORD_ALGO:
            self._check_hash(self._dummy_hash, password)
            logger.warning(
                "credential_record_unusable",
                account_id=account_id,
                algo=record.password_algo if record else None,
            )
            raise BadCredential(detail={"account_id": account_id})

        if not self._check_hash(record.password_hash, password):
            logger.warning("credential_password_mismatch", account_id=account_id)
            raise BadCredential(detail={"account_id": account_id})

        # Status is only revealed to callers who already know the password
        if not account.is_active:
            logger.warning("credential_account_disabled", account_id=account_id)
            raise AccountDisabled(detail={"account_id": account_id})

        factor = self.store.get_second_factor(account_id)
        if factor is None or not factor.enabled:
            return AuthenticationResult(account=account)

        if not second_factor_code:
            raise SecondFactorRequired(detail={"account_id": account_id})
        if not self.verify_totp(factor.secret, second_factor_code):
            logger.warning("credential_second_factor_mismatch", account_id=account_id)
            raise BadSecondFactor(detail={"account_id": account_id})
        return AuthenticationResult(account=account, second_factor_verified=True)

    def verify_totp(self, secret: str, code: str) -> bool:
        code = code.strip()
        # compare_digest only accepts ASCII str; isdigit() alone admits other scripts
        if not (code.isascii() and code.isdigit()) or len(code) != self.settings.totp_digits:
            return False
        interval = self.settings.totp_interval_seconds
        now = self._clock()
        matched = False
        # Every candidate step is compared so timing does not reveal which matched
        for offset in range(-self.TOTP_SKEW_STEPS, self.TOTP_SKEW_STEPS + 1):
            generated = generate_totp(
                secret,
                now + offset * interval,
                interval=interval,
                digits=self.settings.totp_digits,
            )
            if generated and hmac.compare_digest(generated, code):
                matched = True
        return matched

    def authenticate_client(self, client_id: str, client_secret: str) -> Application:
        """Return the application if ``client_secret`` matches its stored hash."""
        application = self.store.get_application(client_id)
        if application is None:
            self._check_hash(self._dummy_hash, client_secret)
            logger.warning("client_unknown", client_id=client_id)
            raise InvalidClient(detail={"client_id": client_id})
        if not self._check_hash(application.secret_hash, client_secret):
            logger.warning("client_secret_mismatch", client_id=client_id)
            raise InvalidClient(detail={"client_id": client_id})
        return application
