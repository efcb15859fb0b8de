"""Helpers shared between the memory and postgres stores."""

from __future__ import annotations

import base64
import hashlib
from typing import Iterable, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from feblr_sso.logging import get_logger
from feblr_sso.storage.errors import StorageUnavailable

logger = get_logger(__name__)


def token_digest(raw_token: str) -> str:
    """SHA-256 hex digest used as the durable key of an opaque token."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def normalize_scopes(scopes: Optional[Iterable[str]]) -> List[str]:
    return sorted({s for s in (scopes or []) if s})


class SecretCipher:
    """Fernet wrapper for second-factor secrets stored at rest.

    Any string works as key material; it is stretched to a Fernet key with
    SHA-256 so operators can reuse an existing secret from their vault.
    """

    def __init__(self, key_material: str) -> None:
        if not key_material:
            raise RuntimeError("second factor key material is required")
        try:
            self._fernet = Fernet(self._derive_key(key_material))
        except (ValueError, TypeError) as exc:
            raise RuntimeError("Unable to initialize second factor cipher") from exc

    @staticmethod
    def _derive_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def encrypt(self, secret: str) -> str:
        if not secret:
            return secret
        return self._fernet.encrypt(secret.encode()).decode()

    def decrypt(self, secret: str) -> str:
        if not secret:
            return secret
        try:
            return self._fernet.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            logger.error("second_factor_decrypt_failed")
            raise StorageUnavailable("second factor secret could not be decrypted") from exc


__all__ = ["SecretCipher", "normalize_scopes", "token_digest"]
