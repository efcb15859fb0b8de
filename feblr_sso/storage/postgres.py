from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from feblr_sso.logging import get_logger
from feblr_sso.storage.common import SecretCipher, normalize_scopes
from feblr_sso.storage.errors import ConstraintViolation, StorageUnavailable
from feblr_sso.storage.models import (
    ACCOUNT_ACTIVE,
    Account,
    Application,
    AuthorizationGrant,
    PasswordRecord,
    RefreshTokenRecord,
    SecondFactor,
    utcnow,
)

REQUIRED_TABLES = (
    "account",
    "account_credential",
    "account_second_factor",
    "role",
    "account_role",
    "application",
    "refresh_token",
    "authorization_grant",
)


def _refresh_from_row(row: Dict[str, Any]) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=row["id"],
        account_id=row["account_id"],
        application_id=row["application_id"],
        scopes=frozenset(row.get("scopes") or []),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        family_id=row["family_id"],
        parent_id=row.get("parent_id"),
        generation=int(row.get("generation") or 0),
        revoked=bool(row.get("revoked")),
        revoked_at=row.get("revoked_at"),
    )


def _grant_from_row(row: Dict[str, Any]) -> AuthorizationGrant:
    return AuthorizationGrant(
        id=str(row["id"]),
        account_id=row["account_id"],
        application_id=row["application_id"],
        scopes=frozenset(row.get("scopes") or []),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresStore:
    """Durable store for accounts, applications, refresh tokens and consents."""

    def __init__(
        self,
        dsn: str,
        *,
        second_factor_key: str,
        timeout: float = 2.0,
        min_size: int = 1,
        max_size: int = 10,
        verify_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.timeout = timeout
        self.logger = get_logger(__name__)
        self._cipher = SecretCipher(second_factor_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout)),
            },
        )
        if verify_schema:
            self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        # The pool commits on clean exit, rolls back on error and always
        # returns the connection.
        try:
            with self.pool.connection(timeout=self.timeout) as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error("postgres_unavailable", error=str(exc))
            raise StorageUnavailable("durable store unavailable") from exc

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()

    # -- accounts ---------------------------------------------------------

    def create_account(self, account_id: str, *, status: str = ACCOUNT_ACTIVE) -> Account:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, status) VALUES (%s, %s)
                    RETURNING id, status, created_at
                    """,
                    (account_id, status),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("account exists", {"account_id": account_id})
        except errors.CheckViolation:
            raise ConstraintViolation("invalid account status", {"status": status})
        return Account(id=row["id"], status=row["status"], created_at=row["created_at"])

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, status, created_at FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        if not row:
            return None
        return Account(id=row["id"], status=row["status"], created_at=row["created_at"])

    def set_account_status(self, account_id: str, status: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE account SET status = %s WHERE id = %s", (status, account_id)
            )
            if result.rowcount == 0:
                raise ConstraintViolation("account not found", {"account_id": account_id})

    def set_password(self, account_id: str, password_hash: str, password_algo: str = "argon2id") -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_credential (account_id, password_hash, password_algo, updated_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        password_algo = EXCLUDED.password_algo,
                        updated_at = now()
                    """,
                    (account_id, password_hash, password_algo),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account not found", {"account_id": account_id})

    def get_password_record(self, account_id: str) -> Optional[PasswordRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_credential WHERE account_id = %s", (account_id,)
            ).fetchone()
        if not row:
            return None
        return PasswordRecord(
            account_id=row["account_id"],
            password_hash=row["password_hash"],
            password_algo=row.get("password_algo") or "argon2id",
            updated_at=row.get("updated_at") or utcnow(),
        )

    def set_second_factor(self, account_id: str, secret: str, *, enabled: bool = True) -> SecondFactor:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_second_factor (account_id, secret, enabled, created_at)
                    VALUES (%s, %s, %s, now())
                    ON CONFLICT (account_id) DO UPDATE SET secret = EXCLUDED.secret, enabled = EXCLUDED.enabled
                    """,
                    (account_id, self._cipher.encrypt(secret), enabled),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("account not found", {"account_id": account_id})
        return SecondFactor(account_id=account_id, secret=secret, enabled=enabled)

    def get_second_factor(self, account_id: str) -> Optional[SecondFactor]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_second_factor WHERE account_id = %s", (account_id,)
            ).fetchone()
        if not row:
            return None
        return SecondFactor(
            account_id=row["account_id"],
            secret=self._cipher.decrypt(row["secret"]),
            enabled=bool(row.get("enabled")),
            created_at=row.get("created_at") or utcnow(),
        )

    # -- roles ------------------------------------------------------------

    def create_role(self, name: str, permissions: Iterable[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO role (name, permissions) VALUES (%s, %s)
                ON CONFLICT (name) DO UPDATE SET permissions = EXCLUDED.permissions
                """,
                (name, normalize_scopes(permissions)),
            )

    def assign_role(self, account_id: str, role: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account_role (account_id, role_name) VALUES (%s, %s)
                    ON CONFLICT (account_id, role_name) DO NOTHING
                    """,
                    (account_id, role),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account or role not found", {"account_id": account_id, "role": role}
            )

    def get_account_permissions(self, account_id: str) -> Set[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT unnest(r.permissions) AS permission
                FROM account_role ar
                JOIN role r ON r.name = ar.role_name
                WHERE ar.account_id = %s
                """,
                (account_id,),
            ).fetchall()
        return {row["permission"] for row in rows}

    # -- applications -----------------------------------------------------

    def create_application(self, application: Application) -> Application:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO application (id, name, secret_hash, redirect_uri, allowed_scopes, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        application.id,
                        application.name,
                        application.secret_hash,
                        application.redirect_uri,
                        normalize_scopes(application.allowed_scopes),
                        application.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("application exists", {"application_id": application.id})
        return application

    def get_application(self, application_id: str) -> Optional[Application]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM application WHERE id = %s", (application_id,)
            ).fetchone()
        if not row:
            return None
        return Application(
            id=row["id"],
            name=row["name"],
            secret_hash=row["secret_hash"],
            redirect_uri=row["redirect_uri"],
            allowed_scopes=frozenset(row.get("allowed_scopes") or []),
            created_at=row["created_at"],
        )

    # -- refresh tokens ---------------------------------------------------

    def _insert_refresh(self, conn: Any, record: RefreshTokenRecord) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (
                id, account_id, application_id, scopes, created_at, expires_at,
                family_id, parent_id, generation, revoked, revoked_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                record.id,
                record.account_id,
                record.application_id,
                normalize_scopes(record.scopes),
                record.created_at,
                record.expires_at,
                record.family_id,
                record.parent_id,
                record.generation,
                record.revoked,
                record.revoked_at,
            ),
        )

    def insert_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        try:
            with self._connect() as conn:
                self._insert_refresh(conn, record)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token exists", {"id": record.id[:8]})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account or application not found",
                {"account_id": record.account_id, "application_id": record.application_id},
            )
        return record

    def get_refresh_token(self, token_id: str) -> Optional[RefreshTokenRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return _refresh_from_row(row) if row else None

    def rotate_refresh_token(
        self, token_id: str, successor: RefreshTokenRecord, *, now: Optional[datetime] = None
    ) -> bool:
        """Revoke ``token_id`` and insert ``successor`` in one transaction.

        The conditional UPDATE is the serialization point: of two concurrent
        rotations only one sees a row come back, the other gets False.
        """
        now = now or utcnow()
        try:
            with self._connect() as conn:
                with conn.transaction():
                    row = conn.execute(
                        """
                        UPDATE refresh_token
                        SET revoked = TRUE, revoked_at = %s
                        WHERE id = %s AND revoked = FALSE AND expires_at > %s
                        RETURNING id
                        """,
                        (now, token_id, now),
                    ).fetchone()
                    if not row:
                        return False
                    self._insert_refresh(conn, successor)
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token exists", {"id": successor.id[:8]})
        return True

    def revoke_refresh_token(self, token_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, revoked_at = now()
                WHERE id = %s AND revoked = FALSE
                """,
                (token_id,),
            )
            return result.rowcount > 0

    def revoke_refresh_family(self, family_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, revoked_at = now()
                WHERE family_id = %s AND revoked = FALSE
                """,
                (family_id,),
            )
            return result.rowcount

    def revoke_refresh_tokens_for(self, account_id: str, application_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE, revoked_at = now()
                WHERE account_id = %s AND application_id = %s AND revoked = FALSE
                """,
                (account_id, application_id),
            )
            return result.rowcount

    # -- authorizations ---------------------------------------------------

    def upsert_authorization(
        self, account_id: str, application_id: str, scopes: Iterable[str]
    ) -> AuthorizationGrant:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO authorization_grant (account_id, application_id, scopes)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (account_id, application_id) DO UPDATE
                    SET scopes = EXCLUDED.scopes, updated_at = now()
                    RETURNING *
                    """,
                    (account_id, application_id, normalize_scopes(scopes)),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account or application not found",
                {"account_id": account_id, "application_id": application_id},
            )
        return _grant_from_row(row)

    def list_authorizations(self, account_id: str) -> List[AuthorizationGrant]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM authorization_grant WHERE account_id = %s ORDER BY created_at",
                (account_id,),
            ).fetchall()
        return [_grant_from_row(row) for row in rows]

    def delete_authorization(self, account_id: str, application_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM authorization_grant WHERE account_id = %s AND application_id = %s",
                (account_id, application_id),
            )
            return result.rowcount > 0
