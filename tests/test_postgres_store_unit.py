from contextlib import contextmanager
from datetime import timedelta

import pytest
from psycopg import OperationalError
from psycopg_pool import PoolTimeout

from feblr_sso.logging import get_logger
from feblr_sso.service.errors import StorageUnavailable
from feblr_sso.storage.common import SecretCipher
from feblr_sso.storage.postgres import PostgresStore, _refresh_from_row
from feblr_sso.storage.models import RefreshTokenRecord, utcnow


class FakeResult:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Records statements and answers them from a queue of canned results."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self.results.pop(0) if self.results else FakeResult()

    @contextmanager
    def transaction(self):
        yield self


class FakePool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error

    @contextmanager
    def connection(self, timeout=None):
        if self.error is not None:
            raise self.error
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://stub"
    store.timeout = 0.1
    store.logger = get_logger("test")
    store._cipher = SecretCipher("postgres-unit-key")
    return store


def _successor():
    return RefreshTokenRecord.new("b" * 64, "a1", "app1", frozenset({"read"}), 3600)


def test_rotate_returns_false_when_no_row_is_updated():
    conn = FakeConnection([FakeResult(rows=[])])
    store = _store(FakePool(conn))

    assert store.rotate_refresh_token("a" * 64, _successor()) is False
    # Only the conditional UPDATE ran; nothing was inserted
    assert len(conn.statements) == 1
    assert conn.statements[0][0].startswith("UPDATE refresh_token")


def test_rotate_inserts_successor_after_winning_update():
    conn = FakeConnection([FakeResult(rows=[{"id": "a" * 64}])])
    store = _store(FakePool(conn))
    successor = _successor()

    assert store.rotate_refresh_token("a" * 64, successor) is True
    assert conn.statements[1][0].startswith("INSERT INTO refresh_token")
    assert conn.statements[1][1][0] == successor.id


@pytest.mark.parametrize("error", [OperationalError("down"), PoolTimeout("busy")])
def test_connection_failures_become_storage_unavailable(error):
    store = _store(FakePool(error=error))
    with pytest.raises(StorageUnavailable):
        store.get_account("a1")


def test_schema_check_lists_missing_tables():
    conn = FakeConnection(
        [FakeResult(rows=[{"oid": "account"}])]
        + [FakeResult(rows=[{"oid": None}]) for _ in range(7)]
    )
    store = _store(FakePool(conn))
    with pytest.raises(RuntimeError) as excinfo:
        store._verify_required_schema()
    assert "refresh_token" in str(excinfo.value)
    assert "account," not in str(excinfo.value)


def test_second_factor_secret_is_encrypted_before_insert():
    conn = FakeConnection([])
    store = _store(FakePool(conn))

    store.set_second_factor("a1", "JBSWY3DPEHPK3PXP")

    stored_secret = conn.statements[0][1][1]
    assert stored_secret != "JBSWY3DPEHPK3PXP"
    assert store._cipher.decrypt(stored_secret) == "JBSWY3DPEHPK3PXP"


def test_revoke_reports_whether_anything_changed():
    conn = FakeConnection([FakeResult(rowcount=1), FakeResult(rowcount=0)])
    store = _store(FakePool(conn))
    assert store.revoke_refresh_token("a" * 64) is True
    assert store.revoke_refresh_token("a" * 64) is False


def test_refresh_row_conversion():
    now = utcnow()
    record = _refresh_from_row(
        {
            "id": "c" * 64,
            "account_id": "a1",
            "application_id": "app1",
            "scopes": ["write", "read"],
            "created_at": now,
            "expires_at": now + timedelta(days=1),
            "family_id": "c" * 64,
            "parent_id": None,
            "generation": None,
            "revoked": False,
            "revoked_at": None,
        }
    )
    assert record.scopes == frozenset({"read", "write"})
    assert record.generation == 0
    assert record.is_usable(now)
