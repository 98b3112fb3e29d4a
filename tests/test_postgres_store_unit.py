import contextlib
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from psycopg import errors
from psycopg_pool import PoolTimeout

from taskguard.logging import get_logger
from taskguard.storage.errors import ConstraintViolation, StoreUnavailable
from taskguard.storage.models import Account, ProviderLink
from taskguard.storage.postgres import PostgresStore

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows):
        self._rows = rows

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, results, error=None):
        self.results = list(results)
        self.error = error
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error is not None:
            raise self.error
        rows = self.results.pop(0) if self.results else []
        return FakeCursor(rows)


class FakePool:
    def __init__(self, connection=None, timeout=False):
        self.conn = connection
        self.timeout = timeout

    @contextlib.contextmanager
    def connection(self):
        if self.timeout:
            raise PoolTimeout("couldn't get a connection after 5.00 sec")
        yield self.conn


def _store(*results, error=None, timeout=False):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.logger = get_logger("test")
    conn = FakeConnection(results, error=error)
    store.pool = FakePool(conn, timeout=timeout)
    return store, conn


def test_increment_is_a_single_conditional_update():
    store, conn = _store([{"failed_attempts": 3}])

    attempts = store.increment_failed_attempts("acct-1", now=NOW, max_attempts=5)

    assert attempts == 3
    sql, params = conn.statements[0]
    assert sql.startswith("UPDATE account SET failed_attempts = CASE")
    assert "LEAST(failed_attempts + 1, %(max_attempts)s)" in sql
    assert params == {"now": NOW, "max_attempts": 5, "account_id": "acct-1"}


def test_increment_for_missing_account():
    store, _ = _store([])

    with pytest.raises(KeyError):
        store.increment_failed_attempts("missing", now=NOW, max_attempts=5)


def test_set_lock_reports_existing_lock():
    store, conn = _store([])

    assert store.set_lock("acct-1", NOW + timedelta(minutes=30), now=NOW) is False
    assert "lock_until IS NULL OR lock_until <=" in conn.statements[0][0]


def test_backup_code_removal_is_guarded():
    store, conn = _store([{"id": "acct-1"}])

    assert store.remove_backup_code_hash("acct-1", "hash-1") is True
    sql, params = conn.statements[0]
    assert "array_remove(backup_code_hashes, %s)" in sql
    assert "%s = ANY(backup_code_hashes)" in sql
    assert params == ("hash-1", "acct-1", "hash-1")


def test_duplicate_email_becomes_constraint_violation():
    store, _ = _store(error=errors.UniqueViolation("duplicate key value violates unique constraint"))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_account(Account.new("dup@example.com"))
    assert excinfo.value.detail == {"field": "email"}


def test_pool_timeout_becomes_store_unavailable():
    store, _ = _store(timeout=True)

    with pytest.raises(StoreUnavailable):
        store.get_account("acct-1")


def test_account_row_mapping_with_links():
    account_id = uuid.uuid4()
    account_row = {
        "id": account_id,
        "email": "user@example.com",
        "tenant_id": "public",
        "name": "User",
        "password_hash": "argon2-hash",
        "failed_attempts": 2,
        "lock_until": None,
        "is_email_verified": True,
        "is_active": True,
        "two_factor_enabled": True,
        "two_factor_secret": "iv:tag:ct",
        "backup_code_hashes": ["h1", "h2"],
        "avatar_url": None,
        "terms_accepted_at": NOW,
        "last_login_at": None,
        "created_at": NOW,
        "updated_at": NOW,
    }
    link_row = {
        "account_id": account_id,
        "provider": "google",
        "provider_id": "g-1",
        "avatar_url": None,
        "linked_at": NOW,
    }
    store, _ = _store([account_row], [link_row])

    account = store.get_account(str(account_id))

    assert account.id == str(account_id)
    assert account.failed_attempts == 2
    assert account.backup_code_hashes == ["h1", "h2"]
    assert account.linked_providers == {
        "google": ProviderLink(provider="google", provider_id="g-1", linked_at=NOW)
    }
    assert account.login_method_count() == 2


def test_revoke_account_sessions_returns_ids():
    first, second = uuid.uuid4(), uuid.uuid4()
    store, conn = _store([{"id": first}, {"id": second}])

    revoked = store.revoke_account_sessions("acct-1", now=NOW, except_session_id=None)

    assert revoked == [str(first), str(second)]
    assert conn.statements[0][1] == (NOW, "acct-1", None, None)
