import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from psycopg import errors

from tourpass.storage.errors import ConstraintViolation
from tourpass.storage.postgres import PostgresStore

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, rows):
        self._rows = rows

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.pool.statements.append((" ".join(sql.split()), params))
        if self.pool.raise_on_execute is not None:
            raise self.pool.raise_on_execute
        return FakeCursor(self.pool.rows)


class FakePool:
    def __init__(self, rows=None):
        self.rows = rows or []
        self.statements = []
        self.raise_on_execute = None

    def connection(self):
        return FakeConnection(self)


def _store(tmp_path: Path, rows=None) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FakePool(rows)
    store.logger = None
    return store


def _token_row(**overrides):
    row = {
        "token": "a" * 80,
        "account_id": uuid.uuid4(),
        "created_at": T0,
        "expires_at": T0 + timedelta(days=7),
        "created_by_ip": None,
        "revoked_at": T0,
        "revoked_by_ip": "10.0.0.1",
        "revoked_reason": "user logout",
        "replaced_by_token": None,
    }
    row.update(overrides)
    return row


def test_revoke_is_a_single_conditional_update(tmp_path):
    store = _store(tmp_path, rows=[_token_row()])
    record = store.revoke_refresh_token(
        "a" * 80, reason="user logout", revoked_by_ip="10.0.0.1", now=T0
    )
    assert record.revoked_reason == "user logout"
    assert isinstance(record.account_id, str)

    (sql, params), = store.pool.statements
    assert sql.startswith("UPDATE refresh_token")
    assert "WHERE token = %s AND revoked_at IS NULL AND expires_at > %s RETURNING *" in sql
    assert params == (T0, "10.0.0.1", "user logout", None, "a" * 80, T0)


def test_revoke_reports_lost_race_as_none(tmp_path):
    store = _store(tmp_path, rows=[])
    assert store.revoke_refresh_token("a" * 80, reason="replaced by new token", now=T0) is None


def test_bulk_revoke_counts_returned_rows(tmp_path):
    store = _store(tmp_path, rows=[{"token": "a"}, {"token": "b"}])
    assert store.revoke_account_refresh_tokens("acct", reason="bulk revocation", now=T0) == 2
    sql, params = store.pool.statements[0]
    assert "account_id = %s AND revoked_at IS NULL AND expires_at > %s" in sql
    assert params == (T0, None, "bulk revocation", "acct", T0)


def test_consume_verification_is_atomic_update(tmp_path):
    row = {
        "id": uuid.uuid4(),
        "email": "ada@example.com",
        "display_name": "Ada",
        "role": "client",
        "is_active": True,
        "is_archived": False,
        "email_verified": True,
        "created_at": T0,
    }
    store = _store(tmp_path, rows=[row])
    account = store.consume_verification_token("digest", now=T0)
    assert account.email_verified is True
    sql, params = store.pool.statements[0]
    assert sql.startswith("UPDATE account SET email_verified = TRUE")
    assert params == ("digest", T0)


def test_purge_uses_retention_cutoff(tmp_path):
    class _Logger:
        def info(self, *args, **kwargs):
            pass

    store = _store(tmp_path, rows=[{"token": "a"}])
    store.logger = _Logger()
    assert store.purge_stale_refresh_tokens(timedelta(days=30), now=T0) == 1
    _, params = store.pool.statements[0]
    assert params == (T0, T0 - timedelta(days=30))


def test_unique_violation_maps_to_constraint(tmp_path):
    store = _store(tmp_path)
    store.pool.raise_on_execute = errors.UniqueViolation("duplicate key")
    with pytest.raises(ConstraintViolation):
        store.create_account("ada@example.com", "Ada")


@pytest.mark.parametrize(
    "call",
    [
        lambda store: store.get_account("not-a-uuid"),
        lambda store: store.update_account_role("not-a-uuid", "admin"),
        lambda store: store.update_account_status("not-a-uuid", is_active=False),
    ],
)
def test_malformed_account_id_is_not_found_without_query(tmp_path, call):
    store = _store(tmp_path)
    # Postgres would reject the literal with InvalidTextRepresentation
    store.pool.raise_on_execute = errors.InvalidTextRepresentation("invalid input syntax for type uuid")
    assert call(store) is None
    assert store.pool.statements == []


def test_well_formed_account_id_is_queried(tmp_path):
    account_id = str(uuid.uuid4())
    store = _store(tmp_path)
    assert store.get_account(account_id) is None
    sql, params = store.pool.statements[0]
    assert sql == "SELECT * FROM account WHERE id = %s"
    assert params == (account_id,)
