from contextlib import contextmanager
from datetime import timedelta

import pytest
from psycopg import errors

from staffauth.storage.errors import (
    ConstraintViolation,
    InvalidState,
    NotFound,
    TransientStorageError,
    ValidationFailure,
)
from staffauth.storage.models import IssuedToken, utcnow
from staffauth.storage.postgres import SCHEMA_STATEMENTS, PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


class _Cursor:
    def __init__(self, rows=None, rowcount=0):
        self._rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class StubConnection:
    """Replays queued results and records every statement executed."""

    def __init__(self, results=None, raises=None):
        self.results = list(results or [])
        self.raises = raises
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.raises is not None:
            raise self.raises
        if self.results:
            return self.results.pop(0)
        return _Cursor()


def _store(conn):
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    store.dsn = "postgresql://stub"
    from staffauth.logging import get_logger

    store.logger = get_logger("tests.postgres")

    @contextmanager
    def _connect():
        yield conn

    store._connect = _connect
    return store


def _token(**overrides):
    now = utcnow()
    values = dict(
        id="tok-1",
        user_id="user-1",
        access_token="a",
        refresh_token="r",
        expires_at=now + timedelta(hours=1),
        refresh_expires_at=now + timedelta(days=7),
    )
    values.update(overrides)
    return IssuedToken(**values)


def test_schema_declares_uniques_and_cascades():
    ddl = "\n".join(SCHEMA_STATEMENTS)
    assert "session_token TEXT NOT NULL UNIQUE" in ddl
    assert "REFERENCES staff_role (id) ON DELETE RESTRICT" in ddl
    assert ddl.count("REFERENCES staff_account (id) ON DELETE CASCADE") == 3
    assert "staff_account_email_key ON staff_account (lower(email))" in ddl
    for flag in ("can_view_employees", "can_access_admin_panel"):
        assert f"{flag} BOOLEAN NOT NULL DEFAULT FALSE" in ddl


def test_create_token_maps_missing_account():
    conn = StubConnection(raises=errors.ForeignKeyViolation("fk"))
    with pytest.raises(ConstraintViolation):
        _store(conn).create_token(_token())


def test_create_token_requires_record():
    with pytest.raises(ValidationFailure):
        _store(StubConnection()).create_token(None)


def test_revoke_all_only_targets_live_tokens():
    conn = StubConnection(results=[_Cursor(rowcount=3)])
    assert _store(conn).revoke_all_user_tokens("user-1", "Password changed") == 3
    sql, params = conn.statements[0]
    assert "WHERE user_id = %s AND NOT is_revoked AND expires_at > %s" in sql
    assert params[0] == "Password changed"
    assert params[2] == "user-1"


def test_revoke_token_is_idempotent():
    conn = StubConnection(results=[_Cursor([{"user_id": "user-1", "is_revoked": True}])])
    assert _store(conn).revoke_token("tok-1", "again") is True
    assert len(conn.statements) == 1


def test_revoke_unknown_token():
    with pytest.raises(NotFound):
        _store(StubConnection(results=[_Cursor([])])).revoke_token("missing", "x")


def test_rotate_rejects_expired_access():
    expired = {
        "id": "tok-1",
        "user_id": "user-1",
        "is_revoked": False,
        "expires_at": utcnow() - timedelta(minutes=1),
    }
    conn = StubConnection(results=[_Cursor([expired])])
    with pytest.raises(InvalidState):
        _store(conn).rotate_refresh_token("tok-1", "new", utcnow() + timedelta(days=7))
    assert all("UPDATE" not in sql for sql, _ in conn.statements)


def test_rotate_rejects_access_expiring_now(monkeypatch):
    frozen = utcnow()
    monkeypatch.setattr("staffauth.storage.postgres.utcnow", lambda: frozen)
    row = {"id": "tok-1", "user_id": "user-1", "is_revoked": False, "expires_at": frozen}
    conn = StubConnection(results=[_Cursor([row])])
    with pytest.raises(InvalidState):
        _store(conn).rotate_refresh_token("tok-1", "new", frozen + timedelta(days=7))


def test_cleanup_sessions_uses_expiry_or_logout():
    conn = StubConnection(results=[_Cursor(rowcount=2)])
    threshold = utcnow()
    assert _store(conn).cleanup_expired_sessions(threshold) == 2
    sql, params = conn.statements[0]
    assert "expires_at < %s OR (logout_time IS NOT NULL AND logout_time < %s)" in sql
    assert params == (threshold, threshold)


def test_delete_role_blocked_when_referenced():
    conn = StubConnection(
        results=[_Cursor([{"id": "role-1", "name": "Employee"}]), _Cursor([{"?column?": 1}])]
    )
    with pytest.raises(InvalidState):
        _store(conn).delete_role("role-1")
    assert not any(sql.startswith("DELETE") for sql, _ in conn.statements)


def test_administrator_cannot_be_deactivated():
    conn = StubConnection(results=[_Cursor([{"id": "role-1", "name": "Administrator"}])])
    with pytest.raises(InvalidState):
        _store(conn).set_role_active("role-1", False)


def test_unknown_permission_flag_rejected_before_sql():
    conn = StubConnection()
    with pytest.raises(ValidationFailure):
        _store(conn).update_role_permissions("role-1", {"can_fly": True})
    assert conn.statements == []


def test_concurrent_limit_evicts_oldest_session():
    active = [{"id": f"s{i}"} for i in range(5)]
    conn = StubConnection(results=[_Cursor(active)])
    _store(conn).create_session("user-1", "tok", ttl=timedelta(hours=8), max_concurrent=5)
    evict_sql, evict_params = conn.statements[1]
    assert evict_sql.startswith("UPDATE user_session SET is_active = FALSE")
    assert evict_params[1] == "s0"
    assert conn.statements[2][0].startswith("INSERT INTO user_session")


def test_operational_error_becomes_transient():
    class FailingPool:
        def connection(self):
            raise errors.OperationalError("connection refused")

    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = FailingPool()
    from staffauth.logging import get_logger

    store.logger = get_logger("tests.postgres")
    with pytest.raises(TransientStorageError):
        store.get_role("role-1")


def test_failed_attempts_by_username_is_case_insensitive():
    conn = StubConnection(results=[_Cursor([{"total": 4}])])
    since = utcnow() - timedelta(hours=1)
    assert _store(conn).count_failed_attempts_by_username("JDoe", since) == 4
    sql, params = conn.statements[0]
    assert "action = 'login' AND NOT was_successful" in sql
    assert "lower(username_attempted) = lower(%s) AND timestamp >= %s" in sql
    assert params == ("JDoe", since)


def test_failed_attempts_by_ip():
    conn = StubConnection(results=[_Cursor([{"total": 2}])])
    since = utcnow()
    assert _store(conn).count_failed_attempts_by_ip("10.0.0.5", since) == 2
    sql, params = conn.statements[0]
    assert "ip_address = %s AND timestamp >= %s" in sql
    assert params == ("10.0.0.5", since)


def test_purge_auth_events_deletes_before_threshold():
    conn = StubConnection(results=[_Cursor(rowcount=7)])
    threshold = utcnow() - timedelta(days=90)
    assert _store(conn).purge_auth_events(threshold) == 7
    assert conn.statements == [("DELETE FROM auth_log WHERE timestamp < %s", (threshold,))]
