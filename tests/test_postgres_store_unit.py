import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import psycopg
import pytest
from psycopg import errors

from authledger.logging import get_logger
from authledger.storage.errors import ConstraintViolation, StorageUnavailable
from authledger.storage.models import RotationOutcome, Session
from authledger.storage.postgres import PostgresStore

NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, result):
        self.result = result

    def fetchone(self):
        if isinstance(self.result, list):
            return self.result[0] if self.result else None
        return self.result

    def fetchall(self):
        return self.result or []


class FakeConnection:
    """Replays scripted results in execute order and records every statement."""

    def __init__(self, results):
        self.results = list(results)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.results.pop(0) if self.results else None
        if isinstance(result, Exception):
            raise result
        return FakeCursor(result)


class FakePool:
    def __init__(self, conn=None, error=None):
        self.conn = conn
        self.error = error

    @contextmanager
    def connection(self):
        if self.error is not None:
            raise self.error
        yield self.conn


def _store(*results) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.logger = get_logger("test")
    store.pool = FakePool(FakeConnection(results))
    return store


def _session_row(session_id, principal_id, **overrides):
    row = {
        "id": session_id,
        "principal_id": principal_id,
        "issued_at": NOW - timedelta(minutes=5),
        "expires_at": NOW + timedelta(days=7),
        "revoked_at": None,
        "revoked_reason": None,
        "parent_id": None,
        "user_agent": "ua",
        "ip_addr": "10.0.0.1",
        "meta": None,
    }
    row.update(overrides)
    return row


class TestRotateSession:
    def test_rotates_and_inserts_successor(self):
        principal_id = str(uuid.uuid4())
        current = _session_row("s1", principal_id)
        consumed = dict(current, revoked_at=NOW, revoked_reason="rotated")
        store = _store({"id": principal_id, "deleted_at": None}, current, consumed, None)
        successor = Session.new(principal_id, 60, NOW, parent_id="s1")

        outcome, session = store.rotate_session("s1", principal_id, successor, NOW)

        assert outcome is RotationOutcome.ROTATED
        assert session.revoked_reason == "rotated"
        statements = [sql for sql, _ in store.pool.conn.statements]
        assert "FOR UPDATE" in statements[0]
        assert statements[2].startswith("UPDATE auth_session")
        assert statements[3].startswith("INSERT INTO auth_session")
        assert store.pool.conn.statements[3][1][0] == successor.id

    def test_foreign_session_is_missing(self):
        store = _store({"id": "p1", "deleted_at": None}, _session_row("s1", "someone-else"))
        outcome, session = store.rotate_session("s1", "p1", Session.new("p1", 60, NOW), NOW)
        assert outcome is RotationOutcome.MISSING
        assert session is None

    def test_deleted_principal(self):
        store = _store({"id": "p1", "deleted_at": NOW}, _session_row("s1", "p1"))
        outcome, _ = store.rotate_session("s1", "p1", Session.new("p1", 60, NOW), NOW)
        assert outcome is RotationOutcome.PRINCIPAL_GONE

    def test_revoked_session_is_reported_without_insert(self):
        store = _store(
            {"id": "p1", "deleted_at": None},
            _session_row("s1", "p1", revoked_at=NOW, revoked_reason="rotated"),
        )
        outcome, session = store.rotate_session("s1", "p1", Session.new("p1", 60, NOW), NOW)
        assert outcome is RotationOutcome.REVOKED
        assert session.revoked_reason == "rotated"
        assert len(store.pool.conn.statements) == 2

    def test_expired_session(self):
        store = _store(
            {"id": "p1", "deleted_at": None},
            _session_row("s1", "p1", expires_at=NOW - timedelta(seconds=1)),
        )
        outcome, _ = store.rotate_session("s1", "p1", Session.new("p1", 60, NOW), NOW)
        assert outcome is RotationOutcome.EXPIRED

    def test_lost_update_race_reports_revoked(self):
        store = _store({"id": "p1", "deleted_at": None}, _session_row("s1", "p1"), None)
        outcome, _ = store.rotate_session("s1", "p1", Session.new("p1", 60, NOW), NOW)
        assert outcome is RotationOutcome.REVOKED


class TestRevocation:
    def test_revoke_all_locks_principal_and_counts(self):
        store = _store({"id": "p1", "deleted_at": None}, [{"id": "a"}, {"id": "b"}])
        assert store.revoke_all_sessions("p1", NOW, except_session_id="keep") == 2

        lock_sql, _ = store.pool.conn.statements[0]
        update_sql, params = store.pool.conn.statements[1]
        assert "FOR UPDATE" in lock_sql
        assert "expires_at >" in update_sql
        assert params["keep"] == "keep"

    def test_revoke_session_reports_change(self):
        assert _store({"id": "s1"}).revoke_session("s1", NOW) is True
        assert _store(None).revoke_session("s1", NOW) is False


class TestErrorMapping:
    def test_duplicate_email_is_constraint_violation(self):
        store = _store(errors.UniqueViolation("duplicate key"))
        with pytest.raises(ConstraintViolation) as exc_info:
            store.create_principal("member", "alice@example.com", "hash", now=NOW)
        assert exc_info.value.detail == {"field": "email", "role": "member"}

    def test_session_for_unknown_principal(self):
        store = _store(errors.ForeignKeyViolation("fk"))
        with pytest.raises(ConstraintViolation):
            store.create_session(Session.new("ghost", 60, NOW))

    def test_unreachable_database(self):
        store = _store()
        store.pool = FakePool(error=psycopg.OperationalError("connection refused"))
        with pytest.raises(StorageUnavailable):
            store.get_principal("p1")


class TestLoginFailures:
    def test_failure_counter_uses_window(self):
        store = _store({"failed_login_count": 3})
        window = timedelta(minutes=15)
        assert store.register_login_failure("p1", NOW, window) == 3

        sql, params = store.pool.conn.statements[0]
        assert params == {"now": NOW, "window": window, "id": "p1"}
        assert "deleted_at IS NULL" in sql

    def test_failure_for_missing_principal(self):
        assert _store(None).register_login_failure("p1", NOW, timedelta(minutes=15)) == 0
