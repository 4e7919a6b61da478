import contextlib
import uuid
from datetime import datetime, timedelta, timezone

import psycopg
import pytest

from tessera.logging import get_logger
from tessera.service.password_reset import PasswordResetFlow
from tessera.service.sessions import SessionService
from tessera.storage.counters import RateDecision
from tessera.storage.errors import ConstraintViolation, StorageUnavailable
from tessera.storage.postgres import PostgresStore, PostgresUnit


class DummyCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None


class DummyConn:
    def __init__(self, *results):
        self.results = list(results)
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        return self.results.pop(0) if self.results else DummyCursor()


class DummyPool:
    def __init__(self, conn=None, exc=None):
        self.conn = conn
        self.exc = exc

    @contextlib.contextmanager
    def connection(self):
        if self.exc is not None:
            raise self.exc
        yield self.conn


def _store(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = pool
    store.dsn = "postgresql://stub"
    store.logger = get_logger("tests.postgres")
    return store


def _session_row(**overrides):
    now = datetime.now(timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "user_id": uuid.uuid4(),
        "refresh_token_hash": "h1",
        "created_at": now,
        "last_seen_at": now,
        "expires_at": now + timedelta(days=7),
        "authenticated_at": now,
        "revoked_at": None,
        "revocation_reason": None,
        "replaced_by_session_id": None,
        "user_agent": None,
        "ip_addr": None,
    }
    row.update(overrides)
    return row


class TestPostgresUnit:
    """SQL issued by a unit bound to one connection."""

    def test_conditional_revoke_reports_outcome(self):
        conn = DummyConn(DummyCursor(rowcount=1), DummyCursor(rowcount=0))
        unit = PostgresUnit(conn)
        now = datetime.now(timezone.utc)

        assert unit.revoke_session_if_active("s1", reason="rotated", now=now, expected_hash="h1")
        assert not unit.revoke_session_if_active("s1", reason="rotated", now=now, expected_hash="h1")
        sql, params = conn.statements[0]
        assert "revoked_at IS NULL" in sql
        assert params["expected_hash"] == "h1"

    def test_refresh_hash_swap_requires_placeholder(self):
        unit = PostgresUnit(DummyConn(DummyCursor(rowcount=0)))
        with pytest.raises(ConstraintViolation):
            unit.set_session_refresh_hash("s1", expected_hash="pending", refresh_token_hash="real")

    def test_session_rows_are_mapped(self):
        row = _session_row(replaced_by_session_id=uuid.uuid4())
        unit = PostgresUnit(DummyConn(DummyCursor(rows=[row])))

        session = unit.get_session(str(row["id"]))

        assert session.id == str(row["id"])
        assert session.user_id == str(row["user_id"])
        assert session.replaced_by_session_id == str(row["replaced_by_session_id"])

    def test_otp_attempt_outside_budget_returns_none(self):
        unit = PostgresUnit(DummyConn(DummyCursor(rows=[])))
        now = datetime.now(timezone.utc)

        assert unit.record_otp_attempt("r1", now=now, verified=False, max_attempts=3) is None

    def test_rate_window_blocks_at_limit(self):
        oldest = datetime.now(timezone.utc) - timedelta(minutes=5)
        conn = DummyConn(
            DummyCursor(),
            DummyCursor(),
            DummyCursor(rows=[{"hits": 3, "oldest": oldest}]),
        )
        unit = PostgresUnit(conn)

        allowed, count, first = unit.hit_rate_window(
            "reset:u1", now=datetime.now(timezone.utc), window=timedelta(hours=1), limit=3
        )

        assert (allowed, count, first) == (False, 3, oldest)
        assert not any("INSERT INTO rate_event" in sql for sql, _ in conn.statements)


class TestPostgresStore:
    """Pooled transactions and error mapping."""

    def test_connection_failure_is_storage_unavailable(self):
        store = _store(DummyPool(exc=psycopg.OperationalError("connection refused")))

        with pytest.raises(StorageUnavailable):
            store.get_user("u1")

    def test_runs_unit_on_pooled_connection(self):
        conn = DummyConn(DummyCursor(rows=[]))
        store = _store(DummyPool(conn=conn))

        assert store.get_user_by_email(" Dave@Example.com ") is None
        assert conn.statements[0][1] == ("dave@example.com",)


class AllowAllCounter:
    async def hit(self, key, *, limit, window):
        return RateDecision(True, 1)


class TestResetRequestCreation:
    """Creating a reset request serializes on the user before superseding."""

    async def test_user_lock_precedes_supersede_and_insert(
        self, codec, hasher, events, settings, clock
    ):
        conn = DummyConn()
        store = _store(DummyPool(conn=conn))
        sessions = SessionService(store, codec, settings, events, clock=clock)
        flow = PasswordResetFlow(
            store, sessions, codec, hasher, AllowAllCounter(), events, settings, clock=clock
        )

        issue = await flow.create_request("u1", "u1@example.com")

        statements = [sql for sql, _ in conn.statements]
        lock = next(i for i, sql in enumerate(statements) if "pg_advisory_xact_lock" in sql)
        supersede = [i for i, sql in enumerate(statements) if "UPDATE password_reset_request" in sql]
        insert = next(i for i, sql in enumerate(statements) if "INSERT INTO password_reset_request" in sql)
        assert supersede and lock < min(supersede)
        assert lock < insert
        assert conn.statements[lock][1] == ("password_reset:u1",)
        assert issue.max_attempts == settings.reset_max_attempts
