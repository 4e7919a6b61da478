from __future__ import annotations

import contextlib
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from tessera.logging import get_logger
from tessera.storage.common import normalize_email, rate_key_digest
from tessera.storage.errors import ConstraintViolation, StorageUnavailable
from tessera.storage.models import ResetRequest, Session, User

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        role TEXT NOT NULL DEFAULT 'user',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_banned BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_count INTEGER NOT NULL DEFAULT 0,
        last_failed_login_at TIMESTAMPTZ,
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        refresh_token_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        last_seen_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        authenticated_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        revocation_reason TEXT,
        replaced_by_session_id UUID,
        user_agent TEXT,
        ip_addr TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS auth_session_active_hash_idx
        ON auth_session (user_id, refresh_token_hash) WHERE revoked_at IS NULL
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS password_reset_request (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        otp_hash TEXT NOT NULL,
        token_hash TEXT NOT NULL UNIQUE,
        otp_hint TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        verified_at TIMESTAMPTZ,
        consumed_at TIMESTAMPTZ,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    "CREATE INDEX IF NOT EXISTS password_reset_user_idx ON password_reset_request (user_id)",
    """
    CREATE TABLE IF NOT EXISTS rate_event (
        id BIGSERIAL PRIMARY KEY,
        key TEXT NOT NULL,
        occurred_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS rate_event_key_idx ON rate_event (key, occurred_at)",
)


def _user_from_row(row: Dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        role=row.get("role", "user"),
        created_at=row["created_at"],
        is_active=row.get("is_active", True),
        is_banned=row.get("is_banned", False),
        email_verified=row.get("email_verified", False),
        failed_login_count=row.get("failed_login_count", 0),
        last_failed_login_at=row.get("last_failed_login_at"),
        locked_until=row.get("locked_until"),
        last_login_at=row.get("last_login_at"),
    )


def _session_from_row(row: Dict[str, Any]) -> Session:
    replaced_by = row.get("replaced_by_session_id")
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        refresh_token_hash=row["refresh_token_hash"],
        created_at=row["created_at"],
        last_seen_at=row["last_seen_at"],
        expires_at=row["expires_at"],
        authenticated_at=row["authenticated_at"],
        revoked_at=row.get("revoked_at"),
        revocation_reason=row.get("revocation_reason"),
        replaced_by_session_id=str(replaced_by) if replaced_by else None,
        user_agent=row.get("user_agent"),
        ip_addr=row.get("ip_addr"),
    )


def _reset_from_row(row: Dict[str, Any]) -> ResetRequest:
    return ResetRequest(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        otp_hash=row["otp_hash"],
        token_hash=row["token_hash"],
        otp_hint=row["otp_hint"],
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        attempt_count=row.get("attempt_count", 0),
        verified_at=row.get("verified_at"),
        consumed_at=row.get("consumed_at"),
        metadata=dict(row.get("metadata") or {}),
    )


class PostgresUnit:
    """Repository operations bound to one connection and one transaction."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    @contextlib.contextmanager
    def transaction(self) -> Iterator["PostgresUnit"]:
        # Already inside the outer transaction
        yield self

    # users
    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User:
        row = self.conn.execute(
            """
            INSERT INTO app_user (id, email, role, is_active, email_verified)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING *
            """,
            (str(uuid.uuid4()), normalize_email(email), role, is_active, email_verified),
        ).fetchone()
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        row = self.conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        row = self.conn.execute(
            "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
        ).fetchone()
        return _user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        self.conn.execute(
            """
            INSERT INTO user_credential (user_id, password_hash, password_algo, updated_at)
            VALUES (%s, %s, %s, now())
            ON CONFLICT (user_id) DO UPDATE
               SET password_hash = EXCLUDED.password_hash,
                   password_algo = EXCLUDED.password_algo,
                   updated_at = now()
            """,
            (user_id, password_hash, password_algo),
        )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        row = self.conn.execute(
            "SELECT password_hash, password_algo FROM user_credential WHERE user_id = %s",
            (user_id,),
        ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def record_login_failure(
        self, user_id: str, *, now: datetime, limit: int, lock_for: timedelta
    ) -> Optional[User]:
        row = self.conn.execute(
            """
            UPDATE app_user
               SET failed_login_count = CASE
                       WHEN failed_login_count + 1 >= %(limit)s THEN 0
                       ELSE failed_login_count + 1 END,
                   locked_until = CASE
                       WHEN failed_login_count + 1 >= %(limit)s THEN %(locked_until)s
                       ELSE locked_until END,
                   last_failed_login_at = %(now)s
             WHERE id = %(user_id)s
            RETURNING *
            """,
            {
                "limit": limit,
                "locked_until": now + lock_for,
                "now": now,
                "user_id": user_id,
            },
        ).fetchone()
        return _user_from_row(row) if row else None

    def record_login_success(self, user_id: str, *, now: datetime) -> None:
        self.conn.execute(
            """
            UPDATE app_user
               SET failed_login_count = 0, locked_until = NULL, last_login_at = %s
             WHERE id = %s
            """,
            (now, user_id),
        )

    def clear_login_failures(self, user_id: str) -> None:
        self.conn.execute(
            """
            UPDATE app_user
               SET failed_login_count = 0, last_failed_login_at = NULL, locked_until = NULL
             WHERE id = %s
            """,
            (user_id,),
        )

    # sessions
    def insert_session(self, session: Session) -> Session:
        self.conn.execute(
            """
            INSERT INTO auth_session (
                id, user_id, refresh_token_hash, created_at, last_seen_at, expires_at,
                authenticated_at, user_agent, ip_addr
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.user_id,
                session.refresh_token_hash,
                session.created_at,
                session.last_seen_at,
                session.expires_at,
                session.authenticated_at,
                session.user_agent,
                session.ip_addr,
            ),
        )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        row = self.conn.execute(
            "SELECT * FROM auth_session WHERE id = %s", (session_id,)
        ).fetchone()
        return _session_from_row(row) if row else None

    def find_session_by_refresh_hash(
        self, user_id: str, refresh_token_hash: str
    ) -> Optional[Session]:
        row = self.conn.execute(
            """
            SELECT * FROM auth_session
             WHERE user_id = %s AND refresh_token_hash = %s
             ORDER BY (revoked_at IS NOT NULL), created_at DESC
             LIMIT 1
            """,
            (user_id, refresh_token_hash),
        ).fetchone()
        return _session_from_row(row) if row else None

    def set_session_refresh_hash(
        self, session_id: str, *, expected_hash: str, refresh_token_hash: str
    ) -> None:
        cur = self.conn.execute(
            """
            UPDATE auth_session SET refresh_token_hash = %s
             WHERE id = %s AND refresh_token_hash = %s
            """,
            (refresh_token_hash, session_id, expected_hash),
        )
        if cur.rowcount != 1:
            raise ConstraintViolation("refresh hash already bound", {"session_id": session_id})

    def revoke_session_if_active(
        self,
        session_id: str,
        *,
        reason: str,
        now: datetime,
        replaced_by: Optional[str] = None,
        expected_hash: Optional[str] = None,
    ) -> bool:
        # Row lock taken here serializes concurrent rotations of one session
        cur = self.conn.execute(
            """
            UPDATE auth_session
               SET revoked_at = %(now)s,
                   revocation_reason = %(reason)s,
                   replaced_by_session_id = COALESCE(%(replaced_by)s, replaced_by_session_id)
             WHERE id = %(session_id)s
               AND revoked_at IS NULL
               AND (%(expected_hash)s::text IS NULL OR refresh_token_hash = %(expected_hash)s)
            """,
            {
                "now": now,
                "reason": reason,
                "replaced_by": replaced_by,
                "session_id": session_id,
                "expected_hash": expected_hash,
            },
        )
        return cur.rowcount == 1

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        reason: str,
        now: datetime,
        except_session_id: Optional[str] = None,
    ) -> int:
        cur = self.conn.execute(
            """
            UPDATE auth_session
               SET revoked_at = %(now)s, revocation_reason = %(reason)s
             WHERE user_id = %(user_id)s
               AND revoked_at IS NULL
               AND (%(except_id)s::uuid IS NULL OR id <> %(except_id)s::uuid)
            """,
            {"now": now, "reason": reason, "user_id": user_id, "except_id": except_session_id},
        )
        return cur.rowcount

    def touch_session(self, session_id: str, *, now: datetime) -> None:
        self.conn.execute(
            """
            UPDATE auth_session SET last_seen_at = %s
             WHERE id = %s AND revoked_at IS NULL
            """,
            (now, session_id),
        )

    def revoke_expired_sessions(self, user_id: str, *, now: datetime) -> int:
        cur = self.conn.execute(
            """
            UPDATE auth_session
               SET revoked_at = %(now)s, revocation_reason = 'expired'
             WHERE user_id = %(user_id)s AND revoked_at IS NULL AND expires_at <= %(now)s
            """,
            {"now": now, "user_id": user_id},
        )
        return cur.rowcount

    # password reset
    def lock_user_reset_requests(self, user_id: str) -> None:
        # Held until commit; concurrent creates for one user queue here
        self.conn.execute(
            "SELECT pg_advisory_xact_lock(hashtext(%s))", (f"password_reset:{user_id}",)
        )

    def insert_reset_request(self, request: ResetRequest) -> ResetRequest:
        self.conn.execute(
            """
            INSERT INTO password_reset_request (
                id, user_id, otp_hash, token_hash, otp_hint, created_at, expires_at,
                attempt_count, metadata
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                request.id,
                request.user_id,
                request.otp_hash,
                request.token_hash,
                request.otp_hint,
                request.created_at,
                request.expires_at,
                request.attempt_count,
                Jsonb(request.metadata),
            ),
        )
        return request

    def get_reset_request(self, request_id: str) -> Optional[ResetRequest]:
        row = self.conn.execute(
            "SELECT * FROM password_reset_request WHERE id = %s", (request_id,)
        ).fetchone()
        return _reset_from_row(row) if row else None

    def find_reset_request_by_token(self, token_hash: str) -> Optional[ResetRequest]:
        row = self.conn.execute(
            "SELECT * FROM password_reset_request WHERE token_hash = %s", (token_hash,)
        ).fetchone()
        return _reset_from_row(row) if row else None

    def record_otp_attempt(
        self,
        request_id: str,
        *,
        now: datetime,
        verified: bool,
        max_attempts: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[ResetRequest]:
        row = self.conn.execute(
            """
            UPDATE password_reset_request
               SET attempt_count = attempt_count + 1,
                   verified_at = CASE WHEN %(verified)s THEN %(now)s ELSE verified_at END,
                   metadata = metadata || %(metadata)s
             WHERE id = %(request_id)s
               AND consumed_at IS NULL
               AND expires_at > %(now)s
               AND attempt_count < %(max_attempts)s
            RETURNING *
            """,
            {
                "verified": verified,
                "now": now,
                "metadata": Jsonb(metadata or {}),
                "request_id": request_id,
                "max_attempts": max_attempts,
            },
        ).fetchone()
        return _reset_from_row(row) if row else None

    def consume_reset_request(
        self,
        request_id: str,
        *,
        now: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        cur = self.conn.execute(
            """
            UPDATE password_reset_request
               SET consumed_at = %(now)s, metadata = metadata || %(metadata)s
             WHERE id = %(request_id)s AND consumed_at IS NULL
            """,
            {"now": now, "metadata": Jsonb(metadata or {}), "request_id": request_id},
        )
        return cur.rowcount == 1

    def consume_user_reset_requests(
        self, user_id: str, *, now: datetime, expired_only: bool = False
    ) -> int:
        cur = self.conn.execute(
            """
            UPDATE password_reset_request
               SET consumed_at = %(now)s
             WHERE user_id = %(user_id)s
               AND consumed_at IS NULL
               AND (NOT %(expired_only)s OR expires_at <= %(now)s)
            """,
            {"now": now, "user_id": user_id, "expired_only": expired_only},
        )
        return cur.rowcount

    # shared counters
    def hit_rate_window(
        self, key: str, *, now: datetime, window: timedelta, limit: int
    ) -> tuple[bool, int, Optional[datetime]]:
        digest = rate_key_digest(key)
        # Serialize hits per key for the rest of this transaction
        self.conn.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (digest,))
        self.conn.execute(
            "DELETE FROM rate_event WHERE key = %s AND occurred_at <= %s",
            (digest, now - window),
        )
        row = self.conn.execute(
            "SELECT count(*) AS hits, min(occurred_at) AS oldest FROM rate_event WHERE key = %s",
            (digest,),
        ).fetchone()
        hits = int(row["hits"])
        oldest = row["oldest"]
        if hits >= limit:
            return False, hits, oldest
        self.conn.execute(
            "INSERT INTO rate_event (key, occurred_at) VALUES (%s, %s)", (digest, now)
        )
        return True, hits + 1, oldest or now


class PostgresStore:
    """Postgres-backed repository; each call runs in its own transaction."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self.transaction() as unit:
            for statement in _SCHEMA_STATEMENTS:
                unit.conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    @contextlib.contextmanager
    def transaction(self) -> Iterator[PostgresUnit]:
        """Run a unit of work on one connection; commit on success, roll back on error."""
        try:
            with self._connect() as conn:
                yield PostgresUnit(conn)
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "unique constraint violated",
                {"constraint": getattr(exc.diag, "constraint_name", None)},
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "foreign key violated",
                {"constraint": getattr(exc.diag, "constraint_name", None)},
            ) from exc
        except (psycopg.OperationalError, psycopg.InterfaceError) as exc:
            self.logger.error(
                "postgres_unavailable", error_type=type(exc).__name__, error=str(exc)
            )
            raise StorageUnavailable("database unavailable") from exc

    # users
    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User:
        try:
            with self.transaction() as unit:
                return unit.create_user(
                    email, role=role, is_active=is_active, email_verified=email_verified
                )
        except ConstraintViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc

    def get_user(self, user_id: str) -> Optional[User]:
        with self.transaction() as unit:
            return unit.get_user(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self.transaction() as unit:
            return unit.get_user_by_email(email)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self.transaction() as unit:
            unit.save_password(user_id, password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self.transaction() as unit:
            return unit.get_password_record(user_id)

    def record_login_failure(
        self, user_id: str, *, now: datetime, limit: int, lock_for: timedelta
    ) -> Optional[User]:
        with self.transaction() as unit:
            return unit.record_login_failure(user_id, now=now, limit=limit, lock_for=lock_for)

    def record_login_success(self, user_id: str, *, now: datetime) -> None:
        with self.transaction() as unit:
            unit.record_login_success(user_id, now=now)

    def clear_login_failures(self, user_id: str) -> None:
        with self.transaction() as unit:
            unit.clear_login_failures(user_id)

    # sessions
    def insert_session(self, session: Session) -> Session:
        with self.transaction() as unit:
            return unit.insert_session(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self.transaction() as unit:
            return unit.get_session(session_id)

    def find_session_by_refresh_hash(
        self, user_id: str, refresh_token_hash: str
    ) -> Optional[Session]:
        with self.transaction() as unit:
            return unit.find_session_by_refresh_hash(user_id, refresh_token_hash)

    def set_session_refresh_hash(
        self, session_id: str, *, expected_hash: str, refresh_token_hash: str
    ) -> None:
        with self.transaction() as unit:
            unit.set_session_refresh_hash(
                session_id, expected_hash=expected_hash, refresh_token_hash=refresh_token_hash
            )

    def revoke_session_if_active(
        self,
        session_id: str,
        *,
        reason: str,
        now: datetime,
        replaced_by: Optional[str] = None,
        expected_hash: Optional[str] = None,
    ) -> bool:
        with self.transaction() as unit:
            return unit.revoke_session_if_active(
                session_id,
                reason=reason,
                now=now,
                replaced_by=replaced_by,
                expected_hash=expected_hash,
            )

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        reason: str,
        now: datetime,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self.transaction() as unit:
            return unit.revoke_user_sessions(
                user_id, reason=reason, now=now, except_session_id=except_session_id
            )

    def touch_session(self, session_id: str, *, now: datetime) -> None:
        with self.transaction() as unit:
            unit.touch_session(session_id, now=now)

    def revoke_expired_sessions(self, user_id: str, *, now: datetime) -> int:
        with self.transaction() as unit:
            return unit.revoke_expired_sessions(user_id, now=now)

    # password reset
    def lock_user_reset_requests(self, user_id: str) -> None:
        """Only meaningful on the unit yielded by :meth:`transaction`."""
        with self.transaction() as unit:
            unit.lock_user_reset_requests(user_id)

    def insert_reset_request(self, request: ResetRequest) -> ResetRequest:
        with self.transaction() as unit:
            return unit.insert_reset_request(request)

    def get_reset_request(self, request_id: str) -> Optional[ResetRequest]:
        with self.transaction() as unit:
            return unit.get_reset_request(request_id)

    def find_reset_request_by_token(self, token_hash: str) -> Optional[ResetRequest]:
        with self.transaction() as unit:
            return unit.find_reset_request_by_token(token_hash)

    def record_otp_attempt(
        self,
        request_id: str,
        *,
        now: datetime,
        verified: bool,
        max_attempts: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[ResetRequest]:
        with self.transaction() as unit:
            return unit.record_otp_attempt(
                request_id,
                now=now,
                verified=verified,
                max_attempts=max_attempts,
                metadata=metadata,
            )

    def consume_reset_request(
        self,
        request_id: str,
        *,
        now: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        with self.transaction() as unit:
            return unit.consume_reset_request(request_id, now=now, metadata=metadata)

    def consume_user_reset_requests(
        self, user_id: str, *, now: datetime, expired_only: bool = False
    ) -> int:
        with self.transaction() as unit:
            return unit.consume_user_reset_requests(
                user_id, now=now, expired_only=expired_only
            )

    # shared counters
    def hit_rate_window(
        self, key: str, *, now: datetime, window: timedelta, limit: int
    ) -> tuple[bool, int, Optional[datetime]]:
        with self.transaction() as unit:
            return unit.hit_rate_window(key, now=now, window=window, limit=limit)
