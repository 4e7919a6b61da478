from __future__ import annotations

import contextlib
import copy
import json
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from tessera.logging import get_logger
from tessera.storage.common import (
    deserialize_record,
    normalize_email,
    rate_key_digest,
    serialize_record,
)
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import RateEvent, ResetRequest, Session, User


class MemoryStore:
    """In-process repository for tests and single-node development.

    Every operation runs under one re-entrant lock, so ``transaction()``
    serializes whole units of work and restores a snapshot if the unit raises.
    When ``fs_root`` is given, committed state is mirrored to a JSON file.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.sessions: Dict[str, Session] = {}
        self.reset_requests: Dict[str, ResetRequest] = {}
        self.rate_events: Dict[str, List[RateEvent]] = {}
        # RLock so a transaction can call the public methods it wraps
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # transactions
    @contextlib.contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            snapshot = self._snapshot()
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._tx_depth -= 1
                self._restore(snapshot)
                raise
            self._tx_depth -= 1
            self._persist_state()

    def _snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(
            {
                "users": self.users,
                "credentials": self.credentials,
                "sessions": self.sessions,
                "reset_requests": self.reset_requests,
                "rate_events": self.rate_events,
            }
        )

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self.users = snapshot["users"]
        self.credentials = snapshot["credentials"]
        self.sessions = snapshot["sessions"]
        self.reset_requests = snapshot["reset_requests"]
        self.rate_events = snapshot["rate_events"]

    # users
    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                role=role,
                is_active=is_active,
                email_verified=email_verified,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == normalized), None)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def record_login_failure(
        self, user_id: str, *, now: datetime, limit: int, lock_for: timedelta
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_count += 1
            user.last_failed_login_at = now
            if user.failed_login_count >= limit:
                user.failed_login_count = 0
                user.locked_until = now + lock_for
            self._persist_state()
            return user

    def record_login_success(self, user_id: str, *, now: datetime) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_login_count = 0
            user.locked_until = None
            user.last_login_at = now
            self._persist_state()

    def clear_login_failures(self, user_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.failed_login_count = 0
            user.last_failed_login_at = None
            user.locked_until = None
            self._persist_state()

    # sessions
    def insert_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if session.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"session_id": session.id})
            clash = self.find_session_by_refresh_hash(session.user_id, session.refresh_token_hash)
            if clash and clash.revoked_at is None:
                raise ConstraintViolation(
                    "active session already bound to refresh hash",
                    {"session_id": clash.id},
                )
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def find_session_by_refresh_hash(
        self, user_id: str, refresh_token_hash: str
    ) -> Optional[Session]:
        with self._data_lock:
            matches = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and s.refresh_token_hash == refresh_token_hash
            ]
            # Prefer the unrevoked row if a hash was ever reused
            matches.sort(key=lambda s: (s.revoked_at is not None, -s.created_at.timestamp()))
            return matches[0] if matches else None

    def set_session_refresh_hash(
        self, session_id: str, *, expected_hash: str, refresh_token_hash: str
    ) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.refresh_token_hash != expected_hash:
                raise ConstraintViolation(
                    "refresh hash already bound", {"session_id": session_id}
                )
            sess.refresh_token_hash = refresh_token_hash
            self._persist_state()

    def revoke_session_if_active(
        self,
        session_id: str,
        *,
        reason: str,
        now: datetime,
        replaced_by: Optional[str] = None,
        expected_hash: Optional[str] = None,
    ) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked_at is not None:
                return False
            if expected_hash is not None and sess.refresh_token_hash != expected_hash:
                return False
            sess.revoked_at = now
            sess.revocation_reason = reason
            if replaced_by:
                sess.replaced_by_session_id = replaced_by
            self._persist_state()
            return True

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        reason: str,
        now: datetime,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or sess.revoked_at is not None:
                    continue
                if except_session_id and sess.id == except_session_id:
                    continue
                sess.revoked_at = now
                sess.revocation_reason = reason
                count += 1
            if count:
                self._persist_state()
            return count

    def touch_session(self, session_id: str, *, now: datetime) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if sess and sess.revoked_at is None:
                sess.last_seen_at = now
                self._persist_state()

    def revoke_expired_sessions(self, user_id: str, *, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.user_id == user_id and sess.revoked_at is None and sess.expires_at <= now:
                    sess.revoked_at = now
                    sess.revocation_reason = "expired"
                    count += 1
            if count:
                self._persist_state()
            return count

    # password reset
    def lock_user_reset_requests(self, user_id: str) -> None:
        # transaction() already holds the store-wide lock
        return None

    def insert_reset_request(self, request: ResetRequest) -> ResetRequest:
        with self._data_lock:
            if request.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": request.user_id})
            if any(r.token_hash == request.token_hash for r in self.reset_requests.values()):
                raise ConstraintViolation("reset token collision", {"field": "token_hash"})
            self.reset_requests[request.id] = request
            self._persist_state()
            return request

    def get_reset_request(self, request_id: str) -> Optional[ResetRequest]:
        with self._data_lock:
            return self.reset_requests.get(request_id)

    def find_reset_request_by_token(self, token_hash: str) -> Optional[ResetRequest]:
        with self._data_lock:
            return next(
                (r for r in self.reset_requests.values() if r.token_hash == token_hash),
                None,
            )

    def record_otp_attempt(
        self,
        request_id: str,
        *,
        now: datetime,
        verified: bool,
        max_attempts: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[ResetRequest]:
        with self._data_lock:
            req = self.reset_requests.get(request_id)
            if (
                not req
                or not req.is_open(now)
                or req.attempt_count >= max_attempts
            ):
                return None
            req.attempt_count += 1
            if verified:
                req.verified_at = now
            if metadata:
                req.metadata = {**req.metadata, **metadata}
            self._persist_state()
            return req

    def consume_reset_request(
        self,
        request_id: str,
        *,
        now: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        with self._data_lock:
            req = self.reset_requests.get(request_id)
            if not req or req.consumed_at is not None:
                return False
            req.consumed_at = now
            if metadata:
                req.metadata = {**req.metadata, **metadata}
            self._persist_state()
            return True

    def consume_user_reset_requests(
        self, user_id: str, *, now: datetime, expired_only: bool = False
    ) -> int:
        with self._data_lock:
            count = 0
            for req in self.reset_requests.values():
                if req.user_id != user_id or req.consumed_at is not None:
                    continue
                if expired_only and req.expires_at > now:
                    continue
                req.consumed_at = now
                count += 1
            if count:
                self._persist_state()
            return count

    # shared counters
    def hit_rate_window(
        self, key: str, *, now: datetime, window: timedelta, limit: int
    ) -> tuple[bool, int, Optional[datetime]]:
        digest = rate_key_digest(key)
        with self._data_lock:
            cutoff = now - window
            events = [e for e in self.rate_events.get(digest, []) if e.occurred_at > cutoff]
            allowed = len(events) < limit
            if allowed:
                events.append(RateEvent(key=digest, occurred_at=now))
            self.rate_events[digest] = events
            oldest = min((e.occurred_at for e in events), default=None)
            self._persist_state()
            return allowed, len(events), oldest

    # persistence
    def _state_path(self) -> Path:
        assert self.fs_root is not None
        return self.fs_root / "tessera_state.json"

    def _persist_state(self) -> None:
        if self.fs_root is None or self._tx_depth:
            return
        state = {
            "users": [serialize_record(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": creds[0], "password_algo": creds[1]}
                for user_id, creds in self.credentials.items()
            ],
            "sessions": [serialize_record(s) for s in self.sessions.values()],
            "reset_requests": [serialize_record(r) for r in self.reset_requests.values()],
            "rate_events": [
                serialize_record(e) for events in self.rate_events.values() for e in events
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(state))
        tmp_path.replace(path)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: deserialize_record(User, u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: deserialize_record(Session, s) for s in data.get("sessions", [])
        }
        self.reset_requests = {
            r["id"]: deserialize_record(ResetRequest, r)
            for r in data.get("reset_requests", [])
        }
        self.rate_events = {}
        for raw in data.get("rate_events", []):
            event = deserialize_record(RateEvent, raw)
            self.rate_events.setdefault(event.key, []).append(event)
        return True
