"""Shared storage contract and helpers for the memory and postgres backends.

Both backends expose the same :class:`AuthRepository` surface. ``transaction()``
yields an object with that surface whose writes commit together or not at all.
Conditional writes (``revoke_session_if_active``, ``record_otp_attempt``,
``consume_reset_request``) report whether they applied so callers can detect a
lost race without application-level locks.
"""

from __future__ import annotations

import hashlib
from dataclasses import fields
from datetime import datetime, timedelta
from typing import Any, ContextManager, Dict, Optional, Protocol, Type, TypeVar

from tessera.storage.models import RateEvent, ResetRequest, Session, User

T = TypeVar("T")


class AuthRepository(Protocol):
    # users
    def create_user(
        self,
        email: str,
        *,
        role: str = "user",
        is_active: bool = True,
        email_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def record_login_failure(
        self, user_id: str, *, now: datetime, limit: int, lock_for: timedelta
    ) -> Optional[User]: ...

    def record_login_success(self, user_id: str, *, now: datetime) -> None: ...

    def clear_login_failures(self, user_id: str) -> None: ...

    # sessions
    def insert_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def find_session_by_refresh_hash(
        self, user_id: str, refresh_token_hash: str
    ) -> Optional[Session]: ...

    def set_session_refresh_hash(
        self, session_id: str, *, expected_hash: str, refresh_token_hash: str
    ) -> None: ...

    def revoke_session_if_active(
        self,
        session_id: str,
        *,
        reason: str,
        now: datetime,
        replaced_by: Optional[str] = None,
        expected_hash: Optional[str] = None,
    ) -> bool: ...

    def revoke_user_sessions(
        self,
        user_id: str,
        *,
        reason: str,
        now: datetime,
        except_session_id: Optional[str] = None,
    ) -> int: ...

    def touch_session(self, session_id: str, *, now: datetime) -> None: ...

    def revoke_expired_sessions(self, user_id: str, *, now: datetime) -> int: ...

    # password reset
    def lock_user_reset_requests(self, user_id: str) -> None: ...

    def insert_reset_request(self, request: ResetRequest) -> ResetRequest: ...

    def get_reset_request(self, request_id: str) -> Optional[ResetRequest]: ...

    def find_reset_request_by_token(self, token_hash: str) -> Optional[ResetRequest]: ...

    def record_otp_attempt(
        self,
        request_id: str,
        *,
        now: datetime,
        verified: bool,
        max_attempts: int,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[ResetRequest]: ...

    def consume_reset_request(
        self,
        request_id: str,
        *,
        now: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool: ...

    def consume_user_reset_requests(
        self, user_id: str, *, now: datetime, expired_only: bool = False
    ) -> int: ...

    # shared counters
    def hit_rate_window(
        self, key: str, *, now: datetime, window: timedelta, limit: int
    ) -> tuple[bool, int, Optional[datetime]]: ...

    def transaction(self) -> ContextManager["AuthRepository"]: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


def rate_key_digest(key: str) -> str:
    """Hash rate keys so caller-supplied values cannot collide on delimiters."""
    return "rate:" + hashlib.sha256(key.encode()).hexdigest()


def serialize_record(record: Any) -> Dict[str, Any]:
    """Flatten a model dataclass into JSON-safe primitives."""
    data: Dict[str, Any] = {}
    for f in fields(record):
        value = getattr(record, f.name)
        if isinstance(value, datetime):
            value = value.isoformat()
        data[f.name] = value
    return data


_DATETIME_FIELDS: Dict[type, set[str]] = {
    User: {"created_at", "last_failed_login_at", "locked_until", "last_login_at"},
    Session: {"created_at", "last_seen_at", "expires_at", "authenticated_at", "revoked_at"},
    ResetRequest: {"created_at", "expires_at", "verified_at", "consumed_at"},
    RateEvent: {"occurred_at"},
}


def deserialize_record(model: Type[T], data: Dict[str, Any]) -> T:
    """Inverse of :func:`serialize_record`; unknown keys are dropped."""
    known = {f.name for f in fields(model)}
    dt_fields = _DATETIME_FIELDS.get(model, set())
    kwargs: Dict[str, Any] = {}
    for key, value in data.items():
        if key not in known:
            continue
        if key in dt_fields and isinstance(value, str):
            value = datetime.fromisoformat(value)
        kwargs[key] = value
    return model(**kwargs)
