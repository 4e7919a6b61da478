from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    email: str
    role: str = "user"
    created_at: datetime = field(default_factory=utcnow)
    is_active: bool = True
    is_banned: bool = False
    email_verified: bool = False
    failed_login_count: int = 0
    last_failed_login_at: Optional[datetime] = None
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None


@dataclass
class Session:
    """Durable record backing one refresh credential.

    ``authenticated_at`` is the creation time of the first session in a
    rotation chain and is copied forward on every rotation.
    """

    id: str
    user_id: str
    refresh_token_hash: str
    created_at: datetime
    last_seen_at: datetime
    expires_at: datetime
    authenticated_at: datetime
    revoked_at: Optional[datetime] = None
    revocation_reason: Optional[str] = None
    replaced_by_session_id: Optional[str] = None
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        refresh_token_hash: str,
        expires_at: datetime,
        authenticated_at: Optional[datetime] = None,
        user_agent: str | None = None,
        ip_addr: str | None = None,
        session_id: str | None = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=session_id or str(uuid.uuid4()),
            user_id=user_id,
            refresh_token_hash=refresh_token_hash,
            created_at=now,
            last_seen_at=now,
            expires_at=expires_at,
            authenticated_at=authenticated_at or now,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_active(self, now: datetime) -> bool:
        return self.revoked_at is None and self.expires_at > now


@dataclass
class ResetRequest:
    id: str
    user_id: str
    otp_hash: str
    token_hash: str
    otp_hint: str
    created_at: datetime
    expires_at: datetime
    attempt_count: int = 0
    verified_at: Optional[datetime] = None
    consumed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def is_open(self, now: datetime) -> bool:
        return self.consumed_at is None and self.expires_at > now


@dataclass
class RateEvent:
    key: str
    occurred_at: datetime
