from __future__ import annotations

import secrets
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple

from tessera.config import Settings
from tessera.logging import get_logger
from tessera.service.credentials import CredentialCodec, CredentialPair
from tessera.service.errors import SessionInvalidError, storage_guard
from tessera.service.passwords import digests_match, token_digest
from tessera.service.security_events import SecurityEvent, SecurityEventSink
from tessera.storage.common import AuthRepository
from tessera.storage.models import Session, User

logger = get_logger(__name__)


class SessionService:
    """Session lifecycle: create, rotate, touch, revoke and prune.

    Sessions are created in two phases inside one transaction: the row is
    inserted with an unguessable placeholder hash, the credential pair is
    minted for the new session id, and only then is the real refresh hash
    written. No row ever holds a hash that a client could present before the
    real credential exists.
    """

    def __init__(
        self,
        store: AuthRepository,
        codec: CredentialCodec,
        settings: Settings,
        events: SecurityEventSink,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.settings = settings
        self.events = events
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    def create(
        self,
        user: User,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> Tuple[Session, CredentialPair]:
        now = self._now()
        with storage_guard("session_create"):
            with self.store.transaction() as tx:
                session, pair = self._open_session(
                    tx,
                    user,
                    now=now,
                    authenticated_at=now,
                    user_agent=user_agent,
                    ip=ip,
                )
        self.events.emit(
            SecurityEvent.SESSION_CREATED, user_id=user.id, ip=ip, session_id=session.id
        )
        return session, pair

    def find_active_for_refresh(
        self,
        user_id: str,
        refresh_token: str,
        session_id: Optional[str] = None,
    ) -> Optional[Session]:
        """Return the active session bound to ``refresh_token`` or ``None``.

        Expired rows are revoked on sight. A hash mismatch against an active
        row is reported but leaves the row untouched.
        """
        presented = token_digest(refresh_token)
        now = self._now()
        with storage_guard("session_lookup"):
            if session_id:
                session = self.store.get_session(session_id)
                if session and session.user_id != user_id:
                    session = None
            else:
                session = self.store.find_session_by_refresh_hash(user_id, presented)
            if session is None:
                return None

            hash_matches = digests_match(session.refresh_token_hash, presented)
            if session.revoked_at is not None:
                if hash_matches and session.revocation_reason == "rotated":
                    logger.error(
                        "refresh_reuse_detected",
                        user_id=user_id,
                        session_id=session.id,
                        replaced_by=session.replaced_by_session_id,
                    )
                    self.events.emit(
                        SecurityEvent.REFRESH_REUSE_DETECTED,
                        user_id=user_id,
                        session_id=session.id,
                    )
                return None
            if session.expires_at <= now:
                self.store.revoke_session_if_active(session.id, reason="expired", now=now)
                return None
            if not hash_matches:
                logger.warning(
                    "refresh_hash_mismatch", user_id=user_id, session_id=session.id
                )
                self.events.emit(
                    SecurityEvent.REFRESH_HASH_MISMATCH,
                    user_id=user_id,
                    session_id=session.id,
                )
                return None
            return session

    def rotate(
        self,
        session: Session,
        user: User,
        refresh_token: str,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> Tuple[Session, CredentialPair]:
        """Replace ``session`` with a new row and credential pair.

        The old row is revoked by a conditional update that only succeeds while
        it is still unrevoked and still bound to ``refresh_token``; of two
        concurrent rotations exactly one wins and the other raises
        :class:`SessionInvalidError`.
        """
        now = self._now()
        presented = token_digest(refresh_token)
        successor_id = str(uuid.uuid4())
        with storage_guard("session_rotate"):
            with self.store.transaction() as tx:
                won = tx.revoke_session_if_active(
                    session.id,
                    reason="rotated",
                    now=now,
                    replaced_by=successor_id,
                    expected_hash=presented,
                )
                if not won:
                    raise SessionInvalidError("refresh session not found")
                new_session, pair = self._open_session(
                    tx,
                    user,
                    now=now,
                    authenticated_at=session.authenticated_at,
                    user_agent=user_agent or session.user_agent,
                    ip=ip or session.ip_addr,
                    session_id=successor_id,
                )
        self.events.emit(
            SecurityEvent.SESSION_ROTATED,
            user_id=user.id,
            ip=ip,
            previous_session_id=session.id,
            session_id=new_session.id,
        )
        return new_session, pair

    def touch(self, session_id: str) -> None:
        """Record activity; failures are logged and never surface."""
        try:
            self.store.touch_session(session_id, now=self._now())
        except Exception as exc:
            logger.warning("session_touch_failed", session_id=session_id, error=str(exc))

    def get_active(self, session_id: str) -> Optional[Session]:
        with storage_guard("session_get"):
            session = self.store.get_session(session_id)
        if session is None or not session.is_active(self._now()):
            return None
        return session

    def revoke(self, session_id: str, reason: str = "logout") -> bool:
        with storage_guard("session_revoke"):
            revoked = self.store.revoke_session_if_active(
                session_id, reason=reason, now=self._now()
            )
        if revoked:
            self.events.emit(
                SecurityEvent.SESSION_REVOKED, session_id=session_id, reason=reason
            )
        return revoked

    def revoke_all(
        self, user_id: str, reason: str, *, except_session_id: Optional[str] = None
    ) -> int:
        with storage_guard("session_revoke_all"):
            count = self.store.revoke_user_sessions(
                user_id, reason=reason, now=self._now(), except_session_id=except_session_id
            )
        if count:
            self.events.emit(
                SecurityEvent.SESSION_REVOKED, user_id=user_id, reason=reason, count=count
            )
        return count

    def prune_expired(self, user_id: str) -> int:
        with storage_guard("session_prune"):
            count = self.store.revoke_expired_sessions(user_id, now=self._now())
        if count:
            self.events.emit(
                SecurityEvent.SESSION_PRUNED_EXPIRED, user_id=user_id, count=count
            )
        return count

    def within_absolute_ttl(self, session: Session, now: Optional[datetime] = None) -> bool:
        now = now or self._now()
        return session.authenticated_at + self.settings.session_absolute_ttl > now

    def exceeded_inactivity(self, session: Session, now: Optional[datetime] = None) -> bool:
        timeout = self.settings.session_inactivity_timeout
        if not timeout:
            # Zero disables the idle check
            return False
        now = now or self._now()
        return now - session.last_seen_at > timeout

    def _open_session(
        self,
        tx: AuthRepository,
        user: User,
        *,
        now: datetime,
        authenticated_at: datetime,
        user_agent: Optional[str],
        ip: Optional[str],
        session_id: Optional[str] = None,
    ) -> Tuple[Session, CredentialPair]:
        expires_at = min(
            now + self.settings.refresh_token_ttl,
            authenticated_at + self.settings.session_absolute_ttl,
        )
        placeholder = token_digest(f"pending:{secrets.token_hex(32)}")
        session = Session.new(
            user.id,
            refresh_token_hash=placeholder,
            expires_at=expires_at,
            authenticated_at=authenticated_at,
            user_agent=user_agent,
            ip_addr=ip,
            session_id=session_id,
            now=now,
        )
        tx.insert_session(session)
        pair = self._mint_pair(user, session)
        refresh_hash = token_digest(pair.refresh_token)
        tx.set_session_refresh_hash(
            session.id, expected_hash=placeholder, refresh_token_hash=refresh_hash
        )
        session.refresh_token_hash = refresh_hash
        return session, pair

    def _mint_pair(self, user: User, session: Session) -> CredentialPair:
        access = self.codec.issue_access(
            user.id,
            role=user.role,
            session_id=session.id,
            banned=user.is_banned,
            email_verified=user.email_verified,
        )
        refresh = self.codec.issue_refresh(
            user.id, session_id=session.id, expires_at=session.expires_at
        )
        return CredentialPair(access=access, refresh=refresh)
