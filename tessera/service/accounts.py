from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from tessera.config import Settings
from tessera.logging import get_logger, redact_email
from tessera.service.credentials import CredentialCodec, CredentialPair
from tessera.service.csrf import CsrfGuard
from tessera.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    ServiceUnavailableError,
    SessionInvalidError,
    TokenExpiredError,
    storage_guard,
)
from tessera.service.passwords import SecretHasher
from tessera.service.security_events import SecurityEvent, SecurityEventSink
from tessera.service.sessions import SessionService
from tessera.storage.common import AuthRepository
from tessera.storage.errors import ConstraintViolation
from tessera.storage.models import Session, User

logger = get_logger(__name__)

_INVALID_LOGIN = "invalid email or password"


@dataclass(frozen=True)
class AuthResult:
    user: User
    session: Session
    credentials: CredentialPair
    csrf_token: str


class AccountService:
    """Registration, login, refresh and logout on top of :class:`SessionService`."""

    def __init__(
        self,
        store: AuthRepository,
        sessions: SessionService,
        codec: CredentialCodec,
        hasher: SecretHasher,
        csrf: CsrfGuard,
        events: SecurityEventSink,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.codec = codec
        self.hasher = hasher
        self.csrf = csrf
        self.events = events
        self.settings = settings
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    async def register(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> AuthResult:
        password_hash, algo = self.hasher.hash_password(password)
        with storage_guard("register"):
            try:
                with self.store.transaction() as tx:
                    user = tx.create_user(email)
                    tx.save_password(user.id, password_hash, algo)
            except ConstraintViolation as exc:
                logger.info("register_conflict", email=redact_email(email))
                raise ConflictError(
                    "email already registered", detail={"field": "email"}
                ) from exc
        session, pair = self.sessions.create(user, user_agent=user_agent, ip=ip)
        self.events.emit(SecurityEvent.REGISTER_SUCCESS, user_id=user.id, ip=ip)
        return AuthResult(user, session, pair, self.csrf.issue())

    async def login(
        self,
        email: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> AuthResult:
        now = self._now()
        with storage_guard("login"):
            user = self.store.get_user_by_email(email)
            if user is None:
                self.events.emit(
                    SecurityEvent.LOGIN_UNKNOWN_USER, ip=ip, email_hint=redact_email(email)
                )
                raise AuthenticationError(_INVALID_LOGIN)
            if user.is_banned:
                self.events.emit(SecurityEvent.LOGIN_FAILED, user_id=user.id, ip=ip, reason="banned")
                raise ForbiddenError("account suspended")
            if not user.is_active:
                self.events.emit(SecurityEvent.LOGIN_FAILED, user_id=user.id, ip=ip, reason="inactive")
                raise AuthenticationError(_INVALID_LOGIN)
            if user.locked_until and user.locked_until > now:
                self.events.emit(SecurityEvent.LOGIN_LOCK_ENFORCED, user_id=user.id, ip=ip)
                raise AccountLockedError(
                    "account temporarily locked",
                    detail={"locked_until": user.locked_until.isoformat()},
                )

            record = self.store.get_password_record(user.id)
            if not record or not self.hasher.verify_password(record[0], record[1], password):
                updated = self.store.record_login_failure(
                    user.id,
                    now=now,
                    limit=self.settings.login_failure_limit,
                    lock_for=self.settings.login_lock_duration,
                )
                if updated and updated.locked_until and updated.locked_until > now:
                    self.events.emit(SecurityEvent.LOGIN_ACCOUNT_LOCKED, user_id=user.id, ip=ip)
                    raise AccountLockedError(
                        "account temporarily locked",
                        detail={"locked_until": updated.locked_until.isoformat()},
                    )
                self.events.emit(
                    SecurityEvent.LOGIN_FAILED,
                    user_id=user.id,
                    ip=ip,
                    failed_login_count=updated.failed_login_count if updated else None,
                )
                raise AuthenticationError(_INVALID_LOGIN)

            self.store.record_login_success(user.id, now=now)
        self.sessions.prune_expired(user.id)
        session, pair = self.sessions.create(user, user_agent=user_agent, ip=ip)
        self.events.emit(SecurityEvent.LOGIN_SUCCESS, user_id=user.id, ip=ip, session_id=session.id)
        return AuthResult(user, session, pair, self.csrf.issue())

    async def refresh(
        self,
        refresh_token: str,
        *,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> AuthResult:
        claims = self.codec.verify_refresh(refresh_token)
        with storage_guard("refresh_user"):
            user = self.store.get_user(claims.subject)
        if user is None or not user.is_active:
            self.events.emit(
                SecurityEvent.REFRESH_INVALID_SESSION, user_id=claims.subject, ip=ip, reason="user"
            )
            raise SessionInvalidError("refresh session not found")
        if user.is_banned:
            raise ForbiddenError("account suspended")

        session = self.sessions.find_active_for_refresh(
            user.id, refresh_token, claims.session_id
        )
        if session is None:
            self.events.emit(
                SecurityEvent.REFRESH_INVALID_SESSION,
                user_id=user.id,
                ip=ip,
                session_id=claims.session_id,
            )
            raise SessionInvalidError("refresh session not found")

        now = self._now()
        if not self.sessions.within_absolute_ttl(session, now) or self.sessions.exceeded_inactivity(
            session, now
        ):
            self.sessions.revoke(session.id, "expired")
            self.events.emit(
                SecurityEvent.REFRESH_EXPIRED_SESSION, user_id=user.id, ip=ip, session_id=session.id
            )
            raise TokenExpiredError("session expired, sign in again")

        try:
            new_session, pair = self.sessions.rotate(
                session, user, refresh_token, user_agent=user_agent, ip=ip
            )
        except SessionInvalidError:
            self.events.emit(
                SecurityEvent.REFRESH_INVALID_SESSION,
                user_id=user.id,
                ip=ip,
                session_id=session.id,
                reason="already_rotated",
            )
            raise

        try:
            self.sessions.prune_expired(user.id)
        except ServiceUnavailableError:
            logger.warning("session_prune_skipped", user_id=user.id)
        self.events.emit(
            SecurityEvent.REFRESH_SUCCESS, user_id=user.id, ip=ip, session_id=new_session.id
        )
        return AuthResult(user, new_session, pair, self.csrf.issue())

    async def logout(
        self, session_id: str, *, user_id: Optional[str] = None, ip: Optional[str] = None
    ) -> bool:
        revoked = self.sessions.revoke(session_id, "logout")
        self.events.emit(
            SecurityEvent.LOGOUT_SUCCESS, user_id=user_id, ip=ip, session_id=session_id
        )
        return revoked

    async def logout_all(self, user_id: str, *, ip: Optional[str] = None) -> int:
        count = self.sessions.revoke_all(user_id, "logout_all")
        self.events.emit(SecurityEvent.LOGOUT_ALL_SUCCESS, user_id=user_id, ip=ip, count=count)
        return count

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        session_id: Optional[str] = None,
        ip: Optional[str] = None,
    ) -> int:
        """Replace the password after re-checking the current one.

        Every other session of the user is revoked; ``session_id`` stays
        signed in. Returns the number of sessions revoked.
        """
        with storage_guard("change_password"):
            user = self.store.get_user(user_id)
            if user is None or not user.is_active:
                raise AuthenticationError("account unavailable")
            record = self.store.get_password_record(user_id)
        if not record or not self.hasher.verify_password(record[0], record[1], current_password):
            self.events.emit(SecurityEvent.PASSWORD_CHANGE_FAILED, user_id=user_id, ip=ip)
            raise AuthenticationError("current password is incorrect")

        password_hash, algo = self.hasher.hash_password(new_password)
        with storage_guard("change_password"):
            self.store.save_password(user_id, password_hash, algo)
        try:
            revoked = self.sessions.revoke_all(
                user_id, "password_change", except_session_id=session_id
            )
        except ServiceUnavailableError:
            logger.warning("password_change_session_revoke_failed", user_id=user_id)
            revoked = 0
        self.events.emit(
            SecurityEvent.PASSWORD_CHANGED, user_id=user_id, ip=ip, revoked_sessions=revoked
        )
        return revoked
