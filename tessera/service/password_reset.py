"""One-time-passcode password reset.

A reset request moves CREATED -> VERIFIED -> CONSUMED. Only salted hashes of
the passcode and a SHA-256 digest of the opaque link token are stored; the
plaintext values are returned once from :meth:`PasswordResetFlow.create_request`
and handed to the notifier, never logged.
"""

from __future__ import annotations

import asyncio
import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from tessera.config import Settings
from tessera.logging import get_logger
from tessera.service.credentials import CredentialCodec, IssuedCredential
from tessera.service.email import DeliveryResult, EmailService
from tessera.service.errors import (
    MaxAttemptsExceededError,
    NotVerifiedError,
    OtpInvalidError,
    RateLimitedError,
    ServiceUnavailableError,
    SessionInvalidError,
    TokenConsumedError,
    TokenExpiredError,
    TokenInvalidError,
    storage_guard,
)
from tessera.service.passwords import SecretHasher, token_digest
from tessera.service.security_events import SecurityEvent, SecurityEventSink
from tessera.service.sessions import SessionService
from tessera.storage.common import AuthRepository, normalize_email
from tessera.storage.counters import RateCounter
from tessera.storage.models import ResetRequest

logger = get_logger(__name__)


@dataclass(frozen=True)
class ResetIssue:
    """Plaintext secrets of a new reset request; shown exactly once."""

    id: str
    otp: str
    token: str
    expires_at: datetime
    max_attempts: int


class PasswordResetFlow:
    def __init__(
        self,
        store: AuthRepository,
        sessions: SessionService,
        codec: CredentialCodec,
        hasher: SecretHasher,
        counter: RateCounter,
        events: SecurityEventSink,
        settings: Settings,
        notifier: Optional[EmailService] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.codec = codec
        self.hasher = hasher
        self.counter = counter
        self.events = events
        self.settings = settings
        self.notifier = notifier
        self._clock = clock

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    @property
    def max_attempts(self) -> int:
        return self.settings.reset_max_attempts

    def acknowledgement(self) -> Dict[str, int]:
        return {
            "expires_in_minutes": int(self.settings.reset_otp_ttl.total_seconds() // 60),
            "max_attempts": self.max_attempts,
        }

    async def request_reset(
        self,
        email: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Dict[str, int]:
        """Entry point for "forgot password".

        The return value is the same whether or not the address belongs to a
        usable account and whether or not delivery succeeded.
        """
        with storage_guard("reset_lookup"):
            user = self.store.get_user_by_email(email)
        if user is None or not user.is_active or user.is_banned:
            digest = hashlib.sha256(normalize_email(email).encode()).hexdigest()
            await self._enforce_rate_limit(f"password_reset:email:{digest}", user_id=None, ip=ip)
            logger.info(
                "password_reset_request_ignored",
                reason="unknown_user" if user is None else "account_unavailable",
            )
            return self.acknowledgement()

        issue = await self.create_request(user.id, user.email, ip=ip, user_agent=user_agent)
        result = await self._deliver(user.email, issue)
        if result.delivered:
            self.events.emit(
                SecurityEvent.PASSWORD_RESET_EMAIL_SENT,
                user_id=user.id,
                ip=ip,
                reset_request_id=issue.id,
            )
        else:
            self.events.emit(
                SecurityEvent.PASSWORD_RESET_EMAIL_FAILED,
                user_id=user.id,
                ip=ip,
                reset_request_id=issue.id,
                reason=result.error,
            )
        return self.acknowledgement()

    async def create_request(
        self,
        user_id: str,
        email: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ResetIssue:
        try:
            self.sessions.prune_expired(user_id)
        except ServiceUnavailableError:
            logger.warning("session_prune_skipped", user_id=user_id)

        await self._enforce_rate_limit(f"password_reset:user:{user_id}", user_id=user_id, ip=ip)

        now = self._now()
        otp = self._generate_otp()
        token = secrets.token_hex(self.settings.reset_token_bytes)
        expires_at = now + self.settings.reset_otp_ttl
        request = ResetRequest(
            id=str(uuid.uuid4()),
            user_id=user_id,
            otp_hash=self.hasher.hash_otp(otp),
            token_hash=token_digest(token),
            otp_hint=f"{otp[:2]}****",
            created_at=now,
            expires_at=expires_at,
            metadata={"email": email, "ip": ip, "user_agent": user_agent},
        )
        with storage_guard("reset_create"):
            # Superseding and inserting share one transaction so an in-flight
            # verification against an older request cannot succeed afterwards.
            with self.store.transaction() as tx:
                tx.lock_user_reset_requests(user_id)
                pruned = tx.consume_user_reset_requests(user_id, now=now, expired_only=True)
                superseded = tx.consume_user_reset_requests(user_id, now=now)
                tx.insert_reset_request(request)

        logger.info(
            "password_reset_request_stored",
            user_id=user_id,
            reset_request_id=request.id,
            pruned=pruned,
            superseded=superseded,
        )
        self.events.emit(
            SecurityEvent.PASSWORD_RESET_REQUEST_CREATED,
            user_id=user_id,
            ip=ip,
            reset_request_id=request.id,
            expires_at=expires_at.isoformat(),
        )
        return ResetIssue(
            id=request.id,
            otp=otp,
            token=token,
            expires_at=expires_at,
            max_attempts=self.max_attempts,
        )

    async def verify_otp(
        self,
        token: str,
        otp: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ResetRequest:
        """Check ``otp`` against the request behind ``token``.

        Every check counts as an attempt, the successful one included. Once
        the attempt budget is spent the request stays locked even for the
        correct passcode.
        """
        now = self._now()
        limit = self.max_attempts
        with storage_guard("reset_verify"):
            record = self._require_verifiable(
                self.store.find_reset_request_by_token(token_digest(token)), now
            )

            matched = self.hasher.verify_otp(record.otp_hash, otp)
            if matched:
                metadata = {
                    "last_verified_at": now.isoformat(),
                    "last_verified_ip": ip,
                    "last_verified_user_agent": user_agent,
                }
            else:
                metadata = {
                    "last_failed_otp_at": now.isoformat(),
                    "last_failed_otp_ip": ip,
                    "last_failed_otp_user_agent": user_agent,
                }
            updated = self.store.record_otp_attempt(
                record.id, now=now, verified=matched, max_attempts=limit, metadata=metadata
            )
            if updated is None:
                # Lost a race with another attempt, a newer request or expiry
                self._require_verifiable(self.store.get_reset_request(record.id), now)
                raise MaxAttemptsExceededError("maximum verification attempts reached")

        if not matched:
            remaining = max(0, limit - updated.attempt_count)
            self.events.emit(
                SecurityEvent.PASSWORD_RESET_OTP_FAILED,
                user_id=updated.user_id,
                ip=ip,
                reset_request_id=updated.id,
                remaining_attempts=remaining,
            )
            raise OtpInvalidError("verification code is incorrect", remaining_attempts=remaining)

        self.events.emit(
            SecurityEvent.PASSWORD_RESET_OTP_VERIFIED,
            user_id=updated.user_id,
            ip=ip,
            reset_request_id=updated.id,
        )
        return updated

    def issue_reset_session_token(self, reset_request_id: str, user_id: str) -> IssuedCredential:
        return self.codec.issue_reset_session(reset_request_id, user_id)

    async def complete_password_reset(
        self,
        credential: str,
        new_password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Set a new password for the owner of a verified request.

        Returns the user id. The password update, the login-failure reset and
        the consumption of the request commit together; revoking the user's
        sessions happens afterwards and may fail without undoing the change.
        """
        claims = self.codec.verify_reset_session(credential)
        now = self._now()
        with storage_guard("reset_complete"):
            record = self.store.get_reset_request(claims.reset_request_id)
            if record is None or record.user_id != claims.user_id:
                logger.warning(
                    "reset_session_mismatch",
                    reset_request_id=claims.reset_request_id,
                    user_id=claims.user_id,
                )
                raise SessionInvalidError("reset session is not valid")
            if record.consumed_at is not None:
                raise TokenConsumedError("reset request already used")
            if record.expires_at <= now:
                raise TokenExpiredError("reset request expired", status_code=410)
            if record.verified_at is None:
                raise NotVerifiedError("verification code has not been confirmed")

            password_hash, algo = self.hasher.hash_password(new_password)
            with self.store.transaction() as tx:
                tx.save_password(record.user_id, password_hash, algo)
                tx.clear_login_failures(record.user_id)
                consumed = tx.consume_reset_request(
                    record.id,
                    now=now,
                    metadata={
                        "completed_at": now.isoformat(),
                        "completed_ip": ip,
                        "completed_user_agent": user_agent,
                    },
                )
                if not consumed:
                    raise TokenConsumedError("reset request already used")

        try:
            self.sessions.revoke_all(record.user_id, "password_reset")
        except Exception as exc:
            logger.warning(
                "password_reset_session_revoke_failed",
                user_id=record.user_id,
                error=str(exc),
            )
        self.events.emit(
            SecurityEvent.PASSWORD_RESET_COMPLETED,
            user_id=record.user_id,
            ip=ip,
            reset_request_id=record.id,
        )
        return record.user_id

    def _require_verifiable(
        self, record: Optional[ResetRequest], now: datetime
    ) -> ResetRequest:
        # Superseded and used requests look the same as unknown ones
        if record is None or record.expires_at <= now or record.consumed_at is not None:
            raise TokenInvalidError("reset request is invalid or expired")
        if record.attempt_count >= self.max_attempts:
            raise MaxAttemptsExceededError("maximum verification attempts reached")
        return record

    async def _enforce_rate_limit(self, key: str, *, user_id: Optional[str], ip: Optional[str]) -> None:
        with storage_guard("reset_rate_limit"):
            decision = await self.counter.hit(
                key,
                limit=self.settings.reset_rate_limit_max,
                window=self.settings.reset_rate_limit_window,
            )
        if decision.allowed:
            return
        self.events.emit(
            SecurityEvent.PASSWORD_RESET_REQUEST_BLOCKED,
            user_id=user_id,
            ip=ip,
            retry_after=decision.retry_after,
        )
        raise RateLimitedError(
            "too many password reset requests", retry_after=decision.retry_after
        )

    async def _deliver(self, email: str, issue: ResetIssue) -> DeliveryResult:
        if self.notifier is None:
            logger.warning("password_reset_notifier_missing", reset_request_id=issue.id)
            return DeliveryResult(False, "notifier_missing")
        data: Dict[str, Any] = {
            "otp": issue.otp,
            "token": issue.token,
            "reset_url": self.notifier.reset_url(issue.token),
            "expires_in_minutes": self.acknowledgement()["expires_in_minutes"],
        }
        try:
            return await asyncio.to_thread(self.notifier.send, email, "password_reset", data)
        except Exception as exc:
            logger.error(
                "password_reset_delivery_crashed",
                reset_request_id=issue.id,
                error_type=type(exc).__name__,
            )
            return DeliveryResult(False, "delivery_crashed")

    def _generate_otp(self) -> str:
        length = self.settings.reset_otp_length
        return f"{secrets.randbelow(10 ** length):0{length}d}"
