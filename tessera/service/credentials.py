"""Signing and verification of bearer credentials.

Three credential kinds exist: access, refresh and reset-session. Each is an
HS256 JWT signed with its own key (see :meth:`Settings.signing_key`), carries
a ``typ`` claim naming its kind and has a claim shape the other kinds lack.
A credential of one kind therefore fails signature verification wherever
another kind is expected.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, ClassVar, Optional, Union

from tessera.config import Settings
from tessera.logging import get_logger
from tessera.service.errors import (
    BadSignatureError,
    MalformedTokenError,
    TokenExpiredError,
)

logger = get_logger(__name__)


class CredentialKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    RESET_SESSION = "reset_session"


@dataclass(frozen=True)
class AccessClaims:
    kind: ClassVar[CredentialKind] = CredentialKind.ACCESS

    subject: str
    role: str
    session_id: Optional[str]
    banned: bool
    email_verified: bool
    expires_at: datetime
    token_id: str


@dataclass(frozen=True)
class RefreshClaims:
    kind: ClassVar[CredentialKind] = CredentialKind.REFRESH

    subject: str
    session_id: Optional[str]
    expires_at: datetime
    token_id: str


@dataclass(frozen=True)
class ResetSessionClaims:
    kind: ClassVar[CredentialKind] = CredentialKind.RESET_SESSION

    reset_request_id: str
    user_id: str
    expires_at: datetime
    token_id: str


Claims = Union[AccessClaims, RefreshClaims, ResetSessionClaims]


@dataclass(frozen=True)
class IssuedCredential:
    token: str
    claims: Claims

    @property
    def expires_at(self) -> datetime:
        return self.claims.expires_at


@dataclass(frozen=True)
class CredentialPair:
    access: IssuedCredential
    refresh: IssuedCredential
    token_type: str = "bearer"

    @property
    def access_token(self) -> str:
        return self.access.token

    @property
    def refresh_token(self) -> str:
        return self.refresh.token

    def as_dict(self) -> dict[str, str]:
        return {
            "access_token": self.access.token,
            "refresh_token": self.refresh.token,
            "token_type": self.token_type,
            "access_expires_at": self.access.expires_at.isoformat(),
            "refresh_expires_at": self.refresh.expires_at.isoformat(),
        }


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class CredentialCodec:
    """Stateless issue/verify of access, refresh and reset-session credentials."""

    _HEADER = {"alg": "HS256", "typ": "JWT"}

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._clock = clock
        self._keys = {kind: settings.signing_key(kind.value) for kind in CredentialKind}

    def _now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        return datetime.now(timezone.utc)

    # issuing
    def issue_access(
        self,
        subject: str,
        *,
        role: str,
        session_id: Optional[str] = None,
        banned: bool = False,
        email_verified: bool = False,
        ttl: Optional[timedelta] = None,
    ) -> IssuedCredential:
        now = self._now()
        exp = int((now + (ttl or self.settings.access_token_ttl)).timestamp())
        jti = str(uuid.uuid4())
        token = self._encode(
            CredentialKind.ACCESS,
            {
                "sub": subject,
                "role": role,
                "sid": session_id,
                "banned": banned,
                "ev": email_verified,
                "jti": jti,
                "iat": int(now.timestamp()),
                "exp": exp,
            },
        )
        claims = AccessClaims(
            subject=subject,
            role=role,
            session_id=session_id,
            banned=banned,
            email_verified=email_verified,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            token_id=jti,
        )
        return IssuedCredential(token, claims)

    def issue_refresh(
        self,
        subject: str,
        *,
        session_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> IssuedCredential:
        now = self._now()
        expiry = expires_at or now + self.settings.refresh_token_ttl
        exp = int(expiry.timestamp())
        jti = str(uuid.uuid4())
        token = self._encode(
            CredentialKind.REFRESH,
            {
                "sub": subject,
                "sid": session_id,
                "jti": jti,
                "iat": int(now.timestamp()),
                "exp": exp,
            },
        )
        claims = RefreshClaims(
            subject=subject,
            session_id=session_id,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            token_id=jti,
        )
        return IssuedCredential(token, claims)

    def issue_reset_session(self, reset_request_id: str, user_id: str) -> IssuedCredential:
        now = self._now()
        exp = int((now + self.settings.reset_session_ttl).timestamp())
        jti = str(uuid.uuid4())
        token = self._encode(
            CredentialKind.RESET_SESSION,
            {
                "rid": reset_request_id,
                "uid": user_id,
                "jti": jti,
                "iat": int(now.timestamp()),
                "exp": exp,
            },
        )
        claims = ResetSessionClaims(
            reset_request_id=reset_request_id,
            user_id=user_id,
            expires_at=datetime.fromtimestamp(exp, tz=timezone.utc),
            token_id=jti,
        )
        return IssuedCredential(token, claims)

    # verifying
    def verify_access(self, token: str) -> AccessClaims:
        payload = self._decode(CredentialKind.ACCESS, token)
        try:
            sid = payload.get("sid")
            return AccessClaims(
                subject=self._require_str(payload, "sub"),
                role=self._require_str(payload, "role"),
                session_id=str(sid) if sid is not None else None,
                banned=bool(payload["banned"]),
                email_verified=bool(payload["ev"]),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
                token_id=self._require_str(payload, "jti"),
            )
        except KeyError as exc:
            raise MalformedTokenError("access credential missing claim") from exc

    def verify_refresh(self, token: str) -> RefreshClaims:
        payload = self._decode(CredentialKind.REFRESH, token)
        sid = payload.get("sid")
        return RefreshClaims(
            subject=self._require_str(payload, "sub"),
            session_id=str(sid) if sid is not None else None,
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            token_id=self._require_str(payload, "jti"),
        )

    def verify_reset_session(self, token: str) -> ResetSessionClaims:
        payload = self._decode(CredentialKind.RESET_SESSION, token)
        return ResetSessionClaims(
            reset_request_id=self._require_str(payload, "rid"),
            user_id=self._require_str(payload, "uid"),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            token_id=self._require_str(payload, "jti"),
        )

    # wire format
    def _sign(self, kind: CredentialKind, signing_input: str) -> bytes:
        return hmac.new(self._keys[kind], signing_input.encode(), hashlib.sha256).digest()

    def _encode(self, kind: CredentialKind, claims: dict[str, Any]) -> str:
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "typ": kind.value,
            **claims,
        }
        header_enc = _encode_segment(json.dumps(self._HEADER, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{_encode_segment(self._sign(kind, signing_input))}"

    def _decode(self, kind: CredentialKind, token: Any) -> dict[str, Any]:
        if not isinstance(token, str) or token.count(".") != 2:
            raise MalformedTokenError(f"{kind.value} credential is not a signed token")
        header_b64, payload_b64, sig_b64 = token.split(".")

        # Pin the algorithm before touching the signature
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, binascii.Error) as exc:
            raise MalformedTokenError(f"{kind.value} credential header unreadable") from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("credential_invalid_algorithm", kind=kind.value)
            raise MalformedTokenError(f"{kind.value} credential uses an unsupported algorithm")

        try:
            presented_sig = _decode_segment(sig_b64)
        except (ValueError, binascii.Error) as exc:
            raise MalformedTokenError(f"{kind.value} credential signature unreadable") from exc
        expected_sig = self._sign(kind, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, presented_sig):
            raise BadSignatureError(f"{kind.value} credential signature invalid")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, binascii.Error) as exc:
            raise MalformedTokenError(f"{kind.value} credential payload unreadable") from exc
        if not isinstance(payload, dict) or payload.get("typ") != kind.value:
            raise MalformedTokenError(f"credential is not a {kind.value} credential")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise MalformedTokenError(f"{kind.value} credential issuer mismatch")
        aud = payload.get("aud")
        valid_aud = aud == self.settings.jwt_audience or (
            isinstance(aud, list) and self.settings.jwt_audience in aud
        )
        if not valid_aud:
            raise MalformedTokenError(f"{kind.value} credential audience mismatch")

        exp = payload.get("exp")
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise MalformedTokenError(f"{kind.value} credential has no expiry")
        leeway = self.settings.clock_skew_leeway.total_seconds()
        if exp + leeway <= self._now().timestamp():
            raise TokenExpiredError(f"{kind.value} credential expired")
        return payload

    @staticmethod
    def _require_str(payload: dict[str, Any], key: str) -> str:
        value = payload.get(key)
        if not isinstance(value, str) or not value:
            raise MalformedTokenError(f"credential claim '{key}' missing")
        return value
