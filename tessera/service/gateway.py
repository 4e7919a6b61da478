from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from tessera.logging import get_logger
from tessera.service.credentials import CredentialCodec
from tessera.service.errors import (
    AuthenticationError,
    ForbiddenError,
    SessionInvalidError,
    storage_guard,
)
from tessera.service.sessions import SessionService
from tessera.storage.common import AuthRepository

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    role: str
    session_id: str
    email_verified: bool = False


class AuthGateway:
    """Turns a presented access credential into an :class:`AuthContext`.

    The bearer header wins over the access cookie. Verification failures keep
    their distinct kinds so callers can tell "expired, refresh now" apart from
    "invalid, sign in again".
    """

    def __init__(
        self,
        store: AuthRepository,
        codec: CredentialCodec,
        sessions: SessionService,
    ) -> None:
        self.store = store
        self.codec = codec
        self.sessions = sessions

    async def authenticate(
        self,
        authorization: Optional[str],
        access_cookie: Optional[str] = None,
        *,
        required_role: Optional[str] = None,
    ) -> AuthContext:
        token = self._extract_bearer(authorization) or access_cookie
        if not token:
            raise AuthenticationError("authentication required")
        claims = self.codec.verify_access(token)
        if not claims.session_id:
            raise SessionInvalidError("access credential is not bound to a session")

        session = self.sessions.get_active(claims.session_id)
        if session is None or session.user_id != claims.subject:
            logger.info("access_session_inactive", session_id=claims.session_id)
            raise SessionInvalidError("session is no longer active")

        with storage_guard("gateway_user"):
            user = self.store.get_user(claims.subject)
        if user is None or not user.is_active:
            raise AuthenticationError("account unavailable")
        if user.is_banned:
            raise ForbiddenError("account suspended")
        if required_role and not self._role_allows(user.role, required_role):
            raise ForbiddenError("insufficient role")

        self.sessions.touch(session.id)
        return AuthContext(
            user_id=user.id,
            role=user.role,
            session_id=session.id,
            email_verified=user.email_verified,
        )

    def _role_allows(self, role: str, required: str) -> bool:
        if role == required:
            return True
        return role == "admin" and required == "user"

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None
