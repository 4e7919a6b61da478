from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Mapping, Optional

from tessera.config import Settings
from tessera.logging import get_logger
from tessera.service.errors import CsrfError
from tessera.service.security_events import SecurityEvent, SecurityEventSink

logger = get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})


class CsrfGuard:
    """Double-submit anti-forgery tokens.

    A token is ``<random>.<mac>`` where the MAC is HMAC-SHA256 over the random
    part. It is delivered in a readable cookie; state-changing requests must
    echo it in a header. A request passes only when both copies are present,
    identical, and the MAC verifies.
    """

    def __init__(self, settings: Settings, events: Optional[SecurityEventSink] = None) -> None:
        self.settings = settings
        self.events = events
        self._key = settings.signing_key("csrf")

    @property
    def header_name(self) -> str:
        return self.settings.csrf_header_name

    @property
    def cookie_name(self) -> str:
        return self.settings.csrf_cookie_name

    def issue(self) -> str:
        value = secrets.token_hex(32)
        return f"{value}.{self._mac(value)}"

    def verify(self, header_token: Optional[str], cookie_token: Optional[str]) -> bool:
        if not header_token or not cookie_token:
            return False
        if not hmac.compare_digest(header_token.encode(), cookie_token.encode()):
            return False
        value, sep, mac = header_token.partition(".")
        if not sep or not value or not mac:
            return False
        return hmac.compare_digest(self._mac(value).encode(), mac.encode())

    def verify_request(
        self,
        method: str,
        headers: Mapping[str, str],
        cookies: Mapping[str, str],
        *,
        ip: Optional[str] = None,
    ) -> None:
        if method.upper() in SAFE_METHODS:
            return
        header_token = headers.get(self.header_name)
        cookie_token = cookies.get(self.cookie_name)
        if self.verify(header_token, cookie_token):
            return
        reason = "missing" if not header_token or not cookie_token else "mismatch"
        logger.warning("csrf_rejected", method=method, reason=reason)
        if self.events is not None:
            self.events.emit(SecurityEvent.CSRF_REJECTED, ip=ip, method=method, reason=reason)
        raise CsrfError("CSRF token missing or invalid")

    def _mac(self, value: str) -> str:
        return hmac.new(self._key, value.encode(), hashlib.sha256).hexdigest()
