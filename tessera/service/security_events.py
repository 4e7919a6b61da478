from __future__ import annotations

import threading
from collections import Counter
from enum import Enum
from typing import Any, Optional

from tessera.logging import get_logger

logger = get_logger("security")
_internal_logger = get_logger(__name__)


class SecurityEvent(str, Enum):
    SESSION_CREATED = "SESSION_CREATED"
    SESSION_ROTATED = "SESSION_ROTATED"
    SESSION_PRUNED_EXPIRED = "SESSION_PRUNED_EXPIRED"
    SESSION_REVOKED = "SESSION_REVOKED"
    REFRESH_INVALID_SESSION = "REFRESH_INVALID_SESSION"
    REFRESH_EXPIRED_SESSION = "REFRESH_EXPIRED_SESSION"
    REFRESH_HASH_MISMATCH = "REFRESH_HASH_MISMATCH"
    REFRESH_REUSE_DETECTED = "REFRESH_REUSE_DETECTED"
    REFRESH_SUCCESS = "REFRESH_SUCCESS"
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_UNKNOWN_USER = "LOGIN_UNKNOWN_USER"
    LOGIN_ACCOUNT_LOCKED = "LOGIN_ACCOUNT_LOCKED"
    LOGIN_LOCK_ENFORCED = "LOGIN_LOCK_ENFORCED"
    REGISTER_SUCCESS = "REGISTER_SUCCESS"
    LOGOUT_SUCCESS = "LOGOUT_SUCCESS"
    LOGOUT_ALL_SUCCESS = "LOGOUT_ALL_SUCCESS"
    PASSWORD_RESET_REQUEST_CREATED = "PASSWORD_RESET_REQUEST_CREATED"
    PASSWORD_RESET_REQUEST_BLOCKED = "PASSWORD_RESET_REQUEST_BLOCKED"
    PASSWORD_RESET_EMAIL_SENT = "PASSWORD_RESET_EMAIL_SENT"
    PASSWORD_RESET_EMAIL_FAILED = "PASSWORD_RESET_EMAIL_FAILED"
    PASSWORD_RESET_OTP_FAILED = "PASSWORD_RESET_OTP_FAILED"
    PASSWORD_RESET_OTP_VERIFIED = "PASSWORD_RESET_OTP_VERIFIED"
    PASSWORD_RESET_COMPLETED = "PASSWORD_RESET_COMPLETED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    PASSWORD_CHANGE_FAILED = "PASSWORD_CHANGE_FAILED"
    AUTH_RATE_LIMITED = "AUTH_RATE_LIMITED"
    CSRF_REJECTED = "CSRF_REJECTED"


# Events that indicate an attack or a stolen credential
_ELEVATED = {
    SecurityEvent.REFRESH_HASH_MISMATCH: "warning",
    SecurityEvent.REFRESH_REUSE_DETECTED: "error",
    SecurityEvent.LOGIN_ACCOUNT_LOCKED: "warning",
    SecurityEvent.PASSWORD_RESET_REQUEST_BLOCKED: "warning",
    SecurityEvent.PASSWORD_RESET_EMAIL_FAILED: "warning",
    SecurityEvent.PASSWORD_CHANGE_FAILED: "warning",
    SecurityEvent.AUTH_RATE_LIMITED: "warning",
    SecurityEvent.CSRF_REJECTED: "warning",
}


class SecurityEventSink:
    """Fire-and-forget audit trail plus per-event counters.

    ``emit`` never raises and never blocks on I/O beyond writing one log
    line; counters are exported in Prometheus text format by
    :meth:`render_prometheus`.
    """

    def __init__(self, *, metrics_enabled: bool = True, namespace: str = "tessera") -> None:
        self.metrics_enabled = metrics_enabled
        self.namespace = namespace
        self._counts: Counter[str] = Counter()
        self._lock = threading.Lock()

    def emit(
        self,
        event: SecurityEvent | str,
        *,
        user_id: Optional[str] = None,
        ip: Optional[str] = None,
        **meta: Any,
    ) -> None:
        try:
            name = event.value if isinstance(event, SecurityEvent) else str(event)
            level = _ELEVATED.get(name, "info")
            getattr(logger, level)(
                "security_event",
                security_event=name,
                user_id=user_id,
                ip=ip,
                **meta,
            )
            if self.metrics_enabled:
                with self._lock:
                    self._counts[name] += 1
        except Exception as exc:
            _internal_logger.debug("security_event_emit_failed", error=str(exc))

    def count(self, event: SecurityEvent | str) -> int:
        name = event.value if isinstance(event, SecurityEvent) else str(event)
        with self._lock:
            return self._counts.get(name, 0)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)

    def render_prometheus(self) -> list[str]:
        metric = f"{self.namespace}_security_events_total"
        lines = [
            f"# HELP {metric} Security-relevant authentication events",
            f"# TYPE {metric} counter",
        ]
        for name, value in sorted(self.snapshot().items()):
            lines.append(f'{metric}{{event="{name}"}} {value}')
        return lines
