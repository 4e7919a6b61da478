from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from redis.exceptions import RedisError

from tessera.config import get_settings, reset_settings_cache
from tessera.logging import get_logger
from tessera.service.accounts import AccountService
from tessera.service.credentials import CredentialCodec
from tessera.service.csrf import CsrfGuard
from tessera.service.email import EmailService
from tessera.service.gateway import AuthGateway
from tessera.service.password_reset import PasswordResetFlow
from tessera.service.passwords import SecretHasher
from tessera.service.security_events import SecurityEventSink
from tessera.service.sessions import SessionService
from tessera.storage.counters import RateCounter, RedisRateCounter, StoreRateCounter
from tessera.storage.memory import MemoryStore
from tessera.storage.postgres import PostgresStore
from tessera.storage.redis_cache import CacheBackend, RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of ``url`` with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        user = parsed.username or ""
        netloc = f"{user}:***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self) -> None:
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started", store_type=store_type, test_mode=self.settings.test_mode
        )

        try:
            if self.settings.use_memory_store:
                fs_root = None if self.settings.test_mode else self.settings.state_dir
                self.store = MemoryStore(fs_root=fs_root)
            else:
                self.store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[CacheBackend] = None
        self._close_task: Optional[asyncio.Task] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a closed event loop
                if self.settings.test_mode:
                    cache: CacheBackend = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except (RedisError, OSError) as exc:
                redis_error = exc

        self.counter: RateCounter
        if self.cache is not None:
            self.counter = RedisRateCounter(self.cache)
        else:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for shared rate limits; start Redis or set "
                    "TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true to count in the database."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
            )
            self.counter = StoreRateCounter(self.store)

        self.events = SecurityEventSink(
            metrics_enabled=self.settings.metrics_enabled,
            namespace=self.settings.metrics_namespace,
        )
        self.codec = CredentialCodec(self.settings)
        self.hasher = SecretHasher()
        self.csrf = CsrfGuard(self.settings, self.events)
        self.sessions = SessionService(self.store, self.codec, self.settings, self.events)
        self.email = EmailService.from_settings(self.settings)
        self.password_reset = PasswordResetFlow(
            self.store,
            self.sessions,
            self.codec,
            self.hasher,
            self.counter,
            self.events,
            self.settings,
            self.email,
        )
        self.accounts = AccountService(
            self.store,
            self.sessions,
            self.codec,
            self.hasher,
            self.csrf,
            self.events,
            self.settings,
        )
        self.gateway = AuthGateway(self.store, self.codec, self.sessions)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            email_configured=self.email.is_configured,
            metrics_enabled=self.settings.metrics_enabled,
        )

    async def aclose(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()
        if self.cache is not None:
            await self.cache.close()

    def close(self) -> None:
        """Synchronous shutdown; inside a running loop prefer :meth:`aclose`."""
        if isinstance(self.store, PostgresStore):
            self.store.close()
        if isinstance(self.cache, SyncRedisCache):
            self.cache.client.close()
        elif isinstance(self.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                asyncio.run(self.cache.close())
                return
            # Keep a reference so the task is not collected before it finishes
            self._close_task = loop.create_task(self.cache.close())
            self._close_task.add_done_callback(_log_close_failure)


def _log_close_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("redis_close_failed", error_type=type(exc).__name__, error=str(exc))


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild settings and the Runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except (RedisError, OSError) as exc:
                logger.debug("runtime_close_failed", error=str(exc))

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
