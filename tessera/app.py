from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request, Response

from tessera.api.error_handling import _error_response, register_exception_handlers
from tessera.api.routes import router
from tessera.logging import get_logger, set_correlation_id
from tessera.service.errors import CsrfError
from tessera.service.runtime import get_runtime
from tessera.storage.postgres import PostgresStore

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

# Routes that never authenticate with cookies
_CSRF_EXEMPT_PATHS = frozenset(
    {
        "/v1/auth/register",
        "/v1/auth/login",
        "/v1/auth/password/forgot",
        "/v1/auth/password/verify-otp",
        "/v1/auth/password/reset",
    }
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    get_runtime()
    yield
    try:
        await get_runtime().aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Tessera", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def enforce_csrf_token(request: Request, call_next):
    """Require the double-submit token on cookie-authenticated state changes."""
    if request.url.path in _CSRF_EXEMPT_PATHS or request.headers.get("Authorization"):
        return await call_next(request)
    runtime = get_runtime()
    settings = runtime.settings
    uses_cookies = request.cookies.get(settings.access_cookie_name) or request.cookies.get(
        settings.refresh_cookie_name
    )
    if not uses_cookies:
        return await call_next(request)
    try:
        runtime.csrf.verify_request(
            request.method,
            request.headers,
            request.cookies,
            ip=request.client.host if request.client else None,
        )
    except CsrfError as exc:
        return _error_response(exc.status_code, exc.message, code=exc.error_code)
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path in ("/healthz", "/metrics"):
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault("API-Version", __version__)
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag logs with X-Request-ID (client supplied or generated) and echo it back."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component=label)
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    if isinstance(runtime.store, PostgresStore):
        store = runtime.store

        def _db_ping() -> None:
            with store._connect() as conn:
                conn.execute("SELECT 1").fetchone()

        db_ok = await _run_bounded("database", _db_ping)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/metrics", response_class=Response)
async def metrics() -> Response:
    """Prometheus text exposition of security event counters."""
    runtime = get_runtime()
    namespace = runtime.settings.metrics_namespace
    lines = [
        f"# HELP {namespace}_info Application version info",
        f"# TYPE {namespace}_info gauge",
        f'{namespace}_info{{version="{__version__}"}} 1',
        f"# HELP {namespace}_cache_available Redis rate counter availability",
        f"# TYPE {namespace}_cache_available gauge",
        f"{namespace}_cache_available {1 if runtime.cache is not None else 0}",
    ]
    if runtime.settings.metrics_enabled:
        lines.extend(runtime.events.render_prometheus())
    return Response(content="\n".join(lines) + "\n", media_type="text/plain")


def create_app() -> FastAPI:
    return app
