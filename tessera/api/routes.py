from __future__ import annotations

from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Header, Request, Response

from tessera.api.cookies import clear_auth_cookies, set_auth_cookies, set_csrf_cookie
from tessera.api.schemas import (
    AuthResponse,
    CsrfResponse,
    Envelope,
    LoginRequest,
    LogoutAllResponse,
    OtpVerifyRequest,
    OtpVerifyResponse,
    PasswordChangeRequest,
    PasswordChangeResponse,
    PasswordForgotRequest,
    PasswordForgotResponse,
    PasswordResetConfirm,
    RegisterRequest,
    SessionResponse,
    TokenRefreshRequest,
)
from tessera.service.accounts import AuthResult
from tessera.service.errors import (
    AuthenticationError,
    ForbiddenError,
    RateLimitedError,
    storage_guard,
)
from tessera.service.gateway import AuthContext
from tessera.service.runtime import get_runtime
from tessera.service.security_events import SecurityEvent

router = APIRouter(prefix="/v1")


def _client_meta(request: Request) -> Tuple[Optional[str], Optional[str]]:
    ip = request.client.host if request.client else None
    return ip, request.headers.get("user-agent")


async def get_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.gateway.authenticate(
        authorization, request.cookies.get(runtime.settings.access_cookie_name)
    )


async def get_optional_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> Optional[AuthContext]:
    """Like :func:`get_user` but yields ``None`` instead of failing."""
    try:
        return await get_user(request, authorization)
    except (AuthenticationError, ForbiddenError):
        return None


async def _enforce_auth_rate_limit(request: Request) -> None:
    """Per-IP throttle shared by every unauthenticated auth route."""
    runtime = get_runtime()
    limit = runtime.settings.auth_rate_limit_max
    if limit <= 0:
        return
    ip, _ = _client_meta(request)
    with storage_guard("auth_rate_limit"):
        decision = await runtime.counter.hit(
            f"auth:ip:{ip or 'unknown'}",
            limit=limit,
            window=runtime.settings.auth_rate_limit_window,
        )
    if decision.allowed:
        return
    runtime.events.emit(
        SecurityEvent.AUTH_RATE_LIMITED,
        ip=ip,
        path=request.url.path,
        retry_after=decision.retry_after,
    )
    raise RateLimitedError(
        "too many authentication attempts", retry_after=decision.retry_after
    )


def _auth_envelope(result: AuthResult) -> Envelope:
    pair = result.credentials
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=result.user.id,
            role=result.user.role,
            session_id=result.session.id,
            session_expires_at=result.session.expires_at,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            access_expires_at=pair.access.expires_at,
            refresh_expires_at=pair.refresh.expires_at,
            csrf_token=result.csrf_token,
        ),
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    await _enforce_auth_rate_limit(request)
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    result = await runtime.accounts.register(
        body.email, body.password, user_agent=user_agent, ip=ip
    )
    set_auth_cookies(response, runtime.settings, result.credentials, result.csrf_token)
    return _auth_envelope(result)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    await _enforce_auth_rate_limit(request)
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    result = await runtime.accounts.login(
        body.email, body.password, user_agent=user_agent, ip=ip
    )
    set_auth_cookies(response, runtime.settings, result.credentials, result.csrf_token)
    return _auth_envelope(result)


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, response: Response, body: Optional[TokenRefreshRequest] = None):
    """Rotate the refresh credential from the body or the refresh cookie."""
    runtime = get_runtime()
    token = (body.refresh_token if body else None) or request.cookies.get(
        runtime.settings.refresh_cookie_name
    )
    if not token:
        raise AuthenticationError("refresh credential required")
    ip, user_agent = _client_meta(request)
    result = await runtime.accounts.refresh(token, user_agent=user_agent, ip=ip)
    set_auth_cookies(response, runtime.settings, result.credentials, result.csrf_token)
    return _auth_envelope(result)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    ip, _ = _client_meta(request)
    await runtime.accounts.logout(principal.session_id, user_id=principal.user_id, ip=ip)
    clear_auth_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    request: Request, response: Response, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    ip, _ = _client_meta(request)
    count = await runtime.accounts.logout_all(principal.user_id, ip=ip)
    clear_auth_cookies(response, runtime.settings)
    return Envelope(status="ok", data=LogoutAllResponse(revoked=count))


@router.get("/auth/csrf", response_model=Envelope, tags=["auth"])
async def csrf_token(response: Response):
    runtime = get_runtime()
    token = runtime.csrf.issue()
    set_csrf_cookie(response, runtime.settings, token)
    return Envelope(
        status="ok", data=CsrfResponse(csrf_token=token, header_name=runtime.csrf.header_name)
    )


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(
    response: Response, principal: Optional[AuthContext] = Depends(get_optional_user)
):
    """Report the caller's session without ever failing on bad credentials."""
    runtime = get_runtime()
    header_name = runtime.csrf.header_name
    session = runtime.sessions.get_active(principal.session_id) if principal else None
    if principal is None or session is None:
        return Envelope(
            status="ok", data=SessionResponse(authenticated=False, header_name=header_name)
        )
    token = runtime.csrf.issue()
    set_csrf_cookie(response, runtime.settings, token)
    return Envelope(
        status="ok",
        data=SessionResponse(
            authenticated=True,
            header_name=header_name,
            csrf_token=token,
            session_id=session.id,
            user_id=principal.user_id,
            role=principal.role,
            email_verified=principal.email_verified,
            created_at=session.created_at,
            last_seen_at=session.last_seen_at,
            expires_at=session.expires_at,
        ),
    )


@router.put("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, request: Request, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    ip, _ = _client_meta(request)
    revoked = await runtime.accounts.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        session_id=principal.session_id,
        ip=ip,
    )
    return Envelope(status="ok", data=PasswordChangeResponse(revoked_sessions=revoked))


@router.post("/auth/password/forgot", response_model=Envelope, status_code=202, tags=["auth"])
async def forgot_password(body: PasswordForgotRequest, request: Request):
    await _enforce_auth_rate_limit(request)
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    ack = await runtime.password_reset.request_reset(body.email, ip=ip, user_agent=user_agent)
    return Envelope(status="ok", data=PasswordForgotResponse(**ack))


@router.post("/auth/password/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_reset_otp(body: OtpVerifyRequest, request: Request):
    await _enforce_auth_rate_limit(request)
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    record = await runtime.password_reset.verify_otp(
        body.token, body.otp, ip=ip, user_agent=user_agent
    )
    issued = runtime.password_reset.issue_reset_session_token(record.id, record.user_id)
    return Envelope(
        status="ok",
        data=OtpVerifyResponse(reset_session_token=issued.token, expires_at=issued.expires_at),
    )


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm, request: Request, response: Response):
    await _enforce_auth_rate_limit(request)
    runtime = get_runtime()
    ip, user_agent = _client_meta(request)
    await runtime.password_reset.complete_password_reset(
        body.reset_session_token, body.new_password, ip=ip, user_agent=user_agent
    )
    clear_auth_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"message": "password updated"})
