from __future__ import annotations

from datetime import datetime, timezone

from fastapi import Response

from tessera.config import Settings
from tessera.service.credentials import CredentialPair


def _seconds_until(moment: datetime) -> int:
    return max(0, int((moment - datetime.now(timezone.utc)).total_seconds()))


def _cookie_kwargs(settings: Settings) -> dict:
    return {
        "path": settings.cookie_path,
        "domain": settings.cookie_domain,
        "secure": settings.secure_cookies,
        "samesite": settings.cookie_samesite.value,
    }


def set_auth_cookies(
    response: Response, settings: Settings, credentials: CredentialPair, csrf_token: str
) -> None:
    """Attach the httpOnly credential cookies and the readable CSRF cookie."""
    common = _cookie_kwargs(settings)
    response.set_cookie(
        settings.access_cookie_name,
        credentials.access_token,
        max_age=_seconds_until(credentials.access.expires_at),
        httponly=True,
        **common,
    )
    response.set_cookie(
        settings.refresh_cookie_name,
        credentials.refresh_token,
        max_age=_seconds_until(credentials.refresh.expires_at),
        httponly=True,
        **common,
    )
    set_csrf_cookie(response, settings, csrf_token)


def set_csrf_cookie(response: Response, settings: Settings, csrf_token: str) -> None:
    response.set_cookie(
        settings.csrf_cookie_name,
        csrf_token,
        max_age=int(settings.csrf_cookie_max_age.total_seconds()),
        httponly=False,
        **_cookie_kwargs(settings),
    )


def clear_auth_cookies(response: Response, settings: Settings) -> None:
    common = _cookie_kwargs(settings)
    for name in (
        settings.access_cookie_name,
        settings.refresh_cookie_name,
        settings.csrf_cookie_name,
    ):
        response.delete_cookie(name, **common)
