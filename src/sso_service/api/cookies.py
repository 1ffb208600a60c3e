"""Session cookies set after a successful federated login.

Cross-site deployments (frontend and API on different sites, signalled by a
configured cookie domain) need SameSite=None, which browsers only accept on
Secure cookies.
"""

from fastapi import Response

from sso_service.config.settings import Settings
from sso_service.domain.models.auth import TokenPair

ACCESS_TOKEN_COOKIE = "pulse_access_token"
REFRESH_TOKEN_COOKIE = "pulse_refresh_token"


def _cookie_policy(settings: Settings) -> dict:
    if settings.cookie_domain:
        return {"domain": settings.cookie_domain, "secure": True, "samesite": "none"}
    return {"domain": None, "secure": not settings.is_development, "samesite": "lax"}


def set_auth_cookies(response: Response, tokens: TokenPair, settings: Settings) -> None:
    """Attach access and refresh token cookies to a response"""
    policy = _cookie_policy(settings)
    response.set_cookie(
        key=ACCESS_TOKEN_COOKIE,
        value=tokens.access_token,
        max_age=tokens.access_expires_in,
        path="/",
        httponly=True,
        **policy,
    )
    response.set_cookie(
        key=REFRESH_TOKEN_COOKIE,
        value=tokens.refresh_token,
        max_age=tokens.refresh_expires_in,
        path="/",
        httponly=True,
        **policy,
    )


def clear_auth_cookies(response: Response, settings: Settings) -> None:
    """Expire both session cookies with the attributes they were set with"""
    policy = _cookie_policy(settings)
    for key in (ACCESS_TOKEN_COOKIE, REFRESH_TOKEN_COOKIE):
        response.delete_cookie(key=key, path="/", httponly=True, **policy)
