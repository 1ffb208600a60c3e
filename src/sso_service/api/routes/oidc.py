"""OIDC Login Routes

Purpose: Browser-facing endpoints for federated login

Key Endpoints:
- GET /auth/oidc/providers: Enabled providers for the login page
- GET /auth/oidc/{provider}/authorize: Redirect to the identity provider
- GET /auth/oidc/{provider}/callback: Complete login, set session cookies
- GET /auth/oidc/identities: Identities linked to the current user
- DELETE /auth/oidc/{provider}/identity: Unlink an identity
- POST /auth/oidc/logout: Revoke the refresh token and clear cookies

Only the fixed messages in USER_MESSAGES ever reach the browser. Internal
error detail and anything the identity provider sent is logged, never echoed.
"""

import logging
import uuid
from typing import Optional
from urllib.parse import urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Cookie, Depends, Query, Response, status
from fastapi.responses import JSONResponse, RedirectResponse

from sso_service.api.cookies import REFRESH_TOKEN_COOKIE, clear_auth_cookies, set_auth_cookies
from sso_service.api.dependencies import (
    get_app_settings,
    get_oidc_service,
    get_token_issuer,
    require_user,
)
from sso_service.config.settings import Settings
from sso_service.core.oidc.client import ProviderMetadataError
from sso_service.core.oidc.errors import OIDCError, OIDCErrorKind
from sso_service.core.oidc.service import (
    OIDCService,
    absolute_redirect_uri,
    default_redirect_uri,
    is_safe_redirect,
)
from sso_service.domain.models import ErrorResponse, IdentityResponse, ProviderResponse
from sso_service.infrastructure.auth.token_issuer import TokenIssuer
from sso_service.infrastructure.db.models import User

router = APIRouter(prefix="/auth/oidc", tags=["oidc"])
logger = logging.getLogger(__name__)

SESSION_EXPIRED_MESSAGE = "Authentication session expired. Please try again."
EXCHANGE_FAILED_MESSAGE = "Failed to complete authentication. Please try again."
INVALID_RESPONSE_MESSAGE = "Invalid authentication response. Please try again."
PROVIDER_DENIED_MESSAGE = "Sign-in was cancelled or denied by the identity provider."
MISSING_PARAMS_MESSAGE = "Missing code or state parameter."
GENERIC_MESSAGE = "Authentication failed. Please try again."

USER_MESSAGES: dict[OIDCErrorKind, str] = {
    OIDCErrorKind.PROVIDER_NOT_FOUND: GENERIC_MESSAGE,
    OIDCErrorKind.PROVIDER_DISABLED: GENERIC_MESSAGE,
    OIDCErrorKind.INVALID_STATE: SESSION_EXPIRED_MESSAGE,
    OIDCErrorKind.STATE_EXPIRED: SESSION_EXPIRED_MESSAGE,
    OIDCErrorKind.TOKEN_EXCHANGE_FAILED: EXCHANGE_FAILED_MESSAGE,
    OIDCErrorKind.INVALID_ID_TOKEN: INVALID_RESPONSE_MESSAGE,
    OIDCErrorKind.NONCE_MISMATCH: INVALID_RESPONSE_MESSAGE,
    OIDCErrorKind.USER_CREATION_FAILED: GENERIC_MESSAGE,
    OIDCErrorKind.IDENTITY_LINK_FAILED: GENERIC_MESSAGE,
    OIDCErrorKind.IDENTITY_NOT_FOUND: GENERIC_MESSAGE,
    OIDCErrorKind.LAST_LOGIN_METHOD: GENERIC_MESSAGE,
}

# JSON endpoints: status code per error kind
_STATUS_CODES: dict[OIDCErrorKind, int] = {
    OIDCErrorKind.PROVIDER_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    OIDCErrorKind.PROVIDER_DISABLED: status.HTTP_403_FORBIDDEN,
    OIDCErrorKind.IDENTITY_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    OIDCErrorKind.LAST_LOGIN_METHOD: status.HTTP_409_CONFLICT,
}


def user_message(error: OIDCError) -> str:
    """User-facing message for an OIDC error"""
    return USER_MESSAGES.get(error.kind, GENERIC_MESSAGE)


def _error_json(status_code: int, error: str, message: str, correlation_id: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, message=message).model_dump(),
        headers={"X-Correlation-Id": correlation_id},
    )


def _oidc_error_json(e: OIDCError, correlation_id: str) -> JSONResponse:
    status_code = _STATUS_CODES.get(e.kind, status.HTTP_500_INTERNAL_SERVER_ERROR)
    # Default kind message only; e.detail stays in the logs
    message = str(OIDCError(e.kind))
    return _error_json(status_code, e.kind.value, message, correlation_id)


def _with_query_param(url: str, key: str, value: str) -> str:
    parts = urlsplit(url)
    param = urlencode({key: value})
    query = f"{parts.query}&{param}" if parts.query else param
    return urlunsplit(parts._replace(query=query))


def _login_error_redirect(settings: Settings, message: str, correlation_id: str) -> RedirectResponse:
    url = f"{settings.frontend_url.rstrip('/')}/login?{urlencode({'error': message})}"
    response = RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)
    response.headers["X-Correlation-Id"] = correlation_id
    return response


def _log_callback_failure(e: OIDCError, provider: str, correlation_id: str) -> None:
    extra = {"provider": provider, "error_kind": e.kind.value, "correlation_id": correlation_id}
    if e.kind == OIDCErrorKind.NONCE_MISMATCH:
        logger.error(
            f"SECURITY: ID token nonce mismatch for provider {provider}, possible replay "
            f"(correlation: {correlation_id})",
            extra=extra,
        )
    elif e.is_security_event:
        logger.error(
            f"SECURITY: rejected ID token from provider {provider}: {e.detail} "
            f"(correlation: {correlation_id})",
            extra=extra,
        )
    else:
        logger.warning(f"OIDC callback failed for provider {provider}: {e} (correlation: {correlation_id})", extra=extra)


@router.get("/providers", response_model=list[ProviderResponse])
async def list_providers(service: OIDCService = Depends(get_oidc_service)) -> list[ProviderResponse]:
    """List enabled OIDC providers"""
    return [ProviderResponse(slug=p.slug, name=p.name) for p in service.list_providers()]


@router.get(
    "/{provider}/authorize",
    status_code=status.HTTP_302_FOUND,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def authorize(
    provider: str,
    redirect_uri: str = Query("", description="Post-login destination on the frontend"),
    service: OIDCService = Depends(get_oidc_service),
    settings: Settings = Depends(get_app_settings),
):
    """Start OIDC login

    Redirects the browser to the provider's authorization endpoint.
    """
    correlation_id = str(uuid.uuid4())

    if not is_safe_redirect(redirect_uri, settings.frontend_url):
        logger.warning(
            f"Rejected OIDC redirect_uri for provider {provider} (correlation: {correlation_id})",
            extra={"provider": provider, "redirect_uri": redirect_uri[:200], "correlation_id": correlation_id},
        )
        return _error_json(
            status.HTTP_400_BAD_REQUEST,
            "invalid_redirect_uri",
            "redirect_uri must be a path or a URL on the frontend origin",
            correlation_id,
        )

    try:
        auth = await service.get_authorization_url(provider, redirect_uri)
    except OIDCError as e:
        logger.info(
            f"OIDC authorize rejected for provider {provider}: {e} (correlation: {correlation_id})",
            extra={"provider": provider, "error_kind": e.kind.value, "correlation_id": correlation_id},
        )
        return _oidc_error_json(e, correlation_id)
    except ProviderMetadataError as e:
        logger.error(
            f"OIDC provider {provider} unavailable: {e} (correlation: {correlation_id})",
            extra={"provider": provider, "correlation_id": correlation_id},
        )
        return _error_json(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "provider_unavailable",
            "Failed to start authentication",
            correlation_id,
        )

    return RedirectResponse(url=auth.auth_url, status_code=status.HTTP_302_FOUND)


@router.get("/{provider}/callback", status_code=status.HTTP_302_FOUND)
async def callback(
    provider: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    service: OIDCService = Depends(get_oidc_service),
    token_issuer: TokenIssuer = Depends(get_token_issuer),
    settings: Settings = Depends(get_app_settings),
):
    """Complete OIDC login

    Always answers with a redirect: to the original destination with session
    cookies on success, or to the frontend login page with an error message.
    """
    correlation_id = str(uuid.uuid4())

    if error:
        logger.warning(
            f"OIDC provider {provider} returned error {error[:100]!r}: "
            f"{(error_description or '')[:200]!r} (correlation: {correlation_id})",
            extra={"provider": provider, "correlation_id": correlation_id},
        )
        if state:
            # The flow is over; the state must not be usable again
            try:
                await service.state_store.delete_state(state)
            except Exception as e:
                logger.error(
                    f"Failed to discard OIDC state after provider error: {e} (correlation: {correlation_id})",
                    extra={"provider": provider, "correlation_id": correlation_id},
                    exc_info=True,
                )
        return _login_error_redirect(settings, PROVIDER_DENIED_MESSAGE, correlation_id)

    if not code or not state:
        logger.info(
            f"OIDC callback for provider {provider} missing code or state (correlation: {correlation_id})",
            extra={"provider": provider, "correlation_id": correlation_id},
        )
        return _login_error_redirect(settings, MISSING_PARAMS_MESSAGE, correlation_id)

    try:
        result = await service.handle_callback(provider, code, state)
        tokens = await token_issuer.issue(result.user)
    except OIDCError as e:
        _log_callback_failure(e, provider, correlation_id)
        return _login_error_redirect(settings, user_message(e), correlation_id)
    except Exception as e:
        logger.error(
            f"Unexpected OIDC callback failure for provider {provider}: {e} (correlation: {correlation_id})",
            extra={"provider": provider, "correlation_id": correlation_id},
            exc_info=True,
        )
        return _login_error_redirect(settings, GENERIC_MESSAGE, correlation_id)

    redirect_uri = absolute_redirect_uri(
        result.redirect_uri or default_redirect_uri(settings.frontend_url), settings.frontend_url
    )
    if result.is_new_user:
        redirect_uri = _with_query_param(redirect_uri, "welcome", "true")

    logger.info(
        f"OIDC login successful for user {result.user.id} via {provider} "
        f"(new_user={result.is_new_user}, linked={result.linked_to_existing}, correlation: {correlation_id})",
        extra={"provider": provider, "user_id": str(result.user.id), "correlation_id": correlation_id},
    )

    response = RedirectResponse(url=redirect_uri, status_code=status.HTTP_302_FOUND)
    set_auth_cookies(response, tokens, settings)
    return response


@router.get("/identities", response_model=list[IdentityResponse])
async def list_identities(
    current_user: User = Depends(require_user),
    service: OIDCService = Depends(get_oidc_service),
) -> list[IdentityResponse]:
    """List OIDC identities linked to the current user"""
    identities = await service.get_user_identities(current_user.id)
    return [
        IdentityResponse(
            provider_slug=i.provider_slug,
            provider_name=i.provider_name,
            email=i.email,
            linked_at=i.linked_at,
        )
        for i in identities
    ]


@router.delete(
    "/{provider}/identity",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def unlink_identity(
    provider: str,
    current_user: User = Depends(require_user),
    service: OIDCService = Depends(get_oidc_service),
):
    """Unlink the current user's identity for a provider"""
    correlation_id = str(uuid.uuid4())

    try:
        await service.unlink_identity(current_user.id, provider)
    except OIDCError as e:
        logger.info(
            f"OIDC unlink rejected for user {current_user.id}, provider {provider}: {e} "
            f"(correlation: {correlation_id})",
            extra={"provider": provider, "error_kind": e.kind.value, "correlation_id": correlation_id},
        )
        return _oidc_error_json(e, correlation_id)

    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_TOKEN_COOKIE),
    token_issuer: TokenIssuer = Depends(get_token_issuer),
    settings: Settings = Depends(get_app_settings),
):
    """End the session: revoke the refresh token and clear session cookies

    Succeeds without a session so the frontend can always call it.
    """
    if refresh_token:
        revoked = await token_issuer.revoke_refresh_token(refresh_token)
        logger.info(f"Logout (refresh token revoked: {revoked})")

    response = Response(status_code=status.HTTP_204_NO_CONTENT)
    clear_auth_cookies(response, settings)
    return response
