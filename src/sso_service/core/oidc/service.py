"""OIDC login flow.

Authorization Code flow with PKCE:

    authorize  -> AuthorizationRequestBuilder: persist state, build IdP URL
    callback   -> CallbackProcessor: consume state, exchange code, verify ID token
               -> IdentityResolver: find / link / create the local user

OIDCService is the facade the HTTP layer talks to.
"""

import logging
from typing import Any, Optional
from urllib.parse import urlencode, urlsplit
from uuid import UUID

from sso_service.core.oidc.client import OIDCProviderClient
from sso_service.core.oidc.errors import OIDCError, OIDCErrorKind
from sso_service.core.oidc.pkce import CODE_CHALLENGE_METHOD, generate_code_challenge
from sso_service.core.oidc.registry import ProviderConfig, ProviderRegistry
from sso_service.core.oidc.resolver import IdentityResolver
from sso_service.core.oidc.state import StateStore
from sso_service.domain.models.oidc import (
    AuthorizationResponse,
    CallbackResult,
    IdentityInfo,
    ProviderInfo,
    VerifiedIdentity,
)

logger = logging.getLogger(__name__)

MAX_EMAIL_LENGTH = 255
MAX_NAME_LENGTH = 255
MAX_URL_LENGTH = 2048


def callback_url(base_url: str, provider_slug: str) -> str:
    """This service's fixed redirect_uri for a provider"""
    return f"{base_url.rstrip('/')}/auth/oidc/{provider_slug}/callback"


def default_redirect_uri(frontend_url: str) -> str:
    return f"{frontend_url.rstrip('/')}/dashboard"


def is_safe_redirect(redirect_uri: str, frontend_url: str) -> bool:
    """Allow only relative paths or absolute URLs on the frontend origin"""
    if not redirect_uri:
        return True
    if "\\" in redirect_uri or any(ord(ch) < 32 for ch in redirect_uri):
        return False

    target = urlsplit(redirect_uri)
    if not target.scheme and not target.netloc:
        # Relative path; "//host" is protocol-relative and has a netloc
        return redirect_uri.startswith("/")

    frontend = urlsplit(frontend_url)
    return (target.scheme, target.netloc.lower()) == (frontend.scheme, frontend.netloc.lower())


def absolute_redirect_uri(redirect_uri: str, frontend_url: str) -> str:
    if redirect_uri.startswith("/"):
        return frontend_url.rstrip("/") + redirect_uri
    return redirect_uri


def _clean_string(value: Any, max_length: int) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    if not value or len(value) > max_length:
        return None
    return value


def identity_from_claims(provider: ProviderConfig, claims: dict[str, Any]) -> VerifiedIdentity:
    """Extract a VerifiedIdentity from validated ID token claims.

    Claims are IdP-supplied: wrong types and oversized values are dropped.
    """
    email = _clean_string(claims.get("email"), MAX_EMAIL_LENGTH)
    if email and ("@" not in email or email.startswith("@") or email.endswith("@")):
        email = None

    email_verified = claims.get("email_verified")
    # Some IdPs send the JSON string "true"
    verified = email is not None and (
        email_verified is True
        or (isinstance(email_verified, str) and email_verified.lower() == "true")
    )

    display_name = _clean_string(claims.get("name"), MAX_NAME_LENGTH) or _clean_string(
        claims.get("preferred_username"), MAX_NAME_LENGTH
    )

    avatar_url = _clean_string(claims.get("picture"), MAX_URL_LENGTH)
    if avatar_url and urlsplit(avatar_url).scheme not in ("http", "https"):
        avatar_url = None

    return VerifiedIdentity(
        issuer=provider.issuer_url,
        subject=claims["sub"],
        email=email,
        email_verified=verified,
        display_name=display_name,
        avatar_url=avatar_url,
    )


class AuthorizationRequestBuilder:
    """Builds IdP authorization URLs and persists the matching state"""

    def __init__(
        self,
        registry: ProviderRegistry,
        client: OIDCProviderClient,
        state_store: StateStore,
        base_url: str,
        frontend_url: str,
    ):
        self.registry = registry
        self.client = client
        self.state_store = state_store
        self.base_url = base_url
        self.frontend_url = frontend_url

    async def build(self, provider_slug: str, redirect_uri: str = "") -> AuthorizationResponse:
        """Start an authorization request.

        Args:
            provider_slug: Provider to authenticate with
            redirect_uri: Post-login destination (defaults to the frontend dashboard)

        Returns:
            AuthorizationResponse with the IdP URL, state token and PKCE verifier

        Raises:
            OIDCError: PROVIDER_NOT_FOUND or PROVIDER_DISABLED
            ProviderMetadataError: If the provider's discovery document is unavailable
        """
        provider = self.registry.get(provider_slug)
        metadata = await self.client.discover(provider)

        redirect_uri = redirect_uri or default_redirect_uri(self.frontend_url)
        state, entry = await self.state_store.create_state(provider.slug, redirect_uri)

        params = {
            "response_type": "code",
            "client_id": provider.client_id,
            "redirect_uri": callback_url(self.base_url, provider.slug),
            "scope": provider.scopes,
            "state": state,
            "code_challenge": generate_code_challenge(entry.code_verifier),
            "code_challenge_method": CODE_CHALLENGE_METHOD,
            "nonce": entry.nonce,
        }
        separator = "&" if "?" in metadata.authorization_endpoint else "?"
        auth_url = f"{metadata.authorization_endpoint}{separator}{urlencode(params)}"

        logger.info(f"Started OIDC authorization for provider {provider.slug}")
        return AuthorizationResponse(auth_url=auth_url, state=state, code_verifier=entry.code_verifier)


class CallbackProcessor:
    """Turns an IdP callback into a verified identity"""

    def __init__(
        self,
        registry: ProviderRegistry,
        client: OIDCProviderClient,
        state_store: StateStore,
        base_url: str,
    ):
        self.registry = registry
        self.client = client
        self.state_store = state_store
        self.base_url = base_url

    async def process(self, provider_slug: str, code: str, state: str) -> tuple[VerifiedIdentity, str]:
        """Validate a callback and verify the returned ID token.

        Args:
            provider_slug: Provider named in the callback path
            code: Authorization code
            state: State token returned by the IdP

        Returns:
            Tuple of (VerifiedIdentity, redirect_uri recorded at authorize time)

        Raises:
            OIDCError: On any state, exchange or validation failure
        """
        # Single use: consumed before anything else can fail
        entry = await self.state_store.pop_state(state)

        if entry.provider_slug != provider_slug:
            raise OIDCError(
                OIDCErrorKind.INVALID_STATE,
                f"state issued for '{entry.provider_slug}' presented to '{provider_slug}'",
            )

        provider = self.registry.get(provider_slug)

        tokens = await self.client.exchange_code(
            provider,
            code=code,
            redirect_uri=callback_url(self.base_url, provider.slug),
            code_verifier=entry.code_verifier,
        )
        claims = await self.client.validate_id_token(provider, tokens["id_token"], entry.nonce)

        return identity_from_claims(provider, claims), entry.redirect_uri


class OIDCService:
    """Facade over the OIDC login components"""

    def __init__(
        self,
        registry: ProviderRegistry,
        client: OIDCProviderClient,
        state_store: StateStore,
        resolver: IdentityResolver,
        base_url: str,
        frontend_url: str,
    ):
        self.registry = registry
        self.client = client
        self.state_store = state_store
        self.resolver = resolver
        self.frontend_url = frontend_url
        self.builder = AuthorizationRequestBuilder(registry, client, state_store, base_url, frontend_url)
        self.processor = CallbackProcessor(registry, client, state_store, base_url)

    def list_providers(self) -> list[ProviderInfo]:
        """Enabled providers, without credentials"""
        return [ProviderInfo(slug=p.slug, name=p.name) for p in self.registry.enabled()]

    async def get_authorization_url(self, provider_slug: str, redirect_uri: str = "") -> AuthorizationResponse:
        return await self.builder.build(provider_slug, redirect_uri)

    async def handle_callback(self, provider_slug: str, code: str, state: str) -> CallbackResult:
        """Process a callback and resolve the local user.

        Returns:
            CallbackResult including the post-login redirect_uri
        """
        identity, redirect_uri = await self.processor.process(provider_slug, code, state)
        result = await self.resolver.resolve(identity)
        result.redirect_uri = redirect_uri
        return result

    async def get_user_identities(self, user_id: UUID) -> list[IdentityInfo]:
        """OIDC identities linked to a user, for configured providers only"""
        identities = await self.resolver.list_identities(user_id)

        result = []
        for identity in identities:
            provider = self.registry.find_by_issuer(identity.issuer)
            if provider is None:
                continue  # Provider removed from configuration
            result.append(
                IdentityInfo(
                    provider_slug=provider.slug,
                    provider_name=provider.name,
                    email=identity.email,
                    linked_at=identity.created_at,
                )
            )
        return result

    async def unlink_identity(self, user_id: UUID, provider_slug: str) -> None:
        """Remove the user's identity for a provider.

        Raises:
            OIDCError: PROVIDER_NOT_FOUND, IDENTITY_NOT_FOUND or LAST_LOGIN_METHOD
        """
        provider = self.registry.get(provider_slug)
        await self.resolver.unlink(user_id, provider.issuer_url)

    async def close(self) -> None:
        await self.client.close()
        await self.state_store.close()
