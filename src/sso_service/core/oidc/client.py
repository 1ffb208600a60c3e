"""OpenID Connect provider client.

Capability interface used by the login flow to talk to an identity provider:
- discover: fetch and cache the provider's discovery document
- exchange_code: trade an authorization code (plus PKCE verifier) for tokens
- validate_id_token: verify an ID token's signature and claims

HttpOIDCClient implements it for any standard OIDC provider (Dex, Google,
Okta, Azure AD, Auth0, Keycloak) using httpx and python-jose. Tests supply
either a fake implementation or an httpx MockTransport.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx
from jose import jwt, JWTError
from jose.exceptions import ExpiredSignatureError, JOSEError, JWTClaimsError

from sso_service.core.oidc.errors import OIDCError, OIDCErrorKind
from sso_service.core.oidc.registry import ProviderConfig

logger = logging.getLogger(__name__)

ASYMMETRIC_ALGORITHMS = ("RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512")
DEFAULT_TIMEOUT_SECONDS = 10.0
JWKS_MIN_REFRESH_SECONDS = 60.0


class ProviderMetadataError(Exception):
    """Provider discovery document or key set could not be loaded."""
    pass


@dataclass(frozen=True)
class ProviderMetadata:
    """Subset of the OIDC discovery document used by the login flow"""
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    signing_algorithms: tuple[str, ...] = ("RS256",)


class OIDCProviderClient(ABC):
    """Abstract OIDC provider client"""

    @abstractmethod
    async def discover(self, provider: ProviderConfig) -> ProviderMetadata:
        """Load provider metadata.

        Raises:
            ProviderMetadataError: If discovery fails
        """

    @abstractmethod
    async def exchange_code(
        self,
        provider: ProviderConfig,
        code: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> dict[str, Any]:
        """Exchange an authorization code for tokens.

        Returns:
            Token endpoint response (contains at least id_token)

        Raises:
            OIDCError: TOKEN_EXCHANGE_FAILED or INVALID_ID_TOKEN
        """

    @abstractmethod
    async def validate_id_token(
        self, provider: ProviderConfig, id_token: str, nonce: str
    ) -> dict[str, Any]:
        """Verify an ID token and return its claims.

        Raises:
            OIDCError: INVALID_ID_TOKEN or NONCE_MISMATCH
        """

    async def close(self) -> None:
        """Release client resources"""


def _rewrite_backchannel(url: Optional[str], issuer_url: str, discovery_url: Optional[str]) -> Optional[str]:
    """Point a server-to-server endpoint at the discovery host.

    Used when the backend reaches the IdP on a different address than the
    browser does (e.g. http://dex:5556 inside Docker vs http://localhost:5556).
    """
    if not url or not discovery_url or discovery_url == issuer_url:
        return url
    if url.startswith(issuer_url):
        return discovery_url + url[len(issuer_url):]
    return url


def _key_type_for(algorithm: str) -> str:
    return "EC" if algorithm.startswith("ES") else "RSA"


def select_jwk(keys: list, kid: Optional[str], algorithm: str) -> Optional[dict]:
    """Pick the JWK that can verify a token signed with ``algorithm``.

    Only keys of the matching type are considered, so providers publishing
    mixed RSA/EC sets work. With a ``kid`` the key must match it exactly.
    """
    key_type = _key_type_for(algorithm)
    candidates = [
        key for key in keys
        if isinstance(key, dict)
        and key.get("kty") == key_type
        and key.get("use", "sig") == "sig"
        and key.get("alg", algorithm) == algorithm
    ]
    if kid:
        for key in candidates:
            if key.get("kid") == kid:
                return key
        return None
    if len(candidates) == 1:
        return candidates[0]
    return None


@dataclass
class _ProviderCache:
    metadata: Optional[ProviderMetadata] = None
    jwks: Optional[dict] = None
    jwks_fetched_at: float = 0.0
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class HttpOIDCClient(OIDCProviderClient):
    """OIDC provider client over HTTP.

    Discovery documents and JWKS are cached per provider slug. Every outbound
    call carries an explicit timeout since the IdP is an untrusted dependency.
    """

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize OIDC client.

        Args:
            timeout_seconds: Timeout applied to every request to the IdP
            transport: Optional httpx transport (used by tests)
        """
        self.timeout = httpx.Timeout(timeout_seconds)
        self._transport = transport
        self._cache: dict[str, _ProviderCache] = {}

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _cache_for(self, provider: ProviderConfig) -> _ProviderCache:
        cache = self._cache.get(provider.slug)
        if cache is None:
            cache = self._cache.setdefault(provider.slug, _ProviderCache())
        return cache

    async def discover(self, provider: ProviderConfig) -> ProviderMetadata:
        """Fetch OIDC discovery document (.well-known/openid-configuration)."""
        cache = self._cache_for(provider)
        if cache.metadata is not None:
            return cache.metadata

        async with cache.lock:
            if cache.metadata is None:
                cache.metadata = await self._fetch_metadata(provider)
        return cache.metadata

    async def _fetch_metadata(self, provider: ProviderConfig) -> ProviderMetadata:
        base = provider.discovery_url or provider.issuer_url
        discovery_url = f"{base}/.well-known/openid-configuration"

        try:
            async with self._http() as client:
                response = await client.get(discovery_url)
                response.raise_for_status()
                document = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderMetadataError(
                f"OIDC discovery failed for {provider.slug} ({discovery_url}): {e}"
            ) from e

        if not isinstance(document, dict):
            raise ProviderMetadataError(f"OIDC discovery document for {provider.slug} is not an object")

        missing = [
            key for key in ("authorization_endpoint", "token_endpoint", "jwks_uri")
            if not isinstance(document.get(key), str) or not document.get(key)
        ]
        if missing:
            raise ProviderMetadataError(
                f"OIDC discovery document for {provider.slug} is missing: {', '.join(missing)}"
            )

        advertised = document.get("id_token_signing_alg_values_supported") or ["RS256"]
        algorithms = tuple(
            alg for alg in advertised if isinstance(alg, str) and alg in ASYMMETRIC_ALGORITHMS
        ) or ("RS256",)

        metadata = ProviderMetadata(
            issuer=str(document.get("issuer") or provider.issuer_url),
            # Browser-facing: never rewritten
            authorization_endpoint=document["authorization_endpoint"],
            token_endpoint=_rewrite_backchannel(
                document["token_endpoint"], provider.issuer_url, provider.discovery_url
            ),
            jwks_uri=_rewrite_backchannel(
                document["jwks_uri"], provider.issuer_url, provider.discovery_url
            ),
            signing_algorithms=algorithms,
        )
        logger.info(f"OIDC discovery loaded for {provider.slug} from {discovery_url}")
        return metadata

    async def _get_jwks(self, provider: ProviderConfig, force_refresh: bool = False) -> dict:
        """Fetch JSON Web Key Set for token validation."""
        cache = self._cache_for(provider)
        if cache.jwks is not None and not force_refresh:
            return cache.jwks

        metadata = await self.discover(provider)
        async with cache.lock:
            recently_fetched = time.monotonic() - cache.jwks_fetched_at < JWKS_MIN_REFRESH_SECONDS
            if cache.jwks is not None and (not force_refresh or recently_fetched):
                return cache.jwks
            try:
                async with self._http() as client:
                    response = await client.get(metadata.jwks_uri)
                    response.raise_for_status()
                    jwks = response.json()
            except (httpx.HTTPError, ValueError) as e:
                raise ProviderMetadataError(f"OIDC JWKS fetch failed for {provider.slug}: {e}") from e

            if not isinstance(jwks, dict) or not isinstance(jwks.get("keys"), list):
                raise ProviderMetadataError(f"OIDC JWKS for {provider.slug} has no keys")

            cache.jwks = jwks
            cache.jwks_fetched_at = time.monotonic()
            logger.info(f"OIDC JWKS loaded for {provider.slug} from {metadata.jwks_uri}")
            return jwks

    async def exchange_code(
        self,
        provider: ProviderConfig,
        code: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> dict[str, Any]:
        """Exchange authorization code for tokens at the provider's token endpoint."""
        try:
            metadata = await self.discover(provider)
        except ProviderMetadataError as e:
            raise OIDCError(OIDCErrorKind.TOKEN_EXCHANGE_FAILED, str(e)) from e

        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": provider.client_id,
            "client_secret": provider.client_secret,
            "code_verifier": code_verifier,
        }

        try:
            async with self._http() as client:
                response = await client.post(
                    metadata.token_endpoint,
                    data=data,
                    headers={
                        "Content-Type": "application/x-www-form-urlencoded",
                        "Accept": "application/json",
                    },
                )
        except httpx.HTTPError as e:
            raise OIDCError(
                OIDCErrorKind.TOKEN_EXCHANGE_FAILED, f"{type(e).__name__}: {e}"
            ) from e

        if not response.is_success:
            # Body is IdP-controlled; keep it out of the exception and truncate in logs
            logger.error(
                f"OIDC token exchange failed for {provider.slug}: "
                f"HTTP {response.status_code} {response.text[:200]!r}"
            )
            raise OIDCError(OIDCErrorKind.TOKEN_EXCHANGE_FAILED, f"HTTP {response.status_code}")

        try:
            tokens = response.json()
        except ValueError as e:
            raise OIDCError(OIDCErrorKind.TOKEN_EXCHANGE_FAILED, "token response is not JSON") from e

        if not isinstance(tokens, dict):
            raise OIDCError(OIDCErrorKind.TOKEN_EXCHANGE_FAILED, "token response is not an object")

        id_token = tokens.get("id_token")
        if not isinstance(id_token, str) or not id_token:
            raise OIDCError(OIDCErrorKind.INVALID_ID_TOKEN, "token response has no id_token")

        return tokens

    async def validate_id_token(
        self, provider: ProviderConfig, id_token: str, nonce: str
    ) -> dict[str, Any]:
        """Decode and validate OIDC ID token.

        Checks signature, expiry, audience, issuer and nonce.
        """
        try:
            metadata = await self.discover(provider)
            header = jwt.get_unverified_header(id_token)
        except ProviderMetadataError as e:
            raise OIDCError(OIDCErrorKind.INVALID_ID_TOKEN, str(e)) from e
        except JWTError as e:
            raise OIDCError(OIDCErrorKind.INVALID_ID_TOKEN, f"malformed token: {e}") from e

        alg = header.get("alg")
        if alg not in metadata.signing_algorithms:
            raise OIDCError(OIDCErrorKind.INVALID_ID_TOKEN, f"unexpected signing algorithm {alg!r}")

        kid = header.get("kid")
        if kid is not None and not isinstance(kid, str):
            raise OIDCError(OIDCErrorKind.INVALID_ID_TOKEN, "malformed token: kid is not a string")

        try:
            jwks = await self._get_jwks(provider)
            signing_key = select_jwk(jwks["keys"], kid, alg)
            if signing_key is None:
                # Provider may have rotated its signing keys
                jwks = await self._get_jwks(provider, force_refresh=True)
                signing_key = select_jwk(jwks["keys"], kid, alg)
        except ProviderMetadataError as e:
            raise OIDCError(OIDCErrorKind.INVALID_ID_TOKEN, str(e)) from e

        if signing_key is None:
            raise OIDCError(OIDCErrorKind.INVALID_ID_TOKEN, f"no {alg} signing key matches kid {kid!r}")

        try:
            claims = jwt.decode(
                id_token,
                signing_key,
                algorithms=[alg],
                audience=provider.client_id,
                options={
                    "verify_at_hash": False,  # Access token hash not checked
                    "require_aud": True,
                    "require_exp": True,
                },
            )
        except ExpiredSignatureError as e:
            raise OIDCError(OIDCErrorKind.INVALID_ID_TOKEN, "token expired") from e
        except JWTClaimsError as e:
            raise OIDCError(OIDCErrorKind.INVALID_ID_TOKEN, f"invalid claims: {e}") from e
        except JOSEError as e:
            raise OIDCError(OIDCErrorKind.INVALID_ID_TOKEN, f"signature verification failed: {e}") from e

        issuer = claims.get("iss")
        if not isinstance(issuer, str) or issuer.rstrip("/") != provider.issuer_url:
            raise OIDCError(OIDCErrorKind.INVALID_ID_TOKEN, f"unexpected issuer {issuer!r}")

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise OIDCError(OIDCErrorKind.INVALID_ID_TOKEN, "token has no subject")

        if claims.get("nonce") != nonce:
            raise OIDCError(OIDCErrorKind.NONCE_MISMATCH)

        return claims
