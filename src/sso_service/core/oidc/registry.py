"""OIDC provider registry.

Static mapping from URL-safe slug to provider configuration. Built once at
startup from the OIDC_PROVIDERS JSON array and never mutated afterwards.

Example:
    OIDC_PROVIDERS='[{"name": "Dex", "slug": "dex",
                      "issuer_url": "http://localhost:5556/dex",
                      "discovery_url": "http://dex:5556/dex",
                      "client_id": "pulse", "client_secret": "secret"}]'
"""

import json
import logging
import re
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from sso_service.core.oidc.errors import OIDCError, OIDCErrorKind

logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_-]*$")
DEFAULT_SCOPES = "openid email profile"


class ProviderConfig(BaseModel):
    """Configuration for a single OIDC identity provider"""

    model_config = ConfigDict(frozen=True)

    slug: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1)
    issuer_url: str = Field(..., min_length=1)
    discovery_url: Optional[str] = None
    client_id: str = Field(..., min_length=1)
    client_secret: str = Field(..., repr=False)
    scopes: str = DEFAULT_SCOPES
    enabled: bool = True

    @field_validator("slug")
    @classmethod
    def validate_slug(cls, v: str) -> str:
        if not SLUG_PATTERN.match(v):
            raise ValueError("slug must be lowercase letters, digits, '-' or '_'")
        return v

    @field_validator("issuer_url", "discovery_url")
    @classmethod
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().rstrip("/")
        return v or None

    @field_validator("scopes", mode="before")
    @classmethod
    def normalize_scopes(cls, v) -> str:
        if v is None:
            return DEFAULT_SCOPES
        if isinstance(v, (list, tuple)):
            v = " ".join(v)
        v = " ".join(str(v).split())
        return v or DEFAULT_SCOPES


class ProviderRegistry:
    """Lookup of configured OIDC providers by slug"""

    def __init__(self, providers: Iterable[ProviderConfig]):
        self._providers: dict[str, ProviderConfig] = {}
        for provider in providers:
            if provider.slug in self._providers:
                raise ValueError(f"Duplicate OIDC provider slug: {provider.slug}")
            self._providers[provider.slug] = provider

    @classmethod
    def from_json(cls, raw: str) -> "ProviderRegistry":
        """Build a registry from the OIDC_PROVIDERS JSON array.

        Raises:
            ValueError: If the JSON is malformed or a provider is invalid
        """
        raw = (raw or "").strip()
        if not raw:
            return cls([])

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"OIDC_PROVIDERS is not valid JSON: {e}") from e

        if not isinstance(data, list):
            raise ValueError("OIDC_PROVIDERS must be a JSON array")

        providers = []
        for index, item in enumerate(data):
            try:
                providers.append(ProviderConfig.model_validate(item))
            except ValidationError as e:
                raise ValueError(f"Invalid OIDC provider at index {index}: {e}") from e

        registry = cls(providers)
        logger.info(f"Loaded {len(providers)} OIDC provider(s): {', '.join(registry.slugs)}")
        return registry

    @property
    def slugs(self) -> list[str]:
        return list(self._providers)

    def get(self, slug: str) -> ProviderConfig:
        """Resolve an enabled provider by slug.

        Raises:
            OIDCError: PROVIDER_NOT_FOUND or PROVIDER_DISABLED
        """
        provider = self._providers.get(slug)
        if provider is None:
            raise OIDCError(OIDCErrorKind.PROVIDER_NOT_FOUND, slug)
        if not provider.enabled:
            raise OIDCError(OIDCErrorKind.PROVIDER_DISABLED, slug)
        return provider

    def enabled(self) -> list[ProviderConfig]:
        return [p for p in self._providers.values() if p.enabled]

    def find_by_issuer(self, issuer: str) -> Optional[ProviderConfig]:
        issuer = issuer.rstrip("/")
        for provider in self._providers.values():
            if provider.issuer_url == issuer:
                return provider
        return None

    def __len__(self) -> int:
        return len(self._providers)
