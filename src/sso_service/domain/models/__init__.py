"""Domain models for SSO Service"""

from sso_service.domain.models.api_oidc import ErrorResponse, IdentityResponse, ProviderResponse
from sso_service.domain.models.auth import TokenPair, parse_utc_timestamp, to_json_compatible
from sso_service.domain.models.oidc import (
    AuthorizationResponse,
    CallbackResult,
    IdentityInfo,
    ProviderInfo,
    StateEntry,
    VerifiedIdentity,
)

__all__ = [
    # Session models
    "TokenPair",
    "parse_utc_timestamp",
    "to_json_compatible",
    # OIDC models
    "StateEntry",
    "VerifiedIdentity",
    "CallbackResult",
    "AuthorizationResponse",
    "ProviderInfo",
    "IdentityInfo",
    # API models
    "ProviderResponse",
    "IdentityResponse",
    "ErrorResponse",
]
