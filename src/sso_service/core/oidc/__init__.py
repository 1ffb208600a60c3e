"""OpenID Connect federated login.

Implements the Authorization Code flow with PKCE against configured
identity providers:
- registry: provider configuration
- state: single-use authorization request state
- client: discovery, code exchange and ID token validation
- resolver: external identity to local user mapping
- service: the login flow itself
"""

from .errors import OIDCError, OIDCErrorKind
from .registry import ProviderConfig, ProviderRegistry
from .state import InMemoryStateStore, RedisStateStore, StateStore
from .client import HttpOIDCClient, OIDCProviderClient, ProviderMetadata, ProviderMetadataError
from .resolver import IdentityResolver
from .service import AuthorizationRequestBuilder, CallbackProcessor, OIDCService

__all__ = [
    "OIDCError",
    "OIDCErrorKind",
    "ProviderConfig",
    "ProviderRegistry",
    "StateStore",
    "InMemoryStateStore",
    "RedisStateStore",
    "OIDCProviderClient",
    "HttpOIDCClient",
    "ProviderMetadata",
    "ProviderMetadataError",
    "IdentityResolver",
    "AuthorizationRequestBuilder",
    "CallbackProcessor",
    "OIDCService",
]
