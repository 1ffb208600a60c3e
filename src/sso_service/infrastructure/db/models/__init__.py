"""
Database models for the SSO service.

- User: local account (subset used by federated login)
- OIDCIdentity: external account linked to a user
- RefreshToken: hashed session refresh tokens
"""

from sso_service.infrastructure.db.models.base import Base
from sso_service.infrastructure.db.models.oidc_identity import OIDCIdentity
from sso_service.infrastructure.db.models.refresh_token import RefreshToken
from sso_service.infrastructure.db.models.user import User

__all__ = [
    "Base",
    "User",
    "OIDCIdentity",
    "RefreshToken",
]
