"""OIDC Login Data Models

Purpose: Define the transient data structures passed between the OIDC
login components.

Key Components:
- StateEntry: Server-side record for one in-flight authorization request
- VerifiedIdentity: Claims extracted from a validated ID token
- CallbackResult: Outcome of resolving a verified identity to a local user
- AuthorizationResponse: Data needed to redirect the browser to the IdP
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from sso_service.domain.models.auth import parse_utc_timestamp, to_json_compatible

if TYPE_CHECKING:
    from sso_service.infrastructure.db.models import User


@dataclass
class StateEntry:
    """Short-lived, single-use authorization request state

    Attributes:
        provider_slug: Provider the flow was started for
        redirect_uri: Caller's post-login destination
        code_verifier: PKCE secret
        nonce: Value the IdP must echo inside the ID token
        created_at: Creation timestamp
        expires_at: Instant after which the entry is no longer valid
    """
    provider_slug: str
    redirect_uri: str
    code_verifier: str
    nonce: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check if the entry is past its expiry"""
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization"""
        return {
            "provider_slug": self.provider_slug,
            "redirect_uri": self.redirect_uri,
            "code_verifier": self.code_verifier,
            "nonce": self.nonce,
            "created_at": to_json_compatible(self.created_at),
            "expires_at": to_json_compatible(self.expires_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StateEntry":
        """Create from dictionary (JSON deserialization)"""
        return cls(
            provider_slug=data["provider_slug"],
            redirect_uri=data["redirect_uri"],
            code_verifier=data["code_verifier"],
            nonce=data["nonce"],
            created_at=parse_utc_timestamp(data["created_at"]),
            expires_at=parse_utc_timestamp(data["expires_at"]),
        )


@dataclass(frozen=True)
class VerifiedIdentity:
    """External identity asserted by a validated ID token"""
    issuer: str
    subject: str
    email: Optional[str] = None
    email_verified: bool = False
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass
class CallbackResult:
    """Result of handling an OIDC callback

    Attributes:
        user: Resolved local user
        is_new_user: Account was created by this login
        linked_to_existing: Identity was attached to an existing account by verified email
        redirect_uri: Post-login destination recorded when the flow started
    """
    user: "User"
    is_new_user: bool = False
    linked_to_existing: bool = False
    redirect_uri: Optional[str] = None


@dataclass(frozen=True)
class AuthorizationResponse:
    """Data needed to redirect the browser to the OIDC provider"""
    auth_url: str
    state: str
    code_verifier: str


@dataclass(frozen=True)
class ProviderInfo:
    """Public view of a configured provider"""
    slug: str
    name: str


@dataclass(frozen=True)
class IdentityInfo:
    """A user's linked OIDC identity"""
    provider_slug: str
    provider_name: str
    email: Optional[str]
    linked_at: datetime
