"""OIDC error taxonomy.

Every failure in the login subsystem is reported as an OIDCError carrying one
OIDCErrorKind. Callers branch on the kind, never on the message text.
"""

from enum import Enum
from typing import Optional


class OIDCErrorKind(Enum):
    """Closed set of OIDC failure kinds"""

    PROVIDER_NOT_FOUND = "provider_not_found"
    PROVIDER_DISABLED = "provider_disabled"
    INVALID_STATE = "invalid_state"
    STATE_EXPIRED = "state_expired"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    INVALID_ID_TOKEN = "invalid_id_token"
    NONCE_MISMATCH = "nonce_mismatch"
    USER_CREATION_FAILED = "user_creation_failed"
    IDENTITY_LINK_FAILED = "identity_link_failed"
    IDENTITY_NOT_FOUND = "identity_not_found"
    LAST_LOGIN_METHOD = "last_login_method"


_DEFAULT_MESSAGES = {
    OIDCErrorKind.PROVIDER_NOT_FOUND: "OIDC provider not found",
    OIDCErrorKind.PROVIDER_DISABLED: "OIDC provider is disabled",
    OIDCErrorKind.INVALID_STATE: "invalid or missing state parameter",
    OIDCErrorKind.STATE_EXPIRED: "state parameter has expired",
    OIDCErrorKind.TOKEN_EXCHANGE_FAILED: "failed to exchange authorization code for tokens",
    OIDCErrorKind.INVALID_ID_TOKEN: "invalid ID token",
    OIDCErrorKind.NONCE_MISMATCH: "ID token nonce does not match",
    OIDCErrorKind.USER_CREATION_FAILED: "failed to create user from OIDC identity",
    OIDCErrorKind.IDENTITY_LINK_FAILED: "failed to link OIDC identity to user",
    OIDCErrorKind.IDENTITY_NOT_FOUND: "OIDC identity is not linked to this user",
    OIDCErrorKind.LAST_LOGIN_METHOD: "cannot unlink the only remaining login method",
}

SECURITY_EVENT_KINDS = frozenset({OIDCErrorKind.INVALID_ID_TOKEN, OIDCErrorKind.NONCE_MISMATCH})


class OIDCError(Exception):
    """OIDC login failure.

    Attributes:
        kind: Stable failure kind
        detail: Internal detail for server-side logs (never shown to users)
    """

    def __init__(self, kind: OIDCErrorKind, detail: Optional[str] = None):
        self.kind = kind
        self.detail = detail
        message = _DEFAULT_MESSAGES[kind]
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    @property
    def is_security_event(self) -> bool:
        """Whether this failure may indicate a forged or replayed response"""
        return self.kind in SECURITY_EVENT_KINDS

    def __repr__(self) -> str:
        return f"OIDCError(kind={self.kind.name}, detail={self.detail!r})"
