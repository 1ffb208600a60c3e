"""Session token issuance"""

from sso_service.infrastructure.auth.token_issuer import TokenIssuer, decode_access_token_safely

__all__ = ["TokenIssuer", "decode_access_token_safely"]
