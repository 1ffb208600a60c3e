"""PKCE (RFC 7636) helpers."""

import base64
import hashlib
import secrets

CODE_CHALLENGE_METHOD = "S256"


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_random_token(num_bytes: int = 32) -> str:
    """Generate a URL-safe random string with num_bytes of entropy"""
    return _b64url(secrets.token_bytes(num_bytes))


def generate_code_verifier() -> str:
    """Generate a PKCE code verifier (43 characters, 256 bits of entropy)"""
    return generate_random_token(32)


def generate_code_challenge(verifier: str) -> str:
    """Derive the S256 code challenge for a verifier.

    Args:
        verifier: PKCE code verifier

    Returns:
        BASE64URL(SHA256(verifier)) without padding
    """
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
