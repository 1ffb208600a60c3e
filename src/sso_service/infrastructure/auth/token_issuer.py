"""Session Token Issuer

Purpose: Mint this application's own session tokens after a federated login

Key Features:
- Short-lived HS256 JWT access tokens
- Opaque refresh tokens, stored only as SHA-256 hashes
- Refresh token revocation (the only session revocation supported)

Access Token Format:
{
    "sub": "user-uuid",
    "username": "alice_1a2b3c4d",
    "iss": "pulse",
    "iat": 1700000000,
    "exp": 1700000900,
    "type": "access",
    "jti": "token-uuid"
}
"""

import hashlib
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from sso_service.domain.models.auth import TokenPair
from sso_service.infrastructure.db.models import RefreshToken, User

logger = logging.getLogger(__name__)


class TokenIssuer:
    """Issues and verifies session tokens for local users"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        secret_key: str,
        algorithm: str = "HS256",
        issuer: str = "pulse",
        access_token_expire_minutes: int = 15,
        refresh_token_expire_days: int = 7,
    ):
        """Initialize token issuer

        Args:
            session_factory: Async session factory for refresh token storage
            secret_key: Access token signing key
            algorithm: Access token signing algorithm
            issuer: Access token iss claim
            access_token_expire_minutes: Access token lifetime
            refresh_token_expire_days: Refresh token lifetime
        """
        self.session_factory = session_factory
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.issuer = issuer
        self.access_token_ttl = timedelta(minutes=access_token_expire_minutes)
        self.refresh_token_ttl = timedelta(days=refresh_token_expire_days)

    def create_access_token(self, user: User) -> str:
        """Create a signed JWT access token for a user"""
        now = datetime.now(timezone.utc)
        to_encode = {
            "sub": str(user.id),
            "username": user.username,
            "iss": self.issuer,
            "iat": now,
            "exp": now + self.access_token_ttl,
            "type": "access",
            "jti": str(uuid.uuid4()),
        }
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def verify_access_token(self, token: str) -> dict:
        """Verify and decode an access token.

        Raises:
            JWTError: If token is invalid or expired
            ValueError: If token is not an access token
        """
        payload = jwt.decode(
            token,
            self.secret_key,
            algorithms=[self.algorithm],
            issuer=self.issuer,
        )
        if payload.get("type") != "access":
            raise ValueError(f"Invalid token type. Expected access, got {payload.get('type')}")
        return payload

    async def issue(self, user: User) -> TokenPair:
        """Mint an access/refresh token pair for a user"""
        refresh_token = secrets.token_urlsafe(32)
        async with self.session_factory() as session:
            async with session.begin():
                session.add(
                    RefreshToken(
                        user_id=user.id,
                        token_hash=self._hash_token(refresh_token),
                        expires_at=datetime.now(timezone.utc) + self.refresh_token_ttl,
                    )
                )

        logger.info(f"Issued session tokens for user {user.id}")
        return TokenPair(
            access_token=self.create_access_token(user),
            refresh_token=refresh_token,
            access_expires_in=int(self.access_token_ttl.total_seconds()),
            refresh_expires_in=int(self.refresh_token_ttl.total_seconds()),
        )

    async def revoke_refresh_token(self, refresh_token: str) -> bool:
        """Revoke a refresh token

        Returns:
            True if an active token was revoked
        """
        async with self.session_factory() as session:
            async with session.begin():
                stored = await self._find(session, refresh_token)
                if stored is None or stored.is_revoked:
                    return False
                stored.revoked_at = datetime.now(timezone.utc)

        logger.info(f"Revoked refresh token {stored.id} for user {stored.user_id}")
        return True

    async def _find(self, session, refresh_token: str) -> Optional[RefreshToken]:
        if not refresh_token:
            return None
        result = await session.execute(
            select(RefreshToken).where(RefreshToken.token_hash == self._hash_token(refresh_token))
        )
        return result.scalar_one_or_none()

    def _hash_token(self, token: str) -> str:
        """Generate SHA-256 hash of token"""
        return hashlib.sha256(token.encode()).hexdigest()


def decode_access_token_safely(issuer: TokenIssuer, token: str) -> Optional[dict]:
    """Decode an access token, returning None when it is not valid"""
    try:
        return issuer.verify_access_token(token)
    except (JWTError, ValueError) as e:
        logger.debug(f"Access token rejected: {e}")
        return None
