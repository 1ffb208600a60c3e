"""FastAPI dependencies for the OIDC routes.

Components are built once in the application lifespan and stored on
app.state; these functions hand them to route handlers so tests can swap
them through app.dependency_overrides.
"""

import logging
import uuid
from typing import Optional
from uuid import UUID

from fastapi import Cookie, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from sso_service.api.cookies import ACCESS_TOKEN_COOKIE
from sso_service.config.settings import Settings
from sso_service.core.oidc.service import OIDCService
from sso_service.infrastructure.auth.token_issuer import TokenIssuer, decode_access_token_safely
from sso_service.infrastructure.db.database import get_db
from sso_service.infrastructure.db.models import User

logger = logging.getLogger(__name__)


def get_app_settings(request: Request) -> Settings:
    """Settings the application was started with"""
    return request.app.state.settings


def get_oidc_service(request: Request) -> OIDCService:
    return request.app.state.oidc_service


def get_token_issuer(request: Request) -> TokenIssuer:
    return request.app.state.token_issuer


async def extract_access_token(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    access_cookie: Optional[str] = Cookie(None, alias=ACCESS_TOKEN_COOKIE),
) -> Optional[str]:
    """Extract the access token from a Bearer header or the session cookie"""
    if authorization and authorization.startswith("Bearer "):
        token = authorization[7:].strip()  # Remove "Bearer " prefix
        if token:
            return token
    if access_cookie:
        return access_cookie
    return None


async def require_user(
    token: Optional[str] = Depends(extract_access_token),
    token_issuer: TokenIssuer = Depends(get_token_issuer),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Require an authenticated user (raises 401 if not authenticated)"""
    payload = decode_access_token_safely(token_issuer, token) if token else None

    user = None
    if payload is not None:
        try:
            user = await db.get(User, UUID(payload["sub"]))
        except (KeyError, ValueError):
            user = None

    if user is None:
        correlation_id = str(uuid.uuid4())
        logger.info(f"Authentication required but not provided (correlation: {correlation_id})")
        raise HTTPException(
            status_code=401,
            detail="Authentication required. Please log in to access this resource.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    logger.debug(f"Authentication successful for user: {user.id}")
    return user
