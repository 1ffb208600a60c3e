"""Identity Resolver

Purpose: Map a verified external identity (issuer + subject) to a local user

Resolution order (first match wins):
1. Existing OIDC identity for (issuer, subject) -> its owning user
2. IdP-verified email matching an existing user -> link a new identity to it
3. Otherwise -> create a new user and identity

An email the IdP did not mark as verified never links to an existing account:
an IdP that lets users claim arbitrary addresses must not be able to take over
local accounts.

Each resolution runs in a single transaction. A unique-constraint violation
means a concurrent login created the same row first; the transaction is rolled
back and resolution is retried from step 1.
"""

import logging
import re
import uuid
from typing import Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sso_service.core.oidc.errors import OIDCError, OIDCErrorKind
from sso_service.domain.models.oidc import CallbackResult, VerifiedIdentity
from sso_service.infrastructure.db.models import OIDCIdentity, User

logger = logging.getLogger(__name__)

MAX_RESOLVE_ATTEMPTS = 3
MAX_USERNAME_ATTEMPTS = 5
USERNAME_BASE_MAX_LENGTH = 40


def _normalize_username_base(value: str) -> str:
    base = re.sub(r"[^a-z0-9._-]+", "_", value.strip().lower()).strip("._-")
    return base[:USERNAME_BASE_MAX_LENGTH]


def username_base(email: Optional[str], display_name: Optional[str], subject: str) -> str:
    """Pick the readable part of a generated username.

    Prefers the email local-part, then the display name, then the subject.
    """
    candidates = []
    if email and "@" in email:
        candidates.append(email.split("@", 1)[0])
    if display_name:
        candidates.append(display_name)
    candidates.append(subject[:16])

    for candidate in candidates:
        base = _normalize_username_base(candidate)
        if base:
            return base
    return "user"


def generate_username(base: str) -> str:
    """Append a random suffix so generated usernames rarely collide"""
    return f"{base}_{uuid.uuid4().hex[:8]}"


class IdentityResolver:
    """Resolves verified OIDC identities to local users.

    Owns its transactions: every call opens a fresh session from the factory.
    """

    def __init__(self, session_factory: async_sessionmaker, max_attempts: int = MAX_RESOLVE_ATTEMPTS):
        """Initialize resolver

        Args:
            session_factory: Async session factory
            max_attempts: Resolution attempts before giving up on constraint races
        """
        self.session_factory = session_factory
        self.max_attempts = max_attempts

    async def resolve(self, identity: VerifiedIdentity) -> CallbackResult:
        """Find, link or create the local user for an external identity.

        Args:
            identity: Claims from a validated ID token

        Returns:
            CallbackResult with the user and how it was resolved

        Raises:
            OIDCError: USER_CREATION_FAILED if resolution keeps conflicting
        """
        last_error: Optional[Exception] = None
        for attempt in range(1, self.max_attempts + 1):
            async with self.session_factory() as session:
                try:
                    async with session.begin():
                        return await self._resolve_in_transaction(session, identity)
                except IntegrityError as e:
                    last_error = e
                    logger.warning(
                        f"Concurrent OIDC login conflict for issuer={identity.issuer} "
                        f"subject={identity.subject} (attempt {attempt}/{self.max_attempts})"
                    )

        raise OIDCError(OIDCErrorKind.USER_CREATION_FAILED, str(last_error))

    async def _resolve_in_transaction(
        self, session: AsyncSession, identity: VerifiedIdentity
    ) -> CallbackResult:
        # 1. Known external account
        existing = await self._get_identity(session, identity.issuer, identity.subject)
        if existing is not None:
            user = await session.get(User, existing.user_id)
            if user is None:
                raise OIDCError(OIDCErrorKind.IDENTITY_LINK_FAILED, f"identity {existing.id} has no user")
            await self._refresh_profile(session, user, existing, identity)
            logger.info(f"OIDC login for existing user {user.id} via {identity.issuer}")
            return CallbackResult(user=user, is_new_user=False, linked_to_existing=False)

        # 2. Verified email matches a local account
        if identity.email and identity.email_verified:
            user = await self._get_user_by_email(session, identity.email)
            if user is not None:
                session.add(self._new_identity(user.id, identity))
                if identity.display_name and not user.display_name:
                    user.display_name = identity.display_name
                if identity.avatar_url and not user.avatar_url:
                    user.avatar_url = identity.avatar_url
                await session.flush()
                logger.info(f"Linked OIDC identity from {identity.issuer} to existing user {user.id}")
                return CallbackResult(user=user, is_new_user=False, linked_to_existing=True)

        # 3. New account
        user = await self._create_user(session, identity)
        session.add(self._new_identity(user.id, identity))
        await session.flush()
        logger.info(f"Created user {user.id} ('{user.username}') from OIDC identity at {identity.issuer}")
        return CallbackResult(user=user, is_new_user=True, linked_to_existing=False)

    async def _get_identity(self, session: AsyncSession, issuer: str, subject: str) -> Optional[OIDCIdentity]:
        result = await session.execute(
            select(OIDCIdentity).where(OIDCIdentity.issuer == issuer, OIDCIdentity.subject == subject)
        )
        return result.scalar_one_or_none()

    async def _get_user_by_email(self, session: AsyncSession, email: str) -> Optional[User]:
        result = await session.execute(select(User).where(func.lower(User.email) == email.lower()))
        return result.scalars().first()

    async def _username_taken(self, session: AsyncSession, username: str) -> bool:
        result = await session.execute(select(User.id).where(User.username == username))
        return result.first() is not None

    def _new_identity(self, user_id: UUID, identity: VerifiedIdentity) -> OIDCIdentity:
        return OIDCIdentity(
            id=uuid.uuid4(),
            user_id=user_id,
            issuer=identity.issuer,
            subject=identity.subject,
            email=identity.email,
            email_verified=identity.email_verified,
        )

    async def _create_user(self, session: AsyncSession, identity: VerifiedIdentity) -> User:
        base = username_base(identity.email, identity.display_name, identity.subject)
        username = None
        for _ in range(MAX_USERNAME_ATTEMPTS):
            candidate = generate_username(base)
            if not await self._username_taken(session, candidate):
                username = candidate
                break
        if username is None:
            raise OIDCError(OIDCErrorKind.USER_CREATION_FAILED, f"no free username for base '{base}'")

        # The users.email column is unique; an address already owned by another
        # account is not copied onto the new one.
        email = identity.email.lower() if identity.email else None
        if email and await self._get_user_by_email(session, email) is not None:
            email = None

        user = User(
            id=uuid.uuid4(),
            username=username,
            email=email,
            email_verified=bool(email) and identity.email_verified,
            display_name=identity.display_name,
            avatar_url=identity.avatar_url,
        )
        session.add(user)
        await session.flush()
        return user

    async def _refresh_profile(
        self,
        session: AsyncSession,
        user: User,
        existing: OIDCIdentity,
        identity: VerifiedIdentity,
    ) -> None:
        """Bring stored profile data in line with the latest claims"""
        if identity.email and (
            existing.email != identity.email or existing.email_verified != identity.email_verified
        ):
            existing.email = identity.email
            existing.email_verified = identity.email_verified

        if identity.email and identity.email_verified:
            email = identity.email.lower()
            if user.email != email:
                owner = await self._get_user_by_email(session, email)
                if owner is None:
                    user.email = email
                    user.email_verified = True

        if identity.display_name and user.display_name != identity.display_name:
            user.display_name = identity.display_name
        if identity.avatar_url and user.avatar_url != identity.avatar_url:
            user.avatar_url = identity.avatar_url

        await session.flush()

    async def list_identities(self, user_id: UUID) -> list[OIDCIdentity]:
        """Get all OIDC identities linked to a user"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(OIDCIdentity)
                .where(OIDCIdentity.user_id == user_id)
                .order_by(OIDCIdentity.created_at)
            )
            return list(result.scalars().all())

    async def unlink(self, user_id: UUID, issuer: str) -> int:
        """Remove a user's identities from one issuer.

        Returns:
            Number of identities removed

        Raises:
            OIDCError: IDENTITY_NOT_FOUND if nothing is linked for that issuer,
                LAST_LOGIN_METHOD if it would leave the user unable to log in
        """
        async with self.session_factory() as session:
            async with session.begin():
                user = await session.get(User, user_id)
                if user is None:
                    raise OIDCError(OIDCErrorKind.IDENTITY_NOT_FOUND, f"user {user_id} not found")

                result = await session.execute(select(OIDCIdentity).where(OIDCIdentity.user_id == user_id))
                identities = list(result.scalars().all())
                matching = [i for i in identities if i.issuer == issuer]
                if not matching:
                    raise OIDCError(OIDCErrorKind.IDENTITY_NOT_FOUND, issuer)

                if not user.has_password and len(matching) == len(identities):
                    raise OIDCError(OIDCErrorKind.LAST_LOGIN_METHOD)

                for identity in matching:
                    await session.delete(identity)

        logger.info(f"Unlinked {len(matching)} OIDC identity(ies) from {issuer} for user {user_id}")
        return len(matching)
