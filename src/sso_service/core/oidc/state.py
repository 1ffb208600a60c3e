"""OIDC authorization state storage.

Holds the PKCE verifier, nonce and post-login redirect for every in-flight
authorization request, keyed by the opaque `state` parameter.

Guarantees (both backends):
- Tokens carry 256 bits of entropy
- Entries are single-use: pop_state is an atomic get-and-delete
- Entries past expires_at are reported as STATE_EXPIRED on lookup, whether or
  not a sweep has run

Backends:
- InMemoryStateStore: single-process deployments and tests
- RedisStateStore: multi-instance deployments (state must be readable by
  whichever instance receives the callback)
"""

import asyncio
import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from redis.asyncio import Redis

from sso_service.core.oidc.errors import OIDCError, OIDCErrorKind
from sso_service.core.oidc.pkce import generate_code_verifier, generate_random_token
from sso_service.domain.models.oidc import StateEntry

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class StateStore(ABC):
    """Abstract store for authorization request state"""

    def __init__(self, ttl_minutes: int, clock: Optional[Clock] = None):
        if ttl_minutes < 0:
            raise ValueError("ttl_minutes must not be negative")
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock or _utc_now

    def _new_entry(self, provider_slug: str, redirect_uri: str) -> tuple[str, StateEntry]:
        now = self._clock()
        entry = StateEntry(
            provider_slug=provider_slug,
            redirect_uri=redirect_uri,
            code_verifier=generate_code_verifier(),
            nonce=generate_random_token(),
            created_at=now,
            expires_at=now + self.ttl,
        )
        return generate_random_token(), entry

    @abstractmethod
    async def create_state(self, provider_slug: str, redirect_uri: str) -> tuple[str, StateEntry]:
        """Create and persist a new state entry.

        Args:
            provider_slug: Provider the flow is started for
            redirect_uri: Caller's post-login destination

        Returns:
            Tuple of (state token, StateEntry)
        """

    @abstractmethod
    async def get_state(self, token: str) -> StateEntry:
        """Look up a state entry without consuming it.

        Raises:
            OIDCError: INVALID_STATE if unknown or consumed, STATE_EXPIRED if expired
        """

    @abstractmethod
    async def delete_state(self, token: str) -> None:
        """Remove a state entry (idempotent)"""

    @abstractmethod
    async def pop_state(self, token: str) -> StateEntry:
        """Atomically look up and consume a state entry.

        At most one caller can succeed for a given token.

        Raises:
            OIDCError: INVALID_STATE if unknown or consumed, STATE_EXPIRED if expired
        """

    @abstractmethod
    async def cleanup(self) -> int:
        """Remove expired entries.

        Returns:
            Number of entries removed
        """

    async def close(self) -> None:
        """Release backend resources"""


class InMemoryStateStore(StateStore):
    """Process-local state store guarded by a lock"""

    def __init__(self, ttl_minutes: int, clock: Optional[Clock] = None):
        super().__init__(ttl_minutes, clock)
        self._states: dict[str, StateEntry] = {}
        self._lock = threading.Lock()

    async def create_state(self, provider_slug: str, redirect_uri: str) -> tuple[str, StateEntry]:
        token, entry = self._new_entry(provider_slug, redirect_uri)
        with self._lock:
            self._states[token] = entry
        return token, entry

    async def get_state(self, token: str) -> StateEntry:
        with self._lock:
            entry = self._states.get(token) if token else None
            if entry is None:
                raise OIDCError(OIDCErrorKind.INVALID_STATE)
            if entry.is_expired(self._clock()):
                del self._states[token]
                raise OIDCError(OIDCErrorKind.STATE_EXPIRED)
            return entry

    async def delete_state(self, token: str) -> None:
        with self._lock:
            self._states.pop(token, None)

    async def pop_state(self, token: str) -> StateEntry:
        with self._lock:
            entry = self._states.pop(token, None) if token else None
        if entry is None:
            raise OIDCError(OIDCErrorKind.INVALID_STATE)
        if entry.is_expired(self._clock()):
            raise OIDCError(OIDCErrorKind.STATE_EXPIRED)
        return entry

    async def cleanup(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [token for token, entry in self._states.items() if entry.is_expired(now)]
            for token in expired:
                del self._states[token]
        if expired:
            logger.debug(f"Removed {len(expired)} expired OIDC state entries")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)


class RedisStateStore(StateStore):
    """Shared state store backed by Redis

    Storage Schema:
    - oidc:state:{token} -> {state_entry_json} (expires after TTL)
    """

    def __init__(self, redis_client: Redis, ttl_minutes: int, clock: Optional[Clock] = None):
        super().__init__(ttl_minutes, clock)
        self.redis = redis_client
        self.state_key_pattern = "oidc:state:{}"

    def _ttl_seconds(self) -> int:
        # Redis rejects a zero expiry; the stored expires_at still governs validity
        return max(int(self.ttl.total_seconds()), 1)

    async def create_state(self, provider_slug: str, redirect_uri: str) -> tuple[str, StateEntry]:
        token, entry = self._new_entry(provider_slug, redirect_uri)
        key = self.state_key_pattern.format(token)
        try:
            await self.redis.setex(key, self._ttl_seconds(), json.dumps(entry.to_dict()))
        except Exception as e:
            logger.error(f"Redis SETEX failed for OIDC state: {e}")
            raise
        return token, entry

    def _decode(self, raw) -> StateEntry:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return StateEntry.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Discarding malformed OIDC state entry: {e}")
            raise OIDCError(OIDCErrorKind.INVALID_STATE, "malformed state entry") from e

    async def get_state(self, token: str) -> StateEntry:
        if not token:
            raise OIDCError(OIDCErrorKind.INVALID_STATE)
        key = self.state_key_pattern.format(token)
        raw = await self.redis.get(key)
        if not raw:
            raise OIDCError(OIDCErrorKind.INVALID_STATE)
        entry = self._decode(raw)
        if entry.is_expired(self._clock()):
            await self.redis.delete(key)
            raise OIDCError(OIDCErrorKind.STATE_EXPIRED)
        return entry

    async def delete_state(self, token: str) -> None:
        if not token:
            return
        await self.redis.delete(self.state_key_pattern.format(token))

    async def pop_state(self, token: str) -> StateEntry:
        if not token:
            raise OIDCError(OIDCErrorKind.INVALID_STATE)
        raw = await self.redis.getdel(self.state_key_pattern.format(token))
        if not raw:
            raise OIDCError(OIDCErrorKind.INVALID_STATE)
        entry = self._decode(raw)
        if entry.is_expired(self._clock()):
            raise OIDCError(OIDCErrorKind.STATE_EXPIRED)
        return entry

    async def cleanup(self) -> int:
        # Redis key expiry reclaims entries
        return 0


async def run_state_cleanup(store: StateStore, interval_seconds: float) -> None:
    """Periodically sweep expired state entries until cancelled"""
    logger.info(f"OIDC state cleanup loop started (interval={interval_seconds}s)")
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await store.cleanup()
        except Exception as e:
            logger.error(f"OIDC state cleanup failed: {e}", exc_info=True)
