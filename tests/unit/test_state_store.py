"""Unit tests for OIDC state stores

InMemoryStateStore is tested directly with an injectable clock.
RedisStateStore is tested with mocked Redis (unittest.mock).
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from sso_service.core.oidc.errors import OIDCError, OIDCErrorKind
from sso_service.core.oidc.state import InMemoryStateStore, RedisStateStore, run_state_cleanup

pytestmark = pytest.mark.unit


class FakeClock:
    """Manually advanced UTC clock"""

    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStateStore(ttl_minutes=10, clock=clock)


class TestInMemoryCreateState:
    """Test state creation"""

    @pytest.mark.asyncio
    async def test_create_state_records_entry(self, store, clock):
        """Happy path: entry carries provider, redirect, verifier, nonce and expiry"""
        # Act
        token, entry = await store.create_state("dex", "http://app.test/dashboard")

        # Assert
        assert len(token) >= 43
        assert entry.provider_slug == "dex"
        assert entry.redirect_uri == "http://app.test/dashboard"
        assert len(entry.code_verifier) == 43
        assert entry.nonce and entry.nonce != entry.code_verifier
        assert entry.created_at == clock.now
        assert entry.expires_at == clock.now + timedelta(minutes=10)
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_tokens_are_unique(self, store):
        """Happy path: every request gets its own state and secrets"""
        results = [await store.create_state("dex", "/") for _ in range(50)]

        assert len({token for token, _ in results}) == 50
        assert len({entry.nonce for _, entry in results}) == 50

    def test_negative_ttl_rejected(self):
        """Bad input: negative TTL is a configuration error"""
        with pytest.raises(ValueError):
            InMemoryStateStore(ttl_minutes=-1)


class TestInMemoryGetState:
    """Test state lookup"""

    @pytest.mark.asyncio
    async def test_get_state_returns_entry(self, store):
        """Happy path: lookup before expiry returns the entry without consuming it"""
        token, entry = await store.create_state("dex", "/")

        assert await store.get_state(token) == entry
        assert await store.get_state(token) == entry

    @pytest.mark.asyncio
    async def test_unknown_token_is_invalid(self, store):
        """Bad input: unknown token"""
        with pytest.raises(OIDCError) as exc_info:
            await store.get_state("never-issued")

        assert exc_info.value.kind == OIDCErrorKind.INVALID_STATE

    @pytest.mark.asyncio
    async def test_empty_token_is_invalid(self, store):
        """Bad input: empty token"""
        with pytest.raises(OIDCError) as exc_info:
            await store.get_state("")

        assert exc_info.value.kind == OIDCErrorKind.INVALID_STATE

    @pytest.mark.asyncio
    async def test_expired_entry_reported_and_removed(self, store, clock):
        """Edge case: expiry is enforced on lookup, without any sweep"""
        token, _ = await store.create_state("dex", "/")
        clock.advance(minutes=10)

        with pytest.raises(OIDCError) as exc_info:
            await store.get_state(token)

        assert exc_info.value.kind == OIDCErrorKind.STATE_EXPIRED
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_entry_valid_just_before_expiry(self, store, clock):
        """Edge case: entry is valid until expires_at"""
        token, _ = await store.create_state("dex", "/")
        clock.advance(minutes=9, seconds=59)

        assert (await store.get_state(token)).provider_slug == "dex"

    @pytest.mark.asyncio
    async def test_zero_ttl_expires_immediately(self, clock):
        """Edge case: TTL of zero means every entry is already expired"""
        store = InMemoryStateStore(ttl_minutes=0, clock=clock)
        token, _ = await store.create_state("dex", "/")

        with pytest.raises(OIDCError) as exc_info:
            await store.get_state(token)

        assert exc_info.value.kind == OIDCErrorKind.STATE_EXPIRED


class TestInMemoryPopState:
    """Test single-use consumption"""

    @pytest.mark.asyncio
    async def test_pop_is_single_use(self, store):
        """Happy path: second pop of the same token fails"""
        token, entry = await store.create_state("dex", "/")

        assert await store.pop_state(token) == entry
        with pytest.raises(OIDCError) as exc_info:
            await store.pop_state(token)

        assert exc_info.value.kind == OIDCErrorKind.INVALID_STATE

    @pytest.mark.asyncio
    async def test_pop_after_delete_fails(self, store):
        """Happy path: deleted state cannot be used"""
        token, _ = await store.create_state("dex", "/")
        await store.delete_state(token)
        await store.delete_state(token)  # idempotent

        with pytest.raises(OIDCError) as exc_info:
            await store.get_state(token)

        assert exc_info.value.kind == OIDCErrorKind.INVALID_STATE

    @pytest.mark.asyncio
    async def test_pop_expired_entry(self, store, clock):
        """Edge case: expired entry is consumed and reported as expired"""
        token, _ = await store.create_state("dex", "/")
        clock.advance(hours=1)

        with pytest.raises(OIDCError) as exc_info:
            await store.pop_state(token)

        assert exc_info.value.kind == OIDCErrorKind.STATE_EXPIRED
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_concurrent_pops_single_winner(self, store):
        """Concurrency: many callbacks racing on one state, exactly one succeeds"""
        token, _ = await store.create_state("dex", "/")

        results = await asyncio.gather(
            *[store.pop_state(token) for _ in range(20)], return_exceptions=True
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, OIDCError)]
        assert len(successes) == 1
        assert len(failures) == 19
        assert all(f.kind == OIDCErrorKind.INVALID_STATE for f in failures)


class TestInMemoryCleanup:
    """Test the expiry sweep"""

    @pytest.mark.asyncio
    async def test_cleanup_removes_only_expired(self, store, clock):
        """Happy path: sweep counts and removes expired entries"""
        await store.create_state("dex", "/")
        await store.create_state("dex", "/")
        clock.advance(minutes=5)
        fresh, _ = await store.create_state("dex", "/")
        clock.advance(minutes=6)

        removed = await store.cleanup()

        assert removed == 2
        assert len(store) == 1
        assert (await store.get_state(fresh)).provider_slug == "dex"

    @pytest.mark.asyncio
    async def test_cleanup_empty_store(self, store):
        assert await store.cleanup() == 0

    @pytest.mark.asyncio
    async def test_cleanup_loop_runs_until_cancelled(self, clock):
        """Happy path: background loop sweeps periodically"""
        store = InMemoryStateStore(ttl_minutes=0, clock=clock)
        await store.create_state("dex", "/")

        task = asyncio.create_task(run_state_cleanup(store, interval_seconds=0.01))
        for _ in range(100):
            if len(store) == 0:
                break
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert len(store) == 0


@pytest.fixture
def mock_redis():
    """Mock Redis client"""
    redis = AsyncMock()
    redis.setex = AsyncMock(return_value=True)
    redis.get = AsyncMock(return_value=None)
    redis.getdel = AsyncMock(return_value=None)
    redis.delete = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def redis_store(mock_redis, clock):
    return RedisStateStore(mock_redis, ttl_minutes=10, clock=clock)


class TestRedisStateStore:
    """Test Redis-backed state store"""

    @pytest.mark.asyncio
    async def test_create_state_uses_setex(self, redis_store, mock_redis):
        """Happy path: entry stored as JSON with TTL"""
        # Act
        token, entry = await redis_store.create_state("dex", "/dashboard")

        # Assert
        mock_redis.setex.assert_called_once()
        key, ttl, payload = mock_redis.setex.call_args.args
        assert key == f"oidc:state:{token}"
        assert ttl == 600
        stored = json.loads(payload)
        assert stored["provider_slug"] == "dex"
        assert stored["code_verifier"] == entry.code_verifier
        assert stored["nonce"] == entry.nonce

    @pytest.mark.asyncio
    async def test_zero_ttl_uses_minimum_redis_expiry(self, mock_redis, clock):
        """Edge case: Redis cannot take a zero expiry"""
        store = RedisStateStore(mock_redis, ttl_minutes=0, clock=clock)

        await store.create_state("dex", "/")

        assert mock_redis.setex.call_args.args[1] == 1

    @pytest.mark.asyncio
    async def test_pop_state_uses_getdel(self, redis_store, mock_redis):
        """Happy path: atomic get-and-delete returns the stored entry"""
        token, entry = await redis_store.create_state("dex", "/dashboard")
        mock_redis.getdel.return_value = mock_redis.setex.call_args.args[2]

        popped = await redis_store.pop_state(token)

        mock_redis.getdel.assert_called_once_with(f"oidc:state:{token}")
        assert popped == entry

    @pytest.mark.asyncio
    async def test_pop_missing_state(self, redis_store, mock_redis):
        """Bad input: consumed or unknown state"""
        mock_redis.getdel.return_value = None

        with pytest.raises(OIDCError) as exc_info:
            await redis_store.pop_state("unknown")

        assert exc_info.value.kind == OIDCErrorKind.INVALID_STATE

    @pytest.mark.asyncio
    async def test_pop_expired_state(self, redis_store, mock_redis, clock):
        """Edge case: stored expires_at is enforced regardless of Redis eviction"""
        token, _ = await redis_store.create_state("dex", "/")
        mock_redis.getdel.return_value = mock_redis.setex.call_args.args[2]
        clock.advance(minutes=11)

        with pytest.raises(OIDCError) as exc_info:
            await redis_store.pop_state(token)

        assert exc_info.value.kind == OIDCErrorKind.STATE_EXPIRED

    @pytest.mark.asyncio
    async def test_malformed_entry_is_invalid(self, redis_store, mock_redis):
        """Bad input: corrupted payload never crashes the callback"""
        mock_redis.getdel.return_value = "{not json"

        with pytest.raises(OIDCError) as exc_info:
            await redis_store.pop_state("token")

        assert exc_info.value.kind == OIDCErrorKind.INVALID_STATE

    @pytest.mark.asyncio
    async def test_get_expired_state_deletes_key(self, redis_store, mock_redis, clock):
        """Edge case: expired lookup removes the key"""
        token, _ = await redis_store.create_state("dex", "/")
        mock_redis.get.return_value = mock_redis.setex.call_args.args[2]
        clock.advance(minutes=10)

        with pytest.raises(OIDCError) as exc_info:
            await redis_store.get_state(token)

        assert exc_info.value.kind == OIDCErrorKind.STATE_EXPIRED
        mock_redis.delete.assert_called_once_with(f"oidc:state:{token}")

    @pytest.mark.asyncio
    async def test_cleanup_relies_on_key_expiry(self, redis_store, mock_redis):
        assert await redis_store.cleanup() == 0
