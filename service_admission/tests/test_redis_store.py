"""
Unit tests for the Redis counter store.
"""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock
from redis.exceptions import ConnectionError as RedisConnectionError

from service_admission.app.store import RedisCounterStore
from service_admission.app.store.redis_store import SLIDING_WINDOW_SCRIPT
from shared.circuit_breaker import CircuitBreaker, CircuitBreakerState
from shared.errors import CounterStoreError


class TestRedisCounterStore:
    """Test cases for RedisCounterStore."""

    @pytest.fixture
    def mock_redis(self):
        """Mock redis.asyncio client."""
        client = MagicMock()
        client.eval = AsyncMock()
        client.get = AsyncMock()
        client.set = AsyncMock()
        client.hget = AsyncMock()
        client.hgetall = AsyncMock()
        client.ping = AsyncMock(return_value=True)
        client.aclose = AsyncMock()
        return client

    @pytest.fixture
    def store(self, mock_redis):
        return RedisCounterStore(
            "redis://localhost:6379/0",
            timeout_ms=50,
            breaker=CircuitBreaker(failure_threshold=3, recovery_timeout=60, name="test"),
            client=mock_redis
        )

    @pytest.mark.asyncio
    async def test_sliding_window_runs_script_atomically(self, store, mock_redis):
        """Admission is a single EVAL call with the window parameters."""
        mock_redis.eval.return_value = [1, 3, 1_700_003_600_000]

        result = await store.sliding_window("ratelimit:parsing:u1", 50, 3_600_000, 1_700_000_000_000)

        assert result.admitted is True
        assert result.count == 3
        assert result.reset_at == 1_700_003_600_000

        args = mock_redis.eval.call_args.args
        assert args[0] == SLIDING_WINDOW_SCRIPT
        assert args[1:6] == (1, "ratelimit:parsing:u1", 1_700_000_000_000, 3_600_000, 50)
        assert args[6].startswith("1700000000000-")

    @pytest.mark.asyncio
    async def test_sliding_window_rejection(self, store, mock_redis):
        mock_redis.eval.return_value = [0, 50, 1_700_000_100_000]

        result = await store.sliding_window("ratelimit:parsing:u1", 50, 3_600_000, 1_700_000_000_000)

        assert result.admitted is False
        assert result.count == 50

    @pytest.mark.asyncio
    async def test_members_are_unique_per_call(self, store, mock_redis):
        mock_redis.eval.return_value = [1, 1, 0]

        await store.sliding_window("k", 5, 1000, 42)
        await store.sliding_window("k", 5, 1000, 42)

        members = [call.args[6] for call in mock_redis.eval.call_args_list]
        assert members[0] != members[1]

    @pytest.mark.asyncio
    async def test_redis_error_becomes_counter_store_error(self, store, mock_redis):
        mock_redis.get.side_effect = RedisConnectionError("Connection refused")

        with pytest.raises(CounterStoreError) as exc_info:
            await store.get("system:load")

        assert exc_info.value.details == {"operation": "get"}

    @pytest.mark.asyncio
    async def test_hung_call_times_out(self, store, mock_redis):
        """A store call that never answers is a failure, not a deadlock."""
        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        mock_redis.get.side_effect = hang

        with pytest.raises(CounterStoreError):
            await store.get("system:load")

    @pytest.mark.asyncio
    async def test_breaker_opens_and_skips_redis(self, store, mock_redis):
        """After repeated failures calls fail fast without touching Redis."""
        mock_redis.get.side_effect = RedisConnectionError("down")

        for _ in range(3):
            with pytest.raises(CounterStoreError):
                await store.get("k")

        assert store.breaker.state == CircuitBreakerState.OPEN
        calls_before = mock_redis.get.await_count

        with pytest.raises(CounterStoreError) as exc_info:
            await store.get("k")

        assert exc_info.value.message.endswith("circuit open")
        assert mock_redis.get.await_count == calls_before

    @pytest.mark.asyncio
    async def test_hincrby_uses_transaction_with_expiry(self, store, mock_redis):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[7, True])
        mock_redis.pipeline.return_value.__aenter__.return_value = pipe

        value = await store.hincrby("usage:u1:2025-01-01", "parsing:count", 1, 604800)

        assert value == 7
        mock_redis.pipeline.assert_called_once_with(transaction=True)
        pipe.hincrby.assert_called_once_with("usage:u1:2025-01-01", "parsing:count", 1)
        pipe.expire.assert_called_once_with("usage:u1:2025-01-01", 604800)

    @pytest.mark.asyncio
    async def test_set_uses_millisecond_ttl(self, store, mock_redis):
        await store.set("recent:u1", "{}", 10000)

        mock_redis.set.assert_awaited_once_with("recent:u1", "{}", px=10000)

    @pytest.mark.asyncio
    async def test_hgetall_missing_key_is_empty(self, store, mock_redis):
        mock_redis.hgetall.return_value = {}

        assert await store.hgetall("usage:nobody:2025-01-01") == {}

    @pytest.mark.asyncio
    async def test_start_and_stop(self, store, mock_redis):
        await store.start()
        await store.stop()

        mock_redis.ping.assert_awaited_once()
        mock_redis.aclose.assert_awaited_once()
