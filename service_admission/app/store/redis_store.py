"""
Redis-backed counter store.
"""

import asyncio
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import CounterStoreError
from shared.logging import get_logger

from .base import CounterStore, WindowResult


# KEYS[1] window key; ARGV now_ms, window_ms, limit, member.
# Entries older than the window are dropped before counting; an entry whose
# age equals the window still counts.
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. (now - window))
local count = redis.call('ZCARD', key)
local admitted = 0
if count < limit then
    redis.call('ZADD', key, now, member)
    count = count + 1
    admitted = 1
end
redis.call('PEXPIRE', key, window + 1000)

local reset = now + window
local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if oldest[2] then
    reset = tonumber(oldest[2]) + window
end
return {admitted, count, reset}
"""


class RedisCounterStore(CounterStore):
    """Counter store on Redis with per-call timeouts and a circuit breaker."""

    def __init__(self,
                 redis_url: str,
                 timeout_ms: int = 500,
                 breaker: Optional[CircuitBreaker] = None,
                 client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.timeout = timeout_ms / 1000.0
        self.logger = get_logger("admission.store.redis")
        self.breaker = breaker or CircuitBreaker(name="counter_store")
        self._redis: Optional[redis.Redis] = client

    def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=self.timeout,
                socket_timeout=self.timeout,
            )
        return self._redis

    async def start(self) -> None:
        """Connect and verify the store answers."""
        await self.ping()
        self.logger.info("Redis counter store started", redis_url=self.redis_url)

    async def stop(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            self.logger.info("Redis counter store stopped")

    async def _run(self, operation: str, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        async def bounded():
            return await asyncio.wait_for(func(*args, **kwargs), timeout=self.timeout)

        try:
            return await self.breaker.call(bounded)
        except CircuitBreakerOpenException as e:
            raise CounterStoreError("circuit open", {"operation": operation}) from e
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            self.logger.warning("Counter store call failed", operation=operation, error=repr(e))
            raise CounterStoreError(str(e) or type(e).__name__, {"operation": operation}) from e

    async def ping(self) -> bool:
        return bool(await self._run("ping", self._get_redis().ping))

    @staticmethod
    def _member(now_ms: int) -> str:
        # Unique across replicas so admissions in the same millisecond all count
        return f"{now_ms}-{uuid.uuid4().hex}"

    async def sliding_window(self, key: str, limit: int, window_ms: int, now_ms: int) -> WindowResult:
        result = await self._run(
            "sliding_window",
            self._get_redis().eval,
            SLIDING_WINDOW_SCRIPT,
            1,
            key,
            now_ms,
            window_ms,
            limit,
            self._member(now_ms),
        )
        admitted, count, reset_at = result
        return WindowResult(admitted=bool(int(admitted)), count=int(count), reset_at=int(reset_at))

    async def hincrby(self, key: str, field: str, amount: int, ttl_seconds: int) -> int:
        async def increment() -> int:
            async with self._get_redis().pipeline(transaction=True) as pipe:
                pipe.hincrby(key, field, amount)
                pipe.expire(key, ttl_seconds)
                results = await pipe.execute()
            return int(results[0])

        return await self._run("hincrby", increment)

    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self._run("hget", self._get_redis().hget, key, field)

    async def hgetall(self, key: str) -> Dict[str, str]:
        return await self._run("hgetall", self._get_redis().hgetall, key) or {}

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", self._get_redis().get, key)

    async def set(self, key: str, value: str, ttl_ms: int) -> None:
        await self._run("set", self._get_redis().set, key, value, px=ttl_ms)
