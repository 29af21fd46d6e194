from __future__ import annotations

import hashlib
import time
from typing import Tuple

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for shared rate-limit buckets."""

    # Atomic refill + consume so concurrent workers share one bucket
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tostring(tokens), reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tostring(tokens), 0}
"""

    # Counts requests from the first hit; rejected calls never extend the window
    _FIXED_WINDOW_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
if current < limit then
  local count = redis.call('INCR', KEYS[1])
  if count == 1 then
    redis.call('EXPIRE', KEYS[1], window)
  end
  return {1, tostring(limit - count), 0}
end
local ttl = redis.call('TTL', KEYS[1])
if ttl < 0 then
  redis.call('EXPIRE', KEYS[1], window)
  ttl = window
end
return {0, '0', ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash the logical key so emails and IPs never appear in Redis verbatim."""
        return f"rate:{hashlib.sha256(key.encode()).hexdigest()}"

    @staticmethod
    def _parse_bucket_result(result) -> Tuple[bool, int, int]:
        allowed, tokens, reset_after = result
        return bool(int(allowed)), max(0, int(float(tokens))), int(reset_after or 0)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async client off a temporary loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        """Consume ``cost`` tokens; returns ``(allowed, remaining, reset_seconds)``."""
        refill_rate = float(limit) / float(window_seconds)
        result = await self._token_bucket(
            keys=[self._normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return self._parse_bucket_result(result)

    async def check_window_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Count one request against a fixed window opened by the first request."""
        result = await self._fixed_window(
            keys=[self._normalize_rate_key(f"window:{key}")],
            args=[limit, window_seconds],
        )
        return self._parse_bucket_result(result)

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Redis wrapper backed by a synchronous client.

    Exposes the same awaitable surface as ``RedisCache`` but never binds a
    connection to an event loop, which keeps ``asyncio.run``-per-test and
    FastAPI's ``TestClient`` portal from tripping over each other.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(RedisCache._TOKEN_BUCKET_SCRIPT)
        self._fixed_window = self.client.register_script(RedisCache._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        refill_rate = float(limit) / float(window_seconds)
        result = self._token_bucket(
            keys=[RedisCache._normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return RedisCache._parse_bucket_result(result)

    async def check_window_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        result = self._fixed_window(
            keys=[RedisCache._normalize_rate_key(f"window:{key}")],
            args=[limit, window_seconds],
        )
        return RedisCache._parse_bucket_result(result)

    async def close(self) -> None:
        self.client.close()
