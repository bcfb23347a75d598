from __future__ import annotations

import hashlib
import time
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# Atomic refill + consume; returns {allowed, tokens_left, retry_after_seconds}
TOKEN_BUCKET_SCRIPT = """
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

tokens = math.min(capacity, tokens + math.max(0, now - last) * refill_rate)

if tokens < cost then
  redis.call('HSET', key, 'tokens', tokens, 'ts', now)
  local retry_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(retry_after, 1))
  return {0, tokens, retry_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
redis.call('EXPIRE', key, math.max(math.ceil(capacity / refill_rate), 1))
return {1, tokens, 0}
"""


def rate_limit_key(key: str, scope: Optional[str] = None) -> str:
    """Hash the caller-supplied subject so emails and IPs never land in Redis verbatim."""

    digest = hashlib.sha256(key.encode()).hexdigest()
    prefix = f"{scope}:" if scope else ""
    return f"tourpass:rate:{prefix}{digest}"


def _unpack_bucket_result(result) -> Tuple[bool, int, int]:
    allowed, tokens, retry_after = result
    return bool(int(allowed)), max(0, int(float(tokens))), int(retry_after or 0)


class RedisCache:
    """Async Redis wrapper holding the login/refresh/email rate limit buckets."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async one is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        scope: Optional[str] = None,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        result = await self._token_bucket(
            keys=[rate_limit_key(key, scope)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed, remaining, retry_after = _unpack_bucket_result(result)
        if return_remaining:
            return allowed, remaining, retry_after
        return allowed

    async def close(self) -> None:
        """Close the connection pool when the runtime shuts down."""
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper exposing the same awaitable interface.

    Used by scripts and tests that cannot share an event loop with the async
    client.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        scope: Optional[str] = None,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        result = self._token_bucket(
            keys=[rate_limit_key(key, scope)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        allowed, remaining, retry_after = _unpack_bucket_result(result)
        if return_remaining:
            return allowed, remaining, retry_after
        return allowed

    async def close(self) -> None:
        self._sync_client.close()
