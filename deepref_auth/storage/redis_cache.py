from __future__ import annotations

import hashlib
import time
import uuid
from typing import Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

# Atomic refill + consume for per-endpoint throttles
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
  return {0, tokens, reset_after}
end

tokens = tokens - cost
redis.call('HSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tokens, 0}
"""

# Sliding window over a sorted set: trim, count, then admit or report the
# seconds until the oldest entry leaves the window.
_SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local max_attempts = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
if count >= max_attempts then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry_after = math.ceil(tonumber(oldest[2]) + window - now)
  return {0, count, math.max(retry_after, 1)}
end
redis.call('ZADD', key, now, member)
redis.call('EXPIRE', key, math.ceil(window))
return {1, count + 1, 0}
"""


def _normalize_rate_key(key: str) -> str:
    """Hash rate-limit subjects so emails and IPs never appear in key names."""
    return "rate:" + hashlib.sha256(key.encode()).hexdigest()


def _attempt_key(subject: str) -> str:
    return "mfa:attempts:" + hashlib.sha256(subject.encode()).hexdigest()


def _unpack_bucket(
    result, return_remaining: bool
) -> Union[bool, Tuple[bool, int, int]]:
    allowed, tokens, reset_after = result
    allowed_bool = bool(int(allowed))
    remaining = max(0, int(float(tokens)))
    reset_seconds = int(reset_after) if reset_after else 0
    if return_remaining:
        return (allowed_bool, remaining, reset_seconds)
    return allowed_bool


def _unpack_window(result) -> Tuple[bool, int, int]:
    allowed, count, retry_after = result
    return (bool(int(allowed)), int(count), int(retry_after))


class RedisCache:
    """Redis wrapper for throttles, MFA attempt windows and the access-token denylist."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(_TOKEN_BUCKET_SCRIPT)
        self._sliding_window = self.client.register_script(_SLIDING_WINDOW_SCRIPT)

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
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        result = await self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _unpack_bucket(result, return_remaining)

    async def record_attempt(
        self, subject: str, max_attempts: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Record one attempt in a sliding window.

        Returns ``(allowed, attempts_in_window, retry_after_seconds)``.
        """
        result = await self._sliding_window(
            keys=[_attempt_key(subject)],
            args=[time.time(), window_seconds, max_attempts, uuid.uuid4().hex],
        )
        return _unpack_window(result)

    async def clear_attempts(self, subject: str) -> None:
        await self.client.delete(_attempt_key(subject))

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(f"auth:access:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(await self.client.exists(f"auth:access:denylist:{jti}"))

    async def close(self) -> None:
        await self.client.aclose()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a blocking client so pytest event loops never bind to a connection,
    but keeps the awaitable API of ``RedisCache``.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(_TOKEN_BUCKET_SCRIPT)
        self._sliding_window = self._sync_client.register_script(_SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> Union[bool, Tuple[bool, int, int]]:
        refill_rate = float(limit) / float(window_seconds)
        result = self._token_bucket(
            keys=[_normalize_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _unpack_bucket(result, return_remaining)

    async def record_attempt(
        self, subject: str, max_attempts: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        result = self._sliding_window(
            keys=[_attempt_key(subject)],
            args=[time.time(), window_seconds, max_attempts, uuid.uuid4().hex],
        )
        return _unpack_window(result)

    async def clear_attempts(self, subject: str) -> None:
        self._sync_client.delete(_attempt_key(subject))

    async def denylist_access_token(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            self._sync_client.set(f"auth:access:denylist:{jti}", "1", ex=ttl_seconds)

    async def is_access_token_denylisted(self, jti: str) -> bool:
        return bool(self._sync_client.exists(f"auth:access:denylist:{jti}"))

    async def close(self) -> None:
        self._sync_client.close()


__all__ = ["RedisCache", "SyncRedisCache"]
