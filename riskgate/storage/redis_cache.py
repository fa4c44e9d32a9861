from __future__ import annotations

import hashlib
import math
from typing import Sequence, Tuple

import redis.asyncio as aioredis
from redis import Redis

# INCRBY then arm the window expiry on the first attempt; returns {attempts, pttl}
_ATTEMPT_WINDOW_SCRIPT = """
local attempts = redis.call('INCRBY', KEYS[1], ARGV[1])
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[2])
  ttl = tonumber(ARGV[2])
end
return {attempts, ttl}
"""


def rate_key(key: str) -> str:
    """Hash caller-supplied parts so identifiers never appear in Redis keys."""

    digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
    return f"riskgate:rate:{digest}"


def window_verdict(result: Sequence, limit: int) -> Tuple[bool, int, int]:
    """Turn ``{attempts, pttl}`` into ``(allowed, remaining, retry_after_seconds)``."""
    attempts, ttl_ms = int(result[0]), int(result[1])
    allowed = attempts <= limit
    retry_after = 0 if allowed else max(1, math.ceil(ttl_ms / 1000))
    return allowed, max(0, limit - attempts), retry_after


class RedisCache:
    """Async Redis client holding the login and reset-request attempt windows."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._count_attempt = self.client.register_script(_ATTEMPT_WINDOW_SCRIPT)
        # blocking client for the startup ping, before the event loop serves requests
        self._probe = Redis.from_url(redis_url, socket_timeout=socket_timeout)

    def verify_connection(self) -> None:
        self._probe.ping()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        result = await self._count_attempt(
            keys=[rate_key(key)], args=[max(1, cost), window_seconds * 1000]
        )
        return window_verdict(result, limit)

    async def close(self) -> None:
        self._probe.close()
        await self.client.aclose()


class SyncRedisCache(RedisCache):
    """Blocking variant for TEST_MODE.

    TestClient drives the app from several event loops, which an asyncio
    connection pool does not survive.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._count_attempt = self.client.register_script(_ATTEMPT_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int, *, cost: int = 1
    ) -> Tuple[bool, int, int]:
        result = self._count_attempt(
            keys=[rate_key(key)], args=[max(1, cost), window_seconds * 1000]
        )
        return window_verdict(result, limit)

    async def close(self) -> None:
        self.client.close()
