from __future__ import annotations

import hashlib
import json
import math
import time
import uuid
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

RESPONSE_PREFIX = "custom:resp"


class RedisCache:
    """Redis wrapper for endpoint rate limits and cached responses."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Sliding-window log: one sorted-set member per admitted request
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)

if count >= limit then
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  local retry = window
  if oldest[2] ~= nil then
    retry = tonumber(oldest[2]) + window - now
  end
  return {0, 0, retry}
end

redis.call('ZADD', key, now, member)
redis.call('PEXPIRE', key, window)
return {1, limit - count - 1, 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived sync client keeps the async pool off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so caller identities cannot inject delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"custom:rate:{digest}"

    @staticmethod
    def _response_key(endpoint_id: str, cache_key: str) -> str:
        return f"{RESPONSE_PREFIX}:{endpoint_id}:{cache_key}"

    @staticmethod
    def _unpack_rate_result(result) -> Tuple[bool, int, int]:
        allowed, remaining, retry_ms = result
        retry_after = math.ceil(max(0, int(retry_ms)) / 1000) if not int(allowed) else 0
        return bool(int(allowed)), max(0, int(remaining)), retry_after

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        """Admit or reject one request against a sliding window.

        Returns ``(allowed, remaining, retry_after_seconds)``.
        """
        result = await self._sliding_window(
            keys=[self._normalize_rate_key(key)],
            args=[int(time.time() * 1000), int(window_seconds * 1000), limit, uuid.uuid4().hex],
        )
        return self._unpack_rate_result(result)

    async def get_response(self, endpoint_id: str, cache_key: str) -> Optional[dict]:
        cached = await self.client.get(self._response_key(endpoint_id, cache_key))
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def set_response(
        self, endpoint_id: str, cache_key: str, payload: dict, ttl_seconds: int
    ) -> None:
        await self.client.set(
            self._response_key(endpoint_id, cache_key),
            json.dumps(payload),
            ex=max(1, int(ttl_seconds)),
        )

    async def purge_responses(self, endpoint_id: Optional[str] = None) -> int:
        pattern = f"{RESPONSE_PREFIX}:{endpoint_id}:*" if endpoint_id else f"{RESPONSE_PREFIX}:*"
        removed = 0
        async for key in self.client.scan_iter(match=pattern, count=500):
            removed += await self.client.delete(key)
        return removed

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client so no connection is bound to a per-request
    event loop, but keeps the async method signatures of :class:`RedisCache`
    so callers await either one uniformly.
    """

    def __init__(
        self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT
    ):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._sliding_window = self.client.register_script(
            RedisCache._SLIDING_WINDOW_SCRIPT
        )

    def verify_connection(self) -> None:
        self.client.ping()

    async def check_rate_limit(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        result = self._sliding_window(
            keys=[RedisCache._normalize_rate_key(key)],
            args=[int(time.time() * 1000), int(window_seconds * 1000), limit, uuid.uuid4().hex],
        )
        return RedisCache._unpack_rate_result(result)

    async def get_response(self, endpoint_id: str, cache_key: str) -> Optional[dict]:
        cached = self.client.get(RedisCache._response_key(endpoint_id, cache_key))
        if not cached:
            return None
        try:
            return json.loads(cached)
        except (json.JSONDecodeError, TypeError):
            return None

    async def set_response(
        self, endpoint_id: str, cache_key: str, payload: dict, ttl_seconds: int
    ) -> None:
        self.client.set(
            RedisCache._response_key(endpoint_id, cache_key),
            json.dumps(payload),
            ex=max(1, int(ttl_seconds)),
        )

    async def purge_responses(self, endpoint_id: Optional[str] = None) -> int:
        pattern = f"{RESPONSE_PREFIX}:{endpoint_id}:*" if endpoint_id else f"{RESPONSE_PREFIX}:*"
        removed = 0
        for key in self.client.scan_iter(match=pattern, count=500):
            removed += self.client.delete(key)
        return removed

    async def close(self) -> None:
        self.client.close()
