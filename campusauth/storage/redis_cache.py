from __future__ import annotations

import asyncio
from typing import Any, Awaitable, List, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from campusauth.logging import get_logger
from campusauth.storage.errors import StorageUnavailable

logger = get_logger(__name__)


class RedisCache:
    """Redis-backed TTL cache for sessions, revocations, codes and counters."""

    DEFAULT_OPERATION_TIMEOUT = 2.0

    # INCR that sets the window expiry only when it created the key
    _INCREMENT_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
local ttl = tonumber(ARGV[1])
if count == 1 and ttl > 0 then
  redis.call('EXPIRE', KEYS[1], ttl)
end
return count
"""

    # DECR that never goes below zero and never creates the key
    _DECREMENT_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current <= 0 then
  return 0
end
return redis.call('DECR', KEYS[1])
"""

    # Check-and-consume for issuance counters: {allowed, count, retry_after}
    _RESERVE_SLOT_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local limit = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
if current >= limit then
  local ttl = redis.call('TTL', KEYS[1])
  if ttl < 0 then
    redis.call('EXPIRE', KEYS[1], window)
    ttl = window
  end
  return {0, current, ttl}
end
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('EXPIRE', KEYS[1], window)
end
return {1, count, 0}
"""

    # One verification attempt against a stored code record, as one step.
    # The record keeps its remaining lifetime on mismatch.
    _CHECK_CODE_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return {'missing', 0}
end
local ok, record = pcall(cjson.decode, raw)
if not ok or type(record) ~= 'table' then
  redis.call('DEL', KEYS[1])
  return {'missing', 0}
end
local max_attempts = tonumber(ARGV[2])
local attempts = tonumber(record['attempts']) or 0
if attempts >= max_attempts then
  redis.call('DEL', KEYS[1])
  return {'exhausted', 0}
end
if record['digest'] == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return {'valid', max_attempts - attempts}
end
attempts = attempts + 1
if attempts >= max_attempts then
  redis.call('DEL', KEYS[1])
  return {'exhausted', 0}
end
record['attempts'] = attempts
local pttl = redis.call('PTTL', KEYS[1])
if pttl > 0 then
  redis.call('SET', KEYS[1], cjson.encode(record), 'PX', pttl)
else
  redis.call('DEL', KEYS[1])
  return {'missing', 0}
end
return {'invalid', max_attempts - attempts}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        operation_timeout: Optional[float] = None,
    ) -> None:
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout or self.DEFAULT_OPERATION_TIMEOUT
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment_script = self.client.register_script(self._INCREMENT_SCRIPT)
        self._decrement_script = self.client.register_script(self._DECREMENT_SCRIPT)
        self._reserve_slot_script = self.client.register_script(self._RESERVE_SLOT_SCRIPT)
        self._check_code_script = self.client.register_script(self._CHECK_CODE_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived synchronous client avoids binding the async client to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _run(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except (asyncio.TimeoutError, RedisError, OSError) as exc:
            logger.warning("cache_unavailable", operation=operation, error=str(exc))
            raise StorageUnavailable("redis", operation, cause=str(exc)) from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._run("get", self.client.get(key))

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        ex = max(1, int(ttl_seconds)) if ttl_seconds is not None else None
        await self._run("set", self.client.set(key, value, ex=ex))

    async def add(self, key: str, value: str, ttl_seconds: int) -> bool:
        result = await self._run(
            "add", self.client.set(key, value, ex=max(1, int(ttl_seconds)), nx=True)
        )
        return bool(result)

    async def replace(self, key: str, value: str, ttl_seconds: int) -> bool:
        result = await self._run(
            "replace", self.client.set(key, value, ex=max(1, int(ttl_seconds)), xx=True)
        )
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._run("delete", self.client.delete(*keys)))

    async def exists(self, key: str) -> bool:
        return bool(await self._run("exists", self.client.exists(key)))

    async def ttl(self, key: str) -> int:
        return int(await self._run("ttl", self.client.ttl(key)))

    async def increment(self, key: str, ttl_seconds: Optional[int] = None) -> int:
        result = await self._run(
            "increment",
            self._increment_script(keys=[key], args=[int(ttl_seconds or 0)]),
        )
        return int(result)

    async def decrement(self, key: str) -> int:
        return int(await self._run("decrement", self._decrement_script(keys=[key])))

    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._run("expire", self.client.expire(key, max(1, int(ttl_seconds)))))

    async def _scan(self, pattern: str) -> List[str]:
        return [key async for key in self.client.scan_iter(match=pattern, count=200)]

    async def keys_matching(self, pattern: str) -> List[str]:
        return await self._run("keys_matching", self._scan(pattern))

    async def reserve_slot(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        allowed, count, retry_after = await self._run(
            "reserve_slot",
            self._reserve_slot_script(keys=[key], args=[int(limit), int(window_seconds)]),
        )
        return bool(int(allowed)), int(count), int(retry_after)

    async def check_code(
        self, key: str, candidate_digest: str, max_attempts: int
    ) -> Tuple[str, int]:
        status, remaining = await self._run(
            "check_code",
            self._check_code_script(keys=[key], args=[candidate_digest, int(max_attempts)]),
        )
        return str(status), int(remaining)

    async def close(self) -> None:
        await self.client.aclose()
