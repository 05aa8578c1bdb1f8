"""
Shared Key/Value Store

Backs the distributed lock manager and the rate limiter. Two backends
share one async interface:

- ``RedisStore`` for multi-instance deployments (atomic operations are
  implemented with ``SET NX PX`` and small Lua scripts).
- ``InMemoryStore`` for single-process deployments and tests.

Backend errors surface as ``StoreUnavailableError`` so that each caller
can apply its own failure policy (the lock manager fails closed, the
rate limiter fails open).
"""

import asyncio
import math
import time
import uuid
from typing import Callable, Dict, List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from app.core.utils import logger
from app.config.config import settings


class StoreUnavailableError(Exception):
    """Raised when the backing store cannot be reached."""


class InMemoryStore:
    """In-process store. Atomicity is provided by a single asyncio lock."""

    def __init__(self, clock: Callable[[], float] = time.time, key_prefix: str = ""):
        self._clock = clock
        self._key_prefix = key_prefix
        self._values: Dict[str, str] = {}
        self._expiry: Dict[str, float] = {}
        self._windows: Dict[str, List[float]] = {}
        self._lock = asyncio.Lock()

    def _make_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def _purge_if_expired(self, key: str) -> None:
        expires_at = self._expiry.get(key)
        if expires_at is not None and self._clock() >= expires_at:
            self._values.pop(key, None)
            self._expiry.pop(key, None)

    async def get(self, key: str) -> Optional[str]:
        key = self._make_key(key)
        async with self._lock:
            self._purge_if_expired(key)
            return self._values.get(key)

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        key = self._make_key(key)
        async with self._lock:
            self._values[key] = value
            if ttl:
                self._expiry[key] = self._clock() + ttl
            else:
                self._expiry.pop(key, None)

    async def delete(self, key: str) -> None:
        key = self._make_key(key)
        async with self._lock:
            self._values.pop(key, None)
            self._expiry.pop(key, None)
            self._windows.pop(key, None)

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        key = self._make_key(key)
        async with self._lock:
            self._purge_if_expired(key)
            if key in self._values:
                return False
            self._values[key] = value
            self._expiry[key] = self._clock() + ttl
            return True

    async def delete_if_equals(self, key: str, value: str) -> bool:
        key = self._make_key(key)
        async with self._lock:
            self._purge_if_expired(key)
            if self._values.get(key) != value:
                return False
            self._values.pop(key, None)
            self._expiry.pop(key, None)
            return True

    async def ttl(self, key: str) -> Optional[float]:
        """Remaining seconds, or None when the key is missing or has no expiry."""
        key = self._make_key(key)
        async with self._lock:
            self._purge_if_expired(key)
            if key not in self._values or key not in self._expiry:
                return None
            return max(0.0, self._expiry[key] - self._clock())

    async def sliding_window_hit(
        self, key: str, now: float, window: float, max_requests: int
    ) -> Tuple[bool, int, Optional[float]]:
        """
        Prune, count and (if under the limit) record ``now`` in one step.

        Returns (allowed, count_before_this_request, oldest_timestamp).
        """
        key = self._make_key(key)
        async with self._lock:
            entries = [t for t in self._windows.get(key, []) if t > now - window]
            count = len(entries)
            oldest = min(entries) if entries else None
            allowed = count < max_requests
            if allowed:
                entries.append(now)
            if entries:
                self._windows[key] = entries
            else:
                self._windows.pop(key, None)
            return allowed, count, oldest

    async def sliding_window_count(
        self, key: str, now: float, window: float
    ) -> Tuple[int, Optional[float]]:
        key = self._make_key(key)
        async with self._lock:
            entries = [t for t in self._windows.get(key, []) if t > now - window]
            if entries:
                self._windows[key] = entries
            else:
                self._windows.pop(key, None)
            return len(entries), (min(entries) if entries else None)

    async def close(self) -> None:
        pass


_DELETE_IF_EQUALS = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

_SLIDING_WINDOW_HIT = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', KEYS[1], '-inf', now - window)
local count = redis.call('ZCARD', KEYS[1])
local oldest = redis.call('ZRANGE', KEYS[1], 0, 0, 'WITHSCORES')
local allowed = 0
if count < limit then
    redis.call('ZADD', KEYS[1], now, ARGV[4])
    redis.call('PEXPIRE', KEYS[1], ARGV[5])
    allowed = 1
end
return {allowed, count, oldest[2] or ''}
"""


class RedisStore:
    """Redis-backed store shared by all application instances."""

    def __init__(self, redis_url: str, key_prefix: str = ""):
        self.redis_url = redis_url
        self._key_prefix = key_prefix
        self._client: Optional[redis.Redis] = None

    def _make_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    def _unavailable(self, operation: str, key: str, exc: Exception) -> StoreUnavailableError:
        logger.log_error(
            {
                "event": "store_operation_failed",
                "operation": operation,
                "key": key,
                "error": str(exc),
                "error_type": type(exc).__name__,
            }
        )
        return StoreUnavailableError(f"{operation} failed for {key}: {exc}")

    async def ping(self) -> None:
        try:
            client = await self._get_client()
            await client.ping()
        except (RedisError, OSError) as e:
            raise self._unavailable("ping", "-", e) from e

    async def get(self, key: str) -> Optional[str]:
        key = self._make_key(key)
        try:
            client = await self._get_client()
            return await client.get(key)
        except (RedisError, OSError) as e:
            raise self._unavailable("get", key, e) from e

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        key = self._make_key(key)
        try:
            client = await self._get_client()
            if ttl:
                await client.set(key, value, px=int(ttl * 1000))
            else:
                await client.set(key, value)
        except (RedisError, OSError) as e:
            raise self._unavailable("set", key, e) from e

    async def delete(self, key: str) -> None:
        key = self._make_key(key)
        try:
            client = await self._get_client()
            await client.delete(key)
        except (RedisError, OSError) as e:
            raise self._unavailable("delete", key, e) from e

    async def set_if_absent(self, key: str, value: str, ttl: float) -> bool:
        key = self._make_key(key)
        try:
            client = await self._get_client()
            result = await client.set(key, value, nx=True, px=int(ttl * 1000))
            return bool(result)
        except (RedisError, OSError) as e:
            raise self._unavailable("set_if_absent", key, e) from e

    async def delete_if_equals(self, key: str, value: str) -> bool:
        key = self._make_key(key)
        try:
            client = await self._get_client()
            deleted = await client.eval(_DELETE_IF_EQUALS, 1, key, value)
            return int(deleted) > 0
        except (RedisError, OSError) as e:
            raise self._unavailable("delete_if_equals", key, e) from e

    async def ttl(self, key: str) -> Optional[float]:
        key = self._make_key(key)
        try:
            client = await self._get_client()
            remaining_ms = await client.pttl(key)
        except (RedisError, OSError) as e:
            raise self._unavailable("ttl", key, e) from e
        if remaining_ms is None or remaining_ms < 0:
            return None
        return remaining_ms / 1000.0

    async def sliding_window_hit(
        self, key: str, now: float, window: float, max_requests: int
    ) -> Tuple[bool, int, Optional[float]]:
        key = self._make_key(key)
        member = f"{now}:{uuid.uuid4().hex}"
        try:
            client = await self._get_client()
            allowed, count, oldest = await client.eval(
                _SLIDING_WINDOW_HIT,
                1,
                key,
                now,
                window,
                max_requests,
                member,
                math.ceil(window * 1000),
            )
        except (RedisError, OSError) as e:
            raise self._unavailable("sliding_window_hit", key, e) from e
        return bool(int(allowed)), int(count), (float(oldest) if oldest else None)

    async def sliding_window_count(
        self, key: str, now: float, window: float
    ) -> Tuple[int, Optional[float]]:
        key = self._make_key(key)
        try:
            client = await self._get_client()
            count = await client.zcount(key, f"({now - window}", "+inf")
            oldest = await client.zrangebyscore(
                key, f"({now - window}", "+inf", start=0, num=1, withscores=True
            )
        except (RedisError, OSError) as e:
            raise self._unavailable("sliding_window_count", key, e) from e
        return int(count), (float(oldest[0][1]) if oldest else None)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


_store = None
_store_lock = asyncio.Lock()


async def get_store():
    """
    Return the process-wide store, creating it on first use.

    Falls back to the in-memory backend when Redis is configured but not
    reachable at initialization time.
    """
    global _store

    if _store is not None:
        return _store

    async with _store_lock:
        if _store is not None:
            return _store

        if settings.STORE_BACKEND == "redis":
            candidate = RedisStore(settings.REDIS_URL, key_prefix=settings.STORE_KEY_PREFIX)
            try:
                await candidate.ping()
                _store = candidate
                logger.log_info({"event": "store_initialized", "backend": "redis"})
            except StoreUnavailableError as e:
                logger.log_warning(
                    {
                        "event": "redis_connection_failed",
                        "error": str(e),
                        "fallback": "memory",
                    }
                )
                _store = InMemoryStore(key_prefix=settings.STORE_KEY_PREFIX)
        else:
            _store = InMemoryStore(key_prefix=settings.STORE_KEY_PREFIX)
            logger.log_info({"event": "store_initialized", "backend": "memory"})

    return _store


async def close_store() -> None:
    global _store
    if _store is not None:
        await _store.close()
        _store = None
