"""TTL-bounded distributed locks and fixed-window rate limits on a shared store.

The store is an explicit capability: ``RedisLockStore`` for multi-process
deployments, ``MemoryLockStore`` for a single process (and tests), and
``NoopLockStore`` for the degraded, non-protected mode. Store outages at
runtime fail open: ``acquire`` returns True and the event is counted so
operators can alert on it.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

import config
from trading.errors import TransientError

logger = logging.getLogger(__name__)

_COMPARE_AND_DELETE = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class LockStoreUnavailable(TransientError):
    pass


class LockStore:
    """Minimal key/value store with conditional set-with-expiry and delete."""

    name = "base"
    enforcing = True

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        raise NotImplementedError

    async def delete_if_value(self, key: str, value: str) -> bool:
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    async def incr_window(self, key: str, window_seconds: int) -> int:
        """Increment a counter that expires `window_seconds` after its first hit."""
        raise NotImplementedError

    async def close(self) -> None:
        return None


class NoopLockStore(LockStore):
    """Degraded mode: every lock is granted, nothing is ever held or counted."""

    name = "none"
    enforcing = False

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return True

    async def delete_if_value(self, key: str, value: str) -> bool:
        return True

    async def exists(self, key: str) -> bool:
        return False

    async def incr_window(self, key: str, window_seconds: int) -> int:
        return 0


class MemoryLockStore(LockStore):
    """In-process store. Only excludes tasks within one process."""

    name = "memory"

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: dict[str, tuple[str, float]] = {}
        self._counters: dict[str, tuple[int, float]] = {}

    def _live_value(self, key: str) -> str | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= self._clock():
            self._values.pop(key, None)
            return None
        return value

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        if self._live_value(key) is not None:
            return False
        self._values[key] = (value, self._clock() + float(ttl_seconds))
        return True

    async def delete_if_value(self, key: str, value: str) -> bool:
        if self._live_value(key) != value:
            return False
        self._values.pop(key, None)
        return True

    async def exists(self, key: str) -> bool:
        return self._live_value(key) is not None

    async def incr_window(self, key: str, window_seconds: int) -> int:
        now = self._clock()
        count, expires_at = self._counters.get(key, (0, 0.0))
        if expires_at <= now:
            count, expires_at = 0, now + float(window_seconds)
        count += 1
        self._counters[key] = (count, expires_at)
        return count


class RedisLockStore(LockStore):
    name = "redis"

    def __init__(self, url: str) -> None:
        self.url = url
        self._client = aioredis.from_url(url, decode_responses=True)

    async def _call(self, op: str, coro: Any) -> Any:
        try:
            return await coro
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise LockStoreUnavailable(f"redis_{op}_failed:{exc}") from exc

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        result = await self._call("set", self._client.set(key, value, ex=int(ttl_seconds), nx=True))
        return bool(result)

    async def delete_if_value(self, key: str, value: str) -> bool:
        result = await self._call("eval", self._client.eval(_COMPARE_AND_DELETE, 1, key, value))
        return int(result or 0) == 1

    async def exists(self, key: str) -> bool:
        return int(await self._call("exists", self._client.exists(key)) or 0) == 1

    async def incr_window(self, key: str, window_seconds: int) -> int:
        current = int(await self._call("incr", self._client.incr(key)))
        if current == 1:
            await self._call("expire", self._client.expire(key, int(window_seconds)))
        return current

    async def close(self) -> None:
        await self._client.aclose()


def build_lock_store(kind: str | None = None, redis_url: str | None = None) -> LockStore:
    kind = str(kind if kind is not None else config.LOCK_STORE).strip().lower()
    redis_url = redis_url if redis_url is not None else config.REDIS_URL
    if kind == "redis":
        if redis_url:
            return RedisLockStore(redis_url)
        logger.warning("LOCK_STORE redis requested but REDIS_URL is empty; running without lock protection")
        return NoopLockStore()
    if kind == "memory":
        return MemoryLockStore()
    if kind in ("none", "noop", ""):
        return NoopLockStore()
    raise ValueError(f"unknown LOCK_STORE: {kind}")


@dataclass(frozen=True)
class Lock:
    key: str
    holder_token: str
    expires_at: float


class LockManager:
    def __init__(
        self,
        store: LockStore,
        *,
        prefix: str = "",
        instance_id: str = "",
        health: Any = None,
    ) -> None:
        self.store = store
        self.prefix = prefix
        self.instance_id = instance_id or config.BOT_INSTANCE_ID
        self.health = health
        self._held: dict[str, Lock] = {}
        if not store.enforcing:
            logger.warning("LOCK_STORE store=%s mode=degraded locks are not enforced", store.name)

    @property
    def degraded(self) -> bool:
        return not self.store.enforcing

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}" if self.prefix else key

    def _count(self, kind: str) -> None:
        if self.health is not None:
            self.health.record_failure(kind)

    async def acquire(self, key: str, ttl: int) -> bool:
        token = f"{self.instance_id}:{uuid.uuid4().hex}"
        try:
            ok = await self.store.set_if_absent(self._key(key), token, int(ttl))
        except LockStoreUnavailable as exc:
            logger.warning("LOCK_FAIL_OPEN key=%s ttl=%s err=%s", key, ttl, exc)
            self._count("lock_fail_open")
            ok = True
        if ok:
            self._held[key] = Lock(key=key, holder_token=token, expires_at=time.time() + float(ttl))
            logger.debug("LOCK_ACQUIRED key=%s ttl=%s", key, ttl)
        return ok

    async def release(self, key: str) -> None:
        lock = self._held.pop(key, None)
        if lock is None:
            return
        try:
            released = await self.store.delete_if_value(self._key(key), lock.holder_token)
        except LockStoreUnavailable as exc:
            logger.warning("LOCK_RELEASE_FAILED key=%s err=%s; TTL will expire it", key, exc)
            return
        if not released and self.store.enforcing:
            logger.warning("LOCK_RELEASE key=%s no longer owned (expired or taken over)", key)

    async def held(self, key: str) -> bool:
        try:
            return await self.store.exists(self._key(key))
        except LockStoreUnavailable:
            return key in self._held

    def holding(self, key: str) -> Lock | None:
        return self._held.get(key)

    @asynccontextmanager
    async def lock(self, key: str, ttl: int) -> AsyncIterator[bool]:
        acquired = await self.acquire(key, ttl)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(key)


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    current: int
    limit: int


class RateLimiter:
    """Fixed-window counters. Store outages fail open."""

    def __init__(self, store: LockStore, *, prefix: str = "", health: Any = None) -> None:
        self.store = store
        self.prefix = prefix
        self.health = health

    async def check(self, name: str, limit: int, window_seconds: int) -> RateLimitDecision:
        key = f"{self.prefix}:rate:{name}" if self.prefix else f"rate:{name}"
        try:
            current = await self.store.incr_window(key, int(window_seconds))
        except LockStoreUnavailable as exc:
            logger.warning("RATE_LIMIT_FAIL_OPEN name=%s err=%s", name, exc)
            if self.health is not None:
                self.health.record_failure("rate_limit_fail_open")
            return RateLimitDecision(allowed=True, current=0, limit=int(limit))
        return RateLimitDecision(allowed=current <= int(limit), current=current, limit=int(limit))
