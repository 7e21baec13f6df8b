from __future__ import annotations

import asyncio
import unittest

from monitor.health import HealthRecorder
from trading.locks import (
    LockManager,
    LockStore,
    LockStoreUnavailable,
    MemoryLockStore,
    NoopLockStore,
    RateLimiter,
    RedisLockStore,
    build_lock_store,
)


class FakeClock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class BrokenStore(LockStore):
    name = "broken"

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        raise LockStoreUnavailable("connection refused")

    async def delete_if_value(self, key: str, value: str) -> bool:
        raise LockStoreUnavailable("connection refused")

    async def exists(self, key: str) -> bool:
        raise LockStoreUnavailable("connection refused")

    async def incr_window(self, key: str, window_seconds: int) -> int:
        raise LockStoreUnavailable("connection refused")


class LockManagerTests(unittest.IsolatedAsyncioTestCase):
    async def test_lock_is_held_until_ttl_then_acquirable(self) -> None:
        clock = FakeClock()
        store = MemoryLockStore(clock=clock)
        first = LockManager(store, instance_id="a")
        second = LockManager(store, instance_id="b")

        self.assertTrue(await first.acquire("treasury-burn", 600))
        clock.now += 599
        self.assertTrue(await second.held("treasury-burn"))
        self.assertFalse(await second.acquire("treasury-burn", 600))

        clock.now += 2
        self.assertFalse(await second.held("treasury-burn"))
        self.assertTrue(await second.acquire("treasury-burn", 600))

    async def test_concurrent_acquire_has_single_winner(self) -> None:
        store = MemoryLockStore()
        managers = [LockManager(store, instance_id=f"bot-{i}") for i in range(8)]
        results = await asyncio.gather(*(m.acquire("treasury-burn", 600) for m in managers))
        self.assertEqual(sum(1 for ok in results if ok), 1)

    async def test_release_does_not_delete_lock_taken_over_after_expiry(self) -> None:
        clock = FakeClock()
        store = MemoryLockStore(clock=clock)
        stale = LockManager(store, instance_id="stale")
        fresh = LockManager(store, instance_id="fresh")

        self.assertTrue(await stale.acquire("k", 10))
        clock.now += 11
        self.assertTrue(await fresh.acquire("k", 10))

        await stale.release("k")
        self.assertTrue(await fresh.held("k"))
        self.assertFalse(await stale.acquire("k", 10))

    async def test_release_is_idempotent(self) -> None:
        manager = LockManager(MemoryLockStore())
        self.assertTrue(await manager.acquire("k", 30))
        await manager.release("k")
        await manager.release("k")
        await manager.release("never-held")
        self.assertFalse(await manager.held("k"))
        self.assertIsNone(manager.holding("k"))

    async def test_context_manager_releases_on_error(self) -> None:
        store = MemoryLockStore()
        manager = LockManager(store)
        with self.assertRaises(RuntimeError):
            async with manager.lock("k", 30) as acquired:
                self.assertTrue(acquired)
                raise RuntimeError("boom")
        self.assertFalse(await manager.held("k"))

    async def test_store_outage_fails_open_and_is_counted(self) -> None:
        health = HealthRecorder()
        manager = LockManager(BrokenStore(), health=health)
        self.assertTrue(await manager.acquire("treasury-burn", 600))
        self.assertEqual(health.failures["lock_fail_open"], 1)
        self.assertTrue(await manager.held("treasury-burn"))
        await manager.release("treasury-burn")
        self.assertFalse(await manager.held("treasury-burn"))

    async def test_noop_store_is_degraded_mode(self) -> None:
        manager = LockManager(NoopLockStore())
        self.assertTrue(manager.degraded)
        self.assertTrue(await manager.acquire("k", 30))
        self.assertTrue(await LockManager(NoopLockStore()).acquire("k", 30))

    async def test_prefix_is_applied_to_store_keys(self) -> None:
        store = MemoryLockStore()
        manager = LockManager(store, prefix="flywheel")
        await manager.acquire("treasury-burn", 30)
        self.assertTrue(await store.exists("flywheel:treasury-burn"))
        self.assertFalse(await store.exists("treasury-burn"))


class RateLimiterTests(unittest.IsolatedAsyncioTestCase):
    async def test_fixed_window_limit(self) -> None:
        clock = FakeClock()
        limiter = RateLimiter(MemoryLockStore(clock=clock), prefix="flywheel")

        self.assertTrue((await limiter.check("listing", 2, 3600)).allowed)
        self.assertTrue((await limiter.check("listing", 2, 3600)).allowed)
        denied = await limiter.check("listing", 2, 3600)
        self.assertFalse(denied.allowed)
        self.assertEqual(denied.current, 3)

        clock.now += 3600
        self.assertTrue((await limiter.check("listing", 2, 3600)).allowed)

    async def test_limits_are_tracked_per_name(self) -> None:
        limiter = RateLimiter(MemoryLockStore())
        self.assertTrue((await limiter.check("purchase", 1, 60)).allowed)
        self.assertFalse((await limiter.check("purchase", 1, 60)).allowed)
        self.assertTrue((await limiter.check("listing", 1, 60)).allowed)

    async def test_store_outage_fails_open(self) -> None:
        health = HealthRecorder()
        limiter = RateLimiter(BrokenStore(), health=health)
        decision = await limiter.check("purchase", 1, 60)
        self.assertTrue(decision.allowed)
        self.assertEqual(health.failures["rate_limit_fail_open"], 1)


class FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.expiries: dict[str, int] = {}

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = value
        self.expiries[key] = ex
        return True

    async def eval(self, script, numkeys, key, value):
        if self.values.get(key) == value:
            del self.values[key]
            return 1
        return 0

    async def exists(self, key):
        return 1 if key in self.values else 0

    async def incr(self, key):
        self.values[key] = str(int(self.values.get(key, "0")) + 1)
        return int(self.values[key])

    async def expire(self, key, seconds):
        self.expiries[key] = seconds
        return True


class RedisLockStoreTests(unittest.IsolatedAsyncioTestCase):
    def _store(self) -> tuple[RedisLockStore, FakeRedis]:
        store = RedisLockStore.__new__(RedisLockStore)
        store.url = "redis://test"
        store._client = FakeRedis()
        return store, store._client

    async def test_set_nx_ex_and_compare_and_delete(self) -> None:
        store, client = self._store()
        self.assertTrue(await store.set_if_absent("k", "token-a", 600))
        self.assertEqual(client.expiries["k"], 600)
        self.assertFalse(await store.set_if_absent("k", "token-b", 600))
        self.assertFalse(await store.delete_if_value("k", "token-b"))
        self.assertTrue(await store.exists("k"))
        self.assertTrue(await store.delete_if_value("k", "token-a"))
        self.assertFalse(await store.exists("k"))

    async def test_incr_window_sets_expiry_on_first_hit(self) -> None:
        store, client = self._store()
        self.assertEqual(await store.incr_window("rate:purchase", 60), 1)
        self.assertEqual(client.expiries["rate:purchase"], 60)
        client.expiries["rate:purchase"] = None
        self.assertEqual(await store.incr_window("rate:purchase", 60), 2)
        self.assertIsNone(client.expiries["rate:purchase"])

    async def test_connection_errors_become_store_unavailable(self) -> None:
        store, client = self._store()

        async def refuse(*args, **kwargs):
            raise ConnectionRefusedError("refused")

        client.set = refuse
        with self.assertRaises(LockStoreUnavailable):
            await store.set_if_absent("k", "v", 10)


class BuildLockStoreTests(unittest.TestCase):
    def test_redis_without_url_degrades_to_noop(self) -> None:
        self.assertIsInstance(build_lock_store("redis", ""), NoopLockStore)

    def test_memory_and_none(self) -> None:
        self.assertIsInstance(build_lock_store("memory", ""), MemoryLockStore)
        self.assertIsInstance(build_lock_store("none", ""), NoopLockStore)

    def test_unknown_kind_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            build_lock_store("etcd", "")


if __name__ == "__main__":
    unittest.main()
