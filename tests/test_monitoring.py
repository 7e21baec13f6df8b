from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from aiohttp.test_utils import TestClient, TestServer

import config
from monitor.alerter import FlywheelAlerter
from monitor.daily_summary import DailySummaryJob, build_summary, seconds_until_hour
from monitor.health import HealthRecorder
from monitor.health_server import HealthServer
from trading.spend_guard import DailySpendGuard


class ConfigPatchMixin:
    def setUp(self) -> None:
        super().setUp()
        self._cfg_old: dict[str, object] = {}

    def patch_cfg(self, **kwargs: object) -> None:
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key, None)
            setattr(config, key, value)

    def tearDown(self) -> None:
        for key, value in self._cfg_old.items():
            setattr(config, key, value)
        super().tearDown()


class MutableNow:
    def __init__(self, value: datetime) -> None:
        self.value = value

    def __call__(self) -> datetime:
        return self.value


class FakeBot:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.messages: list[str] = []

    async def send_message(self, chat_id, text, **kwargs):
        if self.fail:
            raise RuntimeError("telegram down")
        self.messages.append(text)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class HealthRecorderTests(ConfigPatchMixin, unittest.TestCase):
    def setUp(self) -> None:
        super().setUp()
        self.patch_cfg(
            ANOMALY_IDLE_HOURS=6,
            ANOMALY_BURN_STALL_HOURS=2,
            MARKET_HOURS_UTC_START=10,
            MARKET_HOURS_UTC_END=22,
        )

    def test_counters_and_snapshot(self) -> None:
        now = MutableNow(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
        health = HealthRecorder(now=now)
        health.record_buy("1", 10)
        health.record_list("1", 12)
        health.record_sale("1", 12)
        health.record_burn(500)
        health.record_failure("buy_failed", "reverted")
        health.set_engine_state("WATCHING")

        snap = health.snapshot()
        self.assertTrue(snap["ok"])
        self.assertEqual(snap["state"], "WATCHING")
        self.assertEqual(snap["counters"], {"buys": 1, "listings": 1, "sales": 1, "burns": 1})
        self.assertEqual(snap["failures"], {"buy_failed": 1})
        self.assertEqual(snap["spent_wei"], "10")
        self.assertEqual(snap["burned_wei"], "500")
        self.assertEqual(snap["last_error"], "buy_failed: reverted")

    def test_idle_anomaly_only_during_market_hours(self) -> None:
        start = datetime(2026, 3, 1, 4, 0, tzinfo=timezone.utc)
        now = MutableNow(start)
        health = HealthRecorder(now=now)
        health.record_burn(1)

        now.value = start + timedelta(hours=5, minutes=59)
        health.record_burn(1)
        self.assertEqual(health.check_anomalies(), [])

        now.value = start + timedelta(hours=6, minutes=30)
        health.record_burn(1)
        anomalies = health.check_anomalies()
        self.assertEqual(len(anomalies), 1)
        self.assertIn("no buys or listings", anomalies[0])

        health.record_buy("1", 1)
        self.assertEqual(health.check_anomalies(), [])

    def test_burn_stall_anomaly(self) -> None:
        start = datetime(2026, 3, 1, 2, 0, tzinfo=timezone.utc)
        now = MutableNow(start)
        health = HealthRecorder(now=now)
        now.value = start + timedelta(hours=2)
        anomalies = health.check_anomalies()
        self.assertEqual(anomalies, ["no burn for 2.0h"])
        self.assertFalse(health.snapshot()["ok"])

    def test_reset_daily_clears_counters_but_keeps_timestamps(self) -> None:
        health = HealthRecorder()
        health.record_buy("1", 10)
        health.reset_daily()
        self.assertEqual(dict(health.counters), {})
        self.assertEqual(health.spent_wei, 0)
        self.assertIsNotNone(health.last_buy_at)


class AlerterTests(ConfigPatchMixin, unittest.IsolatedAsyncioTestCase):
    async def test_duplicate_errors_are_suppressed_within_window(self) -> None:
        bot, clock = FakeBot(), FakeClock()
        alerter = FlywheelAlerter(bot=bot, chat_id=1, dedupe_window_seconds=600, clock=clock)

        self.assertTrue(await alerter.error("RPC down", "timeout"))
        clock.now = 599
        self.assertFalse(await alerter.error("RPC down", "timeout again"))
        clock.now = 601
        self.assertTrue(await alerter.error("RPC down", "still down"))
        self.assertEqual(len(bot.messages), 2)
        self.assertEqual(alerter.suppressed, 1)

    async def test_non_error_levels_are_never_deduplicated(self) -> None:
        bot = FakeBot()
        alerter = FlywheelAlerter(bot=bot, chat_id=1)
        await alerter.success("Burn completed")
        await alerter.success("Burn completed")
        await alerter.warning("Low balance")
        self.assertEqual(len(bot.messages), 3)

    async def test_dedupe_memory_is_bounded(self) -> None:
        alerter = FlywheelAlerter(bot=FakeBot(), chat_id=1, dedupe_max_keys=10, clock=FakeClock())
        for i in range(50):
            await alerter.error(f"error {i}")
        self.assertEqual(len(alerter._recent_errors), 10)
        self.assertTrue(await alerter.error("error 0"))

    async def test_delivery_failure_does_not_raise(self) -> None:
        alerter = FlywheelAlerter(bot=FakeBot(fail=True), chat_id=1)
        self.assertFalse(await alerter.info("hello"))

    async def test_disabled_without_chat(self) -> None:
        self.patch_cfg(TELEGRAM_BOT_TOKEN="", TELEGRAM_ALERT_CHAT_ID="")
        alerter = FlywheelAlerter()
        self.assertFalse(alerter.enabled)
        self.assertFalse(await alerter.info("hello"))

    def test_message_is_html_escaped(self) -> None:
        text = FlywheelAlerter.format_message("error", "<b>bad</b>", "a & b")
        self.assertIn("&lt;b&gt;bad&lt;/b&gt;", text)
        self.assertIn("a &amp; b", text)


class HealthServerTests(unittest.IsolatedAsyncioTestCase):
    async def test_health_endpoint_reports_snapshot(self) -> None:
        health = HealthRecorder()
        health.record_burn(5)
        health.record_list("1", 1)
        refreshed: list[bool] = []

        async def refresh() -> None:
            refreshed.append(True)
            health.set_balances(treasury_native="1.000000")

        server = HealthServer(health, refresh=refresh, path="/health")
        async with TestClient(TestServer(server.build_app())) as client:
            response = await client.get("/health")
            payload = await response.json()

        self.assertEqual(refreshed, [True])
        self.assertIn(response.status, (200, 503))
        self.assertEqual(payload["balances"], {"treasury_native": "1.000000"})
        self.assertEqual(payload["counters"]["burns"], 1)
        self.assertIn("state", payload)
        self.assertIn("anomalies", payload)

    async def test_emergency_stop_reports_unhealthy(self) -> None:
        health = HealthRecorder()
        health.emergency_stop = True
        server = HealthServer(health, path="/health")
        async with TestClient(TestServer(server.build_app())) as client:
            response = await client.get("/health")
            payload = await response.json()
        self.assertEqual(response.status, 503)
        self.assertFalse(payload["ok"])


class DailySummaryTests(unittest.IsolatedAsyncioTestCase):
    def test_seconds_until_hour(self) -> None:
        now = datetime(2026, 3, 1, 23, 30, tzinfo=timezone.utc)
        self.assertEqual(seconds_until_hour(now, 0), 30 * 60)
        self.assertEqual(seconds_until_hour(now.replace(hour=0, minute=0), 0), 24 * 3600)

    def test_summary_lists_failures_by_type(self) -> None:
        text = build_summary({"counters": {"buys": 2}, "failures": {"buy_failed": 1, "swap_failed": 2}, "spent_wei": "0"})
        self.assertIn("Buys: 2", text)
        self.assertIn("buy_failed=1, swap_failed=2", text)

    async def test_send_once_reports_and_resets(self) -> None:
        bot = FakeBot()
        health = HealthRecorder()
        health.record_buy("1", 3 * 10**18)
        guard = DailySpendGuard(10 * 10**18)
        guard.record_spend(3 * 10**18)
        job = DailySummaryJob(health, FlywheelAlerter(bot=bot, chat_id=1), spend_guard=guard)

        text = await job.send_once()

        self.assertIn("Spent: 3.000000", text)
        self.assertEqual(len(bot.messages), 1)
        self.assertEqual(health.counters["buys"], 0)

    async def test_summary_includes_stored_settlement_totals(self) -> None:
        bot = FakeBot()
        windows = []

        def settlement_stats(since):
            windows.append(since)
            return {"runs": 3, "completed": 2, "failed": 1, "reward_burned_wei": 7 * 10**18}

        job = DailySummaryJob(HealthRecorder(), FlywheelAlerter(bot=bot, chat_id=1), settlement_stats=settlement_stats)

        text = await job.send_once()

        self.assertIn("Settlements (24h): runs=3 completed=2 failed=1 burned=7.000000", text)
        self.assertEqual(len(windows), 1)


if __name__ == "__main__":
    unittest.main()
