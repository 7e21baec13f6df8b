"""Once-a-day operator report."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import config
from monitor.alerter import FlywheelAlerter
from monitor.health import HealthRecorder
from trading.chain_client import format_native

logger = logging.getLogger(__name__)


def seconds_until_hour(now: datetime, hour: int) -> float:
    target = now.replace(hour=int(hour), minute=0, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return (target - now).total_seconds()


def build_summary(snapshot: dict[str, Any], spend: Any = None, settlements: dict[str, Any] | None = None) -> str:
    counters = snapshot.get("counters") or {}
    failures = snapshot.get("failures") or {}
    lines = [
        f"Buys: {counters.get('buys', 0)}",
        f"Listings: {counters.get('listings', 0)}",
        f"Sales: {counters.get('sales', 0)}",
        f"Burns: {counters.get('burns', 0)}",
        f"Spent: {format_native(int(snapshot.get('spent_wei') or 0))} {config.NATIVE_SYMBOL}",
        f"Burned: {format_native(int(snapshot.get('burned_wei') or 0))} {config.REWARD_TOKEN_SYMBOL}",
    ]
    if spend is not None:
        lines.append(f"Spend counter ({spend.utc_day}): {format_native(spend.cumulative_spent_wei)} {config.NATIVE_SYMBOL}")
    if settlements:
        lines.append(
            f"Settlements (24h): runs={settlements.get('runs', 0)} completed={settlements.get('completed', 0)} "
            f"failed={settlements.get('failed', 0)} "
            f"burned={format_native(int(settlements.get('reward_burned_wei') or 0))} {config.REWARD_TOKEN_SYMBOL}"
        )
    if failures:
        lines.append("Failures: " + ", ".join(f"{kind}={count}" for kind, count in sorted(failures.items())))
    else:
        lines.append("Failures: none")
    for name, value in sorted((snapshot.get("balances") or {}).items()):
        lines.append(f"{name}: {value}")
    for anomaly in snapshot.get("anomalies") or []:
        lines.append(f"Anomaly: {anomaly}")
    return "\n".join(lines)


class DailySummaryJob:
    def __init__(
        self,
        health: HealthRecorder,
        alerter: FlywheelAlerter,
        *,
        spend_guard: Any = None,
        refresh: Callable[[], Awaitable[None]] | None = None,
        settlement_stats: Callable[[datetime], dict[str, Any]] | None = None,
        hour_utc: int | None = None,
    ) -> None:
        self.health = health
        self.alerter = alerter
        self.spend_guard = spend_guard
        self.refresh = refresh
        self.settlement_stats = settlement_stats
        self.hour_utc = config.DAILY_SUMMARY_UTC_HOUR if hour_utc is None else int(hour_utc)

    async def send_once(self) -> str:
        if self.refresh is not None:
            try:
                await self.refresh()
            except Exception as exc:
                logger.warning("DAILY_SUMMARY balance refresh failed: %s", exc)
        spend = self.spend_guard.snapshot() if self.spend_guard is not None else None
        settlements = None
        if self.settlement_stats is not None:
            # Totals from the run table; health counters start at zero after a restart.
            since = datetime.utcnow() - timedelta(days=1)
            try:
                settlements = await asyncio.to_thread(self.settlement_stats, since)
            except Exception as exc:
                logger.warning("DAILY_SUMMARY settlement stats failed: %s", exc)
        text = build_summary(self.health.snapshot(), spend, settlements)
        await self.alerter.info("Daily summary", text)
        self.health.reset_daily()
        logger.info("DAILY_SUMMARY sent")
        return text

    async def run_forever(self) -> None:
        while True:
            delay = seconds_until_hour(datetime.now(timezone.utc), self.hour_utc)
            logger.info("DAILY_SUMMARY next in %.0fs", delay)
            await asyncio.sleep(delay)
            try:
                await self.send_once()
            except Exception:
                logger.exception("DAILY_SUMMARY failed")
                self.health.record_failure("daily_summary")
