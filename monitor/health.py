"""In-process health counters, last-activity timestamps and anomaly checks."""

from __future__ import annotations

import threading
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import config


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class HealthRecorder:
    """Shared by every engine; read by the health endpoint and the daily summary."""

    def __init__(self, now: Callable[[], datetime] = _utc_now) -> None:
        self._now = now
        self._lock = threading.Lock()
        self.started_at = now()
        self.counters: Counter[str] = Counter()
        self.failures: Counter[str] = Counter()
        self.last_buy_at: datetime | None = None
        self.last_list_at: datetime | None = None
        self.last_sale_at: datetime | None = None
        self.last_burn_at: datetime | None = None
        self.last_error: str = ""
        self.spent_wei = 0
        self.burned_wei = 0
        self.sales_proceeds_wei = 0
        self.engine_state = "IDLE"
        self.emergency_stop = False
        self.lock_state: dict[str, Any] = {}
        self.balances: dict[str, str] = {}
        self.sources: dict[str, dict[str, Any]] = {}

    def record_buy(self, token_id: str, cost_wei: int) -> None:
        with self._lock:
            self.counters["buys"] += 1
            self.spent_wei += int(cost_wei)
            self.last_buy_at = self._now()

    def record_list(self, token_id: str, price_wei: int) -> None:
        with self._lock:
            self.counters["listings"] += 1
            self.last_list_at = self._now()

    def record_sale(self, token_id: str, price_wei: int) -> None:
        with self._lock:
            self.counters["sales"] += 1
            self.sales_proceeds_wei += int(price_wei)
            self.last_sale_at = self._now()

    def record_burn(self, burned_wei: int) -> None:
        with self._lock:
            self.counters["burns"] += 1
            self.burned_wei += int(burned_wei)
            self.last_burn_at = self._now()

    def record_failure(self, kind: str, detail: str = "") -> None:
        with self._lock:
            self.failures[str(kind)] += 1
            if detail:
                self.last_error = f"{kind}: {detail}"[:300]

    def set_engine_state(self, state: str) -> None:
        self.engine_state = str(state)

    def set_balances(self, **balances: str) -> None:
        with self._lock:
            self.balances.update(balances)

    def set_source_stats(self, stats: dict[str, dict[str, Any]]) -> None:
        with self._lock:
            self.sources = dict(stats)

    def reset_daily(self) -> None:
        with self._lock:
            self.counters.clear()
            self.failures.clear()
            self.spent_wei = 0
            self.burned_wei = 0
            self.sales_proceeds_wei = 0

    @staticmethod
    def _in_market_hours(now: datetime) -> bool:
        start, end = config.MARKET_HOURS_UTC_START, config.MARKET_HOURS_UTC_END
        if start <= end:
            return start <= now.hour < end
        return now.hour >= start or now.hour < end

    def check_anomalies(self, now: datetime | None = None) -> list[str]:
        now = now or self._now()
        anomalies: list[str] = []
        idle_limit = timedelta(hours=float(config.ANOMALY_IDLE_HOURS))
        if self._in_market_hours(now):
            last_activity = max(
                (ts for ts in (self.last_buy_at, self.last_list_at) if ts is not None),
                default=self.started_at,
            )
            if now - last_activity >= idle_limit:
                hours = (now - last_activity).total_seconds() / 3600
                anomalies.append(f"no buys or listings for {hours:.1f}h during market hours")

        burn_limit = timedelta(hours=float(config.ANOMALY_BURN_STALL_HOURS))
        last_burn = self.last_burn_at or self.started_at
        if now - last_burn >= burn_limit:
            hours = (now - last_burn).total_seconds() / 3600
            anomalies.append(f"no burn for {hours:.1f}h")
        return anomalies

    def snapshot(self) -> dict[str, Any]:
        now = self._now()
        with self._lock:
            counters = dict(self.counters)
            failures = dict(self.failures)
        anomalies = self.check_anomalies(now)
        return {
            "ok": not self.emergency_stop and not anomalies,
            "state": self.engine_state,
            "emergency_stop": self.emergency_stop,
            "uptime_seconds": int((now - self.started_at).total_seconds()),
            "counters": counters,
            "failures": failures,
            "spent_wei": str(self.spent_wei),
            "burned_wei": str(self.burned_wei),
            "sales_proceeds_wei": str(self.sales_proceeds_wei),
            "last_buy_at": _iso(self.last_buy_at),
            "last_list_at": _iso(self.last_list_at),
            "last_sale_at": _iso(self.last_sale_at),
            "last_burn_at": _iso(self.last_burn_at),
            "last_error": self.last_error,
            "locks": dict(self.lock_state),
            "balances": dict(self.balances),
            "sources": dict(self.sources),
            "anomalies": anomalies,
        }
