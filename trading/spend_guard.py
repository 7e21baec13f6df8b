"""Daily spend cap keyed by UTC calendar day."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from trading.errors import SpendCapExceeded
from utils.state_file import StateFileLockError, read_json_locked, write_json_atomic_locked

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SpendCounter:
    utc_day: str
    cumulative_spent_wei: int = 0


class DailySpendGuard:
    """Tracks cumulative spend against a cap that resets at 00:00 UTC.

    The reset is implicit: the first access on a new day sees a zero counter.
    When `state_file` is set the counter survives restarts.
    """

    def __init__(
        self,
        cap_wei: int,
        *,
        state_file: str | None = None,
        now: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.cap_wei = max(0, int(cap_wei))
        self.state_file = state_file
        self._now = now
        self._lock = threading.Lock()
        self._counter = SpendCounter(utc_day=self._today())
        self._load()

    def _today(self) -> str:
        return self._now().astimezone(timezone.utc).strftime("%Y-%m-%d")

    def _roll(self) -> None:
        today = self._today()
        if self._counter.utc_day != today:
            logger.info(
                "SPEND_GUARD new_day=%s previous_day=%s previous_spent_wei=%s",
                today,
                self._counter.utc_day,
                self._counter.cumulative_spent_wei,
            )
            self._counter = SpendCounter(utc_day=today)

    def _load(self) -> None:
        if not self.state_file:
            return
        try:
            payload = read_json_locked(self.state_file)
        except (OSError, ValueError, StateFileLockError) as exc:
            logger.warning("SPEND_GUARD state load failed path=%s err=%s", self.state_file, exc)
            return
        if not isinstance(payload, dict):
            return
        day = str(payload.get("utc_day", "") or "")
        if day == self._counter.utc_day:
            self._counter.cumulative_spent_wei = max(0, int(payload.get("cumulative_spent_wei", 0) or 0))
            logger.info("SPEND_GUARD restored day=%s spent_wei=%s", day, self._counter.cumulative_spent_wei)

    def _save(self) -> None:
        if not self.state_file:
            return
        try:
            write_json_atomic_locked(
                self.state_file,
                {
                    "utc_day": self._counter.utc_day,
                    "cumulative_spent_wei": self._counter.cumulative_spent_wei,
                    "cap_wei": self.cap_wei,
                },
            )
        except (OSError, StateFileLockError) as exc:
            logger.warning("SPEND_GUARD state save failed path=%s err=%s", self.state_file, exc)

    def can_spend(self, amount_wei: int) -> bool:
        with self._lock:
            self._roll()
            return self._counter.cumulative_spent_wei + int(amount_wei) <= self.cap_wei

    def record_spend(self, amount_wei: int) -> SpendCounter:
        amount = int(amount_wei)
        if amount < 0:
            raise ValueError("amount_wei must be non-negative")
        with self._lock:
            self._roll()
            if self._counter.cumulative_spent_wei + amount > self.cap_wei:
                raise SpendCapExceeded(
                    f"daily_cap_exceeded spent_wei={self._counter.cumulative_spent_wei} "
                    f"amount_wei={amount} cap_wei={self.cap_wei}"
                )
            self._counter.cumulative_spent_wei += amount
            self._save()
            return self.snapshot()

    def refund(self, amount_wei: int, utc_day: str | None = None) -> bool:
        """Give back a reservation for a purchase that was never paid for.

        `utc_day` is the day the reservation was recorded on. A reservation from a
        day that has already rolled over is dropped, since that day's counter is gone.
        """
        with self._lock:
            self._roll()
            if utc_day is not None and utc_day != self._counter.utc_day:
                logger.info(
                    "SPEND_GUARD refund_skipped amount_wei=%s reserved_day=%s current_day=%s",
                    int(amount_wei),
                    utc_day,
                    self._counter.utc_day,
                )
                return False
            self._counter.cumulative_spent_wei = max(0, self._counter.cumulative_spent_wei - int(amount_wei))
            self._save()
            return True

    def snapshot(self) -> SpendCounter:
        return SpendCounter(self._counter.utc_day, self._counter.cumulative_spent_wei)

    def remaining_wei(self) -> int:
        with self._lock:
            self._roll()
            return max(0, self.cap_wei - self._counter.cumulative_spent_wei)
