from __future__ import annotations

import json
import os
import tempfile
import threading
import unittest
from datetime import datetime, timedelta, timezone

from trading.errors import EconomicError, SpendCapExceeded
from trading.spend_guard import DailySpendGuard

ETHER = 10**18


class MutableNow:
    def __init__(self, value: datetime) -> None:
        self.value = value

    def __call__(self) -> datetime:
        return self.value


class DailySpendGuardTests(unittest.TestCase):
    def test_spend_never_exceeds_cap(self) -> None:
        guard = DailySpendGuard(25 * ETHER)
        guard.record_spend(10 * ETHER)
        guard.record_spend(10 * ETHER)
        self.assertFalse(guard.can_spend(10 * ETHER))
        with self.assertRaises(SpendCapExceeded):
            guard.record_spend(10 * ETHER)
        self.assertEqual(guard.snapshot().cumulative_spent_wei, 20 * ETHER)
        self.assertTrue(guard.can_spend(5 * ETHER))
        guard.record_spend(5 * ETHER)
        self.assertEqual(guard.remaining_wei(), 0)

    def test_cap_exceeded_is_an_economic_failure(self) -> None:
        self.assertTrue(issubclass(SpendCapExceeded, EconomicError))

    def test_counter_resets_at_utc_midnight(self) -> None:
        now = MutableNow(datetime(2026, 3, 1, 23, 59, tzinfo=timezone.utc))
        guard = DailySpendGuard(10 * ETHER, now=now)
        guard.record_spend(10 * ETHER)
        self.assertFalse(guard.can_spend(1))

        now.value += timedelta(minutes=2)
        self.assertTrue(guard.can_spend(10 * ETHER))
        self.assertEqual(guard.snapshot().utc_day, "2026-03-02")
        self.assertEqual(guard.snapshot().cumulative_spent_wei, 0)

    def test_day_boundary_uses_utc_not_local_offset(self) -> None:
        plus_two = timezone(timedelta(hours=2))
        now = MutableNow(datetime(2026, 3, 2, 1, 0, tzinfo=plus_two))
        guard = DailySpendGuard(ETHER, now=now)
        self.assertEqual(guard.snapshot().utc_day, "2026-03-01")

    def test_refund_returns_reservation(self) -> None:
        guard = DailySpendGuard(10 * ETHER)
        guard.record_spend(6 * ETHER)
        guard.refund(6 * ETHER)
        self.assertEqual(guard.snapshot().cumulative_spent_wei, 0)
        guard.refund(ETHER)
        self.assertEqual(guard.snapshot().cumulative_spent_wei, 0)

    def test_refund_after_midnight_does_not_free_next_day_budget(self) -> None:
        now = MutableNow(datetime(2026, 3, 1, 23, 59, 50, tzinfo=timezone.utc))
        guard = DailySpendGuard(50 * ETHER, now=now)
        reservation = guard.record_spend(10 * ETHER)
        self.assertEqual(reservation.utc_day, "2026-03-01")

        now.value += timedelta(seconds=30)
        guard.record_spend(45 * ETHER)
        self.assertFalse(guard.refund(10 * ETHER, reservation.utc_day))
        self.assertEqual(guard.snapshot().cumulative_spent_wei, 45 * ETHER)
        with self.assertRaises(SpendCapExceeded):
            guard.record_spend(15 * ETHER)
        self.assertLessEqual(guard.snapshot().cumulative_spent_wei, 50 * ETHER)

    def test_refund_on_same_day_is_applied(self) -> None:
        guard = DailySpendGuard(10 * ETHER)
        reservation = guard.record_spend(4 * ETHER)
        self.assertTrue(guard.refund(4 * ETHER, reservation.utc_day))
        self.assertEqual(guard.snapshot().cumulative_spent_wei, 0)

    def test_negative_amount_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            DailySpendGuard(ETHER).record_spend(-1)

    def test_concurrent_reservations_respect_cap(self) -> None:
        guard = DailySpendGuard(10 * ETHER)
        accepted: list[int] = []
        lock = threading.Lock()

        def worker() -> None:
            try:
                guard.record_spend(ETHER)
            except SpendCapExceeded:
                return
            with lock:
                accepted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(25)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(len(accepted), 10)
        self.assertEqual(guard.snapshot().cumulative_spent_wei, 10 * ETHER)

    def test_counter_survives_restart_on_same_day(self) -> None:
        now = MutableNow(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "spend.json")
            DailySpendGuard(10 * ETHER, state_file=path, now=now).record_spend(4 * ETHER)

            restored = DailySpendGuard(10 * ETHER, state_file=path, now=now)
            self.assertEqual(restored.snapshot().cumulative_spent_wei, 4 * ETHER)

            with open(path, "r", encoding="utf-8") as f:
                stored = json.load(f)
            self.assertEqual(stored["utc_day"], "2026-03-01")

            now.value += timedelta(days=1)
            next_day = DailySpendGuard(10 * ETHER, state_file=path, now=now)
            self.assertEqual(next_day.snapshot().cumulative_spent_wei, 0)


if __name__ == "__main__":
    unittest.main()
