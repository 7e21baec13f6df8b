"""Timer that runs treasury settlement under the shared settlement lock."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

import config
from monitor.health import HealthRecorder
from trading.errors import error_kind
from trading.locks import LockManager
from trading.settlement import SettlementResult, TreasurySettlementEngine

logger = logging.getLogger(__name__)


class TreasuryPoller:
    def __init__(
        self,
        engine: TreasurySettlementEngine,
        locks: LockManager,
        health: HealthRecorder,
        *,
        interval_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.engine = engine
        self.locks = locks
        self.health = health
        self.interval_seconds = (
            config.TREASURY_POLL_INTERVAL_SECONDS if interval_seconds is None else float(interval_seconds)
        )
        self.lock_key = config.SETTLEMENT_LOCK_KEY
        self.lock_ttl = config.SETTLEMENT_LOCK_TTL_SECONDS
        self._sleep = sleep

    async def poll_once(self) -> SettlementResult | None:
        """Returns None when another holder owns the settlement lock."""
        async with self.locks.lock(self.lock_key, self.lock_ttl) as acquired:
            if not acquired:
                logger.info("TREASURY_POLL lock busy key=%s; skipping", self.lock_key)
                self.health.lock_state[self.lock_key] = "held_elsewhere"
                return None
            self.health.lock_state[self.lock_key] = "held"
            try:
                return await self.engine.settle()
            finally:
                self.health.lock_state[self.lock_key] = "free"

    async def report_interrupted_runs(self) -> list[Any]:
        async with self.locks.lock(self.lock_key, self.lock_ttl) as acquired:
            if not acquired:
                # The current holder may still be writing its run.
                logger.info("TREASURY_POLL lock busy key=%s; not reviewing unfinished runs", self.lock_key)
                return []
            return self.engine.report_unfinished_runs()

    async def run_forever(self) -> None:
        try:
            await self.report_interrupted_runs()
        except Exception as exc:
            logger.exception("TREASURY_POLL unfinished run review failed")
            self.health.record_failure(error_kind(exc), str(exc))
        logger.info("TREASURY_POLL started interval=%ss lock=%s", self.interval_seconds, self.lock_key)
        while True:
            try:
                await self.poll_once()
            except Exception as exc:
                logger.exception("TREASURY_POLL error")
                self.health.record_failure(error_kind(exc), str(exc))
            await self._sleep(self.interval_seconds)
