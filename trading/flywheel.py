"""Acquisition and relisting loop: buy the floor, verify, relist at a markup, watch for the sale."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

import config
import database.db as db_store
from market.listing_source import Listing, ListingPublisher, ListingSource
from monitor.alerter import FlywheelAlerter, tx_link
from monitor.health import HealthRecorder
from trading.chain_client import format_native
from trading.errors import SpendCapExceeded, TransientError, TxFailed, error_kind
from trading.locks import RateLimiter
from trading.spend_guard import DailySpendGuard
from utils.addressing import same_address

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    IDLE = "IDLE"
    EVALUATING = "EVALUATING"
    BUYING = "BUYING"
    VERIFYING_OWNERSHIP = "VERIFYING_OWNERSHIP"
    LISTING = "LISTING"
    WATCHING = "WATCHING"
    SOLD = "SOLD"
    TIMED_OUT = "TIMED_OUT"


@dataclass
class OpenPosition:
    token_id: str
    acquisition_cost_wei: int
    listed_price_wei: int
    listed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: str = "OPEN"
    listed: bool = False


@dataclass(frozen=True)
class SaleEvent:
    token_id: str
    acquisition_cost_wei: int
    listed_price_wei: int
    detected_at: datetime


def apply_bps(amount_wei: int, bps: int) -> int:
    return int(amount_wei) * (10_000 + int(bps)) // 10_000


class FlywheelEngine:
    def __init__(
        self,
        chain: Any,
        source: ListingSource,
        publisher: ListingPublisher,
        spend_guard: DailySpendGuard,
        rate_limiter: RateLimiter,
        health: HealthRecorder,
        alerter: FlywheelAlerter,
        *,
        repo: Any = None,
        sale_events: asyncio.Queue | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.chain = chain
        self.source = source
        self.publisher = publisher
        self.spend_guard = spend_guard
        self.rate_limiter = rate_limiter
        self.health = health
        self.alerter = alerter
        self.repo = repo if repo is not None else db_store
        self.sale_events = sale_events
        self._sleep = sleep
        self.collection = config.NFT_COLLECTION_ADDRESS
        self.positions: dict[str, OpenPosition] = {}
        self._state = EngineState.IDLE

    @property
    def state(self) -> EngineState:
        return self._state

    def _set_state(self, state: EngineState) -> None:
        if state != self._state:
            logger.debug("FLYWHEEL_STATE %s -> %s", self._state.value, state.value)
        self._state = state
        self.health.set_engine_state(state.value)

    def load_open_positions(self) -> int:
        """Rebuild the open book from the database after a restart."""
        for row in self.repo.list_open_positions():
            self.positions[str(row.token_id)] = OpenPosition(
                token_id=str(row.token_id),
                acquisition_cost_wei=int(row.acquisition_cost_wei),
                listed_price_wei=int(row.listed_price_wei),
                listed_at=row.listed_at,
                listed=bool(row.listed),
            )
        if self.positions:
            logger.info("FLYWHEEL restored open positions=%s", len(self.positions))
        return len(self.positions)

    async def run_forever(self) -> None:
        logger.info("FLYWHEEL loop started wallet=%s", self.chain.address)
        while True:
            try:
                delay = await self.run_cycle()
            except Exception as exc:
                logger.exception("FLYWHEEL_LOOP_ERROR state=%s", self._state.value)
                self.health.record_failure(error_kind(exc), str(exc))
                await self.alerter.error(
                    "Flywheel loop error",
                    f"{type(exc).__name__}: {exc}",
                    dedupe_key=f"flywheel:{type(exc).__name__}",
                )
                self._set_state(EngineState.IDLE)
                delay = config.LOOP_ERROR_BACKOFF_SECONDS
            await self._sleep(delay)

    async def run_cycle(self) -> float:
        """One pass through the state machine. Returns the delay before the next pass."""
        if config.EMERGENCY_STOP:
            if not self.health.emergency_stop:
                await self.alerter.warning("Emergency stop active", "Acquisition loop paused.")
            self.health.emergency_stop = True
            logger.warning("FLYWHEEL emergency stop active; skipping evaluation")
            self._set_state(EngineState.IDLE)
            return config.EMERGENCY_STOP_POLL_SECONDS
        self.health.emergency_stop = False

        await self.relist_pending()
        await self.sweep_sold()

        self._set_state(EngineState.EVALUATING)
        listing = await self.source.next_listing()
        if listing is None:
            self._set_state(EngineState.IDLE)
            return config.LOOP_IDLE_SECONDS

        rejection = await self.evaluate(listing)
        if rejection is not None:
            reason, delay = rejection
            logger.info("FLYWHEEL_SKIP token=%s price=%s reason=%s", listing.token_id, format_native(listing.price_wei), reason)
            self._set_state(EngineState.IDLE)
            return delay

        self._set_state(EngineState.BUYING)
        tx_hash = await self.buy(listing)
        if tx_hash is None:
            self._set_state(EngineState.EVALUATING)
            return config.LOOP_BUY_FAILURE_BACKOFF_SECONDS

        self._set_state(EngineState.VERIFYING_OWNERSHIP)
        if not await self.verify_ownership(listing, tx_hash):
            self._set_state(EngineState.EVALUATING)
            return config.LOOP_BUY_FAILURE_BACKOFF_SECONDS

        self._set_state(EngineState.LISTING)
        position = await self.list_position(listing, tx_hash)

        if position.listed:
            self._set_state(EngineState.WATCHING)
            outcome = await self.watch_sale(position)
            self._set_state(outcome)
        self._set_state(EngineState.EVALUATING)
        return config.LOOP_CYCLE_DELAY_SECONDS

    @staticmethod
    def cost_of(listing: Listing) -> int:
        return int(listing.call.value_wei or listing.price_wei)

    async def evaluate(self, listing: Listing) -> tuple[str, float] | None:
        """Returns (reason, backoff) when the listing is rejected this round."""
        if listing.token_id in self.positions:
            return "position_open", config.LOOP_IDLE_SECONDS

        cost = self.cost_of(listing)
        if not self.spend_guard.can_spend(cost):
            return "daily_cap", config.LOOP_CAP_BACKOFF_SECONDS

        balance = await asyncio.to_thread(self.chain.native_balance_wei)
        need = apply_bps(cost, config.BUY_BUFFER_BPS)
        if balance < need:
            self.health.record_failure("insufficient_funds")
            return (
                f"insufficient_funds have={format_native(balance)} need={format_native(need)}",
                config.LOOP_FUNDS_BACKOFF_SECONDS,
            )

        decision = await self.rate_limiter.check(
            "purchase", config.PURCHASE_RATE_LIMIT, config.PURCHASE_RATE_WINDOW_SECONDS
        )
        if not decision.allowed:
            return f"purchase_rate_limited {decision.current}/{decision.limit}", config.LOOP_RATE_LIMIT_BACKOFF_SECONDS
        return None

    async def buy(self, listing: Listing) -> str | None:
        cost = self.cost_of(listing)
        # Reserved before broadcast so a concurrent check can't push the day over the cap.
        try:
            reservation = await asyncio.to_thread(self.spend_guard.record_spend, cost)
        except SpendCapExceeded as exc:
            logger.info("FLYWHEEL_SKIP token=%s reason=%s", listing.token_id, exc)
            return None

        try:
            receipt = await asyncio.to_thread(
                self.chain.submit_call, listing.call.to, listing.call.data, listing.call.value_wei
            )
        except TransientError as exc:
            # Raised before broadcast.
            await asyncio.to_thread(self.spend_guard.refund, cost, reservation.utc_day)
            logger.warning(
                "FLYWHEEL_BUY failed token=%s stage=preflight err=%s spend_refunded=True", listing.token_id, exc
            )
            self.health.record_failure("buy_failed", str(exc))
            return None
        except TxFailed as exc:
            if exc.value_not_spent:
                await asyncio.to_thread(self.spend_guard.refund, cost, reservation.utc_day)
            logger.warning(
                "FLYWHEEL_BUY failed token=%s stage=%s err=%s spend_refunded=%s",
                listing.token_id,
                exc.stage,
                exc,
                exc.value_not_spent,
            )
            self.health.record_failure("buy_failed", str(exc))
            if not exc.value_not_spent:
                await self.alerter.error(
                    "Buy outcome unknown",
                    f"Token #{listing.token_id}\n{exc}\n{tx_link(exc.tx_hash)}",
                    dedupe_key=f"buy_timeout:{listing.token_id}",
                )
            return None

        logger.info(
            "FLYWHEEL_BUY ok token=%s cost=%s tx=%s spent_today=%s",
            listing.token_id,
            format_native(cost),
            receipt.tx_hash,
            format_native(self.spend_guard.snapshot().cumulative_spent_wei),
        )
        return receipt.tx_hash

    async def verify_ownership(self, listing: Listing, tx_hash: str) -> bool:
        owner = await asyncio.to_thread(self.chain.owner_of, self.collection, listing.token_id)
        if same_address(owner, self.chain.address):
            self.health.record_buy(listing.token_id, self.cost_of(listing))
            return True

        # Spend stays recorded: the value left the wallet.
        logger.error(
            "FLYWHEEL_VERIFY failed token=%s owner=%s expected=%s tx=%s",
            listing.token_id,
            owner or "none",
            self.chain.address,
            tx_hash,
        )
        self.health.record_failure("ownership_verification", f"token={listing.token_id}")
        await self.alerter.error(
            "Ownership verification failed",
            f"Token #{listing.token_id} not owned after purchase.\nOwner: {owner or 'none'}\n{tx_link(tx_hash)}",
            dedupe_key=f"verify:{listing.token_id}",
        )
        return False

    async def list_position(self, listing: Listing, tx_hash: str) -> OpenPosition:
        cost = self.cost_of(listing)
        ask = apply_bps(cost, config.MARKUP_BPS)
        position = OpenPosition(token_id=listing.token_id, acquisition_cost_wei=cost, listed_price_wei=ask)
        self.positions[listing.token_id] = position
        self.repo.open_position(listing.token_id, cost, ask, buy_tx_hash=tx_hash)
        await self.publish(position)
        return position

    async def publish(self, position: OpenPosition) -> bool:
        decision = await self.rate_limiter.check(
            "listing", config.LISTING_RATE_LIMIT, config.LISTING_RATE_WINDOW_SECONDS
        )
        if not decision.allowed:
            logger.warning(
                "FLYWHEEL_LIST deferred token=%s rate=%s/%s; position kept",
                position.token_id,
                decision.current,
                decision.limit,
            )
            return False

        listed = await self.publisher.publish_listing(position.token_id, position.listed_price_wei)
        if not listed:
            logger.warning("FLYWHEEL_LIST failed token=%s ask=%s; position kept", position.token_id, format_native(position.listed_price_wei))
            self.health.record_failure("listing_failed", f"token={position.token_id}")
            return False

        position.listed = True
        self.repo.mark_position_listed(position.token_id)
        self.health.record_list(position.token_id, position.listed_price_wei)
        logger.info(
            "FLYWHEEL_LIST ok token=%s cost=%s ask=%s",
            position.token_id,
            format_native(position.acquisition_cost_wei),
            format_native(position.listed_price_wei),
        )
        return True

    async def relist_pending(self) -> int:
        """Retry publishing positions whose listing was deferred or failed."""
        published = 0
        for position in list(self.positions.values()):
            if position.listed:
                continue
            if not await self.publish(position):
                break
            published += 1
        return published

    async def sweep_sold(self) -> int:
        """One ownership check per open listed position; covers relists and positions restored at startup."""
        sold = 0
        for position in list(self.positions.values()):
            if not position.listed:
                continue
            try:
                owner = await asyncio.to_thread(self.chain.owner_of, self.collection, position.token_id)
            except TransientError as exc:
                self.health.record_failure("transient", str(exc))
                return sold
            if owner and not same_address(owner, self.chain.address):
                self._close(position, EngineState.SOLD)
                sold += 1
        return sold

    async def watch_sale(self, position: OpenPosition) -> EngineState:
        for attempt in range(1, int(config.SALE_WATCH_MAX_ATTEMPTS) + 1):
            await self._sleep(config.SALE_WATCH_INTERVAL_SECONDS)
            try:
                owner = await asyncio.to_thread(self.chain.owner_of, self.collection, position.token_id)
            except TransientError as exc:
                logger.warning("FLYWHEEL_WATCH read failed token=%s attempt=%s err=%s", position.token_id, attempt, exc)
                self.health.record_failure("transient", str(exc))
                continue
            if owner and not same_address(owner, self.chain.address):
                self._close(position, EngineState.SOLD)
                return EngineState.SOLD

        logger.info(
            "FLYWHEEL_WATCH timed out token=%s attempts=%s; listing stays up",
            position.token_id,
            config.SALE_WATCH_MAX_ATTEMPTS,
        )
        self._close(position, EngineState.TIMED_OUT)
        return EngineState.TIMED_OUT

    def _close(self, position: OpenPosition, outcome: EngineState) -> None:
        position.status = outcome.value
        self.positions.pop(position.token_id, None)
        self.repo.close_position(position.token_id, outcome.value)
        if outcome != EngineState.SOLD:
            return
        self.health.record_sale(position.token_id, position.listed_price_wei)
        logger.info("FLYWHEEL_SOLD token=%s ask=%s", position.token_id, format_native(position.listed_price_wei))
        if self.sale_events is not None:
            self.sale_events.put_nowait(
                SaleEvent(
                    token_id=position.token_id,
                    acquisition_cost_wei=position.acquisition_cost_wei,
                    listed_price_wei=position.listed_price_wei,
                    detected_at=datetime.now(timezone.utc),
                )
            )


async def sale_telemetry_loop(queue: asyncio.Queue, alerter: FlywheelAlerter) -> None:
    """Reports detected sales. Settlement is driven by the treasury balance, never by this queue."""
    while True:
        event: SaleEvent = await queue.get()
        try:
            profit = event.listed_price_wei - event.acquisition_cost_wei
            logger.info(
                "SALE_EVENT token=%s ask=%s gross_profit=%s",
                event.token_id,
                format_native(event.listed_price_wei),
                format_native(profit),
            )
            await alerter.success(
                "NFT sold",
                f"Token #{event.token_id} sold for {format_native(event.listed_price_wei)} {config.NATIVE_SYMBOL}",
            )
        finally:
            queue.task_done()
