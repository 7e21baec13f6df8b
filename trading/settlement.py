"""Treasury swap-and-burn settlement.

A run walks a fixed sequence of steps; each one starts only after the
previous transaction confirmed. The last completed step is persisted as the
run's high-water mark so an aborted run can be inspected after a restart.
There is no rollback: a failure stops the pipeline where it is.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import config
import database.db as db_store
from monitor.alerter import FlywheelAlerter, tx_link
from monitor.health import HealthRecorder
from trading.chain_client import format_native, native_to_wei
from trading.errors import EconomicError, SlippageExceeded, error_kind

logger = logging.getLogger(__name__)


class SettlementStep(str, Enum):
    READ_BALANCE = "READ_BALANCE"
    PARTITION = "PARTITION"
    QUOTE = "QUOTE"
    WRAP = "WRAP"
    APPROVE = "APPROVE"
    SWAP = "SWAP"
    VERIFY_REWARD = "VERIFY_REWARD"
    BURN = "BURN"
    TOP_UP = "TOP_UP"
    RECORD = "RECORD"


class SettlementStatus(str, Enum):
    SKIPPED = "SKIPPED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    DEGRADED = "DEGRADED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class SettlementResult:
    native_received_wei: int
    native_swapped_wei: int
    native_reserved_for_gas_wei: int
    gas_top_up_wei: int
    reward_token_burned_wei: int
    settlement_tx_id: str
    status: SettlementStatus
    last_completed_step: SettlementStep | None
    error: str = ""
    tx_hashes: dict[str, str] = field(default_factory=dict)


def partition(balance_wei: int, reserve_wei: int, swap_share_bps: int = 9_900) -> tuple[int, int]:
    """Split the balance above the gas reserve into (swap amount, trading gas top-up)."""
    rest = max(0, int(balance_wei) - int(reserve_wei))
    swap = rest * int(swap_share_bps) // 10_000
    return swap, rest - swap


def min_out_for(quoted_wei: int, slippage_bps: int) -> int:
    return int(quoted_wei) * (10_000 - int(slippage_bps)) // 10_000


class _Run:
    """Mutable bookkeeping for one in-flight settlement."""

    def __init__(self, run_id: int | None) -> None:
        self.run_id = run_id
        self.last_step: SettlementStep | None = None
        self.received = 0
        self.swapped = 0
        self.reserved = 0
        self.top_up = 0
        self.burned = 0
        self.tx_hashes: dict[str, str] = {}

    def result(self, status: SettlementStatus, error: str = "") -> SettlementResult:
        return SettlementResult(
            native_received_wei=self.received,
            native_swapped_wei=self.swapped,
            native_reserved_for_gas_wei=self.reserved,
            gas_top_up_wei=self.top_up,
            reward_token_burned_wei=self.burned,
            settlement_tx_id=self.tx_hashes.get("BURN") or self.tx_hashes.get("SWAP", ""),
            status=status,
            last_completed_step=self.last_step,
            error=error,
            tx_hashes=dict(self.tx_hashes),
        )


class TreasurySettlementEngine:
    def __init__(
        self,
        chain: Any,
        health: HealthRecorder,
        alerter: FlywheelAlerter,
        *,
        repo: Any = None,
        trading_address: str | None = None,
    ) -> None:
        self.chain = chain
        self.health = health
        self.alerter = alerter
        self.repo = repo if repo is not None else db_store
        self.trading_address = trading_address if trading_address is not None else config.TRADING_WALLET_ADDRESS
        self.reserve_wei = native_to_wei(config.SETTLEMENT_GAS_RESERVE_NATIVE)
        self.min_balance_wei = self.reserve_wei + native_to_wei(config.SETTLEMENT_MIN_SWAP_NATIVE)
        self.path = [config.WRAPPED_NATIVE_ADDRESS, config.REWARD_TOKEN_ADDRESS]

    def report_unfinished_runs(self) -> list[Any]:
        """Reports runs a previous process left IN_PROGRESS and closes them as FAILED.

        Must be called while holding the settlement lock. Steps are not re-run.
        """
        runs = self.repo.list_unfinished_settlement_runs()
        for run in runs:
            last_step = run.last_completed_step or "none"
            logger.warning(
                "SETTLEMENT_INTERRUPTED run=%s last_step=%s started=%s",
                run.id,
                last_step,
                run.started_at,
            )
            self.repo.update_settlement_run(
                run.id, status=SettlementStatus.FAILED.value, error=f"interrupted last_step={last_step}"
            )
            self.health.record_failure("settlement_interrupted", f"run={run.id} last_step={last_step}")
        return runs

    def _advance(self, run: _Run, step: SettlementStep, **fields: Any) -> None:
        run.last_step = step
        logger.info("SETTLEMENT step=%s run=%s", step.value, run.run_id)
        if run.run_id is not None:
            self.repo.update_settlement_run(run.run_id, last_completed_step=step.value, **fields)

    async def _call(self, fn, *args):
        return await asyncio.to_thread(fn, *args)

    async def settle(self) -> SettlementResult:
        balance = await self._call(self.chain.native_balance_wei)
        if balance < self.min_balance_wei:
            logger.debug(
                "SETTLEMENT skipped balance=%s min=%s", format_native(balance), format_native(self.min_balance_wei)
            )
            run = _Run(None)
            run.received = balance
            run.last_step = SettlementStep.READ_BALANCE
            return run.result(SettlementStatus.SKIPPED)

        run = _Run(self.repo.create_settlement_run())
        run.received = balance
        self._advance(run, SettlementStep.READ_BALANCE, native_received_wei=balance)
        try:
            return await self._pipeline(run)
        except Exception as exc:
            return await self._fail(run, exc)

    async def _pipeline(self, run: _Run) -> SettlementResult:
        swap_wei, top_up_wei = partition(run.received, self.reserve_wei, config.SETTLEMENT_SWAP_SHARE_BPS)
        run.swapped, run.top_up, run.reserved = swap_wei, top_up_wei, self.reserve_wei
        self._advance(
            run,
            SettlementStep.PARTITION,
            native_swapped_wei=swap_wei,
            gas_top_up_wei=top_up_wei,
            native_reserved_for_gas_wei=self.reserve_wei,
        )

        router = config.DEX_ROUTER_ADDRESS
        quoted = await self._call(self.chain.quote_amount_out, router, swap_wei, self.path)
        if quoted <= 0:
            raise EconomicError(f"quote_unavailable amount_in={swap_wei}")
        min_out = min_out_for(quoted, config.SWAP_SLIPPAGE_BPS)
        logger.info("SETTLEMENT quote in=%s out=%s min_out=%s", format_native(swap_wei), quoted, min_out)
        self._advance(run, SettlementStep.QUOTE)

        if config.SWAP_WRAP_NATIVE:
            receipt = await self._call(self.chain.wrap_native, config.WRAPPED_NATIVE_ADDRESS, swap_wei)
            run.tx_hashes["WRAP"] = receipt.tx_hash
            self._advance(run, SettlementStep.WRAP, tx_hashes=dict(run.tx_hashes))
            receipt = await self._call(self.chain.ensure_allowance, config.WRAPPED_NATIVE_ADDRESS, router, swap_wei)
            if receipt is not None:
                run.tx_hashes["APPROVE"] = receipt.tx_hash
            self._advance(run, SettlementStep.APPROVE, tx_hashes=dict(run.tx_hashes))

        fresh = await self._call(self.chain.quote_amount_out, router, swap_wei, self.path)
        if fresh < min_out:
            raise SlippageExceeded(f"slippage_guard fresh_quote={fresh} min_out={min_out}")
        if config.SWAP_WRAP_NATIVE:
            receipt = await self._call(
                self.chain.swap_exact_tokens_for_tokens, router, swap_wei, min_out, self.path, self.chain.address
            )
        else:
            receipt = await self._call(
                self.chain.swap_exact_native_for_tokens, router, swap_wei, min_out, self.path, self.chain.address
            )
        run.tx_hashes["SWAP"] = receipt.tx_hash
        self._advance(run, SettlementStep.SWAP, tx_hashes=dict(run.tx_hashes), settlement_tx_id=receipt.tx_hash)

        reward = await self._call(self.chain.token_balance_wei, config.REWARD_TOKEN_ADDRESS)
        self._advance(run, SettlementStep.VERIFY_REWARD)
        if reward <= 0:
            logger.error("SETTLEMENT reward balance is zero after swap; burn aborted run=%s", run.run_id)
            self.health.record_failure("zero_reward_balance")
            self._finish(run, SettlementStatus.DEGRADED, error="zero_reward_balance")
            await self.alerter.error(
                "Settlement degraded",
                f"Swap confirmed but reward balance is zero; nothing burned.\n{tx_link(run.tx_hashes['SWAP'])}",
                dedupe_key="settlement:zero_reward",
            )
            return run.result(SettlementStatus.DEGRADED, error="zero_reward_balance")

        receipt = await self._call(self.chain.transfer_token, config.REWARD_TOKEN_ADDRESS, config.BURN_ADDRESS, reward)
        run.burned = reward
        run.tx_hashes["BURN"] = receipt.tx_hash
        self._advance(
            run,
            SettlementStep.BURN,
            reward_token_burned_wei=reward,
            tx_hashes=dict(run.tx_hashes),
            settlement_tx_id=receipt.tx_hash,
        )

        if top_up_wei > 0 and self.trading_address:
            receipt = await self._call(self.chain.send_native, self.trading_address, top_up_wei)
            run.tx_hashes["TOP_UP"] = receipt.tx_hash
            self._advance(run, SettlementStep.TOP_UP, tx_hashes=dict(run.tx_hashes))

        self._finish(run, SettlementStatus.COMPLETED)
        self.health.record_burn(reward)
        logger.info(
            "SETTLEMENT completed run=%s swapped=%s burned=%s top_up=%s tx=%s",
            run.run_id,
            format_native(swap_wei),
            reward,
            format_native(top_up_wei),
            run.tx_hashes["BURN"],
        )
        await self.alerter.success(
            "Burn completed",
            f"Swapped {format_native(swap_wei)} {config.NATIVE_SYMBOL}\n"
            f"Burned {format_native(reward)} {config.REWARD_TOKEN_SYMBOL}\n"
            f"{tx_link(run.tx_hashes['BURN'])}",
        )
        return run.result(SettlementStatus.COMPLETED)

    def _finish(self, run: _Run, status: SettlementStatus, error: str = "") -> None:
        run.last_step = SettlementStep.RECORD if status == SettlementStatus.COMPLETED else run.last_step
        if run.run_id is None:
            return
        fields: dict[str, Any] = {"status": status.value, "tx_hashes": dict(run.tx_hashes)}
        if run.last_step is not None:
            fields["last_completed_step"] = run.last_step.value
        if error:
            fields["error"] = error[:500]
        self.repo.update_settlement_run(run.run_id, **fields)

    async def _fail(self, run: _Run, exc: Exception) -> SettlementResult:
        kind = error_kind(exc)
        logger.error(
            "SETTLEMENT failed run=%s last_step=%s kind=%s err=%s",
            run.run_id,
            run.last_step.value if run.last_step else "none",
            kind,
            exc,
            exc_info=kind == "unexpected",
        )
        self.health.record_failure("swap_failed", f"{kind}: {exc}")
        error = f"{type(exc).__name__}: {exc}"
        self._finish(run, SettlementStatus.FAILED, error=error)
        await self.alerter.error(
            "Settlement failed",
            f"Stopped after {run.last_step.value if run.last_step else 'start'}.\n{error}",
            dedupe_key=f"settlement:{type(exc).__name__}",
        )
        return run.result(SettlementStatus.FAILED, error=error)
