"""Entry point for the NFT flywheel bot."""

import asyncio
import logging
import os
from logging.handlers import RotatingFileHandler

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from database.db import get_settlement_stats, init_db
from market.magiceden import MagicEdenMarket
from monitor.alerter import FlywheelAlerter
from monitor.daily_summary import DailySummaryJob
from monitor.health import HealthRecorder
from monitor.health_server import HealthServer
from trading.chain_client import ChainClient, format_native, native_to_wei
from trading.flywheel import FlywheelEngine, sale_telemetry_loop
from trading.locks import LockManager, RateLimiter, build_lock_store
from trading.settlement import TreasurySettlementEngine
from trading.spend_guard import DailySpendGuard
from trading.treasury_poller import TreasuryPoller


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # Avoid leaking bot token in verbose transport logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.INFO)
    logging.getLogger("web3").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


def _require(*names: str) -> None:
    missing = [name for name in names if not str(getattr(config, name, "") or "").strip()]
    if missing:
        raise RuntimeError(f"Missing required settings: {', '.join(missing)}")


async def run() -> None:
    _require(
        "RPC_URL",
        "TRADING_WALLET_ADDRESS",
        "TRADING_PRIVATE_KEY",
        "TREASURY_WALLET_ADDRESS",
        "TREASURY_PRIVATE_KEY",
        "NFT_COLLECTION_ADDRESS",
        "REWARD_TOKEN_ADDRESS",
        "WRAPPED_NATIVE_ADDRESS",
        "DEX_ROUTER_ADDRESS",
    )

    health = HealthRecorder()
    alerter = FlywheelAlerter()
    if not alerter.enabled:
        logger.warning("Telegram alerts disabled: TELEGRAM_BOT_TOKEN or TELEGRAM_ALERT_CHAT_ID is empty")

    store = build_lock_store()
    locks = LockManager(store, prefix=config.LOCK_KEY_PREFIX, health=health)
    rate_limiter = RateLimiter(store, prefix=config.LOCK_KEY_PREFIX, health=health)
    health.lock_state["store"] = store.name
    health.lock_state["degraded"] = locks.degraded

    trading_chain = ChainClient(config.TRADING_PRIVATE_KEY, config.TRADING_WALLET_ADDRESS, label="trading")
    treasury_chain = ChainClient(config.TREASURY_PRIVATE_KEY, config.TREASURY_WALLET_ADDRESS, label="treasury")

    spend_guard = DailySpendGuard(native_to_wei(config.DAILY_SPEND_CAP_NATIVE), state_file=config.SPEND_STATE_FILE)
    market = MagicEdenMarket(trading_chain)
    sale_events: asyncio.Queue = asyncio.Queue()

    flywheel = FlywheelEngine(
        trading_chain,
        market,
        market,
        spend_guard,
        rate_limiter,
        health,
        alerter,
        sale_events=sale_events,
    )
    flywheel.load_open_positions()
    settlement = TreasurySettlementEngine(
        treasury_chain, health, alerter, trading_address=trading_chain.address
    )
    poller = TreasuryPoller(settlement, locks, health)

    async def refresh_balances() -> None:
        trading_bal, treasury_bal, reward_bal = await asyncio.gather(
            asyncio.to_thread(trading_chain.native_balance_wei),
            asyncio.to_thread(treasury_chain.native_balance_wei),
            asyncio.to_thread(treasury_chain.token_balance_wei, config.REWARD_TOKEN_ADDRESS),
        )
        health.set_balances(
            trading_native=format_native(trading_bal),
            treasury_native=format_native(treasury_bal),
            treasury_reward=format_native(reward_bal),
        )
        health.set_source_stats(market.source_stats())
        health.lock_state[config.SETTLEMENT_LOCK_KEY + ":exists"] = await locks.held(config.SETTLEMENT_LOCK_KEY)

    summary = DailySummaryJob(
        health, alerter, spend_guard=spend_guard, refresh=refresh_balances, settlement_stats=get_settlement_stats
    )
    server = HealthServer(health, refresh=refresh_balances)
    await server.start()

    await alerter.info(
        "Flywheel started",
        f"Trading: {trading_chain.address}\nTreasury: {treasury_chain.address}\nLock store: {store.name}",
    )
    tasks = [
        asyncio.create_task(flywheel.run_forever(), name="flywheel"),
        asyncio.create_task(poller.run_forever(), name="treasury_poller"),
        asyncio.create_task(summary.run_forever(), name="daily_summary"),
        asyncio.create_task(sale_telemetry_loop(sale_events, alerter), name="sale_telemetry"),
    ]
    try:
        await asyncio.gather(*tasks)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await server.stop()
        await market.close()
        await store.close()


def main() -> None:
    configure_logging()
    init_db()
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Shutdown requested")


if __name__ == "__main__":
    main()
