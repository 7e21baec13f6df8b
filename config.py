"""Application configuration."""

import os
from pathlib import Path

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


BOT_INSTANCE_ID = os.getenv("BOT_INSTANCE_ID", "flywheel").strip() or "flywheel"
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///flywheel.db")

# Chain
RPC_URL = os.getenv("RPC_URL", "").strip()
CHAIN_ID = int(os.getenv("CHAIN_ID", "33139"))
RPC_TIMEOUT_SECONDS = max(1, int(os.getenv("RPC_TIMEOUT_SECONDS", "20")))
RPC_READ_RETRIES = max(1, int(os.getenv("RPC_READ_RETRIES", "3")))
RPC_READ_RETRY_DELAY_SECONDS = max(0.0, float(os.getenv("RPC_READ_RETRY_DELAY_SECONDS", "1.0")))
TX_CONFIRM_TIMEOUT_SECONDS = max(30, int(os.getenv("TX_CONFIRM_TIMEOUT_SECONDS", "180")))
EXPLORER_TX_URL_TEMPLATE = os.getenv("EXPLORER_TX_URL_TEMPLATE", "https://apescan.io/tx/{tx_hash}")
NATIVE_SYMBOL = os.getenv("NATIVE_SYMBOL", "APE").strip() or "APE"
REWARD_TOKEN_SYMBOL = os.getenv("REWARD_TOKEN_SYMBOL", "MNESTR").strip() or "MNESTR"

# Accounts. Trading wallet buys and relists, treasury receives sale proceeds and burns.
TRADING_WALLET_ADDRESS = os.getenv("TRADING_WALLET_ADDRESS", "").strip()
TRADING_PRIVATE_KEY = os.getenv("TRADING_PRIVATE_KEY", "").strip()
TREASURY_WALLET_ADDRESS = os.getenv("TREASURY_WALLET_ADDRESS", "").strip()
TREASURY_PRIVATE_KEY = os.getenv("TREASURY_PRIVATE_KEY", "").strip()

# Contracts
NFT_COLLECTION_ADDRESS = os.getenv("NFT_COLLECTION_ADDRESS", "").strip()
REWARD_TOKEN_ADDRESS = os.getenv("REWARD_TOKEN_ADDRESS", "").strip()
WRAPPED_NATIVE_ADDRESS = os.getenv("WRAPPED_NATIVE_ADDRESS", "").strip()
DEX_ROUTER_ADDRESS = os.getenv("DEX_ROUTER_ADDRESS", "").strip()
BURN_ADDRESS = os.getenv("BURN_ADDRESS", "0x000000000000000000000000000000000000dEaD").strip()

# Fee policy. Every transaction sent by the bot is capped by these.
MAX_FEE_GWEI = float(os.getenv("MAX_FEE_GWEI", "50.0"))
MAX_PRIORITY_FEE_GWEI = float(os.getenv("MAX_PRIORITY_FEE_GWEI", "2.0"))
MAX_TX_GAS = max(21_000, int(os.getenv("MAX_TX_GAS", "600000")))
GAS_LIMIT_MULTIPLIER = max(1.0, float(os.getenv("GAS_LIMIT_MULTIPLIER", "1.15")))

# Acquisition / relisting policy
MARKUP_BPS = max(0, int(os.getenv("MARKUP_BPS", "2000")))
BUY_BUFFER_BPS = max(0, int(os.getenv("BUY_BUFFER_BPS", "100")))
DAILY_SPEND_CAP_NATIVE = max(0.0, float(os.getenv("DAILY_SPEND_CAP_NATIVE", "250")))
SPEND_STATE_FILE = os.getenv("SPEND_STATE_FILE", os.path.join("data", "spend_counter.json"))
EMERGENCY_STOP = _env_bool("EMERGENCY_STOP")

# Loop timing (seconds)
LOOP_IDLE_SECONDS = max(1.0, float(os.getenv("LOOP_IDLE_SECONDS", "10")))
LOOP_CAP_BACKOFF_SECONDS = max(1.0, float(os.getenv("LOOP_CAP_BACKOFF_SECONDS", "60")))
LOOP_FUNDS_BACKOFF_SECONDS = max(1.0, float(os.getenv("LOOP_FUNDS_BACKOFF_SECONDS", "30")))
LOOP_RATE_LIMIT_BACKOFF_SECONDS = max(1.0, float(os.getenv("LOOP_RATE_LIMIT_BACKOFF_SECONDS", "30")))
LOOP_BUY_FAILURE_BACKOFF_SECONDS = max(1.0, float(os.getenv("LOOP_BUY_FAILURE_BACKOFF_SECONDS", "10")))
LOOP_ERROR_BACKOFF_SECONDS = max(1.0, float(os.getenv("LOOP_ERROR_BACKOFF_SECONDS", "15")))
LOOP_CYCLE_DELAY_SECONDS = max(0.0, float(os.getenv("LOOP_CYCLE_DELAY_SECONDS", "60")))
EMERGENCY_STOP_POLL_SECONDS = max(1.0, float(os.getenv("EMERGENCY_STOP_POLL_SECONDS", "10")))
SALE_WATCH_INTERVAL_SECONDS = max(1.0, float(os.getenv("SALE_WATCH_INTERVAL_SECONDS", "30")))
SALE_WATCH_MAX_ATTEMPTS = max(1, int(os.getenv("SALE_WATCH_MAX_ATTEMPTS", "20")))

# Rate limits (count per window seconds) enforced through the shared store.
PURCHASE_RATE_LIMIT = max(1, int(os.getenv("PURCHASE_RATE_LIMIT", "1")))
PURCHASE_RATE_WINDOW_SECONDS = max(1, int(os.getenv("PURCHASE_RATE_WINDOW_SECONDS", "60")))
LISTING_RATE_LIMIT = max(1, int(os.getenv("LISTING_RATE_LIMIT", "10")))
LISTING_RATE_WINDOW_SECONDS = max(1, int(os.getenv("LISTING_RATE_WINDOW_SECONDS", "3600")))

# Treasury settlement
TREASURY_POLL_INTERVAL_SECONDS = max(5.0, float(os.getenv("TREASURY_POLL_INTERVAL_SECONDS", "30")))
SETTLEMENT_GAS_RESERVE_NATIVE = max(0.0, float(os.getenv("SETTLEMENT_GAS_RESERVE_NATIVE", "0.5")))
SETTLEMENT_MIN_SWAP_NATIVE = max(0.0, float(os.getenv("SETTLEMENT_MIN_SWAP_NATIVE", "0.5")))
SETTLEMENT_SWAP_SHARE_BPS = max(0, min(10_000, int(os.getenv("SETTLEMENT_SWAP_SHARE_BPS", "9900"))))
SWAP_SLIPPAGE_BPS = max(1, min(9_999, int(os.getenv("SWAP_SLIPPAGE_BPS", "1000"))))
SWAP_DEADLINE_SECONDS = max(30, int(os.getenv("SWAP_DEADLINE_SECONDS", "300")))
SWAP_WRAP_NATIVE = _env_bool("SWAP_WRAP_NATIVE", "true")
SETTLEMENT_LOCK_KEY = os.getenv("SETTLEMENT_LOCK_KEY", "treasury-burn").strip() or "treasury-burn"
SETTLEMENT_LOCK_TTL_SECONDS = max(30, int(os.getenv("SETTLEMENT_LOCK_TTL_SECONDS", "600")))

# Shared lock store: "redis", "memory" or "none" (fail-open, no protection).
LOCK_STORE = os.getenv("LOCK_STORE", "redis").strip().lower()
REDIS_URL = os.getenv("REDIS_URL", "").strip()
LOCK_KEY_PREFIX = os.getenv("LOCK_KEY_PREFIX", "flywheel").strip()

# Marketplace
MAGICEDEN_API_BASE = os.getenv("MAGICEDEN_API_BASE", "https://api-mainnet.magiceden.dev/v3/rtp").rstrip("/")
MAGICEDEN_CHAIN = os.getenv("MAGICEDEN_CHAIN", "apechain").strip()
MAGICEDEN_API_KEY = os.getenv("MAGICEDEN_API_KEY", "").strip()
MAGICEDEN_LISTING_EXPIRY_SECONDS = max(3600, int(os.getenv("MAGICEDEN_LISTING_EXPIRY_SECONDS", str(7 * 24 * 3600))))
MARKET_TIMEOUT_SECONDS = max(1, int(os.getenv("MARKET_TIMEOUT_SECONDS", "15")))
HTTP_RETRY_ATTEMPTS = max(1, int(os.getenv("HTTP_RETRY_ATTEMPTS", "3")))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_BASE_SECONDS", "0.50")))
HTTP_BACKOFF_MAX_SECONDS = max(0.10, float(os.getenv("HTTP_BACKOFF_MAX_SECONDS", "8.00")))
HTTP_JITTER_SECONDS = max(0.0, float(os.getenv("HTTP_JITTER_SECONDS", "0.25")))
HTTP_429_COOLDOWN_SECONDS = max(0.0, float(os.getenv("HTTP_429_COOLDOWN_SECONDS", "30")))

# Notifications
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "").strip()
TELEGRAM_ALERT_CHAT_ID = os.getenv("TELEGRAM_ALERT_CHAT_ID", "").strip()
ALERT_DEDUPE_WINDOW_SECONDS = max(0, int(os.getenv("ALERT_DEDUPE_WINDOW_SECONDS", "600")))
ALERT_DEDUPE_MAX_KEYS = max(10, int(os.getenv("ALERT_DEDUPE_MAX_KEYS", "100")))
DAILY_SUMMARY_UTC_HOUR = max(0, min(23, int(os.getenv("DAILY_SUMMARY_UTC_HOUR", "0"))))

# Health endpoint
HEALTH_HOST = os.getenv("HEALTH_HOST", "0.0.0.0")
HEALTH_PORT = int(os.getenv("HEALTH_PORT", "8080"))
HEALTH_PATH = os.getenv("HEALTH_PATH", "/health")
ANOMALY_IDLE_HOURS = max(1.0, float(os.getenv("ANOMALY_IDLE_HOURS", "6")))
ANOMALY_BURN_STALL_HOURS = max(0.5, float(os.getenv("ANOMALY_BURN_STALL_HOURS", "2")))
MARKET_HOURS_UTC_START = max(0, min(23, int(os.getenv("MARKET_HOURS_UTC_START", "10"))))
MARKET_HOURS_UTC_END = max(0, min(23, int(os.getenv("MARKET_HOURS_UTC_END", "22"))))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.getenv("APP_LOG_FILE", os.path.join(LOG_DIR, "flywheel.log"))
