"""Operator notifications over Telegram."""

import logging
import time
from collections import OrderedDict
from html import escape
from typing import Any, Callable

import config
from telegram import Bot

logger = logging.getLogger(__name__)

LEVEL_ICONS = {
    "success": "✅",
    "info": "ℹ️",
    "warning": "⚠️",
    "error": "❌",
}


class FlywheelAlerter:
    """Sends success/info/warning/error messages to the alert chat.

    Error messages with the same key are sent at most once per dedupe window;
    the key table is bounded and evicts oldest first.
    """

    def __init__(
        self,
        bot: Any = None,
        chat_id: str | int | None = None,
        *,
        dedupe_window_seconds: int | None = None,
        dedupe_max_keys: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if bot is None and config.TELEGRAM_BOT_TOKEN:
            bot = Bot(token=config.TELEGRAM_BOT_TOKEN)
        self.bot = bot
        self.chat_id = chat_id if chat_id is not None else config.TELEGRAM_ALERT_CHAT_ID
        self.dedupe_window_seconds = (
            config.ALERT_DEDUPE_WINDOW_SECONDS if dedupe_window_seconds is None else int(dedupe_window_seconds)
        )
        self.dedupe_max_keys = config.ALERT_DEDUPE_MAX_KEYS if dedupe_max_keys is None else int(dedupe_max_keys)
        self._clock = clock
        self._recent_errors: OrderedDict[str, float] = OrderedDict()
        self.sent = 0
        self.suppressed = 0

    @property
    def enabled(self) -> bool:
        return bool(self.bot is not None and self.chat_id)

    async def success(self, title: str, body: str = "") -> bool:
        return await self._send("success", title, body)

    async def info(self, title: str, body: str = "") -> bool:
        return await self._send("info", title, body)

    async def warning(self, title: str, body: str = "") -> bool:
        return await self._send("warning", title, body)

    async def error(self, title: str, body: str = "", *, dedupe_key: str | None = None) -> bool:
        key = dedupe_key or title
        if self._is_duplicate(key):
            self.suppressed += 1
            logger.info("ALERT suppressed duplicate key=%s", key)
            return False
        return await self._send("error", title, body)

    def _is_duplicate(self, key: str) -> bool:
        now = self._clock()
        while self._recent_errors:
            oldest_key, oldest_at = next(iter(self._recent_errors.items()))
            if now - oldest_at < self.dedupe_window_seconds:
                break
            self._recent_errors.pop(oldest_key)

        if key in self._recent_errors:
            return True
        self._recent_errors[key] = now
        while len(self._recent_errors) > self.dedupe_max_keys:
            self._recent_errors.popitem(last=False)
        return False

    @staticmethod
    def format_message(level: str, title: str, body: str = "") -> str:
        icon = LEVEL_ICONS.get(level, "")
        text = f"{icon} <b>{escape(title)}</b>"
        if body:
            text += f"\n{escape(body)}"
        return text

    async def _send(self, level: str, title: str, body: str) -> bool:
        log = logger.warning if level in ("warning", "error") else logger.info
        log("ALERT level=%s title=%s body=%s", level, title, body.replace("\n", " | "))
        if not self.enabled:
            return False
        try:
            await self.bot.send_message(
                chat_id=self.chat_id,
                text=self.format_message(level, title, body),
                parse_mode="HTML",
                disable_web_page_preview=True,
            )
        except Exception as exc:
            logger.warning("Alert send failed chat_id=%s: %s", self.chat_id, exc)
            return False
        self.sent += 1
        return True


def tx_link(tx_hash: str) -> str:
    if not tx_hash:
        return ""
    return config.EXPLORER_TX_URL_TEMPLATE.format(tx_hash=tx_hash)
