"""Magic Eden (Reservoir-compatible) marketplace adapter: floor listings to buy, relists to publish."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import config
from market.listing_source import FulfillmentCall, Listing, ListingPublisher, ListingSource
from trading.errors import TxFailed
from utils.addressing import same_address
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

NATIVE_CURRENCY = "0x0000000000000000000000000000000000000000"


class MagicEdenMarket(ListingSource, ListingPublisher):
    def __init__(self, chain: Any, *, http: ResilientHttpClient | None = None) -> None:
        # `chain` is the trading account's ChainClient: listing steps are sent and signed by it.
        self.chain = chain
        self.collection = config.NFT_COLLECTION_ADDRESS
        self.base_url = f"{config.MAGICEDEN_API_BASE}/{config.MAGICEDEN_CHAIN}"
        self._http = http or ResilientHttpClient(
            timeout_seconds=float(config.MARKET_TIMEOUT_SECONDS),
            headers=self._headers(),
            source_limits={"magiceden": 2},
        )

    @staticmethod
    def _headers() -> dict[str, str]:
        headers = {"accept": "*/*", "Content-Type": "application/json"}
        if config.MAGICEDEN_API_KEY:
            headers["Authorization"] = f"Bearer {config.MAGICEDEN_API_KEY}"
        return headers

    async def close(self) -> None:
        await self._http.close()

    def source_stats(self) -> dict[str, dict[str, int | float]]:
        return self._http.snapshot_stats()

    async def next_listing(self) -> Listing | None:
        result = await self._http.get_json(
            f"{self.base_url}/tokens/v7",
            source="magiceden",
            params={"collection": self.collection, "sortBy": "floorAskPrice", "limit": 10},
        )
        if not result.ok:
            logger.warning("MAGICEDEN tokens fetch failed err=%s", result.error)
            return None

        floor = self._pick_floor((result.data or {}).get("tokens") or [])
        if floor is None:
            logger.info("MAGICEDEN no buyable listings")
            return None
        token_id, price_wei = floor

        execute = await self._http.post_json(
            f"{self.base_url}/execute/buy/v7",
            {
                "items": [{"token": f"{self.collection}:{token_id}", "quantity": 1}],
                "taker": self.chain.address,
                "onlyPath": False,
                "skipBalanceCheck": True,
            },
            source="magiceden",
        )
        if not execute.ok:
            logger.warning("MAGICEDEN buy execution fetch failed token=%s err=%s", token_id, execute.error)
            return None

        tx_data = self._find_tx_data((execute.data or {}).get("steps") or [])
        if tx_data is None:
            logger.warning("MAGICEDEN no transaction step token=%s", token_id)
            return None
        value_wei = _to_int(tx_data.get("value"), default=price_wei)
        return Listing(
            token_id=token_id,
            price_wei=price_wei,
            call=FulfillmentCall(to=str(tx_data["to"]), data=str(tx_data["data"]), value_wei=value_wei),
            source="magiceden",
        )

    def _pick_floor(self, tokens: list[dict[str, Any]]) -> tuple[str, int] | None:
        for row in tokens:
            floor_ask = ((row or {}).get("market") or {}).get("floorAsk") or {}
            raw = (((floor_ask.get("price") or {}).get("amount")) or {}).get("raw")
            token_id = str(((row or {}).get("token") or {}).get("tokenId") or "")
            if not token_id or raw is None:
                continue
            # Our own relists show up at the floor too.
            if same_address(floor_ask.get("maker"), self.chain.address):
                continue
            price_wei = _to_int(raw)
            if price_wei > 0:
                return token_id, price_wei
        return None

    @staticmethod
    def _find_tx_data(steps: list[dict[str, Any]]) -> dict[str, Any] | None:
        for step in steps:
            for item in (step or {}).get("items") or []:
                data = (item or {}).get("data") or {}
                if data.get("to") and data.get("data"):
                    return data
        return None

    async def publish_listing(self, token_id: str, price_wei: int) -> bool:
        result = await self._http.post_json(
            f"{self.base_url}/execute/list/v5",
            {
                "maker": self.chain.address,
                "source": "reservoir.tools",
                "params": [
                    {
                        "token": f"{self.collection}:{token_id}",
                        "weiPrice": str(int(price_wei)),
                        "orderKind": "seaport-v1.5",
                        "orderbook": "reservoir",
                        "automatedRoyalties": True,
                        "currency": NATIVE_CURRENCY,
                        "expirationTime": int(time.time()) + int(config.MAGICEDEN_LISTING_EXPIRY_SECONDS),
                    }
                ],
            },
            source="magiceden",
        )
        if not result.ok:
            logger.warning("MAGICEDEN list request failed token=%s err=%s", token_id, result.error)
            return False

        steps = (result.data or {}).get("steps") or []
        if not steps:
            logger.warning("MAGICEDEN list returned no steps token=%s", token_id)
            return False

        try:
            for step in steps:
                for item in (step or {}).get("items") or []:
                    if not await self._run_list_item(token_id, step, (item or {}).get("data") or {}):
                        return False
        except TxFailed as exc:
            logger.warning("MAGICEDEN list step tx failed token=%s err=%s", token_id, exc)
            return False
        return True

    async def _run_list_item(self, token_id: str, step: dict[str, Any], data: dict[str, Any]) -> bool:
        if data.get("to") and data.get("data"):
            # Usually the one-time collection approval for the marketplace conduit.
            receipt = await asyncio.to_thread(
                self.chain.submit_call, str(data["to"]), str(data["data"]), _to_int(data.get("value"))
            )
            logger.info("MAGICEDEN step=%s token=%s tx=%s", step.get("id", "tx"), token_id, receipt.tx_hash)

        sign = data.get("sign")
        if not sign:
            return True
        signature = await asyncio.to_thread(
            self.chain.sign_typed_data, sign.get("domain") or {}, sign.get("types") or {}, sign.get("value") or {}
        )
        post = data.get("post") or {}
        endpoint = str(post.get("endpoint") or "")
        if not endpoint:
            return True
        url = endpoint if endpoint.startswith("http") else f"{self.base_url}{endpoint}"
        body = dict(post.get("body") or {})
        body["signature"] = signature
        posted = await self._http.post_json(url, body, source="magiceden", max_attempts=1)
        if not posted.ok:
            logger.warning("MAGICEDEN order post failed token=%s err=%s", token_id, posted.error)
            return False
        return True


def _to_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return int(default)
    try:
        if isinstance(value, str) and value.startswith("0x"):
            return int(value, 16)
        return int(value)
    except (TypeError, ValueError):
        return int(default)
