"""Marketplace-facing types: listings to buy and the interfaces that supply and publish them."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FulfillmentCall:
    to: str
    data: str
    value_wei: int


@dataclass(frozen=True)
class Listing:
    token_id: str
    price_wei: int
    call: FulfillmentCall
    source: str = ""


class ListingSource:
    async def next_listing(self) -> Listing | None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class ListingPublisher:
    async def publish_listing(self, token_id: str, price_wei: int) -> bool:
        raise NotImplementedError


class QueueListingSource(ListingSource):
    """Operator-fed listings, drained in FIFO order."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Listing] = asyncio.Queue()

    def add(self, listing: Listing) -> None:
        self._queue.put_nowait(listing)
        logger.info("LISTING_QUEUED token=%s price_wei=%s", listing.token_id, listing.price_wei)

    async def next_listing(self) -> Listing | None:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def pending(self) -> int:
        return self._queue.qsize()
