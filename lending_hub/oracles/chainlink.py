"""Chainlink on-chain price feeds, the primary price source."""
from __future__ import annotations

import asyncio
import logging
import time

from ..config import ChainlinkConfig
from ..interfaces.chain import ChainClient

logger = logging.getLogger(__name__)

# Feeds that have not updated within this window are ignored.
DEFAULT_MAX_AGE_SECONDS = 24 * 60 * 60


class ChainlinkOracle:
    """Read ``latestRoundData`` from configured aggregator contracts."""

    def __init__(
        self,
        chain_client: ChainClient,
        config: ChainlinkConfig,
        max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
    ) -> None:
        self._client = chain_client
        self.feeds = dict(config.feeds)
        self.max_age_seconds = max_age_seconds
        self._decimals: dict[str, int] = {}

    async def _read_feed(self, symbol: str, feed: str) -> float | None:
        try:
            if feed not in self._decimals:
                (decimals,) = await self._client.call_function(
                    feed, "decimals()", (), ("uint8",)
                )
                self._decimals[feed] = decimals
            _, answer, _, updated_at, _ = await self._client.call_function(
                feed,
                "latestRoundData()",
                (),
                ("uint80", "int256", "uint256", "uint256", "uint80"),
            )
        except Exception as e:
            logger.error("Chainlink feed %s (%s) failed: %s", symbol, feed, e)
            return None

        if answer <= 0:
            logger.warning("Chainlink feed %s returned non-positive answer", symbol)
            return None
        if time.time() - updated_at > self.max_age_seconds:
            logger.warning("Chainlink feed %s is stale (updated %s)", symbol, updated_at)
            return None
        return answer / 10 ** self._decimals[feed]

    async def fetch_prices(self, symbols: list[str] | None = None) -> dict[str, float]:
        feeds = self.feeds
        if symbols is not None:
            wanted = {s.upper() for s in symbols}
            feeds = {k: v for k, v in self.feeds.items() if k.upper() in wanted}

        names = list(feeds)
        results = await asyncio.gather(*(self._read_feed(n, feeds[n]) for n in names))
        return {name: price for name, price in zip(names, results) if price is not None}
