"""Secondary price source: Pyth Network prices from the Hermes REST API."""
import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ..config import PythConfig

logger = logging.getLogger(__name__)


def _normalize_feed_id(feed_id: str) -> str:
    return feed_id.lower().removeprefix("0x")


def parse_hermes_prices(
    parsed: list[dict[str, Any]], feeds: dict[str, str]
) -> dict[str, float]:
    """Map Hermes ``parsed`` entries back to symbols: price = raw * 10^expo."""
    id_to_symbols: dict[str, list[str]] = {}
    for symbol, feed_id in feeds.items():
        id_to_symbols.setdefault(_normalize_feed_id(feed_id), []).append(symbol)

    prices: dict[str, float] = {}
    for item in parsed:
        feed_id = _normalize_feed_id(str(item.get("id", "")))
        price_data = item.get("price", {})
        price_raw = int(price_data.get("price", 0))
        expo = int(price_data.get("expo", 0))
        if price_raw <= 0:
            continue
        for symbol in id_to_symbols.get(feed_id, []):
            prices[symbol] = price_raw * (10**expo)
    return prices


class PythOracle:
    """Fetch USD prices from Pyth Hermes. Failures yield an empty mapping."""

    def __init__(self, config: PythConfig, timeout: int = 15) -> None:
        self.hermes_url = config.hermes_url
        self.price_feeds = dict(config.feeds)
        self.timeout = timeout

    async def fetch_prices(self, symbols: list[str] | None = None) -> dict[str, float]:
        """Fetch current prices for ``symbols`` (all configured feeds if None)."""
        feeds = self.price_feeds
        if symbols is not None:
            wanted = {s.upper() for s in symbols}
            feeds = {k: v for k, v in self.price_feeds.items() if k.upper() in wanted}

        feed_ids = sorted(set(feeds.values()))
        if not feed_ids:
            return {}

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.get(
                    self.hermes_url,
                    params=[("ids[]", fid) for fid in feed_ids],
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status != 200:
                        logger.error(
                            "Error fetching prices from Pyth: HTTP %s", response.status
                        )
                        return {}
                    data = await response.json()
        except Exception as e:
            logger.error("Error fetching prices from Pyth: %s", e)
            return {}

        prices = parse_hermes_prices(data.get("parsed", []), feeds)
        for symbol, price in sorted(prices.items()):
            logger.debug("Pyth %s: $%.4f", symbol, price)
        return prices
