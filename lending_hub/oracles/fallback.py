"""Composite oracle: primary source first, secondary for gaps, cache last."""
from __future__ import annotations

import logging

from ..interfaces.price_oracle import PriceOracle
from ..services.cache import CacheCategory, TieredCache, cache_key

logger = logging.getLogger(__name__)


class FallbackOracle:
    """Ask the primary oracle, fill missing symbols from the secondary.

    Prices are cached per symbol in the price category; a symbol neither
    source can price is served from a stale cache entry when one exists.
    """

    def __init__(
        self,
        primary: PriceOracle,
        secondary: PriceOracle | None,
        cache: TieredCache,
        chain_id: int,
    ) -> None:
        self._primary = primary
        self._secondary = secondary
        self._cache = cache
        self._chain_id = chain_id

    def _key(self, symbol: str) -> str:
        return cache_key(CacheCategory.PRICE, self._chain_id, None, symbol)

    async def fetch_prices(self, symbols: list[str] | None = None) -> dict[str, float]:
        prices: dict[str, float] = {}
        missing: list[str] | None = None
        if symbols is not None:
            missing = []
            for symbol in symbols:
                cached = self._cache.get(self._key(symbol))
                if cached is not None:
                    prices[symbol] = cached
                else:
                    missing.append(symbol)
            if not missing:
                return prices

        fetched = dict(await self._primary.fetch_prices(missing))
        for symbol, price in fetched.items():
            self._cache.set(self._key(symbol), price, CacheCategory.PRICE, source="onchain")

        if self._secondary is not None:
            gaps = None if missing is None else [s for s in missing if s not in fetched]
            if gaps is None or gaps:
                secondary = await self._secondary.fetch_prices(gaps)
                for symbol, price in secondary.items():
                    if symbol in fetched:
                        continue
                    fetched[symbol] = price
                    self._cache.set(self._key(symbol), price, CacheCategory.PRICE, source="api")
        prices.update(fetched)

        for symbol in missing or []:
            if symbol in prices:
                continue
            stale = self._cache.get_stale(self._key(symbol))
            if stale is not None:
                logger.warning("Using stale price for %s", symbol)
                prices[symbol] = stale.payload
            else:
                logger.warning("No price available for %s", symbol)
        return prices
