"""DefiLlama yields client: base and reward APY per pool."""
from __future__ import annotations

import asyncio
import logging
import ssl
from dataclasses import dataclass
from typing import Any

import aiohttp
import certifi

from ..config import DataSourcesConfig
from ..errors import DataSourceError
from ..models import Protocol
from ..services.cache import CacheCategory, TieredCache, cache_key

logger = logging.getLogger(__name__)

PROJECT_MAPPING: dict[str, Protocol] = {
    "aave-v3": Protocol.AAVE,
    "compound-v3": Protocol.COMPOUND,
    "morpho-blue": Protocol.MORPHO,
    "moonwell": Protocol.MOONWELL,
    "moonwell-lending": Protocol.MOONWELL,
}


@dataclass(frozen=True)
class YieldPool:
    pool_id: str
    protocol: Protocol
    symbol: str
    tvl_usd: float
    apy_base: float
    apy_reward: float
    reward_tokens: tuple[str, ...] = ()


def parse_pool(
    raw: dict[str, Any], chain: str, min_tvl_usd: float
) -> YieldPool | None:
    """Return a YieldPool for a relevant pool entry, or None to skip it."""
    if str(raw.get("chain", "")).lower() != chain.lower():
        return None
    protocol = PROJECT_MAPPING.get(str(raw.get("project", "")).lower())
    if protocol is None:
        return None
    tvl = float(raw.get("tvlUsd") or 0.0)
    if tvl < min_tvl_usd:
        return None
    return YieldPool(
        pool_id=str(raw.get("pool", "")),
        protocol=protocol,
        symbol=str(raw.get("symbol", "")),
        tvl_usd=tvl,
        apy_base=float(raw.get("apyBase") or 0.0),
        apy_reward=float(raw.get("apyReward") or 0.0),
        reward_tokens=tuple(raw.get("rewardTokens") or ()),
    )


class YieldsClient:
    """Fetch pool yields from the public yields API."""

    def __init__(
        self, config: DataSourcesConfig, cache: TieredCache, chain_id: int
    ) -> None:
        self.url = config.yields_url
        self.chain = config.yields_chain
        self.min_tvl_usd = config.min_tvl_usd
        self.timeout = config.request_timeout
        self._cache = cache
        self._chain_id = chain_id

    async def _fetch_pools(self) -> list[YieldPool]:
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.get(
                    self.url, timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status != 200:
                        raise DataSourceError(f"Yields API error: HTTP {response.status}")
                    body = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DataSourceError(f"Yields API unreachable: {e}") from e
        except ValueError as e:
            raise DataSourceError(f"Yields API returned invalid JSON: {e}") from e

        if body.get("status") != "success":
            raise DataSourceError("Yields API returned non-success status")

        pools: list[YieldPool] = []
        for raw in body.get("data") or []:
            pool = parse_pool(raw, self.chain, self.min_tvl_usd)
            if pool is not None:
                pools.append(pool)
        logger.info("Fetched %d relevant yield pools on %s", len(pools), self.chain)
        return pools

    async def fetch_pools(self, force_refresh: bool = False) -> list[YieldPool]:
        key = cache_key(CacheCategory.POOL, self._chain_id, None, None, None, "yields")
        entry = await self._cache.get_or_fetch(
            key, CacheCategory.POOL, self._fetch_pools, force_refresh=force_refresh
        )
        return entry.payload

    async def find_pool(self, protocol: Protocol, asset_symbol: str) -> YieldPool | None:
        """Highest-TVL pool for (protocol, asset), matched on the pool symbol."""
        symbol = asset_symbol.upper()
        candidates = [
            p for p in await self.fetch_pools()
            if p.protocol == protocol and p.symbol.upper() == symbol
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda p: p.tvl_usd)
