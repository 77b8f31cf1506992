"""Morpho GraphQL API client for vault metadata and user vault positions."""
from __future__ import annotations

import asyncio
import logging
import ssl
from dataclasses import dataclass
from typing import Any

import aiohttp
import certifi

from ..config import DataSourcesConfig
from ..errors import DataSourceError, IntegrityError
from ..models import Protocol
from ..services.cache import CacheCategory, TieredCache, cache_key

logger = logging.getLogger(__name__)

VAULTS_QUERY = """
query GetVaults($chainId: Int!, $symbols: [String!]) {
  vaultV2s(
    first: 100
    where: { chainId_in: [$chainId], asset: { symbol_in: $symbols }, whitelisted: true }
    orderBy: TotalAssetsUsd
    orderDirection: Desc
  ) {
    items {
      address
      name
      symbol
      asset { address symbol decimals }
      totalAssets
      totalAssetsUsd
      totalSupply
      liquidityUsd
      avgApy
      avgNetApy
      performanceFee
      curator { name }
      rewards { asset { address symbol } supplyApr }
    }
  }
}
"""

USER_POSITIONS_QUERY = """
query GetUserPositions($userAddress: String!, $chainId: Int!) {
  userByAddress(address: $userAddress, chainId: $chainId) {
    address
    vaultPositions {
      vault { address name symbol asset { address symbol decimals } avgNetApy }
      assets
      assetsUsd
      shares
    }
  }
}
"""


@dataclass(frozen=True)
class MorphoVault:
    address: str
    name: str
    symbol: str
    asset_address: str
    asset_symbol: str
    asset_decimals: int
    total_assets: int
    total_assets_usd: float
    total_supply: int
    liquidity_usd: float
    apy: float
    net_apy: float
    performance_fee: float
    reward_apr: float = 0.0
    curator: str = ""


@dataclass(frozen=True)
class MorphoVaultPosition:
    vault_address: str
    asset_symbol: str
    asset_decimals: int
    assets: int
    assets_usd: float
    shares: int
    net_apy: float


# ---------------------------------------------------------------------------
# Pure parsing
# ---------------------------------------------------------------------------


def _to_int(value: Any) -> int:
    if value is None:
        return 0
    return int(str(value).split(".")[0])


def parse_vault(item: dict[str, Any]) -> MorphoVault:
    """Parse one ``vaultV2s.items`` entry. APY fields are fractions upstream."""
    try:
        asset = item["asset"]
        rewards = item.get("rewards") or []
        return MorphoVault(
            address=item["address"].lower(),
            name=item.get("name") or "",
            symbol=item.get("symbol") or "",
            asset_address=asset["address"].lower(),
            asset_symbol=asset["symbol"],
            asset_decimals=int(asset["decimals"]),
            total_assets=_to_int(item.get("totalAssets")),
            total_assets_usd=float(item.get("totalAssetsUsd") or 0.0),
            total_supply=_to_int(item.get("totalSupply")),
            liquidity_usd=float(item.get("liquidityUsd") or 0.0),
            apy=float(item.get("avgApy") or 0.0) * 100,
            net_apy=float(item.get("avgNetApy") or 0.0) * 100,
            performance_fee=float(item.get("performanceFee") or 0.0),
            reward_apr=sum(float(r.get("supplyApr") or 0.0) for r in rewards) * 100,
            curator=(item.get("curator") or {}).get("name", ""),
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise IntegrityError(f"Malformed Morpho vault payload: {e}") from e


def parse_vault_position(item: dict[str, Any]) -> MorphoVaultPosition:
    try:
        vault = item["vault"]
        asset = vault["asset"]
        return MorphoVaultPosition(
            vault_address=vault["address"].lower(),
            asset_symbol=asset["symbol"],
            asset_decimals=int(asset["decimals"]),
            assets=_to_int(item.get("assets")),
            assets_usd=float(item.get("assetsUsd") or 0.0),
            shares=_to_int(item.get("shares")),
            net_apy=float(vault.get("avgNetApy") or 0.0) * 100,
        )
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise IntegrityError(f"Malformed Morpho position payload: {e}") from e


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class MorphoApiClient:
    """Fetch Morpho vault data over GraphQL, through the tiered cache."""

    def __init__(
        self, config: DataSourcesConfig, cache: TieredCache, chain_id: int
    ) -> None:
        self.api_url = config.morpho_api_url
        self.timeout = config.request_timeout
        self.asset_symbols = list(config.vault_asset_symbols)
        self._cache = cache
        self._chain_id = chain_id

    async def _execute(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.post(
                    self.api_url,
                    json={"query": query, "variables": variables},
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status != 200:
                        raise DataSourceError(f"Morpho API error: HTTP {response.status}")
                    body = await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise DataSourceError(f"Morpho API unreachable: {e}") from e
        except ValueError as e:
            raise DataSourceError(f"Morpho API returned invalid JSON: {e}") from e

        errors = body.get("errors") or []
        if errors:
            raise DataSourceError(f"Morpho GraphQL error: {errors[0].get('message')}")
        data = body.get("data")
        if not data:
            raise DataSourceError("Morpho API returned no data")
        return data

    async def _fetch_vaults(self) -> list[MorphoVault]:
        data = await self._execute(
            VAULTS_QUERY, {"chainId": self._chain_id, "symbols": self.asset_symbols}
        )
        items = (data.get("vaultV2s") or {}).get("items") or []

        vaults: list[MorphoVault] = []
        for item in items:
            try:
                vaults.append(parse_vault(item))
            except IntegrityError as e:
                logger.error("Dropping Morpho vault record: %s", e)
        logger.info("Fetched %d Morpho vaults", len(vaults))
        return vaults

    async def fetch_vaults(self, force_refresh: bool = False) -> list[MorphoVault]:
        key = cache_key(CacheCategory.POOL, self._chain_id, Protocol.MORPHO, None, None, "vaults")
        entry = await self._cache.get_or_fetch(
            key, CacheCategory.POOL, self._fetch_vaults, force_refresh=force_refresh
        )
        return entry.payload

    async def fetch_user_positions(
        self, user: str, force_refresh: bool = False
    ) -> list[MorphoVaultPosition]:
        async def _fetch() -> list[MorphoVaultPosition]:
            data = await self._execute(
                USER_POSITIONS_QUERY,
                {"userAddress": user.lower(), "chainId": self._chain_id},
            )
            raw = (data.get("userByAddress") or {}).get("vaultPositions") or []
            positions: list[MorphoVaultPosition] = []
            for item in raw:
                try:
                    positions.append(parse_vault_position(item))
                except IntegrityError as e:
                    logger.error("Dropping Morpho position record: %s", e)
            return positions

        key = cache_key(
            CacheCategory.POSITION, self._chain_id, Protocol.MORPHO, None, user, "vaults"
        )
        entry = await self._cache.get_or_fetch(
            key, CacheCategory.POSITION, _fetch, force_refresh=force_refresh
        )
        return entry.payload
