"""Pure parsing functions for Morpho ERC-4626 vaults."""
from __future__ import annotations

import time

from ...datasources.morpho_api import MorphoVault
from ...models import LendingMarket, Protocol, categorize_asset
from ...services.rewards import clamp_reward_apy
from ..base import from_usd, to_units


def share_price_usd(total_assets: int, total_assets_usd: float, decimals: int) -> float:
    """USD per underlying unit implied by the vault's reported TVL."""
    units = to_units(total_assets, decimals)
    if units <= 0:
        return 0.0
    return total_assets_usd / units


def market_from_vault(
    vault: MorphoVault, chain_id: int, max_reward_apy: float = 50.0
) -> LendingMarket:
    price = share_price_usd(vault.total_assets, vault.total_assets_usd, vault.asset_decimals)
    liquidity = from_usd(vault.liquidity_usd, vault.asset_decimals, price)
    return LendingMarket(
        protocol=Protocol.MORPHO,
        chain_id=chain_id,
        market_id=vault.address.lower(),
        pool_address=vault.address,
        asset_address=vault.asset_address,
        asset_symbol=vault.asset_symbol,
        asset_decimals=vault.asset_decimals,
        asset_category=categorize_asset(vault.asset_symbol),
        # avgNetApy is already net of the performance fee.
        supply_apy=vault.net_apy,
        supply_reward_apy=clamp_reward_apy(vault.reward_apr, max_reward_apy),
        total_supply=vault.total_assets,
        total_supply_usd=vault.total_assets_usd,
        available_liquidity=min(liquidity, vault.total_assets),
        available_liquidity_usd=vault.liquidity_usd,
        can_supply=True,
        can_borrow=False,
        can_use_as_collateral=False,
        price_usd=price,
        receipt_token=vault.address,
        name=vault.name or f"Morpho {vault.asset_symbol}",
        last_updated=time.time(),
    )


def market_from_chain(
    *,
    chain_id: int,
    vault: str,
    name: str,
    asset: str,
    symbol: str,
    decimals: int,
    total_assets: int,
    price_usd: float,
) -> LendingMarket:
    """Minimal market from on-chain reads alone; APY is unknown there."""
    return LendingMarket(
        protocol=Protocol.MORPHO,
        chain_id=chain_id,
        market_id=vault.lower(),
        pool_address=vault,
        asset_address=asset,
        asset_symbol=symbol,
        asset_decimals=decimals,
        asset_category=categorize_asset(symbol),
        total_supply=total_assets,
        total_supply_usd=to_units(total_assets, decimals) * price_usd,
        # Idle liquidity needs the allocator's view; total assets bounds it.
        available_liquidity=total_assets,
        available_liquidity_usd=to_units(total_assets, decimals) * price_usd,
        can_supply=True,
        can_borrow=False,
        price_usd=price_usd,
        receipt_token=vault,
        name=name or f"Morpho {symbol}",
        last_updated=time.time(),
    )
