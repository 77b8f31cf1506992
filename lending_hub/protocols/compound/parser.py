"""Pure parsing functions for Compound III (Comet) data."""
from __future__ import annotations

import math
import time
from dataclasses import dataclass

from ...models import (
    AccountSnapshot,
    LendingMarket,
    Protocol,
    categorize_asset,
    compute_utilization,
)
from ..base import WAD, per_second_rate_to_apy, to_usd

PRICE_DECIMALS = 8


@dataclass(frozen=True)
class AssetInfo:
    """Decoded ``getAssetInfo(i)`` struct. Factors are 1e18-scaled."""

    offset: int
    asset: str
    price_feed: str
    scale: int
    borrow_collateral_factor: int
    liquidate_collateral_factor: int
    liquidation_factor: int
    supply_cap: int

    @property
    def decimals(self) -> int:
        return round(math.log10(self.scale)) if self.scale > 0 else 18

    @property
    def ltv(self) -> float:
        return self.borrow_collateral_factor / WAD

    @property
    def liquidation_threshold(self) -> float:
        return self.liquidate_collateral_factor / WAD

    @property
    def liquidation_penalty(self) -> float:
        return max(0.0, 1 - self.liquidation_factor / WAD)


def parse_asset_info(raw: tuple) -> AssetInfo:
    return AssetInfo(*raw)


def collateral_market_id(comet: str, asset: str) -> str:
    return f"{comet.lower()}:{asset.lower()}"


def build_base_market(
    *,
    chain_id: int,
    comet: str,
    base_token: str,
    symbol: str,
    decimals: int,
    total_supply: int,
    total_borrow: int,
    supply_rate: int,
    borrow_rate: int,
    price_raw: int,
    supply_paused: bool,
    withdraw_paused: bool,
    supply_reward_apy: float = 0.0,
    borrow_reward_apy: float = 0.0,
) -> LendingMarket:
    """The lendable base asset. It is not collateral inside its own Comet."""
    price = price_raw / 10**PRICE_DECIMALS
    available = max(0, total_supply - total_borrow)
    return LendingMarket(
        protocol=Protocol.COMPOUND,
        chain_id=chain_id,
        market_id=comet.lower(),
        pool_address=comet,
        asset_address=base_token,
        asset_symbol=symbol,
        asset_decimals=decimals,
        asset_category=categorize_asset(symbol),
        supply_apy=per_second_rate_to_apy(supply_rate),
        supply_reward_apy=supply_reward_apy,
        borrow_apy=per_second_rate_to_apy(borrow_rate),
        borrow_reward_apy=borrow_reward_apy,
        total_supply=total_supply,
        total_borrow=total_borrow,
        total_supply_usd=to_usd(total_supply, decimals, price),
        total_borrow_usd=to_usd(total_borrow, decimals, price),
        available_liquidity=available,
        available_liquidity_usd=to_usd(available, decimals, price),
        utilization=compute_utilization(total_supply, total_borrow),
        can_supply=not supply_paused,
        can_borrow=not withdraw_paused,
        can_use_as_collateral=False,
        is_paused=supply_paused and withdraw_paused,
        price_usd=price,
        receipt_token=comet,
        name=f"Compound III {symbol}",
        last_updated=time.time(),
    )


def build_collateral_market(
    *,
    chain_id: int,
    comet: str,
    base_symbol: str,
    info: AssetInfo,
    symbol: str,
    total_supplied: int,
    price_raw: int,
    supply_paused: bool,
) -> LendingMarket:
    """A collateral-only asset: earns nothing, cannot be borrowed."""
    price = price_raw / 10**PRICE_DECIMALS
    decimals = info.decimals
    return LendingMarket(
        protocol=Protocol.COMPOUND,
        chain_id=chain_id,
        market_id=collateral_market_id(comet, info.asset),
        pool_address=comet,
        asset_address=info.asset,
        asset_symbol=symbol,
        asset_decimals=decimals,
        asset_category=categorize_asset(symbol),
        total_supply=total_supplied,
        total_supply_usd=to_usd(total_supplied, decimals, price),
        available_liquidity=total_supplied,
        available_liquidity_usd=to_usd(total_supplied, decimals, price),
        ltv=min(info.ltv, info.liquidation_threshold),
        liquidation_threshold=info.liquidation_threshold,
        liquidation_penalty=info.liquidation_penalty,
        supply_cap=info.supply_cap or None,
        can_supply=not supply_paused,
        can_borrow=False,
        can_use_as_collateral=True,
        is_paused=supply_paused,
        price_usd=price,
        receipt_token=comet,
        name=f"Compound III {base_symbol} / {symbol} collateral",
        last_updated=time.time(),
    )


def comet_snapshot(
    collateral: list[tuple[float, AssetInfo]],
    debt_usd: float,
) -> AccountSnapshot:
    """Account snapshot for one Comet from (collateral USD, asset info) pairs."""
    collateral_usd = sum(usd for usd, _ in collateral)
    weighted = sum(usd * info.liquidation_threshold for usd, info in collateral)
    borrow_limit = sum(usd * info.ltv for usd, info in collateral)
    threshold = weighted / collateral_usd if collateral_usd > 0 else 0.0
    hf = math.inf if debt_usd <= 0 else weighted / debt_usd
    return AccountSnapshot(
        collateral_usd=collateral_usd,
        debt_usd=debt_usd,
        liquidation_threshold=threshold,
        borrow_limit_usd=borrow_limit,
        health_factor=hf,
    )


def merge_snapshots(snapshots: list[AccountSnapshot]) -> AccountSnapshot:
    """Combine isolated Comets; the health factor is the worst of them."""
    if not snapshots:
        return AccountSnapshot()
    collateral = sum(s.collateral_usd for s in snapshots)
    weighted = sum(s.collateral_usd * s.liquidation_threshold for s in snapshots)
    return AccountSnapshot(
        collateral_usd=collateral,
        debt_usd=sum(s.debt_usd for s in snapshots),
        liquidation_threshold=weighted / collateral if collateral > 0 else 0.0,
        borrow_limit_usd=sum(s.borrow_limit_usd for s in snapshots),
        health_factor=min(s.health_factor for s in snapshots),
    )
