"""Pure parsing functions for Aave V3 reserve and account data."""
from __future__ import annotations

import math
import time
from typing import Any

from ...models import LendingMarket, Protocol, categorize_asset, compute_utilization
from ..base import ray_apr_to_apy, to_usd

BPS = 10_000
BASE_CURRENCY_DECIMALS = 8
HEALTH_FACTOR_DECIMALS = 18
# getUserAccountData reports uint256 max when the account has no debt.
NO_DEBT_HEALTH_FACTOR = 2**256 - 1


def parse_risk_params(ltv_bps: int, threshold_bps: int, bonus_bps: int) -> tuple[float, float, float]:
    """Convert bps risk params to fractions: (ltv, liquidation threshold, penalty).

    The liquidation bonus is stored as 10000 + penalty, e.g. 10500 → 5%.
    """
    threshold = threshold_bps / BPS
    ltv = min(ltv_bps / BPS, threshold)
    penalty = max(0, bonus_bps - BPS) / BPS
    return ltv, threshold, penalty


def parse_cap(cap_whole_tokens: int, decimals: int) -> int | None:
    """Caps are whole tokens on-chain; 0 means uncapped."""
    if cap_whole_tokens <= 0:
        return None
    return cap_whole_tokens * 10**decimals


def parse_health_factor(raw: int) -> float:
    if raw >= NO_DEBT_HEALTH_FACTOR:
        return math.inf
    return raw / 10**HEALTH_FACTOR_DECIMALS


def build_market(
    *,
    chain_id: int,
    pool: str,
    asset: str,
    symbol: str,
    reserve_config: tuple[Any, ...],
    reserve_data: tuple[Any, ...],
    caps: tuple[int, int],
    paused: bool,
    a_token: str,
    price_raw: int,
    supply_reward_apy: float = 0.0,
    borrow_reward_apy: float = 0.0,
) -> LendingMarket:
    """Assemble a LendingMarket from PoolDataProvider/AaveOracle reads.

    reserve_config: getReserveConfigurationData tuple
        (decimals, ltv, liquidationThreshold, liquidationBonus, reserveFactor,
         usageAsCollateralEnabled, borrowingEnabled, stableBorrowRateEnabled,
         isActive, isFrozen)
    reserve_data: getReserveData tuple
        (unbacked, accruedToTreasuryScaled, totalAToken, totalStableDebt,
         totalVariableDebt, liquidityRate, variableBorrowRate, ...)
    """
    (decimals, ltv_bps, threshold_bps, bonus_bps, _reserve_factor,
     collateral_enabled, borrowing_enabled, _stable_enabled,
     is_active, is_frozen) = reserve_config
    total_supply = int(reserve_data[2])
    total_borrow = int(reserve_data[3]) + int(reserve_data[4])
    liquidity_rate, variable_borrow_rate = int(reserve_data[5]), int(reserve_data[6])
    borrow_cap, supply_cap = caps

    ltv, threshold, penalty = parse_risk_params(ltv_bps, threshold_bps, bonus_bps)
    price = price_raw / 10**BASE_CURRENCY_DECIMALS
    available = max(0, total_supply - total_borrow)
    usable = bool(is_active) and not is_frozen and not paused

    return LendingMarket(
        protocol=Protocol.AAVE,
        chain_id=chain_id,
        market_id=asset.lower(),
        pool_address=pool,
        asset_address=asset,
        asset_symbol=symbol,
        asset_decimals=int(decimals),
        asset_category=categorize_asset(symbol),
        supply_apy=ray_apr_to_apy(liquidity_rate),
        supply_reward_apy=supply_reward_apy,
        borrow_apy=ray_apr_to_apy(variable_borrow_rate),
        borrow_reward_apy=borrow_reward_apy,
        total_supply=total_supply,
        total_borrow=total_borrow,
        total_supply_usd=to_usd(total_supply, decimals, price),
        total_borrow_usd=to_usd(total_borrow, decimals, price),
        available_liquidity=available,
        available_liquidity_usd=to_usd(available, decimals, price),
        utilization=compute_utilization(total_supply, total_borrow),
        ltv=ltv,
        liquidation_threshold=threshold,
        liquidation_penalty=penalty,
        supply_cap=parse_cap(supply_cap, decimals),
        borrow_cap=parse_cap(borrow_cap, decimals),
        can_supply=usable,
        can_borrow=usable and bool(borrowing_enabled),
        can_use_as_collateral=bool(collateral_enabled) and threshold > 0,
        is_frozen=bool(is_frozen),
        is_paused=bool(paused),
        price_usd=price,
        receipt_token=a_token,
        name=f"Aave V3 {symbol}",
        last_updated=time.time(),
    )
