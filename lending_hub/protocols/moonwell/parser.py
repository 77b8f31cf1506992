"""Parsing for Moonwell (cToken-style) markets."""
from __future__ import annotations

import time

from ...models import LendingMarket, Protocol, categorize_asset, compute_utilization
from ..base import WAD, per_second_rate_to_apy, to_usd

# Used when the comptroller does not expose liquidationIncentiveMantissa.
DEFAULT_LIQUIDATION_PENALTY = 0.08


def underlying_from_mtokens(mtoken_balance: int, exchange_rate: int) -> int:
    """Underlying units for an mToken balance: balance × exchangeRate / 1e18."""
    return mtoken_balance * exchange_rate // WAD


def mtokens_from_underlying(amount: int, exchange_rate: int) -> int:
    if exchange_rate <= 0:
        return 0
    return amount * WAD // exchange_rate


def oracle_price(raw: int, decimals: int) -> float:
    """Compound-style oracles scale prices to 1e(36 - underlying decimals)."""
    return raw / 10 ** (36 - decimals)


def liquidation_penalty(incentive_mantissa: int | None) -> float:
    if not incentive_mantissa:
        return DEFAULT_LIQUIDATION_PENALTY
    return max(0.0, incentive_mantissa / WAD - 1)


def build_market(
    *,
    chain_id: int,
    mtoken: str,
    underlying: str,
    symbol: str,
    decimals: int,
    total_mtokens: int,
    total_borrows: int,
    cash: int,
    exchange_rate: int,
    supply_rate: int,
    borrow_rate: int,
    collateral_factor: int,
    mint_paused: bool,
    borrow_paused: bool,
    supply_cap: int,
    borrow_cap: int,
    price_raw: int,
    penalty: float,
    supply_reward_apy: float = 0.0,
    borrow_reward_apy: float = 0.0,
) -> LendingMarket:
    price = oracle_price(price_raw, decimals)
    total_supply = underlying_from_mtokens(total_mtokens, exchange_rate)
    cf = collateral_factor / WAD
    return LendingMarket(
        protocol=Protocol.MOONWELL,
        chain_id=chain_id,
        market_id=mtoken.lower(),
        pool_address=mtoken,
        asset_address=underlying,
        asset_symbol=symbol,
        asset_decimals=decimals,
        asset_category=categorize_asset(symbol),
        supply_apy=per_second_rate_to_apy(supply_rate),
        supply_reward_apy=supply_reward_apy,
        borrow_apy=per_second_rate_to_apy(borrow_rate),
        borrow_reward_apy=borrow_reward_apy,
        total_supply=total_supply,
        total_borrow=total_borrows,
        total_supply_usd=to_usd(total_supply, decimals, price),
        total_borrow_usd=to_usd(total_borrows, decimals, price),
        available_liquidity=cash,
        available_liquidity_usd=to_usd(cash, decimals, price),
        utilization=compute_utilization(total_supply, total_borrows),
        # The collateral factor serves as both LTV and liquidation threshold.
        ltv=cf,
        liquidation_threshold=cf,
        liquidation_penalty=penalty,
        supply_cap=supply_cap or None,
        borrow_cap=borrow_cap or None,
        can_supply=not mint_paused,
        can_borrow=not borrow_paused,
        can_use_as_collateral=cf > 0,
        is_paused=mint_paused and borrow_paused,
        price_usd=price,
        receipt_token=mtoken,
        name=f"Moonwell {symbol}",
        last_updated=time.time(),
    )
