"""Incentive (reward) APY lookup, kept separate from base APY."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from ..config import RiskPolicy
from ..datasources.defillama import YieldsClient
from ..errors import DataSourceError
from ..models import ActionType, AssetCategory, Protocol, categorize_asset

logger = logging.getLogger(__name__)

# (supply, borrow) reward APY used when the yields API has nothing.
ESTIMATED_REWARDS: dict[Protocol, tuple[float, float]] = {
    Protocol.AAVE: (0.1, 0.0),
    Protocol.COMPOUND: (0.5, 0.0),
    Protocol.MOONWELL: (1.2, 0.3),
    Protocol.MORPHO: (0.0, 0.0),
}

_CATEGORY_MULTIPLIERS: dict[AssetCategory, float] = {
    AssetCategory.STABLECOIN: 1.5,
    AssetCategory.ETH: 0.8,
}


@dataclass(frozen=True)
class RewardApy:
    supply: float
    borrow: float
    source: str


def clamp_reward_apy(value: float, cap: float) -> float:
    """Clamp a reward APY contribution to [0, cap]."""
    return min(max(value, 0.0), cap)


def net_apy(base: float, reward: float, action: ActionType) -> float:
    """Supply earns base + reward; borrow pays base - reward, floored at 0."""
    if action == ActionType.BORROW:
        return max(0.0, base - reward)
    return base + reward


def estimate_reward_apy(protocol: Protocol, asset_symbol: str) -> RewardApy:
    supply, borrow = ESTIMATED_REWARDS[protocol]
    multiplier = _CATEGORY_MULTIPLIERS.get(categorize_asset(asset_symbol), 1.0)
    return RewardApy(supply * multiplier, borrow * multiplier, "estimate")


class RewardApyService:
    """Reward APY per (protocol, asset): yields API first, estimates second."""

    def __init__(self, yields: YieldsClient | None, policy: RiskPolicy) -> None:
        self._yields = yields
        self._policy = policy

    def _clamp(self, reward: RewardApy, protocol: Protocol, asset: str) -> RewardApy:
        cap = self._policy.max_reward_apy
        clamped = RewardApy(
            clamp_reward_apy(reward.supply, cap),
            clamp_reward_apy(reward.borrow, cap),
            reward.source,
        )
        if clamped != reward:
            logger.warning(
                "Clamped %s %s reward APY %.2f/%.2f to cap %.2f",
                protocol.value, asset, reward.supply, reward.borrow, cap,
            )
        return clamped

    async def get_reward_apy(self, protocol: Protocol, asset_symbol: str) -> RewardApy:
        estimate = estimate_reward_apy(protocol, asset_symbol)
        if self._yields is None:
            return self._clamp(estimate, protocol, asset_symbol)

        try:
            pool = await self._yields.find_pool(protocol, asset_symbol)
        except DataSourceError as e:
            logger.warning("Yields API unavailable, using reward estimates: %s", e)
            pool = None

        if pool is None:
            return self._clamp(estimate, protocol, asset_symbol)
        return self._clamp(
            RewardApy(pool.apy_reward, estimate.borrow, "api"), protocol, asset_symbol
        )
