"""Unit tests for reward APY lookup."""
from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from lending_hub.config import RiskPolicy
from lending_hub.datasources.defillama import YieldPool
from lending_hub.errors import DataSourceError
from lending_hub.models import ActionType, Protocol
from lending_hub.services.rewards import (
    RewardApyService,
    clamp_reward_apy,
    estimate_reward_apy,
    net_apy,
)


def _pool(apy_reward: float) -> YieldPool:
    return YieldPool(
        pool_id="p1",
        protocol=Protocol.MOONWELL,
        symbol="USDC",
        tvl_usd=5_000_000.0,
        apy_base=4.0,
        apy_reward=apy_reward,
    )


class TestHelpers:
    @pytest.mark.parametrize("value, expected", [(-1.0, 0.0), (3.0, 3.0), (80.0, 50.0)])
    def test_clamp(self, value: float, expected: float) -> None:
        assert clamp_reward_apy(value, 50.0) == expected

    def test_net_apy_supply_adds_rewards(self) -> None:
        assert net_apy(3.0, 1.0, ActionType.SUPPLY) == 4.0

    def test_net_apy_borrow_subtracts_and_floors(self) -> None:
        assert net_apy(3.0, 1.0, ActionType.BORROW) == 2.0
        assert net_apy(1.0, 3.0, ActionType.BORROW) == 0.0

    def test_estimate_uses_category_multiplier(self) -> None:
        stable = estimate_reward_apy(Protocol.MOONWELL, "USDC")
        eth = estimate_reward_apy(Protocol.MOONWELL, "WETH")
        other = estimate_reward_apy(Protocol.MOONWELL, "AERO")
        assert (stable.supply, stable.borrow) == (pytest.approx(1.8), pytest.approx(0.45))
        assert eth.supply == pytest.approx(0.96)
        assert other.supply == pytest.approx(1.2)
        assert stable.source == "estimate"


class TestRewardApyService:
    @pytest.mark.asyncio
    async def test_without_yields_client_uses_estimate(self) -> None:
        service = RewardApyService(None, RiskPolicy())
        reward = await service.get_reward_apy(Protocol.COMPOUND, "USDC")
        assert reward.supply == pytest.approx(0.75)
        assert reward.source == "estimate"

    @pytest.mark.asyncio
    async def test_api_reward_preferred(self) -> None:
        yields = AsyncMock()
        yields.find_pool = AsyncMock(return_value=_pool(2.5))
        service = RewardApyService(yields, RiskPolicy())

        reward = await service.get_reward_apy(Protocol.MOONWELL, "USDC")

        assert reward.supply == 2.5
        assert reward.borrow == pytest.approx(0.45)
        assert reward.source == "api"
        yields.find_pool.assert_awaited_once_with(Protocol.MOONWELL, "USDC")

    @pytest.mark.asyncio
    async def test_missing_pool_falls_back_to_estimate(self) -> None:
        yields = AsyncMock()
        yields.find_pool = AsyncMock(return_value=None)
        reward = await RewardApyService(yields, RiskPolicy()).get_reward_apy(Protocol.AAVE, "WETH")
        assert reward.source == "estimate"
        assert reward.supply == pytest.approx(0.08)

    @pytest.mark.asyncio
    async def test_api_failure_falls_back_to_estimate(self) -> None:
        yields = AsyncMock()
        yields.find_pool = AsyncMock(side_effect=DataSourceError("down"))
        reward = await RewardApyService(yields, RiskPolicy()).get_reward_apy(Protocol.MOONWELL, "USDC")
        assert reward.source == "estimate"

    @pytest.mark.asyncio
    async def test_outlier_clamped_to_policy_cap(self) -> None:
        yields = AsyncMock()
        yields.find_pool = AsyncMock(return_value=_pool(900.0))
        service = RewardApyService(yields, RiskPolicy(max_reward_apy=20.0))
        reward = await service.get_reward_apy(Protocol.MOONWELL, "USDC")
        assert reward.supply == 20.0
