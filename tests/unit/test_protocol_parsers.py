"""Unit tests for the pure per-protocol parsing functions."""
from __future__ import annotations

import math

import pytest

from lending_hub.datasources.morpho_api import MorphoVault
from lending_hub.models import AccountSnapshot, AssetCategory, Protocol
from lending_hub.protocols import base
from lending_hub.protocols.aave import parser as aave
from lending_hub.protocols.compound import parser as compound
from lending_hub.protocols.moonwell import parser as moonwell
from lending_hub.protocols.morpho import parser as morpho

USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
WETH = "0x4200000000000000000000000000000000000006"
COMET = "0xb125E6687d4313864e53df431d5425969c15Eb2F"


class TestRateMath:
    def test_ray_apr_compounds(self) -> None:
        assert base.ray_apr_to_apy(5 * 10**25) == pytest.approx((math.exp(0.05) - 1) * 100, rel=1e-6)

    def test_per_second_rate(self) -> None:
        per_second = int(0.05 / base.SECONDS_PER_YEAR * base.WAD)
        assert base.per_second_rate_to_apy(per_second) == pytest.approx(5.127, abs=1e-3)

    def test_zero_rate(self) -> None:
        assert base.apr_to_apy(0.0) == 0.0

    def test_unit_conversion(self) -> None:
        assert base.to_usd(2_500_000, 6, 1.0) == 2.5
        assert base.from_usd(3000.0, 18, 1500.0) == 2 * 10**18
        assert base.from_usd(10.0, 6, 0.0) == 0


class TestAaveParser:
    def test_risk_params(self) -> None:
        assert aave.parse_risk_params(7500, 8000, 10500) == (0.75, 0.8, pytest.approx(0.05))

    def test_ltv_clamped_to_threshold(self) -> None:
        ltv, threshold, _ = aave.parse_risk_params(9000, 8000, 10500)
        assert ltv == threshold == 0.8

    def test_caps(self) -> None:
        assert aave.parse_cap(0, 6) is None
        assert aave.parse_cap(1_000, 6) == 1_000 * 10**6

    def test_health_factor(self) -> None:
        assert aave.parse_health_factor(15 * 10**17) == 1.5
        assert math.isinf(aave.parse_health_factor(2**256 - 1))

    def test_build_market(self) -> None:
        market = aave.build_market(
            chain_id=8453,
            pool="0xpool",
            asset=USDC,
            symbol="USDC",
            reserve_config=(6, 7500, 8000, 10500, 1000, True, True, False, True, False),
            reserve_data=(0, 0, 1_000_000 * 10**6, 0, 600_000 * 10**6, 4 * 10**25, 6 * 10**25, 0, 0, 0, 0, 0),
            caps=(0, 2_000_000),
            paused=False,
            a_token="0xatoken",
            price_raw=10**8,
            supply_reward_apy=0.2,
        )
        assert market.protocol == Protocol.AAVE
        assert market.market_id == USDC.lower()
        assert market.total_supply == 1_000_000 * 10**6
        assert market.available_liquidity == 400_000 * 10**6
        assert market.available_liquidity_usd == pytest.approx(400_000.0)
        assert market.utilization == pytest.approx(0.6)
        assert (market.ltv, market.liquidation_threshold) == (0.75, 0.8)
        assert market.supply_cap == 2_000_000 * 10**6
        assert market.borrow_cap is None
        assert market.can_borrow and market.can_use_as_collateral
        assert market.supply_apy == pytest.approx(4.081, abs=1e-3)
        assert market.net_supply_apy == pytest.approx(market.supply_apy + 0.2)
        assert market.asset_category == AssetCategory.STABLECOIN
        assert market.receipt_token == "0xatoken"

    def test_frozen_reserve_cannot_supply(self) -> None:
        market = aave.build_market(
            chain_id=8453,
            pool="0xpool",
            asset=WETH,
            symbol="WETH",
            reserve_config=(18, 8000, 8300, 10500, 1500, True, True, False, True, True),
            reserve_data=(0, 0, 10**18, 0, 0, 0, 0, 0, 0, 0, 0, 0),
            caps=(0, 0),
            paused=False,
            a_token="0xa",
            price_raw=3000 * 10**8,
        )
        assert market.is_frozen
        assert not market.can_supply
        assert not market.can_borrow


def _asset_info() -> compound.AssetInfo:
    return compound.parse_asset_info(
        (0, WETH, "0xfeed", 10**18, 825 * 10**15, 895 * 10**15, 950 * 10**15, 1_000 * 10**18)
    )


class TestCompoundParser:
    def test_asset_info(self) -> None:
        info = _asset_info()
        assert info.decimals == 18
        assert info.ltv == pytest.approx(0.825)
        assert info.liquidation_threshold == pytest.approx(0.895)
        assert info.liquidation_penalty == pytest.approx(0.05)

    def test_base_market(self) -> None:
        market = compound.build_base_market(
            chain_id=8453,
            comet=COMET,
            base_token=USDC,
            symbol="USDC",
            decimals=6,
            total_supply=100 * 10**6,
            total_borrow=80 * 10**6,
            supply_rate=int(0.04 / base.SECONDS_PER_YEAR * base.WAD),
            borrow_rate=int(0.05 / base.SECONDS_PER_YEAR * base.WAD),
            price_raw=10**8,
            supply_paused=False,
            withdraw_paused=False,
        )
        assert market.market_id == COMET.lower()
        assert market.available_liquidity == 20 * 10**6
        assert market.utilization == pytest.approx(0.8)
        assert market.can_borrow
        assert not market.can_use_as_collateral
        assert market.supply_apy == pytest.approx(4.081, abs=1e-3)

    def test_collateral_market(self) -> None:
        market = compound.build_collateral_market(
            chain_id=8453,
            comet=COMET,
            base_symbol="USDC",
            info=_asset_info(),
            symbol="WETH",
            total_supplied=500 * 10**18,
            price_raw=3000 * 10**8,
            supply_paused=False,
        )
        assert market.market_id == f"{COMET.lower()}:{WETH.lower()}"
        assert market.supply_apy == 0.0
        assert not market.can_borrow
        assert market.can_use_as_collateral
        assert market.supply_cap == 1_000 * 10**18
        assert market.total_supply_usd == pytest.approx(1_500_000.0)

    def test_snapshot(self) -> None:
        snapshot = compound.comet_snapshot([(1000.0, _asset_info())], 500.0)
        assert snapshot.health_factor == pytest.approx(1.79)
        assert snapshot.borrow_limit_usd == pytest.approx(825.0)
        assert snapshot.liquidation_threshold == pytest.approx(0.895)

    def test_snapshot_without_debt(self) -> None:
        assert math.isinf(compound.comet_snapshot([(1000.0, _asset_info())], 0.0).health_factor)

    def test_merge_takes_worst_health_factor(self) -> None:
        merged = compound.merge_snapshots(
            [
                AccountSnapshot(1000.0, 500.0, 0.9, 800.0, 1.8),
                AccountSnapshot(1000.0, 700.0, 0.8, 700.0, 1.14),
            ]
        )
        assert merged.health_factor == 1.14
        assert merged.collateral_usd == 2000.0
        assert merged.liquidation_threshold == pytest.approx(0.85)

    def test_merge_empty(self) -> None:
        assert compound.merge_snapshots([]) == AccountSnapshot()


class TestMoonwellParser:
    def test_exchange_rate_conversions(self) -> None:
        rate = 2 * 10**14
        assert moonwell.underlying_from_mtokens(50_000_000_000, rate) == 10_000_000
        assert moonwell.mtokens_from_underlying(10_000_000, rate) == 50_000_000_000
        assert moonwell.mtokens_from_underlying(10, 0) == 0

    def test_oracle_price_scaling(self) -> None:
        assert moonwell.oracle_price(10**30, 6) == 1.0
        assert moonwell.oracle_price(3000 * 10**18, 18) == 3000.0

    def test_liquidation_penalty(self) -> None:
        assert moonwell.liquidation_penalty(108 * 10**16) == pytest.approx(0.08)
        assert moonwell.liquidation_penalty(None) == moonwell.DEFAULT_LIQUIDATION_PENALTY

    def test_build_market(self) -> None:
        market = moonwell.build_market(
            chain_id=8453,
            mtoken="0xEdc817A28E8B93B03976FBd4a3dDBc9f7D176c22",
            underlying=USDC,
            symbol="USDC",
            decimals=6,
            total_mtokens=5 * 10**15,
            total_borrows=600_000 * 10**6,
            cash=400_000 * 10**6,
            exchange_rate=2 * 10**14,
            supply_rate=0,
            borrow_rate=0,
            collateral_factor=8 * 10**17,
            mint_paused=True,
            borrow_paused=False,
            supply_cap=0,
            borrow_cap=500_000 * 10**6,
            price_raw=10**30,
            penalty=0.08,
        )
        assert market.market_id == "0xedc817a28e8b93b03976fbd4a3ddbc9f7d176c22"
        assert market.total_supply == 1_000_000 * 10**6
        assert market.available_liquidity == 400_000 * 10**6
        assert market.ltv == market.liquidation_threshold == pytest.approx(0.8)
        assert market.supply_cap is None
        assert market.borrow_cap == 500_000 * 10**6
        assert not market.can_supply
        assert market.can_borrow
        assert not market.is_paused


def _vault(**overrides) -> MorphoVault:
    fields = dict(
        address="0xvault",
        name="Steakhouse USDC",
        symbol="steakUSDC",
        asset_address=USDC.lower(),
        asset_symbol="USDC",
        asset_decimals=6,
        total_assets=1_000_000 * 10**6,
        total_assets_usd=1_000_000.0,
        total_supply=950_000 * 10**18,
        liquidity_usd=250_000.0,
        apy=5.0,
        net_apy=4.5,
        performance_fee=0.1,
        reward_apr=1.5,
    )
    fields.update(overrides)
    return MorphoVault(**fields)


class TestMorphoParser:
    def test_share_price(self) -> None:
        assert morpho.share_price_usd(2 * 10**18, 6000.0, 18) == 3000.0
        assert morpho.share_price_usd(0, 100.0, 6) == 0.0

    def test_market_from_vault(self) -> None:
        market = morpho.market_from_vault(_vault(), 8453)
        assert market.protocol == Protocol.MORPHO
        assert market.supply_apy == 4.5
        assert market.supply_reward_apy == 1.5
        assert market.net_supply_apy == 6.0
        assert market.available_liquidity == 250_000 * 10**6
        assert not market.can_borrow
        assert not market.can_use_as_collateral
        assert market.ltv == 0.0
        assert market.name == "Steakhouse USDC"

    def test_reward_outlier_clamped(self) -> None:
        market = morpho.market_from_vault(_vault(reward_apr=400.0), 8453, max_reward_apy=50.0)
        assert market.supply_reward_apy == 50.0

    def test_liquidity_bounded_by_total_assets(self) -> None:
        market = morpho.market_from_vault(_vault(liquidity_usd=5_000_000.0), 8453)
        assert market.available_liquidity == 1_000_000 * 10**6

    def test_market_from_chain(self) -> None:
        market = morpho.market_from_chain(
            chain_id=8453,
            vault="0xVault",
            name="",
            asset=USDC,
            symbol="USDC",
            decimals=6,
            total_assets=2_000 * 10**6,
            price_usd=1.0,
        )
        assert market.market_id == "0xvault"
        assert market.supply_apy == 0.0
        assert market.total_supply_usd == 2_000.0
        assert market.name == "Morpho USDC"
