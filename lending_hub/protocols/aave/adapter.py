"""Aave V3 adapter. Pooled markets with 1:1 aTokens."""
from __future__ import annotations

import asyncio
import logging

from ...models import (
    AccountSnapshot,
    ActionParams,
    CallDescription,
    LendingMarket,
    LendingPosition,
    Protocol,
)
from ...services import risk
from ..base import BaseLendingAdapter, to_usd
from . import parser

logger = logging.getLogger(__name__)

VARIABLE_RATE_MODE = 2
REFERRAL_CODE = 0

_RESERVE_CONFIG_TYPES = (
    "uint256", "uint256", "uint256", "uint256", "uint256",
    "bool", "bool", "bool", "bool", "bool",
)
_RESERVE_DATA_TYPES = ("uint256",) * 11 + ("uint40",)
_USER_RESERVE_TYPES = ("uint256",) * 7 + ("uint40", "bool")
_ACCOUNT_DATA_TYPES = ("uint256",) * 6


class AaveV3Adapter(BaseLendingAdapter):
    """Aave V3 Pool + PoolDataProvider + AaveOracle."""

    protocol = Protocol.AAVE

    @property
    def _pool(self) -> str:
        return self._contract("pool")

    @property
    def _data_provider(self) -> str:
        return self._contract("data_provider")

    @property
    def _oracle(self) -> str:
        return self._contract("oracle")

    async def _read_reserve(self, symbol: str, asset: str) -> LendingMarket:
        dp = self._data_provider
        call = self._client.call_function
        (
            reserve_config,
            reserve_data,
            caps,
            (paused,),
            tokens,
            (price_raw,),
            reward,
        ) = await asyncio.gather(
            call(dp, "getReserveConfigurationData(address)", (asset,), _RESERVE_CONFIG_TYPES),
            call(dp, "getReserveData(address)", (asset,), _RESERVE_DATA_TYPES),
            call(dp, "getReserveCaps(address)", (asset,), ("uint256", "uint256")),
            call(dp, "getPaused(address)", (asset,), ("bool",)),
            call(dp, "getReserveTokensAddresses(address)", (asset,), ("address", "address", "address")),
            call(self._oracle, "getAssetPrice(address)", (asset,), ("uint256",)),
            self._reward_apy(symbol),
        )
        return parser.build_market(
            chain_id=self.chain_id,
            pool=self._pool,
            asset=asset,
            symbol=symbol,
            reserve_config=reserve_config,
            reserve_data=reserve_data,
            caps=caps,
            paused=paused,
            a_token=tokens[0],
            price_raw=price_raw,
            supply_reward_apy=reward.supply,
            borrow_reward_apy=reward.borrow,
        )

    async def get_markets(self) -> list[LendingMarket]:
        (reserves,) = await self._client.call_function(
            self._data_provider, "getAllReservesTokens()", (), ("(string,address)[]",)
        )
        results = await asyncio.gather(
            *(self._read_reserve(symbol, asset) for symbol, asset in reserves),
            return_exceptions=True,
        )

        markets: list[LendingMarket] = []
        for (symbol, _), result in zip(reserves, results):
            if isinstance(result, BaseException):
                logger.error("Aave reserve %s dropped: %s", symbol, result)
                continue
            markets.append(result)
        logger.info("Aave V3: %d markets", len(markets))
        return markets

    async def get_account_snapshot(self, user: str) -> AccountSnapshot:
        collateral, debt, _available, threshold, ltv, hf = await self._client.call_function(
            self._pool, "getUserAccountData(address)", (user,), _ACCOUNT_DATA_TYPES
        )
        collateral_usd = collateral / 10**parser.BASE_CURRENCY_DECIMALS
        return AccountSnapshot(
            collateral_usd=collateral_usd,
            debt_usd=debt / 10**parser.BASE_CURRENCY_DECIMALS,
            liquidation_threshold=threshold / parser.BPS,
            borrow_limit_usd=collateral_usd * ltv / parser.BPS,
            health_factor=parser.parse_health_factor(hf),
        )

    async def get_user_positions(self, user: str) -> list[LendingPosition]:
        markets = await self.get_markets()
        snapshot, *reserves = await asyncio.gather(
            self.get_account_snapshot(user),
            *(
                self._client.call_function(
                    self._data_provider,
                    "getUserReserveData(address,address)",
                    (m.asset_address, user),
                    _USER_RESERVE_TYPES,
                )
                for m in markets
            ),
        )

        positions: list[LendingPosition] = []
        for market, data in zip(markets, reserves):
            supplied = int(data[0])  # aToken balance, 1:1 with underlying
            borrowed = int(data[1]) + int(data[2])
            if supplied == 0 and borrowed == 0:
                continue
            collateral = bool(data[8])
            hf = snapshot.health_factor if snapshot.debt_usd > 0 else None
            positions.append(
                LendingPosition(
                    protocol=self.protocol,
                    chain_id=self.chain_id,
                    market_id=market.market_id,
                    user=user,
                    asset_symbol=market.asset_symbol,
                    asset_decimals=market.asset_decimals,
                    supply_balance=supplied,
                    supply_balance_usd=to_usd(supplied, market.asset_decimals, market.price_usd),
                    borrow_balance=borrowed,
                    borrow_balance_usd=to_usd(borrowed, market.asset_decimals, market.price_usd),
                    collateral_enabled=collateral,
                    supply_apy=market.net_supply_apy,
                    borrow_apy=market.net_borrow_apy,
                    health_factor=hf if borrowed > 0 else None,
                    liquidation_price=(
                        risk.liquidation_price(market.price_usd, hf)
                        if collateral and supplied > 0 and hf is not None
                        else None
                    ),
                    shares=supplied,
                )
            )
        return positions

    def _supply_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        return self._call(
            self._pool,
            "supply(address,uint256,address,uint16)",
            (market.asset_address, params.amount, params.beneficiary, REFERRAL_CODE),
            f"Supply {market.asset_symbol} to Aave V3",
        )

    def _withdraw_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        return self._call(
            self._pool,
            "withdraw(address,uint256,address)",
            (market.asset_address, params.amount, params.beneficiary),
            f"Withdraw {market.asset_symbol} from Aave V3",
        )

    def _borrow_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        return self._call(
            self._pool,
            "borrow(address,uint256,uint256,uint16,address)",
            (market.asset_address, params.amount, VARIABLE_RATE_MODE, REFERRAL_CODE, params.beneficiary),
            f"Borrow {market.asset_symbol} from Aave V3",
        )

    def _repay_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        return self._call(
            self._pool,
            "repay(address,uint256,uint256,address)",
            (market.asset_address, params.amount, VARIABLE_RATE_MODE, params.beneficiary),
            f"Repay {market.asset_symbol} on Aave V3",
        )
