"""Moonwell adapter, exchange-rate receipt tokens (mTokens)."""
from __future__ import annotations

import asyncio
import logging
import math

from ...errors import IntegrityError
from ...models import (
    MAX_UINT256,
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


class MoonwellAdapter(BaseLendingAdapter):
    """Moonwell Comptroller and its listed mToken markets."""

    protocol = Protocol.MOONWELL

    @property
    def _comptroller(self) -> str:
        return self._contract("comptroller")

    async def _read_market(
        self, mtoken: str, oracle: str, penalty: float
    ) -> LendingMarket | None:
        call = self._client.call_function
        comptroller = self._comptroller
        (listed, collateral_factor), (underlying,) = await asyncio.gather(
            call(comptroller, "markets(address)", (mtoken,), ("bool", "uint256")),
            call(mtoken, "underlying()", (), ("address",)),
        )
        if not listed:
            logger.debug("Moonwell market %s is not listed", mtoken)
            return None

        (
            symbol,
            decimals,
            (total_mtokens,),
            (total_borrows,),
            (cash,),
            (exchange_rate,),
            (supply_rate,),
            (borrow_rate,),
            (mint_paused,),
            (borrow_paused,),
            (supply_cap,),
            (borrow_cap,),
            (price_raw,),
        ) = await asyncio.gather(
            self._token_symbol(underlying),
            self._token_decimals(underlying),
            call(mtoken, "totalSupply()", (), ("uint256",)),
            call(mtoken, "totalBorrows()", (), ("uint256",)),
            call(mtoken, "getCash()", (), ("uint256",)),
            call(mtoken, "exchangeRateStored()", (), ("uint256",)),
            call(mtoken, "supplyRatePerTimestamp()", (), ("uint256",)),
            call(mtoken, "borrowRatePerTimestamp()", (), ("uint256",)),
            call(comptroller, "mintGuardianPaused(address)", (mtoken,), ("bool",)),
            call(comptroller, "borrowGuardianPaused(address)", (mtoken,), ("bool",)),
            call(comptroller, "supplyCaps(address)", (mtoken,), ("uint256",)),
            call(comptroller, "borrowCaps(address)", (mtoken,), ("uint256",)),
            call(oracle, "getUnderlyingPrice(address)", (mtoken,), ("uint256",)),
        )
        reward = await self._reward_apy(symbol)
        return parser.build_market(
            chain_id=self.chain_id,
            mtoken=mtoken,
            underlying=underlying,
            symbol=symbol,
            decimals=decimals,
            total_mtokens=total_mtokens,
            total_borrows=total_borrows,
            cash=cash,
            exchange_rate=exchange_rate,
            supply_rate=supply_rate,
            borrow_rate=borrow_rate,
            collateral_factor=collateral_factor,
            mint_paused=mint_paused,
            borrow_paused=borrow_paused,
            supply_cap=supply_cap,
            borrow_cap=borrow_cap,
            price_raw=price_raw,
            penalty=penalty,
            supply_reward_apy=reward.supply,
            borrow_reward_apy=reward.borrow,
        )

    async def get_markets(self) -> list[LendingMarket]:
        call = self._client.call_function
        comptroller = self._comptroller
        (mtokens,), (oracle,), (incentive,) = await asyncio.gather(
            call(comptroller, "getAllMarkets()", (), ("address[]",)),
            call(comptroller, "oracle()", (), ("address",)),
            call(comptroller, "liquidationIncentiveMantissa()", (), ("uint256",)),
        )
        penalty = parser.liquidation_penalty(incentive)

        results = await asyncio.gather(
            *(self._read_market(m, oracle, penalty) for m in mtokens),
            return_exceptions=True,
        )
        markets: list[LendingMarket] = []
        for mtoken, result in zip(mtokens, results):
            if isinstance(result, BaseException):
                logger.error("Moonwell market %s dropped: %s", mtoken, result)
            elif result is not None:
                markets.append(result)
        logger.info("Moonwell: %d markets", len(markets))
        return markets

    async def _account(self, user: str) -> tuple[list[LendingPosition], AccountSnapshot]:
        markets = await self.get_markets()
        call = self._client.call_function
        (entered,), *snapshots = await asyncio.gather(
            call(self._comptroller, "getAssetsIn(address)", (user,), ("address[]",)),
            *(
                call(
                    m.pool_address,
                    "getAccountSnapshot(address)",
                    (user,),
                    ("uint256", "uint256", "uint256", "uint256"),
                )
                for m in markets
            ),
        )
        entered_set = {a.lower() for a in entered}

        rows: list[tuple[LendingMarket, int, int, int, bool]] = []
        for market, (err, mtoken_balance, borrowed, exchange_rate) in zip(markets, snapshots):
            if err != 0:
                logger.error(
                    "Moonwell getAccountSnapshot error %s for %s", err, market.asset_symbol
                )
                continue
            if mtoken_balance == 0 and borrowed == 0:
                continue
            # The exchange rate comes from this read, never from a cached market.
            supplied = parser.underlying_from_mtokens(mtoken_balance, exchange_rate)
            rows.append(
                (market, supplied, borrowed, mtoken_balance, market.market_id in entered_set)
            )

        collateral_usd = weighted = debt_usd = 0.0
        for market, supplied, borrowed, _, is_collateral in rows:
            debt_usd += to_usd(borrowed, market.asset_decimals, market.price_usd)
            if is_collateral:
                usd = to_usd(supplied, market.asset_decimals, market.price_usd)
                collateral_usd += usd
                weighted += usd * market.liquidation_threshold
        hf = math.inf if debt_usd <= 0 else weighted / debt_usd
        snapshot = AccountSnapshot(
            collateral_usd=collateral_usd,
            debt_usd=debt_usd,
            liquidation_threshold=weighted / collateral_usd if collateral_usd > 0 else 0.0,
            # Collateral factor doubles as LTV, so the limit equals the weighted value.
            borrow_limit_usd=weighted,
            health_factor=hf,
        )

        positions = [
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
                collateral_enabled=is_collateral,
                supply_apy=market.net_supply_apy,
                borrow_apy=market.net_borrow_apy,
                health_factor=hf if borrowed > 0 else None,
                liquidation_price=(
                    risk.liquidation_price(market.price_usd, hf)
                    if is_collateral and debt_usd > 0
                    else None
                ),
                shares=mtoken_balance,
            )
            for market, supplied, borrowed, mtoken_balance, is_collateral in rows
        ]
        return positions, snapshot

    async def get_user_positions(self, user: str) -> list[LendingPosition]:
        positions, _ = await self._account(user)
        return positions

    async def get_account_snapshot(self, user: str) -> AccountSnapshot:
        _, snapshot = await self._account(user)
        return snapshot

    async def _extra_supply_calls(
        self, market: LendingMarket, params: ActionParams
    ) -> list[CallDescription]:
        if not market.can_use_as_collateral:
            return []
        (entered,) = await self._client.call_function(
            self._comptroller, "getAssetsIn(address)", (params.user,), ("address[]",)
        )
        if market.market_id in {a.lower() for a in entered}:
            return []
        return [self.build_collateral_toggle(market, enable=True)]

    def build_collateral_toggle(self, market: LendingMarket, enable: bool) -> CallDescription:
        if enable:
            return self._call(
                self._comptroller,
                "enterMarkets(address[])",
                ([market.pool_address],),
                f"Use {market.asset_symbol} as collateral on Moonwell",
            )
        return self._call(
            self._comptroller,
            "exitMarket(address)",
            (market.pool_address,),
            f"Stop using {market.asset_symbol} as collateral on Moonwell",
        )

    async def build_withdraw(self, params: ActionParams) -> list[CallDescription]:
        market = await self._require_market(params.market_id)
        if params.amount != MAX_UINT256:
            return [self._withdraw_call(market, params)]
        # Full exit redeems every mToken so no dust is left behind.
        (mtoken_balance,) = await self._client.call_function(
            market.pool_address, "balanceOf(address)", (params.user,), ("uint256",)
        )
        if mtoken_balance == 0:
            raise IntegrityError(f"No {market.asset_symbol} mTokens to redeem")
        return [
            self._call(
                market.pool_address,
                "redeem(uint256)",
                (mtoken_balance,),
                f"Withdraw all {market.asset_symbol} from Moonwell",
            )
        ]

    def _supply_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        return self._call(
            market.pool_address,
            "mint(uint256)",
            (params.amount,),
            f"Supply {market.asset_symbol} to Moonwell",
        )

    def _withdraw_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        return self._call(
            market.pool_address,
            "redeemUnderlying(uint256)",
            (params.amount,),
            f"Withdraw {market.asset_symbol} from Moonwell",
        )

    def _borrow_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        return self._call(
            market.pool_address,
            "borrow(uint256)",
            (params.amount,),
            f"Borrow {market.asset_symbol} from Moonwell",
        )

    def _repay_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        return self._call(
            market.pool_address,
            "repayBorrow(uint256)",
            (params.amount,),
            f"Repay {market.asset_symbol} on Moonwell",
        )
