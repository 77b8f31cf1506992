"""Compound III (Comet) adapter: a base-asset ledger plus collateral assets."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

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

_ASSET_INFO_TYPE = ("(uint8,address,address,uint64,uint64,uint64,uint64,uint128)",)


@dataclass(frozen=True)
class _CollateralAsset:
    info: parser.AssetInfo
    symbol: str
    price: float


@dataclass(frozen=True)
class _CometState:
    comet: str
    base_token: str
    base_symbol: str
    base_decimals: int
    base_price: float
    collateral: tuple[_CollateralAsset, ...]
    markets: tuple[LendingMarket, ...]


class CompoundV3Adapter(BaseLendingAdapter):
    """One or more Comet deployments (config keys starting with ``comet``)."""

    protocol = Protocol.COMPOUND

    @property
    def _comets(self) -> list[str]:
        return [
            address
            for name, address in sorted(self._config.contracts.items())
            if name.startswith("comet") and address
        ]

    async def _read_collateral(
        self, comet: str, index: int
    ) -> tuple[_CollateralAsset, int, int]:
        call = self._client.call_function
        (raw,) = await call(comet, "getAssetInfo(uint8)", (index,), _ASSET_INFO_TYPE)
        info = parser.parse_asset_info(raw)
        symbol, (price_raw,), (total_supplied, _) = await asyncio.gather(
            self._token_symbol(info.asset),
            call(comet, "getPrice(address)", (info.price_feed,), ("uint256",)),
            call(comet, "totalsCollateral(address)", (info.asset,), ("uint128", "uint128")),
        )
        price = price_raw / 10**parser.PRICE_DECIMALS
        return _CollateralAsset(info, symbol, price), total_supplied, price_raw

    async def _comet_state(self, comet: str) -> _CometState:
        call = self._client.call_function
        (
            (base_token,),
            (base_feed,),
            (num_assets,),
            (utilization,),
            (total_supply,),
            (total_borrow,),
            (supply_paused,),
            (withdraw_paused,),
            (decimals,),
        ) = await asyncio.gather(
            call(comet, "baseToken()", (), ("address",)),
            call(comet, "baseTokenPriceFeed()", (), ("address",)),
            call(comet, "numAssets()", (), ("uint8",)),
            call(comet, "getUtilization()", (), ("uint256",)),
            call(comet, "totalSupply()", (), ("uint256",)),
            call(comet, "totalBorrow()", (), ("uint256",)),
            call(comet, "isSupplyPaused()", (), ("bool",)),
            call(comet, "isWithdrawPaused()", (), ("bool",)),
            call(comet, "decimals()", (), ("uint8",)),
        )
        (supply_rate,), (borrow_rate,), (base_price_raw,), base_symbol = await asyncio.gather(
            call(comet, "getSupplyRate(uint256)", (utilization,), ("uint64",)),
            call(comet, "getBorrowRate(uint256)", (utilization,), ("uint64",)),
            call(comet, "getPrice(address)", (base_feed,), ("uint256",)),
            self._token_symbol(base_token),
        )
        reward = await self._reward_apy(base_symbol)

        base_market = parser.build_base_market(
            chain_id=self.chain_id,
            comet=comet,
            base_token=base_token,
            symbol=base_symbol,
            decimals=decimals,
            total_supply=total_supply,
            total_borrow=total_borrow,
            supply_rate=supply_rate,
            borrow_rate=borrow_rate,
            price_raw=base_price_raw,
            supply_paused=supply_paused,
            withdraw_paused=withdraw_paused,
            supply_reward_apy=reward.supply,
            borrow_reward_apy=reward.borrow,
        )

        collateral_reads = await asyncio.gather(
            *(self._read_collateral(comet, i) for i in range(num_assets))
        )
        collateral = tuple(asset for asset, _, _ in collateral_reads)
        markets = [base_market] + [
            parser.build_collateral_market(
                chain_id=self.chain_id,
                comet=comet,
                base_symbol=base_symbol,
                info=asset.info,
                symbol=asset.symbol,
                total_supplied=total_supplied,
                price_raw=price_raw,
                supply_paused=supply_paused,
            )
            for asset, total_supplied, price_raw in collateral_reads
        ]

        return _CometState(
            comet=comet,
            base_token=base_token,
            base_symbol=base_symbol,
            base_decimals=decimals,
            base_price=base_price_raw / 10**parser.PRICE_DECIMALS,
            collateral=collateral,
            markets=tuple(markets),
        )

    async def get_markets(self) -> list[LendingMarket]:
        markets: list[LendingMarket] = []
        results = await asyncio.gather(
            *(self._comet_state(c) for c in self._comets), return_exceptions=True
        )
        for comet, result in zip(self._comets, results):
            if isinstance(result, BaseException):
                logger.error("Compound comet %s dropped: %s", comet, result)
                continue
            markets.extend(result.markets)
        logger.info("Compound III: %d markets", len(markets))
        return markets

    async def _comet_account(
        self, state: _CometState, user: str
    ) -> tuple[list[LendingPosition], AccountSnapshot]:
        call = self._client.call_function
        comet = state.comet
        (supplied,), (borrowed,), *collateral_balances = await asyncio.gather(
            call(comet, "balanceOf(address)", (user,), ("uint256",)),
            call(comet, "borrowBalanceOf(address)", (user,), ("uint256",)),
            *(
                call(comet, "collateralBalanceOf(address,address)", (user, a.info.asset), ("uint128",))
                for a in state.collateral
            ),
        )

        debt_usd = to_usd(borrowed, state.base_decimals, state.base_price)
        collateral_values = [
            (to_usd(balance, asset.info.decimals, asset.price), asset.info)
            for asset, (balance,) in zip(state.collateral, collateral_balances)
        ]
        snapshot = parser.comet_snapshot(collateral_values, debt_usd)
        hf = snapshot.health_factor if borrowed > 0 else None
        base = state.markets[0]

        positions: list[LendingPosition] = []
        if supplied > 0 or borrowed > 0:
            # balanceOf already reports underlying units.
            positions.append(
                LendingPosition(
                    protocol=self.protocol,
                    chain_id=self.chain_id,
                    market_id=base.market_id,
                    user=user,
                    asset_symbol=state.base_symbol,
                    asset_decimals=state.base_decimals,
                    supply_balance=supplied,
                    supply_balance_usd=to_usd(supplied, state.base_decimals, state.base_price),
                    borrow_balance=borrowed,
                    borrow_balance_usd=debt_usd,
                    collateral_enabled=False,
                    supply_apy=base.net_supply_apy,
                    borrow_apy=base.net_borrow_apy,
                    health_factor=hf,
                    shares=supplied,
                )
            )

        for asset, (balance,), (usd, _) in zip(
            state.collateral, collateral_balances, collateral_values
        ):
            if balance == 0:
                continue
            positions.append(
                LendingPosition(
                    protocol=self.protocol,
                    chain_id=self.chain_id,
                    market_id=parser.collateral_market_id(comet, asset.info.asset),
                    user=user,
                    asset_symbol=asset.symbol,
                    asset_decimals=asset.info.decimals,
                    supply_balance=balance,
                    supply_balance_usd=usd,
                    collateral_enabled=True,
                    liquidation_price=(
                        risk.liquidation_price(asset.price, hf) if hf is not None else None
                    ),
                    shares=balance,
                )
            )
        return positions, snapshot

    async def _accounts(self, user: str) -> list[tuple[list[LendingPosition], AccountSnapshot]]:
        states = await asyncio.gather(*(self._comet_state(c) for c in self._comets))
        return list(await asyncio.gather(*(self._comet_account(s, user) for s in states)))

    async def get_user_positions(self, user: str) -> list[LendingPosition]:
        return [p for positions, _ in await self._accounts(user) for p in positions]

    async def get_account_snapshot(self, user: str) -> AccountSnapshot:
        return parser.merge_snapshots([snap for _, snap in await self._accounts(user)])

    def _supply_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        return self._call(
            market.pool_address,
            "supply(address,uint256)",
            (market.asset_address, params.amount),
            f"Supply {market.asset_symbol} to Compound III",
        )

    def _withdraw_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        return self._call(
            market.pool_address,
            "withdraw(address,uint256)",
            (market.asset_address, params.amount),
            f"Withdraw {market.asset_symbol} from Compound III",
        )

    def _borrow_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        # Borrowing is withdrawing more base asset than supplied.
        return self._call(
            market.pool_address,
            "withdraw(address,uint256)",
            (market.asset_address, params.amount),
            f"Borrow {market.asset_symbol} from Compound III",
        )

    def _repay_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        return self._call(
            market.pool_address,
            "supply(address,uint256)",
            (market.asset_address, params.amount),
            f"Repay {market.asset_symbol} on Compound III",
        )

    def build_claim_rewards(self, user: str, comet: str | None = None) -> CallDescription:
        """Claim accrued COMP for ``user`` from the rewards contract."""
        comet = comet or self._comets[0]
        return self._call(
            self._contract("rewards"),
            "claim(address,address,bool)",
            (comet, user, True),
            "Claim Compound III rewards",
        )
