"""Morpho ERC-4626 vault adapter (supply only)."""
from __future__ import annotations

import asyncio
import logging

from ...config import ProtocolConfig, RiskPolicy
from ...datasources.morpho_api import MorphoApiClient, MorphoVaultPosition
from ...errors import DataSourceError, IntegrityError, UnsupportedActionError
from ...interfaces.chain import ChainClient
from ...interfaces.price_oracle import PriceOracle
from ...models import (
    MAX_UINT256,
    AccountSnapshot,
    ActionParams,
    CallDescription,
    LendingMarket,
    LendingPosition,
    Protocol,
    ValidationResult,
)
from ...services.rewards import RewardApyService
from ..base import BaseLendingAdapter, _Checks, to_usd
from . import parser

logger = logging.getLogger(__name__)


class MorphoVaultAdapter(BaseLendingAdapter):
    """MetaMorpho vaults: deposit underlying, receive ERC-4626 shares.

    Vault metadata comes from the Morpho API; share conversion always goes
    through the vault's own preview functions on-chain.
    """

    protocol = Protocol.MORPHO

    def __init__(
        self,
        chain_client: ChainClient,
        config: ProtocolConfig,
        rewards: RewardApyService | None = None,
        policy: RiskPolicy | None = None,
        api: MorphoApiClient | None = None,
        price_oracle: PriceOracle | None = None,
    ) -> None:
        super().__init__(chain_client, config, rewards, policy)
        self._api = api
        self._price_oracle = price_oracle

    # -- markets ------------------------------------------------------------

    async def get_markets(self) -> list[LendingMarket]:
        if self._api is not None:
            try:
                vaults = await self._api.fetch_vaults()
            except DataSourceError as e:
                logger.warning("Morpho API unavailable (%s); reading vaults on-chain", e)
            else:
                markets = [
                    parser.market_from_vault(v, self.chain_id, self._policy.max_reward_apy)
                    for v in vaults
                ]
                logger.info("Morpho: %d vaults", len(markets))
                return markets
        return await self._markets_from_chain()

    async def _read_vault(self, vault: str) -> tuple[str, str, str, int, int]:
        call = self._client.call_function
        (asset,), (total_assets,), (name,) = await asyncio.gather(
            call(vault, "asset()", (), ("address",)),
            call(vault, "totalAssets()", (), ("uint256",)),
            call(vault, "name()", (), ("string",)),
        )
        symbol, decimals = await asyncio.gather(
            self._token_symbol(asset), self._token_decimals(asset)
        )
        return name, asset, symbol, decimals, total_assets

    async def _markets_from_chain(self) -> list[LendingMarket]:
        vaults = list(self._config.vaults)
        if not vaults:
            logger.warning("Morpho: no vault addresses configured for on-chain reads")
            return []

        reads = await asyncio.gather(
            *(self._read_vault(v) for v in vaults), return_exceptions=True
        )
        ok = [(v, r) for v, r in zip(vaults, reads) if not isinstance(r, BaseException)]
        for vault, result in zip(vaults, reads):
            if isinstance(result, BaseException):
                logger.error("Morpho vault %s dropped: %s", vault, result)

        prices: dict[str, float] = {}
        if self._price_oracle is not None and ok:
            prices = await self._price_oracle.fetch_prices(sorted({r[2] for _, r in ok}))

        markets = []
        for vault, (name, asset, symbol, decimals, total_assets) in ok:
            markets.append(
                parser.market_from_chain(
                    chain_id=self.chain_id,
                    vault=vault,
                    name=name,
                    asset=asset,
                    symbol=symbol,
                    decimals=decimals,
                    total_assets=total_assets,
                    price_usd=prices.get(symbol, 0.0),
                )
            )
        logger.info("Morpho: %d vaults read on-chain", len(markets))
        return markets

    # -- positions ----------------------------------------------------------

    async def _vault_position(self, market: LendingMarket, user: str) -> tuple[int, int]:
        """(shares, underlying assets) for ``user`` in one vault."""
        (shares,) = await self._client.call_function(
            market.pool_address, "balanceOf(address)", (user,), ("uint256",)
        )
        if shares == 0:
            return 0, 0
        (assets,) = await self._client.call_function(
            market.pool_address, "previewRedeem(uint256)", (shares,), ("uint256",)
        )
        return shares, assets

    async def _api_positions(self, user: str) -> dict[str, MorphoVaultPosition]:
        if self._api is None:
            return {}
        try:
            return {p.vault_address: p for p in await self._api.fetch_user_positions(user)}
        except DataSourceError as e:
            logger.warning("Morpho API positions unavailable: %s", e)
            return {}

    async def get_user_positions(self, user: str) -> list[LendingPosition]:
        markets = await self.get_markets()
        reads = await asyncio.gather(
            *(self._vault_position(m, user) for m in markets), return_exceptions=True
        )

        api_positions: dict[str, MorphoVaultPosition] | None = None
        positions: list[LendingPosition] = []
        for market, result in zip(markets, reads):
            if isinstance(result, DataSourceError):
                # Chain unreachable for this vault; the API balance is the next best.
                if api_positions is None:
                    api_positions = await self._api_positions(user)
                api = api_positions.get(market.market_id)
                if api is None:
                    logger.error("Morpho position in %s unavailable: %s", market.name, result)
                    continue
                shares, assets = api.shares, api.assets
            elif isinstance(result, BaseException):
                raise result
            else:
                shares, assets = result

            if shares == 0:
                continue
            positions.append(
                LendingPosition(
                    protocol=self.protocol,
                    chain_id=self.chain_id,
                    market_id=market.market_id,
                    user=user,
                    asset_symbol=market.asset_symbol,
                    asset_decimals=market.asset_decimals,
                    supply_balance=assets,
                    supply_balance_usd=to_usd(assets, market.asset_decimals, market.price_usd),
                    supply_apy=market.net_supply_apy,
                    shares=shares,
                )
            )
        return positions

    async def get_account_snapshot(self, user: str) -> AccountSnapshot:
        # Vault shares are not collateral and vaults carry no debt.
        return AccountSnapshot()

    async def preview_deposit(self, vault: str, assets: int) -> int:
        (shares,) = await self._client.call_function(
            vault, "previewDeposit(uint256)", (assets,), ("uint256",)
        )
        return shares

    async def preview_withdraw(self, vault: str, assets: int) -> int:
        (shares,) = await self._client.call_function(
            vault, "previewWithdraw(uint256)", (assets,), ("uint256",)
        )
        return shares

    # -- calls --------------------------------------------------------------

    def _supply_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        return self._call(
            market.pool_address,
            "deposit(uint256,address)",
            (params.amount, params.beneficiary),
            f"Deposit {market.asset_symbol} into {market.name}",
        )

    def _withdraw_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        return self._call(
            market.pool_address,
            "withdraw(uint256,address,address)",
            (params.amount, params.beneficiary, params.user),
            f"Withdraw {market.asset_symbol} from {market.name}",
        )

    async def build_withdraw(self, params: ActionParams) -> list[CallDescription]:
        market = await self._require_market(params.market_id)
        if params.amount != MAX_UINT256:
            return [self._withdraw_call(market, params)]
        (shares,) = await self._client.call_function(
            market.pool_address, "balanceOf(address)", (params.user,), ("uint256",)
        )
        if shares == 0:
            raise IntegrityError(f"No shares of {market.name} to redeem")
        return [
            self._call(
                market.pool_address,
                "redeem(uint256,address,address)",
                (shares, params.beneficiary, params.user),
                f"Withdraw all {market.asset_symbol} from {market.name}",
            )
        ]

    async def build_borrow(self, params: ActionParams) -> list[CallDescription]:
        raise UnsupportedActionError("Morpho vaults do not support borrowing")

    async def build_repay(self, params: ActionParams) -> list[CallDescription]:
        raise UnsupportedActionError("Morpho vaults do not support repaying")

    async def validate_repay(self, params: ActionParams) -> ValidationResult:
        checks = _Checks()
        checks.error("BORROW_DISABLED", "Morpho vaults do not support borrowing")
        return checks.result()
