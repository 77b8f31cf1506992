"""Shared adapter machinery: rate math, approvals, and action validation."""
from __future__ import annotations

import logging
import math
from typing import Any, Sequence

from ..chains.evm import abi
from ..config import ProtocolConfig, RiskPolicy
from ..errors import MarketNotFoundError
from ..interfaces.chain import ChainClient
from ..models import (
    MAX_UINT256,
    AccountSnapshot,
    ActionIssue,
    ActionParams,
    ActionType,
    CallDescription,
    HealthFactorAction,
    LendingMarket,
    LendingPosition,
    Protocol,
    ValidationResult,
)
from ..services import risk
from ..services.rewards import RewardApy, RewardApyService

logger = logging.getLogger(__name__)

SECONDS_PER_YEAR = 31_536_000
WAD = 10**18
RAY = 10**27


# ---------------------------------------------------------------------------
# Unit and rate helpers
# ---------------------------------------------------------------------------


def to_units(amount: int, decimals: int) -> float:
    return amount / 10**decimals


def to_usd(amount: int, decimals: int, price: float) -> float:
    return to_units(amount, decimals) * price


def from_usd(amount_usd: float, decimals: int, price: float) -> int:
    if price <= 0:
        return 0
    return int(amount_usd / price * 10**decimals)


def apr_to_apy(apr: float, periods: int = SECONDS_PER_YEAR) -> float:
    """Compound a fractional APR over ``periods`` and return APY in percent."""
    if apr <= 0:
        return 0.0
    return (math.pow(1 + apr / periods, periods) - 1) * 100


def ray_apr_to_apy(rate_ray: int) -> float:
    """Aave-style annual rate in ray (1e27) → APY percent."""
    return apr_to_apy(rate_ray / RAY)


def per_second_rate_to_apy(rate_wad: int) -> float:
    """Per-second rate scaled by 1e18 → APY percent, compounded per second."""
    return apr_to_apy(rate_wad / WAD * SECONDS_PER_YEAR)


# ---------------------------------------------------------------------------
# Validation builder
# ---------------------------------------------------------------------------


class _Checks:
    """Accumulates issues for one ValidationResult."""

    def __init__(self) -> None:
        self.errors: list[ActionIssue] = []
        self.warnings: list[ActionIssue] = []
        self.flags: dict[str, bool] = {}

    def error(self, code: str, message: str, flag: str | None = None) -> None:
        self.errors.append(ActionIssue(code, message, "error"))
        if flag:
            self.flags[flag] = True

    def warn(self, code: str, message: str) -> None:
        self.warnings.append(ActionIssue(code, message, "warning"))

    def result(self) -> ValidationResult:
        return ValidationResult(
            valid=not self.errors,
            errors=tuple(self.errors),
            warnings=tuple(self.warnings),
            **self.flags,
        )


# ---------------------------------------------------------------------------
# Base adapter
# ---------------------------------------------------------------------------


class BaseLendingAdapter:
    """Common adapter behaviour; subclasses supply markets, positions and calls."""

    protocol: Protocol

    def __init__(
        self,
        chain_client: ChainClient,
        config: ProtocolConfig,
        rewards: RewardApyService | None = None,
        policy: RiskPolicy | None = None,
    ) -> None:
        self._client = chain_client
        self._config = config
        self._rewards = rewards
        self._policy = policy or RiskPolicy()

    @property
    def chain_id(self) -> int:
        return self._client.chain_id

    def _contract(self, name: str) -> str:
        address = self._config.contracts.get(name, "")
        if not address:
            raise ValueError(f"{self.protocol.value}: contract '{name}' not configured")
        return address

    # -- subclass hooks -----------------------------------------------------

    async def get_markets(self) -> list[LendingMarket]:
        raise NotImplementedError

    async def get_user_positions(self, user: str) -> list[LendingPosition]:
        raise NotImplementedError

    async def get_account_snapshot(self, user: str) -> AccountSnapshot:
        raise NotImplementedError

    def _supply_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        raise NotImplementedError

    def _withdraw_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        raise NotImplementedError

    def _borrow_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        raise NotImplementedError

    def _repay_call(self, market: LendingMarket, params: ActionParams) -> CallDescription:
        raise NotImplementedError

    async def _extra_supply_calls(
        self, market: LendingMarket, params: ActionParams
    ) -> list[CallDescription]:
        return []

    # -- shared reads -------------------------------------------------------

    async def _reward_apy(self, asset_symbol: str) -> RewardApy:
        if self._rewards is None:
            return RewardApy(0.0, 0.0, "none")
        return await self._rewards.get_reward_apy(self.protocol, asset_symbol)

    async def get_market(self, market_id: str) -> LendingMarket | None:
        market_id = market_id.lower()
        for market in await self.get_markets():
            if market.market_id == market_id:
                return market
        return None

    async def _require_market(self, market_id: str) -> LendingMarket:
        market = await self.get_market(market_id)
        if market is None:
            raise MarketNotFoundError(f"{self.protocol.value}: no market {market_id}")
        return market

    async def token_balance(self, token: str, owner: str) -> int:
        (balance,) = await self._client.call_function(
            token, "balanceOf(address)", (owner,), ("uint256",)
        )
        return balance

    async def token_allowance(self, token: str, owner: str, spender: str) -> int:
        (allowance,) = await self._client.call_function(
            token, "allowance(address,address)", (owner, spender), ("uint256",)
        )
        return allowance

    async def _token_symbol(self, token: str) -> str:
        (symbol,) = await self._client.call_function(token, "symbol()", (), ("string",))
        return symbol

    async def _token_decimals(self, token: str) -> int:
        (decimals,) = await self._client.call_function(token, "decimals()", (), ("uint8",))
        return decimals

    @staticmethod
    def _call(
        to: str, signature: str, args: Sequence[Any], description: str
    ) -> CallDescription:
        name, _ = abi.parse_signature(signature)
        return CallDescription(
            to=to,
            data=abi.encode_call(signature, args),
            description=description,
            function_name=name,
        )

    async def build_approval_if_needed(
        self, token: str, owner: str, spender: str, amount: int
    ) -> list[CallDescription]:
        allowance = await self.token_allowance(token, owner, spender)
        if allowance >= amount:
            return []
        return [
            self._call(
                token,
                "approve(address,uint256)",
                (spender, MAX_UINT256),
                f"Approve {self.protocol.display_name} to spend token",
            )
        ]

    # -- call builders ------------------------------------------------------

    async def build_supply(self, params: ActionParams) -> list[CallDescription]:
        market = await self._require_market(params.market_id)
        calls = await self.build_approval_if_needed(
            market.asset_address, params.user, market.pool_address, params.amount
        )
        calls.append(self._supply_call(market, params))
        calls.extend(await self._extra_supply_calls(market, params))
        return calls

    async def build_withdraw(self, params: ActionParams) -> list[CallDescription]:
        market = await self._require_market(params.market_id)
        return [self._withdraw_call(market, params)]

    async def build_borrow(self, params: ActionParams) -> list[CallDescription]:
        market = await self._require_market(params.market_id)
        return [self._borrow_call(market, params)]

    async def build_repay(self, params: ActionParams) -> list[CallDescription]:
        market = await self._require_market(params.market_id)
        calls = await self.build_approval_if_needed(
            market.asset_address, params.user, market.pool_address, params.amount
        )
        calls.append(self._repay_call(market, params))
        return calls

    # -- health factor ------------------------------------------------------

    async def calculate_health_factor(self, user: str) -> float:
        snapshot = await self.get_account_snapshot(user)
        return snapshot.health_factor

    async def simulate_health_factor(self, user: str, action: HealthFactorAction) -> float:
        snapshot = await self.get_account_snapshot(user)
        return risk.simulate_health_factor(
            snapshot.collateral_usd,
            snapshot.debt_usd,
            snapshot.liquidation_threshold,
            action,
        )

    async def _position(self, user: str, market_id: str) -> LendingPosition | None:
        market_id = market_id.lower()
        for position in await self.get_user_positions(user):
            if position.market_id == market_id:
                return position
        return None

    def _check_resulting_hf(self, checks: _Checks, new_hf: float) -> None:
        if new_hf < self._policy.liquidatable_below:
            checks.error(
                "WOULD_CAUSE_LIQUIDATION",
                f"Resulting health factor {new_hf:.2f} would allow liquidation",
                "would_cause_liquidation",
            )
        elif new_hf < self._policy.critical_below:
            checks.warn(
                "LOW_HEALTH_FACTOR",
                f"Resulting health factor {new_hf:.2f} is dangerously low",
            )
        elif new_hf < self._policy.medium_below:
            checks.warn(
                "MODERATE_HEALTH_FACTOR",
                f"Resulting health factor {new_hf:.2f} leaves little margin",
            )

    # -- validation ---------------------------------------------------------

    async def validate_supply(self, params: ActionParams) -> ValidationResult:
        checks = _Checks()
        if params.amount <= 0:
            checks.error("ZERO_AMOUNT", "Amount must be greater than zero")
            return checks.result()

        market = await self.get_market(params.market_id)
        if market is None:
            checks.error("MARKET_NOT_FOUND", f"Market {params.market_id} not found")
            return checks.result()

        if not market.can_supply:
            checks.error("SUPPLY_DISABLED", f"Supplying {market.asset_symbol} is disabled")
        if market.is_frozen:
            checks.error("MARKET_FROZEN", f"{market.asset_symbol} market is frozen")
        if market.is_paused:
            checks.error("MARKET_PAUSED", f"{market.asset_symbol} market is paused")

        balance = await self.token_balance(market.asset_address, params.user)
        if params.amount > balance:
            checks.error(
                "INSUFFICIENT_BALANCE",
                f"Insufficient {market.asset_symbol} balance: have "
                f"{to_units(balance, market.asset_decimals):.6f}, need "
                f"{to_units(params.amount, market.asset_decimals):.6f}",
                "insufficient_balance",
            )

        remaining = market.remaining_supply_cap
        if remaining is not None and params.amount > remaining:
            checks.error(
                "EXCEEDS_SUPPLY_CAP",
                f"Supply cap leaves room for only "
                f"{to_units(remaining, market.asset_decimals):.2f} {market.asset_symbol}",
                "exceeds_cap",
            )
        return checks.result()

    async def validate_withdraw(self, params: ActionParams) -> ValidationResult:
        checks = _Checks()
        market = await self.get_market(params.market_id)
        if market is None:
            checks.error("MARKET_NOT_FOUND", f"Market {params.market_id} not found")
            return checks.result()

        position = await self._position(params.user, market.market_id)
        if position is None or position.supply_balance <= 0:
            checks.error("NO_POSITION", f"No {market.asset_symbol} supplied")
            return checks.result()

        amount = position.supply_balance if params.amount == MAX_UINT256 else params.amount
        if amount <= 0:
            checks.error("ZERO_AMOUNT", "Amount must be greater than zero")
            return checks.result()
        if amount > position.supply_balance:
            checks.error(
                "INSUFFICIENT_SUPPLY",
                f"Only {to_units(position.supply_balance, market.asset_decimals):.6f} "
                f"{market.asset_symbol} supplied",
                "insufficient_balance",
            )
        if amount > market.available_liquidity:
            checks.error(
                "INSUFFICIENT_LIQUIDITY",
                f"Pool has only {to_units(market.available_liquidity, market.asset_decimals):.2f} "
                f"{market.asset_symbol} available",
                "insufficient_liquidity",
            )

        if position.collateral_enabled and market.liquidation_threshold > 0:
            snapshot = await self.get_account_snapshot(params.user)
            if snapshot.debt_usd > 0:
                new_hf = risk.simulate_health_factor(
                    snapshot.collateral_usd,
                    snapshot.debt_usd,
                    snapshot.liquidation_threshold,
                    HealthFactorAction(
                        ActionType.WITHDRAW,
                        to_usd(amount, market.asset_decimals, market.price_usd),
                        market.liquidation_threshold,
                    ),
                )
                self._check_resulting_hf(checks, new_hf)
        return checks.result()

    async def validate_borrow(self, params: ActionParams) -> ValidationResult:
        checks = _Checks()
        if params.amount <= 0:
            checks.error("ZERO_AMOUNT", "Amount must be greater than zero")
            return checks.result()

        market = await self.get_market(params.market_id)
        if market is None:
            checks.error("MARKET_NOT_FOUND", f"Market {params.market_id} not found")
            return checks.result()

        if not market.can_borrow:
            checks.error("BORROW_DISABLED", f"Borrowing {market.asset_symbol} is disabled")
            return checks.result()
        if market.is_frozen:
            checks.error("MARKET_FROZEN", f"{market.asset_symbol} market is frozen")
        if market.is_paused:
            checks.error("MARKET_PAUSED", f"{market.asset_symbol} market is paused")

        if params.amount > market.available_liquidity:
            checks.error(
                "INSUFFICIENT_LIQUIDITY",
                f"Pool has only {to_units(market.available_liquidity, market.asset_decimals):.2f} "
                f"{market.asset_symbol} available",
                "insufficient_liquidity",
            )
        remaining = market.remaining_borrow_cap
        if remaining is not None and params.amount > remaining:
            checks.error(
                "EXCEEDS_BORROW_CAP",
                f"Borrow cap leaves room for only "
                f"{to_units(remaining, market.asset_decimals):.2f} {market.asset_symbol}",
                "exceeds_cap",
            )

        amount_usd = to_usd(params.amount, market.asset_decimals, market.price_usd)
        snapshot = await self.get_account_snapshot(params.user)
        new_debt = snapshot.debt_usd + amount_usd
        if new_debt > snapshot.borrow_limit_usd:
            checks.error(
                "EXCEEDS_LTV_LIMIT",
                f"Borrow would take debt to ${new_debt:,.2f}, above the "
                f"${snapshot.borrow_limit_usd:,.2f} limit",
            )
        elif snapshot.borrow_limit_usd > 0:
            utilization = new_debt / snapshot.borrow_limit_usd
            if utilization > 0.8:
                checks.warn(
                    "HIGH_LTV_UTILIZATION",
                    f"Borrow uses {utilization * 100:.0f}% of borrowing power",
                )
            elif utilization > 0.6:
                checks.warn(
                    "MODERATE_LTV_UTILIZATION",
                    f"Borrow uses {utilization * 100:.0f}% of borrowing power",
                )

        new_hf = risk.simulate_health_factor(
            snapshot.collateral_usd,
            snapshot.debt_usd,
            snapshot.liquidation_threshold,
            HealthFactorAction(ActionType.BORROW, amount_usd),
        )
        self._check_resulting_hf(checks, new_hf)
        return checks.result()

    async def validate_repay(self, params: ActionParams) -> ValidationResult:
        checks = _Checks()
        market = await self.get_market(params.market_id)
        if market is None:
            checks.error("MARKET_NOT_FOUND", f"Market {params.market_id} not found")
            return checks.result()

        position = await self._position(params.user, market.market_id)
        if position is None or position.borrow_balance <= 0:
            checks.error("NO_BORROW", f"No {market.asset_symbol} debt to repay")
            return checks.result()

        if params.amount <= 0:
            checks.error("ZERO_AMOUNT", "Amount must be greater than zero")
            return checks.result()

        needed = min(params.amount, position.borrow_balance)
        if params.amount != MAX_UINT256 and params.amount > position.borrow_balance:
            checks.warn(
                "OVERPAY",
                f"Amount exceeds debt; only "
                f"{to_units(position.borrow_balance, market.asset_decimals):.6f} "
                f"{market.asset_symbol} will be repaid",
            )

        balance = await self.token_balance(market.asset_address, params.user)
        if balance < needed:
            checks.error(
                "INSUFFICIENT_BALANCE",
                f"Insufficient {market.asset_symbol} balance to repay",
                "insufficient_balance",
            )
        return checks.result()
