"""Pre-flight transaction simulation via eth_call and eth_estimateGas.

Simulation talks to the chain directly and never reads through the cache:
a balance that was fine five minutes ago says nothing about the
transaction about to be signed.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from ..chains.evm import abi
from ..errors import ContractRevertError, DataSourceError, IntegrityError
from ..interfaces.chain import ChainClient
from ..interfaces.price_oracle import PriceOracle
from ..models import Protocol, SimulationFailure, SimulationResult

logger = logging.getLogger(__name__)

APPROVAL_WARNING = "Approval required before deposit"

FAILURE_MESSAGES: dict[SimulationFailure, str] = {
    SimulationFailure.INSUFFICIENT_BALANCE: "You don't have enough tokens to complete this transaction",
    SimulationFailure.INSUFFICIENT_ALLOWANCE: "You need to approve the protocol to spend your tokens first",
    SimulationFailure.CAP_EXCEEDED: "This pool has reached its maximum capacity",
    SimulationFailure.PAUSED: "This pool is currently paused",
    SimulationFailure.TRANSFER_FAILED: "Token transfer failed, check your balance",
    SimulationFailure.ZERO_AMOUNT: "Amount must be greater than zero",
    SimulationFailure.INSUFFICIENT_LIQUIDITY: "Not enough liquidity in the pool for this withdrawal",
    SimulationFailure.RPC_UNAVAILABLE: "Could not reach the network to simulate this transaction",
}
WITHDRAW_TOO_MUCH = "Cannot withdraw more than your balance"

# Checked in order; the first match wins.
_REVERT_PATTERNS: list[tuple[SimulationFailure, re.Pattern[str]]] = [
    (
        SimulationFailure.INSUFFICIENT_BALANCE,
        re.compile(r"insufficient[ _-]?balance|exceeds[ _-]?balance|not[ _-]?enough[ _-]?balance"),
    ),
    (SimulationFailure.INSUFFICIENT_ALLOWANCE, re.compile(r"allowance")),
    (SimulationFailure.CAP_EXCEEDED, re.compile(r"cap[ _-]?exceeded|exceeds?[ _-]?(supply[ _-]?|borrow[ _-]?)?cap|\bcap\b")),
    (SimulationFailure.PAUSED, re.compile(r"paused")),
    (SimulationFailure.TRANSFER_FAILED, re.compile(r"transfer[ _-]?(from[ _-]?)?failed|safeerc20")),
    (SimulationFailure.ZERO_AMOUNT, re.compile(r"zero|invalid[ _-]?amount")),
    (SimulationFailure.INSUFFICIENT_LIQUIDITY, re.compile(r"liquidity|insufficient[ _-]?cash")),
]


def classify_revert(message: str) -> tuple[SimulationFailure, str]:
    """Map a revert reason to a failure kind and a user-facing message."""
    lowered = message.lower()
    for failure, pattern in _REVERT_PATTERNS:
        if pattern.search(lowered):
            return failure, FAILURE_MESSAGES[failure]
    return SimulationFailure.UNKNOWN, f"Transaction would fail: {message[:100]}"


@dataclass(frozen=True)
class SimulationParams:
    protocol: Protocol
    pool_address: str
    asset_address: str
    amount: int
    user: str
    decimals: int


def _failed(failure: SimulationFailure, message: str | None = None, warnings: list[str] | None = None) -> SimulationResult:
    return SimulationResult(
        success=False,
        failure=failure,
        error_message=message or FAILURE_MESSAGES.get(failure, ""),
        warnings=tuple(warnings or ()),
    )


def deposit_calldata(params: SimulationParams) -> str:
    protocol = Protocol(params.protocol)
    if protocol == Protocol.AAVE:
        return abi.encode_call(
            "supply(address,uint256,address,uint16)",
            (params.asset_address, params.amount, params.user, 0),
        )
    if protocol == Protocol.COMPOUND:
        return abi.encode_call("supply(address,uint256)", (params.asset_address, params.amount))
    if protocol == Protocol.MOONWELL:
        return abi.encode_call("mint(uint256)", (params.amount,))
    return abi.encode_call("deposit(uint256,address)", (params.amount, params.user))


def withdraw_calldata(params: SimulationParams) -> str:
    protocol = Protocol(params.protocol)
    if protocol == Protocol.AAVE:
        return abi.encode_call(
            "withdraw(address,uint256,address)",
            (params.asset_address, params.amount, params.user),
        )
    if protocol == Protocol.COMPOUND:
        return abi.encode_call("withdraw(address,uint256)", (params.asset_address, params.amount))
    if protocol == Protocol.MOONWELL:
        return abi.encode_call("redeemUnderlying(uint256)", (params.amount,))
    return abi.encode_call(
        "withdraw(uint256,address,address)", (params.amount, params.user, params.user)
    )


# Aave Pool.getReserveData (ReserveDataLegacy)
_AAVE_RESERVE_DATA = (
    "uint256", "uint128", "uint128", "uint128", "uint128", "uint128", "uint40",
    "uint16", "address", "address", "address", "address", "uint128", "uint128", "uint128",
)


class TransactionSimulator:
    """Dry-run deposits and withdrawals against current chain state."""

    def __init__(self, chain_client: ChainClient, price_oracle: PriceOracle | None = None) -> None:
        self._client = chain_client
        self._price_oracle = price_oracle

    async def _read(self, to: str, signature: str, args: tuple[Any, ...], out: str) -> Any:
        (value,) = await self._client.call_function(to, signature, args, (out,))
        return value

    async def _dry_run(
        self, params: SimulationParams, data: str, expected_output: int, warnings: list[str]
    ) -> SimulationResult:
        tx = {"from": params.user, "to": params.pool_address, "data": data}
        try:
            await self._client.eth_call(tx)
        except ContractRevertError as e:
            failure, message = classify_revert(e.reason)
            logger.info("Simulation of %s reverted: %s", params.protocol, e.reason)
            return _failed(failure, message, warnings)

        gas = await self._client.estimate_gas(tx)
        return SimulationResult(
            success=True,
            gas_estimate=gas,
            expected_output=expected_output,
            warnings=tuple(warnings),
            gas_cost_usd=await self.gas_cost_usd(gas),
        )

    async def gas_cost_usd(self, gas: int) -> float | None:
        """Gas × gas price in USD; None when either input is unavailable."""
        if self._price_oracle is None or gas <= 0:
            return None
        try:
            gas_price = await self._client.gas_price()
            prices = await self._price_oracle.fetch_prices(["ETH"])
        except DataSourceError as e:
            logger.warning("Gas cost unavailable: %s", e)
            return None
        eth_price = prices.get("ETH")
        if not eth_price:
            return None
        return gas * gas_price / 1e18 * eth_price

    # -- deposit ------------------------------------------------------------

    async def simulate_deposit(self, params: SimulationParams) -> SimulationResult:
        if params.amount <= 0:
            return _failed(SimulationFailure.ZERO_AMOUNT)
        try:
            return await self._simulate_deposit(params)
        except DataSourceError as e:
            logger.error("Deposit simulation could not reach the chain: %s", e)
            return _failed(SimulationFailure.RPC_UNAVAILABLE)
        except IntegrityError as e:
            return _failed(SimulationFailure.UNKNOWN, f"Transaction would fail: {str(e)[:100]}")

    async def _simulate_deposit(self, params: SimulationParams) -> SimulationResult:
        warnings: list[str] = []
        balance = await self._read(
            params.asset_address, "balanceOf(address)", (params.user,), "uint256"
        )
        if balance < params.amount:
            return _failed(SimulationFailure.INSUFFICIENT_BALANCE)

        allowance = await self._read(
            params.asset_address,
            "allowance(address,address)",
            (params.user, params.pool_address),
            "uint256",
        )
        if allowance < params.amount:
            warnings.append(APPROVAL_WARNING)

        expected = params.amount
        if Protocol(params.protocol) == Protocol.MORPHO:
            max_deposit = await self._read(
                params.pool_address, "maxDeposit(address)", (params.user,), "uint256"
            )
            if max_deposit < params.amount:
                return _failed(SimulationFailure.CAP_EXCEEDED, warnings=warnings)
            expected = await self._read(
                params.pool_address, "previewDeposit(uint256)", (params.amount,), "uint256"
            )

        return await self._dry_run(params, deposit_calldata(params), expected, warnings)

    # -- withdraw -----------------------------------------------------------

    async def simulate_withdraw(self, params: SimulationParams) -> SimulationResult:
        if params.amount <= 0:
            return _failed(SimulationFailure.ZERO_AMOUNT)
        try:
            return await self._simulate_withdraw(params)
        except DataSourceError as e:
            logger.error("Withdraw simulation could not reach the chain: %s", e)
            return _failed(SimulationFailure.RPC_UNAVAILABLE)
        except IntegrityError as e:
            return _failed(SimulationFailure.UNKNOWN, f"Transaction would fail: {str(e)[:100]}")

    async def _position_and_liquidity(self, params: SimulationParams) -> tuple[int, int]:
        """(user's withdrawable underlying, pool's withdrawable underlying)."""
        protocol = Protocol(params.protocol)
        pool, user = params.pool_address, params.user

        if protocol == Protocol.AAVE:
            reserve = await self._client.call_function(
                pool, "getReserveData(address)", (params.asset_address,), _AAVE_RESERVE_DATA
            )
            a_token = reserve[8]
            balance = await self._read(a_token, "balanceOf(address)", (user,), "uint256")
            cash = await self._read(
                params.asset_address, "balanceOf(address)", (a_token,), "uint256"
            )
            return balance, cash

        if protocol == Protocol.COMPOUND:
            base_token = await self._read(pool, "baseToken()", (), "address")
            if str(base_token).lower() == params.asset_address.lower():
                balance = await self._read(pool, "balanceOf(address)", (user,), "uint256")
            else:
                balance = await self._read(
                    pool,
                    "collateralBalanceOf(address,address)",
                    (user, params.asset_address),
                    "uint128",
                )
            cash = await self._read(params.asset_address, "balanceOf(address)", (pool,), "uint256")
            return balance, cash

        if protocol == Protocol.MOONWELL:
            mtokens = await self._read(pool, "balanceOf(address)", (user,), "uint256")
            rate = await self._read(pool, "exchangeRateStored()", (), "uint256")
            cash = await self._read(pool, "getCash()", (), "uint256")
            return mtokens * rate // 10**18, cash

        shares = await self._read(pool, "balanceOf(address)", (user,), "uint256")
        balance = 0
        if shares:
            balance = await self._read(pool, "previewRedeem(uint256)", (shares,), "uint256")
        max_withdraw = await self._read(pool, "maxWithdraw(address)", (user,), "uint256")
        return balance, max_withdraw

    async def _simulate_withdraw(self, params: SimulationParams) -> SimulationResult:
        warnings: list[str] = []
        balance, liquidity = await self._position_and_liquidity(params)
        if balance < params.amount:
            return _failed(SimulationFailure.INSUFFICIENT_BALANCE, WITHDRAW_TOO_MUCH)
        if liquidity < params.amount:
            if liquidity > 0:
                warnings.append(f"Maximum withdrawable: {liquidity}")
            return _failed(SimulationFailure.INSUFFICIENT_LIQUIDITY, warnings=warnings)

        expected = params.amount
        if Protocol(params.protocol) == Protocol.MORPHO:
            expected = await self._read(
                params.pool_address, "previewWithdraw(uint256)", (params.amount,), "uint256"
            )
        return await self._dry_run(params, withdraw_calldata(params), expected, warnings)
