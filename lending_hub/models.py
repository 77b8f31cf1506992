"""Data models — all frozen (immutable).

Native token amounts are ints in the token's smallest unit. APYs are
percentages (``3.5`` means 3.5%). Risk parameters are fractions in [0, 1].
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

MAX_UINT256 = 2**256 - 1


class Protocol(str, Enum):
    AAVE = "aave"
    COMPOUND = "compound"
    MOONWELL = "moonwell"
    MORPHO = "morpho"

    @property
    def display_name(self) -> str:
        return PROTOCOL_NAMES[self]


PROTOCOL_NAMES: dict[Protocol, str] = {
    Protocol.AAVE: "Aave V3",
    Protocol.COMPOUND: "Compound III",
    Protocol.MOONWELL: "Moonwell",
    Protocol.MORPHO: "Morpho Blue",
}


class AssetCategory(str, Enum):
    STABLECOIN = "stablecoin"
    ETH = "eth"
    LSD = "lsd"
    WRAPPED = "wrapped"
    OTHER = "other"


class ActionType(str, Enum):
    SUPPLY = "supply"
    WITHDRAW = "withdraw"
    BORROW = "borrow"
    REPAY = "repay"


_STABLECOINS = {"USDC", "USDBC", "USDT", "DAI", "USDS", "EURC", "GHO", "USDE", "LUSD", "FRAX"}
_ETH_ASSETS = {"ETH", "WETH"}
_LSD_ASSETS = {"WSTETH", "STETH", "CBETH", "RETH", "WEETH", "EZETH", "WRSETH", "SUPEROETHB"}
_WRAPPED_ASSETS = {"WBTC", "CBBTC", "TBTC", "LBTC", "CBXRP"}


def categorize_asset(symbol: str) -> AssetCategory:
    """Bucket an asset symbol into a coarse category.

    Examples:
        "USDC" → stablecoin
        "wstETH" → lsd
        "cbBTC" → wrapped
    """
    upper = symbol.upper()
    if upper in _STABLECOINS:
        return AssetCategory.STABLECOIN
    if upper in _ETH_ASSETS:
        return AssetCategory.ETH
    if upper in _LSD_ASSETS:
        return AssetCategory.LSD
    if upper in _WRAPPED_ASSETS:
        return AssetCategory.WRAPPED
    return AssetCategory.OTHER


def compute_utilization(total_supply: int, total_borrow: int) -> float:
    """Borrow / supply, clamped to [0, 1]; zero for an empty market."""
    if total_supply <= 0:
        return 0.0
    return min(max(total_borrow / total_supply, 0.0), 1.0)


# ---------------------------------------------------------------------------
# Markets and positions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LendingMarket:
    """One (protocol, asset) market on one chain."""

    protocol: Protocol
    chain_id: int
    market_id: str
    pool_address: str
    asset_address: str
    asset_symbol: str
    asset_decimals: int
    supply_apy: float = 0.0
    supply_reward_apy: float = 0.0
    borrow_apy: float = 0.0
    borrow_reward_apy: float = 0.0
    total_supply: int = 0
    total_borrow: int = 0
    total_supply_usd: float = 0.0
    total_borrow_usd: float = 0.0
    available_liquidity: int = 0
    available_liquidity_usd: float = 0.0
    utilization: float = 0.0
    ltv: float = 0.0
    liquidation_threshold: float = 0.0
    liquidation_penalty: float = 0.0
    supply_cap: int | None = None
    borrow_cap: int | None = None
    can_supply: bool = True
    can_borrow: bool = False
    can_use_as_collateral: bool = False
    is_frozen: bool = False
    is_paused: bool = False
    price_usd: float = 0.0
    receipt_token: str = ""
    name: str = ""
    last_updated: float = 0.0
    asset_category: AssetCategory = AssetCategory.OTHER

    def __post_init__(self) -> None:
        if not 0.0 <= self.ltv <= self.liquidation_threshold <= 1.0:
            raise ValueError(
                f"{self.protocol.value}:{self.market_id} violates "
                f"0 <= ltv ({self.ltv}) <= liquidation_threshold "
                f"({self.liquidation_threshold}) <= 1"
            )
        if not 0.0 <= self.utilization <= 1.0:
            raise ValueError(
                f"{self.protocol.value}:{self.market_id} utilization "
                f"{self.utilization} outside [0, 1]"
            )

    @property
    def key(self) -> tuple[Protocol, str]:
        return (self.protocol, self.market_id)

    @property
    def net_supply_apy(self) -> float:
        return self.supply_apy + self.supply_reward_apy

    @property
    def net_borrow_apy(self) -> float:
        return max(0.0, self.borrow_apy - self.borrow_reward_apy)

    @property
    def remaining_supply_cap(self) -> int | None:
        if self.supply_cap is None:
            return None
        return max(0, self.supply_cap - self.total_supply)

    @property
    def remaining_borrow_cap(self) -> int | None:
        if self.borrow_cap is None:
            return None
        return max(0, self.borrow_cap - self.total_borrow)


@dataclass(frozen=True)
class LendingPosition:
    """A user's balances in one market."""

    protocol: Protocol
    chain_id: int
    market_id: str
    user: str
    asset_symbol: str
    asset_decimals: int
    supply_balance: int = 0
    supply_balance_usd: float = 0.0
    borrow_balance: int = 0
    borrow_balance_usd: float = 0.0
    collateral_enabled: bool = False
    supply_apy: float = 0.0
    borrow_apy: float = 0.0
    health_factor: float | None = None
    liquidation_price: float | None = None
    shares: int = 0
    is_simulated: bool = False

    @property
    def key(self) -> tuple[Protocol, str]:
        return (self.protocol, self.market_id)

    @property
    def has_borrow(self) -> bool:
        return self.borrow_balance > 0

    @property
    def effective_health_factor(self) -> float:
        """Health factor, or +inf when nothing is borrowed."""
        if not self.has_borrow or self.health_factor is None:
            return math.inf
        return self.health_factor


@dataclass(frozen=True)
class AccountSnapshot:
    """Protocol-level account totals that drive health-factor math."""

    collateral_usd: float = 0.0
    debt_usd: float = 0.0
    liquidation_threshold: float = 0.0
    borrow_limit_usd: float = 0.0
    health_factor: float = math.inf


@dataclass(frozen=True)
class AggregatedPosition:
    """Per-user rollup across every protocol."""

    user: str
    total_supply_usd: float = 0.0
    total_borrow_usd: float = 0.0
    total_collateral_usd: float = 0.0
    net_worth_usd: float = 0.0
    weighted_supply_apy: float = 0.0
    weighted_borrow_apy: float = 0.0
    lowest_health_factor: float = math.inf
    riskiest_protocol: Protocol | None = None
    health_by_protocol: dict[Protocol, float] = field(default_factory=dict)
    by_protocol: dict[Protocol, dict[str, float]] = field(default_factory=dict)
    by_asset: dict[str, dict[str, float]] = field(default_factory=dict)
    positions: tuple[LendingPosition, ...] = ()
    is_simulated: bool = False


@dataclass(frozen=True)
class HealthFactorStatus:
    """User-facing health summary."""

    value: float
    status: str
    message: str
    action_required: bool
    riskiest_protocol: Protocol | None = None


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RoutingAlternative:
    market: LendingMarket
    apy_delta: float
    reason: str


@dataclass(frozen=True)
class RoutingSuggestion:
    asset: str
    action: ActionType
    recommended: LendingMarket
    reason_code: str
    reason: str
    justification: str
    alternatives: tuple[RoutingAlternative, ...] = ()


# ---------------------------------------------------------------------------
# Actions, validation and simulation
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ActionParams:
    """A requested state-changing action. ``amount=MAX_UINT256`` means "all"."""

    protocol: Protocol
    market_id: str
    asset_address: str
    amount: int
    user: str
    on_behalf_of: str | None = None

    @property
    def beneficiary(self) -> str:
        return self.on_behalf_of or self.user


@dataclass(frozen=True)
class CallDescription:
    """An unsigned call for an external executor to sign and submit."""

    to: str
    data: str
    description: str
    function_name: str = ""
    value: int = 0

    def to_tx(self, sender: str | None = None) -> dict[str, Any]:
        tx: dict[str, Any] = {"to": self.to, "data": self.data}
        if self.value:
            tx["value"] = hex(self.value)
        if sender:
            tx["from"] = sender
        return tx


@dataclass(frozen=True)
class ActionIssue:
    code: str
    message: str
    severity: str = "error"


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: tuple[ActionIssue, ...] = ()
    warnings: tuple[ActionIssue, ...] = ()
    insufficient_balance: bool = False
    insufficient_liquidity: bool = False
    would_cause_liquidation: bool = False
    exceeds_cap: bool = False

    @property
    def error_codes(self) -> tuple[str, ...]:
        return tuple(e.code for e in self.errors)

    @property
    def warning_codes(self) -> tuple[str, ...]:
        return tuple(w.code for w in self.warnings)


@dataclass(frozen=True)
class HealthFactorAction:
    """A what-if change to an account, valued in USD."""

    action: ActionType
    amount_usd: float
    liquidation_threshold: float = 0.0


class SimulationFailure(str, Enum):
    INSUFFICIENT_BALANCE = "insufficient_balance"
    INSUFFICIENT_ALLOWANCE = "insufficient_allowance"
    CAP_EXCEEDED = "cap_exceeded"
    PAUSED = "paused"
    TRANSFER_FAILED = "transfer_failed"
    ZERO_AMOUNT = "zero_amount"
    INSUFFICIENT_LIQUIDITY = "insufficient_liquidity"
    RPC_UNAVAILABLE = "rpc_unavailable"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SimulationResult:
    success: bool
    gas_estimate: int = 0
    expected_output: int = 0
    failure: SimulationFailure | None = None
    error_message: str = ""
    warnings: tuple[str, ...] = ()
    gas_cost_usd: float | None = None


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CacheEntry:
    """A cached payload with its provenance. Replaced whole, never patched."""

    payload: Any
    created_at: float
    expires_at: float
    source: str = "api"
    category: str = ""

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def age(self, now: float) -> float:
        return max(0.0, now - self.created_at)

    def time_remaining(self, now: float) -> float:
        return max(0.0, self.expires_at - now)
