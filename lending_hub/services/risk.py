"""Health factor and risk calculations. Pure functions, no I/O."""
from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable

from ..config import RiskPolicy
from ..models import (
    ActionType,
    HealthFactorAction,
    HealthFactorStatus,
    LendingMarket,
    LendingPosition,
    Protocol,
)

# Cap keeps the percentage finite as hf → ∞.
MAX_PRICE_DROP_PCT = 99.0


class RiskLevel(str, Enum):
    SAFE = "safe"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"
    LIQUIDATABLE = "liquidatable"


@dataclass(frozen=True)
class RiskAssessment:
    level: RiskLevel
    score: int
    message: str
    recommended_action: str
    health_factor: float
    price_drop_pct: float
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class BorrowCapacity:
    total_collateral_usd: float
    weighted_ltv: float
    max_borrow_usd: float
    safe_borrow_usd: float
    current_debt_usd: float
    available_usd: float
    utilization_pct: float


@dataclass(frozen=True)
class RateChange:
    protocol: Protocol
    market_id: str
    asset_symbol: str
    side: str
    previous: float
    current: float
    change_pct: float


# level → (message, recommended action, score)
_BANDS: dict[RiskLevel, tuple[str, str, int]] = {
    RiskLevel.LIQUIDATABLE: (
        "Position is eligible for liquidation. Repay debt or add collateral now.",
        "add_collateral",
        10,
    ),
    RiskLevel.CRITICAL: (
        "Liquidation is imminent. Add collateral or repay debt immediately.",
        "add_collateral",
        25,
    ),
    RiskLevel.HIGH: (
        "High liquidation risk. Consider repaying part of the debt.",
        "repay",
        50,
    ),
    RiskLevel.MEDIUM: (
        "Moderate risk. Monitor collateral prices closely.",
        "monitor",
        70,
    ),
    RiskLevel.LOW: ("Low risk. Position is comfortably collateralized.", "monitor", 90),
    RiskLevel.SAFE: ("Position is safe.", "none", 100),
}


# ---------------------------------------------------------------------------
# Health factor
# ---------------------------------------------------------------------------


def health_factor(
    collateral_usd: float, debt_usd: float, liquidation_threshold: float
) -> float:
    """collateral × threshold / debt, or +inf when there is no debt."""
    if debt_usd <= 0:
        return math.inf
    return collateral_usd * liquidation_threshold / debt_usd


def price_drop_to_liquidation(hf: float) -> float:
    """Percent collateral price drop that brings ``hf`` to 1, in [0, 99]."""
    if hf <= 0:
        return 0.0
    drop = max(0.0, (1 - 1 / hf) * 100)
    return min(drop, MAX_PRICE_DROP_PCT)


def simulate_health_factor(
    collateral_usd: float,
    debt_usd: float,
    liquidation_threshold: float,
    action: HealthFactorAction,
) -> float:
    """Health factor after a hypothetical action; inputs are left untouched.

    ``liquidation_threshold`` is the account's weighted threshold; the action's
    own threshold (if set) weights collateral added or removed.
    """
    weighted = collateral_usd * liquidation_threshold
    action_lt = action.liquidation_threshold or liquidation_threshold
    amount = max(0.0, action.amount_usd)

    if action.action == ActionType.SUPPLY:
        weighted += amount * action_lt
    elif action.action == ActionType.WITHDRAW:
        weighted = max(0.0, weighted - amount * action_lt)
    elif action.action == ActionType.BORROW:
        debt_usd += amount
    elif action.action == ActionType.REPAY:
        debt_usd = max(0.0, debt_usd - amount)

    if debt_usd <= 0:
        return math.inf
    return weighted / debt_usd


def liquidation_price(current_price: float, hf: float) -> float | None:
    """Collateral price at which ``hf`` reaches 1 (single-collateral, stable debt)."""
    if current_price <= 0 or hf <= 0 or math.isinf(hf):
        return None
    return current_price / hf


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def risk_level(hf: float, policy: RiskPolicy | None = None) -> RiskLevel:
    policy = policy or RiskPolicy()
    if hf < policy.liquidatable_below:
        return RiskLevel.LIQUIDATABLE
    if hf < policy.critical_below:
        return RiskLevel.CRITICAL
    if hf < policy.high_below:
        return RiskLevel.HIGH
    if hf < policy.medium_below:
        return RiskLevel.MEDIUM
    if hf < policy.low_below:
        return RiskLevel.LOW
    return RiskLevel.SAFE


def classify_risk(hf: float, policy: RiskPolicy | None = None) -> RiskAssessment:
    level = risk_level(hf, policy)
    message, action, score = _BANDS[level]
    return RiskAssessment(
        level=level,
        score=score,
        message=message,
        recommended_action=action,
        health_factor=hf,
        price_drop_pct=price_drop_to_liquidation(hf),
    )


def health_status(hf: float, policy: RiskPolicy | None = None) -> HealthFactorStatus:
    """Coarse four-band status for display: safe / warning / danger / liquidatable."""
    policy = policy or RiskPolicy()
    if math.isinf(hf):
        return HealthFactorStatus(hf, "safe", "No active borrows", False)
    if hf < policy.liquidatable_below:
        return HealthFactorStatus(
            hf, "liquidatable", "Position can be liquidated", True
        )
    if hf < policy.status_danger_below:
        return HealthFactorStatus(
            hf, "danger", "High risk: add collateral or repay debt", True
        )
    if hf < policy.status_warning_below:
        return HealthFactorStatus(hf, "warning", "Moderate risk: monitor closely", False)
    return HealthFactorStatus(hf, "safe", "Healthy position", False)


def lowest_health_factor(
    positions: Iterable[LendingPosition],
) -> tuple[float, Protocol | None]:
    """Minimum health factor across protocols and the protocol that holds it."""
    lowest, riskiest = math.inf, None
    for position in positions:
        hf = position.effective_health_factor
        if hf < lowest:
            lowest, riskiest = hf, position.protocol
    return lowest, riskiest


def assess_positions(
    positions: list[LendingPosition], policy: RiskPolicy | None = None
) -> RiskAssessment:
    """Overall assessment plus diversification warnings."""
    policy = policy or RiskPolicy()
    hf, _ = lowest_health_factor(positions)
    assessment = classify_risk(hf, policy)

    warnings: list[str] = []
    active = [p for p in positions if p.supply_balance > 0 or p.borrow_balance > 0]
    if active and len({p.protocol for p in active}) == 1:
        warnings.append(
            f"All positions are in {active[0].protocol.display_name}; "
            "consider diversifying across protocols"
        )

    collateral = [p for p in active if p.collateral_enabled and p.supply_balance_usd > 0]
    total = sum(p.supply_balance_usd for p in collateral)
    if total > 0:
        by_asset: dict[str, float] = defaultdict(float)
        for p in collateral:
            by_asset[p.asset_symbol] += p.supply_balance_usd
        for asset, usd in sorted(by_asset.items()):
            share = usd / total
            if share > policy.concentration_limit:
                warnings.append(f"{asset} makes up {share * 100:.0f}% of collateral")

    return replace(assessment, warnings=tuple(warnings))


# ---------------------------------------------------------------------------
# Borrow capacity
# ---------------------------------------------------------------------------


def borrow_capacity(
    positions: list[LendingPosition],
    markets: list[LendingMarket],
    policy: RiskPolicy | None = None,
) -> BorrowCapacity:
    """Capacity from collateral-enabled positions only, LTV-weighted by value."""
    policy = policy or RiskPolicy()
    ltv_by_key = {m.key: m.ltv for m in markets}

    collateral = [p for p in positions if p.collateral_enabled and p.supply_balance_usd > 0]
    total = sum(p.supply_balance_usd for p in collateral)
    weighted_ltv = 0.0
    if total > 0:
        weighted_ltv = (
            sum(p.supply_balance_usd * ltv_by_key.get(p.key, 0.0) for p in collateral)
            / total
        )

    max_borrow = total * weighted_ltv
    safe_borrow = max_borrow * policy.safety_margin
    debt = sum(p.borrow_balance_usd for p in positions)
    if max_borrow > 0:
        utilization = debt / max_borrow * 100
    else:
        utilization = 0.0 if debt == 0 else 100.0

    return BorrowCapacity(
        total_collateral_usd=total,
        weighted_ltv=weighted_ltv,
        max_borrow_usd=max_borrow,
        safe_borrow_usd=safe_borrow,
        current_debt_usd=debt,
        available_usd=max(0.0, safe_borrow - debt),
        utilization_pct=utilization,
    )


# ---------------------------------------------------------------------------
# Market signals
# ---------------------------------------------------------------------------


def check_rate_changes(
    current: list[LendingMarket],
    previous: list[LendingMarket],
    threshold_pct: float = 10.0,
) -> list[RateChange]:
    """Markets whose net APY moved by more than ``threshold_pct`` percent (relative)."""
    before = {m.key: m for m in previous}
    changes: list[RateChange] = []
    for market in current:
        old = before.get(market.key)
        if old is None:
            continue
        for side, prev, cur in (
            ("supply", old.net_supply_apy, market.net_supply_apy),
            ("borrow", old.net_borrow_apy, market.net_borrow_apy),
        ):
            if prev <= 0:
                continue
            change = (cur - prev) / prev * 100
            if abs(change) > threshold_pct:
                changes.append(
                    RateChange(
                        protocol=market.protocol,
                        market_id=market.market_id,
                        asset_symbol=market.asset_symbol,
                        side=side,
                        previous=prev,
                        current=cur,
                        change_pct=change,
                    )
                )
    return changes


def reward_dependency(market: LendingMarket) -> float:
    """Share of net supply APY that comes from incentives (0–1)."""
    net = market.net_supply_apy
    if net <= 0:
        return 0.0
    return market.supply_reward_apy / net


def is_reward_dominated(market: LendingMarket, policy: RiskPolicy | None = None) -> bool:
    policy = policy or RiskPolicy()
    return reward_dependency(market) > policy.reward_dominance_ratio
