"""Routing suggestions: rank eligible markets for a supply or borrow intent."""
from __future__ import annotations

import logging
from typing import Iterable

from ..config import RiskPolicy
from ..models import (
    ActionType,
    LendingMarket,
    Protocol,
    RoutingAlternative,
    RoutingSuggestion,
)
from . import risk

logger = logging.getLogger(__name__)

REASON_HIGHEST_APY = "highest_apy"
REASON_LOWEST_RATE = "lowest_rate"


def _net_apy(market: LendingMarket, action: ActionType) -> float:
    if action == ActionType.BORROW:
        return market.net_borrow_apy
    return market.net_supply_apy


def _eligible(market: LendingMarket, action: ActionType, amount: int | None) -> bool:
    if market.is_paused or market.is_frozen:
        return False
    if action == ActionType.BORROW:
        if not market.can_borrow:
            return False
        return amount is None or market.available_liquidity >= amount
    if not market.can_supply:
        return False
    remaining = market.remaining_supply_cap
    return amount is None or remaining is None or remaining >= amount


def _sort_key(market: LendingMarket, action: ActionType) -> tuple[float, float, str]:
    apy = _net_apy(market, action)
    # Supply wants the highest APY first, borrow the lowest.
    primary = -apy if action == ActionType.SUPPLY else apy
    return (primary, -market.available_liquidity_usd, market.protocol.display_name)


def _alternative_reason(delta: float, action: ActionType) -> str:
    if abs(delta) < 1e-9:
        return "Same APY, less available liquidity"
    if action == ActionType.BORROW:
        return f"{delta:.2f}% higher rate"
    return f"{delta:.2f}% lower APY"


def _justification(
    best: LendingMarket, action: ActionType, runner_up: LendingMarket | None, policy: RiskPolicy
) -> str:
    apy = _net_apy(best, action)
    name = best.protocol.display_name
    if action == ActionType.BORROW:
        text = f"{name} offers the lowest net borrow rate for {best.asset_symbol} at {apy:.2f}%"
    else:
        text = f"{name} offers the highest net supply APY for {best.asset_symbol} at {apy:.2f}%"
    if runner_up is not None:
        gap = abs(apy - _net_apy(runner_up, action))
        text += f", {gap:.2f}% ahead of {runner_up.protocol.display_name}"
    text += "."
    if action == ActionType.SUPPLY and risk.is_reward_dominated(best, policy):
        text += (
            f" Note: {risk.reward_dependency(best) * 100:.0f}% of this yield comes "
            "from incentives, which may not last."
        )
    return text


def rank_markets(
    markets: Iterable[LendingMarket],
    asset: str,
    action: ActionType | str,
    amount: int | None = None,
    policy: RiskPolicy | None = None,
) -> RoutingSuggestion | None:
    """Rank ``markets`` for ``asset``; None when nothing qualifies."""
    action = ActionType(action)
    if action not in (ActionType.SUPPLY, ActionType.BORROW):
        raise ValueError(f"Routing supports supply and borrow, not {action.value}")
    policy = policy or RiskPolicy()

    symbol = asset.upper()
    candidates = sorted(
        (
            m
            for m in markets
            if m.asset_symbol.upper() == symbol and _eligible(m, action, amount)
        ),
        key=lambda m: _sort_key(m, action),
    )
    if not candidates:
        logger.info("No eligible %s markets for %s", action.value, asset)
        return None

    best, rest = candidates[0], candidates[1:]
    best_apy = _net_apy(best, action)
    alternatives = tuple(
        RoutingAlternative(
            market=m,
            apy_delta=abs(_net_apy(m, action) - best_apy),
            reason=_alternative_reason(abs(_net_apy(m, action) - best_apy), action),
        )
        for m in rest
    )
    if action == ActionType.BORROW:
        reason_code, reason = REASON_LOWEST_RATE, "Lowest rate"
    else:
        reason_code, reason = REASON_HIGHEST_APY, "Highest APY"

    return RoutingSuggestion(
        asset=asset,
        action=action,
        recommended=best,
        reason_code=reason_code,
        reason=reason,
        justification=_justification(best, action, rest[0] if rest else None, policy),
        alternatives=alternatives,
    )


class RoutingSelection:
    """The user's chosen option, held apart from the computed ranking."""

    def __init__(self) -> None:
        self._suggestion: RoutingSuggestion | None = None
        self._choice: tuple[Protocol, str] | None = None

    @property
    def suggestion(self) -> RoutingSuggestion | None:
        return self._suggestion

    def _options(self) -> list[LendingMarket]:
        if self._suggestion is None:
            return []
        return [self._suggestion.recommended] + [a.market for a in self._suggestion.alternatives]

    def update(self, suggestion: RoutingSuggestion | None) -> None:
        """Install a fresh ranking; a choice no longer offered is dropped."""
        self._suggestion = suggestion
        if self._choice is not None and not any(m.key == self._choice for m in self._options()):
            logger.info("Selected market %s:%s no longer eligible", *self._choice)
            self._choice = None

    def select(self, protocol: Protocol | str, market_id: str) -> LendingMarket:
        key = (Protocol(protocol), market_id.lower())
        for market in self._options():
            if market.key == key:
                self._choice = key
                return market
        raise ValueError(f"{key[0].value}:{market_id} is not among the ranked options")

    def clear(self) -> None:
        self._choice = None

    @property
    def selected(self) -> LendingMarket | None:
        if self._suggestion is None:
            return None
        if self._choice is not None:
            for market in self._options():
                if market.key == self._choice:
                    return market
        return self._suggestion.recommended

    @property
    def is_override(self) -> bool:
        return self._choice is not None and (
            self._suggestion is not None and self._choice != self._suggestion.recommended.key
        )
