"""Cross-protocol aggregation: markets, positions, health and routing."""
from __future__ import annotations

import asyncio
import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Iterable, Sequence

from ..config import RiskPolicy
from ..errors import DataSourceError
from ..interfaces.protocol_adapter import ProtocolAdapter
from ..models import (
    ActionType,
    AggregatedPosition,
    HealthFactorStatus,
    LendingMarket,
    LendingPosition,
    Protocol,
    RoutingSuggestion,
)
from . import risk
from .cache import CacheCategory, TieredCache, cache_key
from .routing import rank_markets

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MarketFilter:
    protocols: frozenset[Protocol] | None = None
    asset: str | None = None
    capability: str | None = None  # can_supply / can_borrow / can_use_as_collateral
    min_liquidity_usd: float = 0.0

    def matches(self, market: LendingMarket) -> bool:
        if self.protocols is not None and market.protocol not in self.protocols:
            return False
        if self.asset is not None and market.asset_symbol.upper() != self.asset.upper():
            return False
        if self.capability is not None and not getattr(market, self.capability):
            return False
        return market.available_liquidity_usd >= self.min_liquidity_usd


@dataclass(frozen=True)
class MarketsResult:
    markets: list[LendingMarket] = field(default_factory=list)
    protocols_attempted: tuple[Protocol, ...] = ()
    protocols_succeeded: tuple[Protocol, ...] = ()
    failures: dict[Protocol, str] = field(default_factory=dict)
    sources: dict[Protocol, str] = field(default_factory=dict)

    @property
    def is_partial(self) -> bool:
        return bool(self.failures)


@dataclass(frozen=True)
class PositionsResult:
    positions: list[LendingPosition] = field(default_factory=list)
    protocols_attempted: tuple[Protocol, ...] = ()
    protocols_succeeded: tuple[Protocol, ...] = ()
    failures: dict[Protocol, str] = field(default_factory=dict)
    sources: dict[Protocol, str] = field(default_factory=dict)

    @property
    def is_partial(self) -> bool:
        return bool(self.failures)


def _non_empty_markets(adapter: ProtocolAdapter) -> Callable[[], Awaitable[list[LendingMarket]]]:
    """An adapter with zero markets is degraded upstream, not a valid answer to cache."""

    async def fetch() -> list[LendingMarket]:
        markets = await adapter.get_markets()
        if not markets:
            raise DataSourceError(f"{adapter.protocol.display_name} returned no markets")
        return markets

    return fetch


def _dedupe(records: Iterable[Any], kind: str) -> list[Any]:
    seen: set[tuple[Protocol, str]] = set()
    unique = []
    for record in records:
        if record.key in seen:
            logger.error(
                "Integrity error: duplicate %s %s:%s dropped",
                kind,
                record.protocol.value,
                record.market_id,
            )
            continue
        seen.add(record.key)
        unique.append(record)
    return unique


def health_by_protocol(positions: Iterable[LendingPosition]) -> dict[Protocol, float]:
    """Lowest health factor per protocol, +inf where nothing is borrowed."""
    result: dict[Protocol, float] = {}
    for position in positions:
        hf = position.effective_health_factor
        result[position.protocol] = min(result.get(position.protocol, math.inf), hf)
    return result


def build_aggregated_position(
    user: str,
    positions: Sequence[LendingPosition],
    health: dict[Protocol, float] | None = None,
) -> AggregatedPosition:
    """Roll up positions across protocols. Pure; inputs are not modified."""
    if health is None:
        health = health_by_protocol(positions)

    total_supply = sum(p.supply_balance_usd for p in positions)
    total_borrow = sum(p.borrow_balance_usd for p in positions)
    total_collateral = sum(p.supply_balance_usd for p in positions if p.collateral_enabled)

    weighted_supply = (
        sum(p.supply_balance_usd * p.supply_apy for p in positions) / total_supply
        if total_supply > 0
        else 0.0
    )
    weighted_borrow = (
        sum(p.borrow_balance_usd * p.borrow_apy for p in positions) / total_borrow
        if total_borrow > 0
        else 0.0
    )

    lowest, riskiest = math.inf, None
    for protocol, hf in health.items():
        if hf < lowest:
            lowest, riskiest = hf, protocol

    by_protocol: dict[Protocol, dict[str, float]] = defaultdict(
        lambda: {"supply_usd": 0.0, "borrow_usd": 0.0, "collateral_usd": 0.0}
    )
    by_asset: dict[str, dict[str, float]] = defaultdict(
        lambda: {"supply_usd": 0.0, "borrow_usd": 0.0}
    )
    for p in positions:
        by_protocol[p.protocol]["supply_usd"] += p.supply_balance_usd
        by_protocol[p.protocol]["borrow_usd"] += p.borrow_balance_usd
        if p.collateral_enabled:
            by_protocol[p.protocol]["collateral_usd"] += p.supply_balance_usd
        by_asset[p.asset_symbol]["supply_usd"] += p.supply_balance_usd
        by_asset[p.asset_symbol]["borrow_usd"] += p.borrow_balance_usd

    return AggregatedPosition(
        user=user,
        total_supply_usd=total_supply,
        total_borrow_usd=total_borrow,
        total_collateral_usd=total_collateral,
        net_worth_usd=total_supply - total_borrow,
        weighted_supply_apy=weighted_supply,
        weighted_borrow_apy=weighted_borrow,
        lowest_health_factor=lowest,
        riskiest_protocol=riskiest,
        health_by_protocol=dict(health),
        by_protocol=dict(by_protocol),
        by_asset=dict(by_asset),
        positions=tuple(positions),
        is_simulated=any(p.is_simulated for p in positions),
    )


class LendingAggregator:
    """Fan out to every adapter, tolerate partial failure, merge the results."""

    def __init__(
        self,
        adapters: Sequence[ProtocolAdapter],
        cache: TieredCache,
        policy: RiskPolicy | None = None,
    ) -> None:
        self.adapters = {a.protocol: a for a in adapters}
        self.cache = cache
        self.policy = policy or RiskPolicy()

    @staticmethod
    def _source(protocol: Protocol) -> str:
        return "api" if protocol == Protocol.MORPHO else "onchain"

    async def _fan_out(
        self,
        category: CacheCategory,
        key_for: Callable[[ProtocolAdapter], str],
        fetch_for: Callable[[ProtocolAdapter], Callable[[], Awaitable[list[Any]]]],
        force_refresh: bool,
    ) -> tuple[list[Any], tuple[Protocol, ...], tuple[Protocol, ...], dict[Protocol, str], dict[Protocol, str]]:
        adapters = list(self.adapters.values())
        results = await asyncio.gather(
            *(
                self.cache.get_or_fetch(
                    key_for(a),
                    category,
                    fetch_for(a),
                    force_refresh=force_refresh,
                    source=self._source(a.protocol),
                )
                for a in adapters
            ),
            return_exceptions=True,
        )

        records: list[Any] = []
        succeeded: list[Protocol] = []
        failures: dict[Protocol, str] = {}
        sources: dict[Protocol, str] = {}
        for adapter, result in zip(adapters, results):
            if isinstance(result, BaseException):
                logger.error(
                    "%s %s fetch failed: %s", adapter.protocol.display_name, category.value, result
                )
                failures[adapter.protocol] = str(result) or type(result).__name__
                continue
            succeeded.append(adapter.protocol)
            sources[adapter.protocol] = result.source
            records.extend(result.payload)
        attempted = tuple(a.protocol for a in adapters)
        return records, attempted, tuple(succeeded), failures, sources

    async def get_markets(
        self, filters: MarketFilter | None = None, force_refresh: bool = False
    ) -> MarketsResult:
        records, attempted, succeeded, failures, sources = await self._fan_out(
            CacheCategory.POOL,
            lambda a: cache_key(CacheCategory.POOL, a.chain_id, a.protocol, None, None, "markets"),
            _non_empty_markets,
            force_refresh,
        )
        markets = _dedupe(records, "market")
        if filters is not None:
            markets = [m for m in markets if filters.matches(m)]
        return MarketsResult(markets, attempted, succeeded, failures, sources)

    async def get_user_positions(self, user: str, force_refresh: bool = False) -> PositionsResult:
        records, attempted, succeeded, failures, sources = await self._fan_out(
            CacheCategory.POSITION,
            lambda a: cache_key(CacheCategory.POSITION, a.chain_id, a.protocol, None, user),
            lambda a: (lambda: a.get_user_positions(user)),
            force_refresh,
        )
        return PositionsResult(_dedupe(records, "position"), attempted, succeeded, failures, sources)

    async def get_aggregated_position(
        self, user: str, force_refresh: bool = False
    ) -> AggregatedPosition:
        result = await self.get_user_positions(user, force_refresh=force_refresh)
        return build_aggregated_position(user, result.positions)

    async def get_health_factor_status(
        self, user: str, protocol: Protocol | str | None = None
    ) -> HealthFactorStatus:
        aggregated = await self.get_aggregated_position(user)
        if protocol is not None:
            protocol = Protocol(protocol)
            hf = aggregated.health_by_protocol.get(protocol, math.inf)
            riskiest = protocol
        else:
            hf, riskiest = aggregated.lowest_health_factor, aggregated.riskiest_protocol
        status = risk.health_status(hf, self.policy)
        return replace(status, riskiest_protocol=riskiest if not math.isinf(hf) else None)

    async def get_routing_suggestion(
        self,
        asset: str,
        action: ActionType | str,
        amount: int | None = None,
        force_refresh: bool = False,
    ) -> RoutingSuggestion | None:
        result = await self.get_markets(force_refresh=force_refresh)
        return rank_markets(result.markets, asset, action, amount, self.policy)

    async def get_best_supply_rate(self, asset: str) -> LendingMarket | None:
        suggestion = await self.get_routing_suggestion(asset, ActionType.SUPPLY)
        return suggestion.recommended if suggestion else None

    async def get_best_borrow_rate(self, asset: str) -> LendingMarket | None:
        suggestion = await self.get_routing_suggestion(asset, ActionType.BORROW)
        return suggestion.recommended if suggestion else None
