"""Command-line interface for lending-hub."""
from __future__ import annotations

import argparse
import asyncio
import math
import sys
from decimal import Decimal, InvalidOperation

from .app import Application, build_application
from .config import load_config
from .errors import LendingHubError
from .logging_setup import configure_logging
from .models import ActionType, LendingMarket, Protocol
from .services.aggregator import MarketFilter
from .services.simulation import SimulationParams


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="lending-hub",
        description="Multi-protocol lending aggregator for Base",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    sub = parser.add_subparsers(dest="command")

    markets = sub.add_parser("markets", help="List lending markets across protocols")
    markets.add_argument("--asset", default=None, help="Filter by asset symbol")
    markets.add_argument(
        "--protocol", action="append", choices=[p.value for p in Protocol], help="Filter by protocol"
    )
    markets.add_argument(
        "--action", choices=["supply", "borrow"], default=None, help="Only markets allowing this action"
    )
    markets.add_argument("--refresh", action="store_true", help="Bypass fresh cache entries")

    positions = sub.add_parser("positions", help="Show a wallet's aggregated positions")
    positions.add_argument("wallet")

    route = sub.add_parser("route", help="Recommend the best market for an asset")
    route.add_argument("asset")
    route.add_argument("action", choices=["supply", "borrow"])
    route.add_argument("--amount", default=None, help="Amount in whole tokens")

    simulate = sub.add_parser("simulate", help="Dry-run a deposit or withdrawal")
    simulate.add_argument("action", choices=["deposit", "withdraw"])
    simulate.add_argument("protocol", choices=[p.value for p in Protocol])
    simulate.add_argument("market_id")
    simulate.add_argument("amount", help="Amount in whole tokens")
    simulate.add_argument("--user", required=True, help="Wallet address to simulate from")

    health = sub.add_parser("health", help="Health factor status for a wallet")
    health.add_argument("wallet")
    health.add_argument("--protocol", choices=[p.value for p in Protocol], default=None)

    sub.add_parser("check", help="Single health check with alerts")
    sub.add_parser("report", help="Send a position report")

    monitor_parser = sub.add_parser("monitor", help="Continuous monitoring loop")
    monitor_parser.add_argument(
        "interval",
        nargs="?",
        type=int,
        default=None,
        help="Check interval in seconds (overrides config)",
    )

    return parser


def parse_amount(value: str, decimals: int) -> int:
    """Whole-token string → smallest units, e.g. ("1.5", 6) → 1_500_000."""
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {value}") from None
    if amount <= 0:
        raise ValueError("Amount must be greater than zero")
    return int(amount * (Decimal(10) ** decimals))


def _fmt_hf(hf: float) -> str:
    return "∞" if math.isinf(hf) else f"{hf:.2f}"


def format_market(market: LendingMarket) -> str:
    return (
        f"{market.protocol.display_name:<13} {market.asset_symbol:<8} "
        f"supply {market.net_supply_apy:6.2f}%  borrow "
        + (f"{market.net_borrow_apy:6.2f}%" if market.can_borrow else "     -")
        + f"  liquidity ${market.available_liquidity_usd:,.0f}  id {market.market_id}"
    )


async def _markets(app: Application, args: argparse.Namespace) -> None:
    capability = {"supply": "can_supply", "borrow": "can_borrow"}.get(args.action or "")
    filters = MarketFilter(
        protocols=frozenset(Protocol(p) for p in args.protocol) if args.protocol else None,
        asset=args.asset,
        capability=capability,
    )
    result = await app.aggregator.get_markets(filters, force_refresh=args.refresh)
    for market in sorted(result.markets, key=lambda m: (m.asset_symbol, -m.net_supply_apy)):
        print(format_market(market))
    for protocol, error in result.failures.items():
        print(f"! {protocol.display_name} unavailable: {error}", file=sys.stderr)
    for protocol, source in result.sources.items():
        if source == "fallback":
            print(f"! {protocol.display_name} data is stale (served from cache)", file=sys.stderr)


async def _positions(app: Application, args: argparse.Namespace) -> None:
    agg = await app.aggregator.get_aggregated_position(args.wallet)
    if not agg.positions:
        print("No active positions found.")
        return
    for p in agg.positions:
        print(
            f"{p.protocol.display_name:<13} {p.asset_symbol:<8} "
            f"supplied ${p.supply_balance_usd:,.2f}  borrowed ${p.borrow_balance_usd:,.2f}"
            f"  HF {_fmt_hf(p.effective_health_factor)}"
        )
    print(
        f"\nTotal supplied ${agg.total_supply_usd:,.2f} at {agg.weighted_supply_apy:.2f}%"
        f" · borrowed ${agg.total_borrow_usd:,.2f} at {agg.weighted_borrow_apy:.2f}%"
        f" · net ${agg.net_worth_usd:,.2f} · lowest HF {_fmt_hf(agg.lowest_health_factor)}"
    )


async def _route(app: Application, args: argparse.Namespace) -> None:
    amount = None
    if args.amount is not None:
        markets = await app.aggregator.get_markets(MarketFilter(asset=args.asset))
        if not markets.markets:
            print(f"No markets for {args.asset}")
            return
        amount = parse_amount(args.amount, markets.markets[0].asset_decimals)
    suggestion = await app.aggregator.get_routing_suggestion(args.asset, args.action, amount)
    if suggestion is None:
        print(f"No eligible {args.action} market for {args.asset}")
        return
    print(f"{suggestion.reason}: {format_market(suggestion.recommended)}")
    print(suggestion.justification)
    for alt in suggestion.alternatives:
        print(f"  - {alt.market.protocol.display_name}: {alt.reason}")


async def _simulate(app: Application, args: argparse.Namespace) -> None:
    protocol = Protocol(args.protocol)
    market = await app.adapters[protocol].get_market(args.market_id)
    if market is None:
        print(f"Market {args.market_id} not found on {protocol.display_name}")
        sys.exit(1)
    params = SimulationParams(
        protocol=protocol,
        pool_address=market.pool_address,
        asset_address=market.asset_address,
        amount=parse_amount(args.amount, market.asset_decimals),
        user=args.user,
        decimals=market.asset_decimals,
    )
    simulator = app.simulator_for(protocol)
    if args.action == "deposit":
        result = await simulator.simulate_deposit(params)
    else:
        result = await simulator.simulate_withdraw(params)

    if result.success:
        cost = f" (${result.gas_cost_usd:.4f})" if result.gas_cost_usd is not None else ""
        print(f"✅ Would succeed · gas {result.gas_estimate}{cost} · output {result.expected_output}")
    else:
        print(f"❌ {result.error_message} [{result.failure.value if result.failure else 'unknown'}]")
    for warning in result.warnings:
        print(f"⚠️ {warning}")


async def _health(app: Application, args: argparse.Namespace) -> None:
    status = await app.aggregator.get_health_factor_status(args.wallet, args.protocol)
    where = f" ({status.riskiest_protocol.display_name})" if status.riskiest_protocol else ""
    print(f"{status.status.upper()} · HF {_fmt_hf(status.value)}{where} · {status.message}")


async def _run(args: argparse.Namespace) -> None:
    """Execute the selected command."""
    configure_logging(args.log_level)
    config = load_config(args.config)
    app = build_application(config)

    if args.command == "markets":
        await _markets(app, args)
    elif args.command == "positions":
        await _positions(app, args)
    elif args.command == "route":
        await _route(app, args)
    elif args.command == "simulate":
        await _simulate(app, args)
    elif args.command == "health":
        await _health(app, args)
    elif args.command == "check":
        await app.monitor.check_and_alert()
    elif args.command == "report":
        await app.monitor.generate_report()
    elif args.command == "monitor":
        await app.monitor.run_continuous(args.interval)
    else:
        build_parser().print_help()
        sys.exit(1)


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        asyncio.run(_run(args))
    except (LendingHubError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
