"""Unit tests for CLI argument parsing and formatting helpers."""
from __future__ import annotations

import pytest

from lending_hub.cli import build_parser, format_market, parse_amount
from lending_hub.models import Protocol


class TestBuildParser:
    def test_check_command(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["check"])
        assert args.command == "check"

    def test_report_command(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["report"])
        assert args.command == "report"

    def test_monitor_command_default_interval(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["monitor"])
        assert args.command == "monitor"
        assert args.interval is None

    def test_monitor_command_custom_interval(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["monitor", "10"])
        assert args.interval == 10

    def test_config_flag(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["--config", "/tmp/c.yaml", "check"])
        assert args.config == "/tmp/c.yaml"

    def test_log_level_flag(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["--log-level", "DEBUG", "check"])
        assert args.log_level == "DEBUG"

    def test_no_command(self) -> None:
        parser = build_parser()
        args = parser.parse_args([])
        assert args.command is None

    def test_markets_filters(self) -> None:
        parser = build_parser()
        args = parser.parse_args(
            ["markets", "--asset", "USDC", "--protocol", "aave", "--protocol", "morpho", "--refresh"]
        )
        assert args.asset == "USDC"
        assert args.protocol == ["aave", "morpho"]
        assert args.refresh is True
        assert args.action is None

    def test_markets_rejects_unknown_protocol(self) -> None:
        parser = build_parser()
        with pytest.raises(SystemExit):
            parser.parse_args(["markets", "--protocol", "euler"])

    def test_route_command(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["route", "USDC", "borrow", "--amount", "250"])
        assert (args.asset, args.action, args.amount) == ("USDC", "borrow", "250")

    def test_simulate_requires_user(self) -> None:
        parser = build_parser()
        with pytest.raises(SystemExit):
            parser.parse_args(["simulate", "deposit", "aave", "0xm", "1"])

    def test_simulate_command(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["simulate", "withdraw", "moonwell", "0xm", "1.5", "--user", "0xu"])
        assert args.action == "withdraw"
        assert args.protocol == "moonwell"
        assert args.user == "0xu"

    def test_health_command(self) -> None:
        parser = build_parser()
        args = parser.parse_args(["health", "0xabc", "--protocol", "compound"])
        assert args.wallet == "0xabc"
        assert args.protocol == "compound"


class TestParseAmount:
    def test_whole_tokens(self) -> None:
        assert parse_amount("1.5", 6) == 1_500_000

    def test_eighteen_decimals(self) -> None:
        assert parse_amount("0.0001", 18) == 10**14

    @pytest.mark.parametrize("value", ["0", "-1", "abc", ""])
    def test_invalid(self, value: str) -> None:
        with pytest.raises(ValueError):
            parse_amount(value, 6)


class TestFormatMarket:
    def test_includes_protocol_and_rates(self, market_factory) -> None:
        line = format_market(market_factory(supply_apy=4.25, borrow_apy=6.5))
        assert "Aave V3" in line
        assert "4.25%" in line
        assert "6.50%" in line

    def test_supply_only_market_hides_borrow_rate(self, market_factory) -> None:
        line = format_market(
            market_factory(protocol=Protocol.MORPHO, can_borrow=False, ltv=0.0, liquidation_threshold=0.0)
        )
        assert "Morpho Blue" in line
        assert "borrow      -" in line
