"""Integration tests for HealthMonitor — full flow with mocked I/O."""
from __future__ import annotations

import asyncio
import logging
import math
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from lending_hub.config import AppConfig
from lending_hub.models import LendingPosition, Protocol
from lending_hub.services.aggregator import PositionsResult
from lending_hub.services.monitor import HealthMonitor, Severity, _format_wallet

WALLET = "0x1111111111111111111111111111111111111111"


def _borrow_position(position_factory, hf: float, protocol=Protocol.AAVE) -> LendingPosition:
    return position_factory(
        protocol=protocol,
        supply_balance=10_000 * 10**6,
        supply_balance_usd=10_000.0,
        borrow_balance=5_000 * 10**6,
        borrow_balance_usd=5_000.0,
        collateral_enabled=True,
        health_factor=hf,
        supply_apy=4.0,
        borrow_apy=6.0,
    )


def _aggregator(*results: PositionsResult) -> MagicMock:
    aggregator = MagicMock()
    aggregator.get_user_positions = AsyncMock(side_effect=list(results))
    return aggregator


@pytest.fixture()
def notifier() -> AsyncMock:
    return AsyncMock()


def _monitor(config: AppConfig, aggregator: MagicMock, notifier: AsyncMock) -> HealthMonitor:
    return HealthMonitor(config, aggregator, [notifier])


class TestSeverity:
    @pytest.mark.parametrize(
        "hf,expected",
        [
            (math.inf, Severity.OK),
            (2.0, Severity.OK),
            (1.5, Severity.OK),
            (1.45, Severity.WARNING),
            (1.25, Severity.DANGER),
            (1.05, Severity.CRITICAL),
        ],
    )
    def test_bands(self, sample_app_config, hf, expected):
        monitor = HealthMonitor(sample_app_config, MagicMock())
        assert monitor.severity(hf) == expected


class TestCheckAndAlert:
    @pytest.mark.asyncio
    async def test_healthy_position_sends_log_only(
        self, sample_app_config, position_factory, notifier
    ) -> None:
        """A healthy position should send a log but no alert."""
        result = PositionsResult(positions=[_borrow_position(position_factory, 2.0)])
        monitor = _monitor(sample_app_config, _aggregator(result), notifier)

        alerts = await monitor.check_and_alert()

        assert alerts == []
        notifier.send_log.assert_called_once()
        log_msg = notifier.send_log.call_args[0][0]
        assert "test-wallet" in log_msg
        assert "Aave V3" in log_msg
        assert "Healthy" in log_msg
        assert "HF: 2.00" in log_msg
        notifier.send_alert.assert_not_called()

    @pytest.mark.asyncio
    async def test_positions_refreshed_for_each_check(
        self, sample_app_config, notifier
    ) -> None:
        aggregator = _aggregator(PositionsResult())
        monitor = _monitor(sample_app_config, aggregator, notifier)

        await monitor.check_and_alert()

        aggregator.get_user_positions.assert_awaited_once_with(WALLET, force_refresh=True)

    @pytest.mark.asyncio
    async def test_critical_position_sends_alert(
        self, sample_app_config, position_factory, notifier
    ) -> None:
        result = PositionsResult(positions=[_borrow_position(position_factory, 1.05)])
        monitor = _monitor(sample_app_config, _aggregator(result), notifier)

        (alert,) = await monitor.check_and_alert()

        assert alert.severity == Severity.CRITICAL
        assert alert.protocol == Protocol.AAVE
        notifier.send_alert.assert_called_once()
        call_args = notifier.send_alert.call_args
        assert "CRITICAL" in call_args.kwargs["subject"]
        alert_msg = call_args[0][0]
        assert "test-wallet" in alert_msg
        assert "Aave V3" in alert_msg
        assert "immediately" in alert_msg

    @pytest.mark.asyncio
    async def test_warning_position_sends_alert(
        self, sample_app_config, position_factory, notifier
    ) -> None:
        result = PositionsResult(positions=[_borrow_position(position_factory, 1.45)])
        monitor = _monitor(sample_app_config, _aggregator(result), notifier)

        await monitor.check_and_alert()

        notifier.send_alert.assert_called_once()
        assert "WARNING" in notifier.send_alert.call_args.kwargs["subject"]
        assert "Consider adding collateral" in notifier.send_alert.call_args[0][0]

    @pytest.mark.asyncio
    async def test_alerts_only_on_escalation(
        self, sample_app_config, position_factory, notifier
    ) -> None:
        """Same band twice alerts once; a worse band alerts again."""
        results = [
            PositionsResult(positions=[_borrow_position(position_factory, hf)])
            for hf in (1.45, 1.4, 1.25, 1.45)
        ]
        monitor = _monitor(sample_app_config, _aggregator(*results), notifier)

        sent = [await monitor.check_and_alert() for _ in results]

        assert [len(alerts) for alerts in sent] == [1, 0, 1, 0]
        assert sent[2][0].severity == Severity.DANGER
        assert sent[2][0].previous == Severity.WARNING
        assert notifier.send_alert.call_count == 2

    @pytest.mark.asyncio
    async def test_recovery_resets_escalation(
        self, sample_app_config, position_factory, notifier
    ) -> None:
        results = [
            PositionsResult(positions=[_borrow_position(position_factory, hf)])
            for hf in (1.25, 2.0, 1.25)
        ]
        monitor = _monitor(sample_app_config, _aggregator(*results), notifier)

        sent = [await monitor.check_and_alert() for _ in results]

        assert [len(alerts) for alerts in sent] == [1, 0, 1]

    @pytest.mark.asyncio
    async def test_closed_position_counts_as_recovered(
        self, sample_app_config, position_factory, notifier
    ) -> None:
        results = [
            PositionsResult(positions=[_borrow_position(position_factory, 1.25)]),
            PositionsResult(),
            PositionsResult(positions=[_borrow_position(position_factory, 1.25)]),
        ]
        monitor = _monitor(sample_app_config, _aggregator(*results), notifier)

        sent = [await monitor.check_and_alert() for _ in results]

        assert [len(alerts) for alerts in sent] == [1, 0, 1]

    @pytest.mark.asyncio
    async def test_protocols_tracked_independently(
        self, sample_app_config, position_factory, notifier
    ) -> None:
        result = PositionsResult(
            positions=[
                _borrow_position(position_factory, 1.45),
                _borrow_position(position_factory, 1.05, protocol=Protocol.MORPHO),
            ]
        )
        monitor = _monitor(sample_app_config, _aggregator(result), notifier)

        alerts = await monitor.check_and_alert()

        assert {(a.protocol, a.severity) for a in alerts} == {
            (Protocol.AAVE, Severity.WARNING),
            (Protocol.MORPHO, Severity.CRITICAL),
        }

    @pytest.mark.asyncio
    async def test_unwatched_protocol_ignored(
        self, sample_app_config, position_factory, notifier
    ) -> None:
        """The wallet only watches aave and morpho."""
        result = PositionsResult(
            positions=[_borrow_position(position_factory, 1.05, protocol=Protocol.MOONWELL)]
        )
        monitor = _monitor(sample_app_config, _aggregator(result), notifier)

        assert await monitor.check_and_alert() == []
        assert "No active positions" in notifier.send_log.call_args[0][0]

    @pytest.mark.asyncio
    async def test_failures_reported_in_log(
        self, sample_app_config, notifier
    ) -> None:
        result = PositionsResult(failures={Protocol.MORPHO: "API timeout"})
        monitor = _monitor(sample_app_config, _aggregator(result), notifier)

        await monitor.check_and_alert()

        log_msg = notifier.send_log.call_args[0][0]
        assert "Morpho Blue · data unavailable (API timeout)" in log_msg

    @pytest.mark.asyncio
    async def test_notifier_failure_does_not_stop_others(
        self, sample_app_config, position_factory
    ) -> None:
        broken = AsyncMock()
        broken.send_alert.side_effect = RuntimeError("bot blocked")
        working = AsyncMock()
        result = PositionsResult(positions=[_borrow_position(position_factory, 1.05)])
        monitor = HealthMonitor(sample_app_config, _aggregator(result), [broken, working])

        await monitor.check_and_alert()

        working.send_alert.assert_called_once()


class TestGenerateReport:
    @pytest.mark.asyncio
    async def test_report_with_positions(
        self, sample_app_config, position_factory, notifier
    ) -> None:
        result = PositionsResult(positions=[_borrow_position(position_factory, 1.6)])
        monitor = _monitor(sample_app_config, _aggregator(result), notifier)

        report = await monitor.generate_report()

        notifier.send_alert.assert_called_once_with(report, subject="Lending Position Report")
        assert "Lending Position Report" in report
        assert "test-wallet" in report
        assert "Supplied: $10,000.00 at 4.00%" in report
        assert "Borrowed: $5,000.00 at 6.00%" in report
        assert "Lowest HF: 1.60 (Aave V3)" in report

    @pytest.mark.asyncio
    async def test_report_no_positions(self, sample_app_config, notifier) -> None:
        monitor = _monitor(sample_app_config, _aggregator(PositionsResult()), notifier)

        report = await monitor.generate_report()

        assert "No active positions" in report
        notifier.send_alert.assert_called_once()


class TestRunContinuous:
    @pytest.mark.asyncio
    async def test_loop_survives_errors(self, sample_app_config, caplog) -> None:
        monitor = HealthMonitor(sample_app_config, MagicMock())
        monitor.check_and_alert = AsyncMock(side_effect=RuntimeError("boom"))

        with patch(
            "lending_hub.services.monitor.asyncio.sleep",
            new=AsyncMock(side_effect=[None, asyncio.CancelledError()]),
        ) as mock_sleep:
            with caplog.at_level(logging.ERROR):
                with pytest.raises(asyncio.CancelledError):
                    await monitor.run_continuous()

        assert monitor.check_and_alert.await_count == 2
        mock_sleep.assert_awaited_with(5)
        assert "Error in monitoring loop: boom" in caplog.text

    @pytest.mark.asyncio
    async def test_interval_override(self, sample_app_config) -> None:
        monitor = HealthMonitor(sample_app_config, MagicMock())
        monitor.check_and_alert = AsyncMock(return_value=[])

        with patch(
            "lending_hub.services.monitor.asyncio.sleep",
            new=AsyncMock(side_effect=asyncio.CancelledError()),
        ) as mock_sleep:
            with pytest.raises(asyncio.CancelledError):
                await monitor.run_continuous(interval_seconds=60)

        mock_sleep.assert_awaited_once_with(60)


class TestFormatHelpers:
    def test_format_wallet_long(self) -> None:
        assert _format_wallet("0x1234567890abcdef1234567890") == "0x123456...567890"

    def test_format_wallet_short(self) -> None:
        assert _format_wallet("0x123") == "0x123"
