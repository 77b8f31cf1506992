"""Health-factor monitoring: poll wallets, escalate alerts, send reports."""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import IntEnum
from typing import Sequence

from ..config import AppConfig, WalletConfig
from ..interfaces.notifier import Notifier
from ..models import AggregatedPosition, LendingPosition, Protocol
from .aggregator import (
    LendingAggregator,
    PositionsResult,
    build_aggregated_position,
    health_by_protocol,
)

logger = logging.getLogger(__name__)


class Severity(IntEnum):
    OK = 0
    WARNING = 1
    DANGER = 2
    CRITICAL = 3


_SEVERITY_LABELS = {
    Severity.OK: "✅ Healthy",
    Severity.WARNING: "⚠️ WARNING",
    Severity.DANGER: "🔶 DANGER",
    Severity.CRITICAL: "🚨 CRITICAL",
}


@dataclass(frozen=True)
class HealthAlert:
    wallet_label: str
    wallet_address: str
    protocol: Protocol
    health_factor: float
    severity: Severity
    previous: Severity = Severity.OK

    @property
    def subject(self) -> str:
        return f"{_SEVERITY_LABELS[self.severity]}: {self.protocol.display_name} health factor {self.health_factor:.2f}"


def _format_hf(hf: float) -> str:
    return "∞" if math.isinf(hf) else f"{hf:.2f}"


def _format_wallet(address: str) -> str:
    if len(address) > 16:
        return f"{address[:8]}...{address[-6:]}"
    return address


def _now_str() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


class HealthMonitor:
    """Watches configured wallets and alerts when a health factor escalates."""

    def __init__(
        self,
        config: AppConfig,
        aggregator: LendingAggregator,
        notifiers: Sequence[Notifier] = (),
    ) -> None:
        self._config = config
        self._thresholds = config.monitor.thresholds
        self._aggregator = aggregator
        self._notifiers = list(notifiers)
        # (wallet address, protocol) -> last severity alerted
        self._alerted: dict[tuple[str, Protocol], Severity] = {}

    def severity(self, hf: float) -> Severity:
        if hf < self._thresholds.critical:
            return Severity.CRITICAL
        if hf < self._thresholds.danger:
            return Severity.DANGER
        if hf < self._thresholds.warning:
            return Severity.WARNING
        return Severity.OK

    @staticmethod
    def _wallet_positions(
        wallet: WalletConfig, positions: Sequence[LendingPosition]
    ) -> list[LendingPosition]:
        if not wallet.protocols:
            return list(positions)
        wanted = {Protocol(p) for p in wallet.protocols}
        return [p for p in positions if p.protocol in wanted]

    def evaluate(
        self, wallet: WalletConfig, positions: Sequence[LendingPosition]
    ) -> list[HealthAlert]:
        """Alerts for protocols whose severity rose past the last one alerted."""
        alerts: list[HealthAlert] = []
        address = wallet.address.lower()
        health = health_by_protocol(self._wallet_positions(wallet, positions))

        # Protocols with no positions left count as recovered.
        for key in [k for k in self._alerted if k[0] == address and k[1] not in health]:
            del self._alerted[key]

        for protocol, hf in sorted(health.items(), key=lambda item: item[0].value):
            key = (address, protocol)
            current = self.severity(hf)
            previous = self._alerted.get(key, Severity.OK)
            if current == Severity.OK:
                if previous != Severity.OK:
                    logger.info("%s recovered on %s (HF %s)", wallet.label, protocol.value, _format_hf(hf))
                self._alerted.pop(key, None)
                continue
            if current > previous:
                self._alerted[key] = current
                alerts.append(
                    HealthAlert(wallet.label, wallet.address, protocol, hf, current, previous)
                )
        return alerts

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    def _build_log_message(
        self, wallet: WalletConfig, aggregated: AggregatedPosition, result: PositionsResult
    ) -> str:
        lines = [f"📊 {wallet.label} · {wallet.chain.upper()}", ""]
        if not aggregated.positions:
            lines.append("No active positions found.")
        for protocol, hf in sorted(aggregated.health_by_protocol.items(), key=lambda i: i[0].value):
            totals = aggregated.by_protocol.get(protocol, {})
            lines.append(
                f"{protocol.display_name} · {_SEVERITY_LABELS[self.severity(hf)]}\n"
                f"  Supplied: ${totals.get('supply_usd', 0.0):,.2f}"
                f" · Borrowed: ${totals.get('borrow_usd', 0.0):,.2f}"
                f" · HF: {_format_hf(hf)}"
            )
        for protocol, error in result.failures.items():
            lines.append(f"{protocol.display_name} · data unavailable ({error})")
        lines += ["", f"{_now_str()} UTC"]
        return "\n".join(lines)

    def _build_alert_message(self, alert: HealthAlert, aggregated: AggregatedPosition) -> str:
        totals = aggregated.by_protocol.get(alert.protocol, {})
        if alert.severity >= Severity.DANGER:
            advice = "Add collateral or repay debt immediately!"
        else:
            advice = "Consider adding collateral or reducing borrowed amount."
        return (
            f"{_SEVERITY_LABELS[alert.severity]}: health factor {_format_hf(alert.health_factor)}\n"
            f"\n"
            f"{alert.wallet_label} · {alert.protocol.display_name}\n"
            f"\n"
            f"Collateral: ${totals.get('collateral_usd', 0.0):,.2f}\n"
            f"Borrowed: ${totals.get('borrow_usd', 0.0):,.2f}\n"
            f"\n"
            f"{advice}\n"
            f"\n"
            f"Wallet: {_format_wallet(alert.wallet_address)}\n"
            f"{_now_str()} UTC"
        )

    # ------------------------------------------------------------------
    # Notification dispatch
    # ------------------------------------------------------------------

    async def _send_log(self, message: str, silent: bool = False) -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_log(message, silent=silent)
            except Exception as e:
                logger.error("Notifier send_log failed: %s", e)

    async def _send_alert(self, message: str, subject: str = "") -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_alert(message, subject=subject)
            except Exception as e:
                logger.error("Notifier send_alert failed: %s", e)

    # ------------------------------------------------------------------
    # Core workflows
    # ------------------------------------------------------------------

    async def check_and_alert(self) -> list[HealthAlert]:
        """Poll every configured wallet; returns the alerts that were sent."""
        sent: list[HealthAlert] = []
        for wallet in self._config.wallets:
            result = await self._aggregator.get_user_positions(wallet.address, force_refresh=True)
            positions = self._wallet_positions(wallet, result.positions)
            aggregated = build_aggregated_position(wallet.address, positions)

            logger.info(
                "Wallet %s · supplied $%.2f borrowed $%.2f lowest HF %s",
                wallet.label,
                aggregated.total_supply_usd,
                aggregated.total_borrow_usd,
                _format_hf(aggregated.lowest_health_factor),
            )
            await self._send_log(self._build_log_message(wallet, aggregated, result))

            for alert in self.evaluate(wallet, positions):
                await self._send_alert(
                    self._build_alert_message(alert, aggregated), subject=alert.subject
                )
                sent.append(alert)
        return sent

    async def generate_report(self) -> str:
        """Send a per-wallet summary through every notifier and return it."""
        sections: list[str] = []
        for wallet in self._config.wallets:
            result = await self._aggregator.get_user_positions(wallet.address)
            aggregated = build_aggregated_position(
                wallet.address, self._wallet_positions(wallet, result.positions)
            )
            if not aggregated.positions:
                continue
            sections.append(
                f"━━ {wallet.label} ({wallet.chain.upper()}) ━━\n"
                f"  Supplied: ${aggregated.total_supply_usd:,.2f}"
                f" at {aggregated.weighted_supply_apy:.2f}%\n"
                f"  Borrowed: ${aggregated.total_borrow_usd:,.2f}"
                f" at {aggregated.weighted_borrow_apy:.2f}%\n"
                f"  Net worth: ${aggregated.net_worth_usd:,.2f}\n"
                f"  Lowest HF: {_format_hf(aggregated.lowest_health_factor)}"
                + (
                    f" ({aggregated.riskiest_protocol.display_name})"
                    if aggregated.riskiest_protocol and not math.isinf(aggregated.lowest_health_factor)
                    else ""
                )
            )

        body = "\n\n".join(sections) if sections else "No active positions found."
        report = f"📋 Lending Position Report\n\n{body}\n\n{_now_str()} UTC"
        await self._send_alert(report, subject="Lending Position Report")
        logger.info("Report sent")
        return report

    async def run_continuous(self, interval_seconds: int | None = None) -> None:
        """Run the polling loop until cancelled."""
        interval = interval_seconds or self._config.monitor.poll_interval_seconds
        logger.info("Starting continuous monitoring (checking every %d seconds)", interval)

        while True:
            try:
                await self.check_and_alert()
            except Exception as e:
                logger.error("Error in monitoring loop: %s", e)
            await asyncio.sleep(interval)
