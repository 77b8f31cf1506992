"""Load config.yaml, interpolate env vars and validate the result."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .models import Protocol

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChainConfig:
    chain_id: int = 8453
    rpc_endpoints: tuple[str, ...] = ()
    rpc_timeout: int = 30


@dataclass(frozen=True)
class ProtocolConfig:
    chain: str = ""
    enabled: bool = True
    contracts: dict[str, str] = field(default_factory=dict)
    vaults: tuple[str, ...] = ()


@dataclass(frozen=True)
class DataSourcesConfig:
    morpho_api_url: str = "https://api.morpho.org/graphql"
    yields_url: str = "https://yields.llama.fi/pools"
    yields_chain: str = "Base"
    min_tvl_usd: float = 10_000.0
    request_timeout: int = 20
    vault_asset_symbols: tuple[str, ...] = ("USDC", "USDT", "DAI", "USDbC", "WETH")


@dataclass(frozen=True)
class ChainlinkConfig:
    chain: str = ""
    feeds: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PythConfig:
    hermes_url: str = "https://hermes.pyth.network/v2/updates/price/latest"
    feeds: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PriceOracleConfig:
    chainlink: ChainlinkConfig = field(default_factory=ChainlinkConfig)
    pyth: PythConfig = field(default_factory=PythConfig)


@dataclass(frozen=True)
class CacheConfig:
    enabled: bool = True
    sqlite_path: str = ".cache/lending_hub.sqlite3"


@dataclass(frozen=True)
class RiskPolicy:
    """Health-factor ladder, borrow safety margin and reward heuristics."""

    liquidatable_below: float = 1.0
    critical_below: float = 1.1
    high_below: float = 1.3
    medium_below: float = 1.5
    low_below: float = 2.0
    safety_margin: float = 0.8
    status_danger_below: float = 1.2
    status_warning_below: float = 1.5
    concentration_limit: float = 0.8
    max_reward_apy: float = 50.0
    reward_dominance_ratio: float = 0.5
    rate_change_threshold_pct: float = 10.0


@dataclass(frozen=True)
class AlertThresholdsConfig:
    warning: float = 1.5
    danger: float = 1.3
    critical: float = 1.1


@dataclass(frozen=True)
class MonitorConfig:
    poll_interval_seconds: int = 10
    thresholds: AlertThresholdsConfig = field(default_factory=AlertThresholdsConfig)


@dataclass(frozen=True)
class WalletConfig:
    label: str = ""
    chain: str = ""
    address: str = ""
    protocols: tuple[str, ...] = ()


@dataclass(frozen=True)
class TelegramConfig:
    enabled: bool = False
    alert_bot_token: str = ""
    log_bot_token: str = ""
    chat_id: str = ""


@dataclass(frozen=True)
class EmailConfig:
    enabled: bool = False
    alert_email: str = ""
    smtp_server: str = "smtp.gmail.com"
    smtp_port: int = 587
    sender_email: str = ""
    sender_password: str = ""


@dataclass(frozen=True)
class NotificationsConfig:
    telegram: TelegramConfig = field(default_factory=TelegramConfig)
    email: EmailConfig = field(default_factory=EmailConfig)


@dataclass(frozen=True)
class AppConfig:
    chains: dict[str, ChainConfig] = field(default_factory=dict)
    protocols: dict[str, ProtocolConfig] = field(default_factory=dict)
    data_sources: DataSourcesConfig = field(default_factory=DataSourcesConfig)
    price_oracle: PriceOracleConfig = field(default_factory=PriceOracleConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    risk: RiskPolicy = field(default_factory=RiskPolicy)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    wallets: tuple[WalletConfig, ...] = ()
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _build_chains(raw: dict[str, Any]) -> dict[str, ChainConfig]:
    chains: dict[str, ChainConfig] = {}
    for name, cfg in raw.items():
        # Empty strings come from unset ${VAR} references.
        endpoints = tuple(url for url in cfg.get("rpc_endpoints", []) if url)
        chains[name] = ChainConfig(
            chain_id=int(cfg.get("chain_id", 8453)),
            rpc_endpoints=endpoints,
            rpc_timeout=int(cfg.get("rpc_timeout", 30)),
        )
    return chains


def _build_protocols(raw: dict[str, Any]) -> dict[str, ProtocolConfig]:
    protocols: dict[str, ProtocolConfig] = {}
    for name, cfg in raw.items():
        protocols[name] = ProtocolConfig(
            chain=cfg.get("chain", ""),
            enabled=bool(cfg.get("enabled", True)),
            contracts=dict(cfg.get("contracts", {})),
            vaults=tuple(cfg.get("vaults", [])),
        )
    return protocols


def _build_data_sources(raw: dict[str, Any]) -> DataSourcesConfig:
    defaults = DataSourcesConfig()
    return DataSourcesConfig(
        morpho_api_url=raw.get("morpho_api_url", defaults.morpho_api_url),
        yields_url=raw.get("yields_url", defaults.yields_url),
        yields_chain=raw.get("yields_chain", defaults.yields_chain),
        min_tvl_usd=float(raw.get("min_tvl_usd", defaults.min_tvl_usd)),
        request_timeout=int(raw.get("request_timeout", defaults.request_timeout)),
        vault_asset_symbols=tuple(
            raw.get("vault_asset_symbols", defaults.vault_asset_symbols)
        ),
    )


def _build_price_oracle(raw: dict[str, Any]) -> PriceOracleConfig:
    chainlink_raw = raw.get("chainlink", {})
    pyth_raw = raw.get("pyth", {})
    return PriceOracleConfig(
        chainlink=ChainlinkConfig(
            chain=chainlink_raw.get("chain", ""),
            feeds=dict(chainlink_raw.get("feeds", {})),
        ),
        pyth=PythConfig(
            hermes_url=pyth_raw.get("hermes_url", PythConfig.hermes_url),
            feeds=dict(pyth_raw.get("feeds", {})),
        ),
    )


def _build_cache(raw: dict[str, Any]) -> CacheConfig:
    return CacheConfig(
        enabled=bool(raw.get("enabled", True)),
        sqlite_path=raw.get("sqlite_path", CacheConfig.sqlite_path),
    )


def _build_risk(raw: dict[str, Any]) -> RiskPolicy:
    defaults = RiskPolicy()
    ladder = raw.get("ladder", {})
    status = raw.get("status", {})
    return RiskPolicy(
        liquidatable_below=float(ladder.get("liquidatable", defaults.liquidatable_below)),
        critical_below=float(ladder.get("critical", defaults.critical_below)),
        high_below=float(ladder.get("high", defaults.high_below)),
        medium_below=float(ladder.get("medium", defaults.medium_below)),
        low_below=float(ladder.get("low", defaults.low_below)),
        safety_margin=float(raw.get("safety_margin", defaults.safety_margin)),
        status_danger_below=float(status.get("danger", defaults.status_danger_below)),
        status_warning_below=float(status.get("warning", defaults.status_warning_below)),
        concentration_limit=float(
            raw.get("concentration_limit", defaults.concentration_limit)
        ),
        max_reward_apy=float(raw.get("max_reward_apy", defaults.max_reward_apy)),
        reward_dominance_ratio=float(
            raw.get("reward_dominance_ratio", defaults.reward_dominance_ratio)
        ),
        rate_change_threshold_pct=float(
            raw.get("rate_change_threshold_pct", defaults.rate_change_threshold_pct)
        ),
    )


def _build_monitor(raw: dict[str, Any]) -> MonitorConfig:
    th = raw.get("thresholds", {})
    return MonitorConfig(
        poll_interval_seconds=int(raw.get("poll_interval_seconds", 10)),
        thresholds=AlertThresholdsConfig(
            warning=float(th.get("warning", 1.5)),
            danger=float(th.get("danger", 1.3)),
            critical=float(th.get("critical", 1.1)),
        ),
    )


def _build_wallets(raw: list[dict[str, Any]]) -> tuple[WalletConfig, ...]:
    wallets: list[WalletConfig] = []
    for w in raw:
        wallets.append(
            WalletConfig(
                label=w.get("label", ""),
                chain=w.get("chain", ""),
                address=w.get("address", ""),
                protocols=tuple(w.get("protocols", [])),
            )
        )
    return tuple(wallets)


def _build_notifications(raw: dict[str, Any]) -> NotificationsConfig:
    tg = raw.get("telegram", {})
    em = raw.get("email", {})
    return NotificationsConfig(
        telegram=TelegramConfig(
            enabled=bool(tg.get("enabled", False)),
            alert_bot_token=tg.get("alert_bot_token", ""),
            log_bot_token=tg.get("log_bot_token", ""),
            chat_id=str(tg.get("chat_id", "")),
        ),
        email=EmailConfig(
            enabled=bool(em.get("enabled", False)),
            alert_email=em.get("alert_email", ""),
            smtp_server=em.get("smtp_server", "smtp.gmail.com"),
            smtp_port=int(em.get("smtp_port", 587)),
            sender_email=em.get("sender_email", ""),
            sender_password=em.get("sender_password", ""),
        ),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (two levels up from this file).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    cfg = AppConfig(
        chains=_build_chains(raw.get("chains", {})),
        protocols=_build_protocols(raw.get("protocols", {})),
        data_sources=_build_data_sources(raw.get("data_sources", {})),
        price_oracle=_build_price_oracle(raw.get("price_oracle", {})),
        cache=_build_cache(raw.get("cache", {})),
        risk=_build_risk(raw.get("risk", {})),
        monitor=_build_monitor(raw.get("monitor", {})),
        wallets=_build_wallets(raw.get("wallets", [])),
        notifications=_build_notifications(raw.get("notifications", {})),
    )

    _validate(cfg)
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    if not cfg.chains:
        raise ValueError("At least one chain must be configured")

    for chain_name, chain in cfg.chains.items():
        if not chain.rpc_endpoints:
            raise ValueError(f"Chain '{chain_name}' has no RPC endpoints")

    known = {p.value for p in Protocol}
    for proto_name, proto in cfg.protocols.items():
        if proto_name not in known:
            raise ValueError(
                f"Unknown protocol '{proto_name}' (expected one of {sorted(known)})"
            )
        if proto.chain not in cfg.chains:
            raise ValueError(
                f"Protocol '{proto_name}' references unknown chain '{proto.chain}'"
            )

    if cfg.price_oracle.chainlink.feeds and cfg.price_oracle.chainlink.chain not in cfg.chains:
        raise ValueError(
            f"Chainlink oracle references unknown chain "
            f"'{cfg.price_oracle.chainlink.chain}'"
        )

    risk = cfg.risk
    ladder = (
        risk.liquidatable_below,
        risk.critical_below,
        risk.high_below,
        risk.medium_below,
        risk.low_below,
    )
    if list(ladder) != sorted(ladder):
        raise ValueError(f"Risk ladder thresholds must be ascending, got {ladder}")
    if not 0.0 < risk.safety_margin <= 1.0:
        raise ValueError(f"Risk safety_margin must be in (0, 1], got {risk.safety_margin}")

    th = cfg.monitor.thresholds
    if not th.critical < th.danger < th.warning:
        raise ValueError(
            "Monitor thresholds must satisfy critical < danger < warning"
        )

    for wallet in cfg.wallets:
        if not wallet.address:
            raise ValueError(f"Wallet '{wallet.label}' has no address")
        if wallet.chain not in cfg.chains:
            raise ValueError(
                f"Wallet '{wallet.label}' references unknown chain '{wallet.chain}'"
            )
        for proto in wallet.protocols:
            if proto not in cfg.protocols:
                raise ValueError(
                    f"Wallet '{wallet.label}' references unknown protocol '{proto}'"
                )
