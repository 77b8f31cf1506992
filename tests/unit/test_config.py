"""Unit tests for config loading, env interpolation, and validation."""
from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from lending_hub.config import (
    AlertThresholdsConfig,
    AppConfig,
    MonitorConfig,
    ProtocolConfig,
    RiskPolicy,
    WalletConfig,
    _interpolate_env,
    _validate,
    load_config,
)


class TestInterpolateEnv:
    def test_simple_substitution(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MY_VAR", "hello")
        assert _interpolate_env("${MY_VAR}") == "hello"

    def test_missing_var_becomes_empty(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("NONEXISTENT_VAR_XYZ", raising=False)
        assert _interpolate_env("${NONEXISTENT_VAR_XYZ}") == ""

    def test_nested_structures(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TOK", "secret")
        result = _interpolate_env({"key": "${TOK}", "items": ["${TOK}", "plain"]})
        assert result == {"key": "secret", "items": ["secret", "plain"]}

    def test_non_string_passthrough(self) -> None:
        assert _interpolate_env(42) == 42
        assert _interpolate_env(True) is True


class TestLoadConfig:
    def test_loads_valid_yaml(self, sample_yaml_path: Path) -> None:
        cfg = load_config(sample_yaml_path)

        assert isinstance(cfg, AppConfig)
        assert cfg.chains["base"].chain_id == 8453
        assert cfg.protocols["aave"].contracts["pool"] == "0xpool"
        assert cfg.protocols["morpho"].vaults == ("0xvault",)
        assert cfg.data_sources.min_tvl_usd == 50_000
        assert cfg.data_sources.vault_asset_symbols == ("USDC",)
        assert cfg.price_oracle.chainlink.feeds == {"ETH": "0xfeed"}
        assert cfg.cache.enabled is False
        assert cfg.monitor.poll_interval_seconds == 30
        assert cfg.monitor.thresholds.warning == 1.6
        assert cfg.notifications.telegram.chat_id == "999"

    def test_unset_rpc_endpoints_are_dropped(self, sample_yaml_path: Path) -> None:
        cfg = load_config(sample_yaml_path)
        assert cfg.chains["base"].rpc_endpoints == ("https://rpc.example.com",)

    def test_risk_overrides_keep_other_defaults(self, sample_yaml_path: Path) -> None:
        risk = load_config(sample_yaml_path).risk
        assert risk.critical_below == 1.15
        assert risk.status_danger_below == 1.25
        assert risk.safety_margin == 0.7
        assert risk.high_below == RiskPolicy().high_below
        assert risk.max_reward_apy == 50.0

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nonexistent.yaml")

    def test_env_interpolation_in_yaml(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("TEST_ADDR", "0xABCDEF")
        path = tmp_path / "config.yaml"
        path.write_text(
            "chains:\n"
            "  base:\n"
            "    rpc_endpoints: [\"https://rpc.test.com\"]\n"
            "wallets:\n"
            "  - label: w1\n"
            "    chain: base\n"
            "    address: \"${TEST_ADDR}\"\n"
        )
        cfg = load_config(path)
        assert cfg.wallets[0].address == "0xABCDEF"


class TestValidate:
    def test_sample_config_is_valid(self, sample_app_config: AppConfig) -> None:
        _validate(sample_app_config)

    def test_no_chains(self, sample_app_config: AppConfig) -> None:
        with pytest.raises(ValueError, match="At least one chain"):
            _validate(replace(sample_app_config, chains={}))

    def test_unknown_protocol(self, sample_app_config: AppConfig) -> None:
        cfg = replace(
            sample_app_config,
            protocols={"euler": ProtocolConfig(chain="base")},
            wallets=(),
        )
        with pytest.raises(ValueError, match="Unknown protocol 'euler'"):
            _validate(cfg)

    def test_protocol_unknown_chain(self, sample_app_config: AppConfig) -> None:
        cfg = replace(
            sample_app_config,
            protocols={"aave": ProtocolConfig(chain="arbitrum")},
            wallets=(),
        )
        with pytest.raises(ValueError, match="unknown chain 'arbitrum'"):
            _validate(cfg)

    def test_risk_ladder_must_ascend(self, sample_app_config: AppConfig) -> None:
        cfg = replace(sample_app_config, risk=RiskPolicy(critical_below=1.6))
        with pytest.raises(ValueError, match="ascending"):
            _validate(cfg)

    def test_safety_margin_range(self, sample_app_config: AppConfig) -> None:
        cfg = replace(sample_app_config, risk=RiskPolicy(safety_margin=0.0))
        with pytest.raises(ValueError, match="safety_margin"):
            _validate(cfg)

    def test_monitor_threshold_order(self, sample_app_config: AppConfig) -> None:
        cfg = replace(
            sample_app_config,
            monitor=MonitorConfig(
                thresholds=AlertThresholdsConfig(warning=1.2, danger=1.3, critical=1.1)
            ),
        )
        with pytest.raises(ValueError, match="critical < danger < warning"):
            _validate(cfg)

    def test_wallet_without_address(self, sample_app_config: AppConfig) -> None:
        cfg = replace(
            sample_app_config,
            wallets=(WalletConfig(label="empty", chain="base", address=""),),
        )
        with pytest.raises(ValueError, match="has no address"):
            _validate(cfg)

    def test_wallet_unknown_protocol(self, sample_app_config: AppConfig) -> None:
        cfg = replace(
            sample_app_config,
            wallets=(
                WalletConfig(label="w", chain="base", address="0x1", protocols=("moonwell",)),
            ),
        )
        with pytest.raises(ValueError, match="unknown protocol 'moonwell'"):
            _validate(cfg)
