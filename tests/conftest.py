"""Shared test fixtures and sample data."""
from __future__ import annotations

import textwrap
from pathlib import Path
from typing import Any, Callable
from unittest.mock import AsyncMock

import pytest

from lending_hub.config import (
    AlertThresholdsConfig,
    AppConfig,
    ChainConfig,
    EmailConfig,
    MonitorConfig,
    NotificationsConfig,
    ProtocolConfig,
    TelegramConfig,
    WalletConfig,
)
from lending_hub.models import LendingMarket, LendingPosition, Protocol

WALLET = "0x1111111111111111111111111111111111111111"
USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
WETH = "0x4200000000000000000000000000000000000006"


# ---------------------------------------------------------------------------
# Fake chain client
# ---------------------------------------------------------------------------


class FakeChain:
    """In-memory ChainClient: responses keyed by (address, signature).

    A response may be a value (wrapped into a 1-tuple), a tuple (returned
    as-is), a callable taking the call args, or an exception to raise.
    """

    def __init__(self, chain_id: int = 8453) -> None:
        self._chain_id = chain_id
        self.responses: dict[tuple[str, str], Any] = {}
        self.calls: list[tuple[str, str, tuple[Any, ...]]] = []
        self.eth_call = AsyncMock(return_value="0x")
        self.estimate_gas = AsyncMock(return_value=150_000)
        self.gas_price = AsyncMock(return_value=10**9)

    @property
    def chain_id(self) -> int:
        return self._chain_id

    def on(self, address: str, signature: str, result: Any) -> "FakeChain":
        self.responses[(address.lower(), signature)] = result
        return self

    async def call_function(
        self,
        to: str,
        signature: str,
        args: tuple[Any, ...] = (),
        output_types: tuple[str, ...] = (),
        sender: str | None = None,
    ) -> tuple[Any, ...]:
        self.calls.append((to.lower(), signature, tuple(args)))
        key = (to.lower(), signature)
        if key not in self.responses:
            raise AssertionError(f"Unexpected call {signature} on {to}")
        value = self.responses[key]
        if isinstance(value, BaseException):
            raise value
        if callable(value):
            value = value(*args)
        return value if isinstance(value, tuple) else (value,)

    def called(self, signature: str) -> int:
        return sum(1 for _, sig, _ in self.calls if sig == signature)


@pytest.fixture()
def fake_chain() -> FakeChain:
    return FakeChain()


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------


def make_market(**overrides: Any) -> LendingMarket:
    fields: dict[str, Any] = dict(
        protocol=Protocol.AAVE,
        chain_id=8453,
        market_id=USDC.lower(),
        pool_address="0xpool",
        asset_address=USDC,
        asset_symbol="USDC",
        asset_decimals=6,
        supply_apy=4.0,
        borrow_apy=6.0,
        total_supply=10_000_000 * 10**6,
        total_borrow=6_000_000 * 10**6,
        available_liquidity=4_000_000 * 10**6,
        available_liquidity_usd=4_000_000.0,
        utilization=0.6,
        ltv=0.75,
        liquidation_threshold=0.78,
        can_supply=True,
        can_borrow=True,
        can_use_as_collateral=True,
        price_usd=1.0,
    )
    fields.update(overrides)
    return LendingMarket(**fields)


def make_position(**overrides: Any) -> LendingPosition:
    fields: dict[str, Any] = dict(
        protocol=Protocol.AAVE,
        chain_id=8453,
        market_id=USDC.lower(),
        user=WALLET,
        asset_symbol="USDC",
        asset_decimals=6,
    )
    fields.update(overrides)
    return LendingPosition(**fields)


@pytest.fixture()
def market_factory() -> Callable[..., LendingMarket]:
    return make_market


@pytest.fixture()
def position_factory() -> Callable[..., LendingPosition]:
    return make_position


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_chain_config() -> ChainConfig:
    return ChainConfig(
        chain_id=8453,
        rpc_endpoints=("https://rpc1.example.com", "https://rpc2.example.com"),
        rpc_timeout=10,
    )


@pytest.fixture()
def sample_app_config(sample_chain_config: ChainConfig) -> AppConfig:
    return AppConfig(
        chains={"base": sample_chain_config},
        protocols={
            "aave": ProtocolConfig(
                chain="base",
                contracts={"pool": "0xpool", "data_provider": "0xdp", "oracle": "0xoracle"},
            ),
            "morpho": ProtocolConfig(chain="base", vaults=("0xvault",)),
        },
        monitor=MonitorConfig(
            poll_interval_seconds=5,
            thresholds=AlertThresholdsConfig(warning=1.5, danger=1.3, critical=1.1),
        ),
        wallets=(
            WalletConfig(
                label="test-wallet",
                chain="base",
                address=WALLET,
                protocols=("aave", "morpho"),
            ),
        ),
        notifications=NotificationsConfig(
            telegram=TelegramConfig(
                enabled=True,
                alert_bot_token="fake-alert-token",
                log_bot_token="fake-log-token",
                chat_id="12345",
            ),
            email=EmailConfig(enabled=False),
        ),
    )


SAMPLE_YAML = textwrap.dedent("""\
    chains:
      base:
        chain_id: 8453
        rpc_endpoints: ["https://rpc.example.com", "${UNSET_RPC_FOR_TESTS}"]
        rpc_timeout: 10
    protocols:
      aave:
        chain: base
        contracts:
          pool: "0xpool"
          data_provider: "0xdp"
          oracle: "0xoracle"
      morpho:
        chain: base
        vaults: ["0xvault"]
    data_sources:
      min_tvl_usd: 50000
      vault_asset_symbols: [USDC]
    price_oracle:
      chainlink:
        chain: base
        feeds: {ETH: "0xfeed"}
      pyth:
        hermes_url: "https://hermes.example.com"
        feeds: {ETH: "aaa", USDC: "bbb"}
    cache:
      enabled: false
    risk:
      ladder:
        critical: 1.15
      status:
        danger: 1.25
      safety_margin: 0.7
    monitor:
      poll_interval_seconds: 30
      thresholds:
        warning: 1.6
        danger: 1.3
        critical: 1.1
    wallets:
      - label: test-wallet
        chain: base
        address: "0xTEST"
        protocols: [aave]
    notifications:
      telegram:
        enabled: true
        alert_bot_token: "tok1"
        log_bot_token: "tok2"
        chat_id: 999
      email:
        enabled: false
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file
