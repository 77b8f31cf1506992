"""Static protocol registry: tag → adapter class and accounting scheme."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Mapping

from ..config import AppConfig
from ..datasources.morpho_api import MorphoApiClient
from ..interfaces.chain import ChainClient
from ..interfaces.price_oracle import PriceOracle
from ..models import Protocol
from ..services.rewards import RewardApyService
from .aave import AaveV3Adapter
from .base import BaseLendingAdapter
from .compound import CompoundV3Adapter
from .moonwell import MoonwellAdapter
from .morpho import MorphoVaultAdapter

logger = logging.getLogger(__name__)


class AccountingScheme(str, Enum):
    DIRECT = "direct"  # receipt token 1:1 with underlying
    BASE_LEDGER = "base_ledger"  # balanceOf already in underlying units
    EXCHANGE_RATE = "exchange_rate"  # balance × exchangeRate / 1e18
    SHARE_VAULT = "share_vault"  # ERC-4626 preview functions


@dataclass(frozen=True)
class RegistryEntry:
    adapter_cls: type[BaseLendingAdapter]
    scheme: AccountingScheme


REGISTRY: dict[Protocol, RegistryEntry] = {
    Protocol.AAVE: RegistryEntry(AaveV3Adapter, AccountingScheme.DIRECT),
    Protocol.COMPOUND: RegistryEntry(CompoundV3Adapter, AccountingScheme.BASE_LEDGER),
    Protocol.MOONWELL: RegistryEntry(MoonwellAdapter, AccountingScheme.EXCHANGE_RATE),
    Protocol.MORPHO: RegistryEntry(MorphoVaultAdapter, AccountingScheme.SHARE_VAULT),
}


def check_registry(registry: Mapping[Protocol, RegistryEntry] = REGISTRY) -> None:
    """Raise if any protocol tag lacks a registry entry."""
    missing = [p.value for p in Protocol if p not in registry]
    if missing:
        raise RuntimeError(f"No adapter registered for: {', '.join(missing)}")


def get_entry(protocol: Protocol | str) -> RegistryEntry:
    return REGISTRY[Protocol(protocol)]


def build_adapters(
    config: AppConfig,
    chain_clients: Mapping[str, ChainClient],
    rewards: RewardApyService | None = None,
    morpho_api: MorphoApiClient | None = None,
    price_oracle: PriceOracle | None = None,
) -> list[BaseLendingAdapter]:
    """Instantiate an adapter for every enabled protocol in ``config``."""
    check_registry()

    adapters: list[BaseLendingAdapter] = []
    for name, proto_config in config.protocols.items():
        if not proto_config.enabled:
            logger.info("Protocol %s disabled, skipping", name)
            continue
        entry = get_entry(name)
        client = chain_clients[proto_config.chain]
        if entry.scheme is AccountingScheme.SHARE_VAULT:
            adapter = entry.adapter_cls(
                client,
                proto_config,
                rewards,
                config.risk,
                api=morpho_api,
                price_oracle=price_oracle,
            )
        else:
            adapter = entry.adapter_cls(client, proto_config, rewards, config.risk)
        adapters.append(adapter)
        logger.info("Loaded %s adapter (%s accounting)", name, entry.scheme.value)
    return adapters
