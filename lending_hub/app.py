"""Wiring: build clients, adapters and services from an AppConfig."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .chains.evm import EvmClient
from .config import AppConfig
from .datasources import MorphoApiClient, YieldsClient
from .interfaces.notifier import Notifier
from .interfaces.price_oracle import PriceOracle
from .models import Protocol
from .notifications import EmailNotifier, TelegramNotifier
from .oracles import ChainlinkOracle, FallbackOracle, PythOracle
from .protocols import BaseLendingAdapter, build_adapters
from .services.aggregator import LendingAggregator
from .services.cache import SqliteCacheStore, TieredCache
from .services.monitor import HealthMonitor
from .services.rewards import RewardApyService
from .services.simulation import TransactionSimulator

logger = logging.getLogger(__name__)


@dataclass
class Application:
    config: AppConfig
    cache: TieredCache
    chain_clients: dict[str, EvmClient]
    adapters: dict[Protocol, BaseLendingAdapter]
    aggregator: LendingAggregator
    monitor: HealthMonitor
    price_oracle: PriceOracle
    simulators: dict[str, TransactionSimulator] = field(default_factory=dict)

    def simulator_for(self, protocol: Protocol) -> TransactionSimulator:
        chain = self.config.protocols[protocol.value].chain
        return self.simulators[chain]


def build_notifiers(config: AppConfig) -> list[Notifier]:
    notifiers: list[Notifier] = []
    if config.notifications.telegram.enabled:
        notifiers.append(TelegramNotifier(config.notifications.telegram))
    if config.notifications.email.enabled:
        notifiers.append(EmailNotifier(config.notifications.email))
    return notifiers


def build_cache(config: AppConfig) -> TieredCache:
    if not config.cache.enabled:
        return TieredCache()
    return TieredCache(persistent=SqliteCacheStore(config.cache.sqlite_path))


def build_application(config: AppConfig) -> Application:
    cache = build_cache(config)
    chain_clients = {name: EvmClient(cfg) for name, cfg in config.chains.items()}

    # Prices: Chainlink on-chain first, Pyth for whatever it misses.
    oracle_chain = config.price_oracle.chainlink.chain or next(iter(config.chains))
    oracle_client = chain_clients[oracle_chain]
    price_oracle = FallbackOracle(
        ChainlinkOracle(oracle_client, config.price_oracle.chainlink),
        PythOracle(config.price_oracle.pyth),
        cache,
        oracle_client.chain_id,
    )

    yields = YieldsClient(config.data_sources, cache, oracle_client.chain_id)
    rewards = RewardApyService(yields, config.risk)
    morpho_api = None
    if Protocol.MORPHO.value in config.protocols:
        morpho_chain = config.protocols[Protocol.MORPHO.value].chain
        morpho_api = MorphoApiClient(
            config.data_sources, cache, chain_clients[morpho_chain].chain_id
        )

    adapters = build_adapters(config, chain_clients, rewards, morpho_api, price_oracle)
    aggregator = LendingAggregator(adapters, cache, config.risk)
    monitor = HealthMonitor(config, aggregator, build_notifiers(config))
    simulators = {
        name: TransactionSimulator(client, price_oracle) for name, client in chain_clients.items()
    }
    logger.info("Application ready: %d adapters on %d chains", len(adapters), len(chain_clients))
    return Application(
        config=config,
        cache=cache,
        chain_clients=chain_clients,
        adapters={a.protocol: a for a in adapters},
        aggregator=aggregator,
        monitor=monitor,
        price_oracle=price_oracle,
        simulators=simulators,
    )
