"""Protocol interfaces for lending-hub."""
from .cache_store import CacheStore
from .chain import ChainClient
from .notifier import Notifier
from .price_oracle import PriceOracle
from .protocol_adapter import ProtocolAdapter

__all__ = ["CacheStore", "ChainClient", "Notifier", "PriceOracle", "ProtocolAdapter"]
