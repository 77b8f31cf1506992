"""Price oracles."""
from .chainlink import ChainlinkOracle
from .fallback import FallbackOracle
from .pyth import PythOracle

__all__ = ["ChainlinkOracle", "FallbackOracle", "PythOracle"]
