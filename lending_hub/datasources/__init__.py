"""HTTP data source clients."""
from .defillama import YieldPool, YieldsClient
from .morpho_api import MorphoApiClient, MorphoVault, MorphoVaultPosition

__all__ = [
    "MorphoApiClient",
    "MorphoVault",
    "MorphoVaultPosition",
    "YieldPool",
    "YieldsClient",
]
