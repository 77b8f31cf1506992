"""Lending protocol adapters."""
from .aave import AaveV3Adapter
from .base import BaseLendingAdapter
from .compound import CompoundV3Adapter
from .moonwell import MoonwellAdapter
from .morpho import MorphoVaultAdapter
from .registry import REGISTRY, AccountingScheme, build_adapters

__all__ = [
    "AaveV3Adapter",
    "AccountingScheme",
    "BaseLendingAdapter",
    "CompoundV3Adapter",
    "MoonwellAdapter",
    "MorphoVaultAdapter",
    "REGISTRY",
    "build_adapters",
]
