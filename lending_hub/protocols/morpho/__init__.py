"""Morpho vault adapter."""
from .adapter import MorphoVaultAdapter

__all__ = ["MorphoVaultAdapter"]
