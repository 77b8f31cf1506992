"""Aave V3 protocol adapter."""
from .adapter import AaveV3Adapter

__all__ = ["AaveV3Adapter"]
