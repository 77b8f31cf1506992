"""Compound III protocol adapter."""
from .adapter import CompoundV3Adapter

__all__ = ["CompoundV3Adapter"]
