"""Moonwell protocol adapter."""
from .adapter import MoonwellAdapter

__all__ = ["MoonwellAdapter"]
