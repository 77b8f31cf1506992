"""USD price feed abstraction."""
from typing import Protocol


class PriceOracle(Protocol):
    """Fetch USD prices keyed by asset symbol; missing symbols are omitted."""

    async def fetch_prices(self, symbols: list[str] | None = None) -> dict[str, float]: ...
