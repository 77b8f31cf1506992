"""A single storage tier of the tiered cache."""
from typing import Protocol

from ..models import CacheEntry


class CacheStore(Protocol):
    """Key/value storage for whole cache entries."""

    def load(self, key: str) -> CacheEntry | None: ...

    def save(self, key: str, entry: CacheEntry) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...

    def clear(self) -> None: ...
