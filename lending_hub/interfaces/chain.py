"""Chain client protocol for EVM JSON-RPC access."""
from typing import Any, Protocol, Sequence


class ChainClient(Protocol):
    """Abstract interface for EVM reads, dry-runs and gas queries."""

    @property
    def chain_id(self) -> int: ...

    async def call_function(
        self,
        to: str,
        signature: str,
        args: Sequence[Any] = (),
        output_types: Sequence[str] = (),
        sender: str | None = None,
    ) -> tuple[Any, ...]: ...

    async def eth_call(self, tx: dict[str, Any], block: str = "latest") -> str: ...

    async def estimate_gas(self, tx: dict[str, Any]) -> int: ...

    async def gas_price(self) -> int: ...
