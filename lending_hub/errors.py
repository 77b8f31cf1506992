"""Exception hierarchy for lending-hub."""
from __future__ import annotations


class LendingHubError(Exception):
    """Base class for all lending-hub errors."""


class DataSourceError(LendingHubError):
    """An upstream API or chain endpoint could not be reached or answered badly."""


class RpcConnectionError(DataSourceError):
    """Every configured RPC endpoint failed."""


class ContractRevertError(LendingHubError):
    """A contract call reverted during eth_call or eth_estimateGas."""

    def __init__(self, reason: str, data: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.data = data


class IntegrityError(LendingHubError):
    """Malformed upstream payload or colliding market identifiers."""


class UnsupportedActionError(LendingHubError):
    """The protocol does not support the requested action."""


class MarketNotFoundError(LendingHubError):
    """No market with the given identifier exists in the adapter."""
