"""Interface every lending protocol adapter implements."""
from typing import Protocol

from ..models import (
    AccountSnapshot,
    ActionParams,
    CallDescription,
    HealthFactorAction,
    LendingMarket,
    LendingPosition,
    Protocol as ProtocolTag,
    ValidationResult,
)


class ProtocolAdapter(Protocol):
    """Normalizes one protocol's accounting into markets and positions."""

    @property
    def protocol(self) -> ProtocolTag: ...

    @property
    def chain_id(self) -> int: ...

    async def get_markets(self) -> list[LendingMarket]: ...

    async def get_market(self, market_id: str) -> LendingMarket | None: ...

    async def get_user_positions(self, user: str) -> list[LendingPosition]: ...

    async def get_account_snapshot(self, user: str) -> AccountSnapshot: ...

    async def build_supply(self, params: ActionParams) -> list[CallDescription]: ...

    async def build_withdraw(self, params: ActionParams) -> list[CallDescription]: ...

    async def build_borrow(self, params: ActionParams) -> list[CallDescription]: ...

    async def build_repay(self, params: ActionParams) -> list[CallDescription]: ...

    async def validate_supply(self, params: ActionParams) -> ValidationResult: ...

    async def validate_withdraw(self, params: ActionParams) -> ValidationResult: ...

    async def validate_borrow(self, params: ActionParams) -> ValidationResult: ...

    async def validate_repay(self, params: ActionParams) -> ValidationResult: ...

    async def calculate_health_factor(self, user: str) -> float: ...

    async def simulate_health_factor(
        self, user: str, action: HealthFactorAction
    ) -> float: ...
