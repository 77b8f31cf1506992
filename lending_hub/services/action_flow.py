"""State machine for executing an approval + action call sequence."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Sequence

from ..errors import LendingHubError
from ..models import CallDescription

logger = logging.getLogger(__name__)


class FlowState(str, Enum):
    IDLE = "idle"
    APPROVING = "approving"
    ACTING = "acting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FlowEvent(str, Enum):
    START = "start"
    APPROVAL_CONFIRMED = "approval_confirmed"
    ACTION_CONFIRMED = "action_confirmed"
    ERROR = "error"
    RESET = "reset"


class InvalidTransitionError(LendingHubError):
    def __init__(self, state: FlowState, event: FlowEvent) -> None:
        super().__init__(f"Cannot apply '{event.value}' in state '{state.value}'")
        self.state = state
        self.event = event


_TRANSITIONS: dict[tuple[FlowState, FlowEvent], FlowState] = {
    (FlowState.APPROVING, FlowEvent.APPROVAL_CONFIRMED): FlowState.ACTING,
    (FlowState.ACTING, FlowEvent.ACTION_CONFIRMED): FlowState.SUCCEEDED,
    (FlowState.APPROVING, FlowEvent.ERROR): FlowState.FAILED,
    (FlowState.ACTING, FlowEvent.ERROR): FlowState.FAILED,
}


def transition(
    state: FlowState, event: FlowEvent, needs_approval: bool = False
) -> FlowState:
    """Next state for ``event``; raises InvalidTransitionError otherwise."""
    state, event = FlowState(state), FlowEvent(event)
    if event == FlowEvent.RESET:
        return FlowState.IDLE
    if state == FlowState.IDLE and event == FlowEvent.START:
        return FlowState.APPROVING if needs_approval else FlowState.ACTING
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(state, event) from None


class ActionFlow:
    """Walks a built call list: approvals first, then the action itself."""

    def __init__(self, calls: Sequence[CallDescription]) -> None:
        if not calls:
            raise ValueError("ActionFlow needs at least one call")
        self.approvals = [c for c in calls if c.function_name == "approve"]
        self.actions = [c for c in calls if c.function_name != "approve"]
        if not self.actions:
            raise ValueError("ActionFlow needs an action call besides approvals")
        self.state = FlowState.IDLE
        self.error: str | None = None

    @property
    def needs_approval(self) -> bool:
        return bool(self.approvals)

    def dispatch(self, event: FlowEvent | str, error: str | None = None) -> FlowState:
        new_state = transition(self.state, FlowEvent(event), self.needs_approval)
        logger.debug("Action flow %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        if new_state == FlowState.FAILED:
            self.error = error
        elif new_state == FlowState.IDLE:
            self.error = None
        return new_state

    def start(self) -> FlowState:
        return self.dispatch(FlowEvent.START)

    def next_call(self) -> list[CallDescription]:
        """Calls to submit in the current state; empty when nothing is pending."""
        if self.state == FlowState.APPROVING:
            return list(self.approvals)
        if self.state == FlowState.ACTING:
            return list(self.actions)
        return []

    @property
    def is_done(self) -> bool:
        return self.state in (FlowState.SUCCEEDED, FlowState.FAILED)
