from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class WorkflowState(str, Enum):
    DISCOVERING_LOGIN = "discovering_login"
    LOGGED_IN = "logged_in"
    SLOT_SELECTED = "slot_selected"
    PARTICIPANT_SELECTED = "participant_selected"
    ADDONS_HANDLED = "addons_handled"
    IN_CART = "in_cart"
    CHECKOUT_STARTED = "checkout_started"
    PAYMENT_PENDING = "payment_pending"
    COMPLETED = "completed"
    ACTION_REQUIRED = "action_required"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {WorkflowState.COMPLETED, WorkflowState.ACTION_REQUIRED, WorkflowState.FAILED}
)

# Forward order of the non-terminal states; terminals rank after all of them.
_ORDER = {
    state: i
    for i, state in enumerate(
        [
            WorkflowState.DISCOVERING_LOGIN,
            WorkflowState.LOGGED_IN,
            WorkflowState.SLOT_SELECTED,
            WorkflowState.PARTICIPANT_SELECTED,
            WorkflowState.ADDONS_HANDLED,
            WorkflowState.IN_CART,
            WorkflowState.CHECKOUT_STARTED,
            WorkflowState.PAYMENT_PENDING,
        ]
    )
}


def is_forward(current: WorkflowState, nxt: WorkflowState) -> bool:
    if nxt.is_terminal:
        return True
    return _ORDER[nxt] > _ORDER[current]


@dataclass
class WorkflowOutcome:
    state: WorkflowState
    last_step: WorkflowState
    code: str | None = None
    message: str = ""
    challenge_token: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def plan_status(self) -> str:
        return self.state.value
