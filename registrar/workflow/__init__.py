from .context import AttemptContext, first_signal
from .engine import HANDLERS, SignupWorkflow
from .states import TERMINAL_STATES, WorkflowOutcome, WorkflowState

__all__ = [
    "AttemptContext",
    "HANDLERS",
    "SignupWorkflow",
    "TERMINAL_STATES",
    "WorkflowOutcome",
    "WorkflowState",
    "first_signal",
]
