from .engine import TransitionError, apply_transition, enter_initial_state
from .registry import WORKFLOWS

__all__ = ["TransitionError", "WORKFLOWS", "apply_transition", "enter_initial_state"]
