from ...errors import TransitionError
from .engine import allowed_actions, apply_transition, is_terminal, next_state
from .registry import WORKFLOWS

__all__ = ["TransitionError", "WORKFLOWS", "allowed_actions", "apply_transition", "is_terminal", "next_state"]
