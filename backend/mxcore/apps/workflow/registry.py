from __future__ import annotations

from typing import Callable, List, NamedTuple, Optional, Type

from ...errors import EngineError, IncompleteTasksError, TransitionError
from .guards import (
    guard_cancel_reason,
    guard_has_tasks,
    guard_no_shortfall,
    guard_required_tasks_done,
    guard_tasks_complete,
)


class Transition(NamedTuple):
    to_state: Optional[str]  # None: the action does not change state
    guards: List[Callable]
    error: Type[EngineError] = TransitionError


def _stay(*guards: Callable) -> Transition:
    return Transition(None, list(guards))


_TASK_ACTIONS = {
    "complete_task": _stay(),
    "inspect_task": _stay(),
}

_CANCEL = Transition("CANCELLED", [guard_cancel_reason])
_COMPLETE = Transition("COMPLETED", [guard_tasks_complete], IncompleteTasksError)

WORKFLOWS = {
    "work_order": {
        "terminal": {"RELEASED", "CANCELLED"},
        "transitions": {
            "DRAFT": {
                "submit": Transition("OPEN", [guard_has_tasks]),
                "cancel": _CANCEL,
            },
            "OPEN": {
                "start": Transition("IN_PROGRESS", []),
                "cancel": _CANCEL,
            },
            "IN_PROGRESS": {
                "request_parts": _stay(),
                "await_parts": Transition("PENDING_PARTS", []),
                "await_inspection": Transition("PENDING_INSPECTION", [guard_required_tasks_done], IncompleteTasksError),
                "complete": _COMPLETE,
                "cancel": _CANCEL,
                **_TASK_ACTIONS,
            },
            "PENDING_PARTS": {
                "request_parts": _stay(),
                "resume": Transition("IN_PROGRESS", [guard_no_shortfall]),
                "cancel": _CANCEL,
                **_TASK_ACTIONS,
            },
            "PENDING_INSPECTION": {
                "reopen": Transition("IN_PROGRESS", []),
                "complete": _COMPLETE,
                "cancel": _CANCEL,
                **_TASK_ACTIONS,
            },
            "COMPLETED": {
                "release": Transition("RELEASED", [guard_tasks_complete], IncompleteTasksError),
                "cancel": _CANCEL,
            },
            "RELEASED": {},
            "CANCELLED": {},
        },
    },
}
