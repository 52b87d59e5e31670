from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy.orm import Session

GuardResult = List[Dict[str, str]]


def _get_value(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _status_value(value: Any) -> Any:
    return getattr(value, "value", value)


def task_failures(tasks: Any) -> GuardResult:
    """
    Completeness predicate shared by ``complete`` and the release gate:
    every required task DONE, every RII task inspected by someone other
    than whoever performed it.
    """
    failures: GuardResult = []
    for task in tasks or []:
        label = f"task:{_get_value(task, 'sequence')}"
        done = _status_value(_get_value(task, "status")) == "DONE"
        if _get_value(task, "required") and not done:
            failures.append({"field": label, "reason": "required task not done"})
        if _get_value(task, "is_rii"):
            inspector = _get_value(task, "inspected_by")
            performer = _get_value(task, "completed_by")
            if not done:
                if not _get_value(task, "required"):
                    failures.append({"field": label, "reason": "RII task not done"})
            elif not inspector:
                failures.append({"field": label, "reason": "RII inspection missing"})
            elif inspector == performer:
                failures.append({"field": label, "reason": "RII inspector must differ from performer"})
    return failures


def guard_has_tasks(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    from_state: str,
    to_state: str,
) -> GuardResult:
    if not _get_value(after_obj, "tasks"):
        return [{"field": "tasks", "reason": "at least one task required"}]
    return []


def guard_tasks_complete(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    from_state: str,
    to_state: str,
) -> GuardResult:
    return task_failures(_get_value(after_obj, "tasks"))


def guard_required_tasks_done(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    from_state: str,
    to_state: str,
) -> GuardResult:
    missing = []
    for task in _get_value(after_obj, "tasks") or []:
        if _get_value(task, "required") and _status_value(_get_value(task, "status")) != "DONE":
            missing.append({"field": f"task:{_get_value(task, 'sequence')}", "reason": "required task not done"})
    return missing


def guard_no_shortfall(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    from_state: str,
    to_state: str,
) -> GuardResult:
    missing = []
    for part in _get_value(after_obj, "parts") or []:
        if (_get_value(part, "shortfall") or 0) > 0:
            missing.append(
                {"field": f"part:{_get_value(part, 'part_number')}", "reason": "outstanding shortfall"}
            )
    return missing


def guard_cancel_reason(
    db: Session,
    *,
    before_obj: Any,
    after_obj: Any,
    from_state: str,
    to_state: str,
) -> GuardResult:
    if not (_get_value(after_obj, "cancel_reason") or "").strip():
        return [{"field": "cancel_reason", "reason": "cancellation reason required"}]
    return []
