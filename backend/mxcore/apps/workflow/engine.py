from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ...errors import TransitionError
from ..audit import services as audit_services
from .registry import WORKFLOWS, Transition

logger = logging.getLogger(__name__)


def _workflow(entity_type: str) -> Dict[str, Any]:
    workflow = WORKFLOWS.get(entity_type)
    if not workflow:
        raise TransitionError(
            f"No workflow registered for {entity_type}.",
            detail=[{"field": "entity_type", "reason": f"No workflow registered for {entity_type}"}],
        )
    return workflow


def resolve_transition(entity_type: str, from_state: str, action: str) -> Transition:
    """Table lookup only; guards are not evaluated."""
    transitions = _workflow(entity_type).get("transitions", {})
    transition = transitions.get(from_state, {}).get(action)
    if transition is None:
        raise TransitionError(
            f"Cannot {action} a {entity_type} in {from_state}.",
            detail=[{"field": "status", "reason": f"{action} not allowed from {from_state}"}],
        )
    return transition


def next_state(entity_type: str, from_state: str, action: str) -> str:
    transition = resolve_transition(entity_type, from_state, action)
    return transition.to_state or from_state


def allowed_actions(entity_type: str, state: str) -> List[str]:
    return sorted(_workflow(entity_type).get("transitions", {}).get(state, {}).keys())


def is_terminal(entity_type: str, state: str) -> bool:
    return state in _workflow(entity_type).get("terminal", set())


def apply_transition(
    db: Session,
    *,
    actor_user_id: Optional[str],
    entity_type: str,
    entity_id: str,
    from_state: str,
    action: str,
    before_obj: Any,
    after_obj: Any,
    aircraft_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    critical: bool = True,
) -> str:
    """
    Validate ``action`` against the transition table, run its guards and
    record the audit event. Returns the resulting state; the caller
    assigns it.
    """
    transition = resolve_transition(entity_type, from_state, action)
    to_state = transition.to_state or from_state

    failures: List[Dict[str, str]] = []
    for guard in transition.guards:
        failures.extend(
            guard(
                db,
                before_obj=before_obj,
                after_obj=after_obj,
                from_state=from_state,
                to_state=to_state,
            )
        )

    if failures:
        logger.warning(
            "Transition guard failed",
            extra={"entity_type": entity_type, "entity_id": entity_id, "action": action, "from_state": from_state},
        )
        raise transition.error(
            f"Cannot {action} {entity_type} {entity_id}: requirements not met.",
            detail=failures,
        )

    if transition.to_state is None:
        return to_state

    before_payload: Dict[str, Any] = {"status": from_state}
    after_payload: Dict[str, Any] = {"status": to_state}
    if isinstance(before_obj, dict):
        before_payload.update(before_obj)
    if isinstance(after_obj, dict):
        after_payload.update(after_obj)

    audit_services.log_event(
        db,
        actor_user_id=actor_user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action="transition",
        aircraft_id=aircraft_id,
        before=before_payload,
        after=after_payload,
        correlation_id=correlation_id,
        metadata={"workflow": entity_type, "action": action},
        critical=critical,
    )
    return to_state
