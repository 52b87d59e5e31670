"""
Typed errors raised by the engine.

Every error carries a machine-readable ``code`` and a ``detail`` list of
``{"field": ..., "reason": ...}`` entries, the same shape the workflow
guards produce.
"""

from __future__ import annotations

from typing import Dict, List, Optional

Detail = List[Dict[str, str]]


class EngineError(Exception):
    code = "engine_error"

    def __init__(self, message: str, *, detail: Optional[Detail] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Detail = list(detail or [])

    def __str__(self) -> str:
        if not self.detail:
            return self.message
        reasons = "; ".join(f"{d.get('field')}: {d.get('reason')}" for d in self.detail)
        return f"{self.message} ({reasons})"


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(EngineError):
    code = "validation_error"


class NotFoundError(EngineError):
    code = "not_found"


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class ConcurrentModificationError(EngineError):
    """Stale read: re-read the current state and retry."""

    code = "concurrent_modification"


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TransitionError(EngineError):
    code = "invalid_transition"


class DuplicateOpenOrderError(EngineError):
    code = "duplicate_open_order"


class OutOfOrderEventError(EngineError):
    code = "out_of_order_event"


# ---------------------------------------------------------------------------
# Invariant violations
# ---------------------------------------------------------------------------


class InvariantViolation(EngineError):
    code = "invariant_violation"


class SeparationOfDutiesError(InvariantViolation):
    code = "separation_of_duties"


class AlreadyInspectedBySameUserError(SeparationOfDutiesError):
    code = "already_inspected_by_same_user"


class IncompleteTasksError(InvariantViolation):
    code = "incomplete_tasks"


class ReleaseBlockedError(InvariantViolation):
    code = "release_blocked"


class UnknownReservationError(InvariantViolation):
    code = "unknown_reservation"


class InventoryInvariantError(InvariantViolation):
    code = "inventory_invariant"


class LedgerIntegrityError(InvariantViolation):
    """The materialised projection no longer matches the ledger fold."""

    code = "ledger_integrity"
