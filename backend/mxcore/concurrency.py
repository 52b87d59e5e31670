"""
Optimistic-concurrency helpers.

Versioned rows (``version_id_col``) make SQLAlchemy emit
``UPDATE ... WHERE version = :seen``; a lost race surfaces as
``StaleDataError`` on flush. The engine converts that into
``ConcurrentModificationError`` and leaves retrying to the caller.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .errors import ConcurrentModificationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def flush_versioned(db: Session, *, entity: str, entity_id: Optional[str] = None) -> None:
    """
    Flush pending changes, mapping lost optimistic races to
    ConcurrentModificationError. The session is rolled back on conflict.
    """
    try:
        db.flush()
    except StaleDataError as exc:
        db.rollback()
        logger.debug(
            "Optimistic version conflict",
            extra={"entity": entity, "entity_id": entity_id},
        )
        raise ConcurrentModificationError(
            f"{entity} was modified concurrently; re-read and retry.",
            detail=[{"field": "version", "reason": "stale version"}],
        ) from exc


def ensure_version(*, entity: str, entity_id: str, current: int, expected: Optional[int]) -> None:
    if expected is not None and expected != current:
        raise ConcurrentModificationError(
            f"{entity} {entity_id} is at version {current}, not {expected}; re-read and retry.",
            detail=[{"field": "version", "reason": f"expected {expected}, found {current}"}],
        )


def run_with_retry(
    func: Callable[[], T],
    *,
    db: Optional[Session] = None,
    attempts: int = 3,
    backoff_base: float = 0.05,
) -> T:
    """
    Caller-side retry for operations that lost an optimistic race.

    ``func`` must re-read state on every attempt. Retries on
    ConcurrentModificationError, StaleDataError and OperationalError
    (database lock timeouts).
    """
    last_exc: Optional[Exception] = None
    for attempt in range(attempts):
        try:
            return func()
        except (ConcurrentModificationError, StaleDataError, OperationalError) as exc:
            if db is not None:
                db.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
    raise RuntimeError("run_with_retry called with attempts < 1")


def is_unique_violation(exc: IntegrityError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return "unique" in message or "duplicate key" in message


def violates(exc: IntegrityError, *markers: str) -> bool:
    """Whether the driver's message names one of the given constraints or columns."""
    message = str(getattr(exc, "orig", exc)).lower()
    return any(marker.lower() in message for marker in markers)
