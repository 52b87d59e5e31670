from __future__ import annotations

import json
import os
import queue
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, FrozenSet, Iterable, List, Optional

from ...utils.identifiers import generate_uuid7

REPLAY_SIZE = int(os.getenv("EVENT_REPLAY_SIZE", "2000"))
SUBSCRIBER_QUEUE_SIZE = int(os.getenv("EVENT_SUBSCRIBER_QUEUE_SIZE", "1000"))

USAGE_CHANGED = "UsageChanged"
COMPLIANCE_STATUS_CHANGED = "ComplianceStatusChanged"
TRIGGER_FIRED = "TriggerFired"
AIRCRAFT_RELEASED = "AircraftReleased"


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class EventEnvelope:
    type: str
    entityType: str
    entityId: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=generate_uuid7)
    timestamp: str = field(default_factory=_utcnow_iso)

    def to_json(self) -> str:
        body = {
            "id": self.id,
            "type": self.type,
            "entityType": self.entityType,
            "entityId": self.entityId,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }
        return json.dumps(body, default=str)


class EventBroker:
    def __init__(self, replay_size: int = REPLAY_SIZE, queue_size: int = SUBSCRIBER_QUEUE_SIZE) -> None:
        self._subscribers: Dict[queue.Queue[EventEnvelope], Optional[FrozenSet[str]]] = {}
        self._history: Deque[EventEnvelope] = deque(maxlen=replay_size)
        self._queue_size = queue_size
        self._lock = threading.Lock()

    def subscribe(self, types: Optional[Iterable[str]] = None) -> queue.Queue[EventEnvelope]:
        q: queue.Queue[EventEnvelope] = queue.Queue(maxsize=self._queue_size)
        with self._lock:
            self._subscribers[q] = frozenset(types) if types else None
        return q

    def unsubscribe(self, q: queue.Queue[EventEnvelope]) -> None:
        with self._lock:
            self._subscribers.pop(q, None)

    def replay_since(self, *, last_event_id: str) -> tuple[list[EventEnvelope], bool]:
        with self._lock:
            history = list(self._history)
        if not history:
            return [], False
        ids = [event.id for event in history]
        if last_event_id not in ids:
            return [], True
        start_index = ids.index(last_event_id) + 1
        return history[start_index:], False

    def history(self, event_type: Optional[str] = None) -> List[EventEnvelope]:
        with self._lock:
            events = list(self._history)
        if event_type:
            events = [event for event in events if event.type == event_type]
        return events

    def clear(self) -> None:
        with self._lock:
            self._history.clear()

    def publish(self, event: EventEnvelope) -> None:
        # Never blocks: a full subscriber queue loses its oldest entry.
        with self._lock:
            self._history.append(event)
            subscribers = [q for q, types in self._subscribers.items() if types is None or event.type in types]
        for q in subscribers:
            try:
                q.put_nowait(event)
            except queue.Full:
                try:
                    _ = q.get_nowait()
                    q.put_nowait(event)
                except (queue.Empty, queue.Full):
                    pass


broker = EventBroker()


def publish_event(event: EventEnvelope) -> None:
    broker.publish(event)


def drain(q: queue.Queue[EventEnvelope], limit: int) -> List[EventEnvelope]:
    events: List[EventEnvelope] = []
    while len(events) < limit:
        try:
            events.append(q.get_nowait())
        except queue.Empty:
            break
    return events


# ---------------------------------------------------------------------------
# Envelope builders
# ---------------------------------------------------------------------------


def usage_changed(subject_id: str, *, subject_kind: str, event_seq: int) -> EventEnvelope:
    return EventEnvelope(
        type=USAGE_CHANGED,
        entityType=subject_kind,
        entityId=subject_id,
        payload={"subjectId": subject_id, "eventSeq": event_seq},
    )


def trigger_fired(subject_id: str, trigger_id: int, *, state: str, remaining_margin: float) -> EventEnvelope:
    return EventEnvelope(
        type=TRIGGER_FIRED,
        entityType="ComplianceStatus",
        entityId=f"{subject_id}:{trigger_id}",
        payload={
            "subjectId": subject_id,
            "triggerId": trigger_id,
            "state": state,
            "remainingMargin": remaining_margin,
        },
    )


def compliance_status_changed(
    subject_id: str,
    trigger_id: int,
    *,
    previous_state: Optional[str],
    state: str,
) -> EventEnvelope:
    return EventEnvelope(
        type=COMPLIANCE_STATUS_CHANGED,
        entityType="ComplianceStatus",
        entityId=f"{subject_id}:{trigger_id}",
        payload={
            "subjectId": subject_id,
            "triggerId": trigger_id,
            "previousState": previous_state,
            "state": state,
        },
    )


def aircraft_released(aircraft_id: str, *, work_order_id: int, baseline: Dict[str, Any]) -> EventEnvelope:
    return EventEnvelope(
        type=AIRCRAFT_RELEASED,
        entityType="Aircraft",
        entityId=aircraft_id,
        payload={
            "aircraftId": aircraft_id,
            "workOrderId": work_order_id,
            "newUsageBaseline": baseline,
        },
    )
