from __future__ import annotations

from sqlalchemy import text

from mxcore.apps.events import broker as events
from mxcore.apps.events import outbox


def _fired(trigger_id: int = 1) -> events.EventEnvelope:
    return events.trigger_fired("B-7011U", trigger_id, state="CRITICAL", remaining_margin=-1.0)


def test_events_publish_only_after_commit(db_session):
    outbox.enqueue(db_session, _fired())

    assert len(outbox.pending(db_session)) == 1
    assert events.broker.history() == []

    db_session.commit()

    published = events.broker.history(events.TRIGGER_FIRED)
    assert [e.payload["triggerId"] for e in published] == [1]
    assert outbox.pending(db_session) == []


def test_rollback_discards_pending_events(db_session):
    db_session.execute(text("SELECT 1"))
    outbox.enqueue(db_session, _fired())
    db_session.rollback()
    db_session.commit()

    assert events.broker.history() == []


def test_subscribers_only_receive_requested_types():
    broker = events.EventBroker()
    fired_only = broker.subscribe([events.TRIGGER_FIRED])
    everything = broker.subscribe()

    broker.publish(events.usage_changed("B-7011U", subject_kind="AIRCRAFT", event_seq=4))
    broker.publish(_fired())

    assert [e.type for e in events.drain(fired_only, 10)] == [events.TRIGGER_FIRED]
    assert [e.type for e in events.drain(everything, 10)] == [events.USAGE_CHANGED, events.TRIGGER_FIRED]

    broker.unsubscribe(everything)
    broker.publish(_fired(2))
    assert events.drain(everything, 10) == []


def test_full_queue_drops_oldest():
    broker = events.EventBroker(queue_size=2)
    q = broker.subscribe()

    for trigger_id in (1, 2, 3):
        broker.publish(_fired(trigger_id))

    assert [e.payload["triggerId"] for e in events.drain(q, 10)] == [2, 3]


def test_replay_since_last_seen_event():
    broker = events.EventBroker(replay_size=3)
    sent = [_fired(trigger_id) for trigger_id in (1, 2, 3, 4)]
    for envelope in sent:
        broker.publish(envelope)

    replayed, gap = broker.replay_since(last_event_id=sent[1].id)
    assert [e.payload["triggerId"] for e in replayed] == [3, 4]
    assert gap is False

    replayed, gap = broker.replay_since(last_event_id=sent[0].id)
    assert (replayed, gap) == ([], True)


def test_envelope_serialises_to_json():
    body = events.aircraft_released("B-7011U", work_order_id=9, baseline={"totalCycles": 12}).to_json()

    assert '"type": "AircraftReleased"' in body
    assert '"newUsageBaseline": {"totalCycles": 12}' in body


def test_package_exposes_broker_module_and_instance():
    import mxcore.apps.events as package

    assert package.broker is events
    assert package.event_broker is events.broker
    assert package.EventEnvelope is events.EventEnvelope
