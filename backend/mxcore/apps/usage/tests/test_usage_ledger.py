from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone

import pytest

from mxcore.apps.events import broker as events
from mxcore.apps.fleet import schemas as fleet_schemas
from mxcore.apps.fleet import services as fleet_services
from mxcore.apps.fleet.models import SubjectKindEnum
from mxcore.apps.usage import models as usage_models
from mxcore.apps.usage import schemas as usage_schemas
from mxcore.apps.usage import services as usage_services
from mxcore.errors import OutOfOrderEventError, ValidationError

T0 = datetime(2026, 5, 1, 6, 0, tzinfo=timezone.utc)


def _create_aircraft(db_session, aircraft_id: str = "B-7011U") -> None:
    fleet_services.register_aircraft(
        db_session,
        payload=fleet_schemas.AircraftCreate(id=aircraft_id, registration=aircraft_id),
    )
    db_session.commit()


def _event(subject_id: str = "B-7011U", *, minutes: int = 90, cycles: int = 1, at: datetime = T0, **kwargs):
    return usage_schemas.UsageEventCreate(
        subject_id=subject_id,
        subject_kind=SubjectKindEnum.AIRCRAFT,
        event_time=at,
        delta_flight_minutes=minutes,
        delta_cycles=cycles,
        **kwargs,
    )


def test_snapshot_of_unused_subject_is_zero(db_session):
    _create_aircraft(db_session)

    snapshot = usage_services.get_snapshot(db_session, "B-7011U")

    assert snapshot.total_flight_minutes == 0
    assert snapshot.total_cycles == 0
    assert snapshot.as_of_event_seq == 0


def test_record_usage_assigns_subject_sequence(db_session):
    _create_aircraft(db_session)

    first = usage_services.record_usage(db_session, event=_event(source="FL-1"))
    second = usage_services.record_usage(db_session, event=_event(at=T0 + timedelta(hours=3), source="FL-2"))
    db_session.commit()

    assert (first.subject_seq, second.subject_seq) == (1, 2)
    assert usage_services.latest_seq(db_session, "B-7011U") == 2
    snapshot = usage_services.get_snapshot(db_session, "B-7011U")
    assert snapshot.total_flight_minutes == 180
    assert snapshot.total_cycles == 2
    assert snapshot.as_of_event_seq == 2


@pytest.mark.parametrize("seed", [3, 17, 2026])
def test_snapshot_independent_of_read_points(db_session, seed):
    _create_aircraft(db_session)
    rng = random.Random(seed)
    expected_minutes = 0
    expected_cycles = 0

    for index in range(40):
        minutes = rng.randint(20, 300)
        cycles = rng.randint(0, 2)
        expected_minutes += minutes
        expected_cycles += cycles
        usage_services.record_usage(
            db_session,
            event=_event(minutes=minutes, cycles=cycles, at=T0 + timedelta(hours=index), source=f"FL-{index}"),
        )
        if rng.random() < 0.3:
            usage_services.get_snapshot(db_session, "B-7011U")
        if rng.random() < 0.2:
            db_session.commit()
    db_session.commit()

    incremental = usage_services.get_snapshot(db_session, "B-7011U")
    assert (incremental.total_flight_minutes, incremental.total_cycles) == (expected_minutes, expected_cycles)

    rebuilt = usage_services.rebuild_snapshot(db_session, "B-7011U")
    assert (rebuilt.total_flight_minutes, rebuilt.total_cycles) == (expected_minutes, expected_cycles)
    assert rebuilt.as_of_event_seq == 40


def test_batch_and_single_calls_fold_the_same(db_session):
    rng = random.Random(10)
    legs = [(rng.randint(30, 240), rng.randint(0, 2)) for _ in range(10)]
    for aircraft_id in ("B-7011U", "B-7012U"):
        _create_aircraft(db_session, aircraft_id)

    def _legs(aircraft_id):
        return [
            _event(aircraft_id, minutes=m, cycles=c, at=T0 + timedelta(hours=i), source=f"{aircraft_id}-FL-{i}")
            for i, (m, c) in enumerate(legs)
        ]

    usage_services.record_usage_batch(db_session, events_in=_legs("B-7011U"))
    for event in _legs("B-7012U"):
        usage_services.record_usage(db_session, event=event)
        db_session.commit()
    db_session.commit()

    batched = usage_services.get_snapshot(db_session, "B-7011U")
    single = usage_services.get_snapshot(db_session, "B-7012U")
    assert (batched.total_flight_minutes, batched.total_cycles, batched.as_of_event_seq) == (
        single.total_flight_minutes,
        single.total_cycles,
        single.as_of_event_seq,
    )
    assert batched.total_flight_minutes == sum(m for m, _ in legs)

def test_negative_usage_needs_a_correction_target(db_session):
    _create_aircraft(db_session)

    with pytest.raises(ValidationError):
        usage_services.record_usage(db_session, event=_event(minutes=-30, cycles=0))


def test_correction_event_adjusts_totals(db_session):
    _create_aircraft(db_session)
    original = usage_services.record_usage(db_session, event=_event(minutes=120, source="FL-1"))
    db_session.commit()

    usage_services.record_usage(
        db_session,
        event=_event(minutes=-30, cycles=0, at=T0 + timedelta(hours=1), source="FL-1", corrects_event_id=original.id),
    )
    db_session.commit()

    snapshot = usage_services.get_snapshot(db_session, "B-7011U")
    assert snapshot.total_flight_minutes == 90
    assert snapshot.total_cycles == 1
    assert len(usage_services.list_events(db_session, "B-7011U")) == 2


def test_correction_must_target_same_subject(db_session):
    _create_aircraft(db_session)
    _create_aircraft(db_session, "B-7012U")
    original = usage_services.record_usage(db_session, event=_event("B-7012U", source="FL-9"))
    db_session.commit()

    with pytest.raises(ValidationError):
        usage_services.record_usage(
            db_session,
            event=_event(minutes=-10, cycles=0, corrects_event_id=original.id),
        )


def test_duplicate_flight_log_is_rejected(db_session):
    _create_aircraft(db_session)
    usage_services.record_usage(db_session, event=_event(source="FL-1"))
    db_session.commit()

    with pytest.raises(ValidationError) as excinfo:
        usage_services.record_usage(db_session, event=_event(source="FL-1"))
    assert excinfo.value.detail[0]["field"] == "source"


def test_late_event_is_flagged_and_forces_rebuild(db_session):
    _create_aircraft(db_session)
    usage_services.record_usage(db_session, event=_event(minutes=60, at=T0 + timedelta(days=5), source="FL-2"))
    db_session.commit()
    assert usage_services.get_snapshot(db_session, "B-7011U").total_flight_minutes == 60

    late = usage_services.record_usage(db_session, event=_event(minutes=45, at=T0, source="FL-1"))
    db_session.commit()

    assert late.requires_recompute is True
    snapshot = usage_services.get_snapshot(db_session, "B-7011U")
    assert snapshot.total_flight_minutes == 105
    assert snapshot.as_of_event_seq == 2


def test_event_inside_grace_window_is_not_flagged(db_session):
    _create_aircraft(db_session)
    usage_services.record_usage(db_session, event=_event(at=T0 + timedelta(hours=2), source="FL-2"))
    row = usage_services.record_usage(db_session, event=_event(at=T0, source="FL-1"))
    db_session.commit()

    assert row.requires_recompute is False


def test_strict_ordering_rejects_late_events(db_session, monkeypatch):
    _create_aircraft(db_session)
    monkeypatch.setattr(usage_services, "STRICT_ORDERING", True)
    usage_services.record_usage(db_session, event=_event(at=T0 + timedelta(days=5), source="FL-2"))
    db_session.commit()

    with pytest.raises(OutOfOrderEventError):
        usage_services.record_usage(db_session, event=_event(at=T0, source="FL-1"))


def test_record_flight_fans_out_to_installed_components(db_session):
    _create_aircraft(db_session)
    fleet_services.register_component(
        db_session,
        payload=fleet_schemas.ComponentCreate(id="ENG-1", part_number="PW127M", serial_number="E1", component_type="ENGINE"),
    )
    fleet_services.register_component(
        db_session,
        payload=fleet_schemas.ComponentCreate(id="ENG-9", part_number="PW127M", serial_number="E9", component_type="ENGINE"),
    )
    fleet_services.install_component(
        db_session,
        component_id="ENG-1",
        aircraft_id="B-7011U",
        position="LH",
        installed_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    db_session.commit()

    rows = usage_services.record_flight(
        db_session,
        aircraft_id="B-7011U",
        flight_log_id="FL-100",
        event_time=T0,
        flight_minutes=95,
        cycles=1,
    )
    db_session.commit()

    assert sorted(row.subject_id for row in rows) == ["B-7011U", "ENG-1"]
    assert usage_services.get_snapshot(db_session, "ENG-1").total_flight_minutes == 95
    assert usage_services.get_snapshot(db_session, "ENG-9").total_flight_minutes == 0
    engine_row = next(row for row in rows if row.subject_id == "ENG-1")
    assert engine_row.subject_kind == SubjectKindEnum.COMPONENT


def test_usage_as_of_point_in_time(db_session):
    _create_aircraft(db_session)
    for index in range(5):
        usage_services.record_usage(
            db_session,
            event=_event(minutes=60, at=T0 + timedelta(days=index), source=f"FL-{index}"),
        )
    db_session.commit()

    totals = usage_services.usage_as_of(db_session, "B-7011U", T0 + timedelta(days=2, hours=1))

    assert totals.total_flight_minutes == 180
    assert totals.total_cycles == 3
    assert totals.as_of_event_seq == 3


def test_usage_changed_published_after_commit_only(db_session):
    _create_aircraft(db_session)

    usage_services.record_usage(db_session, event=_event(source="FL-1"))
    assert events.broker.history(events.USAGE_CHANGED) == []
    db_session.rollback()
    assert events.broker.history(events.USAGE_CHANGED) == []

    usage_services.record_usage(db_session, event=_event(source="FL-1"))
    db_session.commit()

    published = events.broker.history(events.USAGE_CHANGED)
    assert len(published) == 1
    assert published[0].payload == {"subjectId": "B-7011U", "eventSeq": 1}
    assert db_session.query(usage_models.UsageEvent).count() == 1
