from __future__ import annotations

import itertools
from datetime import date, datetime, timedelta, timezone

import pytest

from mxcore.apps.compliance import services as compliance_services
from mxcore.apps.compliance.models import ComplianceBaseline, ComplianceStateEnum
from mxcore.apps.events import broker as events
from mxcore.apps.fleet import schemas as fleet_schemas
from mxcore.apps.fleet import services as fleet_services
from mxcore.apps.fleet.models import SubjectKindEnum
from mxcore.apps.maintenance_program import schemas as program_schemas
from mxcore.apps.maintenance_program import services as program_services
from mxcore.apps.maintenance_program.models import MetricEnum
from mxcore.apps.usage import models as usage_models
from mxcore.apps.usage import schemas as usage_schemas
from mxcore.apps.usage import services as usage_services

T0 = datetime(2026, 6, 1, 8, 0, tzinfo=timezone.utc)
_program_codes = itertools.count(1)


def _create_aircraft(db_session, aircraft_id: str = "B-7011U") -> None:
    fleet_services.register_aircraft(
        db_session,
        payload=fleet_schemas.AircraftCreate(id=aircraft_id, registration=aircraft_id),
    )
    db_session.commit()


def _create_trigger(db_session, **limits):
    program = program_services.create_program(
        db_session,
        payload=program_schemas.MaintenanceProgramCreate(code=f"AMP-{next(_program_codes)}", name="AMP"),
    )
    trigger = program_services.add_trigger(
        db_session,
        program_id=program.id,
        payload=program_schemas.MaintenanceTriggerCreate(
            name="Propeller inspection",
            subject_kind=SubjectKindEnum.AIRCRAFT,
            **limits,
        ),
    )
    db_session.commit()
    return trigger


def _fly(db_session, minutes: int, *, cycles: int = 0, source: str, at: datetime = T0) -> None:
    usage_services.record_usage(
        db_session,
        event=usage_schemas.UsageEventCreate(
            subject_id="B-7011U",
            subject_kind=SubjectKindEnum.AIRCRAFT,
            event_time=at,
            delta_flight_minutes=minutes,
            delta_cycles=cycles,
            source=source,
        ),
    )
    db_session.commit()


def _snapshot(minutes: int = 0, cycles: int = 0) -> usage_models.UsageSnapshot:
    return usage_models.UsageSnapshot(
        subject_id="B-7011U",
        subject_kind=SubjectKindEnum.AIRCRAFT,
        total_flight_minutes=minutes,
        total_cycles=cycles,
        as_of_event_seq=0,
    )


@pytest.mark.parametrize(
    ("remaining", "tolerance", "expected"),
    [
        (25.0, 10.0, ComplianceStateEnum.GOOD),
        (10.0, 10.0, ComplianceStateEnum.WARNING),
        (0.5, 10.0, ComplianceStateEnum.WARNING),
        (0.0, 10.0, ComplianceStateEnum.CRITICAL),
        (-10.0, 10.0, ComplianceStateEnum.CRITICAL),
        (-10.5, 10.0, ComplianceStateEnum.OVERDUE),
        (0.0, 0.0, ComplianceStateEnum.CRITICAL),
        (-0.1, 0.0, ComplianceStateEnum.OVERDUE),
    ],
)
def test_classify_bands(remaining, tolerance, expected):
    assert compliance_services.classify(remaining, tolerance) == expected


def test_trigger_fires_once_when_crossing_into_critical(db_session):
    _create_aircraft(db_session)
    trigger = _create_trigger(db_session, interval_hours=200, tolerance_hours=10)
    _fly(db_session, 11880, source="FL-1")

    result = compliance_services.evaluate(db_session, subject_id="B-7011U")
    db_session.commit()

    status = compliance_services.get_status(db_session, subject_id="B-7011U", trigger_id=trigger.id)
    assert status.state == ComplianceStateEnum.WARNING
    assert status.remaining_margin == pytest.approx(2.0)
    assert result.fired == []

    _fly(db_session, 180, source="FL-2", at=T0 + timedelta(hours=4))
    result = compliance_services.evaluate(db_session, subject_id="B-7011U")
    db_session.commit()
    again = compliance_services.evaluate(db_session, subject_id="B-7011U")
    db_session.commit()

    status = compliance_services.get_status(db_session, subject_id="B-7011U", trigger_id=trigger.id)
    assert status.state == ComplianceStateEnum.CRITICAL
    assert status.remaining_margin == pytest.approx(-1.0)
    assert status.percentage_used == pytest.approx(100.5)
    assert [f.trigger_id for f in result.fired] == [trigger.id]
    assert again.fired == []
    assert again.changed == []

    fired = events.broker.history(events.TRIGGER_FIRED)
    assert len(fired) == 1
    assert fired[0].payload["state"] == "CRITICAL"
    changes = [e.payload["state"] for e in events.broker.history(events.COMPLIANCE_STATUS_CHANGED)]
    assert changes == ["WARNING", "CRITICAL"]


def test_rollback_discards_trigger_fired(db_session):
    _create_aircraft(db_session)
    _create_trigger(db_session, interval_hours=10)
    _fly(db_session, 660, source="FL-1")

    result = compliance_services.evaluate(db_session, subject_id="B-7011U")
    assert len(result.fired) == 1
    db_session.rollback()

    assert events.broker.history(events.TRIGGER_FIRED) == []


def test_first_evaluation_already_overdue_fires(db_session):
    _create_aircraft(db_session)
    trigger = _create_trigger(db_session, interval_cycles=100, tolerance_cycles=5)
    _fly(db_session, 600, cycles=120, source="FL-1")

    result = compliance_services.evaluate(db_session, subject_id="B-7011U")
    db_session.commit()

    assert [(f.trigger_id, f.state) for f in result.fired] == [(trigger.id, ComplianceStateEnum.OVERDUE)]


def test_governing_limit_is_first_crossed(db_session):
    trigger = _create_trigger(
        db_session,
        interval_hours=100,
        tolerance_hours=10,
        interval_cycles=50,
        tolerance_cycles=5,
    )

    critical_cycles = compliance_services.compute_status(trigger, _snapshot(95 * 60, 52), None, date(2026, 6, 1))
    assert critical_cycles.metric == MetricEnum.CYCLES
    assert critical_cycles.state == ComplianceStateEnum.CRITICAL
    assert len(critical_cycles.limits) == 2

    both_warning = compliance_services.compute_status(trigger, _snapshot(95 * 60, 46), None, date(2026, 6, 1))
    assert both_warning.state == ComplianceStateEnum.WARNING
    assert both_warning.metric == MetricEnum.FLIGHT_HOURS
    assert both_warning.remaining_margin == pytest.approx(5.0)


def test_calendar_limit_counts_days_from_baseline(db_session):
    trigger = _create_trigger(db_session, interval_days=30, tolerance_days=5)
    baseline = ComplianceBaseline(
        subject_id="B-7011U",
        trigger_id=trigger.id,
        baseline_flight_minutes=0,
        baseline_cycles=0,
        baseline_date=date(2026, 1, 1),
        last_compliance_event_seq=0,
    )

    def _state(day: date) -> ComplianceStateEnum:
        return compliance_services.compute_status(trigger, _snapshot(), baseline, day).state

    assert _state(date(2026, 1, 20)) == ComplianceStateEnum.GOOD
    assert _state(date(2026, 1, 28)) == ComplianceStateEnum.WARNING
    assert _state(date(2026, 1, 31)) == ComplianceStateEnum.CRITICAL
    assert _state(date(2026, 2, 5)) == ComplianceStateEnum.CRITICAL
    assert _state(date(2026, 2, 6)) == ComplianceStateEnum.OVERDUE


def test_record_compliance_rebaselines_and_rearms(db_session):
    _create_aircraft(db_session)
    trigger = _create_trigger(db_session, interval_hours=100, tolerance_hours=5)
    _fly(db_session, 101 * 60, source="FL-1")
    assert len(compliance_services.evaluate(db_session, subject_id="B-7011U").fired) == 1
    db_session.commit()

    projected = compliance_services.hypothetical_status_after_compliance(
        db_session, subject_id="B-7011U", trigger_id=trigger.id
    )
    assert projected.state == ComplianceStateEnum.GOOD
    assert compliance_services.get_baseline(db_session, subject_id="B-7011U", trigger_id=trigger.id) is None

    baseline = compliance_services.record_compliance(db_session, subject_id="B-7011U", trigger_id=trigger.id)
    result = compliance_services.evaluate(db_session, subject_id="B-7011U")
    db_session.commit()

    assert baseline.baseline_flight_minutes == 101 * 60
    assert baseline.last_compliance_event_seq == 1
    assert result.fired == []
    status = compliance_services.get_status(db_session, subject_id="B-7011U", trigger_id=trigger.id)
    assert status.state == ComplianceStateEnum.GOOD
    assert status.due_at_metric_value == pytest.approx(201.0)

    _fly(db_session, 100 * 60, source="FL-2", at=T0 + timedelta(days=1))
    assert len(compliance_services.evaluate(db_session, subject_id="B-7011U").fired) == 1
    db_session.commit()
    assert len(events.broker.history(events.TRIGGER_FIRED)) == 2


def test_overall_and_most_urgent(db_session):
    _create_aircraft(db_session)
    _create_trigger(db_session, interval_hours=100, tolerance_hours=5)
    _create_trigger(db_session, interval_cycles=10, tolerance_cycles=1)
    _fly(db_session, 60 * 60, cycles=9, source="FL-1")

    compliance_services.evaluate(db_session, subject_id="B-7011U")
    db_session.commit()
    statuses = compliance_services.list_statuses(db_session, subject_id="B-7011U")

    assert len(statuses) == 2
    assert compliance_services.overall_state(statuses) == ComplianceStateEnum.WARNING
    assert compliance_services.most_urgent(statuses).metric == MetricEnum.CYCLES
    assert compliance_services.most_urgent([]) is None


def _create_llp(db_session, component_id: str, *, hours=None, cycles=None, is_llp: bool = True) -> None:
    fleet_services.register_component(
        db_session,
        payload=fleet_schemas.ComponentCreate(
            id=component_id,
            part_number="HPT-DISK",
            serial_number=component_id,
            component_type="ENGINE_LLP",
            is_llp=is_llp,
            life_limit_hours=hours,
            life_limit_cycles=cycles,
        ),
    )
    db_session.commit()


def _run_component(db_session, component_id: str, *, minutes: int, cycles: int) -> None:
    usage_services.record_usage(
        db_session,
        event=usage_schemas.UsageEventCreate(
            subject_id=component_id,
            subject_kind=SubjectKindEnum.COMPONENT,
            event_time=T0,
            delta_flight_minutes=minutes,
            delta_cycles=cycles,
            source=f"SHOP-{component_id}",
        ),
    )
    db_session.commit()


def test_llps_near_their_life_limit_are_flagged(db_session):
    _create_llp(db_session, "DISK-1", hours=1000)
    _create_llp(db_session, "DISK-2", cycles=100)
    _create_llp(db_session, "DISK-3", hours=1000, cycles=20000)
    _create_llp(db_session, "PROP-1", hours=1000, is_llp=False)
    _run_component(db_session, "DISK-1", minutes=950 * 60, cycles=10)
    _run_component(db_session, "DISK-2", minutes=60, cycles=50)
    _run_component(db_session, "DISK-3", minutes=60, cycles=19000)
    _run_component(db_session, "PROP-1", minutes=5000 * 60, cycles=10)

    flagged = compliance_services.components_near_life_limit(db_session)

    assert [(s.component_id, round(s.fraction_used, 2)) for s in flagged] == [("DISK-1", 0.95), ("DISK-3", 0.95)]
    assert not any(s.reached for s in flagged)
    assert [s.component_id for s in compliance_services.components_near_life_limit(db_session, threshold=0.5)] == [
        "DISK-1",
        "DISK-3",
        "DISK-2",
    ]


def test_llp_at_its_limit_is_reached(db_session):
    _create_aircraft(db_session)
    _create_llp(db_session, "DISK-1", cycles=100)
    fleet_services.install_component(
        db_session, component_id="DISK-1", aircraft_id="B-7011U", position="ENG1-HPT", installed_at=T0
    )
    db_session.commit()
    _run_component(db_session, "DISK-1", minutes=600, cycles=100)

    [status] = compliance_services.components_near_life_limit(db_session, aircraft_id="B-7011U")

    assert (status.component_id, status.aircraft_id, status.cycles_used) == ("DISK-1", "B-7011U", 100)
    assert status.reached
    assert compliance_services.components_near_life_limit(db_session, aircraft_id="B-7012U") == []
