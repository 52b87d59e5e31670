from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from mxcore.apps.compliance import services as compliance_services
from mxcore.apps.events import broker as events
from mxcore.apps.fleet import schemas as fleet_schemas
from mxcore.apps.fleet import services as fleet_services
from mxcore.apps.fleet.models import SubjectKindEnum
from mxcore.apps.inventory import models as inventory_models
from mxcore.apps.inventory import schemas as inventory_schemas
from mxcore.apps.inventory import services as inventory_services
from mxcore.apps.maintenance_program import schemas as program_schemas
from mxcore.apps.maintenance_program import services as program_services
from mxcore.apps.usage import schemas as usage_schemas
from mxcore.apps.usage import services as usage_services
from mxcore.apps.work import services as work_services
from mxcore.apps.work.models import WorkOrderStatusEnum
from mxcore.database import session_scope
from mxcore.errors import NotFoundError
from mxcore.jobs.compliance_runner import RUNNER_ACTOR, ComplianceRunner
from mxcore.jobs.inventory_reconciliation import run_reconciliation

T0 = datetime(2026, 8, 3, 6, 0, tzinfo=timezone.utc)


@pytest.fixture
def runner():
    runner = ComplianceRunner()
    yield runner
    events.broker.unsubscribe(runner.queue)


def _create_trigger(db_session):
    fleet_services.register_aircraft(
        db_session,
        payload=fleet_schemas.AircraftCreate(id="B-7011U", registration="B-7011U"),
    )
    program = program_services.create_program(
        db_session,
        payload=program_schemas.MaintenanceProgramCreate(code="AMP-JOBS", name="ATR AMP"),
    )
    trigger = program_services.add_trigger(
        db_session,
        program_id=program.id,
        payload=program_schemas.MaintenanceTriggerCreate(
            name="Propeller inspection",
            subject_kind=SubjectKindEnum.AIRCRAFT,
            interval_hours=200,
            tolerance_hours=10,
        ),
    )
    db_session.commit()
    return trigger


def _fly(
    db_session,
    minutes: int,
    *,
    source: str,
    hours_later: int = 0,
    subject_id: str = "B-7011U",
    subject_kind=SubjectKindEnum.AIRCRAFT,
) -> None:
    usage_services.record_usage(
        db_session,
        event=usage_schemas.UsageEventCreate(
            subject_id=subject_id,
            subject_kind=subject_kind,
            event_time=T0 + timedelta(hours=hours_later),
            delta_flight_minutes=minutes,
            delta_cycles=1,
            source=source,
        ),
    )
    db_session.commit()


def test_runner_opens_one_order_per_fired_trigger(db_session, runner):
    trigger = _create_trigger(db_session)
    _fly(db_session, 11880, source="FL-1")
    _fly(db_session, 180, source="FL-2", hours_later=4)

    summary = runner.run(db_session)

    assert summary == {"subjects": 1, "fired": 1, "opened": 1, "duplicates": 0, "skipped": 0}
    orders = work_services.list_work_orders(db_session, aircraft_id="B-7011U")
    assert [(o.trigger_id, o.status) for o in orders] == [(trigger.id, WorkOrderStatusEnum.OPEN)]
    assert orders[0].created_by == RUNNER_ACTOR

    _fly(db_session, 60, source="FL-3", hours_later=8)
    summary = runner.run(db_session)

    assert summary == {"subjects": 1, "fired": 0, "opened": 0, "duplicates": 0, "skipped": 0}
    assert len(work_services.list_work_orders(db_session, aircraft_id="B-7011U")) == 1


def test_runner_leaves_existing_order_alone(db_session, runner):
    trigger = _create_trigger(db_session)
    _fly(db_session, 12060, source="FL-1")
    work_services.open_from_trigger(db_session, trigger_id=trigger.id, subject_id="B-7011U")
    db_session.commit()

    summary = runner.run(db_session)

    assert summary["fired"] == 1
    assert summary["duplicates"] == 1
    assert summary["opened"] == 0


def test_runner_opens_order_for_trigger_that_came_due_while_uninstalled(db_session, runner):
    fleet_services.register_aircraft(
        db_session,
        payload=fleet_schemas.AircraftCreate(id="B-7011U", registration="B-7011U"),
    )
    fleet_services.register_component(
        db_session,
        payload=fleet_schemas.ComponentCreate(
            id="PROP-1", part_number="PROP-29X9.5", serial_number="P1", component_type="PROPELLER"
        ),
    )
    program = program_services.create_program(
        db_session,
        payload=program_schemas.MaintenanceProgramCreate(code="AMP-PROP", name="Propeller AMP"),
    )
    trigger = program_services.add_trigger(
        db_session,
        program_id=program.id,
        payload=program_schemas.MaintenanceTriggerCreate(
            name="Propeller overhaul",
            subject_kind=SubjectKindEnum.COMPONENT,
            interval_hours=200,
            tolerance_hours=10,
        ),
    )
    db_session.commit()
    _fly(db_session, 12060, source="BENCH-1", subject_id="PROP-1", subject_kind=SubjectKindEnum.COMPONENT)

    first = runner.run(db_session)

    assert first == {"subjects": 1, "fired": 1, "opened": 0, "duplicates": 0, "skipped": 1}

    fleet_services.install_component(
        db_session, component_id="PROP-1", aircraft_id="B-7011U", position="LH", installed_at=T0
    )
    db_session.commit()
    _fly(db_session, 60, source="FL-1", hours_later=2, subject_id="PROP-1", subject_kind=SubjectKindEnum.COMPONENT)

    second = runner.run(db_session)

    assert second == {"subjects": 1, "fired": 0, "opened": 1, "duplicates": 0, "skipped": 0}
    orders = work_services.list_work_orders(db_session, aircraft_id="B-7011U")
    assert [(o.subject_id, o.trigger_id) for o in orders] == [("PROP-1", trigger.id)]


def test_runner_catches_up_on_events_its_queue_dropped(db_session):
    trigger = _create_trigger(db_session)
    fleet_services.register_aircraft(
        db_session,
        payload=fleet_schemas.AircraftCreate(id="B-7012U", registration="B-7012U"),
    )
    db_session.commit()
    _fly(db_session, 12060, source="FL-1")
    _fly(db_session, 12060, source="FL-2", subject_id="B-7012U")

    # A one-slot queue keeps only the newest UsageChanged.
    small = events.EventBroker(queue_size=1)
    runner = ComplianceRunner(small)
    for envelope in events.broker.history(events.USAGE_CHANGED):
        small.publish(envelope)
    assert runner.queue.qsize() == 1

    summary = runner.run(db_session)

    assert summary == {"subjects": 2, "fired": 2, "opened": 2, "duplicates": 0, "skipped": 0}
    opened = {(o.aircraft_id, o.trigger_id) for o in work_services.list_work_orders(db_session)}
    assert opened == {("B-7011U", trigger.id), ("B-7012U", trigger.id)}
    assert compliance_services.lagging_subjects(db_session, limit=10) == []
    assert runner.run(db_session)["subjects"] == 0

def test_runner_with_nothing_queued(db_session, runner):
    assert runner.run(db_session) == {"subjects": 0, "fired": 0, "opened": 0, "duplicates": 0, "skipped": 0}


def test_reconciliation_reports_only_mismatches(db_session):
    for part_number in ("PROP-29X9.5", "FILTER-1"):
        inventory_services.upsert_item(
            db_session, payload=inventory_schemas.InventoryItemCreate(part_number=part_number)
        )
        inventory_services.receive(db_session, part_number=part_number, quantity=3)
    db_session.commit()
    db_session.execute(
        update(inventory_models.InventoryItem)
        .where(inventory_models.InventoryItem.part_number == "FILTER-1")
        .values(quantity_on_hand=5)
    )
    db_session.commit()
    db_session.expire_all()

    summary = run_reconciliation(db_session)
    db_session.commit()

    assert summary["checked"] == 2
    assert summary["mismatches"] == [
        {"part_number": "FILTER-1", "warehouse_id": "MAIN", "projected": [5, 0], "folded": [3, 0]}
    ]


def test_session_scope_commits_or_rolls_back(session_factory):
    with session_scope(session_factory) as db:
        fleet_services.register_aircraft(db, payload=fleet_schemas.AircraftCreate(id="B-7011U", registration="B-7011U"))

    with pytest.raises(RuntimeError):
        with session_scope(session_factory) as db:
            fleet_services.register_aircraft(
                db, payload=fleet_schemas.AircraftCreate(id="B-7012U", registration="B-7012U")
            )
            raise RuntimeError("job aborted")

    check = session_factory()
    try:
        assert fleet_services.get_aircraft(check, "B-7011U").registration == "B-7011U"
        with pytest.raises(NotFoundError):
            fleet_services.get_aircraft(check, "B-7012U")
    finally:
        check.close()
