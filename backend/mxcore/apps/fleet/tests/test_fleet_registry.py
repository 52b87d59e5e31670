from __future__ import annotations

from datetime import datetime, timezone

import pytest

from mxcore.apps.audit import services as audit_services
from mxcore.apps.fleet import models as fleet_models
from mxcore.apps.fleet import schemas as fleet_schemas
from mxcore.apps.fleet import services as fleet_services
from mxcore.errors import NotFoundError, ValidationError


def _create_aircraft(db_session, aircraft_id: str = "B-7011U") -> fleet_models.Aircraft:
    aircraft = fleet_services.register_aircraft(
        db_session,
        payload=fleet_schemas.AircraftCreate(id=aircraft_id, registration=aircraft_id, model="ATR 72-600"),
    )
    db_session.commit()
    return aircraft


def _create_component(db_session, component_id: str = "ENG-1", component_type: str = "ENGINE") -> fleet_models.Component:
    component = fleet_services.register_component(
        db_session,
        payload=fleet_schemas.ComponentCreate(
            id=component_id,
            part_number="PW127M",
            serial_number=f"SN-{component_id}",
            component_type=component_type,
        ),
    )
    db_session.commit()
    return component


def test_register_aircraft_rejects_duplicates(db_session):
    _create_aircraft(db_session)

    with pytest.raises(ValidationError):
        fleet_services.register_aircraft(
            db_session,
            payload=fleet_schemas.AircraftCreate(id="B-7011U", registration="B-7011U"),
        )


def test_llp_requires_a_life_limit(db_session):
    with pytest.raises(ValidationError):
        fleet_services.register_component(
            db_session,
            payload=fleet_schemas.ComponentCreate(
                id="DISK-1",
                part_number="HPT-DISK",
                serial_number="D-001",
                component_type="ENGINE_LLP",
                is_llp=True,
            ),
        )


def test_install_and_remove_component_tracks_history(db_session):
    _create_aircraft(db_session)
    _create_aircraft(db_session, "B-7012U")
    _create_component(db_session)

    fleet_services.install_component(
        db_session,
        component_id="ENG-1",
        aircraft_id="B-7011U",
        position="LH",
        installed_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
    )
    db_session.commit()
    assert fleet_services.aircraft_for_subject(db_session, "ENG-1") == "B-7011U"

    with pytest.raises(ValidationError):
        fleet_services.install_component(db_session, component_id="ENG-1", aircraft_id="B-7012U", position="RH")

    fleet_services.remove_component(
        db_session,
        component_id="ENG-1",
        removed_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        notes="shop visit",
    )
    fleet_services.install_component(
        db_session,
        component_id="ENG-1",
        aircraft_id="B-7012U",
        position="RH",
        installed_at=datetime(2026, 4, 1, tzinfo=timezone.utc),
    )
    db_session.commit()

    assert fleet_services.aircraft_for_subject(db_session, "ENG-1") == "B-7012U"
    in_february = fleet_services.installed_components(
        db_session, aircraft_id="B-7011U", at=datetime(2026, 2, 1, tzinfo=timezone.utc)
    )
    assert [c.id for c in in_february] == ["ENG-1"]
    assert fleet_services.installed_components(db_session, aircraft_id="B-7011U") == []


def test_subject_kind_resolution(db_session):
    _create_aircraft(db_session)
    _create_component(db_session)

    assert fleet_services.get_subject_kind(db_session, "B-7011U") == fleet_models.SubjectKindEnum.AIRCRAFT
    assert fleet_services.get_subject_kind(db_session, "ENG-1") == fleet_models.SubjectKindEnum.COMPONENT
    assert fleet_services.aircraft_for_subject(db_session, "ENG-1") is None
    with pytest.raises(NotFoundError):
        fleet_services.get_subject_kind(db_session, "NOPE")


def test_set_airworthiness_is_idempotent(db_session):
    aircraft = _create_aircraft(db_session)
    assert aircraft.airworthy is True

    fleet_services.set_airworthiness(db_session, aircraft_id="B-7011U", airworthy=False)
    fleet_services.set_airworthiness(
        db_session, aircraft_id="B-7011U", airworthy=False, actor_user_id="tech-a", work_order_id=4
    )
    db_session.commit()

    assert fleet_services.get_aircraft(db_session, "B-7011U").airworthy is False
    changes = audit_services.list_audit_events(db_session, aircraft_id="B-7011U", action="airworthiness")
    assert [(e.before, e.after) for e in changes] == [({"airworthy": True}, {"airworthy": False})]
    assert changes[0].metadata_json is None
