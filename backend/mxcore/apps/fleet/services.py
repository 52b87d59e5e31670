from __future__ import annotations

from datetime import datetime
import logging
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...errors import NotFoundError, ValidationError
from ...time_utils import utcnow
from ..audit import services as audit_services
from . import models, schemas

logger = logging.getLogger(__name__)

SUBJECT_AIRCRAFT = models.SubjectKindEnum.AIRCRAFT
SUBJECT_COMPONENT = models.SubjectKindEnum.COMPONENT


def register_aircraft(db: Session, *, payload: schemas.AircraftCreate) -> models.Aircraft:
    if db.get(models.Aircraft, payload.id) is not None:
        raise ValidationError(
            f"Aircraft {payload.id} already exists.",
            detail=[{"field": "id", "reason": "duplicate aircraft"}],
        )
    aircraft = models.Aircraft(**payload.model_dump(), airworthy=True)
    db.add(aircraft)
    db.flush()
    return aircraft


def register_component(db: Session, *, payload: schemas.ComponentCreate) -> models.Component:
    if payload.is_llp and payload.life_limit_hours is None and payload.life_limit_cycles is None:
        raise ValidationError(
            "Life-limited parts need an hours or cycles limit.",
            detail=[{"field": "life_limit_hours", "reason": "life limit required for LLP"}],
        )
    component = models.Component(**payload.model_dump())
    db.add(component)
    db.flush()
    return component


def get_aircraft(db: Session, aircraft_id: str) -> models.Aircraft:
    aircraft = db.get(models.Aircraft, aircraft_id)
    if aircraft is None:
        raise NotFoundError(f"Aircraft {aircraft_id} not found.")
    return aircraft


def get_component(db: Session, component_id: str) -> models.Component:
    component = db.get(models.Component, component_id)
    if component is None:
        raise NotFoundError(f"Component {component_id} not found.")
    return component


def current_installation(db: Session, component_id: str) -> Optional[models.ComponentInstallation]:
    return (
        db.query(models.ComponentInstallation)
        .filter(
            models.ComponentInstallation.component_id == component_id,
            models.ComponentInstallation.removed_at.is_(None),
        )
        .first()
    )


def install_component(
    db: Session,
    *,
    component_id: str,
    aircraft_id: str,
    position: str,
    installed_at: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> models.ComponentInstallation:
    """
    Install a component on an aircraft.

    Component life is carried with the component: nothing is reset here,
    the usage ledger keeps accumulating against the component id.
    """
    get_component(db, component_id)
    get_aircraft(db, aircraft_id)
    existing = current_installation(db, component_id)
    if existing is not None:
        raise ValidationError(
            f"Component {component_id} is already installed on {existing.aircraft_id}.",
            detail=[{"field": "component_id", "reason": "already installed"}],
        )
    installation = models.ComponentInstallation(
        component_id=component_id,
        aircraft_id=aircraft_id,
        position=position,
        installed_at=installed_at or utcnow(),
        install_notes=notes,
    )
    db.add(installation)
    db.flush()
    logger.info(
        "Component installed",
        extra={"component_id": component_id, "aircraft_id": aircraft_id, "position": position},
    )
    return installation


def remove_component(
    db: Session,
    *,
    component_id: str,
    removed_at: Optional[datetime] = None,
    notes: Optional[str] = None,
) -> models.ComponentInstallation:
    installation = current_installation(db, component_id)
    if installation is None:
        raise ValidationError(
            f"Component {component_id} is not installed.",
            detail=[{"field": "component_id", "reason": "not installed"}],
        )
    installation.removed_at = removed_at or utcnow()
    installation.remove_notes = notes
    db.flush()
    return installation


def installed_components(
    db: Session,
    *,
    aircraft_id: str,
    at: Optional[datetime] = None,
) -> List[models.Component]:
    """
    Components installed on the aircraft now, or at the given instant.
    """
    query = db.query(models.ComponentInstallation).filter(
        models.ComponentInstallation.aircraft_id == aircraft_id
    )
    if at is None:
        query = query.filter(models.ComponentInstallation.removed_at.is_(None))
    else:
        query = query.filter(
            models.ComponentInstallation.installed_at <= at,
            or_(
                models.ComponentInstallation.removed_at.is_(None),
                models.ComponentInstallation.removed_at > at,
            ),
        )
    installations = query.order_by(models.ComponentInstallation.id).all()
    return [installation.component for installation in installations]


def get_subject_kind(db: Session, subject_id: str) -> models.SubjectKindEnum:
    if db.get(models.Aircraft, subject_id) is not None:
        return SUBJECT_AIRCRAFT
    if db.get(models.Component, subject_id) is not None:
        return SUBJECT_COMPONENT
    raise NotFoundError(f"Subject {subject_id} is neither an aircraft nor a component.")


def aircraft_for_subject(db: Session, subject_id: str) -> Optional[str]:
    """The aircraft a subject belongs to right now (itself, or the host aircraft of a component)."""
    if db.get(models.Aircraft, subject_id) is not None:
        return subject_id
    installation = current_installation(db, subject_id)
    return installation.aircraft_id if installation else None


def set_airworthiness(
    db: Session,
    *,
    aircraft_id: str,
    airworthy: bool,
    actor_user_id: Optional[str] = None,
    work_order_id: Optional[int] = None,
) -> models.Aircraft:
    aircraft = get_aircraft(db, aircraft_id)
    if aircraft.airworthy != airworthy:
        audit_services.log_event(
            db,
            actor_user_id=actor_user_id,
            aircraft_id=aircraft_id,
            entity_type="aircraft",
            entity_id=aircraft_id,
            action="airworthiness",
            before={"airworthy": aircraft.airworthy},
            after={"airworthy": airworthy},
            metadata={"work_order_id": work_order_id} if work_order_id is not None else None,
            critical=True,
        )
        aircraft.airworthy = airworthy
        db.flush()
        logger.info(
            "Aircraft airworthiness changed",
            extra={"aircraft_id": aircraft_id, "airworthy": airworthy},
        )
    return aircraft
