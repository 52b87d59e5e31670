# backend/mxcore/apps/fleet/models.py
#
# ORM models for the fleet registry:
# - Aircraft               : tracked airframe with its airworthiness flag.
# - Component              : serialised component (engine, propeller, LLP ...).
# - ComponentInstallation  : install / removal history (removed_at IS NULL
#                            means currently installed).

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ...database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubjectKindEnum(str, enum.Enum):
    """What a usage event or maintenance trigger is tracked against."""
    AIRCRAFT = "AIRCRAFT"
    COMPONENT = "COMPONENT"


class Aircraft(Base):
    __tablename__ = "aircraft"

    id = Column(String(64), primary_key=True)
    registration = Column(String(32), nullable=False, unique=True, index=True)
    model = Column(String(64), nullable=True)
    airworthy = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    installations = relationship(
        "ComponentInstallation",
        back_populates="aircraft",
        lazy="selectin",
        order_by="ComponentInstallation.installed_at",
    )

    def __repr__(self) -> str:
        return f"<Aircraft id={self.id} reg={self.registration} airworthy={self.airworthy}>"


class Component(Base):
    __tablename__ = "components"
    __table_args__ = (
        UniqueConstraint("part_number", "serial_number", name="uq_components_pn_sn"),
        CheckConstraint("life_limit_hours IS NULL OR life_limit_hours > 0", name="ck_components_llp_hours_pos"),
        CheckConstraint("life_limit_cycles IS NULL OR life_limit_cycles > 0", name="ck_components_llp_cycles_pos"),
    )

    id = Column(String(64), primary_key=True)
    part_number = Column(String(64), nullable=False, index=True)
    serial_number = Column(String(64), nullable=False, index=True)
    component_type = Column(String(32), nullable=False, index=True)  # e.g. ENGINE, PROPELLER, BATTERY
    description = Column(String(255), nullable=True)

    # Life-limited parts carry a hard ceiling (retire, not inspect).
    is_llp = Column(Boolean, nullable=False, default=False)
    life_limit_hours = Column(Float, nullable=True)
    life_limit_cycles = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    installations = relationship(
        "ComponentInstallation",
        back_populates="component",
        lazy="selectin",
        order_by="ComponentInstallation.installed_at",
    )


class ComponentInstallation(Base):
    __tablename__ = "component_installations"
    __table_args__ = (
        Index("ix_component_installations_aircraft", "aircraft_id", "removed_at"),
        Index("ix_component_installations_component", "component_id", "removed_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    component_id = Column(String(64), ForeignKey("components.id", ondelete="RESTRICT"), nullable=False)
    aircraft_id = Column(String(64), ForeignKey("aircraft.id", ondelete="RESTRICT"), nullable=False)
    position = Column(String(64), nullable=False)

    installed_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    removed_at = Column(DateTime(timezone=True), nullable=True)
    install_notes = Column(Text, nullable=True)
    remove_notes = Column(Text, nullable=True)

    component = relationship("Component", back_populates="installations", lazy="joined")
    aircraft = relationship("Aircraft", back_populates="installations", lazy="joined")
