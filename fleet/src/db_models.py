"""
SQLAlchemy ORM models for the fleet persistence layer.

Tables:
- daily_energy: per-unit, per-date yield/consumption (composite PK).
- router_bindings: router id -> unit id identity links.
- locations: named job-site locations created by clustering or operators.
- unit_assignments: per-unit GPS and location assignment with manual override.
- unit_snapshots: history of live readings (composite PK unit_id, ts).

CHANGELOG:
- 2026-03-05: Add locations and unit_assignments (STORY-108)
- 2026-03-03: Initial creation (STORY-104)

TODO:
- None
"""

import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Double,
    ForeignKey,
    Integer,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all fleet ORM models."""

    pass


class DailyEnergy(Base):
    """Daily energy ledger row, keyed by (unit_id, date)."""

    __tablename__ = "daily_energy"

    unit_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    date: Mapped[datetime.date] = mapped_column(Date, primary_key=True)
    unit_name: Mapped[str] = mapped_column(Text, nullable=False)
    yield_wh: Mapped[float | None] = mapped_column(Double, nullable=True)
    consumed_wh: Mapped[float | None] = mapped_column(Double, nullable=True)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    def __repr__(self) -> str:
        return (
            f"DailyEnergy(unit_id={self.unit_id!r}, date={self.date!r}, "
            f"yield_wh={self.yield_wh!r}, consumed_wh={self.consumed_wh!r})"
        )


class RouterBindingRow(Base):
    """Identity link from an InControl2 router to a unit."""

    __tablename__ = "router_bindings"

    router_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    unit_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    router_name: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


class Location(Base):
    """A job-site location that groups co-located trailers."""

    __tablename__ = "locations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    latitude: Mapped[float | None] = mapped_column(Double, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Double, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, server_default=text("'active'")
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


class UnitAssignment(Base):
    """Per-unit GPS fix and location assignment."""

    __tablename__ = "unit_assignments"

    unit_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    unit_name: Mapped[str] = mapped_column(Text, nullable=False)
    latitude: Mapped[float | None] = mapped_column(Double, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Double, nullable=True)
    location_id: Mapped[int | None] = mapped_column(
        Integer,
        ForeignKey("locations.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    manual_override: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("false")
    )
    assigned_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )


class UnitSnapshotRow(Base):
    """Historical live reading for a unit."""

    __tablename__ = "unit_snapshots"

    unit_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    ts: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True), primary_key=True
    )
    unit_name: Mapped[str] = mapped_column(Text, nullable=False)
    battery_soc: Mapped[float | None] = mapped_column(Double, nullable=True)
    battery_voltage: Mapped[float | None] = mapped_column(Double, nullable=True)
    battery_current: Mapped[float | None] = mapped_column(Double, nullable=True)
    battery_temp: Mapped[float | None] = mapped_column(Double, nullable=True)
    battery_power: Mapped[float | None] = mapped_column(Double, nullable=True)
    solar_watts: Mapped[float | None] = mapped_column(Double, nullable=True)
    solar_yield_today: Mapped[float | None] = mapped_column(Double, nullable=True)
    solar_yield_yesterday: Mapped[float | None] = mapped_column(Double, nullable=True)
    consumed_ah: Mapped[float | None] = mapped_column(Double, nullable=True)
    charge_state: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"UnitSnapshotRow(unit_id={self.unit_id!r}, ts={self.ts!r})"
