"""
Persistence collaborator for the fleet core.

Defines the ``FleetStore`` protocol the core depends on and its SQLAlchemy
async implementation ``SqlFleetStore``. Works with any SQLAlchemy async
driver (aiosqlite locally, asyncpg in production); upserts are written as
get-then-update inside one session so they stay portable across dialects.

``BackgroundWrites`` runs fire-and-forget writes as tracked asyncio tasks:
failures are logged and never propagate to the caller, so in-memory state
stays authoritative for the rest of the process lifetime.

CHANGELOG:
- 2026-03-11: Add snapshot history reads (STORY-114)
- 2026-03-07: Add BackgroundWrites helper (STORY-110)
- 2026-03-05: Add locations and assignments (STORY-108)
- 2026-03-03: Initial creation (STORY-104)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import datetime
import logging
from collections.abc import Coroutine
from datetime import UTC
from typing import Any, Protocol

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from fleet.src.db_models import (
    Base,
    DailyEnergy,
    Location,
    RouterBindingRow,
    UnitAssignment,
    UnitSnapshotRow,
)
from fleet.src.models import (
    DailyEnergyRecord,
    GpsUnit,
    PersistedLocation,
    RouterBinding,
    UnitSnapshot,
)

logger = logging.getLogger(__name__)


class FleetStore(Protocol):
    """Operations the core needs from persistence."""

    async def upsert_daily_energy(self, record: DailyEnergyRecord) -> None: ...

    async def load_daily_energy(
        self, since: datetime.date
    ) -> list[DailyEnergyRecord]: ...

    async def upsert_router_binding(self, binding: RouterBinding) -> None: ...

    async def delete_router_binding(self, router_id: int) -> None: ...

    async def load_router_bindings(self) -> list[RouterBinding]: ...

    async def upsert_unit_assignment(
        self,
        unit_id: int,
        unit_name: str,
        latitude: float | None,
        longitude: float | None,
        location_id: int | None = None,
    ) -> None: ...

    async def set_manual_assignment(
        self, unit_id: int, location_id: int | None, manual: bool = True
    ) -> bool: ...

    async def get_units_with_gps(self) -> list[GpsUnit]: ...

    async def get_locations(self) -> list[PersistedLocation]: ...

    async def get_location_members(self, location_id: int) -> set[int]: ...

    async def insert_location(
        self,
        name: str,
        latitude: float,
        longitude: float,
        address: str | None = None,
    ) -> PersistedLocation: ...

    async def update_location_centroid(
        self, location_id: int, latitude: float, longitude: float
    ) -> None: ...

    async def insert_snapshot(self, snapshot: UnitSnapshot) -> None: ...

    async def get_snapshot_history(
        self, unit_id: int, start: datetime.datetime, end: datetime.datetime
    ) -> list[UnitSnapshot]: ...

    async def prune_snapshots(self, older_than: datetime.datetime) -> int: ...


# ---------------------------------------------------------------------------
# Fire-and-forget writes
# ---------------------------------------------------------------------------


class BackgroundWrites:
    """Run persistence coroutines without blocking the caller.

    Each write becomes an asyncio task kept in a strong-reference set until
    it finishes. Exceptions are logged with the supplied description.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()
        self.failures: int = 0

    def spawn(self, coro: Coroutine[Any, Any, Any], what: str) -> None:
        """Schedule *coro* on the running loop.

        Args:
            coro: The persistence coroutine to run.
            what: Short description used in failure logs.
        """
        task = asyncio.get_running_loop().create_task(self._guard(coro, what))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _guard(self, coro: Coroutine[Any, Any, Any], what: str) -> None:
        try:
            await coro
        except Exception:
            self.failures += 1
            logger.warning("Persistence write failed: %s", what, exc_info=True)

    @property
    def pending(self) -> int:
        """Number of writes not yet finished."""
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every outstanding write to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


# ---------------------------------------------------------------------------
# SQLAlchemy implementation
# ---------------------------------------------------------------------------


def _now() -> datetime.datetime:
    return datetime.datetime.now(tz=UTC)


def _as_utc(value: datetime.datetime) -> datetime.datetime:
    # SQLite returns naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _location_to_model(row: Location) -> PersistedLocation:
    return PersistedLocation(
        id=row.id,
        name=row.name,
        latitude=row.latitude,
        longitude=row.longitude,
        address=row.address,
        status=row.status,
    )


class SqlFleetStore:
    """SQLAlchemy 2.x async implementation of :class:`FleetStore`.

    Args:
        database_url: SQLAlchemy async URL, e.g.
            ``sqlite+aiosqlite:///data/fleet.db`` or
            ``postgresql+asyncpg://user:pw@host/db``.
        engine: Optional pre-built engine (overrides *database_url*).

    Usage::

        store = SqlFleetStore("sqlite+aiosqlite:///fleet.db")
        await store.init()
        await store.upsert_router_binding(binding)
        await store.close()
    """

    def __init__(
        self,
        database_url: str | None = None,
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        if engine is None:
            if not database_url:
                raise ValueError("database_url or engine is required")
            engine = create_async_engine(database_url, echo=False)
        self._engine = engine
        self._sessions: async_sessionmaker[AsyncSession] = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )

    async def init(self) -> None:
        """Create all tables that do not exist yet."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Dispose of the engine's connection pool."""
        await self._engine.dispose()

    # -- Daily energy ------------------------------------------------------

    async def upsert_daily_energy(self, record: DailyEnergyRecord) -> None:
        async with self._sessions() as session:
            row = await session.get(DailyEnergy, (record.unit_id, record.date))
            if row is None:
                row = DailyEnergy(unit_id=record.unit_id, date=record.date)
                session.add(row)
            row.unit_name = record.unit_name
            row.yield_wh = record.yield_wh
            row.consumed_wh = record.consumed_wh
            row.updated_at = record.updated_at
            await session.commit()

    async def load_daily_energy(self, since: datetime.date) -> list[DailyEnergyRecord]:
        """Return all ledger rows dated on or after *since*."""
        stmt = (
            select(DailyEnergy)
            .where(DailyEnergy.date >= since)
            .order_by(DailyEnergy.unit_id, DailyEnergy.date)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            DailyEnergyRecord(
                unit_id=row.unit_id,
                date=row.date,
                unit_name=row.unit_name,
                yield_wh=row.yield_wh,
                consumed_wh=row.consumed_wh,
                updated_at=_as_utc(row.updated_at),
            )
            for row in rows
        ]

    # -- Router bindings ---------------------------------------------------

    async def upsert_router_binding(self, binding: RouterBinding) -> None:
        async with self._sessions() as session:
            row = await session.get(RouterBindingRow, binding.router_id)
            if row is None:
                row = RouterBindingRow(router_id=binding.router_id)
                session.add(row)
            row.unit_id = binding.unit_id
            row.router_name = binding.router_name
            row.updated_at = _now()
            await session.commit()

    async def delete_router_binding(self, router_id: int) -> None:
        async with self._sessions() as session:
            await session.execute(
                delete(RouterBindingRow).where(RouterBindingRow.router_id == router_id)
            )
            await session.commit()

    async def load_router_bindings(self) -> list[RouterBinding]:
        async with self._sessions() as session:
            rows = (
                (
                    await session.execute(
                        select(RouterBindingRow).order_by(RouterBindingRow.updated_at)
                    )
                )
                .scalars()
                .all()
            )
        return [
            RouterBinding(
                router_id=row.router_id,
                unit_id=row.unit_id,
                router_name=row.router_name,
            )
            for row in rows
        ]

    # -- Unit assignments --------------------------------------------------

    async def upsert_unit_assignment(
        self,
        unit_id: int,
        unit_name: str,
        latitude: float | None,
        longitude: float | None,
        location_id: int | None = None,
    ) -> None:
        """Insert or update a unit's GPS and location.

        A null GPS keeps the stored fix; a null *location_id* keeps the
        stored location; a manual override keeps the stored location
        regardless of *location_id*.
        """
        async with self._sessions() as session:
            row = await session.get(UnitAssignment, unit_id)
            if row is None:
                row = UnitAssignment(unit_id=unit_id, manual_override=False)
                session.add(row)
            row.unit_name = unit_name
            if latitude is not None and longitude is not None:
                row.latitude = latitude
                row.longitude = longitude
            if location_id is not None and not row.manual_override:
                row.location_id = location_id
            row.assigned_at = _now()
            await session.commit()

    async def set_manual_assignment(
        self, unit_id: int, location_id: int | None, manual: bool = True
    ) -> bool:
        """Pin a unit to a location; returns False if the unit is unknown."""
        async with self._sessions() as session:
            row = await session.get(UnitAssignment, unit_id)
            if row is None:
                return False
            row.location_id = location_id
            row.manual_override = manual
            row.assigned_at = _now()
            await session.commit()
        return True

    async def get_units_with_gps(self) -> list[GpsUnit]:
        stmt = (
            select(UnitAssignment)
            .where(UnitAssignment.latitude.is_not(None))
            .where(UnitAssignment.longitude.is_not(None))
            .order_by(UnitAssignment.unit_name)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            GpsUnit(
                unit_id=row.unit_id,
                unit_name=row.unit_name,
                latitude=row.latitude,
                longitude=row.longitude,
                location_id=row.location_id,
                manual_override=row.manual_override,
            )
            for row in rows
        ]

    # -- Locations ---------------------------------------------------------

    async def get_locations(self) -> list[PersistedLocation]:
        """Return all non-completed locations ordered by id."""
        stmt = (
            select(Location).where(Location.status != "completed").order_by(Location.id)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [_location_to_model(row) for row in rows]

    async def get_location_members(self, location_id: int) -> set[int]:
        stmt = select(UnitAssignment.unit_id).where(
            UnitAssignment.location_id == location_id
        )
        async with self._sessions() as session:
            return set((await session.execute(stmt)).scalars().all())

    async def insert_location(
        self,
        name: str,
        latitude: float,
        longitude: float,
        address: str | None = None,
    ) -> PersistedLocation:
        now = _now()
        async with self._sessions() as session:
            row = Location(
                name=name,
                latitude=latitude,
                longitude=longitude,
                address=address,
                status="active",
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            await session.commit()
            return _location_to_model(row)

    async def update_location_centroid(
        self, location_id: int, latitude: float, longitude: float
    ) -> None:
        async with self._sessions() as session:
            row = await session.get(Location, location_id)
            if row is None:
                return
            row.latitude = latitude
            row.longitude = longitude
            row.updated_at = _now()
            await session.commit()

    # -- Snapshot history --------------------------------------------------

    async def insert_snapshot(self, snapshot: UnitSnapshot) -> None:
        data = snapshot.model_dump(exclude={"captured_at", "latitude", "longitude"})
        async with self._sessions() as session:
            await session.merge(UnitSnapshotRow(ts=snapshot.captured_at, **data))
            await session.commit()

    async def get_snapshot_history(
        self, unit_id: int, start: datetime.datetime, end: datetime.datetime
    ) -> list[UnitSnapshot]:
        """Return a unit's stored snapshots with start <= ts <= end, oldest first."""
        stmt = (
            select(UnitSnapshotRow)
            .where(
                UnitSnapshotRow.unit_id == unit_id,
                UnitSnapshotRow.ts >= start,
                UnitSnapshotRow.ts <= end,
            )
            .order_by(UnitSnapshotRow.ts)
        )
        async with self._sessions() as session:
            rows = (await session.execute(stmt)).scalars().all()
        return [
            UnitSnapshot(
                unit_id=row.unit_id,
                unit_name=row.unit_name,
                captured_at=_as_utc(row.ts),
                battery_soc=row.battery_soc,
                battery_voltage=row.battery_voltage,
                battery_current=row.battery_current,
                battery_temp=row.battery_temp,
                battery_power=row.battery_power,
                solar_watts=row.solar_watts,
                solar_yield_today=row.solar_yield_today,
                solar_yield_yesterday=row.solar_yield_yesterday,
                consumed_ah=row.consumed_ah,
                charge_state=row.charge_state,
            )
            for row in rows
        ]

    async def prune_snapshots(self, older_than: datetime.datetime) -> int:
        """Delete snapshot history older than *older_than*; returns row count."""
        async with self._sessions() as session:
            result = await session.execute(
                delete(UnitSnapshotRow).where(UnitSnapshotRow.ts < older_than)
            )
            await session.commit()
        return result.rowcount or 0
