"""
Unit tests for the FleetService poll coordinator.

Tests verify:
- A unit cycle updates snapshot, ledger, and snapshot history together.
- One failing unit does not abort the cycle and keeps its last snapshot.
- Batches are separated by the configured delay.
- A cycle already running suppresses a new one for the same fleet.
- Yield-yesterday readings backfill the ledger.
- GPS readings are persisted and trigger automatic clustering until one
  pass succeeds.
- Router cycle waits for the first unit list, then resolves identities and
  collects GPS fixes.
- Operator actions (link, assign, recluster) and fleet-wide reads,
  including persisted snapshot history.
- Startup seeding from persistence.

CHANGELOG:
- 2026-03-11: Add router-before-units, auto-cluster retry and history tests (STORY-114)
- 2026-03-10: Add score_all prewarm test (STORY-112)
- 2026-03-08: Add seeding and backfill tests (STORY-111)
- 2026-03-06: Add router cycle tests (STORY-109)
- 2026-03-03: Initial creation (STORY-105)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from fleet_fakes import TODAY, make_record

from fleet.src.errors import UpstreamError
from fleet.src.models import (
    DiagnosticRecord,
    RouterBinding,
    RouterDevice,
    UnitInfo,
    WeatherSample,
)
from fleet.src.service import FleetService, natural_key

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _diag(**values: object) -> list[DiagnosticRecord]:
    """Diagnostic rows keyed by VRM code, e.g. ``_diag(SOC=80, YT=1.2)``."""
    return [
        DiagnosticRecord(code=code, raw_value=value, device="Battery Monitor")
        for code, value in values.items()
    ]


def _vrm(units: list[UnitInfo], diagnostics: dict[int, object]) -> MagicMock:
    """Fake VRM client; a diagnostics value that is an exception is raised."""

    async def fetch(unit_id: int) -> list[DiagnosticRecord]:
        value = diagnostics[unit_id]
        if isinstance(value, Exception):
            raise value
        return value

    vrm = MagicMock()
    vrm.list_units = AsyncMock(return_value=units)
    vrm.fetch_diagnostics = AsyncMock(side_effect=fetch)
    return vrm


def _weather(clock) -> MagicMock:
    weather = MagicMock()
    weather.sample = AsyncMock(
        return_value=WeatherSample(
            peak_sun_hours=5.0, data_source="open-meteo", fetched_at=clock()
        )
    )
    weather.prewarm = AsyncMock(return_value=1)
    return weather


def _service(vrm, store, spec, clock, **kwargs: object) -> FleetService:
    kwargs.setdefault("weather", _weather(clock))
    kwargs.setdefault("sleep", AsyncMock())
    return FleetService(vrm=vrm, store=store, spec=spec, clock=clock, **kwargs)


UNITS = [UnitInfo(unit_id=101, name="Trailer 1"), UnitInfo(unit_id=102, name="Trailer 2")]


# ---------------------------------------------------------------------------
# Unit poll cycle
# ---------------------------------------------------------------------------


class TestPollUnits:
    @pytest.mark.asyncio
    async def test_cycle_updates_snapshot_and_ledger(self, store, spec, clock) -> None:
        vrm = _vrm(
            UNITS,
            {
                101: _diag(SOC=80, V=12.8, CE=-10, YT=1.5),
                102: _diag(SOC=60, V=12.4, YT=0.5),
            },
        )
        service = _service(vrm, store, spec, clock)

        summary = await service.poll_units()
        await service.writes.drain()

        assert (summary.ok, summary.errors, summary.skipped) == (2, 0, False)
        assert service.get_snapshot(101).battery_soc == 80.0
        entry = service.get_ledger(101)[-1]
        assert entry.date == TODAY
        assert entry.yield_wh == 1500.0
        assert entry.consumed_wh == pytest.approx(128.0)
        assert store.count("insert_snapshot") == 2
        assert store.count("upsert_daily_energy") == 2
        assert store.count("prune_snapshots") == 1

    @pytest.mark.asyncio
    async def test_failed_unit_keeps_previous_snapshot(self, store, spec, clock) -> None:
        diagnostics: dict[int, object] = {101: _diag(SOC=80), 102: _diag(SOC=60)}
        service = _service(_vrm(UNITS, diagnostics), store, spec, clock)
        await service.poll_units()

        diagnostics[101] = UpstreamError("VRM API 500")
        diagnostics[102] = _diag(SOC=55)
        summary = await service.poll_units()

        assert (summary.ok, summary.errors) == (1, 1)
        assert service.get_snapshot(101).battery_soc == 80.0
        assert service.get_snapshot(102).battery_soc == 55.0

    @pytest.mark.asyncio
    async def test_batches_are_delayed(self, store, spec, clock) -> None:
        units = [UnitInfo(unit_id=i, name=f"Trailer {i}") for i in range(1, 6)]
        sleep = AsyncMock()
        service = _service(
            _vrm(units, {u.unit_id: [] for u in units}),
            store,
            spec,
            clock,
            batch_size=2,
            batch_delay_s=1.2,
            sleep=sleep,
        )

        summary = await service.poll_units()

        assert summary.ok == 5
        assert sleep.await_count == 2
        sleep.assert_awaited_with(1.2)

    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self, store, spec, clock) -> None:
        gate = asyncio.Event()

        async def slow(unit_id: int) -> list[DiagnosticRecord]:
            await gate.wait()
            return _diag(SOC=50)

        vrm = MagicMock()
        vrm.list_units = AsyncMock(return_value=UNITS[:1])
        vrm.fetch_diagnostics = AsyncMock(side_effect=slow)
        service = _service(vrm, store, spec, clock)

        first = asyncio.create_task(service.poll_units())
        await asyncio.sleep(0)
        second = await service.poll_units()
        gate.set()
        summary = await first

        assert second.skipped is True
        assert summary.ok == 1
        assert vrm.list_units.await_count == 1

    @pytest.mark.asyncio
    async def test_listing_failure_counts_as_error(self, store, spec, clock) -> None:
        vrm = MagicMock()
        vrm.list_units = AsyncMock(side_effect=UpstreamError("VRM down"))
        service = _service(vrm, store, spec, clock)

        summary = await service.poll_units()

        assert summary.errors == 1
        assert service.fleet_latest() == []

    @pytest.mark.asyncio
    async def test_yield_yesterday_backfills_ledger(self, store, spec, clock) -> None:
        service = _service(_vrm(UNITS[:1], {101: _diag(YT=0.2, YY=4.1)}), store, spec, clock)

        await service.poll_units()

        yesterday = service.ledger.entry(101, TODAY - datetime.timedelta(days=1))
        assert yesterday.yield_wh == pytest.approx(4100.0)
        assert yesterday.consumed_wh is None

    @pytest.mark.asyncio
    async def test_gps_triggers_single_automatic_cluster(self, store, spec, clock) -> None:
        vrm = _vrm(UNITS, {101: _diag(lt=0.0, lg=0.0), 102: _diag(lt=0.0, lg=0.001)})
        service = _service(vrm, store, spec, clock)

        await service.poll_units()
        await service.poll_units()
        await service.writes.drain()

        assert service.get_gps(101) == (0.0, 0.0)
        assert store.count("insert_location") == 1
        assert store.count("get_locations") == 1
        assert store.assignments[101]["location_id"] == store.assignments[102]["location_id"]

    @pytest.mark.asyncio
    async def test_failed_automatic_cluster_is_retried(self, store, spec, clock) -> None:
        load_units = store.get_units_with_gps
        attempts = 0

        async def flaky_load():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise RuntimeError("database is locked")
            return await load_units()

        store.get_units_with_gps = flaky_load
        service = _service(_vrm(UNITS[:1], {101: _diag(lt=1.0, lg=1.0)}), store, spec, clock)

        await service.poll_units()
        assert store.count("insert_location") == 0

        await service.poll_units()
        await service.poll_units()

        assert attempts == 2
        assert store.count("insert_location") == 1

    @pytest.mark.asyncio
    async def test_no_gps_means_no_clustering(self, store, spec, clock) -> None:
        service = _service(_vrm(UNITS[:1], {101: _diag(SOC=50)}), store, spec, clock)
        await service.poll_units()
        assert store.count("get_units_with_gps") == 0


# ---------------------------------------------------------------------------
# Router poll cycle
# ---------------------------------------------------------------------------


class TestPollRouters:
    @pytest.mark.asyncio
    async def test_disabled_without_router_client(self, store, spec, clock) -> None:
        service = _service(_vrm([], {}), store, spec, clock)
        assert (await service.poll_routers()).skipped is True

    @pytest.mark.asyncio
    async def test_waits_for_first_unit_list(self, store, spec, clock) -> None:
        routers = MagicMock()
        routers.list_devices = AsyncMock(
            return_value=[RouterDevice(router_id=7, name="Trailer 1", latitude=1.0, longitude=2.0)]
        )
        routers.fetch_location = AsyncMock(return_value=None)
        service = _service(
            _vrm(UNITS[:1], {101: _diag(SOC=50)}), store, spec, clock, routers=routers
        )

        early = await service.poll_routers()
        await service.poll_units()
        summary = await service.poll_routers()
        await service.writes.drain()

        assert early.skipped is True
        assert summary.ok == 1
        assert service.identity.unit_for(7) == 101
        assert store.bindings[7].unit_id == 101
        assert service.get_gps(-7) is None

    @pytest.mark.asyncio
    async def test_unit_listing_failure_keeps_routers_waiting(
        self, store, spec, clock
    ) -> None:
        vrm = MagicMock()
        vrm.list_units = AsyncMock(side_effect=UpstreamError("VRM down"))
        routers = MagicMock()
        routers.list_devices = AsyncMock(return_value=[RouterDevice(router_id=7, name="A")])
        service = _service(vrm, store, spec, clock, routers=routers)

        await service.poll_units()
        summary = await service.poll_routers()

        assert summary.skipped is True
        routers.list_devices.assert_not_awaited()
        assert service.identity.unit_for(7) is None

    @pytest.mark.asyncio
    async def test_resolves_routers_and_collects_gps(self, store, spec, clock) -> None:
        routers = MagicMock()
        routers.list_devices = AsyncMock(
            return_value=[
                RouterDevice(router_id=7, name="Trailer 1", latitude=1.0, longitude=2.0),
                RouterDevice(router_id=9, name="Lonely"),
            ]
        )
        routers.fetch_location = AsyncMock(return_value=(3.0, 4.0))
        service = _service(
            _vrm(UNITS[:1], {101: _diag(SOC=50)}), store, spec, clock, routers=routers
        )
        await service.poll_units()

        summary = await service.poll_routers()
        await service.writes.drain()

        assert summary.ok == 2
        statuses = service.router_devices()
        assert [(s.unit_id, s.unit_name) for s in statuses] == [(-9, "Lonely"), (101, "Trailer 1")]
        assert service.get_gps(101) == (1.0, 2.0)
        assert service.get_gps(-9) == (3.0, 4.0)
        routers.fetch_location.assert_awaited_once_with(9)
        assert store.bindings[7].unit_id == 101
        assert store.count("insert_location") >= 1

    @pytest.mark.asyncio
    async def test_location_failure_is_isolated(self, store, spec, clock) -> None:
        routers = MagicMock()
        routers.list_devices = AsyncMock(
            return_value=[RouterDevice(router_id=9, name="A"), RouterDevice(router_id=10, name="B")]
        )
        routers.fetch_location = AsyncMock(side_effect=[UpstreamError("boom"), (1.0, 1.0)])
        service = _service(_vrm([], {}), store, spec, clock, routers=routers)
        await service.poll_units()

        summary = await service.poll_routers()

        assert (summary.ok, summary.errors) == (1, 1)
        assert service.get_gps(-10) == (1.0, 1.0)

    @pytest.mark.asyncio
    async def test_link_router_updates_status(self, store, spec, clock) -> None:
        routers = MagicMock()
        routers.list_devices = AsyncMock(return_value=[RouterDevice(router_id=9, name="Spare")])
        routers.fetch_location = AsyncMock(return_value=None)
        service = _service(
            _vrm(UNITS, {101: [], 102: []}), store, spec, clock, routers=routers
        )
        await service.poll_units()
        await service.poll_routers()

        binding = service.link_router(9, 102)
        await service.writes.drain()

        assert binding == RouterBinding(router_id=9, unit_id=102, router_name="Spare")
        assert [(s.unit_id, s.unit_name) for s in service.router_devices()] == [
            (102, "Trailer 2")
        ]
        assert store.bindings[9].unit_id == 102


# ---------------------------------------------------------------------------
# Reads, operator actions, scoring
# ---------------------------------------------------------------------------


class TestReadsAndActions:
    def test_natural_key_orders_numbers(self) -> None:
        names = ["Trailer 10", "trailer 2", "Trailer 1"]
        assert sorted(names, key=natural_key) == ["Trailer 1", "trailer 2", "Trailer 10"]

    def test_fleet_energy_sorted_by_name(self, store, spec, clock) -> None:
        service = _service(_vrm([], {}), store, spec, clock)
        service.ledger.seed(
            [
                make_record(TODAY, 100.0, 50.0, unit_id=10, name="Trailer 10"),
                make_record(TODAY, 200.0, 80.0, unit_id=2, name="Trailer 2"),
            ]
        )

        energy = service.fleet_energy()

        assert [u["unit_name"] for u in energy] == ["Trailer 2", "Trailer 10"]
        assert energy[0]["days"] == [
            {"date": TODAY.isoformat(), "yield_wh": 200.0, "consumed_wh": 80.0}
        ]

    def test_compute_alerts_reads_ledger(self, store, spec, clock) -> None:
        service = _service(_vrm([], {}), store, spec, clock)
        service.ledger.seed(
            [make_record(TODAY - datetime.timedelta(days=n), 100.0, 400.0) for n in (1, 2, 3)]
        )
        alerts = service.compute_alerts()
        assert [(a.unit_id, a.severity) for a in alerts] == [(1, "warning")]

    @pytest.mark.asyncio
    async def test_assign_location_sets_manual_override(self, store, spec, clock) -> None:
        service = _service(_vrm([], {}), store, spec, clock)
        await store.upsert_unit_assignment(101, "Trailer 1", 1.0, 1.0)

        assert await service.assign_location(101, 5) is True
        assert store.assignments[101]["manual_override"] is True
        assert await service.assign_location(999, 5) is False

    @pytest.mark.asyncio
    async def test_cluster_uses_default_threshold(self, store, spec, clock) -> None:
        service = _service(_vrm([], {}), store, spec, clock, cluster_threshold_m=50.0)
        await store.upsert_unit_assignment(1, "A", 0.0, 0.0)
        await store.upsert_unit_assignment(2, "B", 0.0, 0.001)

        default = await service.cluster()
        wide = await service.cluster(500.0)

        assert len(default.locations) == 2
        assert len(wide.locations) == 1

    @pytest.mark.asyncio
    async def test_snapshot_history_reads_persisted_cycles(self, store, spec, clock) -> None:
        vrm = _vrm(UNITS, {101: _diag(SOC=80), 102: _diag(SOC=60)})
        service = _service(vrm, store, spec, clock)
        start = clock()
        await service.poll_units()
        clock.advance(seconds=300)
        await service.poll_units()
        await service.writes.drain()

        history = await service.snapshot_history(101, start, clock())

        assert [s.captured_at for s in history] == [start, clock()]
        assert all(s.unit_id == 101 for s in history)

    @pytest.mark.asyncio
    async def test_score_unknown_unit_is_none(self, store, spec, clock) -> None:
        service = _service(_vrm([], {}), store, spec, clock)
        assert await service.score(404) is None

    @pytest.mark.asyncio
    async def test_score_all_prewarms_weather(self, store, spec, clock) -> None:
        weather = _weather(clock)
        vrm = _vrm(UNITS, {101: _diag(YT=3.0, lt=1.0, lg=1.0), 102: _diag(YT=1.0)})
        service = _service(vrm, store, spec, clock, weather=weather)
        await service.poll_units()

        reports = await service.score_all()

        weather.prewarm.assert_awaited_once_with([(1.0, 1.0)])
        assert [r.unit_id for r in reports] == [101, 102]
        assert reports[0].solar.score == 75.0
        assert reports[1].location.data_source == "default"


class TestSeedFromStore:
    @pytest.mark.asyncio
    async def test_loads_ledger_and_bindings(self, store, spec, clock) -> None:
        await store.upsert_daily_energy(make_record(TODAY - datetime.timedelta(days=1), 1.0, 2.0))
        await store.upsert_router_binding(RouterBinding(router_id=7, unit_id=101, router_name="R"))
        service = _service(_vrm([], {}), store, spec, clock)

        await service.seed_from_store()

        assert len(service.get_ledger(1)) == 1
        assert service.identity.unit_for(7) == 101

    @pytest.mark.asyncio
    async def test_store_failure_is_not_fatal(self, store, spec, clock) -> None:
        store.load_daily_energy = AsyncMock(side_effect=RuntimeError("db down"))
        store.load_router_bindings = AsyncMock(side_effect=RuntimeError("db down"))
        service = _service(_vrm([], {}), store, spec, clock)

        await service.seed_from_store()

        assert service.ledger.unit_ids() == []
