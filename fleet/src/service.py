"""
Fleet service: owns the in-memory state and runs the poll cycles.

One ``FleetService`` instance holds every shared map (snapshots, router
status, GPS, the energy ledger, identity bindings). Mutation happens only in
the poll cycles and in explicit operator actions; reads are plain lookups.
The service runs on a single asyncio loop, so a unit's snapshot and its
ledger entry for today are updated together with no await in between.

Poll cycles:
- ``poll_units()``: list VRM installations, fetch diagnostics in batches of
  ``batch_size`` with ``batch_delay_s`` between batches, update snapshot,
  ledger, and GPS per unit.
- ``poll_routers()``: list InControl2 routers, resolve each to a unit, and
  fetch GPS fixes in batches.

A cycle already in progress suppresses a new one for the same fleet. A unit
that fails keeps its previous snapshot; failures are counted and logged.
Clustering runs automatically after cycles that yield GPS until one pass
succeeds, then only on request. Router cycles are skipped until the VRM
unit list has loaded once, so routers are never resolved against an empty
fleet.

CHANGELOG:
- 2026-03-11: Wait for the unit list before resolving routers; retry failed auto-cluster (STORY-114)
- 2026-03-10: Add fleet-wide scoring with weather prewarm (STORY-112)
- 2026-03-08: Add yesterday-yield backfill and startup seeding (STORY-111)
- 2026-03-06: Add router cycle, manual link and location assignment (STORY-109)
- 2026-03-03: Initial creation (STORY-105)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import re
import time
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC
from typing import TypeVar

from fleet.src.alerts import compute_alerts
from fleet.src.clustering import DEFAULT_THRESHOLD_M, LocationClusterer
from fleet.src.diagnostics import extract_snapshot
from fleet.src.errors import FleetError
from fleet.src.geocoder import ReverseGeocoder
from fleet.src.identity import IdentityResolver
from fleet.src.incontrol import InControlClient
from fleet.src.ledger import DEFAULT_RETENTION_DAYS, EnergyLedger
from fleet.src.models import (
    ClusterResult,
    CycleSummary,
    DailyEnergyRecord,
    DeficitAlert,
    HardwareSpec,
    IntelligenceReport,
    RouterBinding,
    RouterDevice,
    RouterStatus,
    UnitInfo,
    UnitPollResult,
    UnitSnapshot,
)
from fleet.src.scorer import IntelligenceScorer
from fleet.src.store import BackgroundWrites, FleetStore
from fleet.src.vrm import VrmClient
from fleet.src.weather import WeatherService

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(tz=UTC)


def natural_key(name: str) -> list[object]:
    """Sort key ordering ``"Trailer 2"`` before ``"Trailer 10"``."""
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


class FleetService:
    """Single owner of fleet state and the poll/cluster/score operations.

    Args:
        vrm: Solar fleet client.
        store: Persistence collaborator.
        spec: Static hardware specification.
        routers: Router fleet client, or None when not configured.
        geocoder: Reverse geocoder for naming new locations.
        weather: Weather service for scoring.
        batch_size: Concurrent per-unit fetches per batch.
        batch_delay_s: Pause between batches.
        cluster_threshold_m: Default clustering distance.
        geocode_delay_s: Pause after each reverse geocode call.
        default_peak_sun_hours: Peak sun hours for units without GPS.
        retention_days: Ledger retention.
        clock: Returns the current UTC time.
        sleep: Awaitable sleep; injectable for tests.
    """

    def __init__(
        self,
        *,
        vrm: VrmClient,
        store: FleetStore,
        spec: HardwareSpec,
        routers: InControlClient | None = None,
        geocoder: ReverseGeocoder | None = None,
        weather: WeatherService | None = None,
        batch_size: int = 3,
        batch_delay_s: float = 1.2,
        cluster_threshold_m: float = DEFAULT_THRESHOLD_M,
        geocode_delay_s: float = 1.1,
        default_peak_sun_hours: float = 4.5,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime.datetime] = _utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._vrm = vrm
        self._routers = routers
        self._store = store
        self._clock = clock
        self._sleep = sleep
        self._batch_size = batch_size
        self._batch_delay_s = batch_delay_s
        self._cluster_threshold_m = cluster_threshold_m
        self._retention_days = retention_days

        self.writes = BackgroundWrites()
        self.ledger = EnergyLedger(
            spec.battery_capacity_wh,
            store=store,
            writes=self.writes,
            retention_days=retention_days,
            clock=clock,
        )
        self.identity = IdentityResolver(store, self.writes)
        self.clusterer = LocationClusterer(
            store, geocoder, geocode_delay_s=geocode_delay_s, sleep=sleep
        )
        self.scorer = IntelligenceScorer(
            spec,
            self.ledger,
            weather or WeatherService(),
            default_peak_sun_hours=default_peak_sun_hours,
            clock=clock,
        )

        self._units: dict[int, str] = {}
        self._snapshots: dict[int, UnitSnapshot] = {}
        self._router_status: dict[int, RouterStatus] = {}
        self._gps: dict[int, tuple[float, float]] = {}

        self._units_loaded = False
        self._unit_cycle_running = False
        self._router_cycle_running = False
        self._auto_clustered = False
        self._auto_clustering = False
        self._cluster_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def seed_from_store(self) -> None:
        """Load ledger history and router bindings persisted earlier.

        Failures are logged; the service then starts with empty state.
        """
        since = self.ledger.today() - datetime.timedelta(days=self._retention_days - 1)
        try:
            self.ledger.seed(await self._store.load_daily_energy(since))
        except Exception:
            logger.warning("Could not seed daily energy from persistence", exc_info=True)
        try:
            count = self.identity.seed(await self._store.load_router_bindings())
            logger.info("Seeded %d router bindings from persistence", count)
        except Exception:
            logger.warning("Could not seed router bindings from persistence", exc_info=True)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_snapshot(self, unit_id: int) -> UnitSnapshot | None:
        return self._snapshots.get(unit_id)

    def get_ledger(self, unit_id: int) -> list[DailyEnergyRecord]:
        return self.ledger.entries(unit_id)

    def get_gps(self, unit_id: int) -> tuple[float, float] | None:
        return self._gps.get(unit_id)

    async def snapshot_history(
        self,
        unit_id: int,
        start: datetime.datetime,
        end: datetime.datetime,
    ) -> list[UnitSnapshot]:
        """Persisted snapshots for a unit between *start* and *end*, oldest first.

        GPS is not part of the stored history, so latitude and longitude are
        always None here.
        """
        return await self._store.get_snapshot_history(unit_id, start, end)

    def fleet_latest(self) -> list[UnitSnapshot]:
        """Latest snapshots for every unit, ordered by name."""
        return sorted(self._snapshots.values(), key=lambda s: natural_key(s.unit_name))

    def fleet_energy(self) -> list[dict]:
        """Per-unit daily yield and consumption, ordered by name."""
        result = []
        for unit_id in self.ledger.unit_ids():
            entries = self.ledger.entries(unit_id)
            if not entries:
                continue
            result.append(
                {
                    "unit_id": unit_id,
                    "unit_name": entries[-1].unit_name,
                    "days": [
                        {
                            "date": e.date.isoformat(),
                            "yield_wh": e.yield_wh,
                            "consumed_wh": e.consumed_wh,
                        }
                        for e in entries
                    ],
                }
            )
        result.sort(key=lambda r: natural_key(r["unit_name"]))
        return result

    def compute_alerts(self) -> list[DeficitAlert]:
        return compute_alerts(self.ledger)

    def router_devices(self) -> list[RouterStatus]:
        """Latest router status entries, ordered by unit name."""
        return sorted(self._router_status.values(), key=lambda r: natural_key(r.unit_name))

    @property
    def unit_count(self) -> int:
        return len(self._snapshots)

    # ------------------------------------------------------------------
    # Poll cycles
    # ------------------------------------------------------------------

    async def poll_units(self) -> CycleSummary:
        """Run one VRM poll cycle; skipped if one is already running."""
        if self._unit_cycle_running:
            logger.info("Unit poll cycle already in progress, skipping")
            return CycleSummary(skipped=True)
        self._unit_cycle_running = True
        start = time.monotonic()
        try:
            try:
                units = await self._vrm.list_units()
            except FleetError:
                logger.error("Unit poll cycle failed to list installations", exc_info=True)
                return CycleSummary(errors=1, elapsed_s=time.monotonic() - start)

            self._units = {u.unit_id: u.name for u in units}
            self._units_loaded = True
            results = await self._run_batches(units, self._poll_unit, lambda u: u.unit_id)
            summary = self._summarize(results, start)
            cutoff = self._clock() - datetime.timedelta(days=self._retention_days)
            self.writes.spawn(self._store.prune_snapshots(cutoff), "snapshot prune")
            logger.info(
                "Unit poll complete: %d ok, %d errors in %.1fs "
                "(cache: %d units, energy alerts: %d)",
                summary.ok,
                summary.errors,
                summary.elapsed_s,
                len(self._snapshots),
                len(self.compute_alerts()),
            )
        finally:
            self._unit_cycle_running = False

        await self._maybe_auto_cluster()
        return summary

    async def poll_routers(self) -> CycleSummary:
        """Run one InControl2 poll cycle; no-op when routers are not configured."""
        if self._routers is None:
            return CycleSummary(skipped=True)
        if not self._units_loaded:
            logger.info("Router poll cycle waiting for the first unit list, skipping")
            return CycleSummary(skipped=True)
        if self._router_cycle_running:
            logger.info("Router poll cycle already in progress, skipping")
            return CycleSummary(skipped=True)
        self._router_cycle_running = True
        start = time.monotonic()
        try:
            try:
                devices = await self._routers.list_devices()
            except FleetError:
                logger.error("Router poll cycle failed to list devices", exc_info=True)
                return CycleSummary(errors=1, elapsed_s=time.monotonic() - start)

            known = dict(self._units)
            for device in devices:
                identity = self.identity.resolve(device, known)
                self._router_status[device.router_id] = RouterStatus(
                    router=device,
                    unit_id=identity.unit_id,
                    unit_name=identity.display_name,
                )

            results = await self._run_batches(
                devices, self._locate_router, lambda d: d.router_id
            )
            summary = self._summarize(results, start)
            logger.info(
                "Router poll complete: %d ok, %d errors in %.1fs (%d routers)",
                summary.ok,
                summary.errors,
                summary.elapsed_s,
                len(devices),
            )
        finally:
            self._router_cycle_running = False

        await self._maybe_auto_cluster()
        return summary

    async def _poll_unit(self, unit: UnitInfo) -> UnitSnapshot:
        records = await self._vrm.fetch_diagnostics(unit.unit_id)
        snapshot = extract_snapshot(unit, records, self._clock())
        self._apply_snapshot(snapshot)
        return snapshot

    def _apply_snapshot(self, snapshot: UnitSnapshot) -> None:
        """Update snapshot, ledger, and GPS for one unit without yielding."""
        self._snapshots[snapshot.unit_id] = snapshot
        self.ledger.record(
            snapshot.unit_id,
            snapshot.unit_name,
            snapshot.solar_yield_today,
            snapshot.consumed_ah,
            snapshot.battery_voltage,
            snapshot.battery_soc,
        )
        self.ledger.backfill_yesterday_yield(
            snapshot.unit_id, snapshot.unit_name, snapshot.solar_yield_yesterday
        )
        if snapshot.latitude is not None and snapshot.longitude is not None:
            self._set_gps(
                snapshot.unit_id, snapshot.unit_name, snapshot.latitude, snapshot.longitude
            )
        self.writes.spawn(
            self._store.insert_snapshot(snapshot), f"snapshot {snapshot.unit_id}"
        )

    async def _locate_router(self, device: RouterDevice) -> tuple[float, float] | None:
        assert self._routers is not None
        status = self._router_status[device.router_id]
        if device.latitude is not None and device.longitude is not None:
            fix: tuple[float, float] | None = (device.latitude, device.longitude)
        else:
            fix = await self._routers.fetch_location(device.router_id)
        if fix is not None:
            self._set_gps(status.unit_id, status.unit_name, *fix)
        return fix

    def _set_gps(self, unit_id: int, unit_name: str, lat: float, lon: float) -> None:
        self._gps[unit_id] = (lat, lon)
        self.writes.spawn(
            self._store.upsert_unit_assignment(unit_id, unit_name, lat, lon, None),
            f"gps {unit_id}",
        )

    async def _run_batches(
        self,
        items: Sequence[T],
        fetch: Callable[[T], Awaitable[object]],
        key: Callable[[T], int],
    ) -> list[UnitPollResult]:
        results: list[UnitPollResult] = []
        for i in range(0, len(items), self._batch_size):
            batch = items[i : i + self._batch_size]
            results.extend(
                await asyncio.gather(*(self._guarded(fetch, item, key(item)) for item in batch))
            )
            if i + self._batch_size < len(items) and self._batch_delay_s > 0:
                await self._sleep(self._batch_delay_s)
        return results

    async def _guarded(
        self,
        fetch: Callable[[T], Awaitable[object]],
        item: T,
        unit_id: int,
    ) -> UnitPollResult:
        try:
            value = await fetch(item)
        except Exception as exc:
            logger.warning("Polling %d failed: %s", unit_id, exc)
            return UnitPollResult.failure(unit_id, str(exc) or type(exc).__name__)
        return UnitPollResult.success(unit_id, value)

    @staticmethod
    def _summarize(results: list[UnitPollResult], start: float) -> CycleSummary:
        ok = sum(1 for r in results if r.ok)
        return CycleSummary(
            ok=ok, errors=len(results) - ok, elapsed_s=time.monotonic() - start
        )

    # ------------------------------------------------------------------
    # Clustering and operator actions
    # ------------------------------------------------------------------

    async def _maybe_auto_cluster(self) -> None:
        if self._auto_clustered or self._auto_clustering or not self._gps:
            return
        self._auto_clustering = True
        try:
            await self.cluster()
        except Exception:
            logger.error("Automatic clustering failed, retrying next cycle", exc_info=True)
            return
        finally:
            self._auto_clustering = False
        self._auto_clustered = True

    async def cluster(self, threshold_m: float | None = None) -> ClusterResult:
        """Recluster all non-overridden units with GPS.

        Pending GPS writes are flushed first so the pass sees them.
        """
        async with self._cluster_lock:
            await self.writes.drain()
            return await self.clusterer.run(threshold_m or self._cluster_threshold_m)

    def link_router(self, router_id: int, unit_id: int) -> RouterBinding:
        """Bind a router to a unit on operator request."""
        status = self._router_status.get(router_id)
        router_name = status.router.name if status is not None else str(router_id)
        binding = self.identity.link(router_id, unit_id, router_name)
        if status is not None:
            self._router_status[router_id] = RouterStatus(
                router=status.router,
                unit_id=unit_id,
                unit_name=self._units.get(unit_id) or router_name,
            )
        return binding

    async def assign_location(self, unit_id: int, location_id: int | None) -> bool:
        """Pin a unit to a location and exclude it from automatic clustering."""
        return await self._store.set_manual_assignment(unit_id, location_id, True)

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    async def score(self, unit_id: int) -> IntelligenceReport | None:
        """Score one unit; None when it has no snapshot."""
        return await self.scorer.score(self._snapshots.get(unit_id), self._gps.get(unit_id))

    async def score_all(self) -> list[IntelligenceReport]:
        """Score every unit with a snapshot, prewarming weather cells first."""
        unit_ids = [s.unit_id for s in self.fleet_latest()]
        await self.scorer.prewarm([self._gps[u] for u in unit_ids if u in self._gps])
        reports = []
        for unit_id in unit_ids:
            report = await self.score(unit_id)
            if report is not None:
                reports.append(report)
        return reports
