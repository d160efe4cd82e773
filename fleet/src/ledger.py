"""
Rolling per-unit daily energy ledger.

Accumulates yield and consumption per (unit, UTC calendar date) from live
readings. Consumption is derived, in priority order, from:

1. consumed amp-hours x battery voltage (``|CE| * V``);
2. an estimate from today's yield and the SoC drop since the first reading
   of the day: ``yield_wh + (start_soc - soc) * capacity_wh / 100``, kept
   only when positive;
3. nothing: the value stays as it was (a set value is never cleared).

Only the most recent ``retention_days`` calendar dates are kept per unit.
Every update is mirrored to persistence in the background. Entries seeded
from persistence at startup never overwrite entries written by live polls.

CHANGELOG:
- 2026-03-08: Add yesterday-yield backfill (STORY-111)
- 2026-03-07: Add SoC-based consumption estimate and startup seeding (STORY-110)
- 2026-03-03: Initial creation (STORY-105)

TODO:
- None
"""

from __future__ import annotations

import datetime
import logging
from collections.abc import Callable, Iterable
from datetime import UTC

from fleet.src.models import DailyEnergyRecord
from fleet.src.store import BackgroundWrites, FleetStore

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS: int = 14


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(tz=UTC)


class EnergyLedger:
    """Per-unit daily energy records with bounded retention.

    Args:
        battery_capacity_wh: Nominal battery capacity used by the SoC estimate.
        store: Persistence collaborator, or None for memory-only operation.
        writes: Background write tracker.
        retention_days: Number of most recent calendar dates kept per unit.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        battery_capacity_wh: float,
        *,
        store: FleetStore | None = None,
        writes: BackgroundWrites | None = None,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        clock: Callable[[], datetime.datetime] = _utc_now,
    ) -> None:
        self._capacity_wh = battery_capacity_wh
        self._store = store
        self._writes = writes or BackgroundWrites()
        self._retention_days = retention_days
        self._clock = clock
        self._days: dict[int, dict[datetime.date, DailyEnergyRecord]] = {}
        self._start_soc: dict[int, tuple[datetime.date, float]] = {}
        self._live: set[tuple[int, datetime.date]] = set()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def today(self) -> datetime.date:
        """Current UTC calendar date according to the ledger clock."""
        return self._clock().date()

    def unit_ids(self) -> list[int]:
        return list(self._days)

    def entries(self, unit_id: int) -> list[DailyEnergyRecord]:
        """Return a unit's records sorted by date ascending."""
        days = self._days.get(unit_id, {})
        return [days[d] for d in sorted(days)]

    def entry(self, unit_id: int, date: datetime.date) -> DailyEnergyRecord | None:
        return self._days.get(unit_id, {}).get(date)

    def start_of_day_soc(self, unit_id: int) -> float | None:
        """Return today's first observed SoC for a unit, if any."""
        sample = self._start_soc.get(unit_id)
        if sample is None or sample[0] != self.today():
            return None
        return sample[1]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record(
        self,
        unit_id: int,
        unit_name: str,
        yield_today_kwh: float | None,
        consumed_ah: float | None,
        voltage: float | None,
        battery_soc: float | None,
    ) -> DailyEnergyRecord:
        """Fold one live reading into today's record for *unit_id*.

        Args:
            unit_id: Signed unit id.
            unit_name: Display name stored with the record.
            yield_today_kwh: Cumulative PV yield today in kWh.
            consumed_ah: Consumed amp-hours from the battery monitor.
            voltage: Battery voltage in volts.
            battery_soc: Current state of charge in percent.

        Returns:
            The updated record for today.
        """
        now = self._clock()
        date = now.date()

        start = self._start_soc.get(unit_id)
        if battery_soc is not None and (start is None or start[0] != date):
            self._start_soc[unit_id] = (date, battery_soc)
            start = self._start_soc[unit_id]
        start_soc = start[1] if start is not None and start[0] == date else None

        days = self._days.setdefault(unit_id, {})
        previous = days.get(date)

        yield_wh = yield_today_kwh * 1000 if yield_today_kwh is not None else None
        if yield_wh is None and previous is not None:
            yield_wh = previous.yield_wh

        consumed_wh = self._consumed_wh(
            consumed_ah, voltage, yield_wh, start_soc, battery_soc
        )
        if consumed_wh is None and previous is not None:
            consumed_wh = previous.consumed_wh

        record = DailyEnergyRecord(
            unit_id=unit_id,
            date=date,
            unit_name=unit_name,
            yield_wh=yield_wh,
            consumed_wh=consumed_wh,
            updated_at=now,
        )
        days[date] = record
        self._live.add((unit_id, date))
        self._prune(unit_id, date)
        self._persist(record)
        return record

    def backfill_yesterday_yield(
        self,
        unit_id: int,
        unit_name: str,
        yield_yesterday_kwh: float | None,
    ) -> DailyEnergyRecord | None:
        """Create yesterday's record from a yield-yesterday reading.

        Only fills a missing date; consumption is unknown and stays None.
        Returns the new record, or None when nothing was written.
        """
        if yield_yesterday_kwh is None:
            return None
        now = self._clock()
        yesterday = now.date() - datetime.timedelta(days=1)
        days = self._days.setdefault(unit_id, {})
        if yesterday in days:
            return None
        record = DailyEnergyRecord(
            unit_id=unit_id,
            date=yesterday,
            unit_name=unit_name,
            yield_wh=yield_yesterday_kwh * 1000,
            consumed_wh=None,
            updated_at=now,
        )
        days[yesterday] = record
        self._live.add((unit_id, yesterday))
        self._prune(unit_id, now.date())
        self._persist(record)
        return record

    def seed(self, records: Iterable[DailyEnergyRecord]) -> int:
        """Pre-populate from persisted records without overwriting live data.

        Records outside the retention window are ignored. Returns the number
        of records loaded.
        """
        oldest = self._oldest_kept(self.today())
        loaded = 0
        for record in records:
            if record.date < oldest:
                continue
            if (record.unit_id, record.date) in self._live:
                continue
            self._days.setdefault(record.unit_id, {})[record.date] = record
            loaded += 1
        logger.info("Seeded %d daily energy records from persistence", loaded)
        return loaded

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _consumed_wh(
        self,
        consumed_ah: float | None,
        voltage: float | None,
        yield_wh: float | None,
        start_soc: float | None,
        soc: float | None,
    ) -> float | None:
        if consumed_ah is not None and voltage is not None:
            return abs(consumed_ah) * voltage
        if yield_wh is None or soc is None or start_soc is None:
            return None
        estimate = yield_wh + (start_soc - soc) * self._capacity_wh / 100
        return estimate if estimate > 0 else None

    def _oldest_kept(self, today: datetime.date) -> datetime.date:
        return today - datetime.timedelta(days=self._retention_days - 1)

    def _prune(self, unit_id: int, today: datetime.date) -> None:
        oldest = self._oldest_kept(today)
        days = self._days.get(unit_id, {})
        for date in [d for d in days if d < oldest]:
            del days[date]
            self._live.discard((unit_id, date))

    def _persist(self, record: DailyEnergyRecord) -> None:
        if self._store is None:
            return
        self._writes.spawn(
            self._store.upsert_daily_energy(record),
            f"daily energy {record.unit_id}@{record.date}",
        )
