"""
Multi-day energy deficit detection over the daily energy ledger.

A deficit streak is the run of consecutive prior days, counted back from the
most recent date before today, on which both yield and consumption are known
and yield < consumption. A day with missing data ends the streak. Today is
excluded because its values are still accumulating.

Severity: 2 days -> caution, 3-4 -> warning, 5+ -> critical.

CHANGELOG:
- 2026-03-04: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

import datetime

from fleet.src.ledger import EnergyLedger
from fleet.src.models import DailyEnergyRecord, DeficitAlert, DeficitDay, Severity

MIN_STREAK_DAYS: int = 2
WARNING_STREAK_DAYS: int = 3
CRITICAL_STREAK_DAYS: int = 5


def classify_severity(streak_days: int) -> Severity:
    """Map a streak length (>= 2) to an alert severity."""
    if streak_days >= CRITICAL_STREAK_DAYS:
        return "critical"
    if streak_days >= WARNING_STREAK_DAYS:
        return "warning"
    return "caution"


def _is_deficit(record: DailyEnergyRecord) -> bool:
    return (
        record.yield_wh is not None
        and record.consumed_wh is not None
        and record.yield_wh < record.consumed_wh
    )


def deficit_streak(
    records: list[DailyEnergyRecord], today: datetime.date
) -> list[DailyEnergyRecord]:
    """Return the current deficit streak, most recent day first.

    Consecutive means consecutive calendar dates: a date absent from the
    ledger breaks the streak just like a date with missing values.
    """
    prior = sorted((r for r in records if r.date < today), key=lambda r: r.date)
    streak: list[DailyEnergyRecord] = []
    expected: datetime.date | None = None
    for record in reversed(prior):
        if expected is not None and record.date != expected:
            break
        if not _is_deficit(record):
            break
        streak.append(record)
        expected = record.date - datetime.timedelta(days=1)
    return streak


def compute_alerts(
    ledger: EnergyLedger, today: datetime.date | None = None
) -> list[DeficitAlert]:
    """Compute deficit alerts for every unit in *ledger*.

    Pure read: the ledger is not modified.

    Args:
        ledger: The daily energy ledger.
        today: Date treated as "today"; defaults to the ledger clock.

    Returns:
        Alerts with ``streak_days >= 2``, longest streak first.
    """
    if today is None:
        today = ledger.today()

    alerts: list[DeficitAlert] = []
    for unit_id in ledger.unit_ids():
        records = ledger.entries(unit_id)
        if not records:
            continue
        streak = deficit_streak(records, today)
        if len(streak) < MIN_STREAK_DAYS:
            continue
        alerts.append(
            DeficitAlert(
                unit_id=unit_id,
                unit_name=records[-1].unit_name,
                streak_days=len(streak),
                severity=classify_severity(len(streak)),
                deficit_days=[
                    DeficitDay(
                        date=r.date,
                        yield_wh=r.yield_wh,
                        consumed_wh=r.consumed_wh,
                        deficit_wh=r.consumed_wh - r.yield_wh,
                    )
                    for r in streak
                ],
            )
        )

    alerts.sort(key=lambda a: a.streak_days, reverse=True)
    return alerts
