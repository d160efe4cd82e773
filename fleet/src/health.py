"""
Health file writer for the fleet daemon.

Writes a JSON health file at a configurable path with four fields:
- last_unit_poll_ts: ISO timestamp of the most recent VRM poll cycle.
- last_router_poll_ts: ISO timestamp of the most recent router poll cycle.
- unit_count: Number of units with a live snapshot.
- alert_count: Number of active deficit alerts.

The file is rewritten on every state change, providing a simple liveness
signal that Docker HEALTHCHECK or monitoring can inspect.

CHANGELOG:
- 2026-03-07: Track router cycles separately from unit cycles (STORY-109)
- 2026-03-03: Initial creation (STORY-105)

TODO:
- None
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes fleet daemon health status to a JSON file.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_unit_poll_ts: str | None = None
        self._last_router_poll_ts: str | None = None
        self._unit_count: int = 0
        self._alert_count: int = 0

    def record_unit_poll(self, unit_count: int, alert_count: int) -> None:
        """Record a finished VRM poll cycle and write health file.

        Args:
            unit_count: Units holding a live snapshot after the cycle.
            alert_count: Active deficit alerts after the cycle.
        """
        self._last_unit_poll_ts = datetime.now(tz=UTC).isoformat()
        self._unit_count = unit_count
        self._alert_count = alert_count
        self._write()

    def record_router_poll(self) -> None:
        """Record a finished router poll cycle and write health file."""
        self._last_router_poll_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def _write(self) -> None:
        data = {
            "last_unit_poll_ts": self._last_unit_poll_ts,
            "last_router_poll_ts": self._last_router_poll_ts,
            "unit_count": self._unit_count,
            "alert_count": self._alert_count,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(data))
