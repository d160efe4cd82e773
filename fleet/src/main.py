"""
Fleet daemon main loop for the trailer fleet monitor.

Runs three concurrent asyncio tasks:
1. **Unit poll loop**: one VRM poll cycle (diagnostics, snapshots, energy
   ledger, GPS) every ``vrm_poll_interval_s``.
2. **Router poll loop**: one InControl2 poll cycle (router status, identity
   resolution, GPS fixes) every ``ic2_poll_interval_s``; only started when
   router credentials are configured.
3. **API server**: uvicorn serving the FastAPI app bound to the service.

Each loop is resilient: an exception in one cycle is logged and does not
crash the loop or affect the others. Graceful shutdown on SIGTERM/SIGINT
sets a shared asyncio.Event; the loops finish their current cycle, the API
server exits, and pending persistence writes are drained before exit.

Structured JSON logging is used for all events. A HealthWriter instance
tracks poll timestamps, unit count, and alert count.

CHANGELOG:
- 2026-03-08: Seed ledger and bindings from persistence at startup (STORY-111)
- 2026-03-07: Serve the API from the daemon process (STORY-110)
- 2026-03-03: Initial creation (STORY-105)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
import signal
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import uvicorn

from fleet.src.health import HealthWriter

if TYPE_CHECKING:
    from fleet.src.models import CycleSummary
    from fleet.src.service import FleetService

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


def configure_logging() -> None:
    """Configure structured JSON logging for the fleet daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.
    """

    class _JsonFormatter(logging.Formatter):
        """Minimal JSON log formatter."""

        def format(self, record: logging.LogRecord) -> str:
            log_entry = {
                "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
            }
            if record.exc_info and record.exc_info[1] is not None:
                log_entry["exception"] = self.formatException(record.exc_info)
            return json.dumps(log_entry)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(logging.INFO)


def _masked_token(value: str | None) -> str:
    """Return a short non-reversible token fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: object) -> None:
    """Log a config summary at startup, masking secrets.

    The VRM token and InControl2 client secret are logged only as
    fingerprints.

    Args:
        settings: A FleetSettings instance (or any object with the same attrs).
    """
    logger.info(
        "Fleet daemon starting with config: "
        "vrm_base_url=%s, vrm_user_id=%s, vrm_poll_interval_s=%s, "
        "routers_enabled=%s, ic2_base_url=%s, ic2_org_id=%s, "
        "ic2_poll_interval_s=%s, batch_size=%s, batch_delay_ms=%s, "
        "cluster_threshold_m=%s, ledger_retention_days=%s, "
        "api=%s:%s, vrm_token_masked=%s, ic2_secret_masked=%s",
        settings.vrm_base_url,  # type: ignore[union-attr]
        settings.vrm_user_id,  # type: ignore[union-attr]
        settings.vrm_poll_interval_s,  # type: ignore[union-attr]
        settings.routers_enabled,  # type: ignore[union-attr]
        settings.ic2_base_url,  # type: ignore[union-attr]
        settings.ic2_org_id,  # type: ignore[union-attr]
        settings.ic2_poll_interval_s,  # type: ignore[union-attr]
        settings.batch_size,  # type: ignore[union-attr]
        settings.batch_delay_ms,  # type: ignore[union-attr]
        settings.cluster_threshold_m,  # type: ignore[union-attr]
        settings.ledger_retention_days,  # type: ignore[union-attr]
        settings.api_host,  # type: ignore[union-attr]
        settings.api_port,  # type: ignore[union-attr]
        _masked_token(settings.vrm_api_token),  # type: ignore[union-attr]
        _masked_token(settings.ic2_client_secret),  # type: ignore[union-attr]
    )


# ---------------------------------------------------------------------------
# Single-iteration functions (easily testable)
# ---------------------------------------------------------------------------


async def _unit_cycle_once(
    *,
    service: FleetService,
    health: HealthWriter | None,
) -> CycleSummary | None:
    """Execute one VRM poll cycle.

    Catches all exceptions so that the caller's loop is never broken. The
    health file is updated after every attempt.
    """
    summary = None
    try:
        summary = await service.poll_units()
    except Exception:
        logger.error("Unit poll cycle error", exc_info=True)

    if health is not None:
        try:
            health.record_unit_poll(service.unit_count, len(service.compute_alerts()))
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)
    return summary


async def _router_cycle_once(
    *,
    service: FleetService,
    health: HealthWriter | None,
) -> CycleSummary | None:
    """Execute one router poll cycle; see :func:`_unit_cycle_once`."""
    summary = None
    try:
        summary = await service.poll_routers()
    except Exception:
        logger.error("Router poll cycle error", exc_info=True)

    if health is not None:
        try:
            health.record_router_poll()
        except Exception:
            logger.warning("Failed to write health file", exc_info=True)
    return summary


# ---------------------------------------------------------------------------
# Loop runners
# ---------------------------------------------------------------------------


async def _cycle_loop(
    *,
    name: str,
    cycle: Callable[[], Awaitable[object]],
    interval_s: float,
    shutdown_event: asyncio.Event,
) -> None:
    """Run *cycle* until shutdown_event is set, sleeping interval_s between.

    Args:
        name: Loop name used in log lines.
        cycle: Zero-argument coroutine function running one cycle.
        interval_s: Seconds between cycle starts.
        shutdown_event: Event to signal graceful shutdown.
    """
    logger.info("%s loop started (interval=%ss)", name, interval_s)
    while not shutdown_event.is_set():
        await cycle()
        # Use wait with timeout so we can check shutdown between sleeps
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval_s)
    logger.info("%s loop stopped", name)


async def _serve_api(
    *,
    server: uvicorn.Server,
    shutdown_event: asyncio.Event,
) -> None:
    """Run the uvicorn server until it exits or shutdown_event is set.

    Whichever side stops first stops the other.
    """

    async def _stop_on_shutdown() -> None:
        await shutdown_event.wait()
        server.should_exit = True

    watcher = asyncio.create_task(_stop_on_shutdown())
    try:
        await server.serve()
    finally:
        shutdown_event.set()
        watcher.cancel()
    logger.info("API server stopped")


# ---------------------------------------------------------------------------
# Concurrent runner with graceful shutdown
# ---------------------------------------------------------------------------


async def run_loops(
    *,
    service: FleetService,
    unit_interval_s: float,
    router_interval_s: float | None,
    shutdown_event: asyncio.Event,
    health: HealthWriter | None = None,
    server: uvicorn.Server | None = None,
) -> None:
    """Run the poll loops (and API server) concurrently until shutdown.

    When the shutdown_event is set, each loop finishes its current cycle,
    then outstanding persistence writes are drained before returning.

    Args:
        service: The fleet service.
        unit_interval_s: Seconds between VRM poll cycles.
        router_interval_s: Seconds between router cycles, or None to disable.
        shutdown_event: Event to signal graceful shutdown.
        health: HealthWriter instance, or None to skip health writes.
        server: uvicorn server to run alongside the loops, or None.
    """
    tasks = [
        _cycle_loop(
            name="Unit poll",
            cycle=lambda: _unit_cycle_once(service=service, health=health),
            interval_s=unit_interval_s,
            shutdown_event=shutdown_event,
        )
    ]
    if router_interval_s is not None:
        tasks.append(
            _cycle_loop(
                name="Router poll",
                cycle=lambda: _router_cycle_once(service=service, health=health),
                interval_s=router_interval_s,
                shutdown_event=shutdown_event,
            )
        )
    if server is not None:
        tasks.append(_serve_api(server=server, shutdown_event=shutdown_event))

    logger.info("Starting %d concurrent tasks", len(tasks))
    await asyncio.gather(*tasks)

    logger.info("Draining %d pending persistence writes", service.writes.pending)
    await service.writes.drain()
    logger.info("Shutdown complete")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main() -> None:
    """Async entrypoint: load config, build components, run loops.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.
    """
    configure_logging()

    from fleet.src.api.main import create_app
    from fleet.src.config import FleetSettings
    from fleet.src.geocoder import ReverseGeocoder
    from fleet.src.incontrol import InControlClient
    from fleet.src.service import FleetService
    from fleet.src.store import SqlFleetStore
    from fleet.src.vrm import VrmClient
    from fleet.src.weather import WeatherService

    settings = FleetSettings()
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    store = SqlFleetStore(settings.database_url)
    await store.init()

    vrm = VrmClient(
        settings.vrm_base_url,
        settings.vrm_api_token,
        settings.vrm_user_id,
        timeout_s=settings.http_timeout_s,
    )
    routers = None
    if settings.routers_enabled:
        routers = InControlClient(
            settings.ic2_base_url,
            settings.ic2_client_id,
            settings.ic2_client_secret,
            settings.ic2_org_id,
            timeout_s=settings.http_timeout_s,
        )
    else:
        logger.info("InControl2 credentials not set, router polling disabled")

    service = FleetService(
        vrm=vrm,
        store=store,
        spec=settings.hardware_spec(),
        routers=routers,
        geocoder=ReverseGeocoder(settings.geocoder_user_agent),
        weather=WeatherService(
            settings.weather_base_url,
            ttl_s=settings.weather_ttl_s,
            timeout_s=settings.http_timeout_s,
        ),
        batch_size=settings.batch_size,
        batch_delay_s=settings.batch_delay_ms / 1000,
        cluster_threshold_m=settings.cluster_threshold_m,
        geocode_delay_s=settings.geocode_delay_s,
        default_peak_sun_hours=settings.default_peak_sun_hours,
        retention_days=settings.ledger_retention_days,
    )
    await service.seed_from_store()

    server = uvicorn.Server(
        uvicorn.Config(
            create_app(service),
            host=settings.api_host,
            port=settings.api_port,
            log_config=None,
        )
    )

    try:
        await run_loops(
            service=service,
            unit_interval_s=settings.vrm_poll_interval_s,
            router_interval_s=settings.ic2_poll_interval_s if routers else None,
            shutdown_event=shutdown_event,
            health=HealthWriter(settings.health_path),
            server=server,
        )
    finally:
        await vrm.aclose()
        if routers is not None:
            await routers.aclose()
        await store.close()


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the fleet daemon."""
    asyncio.run(async_main())


if __name__ == "__main__":
    main()
