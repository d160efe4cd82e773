"""
Async client for the Victron VRM API (solar/battery fleet).

Operations:
- list_units(): installations visible to the configured user, cached for
  five minutes.
- fetch_diagnostics(unit_id): latest diagnostic records for one installation.

Transport errors, timeouts, and non-2xx responses raise
:class:`~fleet.src.errors.UpstreamError`; the caller decides whether that
fails one unit or the whole cycle.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-103)

TODO:
- None
"""

from __future__ import annotations

import logging
import time

import httpx

from fleet.src.diagnostics import parse_diagnostic
from fleet.src.errors import UpstreamError
from fleet.src.models import DiagnosticRecord, UnitInfo

logger = logging.getLogger(__name__)

UNITS_CACHE_TTL_S: float = 300.0
DIAGNOSTICS_COUNT: int = 200


class VrmClient:
    """Thin VRM API client over ``httpx.AsyncClient``.

    Args:
        base_url: VRM API base URL, e.g. ``https://vrmapi.victronenergy.com/v2``.
        token: VRM access token, sent as ``x-authorization: Token <token>``.
        user_id: VRM user id owning the installations.
        timeout_s: Transport timeout per request.
        transport: Optional httpx transport (for tests).
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        user_id: str,
        *,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"x-authorization": f"Token {token}"},
            timeout=timeout_s,
            transport=transport,
        )
        self._user_id = user_id
        self._units: list[UnitInfo] | None = None
        self._units_at: float = 0.0

    async def aclose(self) -> None:
        await self._client.aclose()

    async def list_units(self, *, force: bool = False) -> list[UnitInfo]:
        """Return the user's installations, served from cache when fresh."""
        fresh = time.monotonic() - self._units_at < UNITS_CACHE_TTL_S
        if self._units is not None and fresh and not force:
            return self._units
        payload = await self._get(f"/users/{self._user_id}/installations")
        units = [
            UnitInfo(unit_id=int(r["idSite"]), name=str(r.get("name") or r["idSite"]))
            for r in payload.get("records", [])
            if r.get("idSite") is not None
        ]
        self._units = units
        self._units_at = time.monotonic()
        return units

    async def fetch_diagnostics(self, unit_id: int) -> list[DiagnosticRecord]:
        """Return the latest diagnostic records for one installation."""
        payload = await self._get(
            f"/installations/{unit_id}/diagnostics",
            params={"count": DIAGNOSTICS_COUNT},
        )
        return [parse_diagnostic(r) for r in payload.get("records", [])]

    async def _get(self, path: str, params: dict | None = None) -> dict:
        try:
            response = await self._client.get(path, params=params)
        except httpx.HTTPError as exc:
            raise UpstreamError(f"VRM request {path} failed: {exc}") from exc
        if response.status_code != 200:
            raise UpstreamError(
                f"VRM API {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(f"VRM request {path} returned invalid JSON") from exc
