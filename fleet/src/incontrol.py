"""
Async client for the Peplink InControl2 API (cellular router fleet).

Authentication uses OAuth2 client credentials. The access token is cached
with its expiry and refreshed proactively ``TOKEN_REFRESH_MARGIN_S`` before
it lapses. On a 401 the token is discarded and the request retried exactly
once with a fresh token; a second authorization failure raises
:class:`~fleet.src.errors.AuthError`.

Operations:
- list_devices(): all routers in the organization with status and signal.
- fetch_location(router_id): latest GPS fix for one router.

CHANGELOG:
- 2026-03-04: Replace recursive 401 retry with a bounded loop (STORY-106)
- 2026-03-04: Initial creation (STORY-106)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import time

import httpx

from fleet.src.errors import AuthError, UpstreamError
from fleet.src.models import RouterDevice

logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN_S: float = 60.0
MAX_AUTH_RETRIES: int = 1


def _opt_float(value: object) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _opt_int(value: object) -> int | None:
    number = _opt_float(value)
    return int(number) if number is not None else None


def extract_router_device(raw: dict) -> RouterDevice:
    """Map one InControl2 device JSON object to a :class:`RouterDevice`.

    Signal metrics are read from the first cellular interface that reports
    them. Missing or malformed values become None.
    """
    status = raw.get("onlineStatus") or raw.get("status") or ""
    online = raw.get("online")
    if online is None:
        online = str(status).lower() == "online"

    cellular: dict = {}
    for iface in raw.get("interfaces") or []:
        if iface.get("type") == "gobi" or "cellular" in iface:
            cellular = iface.get("cellular") or iface
            break
    if not cellular:
        cellular = raw.get("cellular") or {}
    signal = cellular.get("signal") or cellular

    lat = _opt_float(raw.get("latitude"))
    lon = _opt_float(raw.get("longitude"))
    if lat is None or lon is None:
        lat = lon = None

    return RouterDevice(
        router_id=int(raw["id"]),
        name=str(raw.get("name") or raw.get("sn") or raw["id"]),
        online=bool(online),
        signal_bar=_opt_int(cellular.get("signal_bar", raw.get("signal_bar"))),
        rsrp=_opt_float(signal.get("rsrp")),
        rsrq=_opt_float(signal.get("rsrq")),
        sinr=_opt_float(signal.get("sinr")),
        carrier=cellular.get("carrier_name") or cellular.get("carrier"),
        latitude=lat,
        longitude=lon,
    )


def extract_location(payload: dict) -> tuple[float, float] | None:
    """Return the most recent ``(lat, lon)`` from a location response."""
    fixes = payload.get("response") or []
    if isinstance(fixes, dict):
        fixes = [fixes]
    for fix in reversed(fixes):
        lat = _opt_float(fix.get("la", fix.get("latitude")))
        lon = _opt_float(fix.get("lo", fix.get("longitude")))
        if lat is not None and lon is not None:
            return (lat, lon)
    return None


class InControlClient:
    """InControl2 API client with cached client-credentials tokens.

    Args:
        base_url: InControl2 API base URL.
        client_id: OAuth client id.
        client_secret: OAuth client secret.
        org_id: Organization id scoping all device requests.
        timeout_s: Transport timeout per request.
        transport: Optional httpx transport (for tests).
    """

    def __init__(
        self,
        base_url: str,
        client_id: str,
        client_secret: str,
        org_id: str,
        *,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url, timeout=timeout_s, transport=transport
        )
        self._client_id = client_id
        self._client_secret = client_secret
        self._org_id = org_id
        self._token: str | None = None
        self._token_expires_at: float = 0.0
        self._token_lock = asyncio.Lock()
        self.token_fetches: int = 0

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def list_devices(self) -> list[RouterDevice]:
        """Return every router in the organization."""
        payload = await self._request(
            "GET", f"/rest/o/{self._org_id}/d", params={"has_status": "true"}
        )
        devices: list[RouterDevice] = []
        for raw in payload.get("response") or []:
            try:
                devices.append(extract_router_device(raw))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed router record: %r", raw)
        return devices

    async def fetch_location(self, router_id: int) -> tuple[float, float] | None:
        """Return the latest GPS fix for one router, or None."""
        payload = await self._request(
            "GET", f"/rest/o/{self._org_id}/d/{router_id}/loc"
        )
        return extract_location(payload)

    # ------------------------------------------------------------------
    # Token handling
    # ------------------------------------------------------------------

    async def _access_token(self) -> str:
        async with self._token_lock:
            now = time.monotonic()
            if self._token is not None and now < self._token_expires_at - TOKEN_REFRESH_MARGIN_S:
                return self._token
            try:
                response = await self._client.post(
                    "/api/oauth2/token",
                    data={
                        "client_id": self._client_id,
                        "client_secret": self._client_secret,
                        "grant_type": "client_credentials",
                    },
                )
            except httpx.HTTPError as exc:
                raise UpstreamError(f"InControl2 token request failed: {exc}") from exc
            if response.status_code != 200:
                raise AuthError(
                    f"InControl2 token request rejected ({response.status_code})",
                    status_code=response.status_code,
                )
            body = response.json()
            self._token = str(body["access_token"])
            self._token_expires_at = now + float(body.get("expires_in", 3600))
            self.token_fetches += 1
            logger.info("Obtained InControl2 access token")
            return self._token

    def _discard_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0

    async def _request(self, method: str, path: str, **kwargs: object) -> dict:
        attempt = 0
        while True:
            token = await self._access_token()
            try:
                response = await self._client.request(
                    method,
                    path,
                    headers={"Authorization": f"Bearer {token}"},
                    **kwargs,  # type: ignore[arg-type]
                )
            except httpx.HTTPError as exc:
                raise UpstreamError(f"InControl2 request {path} failed: {exc}") from exc

            if response.status_code == 401 and attempt < MAX_AUTH_RETRIES:
                logger.warning("InControl2 returned 401, refreshing token and retrying")
                self._discard_token()
                attempt += 1
                continue
            if response.status_code in (401, 403):
                raise AuthError(
                    f"InControl2 authorization failed ({response.status_code})",
                    status_code=response.status_code,
                )
            if response.status_code != 200:
                raise UpstreamError(
                    f"InControl2 API {response.status_code}: {response.text[:200]}",
                    status_code=response.status_code,
                )
            try:
                return response.json()
            except ValueError as exc:
                raise UpstreamError(f"InControl2 {path} returned invalid JSON") from exc
