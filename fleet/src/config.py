"""
Fleet daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
All configuration values come from environment variables or .env files;
no hardcoded credentials.

CHANGELOG:
- 2026-03-09: Add hardware spec and weather settings (STORY-112)
- 2026-03-02: Initial creation (STORY-101)

TODO:
- None
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings

from fleet.src.models import HardwareSpec


class FleetSettings(BaseSettings):
    """Fleet daemon configuration.

    Required variables must be set; optional variables have sensible
    defaults. The router fleet is only polled when all three InControl2
    credentials are present.

    Attributes:
        vrm_base_url: VRM API base URL (must be HTTPS).
        vrm_api_token: VRM personal access token.
        vrm_user_id: VRM user id owning the installations.
        ic2_base_url: InControl2 API base URL (must be HTTPS).
        ic2_client_id: InControl2 OAuth client id.
        ic2_client_secret: InControl2 OAuth client secret.
        ic2_org_id: InControl2 organization id.
        vrm_poll_interval_s: Seconds between VRM poll cycles.
        ic2_poll_interval_s: Seconds between router poll cycles.
        batch_size: Concurrent per-unit fetches within a batch.
        batch_delay_ms: Milliseconds to wait between batches.
        http_timeout_s: Transport timeout for upstream requests.
        database_url: SQLAlchemy async database URL.
        cluster_threshold_m: GPS linkage distance for location clustering.
        geocoder_user_agent: User-Agent sent to Nominatim.
        geocode_delay_s: Delay after each reverse geocode call.
        weather_base_url: Open-Meteo forecast endpoint.
        weather_ttl_s: Freshness window for cached weather samples.
        default_peak_sun_hours: Peak sun hours used for units without GPS.
        solar_capacity_w: Rated PV wattage per trailer.
        battery_capacity_wh: Nominal battery capacity per trailer.
        battery_usable_wh: Usable battery capacity per trailer.
        system_efficiency: PV system derate factor (0-1].
        ledger_retention_days: Days of daily energy kept in memory.
        health_path: Path of the JSON health file.
        api_host: Bind address for the HTTP API.
        api_port: Bind port for the HTTP API.
    """

    vrm_base_url: str = "https://vrmapi.victronenergy.com/v2"
    vrm_api_token: str
    vrm_user_id: str
    ic2_base_url: str = "https://api.ic.peplink.com"
    ic2_client_id: str = ""
    ic2_client_secret: str = ""
    ic2_org_id: str = ""
    vrm_poll_interval_s: int = 300
    ic2_poll_interval_s: int = 300
    batch_size: int = 3
    batch_delay_ms: int = 1200
    http_timeout_s: float = 30.0
    database_url: str = "sqlite+aiosqlite:///data/fleet.db"
    cluster_threshold_m: float = 300.0
    geocoder_user_agent: str = "trailer-fleet-monitor/1.0"
    geocode_delay_s: float = 1.1
    weather_base_url: str = "https://api.open-meteo.com/v1/forecast"
    weather_ttl_s: int = 3600
    default_peak_sun_hours: float = 4.5
    solar_capacity_w: float = 1200.0
    battery_capacity_wh: float = 10240.0
    battery_usable_wh: float = 8192.0
    system_efficiency: float = 0.75
    ledger_retention_days: int = 14
    health_path: str = "/data/health.json"
    api_host: str = "0.0.0.0"
    api_port: int = 8080

    @property
    def routers_enabled(self) -> bool:
        """True when all InControl2 credentials are configured."""
        return bool(self.ic2_client_id and self.ic2_client_secret and self.ic2_org_id)

    def hardware_spec(self) -> HardwareSpec:
        """Return the static trailer hardware specification."""
        return HardwareSpec(
            solar_capacity_w=self.solar_capacity_w,
            battery_capacity_wh=self.battery_capacity_wh,
            battery_usable_wh=self.battery_usable_wh,
            system_efficiency=self.system_efficiency,
        )

    @field_validator("vrm_base_url", "ic2_base_url")
    @classmethod
    def base_url_must_be_https(cls, v: str) -> str:
        """Reject plain-HTTP upstream URLs; credentials travel in headers."""
        if not v.lower().startswith("https://"):
            raise ValueError(f"Upstream base URL must use HTTPS (got: '{v[:20]}...')")
        return v.rstrip("/")

    @field_validator("vrm_poll_interval_s", "ic2_poll_interval_s")
    @classmethod
    def poll_interval_must_respect_rate_limits(cls, v: int) -> int:
        """Minimum 30-second interval between poll cycles."""
        if v < 30:
            raise ValueError("Poll intervals must be >= 30 seconds")
        return v

    @field_validator("batch_size")
    @classmethod
    def batch_size_must_be_valid(cls, v: int) -> int:
        """Validate batch size is between 1 and 10."""
        if v < 1 or v > 10:
            raise ValueError("BATCH_SIZE must be >= 1 and <= 10")
        return v

    @field_validator("batch_delay_ms")
    @classmethod
    def batch_delay_must_be_non_negative(cls, v: int) -> int:
        """Validate inter-batch delay is non-negative."""
        if v < 0:
            raise ValueError("BATCH_DELAY_MS must be >= 0")
        return v

    @field_validator("cluster_threshold_m")
    @classmethod
    def cluster_threshold_must_be_positive(cls, v: float) -> float:
        """Validate clustering threshold is positive."""
        if v <= 0:
            raise ValueError("CLUSTER_THRESHOLD_M must be > 0")
        return v

    @field_validator("system_efficiency")
    @classmethod
    def efficiency_must_be_fraction(cls, v: float) -> float:
        """Validate system efficiency is within (0, 1]."""
        if v <= 0 or v > 1:
            raise ValueError("SYSTEM_EFFICIENCY must be > 0 and <= 1")
        return v

    @field_validator("ledger_retention_days")
    @classmethod
    def retention_must_be_positive(cls, v: int) -> int:
        """Validate the ledger keeps at least one day."""
        if v < 1:
            raise ValueError("LEDGER_RETENTION_DAYS must be >= 1")
        return v

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
