from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _running_in_docker() -> bool:
    """Best-effort check for container execution.

    Used only to pick sensible defaults. Environment variables always win.
    """
    return Path("/.dockerenv").exists() or os.environ.get("RUNNING_IN_DOCKER") == "1"


def _default_osrm_base_url() -> str:
    # In docker-compose, OSRM is reachable by service name "osrm".
    return "http://osrm:5000" if _running_in_docker() else "http://localhost:5000"


class Settings(BaseSettings):
    """Env-driven settings for the tracking core and its HTTP surface."""

    model_config = SettingsConfigDict(
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    osrm_base_url: str = Field(default_factory=_default_osrm_base_url, alias="OSRM_BASE_URL")
    osrm_profile: str = Field(default="driving", alias="OSRM_PROFILE")
    osrm_timeout_s: float = Field(default=10.0, ge=0.5, le=120.0, alias="OSRM_TIMEOUT_S")
    osrm_connect_timeout_s: float = Field(default=5.0, ge=0.1, le=60.0, alias="OSRM_CONNECT_TIMEOUT_S")

    out_dir: str = Field(default="/app/out", alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Route optimizer
    route_debounce_ms: int = Field(default=2000, ge=0, le=60_000, alias="ROUTE_DEBOUNCE_MS")
    route_distance_threshold_m: float = Field(
        default=50.0,
        ge=0.0,
        le=10_000.0,
        alias="ROUTE_DISTANCE_THRESHOLD_M",
    )
    route_max_retries: int = Field(default=3, ge=1, le=10, alias="ROUTE_MAX_RETRIES")
    route_backoff_base_ms: int = Field(default=1000, ge=0, le=5000, alias="ROUTE_BACKOFF_BASE_MS")
    route_backoff_cap_ms: int = Field(default=5000, ge=0, le=5000, alias="ROUTE_BACKOFF_CAP_MS")
    route_cache_ttl_ms: int = Field(default=300_000, ge=1000, le=86_400_000, alias="ROUTE_CACHE_TTL_MS")
    route_cache_max_entries: int = Field(default=1024, ge=1, le=1_000_000, alias="ROUTE_CACHE_MAX_ENTRIES")
    route_fallback_speed_kmh: float = Field(default=25.0, gt=0.0, le=200.0, alias="ROUTE_FALLBACK_SPEED_KMH")
    route_circuit_breaker_failures: int = Field(
        default=3,
        ge=0,
        le=128,
        alias="ROUTE_CIRCUIT_BREAKER_FAILURES",
    )
    route_circuit_breaker_cooldown_s: float = Field(
        default=30.0,
        ge=0.0,
        le=3600.0,
        alias="ROUTE_CIRCUIT_BREAKER_COOLDOWN_S",
    )

    # Location stabilizer
    stabilizer_snap_to_road: bool = Field(default=True, alias="STABILIZER_SNAP_TO_ROAD")
    stabilizer_moving_average_window: int = Field(
        default=5,
        ge=0,
        le=20,
        alias="STABILIZER_MOVING_AVERAGE_WINDOW",
    )
    stabilizer_noise_threshold_m: float = Field(
        default=10.0,
        ge=0.0,
        le=1000.0,
        alias="STABILIZER_NOISE_THRESHOLD_M",
    )
    stabilizer_max_snap_distance_m: float = Field(
        default=100.0,
        gt=0.0,
        le=5000.0,
        alias="STABILIZER_MAX_SNAP_DISTANCE_M",
    )
    stabilizer_snap_timeout_s: float = Field(
        default=5.0,
        gt=0.0,
        le=60.0,
        alias="STABILIZER_SNAP_TIMEOUT_S",
    )

    broadcast_queue_size: int = Field(default=16, ge=1, le=10_000, alias="BROADCAST_QUEUE_SIZE")
    # 0 keeps sessions until they are closed explicitly.
    session_idle_timeout_s: float = Field(default=1800.0, ge=0.0, le=86_400.0, alias="SESSION_IDLE_TIMEOUT_S")

    @model_validator(mode="after")
    def _normalize(self) -> "Settings":
        profile = str(self.osrm_profile or "driving").strip().lower()
        if profile not in {"driving", "walking", "cycling"}:
            profile = "driving"
        self.osrm_profile = profile
        # A cap below the base would make the backoff schedule shrink.
        if self.route_backoff_cap_ms < self.route_backoff_base_ms:
            self.route_backoff_cap_ms = self.route_backoff_base_ms
        return self


settings = Settings()
