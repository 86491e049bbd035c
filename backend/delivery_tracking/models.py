from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from .geo import format_distance, format_duration
from .settings import settings

RouteContext = Literal["delivery", "customer"]
RoutingProfile = Literal["driving", "walking", "cycling"]

ROUTE_CONTEXTS: frozenset[str] = frozenset({"delivery", "customer"})
ROUTING_PROFILES: frozenset[str] = frozenset({"driving", "walking", "cycling"})

# Both contexts are served by the car profile upstream.
CONTEXT_PROFILES: dict[str, str] = {"delivery": "driving", "customer": "driving"}


# ---------------------------------------------------------------------------
# Core values
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RawFix:
    latitude: float
    longitude: float
    accuracy: float | None = None


@dataclass(frozen=True)
class RoutePoint:
    lat: float
    lng: float


@dataclass(frozen=True)
class StabilizedFix:
    latitude: float
    longitude: float
    accuracy: float
    timestamp: float
    is_snapped_to_road: bool
    original_fix: RawFix | None = None

    def to_point(self) -> RoutePoint:
        return RoutePoint(lat=self.latitude, lng=self.longitude)


@dataclass(frozen=True)
class RouteResult:
    coordinates: tuple[tuple[float, float], ...]  # ((lat, lng), ...)
    distance_m: float
    duration_s: float
    is_fallback: bool = False


@dataclass(frozen=True)
class MovementDirection:
    bearing: float
    speed_mps: float


@dataclass(frozen=True)
class StabilizerOptions:
    snap_to_road: bool = field(default_factory=lambda: settings.stabilizer_snap_to_road)
    moving_average_window: int = field(default_factory=lambda: settings.stabilizer_moving_average_window)
    noise_threshold_m: float = field(default_factory=lambda: settings.stabilizer_noise_threshold_m)
    max_snap_distance_m: float = field(default_factory=lambda: settings.stabilizer_max_snap_distance_m)
    snap_timeout_s: float = field(default_factory=lambda: settings.stabilizer_snap_timeout_s)


@dataclass(frozen=True)
class RouteOptions:
    debounce_ms: int = field(default_factory=lambda: settings.route_debounce_ms)
    distance_threshold_m: float = field(default_factory=lambda: settings.route_distance_threshold_m)
    max_retries: int = field(default_factory=lambda: settings.route_max_retries)
    profile: str | None = None


def _finite(v: float) -> float:
    if v != v or v in (float("inf"), float("-inf")):
        raise ValueError("value must be finite")
    return v


# ---------------------------------------------------------------------------
# HTTP schemas
# ---------------------------------------------------------------------------


class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)

    @field_validator("lat", "lng")
    @classmethod
    def finite(cls, v: float) -> float:
        return _finite(v)

    def to_point(self) -> RoutePoint:
        return RoutePoint(lat=self.lat, lng=self.lng)


class LocationUpdateRequest(BaseModel):
    """One raw fix pushed by a delivery agent's device."""

    agent_id: str = Field(..., min_length=1, max_length=128)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: float | None = Field(default=None, ge=0)
    destination: LatLng | None = None
    context: RouteContext = "delivery"
    vehicle_type: str | None = Field(default=None, max_length=32)
    order_status: str | None = Field(default=None, max_length=32)

    @field_validator("latitude", "longitude")
    @classmethod
    def finite(cls, v: float) -> float:
        return _finite(v)

    def to_raw_fix(self) -> RawFix:
        return RawFix(latitude=self.latitude, longitude=self.longitude, accuracy=self.accuracy)


class RouteRequest(BaseModel):
    start: LatLng
    end: LatLng
    context: RouteContext = "delivery"
    profile: RoutingProfile | None = None


class RouteResponse(BaseModel):
    coordinates: list[tuple[float, float]]  # [lat, lng]
    distance_m: float
    duration_s: float
    is_fallback: bool
    distance_text: str
    duration_text: str


class FixResponse(BaseModel):
    latitude: float
    longitude: float
    accuracy: float
    timestamp: float
    is_snapped_to_road: bool


class MovementResponse(BaseModel):
    bearing: float
    speed_mps: float


class TrackingUpdateResponse(BaseModel):
    order_id: str
    agent_id: str
    fix: FixResponse
    route: RouteResponse | None = None
    eta_seconds: float | None = None
    movement: MovementResponse | None = None
    estimated_total_minutes: int | None = None


def route_response(route: RouteResult) -> RouteResponse:
    return RouteResponse(
        coordinates=list(route.coordinates),
        distance_m=route.distance_m,
        duration_s=route.duration_s,
        is_fallback=route.is_fallback,
        distance_text=format_distance(route.distance_m),
        duration_text=format_duration(route.duration_s),
    )


def fix_response(fix: StabilizedFix) -> FixResponse:
    return FixResponse(
        latitude=fix.latitude,
        longitude=fix.longitude,
        accuracy=fix.accuracy,
        timestamp=fix.timestamp,
        is_snapped_to_road=fix.is_snapped_to_road,
    )
