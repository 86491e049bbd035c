from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable
from typing import Any

from .errors import TrackingInputError
from .geo import bearing, haversine_distance, is_valid_coordinate
from .logging_utils import log_debug, log_warning
from .models import MovementDirection, RawFix, RoutePoint, StabilizedFix, StabilizerOptions
from .routing_client import RoutingClient

HISTORY_CAPACITY = 20
_STATS_WINDOW = 10
_DIRECTION_WINDOW = 3


class LocationStabilizer:
    """Per-session GPS stabilizer: road snap, weighted smoothing, jitter filter.

    One instance belongs to one (order, agent) tracking session; its history
    is never shared.
    """

    def __init__(
        self,
        routing_client: RoutingClient | None = None,
        *,
        clock: Callable[[], float] = time.time,
        session_id: str | None = None,
    ) -> None:
        self._client = routing_client
        self._clock = clock
        self._session_id = session_id
        self._history: deque[StabilizedFix] = deque(maxlen=HISTORY_CAPACITY)

    @property
    def history(self) -> tuple[StabilizedFix, ...]:
        return tuple(self._history)

    @property
    def last_fix(self) -> StabilizedFix | None:
        return self._history[-1] if self._history else None

    async def stabilize(self, raw: RawFix, options: StabilizerOptions | None = None) -> StabilizedFix:
        if not is_valid_coordinate(raw.latitude, raw.longitude):
            raise TrackingInputError(
                "invalid_coordinates",
                "raw fix must carry finite WGS84 coordinates",
                details={"latitude": repr(raw.latitude), "longitude": repr(raw.longitude)},
            )
        opts = options or StabilizerOptions()
        timestamp = self._clock()

        point = (raw.latitude, raw.longitude)
        snapped = False
        if opts.snap_to_road:
            road_point = await self._snap(raw, opts)
            if road_point is not None:
                point = (road_point.lat, road_point.lng)
                snapped = True

        smoothed = self._moving_average(point, opts.moving_average_window)
        lat, lng = self._filter_noise(smoothed, opts.noise_threshold_m)

        fix = StabilizedFix(
            latitude=lat,
            longitude=lng,
            accuracy=float(raw.accuracy) if raw.accuracy is not None else 0.0,
            timestamp=timestamp,
            is_snapped_to_road=snapped,
            original_fix=raw,
        )
        self._history.append(fix)

        log_debug(
            "location_stabilized",
            session_id=self._session_id,
            raw=[raw.latitude, raw.longitude],
            stabilized=[lat, lng],
            is_snapped_to_road=snapped,
            history_size=len(self._history),
        )
        return fix

    async def _snap(self, raw: RawFix, opts: StabilizerOptions) -> RoutePoint | None:
        if self._client is None:
            return None
        try:
            road_point = await asyncio.wait_for(
                self._client.snap(RoutePoint(lat=raw.latitude, lng=raw.longitude), opts.max_snap_distance_m),
                timeout=opts.snap_timeout_s,
            )
        except asyncio.TimeoutError:
            log_warning("road_snap_failed", session_id=self._session_id, reason="timeout")
            return None
        except Exception as exc:
            log_warning("road_snap_failed", session_id=self._session_id, reason=f"{type(exc).__name__}: {exc}")
            return None

        if road_point is None:
            return None
        if not is_valid_coordinate(getattr(road_point, "lat", None), getattr(road_point, "lng", None)):
            log_warning("road_snap_failed", session_id=self._session_id, reason="invalid snapped point")
            return None
        # Trust our own distance, not the upstream's.
        distance = haversine_distance((raw.latitude, raw.longitude), road_point)
        if distance > opts.max_snap_distance_m:
            log_warning(
                "road_snap_failed",
                session_id=self._session_id,
                reason="too_far",
                distance_m=round(distance, 1),
            )
            return None
        return road_point

    def _moving_average(self, point: tuple[float, float], window: int) -> tuple[float, float]:
        if not self._history or window <= 0:
            return point

        recent = list(self._history)[-window:]
        samples = [(f.latitude, f.longitude) for f in recent] + [point]
        total_weight = 0
        w_lat = 0.0
        w_lng = 0.0
        for weight, (lat, lng) in enumerate(samples, start=1):
            w_lat += lat * weight
            w_lng += lng * weight
            total_weight += weight
        return w_lat / total_weight, w_lng / total_weight

    def _filter_noise(self, point: tuple[float, float], threshold_m: float) -> tuple[float, float]:
        last = self.last_fix
        if last is None:
            return point
        distance = haversine_distance(last, point)
        if distance < threshold_m:
            log_debug("noise_filtered", session_id=self._session_id, distance_m=round(distance, 2))
            return last.latitude, last.longitude
        return point

    def movement_direction(self) -> MovementDirection | None:
        if len(self._history) < 2:
            return None
        recent = list(self._history)[-_DIRECTION_WINDOW:]
        oldest, newest = recent[0], recent[-1]
        distance = haversine_distance(oldest, newest)
        dt = newest.timestamp - oldest.timestamp
        speed = distance / dt if dt > 0 else 0.0
        return MovementDirection(bearing=bearing(oldest, newest), speed_mps=speed)

    def stats(self) -> dict[str, Any]:
        recent = list(self._history)[-_STATS_WINDOW:]
        snapped = sum(1 for f in recent if f.is_snapped_to_road)
        avg_accuracy = sum(f.accuracy for f in recent) / len(recent) if recent else 0.0
        return {
            "history_size": len(self._history),
            "recent_snapped_count": snapped,
            "average_accuracy": avg_accuracy,
        }

    def clear_history(self) -> None:
        self._history.clear()
