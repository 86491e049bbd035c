"""Great-circle helpers, ETA arithmetic and display formatting.

Points may be ``(lat, lng)`` tuples or any object exposing ``lat``/``lng`` or
``latitude``/``longitude`` attributes, so route points and GPS fixes can be
mixed freely.
"""

from __future__ import annotations

import math
from typing import Any, Sequence

EARTH_RADIUS_M: float = 6_371_000.0


def latlng_of(point: Any) -> tuple[float, float]:
    if isinstance(point, (tuple, list)):
        return float(point[0]), float(point[1])
    if hasattr(point, "lat"):
        return float(point.lat), float(point.lng)
    return float(point.latitude), float(point.longitude)


def is_valid_coordinate(lat: Any, lng: Any) -> bool:
    for v in (lat, lng):
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            return False
        if not math.isfinite(v):
            return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def is_valid_point(point: Any) -> bool:
    try:
        lat, lng = latlng_of(point)
    except (AttributeError, TypeError, ValueError, IndexError):
        return False
    return is_valid_coordinate(lat, lng)


def haversine_distance(a: Any, b: Any) -> float:
    """Great-circle distance between two points, in meters."""
    lat1, lon1 = latlng_of(a)
    lat2, lon2 = latlng_of(b)
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlmb = math.radians(lon2 - lon1)
    h = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlmb / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def bearing(a: Any, b: Any) -> float:
    """Initial bearing from ``a`` to ``b`` in degrees, normalised to [0, 360)."""
    lat1, lon1 = latlng_of(a)
    lat2, lon2 = latlng_of(b)
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dlmb = math.radians(lon2 - lon1)
    y = math.sin(dlmb) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlmb)
    deg = (math.degrees(math.atan2(y, x)) + 360.0) % 360.0
    # (x + 360) % 360 can round up to exactly 360.0 for tiny negative angles.
    return 0.0 if deg >= 360.0 else deg


def eta_seconds(distance_m: float, speed_kmh: float) -> float:
    if speed_kmh <= 0:
        raise ValueError("speed_kmh must be positive")
    return (max(0.0, float(distance_m)) / 1000.0) / float(speed_kmh) * 3600.0


def format_distance(distance_m: float) -> str:
    d = max(0.0, float(distance_m))
    if d < 1000.0:
        return f"{int(round(d))}m"
    return f"{d / 1000.0:.1f}km"


def format_duration(seconds: float) -> str:
    total = max(0, int(round(float(seconds))))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def interpolate_route(
    coordinates: Sequence[tuple[float, float]],
    num_points: int = 50,
) -> list[tuple[float, float]]:
    """Densify a polyline for smooth marker animation.

    Every segment gets the same number of linear steps, so the output holds
    roughly ``num_points`` points and always keeps both original endpoints.
    """
    coords = [(float(lat), float(lng)) for lat, lng in coordinates]
    if len(coords) < 2:
        return coords

    segments = len(coords) - 1
    steps = max(1, math.ceil(max(1, num_points) / segments))
    out: list[tuple[float, float]] = [coords[0]]
    for (lat1, lng1), (lat2, lng2) in zip(coords, coords[1:]):
        for j in range(1, steps):
            ratio = j / steps
            out.append((lat1 + (lat2 - lat1) * ratio, lng1 + (lng2 - lng1) * ratio))
        out.append((lat2, lng2))
    return out
