from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from .geo import format_duration

VEHICLE_SPEEDS_KMH: dict[str, float] = {
    "bicycle": 15.0,
    "motorcycle": 30.0,
    "car": 25.0,
    "scooter": 20.0,
    "walking": 5.0,
}
DEFAULT_SPEED_KMH = 25.0
DEFAULT_VEHICLE = "motorcycle"

# Minutes of kitchen time still ahead of an order in each status.
PREPARATION_MINUTES: dict[str, int] = {
    "pending": 15,
    "confirmed": 15,
    "preparing": 10,
    "ready": 5,
    "out_for_delivery": 0,
}

# Traffic, stops and handover.
BUFFER_FACTOR = 1.1


@dataclass(frozen=True)
class DeliveryEstimate:
    distance_m: float
    speed_kmh: float
    travel_minutes: float
    preparation_minutes: int
    total_minutes: int
    estimated_arrival: datetime

    @property
    def total_text(self) -> str:
        return format_duration(self.total_minutes * 60)


def traffic_multiplier(hour: int) -> float:
    if 7 <= hour <= 9 or 17 <= hour <= 19:
        return 0.7
    if hour >= 23 or hour <= 6:
        return 0.9
    return 1.0


def vehicle_speed_kmh(
    vehicle_type: str | None,
    *,
    observed_speed_kmh: float | None = None,
    completed_deliveries: int = 0,
    now: datetime | None = None,
) -> float:
    """Expected speed for an agent, adjusted for time-of-day traffic.

    An agent's own observed average replaces the table value once they have
    more than five completed deliveries.
    """
    vt = (vehicle_type or DEFAULT_VEHICLE).strip().lower()
    speed = VEHICLE_SPEEDS_KMH.get(vt, DEFAULT_SPEED_KMH)
    if observed_speed_kmh and observed_speed_kmh > 0 and completed_deliveries > 5:
        speed = float(observed_speed_kmh)
    hour = (now or datetime.now()).hour
    # Halves round up (10.5 -> 11), not to even.
    return math.floor(speed * traffic_multiplier(hour) + 0.5)


def preparation_minutes(order_status: str | None) -> int:
    return PREPARATION_MINUTES.get((order_status or "").strip().lower(), 0)


def estimate_delivery_time(
    distance_m: float,
    speed_kmh: float = DEFAULT_SPEED_KMH,
    preparation_min: int = 15,
    *,
    now: datetime | None = None,
) -> DeliveryEstimate:
    if speed_kmh <= 0:
        raise ValueError("speed_kmh must be positive")
    distance = max(0.0, float(distance_m))
    travel = (distance / 1000.0) / speed_kmh * 60.0
    total = math.ceil((travel + preparation_min) * BUFFER_FACTOR)
    start = now or datetime.now()
    return DeliveryEstimate(
        distance_m=distance,
        speed_kmh=float(speed_kmh),
        travel_minutes=travel,
        preparation_minutes=int(preparation_min),
        total_minutes=total,
        estimated_arrival=start + timedelta(minutes=total),
    )


def realtime_estimate(
    distance_m: float,
    *,
    vehicle_type: str | None = None,
    order_status: str | None = None,
    now: datetime | None = None,
) -> DeliveryEstimate:
    current = now or datetime.now()
    speed = vehicle_speed_kmh(vehicle_type, now=current)
    return estimate_delivery_time(distance_m, speed, preparation_minutes(order_status), now=current)
