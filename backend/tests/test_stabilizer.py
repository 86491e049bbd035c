from __future__ import annotations

import asyncio

import pytest

from delivery_tracking.errors import TrackingInputError
from delivery_tracking.geo import haversine_distance
from delivery_tracking.models import RawFix, RoutePoint, StabilizerOptions
from delivery_tracking.stabilizer import HISTORY_CAPACITY, LocationStabilizer

# ~1 meter of latitude in degrees.
M_LAT = 1.0 / 111_195.0

BASE = RawFix(latitude=36.8065, longitude=10.1815, accuracy=8.0)


class _Clock:
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class _FakeSnapClient:
    def __init__(self, *, result: RoutePoint | None = None, delay_s: float = 0.0, exc: Exception | None = None) -> None:
        self.result = result
        self.delay_s = delay_s
        self.exc = exc
        self.calls: list[tuple[RoutePoint, float]] = []

    async def route(self, start, end, profile="driving"):
        return None

    async def snap(self, point, max_distance_m):
        self.calls.append((point, max_distance_m))
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.exc is not None:
            raise self.exc
        return self.result


def _opts(**kwargs) -> StabilizerOptions:
    base = {
        "snap_to_road": False,
        "moving_average_window": 5,
        "noise_threshold_m": 10.0,
        "max_snap_distance_m": 100.0,
        "snap_timeout_s": 5.0,
    }
    base.update(kwargs)
    return StabilizerOptions(**base)


def _north(meters: float, accuracy: float | None = 8.0) -> RawFix:
    return RawFix(latitude=BASE.latitude + meters * M_LAT, longitude=BASE.longitude, accuracy=accuracy)


def test_first_fix_without_snap_is_returned_unchanged() -> None:
    stab = LocationStabilizer(clock=_Clock())
    fix = asyncio.run(stab.stabilize(BASE, _opts()))

    assert (fix.latitude, fix.longitude) == (BASE.latitude, BASE.longitude)
    assert fix.is_snapped_to_road is False
    assert fix.accuracy == 8.0
    assert fix.timestamp == 1_000.0
    assert fix.original_fix == BASE
    assert len(stab.history) == 1


def test_missing_accuracy_defaults_to_zero() -> None:
    stab = LocationStabilizer(clock=_Clock())
    fix = asyncio.run(stab.stabilize(RawFix(latitude=1.0, longitude=2.0), _opts()))
    assert fix.accuracy == 0.0


def test_jitter_below_threshold_repeats_last_position() -> None:
    stab = LocationStabilizer(clock=_Clock())

    async def scenario():
        first = await stab.stabilize(BASE, _opts())
        second = await stab.stabilize(_north(5.0), _opts())
        return first, second

    first, second = asyncio.run(scenario())
    assert second.latitude == first.latitude
    assert second.longitude == first.longitude
    assert len(stab.history) == 2


def test_weighted_average_favours_newest_fix() -> None:
    stab = LocationStabilizer(clock=_Clock())

    async def scenario():
        await stab.stabilize(BASE, _opts())
        return await stab.stabilize(_north(300.0), _opts())

    fix = asyncio.run(scenario())
    # weights 1 (history) and 2 (new point)
    expected_lat = (BASE.latitude * 1 + (BASE.latitude + 300.0 * M_LAT) * 2) / 3
    assert fix.latitude == pytest.approx(expected_lat, abs=1e-12)
    assert fix.longitude == pytest.approx(BASE.longitude, abs=1e-12)


def test_window_zero_disables_smoothing() -> None:
    stab = LocationStabilizer(clock=_Clock())

    async def scenario():
        await stab.stabilize(BASE, _opts(moving_average_window=0))
        return await stab.stabilize(_north(300.0), _opts(moving_average_window=0))

    fix = asyncio.run(scenario())
    assert fix.latitude == pytest.approx(BASE.latitude + 300.0 * M_LAT)


def test_history_is_capped() -> None:
    stab = LocationStabilizer(clock=_Clock())

    async def scenario():
        sizes = []
        for i in range(HISTORY_CAPACITY + 7):
            await stab.stabilize(_north(100.0 * i), _opts(moving_average_window=0))
            sizes.append(len(stab.history))
        return sizes

    sizes = asyncio.run(scenario())
    assert sizes == [min(n, HISTORY_CAPACITY) for n in range(1, HISTORY_CAPACITY + 8)]
    assert stab.history[-1].latitude == pytest.approx(BASE.latitude + 100.0 * (HISTORY_CAPACITY + 6) * M_LAT)


def test_snap_accepted_within_max_distance() -> None:
    road = RoutePoint(lat=BASE.latitude + 20.0 * M_LAT, lng=BASE.longitude)
    client = _FakeSnapClient(result=road)
    stab = LocationStabilizer(client, clock=_Clock())

    fix = asyncio.run(stab.stabilize(BASE, _opts(snap_to_road=True)))

    assert fix.is_snapped_to_road is True
    assert (fix.latitude, fix.longitude) == (road.lat, road.lng)
    assert client.calls[0][1] == 100.0


def test_snap_too_far_is_rejected() -> None:
    road = RoutePoint(lat=BASE.latitude + 500.0 * M_LAT, lng=BASE.longitude)
    stab = LocationStabilizer(_FakeSnapClient(result=road), clock=_Clock())

    fix = asyncio.run(stab.stabilize(BASE, _opts(snap_to_road=True)))

    assert fix.is_snapped_to_road is False
    assert (fix.latitude, fix.longitude) == (BASE.latitude, BASE.longitude)


def test_snap_timeout_falls_back_to_raw_fix() -> None:
    client = _FakeSnapClient(result=RoutePoint(lat=BASE.latitude, lng=BASE.longitude), delay_s=1.0)
    stab = LocationStabilizer(client, clock=_Clock())

    fix = asyncio.run(stab.stabilize(BASE, _opts(snap_to_road=True, snap_timeout_s=0.05)))

    assert fix.is_snapped_to_road is False
    assert (fix.latitude, fix.longitude) == (BASE.latitude, BASE.longitude)


def test_snap_exception_never_escapes() -> None:
    stab = LocationStabilizer(_FakeSnapClient(exc=RuntimeError("boom")), clock=_Clock())

    fix = asyncio.run(stab.stabilize(BASE, _opts(snap_to_road=True)))

    assert fix.is_snapped_to_road is False


def test_no_snap_call_when_disabled() -> None:
    client = _FakeSnapClient(result=RoutePoint(lat=BASE.latitude, lng=BASE.longitude))
    stab = LocationStabilizer(client, clock=_Clock())
    asyncio.run(stab.stabilize(BASE, _opts(snap_to_road=False)))
    assert client.calls == []


@pytest.mark.parametrize(
    "raw",
    [
        RawFix(latitude=float("nan"), longitude=0.0),
        RawFix(latitude=91.0, longitude=0.0),
        RawFix(latitude=0.0, longitude=float("inf")),
    ],
)
def test_invalid_fix_is_rejected_without_touching_history(raw: RawFix) -> None:
    client = _FakeSnapClient()
    stab = LocationStabilizer(client, clock=_Clock())

    with pytest.raises(TrackingInputError) as exc:
        asyncio.run(stab.stabilize(raw, _opts(snap_to_road=True)))

    assert exc.value.reason_code == "invalid_coordinates"
    assert stab.history == ()
    assert client.calls == []


def test_movement_direction_needs_two_fixes() -> None:
    stab = LocationStabilizer(clock=_Clock())
    assert stab.movement_direction() is None
    asyncio.run(stab.stabilize(BASE, _opts()))
    assert stab.movement_direction() is None


def test_movement_direction_heading_north() -> None:
    clock = _Clock()
    stab = LocationStabilizer(clock=clock)

    async def scenario():
        for i in range(4):
            await stab.stabilize(_north(100.0 * i), _opts(moving_average_window=0))
            clock.now += 10.0

    asyncio.run(scenario())
    movement = stab.movement_direction()

    assert movement is not None
    assert movement.bearing == pytest.approx(0.0, abs=1e-6)
    # last three fixes span 200 m over 20 s
    expected = haversine_distance(stab.history[-3], stab.history[-1]) / 20.0
    assert movement.speed_mps == pytest.approx(expected)
    assert movement.speed_mps == pytest.approx(10.0, rel=0.01)


def test_movement_speed_is_zero_without_elapsed_time() -> None:
    stab = LocationStabilizer(clock=_Clock())

    async def scenario():
        await stab.stabilize(BASE, _opts(moving_average_window=0))
        await stab.stabilize(_north(200.0), _opts(moving_average_window=0))

    asyncio.run(scenario())
    movement = stab.movement_direction()
    assert movement is not None
    assert movement.speed_mps == 0.0
    assert 0.0 <= movement.bearing < 360.0


def test_stats_and_clear_history() -> None:
    road = RoutePoint(lat=BASE.latitude, lng=BASE.longitude)
    stab = LocationStabilizer(_FakeSnapClient(result=road), clock=_Clock())

    async def scenario():
        await stab.stabilize(BASE, _opts(snap_to_road=True))
        await stab.stabilize(RawFix(latitude=BASE.latitude, longitude=BASE.longitude, accuracy=4.0), _opts())

    asyncio.run(scenario())
    stats = stab.stats()
    assert stats["history_size"] == 2
    assert stats["recent_snapped_count"] == 1
    assert stats["average_accuracy"] == pytest.approx(6.0)

    stab.clear_history()
    assert stab.history == ()
    assert stab.last_fix is None
    assert stab.stats()["average_accuracy"] == 0.0
