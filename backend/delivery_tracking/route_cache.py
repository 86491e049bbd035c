from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import Any

from .geo import haversine_distance, latlng_of
from .models import RoutePoint, RouteResult

# 4 decimal places is roughly an 11 m grid at the equator.
KEY_PRECISION = 4


def route_cache_key(start: Any, end: Any, context: str) -> str:
    slat, slng = latlng_of(start)
    elat, elng = latlng_of(end)
    p = KEY_PRECISION
    return f"{slat:.{p}f},{slng:.{p}f}-{elat:.{p}f},{elng:.{p}f}-{context}"


@dataclass
class RouteCacheEntry:
    route: RouteResult
    timestamp: float
    start_point: RoutePoint
    end_point: RoutePoint


class RouteCacheStore:
    """Route results keyed by rounded endpoints and context.

    An entry is served only while it is younger than the TTL and neither
    endpoint has drifted past the caller's distance threshold; otherwise it
    is dropped on read.
    """

    def __init__(
        self,
        *,
        ttl_ms: int,
        max_entries: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl_s = max(1, int(ttl_ms)) / 1000.0
        self._max_entries = max(1, int(max_entries))
        self._clock = clock
        self._lock = Lock()
        self._items: OrderedDict[str, RouteCacheEntry] = OrderedDict()

        self._hits = 0
        self._misses = 0
        self._expired = 0
        self._displaced = 0
        self._evictions = 0

    @property
    def ttl_s(self) -> float:
        return self._ttl_s

    def _is_expired(self, entry: RouteCacheEntry, now: float) -> bool:
        return (now - entry.timestamp) >= self._ttl_s

    def get(
        self,
        key: str,
        start: Any,
        end: Any,
        *,
        distance_threshold_m: float,
    ) -> RouteResult | None:
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                self._misses += 1
                return None

            if self._is_expired(entry, self._clock()):
                self._items.pop(key, None)
                self._expired += 1
                self._misses += 1
                return None

            moved_start = haversine_distance(entry.start_point, start)
            moved_end = haversine_distance(entry.end_point, end)
            if moved_start > distance_threshold_m or moved_end > distance_threshold_m:
                self._items.pop(key, None)
                self._displaced += 1
                self._misses += 1
                return None

            self._items.move_to_end(key)
            self._hits += 1
            return entry.route

    def set(self, key: str, route: RouteResult, start: Any, end: Any) -> None:
        slat, slng = latlng_of(start)
        elat, elng = latlng_of(end)
        with self._lock:
            now = self._clock()
            if key in self._items:
                self._items.move_to_end(key)
            self._items[key] = RouteCacheEntry(
                route=route,
                timestamp=now,
                start_point=RoutePoint(lat=slat, lng=slng),
                end_point=RoutePoint(lat=elat, lng=elng),
            )

            expired = [k for k, e in self._items.items() if self._is_expired(e, now)]
            for k in expired:
                del self._items[k]
            self._expired += len(expired)

            while len(self._items) > self._max_entries:
                self._items.popitem(last=False)
                self._evictions += 1

    def peek(self, key: str) -> RouteCacheEntry | None:
        with self._lock:
            return self._items.get(key)

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._items)
            self._items.clear()
            return cleared

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._items),
                "keys": list(self._items.keys()),
                "hits": self._hits,
                "misses": self._misses,
                "expired": self._expired,
                "displaced": self._displaced,
                "evictions": self._evictions,
                "ttl_ms": int(self._ttl_s * 1000),
                "max_entries": self._max_entries,
            }
