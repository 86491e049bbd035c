"""Route requests for live tracking sessions.

Location updates arrive in bursts and mostly move the route start by a few
meters, so the optimizer sits between tracking sessions and the routing API:

1. a cached route is reused while it is fresh and its endpoints have not
   drifted past ``distance_threshold_m``;
2. callers for a key whose fetch is already running join that fetch;
3. otherwise the call (re)arms a per-key debounce timer and joins the key's
   pending group, so a burst collapses into one upstream computation;
4. when the timer fires the routing client is tried ``max_retries`` times with
   capped exponential backoff, falling back to a straight-line estimate.

Every caller in a group receives the same ``RouteResult`` object.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from threading import Lock
from typing import Any

from .circuit_breaker import CircuitBreaker
from .errors import TrackingInputError
from .geo import eta_seconds, haversine_distance, is_valid_point, latlng_of
from .logging_utils import log_debug, log_event, log_warning
from .metrics_store import increment
from .models import (
    CONTEXT_PROFILES,
    ROUTE_CONTEXTS,
    ROUTING_PROFILES,
    RouteOptions,
    RoutePoint,
    RouteResult,
)
from .route_cache import RouteCacheStore, route_cache_key
from .routing_client import RoutingClient
from .settings import settings


def backoff_delays(max_retries: int, base_ms: int, cap_ms: int) -> list[int]:
    """Waits (ms) between consecutive attempts: base, 2*base, 4*base, ... capped."""
    base = max(0, int(base_ms))
    cap = max(base, int(cap_ms))
    return [min(base * (2**i), cap) for i in range(max(0, int(max_retries) - 1))]


def fallback_route(start: Any, end: Any, speed_kmh: float) -> RouteResult:
    slat, slng = latlng_of(start)
    elat, elng = latlng_of(end)
    distance = haversine_distance((slat, slng), (elat, elng))
    return RouteResult(
        coordinates=((slat, slng), (elat, elng)),
        distance_m=distance,
        duration_s=eta_seconds(distance, speed_kmh),
        is_fallback=True,
    )


@dataclass
class _PendingGroup:
    future: asyncio.Future[RouteResult]
    start: RoutePoint
    end: RoutePoint
    context: str
    options: RouteOptions
    timer: asyncio.TimerHandle | None = None
    task: asyncio.Task[None] | None = None
    waiters: int = field(default=0)

    @property
    def in_flight(self) -> bool:
        return self.task is not None


class RouteOptimizer:
    def __init__(
        self,
        routing_client: RoutingClient,
        *,
        cache: RouteCacheStore | None = None,
        breaker: CircuitBreaker | None = None,
        backoff_base_ms: int = 1000,
        backoff_cap_ms: int = 5000,
        fallback_speed_kmh: float = 25.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        if fallback_speed_kmh <= 0:
            raise ValueError("fallback_speed_kmh must be positive")
        self._client = routing_client
        self._cache = cache if cache is not None else RouteCacheStore(ttl_ms=300_000, max_entries=1024)
        self._breaker = breaker if breaker is not None else CircuitBreaker(failure_threshold=0, cooldown_s=0.0)
        self._backoff_base_ms = int(backoff_base_ms)
        self._backoff_cap_ms = int(backoff_cap_ms)
        self._fallback_speed_kmh = float(fallback_speed_kmh)
        self._sleep = sleep

        # Guards _pending. Critical sections never await.
        self._lock = Lock()
        self._pending: dict[str, _PendingGroup] = {}

    @classmethod
    def from_settings(cls, routing_client: RoutingClient) -> "RouteOptimizer":
        return cls(
            routing_client,
            cache=RouteCacheStore(
                ttl_ms=settings.route_cache_ttl_ms,
                max_entries=settings.route_cache_max_entries,
            ),
            breaker=CircuitBreaker(
                failure_threshold=settings.route_circuit_breaker_failures,
                cooldown_s=settings.route_circuit_breaker_cooldown_s,
            ),
            backoff_base_ms=settings.route_backoff_base_ms,
            backoff_cap_ms=settings.route_backoff_cap_ms,
            fallback_speed_kmh=settings.route_fallback_speed_kmh,
        )

    @property
    def cache(self) -> RouteCacheStore:
        return self._cache

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------

    async def get_route(
        self,
        start: Any,
        end: Any,
        context: str = "delivery",
        options: RouteOptions | None = None,
    ) -> RouteResult:
        opts = options or RouteOptions()
        start_pt, end_pt = _validate(start, end, context, opts)
        key = route_cache_key(start_pt, end_pt, context)

        cached = self._cache.get(key, start_pt, end_pt, distance_threshold_m=opts.distance_threshold_m)
        if cached is not None:
            increment("route_cache_hit")
            log_debug("route_cache_hit", cache_key=key)
            return cached

        loop = asyncio.get_running_loop()
        with self._lock:
            group = self._pending.get(key)
            if group is not None and group.in_flight:
                group.waiters += 1
                increment("route_joined")
                log_debug("route_request_joined", cache_key=key, waiters=group.waiters)
            else:
                if group is None:
                    group = _PendingGroup(
                        future=loop.create_future(),
                        start=start_pt,
                        end=end_pt,
                        context=context,
                        options=opts,
                    )
                    self._pending[key] = group
                else:
                    # The newest call in a burst decides the endpoints.
                    group.start, group.end, group.options = start_pt, end_pt, opts
                    if group.timer is not None:
                        group.timer.cancel()
                    increment("route_joined")
                group.waiters += 1
                group.timer = loop.call_later(max(0, opts.debounce_ms) / 1000.0, self._fire, key, group)
                log_debug("route_debounce_armed", cache_key=key, debounce_ms=opts.debounce_ms, waiters=group.waiters)

        # shield: a caller giving up must not cancel the computation other
        # waiters share.
        return await asyncio.shield(group.future)

    def pending_keys(self) -> list[str]:
        with self._lock:
            return list(self._pending.keys())

    def stats(self) -> dict[str, Any]:
        with self._lock:
            pending = {
                key: {"in_flight": g.in_flight, "waiters": g.waiters} for key, g in self._pending.items()
            }
        return {
            "cache": self._cache.snapshot(),
            "pending": pending,
            "circuit_breaker": self._breaker.snapshot(),
        }

    def clear(self) -> int:
        """Drop cached routes and close the breaker.

        Pending groups are left alone: armed timers still fire and running
        fetches still resolve their waiters.
        """
        self._breaker.reset()
        cleared = self._cache.clear()
        log_event("route_cache_cleared", cleared=cleared, pending=len(self.pending_keys()))
        return cleared

    async def aclose(self) -> None:
        with self._lock:
            groups = list(self._pending.values())
            self._pending.clear()
        tasks = [g.task for g in groups if g.task is not None]
        for group in groups:
            _cancel_group(group)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # internals
    # ------------------------------------------------------------------

    def _fire(self, key: str, group: _PendingGroup) -> None:
        with self._lock:
            if self._pending.get(key) is not group or group.in_flight:
                return
            group.timer = None
            group.task = asyncio.get_running_loop().create_task(self._run(key, group))

    def _release(self, key: str, group: _PendingGroup) -> None:
        with self._lock:
            if self._pending.get(key) is group:
                del self._pending[key]
            if group.timer is not None:
                group.timer.cancel()
                group.timer = None

    async def _run(self, key: str, group: _PendingGroup) -> None:
        try:
            route = await self._fetch_with_retry(group.start, group.end, group.context, group.options)
        except asyncio.CancelledError:
            self._release(key, group)
            if not group.future.done():
                group.future.cancel()
            raise
        except Exception as exc:
            self._release(key, group)
            log_warning("route_compute_failed", cache_key=key, error=f"{type(exc).__name__}: {exc}")
            if not group.future.done():
                group.future.set_exception(exc)
            return

        self._cache.set(key, route, group.start, group.end)
        self._release(key, group)
        if not group.future.done():
            group.future.set_result(route)
        log_event(
            "route_resolved",
            cache_key=key,
            waiters=group.waiters,
            is_fallback=route.is_fallback,
            distance_m=round(route.distance_m, 1),
            duration_s=round(route.duration_s, 1),
        )

    async def _fetch_with_retry(
        self,
        start: RoutePoint,
        end: RoutePoint,
        context: str,
        opts: RouteOptions,
    ) -> RouteResult:
        profile = opts.profile or CONTEXT_PROFILES[context]

        if self._breaker.is_open():
            increment("route_circuit_open_skip")
            increment("route_fallback")
            log_warning("route_fallback_used", reason="circuit_open", context=context)
            return fallback_route(start, end, self._fallback_speed_kmh)

        max_retries = max(1, int(opts.max_retries))
        delays = backoff_delays(max_retries, self._backoff_base_ms, self._backoff_cap_ms)
        for attempt in range(1, max_retries + 1):
            increment("route_upstream_fetch")
            route: RouteResult | None
            try:
                route = await self._client.route(start, end, profile)
            except Exception as exc:
                # Third-party clients may not honour the no-raise contract;
                # an exception counts as a failed attempt.
                log_warning("route_fetch_attempt_failed", attempt=attempt, error=f"{type(exc).__name__}: {exc}")
                route = None
            else:
                if route is None:
                    log_warning("route_fetch_attempt_failed", attempt=attempt, error="no route")

            if route is not None:
                self._breaker.record_success()
                return route

            if attempt < max_retries:
                await self._sleep(delays[attempt - 1] / 1000.0)

        self._breaker.record_failure()
        increment("route_fallback")
        log_warning("route_fallback_used", reason="retries_exhausted", attempts=max_retries, context=context)
        return fallback_route(start, end, self._fallback_speed_kmh)


def _cancel_group(group: _PendingGroup) -> None:
    if group.timer is not None:
        group.timer.cancel()
        group.timer = None
    if group.task is not None and not group.task.done():
        group.task.cancel()
    if not group.future.done():
        group.future.cancel()


def _validate(start: Any, end: Any, context: str, opts: RouteOptions) -> tuple[RoutePoint, RoutePoint]:
    if not is_valid_point(start) or not is_valid_point(end):
        raise TrackingInputError(
            "invalid_coordinates",
            "route endpoints must be finite WGS84 coordinates",
            details={"start": repr(start), "end": repr(end)},
        )
    if context not in ROUTE_CONTEXTS:
        raise TrackingInputError(
            "invalid_context",
            f"unknown route context {context!r}",
            details={"allowed": sorted(ROUTE_CONTEXTS)},
        )
    threshold = opts.distance_threshold_m
    if (
        opts.debounce_ms < 0
        or opts.max_retries < 1
        or not (threshold == threshold and 0 <= threshold < float("inf"))
        or (opts.profile is not None and opts.profile not in ROUTING_PROFILES)
    ):
        raise TrackingInputError("invalid_options", "route options out of range", details={"options": repr(opts)})

    slat, slng = latlng_of(start)
    elat, elng = latlng_of(end)
    return RoutePoint(lat=slat, lng=slng), RoutePoint(lat=elat, lng=elng)
