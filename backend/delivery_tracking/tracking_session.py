from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from typing import Any

from .broadcast import Broadcaster
from .delivery_eta import DeliveryEstimate, realtime_estimate
from .errors import TrackingInputError
from .logging_utils import log_context, log_event
from .models import (
    MovementDirection,
    MovementResponse,
    RawFix,
    RouteOptions,
    RoutePoint,
    RouteResult,
    StabilizedFix,
    StabilizerOptions,
    TrackingUpdateResponse,
    fix_response,
    route_response,
)
from .route_optimizer import RouteOptimizer
from .stabilizer import LocationStabilizer


@dataclass(frozen=True)
class TrackingUpdate:
    order_id: str
    agent_id: str
    fix: StabilizedFix
    route: RouteResult | None = None
    movement: MovementDirection | None = None
    estimate: DeliveryEstimate | None = None

    @property
    def eta_seconds(self) -> float | None:
        return self.route.duration_s if self.route is not None else None

    def to_response(self) -> TrackingUpdateResponse:
        return TrackingUpdateResponse(
            order_id=self.order_id,
            agent_id=self.agent_id,
            fix=fix_response(self.fix),
            route=route_response(self.route) if self.route is not None else None,
            eta_seconds=self.eta_seconds,
            movement=(
                MovementResponse(bearing=self.movement.bearing, speed_mps=self.movement.speed_mps)
                if self.movement is not None
                else None
            ),
            estimated_total_minutes=self.estimate.total_minutes if self.estimate is not None else None,
        )

    def to_event(self) -> dict[str, Any]:
        return {"type": "tracking_update", **self.to_response().model_dump()}


class TrackingSession:
    """Live tracking for one (order, agent) pair.

    Owns its stabilizer; shares the optimizer and broadcaster with every
    other session in the process.
    """

    def __init__(
        self,
        *,
        order_id: str,
        agent_id: str,
        optimizer: RouteOptimizer,
        broadcaster: Broadcaster,
        stabilizer: LocationStabilizer,
        destination: RoutePoint | None = None,
        context: str = "delivery",
        vehicle_type: str | None = None,
        order_status: str | None = None,
    ) -> None:
        self.order_id = order_id
        self.agent_id = agent_id
        self.destination = destination
        self.context = context
        self.vehicle_type = vehicle_type
        self.order_status = order_status
        self.stabilizer = stabilizer
        self._optimizer = optimizer
        self._broadcaster = broadcaster

    async def handle_fix(
        self,
        raw: RawFix,
        *,
        stabilizer_options: StabilizerOptions | None = None,
        route_options: RouteOptions | None = None,
    ) -> TrackingUpdate:
        with log_context(order_id=self.order_id, agent_id=self.agent_id):
            return await self._handle_fix(raw, stabilizer_options, route_options)

    async def _handle_fix(
        self,
        raw: RawFix,
        stabilizer_options: StabilizerOptions | None,
        route_options: RouteOptions | None,
    ) -> TrackingUpdate:
        fix = await self.stabilizer.stabilize(raw, stabilizer_options)

        route: RouteResult | None = None
        estimate: DeliveryEstimate | None = None
        if self.destination is not None:
            route = await self._optimizer.get_route(fix.to_point(), self.destination, self.context, route_options)
            if self.vehicle_type is not None or self.order_status is not None:
                estimate = realtime_estimate(
                    route.distance_m,
                    vehicle_type=self.vehicle_type,
                    order_status=self.order_status,
                )

        update = TrackingUpdate(
            order_id=self.order_id,
            agent_id=self.agent_id,
            fix=fix,
            route=route,
            movement=self.stabilizer.movement_direction(),
            estimate=estimate,
        )
        delivered = await self._broadcaster.publish(self.order_id, update.to_event())
        log_event(
            "tracking_update_published",
            is_snapped_to_road=fix.is_snapped_to_road,
            has_route=route is not None,
            is_fallback=route.is_fallback if route is not None else None,
            subscribers=delivered,
        )
        return update


class SessionRegistry:
    """Composition-root owned map of live sessions keyed by (order, agent).

    Sessions not touched for ``idle_timeout_s`` are dropped on the next
    ``open``; a timeout of 0 keeps them until ``close``.
    """

    def __init__(
        self,
        optimizer: RouteOptimizer,
        broadcaster: Broadcaster,
        *,
        routing_client: Any = None,
        idle_timeout_s: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._optimizer = optimizer
        self._broadcaster = broadcaster
        self._routing_client = routing_client
        self._idle_timeout_s = max(0.0, float(idle_timeout_s))
        self._clock = clock
        self._lock = Lock()
        self._sessions: dict[tuple[str, str], TrackingSession] = {}
        self._last_seen: dict[tuple[str, str], float] = {}

    @property
    def optimizer(self) -> RouteOptimizer:
        return self._optimizer

    @property
    def broadcaster(self) -> Broadcaster:
        return self._broadcaster

    def open(
        self,
        order_id: str,
        agent_id: str,
        *,
        destination: RoutePoint | None = None,
        context: str = "delivery",
        vehicle_type: str | None = None,
        order_status: str | None = None,
    ) -> TrackingSession:
        """Return the session for the pair, creating it on first use.

        Re-opening refreshes destination, context and ETA inputs but keeps the
        stabilizer history.
        """
        self.sweep_idle()
        key = (order_id, agent_id)
        with self._lock:
            self._last_seen[key] = self._clock()
            session = self._sessions.get(key)
            if session is None:
                session = TrackingSession(
                    order_id=order_id,
                    agent_id=agent_id,
                    optimizer=self._optimizer,
                    broadcaster=self._broadcaster,
                    stabilizer=LocationStabilizer(self._routing_client, session_id=f"{order_id}:{agent_id}"),
                    destination=destination,
                    context=context,
                    vehicle_type=vehicle_type,
                    order_status=order_status,
                )
                self._sessions[key] = session
                log_event("tracking_session_opened", order_id=order_id, agent_id=agent_id)
                return session

            if destination is not None:
                session.destination = destination
            session.context = context
            if vehicle_type is not None:
                session.vehicle_type = vehicle_type
            if order_status is not None:
                session.order_status = order_status
            return session

    def get(self, order_id: str, agent_id: str) -> TrackingSession:
        with self._lock:
            session = self._sessions.get((order_id, agent_id))
        if session is None:
            raise TrackingInputError(
                "session_not_found",
                f"no tracking session for order {order_id!r} and agent {agent_id!r}",
            )
        return session

    def close(self, order_id: str, agent_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop((order_id, agent_id), None)
            self._last_seen.pop((order_id, agent_id), None)
        if session is None:
            return False
        session.stabilizer.clear_history()
        log_event("tracking_session_closed", order_id=order_id, agent_id=agent_id)
        return True

    def sweep_idle(self) -> int:
        """Drop sessions idle for at least the timeout; returns how many went."""
        if self._idle_timeout_s <= 0:
            return 0
        with self._lock:
            cutoff = self._clock() - self._idle_timeout_s
            stale = [key for key, seen in self._last_seen.items() if seen <= cutoff]
            expired = [self._sessions.pop(key) for key in stale if key in self._sessions]
            for key in stale:
                del self._last_seen[key]
        for session in expired:
            session.stabilizer.clear_history()
        if expired:
            log_event("tracking_sessions_expired", count=len(expired), idle_timeout_s=self._idle_timeout_s)
        return len(expired)

    def sessions_for_order(self, order_id: str) -> list[TrackingSession]:
        with self._lock:
            return [s for (oid, _), s in self._sessions.items() if oid == order_id]

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
