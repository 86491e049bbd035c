from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.requests import HTTPConnection
from fastapi.responses import JSONResponse

from .broadcast import Broadcaster
from .errors import TrackingInputError
from .logging_utils import log_context, log_event
from .metrics_store import metrics_snapshot
from .models import (
    LocationUpdateRequest,
    MovementResponse,
    RouteOptions,
    RouteRequest,
    RouteResponse,
    TrackingUpdateResponse,
    route_response,
)
from .route_optimizer import RouteOptimizer
from .routing_client import OSRMRoutingClient, RoutingClient
from .settings import settings
from .tracking_session import SessionRegistry


@dataclass
class TrackingServices:
    routing_client: RoutingClient
    optimizer: RouteOptimizer
    broadcaster: Broadcaster
    registry: SessionRegistry


def build_services(routing_client: RoutingClient, optimizer: RouteOptimizer | None = None) -> TrackingServices:
    optimizer = optimizer or RouteOptimizer.from_settings(routing_client)
    broadcaster = Broadcaster(queue_size=settings.broadcast_queue_size)
    registry = SessionRegistry(
        optimizer,
        broadcaster,
        routing_client=routing_client,
        idle_timeout_s=settings.session_idle_timeout_s,
    )
    return TrackingServices(
        routing_client=routing_client,
        optimizer=optimizer,
        broadcaster=broadcaster,
        registry=registry,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    client = OSRMRoutingClient(
        base_url=settings.osrm_base_url,
        profile=settings.osrm_profile,
        timeout_s=settings.osrm_timeout_s,
        connect_timeout_s=settings.osrm_connect_timeout_s,
    )
    app.state.services = build_services(client)
    yield
    await app.state.services.optimizer.aclose()
    await client.aclose()


app = FastAPI(title="Delivery Tracking Core", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def tracking_services(conn: HTTPConnection) -> TrackingServices:
    services: TrackingServices | None = getattr(conn.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="tracking services not initialised")
    return services


ServicesDep = Annotated[TrackingServices, Depends(tracking_services)]


@app.exception_handler(TrackingInputError)
async def tracking_input_error_handler(_request: Request, exc: TrackingInputError) -> JSONResponse:
    status = 404 if exc.reason_code == "session_not_found" else 422
    return JSONResponse(
        status_code=status,
        content={"detail": exc.message, "reason_code": exc.reason_code},
    )


@app.get("/")
async def root() -> dict[str, str]:
    return {"message": "Delivery tracking backend is running. Visit /docs for the API UI.", "docs": "/docs"}


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/orders/{order_id}/location", response_model=TrackingUpdateResponse)
async def push_location(order_id: str, req: LocationUpdateRequest, services: ServicesDep) -> TrackingUpdateResponse:
    request_id = str(uuid.uuid4())
    t0 = time.perf_counter()

    with log_context(request_id=request_id, order_id=order_id, agent_id=req.agent_id):
        session = services.registry.open(
            order_id,
            req.agent_id,
            destination=req.destination.to_point() if req.destination is not None else None,
            context=req.context,
            vehicle_type=req.vehicle_type,
            order_status=req.order_status,
        )
        update = await session.handle_fix(req.to_raw_fix())

        log_event("location_request", duration_ms=round((time.perf_counter() - t0) * 1000, 2))
    return update.to_response()


@app.get("/orders/{order_id}/agents/{agent_id}/movement")
async def agent_movement(order_id: str, agent_id: str, services: ServicesDep) -> dict[str, Any]:
    session = services.registry.get(order_id, agent_id)
    movement = session.stabilizer.movement_direction()
    last = session.stabilizer.last_fix
    return {
        "order_id": order_id,
        "agent_id": agent_id,
        "movement": (
            MovementResponse(bearing=movement.bearing, speed_mps=movement.speed_mps).model_dump()
            if movement is not None
            else None
        ),
        "last_fix": [last.latitude, last.longitude] if last is not None else None,
        "stats": session.stabilizer.stats(),
    }


@app.delete("/orders/{order_id}/agents/{agent_id}")
async def end_session(order_id: str, agent_id: str, services: ServicesDep) -> dict[str, Any]:
    if not services.registry.close(order_id, agent_id):
        raise TrackingInputError(
            "session_not_found",
            f"no tracking session for order {order_id!r} and agent {agent_id!r}",
        )
    return {"order_id": order_id, "agent_id": agent_id, "closed": True}


@app.post("/route", response_model=RouteResponse)
async def compute_route(req: RouteRequest, services: ServicesDep) -> RouteResponse:
    request_id = str(uuid.uuid4())
    t0 = time.perf_counter()

    with log_context(request_id=request_id):
        route = await services.optimizer.get_route(
            req.start.to_point(),
            req.end.to_point(),
            req.context,
            RouteOptions(profile=req.profile),
        )

        log_event(
            "route_request",
            context=req.context,
            start=req.start.model_dump(),
            end=req.end.model_dump(),
            is_fallback=route.is_fallback,
            duration_ms=round((time.perf_counter() - t0) * 1000, 2),
        )
    return route_response(route)


@app.get("/cache")
async def cache_stats(services: ServicesDep) -> dict[str, Any]:
    return services.optimizer.stats()


@app.delete("/cache")
async def clear_cache(services: ServicesDep) -> dict[str, int]:
    return {"cleared": services.optimizer.clear()}


@app.get("/metrics")
async def metrics() -> dict[str, object]:
    return metrics_snapshot()


@app.websocket("/ws/orders/{order_id}")
async def subscribe_order(websocket: WebSocket, order_id: str, services: ServicesDep) -> None:
    # Subscribe before accepting so no update published after the handshake is missed.
    queue = services.broadcaster.subscribe(order_id)
    await websocket.accept()
    log_event("order_subscriber_connected", order_id=order_id)

    async def forward() -> None:
        while True:
            await websocket.send_json(await queue.get())

    async def wait_disconnect() -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    tasks = {asyncio.create_task(forward()), asyncio.create_task(wait_disconnect())}
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        services.broadcaster.unsubscribe(order_id, queue)
        log_event("order_subscriber_disconnected", order_id=order_id)
