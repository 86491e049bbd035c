from __future__ import annotations

from typing import Any

import pytest
from fastapi.testclient import TestClient

from delivery_tracking.main import TrackingServices, app, build_services, tracking_services
from delivery_tracking.metrics_store import reset_metrics
from delivery_tracking.models import RouteResult
from delivery_tracking.route_optimizer import RouteOptimizer
from delivery_tracking.settings import settings


class FakeRoutingClient:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.route_calls: list[tuple[Any, Any, str]] = []

    async def route(self, start, end, profile="driving"):
        self.route_calls.append((start, end, profile))
        if self.fail:
            return None
        return RouteResult(
            coordinates=((start.lat, start.lng), (36.85, 10.184), (end.lat, end.lng)),
            distance_m=12_400.0,
            duration_s=1_080.0,
        )

    async def snap(self, point, max_distance_m):
        return None


async def _no_sleep(_seconds: float) -> None:
    return None


def _install(client: FakeRoutingClient) -> TrackingServices:
    services = build_services(client, RouteOptimizer(client, sleep=_no_sleep))
    app.dependency_overrides[tracking_services] = lambda: services
    return services


@pytest.fixture(autouse=True)
def _fast_settings(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr(settings, "route_debounce_ms", 0)
    monkeypatch.setattr(settings, "stabilizer_snap_to_road", False)
    reset_metrics()
    yield
    app.dependency_overrides.clear()


def _location(agent_id: str = "agent-7", **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "agent_id": agent_id,
        "latitude": 36.8065,
        "longitude": 10.1815,
        "accuracy": 9.0,
        "destination": {"lat": 36.9027, "lng": 10.1875},
    }
    payload.update(extra)
    return payload


def test_health() -> None:
    _install(FakeRoutingClient())
    with TestClient(app) as client:
        resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_push_location_returns_stabilized_fix_and_route() -> None:
    fake = FakeRoutingClient()
    _install(fake)
    with TestClient(app) as client:
        resp = client.post("/orders/order-1/location", json=_location(vehicle_type="motorcycle", order_status="ready"))

    assert resp.status_code == 200
    body = resp.json()
    assert body["order_id"] == "order-1"
    assert body["agent_id"] == "agent-7"
    assert body["fix"]["latitude"] == 36.8065
    assert body["fix"]["is_snapped_to_road"] is False
    assert body["route"]["is_fallback"] is False
    assert body["route"]["coordinates"][0] == [36.8065, 10.1815]
    assert body["eta_seconds"] == 1_080.0
    assert isinstance(body["estimated_total_minutes"], int)
    assert len(fake.route_calls) == 1


def test_push_location_rejects_out_of_range_latitude() -> None:
    fake = FakeRoutingClient()
    _install(fake)
    with TestClient(app) as client:
        resp = client.post("/orders/order-1/location", json=_location(latitude=95.0))
    assert resp.status_code == 422
    assert fake.route_calls == []


def test_movement_and_session_lifecycle() -> None:
    _install(FakeRoutingClient())
    with TestClient(app) as client:
        missing = client.get("/orders/order-2/agents/agent-7/movement")
        assert missing.status_code == 404
        assert missing.json()["reason_code"] == "session_not_found"

        client.post("/orders/order-2/location", json=_location())
        client.post("/orders/order-2/location", json=_location(latitude=36.8165))

        resp = client.get("/orders/order-2/agents/agent-7/movement")
        assert resp.status_code == 200
        body = resp.json()
        assert body["stats"]["history_size"] == 2
        assert 0.0 <= body["movement"]["bearing"] < 360.0
        assert body["movement"]["speed_mps"] >= 0.0

        closed = client.delete("/orders/order-2/agents/agent-7")
        assert closed.status_code == 200
        assert closed.json()["closed"] is True
        assert client.delete("/orders/order-2/agents/agent-7").status_code == 404


def test_route_endpoint_uses_cache_and_reports_fallback() -> None:
    fake = FakeRoutingClient()
    services = _install(fake)
    payload = {"start": {"lat": 36.8065, "lng": 10.1815}, "end": {"lat": 36.9027, "lng": 10.1875}}
    with TestClient(app) as client:
        first = client.post("/route", json=payload)
        second = client.post("/route", json=payload)
        stats = client.get("/cache").json()
        metrics = client.get("/metrics").json()
        cleared = client.delete("/cache").json()

    assert first.status_code == 200
    assert first.json() == second.json()
    assert first.json()["distance_text"] == "12.4km"
    assert first.json()["duration_text"] == "18m 0s"
    assert len(fake.route_calls) == 1
    assert stats["cache"]["size"] == 1
    assert stats["cache"]["hits"] == 1
    assert metrics["counters"]["route_cache_hit"] == 1
    assert metrics["counters"]["route_upstream_fetch"] == 1
    assert cleared == {"cleared": 1}
    assert len(services.optimizer.cache) == 0


def test_route_endpoint_falls_back_when_upstream_fails() -> None:
    _install(FakeRoutingClient(fail=True))
    payload = {
        "start": {"lat": 36.8065, "lng": 10.1815},
        "end": {"lat": 36.9027, "lng": 10.1875},
        "context": "customer",
    }
    with TestClient(app) as client:
        resp = client.post("/route", json=payload)

    assert resp.status_code == 200
    body = resp.json()
    assert body["is_fallback"] is True
    assert len(body["coordinates"]) == 2


def test_route_endpoint_rejects_unknown_context() -> None:
    fake = FakeRoutingClient()
    _install(fake)
    payload = {
        "start": {"lat": 36.8065, "lng": 10.1815},
        "end": {"lat": 36.9027, "lng": 10.1875},
        "context": "pickup",
    }
    with TestClient(app) as client:
        resp = client.post("/route", json=payload)
    assert resp.status_code == 422
    assert fake.route_calls == []


def test_websocket_receives_tracking_updates() -> None:
    services = _install(FakeRoutingClient())
    with TestClient(app) as client:
        with client.websocket_connect("/ws/orders/order-ws") as ws:
            assert services.broadcaster.subscriber_count("order-ws") == 1
            resp = client.post("/orders/order-ws/location", json=_location())
            assert resp.status_code == 200
            event = ws.receive_json()

    assert event["type"] == "tracking_update"
    assert event["order_id"] == "order-ws"
    assert event["agent_id"] == "agent-7"
    assert event["route"]["distance_m"] == 12_400.0
