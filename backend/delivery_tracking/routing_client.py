from __future__ import annotations

import math
import time
from typing import Any, Final, Protocol

import httpx

from .geo import is_valid_point, latlng_of
from .logging_utils import log_warning
from .metrics_store import record_call
from .models import ROUTING_PROFILES, RoutePoint, RouteResult


class RoutingClient(Protocol):
    """Road routing adapter. Implementations return ``None`` instead of raising."""

    async def route(self, start: RoutePoint, end: RoutePoint, profile: str = "driving") -> RouteResult | None: ...

    async def snap(self, point: Any, max_distance_m: float) -> RoutePoint | None: ...


_MAX_ERROR_BODY: Final[int] = 240


def _format_osrm_error(resp: httpx.Response) -> str:
    """Best-effort decode of OSRM JSON error payloads."""
    try:
        data = resp.json()
        if isinstance(data, dict):
            code = data.get("code")
            message = data.get("message")
            if code and message:
                return f"OSRM {resp.status_code} {code}: {message}"
            if code:
                return f"OSRM {resp.status_code} {code}"
            if message:
                return f"OSRM {resp.status_code}: {message}"
    except ValueError:
        # not JSON, fall through to text
        pass

    body = (resp.text or "").strip().replace("\n", " ")
    if len(body) > _MAX_ERROR_BODY:
        body = body[:_MAX_ERROR_BODY] + "..."
    if body:
        return f"OSRM {resp.status_code}: {body}"
    return f"OSRM HTTP {resp.status_code}"


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    out = float(value)
    return out if math.isfinite(out) else None


def parse_route_payload(data: dict[str, Any]) -> RouteResult | None:
    """Turn an OSRM ``/route`` body into a RouteResult, or ``None`` if malformed."""
    routes = data.get("routes")
    if not isinstance(routes, list) or not routes or not isinstance(routes[0], dict):
        return None
    route = routes[0]

    distance = _as_float(route.get("distance"))
    duration = _as_float(route.get("duration"))
    if distance is None or duration is None or distance < 0 or duration < 0:
        return None

    geom = route.get("geometry")
    coords = geom.get("coordinates") if isinstance(geom, dict) else None
    if not isinstance(coords, list):
        return None

    out: list[tuple[float, float]] = []
    for pt in coords:
        if not isinstance(pt, (list, tuple)) or len(pt) < 2:
            continue
        lng = _as_float(pt[0])
        lat = _as_float(pt[1])
        if lat is None or lng is None:
            continue
        # GeoJSON is [lon, lat]; results are (lat, lng).
        out.append((lat, lng))
    if len(out) < 2:
        return None

    return RouteResult(coordinates=tuple(out), distance_m=distance, duration_s=duration)


def parse_nearest_payload(data: dict[str, Any]) -> RoutePoint | None:
    waypoints = data.get("waypoints")
    if not isinstance(waypoints, list) or not waypoints or not isinstance(waypoints[0], dict):
        return None
    location = waypoints[0].get("location")
    if not isinstance(location, (list, tuple)) or len(location) < 2:
        return None
    lng = _as_float(location[0])
    lat = _as_float(location[1])
    if lat is None or lng is None:
        return None
    point = RoutePoint(lat=lat, lng=lng)
    return point if is_valid_point(point) else None


class OSRMRoutingClient:
    def __init__(
        self,
        *,
        base_url: str,
        profile: str = "driving",
        timeout_s: float = 10.0,
        connect_timeout_s: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.profile = profile

        # trust_env=False keeps proxy env vars (HTTP_PROXY/HTTPS_PROXY) away
        # from requests to localhost / docker service names.
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_s, connect=connect_timeout_s),
            trust_env=False,
            headers={"accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_json(self, operation: str, url: str, params: dict[str, str]) -> dict[str, Any] | None:
        t0 = time.perf_counter()
        failed = True
        try:
            try:
                resp = await self._client.get(url, params=params)
            except httpx.HTTPError as e:
                # httpx exceptions can stringify to "" (e.g. some timeouts), so include the type.
                log_warning("routing_upstream_error", operation=operation, detail=f"{type(e).__name__}: {e}")
                return None

            if not resp.is_success:
                log_warning("routing_upstream_error", operation=operation, detail=_format_osrm_error(resp))
                return None

            try:
                data = resp.json()
            except ValueError:
                log_warning("routing_upstream_error", operation=operation, detail="malformed JSON body")
                return None

            if not isinstance(data, dict) or data.get("code") != "Ok":
                code = data.get("code") if isinstance(data, dict) else None
                message = data.get("message") if isinstance(data, dict) else None
                log_warning("routing_upstream_error", operation=operation, detail=f"OSRM code={code} message={message}")
                return None

            failed = False
            return data
        finally:
            record_call(
                f"routing.{operation}",
                duration_ms=(time.perf_counter() - t0) * 1000.0,
                failed=failed,
            )

    async def route(self, start: Any, end: Any, profile: str | None = None) -> RouteResult | None:
        profile = profile or self.profile
        if profile not in ROUTING_PROFILES:
            log_warning("routing_profile_unsupported", profile=profile)
            return None
        if not is_valid_point(start) or not is_valid_point(end):
            return None

        slat, slng = latlng_of(start)
        elat, elng = latlng_of(end)
        url = f"{self.base_url}/route/v1/{profile}/{slng},{slat};{elng},{elat}"
        data = await self._get_json(
            "route",
            url,
            {"overview": "full", "geometries": "geojson", "alternatives": "false", "steps": "false"},
        )
        if data is None:
            return None

        result = parse_route_payload(data)
        if result is None:
            log_warning("routing_upstream_error", operation="route", detail="OSRM route payload malformed")
        return result

    async def snap(self, point: Any, max_distance_m: float, profile: str | None = None) -> RoutePoint | None:
        profile = profile or self.profile
        if profile not in ROUTING_PROFILES:
            return None
        if not is_valid_point(point):
            return None
        radius = _as_float(max_distance_m)
        if radius is None or radius <= 0:
            return None

        lat, lng = latlng_of(point)
        url = f"{self.base_url}/nearest/v1/{profile}/{lng},{lat}"
        data = await self._get_json("snap", url, {"number": "1", "radiuses": f"{radius:g}"})
        if data is None:
            return None

        snapped = parse_nearest_payload(data)
        if snapped is None:
            log_warning("routing_upstream_error", operation="snap", detail="OSRM nearest payload malformed")
        return snapped
