"""Clients for the geospatial routing service."""

import logging
from typing import List, Optional

import httpx

from tripengine.exceptions import RoutingUnavailable
from tripengine.routing.schemas import Coordinate, OptimizedRoute, RouteMetrics

logger = logging.getLogger(__name__)


class RoutingService:
    """Interface every routing backend implements.

    Both calls may fail or time out; implementations raise
    ``RoutingUnavailable`` and callers fall back.
    """

    def optimize(
        self,
        origin: Optional[Coordinate],
        waypoints: List[Coordinate],
        destination: Optional[Coordinate] = None,
    ) -> OptimizedRoute:
        raise NotImplementedError

    def route_metrics(
        self,
        origin: Coordinate,
        waypoints: List[Coordinate],
        destination: Coordinate,
    ) -> RouteMetrics:
        raise NotImplementedError


class DisabledRoutingService(RoutingService):
    """Used when no routing backend is configured"""

    def optimize(self, origin, waypoints, destination=None) -> OptimizedRoute:
        raise RoutingUnavailable("Routing service not configured")

    def route_metrics(self, origin, waypoints, destination) -> RouteMetrics:
        raise RoutingUnavailable("Routing service not configured")


class HttpRoutingService(RoutingService):
    """JSON-over-HTTP routing backend with a hard request timeout"""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"X-Api-Key": api_key} if api_key else {}
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds, connect=min(timeout_seconds, 2.0)),
            transport=transport,
        )

    def close(self):
        self._client.close()

    def optimize(
        self,
        origin: Optional[Coordinate],
        waypoints: List[Coordinate],
        destination: Optional[Coordinate] = None,
    ) -> OptimizedRoute:
        if not waypoints:
            raise RoutingUnavailable("Waypoints are required for optimization")
        payload = {
            "origin": origin.model_dump() if origin else None,
            "waypoints": [w.model_dump() for w in waypoints],
            "destination": destination.model_dump() if destination else None,
        }
        data = self._post("/optimize", payload)
        try:
            return OptimizedRoute(**data)
        except (TypeError, ValueError) as e:
            raise RoutingUnavailable(f"Malformed optimize response: {e}") from e

    def route_metrics(
        self,
        origin: Coordinate,
        waypoints: List[Coordinate],
        destination: Coordinate,
    ) -> RouteMetrics:
        payload = {
            "origin": origin.model_dump(),
            "waypoints": [w.model_dump() for w in waypoints],
            "destination": destination.model_dump(),
        }
        data = self._post("/metrics", payload)
        try:
            return RouteMetrics(**data)
        except (TypeError, ValueError) as e:
            raise RoutingUnavailable(f"Malformed metrics response: {e}") from e

    def _post(self, path: str, payload: dict) -> dict:
        try:
            response = self._client.post(path, json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise RoutingUnavailable(f"Routing service timed out on {path}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise RoutingUnavailable(f"Routing service request to {path} failed: {e}") from e
        if not isinstance(data, dict):
            raise RoutingUnavailable(f"Unexpected routing response type from {path}")
        return data


def build_routing_service(base_url: str, api_key: Optional[str], timeout_seconds: float) -> RoutingService:
    if not base_url:
        logger.info("ROUTING_BASE_URL not set; route optimization disabled")
        return DisabledRoutingService()
    return HttpRoutingService(base_url, api_key=api_key, timeout_seconds=timeout_seconds)
