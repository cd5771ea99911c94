"""
Routing Module

Wraps the external geospatial routing service and builds ordered stop lists
for buses.

Key Components:
- client.py: RoutingService interface, HTTP client with timeout, disabled client
- synthesizer.py: Route synthesis from depot and assigned passengers with naive-order fallback
- schemas.py: Coordinates, legs, metrics and stops
"""

from .client import RoutingService, HttpRoutingService, DisabledRoutingService, build_routing_service
from .synthesizer import RouteSynthesizer, SynthesizedRoute
from .schemas import Coordinate, RouteLeg, OptimizedRoute, RouteMetrics, Stop

__all__ = [
    "RoutingService",
    "HttpRoutingService",
    "DisabledRoutingService",
    "build_routing_service",
    "RouteSynthesizer",
    "SynthesizedRoute",
    "Coordinate",
    "RouteLeg",
    "OptimizedRoute",
    "RouteMetrics",
    "Stop"
]
