from pydantic import BaseModel, Field
from typing import List, Optional

class Coordinate(BaseModel):
    """A point on the map"""
    lat: float
    lng: float

class RouteLeg(BaseModel):
    """Travel between two consecutive stops in visiting order"""
    distance_m: float = 0
    duration_s: float = 0

class OptimizedRoute(BaseModel):
    """Visiting order chosen by the routing service"""
    order: List[int]  # Indices into the submitted waypoints
    legs: List[RouteLeg] = []

    @property
    def total_distance_km(self) -> float:
        return round(sum(leg.distance_m for leg in self.legs) / 1000, 2)

    @property
    def total_duration_minutes(self) -> int:
        return round(sum(leg.duration_s for leg in self.legs) / 60)

class RouteMetrics(BaseModel):
    """Total distance and duration across a fixed sequence of stops"""
    distance_km: float = 0
    duration_minutes: int = 0

class Stop(BaseModel):
    """One stop of a route; depot stops carry no passenger"""
    order: int = Field(..., ge=0)
    name: str
    address: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    estimated_time: str  # HH:MM
    passenger_id: Optional[int] = None

    @property
    def coordinate(self) -> Optional[Coordinate]:
        if self.lat is None or self.lng is None:
            return None
        return Coordinate(lat=self.lat, lng=self.lng)
