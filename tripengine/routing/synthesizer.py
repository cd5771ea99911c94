import logging
from dataclasses import dataclass
from datetime import time
from typing import List, Optional, Sequence

from tripengine.exceptions import RoutingUnavailable
from tripengine.models import Organization, Passenger
from tripengine.routing.client import RoutingService
from tripengine.routing.schemas import Coordinate, OptimizedRoute, Stop

logger = logging.getLogger(__name__)


def format_time(value: time) -> str:
    return value.strftime("%H:%M")


def add_minutes(value: time, minutes: int) -> time:
    """Add minutes to a time of day, wrapping past midnight"""
    total = (value.hour * 60 + value.minute + minutes) % (24 * 60)
    return time(total // 60, total % 60)


@dataclass
class SynthesizedRoute:
    stops: List[Stop]
    optimized: bool


class RouteSynthesizer:
    """Builds the ordered stop list for a bus from its assigned passengers"""

    def __init__(self, routing: RoutingService):
        self.routing = routing

    def synthesize(
        self,
        passengers: Sequence[Passenger],
        departure_time: time,
        depot: Optional[Organization] = None,
        return_time: Optional[time] = None,
    ) -> SynthesizedRoute:
        """Depot origin, passenger stops in visiting order, depot return.

        Never raises on routing trouble: the passengers keep their given
        order and every passenger stop gets the departure time.
        """
        has_depot = depot is not None and depot.has_depot
        optimized = self._try_optimize(passengers, depot if has_depot else None)

        if optimized is not None:
            ordered = [passengers[i] for i in optimized.order]
            arrival_times = self._arrival_times(optimized, departure_time, len(ordered))
        else:
            ordered = list(passengers)
            arrival_times = [format_time(departure_time)] * len(ordered)

        stops: List[Stop] = []
        if has_depot:
            stops.append(Stop(
                order=0,
                name=depot.name or "Depot",
                address=depot.address,
                lat=depot.lat,
                lng=depot.lng,
                estimated_time=format_time(departure_time),
                passenger_id=None,
            ))

        for passenger, eta in zip(ordered, arrival_times):
            stops.append(Stop(
                order=len(stops),
                name=passenger.name,
                address=passenger.address,
                lat=passenger.lat,
                lng=passenger.lng,
                estimated_time=eta,
                passenger_id=passenger.id,
            ))

        if has_depot:
            stops.append(Stop(
                order=len(stops),
                name=f"{depot.name or 'Depot'} (Return)",
                address=depot.address,
                lat=depot.lat,
                lng=depot.lng,
                estimated_time=format_time(return_time or departure_time),
                passenger_id=None,
            ))

        return SynthesizedRoute(stops=stops, optimized=optimized is not None)

    def _try_optimize(
        self,
        passengers: Sequence[Passenger],
        depot: Optional[Organization],
    ) -> Optional[OptimizedRoute]:
        if any(p.lat is None or p.lng is None for p in passengers):
            logger.warning("Passenger without coordinates on route; using natural order")
            return None

        waypoints = [Coordinate(lat=p.lat, lng=p.lng) for p in passengers]
        origin = Coordinate(lat=depot.lat, lng=depot.lng) if depot else None

        try:
            result = self.routing.optimize(origin, waypoints, None)
        except RoutingUnavailable as e:
            logger.warning("Route optimization failed, using natural order: %s", e)
            return None

        if sorted(result.order) != list(range(len(passengers))):
            logger.warning(
                "Routing service returned unusable order %s for %d passengers; using natural order",
                result.order, len(passengers),
            )
            return None
        return result

    @staticmethod
    def _arrival_times(optimized: OptimizedRoute, departure_time: time, count: int) -> List[str]:
        arrival_times = []
        elapsed = 0
        for idx in range(count):
            if idx < len(optimized.legs):
                elapsed += round(optimized.legs[idx].duration_s / 60)
            arrival_times.append(format_time(add_minutes(departure_time, elapsed)))
        return arrival_times
