import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tripengine.clock import Clock, system_clock
from tripengine.config import settings
from tripengine.exceptions import (
    BoardingIncomplete, BusAlreadyOnTrip, InvalidDuration, InvalidTripStatus, RoutingUnavailable, TripNotFound
)
from tripengine.models import AttendanceRecord, Organization, Passenger, Trip
from tripengine.notifications.fanout import NotificationFanout
from tripengine.routing.client import RoutingService
from tripengine.routing.schemas import Stop
from tripengine.trips.locks import BusLockRegistry, bus_locks
from tripengine.trips.schemas import ActiveTrip, FanoutSummary, TripResponse, TripStatus

logger = logging.getLogger(__name__)


@dataclass
class TripCompletion:
    trip: Trip
    duration_minutes: float
    duration_anomalous: bool
    metrics_degraded: bool
    notifications: FanoutSummary


class TripLifecycleController:
    """Moves trips SCHEDULED -> ONGOING -> COMPLETED.

    Start and end hold the bus lock for the whole check-and-write, and the
    partial unique index on ONGOING trips backs it up across processes.
    """

    def __init__(
        self,
        db: Session,
        fanout: NotificationFanout,
        routing: RoutingService,
        clock: Clock = system_clock,
        locks: BusLockRegistry = bus_locks,
    ):
        self.db = db
        self.fanout = fanout
        self.routing = routing
        self.clock = clock
        self.locks = locks

    def get_trip(self, trip_id: int) -> Trip:
        trip = self.db.get(Trip, trip_id)
        if not trip:
            raise TripNotFound(f"Trip with ID {trip_id} not found")
        return trip

    def start(self, trip_id: int):
        """Start a trip once every assigned passenger is accounted for"""
        bus_id = self.get_trip(trip_id).bus_id

        with self.locks.hold(bus_id):
            # Read what other requests committed while we waited
            self.db.expire_all()
            trip = self.get_trip(trip_id)

            if trip.status != TripStatus.SCHEDULED.value:
                raise InvalidTripStatus(
                    f"Trip cannot be started. Current status: {trip.status}",
                    details={"trip_id": trip.id, "status": trip.status},
                )

            ongoing = self.db.query(Trip).filter(
                Trip.bus_id == trip.bus_id,
                Trip.status == TripStatus.ONGOING.value,
                Trip.id != trip.id,
            ).first()
            if ongoing:
                raise BusAlreadyOnTrip(
                    f"Bus {trip.bus_id} already has an ongoing trip",
                    details={"bus_id": trip.bus_id, "ongoing_trip_id": ongoing.id},
                )

            pending = self.pending_passengers(trip)
            if pending:
                raise BoardingIncomplete([p.name for p in pending])

            now = self.clock.now()
            depot = self.db.get(Organization, trip.organization_id)
            if depot is not None and depot.has_depot:
                trip.current_lat, trip.current_lng = depot.lat, depot.lng
            else:
                trip.current_lat, trip.current_lng = settings.FALLBACK_LAT, settings.FALLBACK_LNG
            trip.actual_start = now
            trip.last_location_time = now
            trip.status = TripStatus.ONGOING.value

            try:
                self.db.commit()
            except IntegrityError as e:
                self.db.rollback()
                raise BusAlreadyOnTrip(
                    f"Bus {bus_id} already has an ongoing trip",
                    details={"bus_id": bus_id},
                ) from e
            self.db.refresh(trip)

        logger.info("Trip %s started on bus %s", trip.id, trip.bus_id)
        present = self._passengers_with_status(trip, "PRESENT")
        summary = self.fanout.notify_trip_started(trip, present)
        return trip, summary

    def end(self, trip_id: int, distance_covered: Optional[float] = None) -> TripCompletion:
        """Finish a running trip and record distance and duration"""
        bus_id = self.get_trip(trip_id).bus_id

        with self.locks.hold(bus_id):
            self.db.expire_all()
            trip = self.get_trip(trip_id)

            if trip.status != TripStatus.ONGOING.value:
                raise InvalidTripStatus(
                    f"Trip is not ongoing. Current status: {trip.status}",
                    details={"trip_id": trip.id, "status": trip.status},
                )

            now = self.clock.now()
            elapsed_minutes = (now - trip.actual_start).total_seconds() / 60
            if elapsed_minutes < 0:
                raise InvalidDuration(
                    "Trip end time is before its start time",
                    details={"trip_id": trip.id, "actual_start": trip.actual_start.isoformat()},
                )

            anomalous = elapsed_minutes > settings.MAX_TRIP_DURATION_HOURS * 60
            if anomalous:
                logger.warning(
                    "Trip %s ran %.0f minutes, longer than %s hours",
                    trip.id, elapsed_minutes, settings.MAX_TRIP_DURATION_HOURS,
                )

            distance_km, duration_minutes, degraded = self._final_metrics(trip, distance_covered)
            trip.distance_covered = distance_km
            trip.estimated_duration = duration_minutes
            trip.actual_end = now
            trip.status = TripStatus.COMPLETED.value

            try:
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            self.db.refresh(trip)

        logger.info("Trip %s completed: %.2f km in %.0f minutes", trip.id, trip.distance_covered, elapsed_minutes)
        absent_ids = [p.id for p in self._passengers_with_status(trip, "ABSENT")]
        summary = self.fanout.notify_trip_completed(trip, self.assigned_passengers(trip), absent_ids)
        return TripCompletion(
            trip=trip,
            duration_minutes=round(elapsed_minutes, 1),
            duration_anomalous=anomalous,
            metrics_degraded=degraded,
            notifications=summary,
        )

    def report_delay(self, trip_id: int, minutes: int, reason: Optional[str] = None) -> FanoutSummary:
        trip = self.get_trip(trip_id)
        if trip.status not in (TripStatus.SCHEDULED.value, TripStatus.ONGOING.value):
            raise InvalidTripStatus(
                f"Cannot report a delay for a trip with status {trip.status}",
                details={"trip_id": trip.id, "status": trip.status},
            )
        logger.info("Trip %s delayed by %d minutes", trip.id, minutes)
        return self.fanout.notify_trip_delayed(trip, self.assigned_passengers(trip), minutes, reason)

    def active_trips(self, organization_id: int) -> List[ActiveTrip]:
        trips = self.db.query(Trip).filter(
            Trip.organization_id == organization_id,
            Trip.status == TripStatus.ONGOING.value,
        ).order_by(Trip.actual_start).all()

        result = []
        for trip in trips:
            driver_user = trip.driver.user if trip.driver else None
            result.append(ActiveTrip(
                trip=TripResponse.model_validate(trip),
                bus_number=trip.bus.bus_number,
                driver_name=driver_user.name if driver_user else None,
                route_name=trip.route.name if trip.route else None,
                stops=list(trip.route.stops or []) if trip.route else [],
            ))
        return result

    def history(
        self,
        organization_id: int,
        bus_id: Optional[int] = None,
        driver_id: Optional[int] = None,
        status: Optional[TripStatus] = None,
        limit: int = 50,
    ) -> List[Trip]:
        query = self.db.query(Trip).filter(Trip.organization_id == organization_id)
        if bus_id is not None:
            query = query.filter(Trip.bus_id == bus_id)
        if driver_id is not None:
            query = query.filter(Trip.driver_id == driver_id)
        if status is not None:
            query = query.filter(Trip.status == status.value)
        return query.order_by(Trip.scheduled_start.desc(), Trip.id.desc()).limit(limit).all()

    def assigned_passengers(self, trip: Trip) -> List[Passenger]:
        return self.db.query(Passenger).filter(
            Passenger.bus_id == trip.bus_id,
            Passenger.is_active == True,
        ).order_by(Passenger.id).all()

    def pending_passengers(self, trip: Trip) -> List[Passenger]:
        """Assigned passengers with no PRESENT or ABSENT record on this trip"""
        settled = {
            row.passenger_id for row in self.db.query(AttendanceRecord.passenger_id).filter(
                AttendanceRecord.trip_id == trip.id,
                AttendanceRecord.status.in_(["PRESENT", "ABSENT"]),
            ).all()
        }
        return [p for p in self.assigned_passengers(trip) if p.id not in settled]

    def _passengers_with_status(self, trip: Trip, status: str) -> List[Passenger]:
        return self.db.query(Passenger).join(
            AttendanceRecord, AttendanceRecord.passenger_id == Passenger.id
        ).filter(
            AttendanceRecord.trip_id == trip.id,
            AttendanceRecord.status == status,
        ).order_by(Passenger.id).all()

    def _final_metrics(self, trip: Trip, reported_distance: Optional[float]):
        """Distance and duration for the whole route, or the degraded fallback"""
        stops = [Stop(**s) for s in (trip.route.stops or [])] if trip.route else []
        points = [s.coordinate for s in stops if s.coordinate is not None]

        if len(points) >= 2:
            try:
                metrics = self.routing.route_metrics(points[0], points[1:-1], points[-1])
                if metrics.distance_km > 0:
                    return metrics.distance_km, metrics.duration_minutes, False
                logger.warning("Routing service returned zero distance for trip %s", trip.id)
            except RoutingUnavailable as e:
                logger.warning("Route metrics for trip %s unavailable: %s", trip.id, e)
        else:
            logger.warning("Trip %s route has fewer than two located stops; metrics degraded", trip.id)

        return (reported_distance or 0.0), 0, True
