import logging
from concurrent.futures import wait
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from tripengine.config import settings
from tripengine.exceptions import RoutingUnavailable
from tripengine.models import Passenger, Trip, User
from tripengine.notifications.channels import NotifyChannel, audience_user_ids
from tripengine.notifications.dispatcher import SendDispatcher
from tripengine.notifications.schemas import (
    Audience, DeliveryFailure, FanoutReport, NotificationPriority, NotificationType, UserRole
)
from tripengine.routing.client import DisabledRoutingService, RoutingService
from tripengine.routing.schemas import Coordinate
from tripengine.trips.schemas import FanoutSummary

logger = logging.getLogger(__name__)


class NotificationFanout:
    """Turns trip and attendance events into per-recipient sends.

    Event notifications are queued on the dispatcher and the caller gets a
    count back. Broadcasts and emergency alerts wait for every send and
    report which recipients failed. A failed send never stops the others.
    """

    def __init__(
        self,
        db: Session,
        channel: NotifyChannel,
        dispatcher: SendDispatcher,
        routing: Optional[RoutingService] = None,
    ):
        self.db = db
        self.channel = channel
        self.dispatcher = dispatcher
        self.routing = routing or DisabledRoutingService()

    # Trip events
    def notify_trip_started(self, trip: Trip, passengers: Sequence[Passenger]) -> FanoutSummary:
        """Tell the guardian of each boarded passenger the bus has left"""
        bus_number = trip.bus.bus_number if trip.bus else str(trip.bus_id)
        origin = Coordinate(
            lat=trip.current_lat if trip.current_lat is not None else settings.FALLBACK_LAT,
            lng=trip.current_lng if trip.current_lng is not None else settings.FALLBACK_LNG,
        )
        stop_coordinates = self._stop_coordinates(trip)

        recipients = []
        for passenger in passengers:
            if passenger.guardian_id is None:
                continue
            destination = stop_coordinates.get(passenger.id)
            if destination is None and passenger.lat is not None and passenger.lng is not None:
                destination = Coordinate(lat=passenger.lat, lng=passenger.lng)

            self.dispatcher.submit(
                passenger.guardian_id,
                self._trip_started_send(
                    passenger.guardian_id, trip.id, passenger.id, passenger.name,
                    bus_number, origin, destination,
                ),
                NotificationType.TRIP_STARTED.value,
            )
            recipients.append(passenger.guardian_id)

        logger.info("Queued %d trip-started notification(s) for trip %s", len(recipients), trip.id)
        return FanoutSummary(queued=len(recipients), recipients=recipients)

    def notify_trip_completed(
        self,
        trip: Trip,
        passengers: Sequence[Passenger],
        absent_ids: Sequence[int] = (),
    ) -> FanoutSummary:
        """Passengers in ``absent_ids`` get wording that does not claim they rode"""
        bus_number = trip.bus.bus_number if trip.bus else str(trip.bus_id)
        absent = set(absent_ids)

        def message(p: Passenger) -> str:
            if p.id in absent:
                return f"Bus {bus_number} has completed its trip. {p.name} was marked absent for this trip."
            return f"Bus {bus_number} has completed its trip. {p.name} has been dropped off."

        return self._per_guardian(
            passengers,
            NotificationType.TRIP_COMPLETED,
            "Trip Completed",
            message,
            lambda p: {
                "trip_id": trip.id, "passenger_id": p.id, "bus_number": bus_number, "absent": p.id in absent,
            },
        )

    def notify_trip_delayed(
        self,
        trip: Trip,
        passengers: Sequence[Passenger],
        minutes: int,
        reason: Optional[str] = None,
    ) -> FanoutSummary:
        bus_number = trip.bus.bus_number if trip.bus else str(trip.bus_id)
        suffix = f" Reason: {reason}" if reason else ""
        return self._per_guardian(
            passengers,
            NotificationType.ROUTE_DELAYED,
            "Bus Delayed",
            lambda p: f"Bus {bus_number} for {p.name} is running about {minutes} minutes late.{suffix}",
            lambda p: {"trip_id": trip.id, "passenger_id": p.id, "delay_minutes": minutes, "reason": reason},
            priority=NotificationPriority.HIGH,
        )

    def notify_trip_scheduled(self, trip: Trip, passengers: Sequence[Passenger]) -> FanoutSummary:
        """New trip notice for the driver and every guardian on the bus"""
        when = trip.scheduled_start.strftime("%Y-%m-%d %H:%M")
        bus_number = trip.bus.bus_number if trip.bus else str(trip.bus_id)
        metadata = {"trip_id": trip.id, "scheduled_start": trip.scheduled_start.isoformat()}

        recipients = []
        driver_user_id = trip.driver.user_id if trip.driver else None
        if driver_user_id is not None:
            self._queue(
                driver_user_id, NotificationType.TRIP_SCHEDULED, "New Trip Scheduled",
                f"You are scheduled to drive bus {bus_number} at {when}.", metadata,
            )
            recipients.append(driver_user_id)

        summary = self._per_guardian(
            passengers,
            NotificationType.TRIP_SCHEDULED,
            "New Trip Scheduled",
            lambda p: f"Bus {bus_number} will pick up {p.name} on {when}.",
            lambda p: dict(metadata, passenger_id=p.id),
        )
        recipients.extend(summary.recipients)
        return FanoutSummary(queued=len(recipients), recipients=recipients)

    # Attendance events
    def notify_attendance(self, trip: Trip, passenger: Passenger, status: str) -> FanoutSummary:
        """Boarded, absent or dropped notice for one passenger's guardian"""
        bus_number = trip.bus.bus_number if trip.bus else str(trip.bus_id)
        if status == "PRESENT":
            kind, title, text = (
                NotificationType.PASSENGER_BOARDED, "Passenger Boarded",
                f"{passenger.name} has boarded bus {bus_number}.",
            )
        elif status == "ABSENT":
            kind, title, text = (
                NotificationType.PASSENGER_ABSENT, "Passenger Absent",
                f"{passenger.name} was marked absent for bus {bus_number}.",
            )
        else:
            kind, title, text = (
                NotificationType.PASSENGER_DROPPED, "Passenger Dropped Off",
                f"{passenger.name} has been dropped off by bus {bus_number}.",
            )
        return self._per_guardian(
            [passenger], kind, title,
            lambda p: text,
            lambda p: {"trip_id": trip.id, "passenger_id": p.id},
        )

    # Organization-wide messages
    def broadcast(
        self,
        organization_id: int,
        title: str,
        message: str,
        audience: Audience = Audience.ALL,
        sender_id: Optional[int] = None,
    ) -> FanoutReport:
        user_ids = audience_user_ids(self.db, organization_id, audience)
        metadata = {"audience": audience.value, "sender_id": sender_id}
        return self._deliver_and_wait(
            user_ids, NotificationType.BROADCAST, title, message, metadata, NotificationPriority.NORMAL
        )

    def emergency_alert(
        self,
        organization_id: int,
        message: str,
        sender_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> FanoutReport:
        admin_ids = [
            row.id for row in self.db.query(User.id).filter(
                User.organization_id == organization_id,
                User.role == UserRole.ADMIN.value,
            ).order_by(User.id).all()
        ]
        payload = dict(metadata or {}, sender_id=sender_id)
        report = self._deliver_and_wait(
            admin_ids, NotificationType.EMERGENCY_ALERT, "EMERGENCY ALERT", message, payload,
            NotificationPriority.CRITICAL,
        )
        logger.warning(
            "Emergency alert for organization %s delivered to %d/%d admin(s)",
            organization_id, report.delivered, report.attempted,
        )
        return report

    # Internals
    def _per_guardian(self, passengers, kind, title, message_for, metadata_for, priority=NotificationPriority.NORMAL):
        recipients = []
        for passenger in passengers:
            if passenger.guardian_id is None:
                continue
            self._queue(
                passenger.guardian_id, kind, title, message_for(passenger),
                metadata_for(passenger), priority,
            )
            recipients.append(passenger.guardian_id)
        return FanoutSummary(queued=len(recipients), recipients=recipients)

    def _queue(self, user_id, kind, title, message, metadata, priority=NotificationPriority.NORMAL):
        channel = self.channel

        def send():
            channel.send_to_user(user_id, title, message, metadata, kind, priority)

        return self.dispatcher.submit(user_id, send, kind.value)

    def _deliver_and_wait(self, user_ids: List[int], kind, title, message, metadata, priority) -> FanoutReport:
        futures = {self._queue(uid, kind, title, message, metadata, priority): uid for uid in user_ids}
        wait(list(futures))

        failures = []
        for future, user_id in futures.items():
            error = future.exception()
            if error is not None:
                failures.append(DeliveryFailure(user_id=user_id, notification_type=kind.value, error=str(error)))

        delivered = len(user_ids) - len(failures)
        if failures:
            logger.warning("%s reached %d of %d recipient(s)", kind.value, delivered, len(user_ids))
        return FanoutReport(attempted=len(user_ids), delivered=delivered, failures=failures)

    def _trip_started_send(self, guardian_id, trip_id, passenger_id, passenger_name, bus_number, origin, destination):
        channel = self.channel
        routing = self.routing

        def send():
            eta_minutes, distance_km = settings.DEFAULT_ETA_MINUTES, 0.0
            if destination is not None:
                try:
                    metrics = routing.route_metrics(origin, [], destination)
                    eta_minutes, distance_km = metrics.duration_minutes, metrics.distance_km
                except RoutingUnavailable as e:
                    logger.warning("ETA lookup for passenger %s failed, using default: %s", passenger_id, e)

            channel.send_to_user(
                guardian_id,
                "Trip Started",
                f"Bus {bus_number} has started its trip with {passenger_name} on board. "
                f"Estimated arrival in {eta_minutes} minutes ({distance_km:.1f} km).",
                {
                    "trip_id": trip_id,
                    "passenger_id": passenger_id,
                    "bus_number": bus_number,
                    "eta_minutes": eta_minutes,
                    "distance_km": distance_km,
                },
                NotificationType.TRIP_STARTED,
                NotificationPriority.NORMAL,
            )

        return send

    @staticmethod
    def _stop_coordinates(trip: Trip) -> Dict[int, Coordinate]:
        stops = trip.route.stops if trip.route and trip.route.stops else []
        coordinates = {}
        for stop in stops:
            if stop.get("passenger_id") is not None and stop.get("lat") is not None and stop.get("lng") is not None:
                coordinates[stop["passenger_id"]] = Coordinate(lat=stop["lat"], lng=stop["lng"])
        return coordinates
