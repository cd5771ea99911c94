import logging

from sqlalchemy.orm import Session

from tripengine.clock import Clock, system_clock
from tripengine.exceptions import InvalidTripStatus, TripNotFound
from tripengine.models import BusLocationHistory, Trip
from tripengine.notifications.channels import LiveUpdateChannel, NullLiveChannel
from tripengine.trips.schemas import LocationAck, LocationUpdate, TripStatus

logger = logging.getLogger(__name__)


class LocationTracker:
    """Stores driver position samples and pushes them to live viewers"""

    def __init__(self, db: Session, live_channel: LiveUpdateChannel = None, clock: Clock = system_clock):
        self.db = db
        self.live_channel = live_channel or NullLiveChannel()
        self.clock = clock

    def record(self, trip_id: int, update: LocationUpdate) -> LocationAck:
        trip = self.db.get(Trip, trip_id)
        if not trip:
            raise TripNotFound(f"Trip with ID {trip_id} not found")
        if trip.status != TripStatus.ONGOING.value:
            raise InvalidTripStatus(
                f"Location updates require an ongoing trip. Current status: {trip.status}",
                details={"trip_id": trip.id, "status": trip.status},
            )

        now = self.clock.now()
        trip.current_lat = update.lat
        trip.current_lng = update.lng
        trip.last_location_time = now
        self.db.add(BusLocationHistory(
            trip_id=trip.id,
            lat=update.lat,
            lng=update.lng,
            speed=update.speed,
            heading=update.heading,
            accuracy=update.accuracy,
            recorded_at=now,
        ))
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        payload = {
            "tripId": trip.id,
            "busId": trip.bus_id,
            "lat": update.lat,
            "lng": update.lng,
            "speed": update.speed,
            "heading": update.heading,
            "timestamp": now.isoformat(),
        }
        for topic in (f"trip-{trip.id}", f"bus-{trip.bus_id}"):
            try:
                self.live_channel.publish(topic, "location-update", payload)
            except Exception as e:
                logger.warning("Live location publish on %s failed: %s", topic, e)

        return LocationAck(success=True, trip_id=trip.id, recorded_at=now)
