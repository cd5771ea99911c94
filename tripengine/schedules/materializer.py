import logging
from datetime import date, datetime, timedelta
from typing import List, Optional, Set

from sqlalchemy.orm import Session

from tripengine.clock import Clock, system_clock
from tripengine.config import settings
from tripengine.exceptions import InvalidDate, InvalidTripStatus, TripNotFound
from tripengine.models import Schedule, Trip
from tripengine.schedules.schemas import Weekday
from tripengine.trips.schemas import TripStatus

logger = logging.getLogger(__name__)


class TripMaterializer:
    """Turns schedules into concrete Trip rows over a sliding window.

    ``materialize`` only adds and flushes; the caller owns the transaction so
    a new schedule, its route and its first trips commit together.
    """

    def __init__(self, db: Session, clock: Clock = system_clock, window_days: Optional[int] = None):
        self.db = db
        self.clock = clock
        self.window_days = window_days or settings.MATERIALIZATION_WINDOW_DAYS

    def materialize(self, schedule: Schedule, anchor: Optional[date] = None) -> List[Trip]:
        """Create the trips a schedule owes, skipping ones that already exist"""
        if schedule.is_recurring:
            days = self.window_dates(schedule, anchor)
        elif schedule.one_time_date is not None:
            days = [schedule.one_time_date]
        else:
            return []

        existing = self._existing_starts(schedule)
        created = []
        for day in days:
            start = datetime.combine(day, schedule.boarding_time)
            if start in existing:
                continue
            trip = self._new_trip(schedule, start)
            existing.add(start)
            created.append(trip)

        if created:
            self.db.flush()
            logger.info("Materialized %d trip(s) for schedule %s", len(created), schedule.id)
        return created

    def window_dates(self, schedule: Schedule, anchor: Optional[date] = None) -> List[date]:
        """Days in [anchor, anchor + window) that fall on an operating weekday"""
        today = self.clock.today()
        anchor = anchor or today
        operating = {Weekday(d) for d in schedule.operating_days or []}
        dates = []
        for offset in range(self.window_days):
            day = anchor + timedelta(days=offset)
            if day < today:
                continue
            if Weekday.of(day) in operating:
                dates.append(day)
        return dates

    def create_occurrence(self, schedule: Schedule, day: date) -> Optional[Trip]:
        """Single trip for one day; None if it already exists"""
        start = datetime.combine(day, schedule.boarding_time)
        if start in self._existing_starts(schedule):
            return None
        trip = self._new_trip(schedule, start)
        self.db.flush()
        return trip

    def reschedule(self, trip_id: int, new_date: date) -> List[Trip]:
        """Move a one-time trip, or re-anchor a recurring schedule's window.

        Recurring schedules drop their SCHEDULED trips that nobody has
        checked in to yet and regenerate the window starting at ``new_date``.
        """
        trip = self.db.get(Trip, trip_id)
        if not trip:
            raise TripNotFound(f"Trip with ID {trip_id} not found")

        if new_date < self.clock.today():
            raise InvalidDate(
                f"Cannot reschedule to {new_date.isoformat()}: date is in the past",
                details={"new_date": new_date.isoformat()},
            )

        if trip.status != TripStatus.SCHEDULED.value:
            raise InvalidTripStatus(
                f"Only scheduled trips can be rescheduled. Status: {trip.status}",
                details={"trip_id": trip.id, "status": trip.status},
            )

        schedule = trip.schedule
        try:
            if schedule is None or not schedule.is_recurring:
                boarding = schedule.boarding_time if schedule else trip.scheduled_start.time()
                trip.scheduled_start = datetime.combine(new_date, boarding)
                if schedule is not None:
                    schedule.one_time_date = new_date
                self.db.commit()
                self.db.refresh(trip)
                logger.info("Trip %s moved to %s", trip.id, trip.scheduled_start.isoformat())
                return [trip]

            removable = self.db.query(Trip).filter(
                Trip.schedule_id == schedule.id,
                Trip.status == TripStatus.SCHEDULED.value,
                ~Trip.attendance_records.any(),
            ).all()
            for stale in removable:
                self.db.delete(stale)
            self.db.flush()

            created = self.materialize(schedule, anchor=new_date)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Schedule %s re-anchored at %s: removed %d, created %d trip(s)",
            schedule.id, new_date.isoformat(), len(removable), len(created),
        )
        return created

    def materialize_active_windows(self) -> int:
        """Top up the window of every active recurring schedule"""
        schedules = self.db.query(Schedule).filter(Schedule.is_active == True).all()
        total = 0
        try:
            for schedule in schedules:
                if schedule.is_recurring:
                    total += len(self.materialize(schedule))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return total

    def _existing_starts(self, schedule: Schedule) -> Set[datetime]:
        if schedule.id is None:
            return set()
        rows = self.db.query(Trip.scheduled_start).filter(Trip.schedule_id == schedule.id).all()
        return {row.scheduled_start for row in rows}

    def _new_trip(self, schedule: Schedule, start: datetime) -> Trip:
        trip = Trip(
            organization_id=schedule.organization_id,
            bus_id=schedule.bus_id,
            driver_id=schedule.driver_id,
            route_id=schedule.route_id,
            schedule_id=schedule.id,
            status=TripStatus.SCHEDULED.value,
            scheduled_start=start,
            distance_covered=0.0,
            estimated_duration=0,
        )
        self.db.add(trip)
        return trip
