import logging
from datetime import date
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from tripengine.clock import Clock, system_clock
from tripengine.exceptions import (
    BusNotFound, DriverAssignedElsewhere, InvalidDate, NoDriverAssigned,
    NoPassengersAssigned, ScheduleNotFound
)
from tripengine.models import Bus, Driver, Organization, Passenger, Route, Schedule, Trip
from tripengine.notifications.fanout import NotificationFanout
from tripengine.routing.synthesizer import RouteSynthesizer, format_time
from tripengine.schedules.materializer import TripMaterializer
from tripengine.schedules.schemas import (
    OneTimeRecurrence, ScheduleCreate, ScheduleUpdate, Weekday
)
from tripengine.trips.schemas import TripStatus

logger = logging.getLogger(__name__)


class ScheduleService:
    """Schedule store: creates schedules with their route and first trips"""

    def __init__(
        self,
        db: Session,
        synthesizer: RouteSynthesizer,
        materializer: TripMaterializer,
        fanout: NotificationFanout,
        clock: Clock = system_clock,
    ):
        self.db = db
        self.synthesizer = synthesizer
        self.materializer = materializer
        self.fanout = fanout
        self.clock = clock

    def create_schedule(self, data: ScheduleCreate) -> Tuple[Schedule, Route, List[Trip]]:
        """Synthesize the route and persist route, schedule and trips together"""
        bus = self.db.get(Bus, data.bus_id)
        if not bus:
            raise BusNotFound(f"Bus with ID {data.bus_id} not found")

        operating_days, one_time_date = self._recurrence_fields(data.recurrence)
        driver = self._resolve_driver(bus, data.driver_id)

        passengers = self.db.query(Passenger).filter(
            Passenger.bus_id == bus.id,
            Passenger.is_active == True,
        ).order_by(Passenger.id).all()
        if not passengers:
            raise NoPassengersAssigned(
                f"No passengers assigned to bus {bus.bus_number}",
                details={"bus_id": bus.id},
            )

        depot = self.db.get(Organization, bus.organization_id)
        synthesized = self.synthesizer.synthesize(
            passengers, data.boarding_time, depot=depot, return_time=data.return_time
        )

        try:
            route = Route(
                organization_id=bus.organization_id,
                bus_id=bus.id,
                name=f"Bus {bus.bus_number} Route",
                description=f"{len(passengers)} passenger stop(s)",
                stops=[stop.model_dump() for stop in synthesized.stops],
                start_time=format_time(data.boarding_time),
                end_time=format_time(data.return_time) if data.return_time else None,
                is_optimized=synthesized.optimized,
            )
            self.db.add(route)
            self.db.flush()

            schedule = Schedule(
                organization_id=bus.organization_id,
                route_id=route.id,
                bus_id=bus.id,
                driver_id=driver.id,
                boarding_time=data.boarding_time,
                return_time=data.return_time,
                operating_days=operating_days,
                one_time_date=one_time_date,
                is_active=True,
            )
            self.db.add(schedule)
            self.db.flush()

            for passenger in passengers:
                passenger.route_id = route.id

            trips = self.materializer.materialize(schedule)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(schedule)
        self.db.refresh(route)
        logger.info(
            "Schedule %s created for bus %s with %d trip(s), route %s",
            schedule.id, bus.id, len(trips), "optimized" if route.is_optimized else "in natural order",
        )
        return schedule, route, trips

    def update_schedule(self, schedule_id: int, data: ScheduleUpdate) -> Schedule:
        """Partial update; trips already materialized are left as they are"""
        schedule = self.get_schedule(schedule_id)
        changes = data.model_dump(exclude_unset=True)

        if "driver_id" in changes and changes["driver_id"] is not None:
            schedule.driver_id = self._resolve_driver(schedule.bus, changes["driver_id"]).id
        if "boarding_time" in changes and data.boarding_time is not None:
            schedule.boarding_time = data.boarding_time
        if "return_time" in changes:
            schedule.return_time = data.return_time
        if "recurrence" in changes:
            schedule.operating_days, schedule.one_time_date = self._recurrence_fields(data.recurrence)
        if "is_active" in changes and data.is_active is not None:
            schedule.is_active = data.is_active

        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.refresh(schedule)
        logger.info("Schedule %s updated: %s", schedule.id, sorted(changes))
        return schedule

    def delete_schedule(self, schedule_id: int) -> int:
        """Remove a schedule; its trips stay, detached. Returns the detached count."""
        schedule = self.get_schedule(schedule_id)
        try:
            detached = self.db.query(Trip).filter(Trip.schedule_id == schedule.id).update(
                {"schedule_id": None}, synchronize_session=False
            )
            self.db.delete(schedule)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.expire_all()
        logger.info("Schedule %s deleted; %d trip(s) kept without a schedule", schedule_id, detached)
        return detached

    def get_schedule(self, schedule_id: int) -> Schedule:
        schedule = self.db.get(Schedule, schedule_id)
        if not schedule:
            raise ScheduleNotFound(f"Schedule with ID {schedule_id} not found")
        return schedule

    def list_schedules(self, organization_id: int, active_only: bool = False) -> List[Schedule]:
        query = self.db.query(Schedule).filter(Schedule.organization_id == organization_id)
        if active_only:
            query = query.filter(Schedule.is_active == True)
        return query.order_by(Schedule.id).all()

    def upcoming_trips(self, schedule: Schedule, limit: int = 14) -> List[Trip]:
        return self.db.query(Trip).filter(
            Trip.schedule_id == schedule.id,
            Trip.status == TripStatus.SCHEDULED.value,
            Trip.scheduled_start >= self.clock.now().replace(hour=0, minute=0, second=0, microsecond=0),
        ).order_by(Trip.scheduled_start).limit(limit).all()

    def generate_trips_for_date(self, organization_id: int, target_date: Optional[date] = None) -> Tuple[date, List[Trip], int]:
        """Create the day's trip for every active recurring schedule running on that date.

        Returns (target date, created trips, notifications queued).
        """
        today = self.clock.today()
        target = target_date or today
        if target < today:
            raise InvalidDate(
                f"Cannot generate trips for {target.isoformat()}: date is in the past",
                details={"target_date": target.isoformat()},
            )

        weekday = Weekday.of(target)
        schedules = self.db.query(Schedule).filter(
            Schedule.organization_id == organization_id,
            Schedule.is_active == True,
        ).order_by(Schedule.id).all()

        created: List[Trip] = []
        try:
            for schedule in schedules:
                if not schedule.is_recurring or weekday.value not in schedule.operating_days:
                    continue
                if schedule.last_generated_date == target:
                    continue
                trip = self.materializer.create_occurrence(schedule, target)
                schedule.last_generated_date = target
                if trip is not None:
                    created.append(trip)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        queued = 0
        for trip in created:
            self.db.refresh(trip)
            passengers = self.db.query(Passenger).filter(
                Passenger.bus_id == trip.bus_id,
                Passenger.is_active == True,
            ).order_by(Passenger.id).all()
            queued += self.fanout.notify_trip_scheduled(trip, passengers).queued

        logger.info(
            "Generated %d trip(s) for organization %s on %s",
            len(created), organization_id, target.isoformat(),
        )
        return target, created, queued

    def _recurrence_fields(self, recurrence) -> Tuple[List[str], Optional[date]]:
        """Request models already reject empty weekday sets and unknown kinds"""
        if isinstance(recurrence, OneTimeRecurrence):
            if recurrence.run_date < self.clock.today():
                raise InvalidDate(
                    f"One-time date {recurrence.run_date.isoformat()} is in the past",
                    details={"run_date": recurrence.run_date.isoformat()},
                )
            return [], recurrence.run_date
        days = list(dict.fromkeys(day.value for day in recurrence.days))
        return days, None

    def _resolve_driver(self, bus: Bus, driver_id: Optional[int]) -> Driver:
        if driver_id is None:
            if bus.driver_id is None:
                raise NoDriverAssigned(
                    f"Bus {bus.bus_number} has no driver assigned",
                    details={"bus_id": bus.id},
                )
            return bus.driver

        driver = self.db.get(Driver, driver_id)
        if not driver:
            raise NoDriverAssigned(
                f"Driver with ID {driver_id} not found",
                details={"driver_id": driver_id},
            )
        if driver.bus is not None and driver.bus.id != bus.id:
            raise DriverAssignedElsewhere(
                f"Driver {driver_id} is already assigned to bus {driver.bus.bus_number}",
                details={"driver_id": driver_id, "bus_id": driver.bus.id},
            )
        return driver
