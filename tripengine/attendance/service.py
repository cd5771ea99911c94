import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tripengine.attendance.schemas import (
    AbsenceReport, AttendanceAction, AttendanceStatus, AttendanceSummary, ManualMark, PassengerAttendance
)
from tripengine.attendance.tokens import TokenResolver
from tripengine.clock import Clock, system_clock
from tripengine.exceptions import (
    InvalidTripStatus, NoEligibleTrip, PassengerNotFound, PassengerNotOnBus, TripNotFound, UnknownToken,
    ValidationError
)
from tripengine.models import AttendanceRecord, Passenger, Trip
from tripengine.notifications.fanout import NotificationFanout
from tripengine.trips.schemas import TripStatus

logger = logging.getLogger(__name__)

MARKABLE_STATUSES = (TripStatus.SCHEDULED.value, TripStatus.ONGOING.value)
# Bulk marks with these actions only touch passengers nobody has marked yet
PENDING_ONLY_ACTIONS = (AttendanceAction.BOARD, AttendanceAction.ABSENT)


class AttendanceLedger:
    """Per-trip boarding, absence and drop-off records.

    Every write is an upsert on (trip, passenger). Two requests racing to
    create the same record end with one row: the loser rolls back and
    retries against the winner's row.
    """

    def __init__(
        self,
        db: Session,
        fanout: NotificationFanout,
        tokens: TokenResolver,
        clock: Clock = system_clock,
    ):
        self.db = db
        self.fanout = fanout
        self.tokens = tokens
        self.clock = clock

    # QR verification
    def verify_by_token(self, token: str, lat: Optional[float] = None, lng: Optional[float] = None):
        """Board the passenger owning ``token`` onto their bus's current trip.

        Returns (record, passenger, already_recorded).
        """
        passenger_id = self.tokens.resolve(token)
        if passenger_id is None:
            raise UnknownToken("Invalid QR code")

        passenger = self.db.get(Passenger, passenger_id)
        if passenger is None:
            raise UnknownToken("Invalid QR code")

        trip = self.eligible_trip(passenger)
        changes: List[AttendanceRecord] = []

        def apply():
            changes.clear()
            record = self._get_or_create(trip.id, passenger.id)
            if self._board(record, lat, lng):
                changes.append(record)
            return [record]

        records = self._write(apply)
        if changes:
            logger.info("Passenger %s boarded trip %s by QR", passenger.id, trip.id)
            self.fanout.notify_attendance(trip, passenger, AttendanceStatus.PRESENT.value)
        return records[0], passenger, not changes

    def eligible_trip(self, passenger: Passenger) -> Trip:
        """The bus's ongoing trip, else its next scheduled one from today on"""
        if passenger.bus_id is None:
            raise NoEligibleTrip(
                f"Passenger {passenger.name} is not assigned to a bus",
                details={"passenger_id": passenger.id},
            )

        trip = self.db.query(Trip).filter(
            Trip.bus_id == passenger.bus_id,
            Trip.status == TripStatus.ONGOING.value,
        ).first()
        if trip:
            return trip

        start_of_today = datetime.combine(self.clock.today(), datetime.min.time())
        trip = self.db.query(Trip).filter(
            Trip.bus_id == passenger.bus_id,
            Trip.status == TripStatus.SCHEDULED.value,
            Trip.scheduled_start >= start_of_today,
        ).order_by(Trip.scheduled_start, Trip.id).first()
        if not trip:
            raise NoEligibleTrip(
                "No active or scheduled trip found for this bus",
                details={"bus_id": passenger.bus_id},
            )
        return trip

    # Manual marking
    def mark_manual(self, mark: ManualMark) -> Tuple[List[AttendanceRecord], int, List[int]]:
        """Returns (records touched or already settled, changed count, skipped ids)"""
        trip = self.db.get(Trip, mark.trip_id)
        if not trip:
            raise TripNotFound(f"Trip with ID {mark.trip_id} not found")
        if trip.status not in MARKABLE_STATUSES:
            raise InvalidTripStatus(
                f"Attendance can only be marked on scheduled or ongoing trips. Status: {trip.status}",
                details={"trip_id": trip.id, "status": trip.status},
            )

        bulk = bool(mark.passenger_ids)
        passenger_ids = list(dict.fromkeys(mark.passenger_ids)) if bulk else [mark.passenger_id]
        passengers = self._passengers_on_bus(trip, passenger_ids)

        changed: List[Passenger] = []
        skipped: List[int] = []

        def apply():
            changed.clear()
            skipped.clear()
            records = []
            for passenger in passengers:
                record = self._get_or_create(trip.id, passenger.id)
                if bulk and mark.action in PENDING_ONLY_ACTIONS \
                        and record.status != AttendanceStatus.PENDING.value:
                    skipped.append(passenger.id)
                    continue
                if mark.action == AttendanceAction.DROP and record.status == AttendanceStatus.ABSENT.value:
                    skipped.append(passenger.id)
                    continue

                if mark.action == AttendanceAction.BOARD:
                    did_change = self._board(record, mark.lat, mark.lng)
                elif mark.action == AttendanceAction.ABSENT:
                    did_change = self._absent(record)
                elif mark.action == AttendanceAction.RESET:
                    did_change = self._reset(record)
                else:
                    did_change = self._drop(record, mark.lat, mark.lng)

                if mark.notes is not None and record.notes != mark.notes:
                    record.notes = mark.notes
                if did_change:
                    changed.append(passenger)
                records.append(record)
            return records

        records = self._write(apply)
        event = self._event_for(mark.action)
        if event is not None:
            for passenger in changed:
                self.fanout.notify_attendance(trip, passenger, event)

        logger.info(
            "Manual %s on trip %s: %d changed, %d skipped",
            mark.action.value, trip.id, len(changed), len(skipped),
        )
        return records, len(changed), skipped

    def report_absence(self, report: AbsenceReport) -> List[AttendanceRecord]:
        """Guardian marks a passenger absent on every scheduled trip of a date"""
        passenger = self.db.get(Passenger, report.passenger_id)
        if not passenger:
            raise PassengerNotFound(f"Passenger with ID {report.passenger_id} not found")
        if passenger.guardian_id != report.guardian_id:
            raise ValidationError(
                "Only the passenger's guardian can report an absence",
                details={"passenger_id": passenger.id, "guardian_id": report.guardian_id},
            )
        if passenger.bus_id is None:
            raise NoEligibleTrip(
                f"Passenger {passenger.name} is not assigned to a bus",
                details={"passenger_id": passenger.id},
            )

        day_start = datetime.combine(report.absence_date, datetime.min.time())
        trips = self.db.query(Trip).filter(
            Trip.bus_id == passenger.bus_id,
            Trip.status == TripStatus.SCHEDULED.value,
            Trip.scheduled_start >= day_start,
            Trip.scheduled_start < day_start + timedelta(days=1),
        ).order_by(Trip.scheduled_start).all()
        if not trips:
            raise NoEligibleTrip(
                f"No scheduled trips on {report.absence_date.isoformat()}",
                details={"passenger_id": passenger.id, "date": report.absence_date.isoformat()},
            )

        def apply():
            records = []
            for trip in trips:
                record = self._get_or_create(trip.id, passenger.id)
                self._absent(record)
                record.notes = report.reason
                records.append(record)
            return records

        records = self._write(apply)
        logger.info("Absence reported for passenger %s on %d trip(s)", passenger.id, len(records))
        return records

    # Read model
    def trip_summary(self, trip_id: int) -> AttendanceSummary:
        trip = self.db.get(Trip, trip_id)
        if not trip:
            raise TripNotFound(f"Trip with ID {trip_id} not found")

        assigned = self.db.query(Passenger).filter(
            Passenger.bus_id == trip.bus_id,
            Passenger.is_active == True,
        ).order_by(Passenger.id).all()
        records: Dict[int, AttendanceRecord] = {
            r.passenger_id: r for r in
            self.db.query(AttendanceRecord).filter(AttendanceRecord.trip_id == trip.id).all()
        }

        rows = []
        counts = {status: 0 for status in AttendanceStatus}
        for passenger in assigned:
            record = records.get(passenger.id)
            status = AttendanceStatus(record.status) if record else AttendanceStatus.PENDING
            counts[status] += 1
            rows.append(PassengerAttendance(
                passenger_id=passenger.id,
                name=passenger.name,
                status=status,
                boarded_at=record.boarded_at if record else None,
                dropped_at=record.dropped_at if record else None,
            ))

        total = len(assigned)
        boarded = counts[AttendanceStatus.PRESENT]
        return AttendanceSummary(
            trip_id=trip.id,
            total_assigned=total,
            boarded=boarded,
            absent=counts[AttendanceStatus.ABSENT],
            pending=counts[AttendanceStatus.PENDING],
            attendance_rate=round(boarded / total, 4) if total else 0.0,
            passengers=rows,
        )

    # Internals
    def _passengers_on_bus(self, trip: Trip, passenger_ids: List[int]) -> List[Passenger]:
        found = {
            p.id: p for p in self.db.query(Passenger).filter(Passenger.id.in_(passenger_ids)).all()
        }
        missing = [pid for pid in passenger_ids if pid not in found]
        if missing:
            raise PassengerNotFound(
                f"Passenger(s) not found: {missing}",
                details={"passenger_ids": missing},
            )
        foreign = [pid for pid in passenger_ids if found[pid].bus_id != trip.bus_id]
        if foreign:
            raise PassengerNotOnBus(
                f"Passenger(s) {foreign} are not assigned to bus {trip.bus_id}",
                details={"passenger_ids": foreign, "bus_id": trip.bus_id},
            )
        return [found[pid] for pid in passenger_ids]

    def _write(self, apply: Callable[[], List[AttendanceRecord]]) -> List[AttendanceRecord]:
        """Run ``apply`` and commit, retrying once on a duplicate insert"""
        for attempt in range(2):
            try:
                records = apply()
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                if attempt:
                    raise
                logger.info("Attendance record created concurrently; retrying")
                continue
            except Exception:
                self.db.rollback()
                raise
            for record in records:
                self.db.refresh(record)
            return records

    def _get_or_create(self, trip_id: int, passenger_id: int) -> AttendanceRecord:
        record = self.db.query(AttendanceRecord).filter(
            AttendanceRecord.trip_id == trip_id,
            AttendanceRecord.passenger_id == passenger_id,
        ).first()
        if record is None:
            record = AttendanceRecord(
                trip_id=trip_id,
                passenger_id=passenger_id,
                status=AttendanceStatus.PENDING.value,
            )
            self.db.add(record)
            self.db.flush()
        return record

    def _board(self, record: AttendanceRecord, lat, lng) -> bool:
        if record.status == AttendanceStatus.PRESENT.value:
            return False
        record.status = AttendanceStatus.PRESENT.value
        record.boarded_at = self.clock.now()
        record.boarded_lat = lat
        record.boarded_lng = lng
        return True

    def _absent(self, record: AttendanceRecord) -> bool:
        if record.status == AttendanceStatus.ABSENT.value:
            return False
        record.status = AttendanceStatus.ABSENT.value
        record.boarded_at = None
        record.boarded_lat = None
        record.boarded_lng = None
        return True

    def _reset(self, record: AttendanceRecord) -> bool:
        """Back to PENDING, as if never marked"""
        if record.status == AttendanceStatus.PENDING.value and record.boarded_at is None \
                and record.dropped_at is None:
            return False
        record.status = AttendanceStatus.PENDING.value
        record.boarded_at = None
        record.boarded_lat = None
        record.boarded_lng = None
        record.dropped_at = None
        record.dropped_lat = None
        record.dropped_lng = None
        return True

    def _drop(self, record: AttendanceRecord, lat, lng) -> bool:
        """Drop-off implies the passenger rode; absent passengers are left alone"""
        if record.status == AttendanceStatus.ABSENT.value or record.dropped_at is not None:
            return False
        if record.status == AttendanceStatus.PENDING.value:
            record.status = AttendanceStatus.PRESENT.value
            record.boarded_at = record.boarded_at or self.clock.now()
        record.dropped_at = self.clock.now()
        record.dropped_lat = lat
        record.dropped_lng = lng
        return True

    @staticmethod
    def _event_for(action: AttendanceAction) -> Optional[str]:
        """Guardian notice for an action; resets are silent"""
        if action == AttendanceAction.BOARD:
            return AttendanceStatus.PRESENT.value
        if action == AttendanceAction.ABSENT:
            return AttendanceStatus.ABSENT.value
        if action == AttendanceAction.DROP:
            return "DROPPED"
        return None
