import threading
import unittest
from datetime import datetime

from tripengine.attendance.schemas import ManualMark
from tripengine.attendance.service import AttendanceLedger
from tripengine.attendance.tokens import DatabaseTokenResolver
from tripengine.config import settings
from tripengine.exceptions import (
    BoardingIncomplete, BusAlreadyOnTrip, InvalidDuration, InvalidTripStatus, TripNotFound
)
from tripengine.models import AttendanceRecord, Trip
from tripengine.notifications.schemas import NotificationType
from tripengine.routing.client import DisabledRoutingService
from tripengine.routing.schemas import RouteMetrics
from tripengine.trips.lifecycle import TripLifecycleController
from tripengine.trips.locks import BusLockRegistry
from tripengine.trips.schemas import TripStatus

from tests.helpers import (
    MONDAY, FakeRoutingService, ScratchDatabase, fixed_clock, make_fanout, make_route, make_trip, seed_fleet
)


class TripLifecycleTest(unittest.TestCase):

    def setUp(self):
        self.database = ScratchDatabase()
        self.db = self.database.Session()
        self.clock = fixed_clock(MONDAY.replace(hour=7))
        self.fleet = seed_fleet(self.db, passenger_count=3, bus_number="B01")
        self.route = make_route(self.db, self.fleet)
        self.trip = make_trip(self.db, self.fleet, self.route)
        self.routing = DisabledRoutingService()
        self.fanout, self.channel = make_fanout(self.db, routing=self.routing)
        self.lifecycle = self.build(self.routing)

    def tearDown(self):
        self.db.close()
        self.database.close()

    def build(self, routing):
        self.fanout.routing = routing
        return TripLifecycleController(self.db, self.fanout, routing, clock=self.clock, locks=BusLockRegistry())

    def mark(self, trip, status_by_index):
        for index, status in status_by_index.items():
            self.db.add(AttendanceRecord(
                trip_id=trip.id, passenger_id=self.fleet["passengers"][index].id, status=status
            ))
        self.db.commit()

    def test_all_present_starts_trip_and_notifies_each_guardian(self):
        self.mark(self.trip, {0: "PRESENT", 1: "PRESENT", 2: "PRESENT"})

        trip, summary = self.lifecycle.start(self.trip.id)

        self.assertEqual(trip.status, TripStatus.ONGOING.value)
        self.assertEqual(trip.actual_start, self.clock.now())
        self.assertEqual((trip.current_lat, trip.current_lng), (self.fleet["org"].lat, self.fleet["org"].lng))
        self.assertEqual(summary.queued, 3)
        started = self.channel.of_type(NotificationType.TRIP_STARTED)
        self.assertEqual(sorted(s["user_id"] for s in started), sorted(g.id for g in self.fleet["guardians"]))

    def test_one_pending_passenger_blocks_start(self):
        self.mark(self.trip, {0: "PRESENT", 1: "ABSENT"})

        with self.assertRaises(BoardingIncomplete) as ctx:
            self.lifecycle.start(self.trip.id)

        self.assertEqual(ctx.exception.pending_passengers, ["Child 3"])
        self.assertEqual(ctx.exception.details, {"pending_passengers": ["Child 3"]})
        self.db.refresh(self.trip)
        self.assertEqual(self.trip.status, TripStatus.SCHEDULED.value)
        self.assertEqual(self.channel.sent, [])

    def test_pending_record_counts_as_not_boarded(self):
        self.mark(self.trip, {0: "PRESENT", 1: "PRESENT", 2: "PENDING"})

        with self.assertRaises(BoardingIncomplete):
            self.lifecycle.start(self.trip.id)

    def test_absent_passengers_are_not_notified_on_start(self):
        self.mark(self.trip, {0: "PRESENT", 1: "ABSENT", 2: "ABSENT"})

        _, summary = self.lifecycle.start(self.trip.id)

        self.assertEqual(summary.recipients, [self.fleet["guardians"][0].id])

    def test_start_eta_falls_back_when_routing_is_down(self):
        self.mark(self.trip, {0: "PRESENT", 1: "ABSENT", 2: "ABSENT"})

        self.lifecycle.start(self.trip.id)

        metadata = self.channel.of_type(NotificationType.TRIP_STARTED)[0]["metadata"]
        self.assertEqual(metadata["eta_minutes"], settings.DEFAULT_ETA_MINUTES)
        self.assertEqual(metadata["distance_km"], 0.0)

    def test_start_eta_uses_routing_when_available(self):
        lifecycle = self.build(FakeRoutingService(metrics=RouteMetrics(distance_km=4.2, duration_minutes=11)))
        self.mark(self.trip, {0: "PRESENT", 1: "ABSENT", 2: "ABSENT"})

        lifecycle.start(self.trip.id)

        metadata = self.channel.of_type(NotificationType.TRIP_STARTED)[0]["metadata"]
        self.assertEqual((metadata["eta_minutes"], metadata["distance_km"]), (11, 4.2))

    def test_start_without_depot_uses_fallback_position(self):
        org = self.fleet["org"]
        org.lat = org.lng = None
        self.db.commit()
        self.mark(self.trip, {0: "PRESENT", 1: "PRESENT", 2: "PRESENT"})

        trip, _ = self.lifecycle.start(self.trip.id)

        self.assertEqual((trip.current_lat, trip.current_lng), (settings.FALLBACK_LAT, settings.FALLBACK_LNG))

    def test_start_requires_scheduled_status(self):
        self.mark(self.trip, {0: "PRESENT", 1: "PRESENT", 2: "PRESENT"})
        self.lifecycle.start(self.trip.id)

        with self.assertRaises(InvalidTripStatus):
            self.lifecycle.start(self.trip.id)

    def test_second_trip_on_same_bus_cannot_start(self):
        other = make_trip(self.db, self.fleet, self.route, start=datetime(2024, 1, 1, 15, 0))
        self.mark(self.trip, {0: "PRESENT", 1: "PRESENT", 2: "PRESENT"})
        self.mark(other, {0: "PRESENT", 1: "PRESENT", 2: "PRESENT"})
        self.lifecycle.start(self.trip.id)

        with self.assertRaises(BusAlreadyOnTrip):
            self.lifecycle.start(other.id)

        ongoing = self.db.query(Trip).filter(Trip.status == TripStatus.ONGOING.value).all()
        self.assertEqual([t.id for t in ongoing], [self.trip.id])

    def race_to_start(self, shared_locks):
        """Start two trips on one bus from two threads at once.

        Each thread gets its own session and controller. With separate lock
        registries only the partial unique index stops the second start.
        """
        other = make_trip(self.db, self.fleet, self.route, start=datetime(2024, 1, 1, 15, 0))
        self.mark(self.trip, {0: "PRESENT", 1: "PRESENT", 2: "PRESENT"})
        self.mark(other, {0: "PRESENT", 1: "PRESENT", 2: "PRESENT"})
        shared = BusLockRegistry()
        barrier = threading.Barrier(2)
        results = {}

        def start(trip_id):
            db = self.database.Session()
            try:
                fanout, _ = make_fanout(db, routing=self.routing)
                controller = TripLifecycleController(
                    db, fanout, self.routing, clock=self.clock,
                    locks=shared if shared_locks else BusLockRegistry(),
                )
                barrier.wait(timeout=5)
                try:
                    controller.start(trip_id)
                    results[trip_id] = "ok"
                except BusAlreadyOnTrip:
                    results[trip_id] = "busy"
            finally:
                db.close()

        threads = [threading.Thread(target=start, args=(t.id,)) for t in (self.trip, other)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        self.db.expire_all()
        ongoing = self.db.query(Trip).filter(Trip.status == TripStatus.ONGOING.value).all()
        return results, ongoing

    def test_concurrent_starts_with_shared_lock_leave_one_ongoing_trip(self):
        results, ongoing = self.race_to_start(shared_locks=True)

        self.assertEqual(sorted(results.values()), ["busy", "ok"])
        self.assertEqual(len(ongoing), 1)
        self.assertEqual(results[ongoing[0].id], "ok")

    def test_concurrent_starts_across_processes_leave_one_ongoing_trip(self):
        results, ongoing = self.race_to_start(shared_locks=False)

        self.assertEqual(sorted(results.values()), ["busy", "ok"])
        self.assertEqual(len(ongoing), 1)
        self.assertEqual(results[ongoing[0].id], "ok")

    def test_reset_passenger_blocks_start_again(self):
        self.mark(self.trip, {0: "PRESENT", 1: "PRESENT", 2: "PRESENT"})
        ledger = AttendanceLedger(self.db, self.fanout, DatabaseTokenResolver(self.db), clock=self.clock)
        ledger.mark_manual(ManualMark(
            trip_id=self.trip.id, passenger_id=self.fleet["passengers"][1].id, action="reset"
        ))

        with self.assertRaises(BoardingIncomplete) as ctx:
            self.lifecycle.start(self.trip.id)

        self.assertEqual(ctx.exception.pending_passengers, ["Child 2"])

    def test_unknown_trip(self):
        with self.assertRaises(TripNotFound):
            self.lifecycle.start(12345)
        with self.assertRaises(TripNotFound):
            self.lifecycle.end(12345)

    def start_trip(self):
        self.mark(self.trip, {0: "PRESENT", 1: "PRESENT", 2: "ABSENT"})
        self.lifecycle.start(self.trip.id)

    def test_end_without_routing_data_completes_with_zero_distance(self):
        self.start_trip()
        self.clock.advance(minutes=45)

        result = self.lifecycle.end(self.trip.id)

        self.assertEqual(result.trip.status, TripStatus.COMPLETED.value)
        self.assertEqual(result.trip.distance_covered, 0.0)
        self.assertEqual(result.trip.estimated_duration, 0)
        self.assertEqual(result.trip.actual_end, self.clock.now())
        self.assertEqual(result.duration_minutes, 45.0)
        self.assertTrue(result.metrics_degraded)
        self.assertFalse(result.duration_anomalous)

    def test_end_uses_reported_distance_when_metrics_fail(self):
        self.start_trip()
        self.clock.advance(minutes=30)

        result = self.lifecycle.end(self.trip.id, distance_covered=12.5)

        self.assertEqual(result.trip.distance_covered, 12.5)
        self.assertTrue(result.metrics_degraded)

    def test_end_uses_route_metrics(self):
        routing = FakeRoutingService(metrics=RouteMetrics(distance_km=18.3, duration_minutes=52))
        lifecycle = self.build(routing)
        self.start_trip()
        self.clock.advance(minutes=55)

        result = lifecycle.end(self.trip.id, distance_covered=3.0)

        self.assertEqual((result.trip.distance_covered, result.trip.estimated_duration), (18.3, 52))
        self.assertFalse(result.metrics_degraded)
        origin, waypoints, destination = routing.metrics_calls[-1]
        self.assertEqual(len(waypoints), 3)
        self.assertEqual((origin.lat, destination.lat), (self.fleet["org"].lat, self.fleet["org"].lat))

    def test_zero_distance_from_routing_is_degraded(self):
        lifecycle = self.build(FakeRoutingService(metrics=RouteMetrics(distance_km=0, duration_minutes=0)))
        self.start_trip()

        result = lifecycle.end(self.trip.id, distance_covered=7.0)

        self.assertEqual(result.trip.distance_covered, 7.0)
        self.assertTrue(result.metrics_degraded)

    def test_end_before_start_is_rejected_and_trip_stays_ongoing(self):
        self.start_trip()
        self.clock.advance(minutes=-5)

        with self.assertRaises(InvalidDuration):
            self.lifecycle.end(self.trip.id)

        self.db.refresh(self.trip)
        self.assertEqual(self.trip.status, TripStatus.ONGOING.value)

    def test_very_long_trip_is_flagged_not_rejected(self):
        self.start_trip()
        self.clock.advance(hours=9)

        with self.assertLogs("tripengine.trips.lifecycle", level="WARNING"):
            result = self.lifecycle.end(self.trip.id)

        self.assertTrue(result.duration_anomalous)
        self.assertEqual(result.trip.status, TripStatus.COMPLETED.value)

    def test_end_notifies_every_assigned_guardian(self):
        self.start_trip()

        result = self.lifecycle.end(self.trip.id)

        self.assertEqual(result.notifications.queued, 3)
        completed = self.channel.of_type(NotificationType.TRIP_COMPLETED)
        self.assertEqual(len(completed), 3)
        by_passenger = {s["metadata"]["passenger_id"]: s for s in completed}
        rode, _, stayed_home = self.fleet["passengers"]
        self.assertIn("has been dropped off", by_passenger[rode.id]["message"])
        self.assertIn("was marked absent", by_passenger[stayed_home.id]["message"])
        self.assertNotIn("dropped off", by_passenger[stayed_home.id]["message"])
        self.assertTrue(by_passenger[stayed_home.id]["metadata"]["absent"])

    def test_completed_trip_cannot_end_or_start_again(self):
        self.start_trip()
        self.lifecycle.end(self.trip.id)

        with self.assertRaises(InvalidTripStatus):
            self.lifecycle.end(self.trip.id)
        with self.assertRaises(InvalidTripStatus):
            self.lifecycle.start(self.trip.id)

    def test_started_notifications_are_sent_before_completed_ones(self):
        self.start_trip()
        self.lifecycle.end(self.trip.id)

        guardian = self.fleet["guardians"][0].id
        kinds = [s["type"] for s in self.channel.sent if s["user_id"] == guardian]
        self.assertEqual(kinds, [NotificationType.TRIP_STARTED, NotificationType.TRIP_COMPLETED])

    def test_delay_notice_goes_to_assigned_guardians(self):
        summary = self.lifecycle.report_delay(self.trip.id, 20, "Traffic")

        self.assertEqual(summary.queued, 3)
        delayed = self.channel.of_type(NotificationType.ROUTE_DELAYED)
        self.assertIn("20 minutes", delayed[0]["message"])
        self.assertEqual(delayed[0]["metadata"]["reason"], "Traffic")

    def test_delay_on_completed_trip_is_rejected(self):
        self.start_trip()
        self.lifecycle.end(self.trip.id)

        with self.assertRaises(InvalidTripStatus):
            self.lifecycle.report_delay(self.trip.id, 10)

    def test_active_trips_and_history(self):
        self.start_trip()

        active = self.lifecycle.active_trips(self.fleet["org"].id)
        self.assertEqual([a.trip.id for a in active], [self.trip.id])
        self.assertEqual(active[0].bus_number, "B01")
        self.assertEqual(active[0].driver_name, "Dan Driver")
        self.assertEqual(len(active[0].stops), 5)

        later = make_trip(self.db, self.fleet, self.route, start=datetime(2024, 1, 2, 7, 0))
        history = self.lifecycle.history(self.fleet["org"].id)
        self.assertEqual([t.id for t in history], [later.id, self.trip.id])
        self.assertEqual(
            [t.id for t in self.lifecycle.history(self.fleet["org"].id, status=TripStatus.ONGOING)],
            [self.trip.id],
        )


if __name__ == "__main__":
    unittest.main()
