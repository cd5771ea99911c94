import unittest

from fastapi.testclient import TestClient

from tripengine.database import get_db
from tripengine.dependencies import get_clock, get_dispatcher, get_live_channel, get_routing
from tripengine.main import app
from tripengine.notifications.dispatcher import SynchronousDispatcher
from tripengine.routing.client import DisabledRoutingService

from tests.helpers import MONDAY, RecordingLiveChannel, ScratchDatabase, fixed_clock, seed_fleet

API = "/api/v1"


class ApiTest(unittest.TestCase):

    def setUp(self):
        self.database = ScratchDatabase()
        self.clock = fixed_clock(MONDAY.replace(hour=6, minute=30))
        self.dispatcher = SynchronousDispatcher()
        self.live = RecordingLiveChannel()

        with self.database.Session() as db:
            fleet = seed_fleet(db)
            self.org_id = fleet["org"].id
            self.bus_id = fleet["bus"].id
            self.admin_id = fleet["admin"].id
            self.guardian_ids = [g.id for g in fleet["guardians"]]
            self.passenger_ids = [p.id for p in fleet["passengers"]]
            self.tokens = [p.qr_token for p in fleet["passengers"]]

        def override_get_db():
            db = self.database.Session()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        app.dependency_overrides[get_clock] = lambda: self.clock
        app.dependency_overrides[get_routing] = lambda: DisabledRoutingService()
        app.dependency_overrides[get_dispatcher] = lambda: self.dispatcher
        app.dependency_overrides[get_live_channel] = lambda: self.live
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()
        self.database.close()

    def create_schedule(self, days=("MONDAY", "WEDNESDAY")):
        response = self.client.post(f"{API}/schedules/", json={
            "bus_id": self.bus_id,
            "boarding_time": "07:00:00",
            "return_time": "15:00:00",
            "recurrence": {"kind": "weekdays", "days": list(days)},
        })
        self.assertEqual(response.status_code, 201, response.text)
        return response.json()

    def todays_trip_id(self):
        response = self.client.get(f"{API}/trips/history", params={"organization_id": self.org_id})
        trips = [t for t in response.json() if t["scheduled_start"].startswith("2024-01-01")]
        return trips[0]["id"]

    def test_health(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "healthy")

    def test_create_schedule_and_read_it_back(self):
        created = self.create_schedule()

        self.assertEqual(created["trips_generated"], 2)
        self.assertFalse(created["route"]["is_optimized"])
        self.assertEqual(len(created["route"]["stops"]), 5)

        schedule_id = created["schedule"]["id"]
        detail = self.client.get(f"{API}/schedules/{schedule_id}").json()
        self.assertEqual(detail["operating_days"], ["MONDAY", "WEDNESDAY"])
        self.assertEqual(len(detail["upcoming_trips"]), 2)

        listed = self.client.get(f"{API}/schedules/", params={"organization_id": self.org_id}).json()
        self.assertEqual([s["id"] for s in listed], [schedule_id])

    def test_invalid_recurrence_maps_to_its_own_code(self):
        for recurrence in ({"kind": "weekdays", "days": []}, {"kind": "fortnightly"}):
            response = self.client.post(f"{API}/schedules/", json={
                "bus_id": self.bus_id,
                "boarding_time": "07:00:00",
                "recurrence": recurrence,
            })
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["detail"]["code"], "INVALID_RECURRENCE")

    def test_other_validation_errors_keep_422(self):
        response = self.client.post(f"{API}/schedules/", json={
            "bus_id": self.bus_id,
            "boarding_time": "not a time",
            "recurrence": {"kind": "one_time", "run_date": "2024-01-02"},
        })
        self.assertEqual(response.status_code, 422)

    def test_unknown_bus_maps_to_404_with_code(self):
        response = self.client.post(f"{API}/schedules/", json={
            "bus_id": 999,
            "boarding_time": "07:00:00",
            "recurrence": {"kind": "one_time", "run_date": "2024-01-02"},
        })
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["detail"]["code"], "BUS_NOT_FOUND")

    def test_full_trip_flow(self):
        self.create_schedule()
        trip_id = self.todays_trip_id()

        # One passenger still pending
        self.client.post(f"{API}/attendance/verify", json={"qr_token": self.tokens[0]})
        self.client.post(f"{API}/attendance/manual", json={
            "trip_id": trip_id, "passenger_id": self.passenger_ids[1], "action": "absent",
        })
        blocked = self.client.post(f"{API}/trips/{trip_id}/start")
        self.assertEqual(blocked.status_code, 409)
        self.assertEqual(blocked.json()["detail"]["code"], "BOARDING_INCOMPLETE")
        self.assertEqual(blocked.json()["detail"]["details"]["pending_passengers"], ["Child 3"])

        marked = self.client.post(f"{API}/attendance/manual", json={
            "trip_id": trip_id, "passenger_ids": self.passenger_ids, "action": "board",
        }).json()
        self.assertEqual(marked["changed"], 1)
        self.assertEqual(sorted(marked["skipped"]), sorted(self.passenger_ids[:2]))

        summary = self.client.get(f"{API}/attendance/trips/{trip_id}").json()
        self.assertEqual((summary["boarded"], summary["absent"], summary["pending"]), (2, 1, 0))

        started = self.client.post(f"{API}/trips/{trip_id}/start")
        self.assertEqual(started.status_code, 200, started.text)
        self.assertEqual(started.json()["trip"]["status"], "ONGOING")
        self.assertEqual(started.json()["notifications"]["queued"], 2)

        self.clock.advance(minutes=10)
        ack = self.client.post(f"{API}/trips/{trip_id}/location", json={"lat": 9.07, "lng": 7.45, "speed": 32.5})
        self.assertEqual(ack.status_code, 200)
        topics = [topic for topic, event, _ in self.live.events if event == "location-update"]
        self.assertEqual(topics, [f"trip-{trip_id}", f"bus-{self.bus_id}"])

        active = self.client.get(f"{API}/trips/active", params={"organization_id": self.org_id}).json()
        self.assertEqual(active[0]["trip"]["current_lat"], 9.07)

        self.clock.advance(minutes=35)
        ended = self.client.post(f"{API}/trips/{trip_id}/end", json={"distance_covered": 0})
        self.assertEqual(ended.status_code, 200, ended.text)
        body = ended.json()
        self.assertEqual(body["trip"]["status"], "COMPLETED")
        self.assertEqual(body["trip"]["distance_covered"], 0.0)
        self.assertEqual(body["duration_minutes"], 45.0)
        self.assertTrue(body["metrics_degraded"])

        again = self.client.post(f"{API}/trips/{trip_id}/end")
        self.assertEqual(again.status_code, 409)
        self.assertEqual(again.json()["detail"]["code"], "INVALID_TRIP_STATUS")

        inbox = self.client.get(f"{API}/notifications/users/{self.guardian_ids[0]}").json()
        types = [n["type"] for n in inbox["notifications"]]
        self.assertIn("TRIP_STARTED", types)
        self.assertIn("TRIP_COMPLETED", types)
        self.assertIn("PASSENGER_BOARDED", types)

    def test_location_requires_ongoing_trip(self):
        self.create_schedule()
        trip_id = self.todays_trip_id()

        response = self.client.post(f"{API}/trips/{trip_id}/location", json={"lat": 9.0, "lng": 7.0})

        self.assertEqual(response.status_code, 409)

    def test_unknown_trip(self):
        response = self.client.post(f"{API}/trips/4040/start")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["detail"]["code"], "TRIP_NOT_FOUND")

    def test_reschedule_and_generate(self):
        self.create_schedule(days=("WEDNESDAY",))
        history = self.client.get(f"{API}/trips/history", params={"organization_id": self.org_id}).json()
        trip_id = history[0]["id"]

        moved = self.client.post(f"{API}/schedules/trips/{trip_id}/reschedule", json={"new_date": "2024-01-08"})
        self.assertEqual(moved.status_code, 200, moved.text)
        self.assertEqual([t["scheduled_start"] for t in moved.json()["trips"]], ["2024-01-10T07:00:00"])

        new_trip_id = moved.json()["trips"][0]["id"]
        past = self.client.post(f"{API}/schedules/trips/{new_trip_id}/reschedule", json={"new_date": "2023-12-01"})
        self.assertEqual(past.status_code, 400)
        self.assertEqual(past.json()["detail"]["code"], "INVALID_DATE")

        generated = self.client.post(f"{API}/schedules/generate-trips", json={
            "organization_id": self.org_id, "target_date": "2024-01-03",
        }).json()
        self.assertEqual(len(generated["trips"]), 1)
        self.assertEqual(generated["notification_count"], 4)

    def test_broadcast_emergency_and_inbox(self):
        report = self.client.post(f"{API}/notifications/broadcast", json={
            "organization_id": self.org_id, "title": "Holiday", "message": "No buses Friday", "audience": "PARENTS",
        }).json()
        self.assertEqual((report["attempted"], report["delivered"]), (3, 3))

        alert = self.client.post(f"{API}/notifications/emergency", json={
            "organization_id": self.org_id, "message": "Flooding on Route 3",
        }).json()
        self.assertEqual(alert["delivered"], 1)

        inbox = self.client.get(f"{API}/notifications/users/{self.admin_id}").json()
        self.assertEqual(inbox["unread_count"], 1)
        note = inbox["notifications"][0]
        self.assertEqual((note["type"], note["priority"]), ("EMERGENCY_ALERT", "CRITICAL"))

        read = self.client.post(f"{API}/notifications/{note['id']}/read").json()
        self.assertTrue(read["is_read"])
        cleared = self.client.post(f"{API}/notifications/users/{self.guardian_ids[0]}/read-all").json()
        self.assertEqual(cleared["updated"], 1)

        self.assertEqual(self.client.get(f"{API}/notifications/delivery-failures").json(), [])


if __name__ == "__main__":
    unittest.main()
