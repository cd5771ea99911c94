"""Shared fixtures for the test suite: a throwaway database, fakes and seed data."""

import os
import shutil
import tempfile
import threading
from datetime import datetime, time
from typing import List, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from tripengine.clock import FixedClock
from tripengine.database import Base
from tripengine.exceptions import RoutingUnavailable
from tripengine.models import Bus, Driver, Organization, Passenger, Route, Schedule, Trip, User
from tripengine.notifications.channels import LiveUpdateChannel, NotifyChannel
from tripengine.notifications.dispatcher import SynchronousDispatcher
from tripengine.notifications.fanout import NotificationFanout
from tripengine.notifications.schemas import NotificationPriority, NotificationType
from tripengine.routing.client import RoutingService
from tripengine.routing.schemas import OptimizedRoute, RouteLeg, RouteMetrics

# Monday
MONDAY = datetime(2024, 1, 1, 6, 0)


class ScratchDatabase:
    """SQLite file in a temp directory; sessions may be opened from any thread"""

    def __init__(self):
        self.directory = tempfile.mkdtemp(prefix="tripengine-test-")
        self.engine = create_engine(
            f"sqlite:///{os.path.join(self.directory, 'test.db')}",
            connect_args={"check_same_thread": False},
        )
        Base.metadata.create_all(bind=self.engine)
        self.Session = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def close(self):
        self.engine.dispose()
        shutil.rmtree(self.directory, ignore_errors=True)


class FakeRoutingService(RoutingService):
    """Routing backend with canned answers that records its calls"""

    def __init__(self, order=None, legs=None, metrics=None, fail=False):
        self.order = order
        self.legs = legs or []
        self.metrics = metrics
        self.fail = fail
        self.optimize_calls = []
        self.metrics_calls = []

    def optimize(self, origin, waypoints, destination=None):
        self.optimize_calls.append((origin, list(waypoints), destination))
        if self.fail:
            raise RoutingUnavailable("routing down")
        order = self.order if self.order is not None else list(range(len(waypoints)))
        legs = self.legs or [RouteLeg(distance_m=1000, duration_s=300) for _ in waypoints]
        return OptimizedRoute(order=order, legs=legs)

    def route_metrics(self, origin, waypoints, destination):
        self.metrics_calls.append((origin, list(waypoints), destination))
        if self.fail or self.metrics is None:
            raise RoutingUnavailable("routing down")
        return self.metrics


class RecordingChannel(NotifyChannel):
    """Notify channel that keeps every send in memory; can fail for chosen users"""

    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)
        self._lock = threading.Lock()

    def send_to_user(
        self,
        user_id,
        title,
        message,
        metadata=None,
        notification_type=NotificationType.BROADCAST,
        priority=NotificationPriority.NORMAL,
    ):
        if user_id in self.fail_for:
            raise ConnectionError(f"inbox for {user_id} unavailable")
        with self._lock:
            self.sent.append({
                "user_id": user_id,
                "title": title,
                "message": message,
                "metadata": metadata or {},
                "type": notification_type,
                "priority": priority,
            })

    def send_to_audience(self, organization_id, audience, title, message, metadata=None):
        raise NotImplementedError

    def of_type(self, notification_type) -> List[dict]:
        return [s for s in self.sent if s["type"] == notification_type]


class RecordingLiveChannel(LiveUpdateChannel):
    def __init__(self):
        self.events = []

    def publish(self, topic, event, payload):
        self.events.append((topic, event, payload))


def make_fanout(db, channel=None, routing=None):
    channel = channel or RecordingChannel()
    return NotificationFanout(db, channel, SynchronousDispatcher(), routing), channel


def seed_fleet(db, passenger_count=3, depot=True, bus_number="B01"):
    """Organization with an admin, a driver on one bus and guarded passengers.

    Returns a dict of the created rows.
    """
    org = Organization(
        name="Greenfield Academy",
        address="1 School Road",
        lat=9.05 if depot else None,
        lng=7.49 if depot else None,
    )
    db.add(org)
    db.flush()

    admin = User(organization_id=org.id, name="Ada Admin", email=f"admin{org.id}@example.com", role="ADMIN")
    driver_user = User(organization_id=org.id, name="Dan Driver", email=f"driver-{bus_number}@example.com", role="DRIVER")
    db.add_all([admin, driver_user])
    db.flush()

    driver = Driver(organization_id=org.id, user_id=driver_user.id, license_number="LIC-001")
    db.add(driver)
    db.flush()

    bus = Bus(organization_id=org.id, bus_number=bus_number, capacity=30, driver_id=driver.id)
    db.add(bus)
    db.flush()

    guardians, passengers = [], []
    for i in range(passenger_count):
        guardian = User(
            organization_id=org.id,
            name=f"Parent {i + 1}",
            email=f"parent{i + 1}-{bus_number}@example.com",
            role="PARENT",
        )
        db.add(guardian)
        db.flush()
        passenger = Passenger(
            organization_id=org.id,
            name=f"Child {i + 1}",
            address=f"{i + 1} Elm Street",
            lat=9.06 + i * 0.01,
            lng=7.40 + i * 0.01,
            bus_id=bus.id,
            guardian_id=guardian.id,
            qr_token=f"token-{bus_number}-{i + 1}",
            is_active=True,
        )
        db.add(passenger)
        guardians.append(guardian)
        passengers.append(passenger)
    db.commit()

    return {
        "org": org,
        "admin": admin,
        "driver_user": driver_user,
        "driver": driver,
        "bus": bus,
        "guardians": guardians,
        "passengers": passengers,
    }


def make_route(db, fleet, stops: Optional[list] = None):
    org = fleet["org"]
    if stops is None:
        stops = []
        if org.has_depot:
            stops.append({"order": 0, "name": org.name, "address": org.address, "lat": org.lat,
                          "lng": org.lng, "estimated_time": "07:00", "passenger_id": None})
        for p in fleet["passengers"]:
            stops.append({"order": len(stops), "name": p.name, "address": p.address, "lat": p.lat,
                          "lng": p.lng, "estimated_time": "07:00", "passenger_id": p.id})
        if org.has_depot:
            stops.append({"order": len(stops), "name": f"{org.name} (Return)", "address": org.address,
                          "lat": org.lat, "lng": org.lng, "estimated_time": "07:00", "passenger_id": None})
    route = Route(organization_id=org.id, bus_id=fleet["bus"].id, name="Morning", stops=stops)
    db.add(route)
    db.commit()
    return route


def make_schedule(db, fleet, route, days=None, one_time_date=None, boarding=time(7, 0)):
    schedule = Schedule(
        organization_id=fleet["org"].id,
        route_id=route.id,
        bus_id=fleet["bus"].id,
        driver_id=fleet["driver"].id,
        boarding_time=boarding,
        operating_days=days or [],
        one_time_date=one_time_date,
        is_active=True,
    )
    db.add(schedule)
    db.commit()
    return schedule


def make_trip(db, fleet, route, start=None, status="SCHEDULED", schedule=None):
    trip = Trip(
        organization_id=fleet["org"].id,
        bus_id=fleet["bus"].id,
        driver_id=fleet["driver"].id,
        route_id=route.id,
        schedule_id=schedule.id if schedule else None,
        status=status,
        scheduled_start=start or MONDAY.replace(hour=7),
        distance_covered=0.0,
        estimated_duration=0,
    )
    db.add(trip)
    db.commit()
    return trip


def fixed_clock(at: datetime = MONDAY) -> FixedClock:
    return FixedClock(at)
