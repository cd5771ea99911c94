"""FastAPI dependency factories wiring the services together.

Tests swap collaborators through ``app.dependency_overrides``: the database
session, clock, routing backend, dispatcher and live channel.
"""

from functools import lru_cache

from fastapi import Depends
from sqlalchemy.orm import Session, sessionmaker

from tripengine.attendance.service import AttendanceLedger
from tripengine.attendance.tokens import DatabaseTokenResolver
from tripengine.clock import Clock, system_clock
from tripengine.config import settings
from tripengine.database import get_db
from tripengine.notifications.channels import DatabaseNotifyChannel, LiveUpdateChannel, NotifyChannel
from tripengine.notifications.dispatcher import SendDispatcher, get_default_dispatcher
from tripengine.notifications.fanout import NotificationFanout
from tripengine.notifications.inbox import NotificationInbox
from tripengine.notifications.websocket import live_hub
from tripengine.routing.client import RoutingService, build_routing_service
from tripengine.routing.synthesizer import RouteSynthesizer
from tripengine.schedules.materializer import TripMaterializer
from tripengine.schedules.service import ScheduleService
from tripengine.trips.lifecycle import TripLifecycleController
from tripengine.trips.tracking import LocationTracker


def get_clock() -> Clock:
    return system_clock


@lru_cache()
def get_routing() -> RoutingService:
    return build_routing_service(
        settings.ROUTING_BASE_URL,
        settings.ROUTING_API_KEY,
        settings.ROUTING_TIMEOUT_SECONDS,
    )


def get_live_channel() -> LiveUpdateChannel:
    return live_hub


def get_dispatcher() -> SendDispatcher:
    return get_default_dispatcher(settings.FANOUT_MAX_WORKERS)


def get_notify_channel(
    db: Session = Depends(get_db),
    live: LiveUpdateChannel = Depends(get_live_channel),
    clock: Clock = Depends(get_clock),
) -> NotifyChannel:
    # Sends run on dispatcher threads, each with its own session on the same engine
    session_factory = sessionmaker(autocommit=False, autoflush=False, bind=db.get_bind())
    return DatabaseNotifyChannel(session_factory, live_channel=live, clock=clock)


def get_fanout(
    db: Session = Depends(get_db),
    channel: NotifyChannel = Depends(get_notify_channel),
    dispatcher: SendDispatcher = Depends(get_dispatcher),
    routing: RoutingService = Depends(get_routing),
) -> NotificationFanout:
    return NotificationFanout(db, channel, dispatcher, routing)


def get_materializer(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> TripMaterializer:
    return TripMaterializer(db, clock=clock)


def get_schedule_service(
    db: Session = Depends(get_db),
    routing: RoutingService = Depends(get_routing),
    materializer: TripMaterializer = Depends(get_materializer),
    fanout: NotificationFanout = Depends(get_fanout),
    clock: Clock = Depends(get_clock),
) -> ScheduleService:
    return ScheduleService(db, RouteSynthesizer(routing), materializer, fanout, clock=clock)


def get_lifecycle(
    db: Session = Depends(get_db),
    fanout: NotificationFanout = Depends(get_fanout),
    routing: RoutingService = Depends(get_routing),
    clock: Clock = Depends(get_clock),
) -> TripLifecycleController:
    return TripLifecycleController(db, fanout, routing, clock=clock)


def get_tracker(
    db: Session = Depends(get_db),
    live: LiveUpdateChannel = Depends(get_live_channel),
    clock: Clock = Depends(get_clock),
) -> LocationTracker:
    return LocationTracker(db, live_channel=live, clock=clock)


def get_attendance_ledger(
    db: Session = Depends(get_db),
    fanout: NotificationFanout = Depends(get_fanout),
    clock: Clock = Depends(get_clock),
) -> AttendanceLedger:
    return AttendanceLedger(db, fanout, DatabaseTokenResolver(db), clock=clock)


def get_inbox(
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> NotificationInbox:
    return NotificationInbox(db, clock=clock)
