"""
Schedules Module

Schedule definitions bound to a bus, driver and synthesized route, and the
trips they expand into.

Key Components:
- service.py: Create, update, delete and read schedules; daily trip generation
- materializer.py: Rolling-window trip materialization and rescheduling
- scheduler.py: Background thread that keeps recurring windows filled
- router.py: FastAPI endpoints for schedules and rescheduling
- schemas.py: Recurrence tagged union and schedule request/response models

Routers and services are imported from their modules directly.
"""

from .schemas import (
    Weekday, WeekdaysRecurrence, OneTimeRecurrence, Recurrence,
    ScheduleCreate, ScheduleUpdate, ScheduleResponse, RouteResponse, StopResponse
)

__all__ = [
    "Weekday",
    "WeekdaysRecurrence",
    "OneTimeRecurrence",
    "Recurrence",
    "ScheduleCreate",
    "ScheduleUpdate",
    "ScheduleResponse",
    "RouteResponse",
    "StopResponse"
]
