from pydantic import BaseModel, Field, ConfigDict
from typing import List, Optional, Literal, Union
from typing_extensions import Annotated
from datetime import datetime, date, time
from enum import Enum

from tripengine.trips.schemas import TripResponse

class Weekday(str, Enum):
    """Weekday names, indexed like date.weekday()"""
    MONDAY = "MONDAY"
    TUESDAY = "TUESDAY"
    WEDNESDAY = "WEDNESDAY"
    THURSDAY = "THURSDAY"
    FRIDAY = "FRIDAY"
    SATURDAY = "SATURDAY"
    SUNDAY = "SUNDAY"

    @classmethod
    def of(cls, day: date) -> "Weekday":
        return list(cls)[day.weekday()]

# Recurrence
class WeekdaysRecurrence(BaseModel):
    """Repeats on the given weekdays"""
    kind: Literal["weekdays"] = "weekdays"
    days: List[Weekday] = Field(..., min_length=1)

class OneTimeRecurrence(BaseModel):
    """Runs once on the given date"""
    kind: Literal["one_time"] = "one_time"
    run_date: date

Recurrence = Annotated[Union[WeekdaysRecurrence, OneTimeRecurrence], Field(discriminator="kind")]

# Schedule requests
class ScheduleCreate(BaseModel):
    """Create a schedule for a bus"""
    bus_id: int
    driver_id: Optional[int] = None  # Defaults to the bus's driver
    boarding_time: time
    return_time: Optional[time] = None
    recurrence: Recurrence

class ScheduleUpdate(BaseModel):
    """Partial schedule update"""
    driver_id: Optional[int] = None
    boarding_time: Optional[time] = None
    return_time: Optional[time] = None
    recurrence: Optional[Recurrence] = None
    is_active: Optional[bool] = None

class RescheduleRequest(BaseModel):
    """Move a trip, or re-anchor a recurring window, to a new date"""
    new_date: date

class GenerateTripsRequest(BaseModel):
    """Daily generation for an organization"""
    organization_id: int
    target_date: Optional[date] = None

# Schedule responses
class StopResponse(BaseModel):
    order: int
    name: str
    address: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    estimated_time: str
    passenger_id: Optional[int] = None

class RouteResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    bus_id: int
    name: str
    description: Optional[str] = None
    stops: List[StopResponse] = []
    is_optimized: bool = False

class ScheduleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: int
    route_id: int
    bus_id: int
    driver_id: int
    boarding_time: time
    return_time: Optional[time] = None
    operating_days: List[Weekday] = []
    one_time_date: Optional[date] = None
    is_active: bool
    last_generated_date: Optional[date] = None

class ScheduleDetail(ScheduleResponse):
    route: RouteResponse
    upcoming_trips: List[TripResponse] = []

class ScheduleCreateResponse(BaseModel):
    schedule: ScheduleResponse
    route: RouteResponse
    trips_generated: int
    message: str

class RescheduleResponse(BaseModel):
    trips: List[TripResponse]
    trips_generated: int
    message: str

class GenerateTripsResponse(BaseModel):
    target_date: date
    trips: List[TripResponse]
    notification_count: int
    message: str
