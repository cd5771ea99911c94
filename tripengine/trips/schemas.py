from pydantic import BaseModel, Field, ConfigDict
from typing import List, Optional, Dict, Any
from datetime import datetime
from enum import Enum

class TripStatus(str, Enum):
    """Trip lifecycle states"""
    SCHEDULED = "SCHEDULED"
    ONGOING = "ONGOING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"  # Reserved; no transition produces it

class TripResponse(BaseModel):
    """Trip as stored"""
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: int
    bus_id: int
    driver_id: int
    route_id: int
    schedule_id: Optional[int] = None
    status: TripStatus
    scheduled_start: datetime
    actual_start: Optional[datetime] = None
    actual_end: Optional[datetime] = None
    current_lat: Optional[float] = None
    current_lng: Optional[float] = None
    last_location_time: Optional[datetime] = None
    distance_covered: Optional[float] = 0.0
    estimated_duration: Optional[int] = 0

class FanoutSummary(BaseModel):
    """How many notifications a transition handed to the dispatcher"""
    queued: int
    recipients: List[int] = []

class StartTripResponse(BaseModel):
    trip: TripResponse
    notifications: FanoutSummary

class EndTripRequest(BaseModel):
    """Optional distance estimate from the driver's device, in km"""
    distance_covered: Optional[float] = Field(None, ge=0)

class EndTripResponse(BaseModel):
    trip: TripResponse
    duration_minutes: float
    duration_anomalous: bool = False
    metrics_degraded: bool = False
    notifications: FanoutSummary

class LocationUpdate(BaseModel):
    """Driver position sample"""
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    speed: Optional[float] = None
    heading: Optional[float] = None
    accuracy: Optional[float] = None

class LocationAck(BaseModel):
    success: bool = True
    trip_id: int
    recorded_at: datetime

class DelayReport(BaseModel):
    """Delay notice for a scheduled or running trip"""
    minutes: int = Field(..., gt=0, le=24 * 60)
    reason: Optional[str] = None

class DelayResponse(BaseModel):
    trip_id: int
    notifications: FanoutSummary

class ActiveTrip(BaseModel):
    """ONGOING trip with what a live map needs"""
    trip: TripResponse
    bus_number: str
    driver_name: Optional[str] = None
    route_name: Optional[str] = None
    stops: List[Dict[str, Any]] = []
