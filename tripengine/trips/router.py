from fastapi import APIRouter, Depends, Query
from typing import List, Optional

from tripengine.dependencies import get_lifecycle, get_tracker
from tripengine.exceptions import TripEngineError, to_http_exception
from tripengine.trips.lifecycle import TripLifecycleController
from tripengine.trips.schemas import (
    ActiveTrip, DelayReport, DelayResponse, EndTripRequest, EndTripResponse, LocationAck, LocationUpdate,
    StartTripResponse, TripResponse, TripStatus
)
from tripengine.trips.tracking import LocationTracker

router = APIRouter()

@router.get("/active", response_model=List[ActiveTrip])
def get_active_trips(
    organization_id: int = Query(..., description="Organization ID"),
    lifecycle: TripLifecycleController = Depends(get_lifecycle)
):
    """Ongoing trips with position and route stops"""
    return lifecycle.active_trips(organization_id)

@router.get("/history", response_model=List[TripResponse])
def get_trip_history(
    organization_id: int = Query(..., description="Organization ID"),
    bus_id: Optional[int] = Query(None, description="Filter by bus"),
    driver_id: Optional[int] = Query(None, description="Filter by driver"),
    status: Optional[TripStatus] = Query(None, description="Filter by status"),
    limit: int = Query(50, ge=1, le=200, description="Maximum trips to return"),
    lifecycle: TripLifecycleController = Depends(get_lifecycle)
):
    """Trips newest first"""
    return lifecycle.history(organization_id, bus_id=bus_id, driver_id=driver_id, status=status, limit=limit)

@router.get("/{trip_id}", response_model=TripResponse)
def get_trip(
    trip_id: int,
    lifecycle: TripLifecycleController = Depends(get_lifecycle)
):
    try:
        return lifecycle.get_trip(trip_id)
    except TripEngineError as e:
        raise to_http_exception(e)

@router.post("/{trip_id}/start", response_model=StartTripResponse)
def start_trip(
    trip_id: int,
    lifecycle: TripLifecycleController = Depends(get_lifecycle)
):
    """Start a scheduled trip once every passenger is boarded or absent"""
    try:
        trip, summary = lifecycle.start(trip_id)
    except TripEngineError as e:
        raise to_http_exception(e)
    
    return StartTripResponse(trip=TripResponse.model_validate(trip), notifications=summary)

@router.post("/{trip_id}/end", response_model=EndTripResponse)
def end_trip(
    trip_id: int,
    request: Optional[EndTripRequest] = None,
    lifecycle: TripLifecycleController = Depends(get_lifecycle)
):
    """Complete an ongoing trip and record its distance and duration"""
    try:
        result = lifecycle.end(trip_id, distance_covered=request.distance_covered if request else None)
    except TripEngineError as e:
        raise to_http_exception(e)
    
    return EndTripResponse(
        trip=TripResponse.model_validate(result.trip),
        duration_minutes=result.duration_minutes,
        duration_anomalous=result.duration_anomalous,
        metrics_degraded=result.metrics_degraded,
        notifications=result.notifications
    )

@router.post("/{trip_id}/location", response_model=LocationAck)
def update_location(
    trip_id: int,
    update: LocationUpdate,
    tracker: LocationTracker = Depends(get_tracker)
):
    """Record the bus position for an ongoing trip"""
    try:
        return tracker.record(trip_id, update)
    except TripEngineError as e:
        raise to_http_exception(e)

@router.post("/{trip_id}/delay", response_model=DelayResponse)
def report_delay(
    trip_id: int,
    report: DelayReport,
    lifecycle: TripLifecycleController = Depends(get_lifecycle)
):
    """Notify guardians that a trip is running late"""
    try:
        summary = lifecycle.report_delay(trip_id, report.minutes, report.reason)
    except TripEngineError as e:
        raise to_http_exception(e)
    
    return DelayResponse(trip_id=trip_id, notifications=summary)
