from fastapi import APIRouter, Depends, Query, status
from typing import List

from tripengine.dependencies import get_materializer, get_schedule_service
from tripengine.exceptions import TripEngineError, to_http_exception
from tripengine.schedules.materializer import TripMaterializer
from tripengine.schedules.schemas import (
    GenerateTripsRequest, GenerateTripsResponse, RescheduleRequest, RescheduleResponse, RouteResponse,
    ScheduleCreate, ScheduleCreateResponse, ScheduleDetail, ScheduleResponse, ScheduleUpdate
)
from tripengine.schedules.service import ScheduleService
from tripengine.trips.schemas import TripResponse

router = APIRouter()

@router.post("/", response_model=ScheduleCreateResponse, status_code=status.HTTP_201_CREATED)
def create_schedule(
    data: ScheduleCreate,
    service: ScheduleService = Depends(get_schedule_service)
):
    """Create a schedule, synthesize its route and materialize the first trips"""
    try:
        schedule, route, trips = service.create_schedule(data)
    except TripEngineError as e:
        raise to_http_exception(e)
    
    return ScheduleCreateResponse(
        schedule=ScheduleResponse.model_validate(schedule),
        route=RouteResponse.model_validate(route),
        trips_generated=len(trips),
        message=f"Schedule created with {len(trips)} trip(s)"
    )

@router.get("/", response_model=List[ScheduleResponse])
def list_schedules(
    organization_id: int = Query(..., description="Organization ID"),
    active_only: bool = Query(False, description="Only active schedules"),
    service: ScheduleService = Depends(get_schedule_service)
):
    """List an organization's schedules"""
    return service.list_schedules(organization_id, active_only=active_only)

@router.get("/{schedule_id}", response_model=ScheduleDetail)
def get_schedule(
    schedule_id: int,
    service: ScheduleService = Depends(get_schedule_service)
):
    """Get a schedule with its route and upcoming trips"""
    try:
        schedule = service.get_schedule(schedule_id)
    except TripEngineError as e:
        raise to_http_exception(e)
    
    base = ScheduleResponse.model_validate(schedule)
    return ScheduleDetail(
        **base.model_dump(),
        route=RouteResponse.model_validate(schedule.route),
        upcoming_trips=[TripResponse.model_validate(t) for t in service.upcoming_trips(schedule)]
    )

@router.patch("/{schedule_id}", response_model=ScheduleResponse)
def update_schedule(
    schedule_id: int,
    data: ScheduleUpdate,
    service: ScheduleService = Depends(get_schedule_service)
):
    """Partially update a schedule; existing trips are not touched"""
    try:
        return service.update_schedule(schedule_id, data)
    except TripEngineError as e:
        raise to_http_exception(e)

@router.delete("/{schedule_id}")
def delete_schedule(
    schedule_id: int,
    service: ScheduleService = Depends(get_schedule_service)
):
    """Delete a schedule; its trips remain without a schedule reference"""
    try:
        detached = service.delete_schedule(schedule_id)
    except TripEngineError as e:
        raise to_http_exception(e)
    
    return {"success": True, "trips_kept": detached}

@router.post("/trips/{trip_id}/reschedule", response_model=RescheduleResponse)
def reschedule_trip(
    trip_id: int,
    request: RescheduleRequest,
    materializer: TripMaterializer = Depends(get_materializer)
):
    """Move a one-time trip, or re-anchor a recurring schedule, to a new date"""
    try:
        trips = materializer.reschedule(trip_id, request.new_date)
    except TripEngineError as e:
        raise to_http_exception(e)
    
    return RescheduleResponse(
        trips=[TripResponse.model_validate(t) for t in trips],
        trips_generated=len(trips),
        message=f"Rescheduled to {request.new_date.isoformat()}"
    )

@router.post("/generate-trips", response_model=GenerateTripsResponse)
def generate_trips(
    request: GenerateTripsRequest,
    service: ScheduleService = Depends(get_schedule_service)
):
    """Create today's (or the given date's) trips for recurring schedules"""
    try:
        target, trips, queued = service.generate_trips_for_date(request.organization_id, request.target_date)
    except TripEngineError as e:
        raise to_http_exception(e)
    
    return GenerateTripsResponse(
        target_date=target,
        trips=[TripResponse.model_validate(t) for t in trips],
        notification_count=queued,
        message=f"Generated {len(trips)} trip(s) for {target.isoformat()}"
    )
