"""
Domain errors raised by the orchestration services.

Each error carries a machine readable ``code``, the HTTP status the API layer
answers with, and optional ``details`` for the caller. Routers translate them
with :func:`to_http_exception`.
"""

from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status


class TripEngineError(Exception):
    code = "TRIP_ENGINE_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


# Validation errors
class ValidationError(TripEngineError):
    code = "VALIDATION_ERROR"


class NoDriverAssigned(ValidationError):
    code = "NO_DRIVER_ASSIGNED"


class DriverAssignedElsewhere(ValidationError):
    code = "DRIVER_ASSIGNED_ELSEWHERE"


class NoPassengersAssigned(ValidationError):
    code = "NO_PASSENGERS_ASSIGNED"


class InvalidRecurrence(ValidationError):
    code = "INVALID_RECURRENCE"


class InvalidDate(ValidationError):
    code = "INVALID_DATE"


class PassengerNotOnBus(ValidationError):
    code = "PASSENGER_NOT_ON_BUS"


# Lookups
class NotFoundError(TripEngineError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class BusNotFound(NotFoundError):
    code = "BUS_NOT_FOUND"


class ScheduleNotFound(NotFoundError):
    code = "SCHEDULE_NOT_FOUND"


class TripNotFound(NotFoundError):
    code = "TRIP_NOT_FOUND"


class PassengerNotFound(NotFoundError):
    code = "PASSENGER_NOT_FOUND"


class NotificationNotFound(NotFoundError):
    code = "NOTIFICATION_NOT_FOUND"


class UnknownToken(NotFoundError):
    code = "UNKNOWN_TOKEN"


class NoEligibleTrip(NotFoundError):
    code = "NO_ELIGIBLE_TRIP"


# Precondition errors
class PreconditionError(TripEngineError):
    code = "PRECONDITION_FAILED"
    status_code = status.HTTP_409_CONFLICT


class InvalidTripStatus(PreconditionError):
    code = "INVALID_TRIP_STATUS"


class BusAlreadyOnTrip(PreconditionError):
    code = "BUS_ALREADY_ON_TRIP"


class BoardingIncomplete(PreconditionError):
    code = "BOARDING_INCOMPLETE"

    def __init__(self, pending_passengers: List[str]):
        super().__init__(
            "Cannot start trip. Not all assigned passengers have boarded or been marked absent.",
            details={"pending_passengers": pending_passengers},
        )
        self.pending_passengers = pending_passengers


# Integrity errors
class InvalidDuration(TripEngineError):
    code = "INVALID_DURATION"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY


# Routing service failures never leave the services that call it
class RoutingUnavailable(Exception):
    pass


def to_http_exception(error: TripEngineError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=error.to_detail())
