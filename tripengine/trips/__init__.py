"""
Trips Module

Trip lifecycle SCHEDULED -> ONGOING -> COMPLETED, with the boarding gate,
per-bus start/end locking, final distance and duration, and live location.

Key Components:
- lifecycle.py: Start, end, delay notices and trip queries
- tracking.py: Location ingestion and live position events
- locks.py: Per-bus lock registry
- router.py: FastAPI endpoints for trips
- schemas.py: Trip status and request/response models
"""

from .schemas import TripStatus, TripResponse, FanoutSummary, LocationUpdate, ActiveTrip

__all__ = [
    "TripStatus",
    "TripResponse",
    "FanoutSummary",
    "LocationUpdate",
    "ActiveTrip"
]
