from pydantic import BaseModel, Field, ConfigDict, model_validator
from typing import List, Optional
from datetime import datetime, date
from enum import Enum

class AttendanceStatus(str, Enum):
    """Per-trip passenger state"""
    PENDING = "PENDING"
    PRESENT = "PRESENT"
    ABSENT = "ABSENT"

class AttendanceAction(str, Enum):
    """Manual actions a driver or admin can take"""
    BOARD = "board"
    ABSENT = "absent"
    DROP = "drop"
    RESET = "reset"

# Requests
class TokenScan(BaseModel):
    """QR token read at the bus door"""
    qr_token: str = Field(..., min_length=1)
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)

class ManualMark(BaseModel):
    """Mark one passenger or a list of them.

    A bulk board or absent skips passengers already marked; a bulk drop
    skips absent ones.
    """
    trip_id: int
    passenger_id: Optional[int] = None
    passenger_ids: Optional[List[int]] = None
    action: AttendanceAction
    lat: Optional[float] = Field(None, ge=-90, le=90)
    lng: Optional[float] = Field(None, ge=-180, le=180)
    notes: Optional[str] = None

    @model_validator(mode="after")
    def check_target(self):
        if self.passenger_id is None and not self.passenger_ids:
            raise ValueError("Either passenger_id or passenger_ids is required")
        if self.passenger_id is not None and self.passenger_ids:
            raise ValueError("Use passenger_id or passenger_ids, not both")
        return self

class AbsenceReport(BaseModel):
    """Guardian reports a passenger will miss the bus on a date"""
    passenger_id: int
    guardian_id: int
    absence_date: date
    reason: Optional[str] = None

# Responses
class AttendanceRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    trip_id: int
    passenger_id: int
    status: AttendanceStatus
    boarded_at: Optional[datetime] = None
    boarded_lat: Optional[float] = None
    boarded_lng: Optional[float] = None
    dropped_at: Optional[datetime] = None
    dropped_lat: Optional[float] = None
    dropped_lng: Optional[float] = None
    notes: Optional[str] = None

class VerifyResponse(BaseModel):
    success: bool = True
    record: AttendanceRecordResponse
    passenger_name: str
    already_recorded: bool = False

class ManualMarkResponse(BaseModel):
    records: List[AttendanceRecordResponse]
    changed: int
    skipped: List[int] = []

class AbsenceResponse(BaseModel):
    records: List[AttendanceRecordResponse]
    message: str

class PassengerAttendance(BaseModel):
    passenger_id: int
    name: str
    status: AttendanceStatus
    boarded_at: Optional[datetime] = None
    dropped_at: Optional[datetime] = None

class AttendanceSummary(BaseModel):
    """Read model the driver app shows before starting a trip"""
    trip_id: int
    total_assigned: int
    boarded: int
    absent: int
    pending: int
    attendance_rate: float
    passengers: List[PassengerAttendance] = []
