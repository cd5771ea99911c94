from fastapi import APIRouter, Depends

from tripengine.attendance.schemas import (
    AbsenceReport, AbsenceResponse, AttendanceRecordResponse, AttendanceSummary, ManualMark,
    ManualMarkResponse, TokenScan, VerifyResponse
)
from tripengine.attendance.service import AttendanceLedger
from tripengine.dependencies import get_attendance_ledger
from tripengine.exceptions import TripEngineError, to_http_exception

router = APIRouter()

@router.post("/verify", response_model=VerifyResponse)
def verify_qr_token(
    scan: TokenScan,
    ledger: AttendanceLedger = Depends(get_attendance_ledger)
):
    """Board a passenger by scanning their QR token"""
    try:
        record, passenger, already = ledger.verify_by_token(scan.qr_token, scan.lat, scan.lng)
    except TripEngineError as e:
        raise to_http_exception(e)
    
    return VerifyResponse(
        record=AttendanceRecordResponse.model_validate(record),
        passenger_name=passenger.name,
        already_recorded=already
    )

@router.post("/manual", response_model=ManualMarkResponse)
def mark_attendance(
    mark: ManualMark,
    ledger: AttendanceLedger = Depends(get_attendance_ledger)
):
    """Board, mark absent or drop off one or many passengers by hand"""
    try:
        records, changed, skipped = ledger.mark_manual(mark)
    except TripEngineError as e:
        raise to_http_exception(e)
    
    return ManualMarkResponse(
        records=[AttendanceRecordResponse.model_validate(r) for r in records],
        changed=changed,
        skipped=skipped
    )

@router.post("/absence", response_model=AbsenceResponse)
def report_absence(
    report: AbsenceReport,
    ledger: AttendanceLedger = Depends(get_attendance_ledger)
):
    """Guardian reports a passenger absent for a date"""
    try:
        records = ledger.report_absence(report)
    except TripEngineError as e:
        raise to_http_exception(e)
    
    return AbsenceResponse(
        records=[AttendanceRecordResponse.model_validate(r) for r in records],
        message=f"Absence recorded for {len(records)} trip(s)"
    )

@router.get("/trips/{trip_id}", response_model=AttendanceSummary)
def get_trip_attendance(
    trip_id: int,
    ledger: AttendanceLedger = Depends(get_attendance_ledger)
):
    """Boarded, absent and pending passengers for a trip"""
    try:
        return ledger.trip_summary(trip_id)
    except TripEngineError as e:
        raise to_http_exception(e)
