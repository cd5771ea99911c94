"""
Attendance Module

Per-trip, per-passenger boarding, absence and drop-off records, written by
QR token scans or by hand, and read by the trip start gate.

Key Components:
- service.py: Attendance ledger with idempotent upserts
- tokens.py: QR token to passenger resolution
- router.py: FastAPI endpoints for scans, manual marks and absence reports
- schemas.py: Attendance status, actions and summaries
"""

from .schemas import AttendanceStatus, AttendanceAction, ManualMark, AttendanceSummary

__all__ = [
    "AttendanceStatus",
    "AttendanceAction",
    "ManualMark",
    "AttendanceSummary"
]
