from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime
from gymledger.models.mod_booking import Booking, BookingStatus, BookingChange

class BookingCreate(BaseModel):
    member_id: str
    class_id: str

class BookingCancel(BaseModel):
    override: bool = Field(
        default=False,
        description="Staff only: cancel even though the cancellation window has closed"
    )

class AttendanceMark(BaseModel):
    attended: bool

class BulkAttendance(BaseModel):
    marks: Dict[str, bool] = Field(
        default_factory=dict,
        description="Attendance per booking id; bookings left out use default_present"
    )
    default_present: bool = True

class BookingResult(BaseModel):
    booking: Booking
    remaining_sessions: Optional[int] = None
    enrolled: Optional[int] = None
    duplicate: bool = False

class BookingResponse(BaseModel):
    id: str
    member_id: str
    class_id: str
    status: BookingStatus
    attendance: Optional[bool]
    booking_date: datetime
    changes: List[BookingChange] = []

    class Config:
        from_attributes = True

class BookingOutcomeResponse(BaseModel):
    booking: BookingResponse
    remaining_sessions: Optional[int] = None
    enrolled: Optional[int] = None
    duplicate: bool = False

class AttendanceReportItem(BaseModel):
    booking_id: str
    member_id: str
    user_name: Optional[str] = None
    status: BookingStatus
    recorded: Optional[bool]            # attendance as stored
    attended: Optional[bool]            # effective attendance for reporting
    inferred: bool = False
