from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime
from enum import Enum

class BookingStatus(str, Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    CANCELLED = "Cancelled"
    COMPLETED = "Completed"

ACTIVE_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)

class BookingChange(BaseModel):
    timestamp: datetime
    change_type: str  # 'booked', 'confirmed', 'cancellation', 'attendance'
    actor_id: Optional[str] = None
    note: Optional[str] = None

class Booking(BaseModel):
    id: str
    member_id: str
    class_id: str
    user_name: Optional[str] = None
    status: BookingStatus
    attendance: Optional[bool] = None
    booking_date: datetime
    enrollment_released: bool = False
    changes: List[BookingChange] = []

    class Config:
        from_attributes = True
