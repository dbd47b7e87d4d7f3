from fastapi import APIRouter, Depends
from typing import List
from gymledger.dependencies.dep_auth import get_current_user, get_current_staff
from gymledger.dependencies.dep_services import (
    get_booking_service,
    get_consistency_sync,
    get_enrollment_tracker
)
from gymledger.models.mod_auth import AuthUser
from gymledger.schemas.sch_booking import AttendanceReportItem, BookingResponse, BulkAttendance
from gymledger.schemas.sch_ledger import DriftResponse, EnrollmentResponse
from gymledger.services.svc_booking import BookingService
from gymledger.services.svc_enrollment import EnrollmentTracker
from gymledger.services.svc_sync import ConsistencySync

router = APIRouter(
    prefix="/classes",
    tags=["Classes"],
    responses={404: {"description": "Not found"}},
)

@router.get('/{class_id}/enrollment', response_model=EnrollmentResponse)
def read_enrollment(
    class_id: str,
    enrollment: EnrollmentTracker = Depends(get_enrollment_tracker),
    current_user: AuthUser = Depends(get_current_user)
):
    """Current enrollment and remaining seats for a class."""
    snapshot = enrollment.read_enrollment(class_id)
    return EnrollmentResponse(
        class_id=snapshot.class_id,
        enrolled=snapshot.enrolled,
        capacity=snapshot.capacity,
        available=snapshot.available
    )

@router.post('/{class_id}/reconcile', response_model=DriftResponse)
def reconcile_class(
    class_id: str,
    sync: ConsistencySync = Depends(get_consistency_sync),
    current_staff: AuthUser = Depends(get_current_staff)
):
    """Recount active bookings and correct the class's enrollment counter."""
    return sync.reconcile_class(class_id)

@router.post('/{class_id}/attendance', response_model=List[BookingResponse])
def mark_class_attendance(
    class_id: str,
    attendance: BulkAttendance,
    service: BookingService = Depends(get_booking_service),
    current_staff: AuthUser = Depends(get_current_staff)
):
    """
    Save attendance for a whole class.

    - Every confirmed or completed booking of the class is marked
    - Bookings not listed in marks use default_present
    - No sessions are moved; they were consumed at booking time
    """
    return service.mark_class_attendance(
        class_id,
        attendance.marks,
        default_present=attendance.default_present,
        actor=current_staff
    )

@router.get('/{class_id}/attendance', response_model=List[AttendanceReportItem])
def attendance_report(
    class_id: str,
    service: BookingService = Depends(get_booking_service),
    current_staff: AuthUser = Depends(get_current_staff)
):
    """
    Attendance per booking. Confirmed bookings of a finished class that were
    never marked are reported as attended.
    """
    return service.attendance_report(class_id)
