from fastapi import APIRouter, HTTPException, Depends
from gymledger.dependencies.dep_auth import get_current_user, get_current_staff
from gymledger.dependencies.dep_services import get_booking_service
from gymledger.models.mod_auth import AuthUser
from gymledger.schemas.sch_booking import (
    AttendanceMark,
    BookingCancel,
    BookingCreate,
    BookingOutcomeResponse,
    BookingResponse
)
from gymledger.services.svc_booking import BookingService

router = APIRouter(
    prefix="/bookings",
    tags=["Bookings"],
    responses={404: {"description": "Not found"}},
)

def _ensure_owner_or_staff(booking, current_user: AuthUser, action: str):
    if current_user.is_staff or booking.member_id == current_user.id:
        return
    raise HTTPException(
        status_code=403,
        detail=f"You don't have permission to {action} this booking"
    )

@router.post('/', response_model=BookingOutcomeResponse)
def create_booking(
    booking: BookingCreate,
    service: BookingService = Depends(get_booking_service),
    current_user: AuthUser = Depends(get_current_user)
):
    """
    Book a class for the authenticated member.

    - Consumes one session and takes one seat
    - Fails if the member has no sessions left or the class is full
    - A booking resubmitted after an interrupted attempt is completed, not duplicated
    - Members can only book for themselves
    """
    if booking.member_id != current_user.id:
        raise HTTPException(
            status_code=403,
            detail="You can only create bookings for yourself"
        )
    return service.book(booking.member_id, booking.class_id, actor=current_user)

@router.get('/{booking_id}', response_model=BookingResponse)
def get_booking(
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
    current_user: AuthUser = Depends(get_current_user)
):
    """
    Get details of a specific booking by its ID.
    - Members can only view their own bookings
    - Trainers and admins can view all bookings
    """
    booking = service.get_booking(booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail='Booking not found')
    _ensure_owner_or_staff(booking, current_user, "view")
    return booking

@router.post('/{booking_id}/cancel', response_model=BookingOutcomeResponse)
def cancel_booking(
    booking_id: str,
    cancel: BookingCancel = BookingCancel(),
    service: BookingService = Depends(get_booking_service),
    current_user: AuthUser = Depends(get_current_user)
):
    """
    Cancel a booking, returning its session and seat.

    - Allowed until the configured number of hours before the class
    - Trainers and admins can pass override to cancel after that
    - Cancelling an already cancelled booking returns the same outcome
    """
    booking = service.get_booking(booking_id)
    if not booking:
        raise HTTPException(status_code=404, detail='Booking not found')
    _ensure_owner_or_staff(booking, current_user, "cancel")
    if cancel.override and not current_user.is_staff:
        raise HTTPException(
            status_code=403,
            detail="Only trainers and admins can override the cancellation window"
        )
    return service.cancel(booking_id, actor=current_user, override=cancel.override)

@router.post('/{booking_id}/attendance', response_model=BookingResponse)
def mark_attendance(
    booking_id: str,
    attendance: AttendanceMark,
    service: BookingService = Depends(get_booking_service),
    current_staff: AuthUser = Depends(get_current_staff)
):
    """Mark a confirmed booking as attended or missed. Sessions are not touched."""
    return service.mark_attendance(booking_id, attendance.attended, actor=current_staff)
