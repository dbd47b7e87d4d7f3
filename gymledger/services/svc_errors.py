from fastapi import HTTPException
from typing import Any, Dict


class LedgerError(HTTPException):
    """
    Base class for every failure the ledger and booking services surface.

    The detail is a structured object with a machine readable ``code``, a
    human readable ``message`` and, where applicable, the numeric constraint
    that was violated.
    """

    code = "ledger_error"
    http_status = 400

    def __init__(self, message: str, **details: Any):
        detail: Dict[str, Any] = {"code": self.code, "message": message}
        detail.update(details)
        super().__init__(status_code=self.http_status, detail=detail)

    @property
    def message(self) -> str:
        return self.detail["message"]


class InsufficientBalance(LedgerError):
    code = "insufficient_balance"

    def __init__(self, remaining: int, requested: int):
        noun = "session" if remaining == 1 else "sessions"
        super().__init__(
            f"Only {remaining} {noun} remaining, {requested} required",
            remaining=remaining,
            requested=requested
        )


class ClassFull(LedgerError):
    code = "class_full"
    http_status = 409

    def __init__(self, class_id: str, capacity: int, enrolled: int):
        super().__init__(
            f"Class is full ({enrolled}/{capacity} enrolled)",
            class_id=class_id,
            capacity=capacity,
            enrolled=enrolled
        )


class AlreadyBooked(LedgerError):
    code = "already_booked"
    http_status = 409

    def __init__(self, booking_id: str, status: str):
        super().__init__(
            "Member already holds an active booking for this class",
            booking_id=booking_id,
            status=status
        )

    @property
    def booking_id(self) -> str:
        return self.detail["booking_id"]


class CancellationWindowClosed(LedgerError):
    code = "cancellation_window_closed"

    def __init__(self, lead_hours: float):
        super().__init__(
            f"Bookings can only be cancelled at least {lead_hours:g} hours before the class starts",
            lead_hours=lead_hours
        )


class BookingWindowClosed(LedgerError):
    code = "booking_window_closed"

    def __init__(self, message: str):
        super().__init__(message)


class ClassInactive(LedgerError):
    code = "class_inactive"

    def __init__(self, class_id: str):
        super().__init__("Class is not open for booking", class_id=class_id)


class StoreUnavailable(LedgerError):
    code = "store_unavailable"
    http_status = 503

    def __init__(self, operation: str, reason: str = ""):
        message = f"Store unavailable during {operation}; re-read state before retrying"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, operation=operation)


class StaleWrite(LedgerError):
    code = "stale_write"
    http_status = 409

    def __init__(self, resource: str, resource_id: str = ""):
        super().__init__(
            f"{resource} changed concurrently; re-read and retry the operation",
            resource=resource,
            id=resource_id
        )


class NotFound(LedgerError):
    code = "not_found"
    http_status = 404

    def __init__(self, resource: str, resource_id: str):
        super().__init__(f"{resource} {resource_id} not found", resource=resource, id=resource_id)


class InvalidTransition(LedgerError):
    code = "invalid_transition"
    http_status = 409

    def __init__(self, resource: str, current: str, target: str):
        super().__init__(
            f"{resource} in status {current} cannot move to {target}",
            resource=resource,
            current=current,
            target=target
        )


class TooManyPendingRequests(LedgerError):
    code = "too_many_pending_requests"

    def __init__(self, limit: int):
        super().__init__(
            f"At most {limit} membership requests may be pending at once",
            limit=limit
        )
