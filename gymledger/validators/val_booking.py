from datetime import datetime, timedelta, timezone
from gymledger.configuration.config import Config
from gymledger.services.svc_errors import BookingWindowClosed, CancellationWindowClosed


def _as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CancellationPolicy:
    DEFAULT_LEAD_HOURS = 4

    @staticmethod
    def is_allowed(class_start: datetime, now: datetime, lead_hours: float = DEFAULT_LEAD_HOURS) -> bool:
        """True iff the class starts at least ``lead_hours`` after ``now`` (boundary inclusive)."""
        return _as_utc(class_start) - _as_utc(now) >= timedelta(hours=lead_hours)

    @staticmethod
    def ensure_allowed(class_start: datetime, now: datetime, lead_hours: float = DEFAULT_LEAD_HOURS):
        if not CancellationPolicy.is_allowed(class_start, now, lead_hours):
            raise CancellationWindowClosed(lead_hours)


class BookingValidator:
    @staticmethod
    def _get_current_time():
        """Get current time as UTC timezone-aware datetime"""
        return datetime.now(timezone.utc)

    @staticmethod
    def validate_booking_lead(class_start: datetime, now: datetime):
        """Validate that a class is not booked too close to its start"""
        min_hours = Config.BOOKING_MIN_LEAD_HOURS
        if _as_utc(now) + timedelta(hours=min_hours) > _as_utc(class_start):
            raise BookingWindowClosed(
                f"Classes must be booked at least {min_hours:g} hours before they start"
            )

    @staticmethod
    def validate_booking_advance(class_start: datetime, now: datetime):
        """Validate that a class is not booked too far ahead"""
        max_days = Config.BOOKING_MAX_ADVANCE_DAYS
        if _as_utc(class_start) > _as_utc(now) + timedelta(days=max_days):
            raise BookingWindowClosed(
                f"Classes can be booked at most {max_days} days in advance"
            )

    @staticmethod
    def validate_create_booking(class_start: datetime, now: datetime):
        """Validate all time rules for creating a booking"""
        BookingValidator.validate_booking_lead(class_start, now)
        BookingValidator.validate_booking_advance(class_start, now)
