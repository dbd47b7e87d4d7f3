from azure.cosmos import ContainerProxy
from typing import Callable, Dict, List, Optional
from datetime import datetime
import uuid
from gymledger.configuration.database import (
    DocumentExists,
    create_document,
    delete_document,
    query_documents,
    read_document,
    update_document
)
from gymledger.configuration.monitor import log_event, log_exception, start_span
from gymledger.models.mod_auth import AuthUser
from gymledger.models.mod_booking import ACTIVE_STATUSES, Booking, BookingChange, BookingStatus
from gymledger.models.mod_class import ClassSession, ClassStatus
from gymledger.schemas.sch_booking import AttendanceReportItem, BookingResult
from gymledger.services.svc_enrollment import EnrollmentTracker
from gymledger.services.svc_errors import (
    AlreadyBooked,
    CancellationWindowClosed,
    ClassFull,
    ClassInactive,
    InsufficientBalance,
    InvalidTransition,
    NotFound
)
from gymledger.services.svc_ledger import SessionLedger
from gymledger.services.svc_settings import SettingsService
from gymledger.validators.val_booking import BookingValidator, CancellationPolicy

# Booking ids are derived from (member, class, attempt number) so that two
# devices submitting the same booking collide on create instead of both landing.
BOOKING_NAMESPACE = uuid.UUID("6f1c2b1e-5d3a-4c8e-9a51-2f0f7d9b3c44")

PAIR_BOOKINGS_QUERY = (
    "SELECT * FROM c WHERE c.member_id = @member_id AND c.class_id = @class_id"
)
CLASS_BOOKINGS_QUERY = (
    "SELECT * FROM c WHERE c.class_id = @class_id "
    "AND ARRAY_CONTAINS(@statuses, c.status)"
)
ATTENDANCE_STATUSES = (BookingStatus.CONFIRMED, BookingStatus.COMPLETED)


class BookingService:
    """
    Booking lifecycle: None -> Pending -> Confirmed -> Cancelled | Completed.

    Booking holds one seat (EnrollmentTracker) and one session credit
    (SessionLedger) for as long as it is active. Cancelling gives both back;
    completing keeps the session consumed.
    """

    def __init__(
        self,
        bookings: ContainerProxy,
        classes: ContainerProxy,
        ledger: SessionLedger,
        enrollment: EnrollmentTracker,
        settings: Optional[SettingsService] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.bookings = bookings
        self.classes = classes
        self.ledger = ledger
        self.enrollment = enrollment
        self.settings = settings or SettingsService()
        self.clock = clock or BookingValidator._get_current_time

    @staticmethod
    def debit_key(booking_id: str) -> str:
        return f"booking:{booking_id}:debit"

    @staticmethod
    def refund_key(booking_id: str) -> str:
        return f"booking:{booking_id}:refund"

    @staticmethod
    def _change(now: datetime, change_type: str, actor: Optional[AuthUser], note: Optional[str] = None) -> dict:
        return BookingChange(
            timestamp=now,
            change_type=change_type,
            actor_id=actor.id if actor else None,
            note=note
        ).model_dump(mode="json")

    def _read_class(self, class_id: str) -> ClassSession:
        doc = read_document(self.classes, class_id)
        if doc is None:
            raise NotFound("Class", class_id)
        return ClassSession(**doc)

    def _read_booking_doc(self, booking_id: str) -> dict:
        doc = read_document(self.bookings, booking_id)
        if doc is None:
            raise NotFound("Booking", booking_id)
        return doc

    def _update(self, booking_id: str, mutate: Callable[[dict], bool]) -> dict:
        return update_document(self.bookings, booking_id, mutate, "Booking")

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with start_span("get_booking", attributes={"booking_id": booking_id}):
            doc = read_document(self.bookings, booking_id)
            if doc is None:
                log_event("Booking not found", {"booking_id": booking_id})
                return None
            return Booking(**doc)

    def book(self, member_id: str, class_id: str, actor: Optional[AuthUser] = None) -> BookingResult:
        now = self.clock()
        properties = {"member_id": member_id, "class_id": class_id}
        try:
            with start_span("book_class", attributes=properties):
                log_event("Create booking started", properties)

                balance = self.ledger.read_balance(member_id)
                class_session = self._read_class(class_id)
                if class_session.status != ClassStatus.ACTIVE:
                    raise ClassInactive(class_id)

                existing = query_documents(self.bookings, PAIR_BOOKINGS_QUERY, [
                    {"name": "@member_id", "value": member_id},
                    {"name": "@class_id", "value": class_id}
                ])
                active = [doc for doc in existing if BookingStatus(doc["status"]) in ACTIVE_STATUSES]
                if active:
                    current = active[0]
                    if current["status"] == BookingStatus.PENDING.value:
                        return self._resume_pending(current, now, actor)
                    raise AlreadyBooked(current["id"], current["status"])

                BookingValidator.validate_create_booking(class_session.starts_at, now)
                if balance.remaining_sessions < 1:
                    raise InsufficientBalance(balance.remaining_sessions, 1)
                if class_session.available < 1:
                    raise ClassFull(class_id, class_session.capacity, class_session.enrolled)

                booking_id = str(uuid.uuid5(BOOKING_NAMESPACE, f"{member_id}:{class_id}:{len(existing)}"))
                booking = Booking(
                    id=booking_id,
                    member_id=member_id,
                    class_id=class_id,
                    user_name=actor.name if actor and actor.id == member_id else None,
                    status=BookingStatus.PENDING,
                    booking_date=now
                )
                body = booking.model_dump(mode="json")
                body["changes"] = [self._change(now, "booked", actor)]
                try:
                    create_document(self.bookings, body)
                except DocumentExists:
                    doc = read_document(self.bookings, booking_id) or body
                    raise AlreadyBooked(booking_id, doc["status"])

                try:
                    enrollment = self.enrollment.increment(class_id)
                except ClassFull:
                    delete_document(self.bookings, booking_id)
                    raise

                try:
                    debit = self.ledger.debit(member_id, 1, "booking", self.debit_key(booking_id))
                except InsufficientBalance:
                    self.enrollment.decrement(class_id)
                    delete_document(self.bookings, booking_id)
                    raise

                confirmed = self._confirm_or_refund(booking_id, now, actor)
                log_event("Booking confirmed", {
                    **properties,
                    "booking_id": booking_id,
                    "remaining_sessions": debit.remaining_sessions,
                    "enrolled": enrollment.enrolled
                })
                return BookingResult(
                    booking=confirmed,
                    remaining_sessions=debit.remaining_sessions,
                    enrolled=enrollment.enrolled
                )
        except Exception as e:
            log_exception(e, {"operation": "book_class", **properties})
            raise

    def _confirm(self, booking_id: str, now: datetime, actor: Optional[AuthUser]) -> Booking:
        def confirm(doc: dict) -> bool:
            if doc["status"] == BookingStatus.CONFIRMED.value:
                return False
            if doc["status"] != BookingStatus.PENDING.value:
                raise InvalidTransition("Booking", doc["status"], BookingStatus.CONFIRMED.value)
            doc["status"] = BookingStatus.CONFIRMED.value
            doc.setdefault("changes", []).append(self._change(now, "confirmed", actor))
            return True

        return Booking(**self._update(booking_id, confirm))

    def _confirm_or_refund(self, booking_id: str, now: datetime, actor: Optional[AuthUser]) -> Booking:
        try:
            return self._confirm(booking_id, now, actor)
        except InvalidTransition:
            # Cancelled while the debit was in flight; the cancel could not see the debit.
            self._finish_cancel(self._read_booking_doc(booking_id), duplicate=True)
            raise

    def _resume_pending(self, doc: dict, now: datetime, actor: Optional[AuthUser]) -> BookingResult:
        """Finish a booking whose earlier attempt stopped between steps."""
        booking_id, member_id, class_id = doc["id"], doc["member_id"], doc["class_id"]
        log_event("Resuming pending booking", {"booking_id": booking_id, "member_id": member_id})

        # The counter holds a seat for this booking only if it is above the
        # number of other active bookings.
        others = [b for b in self.enrollment.active_bookings(class_id) if b["id"] != booking_id]
        enrollment = self.enrollment.read_enrollment(class_id)
        if enrollment.enrolled <= len(others):
            try:
                enrollment = self.enrollment.increment(class_id)
            except ClassFull:
                self._abandon_pending(booking_id, now, actor, "class full")
                raise

        try:
            debit = self.ledger.debit(member_id, 1, "booking", self.debit_key(booking_id))
        except InsufficientBalance:
            self._abandon_pending(booking_id, now, actor, "insufficient balance")
            raise

        confirmed = self._confirm_or_refund(booking_id, now, actor)
        return BookingResult(
            booking=confirmed,
            remaining_sessions=debit.remaining_sessions,
            enrolled=enrollment.enrolled,
            duplicate=True
        )

    def _abandon_pending(self, booking_id: str, now: datetime, actor: Optional[AuthUser], note: str):
        def abandon(doc: dict) -> bool:
            if doc["status"] != BookingStatus.PENDING.value:
                return False
            doc["status"] = BookingStatus.CANCELLED.value
            doc["enrollment_released"] = True
            doc.setdefault("changes", []).append(self._change(now, "cancellation", actor, note))
            return True

        doc = self._update(booking_id, abandon)
        self.enrollment.reconcile(doc["class_id"])

    def cancel(self, booking_id: str, actor: Optional[AuthUser] = None, override: bool = False) -> BookingResult:
        """
        Cancel an active booking, returning its session and seat.

        Members must cancel at least the configured lead time before the
        class. Trainers and admins may pass ``override`` to cancel later.
        """
        now = self.clock()
        properties = {"booking_id": booking_id, "override": override}
        try:
            with start_span("cancel_booking", attributes=properties):
                log_event("Cancel booking started", properties)
                doc = self._read_booking_doc(booking_id)
                status = BookingStatus(doc["status"])

                if status == BookingStatus.CANCELLED:
                    return self._finish_cancel(doc, duplicate=True)
                if status not in ACTIVE_STATUSES:
                    raise InvalidTransition("Booking", status.value, BookingStatus.CANCELLED.value)

                class_session = self._read_class(doc["class_id"])
                lead_hours = self.settings.get_cancellation_hours()
                try:
                    CancellationPolicy.ensure_allowed(class_session.starts_at, now, lead_hours)
                except CancellationWindowClosed:
                    if not (override and actor is not None and actor.is_staff):
                        raise
                    log_event("Cancellation window overridden", {**properties, "actor_id": actor.id})

                already_cancelled = False

                def mark_cancelled(current: dict) -> bool:
                    nonlocal already_cancelled
                    current_status = BookingStatus(current["status"])
                    if current_status == BookingStatus.CANCELLED:
                        already_cancelled = True
                        return False
                    if current_status not in ACTIVE_STATUSES:
                        raise InvalidTransition("Booking", current_status.value, BookingStatus.CANCELLED.value)
                    current["status"] = BookingStatus.CANCELLED.value
                    current.setdefault("changes", []).append(
                        self._change(now, "cancellation", actor, "override" if override else None)
                    )
                    return True

                doc = self._update(booking_id, mark_cancelled)
                result = self._finish_cancel(
                    doc,
                    duplicate=already_cancelled,
                    recount=status == BookingStatus.PENDING
                )
                log_event("Booking cancelled successfully", {
                    **properties,
                    "member_id": doc["member_id"],
                    "remaining_sessions": result.remaining_sessions
                })
                return result
        except Exception as e:
            log_exception(e, {"operation": "cancel_booking", **properties})
            raise

    def _finish_cancel(self, doc: dict, duplicate: bool, recount: bool = False) -> BookingResult:
        """Return the session and the seat of a cancelled booking; safe to repeat."""
        booking_id, member_id, class_id = doc["id"], doc["member_id"], doc["class_id"]

        # A booking interrupted before its debit never consumed a session.
        if self.ledger.has_entry(member_id, self.debit_key(booking_id)):
            self.ledger.credit(member_id, 1, "cancellation", self.refund_key(booking_id))

        if doc.get("enrollment_released"):
            enrollment = self.enrollment.read_enrollment(class_id)
        else:
            if duplicate or recount:
                enrollment = self.enrollment.reconcile(class_id)
            else:
                enrollment = self.enrollment.decrement(class_id)

            def release(current: dict) -> bool:
                if current.get("enrollment_released"):
                    return False
                current["enrollment_released"] = True
                return True

            doc = self._update(booking_id, release)

        balance = self.ledger.read_balance(member_id)
        return BookingResult(
            booking=Booking(**doc),
            remaining_sessions=balance.remaining_sessions,
            enrolled=enrollment.enrolled,
            duplicate=duplicate
        )

    def mark_attendance(self, booking_id: str, attended: bool, actor: Optional[AuthUser] = None) -> Booking:
        """Complete a confirmed booking. Re-marking only overwrites the flag; no ledger movement."""
        now = self.clock()
        try:
            with start_span("mark_attendance", attributes={"booking_id": booking_id, "attended": attended}):
                def mark(doc: dict) -> bool:
                    status = BookingStatus(doc["status"])
                    if status not in ATTENDANCE_STATUSES:
                        raise InvalidTransition("Booking", status.value, BookingStatus.COMPLETED.value)
                    if status == BookingStatus.COMPLETED and doc.get("attendance") == attended:
                        return False
                    doc["status"] = BookingStatus.COMPLETED.value
                    doc["attendance"] = attended
                    doc.setdefault("changes", []).append(
                        self._change(now, "attendance", actor, "present" if attended else "absent")
                    )
                    return True

                booking = Booking(**self._update(booking_id, mark))
                log_event("Attendance marked", {
                    "booking_id": booking_id,
                    "member_id": booking.member_id,
                    "attended": attended
                })
                return booking
        except Exception as e:
            log_exception(e, {"operation": "mark_attendance", "booking_id": booking_id})
            raise

    def _attendance_bookings(self, class_id: str) -> List[dict]:
        return query_documents(self.bookings, CLASS_BOOKINGS_QUERY, [
            {"name": "@class_id", "value": class_id},
            {"name": "@statuses", "value": [status.value for status in ATTENDANCE_STATUSES]}
        ])

    def mark_class_attendance(
        self,
        class_id: str,
        marks: Dict[str, bool],
        default_present: bool = True,
        actor: Optional[AuthUser] = None
    ) -> List[Booking]:
        """Trainer bulk action: mark every confirmed or completed booking of a class."""
        try:
            with start_span("mark_class_attendance", attributes={"class_id": class_id}):
                self._read_class(class_id)
                docs = self._attendance_bookings(class_id)
                known = {doc["id"] for doc in docs}
                for booking_id in marks:
                    if booking_id not in known:
                        raise NotFound("Booking", booking_id)

                results = [
                    self.mark_attendance(doc["id"], marks.get(doc["id"], default_present), actor)
                    for doc in sorted(docs, key=lambda d: d["booking_date"])
                ]
                log_event("Class attendance saved", {
                    "class_id": class_id,
                    "count": len(results),
                    "present": sum(1 for booking in results if booking.attendance)
                })
                return results
        except Exception as e:
            log_exception(e, {"operation": "mark_class_attendance", "class_id": class_id})
            raise

    def attendance_report(self, class_id: str) -> List[AttendanceReportItem]:
        """
        Attendance per booking for reporting. A confirmed booking whose class
        is over and was never marked counts as attended; nothing is written.
        """
        now = self.clock()
        with start_span("attendance_report", attributes={"class_id": class_id}):
            class_session = self._read_class(class_id)
            class_over = now >= class_session.ends_at
            report = []
            for doc in sorted(self._attendance_bookings(class_id), key=lambda d: d["booking_date"]):
                booking = Booking(**doc)
                attended = booking.attendance
                inferred = False
                if booking.status == BookingStatus.CONFIRMED and attended is None and class_over:
                    attended = True
                    inferred = True
                report.append(AttendanceReportItem(
                    booking_id=booking.id,
                    member_id=booking.member_id,
                    user_name=booking.user_name,
                    status=booking.status,
                    recorded=booking.attendance,
                    attended=attended,
                    inferred=inferred
                ))
            return report
