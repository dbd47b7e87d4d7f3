import threading
from unittest.mock import patch
import pytest
from datetime import datetime, timezone

from gymledger.models.mod_auth import AuthUser, UserRole
from gymledger.models.mod_booking import BookingStatus
from gymledger.services.svc_booking import BookingService
from gymledger.services.svc_errors import (
    AlreadyBooked,
    BookingWindowClosed,
    CancellationWindowClosed,
    ClassFull,
    ClassInactive,
    InsufficientBalance,
    InvalidTransition,
    NotFound
)


def _user(user_id="member1", role=UserRole.MEMBER):
    return AuthUser(id=user_id, email=f"{user_id}@example.com", name=user_id.title(), role=role)


class TestBookingService:
    @pytest.fixture
    def member(self):
        return _user()

    @pytest.fixture
    def trainer(self):
        return _user("trainer1", UserRole.TRAINER)

    def test_book_confirms_and_debits(self, booking_service, add_member, add_class, containers, member):
        add_member(remaining=1)
        add_class("classX", capacity=10, enrolled=3)
        add_class("classY", capacity=10, enrolled=0)

        result = booking_service.book("member1", "classX", actor=member)

        assert result.booking.status == BookingStatus.CONFIRMED
        assert result.remaining_sessions == 0
        assert result.enrolled == 4
        assert not result.duplicate
        assert [c.change_type for c in result.booking.changes] == ["booked", "confirmed"]

        with pytest.raises(InsufficientBalance):
            booking_service.book("member1", "classY", actor=member)
        assert booking_service.ledger.read_balance("member1").remaining_sessions == 0
        assert containers["classes"].items["classY"]["enrolled"] == 0

    def test_book_then_cancel_restores_state(self, booking_service, add_member, add_class, member):
        add_member(remaining=3)
        add_class(enrolled=2)

        booked = booking_service.book("member1", "class1", actor=member)
        cancelled = booking_service.cancel(booked.booking.id, actor=member)

        assert cancelled.booking.status == BookingStatus.CANCELLED
        assert cancelled.booking.enrollment_released
        assert cancelled.remaining_sessions == 3
        assert cancelled.enrolled == 2

    def test_book_full_class(self, booking_service, add_member, add_class, containers):
        add_member(remaining=3)
        add_class(capacity=5, enrolled=5)

        with pytest.raises(ClassFull):
            booking_service.book("member1", "class1")

        assert booking_service.ledger.read_balance("member1").remaining_sessions == 3
        assert containers["bookings"].items == {}

    def test_book_inactive_class(self, booking_service, add_member, add_class):
        add_member()
        add_class(status="Inactive")

        with pytest.raises(ClassInactive):
            booking_service.book("member1", "class1")

    def test_book_unknown_member_or_class(self, booking_service, add_member, add_class):
        add_class()
        with pytest.raises(NotFound):
            booking_service.book("ghost", "class1")

        add_member()
        with pytest.raises(NotFound):
            booking_service.book("member1", "ghost")

    @pytest.mark.parametrize("date, start", [
        ("2025-03-10", "10:30"),            # starts in 90 minutes
        ("2025-03-18", "18:00"),            # more than 7 days ahead
    ])
    def test_book_outside_booking_window(self, booking_service, add_member, add_class, date, start):
        add_member()
        add_class(date=date, start=start, end=None)

        with pytest.raises(BookingWindowClosed):
            booking_service.book("member1", "class1")

        assert booking_service.ledger.read_balance("member1").remaining_sessions == 3

    def test_second_booking_reports_existing_one(self, booking_service, add_member, add_class):
        add_member(remaining=3)
        add_class()

        first = booking_service.book("member1", "class1")
        with pytest.raises(AlreadyBooked) as exc:
            booking_service.book("member1", "class1")

        assert exc.value.booking_id == first.booking.id
        assert exc.value.detail["status"] == BookingStatus.CONFIRMED.value
        assert booking_service.ledger.read_balance("member1").remaining_sessions == 2

    def test_rebook_after_cancel_gets_new_booking(self, booking_service, add_member, add_class):
        add_member(remaining=3)
        add_class()

        first = booking_service.book("member1", "class1")
        booking_service.cancel(first.booking.id)
        second = booking_service.book("member1", "class1")

        assert second.booking.id != first.booking.id
        assert second.remaining_sessions == 2
        assert second.enrolled == 1

    def test_interrupted_booking_is_resumed(self, booking_service, add_member, add_class, containers):
        add_member(remaining=3)
        # the earlier attempt created the booking and took the seat, then stopped
        add_class(enrolled=1)
        containers["bookings"].seed({
            "id": "pending1",
            "member_id": "member1",
            "class_id": "class1",
            "status": "Pending",
            "booking_date": "2025-03-10T08:59:00+00:00",
            "changes": []
        })

        result = booking_service.book("member1", "class1")

        assert result.duplicate
        assert result.booking.id == "pending1"
        assert result.booking.status == BookingStatus.CONFIRMED
        assert result.remaining_sessions == 2
        assert result.enrolled == 1

    def test_resumed_booking_takes_missing_seat(self, booking_service, add_member, add_class, containers):
        add_member(remaining=3)
        # the earlier attempt stopped before taking its seat
        add_class(enrolled=0)
        containers["bookings"].seed({
            "id": "pending1",
            "member_id": "member1",
            "class_id": "class1",
            "status": "Pending",
            "booking_date": "2025-03-10T08:59:00+00:00",
            "changes": []
        })

        result = booking_service.book("member1", "class1")

        assert result.booking.status == BookingStatus.CONFIRMED
        assert result.enrolled == 1
        assert containers["classes"].items["class1"]["enrolled"] == 1

    def test_resume_when_class_filled_meanwhile(self, booking_service, add_member, add_class, containers):
        add_member("member1", remaining=3)
        add_member("member2", remaining=3)
        add_class(capacity=1, enrolled=1)
        containers["bookings"].seed({
            "id": "other1",
            "member_id": "member2",
            "class_id": "class1",
            "status": "Confirmed",
            "booking_date": "2025-03-10T08:30:00+00:00",
            "changes": []
        })
        containers["bookings"].seed({
            "id": "pending1",
            "member_id": "member1",
            "class_id": "class1",
            "status": "Pending",
            "booking_date": "2025-03-10T08:59:00+00:00",
            "changes": []
        })
        classes = containers["classes"]
        written = []

        def recording(method):
            def call(*args, **kwargs):
                stored = method(*args, **kwargs)
                written.append(stored["enrolled"])
                return stored
            return call

        with patch.object(classes, "replace_item", recording(classes.replace_item)), \
                patch.object(classes, "patch_item", recording(classes.patch_item)):
            with pytest.raises(ClassFull):
                booking_service.book("member1", "class1")

        assert all(enrolled <= 1 for enrolled in written)
        assert classes.items["class1"]["enrolled"] == 1
        assert containers["bookings"].items["pending1"]["status"] == "Cancelled"
        assert booking_service.ledger.read_balance("member1").remaining_sessions == 3

    def test_cancel_during_booking_refunds_debit(self, booking_service, add_member, add_class, containers):
        add_member(remaining=3)
        add_class()
        debit = booking_service.ledger.debit

        def cancel_then_debit(*args, **kwargs):
            pending = next(b for b in containers["bookings"].items.values() if b["status"] == "Pending")
            booking_service.cancel(pending["id"])
            return debit(*args, **kwargs)

        with patch.object(booking_service.ledger, "debit", side_effect=cancel_then_debit):
            with pytest.raises(InvalidTransition):
                booking_service.book("member1", "class1")

        assert [b["status"] for b in containers["bookings"].items.values()] == ["Cancelled"]
        assert booking_service.ledger.read_balance("member1").remaining_sessions == 3
        assert containers["classes"].items["class1"]["enrolled"] == 0

    def test_last_seat_race(self, booking_service, add_member, add_class, containers):
        add_member("member1", remaining=3)
        add_member("member2", remaining=3)
        add_class(capacity=1)
        barrier = threading.Barrier(2)
        outcomes = {}

        def book(member_id):
            barrier.wait()
            try:
                outcomes[member_id] = booking_service.book(member_id, "class1")
            except ClassFull as e:
                outcomes[member_id] = e

        threads = [threading.Thread(target=book, args=(m,)) for m in ("member1", "member2")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        winners = [m for m, outcome in outcomes.items() if not isinstance(outcome, ClassFull)]
        losers = [m for m, outcome in outcomes.items() if isinstance(outcome, ClassFull)]
        assert len(winners) == 1 and len(losers) == 1
        assert outcomes[winners[0]].booking.status == BookingStatus.CONFIRMED
        assert booking_service.ledger.read_balance(winners[0]).remaining_sessions == 2
        assert booking_service.ledger.read_balance(losers[0]).remaining_sessions == 3
        assert containers["classes"].items["class1"]["enrolled"] == 1
        assert [b["member_id"] for b in containers["bookings"].items.values()] == winners

    def test_cancel_inside_window_refused(self, booking_service, add_member, add_class, member):
        add_member(remaining=3)
        add_class(date="2025-03-10", start="12:00", end="13:00")     # 3 hours away
        booked = booking_service.book("member1", "class1")

        with pytest.raises(CancellationWindowClosed) as exc:
            booking_service.cancel(booked.booking.id, actor=member)
        assert exc.value.detail["lead_hours"] == 4

        with pytest.raises(CancellationWindowClosed):
            booking_service.cancel(booked.booking.id, actor=member, override=True)
        assert booking_service.ledger.read_balance("member1").remaining_sessions == 2

    def test_staff_override_cancels_inside_window(self, booking_service, add_member, add_class, trainer):
        add_member(remaining=3)
        add_class(date="2025-03-10", start="12:00", end="13:00")
        booked = booking_service.book("member1", "class1")

        result = booking_service.cancel(booked.booking.id, actor=trainer, override=True)

        assert result.booking.status == BookingStatus.CANCELLED
        assert result.remaining_sessions == 3
        assert result.booking.changes[-1].note == "override"
        assert result.booking.changes[-1].actor_id == "trainer1"

    def test_cancel_at_exact_lead_time(self, booking_service, add_member, add_class):
        add_member(remaining=3)
        add_class(date="2025-03-10", start="13:00", end="14:00")     # exactly 4 hours away
        booked = booking_service.book("member1", "class1")

        assert booking_service.cancel(booked.booking.id).remaining_sessions == 3

    def test_cancel_gated_by_cancellation_policy(self, booking_service, add_member, add_class, trainer):
        add_member(remaining=3)
        add_class()
        booked = booking_service.book("member1", "class1")

        with patch(
            "gymledger.services.svc_booking.CancellationPolicy.ensure_allowed",
            side_effect=CancellationWindowClosed(4)
        ) as ensure_allowed:
            with pytest.raises(CancellationWindowClosed):
                booking_service.cancel(booked.booking.id)
            overridden = booking_service.cancel(booked.booking.id, actor=trainer, override=True)

        assert ensure_allowed.call_count == 2
        assert overridden.booking.status == BookingStatus.CANCELLED
        assert overridden.remaining_sessions == 3

    def test_cancel_uses_admin_setting(self, booking_service, add_member, add_class, containers):
        containers["settings"].seed({"id": "admin_settings", "cancellation_hours": 2})
        add_member(remaining=3)
        add_class(date="2025-03-10", start="12:00", end="13:00")
        booked = booking_service.book("member1", "class1")

        assert booking_service.cancel(booked.booking.id).booking.status == BookingStatus.CANCELLED

    def test_cancel_twice_refunds_once(self, booking_service, add_member, add_class):
        add_member(remaining=3)
        add_class()
        booked = booking_service.book("member1", "class1")

        first = booking_service.cancel(booked.booking.id)
        second = booking_service.cancel(booked.booking.id)

        assert not first.duplicate
        assert second.duplicate
        assert second.remaining_sessions == 3
        assert second.enrolled == 0

    def test_interrupted_cancel_is_finished(self, booking_service, add_member, add_class, containers):
        add_member(remaining=3)
        add_class()
        booked = booking_service.book("member1", "class1")
        # the status flip landed but the refund and seat release did not
        containers["bookings"].items[booked.booking.id]["status"] = "Cancelled"

        result = booking_service.cancel(booked.booking.id)

        assert result.duplicate
        assert result.remaining_sessions == 3
        assert result.enrolled == 0
        assert containers["bookings"].items[booked.booking.id]["enrollment_released"]

    def test_cancel_pending_booking_without_debit(self, booking_service, add_member, add_class, containers):
        add_member(remaining=3)
        add_class(enrolled=1)
        containers["bookings"].seed({
            "id": "pending1",
            "member_id": "member1",
            "class_id": "class1",
            "status": "Pending",
            "booking_date": "2025-03-10T08:59:00+00:00",
            "changes": []
        })

        result = booking_service.cancel("pending1")

        assert result.remaining_sessions == 3
        assert result.enrolled == 0
        assert not booking_service.ledger.has_entry("member1", BookingService.refund_key("pending1"))

    def test_cancel_unknown_booking(self, booking_service):
        with pytest.raises(NotFound):
            booking_service.cancel("missing")

    def test_attendance_does_not_touch_balance(self, booking_service, add_member, add_class, trainer):
        add_member(remaining=3)
        add_class()
        booked = booking_service.book("member1", "class1")

        completed = booking_service.mark_attendance(booked.booking.id, True, actor=trainer)
        remarked = booking_service.mark_attendance(booked.booking.id, False, actor=trainer)

        assert completed.status == BookingStatus.COMPLETED
        assert completed.attendance is True
        assert remarked.attendance is False
        assert booking_service.ledger.read_balance("member1").remaining_sessions == 2

        with pytest.raises(InvalidTransition):
            booking_service.cancel(booked.booking.id)

    def test_attendance_on_cancelled_booking(self, booking_service, add_member, add_class):
        add_member()
        add_class()
        booked = booking_service.book("member1", "class1")
        booking_service.cancel(booked.booking.id)

        with pytest.raises(InvalidTransition):
            booking_service.mark_attendance(booked.booking.id, True)

    def test_class_attendance_defaults_to_present(self, booking_service, add_member, add_class, trainer):
        add_member("member1")
        add_member("member2")
        add_class()
        first = booking_service.book("member1", "class1")
        second = booking_service.book("member2", "class1")

        marked = booking_service.mark_class_attendance("class1", {first.booking.id: False}, actor=trainer)

        attendance = {booking.id: booking.attendance for booking in marked}
        assert attendance == {first.booking.id: False, second.booking.id: True}
        assert all(booking.status == BookingStatus.COMPLETED for booking in marked)

    def test_class_attendance_unknown_booking(self, booking_service, add_member, add_class):
        add_member()
        add_class()
        booking_service.book("member1", "class1")

        with pytest.raises(NotFound):
            booking_service.mark_class_attendance("class1", {"someone-else": True})

    def test_attendance_report_infers_unmarked_as_present(
        self, booking_service, add_member, add_class, containers, ledger, enrollment
    ):
        add_member("member1")
        add_member("member2")
        add_class()
        first = booking_service.book("member1", "class1")
        second = booking_service.book("member2", "class1")
        booking_service.mark_attendance(second.booking.id, False)

        after_class = BookingService(
            containers["bookings"],
            containers["classes"],
            ledger,
            enrollment,
            clock=lambda: datetime(2025, 3, 11, 20, 0, tzinfo=timezone.utc)
        )
        report = {item.booking_id: item for item in after_class.attendance_report("class1")}

        assert report[first.booking.id].attended is True
        assert report[first.booking.id].inferred
        assert report[first.booking.id].recorded is None
        assert report[second.booking.id].attended is False
        assert not report[second.booking.id].inferred

        before_end = {item.booking_id: item for item in booking_service.attendance_report("class1")}
        assert before_end[first.booking.id].attended is None
