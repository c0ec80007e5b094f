"""Tests for booking lifecycle transitions and their side effects."""

from datetime import datetime

import pytest

import bookings
from errors import ForbiddenError, NotFoundError, ValidationError
from schemas import (
    ADMIN_NOTIFICATIONS,
    BOOKINGS,
    EMAIL_OUTBOX,
    JOB_OFFERS,
    NOTIFICATIONS,
    ORDERS,
    PAYMENTS,
    TECHNICIANS,
    Booking,
)
from tests.conftest import actor, make_booking, make_technician, make_user

ADMIN = actor("admin-1", "admin")


def reload(db, doc):
    return db[BOOKINGS].find_one({"_id": doc["_id"]})


class TestCreateBooking:
    def test_generates_reference_and_notifies_admin(self, db):
        user = make_user(db)
        booking = bookings.create_booking(
            db,
            Booking(service="Fridge Repair", amount=500, customerName="Jane", urgency="emergency"),
            actor(user["_id"]),
        )
        assert booking["bookingId"].startswith("BK-")
        assert booking["status"] == "pending"
        assert booking["userId"] == str(user["_id"])

        note = db[ADMIN_NOTIFICATIONS].find_one({"title": "New Booking"})
        assert note["isImportant"] is True
        assert note["referenceId"] == booking["bookingId"]


class TestAdminStatusUpdate:
    def test_rejects_status_outside_enum(self, db):
        booking = make_booking(db)
        with pytest.raises(ValidationError, match="Invalid status value"):
            bookings.update_status(db, str(booking["_id"]), "done", ADMIN)

    def test_requires_status(self, db):
        booking = make_booking(db)
        with pytest.raises(ValidationError, match="Status is required"):
            bookings.update_status(db, str(booking["_id"]), "", ADMIN)

    def test_non_admin_forbidden(self, db):
        booking = make_booking(db)
        with pytest.raises(ForbiddenError):
            bookings.update_status(db, str(booking["_id"]), "confirmed", actor("u1", "technician"))

    def test_unknown_booking(self, db):
        with pytest.raises(NotFoundError):
            bookings.update_status(db, "BK-MISSING", "confirmed", ADMIN)

    def test_lookup_by_booking_reference(self, db):
        make_booking(db, bookingId="BK-REF00001")
        result = bookings.update_status(db, "BK-REF00001", "confirmed", ADMIN)
        assert result["status"] == "confirmed"
        assert db[BOOKINGS].find_one({"bookingId": "BK-REF00001"})["status"] == "confirmed"

    def test_same_status_is_idempotent(self, db):
        booking = make_booking(db, status="completed")
        result = bookings.update_status(db, str(booking["_id"]), "completed", ADMIN)
        assert result["status"] == "completed"
        assert reload(db, booking)["status"] == "completed"

    def test_cancelled_cannot_be_reopened(self, db):
        booking = make_booking(db, status="cancelled")
        with pytest.raises(ValidationError, match="cannot be reopened"):
            bookings.update_status(db, str(booking["_id"]), "confirmed", ADMIN)
        assert reload(db, booking)["status"] == "cancelled"

    def test_closing_releases_busy_technician(self, db):
        tech = make_technician(db, status="busy")
        booking = make_booking(db, status="confirmed", technicianId=str(tech["_id"]))
        bookings.update_status(db, str(booking["_id"]), "cancelled", ADMIN)
        assert db[TECHNICIANS].find_one({"_id": tech["_id"]})["status"] == "active"

    def test_notifies_owner(self, db):
        user = make_user(db)
        booking = make_booking(db, userId=str(user["_id"]))
        bookings.update_status(db, str(booking["_id"]), "confirmed", ADMIN)
        note = db[NOTIFICATIONS].find_one({"recipientId": str(user["_id"])})
        assert note["title"] == "Booking Confirmed"


class TestCancelAndReschedule:
    def test_cancel_by_booking_and_order(self, db):
        booking = make_booking(db, bookingId="BK-C1", orderId="ORD-1")
        db[ORDERS].insert_one({"orderId": "ORD-1", "status": "paid"})

        result = bookings.cancel(db, "BK-C1", "ORD-1", "Changed my mind")

        assert result["booking"]["status"] == "cancelled"
        assert result["booking"]["cancellationReason"] == "Changed my mind"
        assert result["adminNotificationCreated"] is True
        assert db[ORDERS].find_one({"orderId": "ORD-1"})["status"] == "cancelled"
        assert db[EMAIL_OUTBOX].find_one({"template": "cancellation"})["to"] == booking["customerEmail"]
        admin_note = db[ADMIN_NOTIFICATIONS].find_one({"type": "cancellation"})
        assert admin_note["isImportant"] is True

    def test_cancel_finds_booking_by_order_id(self, db):
        make_booking(db, bookingId="BK-C2", orderId="ORD-2")
        result = bookings.cancel(db, "unknown-ref", "ORD-2")
        assert result["booking"]["bookingId"] == "BK-C2"

    def test_cancel_updates_legacy_status_field(self, db):
        booking = make_booking(db, bookingId="BK-C3", bookingStatus="confirmed")
        bookings.cancel(db, "BK-C3", "ORD-3")
        stored = reload(db, booking)
        assert stored["bookingStatus"] == "cancelled"
        assert stored["status"] == "cancelled"

    def test_cancel_requires_both_ids(self, db):
        with pytest.raises(ValidationError, match="Missing required fields"):
            bookings.cancel(db, "BK-C1", "")

    def test_cancel_twice_rejected(self, db):
        make_booking(db, bookingId="BK-C4", status="cancelled")
        with pytest.raises(ValidationError, match="already cancelled"):
            bookings.cancel(db, "BK-C4", "ORD-4")

    def test_cancel_completed_rejected(self, db):
        make_booking(db, bookingId="BK-C5", status="completed")
        with pytest.raises(ValidationError):
            bookings.cancel(db, "BK-C5", "ORD-5")

    def test_cancel_other_users_booking_forbidden(self, db):
        make_booking(db, bookingId="BK-C6", userId="owner-1")
        with pytest.raises(ForbiddenError):
            bookings.cancel(db, "BK-C6", "ORD-6", actor=actor("someone-else"))

    def test_reschedule_sets_date_and_status(self, db):
        booking = make_booking(db, bookingId="BK-R1", orderId="ORD-R1", bookingDate="2024-05-01", bookingTime="10:00")
        db[ORDERS].insert_one({"orderId": "ORD-R1", "notes": {"bookingDate": "2024-05-01"}})

        result = bookings.reschedule(db, "BK-R1", "ORD-R1", "2024-05-03", "14:00")

        assert result["booking"]["status"] == "rescheduled"
        assert result["booking"]["bookingDate"] == "2024-05-03"
        assert db[ORDERS].find_one({"orderId": "ORD-R1"})["notes"]["bookingTime"] == "14:00"
        email = db[EMAIL_OUTBOX].find_one({"template": "reschedule"})
        assert email["context"]["oldDate"] == "2024-05-01"
        assert email["context"]["newDate"] == "2024-05-03"
        assert reload(db, booking)["bookingTime"] == "14:00"

    def test_reschedule_requires_new_slot(self, db):
        make_booking(db, bookingId="BK-R2")
        with pytest.raises(ValidationError):
            bookings.reschedule(db, "BK-R2", "ORD-R2", "2024-05-03", "")

    def test_reschedule_closed_booking_rejected(self, db):
        make_booking(db, bookingId="BK-R3", status="completed")
        with pytest.raises(ValidationError):
            bookings.reschedule(db, "BK-R3", "ORD-R3", "2024-05-03", "14:00")


class TestRating:
    def _completed(self, db, tech, owner="owner-1", ref="BK-RATE1"):
        return make_booking(
            db, bookingId=ref, status="completed", userId=owner, technicianId=str(tech["_id"])
        )

    def test_folds_into_technician_average(self, db):
        tech = make_technician(db, rating=4.0, totalRatings=2)
        booking = self._completed(db, tech)

        result = bookings.rate(db, str(booking["_id"]), 5, "Great", actor("owner-1"))

        assert result["rating"] == 5
        assert result["technicianRating"] == 4.3
        stored = db[TECHNICIANS].find_one({"_id": tech["_id"]})
        assert stored["rating"] == 4.3
        assert stored["totalRatings"] == 3
        assert stored["reviews"][0]["feedback"] == "Great"
        assert db[NOTIFICATIONS].find_one({"recipientId": str(tech["_id"]), "type": "rating"})

    def test_average_midpoint_rounds_half_up(self, db):
        # (4.0 * 3 + 5) / 4 == 4.25
        tech = make_technician(db, rating=4.0, totalRatings=3)
        booking = self._completed(db, tech)

        result = bookings.rate(db, str(booking["_id"]), 5, "", actor("owner-1"))

        assert result["technicianRating"] == 4.3
        assert db[TECHNICIANS].find_one({"_id": tech["_id"]})["rating"] == 4.3

    @pytest.mark.parametrize("value, expected", [(4.25, 4.3), (4.35, 4.4), (4.24, 4.2), (5.0, 5.0)])
    def test_round_rating(self, value, expected):
        assert bookings.round_rating(value) == expected

    def test_rate_by_booking_reference(self, db):
        tech = make_technician(db)
        self._completed(db, tech, ref="BK-RATE2")
        result = bookings.rate(db, "BK-RATE2", 4, None, actor("owner-1"))
        assert result["technicianRating"] == 4.0

    def test_only_once(self, db):
        tech = make_technician(db)
        booking = self._completed(db, tech)
        bookings.rate(db, str(booking["_id"]), 4, "", actor("owner-1"))
        with pytest.raises(ValidationError, match="already rated"):
            bookings.rate(db, str(booking["_id"]), 5, "", actor("owner-1"))
        assert db[TECHNICIANS].find_one({"_id": tech["_id"]})["totalRatings"] == 1

    @pytest.mark.parametrize("value", [0, 6, None, True, 3.5])
    def test_rating_range(self, db, value):
        tech = make_technician(db)
        booking = self._completed(db, tech)
        with pytest.raises(ValidationError, match="between 1 and 5"):
            bookings.rate(db, str(booking["_id"]), value, "", actor("owner-1"))

    def test_only_owner_may_rate(self, db):
        tech = make_technician(db)
        booking = self._completed(db, tech)
        with pytest.raises(ForbiddenError):
            bookings.rate(db, str(booking["_id"]), 5, "", actor("intruder"))

    def test_requires_completed_booking(self, db):
        booking = make_booking(db, status="in_progress", userId="owner-1")
        with pytest.raises(ValidationError, match="only rate completed"):
            bookings.rate(db, str(booking["_id"]), 5, "", actor("owner-1"))


class TestTechnicianWork:
    def test_start_then_complete(self, db):
        tech = make_technician(db, status="busy")
        booking = make_booking(db, status="confirmed", technicianId=str(tech["_id"]))

        started = bookings.start(db, str(booking["_id"]), tech)
        assert started["status"] == "in_progress"

        done = bookings.complete(db, "BK-TEST0001", tech, "Replaced capacitor")
        assert done["status"] == "completed"
        assert done["earnings"]["technicianEarnings"] == 700

        stored = reload(db, booking)
        assert stored["status"] == "completed"
        assert stored["notes"] == "Replaced capacitor"
        tech_after = db[TECHNICIANS].find_one({"_id": tech["_id"]})
        assert tech_after["status"] == "active"
        assert tech_after["completedBookings"] == 1

    def test_start_requires_assignment(self, db):
        tech = make_technician(db)
        other = make_technician(db, email="other@example.com")
        booking = make_booking(db, status="assigned", technicianId=str(other["_id"]))
        with pytest.raises(NotFoundError):
            bookings.start(db, str(booking["_id"]), tech)

    def test_start_from_pending_rejected(self, db):
        tech = make_technician(db)
        booking = make_booking(db, status="pending", technicianId=str(tech["_id"]))
        with pytest.raises(ValidationError, match="cannot be started"):
            bookings.start(db, str(booking["_id"]), tech)

    def test_complete_requires_in_progress(self, db):
        tech = make_technician(db)
        booking = make_booking(db, status="confirmed", technicianId=str(tech["_id"]))
        with pytest.raises(ValidationError, match="cannot be completed"):
            bookings.complete(db, str(booking["_id"]), tech)

    def test_complete_rejects_long_notes(self, db):
        tech = make_technician(db)
        booking = make_booking(db, status="in_progress", technicianId=str(tech["_id"]))
        with pytest.raises(ValidationError, match="500 characters"):
            bookings.complete(db, str(booking["_id"]), tech, "x" * 501)

    def test_complete_requires_amount(self, db):
        tech = make_technician(db)
        booking = make_booking(db, status="in_progress", technicianId=str(tech["_id"]), amount=None)
        with pytest.raises(ValidationError, match="amount"):
            bookings.complete(db, str(booking["_id"]), tech)

    def test_add_notes(self, db):
        tech = make_technician(db)
        booking = make_booking(db, status="in_progress", technicianId=str(tech["_id"]))
        entry = bookings.add_notes(db, str(booking["_id"]), tech, "  Needs a part  ")
        assert entry["text"] == "Needs a part"
        assert reload(db, booking)["technicianNotes"][0]["text"] == "Needs a part"


class TestPaymentStatus:
    def test_update_and_repeat(self, db):
        user = make_user(db)
        make_booking(db, bookingId="BK-PAY1", userId=str(user["_id"]))
        db[PAYMENTS].insert_one({"bookingId": "BK-PAY1", "status": "pending"})

        first = bookings.update_payment_status(db, "BK-PAY1", "paid", ADMIN)
        assert first == {"paymentStatus": "paid", "changed": True}
        payment = db[PAYMENTS].find_one({"bookingId": "BK-PAY1"})
        assert payment["status"] == "completed"
        assert payment["manuallyUpdated"] is True
        assert db[NOTIFICATIONS].count_documents({"type": "payment"}) == 1

        second = bookings.update_payment_status(db, "BK-PAY1", "paid")
        assert second["changed"] is False
        assert db[NOTIFICATIONS].count_documents({"type": "payment"}) == 1

    def test_invalid_value(self, db):
        make_booking(db, bookingId="BK-PAY2")
        with pytest.raises(ValidationError, match="Invalid payment status"):
            bookings.update_payment_status(db, "BK-PAY2", "settled")


class TestListing:
    def test_customer_bookings_by_link_email_or_phone(self, db):
        user = make_user(db, phone="0422222222")
        make_booking(db, bookingId="BK-LINKED", userId=str(user["_id"]), customerEmail="x@example.com",
                     created_at=datetime(2024, 1, 1))
        make_booking(db, bookingId="BK-EMAIL", created_at=datetime(2024, 1, 3))
        make_booking(db, bookingId="BK-PHONE", customerEmail=None, customerPhone="0422222222",
                     created_at=datetime(2024, 1, 2))
        make_booking(db, bookingId="BK-OTHER", customerEmail="other@example.com", customerPhone="0499999999")

        result = bookings.list_bookings(db, bookings.customer_filter(db, actor(user["_id"])))

        assert [b["bookingId"] for b in result["bookings"]] == ["BK-EMAIL", "BK-PHONE", "BK-LINKED"]
        assert result["pagination"] == {"total": 3, "page": 1, "limit": 20, "pages": 1}

    def test_status_filter_reads_legacy_spellings(self, db):
        make_booking(db, bookingId="BK-NEW", status="in_progress")
        db[BOOKINGS].insert_one({"bookingId": "BK-OLD", "bookingStatus": "in-progress"})
        make_booking(db, bookingId="BK-DONE", status="completed")

        result = bookings.list_bookings(db, status="in-progress")

        assert sorted(b["bookingId"] for b in result["bookings"]) == ["BK-NEW", "BK-OLD"]

    def test_pages(self, db):
        for day in range(1, 6):
            make_booking(db, bookingId=f"BK-{day}", created_at=datetime(2024, 1, day))

        second = bookings.list_bookings(db, limit=2, page=2)

        assert [b["bookingId"] for b in second["bookings"]] == ["BK-3", "BK-2"]
        assert second["pagination"]["pages"] == 3

    @pytest.mark.parametrize("limit,page", [(0, 1), (101, 1), (10, 0)])
    def test_rejects_bad_paging(self, db, limit, page):
        with pytest.raises(ValidationError):
            bookings.list_bookings(db, limit=limit, page=page)

    def test_recent(self, db):
        for day in range(1, 8):
            make_booking(db, bookingId=f"BK-{day}", created_at=datetime(2024, 1, day))
        recent = bookings.recent_bookings(db)
        assert [b["bookingId"] for b in recent] == ["BK-7", "BK-6", "BK-5", "BK-4", "BK-3"]


class TestReminder:
    def test_owner_queues_reminder(self, db):
        user = make_user(db)
        booking = make_booking(db, userId=str(user["_id"]), orderId="ORD-1", bookingDate="2024-01-03",
                               bookingTime="10:00")

        result = bookings.send_reminder(db, "BK-TEST0001", None, actor(user["_id"]))

        assert result["reminderSent"] is True
        email = db[EMAIL_OUTBOX].find_one({"template": "reminder"})
        assert email["to"] == "jane@example.com"
        assert email["context"]["orderId"] == "ORD-1"
        assert reload(db, booking)["lastReminderSent"]
        assert db[NOTIFICATIONS].find_one({"recipientId": str(user["_id"]), "type": "reminder"})

    def test_found_by_order_id(self, db):
        make_booking(db, orderId="ORD-2")
        result = bookings.send_reminder(db, None, "ORD-2", ADMIN)
        assert result["reminderSent"] is True

    def test_hours_until_slot(self):
        now = datetime(2024, 1, 1, 10, 0)
        assert bookings.hours_until({"bookingDate": "2024-01-02", "bookingTime": "10:30"}, now) == 24
        assert bookings.hours_until({"bookingDate": "2024-01-01", "bookingTime": "04:00 PM"}, now) == 6
        assert bookings.hours_until({"bookingDate": "2024-01-01"}, now) == 2
        assert bookings.hours_until({}, now) == bookings.DEFAULT_REMINDER_HOURS
        assert bookings.hours_until({"bookingDate": "soon"}, now) == bookings.DEFAULT_REMINDER_HOURS

    def test_stranger_forbidden(self, db):
        make_booking(db, userId="owner-1")
        with pytest.raises(ForbiddenError, match="permission"):
            bookings.send_reminder(db, "BK-TEST0001", None, actor("someone-else", email="x@example.com"))

    def test_requires_an_id(self, db):
        with pytest.raises(ValidationError, match="Booking ID or Order ID"):
            bookings.send_reminder(db, None, None, ADMIN)

    def test_closed_booking_rejected(self, db):
        make_booking(db, status="cancelled")
        with pytest.raises(ValidationError, match="cancelled booking"):
            bookings.send_reminder(db, "BK-TEST0001", None, ADMIN)
        assert db[EMAIL_OUTBOX].count_documents({}) == 0


class TestTechnicianCancel:
    def test_cancels_and_frees_technician(self, db):
        tech = make_technician(db, status="busy")
        booking = make_booking(db, status="confirmed", technicianId=str(tech["_id"]))
        db[JOB_OFFERS].insert_one({"bookingId": str(booking["_id"]), "technicianId": str(tech["_id"]), "status": "pending"})

        result = bookings.cancel_by_technician(db, str(booking["_id"]), tech, "Part unavailable")

        assert result["status"] == "cancelled"
        stored = reload(db, booking)
        assert stored["cancelledBy"] == "technician"
        assert stored["notes"] == "Part unavailable"
        assert db[TECHNICIANS].find_one({"_id": tech["_id"]})["status"] == "active"
        assert db[JOB_OFFERS].find_one({})["status"] == "withdrawn"
        alert = db[ADMIN_NOTIFICATIONS].find_one({"type": "cancellation"})
        assert alert["isImportant"] is True

    def test_only_assigned_technician(self, db):
        tech = make_technician(db)
        other = make_technician(db, email="other@example.com")
        booking = make_booking(db, status="assigned", technicianId=str(other["_id"]))
        with pytest.raises(NotFoundError, match="not assigned to you"):
            bookings.cancel_by_technician(db, str(booking["_id"]), tech)

    @pytest.mark.parametrize("status", ["completed", "cancelled"])
    def test_closed_booking_rejected(self, db, status):
        tech = make_technician(db)
        booking = make_booking(db, status=status, technicianId=str(tech["_id"]))
        with pytest.raises(ValidationError, match="cannot be cancelled"):
            bookings.cancel_by_technician(db, str(booking["_id"]), tech)
