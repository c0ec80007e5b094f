"""
Booking lifecycle: status transitions and the side effects each one needs.

Status graph::

    pending -> confirmed | assigned | cancelled
    confirmed, assigned -> in_progress | cancelled
    in_progress -> completed | cancelled
    any open status -> rescheduled (date/time change) | cancelled

``completed`` and ``cancelled`` are closed; ``cancelled`` is terminal even
for admins. Bookings are looked up through ``resolve_booking`` because the
same booking is referred to by its store id, a legacy ``id`` field or the
human readable ``bookingId`` depending on the caller.

Each mutation is a single-document write. Follow-up writes (technician,
order, notifications) are separate and not transactional.
"""
import logging
import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pymongo.database import Database

from auth import TokenData
from commission import get_commission_rate, split_amount
from database import create_document, doc_id, maybe_oid, now_utc, serialize
from errors import ForbiddenError, NotFoundError, ValidationError
from notifications import (
    create_admin_notification,
    create_notification,
    notify_customer,
    queue_email,
)
from schemas import BOOKINGS, JOB_OFFERS, ORDERS, PAYMENTS, TECHNICIANS, USERS, Booking
from technicians import release_technician

logger = logging.getLogger(__name__)

BOOKING_ID_FIELDS = ("_id", "id", "bookingId")
ADMIN_STATUSES = ("pending", "confirmed", "completed", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")
CLOSED_STATUSES = frozenset({"completed", "cancelled"})
STARTABLE_STATUSES = frozenset({"assigned", "confirmed"})
MAX_NOTES_LENGTH = 500
MAX_PAGE_SIZE = 100
DEFAULT_REMINDER_HOURS = 48
TECHNICIAN_CANCELLABLE = frozenset({"assigned", "confirmed", "in_progress"})

STATUS_MESSAGES = {
    "confirmed": ("Booking Confirmed", "Your booking for {service} has been confirmed."),
    "completed": ("Service Completed", "Your service for {service} has been marked as completed."),
    "cancelled": ("Booking Cancelled", "Your booking for {service} has been cancelled."),
}

PAYMENT_MESSAGES = {
    "paid": ("Payment Confirmed", "Your payment for booking {ref} has been confirmed."),
    "refunded": ("Payment Refunded", "Your payment for booking {ref} has been refunded."),
    "failed": ("Payment Failed", "Your payment for booking {ref} has failed."),
}

# booking paymentStatus -> payments.status
PAYMENT_RECORD_STATUS = {"paid": "completed", "failed": "failed", "refunded": "refunded"}

Candidates = Sequence[Tuple[str, Any]]


def normalize_status(value: Optional[str]) -> str:
    return (value or "pending").strip().lower().replace("-", "_")


def booking_status(booking: Dict[str, Any]) -> str:
    """Current status, reading the legacy ``bookingStatus`` field when ``status`` is absent."""
    return normalize_status(booking.get("status") or booking.get("bookingStatus"))


def status_filter(status: str) -> Dict[str, Any]:
    """Match a status under either spelling, on ``status`` or the legacy ``bookingStatus``."""
    spellings = sorted({status, status.replace("_", "-")})
    return {
        "$or": [
            {"status": {"$in": spellings}},
            {"status": {"$in": [None, ""]}, "bookingStatus": {"$in": spellings}},
        ]
    }


def round_rating(value: float) -> float:
    """Round an average rating half-up to one decimal (4.25 -> 4.3)."""
    return float(Decimal(str(value)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def service_name(booking: Dict[str, Any]) -> str:
    return booking.get("service") or booking.get("serviceName") or "service"


def booking_ref(booking: Dict[str, Any]) -> str:
    return booking.get("bookingId") or doc_id(booking)


def identity_candidates(identifier: Any, fields: Iterable[str] = BOOKING_ID_FIELDS) -> List[Tuple[str, Any]]:
    return [(field, identifier) for field in fields]


def resolve_booking(
    db: Database, candidates: Candidates, extra_filter: Optional[Dict[str, Any]] = None
) -> Optional[Dict[str, Any]]:
    """Return the first booking matching one of ``(field, value)`` pairs, tried in order."""
    for field, value in candidates:
        if not value:
            continue
        if field == "_id":
            value = maybe_oid(value)
            if value is None:
                continue
        query = {field: value}
        if extra_filter:
            query.update(extra_filter)
        booking = db[BOOKINGS].find_one(query)
        if booking:
            return booking
    return None


def get_booking(db: Database, booking_id: str) -> Dict[str, Any]:
    if not booking_id:
        raise ValidationError("Booking ID is required")
    booking = resolve_booking(db, identity_candidates(booking_id))
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


def _reload(db: Database, booking: Dict[str, Any]) -> Dict[str, Any]:
    return db[BOOKINGS].find_one({"_id": booking["_id"]}) or booking


def list_bookings(
    db: Database,
    query: Optional[Dict[str, Any]] = None,
    status: Optional[str] = None,
    limit: int = 20,
    page: int = 1,
) -> Dict[str, Any]:
    """One page of bookings, newest first."""
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if page < 1:
        raise ValidationError("page must be >= 1")

    clauses = [query] if query else []
    if status:
        clauses.append(status_filter(normalize_status(status)))
    if not clauses:
        query = {}
    elif len(clauses) == 1:
        query = clauses[0]
    else:
        query = {"$and": clauses}

    total = db[BOOKINGS].count_documents(query)
    page_items = db[BOOKINGS].find(query).sort("createdAt", -1).skip((page - 1) * limit).limit(limit)
    return {
        "bookings": [serialize(b) for b in page_items],
        "pagination": {"total": total, "page": page, "limit": limit, "pages": -(-total // limit)},
    }


def customer_filter(db: Database, actor: TokenData) -> Dict[str, Any]:
    """Bookings a customer owns: linked by ``userId`` or made with their e-mail or phone."""
    clauses: List[Dict[str, Any]] = [{"userId": actor.user_id}]
    oid = maybe_oid(actor.user_id)
    user = db[USERS].find_one({"_id": oid}) if oid is not None else None
    email = (user or {}).get("email") or actor.email
    phone = (user or {}).get("phone")
    if email:
        clauses += [{"customerEmail": email}, {"email": email}]
    if phone:
        clauses += [{"customerPhone": phone}, {"phone": phone}]
    return {"$or": clauses}


def recent_bookings(db: Database, limit: int = 5) -> List[Dict[str, Any]]:
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    return [serialize(b) for b in db[BOOKINGS].find({}).sort("createdAt", -1).limit(limit)]


def create_booking(db: Database, data: Booking, actor: Optional[TokenData] = None) -> Dict[str, Any]:
    """Store a booking coming from the contact form or checkout flow."""
    payload = data.model_dump(exclude_none=True)
    payload["bookingId"] = payload.get("bookingId") or f"BK-{uuid.uuid4().hex[:8].upper()}"
    payload["status"] = "pending"
    payload["paymentStatus"] = "pending"
    payload.pop("technicianId", None)
    if actor is not None and actor.role == "user":
        payload["userId"] = actor.user_id
    inserted_id = create_document(db, BOOKINGS, payload)
    booking = db[BOOKINGS].find_one({"_id": maybe_oid(inserted_id)})
    logger.info("Booking created: %s for %s", payload["bookingId"], service_name(payload))

    when = " ".join(p for p in (payload.get("bookingDate"), payload.get("bookingTime")) if p)
    create_admin_notification(
        db,
        "New Booking",
        f"{payload.get('customerName') or 'A customer'} has booked {service_name(payload)}"
        + (f" for {when}." if when else "."),
        reference_id=payload["bookingId"],
        kind="booking",
        is_important=payload.get("urgency") == "emergency",
    )
    return booking


def update_status(db: Database, booking_id: str, new_status: str, actor: TokenData) -> Dict[str, Any]:
    """Admin status override.

    Writing the status a booking already has is accepted and changes only
    ``updatedAt``. A cancelled booking cannot be moved to another status.
    """
    if actor.role != "admin":
        raise ForbiddenError("Unauthorized access")
    if not new_status:
        raise ValidationError("Status is required")
    if new_status not in ADMIN_STATUSES:
        raise ValidationError("Invalid status value")

    booking = get_booking(db, booking_id)
    current = booking_status(booking)
    if current == "cancelled" and new_status != "cancelled":
        raise ValidationError("Cancelled bookings cannot be reopened")

    db[BOOKINGS].update_one(
        {"_id": booking["_id"]}, {"$set": {"status": new_status, "updatedAt": now_utc()}}
    )
    if new_status in CLOSED_STATUSES and current not in CLOSED_STATUSES:
        release_technician(db, booking.get("technicianId"))
    logger.info("Booking %s status %s -> %s by admin %s", booking_ref(booking), current, new_status, actor.user_id)

    title, template = STATUS_MESSAGES.get(
        new_status, ("Booking Update", "Your booking status has been updated to {status}.")
    )
    notify_customer(db, booking, title, template.format(service=service_name(booking), status=new_status))
    return {"id": booking.get("id") or doc_id(booking), "status": new_status}


def _check_owner(booking: Dict[str, Any], actor: Optional[TokenData]) -> None:
    if actor is None or actor.role == "admin":
        return
    owner = booking.get("userId")
    if owner and str(owner) != actor.user_id:
        raise ForbiddenError("You are not authorized to modify this booking")


def _by_booking_or_order(booking_id: str, order_id: str) -> List[Tuple[str, Any]]:
    return [("bookingId", booking_id), ("paymentId", booking_id), ("orderId", order_id)]


def _status_update(booking: Dict[str, Any], status: str) -> Dict[str, Any]:
    fields = {"status": status}
    if "bookingStatus" in booking:
        fields["bookingStatus"] = status
    return fields


def cancel(
    db: Database,
    booking_id: str,
    order_id: str,
    reason: Optional[str] = None,
    actor: Optional[TokenData] = None,
) -> Dict[str, Any]:
    if not booking_id or not order_id:
        raise ValidationError("Missing required fields")

    booking = resolve_booking(db, _by_booking_or_order(booking_id, order_id))
    if not booking:
        raise NotFoundError("Booking not found")
    _check_owner(booking, actor)
    current = booking_status(booking)
    if current == "cancelled":
        raise ValidationError("Booking is already cancelled")
    if current == "completed":
        raise ValidationError("Completed bookings cannot be cancelled")

    now = now_utc()
    changes = _status_update(booking, "cancelled")
    changes.update(cancellationReason=reason, cancelledAt=now, updatedAt=now)
    db[BOOKINGS].update_one({"_id": booking["_id"]}, {"$set": changes})
    db[ORDERS].update_one(
        {"orderId": order_id},
        {"$set": {"status": "cancelled", "cancellationReason": reason, "cancelledAt": now, "updatedAt": now}},
    )
    release_technician(db, booking.get("technicianId"))
    logger.info("Booking %s cancelled: %s", booking_ref(booking), reason or "no reason")

    queue_email(
        db,
        booking.get("customerEmail"),
        "cancellation",
        {
            "customerName": booking.get("customerName"),
            "service": service_name(booking),
            "bookingDate": booking.get("bookingDate"),
            "bookingTime": booking.get("bookingTime"),
            "reason": reason,
            "bookingId": booking_id,
            "orderId": order_id,
        },
    )
    when = " at ".join(p for p in (booking.get("bookingDate"), booking.get("bookingTime")) if p)
    admin_notified = create_admin_notification(
        db,
        "Booking Cancelled",
        f"{booking.get('customerName') or 'A customer'} cancelled {service_name(booking)}"
        + (f" scheduled for {when}" if when else "")
        + f". Reason: {reason or 'not given'}",
        reference_id=booking.get("bookingId") or booking_id,
        kind="cancellation",
        is_important=True,
    )
    return {"booking": serialize(_reload(db, booking)), "adminNotificationCreated": admin_notified}


def reschedule(
    db: Database,
    booking_id: str,
    order_id: str,
    new_date: str,
    new_time: str,
    actor: Optional[TokenData] = None,
) -> Dict[str, Any]:
    if not booking_id or not order_id or not new_date or not new_time:
        raise ValidationError("Missing required fields")

    booking = resolve_booking(db, _by_booking_or_order(booking_id, order_id))
    if not booking:
        raise NotFoundError("Booking not found")
    _check_owner(booking, actor)
    if booking_status(booking) in CLOSED_STATUSES:
        raise ValidationError(f"Cannot reschedule a {booking_status(booking)} booking")

    now = now_utc()
    changes = _status_update(booking, "rescheduled")
    changes.update(bookingDate=new_date, bookingTime=new_time, updatedAt=now)
    db[BOOKINGS].update_one({"_id": booking["_id"]}, {"$set": changes})
    db[ORDERS].update_one(
        {"orderId": order_id},
        {"$set": {"notes.bookingDate": new_date, "notes.bookingTime": new_time, "updatedAt": now}},
    )
    logger.info("Booking %s rescheduled to %s %s", booking_ref(booking), new_date, new_time)

    queue_email(
        db,
        booking.get("customerEmail"),
        "reschedule",
        {
            "customerName": booking.get("customerName"),
            "service": service_name(booking),
            "oldDate": booking.get("bookingDate"),
            "oldTime": booking.get("bookingTime"),
            "newDate": new_date,
            "newTime": new_time,
            "bookingId": booking_id,
            "orderId": order_id,
        },
    )
    return {"booking": serialize(_reload(db, booking))}


def rate(
    db: Database, booking_id: str, rating: Any, feedback: Optional[str], actor: TokenData
) -> Dict[str, Any]:
    """Attach the owner's rating to a completed booking and fold it into the technician's average."""
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be between 1 and 5")

    booking = resolve_booking(db, identity_candidates(booking_id, ("_id", "bookingId")))
    if not booking:
        raise NotFoundError("Booking not found")
    if not booking.get("userId") or str(booking["userId"]) != actor.user_id:
        raise ForbiddenError("You are not authorized to rate this booking")
    if booking_status(booking) != "completed":
        raise ValidationError("You can only rate completed bookings")
    if booking.get("rating"):
        raise ValidationError("You have already rated this booking")

    now = now_utc()
    feedback = feedback or ""
    result = db[BOOKINGS].update_one(
        {"_id": booking["_id"], "rating": None},
        {"$set": {"rating": rating, "feedback": feedback, "ratedAt": now, "updatedAt": now}},
    )
    if result.modified_count == 0:
        raise ValidationError("You have already rated this booking")

    technician_rating = None
    technician_id = booking.get("technicianId")
    technician = None
    if technician_id:
        oid = maybe_oid(technician_id)
        technician = db[TECHNICIANS].find_one({"_id": oid if oid is not None else technician_id})
    if technician:
        count = technician.get("totalRatings") or 0
        average = technician.get("rating") or 0
        technician_rating = round_rating((average * count + rating) / (count + 1))
        db[TECHNICIANS].update_one(
            {"_id": technician["_id"]},
            {
                "$set": {"rating": technician_rating, "totalRatings": count + 1, "updatedAt": now},
                "$push": {
                    "reviews": {
                        "bookingId": doc_id(booking),
                        "rating": rating,
                        "feedback": feedback,
                        "createdAt": now,
                    }
                },
            },
        )
        create_notification(
            db,
            doc_id(technician),
            "New Rating",
            f"You received a {rating}-star rating for your {service_name(booking)} service.",
            reference_id=doc_id(booking),
            recipient_type="technician",
            kind="rating",
        )
    logger.info("Booking %s rated %s", booking_ref(booking), rating)
    return {
        "bookingId": doc_id(booking),
        "rating": rating,
        "feedback": feedback,
        "createdAt": now,
        "technicianRating": technician_rating,
    }


def _assigned_booking(db: Database, booking_id: str, technician: Dict[str, Any]) -> Dict[str, Any]:
    booking = resolve_booking(
        db, identity_candidates(booking_id), {"technicianId": doc_id(technician)}
    )
    if not booking:
        raise NotFoundError("Booking not found or not assigned to you")
    return booking


def _transition(db: Database, booking: Dict[str, Any], changes: Dict[str, Any]) -> None:
    """Write ``changes`` only if the booking is still in the state we read."""
    result = db[BOOKINGS].update_one(
        {
            "_id": booking["_id"],
            "technicianId": booking.get("technicianId"),
            "status": booking.get("status"),
        },
        {"$set": changes},
    )
    if result.matched_count == 0:
        raise ValidationError("Booking was modified by another request, please retry")


def start(db: Database, booking_id: str, technician: Dict[str, Any]) -> Dict[str, Any]:
    booking = _assigned_booking(db, booking_id, technician)
    current = booking_status(booking)
    if current not in STARTABLE_STATUSES:
        raise ValidationError(f"Booking cannot be started while {current}")

    now = now_utc()
    _transition(db, booking, {"status": "in_progress", "startedAt": now, "updatedAt": now})
    name = technician.get("name") or "Your technician"
    notify_customer(
        db,
        booking,
        "Service Started",
        f"{name} has started working on your {service_name(booking)} booking.",
        kind="booking_update",
    )
    create_admin_notification(
        db,
        "Service Started",
        f"Technician {name} has started working on booking #{booking_ref(booking)}.",
        reference_id=doc_id(booking),
        kind="booking",
    )
    logger.info("Booking %s started by technician %s", booking_ref(booking), doc_id(technician))
    return {"_id": doc_id(booking), "status": "in_progress", "startedAt": now}


def complete(
    db: Database, booking_id: str, technician: Dict[str, Any], notes: Optional[str] = None
) -> Dict[str, Any]:
    if notes is not None and len(notes) > MAX_NOTES_LENGTH:
        raise ValidationError(f"Notes must be {MAX_NOTES_LENGTH} characters or less")

    booking = _assigned_booking(db, booking_id, technician)
    current = booking_status(booking)
    if current != "in_progress":
        raise ValidationError(f"Booking cannot be completed while {current}")
    amount = booking.get("amount")
    if isinstance(amount, bool) or not isinstance(amount, (int, float)) or amount < 0:
        raise ValidationError("Invalid or missing booking amount")

    now = now_utc()
    changes: Dict[str, Any] = {"status": "completed", "completedAt": now, "updatedAt": now}
    if notes:
        changes["notes"] = notes
    _transition(db, booking, changes)
    db[TECHNICIANS].update_one(
        {"_id": technician["_id"]},
        {
            "$set": {"status": "active", "updatedAt": now, "lastActive": now},
            "$inc": {"completedBookings": 1},
        },
    )

    earnings = split_amount(amount, get_commission_rate(db))
    name = technician.get("name") or "Your technician"
    notify_customer(
        db,
        booking,
        "Service Completed",
        f"{name} has completed your {service_name(booking)} booking. Please rate your experience.",
        kind="booking_update",
    )
    create_admin_notification(
        db,
        "Service Completed",
        f"Technician {name} has completed booking #{booking_ref(booking)}.",
        reference_id=doc_id(booking),
        kind="booking",
    )
    logger.info("Booking %s completed by technician %s", booking_ref(booking), doc_id(technician))
    return {"_id": doc_id(booking), "status": "completed", "completedAt": now, "earnings": earnings}


def add_notes(db: Database, booking_id: str, technician: Dict[str, Any], notes: str) -> Dict[str, Any]:
    if not notes or not notes.strip():
        raise ValidationError("Notes are required")
    if len(notes) > MAX_NOTES_LENGTH:
        raise ValidationError(f"Notes must be {MAX_NOTES_LENGTH} characters or less")
    booking = _assigned_booking(db, booking_id, technician)
    if booking_status(booking) in CLOSED_STATUSES:
        raise ValidationError("Notes cannot be added to a closed booking")

    entry = {"text": notes.strip(), "technicianId": doc_id(technician), "createdAt": now_utc()}
    db[BOOKINGS].update_one(
        {"_id": booking["_id"]},
        {"$push": {"technicianNotes": entry}, "$set": {"updatedAt": entry["createdAt"]}},
    )
    return entry


def hours_until(booking: Dict[str, Any], now: datetime) -> int:
    """Whole hours from ``now`` to the booked slot; the default when no slot is stored."""
    day = booking.get("bookingDate")
    if not day:
        return DEFAULT_REMINDER_HOURS
    slot = f"{day} {booking.get('bookingTime') or '12:00'}"
    for fmt in ("%Y-%m-%d %H:%M", "%Y-%m-%d %I:%M %p"):
        try:
            when = datetime.strptime(slot, fmt)
        except ValueError:
            continue
        return int((when - now).total_seconds() // 3600)
    return DEFAULT_REMINDER_HOURS


def send_reminder(
    db: Database, booking_id: Optional[str], order_id: Optional[str], actor: TokenData
) -> Dict[str, Any]:
    """Queue a reminder e-mail for an upcoming booking. Admins or the booking's customer only."""
    if not booking_id and not order_id:
        raise ValidationError("Booking ID or Order ID is required")
    booking = resolve_booking(db, _by_booking_or_order(booking_id, order_id))
    if not booking:
        raise NotFoundError("Booking not found")
    if actor.role != "admin":
        owns = booking.get("userId") and str(booking["userId"]) == actor.user_id
        if not owns and not (actor.email and booking.get("customerEmail") == actor.email):
            raise ForbiddenError("You do not have permission to send reminders for this booking")
    current = booking_status(booking)
    if current in CLOSED_STATUSES:
        raise ValidationError(f"Cannot send a reminder for a {current} booking")

    now = now_utc()
    hours = hours_until(booking, now)
    sent = queue_email(
        db,
        booking.get("customerEmail"),
        "reminder",
        {
            "customerName": booking.get("customerName"),
            "service": service_name(booking),
            "bookingDate": booking.get("bookingDate"),
            "bookingTime": booking.get("bookingTime"),
            "bookingId": booking.get("bookingId") or booking.get("paymentId"),
            "orderId": booking.get("orderId"),
            "hoursRemaining": hours,
        },
    )
    db[BOOKINGS].update_one({"_id": booking["_id"]}, {"$set": {"lastReminderSent": now, "updatedAt": now}})
    notify_customer(
        db,
        booking,
        "Booking Reminder",
        f"Reminder: your {service_name(booking)} booking is coming up.",
        kind="reminder",
    )
    logger.info("Reminder for booking %s queued=%s (%sh ahead)", booking_ref(booking), sent, hours)
    return {"reminderSent": sent, "hoursRemaining": hours, "lastReminderSent": now}


def cancel_by_technician(
    db: Database, booking_id: str, technician: Dict[str, Any], notes: Optional[str] = None
) -> Dict[str, Any]:
    """Technician drops a job they hold. The booking is cancelled, not returned to the pool."""
    if notes is not None and len(notes) > MAX_NOTES_LENGTH:
        raise ValidationError(f"Notes must be {MAX_NOTES_LENGTH} characters or less")
    booking = _assigned_booking(db, booking_id, technician)
    current = booking_status(booking)
    if current not in TECHNICIAN_CANCELLABLE:
        raise ValidationError(f"Booking cannot be cancelled while {current}")

    now = now_utc()
    changes = _status_update(booking, "cancelled")
    changes.update(
        cancelledAt=now,
        cancelledBy="technician",
        cancellationReason="Cancelled by technician",
        updatedAt=now,
    )
    if notes:
        changes["notes"] = notes
    _transition(db, booking, changes)
    db[JOB_OFFERS].update_many(
        {"bookingId": doc_id(booking), "status": "pending"},
        {"$set": {"status": "withdrawn", "updatedAt": now}},
    )
    release_technician(db, doc_id(technician))

    name = technician.get("name") or "The technician"
    notify_customer(
        db,
        booking,
        "Booking Cancelled",
        f"Your {service_name(booking)} booking has been cancelled by the technician.",
        kind="booking_update",
    )
    create_admin_notification(
        db,
        "Booking Cancelled by Technician",
        f"Technician {name} has cancelled booking #{booking_ref(booking)}."
        + (f" Notes: {notes}" if notes else ""),
        reference_id=doc_id(booking),
        kind="cancellation",
        is_important=True,
    )
    logger.info("Booking %s cancelled by technician %s", booking_ref(booking), doc_id(technician))
    return {"_id": doc_id(booking), "status": "cancelled", "cancelledAt": now}


def update_payment_status(
    db: Database, booking_id: str, payment_status: str, actor: Optional[TokenData] = None
) -> Dict[str, Any]:
    """Apply a payment status from an admin or a gateway webhook. Repeating a status is a no-op."""
    if not payment_status:
        raise ValidationError("Payment status is required")
    if payment_status not in PAYMENT_STATUSES:
        raise ValidationError("Invalid payment status value")

    booking = resolve_booking(db, identity_candidates(booking_id, ("bookingId", "_id", "id")))
    if not booking:
        raise NotFoundError("Booking not found")
    if booking.get("paymentStatus") == payment_status:
        return {"paymentStatus": payment_status, "changed": False}

    now = now_utc()
    db[BOOKINGS].update_one(
        {"_id": booking["_id"]}, {"$set": {"paymentStatus": payment_status, "updatedAt": now}}
    )
    db[PAYMENTS].update_one(
        {"bookingId": booking_ref(booking)},
        {
            "$set": {
                "status": PAYMENT_RECORD_STATUS.get(payment_status, "pending"),
                "updatedAt": now,
                "updatedBy": actor.user_id if actor else "webhook",
                "manuallyUpdated": actor is not None,
            }
        },
    )
    logger.info("Booking %s payment status -> %s", booking_ref(booking), payment_status)

    title, template = PAYMENT_MESSAGES.get(
        payment_status,
        ("Payment Status Updated", "Your payment status for booking {ref} has been updated to {status}."),
    )
    notify_customer(
        db, booking, title, template.format(ref=booking_ref(booking), status=payment_status), kind="payment"
    )
    return {"paymentStatus": payment_status, "changed": True}
