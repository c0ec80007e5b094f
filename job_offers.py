"""
Job offer dispatch: time-boxed proposals of one booking to one technician.

An offer is live while ``status == "pending"`` and ``expiresAt > now``.
Expiry is soft: nothing rewrites an expired offer, the active query just
stops returning it. A technician's answer moves the booking and the
technician, and closes the offer with ``accepted``/``rejected``.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from pymongo.database import Database

from bookings import (
    CLOSED_STATUSES,
    STARTABLE_STATUSES,
    booking_status,
    get_booking,
    identity_candidates,
    resolve_booking,
    service_name,
)
from commission import get_commission_rate, split_amount
from config import settings
from database import create_document, doc_id, maybe_oid, now_utc, serialize
from errors import NotFoundError, ValidationError
from notifications import create_admin_notification, create_notification, notify_customer
from schemas import BOOKINGS, JOB_OFFERS, TECHNICIANS, JobOffer
from technicians import (
    DISPATCHABLE_STATUSES,
    distance_km,
    get_technician,
    has_specialization,
    release_technician,
    technician_filter,
)

logger = logging.getLogger(__name__)

DECISIONS = ("accept", "reject")
DistanceFn = Callable[[Optional[Dict[str, Any]], Optional[Dict[str, Any]]], Optional[float]]


def create_offer(
    db: Database,
    booking_id: str,
    technician_id: str,
    ttl_minutes: Optional[int] = None,
    distance: Optional[float] = None,
) -> Tuple[Dict[str, Any], bool]:
    """Offer a booking to a technician.

    If the pair already has a pending offer its expiry is pushed out
    instead of inserting a duplicate. Returns ``(offer, created)``.
    """
    ttl = settings.dispatch.offer_ttl_minutes if ttl_minutes is None else ttl_minutes
    if ttl <= 0:
        raise ValidationError("Offer TTL must be a positive number of minutes")

    booking = get_booking(db, booking_id)
    technician = get_technician(db, technician_id)
    current = booking_status(booking)
    if current in CLOSED_STATUSES or current == "in_progress":
        raise ValidationError(f"Booking cannot be offered while {current}")

    assigned_to = booking.get("technicianId")
    if assigned_to and assigned_to != doc_id(technician):
        raise ValidationError("Booking is already assigned to another technician")

    now = now_utc()
    if not assigned_to:
        db[BOOKINGS].update_one(
            {"_id": booking["_id"], "technicianId": None},
            {
                "$set": {
                    "technician": technician.get("name"),
                    "technicianId": doc_id(technician),
                    "status": "assigned",
                    "assignedAt": now,
                    "updatedAt": now,
                }
            },
        )
    expires_at = now + timedelta(minutes=ttl)
    if distance is None:
        distance = distance_km(technician.get("location"), booking.get("location"))

    pair = {"bookingId": doc_id(booking), "technicianId": doc_id(technician)}
    existing = db[JOB_OFFERS].find_one({**pair, "status": "pending"})
    if existing:
        db[JOB_OFFERS].update_one(
            {"_id": existing["_id"]}, {"$set": {"expiresAt": expires_at, "updatedAt": now}}
        )
        logger.info("Job offer %s refreshed until %s", existing["_id"], expires_at.isoformat())
        return serialize(db[JOB_OFFERS].find_one({"_id": existing["_id"]})), False

    offer = JobOffer(
        expiresAt=expires_at,
        distance=distance,
        amount=booking.get("amount") or 0,
        **pair,
    )
    offer_id = create_document(db, JOB_OFFERS, offer)
    logger.info("Job offer %s created for booking %s, expires in %s min", offer_id, pair["bookingId"], ttl)
    return serialize(db[JOB_OFFERS].find_one({"_id": maybe_oid(offer_id)})), True


def _seconds_left(expires_at: datetime, now: datetime) -> int:
    return max(0, math.floor((expires_at - now).total_seconds()))


def list_active_offers(
    db: Database,
    technician_id: str,
    now: Optional[datetime] = None,
    distance_fn: DistanceFn = distance_km,
) -> List[Dict[str, Any]]:
    """Live offers for a technician, joined with booking details and the earnings split."""
    now = now or now_utc()
    technician = db[TECHNICIANS].find_one(technician_filter(technician_id)) or {}
    rate = get_commission_rate(db)
    offers = db[JOB_OFFERS].find(
        {"technicianId": str(technician_id), "status": "pending", "expiresAt": {"$gt": now}}
    ).sort("expiresAt", 1)

    active = []
    for offer in offers:
        booking = resolve_booking(db, identity_candidates(offer.get("bookingId")))
        if not booking:
            logger.warning("Booking %s not found for job offer %s", offer.get("bookingId"), offer["_id"])
            continue
        distance = offer.get("distance")
        if distance is None:
            distance = distance_fn(technician.get("location"), booking.get("location"))
        notes = booking.get("notes")
        description = notes.get("description", "") if isinstance(notes, dict) else notes
        active.append(
            {
                "id": doc_id(offer),
                "bookingId": doc_id(booking),
                "appliance": service_name(booking),
                "location": {
                    "address": booking.get("address") or booking.get("customerAddress") or "Unknown Address",
                    "distance": distance,
                },
                "earnings": split_amount(booking.get("amount"), rate),
                "customer": {
                    "name": booking.get("customerName") or "Unknown",
                    "phone": booking.get("customerPhone"),
                },
                "description": description or booking.get("description") or "",
                "urgency": booking.get("urgency") or "normal",
                "createdAt": offer.get("createdAt"),
                "expiresAt": offer["expiresAt"],
                "timeLeftSeconds": _seconds_left(offer["expiresAt"], now),
            }
        )
    logger.debug("Job offers retrieved for technician %s: %d", technician_id, len(active))
    return active


def _close_offers(db: Database, booking_id: str, technician_id: str, status: str) -> int:
    result = db[JOB_OFFERS].update_many(
        {"bookingId": booking_id, "technicianId": technician_id, "status": "pending"},
        {"$set": {"status": status, "respondedAt": now_utc(), "updatedAt": now_utc()}},
    )
    return result.modified_count


def respond(
    db: Database,
    booking_id: str,
    technician: Dict[str, Any],
    decision: str,
    reason: Optional[str] = None,
) -> Dict[str, Any]:
    """Apply a technician's accept/reject answer to the booking assigned to them."""
    if not booking_id or not decision:
        raise ValidationError("Booking ID and response are required")
    if decision not in DECISIONS:
        raise ValidationError("Response must be 'accept' or 'reject'")

    technician_id = doc_id(technician)
    booking = resolve_booking(db, identity_candidates(booking_id), {"technicianId": technician_id})
    if not booking:
        raise NotFoundError("Booking not found or not assigned to this technician")
    current = booking_status(booking)
    if current in CLOSED_STATUSES:
        raise ValidationError(f"Booking is already {current}")
    if current not in STARTABLE_STATUSES:
        raise ValidationError(f"Booking cannot be answered while {current}")

    now = now_utc()
    assigned = {"_id": booking["_id"], "technicianId": technician_id, "status": booking.get("status")}
    if decision == "accept":
        result = db[BOOKINGS].update_one(
            assigned,
            {"$set": {"status": "confirmed", "technicianAcceptedAt": now, "updatedAt": now}},
        )
        if result.matched_count == 0:
            raise NotFoundError("Booking not found or not assigned to this technician")
        db[TECHNICIANS].update_one(
            {"_id": technician["_id"]}, {"$set": {"status": "busy", "updatedAt": now}}
        )
        _close_offers(db, doc_id(booking), technician_id, "accepted")
        notify_customer(
            db,
            booking,
            "Booking Confirmed",
            f"Your {service_name(booking)} booking has been confirmed and a technician has been assigned.",
        )
        logger.info("Technician %s accepted booking %s", technician_id, doc_id(booking))
    else:
        reason = reason or "No reason provided"
        result = db[BOOKINGS].update_one(
            assigned,
            {
                "$set": {
                    "status": "pending",
                    "technicianRejectedAt": now,
                    "technicianRejectionReason": reason,
                    "updatedAt": now,
                },
                "$unset": {"technician": "", "technicianId": ""},
            },
        )
        if result.matched_count == 0:
            raise NotFoundError("Booking not found or not assigned to this technician")
        _close_offers(db, doc_id(booking), technician_id, "rejected")
        if current == "confirmed":
            release_technician(db, technician_id)
        create_admin_notification(
            db,
            "Booking Rejected by Technician",
            f"Technician {technician.get('name') or technician_id} has rejected the "
            f"{service_name(booking)} booking. Reason: {reason}",
            reference_id=doc_id(booking),
            kind="rejection",
        )
        logger.info("Technician %s rejected booking %s: %s", technician_id, doc_id(booking), reason)

    return serialize(db[BOOKINGS].find_one({"_id": booking["_id"]}))


def assign_booking(
    db: Database, booking_id: str, technician_id: str, ttl_minutes: Optional[int] = None
) -> Dict[str, Any]:
    """Admin dispatch: attach a technician to a booking and send them an offer."""
    if not booking_id or not technician_id:
        raise ValidationError("Booking ID and Technician ID are required")
    booking = get_booking(db, booking_id)
    technician = get_technician(db, technician_id)

    if technician.get("status") not in DISPATCHABLE_STATUSES:
        raise ValidationError("Technician is not active or online")
    if not has_specialization(technician, service_name(booking)):
        raise ValidationError("Technician does not have the required specialization for this booking")
    current = booking_status(booking)
    if current in CLOSED_STATUSES or current == "in_progress":
        raise ValidationError(f"Booking cannot be assigned while {current}")

    new_id = doc_id(technician)
    previous_id = booking.get("technicianId")
    if previous_id == new_id and current == "confirmed":
        raise ValidationError("Technician has already accepted this booking")
    if previous_id and previous_id != new_id:
        db[JOB_OFFERS].update_many(
            {"bookingId": doc_id(booking), "technicianId": previous_id, "status": "pending"},
            {"$set": {"status": "withdrawn", "updatedAt": now_utc()}},
        )
        release_technician(db, previous_id)
        logger.info("Booking %s reassigned from %s to %s", doc_id(booking), previous_id, new_id)

    now = now_utc()
    db[BOOKINGS].update_one(
        {"_id": booking["_id"]},
        {
            "$set": {
                "technician": technician.get("name"),
                "technicianId": new_id,
                "status": "assigned",
                "assignedAt": now,
                "updatedAt": now,
            }
        },
    )
    create_notification(
        db,
        new_id,
        "New Job Assignment",
        f"You have been assigned to a new {service_name(booking)} job",
        reference_id=doc_id(booking),
        recipient_type="technician",
    )
    offer, _ = create_offer(db, doc_id(booking), new_id, ttl_minutes)
    return {"booking": serialize(db[BOOKINGS].find_one({"_id": booking["_id"]})), "jobOffer": offer}
