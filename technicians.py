import logging
import math
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from auth import TokenData
from database import maybe_oid, now_utc
from errors import ForbiddenError, NotFoundError, ValidationError
from schemas import TECHNICIANS, USERS

logger = logging.getLogger(__name__)

DISPATCHABLE_STATUSES = ("active", "online")
EARTH_RADIUS_KM = 6371.0


def technician_filter(technician_id: Any) -> Dict[str, Any]:
    oid = maybe_oid(technician_id)
    return {"_id": oid if oid is not None else technician_id}


def get_technician(db: Database, technician_id: Any) -> Dict[str, Any]:
    if not technician_id:
        raise ValidationError("Technician ID is required")
    technician = db[TECHNICIANS].find_one(technician_filter(technician_id))
    if not technician:
        raise NotFoundError("Technician not found")
    return technician


def resolve_technician(db: Database, actor: TokenData) -> Dict[str, Any]:
    """Find the technician profile behind a token.

    Tries the profile id, then the linked ``userId``, then the e-mail
    address. A match by e-mail back-fills ``userId`` so later lookups hit
    the second step directly.
    """
    technician = None
    oid = maybe_oid(actor.user_id)
    if oid is not None:
        technician = db[TECHNICIANS].find_one({"_id": oid})
    if not technician:
        technician = db[TECHNICIANS].find_one({"userId": actor.user_id})
    if not technician:
        email = actor.email
        if not email and oid is not None:
            user = db[USERS].find_one({"_id": oid})
            email = user.get("email") if user else None
        if email:
            technician = db[TECHNICIANS].find_one({"email": email.lower()})
            if technician:
                db[TECHNICIANS].update_one(
                    {"_id": technician["_id"]},
                    {"$set": {"userId": actor.user_id, "updatedAt": now_utc()}},
                )
                technician["userId"] = actor.user_id
                logger.info("Linked technician %s to user %s by email", technician["_id"], actor.user_id)
    if not technician:
        raise NotFoundError("Technician profile not found")
    return technician


def release_technician(db: Database, technician_id: Optional[str]) -> bool:
    """Put a busy technician back to active once their job is closed."""
    if not technician_id:
        return False
    query = technician_filter(technician_id)
    query["status"] = "busy"
    result = db[TECHNICIANS].update_one(
        query, {"$set": {"status": "active", "updatedAt": now_utc(), "lastActive": now_utc()}}
    )
    return result.modified_count > 0


def toggle_availability(db: Database, technician: Dict[str, Any]) -> bool:
    """Flip whether an active technician takes new job offers. Returns the new value."""
    if technician.get("status") not in DISPATCHABLE_STATUSES:
        raise ForbiddenError("Only active technicians can toggle availability")
    available = technician.get("isAvailable") is False
    result = db[TECHNICIANS].update_one(
        {"_id": technician["_id"], "status": technician.get("status")},
        {"$set": {"isAvailable": available, "updatedAt": now_utc()}},
    )
    if result.matched_count == 0:
        raise ValidationError("Technician status changed, please retry")
    logger.info("Technician %s is now %savailable", technician["_id"], "" if available else "un")
    return available


def has_specialization(technician: Dict[str, Any], service: Optional[str]) -> bool:
    if not service:
        return False
    service = service.lower()
    return any(spec and spec.lower() in service for spec in technician.get("specializations") or [])


def eligible_technicians(db: Database, service: str) -> List[Dict[str, Any]]:
    """Active or online technicians taking offers and qualified for a service, best rated first."""
    if not service:
        raise ValidationError("Booking ID or service type is required")
    candidates = db[TECHNICIANS].find(
        {"status": {"$in": list(DISPATCHABLE_STATUSES)}, "isAvailable": {"$ne": False}}
    )
    matches = [t for t in candidates if has_specialization(t, service)]
    matches.sort(key=lambda t: t.get("rating") or 0, reverse=True)
    return [
        {
            "id": str(t["_id"]),
            "name": t.get("name"),
            "phone": t.get("phone"),
            "email": t.get("email"),
            "specializations": t.get("specializations") or [],
            "status": t.get("status"),
            "rating": t.get("rating") or 0,
            "completedBookings": t.get("completedBookings") or 0,
        }
        for t in matches
    ]


def distance_km(origin: Optional[Dict[str, Any]], destination: Optional[Dict[str, Any]]) -> Optional[float]:
    """Haversine distance between two ``{lat, lng}`` points, rounded to 0.1 km."""
    try:
        lat1, lng1 = float(origin["lat"]), float(origin["lng"])
        lat2, lng2 = float(destination["lat"]), float(destination["lng"])
    except (TypeError, KeyError, ValueError):
        return None
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lng2 - lng1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return round(2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a)), 1)
