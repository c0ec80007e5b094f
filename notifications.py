"""
Notification sink and e-mail outbox.

Every writer here is fire-and-forget: a failure is logged and swallowed so
the booking transition that triggered it is never rolled back. E-mails are
only appended to the ``emailOutbox`` collection; delivery happens elsewhere.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import PyMongoError
from pydantic import ValidationError as PydanticValidationError

from database import create_document, maybe_oid, now_utc, serialize
from errors import NotFoundError
from schemas import (
    ADMIN_NOTIFICATIONS,
    EMAIL_OUTBOX,
    NOTIFICATIONS,
    USERS,
    AdminNotification,
    EmailMessage,
    Notification,
)

logger = logging.getLogger(__name__)


def create_notification(
    db: Database,
    recipient_id: Optional[str],
    title: str,
    message: str,
    reference_id: Optional[str] = None,
    recipient_type: str = "user",
    kind: str = "booking",
) -> Optional[str]:
    """Store a user or technician notification. Returns its id, or None on failure."""
    if not recipient_id:
        logger.info("Skipping notification '%s': no recipient", title)
        return None
    try:
        notification = Notification(
            recipientId=str(recipient_id),
            recipientType=recipient_type,
            title=title,
            message=message,
            type=kind,
            referenceId=reference_id,
        )
        return create_document(db, NOTIFICATIONS, notification)
    except (PyMongoError, PydanticValidationError) as e:
        logger.warning("Error creating notification '%s' for %s: %s", title, recipient_id, e)
        return None


def create_admin_notification(
    db: Database,
    title: str,
    message: str,
    reference_id: Optional[str] = None,
    kind: str = "general",
    is_important: bool = False,
) -> bool:
    try:
        notification = AdminNotification(
            title=title,
            message=message,
            type=kind,
            referenceId=reference_id,
            isImportant=is_important,
        )
        create_document(db, ADMIN_NOTIFICATIONS, notification)
        return True
    except (PyMongoError, PydanticValidationError) as e:
        logger.warning("Error creating admin notification '%s': %s", title, e)
        return False


def find_customer_id(db: Database, booking: Dict[str, Any]) -> Optional[str]:
    """The booking owner's user id, falling back to a users lookup by e-mail or phone."""
    if booking.get("userId"):
        return str(booking["userId"])
    email = booking.get("customerEmail") or booking.get("email")
    phone = booking.get("customerPhone") or booking.get("phone")
    clauses = []
    if email:
        clauses.append({"email": email})
    if phone:
        clauses.append({"phone": phone})
    if not clauses:
        return None
    try:
        user = db[USERS].find_one({"$or": clauses})
    except PyMongoError as e:
        logger.warning("Customer lookup failed: %s", e)
        return None
    return str(user["_id"]) if user else None


def notify_customer(
    db: Database, booking: Dict[str, Any], title: str, message: str, kind: str = "booking"
) -> Optional[str]:
    reference_id = booking.get("bookingId") or str(booking.get("_id"))
    return create_notification(
        db, find_customer_id(db, booking), title, message, reference_id, "user", kind
    )


def queue_email(db: Database, to: Optional[str], template: str, context: Dict[str, Any]) -> bool:
    if not to:
        return False
    try:
        create_document(db, EMAIL_OUTBOX, EmailMessage(to=to, template=template, context=context))
        return True
    except (PyMongoError, PydanticValidationError) as e:
        logger.warning("Error queueing %s email to %s: %s", template, to, e)
        return False


def list_notifications(
    db: Database,
    recipient_id: str,
    limit: int = 10,
    page: int = 1,
    unread_only: bool = False,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {"recipientId": recipient_id}
    if unread_only:
        query["isRead"] = False
    skip = (max(page, 1) - 1) * limit
    items: List[Dict[str, Any]] = list(
        db[NOTIFICATIONS].find(query).sort("createdAt", -1).skip(skip).limit(limit)
    )
    total = db[NOTIFICATIONS].count_documents(query)
    unread = db[NOTIFICATIONS].count_documents({"recipientId": recipient_id, "isRead": False})
    return {
        "notifications": [serialize(n) for n in items],
        "unreadCount": unread,
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "pages": -(-total // limit) if limit else 0,
        },
    }


def list_admin_notifications(db: Database, limit: int = 20, unread_only: bool = False) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {"isRead": False} if unread_only else {}
    items = db[ADMIN_NOTIFICATIONS].find(query).sort("createdAt", -1).limit(limit)
    return [serialize(n) for n in items]


def mark_as_read(db: Database, notification_id: str, recipient_id: str) -> None:
    oid = maybe_oid(notification_id)
    result = None
    if oid is not None:
        result = db[NOTIFICATIONS].update_one(
            {"_id": oid, "recipientId": recipient_id},
            {"$set": {"isRead": True, "updatedAt": now_utc()}},
        )
    if result is None or result.matched_count == 0:
        raise NotFoundError("Notification not found")


def mark_admin_notification_read(db: Database, notification_id: str) -> None:
    oid = maybe_oid(notification_id)
    result = None
    if oid is not None:
        result = db[ADMIN_NOTIFICATIONS].update_one(
            {"_id": oid}, {"$set": {"isRead": True, "updatedAt": now_utc()}}
        )
    if result is None or result.matched_count == 0:
        raise NotFoundError("Notification not found")


def delete_notification(db: Database, notification_id: str, recipient_id: str) -> None:
    """Users may delete their own notifications; nothing else is ever removed."""
    oid = maybe_oid(notification_id)
    result = None
    if oid is not None:
        result = db[NOTIFICATIONS].delete_one({"_id": oid, "recipientId": recipient_id})
    if result is None or result.deleted_count == 0:
        raise NotFoundError("Notification not found")
