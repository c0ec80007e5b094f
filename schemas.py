"""
Database Schemas for the FixNow repair platform

Each Pydantic model describes the documents of one MongoDB collection.
Field names are camelCase to match the documents already in the store;
nothing enforces these shapes on read, so readers still code for
missing or legacy fields.
"""
from __future__ import annotations
from pydantic import BaseModel, Field, EmailStr
from typing import Optional, List, Literal, Dict, Any
from datetime import datetime

Role = Literal["user", "technician", "admin"]
BookingStatus = Literal[
    "pending",
    "confirmed",
    "assigned",
    "in_progress",
    "completed",
    "cancelled",
    "rescheduled",
]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
Urgency = Literal["normal", "high", "emergency"]
TechnicianStatus = Literal["active", "inactive", "online", "offline", "busy"]
OfferStatus = Literal["pending", "accepted", "rejected", "withdrawn"]

# Collection names
USERS = "users"
TECHNICIANS = "technicians"
BOOKINGS = "bookings"
JOB_OFFERS = "jobOffers"
PAYMENTS = "payments"
ORDERS = "orders"
PAYOUTS = "payouts"
NOTIFICATIONS = "notifications"
ADMIN_NOTIFICATIONS = "adminNotifications"
SETTINGS = "settings"
ADMIN_ACTIVITY = "adminActivity"
EMAIL_OUTBOX = "emailOutbox"


class GeoPoint(BaseModel):
    lat: float
    lng: float


class User(BaseModel):
    name: str
    email: EmailStr
    phone: Optional[str] = None
    role: Role = "user"
    passwordHash: str


class Technician(BaseModel):
    name: str
    email: EmailStr
    phone: Optional[str] = None
    userId: Optional[str] = None
    specializations: List[str] = []
    status: TechnicianStatus = "active"
    isAvailable: bool = True
    rating: float = 0.0
    totalRatings: int = 0
    completedBookings: int = 0
    location: Optional[GeoPoint] = None


class Booking(BaseModel):
    bookingId: Optional[str] = None
    userId: Optional[str] = None
    service: str
    status: BookingStatus = "pending"
    paymentStatus: PaymentStatus = "pending"
    amount: float = Field(0, ge=0)
    customerName: Optional[str] = None
    customerEmail: Optional[EmailStr] = None
    customerPhone: Optional[str] = None
    address: Optional[str] = None
    location: Optional[GeoPoint] = None
    technicianId: Optional[str] = None
    urgency: Urgency = "normal"
    notes: Optional[str] = None
    bookingDate: Optional[str] = None
    bookingTime: Optional[str] = None
    orderId: Optional[str] = None


class JobOffer(BaseModel):
    bookingId: str
    technicianId: str
    status: OfferStatus = "pending"
    expiresAt: datetime
    distance: Optional[float] = None
    amount: float = 0


class Notification(BaseModel):
    recipientId: Optional[str] = None
    recipientType: Literal["user", "technician"] = "user"
    title: str
    message: str
    type: str = "booking"
    referenceId: Optional[str] = None
    isRead: bool = False


class AdminNotification(BaseModel):
    title: str
    message: str
    type: Literal["booking", "payment", "cancellation", "rejection", "general"] = "general"
    referenceId: Optional[str] = None
    isRead: bool = False
    isImportant: bool = False


class EmailMessage(BaseModel):
    to: EmailStr
    template: Literal["cancellation", "reschedule", "reminder", "password_reset"]
    context: Dict[str, Any] = {}
    status: Literal["queued", "sent", "failed"] = "queued"
