import hmac
import logging
import os
import uuid
from datetime import date, datetime, time
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError

import bookings
import commission
import earnings
import job_offers
import notifications
import technicians
from auth import (
    TokenData,
    create_access_token,
    get_current_user,
    hash_password,
    request_password_reset,
    require_role,
    reset_password,
    verify_password,
    verify_reset_token,
)
from config import request_id_var, settings
from database import create_document, get_db, maybe_oid, serialize
from errors import AuthError, NotFoundError, ServiceError, ValidationError
from schemas import TECHNICIANS, USERS, Booking, GeoPoint, Technician, Urgency, User

logger = logging.getLogger(__name__)

app = FastAPI(title="FixNow Repair API", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

admin_only = require_role("admin")
technician_only = require_role("technician")


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
    token = request_id_var.set(request_id)
    try:
        response = await call_next(request)
    finally:
        request_id_var.reset(token)
    response.headers["X-Request-ID"] = request_id
    return response


# ------------------ Errors ------------------

@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    message = f"Invalid {field}: {first.get('msg')}" if field else "Invalid request"
    return JSONResponse(status_code=400, content={"success": False, "message": message})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})


# ------------------ Auth ------------------

class RegisterBody(BaseModel):
    name: str
    email: EmailStr
    phone: Optional[str] = None
    password: str


class LoginBody(BaseModel):
    email: EmailStr
    password: str


def _token_for(user_id: str, email: str, role: str) -> str:
    return create_access_token({"userId": user_id, "email": email, "role": role})


@app.post("/auth/register")
def register(body: RegisterBody, db: Database = Depends(get_db)):
    if db[USERS].find_one({"email": body.email.lower()}):
        raise ValidationError("Email already registered")
    user = User(
        name=body.name,
        email=body.email.lower(),
        phone=body.phone,
        role="user",
        passwordHash=hash_password(body.password),
    )
    user_id = create_document(db, USERS, user)
    token = _token_for(user_id, user.email, user.role)
    return {
        "success": True,
        "token": token,
        "user": {"id": user_id, "name": user.name, "email": user.email, "role": user.role},
    }


@app.post("/auth/login")
def login(body: LoginBody, db: Database = Depends(get_db)):
    u = db[USERS].find_one({"email": body.email.lower()})
    if not u or not verify_password(body.password, u.get("passwordHash", "")):
        raise AuthError("Invalid credentials")
    user_id = str(u["_id"])
    role = u.get("role", "user")
    return {
        "success": True,
        "token": _token_for(user_id, u.get("email"), role),
        "user": {"id": user_id, "name": u.get("name"), "email": u.get("email"), "role": role},
    }


@app.get("/me")
def me(user: TokenData = Depends(get_current_user), db: Database = Depends(get_db)):
    u = db[USERS].find_one({"_id": maybe_oid(user.user_id)})
    if not u:
        raise NotFoundError("User not found")
    return {"success": True, "user": {"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email"), "role": u.get("role")}}


class ForgotPasswordBody(BaseModel):
    email: Optional[str] = None


class ResetPasswordBody(BaseModel):
    token: Optional[str] = None
    password: Optional[str] = None


@app.post("/auth/forgot-password")
def forgot_password(body: ForgotPasswordBody, db: Database = Depends(get_db)):
    request_password_reset(db, body.email, f"{settings.public_url}/reset-password")
    return {"success": True, "message": "If an account with that email exists, a password reset link has been sent."}


@app.get("/auth/verify-reset-token")
def check_reset_token(token: Optional[str] = None, db: Database = Depends(get_db)):
    return {"success": True, "valid": verify_reset_token(db, token)}


@app.post("/auth/reset-password")
def do_reset_password(body: ResetPasswordBody, db: Database = Depends(get_db)):
    reset_password(db, body.token, body.password)
    return {"success": True, "message": "Password has been reset successfully"}


# ------------------ Bookings ------------------

class CreateBookingBody(BaseModel):
    service: str
    amount: float = Field(0, ge=0)
    customerName: str
    customerEmail: Optional[EmailStr] = None
    customerPhone: Optional[str] = None
    address: Optional[str] = None
    location: Optional[GeoPoint] = None
    urgency: Urgency = "normal"
    notes: Optional[str] = None
    bookingDate: Optional[str] = None
    bookingTime: Optional[str] = None
    orderId: Optional[str] = None


class UpdateStatusBody(BaseModel):
    status: Optional[str] = None


class CancelBody(BaseModel):
    bookingId: Optional[str] = None
    orderId: Optional[str] = None
    reason: Optional[str] = None


class RescheduleBody(BaseModel):
    bookingId: Optional[str] = None
    orderId: Optional[str] = None
    newDate: Optional[str] = None
    newTime: Optional[str] = None


class RateBody(BaseModel):
    rating: Optional[int] = None
    feedback: Optional[str] = None


class PaymentStatusBody(BaseModel):
    paymentStatus: Optional[str] = None


class PaymentWebhookBody(BaseModel):
    bookingId: str
    status: str


@app.post("/bookings")
def create_booking(body: CreateBookingBody, user: TokenData = Depends(get_current_user), db: Database = Depends(get_db)):
    booking = bookings.create_booking(db, Booking(**body.model_dump()), user)
    return {"success": True, "message": "Booking created successfully", "booking": serialize(booking)}


@app.patch("/admin/bookings/{booking_id}/status")
@app.put("/admin/bookings/{booking_id}/status")
@app.patch("/bookings/{booking_id}/status")
@app.put("/bookings/{booking_id}/status")
def update_booking_status(
    booking_id: str,
    body: UpdateStatusBody,
    user: TokenData = Depends(admin_only),
    db: Database = Depends(get_db),
):
    result = bookings.update_status(db, booking_id, body.status, user)
    return {"success": True, "message": f"Booking status updated to {result['status']}", "booking": result}


@app.patch("/admin/bookings/{booking_id}/payment-status")
def update_payment_status(
    booking_id: str,
    body: PaymentStatusBody,
    user: TokenData = Depends(admin_only),
    db: Database = Depends(get_db),
):
    result = bookings.update_payment_status(db, booking_id, body.paymentStatus, user)
    return {"success": True, "message": f"Payment status updated to {result['paymentStatus']}", **result}


@app.post("/payments/webhook")
def payment_webhook(body: PaymentWebhookBody, request: Request, db: Database = Depends(get_db)):
    secret = settings.payment_webhook_secret
    if secret and not hmac.compare_digest(request.headers.get("X-Webhook-Secret", ""), secret):
        raise AuthError("Invalid webhook signature")
    result = bookings.update_payment_status(db, body.bookingId, body.status)
    return {"success": True, **result}


@app.post("/bookings/cancel")
def cancel_booking(body: CancelBody, user: TokenData = Depends(get_current_user), db: Database = Depends(get_db)):
    result = bookings.cancel(db, body.bookingId, body.orderId, body.reason, user)
    return {"success": True, "message": "Booking cancelled successfully", **result}


@app.post("/bookings/reschedule")
def reschedule_booking(body: RescheduleBody, user: TokenData = Depends(get_current_user), db: Database = Depends(get_db)):
    result = bookings.reschedule(db, body.bookingId, body.orderId, body.newDate, body.newTime, user)
    return {"success": True, "message": "Booking rescheduled successfully", **result}


@app.post("/bookings/{booking_id}/rate")
def rate_booking(booking_id: str, body: RateBody, user: TokenData = Depends(get_current_user), db: Database = Depends(get_db)):
    rating = bookings.rate(db, booking_id, body.rating, body.feedback, user)
    return {"success": True, "message": "Rating submitted successfully", "rating": rating}


class ReminderBody(BaseModel):
    bookingId: Optional[str] = None
    orderId: Optional[str] = None


@app.get("/user/bookings")
def my_bookings(
    status: Optional[str] = None,
    limit: int = Query(20),
    page: int = Query(1),
    user: TokenData = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    result = bookings.list_bookings(db, bookings.customer_filter(db, user), status, limit, page)
    return {"success": True, **result}


@app.get("/admin/bookings")
def all_bookings(
    status: Optional[str] = None,
    limit: int = Query(20),
    page: int = Query(1),
    admin: TokenData = Depends(admin_only),
    db: Database = Depends(get_db),
):
    return {"success": True, **bookings.list_bookings(db, None, status, limit, page)}


@app.get("/admin/bookings/recent")
def recent_bookings(limit: int = Query(5), admin: TokenData = Depends(admin_only), db: Database = Depends(get_db)):
    return {"success": True, "bookings": bookings.recent_bookings(db, limit)}


@app.get("/admin/bookings/{booking_id}")
def booking_detail(booking_id: str, admin: TokenData = Depends(admin_only), db: Database = Depends(get_db)):
    return {"success": True, "booking": serialize(bookings.get_booking(db, booking_id))}


@app.post("/bookings/send-reminder")
def send_booking_reminder(body: ReminderBody, user: TokenData = Depends(get_current_user), db: Database = Depends(get_db)):
    result = bookings.send_reminder(db, body.bookingId, body.orderId, user)
    return {"success": True, "message": "Booking reminder sent successfully", **result}


# ------------------ Admin: technicians & dispatch ------------------

class CreateTechnicianBody(BaseModel):
    name: str
    email: EmailStr
    phone: Optional[str] = None
    password: str
    specializations: list[str] = []
    location: Optional[GeoPoint] = None


class AssignBody(BaseModel):
    bookingId: Optional[str] = None
    technicianId: Optional[str] = None
    ttlMinutes: Optional[int] = None


class CreateOfferBody(BaseModel):
    bookingId: str
    technicianId: str
    ttlMinutes: Optional[int] = None
    distance: Optional[float] = None


@app.post("/admin/technicians")
def create_technician(body: CreateTechnicianBody, admin: TokenData = Depends(admin_only), db: Database = Depends(get_db)):
    email = body.email.lower()
    if db[USERS].find_one({"email": email}) or db[TECHNICIANS].find_one({"email": email}):
        raise ValidationError("Email already registered")
    user_id = create_document(
        db,
        USERS,
        User(name=body.name, email=email, phone=body.phone, role="technician", passwordHash=hash_password(body.password)),
    )
    technician_id = create_document(
        db,
        TECHNICIANS,
        Technician(
            name=body.name,
            email=email,
            phone=body.phone,
            userId=user_id,
            specializations=body.specializations,
            location=body.location,
        ),
    )
    logger.info("Technician %s created by admin %s", technician_id, admin.user_id)
    return {"success": True, "technician": {"id": technician_id, "userId": user_id, "name": body.name, "email": email}}


@app.get("/admin/technicians/available")
def available_technicians(
    bookingId: Optional[str] = None,
    service: Optional[str] = None,
    admin: TokenData = Depends(admin_only),
    db: Database = Depends(get_db),
):
    if bookingId:
        service = bookings.service_name(bookings.get_booking(db, bookingId))
    return {"success": True, "technicians": technicians.eligible_technicians(db, service)}


@app.post("/admin/technicians/assign")
def assign_technician(body: AssignBody, admin: TokenData = Depends(admin_only), db: Database = Depends(get_db)):
    result = job_offers.assign_booking(db, body.bookingId, body.technicianId, body.ttlMinutes)
    return {"success": True, "message": "Booking assigned to technician successfully", **result}


@app.post("/technicians/jobs/offers")
def create_job_offer(body: CreateOfferBody, admin: TokenData = Depends(admin_only), db: Database = Depends(get_db)):
    offer, created = job_offers.create_offer(db, body.bookingId, body.technicianId, body.ttlMinutes, body.distance)
    message = "Job offer created successfully" if created else "Existing job offer updated successfully"
    return {"success": True, "message": message, "jobOffer": offer}


# ------------------ Technician portal ------------------

class JobResponseBody(BaseModel):
    bookingId: Optional[str] = None
    response: Optional[str] = None
    reason: Optional[str] = None


class CompleteBody(BaseModel):
    notes: Optional[str] = None


class NotesBody(BaseModel):
    notes: str


@app.get("/technicians/jobs/offers")
def list_job_offers(user: TokenData = Depends(technician_only), db: Database = Depends(get_db)):
    technician = technicians.resolve_technician(db, user)
    return {"success": True, "jobOffers": job_offers.list_active_offers(db, str(technician["_id"]))}


@app.post("/technicians/jobs/response")
def respond_to_job(body: JobResponseBody, user: TokenData = Depends(technician_only), db: Database = Depends(get_db)):
    technician = technicians.resolve_technician(db, user)
    booking = job_offers.respond(db, body.bookingId, technician, body.response, body.reason)
    verb = "accepted" if body.response == "accept" else "rejected"
    return {"success": True, "message": f"Booking {verb} successfully", "booking": booking}


@app.post("/technicians/bookings/{booking_id}/start")
def start_booking(booking_id: str, user: TokenData = Depends(technician_only), db: Database = Depends(get_db)):
    technician = technicians.resolve_technician(db, user)
    booking = bookings.start(db, booking_id, technician)
    return {"success": True, "message": "Booking started successfully", "booking": booking}


@app.post("/technicians/bookings/{booking_id}/complete")
def complete_booking(
    booking_id: str,
    body: CompleteBody,
    user: TokenData = Depends(technician_only),
    db: Database = Depends(get_db),
):
    technician = technicians.resolve_technician(db, user)
    booking = bookings.complete(db, booking_id, technician, body.notes)
    return {"success": True, "message": "Booking completed successfully", "booking": booking}


@app.post("/technicians/bookings/{booking_id}/notes")
def add_booking_notes(
    booking_id: str,
    body: NotesBody,
    user: TokenData = Depends(technician_only),
    db: Database = Depends(get_db),
):
    technician = technicians.resolve_technician(db, user)
    note = bookings.add_notes(db, booking_id, technician, body.notes)
    return {"success": True, "message": "Notes added successfully", "note": note}


@app.get("/technicians/bookings")
def technician_bookings(
    status: Optional[str] = None,
    limit: int = Query(20),
    page: int = Query(1),
    user: TokenData = Depends(technician_only),
    db: Database = Depends(get_db),
):
    technician = technicians.resolve_technician(db, user)
    result = bookings.list_bookings(db, {"technicianId": str(technician["_id"])}, status, limit, page)
    return {"success": True, **result}


@app.post("/technicians/bookings/{booking_id}/cancel")
def technician_cancel_booking(
    booking_id: str,
    body: Optional[CompleteBody] = None,
    user: TokenData = Depends(technician_only),
    db: Database = Depends(get_db),
):
    technician = technicians.resolve_technician(db, user)
    booking = bookings.cancel_by_technician(db, booking_id, technician, body.notes if body else None)
    return {"success": True, "message": "Booking cancelled successfully", "booking": booking}


@app.get("/technicians/toggle-availability")
def get_availability(user: TokenData = Depends(technician_only), db: Database = Depends(get_db)):
    technician = technicians.resolve_technician(db, user)
    return {"success": True, "isAvailable": technician.get("isAvailable") is not False}


@app.post("/technicians/toggle-availability")
def toggle_availability(user: TokenData = Depends(technician_only), db: Database = Depends(get_db)):
    technician = technicians.resolve_technician(db, user)
    available = technicians.toggle_availability(db, technician)
    state = "available" if available else "unavailable"
    return {"success": True, "message": f"You are now {state} for new job offers", "isAvailable": available}


def _day_bounds(start: Optional[date], end: Optional[date]):
    if start and end:
        return datetime.combine(start, time.min), datetime.combine(end, time.max)
    return None, None


@app.get("/technicians/jobs/earnings")
def job_earnings(
    limit: int = Query(20),
    skip: int = Query(0),
    status: Optional[str] = None,
    startDate: Optional[date] = None,
    endDate: Optional[date] = None,
    user: TokenData = Depends(technician_only),
    db: Database = Depends(get_db),
):
    technician = technicians.resolve_technician(db, user)
    start, end = _day_bounds(startDate, endDate)
    history = earnings.job_history(db, str(technician["_id"]), limit, skip, status, start, end)
    return {"success": True, **history}


@app.get("/technicians/earnings")
def earnings_summary(user: TokenData = Depends(technician_only), db: Database = Depends(get_db)):
    technician = technicians.resolve_technician(db, user)
    return {"success": True, **earnings.earnings_overview(db, str(technician["_id"]))}


# ------------------ Admin: reports & settings ------------------

class CommissionBody(BaseModel):
    commissionRate: Optional[float] = None


@app.get("/admin/reports")
def admin_reports(
    startDate: Optional[date] = None,
    endDate: Optional[date] = None,
    admin: TokenData = Depends(admin_only),
    db: Database = Depends(get_db),
):
    return {"success": True, "reportData": earnings.admin_report(db, startDate, endDate)}


@app.get("/admin/settings/commission")
def get_commission(db: Database = Depends(get_db)):
    return {"success": True, **commission.get_commission_setting(db)}


@app.post("/admin/settings/commission")
def set_commission(body: CommissionBody, admin: TokenData = Depends(admin_only), db: Database = Depends(get_db)):
    result = commission.set_commission_rate(db, body.commissionRate, admin.user_id)
    return {"success": True, "message": "Commission rate updated successfully", **result}


@app.get("/admin/settings/commission/history")
def get_commission_history(admin: TokenData = Depends(admin_only), db: Database = Depends(get_db)):
    return {"success": True, "history": commission.commission_history(db)}


# ------------------ Notifications ------------------

def _recipient_id(user: TokenData, db: Database) -> str:
    if user.role == "technician":
        return str(technicians.resolve_technician(db, user)["_id"])
    return user.user_id


@app.get("/notifications")
def list_notifications(
    limit: int = Query(10, ge=1, le=100),
    page: int = Query(1, ge=1),
    unreadOnly: bool = False,
    user: TokenData = Depends(get_current_user),
    db: Database = Depends(get_db),
):
    result = notifications.list_notifications(db, _recipient_id(user, db), limit, page, unreadOnly)
    return {"success": True, **result}


@app.patch("/notifications/{notification_id}/read")
def read_notification(notification_id: str, user: TokenData = Depends(get_current_user), db: Database = Depends(get_db)):
    notifications.mark_as_read(db, notification_id, _recipient_id(user, db))
    return {"success": True, "message": "Notification marked as read"}


@app.delete("/notifications/{notification_id}")
def delete_notification(notification_id: str, user: TokenData = Depends(get_current_user), db: Database = Depends(get_db)):
    notifications.delete_notification(db, notification_id, _recipient_id(user, db))
    return {"success": True, "message": "Notification deleted"}


@app.get("/admin/notifications")
def admin_notifications(
    limit: int = Query(20, ge=1, le=100),
    unreadOnly: bool = False,
    admin: TokenData = Depends(admin_only),
    db: Database = Depends(get_db),
):
    return {"success": True, "notifications": notifications.list_admin_notifications(db, limit, unreadOnly)}


@app.patch("/admin/notifications/{notification_id}/read")
def read_admin_notification(notification_id: str, admin: TokenData = Depends(admin_only), db: Database = Depends(get_db)):
    notifications.mark_admin_notification_read(db, notification_id)
    return {"success": True, "message": "Notification marked as read"}


# ------------------ Diagnostics ------------------
@app.get("/")
def read_root():
    return {"message": "FixNow Repair API is running"}


@app.get("/test")
def test_database():
    from database import db

    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["database_url"] = "✅ Set" if settings.database.url else "❌ Not Set"
            response["database_name"] = settings.database.name
            collections = db.list_collection_names()
            response["collections"] = collections[:20]
            response["connection_status"] = "Connected"
    except PyMongoError as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
