"""Shared test fixtures and helpers."""

import os

os.environ["DATABASE_URL"] = ""
os.environ["DATABASE_NAME"] = ""
os.environ["JWT_SECRET"] = "test-secret-with-at-least-32-bytes"
os.environ["ENVIRONMENT"] = "test"
os.environ["PAYMENT_WEBHOOK_SECRET"] = ""

from datetime import datetime
from typing import Optional

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import TokenData, create_access_token
from database import create_document, get_db, maybe_oid
from main import app
from schemas import BOOKINGS, TECHNICIANS, USERS


@pytest.fixture
def db():
    return mongomock.MongoClient()["fixnow_test"]


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_user(db, name: str = "Jane Customer", email: str = "jane@example.com", role: str = "user", **extra) -> dict:
    user_id = create_document(
        db, USERS, {"name": name, "email": email, "role": role, "passwordHash": "unused", **extra}
    )
    return db[USERS].find_one({"_id": maybe_oid(user_id)})


def make_technician(
    db,
    name: str = "Tom Tech",
    email: str = "tom@example.com",
    specializations: Optional[list[str]] = None,
    status: str = "active",
    **extra,
) -> dict:
    """Helper to insert a technician profile with sensible defaults."""
    tech_id = create_document(
        db,
        TECHNICIANS,
        {
            "name": name,
            "email": email,
            "phone": "0400000000",
            "specializations": ["AC"] if specializations is None else specializations,
            "status": status,
            "rating": 0,
            "totalRatings": 0,
            "completedBookings": 0,
            **extra,
        },
    )
    return db[TECHNICIANS].find_one({"_id": maybe_oid(tech_id)})


def make_booking(db, created_at: Optional[datetime] = None, **fields) -> dict:
    """Helper to insert a booking; any field can be overridden."""
    data = {
        "bookingId": fields.pop("bookingId", "BK-TEST0001"),
        "service": "AC Repair",
        "amount": 1000,
        "status": "pending",
        "paymentStatus": "pending",
        "customerName": "Jane Customer",
        "customerEmail": "jane@example.com",
        "customerPhone": "0411111111",
        "address": "12 Main St",
        "urgency": "normal",
    }
    data.update(fields)
    if created_at is not None:
        data["createdAt"] = created_at
    booking_id = create_document(db, BOOKINGS, data)
    return db[BOOKINGS].find_one({"_id": maybe_oid(booking_id)})


def actor(user_id, role: str = "user", email: Optional[str] = None) -> TokenData:
    return TokenData(user_id=str(user_id), role=role, email=email)


def auth_header(user_id, role: str = "user", email: Optional[str] = None) -> dict:
    token = create_access_token({"userId": str(user_id), "email": email, "role": role})
    return {"Authorization": f"Bearer {token}"}
