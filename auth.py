import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import jwt
from fastapi import Request
from passlib.context import CryptContext
from pydantic import BaseModel
from pymongo.database import Database

from config import settings
from database import now_utc
from errors import AuthError, ForbiddenError, ValidationError
from notifications import queue_email
from schemas import USERS

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

RESET_TOKEN_TTL = timedelta(hours=1)
MIN_PASSWORD_LENGTH = 8


class TokenData(BaseModel):
    user_id: str
    email: Optional[str] = None
    role: str


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.auth.access_token_expire_minutes)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.auth.jwt_secret, algorithm=settings.auth.jwt_alg)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.auth.jwt_secret, algorithms=[settings.auth.jwt_alg])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")


def get_token_from_request(request: Request) -> str:
    """Bearer header first, then the ``token`` cookie set by the web client."""
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        return auth.split(" ", 1)[1]
    token = request.cookies.get("token")
    if token:
        return token
    raise AuthError("Authentication required")


def verify_token(token: str) -> TokenData:
    payload = decode_token(token)
    if not payload.get("userId") or not payload.get("role"):
        raise AuthError("Invalid token")
    return TokenData(user_id=payload["userId"], email=payload.get("email"), role=payload["role"])


def get_current_user(request: Request) -> TokenData:
    return verify_token(get_token_from_request(request))


def require_role(*roles: str) -> Callable[[Request], TokenData]:
    """Dependency factory: authenticate, then check the caller's role."""

    def dependency(request: Request) -> TokenData:
        user = get_current_user(request)
        if user.role not in roles:
            logger.warning("Role %s denied, expected one of %s", user.role, roles)
            raise ForbiddenError("Unauthorized access")
        return user

    return dependency


# ------------------ Password reset ------------------

def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def request_password_reset(db: Database, email: Optional[str], reset_url: str) -> Optional[str]:
    """Store a one-hour reset token and queue the e-mail carrying it.

    Unknown addresses are not reported to the caller. Returns the raw token
    when one was issued; only its digest is stored.
    """
    email = (email or "").strip().lower()
    if not email:
        raise ValidationError("Email is required")
    user = db[USERS].find_one({"email": email})
    if not user:
        logger.info("Password reset requested for unknown address")
        return None

    token = secrets.token_hex(32)
    db[USERS].update_one(
        {"_id": user["_id"]},
        {"$set": {"resetToken": _token_digest(token), "resetTokenExpiry": now_utc() + RESET_TOKEN_TTL}},
    )
    queue_email(
        db, email, "password_reset", {"name": user.get("name"), "resetUrl": f"{reset_url.rstrip('/')}/{token}"}
    )
    return token


def _reset_holder(db: Database, token: Optional[str]) -> Dict[str, Any]:
    user = None
    if token:
        user = db[USERS].find_one({"resetToken": _token_digest(token), "resetTokenExpiry": {"$gt": now_utc()}})
    if not user:
        raise ValidationError("Invalid or expired reset token")
    return user


def verify_reset_token(db: Database, token: Optional[str]) -> bool:
    _reset_holder(db, token)
    return True


def reset_password(db: Database, token: Optional[str], password: Optional[str]) -> None:
    if not token or not password:
        raise ValidationError("Token and password are required")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    user = _reset_holder(db, token)
    db[USERS].update_one(
        {"_id": user["_id"], "resetToken": user["resetToken"]},
        {
            "$set": {"passwordHash": hash_password(password), "updatedAt": now_utc()},
            "$unset": {"resetToken": "", "resetTokenExpiry": ""},
        },
    )
    logger.info("Password reset for user %s", user["_id"])
