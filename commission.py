"""
Commission calculator and the global commission-rate setting.

The platform keeps a single current rate in ``settings{key: "commission"}``.
It is read fresh on every earnings computation, so a rate change also
changes the reported split of past bookings. Rate changes are logged to
``adminActivity``.
"""
import logging
import math
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from config import settings
from database import now_utc
from errors import ValidationError
from schemas import ADMIN_ACTIVITY, SETTINGS

logger = logging.getLogger(__name__)

COMMISSION_KEY = "commission"


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def compute_commission(amount: float, rate: float) -> int:
    return round_half_up(amount * rate / 100)


def split_amount(amount: Optional[float], rate: float) -> Dict[str, Any]:
    """Break a booking amount into platform commission and technician earnings."""
    total = amount or 0
    commission = compute_commission(total, rate)
    return {
        "total": total,
        "adminCommission": commission,
        "technicianEarnings": total - commission,
        "adminCommissionPercentage": rate,
    }


def get_commission_rate(db: Database) -> float:
    doc = db[SETTINGS].find_one({"key": COMMISSION_KEY})
    value = doc.get("value") if doc else None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 100:
        return settings.dispatch.default_commission_rate
    return value


def get_commission_setting(db: Database) -> Dict[str, Any]:
    doc = db[SETTINGS].find_one({"key": COMMISSION_KEY}) or {}
    return {
        "commissionRate": get_commission_rate(db),
        "lastUpdated": doc.get("updatedAt"),
    }


def set_commission_rate(db: Database, rate: Any, admin_id: Optional[str]) -> Dict[str, Any]:
    if isinstance(rate, bool) or not isinstance(rate, (int, float)) or not 0 <= rate <= 100:
        raise ValidationError("Invalid commission rate. Must be a number between 0 and 100.")

    old_rate = get_commission_rate(db)
    now = now_utc()
    db[SETTINGS].update_one(
        {"key": COMMISSION_KEY},
        {"$set": {"value": rate, "updatedAt": now, "updatedBy": admin_id or "admin"}},
        upsert=True,
    )
    db[ADMIN_ACTIVITY].insert_one(
        {
            "action": "update_commission_rate",
            "adminId": admin_id,
            "details": {"oldRate": old_rate, "newRate": rate},
            "createdAt": now,
        }
    )
    logger.info("Commission rate changed from %s%% to %s%% by %s", old_rate, rate, admin_id)
    return {"commissionRate": rate, "updatedAt": now}


def commission_history(db: Database, limit: int = 20) -> List[Dict[str, Any]]:
    entries = (
        db[ADMIN_ACTIVITY]
        .find({"action": "update_commission_rate"})
        .sort("createdAt", -1)
        .limit(limit)
    )
    return [
        {
            "oldRate": (entry.get("details") or {}).get("oldRate"),
            "newRate": (entry.get("details") or {}).get("newRate"),
            "updatedAt": entry.get("createdAt"),
            "adminId": entry.get("adminId"),
        }
        for entry in entries
    ]
