"""
Technician earnings and admin reports, derived on every read.

There is no stored ledger: figures come from ``bookings`` and ``payouts``
combined with the commission rate current at the time of the request.
"""
import logging
from collections import OrderedDict
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional

from pymongo.database import Database

from bookings import booking_status, normalize_status, service_name, status_filter
from commission import get_commission_rate, split_amount
from database import doc_id
from errors import ValidationError
from schemas import BOOKINGS, PAYOUTS

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
REPORT_STATUSES = ("pending", "confirmed", "completed", "cancelled")
MONTH_FORMAT = "%b %Y"


def parse_datetime(value: Any) -> Optional[datetime]:
    """Accept stored datetimes and ISO strings (older documents used strings)."""
    if isinstance(value, datetime):
        return value if value.tzinfo is None else _to_naive_utc(value)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo is None else _to_naive_utc(parsed)
    return None


def _to_naive_utc(value: datetime) -> datetime:
    return (value - value.utcoffset()).replace(tzinfo=None)


def created_between(start: Optional[datetime], end: Optional[datetime]) -> Dict[str, Any]:
    """Prefilter for ``createdAt`` stored as a datetime or as an ISO string.

    String bounds are whole days widened by one on each side to cover UTC
    offsets, so string rows still have to be checked with ``in_range``.
    """
    stamped: Dict[str, Any] = {}
    text: Dict[str, Any] = {}
    if start:
        stamped["$gte"] = start
        text["$gte"] = (start - timedelta(days=1)).strftime("%Y-%m-%d")
    if end:
        stamped["$lte"] = end
        text["$lt"] = (end + timedelta(days=2)).strftime("%Y-%m-%d")
    return {"$or": [{"createdAt": stamped}, {"createdAt": text}]}


def in_range(created: Optional[datetime], start: Optional[datetime], end: Optional[datetime]) -> bool:
    if created is None:
        return not (start or end)
    return (start is None or created >= start) and (end is None or created <= end)


def _payout_index(payouts: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    index: Dict[str, Dict[str, Any]] = {}
    for payout in payouts:
        for booking_id in payout.get("bookingIds") or []:
            index.setdefault(str(booking_id), payout)
    return index


def _last_payout(payouts: List[Dict[str, Any]]) -> Dict[str, Any]:
    dated = [p for p in payouts if parse_datetime(p.get("createdAt"))]
    if not dated:
        return {"lastPayoutDate": None, "lastPayoutAmount": 0}
    latest = max(dated, key=lambda p: parse_datetime(p["createdAt"]))
    return {"lastPayoutDate": latest["createdAt"], "lastPayoutAmount": latest.get("amount") or 0}


def _job_row(booking: Dict[str, Any], rate: float, payout: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    earnings = split_amount(booking.get("amount"), rate)
    earnings.update(
        paymentStatus="paid" if payout else "pending",
        payoutDate=payout.get("createdAt") if payout else None,
        transactionId=doc_id(payout) if payout else None,
    )
    return {
        "id": doc_id(booking),
        "bookingId": booking.get("bookingId") or doc_id(booking),
        "appliance": booking.get("service") or booking.get("serviceName") or "Appliance Repair",
        "location": {
            "address": booking.get("address") or booking.get("customerAddress") or "Customer Address",
        },
        "earnings": earnings,
        "customer": {"name": booking.get("customerName") or "Customer", "phone": booking.get("customerPhone")},
        "description": booking.get("notes") or booking.get("serviceDetails") or "No description provided",
        "urgency": booking.get("urgency") or "normal",
        "status": booking_status(booking),
        "createdAt": booking.get("createdAt"),
        "completedAt": booking.get("completedAt"),
    }


def job_history(
    db: Database,
    technician_id: str,
    limit: int = 20,
    skip: int = 0,
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Paginated job list with per-job earnings; the summary covers every matching job."""
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    if skip < 0:
        raise ValidationError("skip must be >= 0")
    if start_date and end_date and start_date > end_date:
        raise ValidationError("startDate must be before endDate")

    clauses: List[Dict[str, Any]] = [{"technicianId": str(technician_id)}]
    if status:
        clauses.append(status_filter(normalize_status(status)))
    ranged = bool(start_date or end_date)
    if ranged:
        clauses.append(created_between(start_date, end_date))

    rate = get_commission_rate(db)
    payouts = list(db[PAYOUTS].find({"technicianId": str(technician_id)}))
    paid = _payout_index(payouts)

    matches = []
    for booking in db[BOOKINGS].find({"$and": clauses}):
        created = parse_datetime(booking.get("createdAt"))
        if ranged and not in_range(created, start_date, end_date):
            continue
        matches.append((booking, created))
    # Mixed datetime/string createdAt values only order correctly once parsed.
    matches.sort(key=lambda item: item[1] or datetime.min, reverse=True)

    rows = [_job_row(b, rate, paid.get(doc_id(b))) for b, _ in matches[skip:skip + limit]]

    total_earnings = pending_earnings = 0
    total = len(matches)
    for booking, _ in matches:
        share = split_amount(booking.get("amount"), rate)["technicianEarnings"]
        total_earnings += share
        if doc_id(booking) not in paid:
            pending_earnings += share

    summary = {
        "totalEarnings": total_earnings,
        "pendingEarnings": pending_earnings,
        "paidEarnings": total_earnings - pending_earnings,
    }
    summary.update(_last_payout(payouts))
    return {
        "summary": summary,
        "jobHistory": rows,
        "pagination": {"total": total, "limit": limit, "skip": skip, "hasMore": total > skip + limit},
    }


def earnings_overview(db: Database, technician_id: str) -> Dict[str, Any]:
    """Completed jobs as payout transactions, split into paid and pending."""
    rate = get_commission_rate(db)
    payouts = list(db[PAYOUTS].find({"technicianId": str(technician_id)}))
    paid = _payout_index(payouts)
    completed = db[BOOKINGS].find(
        {"$and": [{"technicianId": str(technician_id)}, status_filter("completed")]}
    ).sort("completedAt", -1)

    transactions = []
    paid_total = pending_total = 0
    for booking in completed:
        amount = split_amount(booking.get("amount"), rate)["technicianEarnings"]
        payout = paid.get(doc_id(booking))
        transaction = {
            "_id": doc_id(booking),
            "bookingId": booking.get("bookingId") or booking.get("id") or doc_id(booking),
            "serviceType": service_name(booking),
            "customerName": booking.get("customerName"),
            "amount": amount,
            "status": "paid" if payout else "pending",
            "serviceDate": booking.get("completedAt") or booking.get("bookingDate") or booking.get("createdAt"),
            "location": {"address": booking.get("address")},
        }
        if payout:
            paid_total += amount
            transaction["payoutDate"] = payout.get("createdAt")
            transaction["transactionId"] = doc_id(payout)
        else:
            pending_total += amount
        transactions.append(transaction)

    summary = {
        "totalEarnings": paid_total + pending_total,
        "pendingEarnings": pending_total,
        "paidEarnings": paid_total,
    }
    summary.update(_last_payout(payouts))
    return {"summary": summary, "transactions": transactions}


def customer_key(booking: Dict[str, Any]) -> Optional[str]:
    for value in (
        booking.get("userId"),
        booking.get("customerEmail") or booking.get("email"),
        booking.get("customerPhone") or booking.get("phone"),
    ):
        if value:
            return str(value)
    return None


def _month_key(label: str) -> datetime:
    return datetime.strptime(label, MONTH_FORMAT)


def admin_report(db: Database, start_date: Optional[date] = None, end_date: Optional[date] = None) -> Dict[str, Any]:
    """Totals and breakdowns for bookings created in ``[start_date, end_date]`` (whole days)."""
    start = datetime.combine(start_date, time.min) if start_date else None
    end = datetime.combine(end_date, time.max) if end_date else None
    if start and end and start > end:
        raise ValidationError("startDate must be before endDate")

    ranged = bool(start or end)
    query = created_between(start, end) if ranged else {}
    bookings = []
    for booking in db[BOOKINGS].find(query):
        created = parse_datetime(booking.get("createdAt"))
        if ranged and not in_range(created, start, end):
            continue
        bookings.append((booking, created))

    customers = set()
    by_status: Dict[str, int] = {status: 0 for status in REPORT_STATUSES}
    revenue_by_service: Dict[str, float] = {}
    bookings_by_month: Dict[str, int] = {}
    revenue_by_month: Dict[str, float] = {}
    total_revenue = 0

    for booking, created in bookings:
        amount = booking.get("amount") or 0
        total_revenue += amount
        key = customer_key(booking)
        if key:
            customers.add(key)
        status = booking_status(booking)
        by_status[status] = by_status.get(status, 0) + 1
        service = booking.get("service") or booking.get("serviceName") or "Other"
        revenue_by_service[service] = revenue_by_service.get(service, 0) + amount
        if created is not None:
            month = created.strftime(MONTH_FORMAT)
            bookings_by_month[month] = bookings_by_month.get(month, 0) + 1
            revenue_by_month[month] = revenue_by_month.get(month, 0) + amount

    months = sorted(bookings_by_month, key=_month_key)
    logger.info("Report generated for %d bookings", len(bookings))
    return {
        "totalBookings": len(bookings),
        "totalRevenue": total_revenue,
        "totalCustomers": len(customers),
        "bookingsByStatus": by_status,
        "revenueByService": revenue_by_service,
        "bookingsByMonth": OrderedDict((m, bookings_by_month[m]) for m in months),
        "revenueByMonth": OrderedDict((m, revenue_by_month[m]) for m in months),
    }
