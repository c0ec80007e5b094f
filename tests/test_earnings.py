"""Tests for technician earnings and the admin report."""

from datetime import date, datetime

import pytest

from commission import set_commission_rate
from earnings import admin_report, created_between, earnings_overview, job_history, parse_datetime
from errors import ValidationError
from schemas import BOOKINGS, PAYOUTS
from tests.conftest import make_booking, make_technician


@pytest.fixture
def worked(db):
    """A technician with three completed 1000 jobs, the oldest one paid out."""
    tech = make_technician(db)
    tech_id = str(tech["_id"])
    jobs = [
        make_booking(
            db,
            bookingId=f"BK-JOB{day}",
            status="completed",
            technicianId=tech_id,
            created_at=datetime(2024, 1, day, 9, 0),
            completedAt=datetime(2024, 1, day, 12, 0),
        )
        for day in (5, 10, 15)
    ]
    db[PAYOUTS].insert_one(
        {
            "technicianId": tech_id,
            "amount": 700,
            "bookingIds": [str(jobs[0]["_id"])],
            "createdAt": datetime(2024, 1, 20),
        }
    )
    return tech_id, jobs


class TestJobHistory:
    def test_summary_splits_paid_and_pending(self, db, worked):
        tech_id, _ = worked
        result = job_history(db, tech_id)

        summary = result["summary"]
        assert summary["totalEarnings"] == 2100
        assert summary["paidEarnings"] == 700
        assert summary["pendingEarnings"] == 1400
        assert summary["lastPayoutAmount"] == 700
        assert summary["lastPayoutDate"] == datetime(2024, 1, 20)

    def test_rows_newest_first_with_payout_state(self, db, worked):
        tech_id, jobs = worked
        rows = job_history(db, tech_id)["jobHistory"]

        assert [r["bookingId"] for r in rows] == ["BK-JOB15", "BK-JOB10", "BK-JOB5"]
        assert rows[-1]["earnings"]["paymentStatus"] == "paid"
        assert rows[0]["earnings"]["paymentStatus"] == "pending"
        assert rows[0]["earnings"]["technicianEarnings"] == 700

    def test_pagination_keeps_full_summary(self, db, worked):
        tech_id, _ = worked
        result = job_history(db, tech_id, limit=2)

        assert len(result["jobHistory"]) == 2
        assert result["pagination"] == {"total": 3, "limit": 2, "skip": 0, "hasMore": True}
        assert result["summary"]["totalEarnings"] == 2100

        last_page = job_history(db, tech_id, limit=2, skip=2)
        assert len(last_page["jobHistory"]) == 1
        assert last_page["pagination"]["hasMore"] is False

    def test_date_range(self, db, worked):
        tech_id, _ = worked
        result = job_history(db, tech_id, start_date=datetime(2024, 1, 8), end_date=datetime(2024, 1, 31))
        assert result["pagination"]["total"] == 2

    def test_legacy_status_and_string_dates(self, db, worked):
        tech_id, _ = worked
        legacy = {"technicianId": tech_id, "amount": 500}
        db[BOOKINGS].insert_many(
            [
                {**legacy, "bookingId": "BK-OLD1", "bookingStatus": "in-progress", "createdAt": "2024-01-12T08:30:00.000Z"},
                {**legacy, "bookingId": "BK-OLD2", "status": "in-progress", "createdAt": datetime(2024, 1, 13)},
                {**legacy, "bookingId": "BK-OLD3", "bookingStatus": "in-progress", "createdAt": "2024-02-20T08:30:00Z"},
                {**legacy, "bookingId": "BK-OLD4", "bookingStatus": "in-progress", "createdAt": "2024-01-07T20:00:00Z"},
                {
                    **legacy,
                    "bookingId": "BK-OLD5",
                    "status": "completed",
                    "bookingStatus": "in-progress",
                    "createdAt": datetime(2024, 1, 14),
                },
            ]
        )

        result = job_history(
            db, tech_id, status="in_progress", start_date=datetime(2024, 1, 8), end_date=datetime(2024, 1, 31, 23, 59)
        )

        assert [r["bookingId"] for r in result["jobHistory"]] == ["BK-OLD2", "BK-OLD1"]
        assert result["jobHistory"][1]["status"] == "in_progress"
        assert result["summary"]["totalEarnings"] == 700

    def test_string_dates_sort_with_stored_dates(self, db, worked):
        tech_id, _ = worked
        db[BOOKINGS].insert_one(
            {"bookingId": "BK-STR", "technicianId": tech_id, "status": "completed", "createdAt": "2024-01-12T00:00:00Z"}
        )
        rows = job_history(db, tech_id)["jobHistory"]
        assert [r["bookingId"] for r in rows] == ["BK-JOB15", "BK-STR", "BK-JOB10", "BK-JOB5"]

    def test_uses_current_commission_rate(self, db, worked):
        tech_id, _ = worked
        set_commission_rate(db, 20, "admin-1")
        assert job_history(db, tech_id)["summary"]["totalEarnings"] == 2400

    @pytest.mark.parametrize("limit,skip", [(0, 0), (101, 0), (10, -1)])
    def test_rejects_bad_paging(self, db, limit, skip):
        with pytest.raises(ValidationError):
            job_history(db, "tech-1", limit=limit, skip=skip)

    def test_rejects_inverted_range(self, db):
        with pytest.raises(ValidationError, match="before endDate"):
            job_history(db, "tech-1", start_date=datetime(2024, 2, 1), end_date=datetime(2024, 1, 1))


class TestEarningsOverview:
    def test_transactions_and_totals(self, db, worked):
        tech_id, jobs = worked
        make_booking(db, bookingId="BK-OPEN", status="in_progress", technicianId=tech_id)

        result = earnings_overview(db, tech_id)

        assert len(result["transactions"]) == 3
        paid = [t for t in result["transactions"] if t["status"] == "paid"]
        assert [t["bookingId"] for t in paid] == ["BK-JOB5"]
        assert paid[0]["transactionId"]
        assert result["summary"]["pendingEarnings"] == 1400
        assert result["summary"]["totalEarnings"] == 2100


class TestAdminReport:
    @pytest.fixture
    def history(self, db):
        make_booking(db, bookingId="BK-1", created_at=datetime(2023, 12, 15), amount=500, status="completed", userId="u1")
        make_booking(db, bookingId="BK-2", created_at=datetime(2024, 1, 10), amount=300, service="Fridge Repair")
        make_booking(db, bookingId="BK-3", created_at=datetime(2024, 1, 20), amount=200, status="in_progress", userId="u1")
        make_booking(
            db,
            bookingId="BK-4",
            created_at="2024-02-01T09:00:00Z",
            amount=100,
            status="cancelled",
            customerEmail="other@example.com",
        )
        make_booking(db, bookingId="BK-5", created_at=datetime(2024, 3, 5), amount=999)

    def test_totals_in_range(self, db, history):
        report = admin_report(db, date(2023, 12, 1), date(2024, 2, 29))

        assert report["totalBookings"] == 4
        assert report["totalRevenue"] == 1100
        assert report["totalCustomers"] == 3

    def test_status_buckets(self, db, history):
        report = admin_report(db, date(2023, 12, 1), date(2024, 2, 29))
        assert report["bookingsByStatus"] == {
            "pending": 1,
            "confirmed": 0,
            "completed": 1,
            "cancelled": 1,
            "in_progress": 1,
        }

    def test_service_and_month_breakdown(self, db, history):
        report = admin_report(db, date(2023, 12, 1), date(2024, 2, 29))

        assert report["revenueByService"] == {"AC Repair": 800, "Fridge Repair": 300}
        assert list(report["bookingsByMonth"]) == ["Dec 2023", "Jan 2024", "Feb 2024"]
        assert report["bookingsByMonth"]["Jan 2024"] == 2
        assert report["revenueByMonth"]["Jan 2024"] == 500

    def test_end_date_covers_whole_day(self, db, history):
        report = admin_report(db, date(2024, 2, 1), date(2024, 2, 1))
        assert report["totalBookings"] == 1

    def test_range_narrows_the_query(self, db, history):
        start, end = datetime(2024, 1, 1), datetime(2024, 1, 31, 23, 59, 59)

        fetched = {b["bookingId"] for b in db[BOOKINGS].find(created_between(start, end))}

        # string dates are fetched a day either side and trimmed after parsing
        assert fetched == {"BK-2", "BK-3", "BK-4"}
        assert admin_report(db, date(2024, 1, 1), date(2024, 1, 31))["totalBookings"] == 2

    def test_without_range_counts_everything(self, db, history):
        assert admin_report(db)["totalBookings"] == 5

    def test_empty_range(self, db):
        report = admin_report(db, date(2024, 1, 1), date(2024, 1, 31))
        assert report["totalBookings"] == 0
        assert report["bookingsByStatus"]["pending"] == 0
        assert report["bookingsByMonth"] == {}


class TestParseDatetime:
    def test_zulu_string(self):
        assert parse_datetime("2024-02-01T09:00:00Z") == datetime(2024, 2, 1, 9, 0)

    def test_offset_string_converted_to_utc(self):
        assert parse_datetime("2024-02-01T09:00:00+02:00") == datetime(2024, 2, 1, 7, 0)

    def test_garbage(self):
        assert parse_datetime("yesterday") is None
        assert parse_datetime(None) is None
