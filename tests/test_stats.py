from datetime import datetime, timedelta
from decimal import Decimal

from conftest import make_affiliate, make_lead
from models.affiliates import AffiliateClick, AffiliateConversion
from models.quiz import STATUS_IN_PROGRESS
from utils.leads import count_leads
from utils.stats import build_series, performance_overview, range_totals
from utils.windows import EPOCH, ONE_US, bucket_windows, span_of

NOW = datetime(2026, 6, 15, 18, 30)


def _click(db, affiliate, ts, source=None, ua="ua"):
    db.add(AffiliateClick(
        affiliate_id=affiliate.id,
        referral_code=affiliate.referral_code,
        user_agent=ua,
        utm_source=source,
        created_at=ts,
    ))
    db.commit()


def _conversion(db, affiliate, ts, kind="booking", commission="0"):
    db.add(AffiliateConversion(
        affiliate_id=affiliate.id,
        referral_code=affiliate.referral_code,
        conversion_type=kind,
        commission_amount=Decimal(commission),
        created_at=ts,
    ))
    db.commit()


def test_count_leads_window_is_inclusive(db):
    make_affiliate(db, code="abc")
    start = datetime(2026, 6, 1)
    end = datetime(2026, 6, 1, 23, 59, 59, 999999)
    make_lead(db, "abc", start)
    make_lead(db, "abc", end)
    make_lead(db, "abc", end + ONE_US)
    make_lead(db, "abc", None, created_at=datetime(2026, 6, 1, 12), status=STATUS_IN_PROGRESS)
    assert count_leads(db, start, end, referral_code="abc").total_leads == 2


def test_count_leads_falls_back_to_created_at(db):
    affiliate = make_affiliate(db, code="abc")
    make_lead(db, "abc", None, created_at=datetime(2026, 6, 1, 12))
    assert count_leads(db, datetime(2026, 6, 1), datetime(2026, 6, 2), affiliate=affiliate).total_leads == 1


def test_count_leads_without_affiliate_includes_organic(db):
    make_affiliate(db, code="abc")
    make_lead(db, "abc", datetime(2026, 6, 1, 9))
    make_lead(db, None, datetime(2026, 6, 1, 10))
    assert count_leads(db, datetime(2026, 6, 1), datetime(2026, 6, 2)).total_leads == 2


def test_daily_buckets_partition_leads(db):
    affiliate = make_affiliate(db, code="abc")
    # Leads on bucket boundaries, inside buckets, and outside the span
    make_lead(db, "abc", datetime(2026, 6, 10, 0, 0))
    make_lead(db, "abc", datetime(2026, 6, 10, 23, 59, 59, 999999))
    make_lead(db, "abc", datetime(2026, 6, 11, 0, 0))
    make_lead(db, "abc", datetime(2026, 6, 15, 18, 29))
    make_lead(db, "abc", datetime(2026, 6, 15, 18, 31))  # after now
    make_lead(db, "abc", datetime(2026, 5, 1))  # before 7d span
    make_lead(db, "other", datetime(2026, 6, 12))

    series = build_series(db, affiliate, "7d", now=NOW)
    span = span_of(bucket_windows("7d", NOW))
    total = count_leads(db, span.start, span.end, affiliate=affiliate).total_leads

    assert len(series) == 7
    assert sum(b.leads for b in series) == total == 4
    by_label = {b.label: b.leads for b in series}
    assert by_label["2026-06-10"] == 2
    assert by_label["2026-06-11"] == 1
    assert by_label["2026-06-15"] == 1


def test_hourly_buckets_partition_leads_and_clicks(db):
    affiliate = make_affiliate(db, code="abc")
    for minutes in (5, 65, 125, 600, 1300):
        ts = NOW - timedelta(minutes=minutes)
        make_lead(db, "abc", ts)
        _click(db, affiliate, ts, ua=f"ua-{minutes}")

    series = build_series(db, affiliate, "24h", now=NOW)
    span = span_of(bucket_windows("24h", NOW))
    assert len(series) == 24
    assert series[-1].end == NOW
    assert sum(b.leads for b in series) == count_leads(db, span.start, span.end, affiliate=affiliate).total_leads == 5
    assert sum(b.clicks for b in series) == 5


def test_series_bookings_and_commission(db):
    affiliate = make_affiliate(db, code="abc")
    _conversion(db, affiliate, datetime(2026, 6, 14, 10), kind="booking")
    _conversion(db, affiliate, datetime(2026, 6, 14, 11), kind="booking")
    _conversion(db, affiliate, datetime(2026, 6, 14, 15), kind="sale", commission="200.00")

    series = build_series(db, affiliate, "7d", now=NOW)
    day = next(b for b in series if b.label == "2026-06-14")
    assert day.booked_calls == 2
    assert day.commission == 200.0
    assert day.to_dict()["bookedCalls"] == 2


def test_range_totals(db):
    affiliate = make_affiliate(db, code="abc")
    _click(db, affiliate, datetime(2026, 6, 14, 9), source="instagram", ua="a")
    _click(db, affiliate, datetime(2026, 6, 14, 9), source="instagram", ua="b")
    _click(db, affiliate, datetime(2026, 6, 13, 9), ua="c")
    _click(db, affiliate, datetime(2026, 4, 1), ua="d")  # outside 30d
    make_lead(db, "abc", datetime(2026, 6, 14, 9, 30))
    _conversion(db, affiliate, datetime(2026, 6, 14, 10), kind="booking")

    totals = range_totals(db, affiliate, "30d", now=NOW)
    assert totals["dateRange"] == "30d"
    assert totals["totalClicks"] == 3
    assert totals["totalLeads"] == 1
    assert totals["totalBookings"] == 1
    assert round(totals["conversionRate"], 2) == 33.33
    assert totals["trafficSources"][0] == {"source": "instagram", "clicks": 2, "percentage": 2 / 3 * 100}
    assert totals["trafficSources"][1]["source"] == "Direct"
    funnel = {f["stage"]: f["count"] for f in totals["conversionFunnel"]}
    assert funnel["Clicks"] == 3
    assert funnel["Quiz Completions"] == 1
    assert len(totals["dailyStats"]) == 30
    assert totals["recentActivity"][0]["action"] == "Booking"


def test_all_range_counts_since_epoch(db):
    affiliate = make_affiliate(db, code="abc")
    _click(db, affiliate, datetime(2024, 1, 1), ua="old")
    _click(db, affiliate, datetime(2026, 6, 15, 8), ua="new")
    make_lead(db, "abc", datetime(2023, 7, 1))

    totals = range_totals(db, affiliate, "all", now=NOW)
    assert totals["window"]["start"] == EPOCH.isoformat()
    assert totals["totalClicks"] == 2
    assert totals["totalLeads"] == 1
    # The series is a bounded lookback
    assert len(totals["dailyStats"]) == 90
    assert sum(b["clicks"] for b in totals["dailyStats"]) == 1


def test_zero_clicks_gives_zero_rates(db):
    affiliate = make_affiliate(db, code="abc")
    totals = range_totals(db, affiliate, "7d", now=NOW, with_series=False)
    assert totals["conversionRate"] == 0
    assert totals["trafficSources"] == []
    assert "dailyStats" not in totals


def test_performance_overview(db):
    a = make_affiliate(db, code="abc")
    b = make_affiliate(db, code="xyz")
    _click(db, a, datetime(2026, 6, 14), ua="1")
    _click(db, b, datetime(2026, 6, 14), ua="2")
    make_lead(db, "abc", datetime(2026, 6, 14, 1))
    make_lead(db, None, datetime(2026, 6, 14, 2))

    overview = performance_overview(db, "7d", now=NOW)
    assert len(overview["affiliates"]) == 2
    assert overview["totals"]["clicks"] == 2
    assert overview["totals"]["leads"] == 2
    assert overview["totals"]["attributedLeads"] == 1
