"""
Statistics bucketing for affiliate dashboards

Series are hourly for 24h and daily otherwise; the newest bucket always ends at
"now". Clicks, bookings and commission come from one fetch of raw events for the
whole span; leads come from count_leads per bucket so the buckets add up to the
range total.
"""
from dataclasses import dataclass, asdict
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from core.database import begin_snapshot
from models.affiliates import Affiliate, AffiliateClick, AffiliateConversion, ConversionType
from models.quiz import QuizSession
from utils.leads import count_leads
from utils.windows import EPOCH, Window, bucket_windows, parse_range, range_window, span_of, utcnow


@dataclass
class Bucket:
    label: str
    start: datetime
    end: datetime
    clicks: int = 0
    leads: int = 0
    booked_calls: int = 0
    commission: float = 0.0

    def to_dict(self):
        d = asdict(self)
        d["start"] = self.start.isoformat()
        d["end"] = self.end.isoformat()
        d["date"] = self.label
        d["bookedCalls"] = d.pop("booked_calls")
        return d


def fetch_clicks(db: Session, affiliate: Affiliate, window: Window) -> List[AffiliateClick]:
    return (
        db.query(AffiliateClick)
        .filter(AffiliateClick.affiliate_id == affiliate.id)
        .filter(AffiliateClick.created_at >= window.start)
        .filter(AffiliateClick.created_at <= window.end)
        .all()
    )


def fetch_conversions(db: Session, affiliate: Affiliate, window: Window) -> List[AffiliateConversion]:
    return (
        db.query(AffiliateConversion)
        .filter(AffiliateConversion.affiliate_id == affiliate.id)
        .filter(AffiliateConversion.created_at >= window.start)
        .filter(AffiliateConversion.created_at <= window.end)
        .all()
    )


def _commission_sum(conversions) -> float:
    total = sum((c.commission_amount or Decimal("0") for c in conversions), Decimal("0"))
    return float(total)


def _bookings(conversions):
    return [c for c in conversions if c.conversion_type == ConversionType.BOOKING.value]


def fill_buckets(
    db: Session,
    affiliate: Affiliate,
    windows: List[Window],
    clicks: List[AffiliateClick],
    conversions: List[AffiliateConversion],
) -> List[Bucket]:
    out: List[Bucket] = []
    for w in windows:
        w_clicks = [c for c in clicks if w.contains(c.created_at)]
        w_convs = [c for c in conversions if w.contains(c.created_at)]
        out.append(Bucket(
            label=w.label,
            start=w.start,
            end=w.end,
            clicks=len(w_clicks),
            leads=count_leads(db, w.start, w.end, affiliate=affiliate).total_leads,
            booked_calls=len(_bookings(w_convs)),
            commission=_commission_sum(w_convs),
        ))
    return out


def build_series(db: Session, affiliate: Affiliate, range_key: str, now: Optional[datetime] = None) -> List[Bucket]:
    """Ordered (oldest first) buckets for the given dateRange."""
    now = now or utcnow()
    windows = bucket_windows(range_key, now)
    span = span_of(windows)
    begin_snapshot(db)
    clicks = fetch_clicks(db, affiliate, span)
    conversions = fetch_conversions(db, affiliate, span)
    return fill_buckets(db, affiliate, windows, clicks, conversions)


def _traffic_sources(clicks: List[AffiliateClick]):
    counts = {}
    for c in clicks:
        source = c.utm_source or "Direct"
        counts[source] = counts.get(source, 0) + 1
    total = len(clicks)
    return [
        {"source": s, "clicks": n, "percentage": (n / total) * 100 if total else 0}
        for s, n in sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
    ]


def _funnel(clicks: int, quiz_starts: int, leads: int, bookings: int):
    def pct(n):
        return (n / clicks) * 100 if clicks > 0 else 0
    return [
        {"stage": "Clicks", "count": clicks, "percentage": 100},
        {"stage": "Quiz Starts", "count": quiz_starts, "percentage": pct(quiz_starts)},
        {"stage": "Quiz Completions", "count": leads, "percentage": pct(leads)},
        {"stage": "Booked Calls", "count": bookings, "percentage": pct(bookings)},
    ]


def _recent_activity(clicks, conversions, limit: int = 10):
    events = [
        {"date": c.created_at.isoformat(), "action": "Click", "amount": 0, "commission": 0}
        for c in clicks
    ]
    for c in conversions:
        events.append({
            "date": c.created_at.isoformat(),
            "action": c.conversion_type.capitalize(),
            "amount": float(c.sale_value or 0),
            "commission": float(c.commission_amount or 0),
        })
    events.sort(key=lambda e: e["date"], reverse=True)
    return events[:limit]


def range_totals(
    db: Session,
    affiliate: Affiliate,
    range_key: str,
    now: Optional[datetime] = None,
    with_series: bool = True,
    snapshot: bool = True,
):
    """
    Totals for a dateRange plus the series, read from one snapshot.
    Returns a JSON-ready dict shared by the affiliate and admin dashboards.
    """
    now = now or utcnow()
    key = parse_range(range_key)
    window = range_window(key, now)
    windows = bucket_windows(key, now)

    if snapshot:
        begin_snapshot(db)
    fetch_window = Window(min(window.start, windows[0].start), now)
    clicks_all = fetch_clicks(db, affiliate, fetch_window)
    convs_all = fetch_conversions(db, affiliate, fetch_window)

    clicks = [c for c in clicks_all if window.contains(c.created_at)]
    convs = [c for c in convs_all if window.contains(c.created_at)]
    total_leads = count_leads(db, window.start, window.end, affiliate=affiliate).total_leads
    quiz_starts = (
        db.query(QuizSession)
        .filter(QuizSession.affiliate_code == affiliate.referral_code)
        .filter(QuizSession.created_at >= window.start)
        .filter(QuizSession.created_at <= window.end)
        .count()
    )
    bookings = len(_bookings(convs))
    total_clicks = len(clicks)

    result = {
        "dateRange": key,
        "window": window.to_dict(),
        "totalClicks": total_clicks,
        "totalLeads": total_leads,
        "totalBookings": bookings,
        "totalCommission": _commission_sum(convs),
        "lifetimeCommission": float(affiliate.total_commission or 0),
        "conversionRate": (bookings / total_clicks) * 100 if total_clicks > 0 else 0,
        "trafficSources": _traffic_sources(clicks),
        "conversionFunnel": _funnel(total_clicks, quiz_starts, total_leads, bookings),
        "recentActivity": _recent_activity(clicks, convs),
    }
    if with_series:
        series = fill_buckets(db, affiliate, windows, clicks_all, convs_all)
        result["dailyStats"] = [b.to_dict() for b in series]
    return result


def affiliate_profile(db: Session, affiliate: Affiliate, now: Optional[datetime] = None):
    """Affiliate record with totalLeads counted the same way as every stats view."""
    row = affiliate.to_dict()
    row["totalLeads"] = count_leads(db, EPOCH, now or utcnow(), affiliate=affiliate).total_leads
    return row

def performance_overview(db: Session, range_key: str, now: Optional[datetime] = None):
    """Range totals for every affiliate plus program-wide lead counts, from one snapshot."""
    now = now or utcnow()
    key = parse_range(range_key)
    window = range_window(key, now)
    begin_snapshot(db)
    affiliates = db.query(Affiliate).order_by(Affiliate.created_at.asc()).all()
    rows = []
    for a in affiliates:
        totals = range_totals(db, a, key, now, with_series=False, snapshot=False)
        rows.append({
            "id": a.id,
            "name": a.name,
            "email": a.email,
            "referralCode": a.referral_code,
            "customTrackingLink": a.custom_tracking_link,
            "isApproved": bool(a.is_approved),
            "isActive": bool(a.is_active),
            "clicks": totals["totalClicks"],
            "leads": totals["totalLeads"],
            "bookings": totals["totalBookings"],
            "commission": totals["totalCommission"],
            "conversionRate": totals["conversionRate"],
        })
    attributed = sum(r["leads"] for r in rows)
    all_leads = count_leads(db, window.start, window.end).total_leads
    return {
        "dateRange": key,
        "window": window.to_dict(),
        "affiliates": rows,
        "totals": {
            "clicks": sum(r["clicks"] for r in rows),
            "leads": all_leads,
            "attributedLeads": attributed,
            "bookings": sum(r["bookings"] for r in rows),
            "commission": sum(r["commission"] for r in rows),
        },
    }
