"""Walkthrough of one affiliate from first click to released commission."""
from datetime import datetime, timedelta
from decimal import Decimal

from conftest import make_affiliate, make_appointment
from models.affiliates import Affiliate, AffiliateConversion
from utils.attribution import attribute_visit
from utils.commission import compute_commission, process_releases, status_of
from utils.fingerprint import Fingerprint
from utils.settings_store import load_settings

T0 = datetime(2026, 4, 1, 9, 0)
BROWSER = Fingerprint(ip_address="192.0.2.10", user_agent="Mozilla/5.0 (iPhone) Mobile Safari")


def test_click_to_release(db):
    make_affiliate(db, code="abc", rate=0.2, affiliate_id="aff_123")

    for minute in (0, 1, 2):
        attribute_visit(db, "abc", BROWSER, now=T0 + timedelta(minutes=minute))
    assert db.query(Affiliate).filter(Affiliate.id == "aff_123").first().total_clicks == 1

    attribute_visit(db, "abc", BROWSER, now=T0 + timedelta(hours=2))
    db.expire_all()
    assert db.query(Affiliate).filter(Affiliate.id == "aff_123").first().total_clicks == 2

    closed = T0 + timedelta(days=3)
    appt = make_appointment(db, code="abc", sale_value=1000, closed_at=closed, outcome="converted")
    settings = load_settings(db)
    result = compute_commission(db, appt, settings, now=closed)
    assert result.amount == Decimal("200.00")

    conversion = db.query(AffiliateConversion).filter(AffiliateConversion.id == result.conversion_id).one()
    assert status_of(conversion, settings, closed + timedelta(days=29)) == "held"
    assert process_releases(db, settings, now=closed + timedelta(days=29))["released_count"] == 0

    released = process_releases(db, settings, now=closed + timedelta(days=31))
    assert released["released_count"] == 1
    assert released["released_amount"] == 200.0
