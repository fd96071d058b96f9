from datetime import datetime

from conftest import make_affiliate, make_appointment, make_lead
from models.affiliates import Affiliate
from models.quiz import STATUS_IN_PROGRESS
from utils.click_ledger import record_click
from utils.commission import compute_commission, record_booking
from utils.fingerprint import Fingerprint
from utils.leads import complete_lead
from utils.reconcile import recount_affiliate, recount_all
from utils.settings_store import AffiliateSettings

T0 = datetime(2026, 2, 1, 10, 0)


def _seed(db):
    affiliate = make_affiliate(db, code="abc")
    record_click(db, affiliate, Fingerprint("1.1.1.1", "ua-1"), now=T0)
    record_click(db, affiliate, Fingerprint("1.1.1.1", "ua-2"), now=T0)
    session = make_lead(db, "abc", None, created_at=T0, status=STATUS_IN_PROGRESS)
    complete_lead(db, session.id, now=T0)
    appt = make_appointment(db, code="abc", sale_value=500, closed_at=T0)
    record_booking(db, appt, now=T0)
    compute_commission(db, appt, AffiliateSettings(), now=T0)
    return affiliate.id


def test_consistent_ledger_reports_no_drift(db):
    affiliate_id = _seed(db)
    affiliate = db.query(Affiliate).filter(Affiliate.id == affiliate_id).first()
    report = recount_affiliate(db, affiliate)
    assert report["calculated"]["total_clicks"] == 2
    assert report["calculated"]["total_bookings"] == 1
    assert report["calculated"]["total_sales"] == 1
    assert report["calculated"]["total_commission"] == 100.0
    assert report["calculated"]["total_leads"] == 1
    assert report["drifted"] == []
    assert report["hasDrift"] is False
    assert report["applied"] is False


def test_apply_overwrites_drifted_counters(db):
    affiliate_id = _seed(db)
    db.query(Affiliate).filter(Affiliate.id == affiliate_id).update({Affiliate.total_clicks: 99})
    db.commit()

    results = recount_all(db, apply=True)
    assert len(results) == 1
    assert results[0]["drifted"] == ["total_clicks"]
    assert results[0]["applied"] is True

    db.expire_all()
    fresh = db.query(Affiliate).filter(Affiliate.id == affiliate_id).first()
    assert fresh.total_clicks == 2
    assert fresh.total_leads == 1
    assert recount_affiliate(db, fresh)["hasDrift"] is False
