from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from conftest import make_affiliate
from core.errors import DataStoreUnavailable
from models.affiliates import Affiliate, AffiliateClick
from utils.click_ledger import record_click
from utils.fingerprint import Fingerprint, UtmParams

T0 = datetime(2026, 5, 1, 12, 0)
CHROME = Fingerprint(ip_address="203.0.113.7", user_agent="Mozilla/5.0 Chrome/124")
SAFARI = Fingerprint(ip_address="203.0.113.7", user_agent="Mozilla/5.0 Safari/17")


def _total_clicks(db, affiliate_id):
    db.expire_all()
    return db.query(Affiliate).filter(Affiliate.id == affiliate_id).first().total_clicks


def test_same_browser_counted_once_per_hour(db):
    affiliate = make_affiliate(db)
    first = record_click(db, affiliate, CHROME, now=T0)
    second = record_click(db, affiliate, CHROME, now=T0 + timedelta(minutes=10))
    third = record_click(db, affiliate, CHROME, now=T0 + timedelta(minutes=59))

    assert first.counted is True
    assert second.counted is False and second.click_id == first.click_id
    assert third.counted is False
    assert _total_clicks(db, affiliate.id) == 1
    assert db.query(AffiliateClick).count() == 1


def test_new_click_after_dedup_window(db):
    affiliate = make_affiliate(db)
    record_click(db, affiliate, CHROME, now=T0)
    later = record_click(db, affiliate, CHROME, now=T0 + timedelta(hours=2))
    assert later.counted is True
    assert _total_clicks(db, affiliate.id) == 2


def test_different_user_agents_count_separately(db):
    affiliate = make_affiliate(db)
    assert record_click(db, affiliate, CHROME, now=T0).counted
    assert record_click(db, affiliate, SAFARI, now=T0).counted
    assert _total_clicks(db, affiliate.id) == 2


def test_dedup_is_per_affiliate(db):
    a = make_affiliate(db, code="abc")
    b = make_affiliate(db, code="xyz")
    assert record_click(db, a, CHROME, now=T0).counted
    assert record_click(db, b, CHROME, now=T0).counted


def test_utm_fields_stored(db):
    affiliate = make_affiliate(db)
    result = record_click(db, affiliate, CHROME, UtmParams(source="instagram", medium="social"), now=T0)
    click = db.query(AffiliateClick).filter(AffiliateClick.id == result.click_id).first()
    assert click.utm_source == "instagram"
    assert click.utm_medium == "social"
    assert click.utm_campaign is None
    assert click.referral_code == "abc"
    assert click.created_at == T0


def test_store_failure_raises_and_counts_nothing(db, monkeypatch):
    affiliate = make_affiliate(db)
    affiliate_id = affiliate.id

    def boom(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr("utils.click_ledger.find_recent_click", boom)
    with pytest.raises(DataStoreUnavailable):
        record_click(db, affiliate, CHROME, now=T0)
    assert _total_clicks(db, affiliate_id) == 0
    assert db.query(AffiliateClick).count() == 0
