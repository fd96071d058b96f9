from datetime import datetime

import jwt
import pytest

from conftest import make_affiliate
from core.errors import DataStoreUnavailable, InvalidTrackingLink, TrackingLinkConflict
from models.affiliates import Affiliate, AffiliateClick
from utils.attribution import (
    assign_custom_link,
    attribute_visit,
    issue_tracking_cookie,
    normalize_custom_link,
    read_tracking_cookie,
    resolve,
)
from utils.fingerprint import Fingerprint

T0 = datetime(2026, 5, 1, 12, 0)
VISITOR = Fingerprint(ip_address="198.51.100.4", user_agent="Mozilla/5.0 Firefox/125")


def test_referral_code_resolves(db):
    affiliate = make_affiliate(db, code="abc")
    result = resolve(db, "abc")
    assert result.attributable
    assert result.reason == "ok"
    assert result.kind == "referral_code"
    assert result.affiliate_id == affiliate.id


def test_segment_is_normalized(db):
    make_affiliate(db, code="abc")
    assert resolve(db, " /abc/ ").attributable


def test_unknown_code_not_found(db):
    make_affiliate(db, code="abc")
    result = resolve(db, "nope")
    assert not result.attributable
    assert result.reason == "not_found"
    assert resolve(db, "").reason == "not_found"


def test_unapproved_or_inactive_affiliate_not_attributable(db):
    make_affiliate(db, code="pending", approved=False)
    make_affiliate(db, code="paused", active=False)
    assert resolve(db, "pending").reason == "inactive"
    assert resolve(db, "paused").reason == "inactive"


def test_custom_link_supersedes_referral_code(db):
    affiliate = make_affiliate(db, code="abc")
    assign_custom_link(db, affiliate, "/summer-offer")

    old = resolve(db, "abc")
    assert not old.attributable
    assert old.reason == "superseded"

    new = resolve(db, "summer-offer")
    assert new.attributable
    assert new.kind == "custom_link"
    assert new.affiliate_id == affiliate.id


def test_custom_link_is_case_insensitive_and_may_be_nested(db):
    affiliate = make_affiliate(db, code="abc")
    assign_custom_link(db, affiliate, "https://example.com/Partners/Jane")
    assert affiliate.custom_tracking_link == "/partners/jane"
    assert resolve(db, "partners/JANE").attributable
    # A nested path is never a referral code
    assert resolve(db, "abc/extra").reason == "not_found"


def test_custom_link_of_inactive_affiliate(db):
    make_affiliate(db, code="abc", custom_link="/promo", active=False)
    result = resolve(db, "promo")
    assert not result.attributable
    assert result.reason == "inactive"


def test_assign_custom_link_validation(db):
    a = make_affiliate(db, code="abc")
    b = make_affiliate(db, code="xyz", custom_link="/taken")
    with pytest.raises(InvalidTrackingLink):
        assign_custom_link(db, a, "")
    with pytest.raises(InvalidTrackingLink):
        assign_custom_link(db, a, "/has space")
    with pytest.raises(TrackingLinkConflict):
        assign_custom_link(db, a, "/taken")
    # Cannot take over another affiliate's referral code path
    with pytest.raises(TrackingLinkConflict):
        assign_custom_link(db, a, "/xyz")
    db.expire_all()
    assert db.query(Affiliate).filter(Affiliate.id == a.id).first().custom_tracking_link is None
    assert b.custom_tracking_link == "/taken"


def test_normalize_custom_link():
    assert normalize_custom_link("Promo/") == "/promo"
    assert normalize_custom_link("  ") is None


def test_tracking_cookie_round_trip(db):
    affiliate = make_affiliate(db, code="abc")
    token = issue_tracking_cookie(affiliate)
    assert read_tracking_cookie(token) == "abc"


def test_tampered_or_expired_cookie_rejected(db):
    affiliate = make_affiliate(db, code="abc")
    token = issue_tracking_cookie(affiliate)
    assert read_tracking_cookie(token + "x") is None
    assert read_tracking_cookie(None) is None

    forged = jwt.encode({"ref": "abc", "iss": "affiliate-ledger.tracking"}, "wrong-secret", algorithm="HS256")
    assert read_tracking_cookie(forged) is None

    expired = issue_tracking_cookie(affiliate, now=datetime(2020, 1, 1))
    assert read_tracking_cookie(expired) is None


def test_attribute_visit_records_click_and_cookie(db):
    make_affiliate(db, code="abc")
    result = attribute_visit(db, "abc", VISITOR, {"utm_source": "tiktok"}, now=T0)
    assert result.attribution.attributable
    assert result.click.counted
    assert result.click_error is None
    payload = jwt.decode(result.cookie_value, options={"verify_signature": False})
    assert payload["ref"] == "abc"
    click = db.query(AffiliateClick).one()
    assert click.utm_source == "tiktok"


def test_attribute_visit_not_attributable_records_nothing(db):
    affiliate = make_affiliate(db, code="abc")
    assign_custom_link(db, affiliate, "/new-link")
    result = attribute_visit(db, "abc", VISITOR, now=T0)
    assert not result.attribution.attributable
    assert result.cookie_value is None
    assert db.query(AffiliateClick).count() == 0


def test_click_failure_still_issues_cookie(db, monkeypatch):
    make_affiliate(db, code="abc")

    def unavailable(*args, **kwargs):
        raise DataStoreUnavailable("write failed")

    monkeypatch.setattr("utils.attribution.record_click", unavailable)
    result = attribute_visit(db, "abc", VISITOR, now=T0)
    assert result.attribution.attributable
    assert result.cookie_value
    assert result.click is None
    assert result.click_error == "click_not_recorded"
