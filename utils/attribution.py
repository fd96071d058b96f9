"""
Attribution resolver
Maps a referral-code or custom-link path segment to an affiliate, records the
click and issues the signed tracking cookie used for later conversions.

Every branch returns an AttributionResult; "not found" is expected input.
"""
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional
from urllib.parse import urlsplit

import jwt
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import logger, TRACKING_COOKIE_SECRET, TRACKING_COOKIE_DAYS
from core.errors import DataStoreUnavailable, InvalidTrackingLink, TrackingLinkConflict
from models.affiliates import Affiliate
from utils.click_ledger import ClickResult, record_click
from utils.fingerprint import Fingerprint, utm_from_params
from utils.windows import utcnow

REASON_OK = "ok"
REASON_NOT_FOUND = "not_found"
REASON_SUPERSEDED = "superseded"
REASON_INACTIVE = "inactive"

KIND_CUSTOM_LINK = "custom_link"
KIND_REFERRAL_CODE = "referral_code"

COOKIE_ISSUER = "affiliate-ledger.tracking"
_LINK_RE = re.compile(r"^/[a-z0-9_\-]+(/[a-z0-9_\-]+)*$")


@dataclass
class AttributionResult:
    attributable: bool
    reason: str
    affiliate: Optional[Affiliate] = None
    kind: Optional[str] = None

    @property
    def affiliate_id(self) -> Optional[str]:
        return self.affiliate.id if self.affiliate else None


@dataclass
class VisitResult:
    attribution: AttributionResult
    click: Optional[ClickResult] = None
    cookie_value: Optional[str] = None
    click_error: Optional[str] = None


def normalize_segment(path_segment: Optional[str]) -> str:
    return (path_segment or "").strip().strip("/").strip()


def normalize_custom_link(link: Optional[str]) -> Optional[str]:
    """Custom links are stored as "/path" (lowercase, no trailing slash)."""
    seg = normalize_segment(link).lower()
    return f"/{seg}" if seg else None


def resolve(db: Session, path_segment: Optional[str], query_params: Optional[Mapping] = None) -> AttributionResult:
    """
    Decide whether a visit is attributable and to which affiliate.
    A custom link always wins for its affiliate when the affiliate is available;
    a referral code whose affiliate has a custom link is retired.
    """
    seg = normalize_segment(path_segment)
    if not seg:
        return AttributionResult(False, REASON_NOT_FOUND)

    custom = normalize_custom_link(seg)
    affiliate = db.query(Affiliate).filter(Affiliate.custom_tracking_link == custom).first()
    if affiliate:
        if not affiliate.is_available:
            return AttributionResult(False, REASON_INACTIVE, affiliate, KIND_CUSTOM_LINK)
        return AttributionResult(True, REASON_OK, affiliate, KIND_CUSTOM_LINK)

    # Referral codes are single path segments
    if "/" in seg:
        return AttributionResult(False, REASON_NOT_FOUND)

    affiliate = db.query(Affiliate).filter(Affiliate.referral_code == seg).first()
    if not affiliate:
        return AttributionResult(False, REASON_NOT_FOUND)
    if affiliate.custom_tracking_link:
        logger.info(f"[attribution.resolve] referral code retired code={seg} custom_link={affiliate.custom_tracking_link}")
        return AttributionResult(False, REASON_SUPERSEDED, affiliate, KIND_REFERRAL_CODE)
    if not affiliate.is_available:
        return AttributionResult(False, REASON_INACTIVE, affiliate, KIND_REFERRAL_CODE)
    return AttributionResult(True, REASON_OK, affiliate, KIND_REFERRAL_CODE)


# --- Tracking cookie ---

def issue_tracking_cookie(affiliate: Affiliate, now: Optional[datetime] = None) -> str:
    if not TRACKING_COOKIE_SECRET:
        raise RuntimeError("TRACKING_COOKIE_SECRET is not configured")
    issued = (now or utcnow()).replace(tzinfo=timezone.utc)
    payload = {
        "ref": affiliate.referral_code,
        "aid": affiliate.id,
        "iat": int(issued.timestamp()),
        "exp": int((issued + timedelta(days=TRACKING_COOKIE_DAYS)).timestamp()),
        "iss": COOKIE_ISSUER,
    }
    return jwt.encode(payload, TRACKING_COOKIE_SECRET, algorithm="HS256")


def read_tracking_cookie(value: Optional[str]) -> Optional[str]:
    """Return the referral code carried by a valid tracking cookie, or None."""
    if not value or not TRACKING_COOKIE_SECRET:
        return None
    try:
        payload = jwt.decode(value, TRACKING_COOKIE_SECRET, algorithms=["HS256"], issuer=COOKIE_ISSUER)
    except jwt.PyJWTError as ex:
        logger.info(f"[attribution.cookie] rejected: {ex}")
        return None
    ref = payload.get("ref")
    return str(ref) if ref else None


def cookie_max_age() -> int:
    return TRACKING_COOKIE_DAYS * 24 * 60 * 60


# --- Visit ---

def attribute_visit(
    db: Session,
    path_segment: Optional[str],
    fingerprint: Fingerprint,
    query_params: Optional[Mapping] = None,
    now: Optional[datetime] = None,
) -> VisitResult:
    """
    Resolve a visit and, when attributable, record the click and build the cookie.
    A failed click write is reported on the result; the cookie is still issued.
    """
    now = now or utcnow()
    attribution = resolve(db, path_segment, query_params)
    if not attribution.attributable:
        return VisitResult(attribution=attribution)

    affiliate = attribution.affiliate
    code = affiliate.referral_code
    cookie_value = issue_tracking_cookie(affiliate, now)
    result = VisitResult(attribution=attribution, cookie_value=cookie_value)
    try:
        result.click = record_click(db, affiliate, fingerprint, utm_from_params(query_params or {}), now=now)
    except DataStoreUnavailable as ex:
        # Totals are known to be undercounted; the visitor still gets the page and cookie
        logger.error(f"[attribution.visit] click not recorded code={code}: {ex}")
        result.click_error = "click_not_recorded"
    return result


# --- Custom links ---

def assign_custom_link(db: Session, affiliate: Affiliate, link: Optional[str], now: Optional[datetime] = None) -> Affiliate:
    """
    Give an affiliate a custom tracking link. From then on only the custom link
    attributes; the link can be replaced but never cleared.
    """
    raw = (link or "").strip()
    if raw.startswith("http://") or raw.startswith("https://"):
        raw = urlsplit(raw).path
    custom = normalize_custom_link(raw)
    if not custom:
        raise InvalidTrackingLink("Custom tracking link is required")
    if not _LINK_RE.match(custom):
        raise InvalidTrackingLink("Custom tracking link may only contain letters, digits, '-', '_' and '/'")

    taken = (
        db.query(Affiliate.id)
        .filter(Affiliate.id != affiliate.id)
        .filter(or_(Affiliate.custom_tracking_link == custom, Affiliate.referral_code == custom.lstrip("/")))
        .first()
    )
    if taken:
        raise TrackingLinkConflict(f"Tracking link {custom} is already in use")

    previous = affiliate.custom_tracking_link
    affiliate.custom_tracking_link = custom
    affiliate.updated_at = now or utcnow()
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise TrackingLinkConflict(f"Tracking link {custom} is already in use")
    db.refresh(affiliate)
    logger.info(
        f"[attribution.custom_link] affiliate={affiliate.referral_code} old={previous or '-'} new={custom}"
    )
    return affiliate
