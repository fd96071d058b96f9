"""
Click ledger
Records attributed visits, counting at most one click per
(affiliate, user agent) inside a rolling window (1 hour by default).
"""
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from core.config import logger, CLICK_DEDUP_MINUTES
from core.errors import DataStoreUnavailable
from models.affiliates import Affiliate, AffiliateClick
from utils.fingerprint import Fingerprint, UtmParams
from utils.windows import utcnow


@dataclass
class ClickResult:
    counted: bool
    click_id: Optional[str]


def find_recent_click(db: Session, affiliate_id: str, user_agent: str, since: datetime) -> Optional[AffiliateClick]:
    return (
        db.query(AffiliateClick)
        .filter(AffiliateClick.affiliate_id == affiliate_id)
        .filter(AffiliateClick.user_agent == user_agent)
        .filter(AffiliateClick.created_at >= since)
        .order_by(AffiliateClick.created_at.desc())
        .first()
    )


def record_click(
    db: Session,
    affiliate: Affiliate,
    fingerprint: Fingerprint,
    utm: Optional[UtmParams] = None,
    now: Optional[datetime] = None,
    dedup_window: Optional[timedelta] = None,
) -> ClickResult:
    """
    Record a click for an affiliate unless the same browser was already counted
    inside the dedup window. The affiliate row is locked for the duration of the
    check-then-insert so concurrent requests from one visitor cannot both count.

    Raises DataStoreUnavailable when the store rejects the read or write.
    """
    now = now or utcnow()
    utm = utm or UtmParams()
    since = now - (dedup_window or timedelta(minutes=CLICK_DEDUP_MINUTES))
    affiliate_id = affiliate.id
    code = affiliate.referral_code
    try:
        # Serializes click recording per affiliate (no-op on SQLite)
        db.query(Affiliate.id).filter(Affiliate.id == affiliate_id).with_for_update().first()

        existing = find_recent_click(db, affiliate_id, fingerprint.user_agent, since)
        if existing:
            existing_id = existing.id
            db.commit()
            logger.info(f"[clicks.record] duplicate affiliate={code} existing={existing_id}")
            return ClickResult(counted=False, click_id=existing_id)

        click_id = str(uuid.uuid4())
        click = AffiliateClick(
            id=click_id,
            affiliate_id=affiliate_id,
            referral_code=code,
            ip_address=fingerprint.ip_address,
            user_agent=fingerprint.user_agent,
            utm_source=utm.source,
            utm_medium=utm.medium,
            utm_campaign=utm.campaign,
            created_at=now,
        )
        db.add(click)
        db.query(Affiliate).filter(Affiliate.id == affiliate_id).update(
            {Affiliate.total_clicks: Affiliate.total_clicks + 1},
            synchronize_session=False,
        )
        db.commit()
        logger.info(f"[clicks.record] counted affiliate={code} click={click_id}")
        return ClickResult(counted=True, click_id=click_id)
    except DBAPIError as ex:
        db.rollback()
        logger.error(f"[clicks.record] store failure affiliate={code}: {ex}")
        raise DataStoreUnavailable(str(ex)) from ex
