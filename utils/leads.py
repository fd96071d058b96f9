"""
Lead counting - the one definition of a lead used by every statistics surface.

A lead is a completed quiz session attributed to the affiliate's referral code
whose completion time (created_at when completed_at is missing) lies inside the
window, both bounds inclusive.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, Query

from core.config import logger
from core.errors import DataStoreUnavailable, QuizSessionNotFound
from models.affiliates import Affiliate
from models.quiz import QuizSession, STATUS_COMPLETED
from utils.settings_store import AffiliateSettings, load_settings
from utils.windows import utcnow


@dataclass(frozen=True)
class LeadCount:
    total_leads: int


def lead_timestamp():
    """SQL expression for the timestamp a lead is counted at."""
    return func.coalesce(QuizSession.completed_at, QuizSession.created_at)


def leads_query(
    db: Session,
    window_start: datetime,
    window_end: datetime,
    affiliate: Optional[Affiliate] = None,
    referral_code: Optional[str] = None,
) -> Query:
    ts = lead_timestamp()
    q = (
        db.query(QuizSession)
        .filter(QuizSession.status == STATUS_COMPLETED)
        .filter(ts >= window_start)
        .filter(ts <= window_end)
    )
    if affiliate is not None:
        q = q.filter(QuizSession.affiliate_code == affiliate.referral_code)
    elif referral_code:
        q = q.filter(QuizSession.affiliate_code == referral_code)
    return q


def count_leads(
    db: Session,
    window_start: datetime,
    window_end: datetime,
    affiliate: Optional[Affiliate] = None,
    referral_code: Optional[str] = None,
) -> LeadCount:
    """Count leads in [window_start, window_end]; without an affiliate, counts every lead."""
    total = leads_query(db, window_start, window_end, affiliate, referral_code).count()
    return LeadCount(total_leads=int(total or 0))


def complete_lead(
    db: Session,
    session_id: str,
    total_points: Optional[int] = None,
    settings: Optional[AffiliateSettings] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Mark a quiz session completed and count the lead for its affiliate.

    Only the call that moves the session to completed increments total_leads,
    so repeated or concurrent completions count the lead once. The caller
    qualifies for a call when total_points reaches qualification_threshold.
    """
    now = now or utcnow()
    settings = settings or load_settings(db)
    session = db.query(QuizSession).filter(QuizSession.id == session_id).first()
    if not session:
        raise QuizSessionNotFound(f"Quiz session {session_id} not found")

    counted = False
    code = session.affiliate_code
    try:
        if total_points is not None:
            session.total_points = total_points
            db.flush()
        moved = (
            db.query(QuizSession)
            .filter(QuizSession.id == session_id)
            .filter(QuizSession.status != STATUS_COMPLETED)
            .update(
                {QuizSession.status: STATUS_COMPLETED, QuizSession.completed_at: now},
                synchronize_session=False,
            )
        )
        if moved and code:
            counted = bool(
                db.query(Affiliate)
                .filter(Affiliate.referral_code == code)
                .update({Affiliate.total_leads: Affiliate.total_leads + 1}, synchronize_session=False)
            )
        db.commit()
    except DBAPIError as ex:
        db.rollback()
        logger.error(f"[leads.complete] store failure session={session_id}: {ex}")
        raise DataStoreUnavailable(str(ex)) from ex

    db.refresh(session)
    points = session.total_points
    qualifies = points is not None and points >= settings.qualification_threshold
    logger.info(f"[leads.complete] session={session_id} affiliate={code or '-'} counted={counted} points={points}")
    return {
        "sessionId": session.id,
        "completed": True,
        "counted": counted,
        "totalPoints": points,
        "qualifiesForCall": qualifies,
    }
