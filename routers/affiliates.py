from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from core.auth import get_affiliate_id_from_request
from core.config import logger, TRACKING_COOKIE_DAYS
from core.database import get_db
from models.affiliates import Affiliate
from utils.commission import payout_summary
from utils.settings_store import load_settings
from utils.stats import affiliate_profile, build_series, range_totals
from utils.windows import parse_range

router = APIRouter(prefix="/api/affiliates", tags=["affiliates"])


def _current_affiliate(request: Request, db: Session):
    """(affiliate, error_response) for the bearer token on the request."""
    affiliate_id = get_affiliate_id_from_request(request)
    if not affiliate_id:
        return None, JSONResponse({"error": "Unauthorized"}, status_code=401)
    affiliate = db.query(Affiliate).filter(Affiliate.id == affiliate_id).first()
    if not affiliate:
        return None, JSONResponse({"error": "Affiliate not found"}, status_code=404)
    return affiliate, None


@router.get("/profile")
async def affiliates_profile(request: Request, db: Session = Depends(get_db)):
    affiliate, err = _current_affiliate(request, db)
    if err:
        return err
    return {"affiliate": affiliate_profile(db, affiliate)}


@router.get("/stats")
async def affiliates_stats(request: Request, dateRange: str = "30d", db: Session = Depends(get_db)):
    """Dashboard totals and series for the signed-in affiliate."""
    affiliate, err = _current_affiliate(request, db)
    if err:
        return err
    key = parse_range(dateRange)
    try:
        stats = range_totals(db, affiliate, key)
        logger.info(f"[affiliates.stats] affiliate={affiliate.referral_code} range={key} clicks={stats['totalClicks']}")
        return stats
    except Exception as ex:
        logger.exception(f"[affiliates.stats] {ex}")
        return JSONResponse({"error": "Failed to fetch stats"}, status_code=500)


@router.get("/stats/series")
async def affiliates_stats_series(request: Request, dateRange: str = "30d", db: Session = Depends(get_db)):
    affiliate, err = _current_affiliate(request, db)
    if err:
        return err
    key = parse_range(dateRange)
    try:
        series = build_series(db, affiliate, key)
        return {"dateRange": key, "series": [b.to_dict() for b in series]}
    except Exception as ex:
        logger.exception(f"[affiliates.stats.series] {ex}")
        return JSONResponse({"error": "Failed to fetch stats"}, status_code=500)


@router.get("/payouts")
async def affiliates_payouts(request: Request, db: Session = Depends(get_db)):
    """Held, available and paid commission with payout history."""
    affiliate, err = _current_affiliate(request, db)
    if err:
        return err
    try:
        return payout_summary(db, affiliate)
    except Exception as ex:
        logger.exception(f"[affiliates.payouts] {ex}")
        return JSONResponse({"error": "Failed to fetch payouts"}, status_code=500)


@router.get("/policy")
async def affiliates_policy(request: Request, db: Session = Depends(get_db)):
    """Program terms shown to affiliates."""
    affiliate, err = _current_affiliate(request, db)
    if err:
        return err
    settings = load_settings(db)
    return {
        "commissionRate": float(affiliate.commission_rate or 0),
        "commissionHoldDays": settings.commission_hold_days,
        "minimumPayout": settings.minimum_payout,
        "payoutSchedule": settings.payout_schedule,
        "cookieDays": TRACKING_COOKIE_DAYS,
        "payoutTiming": f"Commissions become available {settings.commission_hold_days} days after the sale closes",
    }
