from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Request, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.auth import require_admin
from core.config import logger
from core.database import get_db
from core.errors import (
    CommissionNotFound,
    CommissionNotHeld,
    DataStoreUnavailable,
    InvalidPayout,
    InvalidSettingsValue,
    InvalidTrackingLink,
    TrackingLinkConflict,
)
from models.affiliates import Affiliate
from models.appointments import Appointment
from models.quiz import QuizSession, STATUS_COMPLETED
from utils.attribution import assign_custom_link
from utils.commission import (
    force_release,
    missing_commissions,
    process_releases,
    record_payout,
    release_ready,
    retry_missing_commissions,
)
from utils.leads import count_leads
from utils.pipeline import pipeline_amounts
from utils.reconcile import recount_affiliate, recount_all
from utils.rate_limit import admin_throttle, enforce
from utils.settings_store import load_settings, save_settings
from utils.stats import affiliate_profile, performance_overview, range_totals
from utils.windows import parse_range, range_window, utcnow

router = APIRouter(prefix="/api/admin", tags=["admin"])  # secure endpoints via ADMIN_SECRET


def _guard(request: Request) -> Optional[JSONResponse]:
    limited = enforce(request, admin_throttle, "admin")
    if limited:
        return limited
    return require_admin(request)


def _get_affiliate(db: Session, affiliate_id: str) -> Optional[Affiliate]:
    return db.query(Affiliate).filter(Affiliate.id == affiliate_id).first()


# --- Models ---

class TrackingLinkPayload(BaseModel):
    customTrackingLink: Optional[str] = None


class PayoutPayload(BaseModel):
    amount: float
    notes: Optional[str] = None


class ReleasePayload(BaseModel):
    batchSize: Optional[int] = None


# --- Affiliate statistics ---

@router.get("/affiliates/{affiliate_id}/stats")
async def admin_affiliate_stats(affiliate_id: str, request: Request, dateRange: str = "30d", db: Session = Depends(get_db)):
    err = _guard(request)
    if err:
        return err
    affiliate = _get_affiliate(db, affiliate_id)
    if not affiliate:
        return JSONResponse({"error": "Affiliate not found"}, status_code=404)
    try:
        stats = range_totals(db, affiliate, dateRange)
        stats["affiliate"] = affiliate_profile(db, affiliate)
        return stats
    except Exception as ex:
        logger.exception(f"[admin.affiliates.stats] id={affiliate_id}: {ex}")
        return JSONResponse({"error": "Failed to fetch affiliate stats"}, status_code=500)


@router.get("/affiliates/{affiliate_id}/crm")
async def admin_affiliate_crm(affiliate_id: str, request: Request, dateRange: str = "30d", db: Session = Depends(get_db)):
    """Quiz sessions and appointments attributed to one affiliate."""
    err = _guard(request)
    if err:
        return err
    affiliate = _get_affiliate(db, affiliate_id)
    if not affiliate:
        return JSONResponse({"error": "Affiliate not found"}, status_code=404)

    key = parse_range(dateRange)
    window = range_window(key, utcnow())
    try:
        sessions = (
            db.query(QuizSession)
            .filter(QuizSession.affiliate_code == affiliate.referral_code)
            .filter(QuizSession.created_at >= window.start)
            .filter(QuizSession.created_at <= window.end)
            .order_by(QuizSession.created_at.desc())
            .all()
        )
        appointments = (
            db.query(Appointment)
            .filter(Appointment.affiliate_code == affiliate.referral_code)
            .filter(Appointment.created_at >= window.start)
            .filter(Appointment.created_at <= window.end)
            .order_by(Appointment.created_at.desc())
            .all()
        )
        total_leads = count_leads(db, window.start, window.end, affiliate=affiliate).total_leads

        quiz_types: Dict[str, int] = {}
        for s in sessions:
            qt = s.quiz_type or "unknown"
            quiz_types[qt] = quiz_types.get(qt, 0) + 1
        completions = sum(1 for s in sessions if s.status == STATUS_COMPLETED)

        return {
            "dateRange": key,
            "leads": [s.to_dict() for s in sessions],
            "appointments": [a.to_dict() for a in appointments],
            "stats": {
                "totalSessions": len(sessions),
                "totalLeads": total_leads,
                "completionRate": (completions / len(sessions)) * 100 if sessions else 0,
                "totalAppointments": len(appointments),
                "pipeline": pipeline_amounts(appointments, load_settings(db)),
                "quizTypeDistribution": [
                    {"quizType": qt, "count": n, "percentage": (n / len(sessions)) * 100}
                    for qt, n in sorted(quiz_types.items())
                ],
            },
        }
    except Exception as ex:
        logger.exception(f"[admin.affiliates.crm] id={affiliate_id}: {ex}")
        return JSONResponse({"error": "Failed to fetch CRM data"}, status_code=500)


@router.get("/affiliate-performance")
async def admin_affiliate_performance(request: Request, dateRange: str = "30d", db: Session = Depends(get_db)):
    err = _guard(request)
    if err:
        return err
    try:
        return performance_overview(db, dateRange)
    except Exception as ex:
        logger.exception(f"[admin.affiliate_performance] {ex}")
        return JSONResponse({"error": "Failed to fetch affiliate performance"}, status_code=500)


# --- Affiliate management ---

@router.put("/affiliates/{affiliate_id}/tracking-link")
async def admin_update_tracking_link(
    affiliate_id: str,
    request: Request,
    payload: TrackingLinkPayload,
    db: Session = Depends(get_db),
):
    err = _guard(request)
    if err:
        return err
    affiliate = _get_affiliate(db, affiliate_id)
    if not affiliate:
        return JSONResponse({"error": "Affiliate not found"}, status_code=404)
    try:
        affiliate = assign_custom_link(db, affiliate, payload.customTrackingLink)
        return {"success": True, "affiliate": affiliate_profile(db, affiliate)}
    except InvalidTrackingLink as ex:
        return JSONResponse({"error": str(ex)}, status_code=400)
    except TrackingLinkConflict as ex:
        return JSONResponse({"error": str(ex)}, status_code=409)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[admin.affiliates.tracking_link] id={affiliate_id}: {ex}")
        return JSONResponse({"error": "Failed to update tracking link"}, status_code=500)


@router.post("/affiliates/{affiliate_id}/payout")
async def admin_affiliate_payout(
    affiliate_id: str,
    request: Request,
    payload: PayoutPayload,
    db: Session = Depends(get_db),
):
    err = _guard(request)
    if err:
        return err
    affiliate = _get_affiliate(db, affiliate_id)
    if not affiliate:
        return JSONResponse({"error": "Affiliate not found"}, status_code=404)
    try:
        payout = record_payout(db, affiliate, payload.amount, payload.notes)
        return {"success": True, "payout": payout.to_dict()}
    except InvalidPayout as ex:
        return JSONResponse({"error": str(ex)}, status_code=400)
    except DataStoreUnavailable as ex:
        return JSONResponse({"error": "Service temporarily unavailable", "details": str(ex)}, status_code=503)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[admin.affiliates.payout] id={affiliate_id}: {ex}")
        return JSONResponse({"error": "Failed to process payout"}, status_code=500)


@router.get("/affiliates/reconcile")
async def admin_reconcile_report(request: Request, affiliateId: Optional[str] = None, db: Session = Depends(get_db)):
    """Dry run: stored vs recalculated counters."""
    err = _guard(request)
    if err:
        return err
    return _reconcile(db, affiliateId, apply=False)


@router.post("/affiliates/reconcile")
async def admin_reconcile_apply(request: Request, affiliateId: Optional[str] = Body(None, embed=True), db: Session = Depends(get_db)):
    err = _guard(request)
    if err:
        return err
    return _reconcile(db, affiliateId, apply=True)


def _reconcile(db: Session, affiliate_id: Optional[str], apply: bool):
    try:
        if affiliate_id:
            affiliate = _get_affiliate(db, affiliate_id)
            if not affiliate:
                return JSONResponse({"error": "Affiliate not found"}, status_code=404)
            results = [recount_affiliate(db, affiliate, apply=apply)]
        else:
            results = recount_all(db, apply=apply)
        return {
            "applied": apply,
            "checked": len(results),
            "drifted": sum(1 for r in results if r["hasDrift"]),
            "results": results,
        }
    except DataStoreUnavailable as ex:
        return JSONResponse({"error": "Service temporarily unavailable", "details": str(ex)}, status_code=503)
    except Exception as ex:
        logger.exception(f"[admin.reconcile] apply={apply}: {ex}")
        return JSONResponse({"error": "Failed to reconcile"}, status_code=500)


# --- Settings ---

@router.get("/settings")
async def admin_get_settings(request: Request, db: Session = Depends(get_db)):
    err = _guard(request)
    if err:
        return err
    return {"settings": load_settings(db).to_dict()}


@router.post("/settings")
async def admin_update_settings(request: Request, updates: Dict[str, Any] = Body(...), db: Session = Depends(get_db)):
    err = _guard(request)
    if err:
        return err
    # Accept both {"settings": {...}} and a bare object
    if isinstance(updates.get("settings"), dict):
        updates = updates["settings"]
    try:
        settings = save_settings(db, updates)
        return {"success": True, "settings": settings.to_dict()}
    except InvalidSettingsValue as ex:
        return JSONResponse({"error": str(ex)}, status_code=400)
    except DataStoreUnavailable as ex:
        return JSONResponse({"error": "Service temporarily unavailable", "details": str(ex)}, status_code=503)


# --- Commission releases ---

@router.get("/commission-releases")
async def admin_commission_status(request: Request, db: Session = Depends(get_db)):
    err = _guard(request)
    if err:
        return err
    try:
        return release_ready(db)
    except Exception as ex:
        logger.exception(f"[admin.commission_releases.status] {ex}")
        return JSONResponse({"error": "Failed to get commission status"}, status_code=500)


@router.post("/commission-releases")
async def admin_process_releases(request: Request, payload: Optional[ReleasePayload] = None, db: Session = Depends(get_db)):
    err = _guard(request)
    if err:
        return err
    batch_size = payload.batchSize if payload else None
    if batch_size is not None and batch_size <= 0:
        return JSONResponse({"error": "batchSize must be positive"}, status_code=400)
    try:
        result = process_releases(db, batch_size=batch_size)
        result["success"] = True
        return result
    except DataStoreUnavailable as ex:
        return JSONResponse({"error": "Service temporarily unavailable", "details": str(ex)}, status_code=503)
    except Exception as ex:
        logger.exception(f"[admin.commission_releases.process] {ex}")
        return JSONResponse({"error": "Failed to process commission releases"}, status_code=500)


@router.get("/commissions/missing")
async def admin_missing_commissions(request: Request, db: Session = Depends(get_db)):
    """Converted appointments whose commission was never recorded."""
    err = _guard(request)
    if err:
        return err
    try:
        appointments = missing_commissions(db)
        return {"count": len(appointments), "appointments": [a.to_dict() for a in appointments]}
    except Exception as ex:
        logger.exception(f"[admin.commissions.missing] {ex}")
        return JSONResponse({"error": "Failed to list missing commissions"}, status_code=500)


@router.post("/commissions/missing")
async def admin_retry_missing_commissions(request: Request, db: Session = Depends(get_db)):
    err = _guard(request)
    if err:
        return err
    try:
        return retry_missing_commissions(db)
    except DataStoreUnavailable as ex:
        return JSONResponse({"error": "Service temporarily unavailable", "details": str(ex)}, status_code=503)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[admin.commissions.missing.retry] {ex}")
        return JSONResponse({"error": "Failed to retry missing commissions"}, status_code=500)


@router.post("/commissions/{commission_id}/force-release")
async def admin_force_release(commission_id: str, request: Request, db: Session = Depends(get_db)):
    err = _guard(request)
    if err:
        return err
    try:
        return force_release(db, commission_id)
    except CommissionNotFound as ex:
        return JSONResponse({"error": str(ex)}, status_code=404)
    except CommissionNotHeld as ex:
        return JSONResponse({"error": str(ex)}, status_code=400)
    except DataStoreUnavailable as ex:
        return JSONResponse({"error": "Service temporarily unavailable", "details": str(ex)}, status_code=503)
