from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Request, Body, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from core.config import logger, TRACKING_COOKIE_NAME, COOKIE_SECURE
from core.database import get_db
from core.errors import DataStoreUnavailable, QuizSessionNotFound
from models.appointments import Appointment
from utils.attribution import attribute_visit, cookie_max_age, read_tracking_cookie, VisitResult
from utils.commission import record_booking
from utils.fingerprint import fingerprint_from_request
from utils.leads import complete_lead
from utils.rate_limit import enforce, tracking_throttle

router = APIRouter(prefix="/api/track", tags=["track"])


def _visit_response(result: VisitResult) -> JSONResponse:
    attribution = result.attribution
    if not attribution.attributable:
        # Superseded and inactive look exactly like an unknown code from outside
        logger.info(f"[track.visit] not attributable reason={attribution.reason}")
        return JSONResponse({"attributable": False}, status_code=404)

    affiliate = attribution.affiliate
    body = {
        "attributable": True,
        "referralCode": affiliate.referral_code,
        "affiliateId": affiliate.id,
        "kind": attribution.kind,
        "counted": bool(result.click and result.click.counted),
    }
    if result.click_error:
        body["clickError"] = result.click_error
    resp = JSONResponse(body)
    resp.set_cookie(
        key=TRACKING_COOKIE_NAME,
        value=result.cookie_value,
        max_age=cookie_max_age(),
        httponly=True,
        secure=COOKIE_SECURE,
        samesite="lax",
        path="/",
    )
    return resp


@router.get("/resolve")
async def track_resolve(request: Request, path: str = "", db: Session = Depends(get_db)):
    """Resolve a landing path (referral code or custom link) and count the click."""
    limited = enforce(request, tracking_throttle, "track")
    if limited:
        return limited
    try:
        result = attribute_visit(db, path, fingerprint_from_request(request), request.query_params)
        return _visit_response(result)
    except Exception as ex:
        logger.exception(f"[track.resolve] path={path}: {ex}")
        return JSONResponse({"error": "Failed to resolve"}, status_code=500)


@router.post("/visit")
async def track_visit(
    request: Request,
    path: str = Body(..., embed=True),
    utm_source: Optional[str] = Body(None, embed=True),
    utm_medium: Optional[str] = Body(None, embed=True),
    utm_campaign: Optional[str] = Body(None, embed=True),
    db: Session = Depends(get_db),
):
    """Client-side variant of /resolve; UTM parameters come in the body."""
    limited = enforce(request, tracking_throttle, "track")
    if limited:
        return limited
    params = {"utm_source": utm_source, "utm_medium": utm_medium, "utm_campaign": utm_campaign}
    try:
        result = attribute_visit(db, path, fingerprint_from_request(request), params)
        return _visit_response(result)
    except Exception as ex:
        logger.exception(f"[track.visit] path={path}: {ex}")
        return JSONResponse({"error": "Failed to track visit"}, status_code=500)


@router.get("/cookie")
async def track_cookie(request: Request):
    """Referral code carried by the visitor's tracking cookie, if any."""
    code = read_tracking_cookie(request.cookies.get(TRACKING_COOKIE_NAME))
    return {"referralCode": code}


@router.post("/booking")
async def track_booking(
    request: Request,
    name: Optional[str] = Body(None, embed=True),
    email: Optional[str] = Body(None, embed=True),
    scheduledAt: Optional[str] = Body(None, embed=True),
    db: Session = Depends(get_db),
):
    """Create an appointment for a booked call and credit the booking to the referring affiliate."""
    limited = enforce(request, tracking_throttle, "track")
    if limited:
        return limited

    scheduled = None
    if scheduledAt:
        try:
            scheduled = datetime.fromisoformat(scheduledAt.replace("Z", "+00:00")).replace(tzinfo=None)
        except ValueError:
            return JSONResponse({"error": "scheduledAt must be an ISO-8601 datetime"}, status_code=400)

    code = read_tracking_cookie(request.cookies.get(TRACKING_COOKIE_NAME))
    try:
        appt = Appointment(
            affiliate_code=code,
            customer_name=(name or "").strip() or None,
            customer_email=(email or "").strip().lower() or None,
            scheduled_at=scheduled,
        )
        db.add(appt)
        db.commit()
        db.refresh(appt)
        conversion_id = record_booking(db, appt)
        logger.info(f"[track.booking] appointment={appt.id} affiliate={code or '-'} conversion={conversion_id or '-'}")
        return {"ok": True, "appointmentId": appt.id, "affiliateCode": code, "bookingRecorded": bool(conversion_id)}
    except DataStoreUnavailable as ex:
        logger.error(f"[track.booking] store unavailable: {ex}")
        return JSONResponse({"error": "Service temporarily unavailable"}, status_code=503)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[track.booking] {ex}")
        return JSONResponse({"error": "Failed to track booking"}, status_code=500)


@router.post("/lead")
async def track_lead(
    request: Request,
    sessionId: str = Body(..., embed=True),
    totalPoints: Optional[int] = Body(None, embed=True),
    db: Session = Depends(get_db),
):
    """Called by the quiz funnel when a session completes; counts the affiliate's lead."""
    limited = enforce(request, tracking_throttle, "track")
    if limited:
        return limited
    if totalPoints is not None and totalPoints < 0:
        return JSONResponse({"error": "totalPoints cannot be negative"}, status_code=400)
    try:
        return complete_lead(db, sessionId, totalPoints)
    except QuizSessionNotFound as ex:
        return JSONResponse({"error": str(ex)}, status_code=404)
    except DataStoreUnavailable as ex:
        logger.error(f"[track.lead] store unavailable: {ex}")
        return JSONResponse({"error": "Service temporarily unavailable"}, status_code=503)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[track.lead] session={sessionId}: {ex}")
        return JSONResponse({"error": "Failed to record lead"}, status_code=500)
