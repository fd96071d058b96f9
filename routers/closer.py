from decimal import Decimal, InvalidOperation
from typing import Optional

from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.auth import get_closer_id_from_request
from core.config import logger
from core.database import get_db
from models.appointments import Appointment, OUTCOME_VALUES
from utils.commission import compute_commission
from utils.settings_store import load_settings
from utils.windows import utcnow

router = APIRouter(prefix="/api/closer", tags=["closer"])


class OutcomePayload(BaseModel):
    outcome: str
    saleValue: Optional[float] = None
    notes: Optional[str] = None


@router.put("/appointments/{appointment_id}/outcome")
async def closer_update_outcome(
    appointment_id: str,
    request: Request,
    payload: OutcomePayload,
    db: Session = Depends(get_db),
):
    """Record a call outcome; a new conversion credits the affiliate's commission."""
    closer_id = get_closer_id_from_request(request)
    if not closer_id:
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    outcome = (payload.outcome or "").strip()
    if outcome not in OUTCOME_VALUES:
        return JSONResponse({"error": f"Invalid outcome. Must be one of: {', '.join(OUTCOME_VALUES)}"}, status_code=400)

    sale_value = None
    if payload.saleValue is not None:
        try:
            sale_value = Decimal(str(payload.saleValue))
        except InvalidOperation:
            return JSONResponse({"error": "saleValue must be a number"}, status_code=400)
        if sale_value < 0:
            return JSONResponse({"error": "saleValue cannot be negative"}, status_code=400)

    appt = db.query(Appointment).filter(Appointment.id == appointment_id).first()
    if not appt:
        return JSONResponse({"error": "Appointment not found"}, status_code=404)
    if appt.closer_id and appt.closer_id != closer_id:
        return JSONResponse({"error": "Appointment is assigned to another closer"}, status_code=403)

    settings = load_settings(db)
    now = utcnow()
    previous = appt.outcome
    entering_success = outcome == settings.success_outcome and previous != settings.success_outcome
    if entering_success and (sale_value if sale_value is not None else appt.sale_value) is None:
        return JSONResponse({"error": "saleValue is required for a converted outcome"}, status_code=400)

    try:
        appt.outcome = outcome
        if sale_value is not None:
            appt.sale_value = sale_value
        if payload.notes is not None:
            appt.notes = payload.notes
        if not appt.closer_id:
            appt.closer_id = closer_id
        if outcome in settings.terminal_outcomes:
            if previous not in settings.terminal_outcomes or appt.closed_at is None:
                appt.closed_at = now
        else:
            appt.closed_at = None
        appt.updated_at = now
        db.commit()
        db.refresh(appt)
    except Exception as ex:
        db.rollback()
        logger.exception(f"[closer.outcome] appointment={appointment_id}: {ex}")
        return JSONResponse({"error": "Failed to update appointment"}, status_code=500)

    logger.info(f"[closer.outcome] appointment={appointment_id} closer={closer_id} {previous}->{outcome}")
    body = {"success": True, "appointment": appt.to_dict()}

    if entering_success:
        try:
            result = compute_commission(db, appt, settings, now)
            body["commission"] = result.to_dict()
        except Exception as ex:
            # The outcome stays recorded; the missing commission is flagged for admins
            logger.error(f"[closer.outcome] COMMISSION NOT RECORDED appointment={appointment_id}: {ex}")
            body["commission"] = {"credited": False, "error": "commission_not_recorded"}
    return body
