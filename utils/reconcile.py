"""
Counter reconciliation
Recomputes the denormalized affiliate counters from raw events and reports drift.
"""
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import func
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from core.config import logger
from core.errors import DataStoreUnavailable
from models.affiliates import Affiliate, AffiliateClick, AffiliateConversion, ConversionType
from utils.leads import count_leads
from utils.windows import EPOCH, utcnow

COUNTERS = ("total_clicks", "total_leads", "total_bookings", "total_sales", "total_commission")


def _count_conversions(db: Session, affiliate_id: str, conversion_type: str) -> int:
    return (
        db.query(AffiliateConversion)
        .filter(AffiliateConversion.affiliate_id == affiliate_id)
        .filter(AffiliateConversion.conversion_type == conversion_type)
        .count()
    )


def calculate_totals(db: Session, affiliate: Affiliate) -> Dict[str, Any]:
    clicks = db.query(AffiliateClick).filter(AffiliateClick.affiliate_id == affiliate.id).count()
    commission = (
        db.query(func.coalesce(func.sum(AffiliateConversion.commission_amount), 0))
        .filter(AffiliateConversion.affiliate_id == affiliate.id)
        .scalar()
    )
    return {
        "total_clicks": clicks,
        "total_leads": count_leads(db, EPOCH, utcnow(), affiliate=affiliate).total_leads,
        "total_bookings": _count_conversions(db, affiliate.id, ConversionType.BOOKING.value),
        "total_sales": _count_conversions(db, affiliate.id, ConversionType.SALE.value),
        "total_commission": Decimal(str(commission or 0)).quantize(Decimal("0.01")),
    }


def _stored_totals(affiliate: Affiliate) -> Dict[str, Any]:
    return {
        "total_clicks": int(affiliate.total_clicks or 0),
        "total_leads": int(affiliate.total_leads or 0),
        "total_bookings": int(affiliate.total_bookings or 0),
        "total_sales": int(affiliate.total_sales or 0),
        "total_commission": Decimal(str(affiliate.total_commission or 0)).quantize(Decimal("0.01")),
    }


def _jsonable(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: float(v) if isinstance(v, Decimal) else v for k, v in values.items()}


def recount_affiliate(db: Session, affiliate: Affiliate, apply: bool = False) -> Dict[str, Any]:
    """Compare stored counters with recomputed ones; with apply=True overwrite them."""
    stored = _stored_totals(affiliate)
    calculated = calculate_totals(db, affiliate)
    drift = {k: True for k in COUNTERS if stored[k] != calculated[k]}
    result = {
        "affiliateId": affiliate.id,
        "referralCode": affiliate.referral_code,
        "stored": _jsonable(stored),
        "calculated": _jsonable(calculated),
        "drifted": sorted(drift),
        "hasDrift": bool(drift),
        "applied": False,
    }
    if apply and drift:
        try:
            db.query(Affiliate).filter(Affiliate.id == affiliate.id).update(
                {getattr(Affiliate, k): calculated[k] for k in COUNTERS},
                synchronize_session=False,
            )
            db.commit()
        except DBAPIError as ex:
            db.rollback()
            raise DataStoreUnavailable(str(ex)) from ex
        result["applied"] = True
        logger.info(f"[reconcile] corrected affiliate={result['referralCode']} fields={result['drifted']}")
    return result


def recount_all(db: Session, apply: bool = False) -> List[Dict[str, Any]]:
    affiliates = db.query(Affiliate).order_by(Affiliate.created_at.asc()).all()
    results = [recount_affiliate(db, a, apply=apply) for a in affiliates]
    drifted = sum(1 for r in results if r["hasDrift"])
    logger.info(f"[reconcile] checked={len(results)} drifted={drifted} apply={apply}")
    return results
