"""
Commission ledger

Sale commissions are fixed when an appointment converts and start in "held".
The hold clock starts at the appointment's closed_at; once commission_hold_days
have elapsed the commission is eligible and a release run flips it to
"available". Payouts mark available commissions "paid".

Affiliate counters are only ever changed with SQL-side increments.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, date
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Optional, List, Dict, Any

from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Session

from core.config import logger, COMMISSION_RELEASE_BATCH_SIZE
from core.errors import CommissionNotFound, CommissionNotHeld, DataStoreUnavailable, InvalidPayout
from models.affiliates import (
    Affiliate,
    AffiliateConversion,
    AffiliatePayout,
    CommissionStatus,
    ConversionType,
)
from models.appointments import Appointment
from utils.settings_store import AffiliateSettings, load_settings
from utils.windows import utcnow

CENT = Decimal("0.01")

REASON_CREDITED = "credited"
REASON_ALREADY_RECORDED = "already_recorded"
REASON_NO_AFFILIATE = "no_affiliate"
REASON_AFFILIATE_NOT_FOUND = "affiliate_not_found"
REASON_NO_SALE_VALUE = "no_sale_value"


@dataclass
class CommissionResult:
    credited: bool
    reason: str
    conversion_id: Optional[str] = None
    amount: Optional[Decimal] = None

    def to_dict(self):
        return {
            "credited": self.credited,
            "reason": self.reason,
            "conversionId": self.conversion_id,
            "amount": float(self.amount) if self.amount is not None else None,
        }


def to_money(value) -> Decimal:
    try:
        return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise ValueError(f"Not a monetary value: {value!r}")


def commission_for(sale_value, rate) -> Decimal:
    """sale_value * rate rounded half-up to cents."""
    return (Decimal(str(sale_value)) * Decimal(str(rate))).quantize(CENT, rounding=ROUND_HALF_UP)


def _hold_start():
    return func.coalesce(AffiliateConversion.hold_started_at, AffiliateConversion.created_at)


def _find_affiliate(db: Session, code: str) -> Optional[Affiliate]:
    return db.query(Affiliate).filter(Affiliate.referral_code == code).first()


# --- Creation ---

def compute_commission(
    db: Session,
    appointment: Appointment,
    settings: Optional[AffiliateSettings] = None,
    now: Optional[datetime] = None,
) -> CommissionResult:
    """
    Credit the sale commission for a converted appointment.
    Calling it again for the same appointment never creates a second commission.
    """
    now = now or utcnow()
    appointment_id = appointment.id
    code = (appointment.affiliate_code or "").strip()
    if not code:
        return CommissionResult(False, REASON_NO_AFFILIATE)

    existing = (
        db.query(AffiliateConversion.id)
        .filter(AffiliateConversion.appointment_id == appointment_id)
        .filter(AffiliateConversion.conversion_type == ConversionType.SALE.value)
        .first()
    )
    if existing:
        logger.info(f"[commission.compute] already recorded appointment={appointment_id} conversion={existing[0]}")
        return CommissionResult(False, REASON_ALREADY_RECORDED, conversion_id=existing[0])

    affiliate = _find_affiliate(db, code)
    if not affiliate:
        logger.warning(f"[commission.compute] unknown affiliate code={code} appointment={appointment_id}")
        return CommissionResult(False, REASON_AFFILIATE_NOT_FOUND)

    sale_value = appointment.sale_value
    if sale_value is None or Decimal(str(sale_value)) <= 0:
        return CommissionResult(False, REASON_NO_SALE_VALUE)

    amount = commission_for(sale_value, affiliate.commission_rate)
    affiliate_id = affiliate.id
    conversion = AffiliateConversion(
        affiliate_id=affiliate_id,
        referral_code=code,
        conversion_type=ConversionType.SALE.value,
        appointment_id=appointment_id,
        sale_value=to_money(sale_value),
        commission_amount=amount,
        commission_status=CommissionStatus.HELD.value,
        hold_started_at=appointment.closed_at or now,
        created_at=now,
    )
    try:
        db.add(conversion)
        db.flush()
        conversion_id = conversion.id
        db.query(Affiliate).filter(Affiliate.id == affiliate_id).update(
            {
                Affiliate.total_commission: Affiliate.total_commission + amount,
                Affiliate.total_sales: Affiliate.total_sales + 1,
            },
            synchronize_session=False,
        )
        db.commit()
    except IntegrityError:
        # Another request credited this appointment first
        db.rollback()
        logger.info(f"[commission.compute] lost race appointment={appointment_id}")
        return CommissionResult(False, REASON_ALREADY_RECORDED)
    except DBAPIError as ex:
        db.rollback()
        logger.error(f"[commission.compute] store failure appointment={appointment_id}: {ex}")
        raise DataStoreUnavailable(str(ex)) from ex

    hold_days = (settings or load_settings(db)).commission_hold_days
    logger.info(
        f"[commission.compute] credited affiliate={code} appointment={appointment_id} "
        f"amount={amount} hold_days={hold_days}"
    )
    return CommissionResult(True, REASON_CREDITED, conversion_id=conversion_id, amount=amount)


def record_booking(db: Session, appointment: Appointment, now: Optional[datetime] = None) -> Optional[str]:
    """
    Record the booking conversion for an attributed appointment.
    Returns the conversion id, or None when there is nothing to record.
    """
    now = now or utcnow()
    code = (appointment.affiliate_code or "").strip()
    if not code:
        return None
    affiliate = _find_affiliate(db, code)
    if not affiliate or not affiliate.is_active:
        logger.info(f"[commission.booking] affiliate not found or inactive code={code}")
        return None

    appointment_id = appointment.id
    existing = (
        db.query(AffiliateConversion.id)
        .filter(AffiliateConversion.appointment_id == appointment_id)
        .filter(AffiliateConversion.conversion_type == ConversionType.BOOKING.value)
        .first()
    )
    if existing:
        return existing[0]

    affiliate_id = affiliate.id
    conversion = AffiliateConversion(
        affiliate_id=affiliate_id,
        referral_code=code,
        conversion_type=ConversionType.BOOKING.value,
        appointment_id=appointment_id,
        sale_value=Decimal("0.00"),
        commission_amount=Decimal("0.00"),
        commission_status=CommissionStatus.HELD.value,
        created_at=now,
    )
    try:
        db.add(conversion)
        db.flush()
        conversion_id = conversion.id
        db.query(Affiliate).filter(Affiliate.id == affiliate_id).update(
            {Affiliate.total_bookings: Affiliate.total_bookings + 1},
            synchronize_session=False,
        )
        db.commit()
    except IntegrityError:
        db.rollback()
        return None
    except DBAPIError as ex:
        db.rollback()
        logger.error(f"[commission.booking] store failure appointment={appointment_id}: {ex}")
        raise DataStoreUnavailable(str(ex)) from ex
    logger.info(f"[commission.booking] recorded affiliate={code} appointment={appointment_id}")
    return conversion_id


# --- Status ---

def status_of(conversion: AffiliateConversion, settings: AffiliateSettings, now: Optional[datetime] = None) -> str:
    """held, available or paid; a held commission past its hold reports available."""
    now = now or utcnow()
    status = conversion.commission_status
    if status == CommissionStatus.PAID.value:
        return CommissionStatus.PAID.value
    if status == CommissionStatus.AVAILABLE.value:
        return CommissionStatus.AVAILABLE.value
    started = conversion.hold_started_at or conversion.created_at
    if now < started + timedelta(days=settings.commission_hold_days):
        return CommissionStatus.HELD.value
    return CommissionStatus.AVAILABLE.value


def _ready_query(db: Session, settings: AffiliateSettings, now: datetime):
    cutoff = now - timedelta(days=settings.commission_hold_days)
    return (
        db.query(AffiliateConversion)
        .filter(AffiliateConversion.commission_status == CommissionStatus.HELD.value)
        .filter(AffiliateConversion.commission_amount > 0)
        .filter(_hold_start() <= cutoff)
    )


def _sum_amount(db: Session, status: str) -> float:
    total = (
        db.query(func.coalesce(func.sum(AffiliateConversion.commission_amount), 0))
        .filter(AffiliateConversion.commission_status == status)
        .filter(AffiliateConversion.commission_amount > 0)
        .scalar()
    )
    return float(total or 0)


def _count_status(db: Session, status: str) -> int:
    return (
        db.query(AffiliateConversion)
        .filter(AffiliateConversion.commission_status == status)
        .filter(AffiliateConversion.commission_amount > 0)
        .count()
    )


def release_ready(db: Session, settings: Optional[AffiliateSettings] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Read-only overview of held commissions and what a release run would pick up."""
    now = now or utcnow()
    settings = settings or load_settings(db)
    missing = len(missing_commissions(db, settings))
    if missing:
        logger.error(f"[commission.status] {missing} converted appointments have no commission recorded")
    return {
        "ready_for_release": _ready_query(db, settings, now).count(),
        "total_held": _count_status(db, CommissionStatus.HELD.value),
        "total_available": _count_status(db, CommissionStatus.AVAILABLE.value),
        "held_amount": _sum_amount(db, CommissionStatus.HELD.value),
        "available_amount": _sum_amount(db, CommissionStatus.AVAILABLE.value),
        "hold_days": settings.commission_hold_days,
        "missing_commissions": missing,
        "current_date": now.isoformat(),
    }


def missing_commissions(db: Session, settings: Optional[AffiliateSettings] = None) -> List[Appointment]:
    """
    Converted appointments of a known affiliate with a sale value but no sale
    commission. These are sales whose commission failed to record.
    """
    settings = settings or load_settings(db)
    recorded = (
        select(AffiliateConversion.appointment_id)
        .where(AffiliateConversion.conversion_type == ConversionType.SALE.value)
        .where(AffiliateConversion.appointment_id.isnot(None))
    )
    return (
        db.query(Appointment)
        .join(Affiliate, Affiliate.referral_code == Appointment.affiliate_code)
        .filter(Appointment.outcome == settings.success_outcome)
        .filter(Appointment.sale_value > 0)
        .filter(Appointment.id.not_in(recorded))
        .order_by(Appointment.closed_at.asc(), Appointment.id.asc())
        .all()
    )


def retry_missing_commissions(
    db: Session,
    settings: Optional[AffiliateSettings] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Run compute_commission again for every appointment missing_commissions reports."""
    settings = settings or load_settings(db)
    results = []
    for appt in missing_commissions(db, settings):
        result = compute_commission(db, appt, settings, now)
        row = result.to_dict()
        row["appointmentId"] = appt.id
        results.append(row)
    credited = sum(1 for r in results if r["credited"])
    logger.info(f"[commission.retry_missing] checked={len(results)} credited={credited}")
    return {"checked": len(results), "credited": credited, "results": results}


# --- Release ---

def _release_one(db: Session, conversion_id: str, now: datetime) -> int:
    # Conditional update: only a row still held is flipped
    return (
        db.query(AffiliateConversion)
        .filter(AffiliateConversion.id == conversion_id)
        .filter(AffiliateConversion.commission_status == CommissionStatus.HELD.value)
        .update(
            {
                AffiliateConversion.commission_status: CommissionStatus.AVAILABLE.value,
                AffiliateConversion.released_at: now,
            },
            synchronize_session=False,
        )
    )


def process_releases(
    db: Session,
    settings: Optional[AffiliateSettings] = None,
    now: Optional[datetime] = None,
    batch_size: Optional[int] = None,
) -> Dict[str, Any]:
    """
    Flip held commissions whose hold elapsed to available, at most batch_size per call.
    Safe to run concurrently and repeatedly; total_commission is not touched.
    """
    now = now or utcnow()
    settings = settings or load_settings(db)
    limit = batch_size or COMMISSION_RELEASE_BATCH_SIZE

    candidates = (
        _ready_query(db, settings, now)
        .order_by(_hold_start().asc(), AffiliateConversion.id.asc())
        .with_entities(AffiliateConversion.id, AffiliateConversion.commission_amount)
        .limit(limit)
        .all()
    )

    released_ids: List[str] = []
    released_amount = Decimal("0")
    try:
        for conversion_id, amount in candidates:
            if _release_one(db, conversion_id, now) == 1:
                released_ids.append(conversion_id)
                released_amount += Decimal(str(amount or 0))
        db.commit()
    except DBAPIError as ex:
        db.rollback()
        logger.error(f"[commission.release] store failure: {ex}")
        raise DataStoreUnavailable(str(ex)) from ex

    remaining = _ready_query(db, settings, now).count()
    logger.info(
        f"[commission.release] released={len(released_ids)} amount={released_amount} remaining={remaining}"
    )
    return {
        "released_count": len(released_ids),
        "released_amount": float(released_amount),
        "released_ids": released_ids,
        "remaining": remaining,
        "current_date": now.isoformat(),
    }


def force_release(db: Session, conversion_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Admin override: release a held commission regardless of its hold."""
    now = now or utcnow()
    conversion = db.query(AffiliateConversion).filter(AffiliateConversion.id == conversion_id).first()
    if not conversion:
        raise CommissionNotFound("Commission not found")
    if conversion.commission_status != CommissionStatus.HELD.value:
        raise CommissionNotHeld(conversion_id, conversion.commission_status)
    try:
        updated = _release_one(db, conversion_id, now)
        db.commit()
    except DBAPIError as ex:
        db.rollback()
        raise DataStoreUnavailable(str(ex)) from ex
    if updated != 1:
        db.refresh(conversion)
        raise CommissionNotHeld(conversion_id, conversion.commission_status)
    logger.info(f"[commission.force_release] released conversion={conversion_id}")
    return {
        "success": True,
        "message": "Commission force-released successfully",
        "commissionId": conversion_id,
        "releasedAt": now.isoformat(),
    }


# --- Payouts ---

def _month_last_day(year: int, month: int) -> date:
    if month == 12:
        return date(year, 12, 31)
    return date(year, month + 1, 1) - timedelta(days=1)


def next_payout_date(schedule: str, today: date) -> date:
    """Next date (after today) on which the given payout schedule pays."""
    if schedule == "weekly":
        # Mondays
        return today + timedelta(days=(7 - today.weekday()) or 7)
    if schedule in ("monthly-1st", "quarterly"):
        y, m = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
        if schedule == "quarterly":
            while m not in (1, 4, 7, 10):
                y, m = (y + 1, 1) if m == 12 else (y, m + 1)
        return date(y, m, 1)
    if schedule == "monthly-15th":
        if today.day < 15:
            return date(today.year, today.month, 15)
        y, m = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
        return date(y, m, 15)
    if schedule == "monthly-last":
        last = _month_last_day(today.year, today.month)
        if today < last:
            return last
        y, m = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
        return _month_last_day(y, m)
    if schedule == "biweekly":
        # 1st and 15th
        if today.day < 15:
            return date(today.year, today.month, 15)
        y, m = (today.year + 1, 1) if today.month == 12 else (today.year, today.month + 1)
        return date(y, m, 1)
    raise ValueError(f"Unknown payout schedule: {schedule}")


def _sale_conversions(db: Session, affiliate_id: str) -> List[AffiliateConversion]:
    return (
        db.query(AffiliateConversion)
        .filter(AffiliateConversion.affiliate_id == affiliate_id)
        .filter(AffiliateConversion.commission_amount > 0)
        .order_by(_hold_start().asc(), AffiliateConversion.id.asc())
        .all()
    )


def _paid_out(db: Session, affiliate_id: str) -> Decimal:
    total = (
        db.query(func.coalesce(func.sum(AffiliatePayout.amount), 0))
        .filter(AffiliatePayout.affiliate_id == affiliate_id)
        .scalar()
    )
    return to_money(total or 0)


def _released(conversions, settings: AffiliateSettings, now: datetime) -> List[AffiliateConversion]:
    return [c for c in conversions if status_of(c, settings, now) != CommissionStatus.HELD.value]


def _sum_commission(conversions) -> Decimal:
    return sum((Decimal(str(c.commission_amount or 0)) for c in conversions), Decimal("0"))


def payout_balance(
    db: Session,
    affiliate: Affiliate,
    settings: Optional[AffiliateSettings] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Decimal]:
    """
    Money owed to an affiliate. Released commission (available or paid) minus
    every payout already recorded, so a partial payout is never paid twice.
    """
    now = now or utcnow()
    settings = settings or load_settings(db)
    conversions = _sale_conversions(db, affiliate.id)
    released = _released(conversions, settings, now)
    held = [c for c in conversions if c not in released]
    earned = _sum_commission(released)
    paid_out = _paid_out(db, affiliate.id)
    return {
        "held": _sum_commission(held),
        "earned": earned,
        "paid": paid_out,
        "available": max(earned - paid_out, Decimal("0")),
    }


def payout_summary(
    db: Session,
    affiliate: Affiliate,
    settings: Optional[AffiliateSettings] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or utcnow()
    settings = settings or load_settings(db)
    commissions = []
    for c in _sale_conversions(db, affiliate.id):
        started = c.hold_started_at or c.created_at
        row = c.to_dict()
        row["effectiveStatus"] = status_of(c, settings, now)
        row["availableAt"] = (started + timedelta(days=settings.commission_hold_days)).isoformat()
        commissions.append(row)

    payouts = (
        db.query(AffiliatePayout)
        .filter(AffiliatePayout.affiliate_id == affiliate.id)
        .order_by(AffiliatePayout.created_at.desc())
        .all()
    )
    balance = payout_balance(db, affiliate, settings, now)
    available = balance["available"]
    return {
        "heldAmount": float(balance["held"]),
        "availableAmount": float(available),
        "paidAmount": float(balance["paid"]),
        "minimumPayout": settings.minimum_payout,
        "payoutSchedule": settings.payout_schedule,
        "nextPayoutDate": next_payout_date(settings.payout_schedule, now.date()).isoformat(),
        "holdDays": settings.commission_hold_days,
        "eligibleForPayout": available > 0 and available >= to_money(settings.minimum_payout),
        "commissions": commissions,
        "payouts": [p.to_dict() for p in payouts],
    }


def record_payout(
    db: Session,
    affiliate: Affiliate,
    amount,
    notes: Optional[str] = None,
    settings: Optional[AffiliateSettings] = None,
    now: Optional[datetime] = None,
) -> AffiliatePayout:
    """
    Pay out part or all of the affiliate's balance.

    The amount is checked against released commission minus earlier payouts.
    Commissions are marked paid oldest first once the payouts to date cover
    them in full; a partly covered commission stays available.
    """
    now = now or utcnow()
    settings = settings or load_settings(db)
    try:
        amount = to_money(amount)
    except ValueError as ex:
        raise InvalidPayout(str(ex))
    if amount <= 0:
        raise InvalidPayout("Payout amount must be positive")
    minimum = to_money(settings.minimum_payout)
    if amount < minimum:
        raise InvalidPayout(f"Payout amount must be at least ${minimum}")

    affiliate_id = affiliate.id
    try:
        # Serializes concurrent payouts for the same affiliate
        db.query(Affiliate).filter(Affiliate.id == affiliate_id).with_for_update().first()
        released = _released(_sale_conversions(db, affiliate_id), settings, now)
        paid_out = _paid_out(db, affiliate_id)
        available = _sum_commission(released) - paid_out
        if amount > available:
            db.rollback()
            raise InvalidPayout(f"Payout amount exceeds available commission (${max(available, Decimal('0'))})")

        payout = AffiliatePayout(
            affiliate_id=affiliate_id,
            amount=amount,
            status="completed",
            notes=notes,
            created_at=now,
        )
        db.add(payout)
        db.flush()
        covered = paid_out + amount
        running = Decimal("0")
        marked = 0
        for c in released:
            running += Decimal(str(c.commission_amount))
            if running > covered:
                break
            if c.commission_status == CommissionStatus.PAID.value:
                continue
            c.commission_status = CommissionStatus.PAID.value
            c.paid_at = now
            c.payout_id = payout.id
            if c.released_at is None:
                c.released_at = now
            marked += 1
        db.commit()
    except DBAPIError as ex:
        db.rollback()
        logger.error(f"[commission.payout] store failure affiliate={affiliate_id}: {ex}")
        raise DataStoreUnavailable(str(ex)) from ex
    logger.info(
        f"[commission.payout] affiliate={affiliate_id} amount={amount} "
        f"balance_left={available - amount} marked_paid={marked}"
    )
    return payout
