"""
Affiliate models
- affiliates: identity, commission terms and denormalized counters
- affiliate_clicks: one row per counted attributed visit
- affiliate_conversions: lead/booking/sale events and their commission
- affiliate_payouts: payouts recorded against available commission
"""
import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, String, Integer, Boolean, DateTime, Text, Numeric, ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import relationship

from core.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class ConversionType(str, enum.Enum):
    LEAD = "lead"
    BOOKING = "booking"
    SALE = "sale"


class CommissionStatus(str, enum.Enum):
    HELD = "held"
    AVAILABLE = "available"
    PAID = "paid"


class Affiliate(Base):
    __tablename__ = "affiliates"

    id = Column(String(64), primary_key=True, default=_uuid)

    # Identity
    name = Column(String(255), nullable=True)
    email = Column(String(255), nullable=True, index=True)

    # Referral
    referral_code = Column(String(100), unique=True, index=True, nullable=False)
    # Stored as "/path"; once set the referral_code path is retired for good
    custom_tracking_link = Column(String(255), unique=True, index=True, nullable=True)

    # Commission terms
    commission_rate = Column(Numeric(5, 4), nullable=False, default=0.2)

    # Aggregate counters (cache of raw events, mutated only by SQL-side increments)
    total_clicks = Column(Integer, nullable=False, default=0)
    total_leads = Column(Integer, nullable=False, default=0)
    total_bookings = Column(Integer, nullable=False, default=0)
    total_sales = Column(Integer, nullable=False, default=0)
    total_commission = Column(Numeric(12, 2), nullable=False, default=0)

    is_approved = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)

    # Audit
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    clicks = relationship("AffiliateClick", back_populates="affiliate")
    conversions = relationship("AffiliateConversion", back_populates="affiliate")

    @property
    def is_available(self) -> bool:
        return bool(self.is_approved) and bool(self.is_active)

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "referralCode": self.referral_code,
            "customTrackingLink": self.custom_tracking_link,
            "commissionRate": float(self.commission_rate or 0),
            "totalClicks": int(self.total_clicks or 0),
            "totalLeads": int(self.total_leads or 0),
            "totalBookings": int(self.total_bookings or 0),
            "totalSales": int(self.total_sales or 0),
            "totalCommission": float(self.total_commission or 0),
            "isApproved": bool(self.is_approved),
            "isActive": bool(self.is_active),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class AffiliateClick(Base):
    __tablename__ = "affiliate_clicks"
    __table_args__ = (
        Index("ix_affiliate_clicks_dedup", "affiliate_id", "user_agent", "created_at"),
    )

    id = Column(String(64), primary_key=True, default=_uuid)
    affiliate_id = Column(String(64), ForeignKey("affiliates.id"), index=True, nullable=False)
    referral_code = Column(String(100), nullable=False)  # snapshot at click time

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)

    utm_source = Column(String(255), nullable=True)
    utm_medium = Column(String(255), nullable=True)
    utm_campaign = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    affiliate = relationship("Affiliate", back_populates="clicks")


class AffiliateConversion(Base):
    __tablename__ = "affiliate_conversions"
    __table_args__ = (
        # One booking and one sale per appointment
        UniqueConstraint("appointment_id", "conversion_type", name="uq_affiliate_conversions_appointment_type"),
    )

    id = Column(String(64), primary_key=True, default=_uuid)
    affiliate_id = Column(String(64), ForeignKey("affiliates.id"), index=True, nullable=False)
    referral_code = Column(String(100), nullable=True)

    conversion_type = Column(String(20), nullable=False, default=ConversionType.LEAD.value, index=True)
    appointment_id = Column(String(64), nullable=True, index=True)

    sale_value = Column(Numeric(12, 2), nullable=True)
    # Fixed at creation using the rate in force at that moment
    commission_amount = Column(Numeric(12, 2), nullable=True)

    commission_status = Column(String(20), nullable=False, default=CommissionStatus.HELD.value, index=True)
    hold_started_at = Column(DateTime, nullable=True, index=True)
    released_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    payout_id = Column(String(64), ForeignKey("affiliate_payouts.id"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    affiliate = relationship("Affiliate", back_populates="conversions")

    def to_dict(self):
        return {
            "id": self.id,
            "affiliateId": self.affiliate_id,
            "referralCode": self.referral_code,
            "conversionType": self.conversion_type,
            "appointmentId": self.appointment_id,
            "saleValue": float(self.sale_value) if self.sale_value is not None else None,
            "commissionAmount": float(self.commission_amount) if self.commission_amount is not None else None,
            "commissionStatus": self.commission_status,
            "holdStartedAt": self.hold_started_at.isoformat() if self.hold_started_at else None,
            "releasedAt": self.released_at.isoformat() if self.released_at else None,
            "paidAt": self.paid_at.isoformat() if self.paid_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class AffiliatePayout(Base):
    __tablename__ = "affiliate_payouts"

    id = Column(String(64), primary_key=True, default=_uuid)
    affiliate_id = Column(String(64), ForeignKey("affiliates.id"), index=True, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String(20), nullable=False, default="completed")
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "affiliateId": self.affiliate_id,
            "amount": float(self.amount or 0),
            "status": self.status,
            "notes": self.notes,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
