"""
Appointment model
A booked call worked by a closer; its outcome drives commission
"""
import enum
import uuid
from datetime import datetime

from sqlalchemy import Column, String, Text, DateTime, Numeric

from core.database import Base


class CallOutcome(str, enum.Enum):
    PENDING = "pending"
    CONVERTED = "converted"
    NOT_INTERESTED = "not_interested"
    NEEDS_FOLLOW_UP = "needs_follow_up"
    WRONG_NUMBER = "wrong_number"
    NO_ANSWER = "no_answer"
    CALLBACK_REQUESTED = "callback_requested"
    RESCHEDULED = "rescheduled"


OUTCOME_VALUES = [o.value for o in CallOutcome]


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    closer_id = Column(String(64), nullable=True, index=True)

    # Referral code snapshot read from the tracking cookie at booking time
    affiliate_code = Column(String(100), nullable=True, index=True)

    customer_name = Column(String(255), nullable=True)
    customer_email = Column(String(255), nullable=True, index=True)
    scheduled_at = Column(DateTime, nullable=True)

    outcome = Column(String(40), nullable=False, default=CallOutcome.PENDING.value, index=True)
    sale_value = Column(Numeric(12, 2), nullable=True)
    notes = Column(Text, nullable=True)

    # Set when the outcome enters a terminal outcome; starts the commission hold clock
    closed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def to_dict(self):
        return {
            "id": self.id,
            "closerId": self.closer_id,
            "affiliateCode": self.affiliate_code,
            "customerName": self.customer_name,
            "customerEmail": self.customer_email,
            "scheduledAt": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "outcome": self.outcome,
            "saleValue": float(self.sale_value) if self.sale_value is not None else None,
            "notes": self.notes,
            "closedAt": self.closed_at.isoformat() if self.closed_at else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
