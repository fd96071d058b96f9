"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database, recreated for every test
- Factories for affiliates, quiz sessions and appointments
- FastAPI TestClient with get_db bound to the test session
"""
import os
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Generator, Optional

# Must be set before core.config is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ADMIN_SECRET"] = "test-admin-secret"
os.environ["ADMIN_ALLOWLIST_IPS"] = ""
os.environ["AFFILIATE_JWT_SECRET"] = "test-affiliate-secret"
os.environ["CLOSER_JWT_SECRET"] = "test-closer-secret"
os.environ["TRACKING_COOKIE_SECRET"] = "test-cookie-secret"
os.environ["STATS_TIMEZONE"] = "UTC"
os.environ["REDIS_URL"] = ""
os.environ["TRACKING_RATE_LIMIT"] = "100000"
os.environ["ADMIN_RATE_LIMIT"] = "100000"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

from core.database import Base, SessionLocal, engine, get_db, init_db
from models.affiliates import Affiliate
from models.appointments import Appointment
from models.quiz import QuizSession, STATUS_COMPLETED

ADMIN_HEADERS = {"X-Admin-Secret": "test-admin-secret"}


# =============================================================================
# Database
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    init_db()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


# =============================================================================
# Factories
# =============================================================================

def make_affiliate(
    db: Session,
    code: str = "abc",
    rate: float = 0.2,
    approved: bool = True,
    active: bool = True,
    custom_link: Optional[str] = None,
    affiliate_id: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> Affiliate:
    affiliate = Affiliate(
        id=affiliate_id or str(uuid.uuid4()),
        name=f"Affiliate {code}",
        email=f"{code}@example.com",
        referral_code=code,
        custom_tracking_link=custom_link,
        commission_rate=Decimal(str(rate)),
        is_approved=approved,
        is_active=active,
    )
    if created_at:
        affiliate.created_at = created_at
    db.add(affiliate)
    db.commit()
    db.refresh(affiliate)
    return affiliate


def make_lead(
    db: Session,
    code: Optional[str],
    completed_at: Optional[datetime],
    created_at: Optional[datetime] = None,
    status: str = STATUS_COMPLETED,
    quiz_type: str = "money-personality",
) -> QuizSession:
    session = QuizSession(
        quiz_type=quiz_type,
        affiliate_code=code,
        status=status,
        created_at=created_at or completed_at,
        completed_at=completed_at,
    )
    db.add(session)
    db.commit()
    return session


def make_appointment(
    db: Session,
    code: Optional[str] = "abc",
    sale_value=None,
    closed_at: Optional[datetime] = None,
    outcome: str = "pending",
) -> Appointment:
    appt = Appointment(
        affiliate_code=code,
        customer_name="Jordan Client",
        customer_email="jordan@example.com",
        outcome=outcome,
        sale_value=Decimal(str(sale_value)) if sale_value is not None else None,
        closed_at=closed_at,
    )
    db.add(appt)
    db.commit()
    db.refresh(appt)
    return appt


# =============================================================================
# HTTP client
# =============================================================================

@pytest.fixture(scope="function")
def client(db: Session) -> Generator[TestClient, None, None]:
    from main import app

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
