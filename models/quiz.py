"""
Quiz session model
Created by the quiz funnel; completion is reported back to count the lead
"""
import uuid
from datetime import datetime

from sqlalchemy import Column, String, Integer, DateTime, Index

from core.database import Base

STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"


class QuizSession(Base):
    __tablename__ = "quiz_sessions"
    __table_args__ = (
        Index("ix_quiz_sessions_affiliate_status", "affiliate_code", "status"),
    )

    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    quiz_type = Column(String(100), nullable=True)
    affiliate_code = Column(String(100), nullable=True, index=True)  # None = organic
    status = Column(String(20), nullable=False, default=STATUS_IN_PROGRESS)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    completed_at = Column(DateTime, nullable=True, index=True)
    total_points = Column(Integer, nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "quizType": self.quiz_type,
            "affiliateCode": self.affiliate_code,
            "status": self.status,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "totalPoints": self.total_points,
        }
