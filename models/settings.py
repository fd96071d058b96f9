"""
Program settings stored as key/value rows.
The typed view lives in utils/settings_store.py
"""
from datetime import datetime

from sqlalchemy import Column, String, Text, DateTime

from core.database import Base


class Setting(Base):
    __tablename__ = "settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
