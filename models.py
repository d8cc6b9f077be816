from sqlalchemy import Column, String, DateTime, Text
from db import Base
from datetime import datetime, timezone


def _utcnow():
    return datetime.now(timezone.utc)


class StoredValue(Base):
    """One key of the key-value backend. The link collection lives in a single row."""
    __tablename__ = "kv_store"

    key = Column(String(128), primary_key=True, index=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
