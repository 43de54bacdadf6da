"""Persistent cache for gateway results so repeated requests do not call Gemini again."""
from datetime import datetime
from sqlalchemy import Column, String, Text, DateTime
from healthlens.database import Base


class AnalysisCacheEntry(Base):
    __tablename__ = "analysis_cache"

    cache_key = Column(String(255), primary_key=True)  # e.g. loc:v5:12.9716:77.5946:en-us
    payload = Column(Text, nullable=False)  # JSON snapshot of the result
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
