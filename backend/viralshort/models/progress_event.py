"""Append-only diagnostic log of progress reports."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Float, Text

from viralshort.db.database import Base


class ProgressEventLog(Base):
    """One row per progress report, kept for offline debugging."""

    __tablename__ = "progress_events"

    id = Column(Integer, primary_key=True, index=True)
    session_key = Column(String(2048), nullable=False, index=True)
    stage = Column(String(32), nullable=False)
    percent = Column(Float, default=0.0, nullable=False)
    message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<ProgressEventLog(session={self.session_key}, stage={self.stage}, percent={self.percent})>"
