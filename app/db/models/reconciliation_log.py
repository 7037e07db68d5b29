"""
Reconciliation run records
"""
import enum
from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, Text

from app.db.database import Base


class ReconciliationStatus(str, enum.Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class ReconciliationLog(Base):
    __tablename__ = "webhook_reconciliation_logs"

    id = Column(Integer, primary_key=True, index=True)
    job_id = Column(String(64), nullable=False, index=True)

    started_at = Column(DateTime, nullable=False, index=True)
    completed_at = Column(DateTime, nullable=True)
    status = Column(SQLEnum(ReconciliationStatus), nullable=False)

    queue_processed = Column(Integer, default=0, nullable=False)
    queue_failed = Column(Integer, default=0, nullable=False)
    dead_letter_pending = Column(Integer, default=0, nullable=False)
    dead_letter_write_failures = Column(Integer, default=0, nullable=False)
    stale_reset = Column(Integer, default=0, nullable=False)
    cleaned_up = Column(Integer, default=0, nullable=False)

    duration_ms = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
