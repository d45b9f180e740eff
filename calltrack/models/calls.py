"""Call records and the per-call recording processing ledger."""

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
)
from sqlalchemy.orm import relationship

from ..database import UTCDateTime, utcnow
from .base import Base
from .enums import CallDepartment, CallDirection, CallResult, CallStatus


class CallLog(Base):
    """One inbound call, keyed by the provider's call id.

    Created on the first voice webhook, then filled in by status webhooks
    and the recording pipeline. Never hard-deleted.
    """

    __tablename__ = "call_logs"
    id = Column(Integer, primary_key=True)
    business_id = Column(
        Integer, ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tracking_number_id = Column(
        Integer, ForeignKey("tracking_numbers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    marketing_source_id = Column(
        Integer, ForeignKey("marketing_sources.id", ondelete="SET NULL")
    )
    provider_call_id = Column(String(64), nullable=False, unique=True)
    direction = Column(String(10), nullable=False, default=CallDirection.INBOUND.value)
    status = Column(String(20), nullable=False, default=CallStatus.UNKNOWN.value)

    caller_number = Column(String(32))
    receiver_number = Column(String(32))
    call_started_at = Column(UTCDateTime, index=True)
    duration_seconds = Column(Integer)

    recording_url = Column(Text)
    recording_object_key = Column(Text)
    transcript_text = Column(Text)
    transcript_turns = Column(JSON)
    transcript_language = Column(String(16))
    transcript_duration_seconds = Column(Integer)

    result = Column(String(32), nullable=False, default=CallResult.NONE.value)
    intent = Column(String(32))
    department = Column(String(16), nullable=False, default=CallDepartment.NONE.value)
    sentiment = Column(SmallInteger)
    classified_at = Column(UTCDateTime)

    # Rollup claim markers; set once, in the same transaction as the increment
    volume_applied_at = Column(UTCDateTime)
    kpi_applied_at = Column(UTCDateTime)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    recording_job = relationship("RecordingJob", back_populates="call_log", uselist=False)

    __table_args__ = (
        CheckConstraint(
            "sentiment IS NULL OR (sentiment BETWEEN 1 AND 5)",
            name="chk_call_logs_sentiment",
        ),
        Index("ix_call_logs_source_started", "marketing_source_id", "call_started_at"),
    )


class RecordingJob(Base):
    """Processing state for one call's recording pipeline."""

    __tablename__ = "recording_jobs"
    id = Column(Integer, primary_key=True)
    call_log_id = Column(
        Integer, ForeignKey("call_logs.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    recording_url = Column(Text)
    attempts = Column(Integer, nullable=False, default=0)
    last_stage = Column(String(20))
    last_error = Column(Text)
    next_retry_at = Column(UTCDateTime)
    completed_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    call_log = relationship("CallLog", back_populates="recording_job")

    __table_args__ = (
        Index("ix_recording_jobs_due", "completed_at", "next_retry_at"),
    )
