"""Hourly pre-aggregated counters read by the dashboards.

``source_key`` mirrors marketing_source_id with 0 for "no source" so the
unique keys also collide for unattributed calls (NULLs never conflict).
"""

from sqlalchemy import Column, ForeignKey, Integer, String, UniqueConstraint

from ..database import UTCDateTime, utcnow
from .base import Base


class CallVolumeHourly(Base):
    __tablename__ = "call_volume_hourly"
    id = Column(Integer, primary_key=True)
    business_id = Column(
        Integer, ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False
    )
    marketing_source_id = Column(Integer)
    source_key = Column(Integer, nullable=False, default=0)
    bucket_start_utc = Column(UTCDateTime, nullable=False)
    total_calls = Column(Integer, nullable=False, default=0)
    total_seconds = Column(Integer, nullable=False, default=0)
    updated_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "business_id", "source_key", "bucket_start_utc",
            name="uq_call_volume_hourly_key",
        ),
    )


class CallDepartmentHourlyKpi(Base):
    __tablename__ = "call_department_hourly_kpi"
    id = Column(Integer, primary_key=True)
    business_id = Column(
        Integer, ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False
    )
    department = Column(String(16), nullable=False)
    marketing_source_id = Column(Integer)
    source_key = Column(Integer, nullable=False, default=0)
    bucket_start_utc = Column(UTCDateTime, nullable=False)
    total_calls = Column(Integer, nullable=False, default=0)
    connected_calls = Column(Integer, nullable=False, default=0)
    requested_appointments = Column(Integer, nullable=False, default=0)
    booked_appointments = Column(Integer, nullable=False, default=0)
    sentiment_sum = Column(Integer, nullable=False, default=0)
    sentiment_count = Column(Integer, nullable=False, default=0)
    total_seconds = Column(Integer, nullable=False, default=0)
    updated_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "business_id", "department", "source_key", "bucket_start_utc",
            name="uq_call_department_hourly_kpi_key",
        ),
    )
