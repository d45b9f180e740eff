"""Tenant-side models — dealership businesses and their marketing sources.

Both are owned by collaborating modules; this service reads them and
mutates only ``tracking_numbers_used_count`` through guarded updates.
"""

from sqlalchemy import CheckConstraint, Column, ForeignKey, Integer, String

from ..database import UTCDateTime, utcnow
from .base import Base


class Business(Base):
    __tablename__ = "businesses"
    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")
    max_tracking_numbers = Column(Integer, nullable=False, default=10)
    tracking_numbers_used_count = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint(
            "max_tracking_numbers >= 0 AND max_tracking_numbers <= 10000",
            name="chk_businesses_max_tracking_numbers",
        ),
        CheckConstraint(
            "tracking_numbers_used_count >= 0 "
            "AND tracking_numbers_used_count <= max_tracking_numbers",
            name="chk_businesses_tracking_numbers_used",
        ),
    )


class MarketingSource(Base):
    __tablename__ = "marketing_sources"
    id = Column(Integer, primary_key=True)
    business_id = Column(
        Integer, ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String(200), nullable=False)
    channel = Column(String(50))
    created_at = Column(UTCDateTime, default=utcnow)
