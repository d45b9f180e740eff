"""Tracking numbers and their forwarding routes.

Status is authoritative on both tables; ``deleted_at`` on routes is only a
query-filter convenience.
"""

from sqlalchemy import (
    JSON,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    text,
)
from sqlalchemy.orm import relationship

from ..database import UTCDateTime, utcnow
from .base import Base
from .enums import NumberRouteStatus, TrackingNumberStatus


class TrackingNumber(Base):
    __tablename__ = "tracking_numbers"
    id = Column(Integer, primary_key=True)
    business_id = Column(
        Integer, ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, index=True
    )
    marketing_source_id = Column(
        Integer, ForeignKey("marketing_sources.id", ondelete="SET NULL"), index=True
    )
    number = Column(String(32), nullable=False)
    provider_number_id = Column(String(64))
    status = Column(String(20), nullable=False, default=TrackingNumberStatus.ACTIVE.value)
    purchased_at = Column(UTCDateTime)
    released_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow)

    routes = relationship("NumberRoute", back_populates="tracking_number")

    __table_args__ = (
        # A number can be re-leased after release, so uniqueness ignores released rows
        Index(
            "uq_tracking_numbers_number_live",
            "number",
            unique=True,
            postgresql_where=text("status <> 'released'"),
            sqlite_where=text("status <> 'released'"),
        ),
        Index("ix_tracking_numbers_business_status", "business_id", "status"),
    )


class NumberRoute(Base):
    __tablename__ = "number_routes"
    id = Column(Integer, primary_key=True)
    tracking_number_id = Column(
        Integer, ForeignKey("tracking_numbers.id", ondelete="CASCADE"), nullable=False
    )
    status = Column(String(20), nullable=False, default=NumberRouteStatus.ACTIVE.value)
    forwarding_voice_number = Column(String(32))
    effective_from = Column(UTCDateTime)
    effective_to = Column(UTCDateTime)
    routing_rules = Column(JSON)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow)
    deleted_at = Column(UTCDateTime)

    tracking_number = relationship("TrackingNumber", back_populates="routes")

    __table_args__ = (
        Index(
            "uq_number_routes_active_per_number",
            "tracking_number_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )
