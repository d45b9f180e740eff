"""
rollup_service.py — Hourly call volume and department KPI aggregation

Buckets are UTC hour floors keyed by (business, marketing source[, department]).
Writes are upsert-increment: a key conflict adds to the existing counters.

Business Rules:
- Volume rollup runs when a call reaches a terminal status
- Department KPI rollup runs for not-connected calls and after classification
- Each rollup first claims a per-call marker (volume_applied_at / kpi_applied_at)
  with a conditional update; a lost claim means "already counted" and skips
  the increment. Claim and increment commit together.
- Tenant timezones apply only when reading (daily_volume)

Called by: services/call_gateway.py, services/recording_pipeline.py
Depends on: models (CallLog, Business, CallVolumeHourly, CallDepartmentHourlyKpi)
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..database import utcnow
from ..exceptions import NotFoundError, ValidationError, handle_db_error
from ..models import Business, CallDepartmentHourlyKpi, CallLog, CallVolumeHourly
from ..models.enums import CallDepartment, CallResult

log = logging.getLogger("calltrack.rollups")

_VOLUME_KEY = ["business_id", "source_key", "bucket_start_utc"]
_KPI_KEY = ["business_id", "department", "source_key", "bucket_start_utc"]


def hour_bucket(ts: datetime) -> datetime:
    """Floor a timestamp to its UTC hour."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def _insert_for(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"Upsert not supported on {dialect}")
    return insert


def _additive_upsert(db: Session, model, key: list[str], values: dict, counters: list[str]) -> None:
    insert = _insert_for(db)
    stmt = insert(model).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=key,
        set_={
            **{c: getattr(model, c) + getattr(stmt.excluded, c) for c in counters},
            "updated_at": stmt.excluded.updated_at,
        },
    )
    db.execute(stmt)


def _claim(db: Session, call: CallLog, marker) -> bool:
    claimed = (
        db.query(CallLog)
        .filter(CallLog.id == call.id, marker.is_(None))
        .update({marker: utcnow()})
    )
    return claimed == 1


def apply_volume(db: Session, call: CallLog) -> bool:
    """Add the call to its hourly volume bucket once. Returns False if skipped."""
    if not call.call_started_at:
        log.warning(f"Volume rollup skipped for {call.provider_call_id}: no call_started_at")
        return False

    try:
        if not _claim(db, call, CallLog.volume_applied_at):
            db.rollback()
            log.debug(f"Volume already counted for {call.provider_call_id}")
            return False
        _additive_upsert(
            db,
            CallVolumeHourly,
            _VOLUME_KEY,
            {
                "business_id": call.business_id,
                "marketing_source_id": call.marketing_source_id,
                "source_key": call.marketing_source_id or 0,
                "bucket_start_utc": hour_bucket(call.call_started_at),
                "total_calls": 1,
                "total_seconds": call.duration_seconds or 0,
                "updated_at": utcnow(),
            },
            ["total_calls", "total_seconds"],
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        handle_db_error(e, "Failed to update call volume rollup")
    return True


def kpi_increments(call: CallLog) -> dict:
    """Counter deltas one call contributes to its department KPI bucket."""
    result = call.result or CallResult.NONE.value
    has_sentiment = call.sentiment is not None
    return {
        "total_calls": 1,
        "connected_calls": 0 if result == CallResult.NOT_CONNECTED else 1,
        "requested_appointments": 1 if result == CallResult.APPOINTMENT_REQUESTED else 0,
        "booked_appointments": 1 if result == CallResult.APPOINTMENT_BOOKED else 0,
        "sentiment_sum": call.sentiment if has_sentiment else 0,
        "sentiment_count": 1 if has_sentiment else 0,
        "total_seconds": call.duration_seconds or 0,
    }


def apply_department_kpis(db: Session, call: CallLog) -> bool:
    """Add the call to its department KPI bucket once. Returns False if skipped."""
    if not call.call_started_at:
        log.warning(f"KPI rollup skipped for {call.provider_call_id}: no call_started_at")
        return False

    increments = kpi_increments(call)
    try:
        if not _claim(db, call, CallLog.kpi_applied_at):
            db.rollback()
            log.debug(f"KPIs already counted for {call.provider_call_id}")
            return False
        _additive_upsert(
            db,
            CallDepartmentHourlyKpi,
            _KPI_KEY,
            {
                "business_id": call.business_id,
                "department": call.department or CallDepartment.NONE.value,
                "marketing_source_id": call.marketing_source_id,
                "source_key": call.marketing_source_id or 0,
                "bucket_start_utc": hour_bucket(call.call_started_at),
                "updated_at": utcnow(),
                **increments,
            },
            list(increments),
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        handle_db_error(e, "Failed to update department KPI rollup")
    return True


# ── Read side ───────────────────────────────────────────────────────────


def local_day_range(tz_name: str, day: date) -> tuple[datetime, datetime]:
    """UTC [start, end) covering one calendar day in the given IANA timezone."""
    try:
        tz = ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValidationError(f"Unknown timezone: {tz_name}") from e
    start = datetime.combine(day, time.min, tzinfo=tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def daily_volume(db: Session, business_id: int, day: date) -> dict:
    """Sum hourly volume buckets over the tenant's local calendar day."""
    business = db.get(Business, business_id)
    if business is None:
        raise NotFoundError("Business not found")

    start, end = local_day_range(business.timezone, day)
    total_calls, total_seconds = (
        db.query(
            func.coalesce(func.sum(CallVolumeHourly.total_calls), 0),
            func.coalesce(func.sum(CallVolumeHourly.total_seconds), 0),
        )
        .filter(
            CallVolumeHourly.business_id == business_id,
            CallVolumeHourly.bucket_start_utc >= start,
            CallVolumeHourly.bucket_start_utc < end,
        )
        .one()
    )
    return {
        "date": day.isoformat(),
        "timezone": business.timezone,
        "total_calls": int(total_calls),
        "total_seconds": int(total_seconds),
    }
