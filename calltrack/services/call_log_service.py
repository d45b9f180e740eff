"""Call-log store — natural-key (provider call id) access to CallLog rows.

Business Rules:
- provider_call_id is the idempotency key; a duplicate create surfaces as Conflict
- Updates never touch id, provider_call_id or created_at
- Blank ids are rejected before touching the store

Called by: services/call_gateway.py, services/recording_pipeline.py
Depends on: models.CallLog, exceptions.handle_db_error
"""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..exceptions import NotFoundError, ValidationError, handle_db_error
from ..models import CallLog

log = logging.getLogger("calltrack.call_logs")

_IMMUTABLE_FIELDS = {"id", "provider_call_id", "created_at"}


def _require_id(provider_call_id: str | None) -> str:
    sid = (provider_call_id or "").strip()
    if not sid:
        raise ValidationError("provider_call_id is required")
    return sid


def find_by_provider_id(db: Session, provider_call_id: str) -> CallLog | None:
    sid = _require_id(provider_call_id)
    return db.query(CallLog).filter(CallLog.provider_call_id == sid).first()


def create_by_provider_id(db: Session, provider_call_id: str, **fields) -> CallLog:
    """Insert a CallLog; Conflict when the provider call id already exists."""
    sid = _require_id(provider_call_id)
    call = CallLog(provider_call_id=sid, **fields)
    db.add(call)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        handle_db_error(e, "Failed to create call log")
    db.refresh(call)
    return call


def update_by_provider_id(db: Session, provider_call_id: str, **fields) -> CallLog:
    """Apply ``fields`` to the CallLog with this provider call id and commit."""
    sid = _require_id(provider_call_id)
    call = db.query(CallLog).filter(CallLog.provider_call_id == sid).first()
    if call is None:
        raise NotFoundError(f"Call log {sid} not found")

    for key, value in fields.items():
        if key in _IMMUTABLE_FIELDS:
            continue
        setattr(call, key, value)
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        handle_db_error(e, "Failed to update call log")
    db.refresh(call)
    return call
