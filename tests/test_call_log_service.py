"""
test_call_log_service.py — Tests for call-log store helpers and tenant-scoped lookups

Covers: create/update/find by provider call id (blank ids, duplicates,
missing rows, immutable fields) and find_owned tenant isolation.

Called by: pytest
Depends on: calltrack/services/call_log_service.py, calltrack/services/ownership.py
"""

import pytest

from calltrack.exceptions import ConflictError, NotFoundError, ValidationError
from calltrack.models import TrackingNumber
from calltrack.models.enums import CallStatus
from calltrack.services import call_log_service
from calltrack.services.ownership import find_owned


def _fields(tracking_number):
    return {
        "business_id": tracking_number.business_id,
        "tracking_number_id": tracking_number.id,
        "caller_number": "+15551230000",
        "receiver_number": "+15559990000",
        "status": CallStatus.RINGING,
    }


class TestCreate:
    def test_creates_row(self, db_session, tracking_number):
        call = call_log_service.create_by_provider_id(db_session, " CA9 ", **_fields(tracking_number))

        assert call.id is not None
        assert call.provider_call_id == "CA9"
        assert call_log_service.find_by_provider_id(db_session, "CA9").id == call.id

    def test_duplicate_is_conflict(self, db_session, call_log, tracking_number):
        with pytest.raises(ConflictError, match="Duplicate value"):
            call_log_service.create_by_provider_id(db_session, "CA0001", **_fields(tracking_number))

    @pytest.mark.parametrize("sid", ["", "   ", None])
    def test_blank_id_rejected(self, db_session, tracking_number, sid):
        with pytest.raises(ValidationError):
            call_log_service.create_by_provider_id(db_session, sid, **_fields(tracking_number))


class TestUpdate:
    def test_updates_fields(self, db_session, call_log):
        call = call_log_service.update_by_provider_id(
            db_session, "CA0001", status=CallStatus.COMPLETED, duration_seconds=42
        )
        assert call.status == CallStatus.COMPLETED
        assert call.duration_seconds == 42

    def test_immutable_fields_ignored(self, db_session, call_log):
        original_id = call_log.id

        call = call_log_service.update_by_provider_id(db_session, "CA0001", id=999, provider_call_id="CA-other")

        assert (call.id, call.provider_call_id) == (original_id, "CA0001")

    def test_missing_row(self, db_session):
        with pytest.raises(NotFoundError):
            call_log_service.update_by_provider_id(db_session, "CA-missing", status=CallStatus.BUSY)


def test_find_missing_returns_none(db_session):
    assert call_log_service.find_by_provider_id(db_session, "CA-missing") is None


class TestFindOwned:
    def test_owner_sees_row(self, db_session, tracking_number, business):
        assert find_owned(db_session, TrackingNumber, business.id, tracking_number.id) is tracking_number

    def test_other_tenant_gets_not_found(self, db_session, tracking_number, other_business):
        with pytest.raises(NotFoundError, match="Tracking number not found"):
            find_owned(db_session, TrackingNumber, other_business.id, tracking_number.id, label="Tracking number")
