"""
call_gateway.py — Twilio call lifecycle webhooks

Turns signed Twilio webhooks into CallLog rows, routing TwiML and rollups.

Business Rules:
- Every webhook is signature-checked before any lookup or write
- Voice: the dialed number must be an active tracking number with an active
  route that has a forwarding number, otherwise a generic decline TwiML
- Voice: a redelivered CallSid hits the unique key and is a no-op; the
  forwarding TwiML is returned either way
- Status: unknown strings map to "unknown"; busy/failed/no-answer/canceled
  set result=not_connected and roll up volume + KPIs; completed rolls up
  volume only, plus KPIs when the recording was already classified
- A terminal status is never overwritten by a late non-terminal one
- Status/recording events for a call we have not seen yet create the
  CallLog from the dialed number so out-of-order delivery converges
- Recording: only RecordingStatus=completed (or absent) is acted on

Called by: routers/twilio.py
Depends on: connectors/telephony.py, services/call_log_service.py,
            services/provisioning_service.py, services/rollup_service.py
"""

import logging
from dataclasses import dataclass
from typing import Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..connectors.telephony import RECORDING_PATH, STATUS_PATH, VOICE_PATH
from ..database import utcnow
from ..exceptions import ConflictError
from ..models import CallLog
from ..models.enums import (
    NOT_CONNECTED_STATUSES,
    TERMINAL_CALL_STATUSES,
    CallDirection,
    CallResult,
    CallStatus,
)
from . import call_log_service, rollup_service
from .provisioning_service import active_route, find_active_by_number
from .recording_pipeline import get_or_create_job

log = logging.getLogger("calltrack.gateway")

_KNOWN_STATUSES = {s.value for s in CallStatus}


def map_call_status(raw: str | None) -> CallStatus:
    value = (raw or "").strip().lower()
    return CallStatus(value) if value in _KNOWN_STATUSES else CallStatus.UNKNOWN


def parse_duration(raw: str | None) -> int:
    try:
        return max(0, int(raw))
    except (TypeError, ValueError):
        return 0


@dataclass
class RecordingReady:
    provider_call_id: str
    recording_url: str


class CallGateway:
    def __init__(self, db: Session, telephony):
        self.db = db
        self.telephony = telephony

    # ── Resolution ──────────────────────────────────────────────────────

    def _resolve(self, dialed: str):
        tn = find_active_by_number(self.db, dialed) if dialed else None
        if tn is None:
            return None, None
        route = active_route(self.db, tn.id)
        if route is None or not route.forwarding_voice_number:
            return tn, None
        return tn, route

    def _create_call(self, params: Mapping[str, str], tn, route, status: CallStatus) -> CallLog | None:
        sid = params.get("CallSid", "")
        try:
            return call_log_service.create_by_provider_id(
                self.db,
                sid,
                business_id=tn.business_id,
                tracking_number_id=tn.id,
                marketing_source_id=tn.marketing_source_id,
                caller_number=params.get("From") or None,
                receiver_number=route.forwarding_voice_number if route else None,
                direction=CallDirection.INBOUND.value,
                status=status.value,
                call_started_at=utcnow(),
            )
        except ConflictError:
            log.info(f"Duplicate voice webhook for {sid}; call log already exists")
            return None

    def _find_or_create(self, params: Mapping[str, str]) -> CallLog | None:
        sid = params.get("CallSid", "")
        call = call_log_service.find_by_provider_id(self.db, sid)
        if call is not None:
            return call
        tn, route = self._resolve(params.get("To", ""))
        if tn is None:
            log.warning(f"Webhook for unknown call {sid} to unrecognized number")
            return None
        log.info(f"Creating call log for {sid} from an out-of-order webhook")
        self._create_call(params, tn, route, CallStatus.UNKNOWN)
        return call_log_service.find_by_provider_id(self.db, sid)

    # ── Webhooks ────────────────────────────────────────────────────────

    def on_voice_start(self, params: Mapping[str, str], signature: str | None) -> str:
        """Return TwiML: forward to the route's number, or decline."""
        self.telephony.validate_signature(VOICE_PATH, params, signature)

        dialed = params.get("To", "")
        try:
            tn, route = self._resolve(dialed)
        except SQLAlchemyError as e:
            self.db.rollback()
            log.error(f"Number lookup failed for {dialed}: {e}")
            return self.telephony.decline_twiml()
        if tn is None or route is None:
            log.warning(f"Voice webhook for unrecognized number {dialed}")
            return self.telephony.decline_twiml()

        self._create_call(params, tn, route, CallStatus.IN_PROGRESS)
        return self.telephony.forward_twiml(route.forwarding_voice_number, tn.number)

    def on_status_change(self, params: Mapping[str, str], signature: str | None) -> CallLog | None:
        self.telephony.validate_signature(STATUS_PATH, params, signature)

        sid = params.get("CallSid", "")
        status = map_call_status(params.get("CallStatus"))
        call = self._find_or_create(params)
        if call is None:
            return None

        current = map_call_status(call.status)
        if current in TERMINAL_CALL_STATUSES and status not in TERMINAL_CALL_STATUSES:
            log.info(f"Ignoring late {status.value} for {sid}; already {current.value}")
            return call

        fields: dict = {"status": status.value}
        if status in TERMINAL_CALL_STATUSES:
            fields["duration_seconds"] = parse_duration(params.get("CallDuration"))
        if status in NOT_CONNECTED_STATUSES:
            fields["result"] = CallResult.NOT_CONNECTED.value
        call = call_log_service.update_by_provider_id(self.db, sid, **fields)

        if status in NOT_CONNECTED_STATUSES:
            rollup_service.apply_volume(self.db, call)
            rollup_service.apply_department_kpis(self.db, call)
        elif status == CallStatus.COMPLETED:
            rollup_service.apply_volume(self.db, call)
            if call.classified_at is not None:
                # Recording was classified before this status arrived
                rollup_service.apply_department_kpis(self.db, call)
        return call

    def on_recording_ready(self, params: Mapping[str, str], signature: str | None) -> RecordingReady | None:
        """Persist the recording reference; returns what the pipeline should process."""
        self.telephony.validate_signature(RECORDING_PATH, params, signature)

        sid = params.get("CallSid", "")
        recording_status = (params.get("RecordingStatus") or "").lower()
        if recording_status and recording_status != "completed":
            log.debug(f"Recording {recording_status} for {sid}; waiting for completed")
            return None

        recording_url = params.get("RecordingUrl") or ""
        if not recording_url:
            return None

        call = self._find_or_create(params)
        if call is None:
            return None
        call = call_log_service.update_by_provider_id(self.db, sid, recording_url=recording_url)
        get_or_create_job(self.db, call, recording_url)
        return RecordingReady(provider_call_id=sid, recording_url=recording_url)
