"""
test_routers_twilio.py — Tests for routers/twilio.py

Covers: form-encoded signed webhooks through the app, TwiML response
headers, 403 on bad signatures, background pipeline scheduling.

Called by: pytest
Depends on: conftest.py (client, sign, pipeline_runs, tracking_number, call_log)
"""

from calltrack.connectors.telephony import RECORDING_PATH, STATUS_PATH, VOICE_PATH
from calltrack.models import CallLog, CallVolumeHourly
from tests.conftest import CALLER, FORWARD_TO, TRACKING_NUMBER

RECORDING_URL = "https://api.twilio.com/2010-04-01/Accounts/AC0/Recordings/RE0001"


def _post(client, sign, path, params, signature=None):
    return client.post(
        path,
        data=params,
        headers={"X-Twilio-Signature": signature if signature is not None else sign(path, params)},
    )


def test_voice_returns_twiml(client, sign, db_session, tracking_number):
    params = {"CallSid": "CA0100", "To": TRACKING_NUMBER, "From": CALLER}

    resp = _post(client, sign, VOICE_PATH, params)

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/xml")
    assert resp.headers["cache-control"] == "no-store"
    assert f"<Number>{FORWARD_TO}</Number>" in resp.text
    assert db_session.query(CallLog).filter_by(provider_call_id="CA0100").count() == 1


def test_voice_bad_signature_is_403(client, sign, db_session, tracking_number):
    params = {"CallSid": "CA0100", "To": TRACKING_NUMBER, "From": CALLER}

    resp = _post(client, sign, VOICE_PATH, params, signature="forged")

    assert resp.status_code == 403
    assert resp.json()["error"] == "Invalid Twilio signature"
    assert db_session.query(CallLog).count() == 0


def test_voice_unknown_number_declines(client, sign, tracking_number):
    params = {"CallSid": "CA0100", "To": "+15550009999", "From": CALLER}

    resp = _post(client, sign, VOICE_PATH, params)

    assert resp.status_code == 200
    assert "Number not recognized." in resp.text


def test_call_status_ok(client, sign, db_session, call_log):
    params = {"CallSid": call_log.provider_call_id, "CallStatus": "completed", "CallDuration": "42"}

    resp = _post(client, sign, STATUS_PATH, params)

    assert resp.status_code == 200
    assert resp.text == "OK"
    assert db_session.query(CallVolumeHourly).one().total_seconds == 42


def test_recording_schedules_pipeline(client, sign, call_log, pipeline_runs):
    params = {"CallSid": call_log.provider_call_id, "RecordingUrl": RECORDING_URL, "RecordingStatus": "completed"}

    resp = _post(client, sign, RECORDING_PATH, params)

    assert resp.text == "OK"
    assert pipeline_runs == [(call_log.provider_call_id, RECORDING_URL)]


def test_recording_not_completed_does_not_schedule(client, sign, call_log, pipeline_runs):
    params = {"CallSid": call_log.provider_call_id, "RecordingUrl": RECORDING_URL, "RecordingStatus": "absent"}

    resp = _post(client, sign, RECORDING_PATH, params)

    assert resp.text == "OK"
    assert pipeline_runs == []
