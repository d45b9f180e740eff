"""
conftest.py — Shared Test Fixtures for CallTrack

Provides an in-memory SQLite database, a FastAPI TestClient with tenant and
connector overrides, factory fixtures for the core models, and in-memory
stand-ins for the storage, speech-to-text and LLM connectors.

Business Rules:
- All tests run against an isolated in-memory DB
- Tenant auth is overridden to the `business` fixture
- Twilio signatures are computed with the SDK's RequestValidator, so the
  real validation path runs
- No network: every outbound connector is a fake or an AsyncMock

Called by: all test files via pytest autodiscovery
Depends on: calltrack.models (Base), calltrack.database (get_db), calltrack.dependencies
"""

import os
os.environ["TESTING"] = "1"  # Must be set before importing calltrack modules

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from twilio.request_validator import RequestValidator

from calltrack.connectors.telephony import TwilioGateway
from calltrack.connectors.transcription import RawTranscript, Utterance
from calltrack.models import Base, Business, CallLog, MarketingSource, NumberRoute, TrackingNumber
from calltrack.models.enums import (
    CallDirection,
    CallStatus,
    NumberRouteStatus,
    TrackingNumberStatus,
)
from calltrack.services.analysis_service import ROLES_SCHEMA, CallAnalyzer

# ── In-memory SQLite engine ──────────────────────────────────────────

TEST_DB_URL = "sqlite://"

engine = create_engine(
    TEST_DB_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@event.listens_for(engine, "connect")
def _enable_fk(dbapi_conn, _):
    """SQLite ignores FKs by default; turn them on."""
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


TWILIO_SID = "AC00000000000000000000000000000000"
TWILIO_TOKEN = "test-auth-token"
WEBHOOK_BASE = "https://calls.example.com"

TRACKING_NUMBER = "+15550001111"
FORWARD_TO = "+15559990000"
CALLER = "+15551234567"


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def db_session():
    """Create all tables, yield a session, then tear down."""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def business(db_session: Session) -> Business:
    """A dealership with room for three tracking numbers."""
    b = Business(name="Lakeside Motors", timezone="America/New_York", max_tracking_numbers=3)
    db_session.add(b)
    db_session.commit()
    db_session.refresh(b)
    return b


@pytest.fixture()
def other_business(db_session: Session) -> Business:
    b = Business(name="Hilltop Auto", timezone="UTC", max_tracking_numbers=3)
    db_session.add(b)
    db_session.commit()
    db_session.refresh(b)
    return b


@pytest.fixture()
def marketing_source(db_session: Session, business: Business) -> MarketingSource:
    src = MarketingSource(business_id=business.id, name="Google Ads", channel="ppc")
    db_session.add(src)
    db_session.commit()
    db_session.refresh(src)
    return src


@pytest.fixture()
def tracking_number(
    db_session: Session, business: Business, marketing_source: MarketingSource
) -> TrackingNumber:
    """An active tracking number with an active forwarding route; counts against capacity."""
    now = datetime.now(timezone.utc)
    tn = TrackingNumber(
        business_id=business.id,
        marketing_source_id=marketing_source.id,
        number=TRACKING_NUMBER,
        provider_number_id="PN11111111111111111111111111111111",
        status=TrackingNumberStatus.ACTIVE.value,
        purchased_at=now,
        created_at=now,
        updated_at=now,
    )
    db_session.add(tn)
    db_session.flush()
    db_session.add(
        NumberRoute(
            tracking_number_id=tn.id,
            status=NumberRouteStatus.ACTIVE.value,
            forwarding_voice_number=FORWARD_TO,
            effective_from=now,
            created_at=now,
            updated_at=now,
        )
    )
    business.tracking_numbers_used_count = 1
    db_session.commit()
    db_session.refresh(tn)
    return tn


@pytest.fixture()
def call_log(db_session: Session, tracking_number: TrackingNumber) -> CallLog:
    """An in-progress inbound call on the tracking number."""
    call = CallLog(
        provider_call_id="CA0001",
        business_id=tracking_number.business_id,
        tracking_number_id=tracking_number.id,
        marketing_source_id=tracking_number.marketing_source_id,
        caller_number=CALLER,
        receiver_number=FORWARD_TO,
        direction=CallDirection.INBOUND.value,
        status=CallStatus.IN_PROGRESS.value,
        call_started_at=datetime(2026, 3, 4, 15, 42, 10, tzinfo=timezone.utc),
    )
    db_session.add(call)
    db_session.commit()
    db_session.refresh(call)
    return call


# ── Connector stand-ins ──────────────────────────────────────────────


@pytest.fixture()
def telephony() -> TwilioGateway:
    """Real gateway (signatures, TwiML) with the network-facing methods mocked."""
    gw = TwilioGateway(TWILIO_SID, TWILIO_TOKEN, WEBHOOK_BASE)
    gw.purchase = AsyncMock()
    gw.release = AsyncMock()
    gw.search_available = AsyncMock(return_value=[])
    gw.fetch_recording = AsyncMock()
    return gw


@pytest.fixture()
def sign():
    """sign(path, params) → X-Twilio-Signature value for the test gateway."""
    validator = RequestValidator(TWILIO_TOKEN)

    def _sign(path: str, params: dict) -> str:
        return validator.compute_signature(f"{WEBHOOK_BASE}{path}", params)

    return _sign


class FakeRecordingStore:
    """In-memory object store that counts calls."""

    def __init__(self):
        self.objects: dict[str, tuple[bytes, str]] = {}
        self.calls: list[str] = []

    async def exists(self, key):
        self.calls.append("exists")
        return key in self.objects

    async def upload(self, key, fileobj, content_type):
        self.calls.append("upload")
        self.objects[key] = (fileobj.read(), content_type)

    async def download(self, key):
        self.calls.append("download")
        return self.objects[key]

    async def signed_read_url(self, key, ttl_seconds=1800):
        self.calls.append("signed_read_url")
        return f"https://storage.example.com/{key}?X-Goog-Expires={ttl_seconds}"


@pytest.fixture()
def store() -> FakeRecordingStore:
    return FakeRecordingStore()


def sample_transcript() -> RawTranscript:
    return RawTranscript(
        utterances=[
            Utterance(start=0.0, end=2.1, transcript="Thanks for calling Lakeside Motors, this is Dana.", speaker=0),
            Utterance(start=2.5, end=6.0, transcript="Hi, I'd like to book a test drive for the blue SUV.", speaker=1),
            Utterance(start=6.4, end=9.0, transcript="Sure, we have it on the lot. Does Saturday at ten work?", speaker=0),
            Utterance(start=9.2, end=10.5, transcript="Saturday works, thanks!", speaker=1),
        ],
        duration=10.5,
        language="en",
    )


@pytest.fixture()
def transcriber():
    t = AsyncMock()
    t.transcribe_url = AsyncMock(return_value=sample_transcript())
    t.transcribe_bytes = AsyncMock(return_value=None)
    return t


@pytest.fixture()
def llm():
    """Structured-output LLM stub: answers the roles and classification prompts."""

    async def _answer(prompt, schema, **kwargs):
        if schema is ROLES_SCHEMA:
            return {"speaker0": "salesperson", "speaker1": "client"}
        return {
            "intent": "Appointment",
            "result": "AppointmentBooked",
            "department": "Sales",
            "sentiment": 4,
        }

    return AsyncMock(side_effect=_answer)


@pytest.fixture()
def analyzer(llm) -> CallAnalyzer:
    return CallAnalyzer(llm=llm)


# ── App client ───────────────────────────────────────────────────────


@pytest.fixture()
def pipeline_runs() -> list:
    return []


@pytest.fixture()
def pipeline_runner(pipeline_runs):
    """Stands in for the background pipeline; records (call id, recording url)."""

    async def _run(provider_call_id, recording_url=None):
        pipeline_runs.append((provider_call_id, recording_url))
        return "completed"

    return _run


@pytest.fixture()
def client(db_session: Session, business: Business, telephony, pipeline_runner) -> TestClient:
    """FastAPI TestClient with DB, tenant and connectors overridden."""
    from calltrack.database import get_db
    from calltrack.dependencies import get_pipeline_runner, get_telephony, require_tenant
    from calltrack.main import app

    def _override_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_db
    app.dependency_overrides[require_tenant] = lambda: business.id
    app.dependency_overrides[get_telephony] = lambda: telephony
    app.dependency_overrides[get_pipeline_runner] = lambda: pipeline_runner

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
