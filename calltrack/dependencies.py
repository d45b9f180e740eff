"""
dependencies.py — Shared FastAPI Dependencies

Tenant resolution plus the wiring that turns settings into connectors and
services. Routers import from here instead of building clients themselves;
tests swap any of these out via app.dependency_overrides.

Business Rules:
- require_tenant reads X-Tenant-Id (set by the upstream auth layer);
  missing → 401, non-integer → 400
- Connectors are process-wide singletons (lru_cache); services are built
  per request around the request's DB session
- The recording pipeline runner opens its own session because it runs
  after the webhook response has been sent

Called by: routers/numbers.py, routers/twilio.py, scheduler.py
Depends on: config, database, connectors/, services/
"""

import logging
from functools import lru_cache

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from .config import settings
from .connectors.storage import RecordingStore
from .connectors.telephony import TwilioGateway
from .connectors.transcription import DeepgramClient
from .database import SessionLocal, get_db
from .services.analysis_service import CallAnalyzer
from .services.call_gateway import CallGateway
from .services.provisioning_service import NumberProvisioner
from .services.recording_pipeline import RecordingPipeline

log = logging.getLogger("calltrack.dependencies")


# ── Tenant ────────────────────────────────────────────────────────────


def require_tenant(x_tenant_id: str | None = Header(default=None)) -> int:
    """Dependency: the authenticated business id, or 401."""
    if not x_tenant_id:
        raise HTTPException(401, "Not authenticated")
    try:
        return int(x_tenant_id)
    except ValueError:
        raise HTTPException(400, "Invalid tenant id")


# ── Connectors ────────────────────────────────────────────────────────


@lru_cache
def get_telephony() -> TwilioGateway:
    return TwilioGateway(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        settings.webhook_base_url,
        media_attempts=settings.media_fetch_attempts,
        media_timeout=settings.media_fetch_timeout_seconds,
    )


@lru_cache
def get_recording_store() -> RecordingStore:
    return RecordingStore.from_settings(settings)


@lru_cache
def get_transcriber() -> DeepgramClient:
    return DeepgramClient(settings.deepgram_api_key, model=settings.deepgram_model)


@lru_cache
def get_analyzer() -> CallAnalyzer:
    return CallAnalyzer()


# ── Services ──────────────────────────────────────────────────────────


def get_provisioner(
    db: Session = Depends(get_db), telephony: TwilioGateway = Depends(get_telephony)
) -> NumberProvisioner:
    return NumberProvisioner(db, telephony, occ_max_retries=settings.occ_max_retries)


def get_gateway(
    db: Session = Depends(get_db), telephony: TwilioGateway = Depends(get_telephony)
) -> CallGateway:
    return CallGateway(db, telephony)


def build_pipeline(db: Session) -> RecordingPipeline:
    return RecordingPipeline(
        db,
        telephony=get_telephony(),
        store=get_recording_store(),
        transcriber=get_transcriber(),
        analyzer=get_analyzer(),
        signed_url_ttl=settings.recording_signed_url_ttl_seconds,
        max_attempts=settings.pipeline_max_attempts,
        retry_base_seconds=settings.pipeline_retry_base_seconds,
    )


async def run_recording_pipeline(provider_call_id: str, recording_url: str | None = None) -> str:
    """Run the pipeline for one call in a fresh session."""
    db = SessionLocal()
    try:
        return await build_pipeline(db).run(provider_call_id, recording_url)
    finally:
        db.close()


def get_pipeline_runner():
    return run_recording_pipeline
