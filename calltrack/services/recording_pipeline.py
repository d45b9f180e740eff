"""
recording_pipeline.py — Recording → transcript → roles → classification

Keyed by the provider call id. Every stage checks whether its output is
already persisted before doing any work, so re-running on a finished call
makes zero external calls.

Stages:
  media           copy the Twilio recording into GCS (skip if object key set
                  or the object already exists)
  transcription   signed URL → Deepgram, falling back to buffer upload;
                  an empty transcript aborts the run
  roles           speaker0/speaker1 → salesperson/client/unknown; persisted
                  together with the transcript
  classification  intent/result/department/sentiment, then department KPIs

Business Rules:
- The pipeline never raises to its caller; stage errors are logged
- Committed stages are never undone; a later run resumes at the first
  incomplete stage
- Each run increments RecordingJob.attempts; a failed run schedules
  next_retry_at with exponential backoff until pipeline_max_attempts
- A running job holds next_retry_at as a lease, so a run that dies mid-way
  is swept up again once the lease expires
- Department KPIs are applied only once the call has a terminal status;
  otherwise the status webhook applies them

Called by: routers/twilio.py (background task), scheduler.py (retry sweep)
Depends on: connectors (telephony, storage, transcription), analysis_service,
            transcription_service, rollup_service, call_log_service
"""

import logging
from datetime import timedelta

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..connectors.storage import recording_object_key
from ..connectors.telephony import recording_source
from ..database import utcnow
from ..models import CallLog, RecordingJob
from ..models.enums import TERMINAL_CALL_STATUSES, CallDepartment, CallResult
from . import call_log_service, rollup_service
from .analysis_service import CallAnalyzer
from .transcription_service import TranscriptSummary, Turn, summarize

log = logging.getLogger("calltrack.pipeline")

MAX_RETRY_DELAY = timedelta(hours=1)
STALE_JOB_AFTER = timedelta(minutes=10)  # queued but never picked up, or run lease expired

_TERMINAL_VALUES = {s.value for s in TERMINAL_CALL_STATUSES}


class EmptyTranscript(Exception):
    pass


def needs_classification(call: CallLog) -> bool:
    if call.classified_at is not None:
        return False
    return (
        not call.intent
        or call.result in (None, CallResult.NONE)
        or call.department in (None, CallDepartment.NONE)
        or call.sentiment is None
    )


def get_or_create_job(db: Session, call: CallLog, recording_url: str | None = None) -> RecordingJob:
    job = db.query(RecordingJob).filter(RecordingJob.call_log_id == call.id).first()
    if job is None:
        job = RecordingJob(call_log_id=call.id, recording_url=recording_url, attempts=0)
        db.add(job)
        try:
            db.commit()
        except SQLAlchemyError:
            # Concurrent run created it first
            db.rollback()
            job = db.query(RecordingJob).filter(RecordingJob.call_log_id == call.id).one()
    elif recording_url and job.recording_url != recording_url:
        job.recording_url = recording_url
        db.commit()
    return job


class RecordingPipeline:
    def __init__(
        self,
        db: Session,
        *,
        telephony,
        store,
        transcriber,
        analyzer: CallAnalyzer,
        signed_url_ttl: int = 1800,
        max_attempts: int = 5,
        retry_base_seconds: int = 60,
    ):
        self.db = db
        self.telephony = telephony
        self.store = store
        self.transcriber = transcriber
        self.analyzer = analyzer
        self.signed_url_ttl = signed_url_ttl
        self.max_attempts = max_attempts
        self.retry_base_seconds = retry_base_seconds

    async def run(self, provider_call_id: str, recording_url: str | None = None) -> str:
        """Process one call. Returns "completed", "failed" or "skipped"."""
        call = call_log_service.find_by_provider_id(self.db, provider_call_id)
        if call is None:
            log.warning(f"Call log not found for {provider_call_id}")
            return "skipped"

        url = recording_url or call.recording_url
        if not url:
            log.warning(f"No recording URL for {provider_call_id}")
            return "skipped"

        job = get_or_create_job(self.db, call, url)
        job.attempts = (job.attempts or 0) + 1
        job.next_retry_at = utcnow() + STALE_JOB_AFTER  # lease; a crashed run becomes due again
        self.db.commit()

        stage = "media"
        try:
            key = call.recording_object_key
            if not key:
                key = await self.acquire_media(call, url)
                call = call_log_service.update_by_provider_id(
                    self.db, provider_call_id, recording_object_key=key
                )

            stage = "transcription"
            if not call.transcript_text:
                summary = await self.transcribe(key)
                if summary is None or not summary.turns:
                    raise EmptyTranscript("Transcription produced no turns")

                stage = "roles"
                turns = await self.analyzer.assign_roles(summary.turns)
                call = call_log_service.update_by_provider_id(
                    self.db,
                    provider_call_id,
                    transcript_text=summary.full_text,
                    transcript_turns=[t.to_dict() for t in turns],
                    transcript_language=summary.language,
                    transcript_duration_seconds=summary.duration_seconds,
                )

            stage = "classification"
            if needs_classification(call):
                call = await self.classify(call)
            if call.classified_at is not None and call.kpi_applied_at is None:
                if call.status in _TERMINAL_VALUES:
                    rollup_service.apply_department_kpis(self.db, call)
                else:
                    # The terminal status webhook counts it once the duration is known
                    log.info(f"KPIs for {provider_call_id} wait for a terminal status ({call.status})")
        except Exception as e:
            log.error(f"Recording pipeline {stage} stage failed for {provider_call_id}: {e}")
            self._record_failure(job, stage, e)
            return "failed"

        job.completed_at = utcnow()
        job.last_error = None
        job.next_retry_at = None
        self.db.commit()
        log.info(f"Recording pipeline completed for {provider_call_id}")
        return "completed"

    # ── Stages ──────────────────────────────────────────────────────────

    async def acquire_media(self, call: CallLog, recording_url: str) -> str:
        _, default_type = recording_source(recording_url)
        key = recording_object_key(call.provider_call_id, default_type)

        if await self.store.exists(key):
            log.info(f"Recording object {key} already stored; skipping fetch")
            return key

        media = await self.telephony.fetch_recording(recording_url)
        try:
            await self.store.upload(key, media.fileobj, media.content_type)
        finally:
            media.fileobj.close()
        return key

    async def transcribe(self, key: str) -> TranscriptSummary | None:
        url = await self.store.signed_read_url(key, self.signed_url_ttl)
        summary = summarize(await self.transcriber.transcribe_url(url))
        if summary is None or not summary.turns:
            log.info(f"URL transcription empty for {key}; retrying with buffer upload")
            audio, mime = await self.store.download(key)
            summary = summarize(await self.transcriber.transcribe_bytes(audio, mime))
        return summary

    async def classify(self, call: CallLog) -> CallLog:
        turns = [Turn.from_dict(t) for t in (call.transcript_turns or [])]
        result = await self.analyzer.classify(turns)
        call = call_log_service.update_by_provider_id(
            self.db,
            call.provider_call_id,
            intent=result.intent,
            result=result.result,
            department=result.department,
            sentiment=result.sentiment,
            classified_at=utcnow(),
        )
        log.info(
            f"Classified {call.provider_call_id}: intent={result.intent} result={result.result} "
            f"department={result.department} sentiment={result.sentiment}"
        )
        return call

    # ── Ledger ──────────────────────────────────────────────────────────

    def _record_failure(self, job: RecordingJob, stage: str, error: Exception) -> None:
        self.db.rollback()
        job.last_stage = stage
        job.last_error = str(error)[:1000]
        if job.attempts >= self.max_attempts:
            job.next_retry_at = None
            log.error(f"Giving up on recording job {job.id} after {job.attempts} attempts")
        else:
            delay = timedelta(seconds=self.retry_base_seconds * (2 ** (job.attempts - 1)))
            job.next_retry_at = utcnow() + min(delay, MAX_RETRY_DELAY)
        self.db.commit()


def due_jobs(db: Session, limit: int = 20, *, stale_after: timedelta = STALE_JOB_AFTER) -> list[RecordingJob]:
    """Unfinished jobs whose retry time has passed, plus jobs that never started."""
    now = utcnow()
    return (
        db.query(RecordingJob)
        .filter(
            RecordingJob.completed_at.is_(None),
            or_(
                RecordingJob.next_retry_at <= now,
                and_(RecordingJob.attempts == 0, RecordingJob.created_at <= now - stale_after),
            ),
        )
        .order_by(RecordingJob.created_at)
        .limit(limit)
        .all()
    )
