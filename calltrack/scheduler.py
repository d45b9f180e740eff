"""Background scheduler — recording pipeline retry sweep.

Runs on a tick loop (retry_sweep_interval_seconds). Each tick re-runs the
recording pipeline for jobs whose backoff has elapsed and for jobs that were
queued by a webhook but never started (e.g. the process restarted before the
background task ran).
"""

import asyncio
import logging

log = logging.getLogger("calltrack.scheduler")


async def start_scheduler():
    """Launch the background scheduler loop. Call once on app startup."""
    from .config import settings

    log.info(f"Background scheduler started: retry sweep every {settings.retry_sweep_interval_seconds}s")

    # Let the app finish booting before the first sweep
    await asyncio.sleep(10)

    while True:
        try:
            await _scheduler_tick()
        except Exception as e:
            log.error(f"Scheduler tick error: {e}")
        await asyncio.sleep(settings.retry_sweep_interval_seconds)


async def _scheduler_tick(limit: int = 20) -> int:
    """Run due recording jobs. Returns how many were attempted."""
    from .database import SessionLocal
    from .dependencies import build_pipeline
    from .services.recording_pipeline import due_jobs

    db = SessionLocal()
    try:
        jobs = due_jobs(db, limit=limit)
        if not jobs:
            log.debug("Scheduler tick: no recording jobs due")
            return 0

        log.info(f"Scheduler tick: retrying {len(jobs)} recording job(s)")
        pipeline = build_pipeline(db)
        work = [(job.call_log.provider_call_id, job.recording_url) for job in jobs]
        for provider_call_id, recording_url in work:
            outcome = await pipeline.run(provider_call_id, recording_url)
            log.debug(f"Retry of {provider_call_id}: {outcome}")
        return len(work)
    finally:
        db.close()
