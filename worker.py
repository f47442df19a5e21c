"""
Background narrative worker for the enrichment job queue.

Runs in a dedicated thread per gunicorn worker process. Polls the DB for
pending jobs, claims one atomically, builds the prompt context (property
and its ten most recent reviews), asks the narrative model for a summary,
then writes it onto the score row and marks the job done, or marks the
job failed.  Supports graceful shutdown via a stop event.

Jobs left in 'processing' by a crashed process are counted and logged at
startup but not reclaimed.
"""

import logging
import os
import threading
from typing import Optional

from models import SafetyDB
from narrative import MAX_REVIEWS_IN_PROMPT, generate_narrative
from score_trace import TraceContext, clear_trace, set_trace

logger = logging.getLogger(__name__)

# Poll interval when no job is available (seconds)
POLL_INTERVAL = float(os.environ.get("WORKER_POLL_INTERVAL", "5"))
# Back-off after an error in the loop itself (DB unavailable etc.)
ERROR_BACKOFF = 10.0
STALE_PROCESSING_SECONDS = 300

# Stop event: set by the main process to signal the worker thread to exit
_stop_event = threading.Event()
_worker_thread: Optional[threading.Thread] = None


def _run_job(db: SafetyDB, job: dict) -> bool:
    """Generate and store the narrative for one claimed job. Returns True on success."""
    job_id = job["id"]
    property_id = job["property_id"]
    scores = job.get("payload") or {}

    trace_ctx = TraceContext(trace_id=f"narrative-{job_id}")
    set_trace(trace_ctx)
    try:
        prop = db.get_property(property_id)
        reviews = db.list_reviews(property_id, limit=MAX_REVIEWS_IN_PROMPT)
        summary = generate_narrative(scores, prop, reviews)
        if not summary:
            db.fail_enrichment_job(job_id, "narrative generation returned no text")
            logger.warning("[worker] Job %s failed: no narrative for property %s", job_id, property_id)
            return False
        db.complete_enrichment_job(job_id, property_id, summary)
        logger.info("[worker] Job %s completed for property %s", job_id, property_id)
        return True
    except Exception as e:
        logger.exception("[worker] Job %s failed: %s", job_id, e)
        db.fail_enrichment_job(job_id, str(e))
        return False
    finally:
        trace_ctx.log_summary()
        clear_trace()


def process_next_job(db: SafetyDB) -> bool:
    """Claim and run one job. Returns False when the queue was empty."""
    job = db.claim_next_enrichment_job()
    if not job:
        return False
    logger.info("[worker] Claimed job %s for property %s", job["id"], job["property_id"])
    _run_job(db, job)
    return True


def _report_event(e: Exception) -> None:
    if os.environ.get("SENTRY_DSN"):
        import sentry_sdk
        sentry_sdk.capture_exception(e)


def _worker_loop(db: SafetyDB) -> None:
    """Loop: claim next job, run it, repeat until stop event is set."""
    logger.info("[worker] Narrative worker thread started")
    while not _stop_event.is_set():
        try:
            had_job = process_next_job(db)
        except Exception as e:
            logger.exception("[worker] Loop error; backing off %.0fs", ERROR_BACKOFF)
            _report_event(e)
            _stop_event.wait(timeout=ERROR_BACKOFF)
            continue
        if not had_job:
            _stop_event.wait(timeout=POLL_INTERVAL)
    logger.info("[worker] Narrative worker thread stopped")


def start_worker(db: SafetyDB) -> None:
    """
    Start the background worker thread. Safe to call from the main process
    or from a gunicorn post_fork hook. Only one thread is started per process.
    """
    global _worker_thread
    if _worker_thread is not None and _worker_thread.is_alive():
        return
    db.init_db()
    try:
        stale = db.count_stale_processing_jobs(max_age_seconds=STALE_PROCESSING_SECONDS)
        if stale:
            logger.warning(
                "[worker] %d narrative jobs stuck in 'processing' for over %ds; not reclaimed",
                stale, STALE_PROCESSING_SECONDS,
            )
    except Exception:
        logger.exception("[worker] Failed to count stale processing jobs")
    _stop_event.clear()
    _worker_thread = threading.Thread(target=_worker_loop, args=(db,), daemon=True, name="narrative-worker")
    _worker_thread.start()


def stop_worker(timeout: Optional[float] = None) -> None:
    """Signal the worker thread to stop (for tests or graceful shutdown)."""
    _stop_event.set()
    if timeout is not None and _worker_thread is not None:
        _worker_thread.join(timeout=timeout)
