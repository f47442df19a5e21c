"""
Twice-daily full sweep of the safety score cache.

A daemon thread sleeps until the next configured hour in the configured
timezone (00:00 and 12:00 Asia/Ho_Chi_Minh by default), runs
score_job.run_full_sweep(), and repeats.  Same start/stop pattern as
worker.py.

Every gunicorn worker process starts its own scheduler unless
SCHEDULER_ENABLED=false; overlapping sweeps are harmless (each score
row is an idempotent upsert) but cost duplicate API calls, so multi-worker
deploys should enable it in one process only.
"""

import logging
import os
import threading
from datetime import datetime, timedelta
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo

from models import SafetyDB
from score_job import run_full_sweep

logger = logging.getLogger(__name__)

SWEEP_HOURS = os.environ.get("SWEEP_HOURS", "0,12")
SWEEP_TIMEZONE = os.environ.get("SWEEP_TIMEZONE", "Asia/Ho_Chi_Minh")
SCHEDULER_ENABLED = os.environ.get("SCHEDULER_ENABLED", "true").lower() == "true"

_stop_event = threading.Event()
_scheduler_thread: Optional[threading.Thread] = None


def parse_hours(value: str) -> List[int]:
    """'0,12' -> [0, 12].  Raises ValueError on anything outside 0-23."""
    hours = sorted({int(part) for part in value.split(",") if part.strip()})
    if not hours or any(h < 0 or h > 23 for h in hours):
        raise ValueError(f"invalid SWEEP_HOURS: {value!r}")
    return hours


def next_run_after(now: datetime, hours: Iterable[int], tz: ZoneInfo) -> datetime:
    """Next wall-clock time strictly after *now* whose hour is in *hours*, minute 0."""
    local = now.astimezone(tz)
    hours = sorted(hours)
    for day_offset in range(2):
        day = (local + timedelta(days=day_offset)).date()
        for h in hours:
            candidate = datetime(day.year, day.month, day.day, h, 0, tzinfo=tz)
            if candidate > local:
                return candidate
    # Unreachable with a non-empty hours list.
    raise ValueError("no sweep hours configured")


def _scheduler_loop(db: SafetyDB, hours: List[int], tz: ZoneInfo) -> None:
    logger.info("[scheduler] Sweep scheduler started (hours=%s tz=%s)", hours, tz.key)
    while not _stop_event.is_set():
        now = datetime.now(tz)
        run_at = next_run_after(now, hours, tz)
        wait_s = (run_at - now).total_seconds()
        logger.info("[scheduler] Next sweep at %s (in %.0fs)", run_at.isoformat(), wait_s)
        if _stop_event.wait(timeout=wait_s):
            break
        try:
            run_full_sweep(db)
        except Exception:
            logger.exception("[scheduler] Sweep crashed")
    logger.info("[scheduler] Sweep scheduler stopped")


def start_scheduler(db: SafetyDB) -> None:
    """Start the sweep scheduler thread (idempotent)."""
    global _scheduler_thread
    if not SCHEDULER_ENABLED:
        logger.info("[scheduler] Disabled by SCHEDULER_ENABLED")
        return
    if _scheduler_thread is not None and _scheduler_thread.is_alive():
        return
    hours = parse_hours(SWEEP_HOURS)
    tz = ZoneInfo(SWEEP_TIMEZONE)
    _stop_event.clear()
    _scheduler_thread = threading.Thread(
        target=_scheduler_loop, args=(db, hours, tz), daemon=True, name="sweep-scheduler",
    )
    _scheduler_thread.start()


def stop_scheduler() -> None:
    """Signal the scheduler thread to stop."""
    _stop_event.set()
