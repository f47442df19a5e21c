"""
Safety score job: compute, aggregate and cache one property's score, or
sweep every property in keyset-paginated batches.

Entry points:
  - run_job(db, property_id)   single property (API triggers)
  - run_job(db)                full sweep (scheduler, admin endpoint)
  - trigger_recompute(db, ids) fire-and-forget recomputes on a background pool
  - recompute_nearby(...)      recompute everything around a new event

Component calculators run concurrently per property.  Within a sweep,
properties in one batch run concurrently (bounded); batches run one after
another so memory and connection use stay flat regardless of table size.
"""

import logging
import os
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from models import SafetyDB
from safety_config import SAFETY_MODEL
from safety_score import (
    ComponentScores,
    aggregate_overall_score,
    calculate_crime_score,
    calculate_environment_score,
    calculate_user_score,
    get_admin_score,
)
from score_trace import TraceContext, clear_trace, get_trace, set_trace
from spatial_data import SpatialStore

logger = logging.getLogger(__name__)

SWEEP_BATCH_SIZE = int(os.environ.get("SWEEP_BATCH_SIZE", "50"))
SWEEP_MAX_WORKERS = int(os.environ.get("SWEEP_MAX_WORKERS", "8"))
# Full sweeps touch every property; narrative jobs for all of them would
# flood the model quota, so they are opt-in.
ENRICH_ON_RECOMPUTE = os.environ.get("ENRICH_ON_RECOMPUTE", "false").lower() == "true"

# Background pool for fire-and-forget recomputes triggered by writes.
_recompute_pool = ThreadPoolExecutor(
    max_workers=int(os.environ.get("RECOMPUTE_WORKERS", "4")),
    thread_name_prefix="recompute",
)


@dataclass
class SweepResult:
    """Counters for one full sweep."""
    scored: int = 0
    skipped: int = 0   # no coordinates
    failed: int = 0
    batches: int = 0
    failed_ids: List[int] = field(default_factory=list)


def _has_coords(prop: dict) -> bool:
    return prop.get("latitude") is not None and prop.get("longitude") is not None


# =============================================================================
# Single property
# =============================================================================

def _component_in_thread(parent_trace, name, default, fn, *args, **kwargs):
    """Run one calculator in a pool thread with the parent trace attached."""
    set_trace(parent_trace)
    t0 = time.time()
    try:
        value = fn(*args, **kwargs)
        if parent_trace:
            parent_trace.record_component(name, t0, value=value)
        return value
    except Exception as e:
        logger.exception("[job] %s calculator crashed; using %s", name, default)
        if parent_trace:
            parent_trace.record_component(
                name, t0, value=default, fallback=True, error_class=type(e).__name__,
            )
        return default
    finally:
        clear_trace()


def calculate_component_scores(db: SafetyDB, prop: dict, now: Optional[datetime] = None) -> ComponentScores:
    """Compute the four component scores for a property concurrently."""
    defaults = SAFETY_MODEL.defaults
    parent_trace = get_trace()
    pid = prop["id"]
    with ThreadPoolExecutor(max_workers=4) as pool:
        crime = pool.submit(
            _component_in_thread, parent_trace, "crime", defaults.crime_error,
            calculate_crime_score, db, prop, now=now,
        )
        user = pool.submit(
            _component_in_thread, parent_trace, "user", defaults.user_error,
            calculate_user_score, db, pid,
        )
        environment = pool.submit(
            _component_in_thread, parent_trace, "environment", defaults.environment,
            calculate_environment_score, db, prop, now=now,
        )
        admin = pool.submit(
            _component_in_thread, parent_trace, "admin", None,
            get_admin_score, db, pid,
        )
        return ComponentScores(
            crime=crime.result(),
            user=user.result(),
            environment=environment.result(),
            admin=admin.result(),
        )


def calculate_and_save_score(
    db: SafetyDB,
    property_id: int,
    enqueue_summary: bool = False,
    now: Optional[datetime] = None,
) -> Optional[dict]:
    """
    Compute and upsert the score row for one property.

    Returns the stored score row, or None if the property is unknown
    locally (callers that need it should sync first).  When
    enqueue_summary is set, a narrative job carrying the freshly computed
    scores is queued after the upsert.
    """
    prop = db.get_property(property_id)
    if prop is None:
        logger.warning("[job] Property %s not found locally; nothing to score", property_id)
        return None
    if not _has_coords(prop):
        logger.info("[job] Property %s has no coordinates; scoring with defaults", property_id)

    trace_ctx = TraceContext(trace_id=f"property-{property_id}")
    set_trace(trace_ctx)
    try:
        scores = calculate_component_scores(db, prop, now=now)
        overall = aggregate_overall_score(scores)
        row = db.upsert_score(
            property_id,
            overall_score=overall,
            crime_score=round(scores.crime, 2),
            user_score=round(scores.user, 2),
            environment_score=round(scores.environment, 2),
            admin_score=scores.admin,
            model_version=SAFETY_MODEL.version,
        )
        logger.info(
            "[job] Property %s scored %.1f (crime=%.2f user=%.2f env=%.2f admin=%s)",
            property_id, overall, scores.crime, scores.user, scores.environment,
            "-" if scores.admin is None else f"{scores.admin:.1f}",
        )
        if enqueue_summary:
            job_id = db.enqueue_enrichment_job(property_id, scores.to_payload(overall))
            logger.info("[job] Queued narrative job %s for property %s", job_id, property_id)
        return row
    finally:
        trace_ctx.log_summary()
        clear_trace()


# =============================================================================
# Full sweep
# =============================================================================

def run_full_sweep(
    db: SafetyDB,
    batch_size: Optional[int] = None,
    max_workers: Optional[int] = None,
    enqueue_summary: bool = ENRICH_ON_RECOMPUTE,
    now: Optional[datetime] = None,
) -> SweepResult:
    """
    Score every property that has coordinates.

    Keyset pagination on id (never OFFSET) so rows inserted mid-sweep
    cannot shift pages.  One property failing is logged and counted; it
    never aborts the sweep.
    """
    batch_size = batch_size or SWEEP_BATCH_SIZE
    max_workers = max_workers or SWEEP_MAX_WORKERS
    result = SweepResult()
    started = time.time()
    last_id = None
    logger.info("[job] Full sweep starting (batch_size=%d)", batch_size)

    while True:
        page = db.list_property_page(last_id, batch_size)
        if not page:
            break
        result.batches += 1
        last_id = page[-1]["id"]

        scorable = [p for p in page if _has_coords(p)]
        result.skipped += len(page) - len(scorable)

        if scorable:
            with ThreadPoolExecutor(max_workers=min(max_workers, len(scorable))) as pool:
                futures = {
                    pool.submit(
                        calculate_and_save_score, db, p["id"],
                        enqueue_summary=enqueue_summary, now=now,
                    ): p["id"]
                    for p in scorable
                }
                for future in as_completed(futures):
                    pid = futures[future]
                    try:
                        row = future.result()
                    except Exception:
                        logger.exception("[job] Sweep failed for property %s", pid)
                        result.failed += 1
                        result.failed_ids.append(pid)
                        continue
                    if row is None:
                        result.failed += 1
                        result.failed_ids.append(pid)
                    else:
                        result.scored += 1

        if len(page) < batch_size:
            break

    logger.info(
        "[job] Full sweep done in %.1fs: scored=%d skipped=%d failed=%d batches=%d",
        time.time() - started, result.scored, result.skipped, result.failed, result.batches,
    )
    return result


def run_job(db: SafetyDB, property_id: Optional[int] = None, enqueue_summary: Optional[bool] = None):
    """
    Score one property, or every property when property_id is None.

    A single-property run queues a narrative job by default; a sweep
    only does when ENRICH_ON_RECOMPUTE is set.
    """
    if property_id is not None:
        return calculate_and_save_score(
            db, property_id,
            enqueue_summary=True if enqueue_summary is None else enqueue_summary,
        )
    return run_full_sweep(
        db, enqueue_summary=ENRICH_ON_RECOMPUTE if enqueue_summary is None else enqueue_summary,
    )


# =============================================================================
# Fire-and-forget triggers
# =============================================================================

def _recompute_logged(db: SafetyDB, property_id: int) -> Optional[dict]:
    # Write-triggered recomputes refresh the numbers only; narratives are queued elsewhere
    try:
        return calculate_and_save_score(db, property_id, enqueue_summary=False)
    except Exception:
        logger.exception("[job] Background recompute failed for property %s", property_id)
        return None


def trigger_recompute(db: SafetyDB, property_ids: Iterable[int]) -> List[Future]:
    """Recompute each property on the background pool; returns the futures.

    The caller does not wait.  Failures are logged inside the task.
    """
    futures = []
    seen = set()
    for pid in property_ids:
        if pid is None or pid in seen:
            continue
        seen.add(pid)
        futures.append(_recompute_pool.submit(_recompute_logged, db, pid))
    if futures:
        logger.info("[job] Triggered background recompute for %d properties", len(futures))
    return futures


def trigger_full_sweep(db: SafetyDB) -> Future:
    """Run a full sweep on the background pool."""
    def _sweep():
        try:
            return run_job(db)
        except Exception:
            logger.exception("[job] Background sweep failed")
            return None
    return _recompute_pool.submit(_sweep)


def recompute_nearby(
    db: SafetyDB,
    lat: float,
    lng: float,
    radius_m: float,
    extra_ids: Iterable[int] = (),
) -> List[Future]:
    """Trigger recomputes for every property within radius_m of (lat, lng)."""
    try:
        nearby = SpatialStore(db).properties_within(lat, lng, radius_m)
    except Exception:
        logger.exception("[job] Nearby lookup failed at (%.5f, %.5f)", lat, lng)
        nearby = []
    ids = list(extra_ids) + [p["id"] for p in nearby]
    logger.info(
        "[job] %d properties within %.0fm of (%.5f, %.5f)", len(nearby), radius_m, lat, lng,
    )
    return trigger_recompute(db, ids)
