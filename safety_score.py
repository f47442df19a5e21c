"""
Component score calculators and the overall score aggregator.

Each calculator reads one data domain and returns a score in [0, 10].
None of them raise: missing data maps to a neutral default, and query or
upstream failures are logged and mapped to a safe fallback, so one
property's bad data never aborts a sweep.  Every return value passes
through finite_or() so NaN can't reach the score cache.
"""

import logging
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional

from decay import age_in_days, distance_decay, time_decay
from flood_risk import calculate_flood_score
from models import SafetyDB
from rail_noise import get_noise_penalty
from safety_config import (
    SAFETY_MODEL,
    AggregateWeights,
    CrimeConfig,
    clamp_score,
    finite_or,
)
from spatial_data import IncidentHit, SpatialStore

logger = logging.getLogger(__name__)

_DEFAULTS = SAFETY_MODEL.defaults


@dataclass
class ComponentScores:
    """The inputs to aggregation for one property."""
    crime: float
    user: float
    environment: float
    admin: Optional[float] = None

    def to_payload(self, overall: float) -> dict:
        """Snapshot stored with a narrative job so the worker never recomputes."""
        payload = asdict(self)
        payload["overall"] = overall
        payload["model_version"] = SAFETY_MODEL.version
        return payload


def _has_coords(prop: Optional[dict]) -> bool:
    return bool(prop) and prop.get("latitude") is not None and prop.get("longitude") is not None


# =============================================================================
# User / review score
# =============================================================================

def calculate_user_score(db: SafetyDB, property_id: int) -> float:
    """Average safety rating (1-5) rescaled to 0-10.

    Unreviewed listings get a neutral-to-positive default instead of 0.
    """
    try:
        avg = db.average_safety_rating(property_id)
    except Exception:
        logger.error("[user-score] query failed for property %s", property_id, exc_info=True)
        return _DEFAULTS.user_error

    avg = finite_or(avg, float("nan"))
    if avg != avg:  # no reviews, or a non-numeric aggregate
        return _DEFAULTS.user_no_reviews
    return clamp_score(finite_or(avg * 2.0, _DEFAULTS.user_no_reviews))


# =============================================================================
# Crime score
# =============================================================================

def incident_penalty(
    hit: IncidentHit,
    now: datetime,
    config: CrimeConfig = SAFETY_MODEL.crime,
) -> float:
    """Weighted penalty for one incident; 0.0 if it is future-dated or stale."""
    days_old = age_in_days(hit.incident_date, now)
    if days_old is None or days_old < 0 or days_old > config.max_age_days:
        return 0.0
    severity = config.severity_weights.get(hit.severity, config.default_severity_weight)
    type_factor = config.incident_type_weights.get(hit.incident_type, config.default_type_weight)
    return (
        severity
        * type_factor
        * time_decay(days_old, config.half_life_days)
        * distance_decay(hit.distance_meters, config.distance_decay_k)
    )


def crime_score_from_incidents(
    hits: Iterable[IncidentHit],
    now: Optional[datetime] = None,
    config: CrimeConfig = SAFETY_MODEL.crime,
) -> float:
    """Normalize the summed incident penalty into a 0-10 score."""
    if now is None:
        now = datetime.now(timezone.utc)
    total = sum(incident_penalty(h, now, config) for h in hits)
    score = 10.0 - (total / config.max_penalty * 10.0)
    return clamp_score(finite_or(score, _DEFAULTS.crime_error))


def calculate_crime_score(
    db: SafetyDB,
    prop: dict,
    now: Optional[datetime] = None,
    config: CrimeConfig = SAFETY_MODEL.crime,
) -> float:
    """Crime score from attributed and nearby incidents; 10.0 when there are none."""
    if not _has_coords(prop):
        return _DEFAULTS.crime_no_data
    try:
        hits = SpatialStore(db).incidents_affecting(
            prop["id"], prop["latitude"], prop["longitude"], config.search_radius_m,
        )
    except Exception:
        logger.error("[crime-score] query failed for property %s", prop.get("id"), exc_info=True)
        return _DEFAULTS.crime_error
    if not hits:
        return _DEFAULTS.crime_no_data
    return crime_score_from_incidents(hits, now, config)


# =============================================================================
# Environment score (POI bonus - noise, blended with flood risk)
# =============================================================================

def calculate_environment_score(
    db: SafetyDB,
    prop: dict,
    now: Optional[datetime] = None,
    noise_penalty_fn: Optional[Callable[[float, float], float]] = None,
) -> float:
    """Liveability (safety POIs minus noise) blended 60/40 with flood risk.

    A flood sub-score under the high-risk threshold costs an extra fixed
    point, so amenities alone can't lift a flood-prone property back up.
    """
    if not _has_coords(prop):
        return _DEFAULTS.environment

    noise_penalty_fn = noise_penalty_fn or get_noise_penalty
    env = SAFETY_MODEL.environment
    lat, lng = prop["latitude"], prop["longitude"]
    try:
        bonus = finite_or(SpatialStore(db).safety_point_bonus(lat, lng, env.poi_radius_m), 0.0)
        base = env.base_score + bonus * env.poi_bonus_scale

        noise = finite_or(noise_penalty_fn(lat, lng), 0.0)
        liveability = clamp_score(base - noise)

        flood = calculate_flood_score(db, prop, now=now)

        final = liveability * env.liveability_weight + flood * env.flood_weight
        if flood < env.high_risk_flood_threshold:
            final -= env.high_risk_penalty
            logger.info(
                "[env-score] property %s: flood score %.1f below %.1f, extra -%.1f",
                prop["id"], flood, env.high_risk_flood_threshold, env.high_risk_penalty,
            )
        return clamp_score(finite_or(final, _DEFAULTS.environment))
    except Exception:
        logger.error("[env-score] failed for property %s", prop.get("id"), exc_info=True)
        return _DEFAULTS.environment


# =============================================================================
# Manual override score
# =============================================================================

def get_admin_score(db: SafetyDB, property_id: int) -> Optional[float]:
    """Admin-entered override score, or None if absent (or unreadable)."""
    try:
        value = db.get_admin_score(property_id)
    except Exception:
        logger.error("[admin-score] query failed for property %s", property_id, exc_info=True)
        return None
    if value is None:
        return None
    value = finite_or(value, float("nan"))
    if value != value:
        return None
    return clamp_score(value)


# =============================================================================
# Aggregation
# =============================================================================

def select_weights(admin_score: Optional[float]) -> AggregateWeights:
    """Override regime when an admin score exists, default regime otherwise."""
    if admin_score is None:
        return SAFETY_MODEL.default_weights
    return SAFETY_MODEL.override_weights


def aggregate_overall_score(scores: ComponentScores) -> float:
    """Weighted overall score, clamped to [0, 10] and rounded to one decimal."""
    crime = clamp_score(finite_or(scores.crime, _DEFAULTS.crime_no_data))
    user = clamp_score(finite_or(scores.user, _DEFAULTS.user_no_reviews))
    environment = clamp_score(finite_or(scores.environment, _DEFAULTS.environment))
    # A non-finite override is treated as absent, not as zero
    admin = finite_or(scores.admin, None) if scores.admin is not None else None
    if admin is not None:
        admin = clamp_score(admin)

    w = select_weights(admin)
    overall = user * w.user + crime * w.crime + environment * w.environment
    if admin is not None:
        overall += admin * w.admin
    return round(clamp_score(overall), 1)
