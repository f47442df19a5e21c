"""
Scoring model configuration for SafeNest.

Owns every numeric constant that affects the safety score: decay rates,
search radii, penalty tiers and aggregation weights.  All component scores
and the overall score share one 0-10 scale.

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.
"""

import math
from dataclasses import dataclass
from typing import Dict, Tuple


SCORE_MIN = 0.0
SCORE_MAX = 10.0


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class CrimeConfig:
    """Incident penalty parameters for the crime component."""
    search_radius_m: float
    distance_decay_k: float      # per meter
    half_life_days: float
    max_age_days: float          # older incidents are excluded, not down-weighted
    max_penalty: float           # total penalty that maps to a score of 0
    severity_weights: Dict[str, float]
    incident_type_weights: Dict[str, float]
    default_severity_weight: float = 2.0
    default_type_weight: float = 1.0


@dataclass(frozen=True)
class NoiseConfig:
    """Rail/transit noise penalty (Places nearby search)."""
    search_radius_m: int
    keyword: str
    max_penalty: float
    distance_decay_k: float
    timeout_s: float


@dataclass(frozen=True)
class FloodTier:
    """Maps a water level threshold (cm) to a per-report penalty.

    Tiers are evaluated highest-first: the first tier whose
    min_level_cm is exceeded (or met, when inclusive) is used.
    """
    min_level_cm: int
    penalty: float
    inclusive: bool = True


@dataclass(frozen=True)
class FloodConfig:
    """Flood risk sub-score parameters."""
    search_radius_m: float
    window_days: int
    low_elevation_m: float       # below this: heavy penalty
    low_elevation_penalty: float
    mid_elevation_m: float       # below this: light penalty
    mid_elevation_penalty: float
    report_tiers: Tuple[FloodTier, ...]
    max_report_penalty: float
    elevation_timeout_s: float


@dataclass(frozen=True)
class EnvironmentConfig:
    """POI bonus and the liveability/flood blend."""
    poi_radius_m: float
    base_score: float
    poi_bonus_scale: float
    liveability_weight: float
    flood_weight: float
    high_risk_flood_threshold: float
    high_risk_penalty: float


@dataclass(frozen=True)
class AggregateWeights:
    """Weights for one aggregation regime.  admin is 0 when unused."""
    user: float
    crime: float
    environment: float
    admin: float = 0.0


@dataclass(frozen=True)
class NeutralDefaults:
    """Fallback values substituted when a component has no data or fails."""
    crime_no_data: float = 10.0
    crime_error: float = 10.0
    user_no_reviews: float = 8.0
    user_error: float = 5.0
    environment: float = 5.0
    flood_no_coords: float = 10.0


@dataclass(frozen=True)
class SafetyScoringModel:
    """Top-level container for all scoring parameters.

    A single module-level instance (SAFETY_MODEL) is the source of truth.
    Bump `version` on every change that alters score outputs.
    """
    version: str
    crime: CrimeConfig
    noise: NoiseConfig
    flood: FloodConfig
    environment: EnvironmentConfig
    default_weights: AggregateWeights
    override_weights: AggregateWeights
    defaults: NeutralDefaults


# =============================================================================
# Pure helpers
# =============================================================================

def clamp_score(value: float, low: float = SCORE_MIN, high: float = SCORE_MAX) -> float:
    """Clamp *value* into [low, high]."""
    return max(low, min(high, value))


def finite_or(value, default: float) -> float:
    """Return *value* as a float, or *default* if it is missing, non-numeric or NaN/inf."""
    try:
        f = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(f):
        return default
    return f


# =============================================================================
# SAFETY_MODEL: current production values
# =============================================================================

SEVERITY_WEIGHTS = {
    "low": 2.0,
    "medium": 5.0,
    "high": 10.0,
}

# Violent incidents weigh heavier than nuisance reports.
INCIDENT_TYPE_WEIGHTS = {
    "robbery": 1.5,
    "harassment": 1.5,
    "theft": 1.0,
    "noise": 0.5,
    "other": 0.8,
}

_FLOOD_TIERS = (
    FloodTier(min_level_cm=50, penalty=2.0, inclusive=False),  # deep
    FloodTier(min_level_cm=30, penalty=1.0),                   # moderate
    FloodTier(min_level_cm=0, penalty=0.5),                    # shallow
)


SAFETY_MODEL = SafetyScoringModel(
    version="2.1.0",

    crime=CrimeConfig(
        search_radius_m=5000,
        distance_decay_k=0.001,
        half_life_days=180,
        max_age_days=730,
        max_penalty=40.0,
        severity_weights=SEVERITY_WEIGHTS,
        incident_type_weights=INCIDENT_TYPE_WEIGHTS,
    ),

    noise=NoiseConfig(
        search_radius_m=300,
        keyword="railway",
        max_penalty=3.0,
        distance_decay_k=0.008,
        timeout_s=3.0,
    ),

    flood=FloodConfig(
        search_radius_m=200,
        window_days=730,
        low_elevation_m=2.0,
        low_elevation_penalty=3.0,
        mid_elevation_m=5.0,
        mid_elevation_penalty=1.0,
        report_tiers=_FLOOD_TIERS,
        max_report_penalty=5.0,
        elevation_timeout_s=3.0,
    ),

    environment=EnvironmentConfig(
        poi_radius_m=1000,
        base_score=5.0,
        poi_bonus_scale=0.5,
        liveability_weight=0.6,
        flood_weight=0.4,
        high_risk_flood_threshold=4.0,
        high_risk_penalty=1.0,
    ),

    default_weights=AggregateWeights(user=0.4, crime=0.4, environment=0.2),
    override_weights=AggregateWeights(user=0.2, crime=0.3, environment=0.2, admin=0.3),

    defaults=NeutralDefaults(),
)

# Radii used to find properties affected by a new event.
INCIDENT_RECOMPUTE_RADIUS_M = 10000
FLOOD_RECOMPUTE_RADIUS_M = SAFETY_MODEL.flood.search_radius_m

# Validate weights at import time (ValueError, not assert,
# so validation is never stripped by python -O).
for _name, _w in (
    ("default_weights", SAFETY_MODEL.default_weights),
    ("override_weights", SAFETY_MODEL.override_weights),
):
    _wsum = _w.user + _w.crime + _w.environment + _w.admin
    if abs(_wsum - 1.0) >= 0.001:
        raise ValueError(f"{_name} sum to {_wsum}, expected 1.0")
_env = SAFETY_MODEL.environment
if abs(_env.liveability_weight + _env.flood_weight - 1.0) >= 0.001:
    raise ValueError("environment blend weights must sum to 1.0")
