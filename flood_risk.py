"""
Flood risk sub-score (0-10, higher is safer).

Two signals:
  - Terrain: low-lying ground (cached elevation_meters on the property, or
    fetched lazily from Open-Meteo and cached back) loses points.
  - History: resident flood reports within 200 m over the last two years,
    each penalized by how deep the water got.
"""

import logging
from datetime import datetime
from typing import Optional

from elevation import fetch_elevation
from models import SafetyDB
from safety_config import SAFETY_MODEL, FloodConfig, clamp_score, finite_or
from spatial_data import SpatialStore

logger = logging.getLogger(__name__)


def elevation_penalty(elevation_m: Optional[float], config: FloodConfig = SAFETY_MODEL.flood) -> float:
    """Terrain penalty; unknown elevation costs nothing."""
    if elevation_m is None:
        return 0.0
    if elevation_m < config.low_elevation_m:
        return config.low_elevation_penalty
    if elevation_m < config.mid_elevation_m:
        return config.mid_elevation_penalty
    return 0.0


def report_penalty(water_level_cm, config: FloodConfig = SAFETY_MODEL.flood) -> float:
    """Penalty for one flood report: deep > 50 cm, moderate 30-50 cm, shallow < 30 cm."""
    try:
        level = int(water_level_cm or 0)
    except (TypeError, ValueError):
        level = 0
    for tier in config.report_tiers:
        if level > tier.min_level_cm or (tier.inclusive and level == tier.min_level_cm):
            return tier.penalty
    return config.report_tiers[-1].penalty


def resolve_elevation(db: SafetyDB, prop: dict, config: FloodConfig = SAFETY_MODEL.flood) -> Optional[float]:
    """Cached elevation, or fetch it and cache it on the property row."""
    cached = prop.get("elevation_meters")
    if cached is not None:
        return cached
    elevation = fetch_elevation(prop["latitude"], prop["longitude"], timeout=config.elevation_timeout_s)
    if elevation is not None:
        try:
            db.set_property_elevation(prop["id"], elevation)
        except Exception:
            logger.warning("Failed to cache elevation for property %s", prop["id"], exc_info=True)
    return elevation


def calculate_flood_score(
    db: SafetyDB,
    prop: dict,
    now: Optional[datetime] = None,
    config: FloodConfig = SAFETY_MODEL.flood,
) -> float:
    """Flood score for a property; 10.0 when it has no coordinates."""
    if prop.get("latitude") is None or prop.get("longitude") is None:
        return SAFETY_MODEL.defaults.flood_no_coords

    score = 10.0
    score -= elevation_penalty(resolve_elevation(db, prop, config), config)

    try:
        reports = SpatialStore(db).flood_reports_within(
            prop["latitude"], prop["longitude"], config.search_radius_m,
            window_days=config.window_days, now=now,
        )
    except Exception:
        logger.error("[flood] report query failed for property %s", prop["id"], exc_info=True)
        reports = []

    if reports:
        total = sum(report_penalty(r["water_level"], config) for r in reports)
        score -= min(total, config.max_report_penalty)
        logger.info(
            "[flood] property %s: %d reports nearby, penalty %.1f",
            prop["id"], len(reports), total,
        )

    return clamp_score(finite_or(score, SAFETY_MODEL.defaults.flood_no_coords))
