"""
Rail noise penalty — proximity to railway lines and stations.

Looks up railway/transit places within a short radius using Google Places
Nearby Search and turns the distance to the nearest one into a penalty
that decays exponentially with distance.

Limitations:
  - Places returns point locations (stations, crossings), not track
    geometry; a property beside an open stretch of track may see no hit.
  - Keyword search is fuzzy; results are filtered by radius again here.
  - Any API failure means "no penalty": noise is a nice-to-have signal
    and must never block a score.
"""

import logging
import os
from dataclasses import dataclass
from typing import List, Optional

from decay import distance_decay, haversine_m
from places_client import GooglePlacesClient
from safety_config import SAFETY_MODEL, NoiseConfig

logger = logging.getLogger(__name__)


@dataclass
class NoiseSource:
    """A railway/transit place found near the property."""
    name: str
    lat: float
    lng: float
    distance_m: float


def _parse_sources(results: List[dict], lat: float, lng: float) -> List[NoiseSource]:
    """Turn Places results into NoiseSource objects sorted nearest first.

    Results without a usable geometry are skipped.
    """
    sources = []
    for place in results:
        try:
            loc = place["geometry"]["location"]
            plat, plng = float(loc["lat"]), float(loc["lng"])
        except (KeyError, TypeError, ValueError):
            continue
        sources.append(NoiseSource(
            name=place.get("name", "Unnamed"),
            lat=plat,
            lng=plng,
            distance_m=haversine_m(lat, lng, plat, plng),
        ))
    sources.sort(key=lambda s: s.distance_m)
    return sources


def penalty_for_distance(distance_m: float, config: NoiseConfig = SAFETY_MODEL.noise) -> float:
    """Penalty (0..max_penalty) for a noise source distance_m away."""
    return config.max_penalty * distance_decay(distance_m, config.distance_decay_k)


def nearest_noise_source(
    lat: float,
    lng: float,
    api_key: Optional[str] = None,
    config: NoiseConfig = SAFETY_MODEL.noise,
) -> Optional[NoiseSource]:
    """Nearest railway/transit place within the search radius, or None.

    Returns None when no API key is configured, nothing is found, or the
    lookup fails for any reason.
    """
    api_key = api_key if api_key is not None else os.environ.get("GOOGLE_MAPS_API_KEY")
    if not api_key:
        return None

    try:
        client = GooglePlacesClient(api_key, timeout=config.timeout_s)
        try:
            results = client.places_nearby(
                lat, lng, radius_meters=config.search_radius_m, keyword=config.keyword,
            )
        finally:
            client.close()
    except Exception:
        logger.warning(
            "Noise lookup failed for (%.5f, %.5f); treating as no penalty",
            lat, lng, exc_info=True,
        )
        return None

    sources = [s for s in _parse_sources(results, lat, lng)
               if s.distance_m <= config.search_radius_m]
    return sources[0] if sources else None


def get_noise_penalty(
    lat: float,
    lng: float,
    api_key: Optional[str] = None,
    config: NoiseConfig = SAFETY_MODEL.noise,
) -> float:
    """Noise penalty for a property: 0.0 when nothing is nearby or the lookup fails."""
    source = nearest_noise_source(lat, lng, api_key=api_key, config=config)
    if source is None:
        return 0.0
    penalty = penalty_for_distance(source.distance_m, config)
    logger.info(
        "[noise] %s at %.0fm -> penalty %.2f", source.name, source.distance_m, penalty,
    )
    return penalty
