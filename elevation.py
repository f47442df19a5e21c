"""
Ground elevation lookup for flood risk.

Fetches terrain elevation from the Open-Meteo Elevation API (free, no key
required).  The flood calculator caches the value on the property row, so
each property costs at most one successful call.

Data source:
  - Open-Meteo Elevation API (api.open-meteo.com/v1/elevation)
  - Copernicus DEM GLO-90, ~90 m resolution

Limitations:
  - A 90 m grid smooths out embankments and local depressions; a ground
    floor unit can sit a metre or two off the cell average.
"""

import logging
import os
import time
from typing import Optional

import requests

from score_trace import get_trace

logger = logging.getLogger(__name__)

_API_BASE = os.environ.get("ELEVATION_API_URL", "https://api.open-meteo.com/v1/elevation")
_API_TIMEOUT = 3  # seconds; flood scoring falls back to "unknown elevation"


def fetch_elevation(lat: float, lng: float, timeout: float = _API_TIMEOUT) -> Optional[float]:
    """Elevation in meters at (lat, lng), or None on any failure."""
    trace = get_trace()
    t0 = time.time()
    try:
        resp = requests.get(
            _API_BASE,
            params={"latitude": lat, "longitude": lng},
            timeout=timeout,
        )
        elapsed_ms = int((time.time() - t0) * 1000)
        if trace:
            trace.record_api_call(
                service="open_meteo",
                endpoint="elevation",
                elapsed_ms=elapsed_ms,
                status_code=resp.status_code,
                provider_status="OK" if resp.ok else "ERROR",
            )

        if not resp.ok:
            logger.warning(
                "Open-Meteo elevation returned %d for (%.4f, %.4f)",
                resp.status_code, lat, lng,
            )
            return None

        values = (resp.json() or {}).get("elevation") or []
        if not values or values[0] is None:
            return None
        return float(values[0])

    except requests.Timeout:
        logger.warning("Open-Meteo elevation timed out for (%.4f, %.4f)", lat, lng)
        if trace:
            trace.record_api_call(
                service="open_meteo",
                endpoint="elevation",
                elapsed_ms=int((time.time() - t0) * 1000),
                status_code=0,
                provider_status="TIMEOUT",
            )
        return None
    except Exception:
        logger.warning(
            "Open-Meteo elevation request failed for (%.4f, %.4f)",
            lat, lng, exc_info=True,
        )
        return None
