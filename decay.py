"""
Decay functions for time- and distance-weighted penalties.

Pure math, no I/O.  Callers filter out-of-window events (future-dated or
beyond the horizon) before calling time_decay(); neither function clamps
its input.
"""

import math
from datetime import date, datetime, timezone
from typing import Optional, Union

EARTH_RADIUS_M = 6371000.0


def time_decay(days_old: float, half_life_days: float) -> float:
    """Exponential half-life decay: 1.0 at age 0, 0.5 at one half-life."""
    return 0.5 ** (days_old / half_life_days)


def distance_decay(meters: float, k: float) -> float:
    """Continuous distance decay exp(-k * meters), in (0, 1] for meters >= 0.

    A smooth curve instead of distance bands, so a 1 m move across what
    would have been a band edge changes the score by a tiny amount.
    """
    return math.exp(-k * meters)


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points, in meters."""
    lat1_r, lng1_r = math.radians(lat1), math.radians(lng1)
    lat2_r, lng2_r = math.radians(lat2), math.radians(lng2)

    dlat = lat2_r - lat1_r
    dlng = lng2_r - lng1_r

    a = (math.sin(dlat / 2) ** 2
         + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlng / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def parse_timestamp(value: Union[str, date, datetime, None]) -> Optional[datetime]:
    """Parse an ISO date or datetime into an aware UTC datetime.

    Naive values are treated as UTC.  Returns None for empty or
    unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        dt = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip().replace("Z", "+00:00")
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def age_in_days(value, now: Optional[datetime] = None) -> Optional[float]:
    """Fractional days between *value* and *now*.  Negative for future dates."""
    ts = parse_timestamp(value)
    if ts is None:
        return None
    if now is None:
        now = datetime.now(timezone.utc)
    return (now - ts).total_seconds() / 86400.0
