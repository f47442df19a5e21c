"""
Within-radius queries over the geographic points in the safety store.

Points are plain latitude/longitude columns.  Each query pre-filters with
a bounding box on the indexed coordinate columns, then computes exact
great-circle distances and drops everything outside the radius.  Results
carry distance_meters and are sorted nearest first.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone, timedelta
from typing import List, Optional, Tuple

from decay import haversine_m, parse_timestamp
from models import SafetyDB

logger = logging.getLogger(__name__)

_METERS_PER_DEGREE_LAT = 111320.0


def bounding_box(lat: float, lng: float, radius_m: float) -> Tuple[float, float, float, float]:
    """(min_lat, max_lat, min_lng, max_lng) enclosing a circle of radius_m.

    Slightly generous so the box never clips the circle; exact filtering
    happens afterwards.
    """
    dlat = radius_m / _METERS_PER_DEGREE_LAT * 1.01
    cos_lat = max(math.cos(math.radians(lat)), 0.01)
    dlng = radius_m / (_METERS_PER_DEGREE_LAT * cos_lat) * 1.01
    return lat - dlat, lat + dlat, lng - dlng, lng + dlng


@dataclass
class IncidentHit:
    """An incident that affects a property, with its distance to it."""
    id: int
    severity: str
    incident_type: str
    incident_date: str
    distance_meters: float
    attributed: bool  # recorded against the property itself


class SpatialStore:
    """
    Radius queries over incidents, safety points, flood reports and properties.

    Usage:
        spatial = SpatialStore(db)
        hits = spatial.incidents_affecting(property_id=7, lat=16.06, lng=108.22, radius_m=5000)
    """

    def __init__(self, db: SafetyDB):
        self.db = db

    def _rows_in_box(self, table: str, columns: str, lat: float, lng: float,
                     radius_m: float, extra_where: str = "", params=()) -> list:
        min_lat, max_lat, min_lng, max_lng = bounding_box(lat, lng, radius_m)
        sql = (
            f"SELECT {columns} FROM {table} "
            "WHERE latitude IS NOT NULL AND longitude IS NOT NULL "
            "AND latitude BETWEEN ? AND ? AND longitude BETWEEN ? AND ?"
        )
        if extra_where:
            sql += f" AND {extra_where}"
        conn = self.db.connect()
        try:
            return [dict(r) for r in conn.execute(
                sql, (min_lat, max_lat, min_lng, max_lng, *params)
            ).fetchall()]
        finally:
            conn.close()

    def _within(self, rows: list, lat: float, lng: float, radius_m: float) -> list:
        hits = []
        for row in rows:
            d = haversine_m(lat, lng, row["latitude"], row["longitude"])
            if d <= radius_m:
                row["distance_meters"] = d
                hits.append(row)
        hits.sort(key=lambda r: r["distance_meters"])
        return hits

    def incidents_affecting(
        self,
        property_id: int,
        lat: Optional[float],
        lng: Optional[float],
        radius_m: float,
    ) -> List[IncidentHit]:
        """Incidents recorded against the property (distance 0) or within radius_m.

        Without coordinates only the attributed incidents are returned.
        Query errors propagate; the crime calculator owns the fallback.
        """
        hits = {}
        conn = self.db.connect()
        try:
            attributed = conn.execute(
                """SELECT id, severity, incident_type, incident_date
                   FROM security_incidents WHERE property_id = ?""",
                (property_id,),
            ).fetchall()
        finally:
            conn.close()
        for r in attributed:
            hits[r["id"]] = IncidentHit(
                id=r["id"],
                severity=r["severity"],
                incident_type=r["incident_type"],
                incident_date=r["incident_date"],
                distance_meters=0.0,
                attributed=True,
            )

        if lat is not None and lng is not None:
            rows = self._rows_in_box(
                "security_incidents",
                "id, severity, incident_type, incident_date, latitude, longitude",
                lat, lng, radius_m,
            )
            for r in self._within(rows, lat, lng, radius_m):
                if r["id"] in hits:
                    continue
                hits[r["id"]] = IncidentHit(
                    id=r["id"],
                    severity=r["severity"],
                    incident_type=r["incident_type"],
                    incident_date=r["incident_date"],
                    distance_meters=r["distance_meters"],
                    attributed=False,
                )
        return sorted(hits.values(), key=lambda h: h.distance_meters)

    def safety_point_bonus(self, lat: float, lng: float, radius_m: float) -> float:
        """Sum of severity_score over safety points within radius_m (0.0 if none)."""
        rows = self._rows_in_box(
            "safety_points", "id, severity_score, latitude, longitude", lat, lng, radius_m,
        )
        return sum(r["severity_score"] or 0.0 for r in self._within(rows, lat, lng, radius_m))

    def flood_reports_within(
        self,
        lat: float,
        lng: float,
        radius_m: float,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[dict]:
        """Flood reports within radius_m, optionally restricted to the last window_days.

        With a limit, the newest reports are kept (sorted newest first);
        otherwise results are sorted nearest first.
        """
        rows = self._within(
            self._rows_in_box(
                "flood_reports",
                "id, water_level, description, report_date, latitude, longitude",
                lat, lng, radius_m,
            ),
            lat, lng, radius_m,
        )
        if window_days is not None:
            if now is None:
                now = datetime.now(timezone.utc)
            cutoff = now - timedelta(days=window_days)
            kept = []
            for r in rows:
                ts = parse_timestamp(r["report_date"])
                if ts is not None and cutoff < ts <= now:
                    kept.append(r)
            rows = kept
        if limit is not None:
            rows.sort(key=lambda r: parse_timestamp(r["report_date"]) or datetime.min.replace(tzinfo=timezone.utc),
                      reverse=True)
            rows = rows[:limit]
        return rows

    def properties_within(self, lat: float, lng: float, radius_m: float, limit: Optional[int] = None) -> List[dict]:
        """Properties with coordinates within radius_m, nearest first."""
        rows = self._within(
            self._rows_in_box("properties", "id, name, address, latitude, longitude",
                              lat, lng, radius_m),
            lat, lng, radius_m,
        )
        return rows[:limit] if limit is not None else rows
