"""Tests for spatial_data.py — bounding-box prefilter + exact radius queries."""

from datetime import datetime, timedelta, timezone

import pytest

from decay import haversine_m
from spatial_data import SpatialStore, bounding_box

LAT, LNG = 16.0544, 108.2022
NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


class TestBoundingBox:
    def test_box_contains_circle_edge(self):
        min_lat, max_lat, min_lng, max_lng = bounding_box(LAT, LNG, 1000)
        # Points exactly 1000 m north/east must fall inside the box
        assert haversine_m(LAT, LNG, max_lat, LNG) >= 1000
        assert haversine_m(LAT, LNG, LAT, max_lng) >= 1000
        assert min_lat < LAT < max_lat
        assert min_lng < LNG < max_lng


class TestIncidentsAffecting:
    def test_attributed_and_nearby(self, db):
        db.upsert_property(1, "p", None, LAT, LNG)
        db.insert_incident("theft", "low", NOW.isoformat(), property_id=1)
        db.insert_incident("robbery", "high", NOW.isoformat(), latitude=LAT + 0.01, longitude=LNG)
        db.insert_incident("noise", "low", NOW.isoformat(), latitude=LAT + 0.2, longitude=LNG)
        hits = SpatialStore(db).incidents_affecting(1, LAT, LNG, 5000)
        assert [h.incident_type for h in hits] == ["theft", "robbery"]
        assert hits[0].attributed and hits[0].distance_meters == 0.0
        assert hits[1].distance_meters == pytest.approx(1112, rel=0.01)

    def test_without_coordinates_only_attributed(self, db):
        db.upsert_property(1, "p", None, None, None)
        db.insert_incident("theft", "low", NOW.isoformat(), property_id=1)
        db.insert_incident("robbery", "high", NOW.isoformat(), latitude=LAT, longitude=LNG)
        hits = SpatialStore(db).incidents_affecting(1, None, None, 5000)
        assert len(hits) == 1


class TestSafetyPointBonus:
    def test_sums_within_radius(self, db):
        db.insert_safety_point("a", "police", 1.5, LAT + 0.001, LNG)
        db.insert_safety_point("b", "hospital", 2.0, LAT, LNG + 0.001)
        db.insert_safety_point("c", "police", 9.0, LAT + 0.02, LNG)
        assert SpatialStore(db).safety_point_bonus(LAT, LNG, 1000) == pytest.approx(3.5)

    def test_empty_is_zero(self, db):
        assert SpatialStore(db).safety_point_bonus(LAT, LNG, 1000) == 0.0


class TestFloodReportsWithin:
    def test_window_filter(self, db):
        db.insert_flood_report(LAT, LNG, 30, report_date=(NOW - timedelta(days=10)).isoformat())
        db.insert_flood_report(LAT, LNG, 30, report_date=(NOW - timedelta(days=1000)).isoformat())
        rows = SpatialStore(db).flood_reports_within(LAT, LNG, 200, window_days=730, now=NOW)
        assert len(rows) == 1

    def test_limit_keeps_newest(self, db):
        for days in (5, 1, 30, 2):
            db.insert_flood_report(LAT, LNG, days, report_date=(NOW - timedelta(days=days)).isoformat())
        rows = SpatialStore(db).flood_reports_within(LAT, LNG, 100, limit=2)
        assert [r["water_level"] for r in rows] == [1, 2]


class TestPropertiesWithin:
    def test_nearest_first_and_limit(self, db):
        db.upsert_property(1, "far", None, LAT + 0.005, LNG)
        db.upsert_property(2, "near", None, LAT + 0.001, LNG)
        db.upsert_property(3, "outside", None, LAT + 0.5, LNG)
        db.upsert_property(4, "no coords", None, None, None)
        rows = SpatialStore(db).properties_within(LAT, LNG, 1000)
        assert [r["id"] for r in rows] == [2, 1]
        assert len(SpatialStore(db).properties_within(LAT, LNG, 1000, limit=1)) == 1
