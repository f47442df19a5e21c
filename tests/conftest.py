"""Shared fixtures for the SafeNest test suite.

Provides a fresh SafetyDB per test, a Flask test client wired to a
temporary SQLite database, and blocks every outbound HTTP lookup the
scoring path would otherwise make (elevation, places, narrative).
"""

import atexit
import os
import tempfile
from unittest.mock import patch

import pytest

# Point the DB at a temp file BEFORE importing app (it reads SAFETY_DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["SAFETY_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ.pop("GOOGLE_MAPS_API_KEY", None)
os.environ.pop("GEMINI_API_KEY", None)
os.environ.pop("SENTRY_DSN", None)

from app import app, db as app_db, limiter  # noqa: E402
from models import SafetyDB  # noqa: E402

ADMIN_HEADERS = {"X-API-Key": "test-admin-key"}

_TABLES = (
    "enrichment_jobs",
    "property_safety_scores",
    "admin_safety_reviews",
    "reviews",
    "security_incidents",
    "flood_reports",
    "safety_points",
    "properties",
)


@pytest.fixture(autouse=True)
def _no_network():
    """Scoring never leaves the process in tests unless a test patches it back in."""
    with patch("flood_risk.fetch_elevation", return_value=None):
        yield


@pytest.fixture()
def db(tmp_path):
    """A fresh, empty SafetyDB in a per-test temp file."""
    handle = SafetyDB(str(tmp_path / "safety.db"))
    handle.init_db()
    return handle


@pytest.fixture()
def client():
    """Flask test client on the app's own DB, emptied before each test."""
    app.config["TESTING"] = True
    limiter.enabled = False
    conn = app_db.connect()
    for table in _TABLES:
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    with app.test_client() as c:
        yield c


@pytest.fixture()
def admin_headers():
    return dict(ADMIN_HEADERS)
