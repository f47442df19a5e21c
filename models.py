"""
SQLite persistence for SafeNest properties, safety inputs, score cache
and the narrative enrichment queue.

No ORM — just raw sqlite3.  One SafetyDB handle is constructed per process
and passed to whoever needs it; every method opens its own short-lived
connection, so the handle is safe to share across threads.  Multiple
processes may point at the same file: all cross-property writes are
upserts or lock-guarded claims.
"""

import json
import logging
import sqlite3
from datetime import datetime, timezone, timedelta
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

JOB_PENDING = "pending"
JOB_PROCESSING = "processing"
JOB_DONE = "done"
JOB_FAILED = "failed"
JOB_STATUSES = (JOB_PENDING, JOB_PROCESSING, JOB_DONE, JOB_FAILED)


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


_SCHEMA = """
    CREATE TABLE IF NOT EXISTS properties (
        id                INTEGER PRIMARY KEY,
        name              TEXT,
        address           TEXT,
        latitude          REAL,
        longitude         REAL,
        elevation_meters  REAL,
        synced_at         TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_properties_coords ON properties(latitude, longitude);

    CREATE TABLE IF NOT EXISTS security_incidents (
        id             INTEGER PRIMARY KEY AUTOINCREMENT,
        property_id    INTEGER REFERENCES properties(id),
        incident_type  TEXT NOT NULL,
        severity       TEXT NOT NULL CHECK (severity IN ('low', 'medium', 'high')),
        incident_date  TEXT NOT NULL,
        notes          TEXT,
        latitude       REAL,
        longitude      REAL,
        created_at     TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_incidents_property ON security_incidents(property_id);
    CREATE INDEX IF NOT EXISTS idx_incidents_coords ON security_incidents(latitude, longitude);

    CREATE TABLE IF NOT EXISTS reviews (
        id                  INTEGER PRIMARY KEY AUTOINCREMENT,
        property_id         INTEGER NOT NULL REFERENCES properties(id),
        user_id             INTEGER NOT NULL,
        safety_rating       INTEGER NOT NULL CHECK (safety_rating BETWEEN 1 AND 5),
        cleanliness_rating  INTEGER CHECK (cleanliness_rating BETWEEN 1 AND 5),
        amenities_rating    INTEGER CHECK (amenities_rating BETWEEN 1 AND 5),
        host_rating         INTEGER CHECK (host_rating BETWEEN 1 AND 5),
        review_text         TEXT,
        created_at          TEXT NOT NULL,
        UNIQUE (property_id, user_id)
    );
    CREATE INDEX IF NOT EXISTS idx_reviews_property ON reviews(property_id, created_at);

    CREATE TABLE IF NOT EXISTS flood_reports (
        id           INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id      INTEGER,
        latitude     REAL NOT NULL,
        longitude    REAL NOT NULL,
        water_level  INTEGER NOT NULL,
        description  TEXT,
        report_date  TEXT NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_floods_coords ON flood_reports(latitude, longitude);

    CREATE TABLE IF NOT EXISTS safety_points (
        id              INTEGER PRIMARY KEY AUTOINCREMENT,
        name            TEXT,
        category        TEXT,
        severity_score  REAL NOT NULL,
        latitude        REAL NOT NULL,
        longitude       REAL NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_points_coords ON safety_points(latitude, longitude);

    CREATE TABLE IF NOT EXISTS admin_safety_reviews (
        property_id   INTEGER PRIMARY KEY REFERENCES properties(id),
        safety_score  REAL NOT NULL,
        notes         TEXT,
        updated_at    TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS property_safety_scores (
        property_id        INTEGER PRIMARY KEY REFERENCES properties(id),
        overall_score      REAL NOT NULL,
        crime_score        REAL NOT NULL,
        user_score         REAL NOT NULL,
        environment_score  REAL NOT NULL,
        admin_score        REAL,
        model_version      TEXT,
        last_updated_at    TEXT NOT NULL,
        ai_summary         TEXT
    );

    -- Narrative enrichment queue (polled by worker.py)
    CREATE TABLE IF NOT EXISTS enrichment_jobs (
        id            INTEGER PRIMARY KEY AUTOINCREMENT,
        property_id   INTEGER NOT NULL,
        payload       TEXT NOT NULL,
        status        TEXT NOT NULL DEFAULT 'pending'
                      CHECK (status IN ('pending', 'processing', 'done', 'failed')),
        error         TEXT,
        created_at    TEXT NOT NULL,
        claimed_at    TEXT,
        processed_at  TEXT
    );
    CREATE INDEX IF NOT EXISTS idx_jobs_status ON enrichment_jobs(status, created_at);
    CREATE INDEX IF NOT EXISTS idx_jobs_property ON enrichment_jobs(property_id);
"""


class SafetyDB:
    """
    Data-access handle for the safety score store.

    Usage:
        db = SafetyDB("safety.db")
        db.init_db()
        db.upsert_property(42, "Room 42", "12 Tran Phu", 16.06, 108.22)
    """

    def __init__(self, path: str):
        self.path = path

    def connect(self, autocommit: bool = False) -> sqlite3.Connection:
        """Open a connection with WAL mode for concurrent readers.

        autocommit=True disables sqlite3's implicit transactions so the
        caller can issue BEGIN IMMEDIATE itself.
        """
        conn = sqlite3.connect(self.path, timeout=10)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        if autocommit:
            conn.isolation_level = None
        return conn

    def init_db(self) -> None:
        """Create tables if they don't exist. Safe to call on every startup."""
        conn = self.connect()
        try:
            conn.executescript(_SCHEMA)
            conn.commit()
        finally:
            conn.close()

    def _fetch_one(self, sql: str, params=()) -> Optional[dict]:
        conn = self.connect()
        try:
            row = conn.execute(sql, params).fetchone()
        finally:
            conn.close()
        return dict(row) if row else None

    def _fetch_all(self, sql: str, params=()) -> List[dict]:
        conn = self.connect()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()
        return [dict(r) for r in rows]

    def _execute(self, sql: str, params=()) -> sqlite3.Cursor:
        conn = self.connect()
        try:
            cur = conn.execute(sql, params)
            conn.commit()
            return cur
        finally:
            conn.close()

    # ---------------------------------------------------------------------
    # Properties
    # ---------------------------------------------------------------------

    def get_property(self, property_id: int) -> Optional[dict]:
        return self._fetch_one("SELECT * FROM properties WHERE id = ?", (property_id,))

    def upsert_property(
        self,
        property_id: int,
        name: Optional[str],
        address: Optional[str],
        latitude: Optional[float],
        longitude: Optional[float],
    ) -> dict:
        """Insert or update a property keyed by its external ID.

        The cached elevation survives the update only if the coordinates
        did not move.
        """
        self._execute(
            """INSERT INTO properties (id, name, address, latitude, longitude, synced_at)
               VALUES (?, ?, ?, ?, ?, ?)
               ON CONFLICT (id) DO UPDATE SET
                   name = excluded.name,
                   address = excluded.address,
                   elevation_meters = CASE
                       WHEN properties.latitude IS excluded.latitude
                        AND properties.longitude IS excluded.longitude
                       THEN properties.elevation_meters
                       ELSE NULL
                   END,
                   latitude = excluded.latitude,
                   longitude = excluded.longitude,
                   synced_at = excluded.synced_at""",
            (property_id, name, address, latitude, longitude, _now_iso()),
        )
        return self.get_property(property_id)

    def set_property_elevation(self, property_id: int, elevation_meters: float) -> None:
        self._execute(
            "UPDATE properties SET elevation_meters = ? WHERE id = ?",
            (elevation_meters, property_id),
        )

    def list_property_page(self, after_id: Optional[int], limit: int) -> List[dict]:
        """Keyset page: properties with id > after_id, ascending, at most limit rows."""
        if after_id is None:
            return self._fetch_all(
                "SELECT * FROM properties ORDER BY id ASC LIMIT ?", (limit,)
            )
        return self._fetch_all(
            "SELECT * FROM properties WHERE id > ? ORDER BY id ASC LIMIT ?",
            (after_id, limit),
        )

    def search_properties(self, text: str, limit: int = 20) -> List[dict]:
        pattern = f"%{text}%"
        return self._fetch_all(
            """SELECT id, name, address FROM properties
               WHERE name LIKE ? OR address LIKE ?
               ORDER BY id ASC LIMIT ?""",
            (pattern, pattern, limit),
        )

    # ---------------------------------------------------------------------
    # Security incidents
    # ---------------------------------------------------------------------

    def insert_incident(
        self,
        incident_type: str,
        severity: str,
        incident_date: str,
        property_id: Optional[int] = None,
        notes: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
    ) -> dict:
        conn = self.connect()
        try:
            cur = conn.execute(
                """INSERT INTO security_incidents
                   (property_id, incident_type, severity, incident_date, notes,
                    latitude, longitude, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (property_id, incident_type, severity, incident_date, notes,
                 latitude, longitude, _now_iso()),
            )
            conn.commit()
            row = conn.execute(
                "SELECT * FROM security_incidents WHERE id = ?", (cur.lastrowid,)
            ).fetchone()
        finally:
            conn.close()
        return dict(row)

    # ---------------------------------------------------------------------
    # Reviews
    # ---------------------------------------------------------------------

    def upsert_review(
        self,
        property_id: int,
        user_id: int,
        safety_rating: int,
        cleanliness_rating: Optional[int] = None,
        amenities_rating: Optional[int] = None,
        host_rating: Optional[int] = None,
        review_text: Optional[str] = None,
    ) -> dict:
        """One review per (property, user): a re-submission replaces the prior one."""
        self._execute(
            """INSERT INTO reviews
               (property_id, user_id, safety_rating, cleanliness_rating,
                amenities_rating, host_rating, review_text, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (property_id, user_id) DO UPDATE SET
                   safety_rating = excluded.safety_rating,
                   cleanliness_rating = excluded.cleanliness_rating,
                   amenities_rating = excluded.amenities_rating,
                   host_rating = excluded.host_rating,
                   review_text = excluded.review_text,
                   created_at = excluded.created_at""",
            (property_id, user_id, safety_rating, cleanliness_rating,
             amenities_rating, host_rating, review_text, _now_iso()),
        )
        return self._fetch_one(
            "SELECT * FROM reviews WHERE property_id = ? AND user_id = ?",
            (property_id, user_id),
        )

    def delete_review(self, property_id: int, user_id: int) -> bool:
        """Delete the user's own review. Returns False if there was none."""
        cur = self._execute(
            "DELETE FROM reviews WHERE property_id = ? AND user_id = ?",
            (property_id, user_id),
        )
        return cur.rowcount > 0

    def average_safety_rating(self, property_id: int) -> Optional[float]:
        row = self._fetch_one(
            "SELECT AVG(safety_rating) AS avg_rating FROM reviews WHERE property_id = ?",
            (property_id,),
        )
        return row["avg_rating"] if row else None

    def count_reviews(self, property_id: int, user_id: Optional[int] = None) -> int:
        if user_id is None:
            row = self._fetch_one(
                "SELECT COUNT(*) AS n FROM reviews WHERE property_id = ?", (property_id,)
            )
        else:
            row = self._fetch_one(
                "SELECT COUNT(*) AS n FROM reviews WHERE property_id = ? AND user_id = ?",
                (property_id, user_id),
            )
        return row["n"]

    def list_reviews(self, property_id: int, limit: int = 10, offset: int = 0) -> List[dict]:
        """Newest first."""
        return self._fetch_all(
            """SELECT * FROM reviews WHERE property_id = ?
               ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?""",
            (property_id, limit, offset),
        )

    # ---------------------------------------------------------------------
    # Flood reports / safety points
    # ---------------------------------------------------------------------

    def insert_flood_report(
        self,
        latitude: float,
        longitude: float,
        water_level: int,
        description: Optional[str] = None,
        user_id: Optional[int] = None,
        report_date: Optional[str] = None,
    ) -> int:
        cur = self._execute(
            """INSERT INTO flood_reports
               (user_id, latitude, longitude, water_level, description, report_date)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (user_id, latitude, longitude, water_level, description,
             report_date or _now_iso()),
        )
        return cur.lastrowid

    def insert_safety_point(
        self,
        name: str,
        category: str,
        severity_score: float,
        latitude: float,
        longitude: float,
    ) -> int:
        cur = self._execute(
            """INSERT INTO safety_points (name, category, severity_score, latitude, longitude)
               VALUES (?, ?, ?, ?, ?)""",
            (name, category, severity_score, latitude, longitude),
        )
        return cur.lastrowid

    # ---------------------------------------------------------------------
    # Admin override scores
    # ---------------------------------------------------------------------

    def set_admin_score(self, property_id: int, safety_score: float, notes: Optional[str] = None) -> None:
        self._execute(
            """INSERT INTO admin_safety_reviews (property_id, safety_score, notes, updated_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT (property_id) DO UPDATE SET
                   safety_score = excluded.safety_score,
                   notes = excluded.notes,
                   updated_at = excluded.updated_at""",
            (property_id, safety_score, notes, _now_iso()),
        )

    def get_admin_score(self, property_id: int) -> Optional[float]:
        row = self._fetch_one(
            "SELECT safety_score FROM admin_safety_reviews WHERE property_id = ?",
            (property_id,),
        )
        return row["safety_score"] if row else None

    # ---------------------------------------------------------------------
    # Score cache
    # ---------------------------------------------------------------------

    def upsert_score(
        self,
        property_id: int,
        overall_score: float,
        crime_score: float,
        user_score: float,
        environment_score: float,
        admin_score: Optional[float],
        model_version: str,
    ) -> dict:
        """Write the score row. An existing ai_summary is kept until a new one lands."""
        self._execute(
            """INSERT INTO property_safety_scores
               (property_id, overall_score, crime_score, user_score,
                environment_score, admin_score, model_version, last_updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (property_id) DO UPDATE SET
                   overall_score = excluded.overall_score,
                   crime_score = excluded.crime_score,
                   user_score = excluded.user_score,
                   environment_score = excluded.environment_score,
                   admin_score = excluded.admin_score,
                   model_version = excluded.model_version,
                   last_updated_at = excluded.last_updated_at""",
            (property_id, overall_score, crime_score, user_score,
             environment_score, admin_score, model_version, _now_iso()),
        )
        return self.get_score(property_id)

    def get_score(self, property_id: int) -> Optional[dict]:
        return self._fetch_one(
            "SELECT * FROM property_safety_scores WHERE property_id = ?", (property_id,)
        )

    # ---------------------------------------------------------------------
    # Enrichment queue
    # ---------------------------------------------------------------------

    @staticmethod
    def _job_from_row(row) -> dict:
        job = dict(row)
        try:
            job["payload"] = json.loads(job["payload"]) if job["payload"] else {}
        except (json.JSONDecodeError, TypeError):
            logger.error("Corrupted payload for enrichment job %s", job["id"])
            job["payload"] = {}
        return job

    def enqueue_enrichment_job(self, property_id: int, payload: Dict) -> int:
        """Insert a pending job carrying a snapshot of the computed scores."""
        cur = self._execute(
            """INSERT INTO enrichment_jobs (property_id, payload, status, created_at)
               VALUES (?, ?, 'pending', ?)""",
            (property_id, json.dumps(payload, default=str), _now_iso()),
        )
        return cur.lastrowid

    def get_enrichment_job(self, job_id: int) -> Optional[dict]:
        conn = self.connect()
        try:
            row = conn.execute("SELECT * FROM enrichment_jobs WHERE id = ?", (job_id,)).fetchone()
        finally:
            conn.close()
        return self._job_from_row(row) if row else None

    def latest_enrichment_job(self, property_id: int) -> Optional[dict]:
        conn = self.connect()
        try:
            row = conn.execute(
                """SELECT * FROM enrichment_jobs WHERE property_id = ?
                   ORDER BY id DESC LIMIT 1""",
                (property_id,),
            ).fetchone()
        finally:
            conn.close()
        return self._job_from_row(row) if row else None

    def claim_next_enrichment_job(self) -> Optional[dict]:
        """
        Claim the oldest pending job and flip it to 'processing'.

        The select and the update run inside one BEGIN IMMEDIATE transaction:
        SQLite grants the reserved (write) lock to one connection at a time,
        so concurrent claimers in any process serialize here, and the
        status guard on the UPDATE rejects a row someone else already took.
        The transaction commits before the caller does any slow work.
        Returns the job dict or None if the queue is empty.
        """
        conn = self.connect(autocommit=True)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    """SELECT id FROM enrichment_jobs WHERE status = 'pending'
                       ORDER BY created_at ASC, id ASC LIMIT 1"""
                ).fetchone()
                if row is None:
                    conn.execute("COMMIT")
                    return None
                cur = conn.execute(
                    """UPDATE enrichment_jobs SET status = 'processing', claimed_at = ?
                       WHERE id = ? AND status = 'pending'""",
                    (_now_iso(), row["id"]),
                )
                if cur.rowcount != 1:
                    conn.execute("ROLLBACK")
                    return None
                job = conn.execute(
                    "SELECT * FROM enrichment_jobs WHERE id = ?", (row["id"],)
                ).fetchone()
                conn.execute("COMMIT")
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()
        return self._job_from_row(job)

    def complete_enrichment_job(self, job_id: int, property_id: int, ai_summary: str) -> None:
        """Patch the score row's narrative and mark the job done, atomically."""
        conn = self.connect()
        try:
            conn.execute(
                "UPDATE property_safety_scores SET ai_summary = ? WHERE property_id = ?",
                (ai_summary, property_id),
            )
            conn.execute(
                """UPDATE enrichment_jobs SET status = 'done', processed_at = ?, error = NULL
                   WHERE id = ? AND status = 'processing'""",
                (_now_iso(), job_id),
            )
            conn.commit()
        finally:
            conn.close()

    def fail_enrichment_job(self, job_id: int, error_message: str) -> None:
        """Mark job as failed. Terminal: nothing in this process retries it."""
        self._execute(
            """UPDATE enrichment_jobs SET status = 'failed', processed_at = ?, error = ?
               WHERE id = ? AND status = 'processing'""",
            (_now_iso(), (error_message or "")[:500], job_id),
        )

    def count_jobs_by_status(self) -> Dict[str, int]:
        rows = self._fetch_all(
            "SELECT status, COUNT(*) AS n FROM enrichment_jobs GROUP BY status"
        )
        counts = {status: 0 for status in JOB_STATUSES}
        for r in rows:
            counts[r["status"]] = r["n"]
        return counts

    def count_stale_processing_jobs(self, max_age_seconds: int = 300) -> int:
        """Jobs stuck in 'processing' longer than max_age_seconds (reported, not reclaimed)."""
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)).isoformat()
        row = self._fetch_one(
            """SELECT COUNT(*) AS n FROM enrichment_jobs
               WHERE status = 'processing' AND claimed_at IS NOT NULL AND claimed_at <= ?""",
            (cutoff,),
        )
        return row["n"]
