"""Tests for models.py — SafetyDB persistence and the enrichment queue."""

import sqlite3
import threading

import pytest

from models import JOB_DONE, JOB_FAILED, JOB_PENDING, JOB_PROCESSING


# =========================================================================
# Properties
# =========================================================================

class TestProperties:
    def test_upsert_and_get(self, db):
        prop = db.upsert_property(7, "Room 7", "1 Le Loi", 16.0, 108.0)
        assert prop["id"] == 7
        assert prop["synced_at"]
        assert db.get_property(7)["name"] == "Room 7"

    def test_upsert_updates_in_place(self, db):
        db.upsert_property(7, "Room 7", "1 Le Loi", 16.0, 108.0)
        db.upsert_property(7, "Renamed", "2 Le Loi", 16.0, 108.0)
        assert db.get_property(7)["name"] == "Renamed"
        assert len(db.list_property_page(None, 10)) == 1

    def test_elevation_kept_when_coordinates_unchanged(self, db):
        db.upsert_property(7, "Room 7", None, 16.0, 108.0)
        db.set_property_elevation(7, 3.5)
        db.upsert_property(7, "Room 7 renamed", None, 16.0, 108.0)
        assert db.get_property(7)["elevation_meters"] == 3.5

    def test_missing_is_none(self, db):
        assert db.get_property(404) is None

    def test_keyset_pages_cover_everything_once(self, db):
        for pid in (5, 1, 9, 3, 7):
            db.upsert_property(pid, f"p{pid}", None, None, None)
        seen, last = [], None
        while True:
            page = db.list_property_page(last, 2)
            if not page:
                break
            seen.extend(p["id"] for p in page)
            last = page[-1]["id"]
        assert seen == [1, 3, 5, 7, 9]

    def test_search_by_name_or_address(self, db):
        db.upsert_property(1, "Sunny Room", "12 Bach Dang", None, None)
        db.upsert_property(2, "Dark Room", "99 Nguyen Hue", None, None)
        assert [p["id"] for p in db.search_properties("sunny")] == [1]
        assert [p["id"] for p in db.search_properties("Nguyen")] == [2]
        assert len(db.search_properties("Room")) == 2


# =========================================================================
# Reviews
# =========================================================================

class TestReviews:
    def test_one_review_per_user(self, db):
        db.upsert_property(1, "p", None, None, None)
        db.upsert_review(1, 42, 2, review_text="noisy")
        review = db.upsert_review(1, 42, 5, review_text="better now")
        assert db.count_reviews(1, user_id=42) == 1
        assert review["safety_rating"] == 5
        assert review["review_text"] == "better now"

    def test_rating_out_of_range_rejected(self, db):
        db.upsert_property(1, "p", None, None, None)
        with pytest.raises(sqlite3.IntegrityError):
            db.upsert_review(1, 42, 6)

    def test_delete_own_review(self, db):
        db.upsert_property(1, "p", None, None, None)
        db.upsert_review(1, 42, 3)
        assert db.delete_review(1, 42) is True
        assert db.delete_review(1, 42) is False
        assert db.count_reviews(1) == 0

    def test_average_none_without_reviews(self, db):
        db.upsert_property(1, "p", None, None, None)
        assert db.average_safety_rating(1) is None

    def test_list_paginates_newest_first(self, db):
        db.upsert_property(1, "p", None, None, None)
        for uid in range(1, 6):
            db.upsert_review(1, uid, 3)
        first = db.list_reviews(1, limit=2, offset=0)
        second = db.list_reviews(1, limit=2, offset=2)
        assert len(first) == 2 and len(second) == 2
        assert {r["id"] for r in first}.isdisjoint({r["id"] for r in second})


# =========================================================================
# Score cache
# =========================================================================

class TestScores:
    def test_upsert_keeps_single_row(self, db):
        db.upsert_property(1, "p", None, None, None)
        db.upsert_score(1, 8.0, 9.0, 8.0, 6.0, None, "2.1.0")
        row = db.upsert_score(1, 7.0, 8.0, 7.0, 5.0, 4.0, "2.1.0")
        assert row["overall_score"] == 7.0
        assert row["admin_score"] == 4.0

    def test_upsert_preserves_ai_summary(self, db):
        db.upsert_property(1, "p", None, None, None)
        db.upsert_score(1, 8.0, 9.0, 8.0, 6.0, None, "2.1.0")
        job_id = db.enqueue_enrichment_job(1, {"overall": 8.0})
        db.claim_next_enrichment_job()
        db.complete_enrichment_job(job_id, 1, "Quiet street.")
        row = db.upsert_score(1, 7.5, 9.0, 7.0, 6.0, None, "2.1.0")
        assert row["ai_summary"] == "Quiet street."

    def test_admin_score_roundtrip(self, db):
        db.upsert_property(1, "p", None, None, None)
        assert db.get_admin_score(1) is None
        db.set_admin_score(1, 6.5, notes="inspected")
        db.set_admin_score(1, 7.0)
        assert db.get_admin_score(1) == 7.0


# =========================================================================
# Enrichment queue
# =========================================================================

class TestEnrichmentQueue:
    def test_enqueue_is_pending_with_payload(self, db):
        job_id = db.enqueue_enrichment_job(1, {"overall": 8.2, "crime": 9.0})
        job = db.get_enrichment_job(job_id)
        assert job["status"] == JOB_PENDING
        assert job["payload"] == {"overall": 8.2, "crime": 9.0}

    def test_claim_oldest_first(self, db):
        first = db.enqueue_enrichment_job(1, {})
        db.enqueue_enrichment_job(2, {})
        job = db.claim_next_enrichment_job()
        assert job["id"] == first
        assert job["status"] == JOB_PROCESSING
        assert job["claimed_at"]

    def test_claim_empty_queue(self, db):
        assert db.claim_next_enrichment_job() is None

    def test_claimed_job_not_claimed_again(self, db):
        db.enqueue_enrichment_job(1, {})
        assert db.claim_next_enrichment_job() is not None
        assert db.claim_next_enrichment_job() is None

    def test_concurrent_claims_never_share_a_job(self, db):
        for pid in range(20):
            db.enqueue_enrichment_job(pid, {})
        claimed = []
        lock = threading.Lock()
        barrier = threading.Barrier(4)

        def claimer():
            barrier.wait()
            while True:
                job = db.claim_next_enrichment_job()
                if job is None:
                    return
                with lock:
                    claimed.append(job["id"])

        threads = [threading.Thread(target=claimer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(claimed) == 20
        assert len(set(claimed)) == 20
        assert db.count_jobs_by_status()[JOB_PROCESSING] == 20

    def test_two_racers_on_one_job(self, db):
        job_id = db.enqueue_enrichment_job(1, {})
        results = []
        barrier = threading.Barrier(2)

        def racer():
            barrier.wait()
            results.append(db.claim_next_enrichment_job())

        threads = [threading.Thread(target=racer) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert winners[0]["id"] == job_id

    def test_complete_writes_summary_and_done(self, db):
        db.upsert_property(1, "p", None, None, None)
        db.upsert_score(1, 8.0, 9.0, 8.0, 6.0, None, "2.1.0")
        job_id = db.enqueue_enrichment_job(1, {})
        db.claim_next_enrichment_job()
        db.complete_enrichment_job(job_id, 1, "Safe area.")
        assert db.get_enrichment_job(job_id)["status"] == JOB_DONE
        assert db.get_score(1)["ai_summary"] == "Safe area."

    def test_fail_is_terminal(self, db):
        job_id = db.enqueue_enrichment_job(1, {})
        db.claim_next_enrichment_job()
        db.fail_enrichment_job(job_id, "model timeout")
        job = db.get_enrichment_job(job_id)
        assert job["status"] == JOB_FAILED
        assert job["error"] == "model timeout"
        assert db.claim_next_enrichment_job() is None

    def test_latest_job_per_property(self, db):
        db.enqueue_enrichment_job(1, {})
        second = db.enqueue_enrichment_job(1, {})
        db.enqueue_enrichment_job(2, {})
        assert db.latest_enrichment_job(1)["id"] == second
        assert db.latest_enrichment_job(3) is None

    def test_stale_processing_count(self, db):
        job_id = db.enqueue_enrichment_job(1, {})
        db.claim_next_enrichment_job()
        assert db.count_stale_processing_jobs(max_age_seconds=300) == 0
        conn = db.connect()
        conn.execute(
            "UPDATE enrichment_jobs SET claimed_at = '2000-01-01T00:00:00+00:00' WHERE id = ?",
            (job_id,),
        )
        conn.commit()
        conn.close()
        assert db.count_stale_processing_jobs(max_age_seconds=300) == 1
