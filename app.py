import os
import logging
import secrets
import uuid
from datetime import datetime, timezone
from functools import wraps

from flask import Flask, request, jsonify, g, abort
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

from decay import parse_timestamp
from models import SafetyDB
from narrative import summary_or_fallback
from property_sync import PropertySyncError, ensure_property_exists, sync_property
from safety_config import (
    FLOOD_RECOMPUTE_RADIUS_M,
    INCIDENT_RECOMPUTE_RADIUS_M,
    SAFETY_MODEL,
    SEVERITY_WEIGHTS,
)
from score_job import (
    calculate_and_save_score,
    recompute_nearby,
    trigger_full_sweep,
    trigger_recompute,
)
from spatial_data import SpatialStore

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking: gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    import requests.exceptions

    def _sentry_before_send(event, hint):
        """Demote expected failures to breadcrumbs; only unexpected errors become Sentry events."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            msg = str(exc_value) if exc_value else ""
            # Unknown room in the core API: a client error, not ours
            if exc_type is PropertySyncError:
                sentry_sdk.add_breadcrumb(category="sync", message=msg, level="warning")
                return None
            # Places / elevation / core API timeouts
            if exc_type is not None and issubclass(exc_type, requests.exceptions.RequestException):
                sentry_sdk.add_breadcrumb(category="upstream", message=msg, level="warning")
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        release=os.environ.get("RELEASE_SHA"),
        environment=os.environ.get("DEPLOY_ENVIRONMENT", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)
app.json.sort_keys = False

# Behind a reverse proxy: real client IP for Flask-Limiter and logs.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting: in-memory, per-process.
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "120/minute")
RATE_LIMIT_WRITE = os.environ.get("RATE_LIMIT_WRITE", "20/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)

ADMIN_API_KEY = os.environ.get("ADMIN_API_KEY", "")
if not ADMIN_API_KEY:
    logger.warning("ADMIN_API_KEY is not set. Admin and internal endpoints will reject every request.")

db = SafetyDB(os.environ.get("SAFETY_DB_PATH", "safety.db"))

FLOOD_HISTORY_RADIUS_M = 100
FLOOD_HISTORY_LIMIT = 20
SEARCH_DEFAULT_RADIUS_M = 100
SEARCH_MAX_RADIUS_M = 10000
SEARCH_LIMIT = 20
REVIEWS_MAX_PAGE_SIZE = 50


# ---------------------------------------------------------------------------
# Request context and auth
# ---------------------------------------------------------------------------

@app.before_request
def _set_request_context():
    g.request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex[:10]


@app.after_request
def _after_request(response):
    response.headers["X-Request-Id"] = getattr(g, "request_id", "")
    return response


def _header_user_id():
    """Integer X-User-Id header, or None if absent/invalid."""
    raw = request.headers.get("X-User-Id", "").strip()
    try:
        user_id = int(raw)
    except ValueError:
        return None
    return user_id if user_id > 0 else None


def admin_required(view):
    """Require X-API-Key to match ADMIN_API_KEY."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        supplied = request.headers.get("X-API-Key", "")
        if not ADMIN_API_KEY or not secrets.compare_digest(supplied, ADMIN_API_KEY):
            abort(403, description="Admin API key required.")
        return view(*args, **kwargs)
    return wrapper


def user_required(view):
    """Require an integer X-User-Id header (set by the gateway after login)."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        user_id = _header_user_id()
        if user_id is None:
            abort(401, description="Login required.")
        g.user_id = user_id
        return view(*args, **kwargs)
    return wrapper


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        abort(400, description="Request body must be a JSON object.")
    return data


def _float_field(value, name, low, high, required=True):
    if value is None or value == "":
        if required:
            abort(400, description=f"{name} is required.")
        return None
    try:
        f = float(value)
    except (TypeError, ValueError):
        abort(400, description=f"{name} must be a number.")
    if not (low <= f <= high):
        abort(400, description=f"{name} must be between {low} and {high}.")
    return f


def _int_field(value, name, low, high, required=True):
    if value is None or value == "":
        if required:
            abort(400, description=f"{name} is required.")
        return None
    if isinstance(value, bool):
        abort(400, description=f"{name} must be an integer.")
    try:
        i = int(value)
    except (TypeError, ValueError):
        abort(400, description=f"{name} must be an integer.")
    if isinstance(value, float) and value != i:
        abort(400, description=f"{name} must be an integer.")
    if not (low <= i <= high):
        abort(400, description=f"{name} must be between {low} and {high}.")
    return i


def _coords(lat, lng, required=True):
    return (
        _float_field(lat, "latitude", -90.0, 90.0, required=required),
        _float_field(lng, "longitude", -180.0, 180.0, required=required),
    )


def _score_response(row: dict, property_id: int) -> dict:
    payload = dict(row)
    latest = db.latest_enrichment_job(property_id)
    payload["ai_summary"] = summary_or_fallback(row, latest)
    payload["narrative_status"] = latest["status"] if latest else None
    return payload


# ---------------------------------------------------------------------------
# Safety scores
# ---------------------------------------------------------------------------

@app.route("/api/v1/properties/<int:property_id>/safety", methods=["GET", "POST"])
def property_safety(property_id):
    """Cached safety score; computed on first request (syncing the property if needed)."""
    row = db.get_score(property_id)
    if row is None:
        ensure_property_exists(db, property_id)
        row = calculate_and_save_score(db, property_id, enqueue_summary=True)
        if row is None:
            return jsonify({"error": "Safety score not available."}), 404
    return jsonify(_score_response(row, property_id))


@app.route("/api/v1/properties/<int:property_id>/summary", methods=["POST"])
@admin_required
def queue_summary(property_id):
    """Queue a narrative regeneration from the stored score row."""
    row = db.get_score(property_id)
    if row is None:
        return jsonify({"error": "No safety score for this property yet."}), 404
    payload = {
        "crime": row["crime_score"],
        "user": row["user_score"],
        "environment": row["environment_score"],
        "admin": row["admin_score"],
        "overall": row["overall_score"],
        "model_version": row["model_version"],
    }
    job_id = db.enqueue_enrichment_job(property_id, payload)
    return jsonify({"job_id": job_id, "status": "pending"}), 202


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------

@app.route("/api/v1/reviews/<int:property_id>")
def list_reviews(property_id):
    page = _int_field(request.args.get("page"), "page", 1, 10_000, required=False) or 1
    limit = _int_field(
        request.args.get("limit"), "limit", 1, REVIEWS_MAX_PAGE_SIZE, required=False,
    ) or 10
    total = db.count_reviews(property_id)
    reviews = db.list_reviews(property_id, limit=limit, offset=(page - 1) * limit)

    viewer = _header_user_id()
    for r in reviews:
        r["reviewer_name"] = "You" if viewer is not None and r["user_id"] == viewer else "Anonymous tenant"

    total_pages = (total + limit - 1) // limit
    return jsonify({
        "reviews": reviews,
        "pagination": {
            "current_page": page,
            "total_pages": total_pages,
            "total_items": total,
            "items_per_page": limit,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    })


@app.route("/api/v1/reviews", methods=["POST"])
@limiter.limit(RATE_LIMIT_WRITE)
@user_required
def upsert_review():
    """Add or replace the caller's review, then recompute the property's score."""
    data = _json_body()
    property_id = _int_field(data.get("property_id"), "property_id", 1, 2**63 - 1)
    safety = _int_field(data.get("safety_rating"), "safety_rating", 1, 5)
    cleanliness = _int_field(data.get("cleanliness_rating"), "cleanliness_rating", 1, 5, required=False)
    amenities = _int_field(data.get("amenities_rating"), "amenities_rating", 1, 5, required=False)
    host = _int_field(data.get("host_rating"), "host_rating", 1, 5, required=False)
    text = data.get("review_text")
    if text is not None and not isinstance(text, str):
        abort(400, description="review_text must be a string.")

    ensure_property_exists(db, property_id)
    review = db.upsert_review(
        property_id, g.user_id, safety,
        cleanliness_rating=cleanliness,
        amenities_rating=amenities,
        host_rating=host,
        review_text=(text or "").strip() or None,
    )
    trigger_recompute(db, [property_id])
    return jsonify(review), 201


@app.route("/api/v1/reviews/<int:property_id>", methods=["DELETE"])
@limiter.limit(RATE_LIMIT_WRITE)
@user_required
def delete_review(property_id):
    if not db.delete_review(property_id, g.user_id):
        return jsonify({"error": "Review not found."}), 404
    trigger_recompute(db, [property_id])
    return jsonify({"deleted": True})


# ---------------------------------------------------------------------------
# Flood reports
# ---------------------------------------------------------------------------

@app.route("/api/v1/flood-reports", methods=["POST"])
@limiter.limit(RATE_LIMIT_WRITE)
@user_required
def create_flood_report():
    """Record a resident flood report and recompute properties within 200 m."""
    data = _json_body()
    lat, lng = _coords(data.get("latitude"), data.get("longitude"))
    water_level = _int_field(data.get("water_level"), "water_level", 0, 1000)
    description = data.get("description")
    if description is not None and not isinstance(description, str):
        abort(400, description="description must be a string.")

    report_id = db.insert_flood_report(
        lat, lng, water_level, description=description, user_id=g.user_id,
    )
    futures = recompute_nearby(db, lat, lng, FLOOD_RECOMPUTE_RADIUS_M)
    return jsonify({"id": report_id, "recompute_count": len(futures)}), 201


@app.route("/api/v1/flood-reports")
def flood_history():
    """Twenty most recent reports within 100 m."""
    lat, lng = _coords(request.args.get("lat"), request.args.get("lng"))
    rows = SpatialStore(db).flood_reports_within(
        lat, lng, FLOOD_HISTORY_RADIUS_M, limit=FLOOD_HISTORY_LIMIT,
    )
    return jsonify([
        {
            "id": r["id"],
            "water_level": r["water_level"],
            "description": r["description"],
            "report_date": r["report_date"],
            "distance_meters": round(r["distance_meters"], 1),
        }
        for r in rows
    ])


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

@app.route("/api/v1/admin/properties-search")
@admin_required
def admin_property_search():
    """Dropdown search: by q (name/address) or by lat/lng/radius."""
    if request.args.get("lat") or request.args.get("lng"):
        lat, lng = _coords(request.args.get("lat"), request.args.get("lng"))
        radius = _float_field(
            request.args.get("radius"), "radius", 1, SEARCH_MAX_RADIUS_M, required=False,
        ) or SEARCH_DEFAULT_RADIUS_M
        rows = SpatialStore(db).properties_within(lat, lng, radius, limit=SEARCH_LIMIT)
        return jsonify([
            {"id": r["id"], "name": r["name"], "address": r["address"],
             "dist": round(r["distance_meters"], 1)}
            for r in rows
        ])
    q = (request.args.get("q") or "").strip()
    if not q:
        return jsonify([])
    return jsonify(db.search_properties(q, limit=SEARCH_LIMIT))


@app.route("/api/v1/admin/incidents", methods=["POST"])
@admin_required
def admin_create_incident():
    """Record an incident, then recompute the property and every property within 10 km."""
    data = _json_body()
    property_id = _int_field(data.get("property_id"), "property_id", 1, 2**63 - 1, required=False)
    lat, lng = _coords(data.get("latitude"), data.get("longitude"), required=False)
    has_coords = lat is not None and lng is not None
    if property_id is None and not has_coords:
        abort(400, description="property_id or latitude/longitude is required.")

    incident_type = data.get("incident_type")
    incident_type = incident_type.strip().lower() if isinstance(incident_type, str) else ""
    if not incident_type:
        abort(400, description="incident_type is required.")
    severity = data.get("severity")
    if severity not in SEVERITY_WEIGHTS:
        abort(400, description=f"severity must be one of {', '.join(SEVERITY_WEIGHTS)}.")
    incident_date = data.get("incident_date")
    if incident_date:
        parsed = parse_timestamp(incident_date)
        if parsed is None:
            abort(400, description="incident_date must be an ISO-8601 date.")
        incident_date = parsed.isoformat()
    else:
        incident_date = datetime.now(timezone.utc).isoformat()

    if property_id is not None:
        ensure_property_exists(db, property_id)

    incident = db.insert_incident(
        incident_type, severity,
        incident_date,
        property_id=property_id,
        notes=data.get("notes") or None,
        latitude=lat if has_coords else None,
        longitude=lng if has_coords else None,
    )
    if has_coords:
        futures = recompute_nearby(
            db, lat, lng, INCIDENT_RECOMPUTE_RADIUS_M,
            extra_ids=[property_id] if property_id is not None else (),
        )
    else:
        futures = trigger_recompute(db, [property_id])
    incident["recompute_count"] = len(futures)
    return jsonify(incident), 201


@app.route("/api/v1/admin/properties/<int:property_id>/admin-score", methods=["PUT"])
@admin_required
def admin_set_score(property_id):
    """Set the staff override score (0-10), which switches the property to override weights."""
    data = _json_body()
    score = _float_field(data.get("safety_score"), "safety_score", 0.0, 10.0)
    notes = data.get("notes")
    ensure_property_exists(db, property_id)
    db.set_admin_score(property_id, score, notes=notes if isinstance(notes, str) else None)
    trigger_recompute(db, [property_id])
    return jsonify({"property_id": property_id, "safety_score": score})


@app.route("/api/v1/admin/recompute", methods=["POST"])
@admin_required
def admin_recompute_all():
    """Start a full sweep in the background."""
    trigger_full_sweep(db)
    return jsonify({"status": "started", "model_version": SAFETY_MODEL.version}), 202


@app.route("/api/v1/internal/sync/property", methods=["POST"])
@admin_required
def internal_sync_property():
    """Push-style property sync from the core API."""
    data = _json_body()
    try:
        prop = sync_property(db, data)
    except ValueError as e:
        abort(400, description=str(e))
    trigger_recompute(db, [prop["id"]])
    return jsonify({"success": True, "property": prop})


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    try:
        jobs = db.count_jobs_by_status()
    except Exception:
        logger.exception("Health check could not read the job queue")
        return jsonify({"status": "degraded"}), 503
    return jsonify({
        "status": "ok",
        "model_version": SAFETY_MODEL.version,
        "enrichment_jobs": jobs,
    })


# ---------------------------------------------------------------------------
# Error handlers
# ---------------------------------------------------------------------------

@app.errorhandler(PropertySyncError)
def property_sync_failed(e):
    logger.warning("[sync] %s (property %s)", e, e.property_id)
    return jsonify({"error": f"Property {e.property_id} does not exist or could not be synced."}), 404


@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify({"error": "Too many requests. Please wait and try again."}), 429


@app.errorhandler(HTTPException)
def http_error(e):
    return jsonify({"error": e.description}), e.code


@app.errorhandler(500)
def internal_error(e):
    return jsonify({"error": "Internal server error.", "request_id": getattr(g, "request_id", None)}), 500


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Initialize database on import (safe to call repeatedly)
db.init_db()

if __name__ == "__main__":
    # Development: run the narrative worker and sweep scheduler in this process
    from worker import start_worker
    from scheduler import start_scheduler
    start_worker(db)
    start_scheduler(db)
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
