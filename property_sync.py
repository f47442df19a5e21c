"""
Just-in-time property sync from the core listings API.

The safety service only keeps a thin copy of each room (name, address,
coordinates).  Writes that reference a property we have never seen fetch
it from the system of record first; if that fails the write is refused.
"""

import logging
import os
import time
from typing import Optional

import requests

from models import SafetyDB
from score_trace import get_trace

logger = logging.getLogger(__name__)

CORE_API_BASE_URL = os.environ.get("CORE_API_BASE_URL", "http://localhost:8080")
_API_TIMEOUT = 5  # seconds
DEFAULT_ROOM_NAME = "Untitled room"


class PropertySyncError(Exception):
    """The property is unknown locally and could not be fetched."""

    def __init__(self, property_id, message: str):
        super().__init__(message)
        self.property_id = property_id


def _to_float(value) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def map_room(payload: dict) -> dict:
    """Map a core-API room object onto the local property shape.

    Accepts both the room shape (title, addressDetails, ward, district,
    city) and the flat pushed shape (name, address).  Raises ValueError
    if the payload has no usable id.
    """
    if not isinstance(payload, dict):
        raise ValueError("room payload must be an object")
    try:
        property_id = int(payload["id"])
    except (KeyError, TypeError, ValueError):
        raise ValueError("room payload has no valid id")

    parts = [payload.get(k) for k in ("addressDetails", "ward", "district", "city")]
    address = ", ".join(str(p).strip() for p in parts if p and str(p).strip())

    return {
        "id": property_id,
        "name": payload.get("title") or payload.get("name") or DEFAULT_ROOM_NAME,
        "address": address or payload.get("address") or None,
        "latitude": _to_float(payload.get("latitude")),
        "longitude": _to_float(payload.get("longitude")),
    }


def fetch_room(property_id: int, base_url: Optional[str] = None, timeout: float = _API_TIMEOUT) -> dict:
    """GET /api/rooms/{id} from the core API, unwrapping a {"data": ...} envelope."""
    url = f"{(base_url or CORE_API_BASE_URL).rstrip('/')}/api/rooms/{property_id}"
    session = requests.Session()
    session.trust_env = False
    t0 = time.time()
    try:
        resp = session.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise PropertySyncError(property_id, f"core API unreachable: {e}") from e
    finally:
        session.close()

    trace = get_trace()
    if trace:
        trace.record_api_call(
            service="core_api",
            endpoint="rooms",
            elapsed_ms=int((time.time() - t0) * 1000),
            status_code=resp.status_code,
        )

    if resp.status_code == 404:
        raise PropertySyncError(property_id, "property not found in core API")
    if not resp.ok:
        raise PropertySyncError(property_id, f"core API returned {resp.status_code}")
    try:
        body = resp.json()
    except ValueError as e:
        raise PropertySyncError(property_id, "core API returned invalid JSON") from e

    room = body.get("data", body) if isinstance(body, dict) else None
    if not isinstance(room, dict) or not room:
        raise PropertySyncError(property_id, "core API returned an empty or malformed room")
    return room


def sync_property(db: SafetyDB, payload: dict) -> dict:
    """Upsert a room pushed by (or fetched from) the core API."""
    fields = map_room(payload)
    prop = db.upsert_property(
        fields["id"], fields["name"], fields["address"],
        fields["latitude"], fields["longitude"],
    )
    logger.info("[sync] Synced property %s (%s)", fields["id"], fields["name"])
    return prop


def ensure_property_exists(db: SafetyDB, property_id: int, base_url: Optional[str] = None) -> dict:
    """Return the local property, fetching it from the core API on a miss.

    Raises PropertySyncError if it cannot be found or fetched.
    """
    prop = db.get_property(property_id)
    if prop:
        return prop

    logger.info("[sync] Property %s missing locally, fetching from core API", property_id)
    room = fetch_room(property_id, base_url=base_url)
    room.setdefault("id", property_id)
    try:
        remote_id = map_room(room)["id"]
    except ValueError as e:
        raise PropertySyncError(property_id, f"invalid room payload: {e}") from e
    if remote_id != property_id:
        raise PropertySyncError(property_id, f"core API returned room {remote_id}")
    return sync_property(db, room)
