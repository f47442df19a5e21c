"""Tests for property_sync.py — JIT sync from the core listings API."""

from unittest.mock import patch, MagicMock

import pytest
import requests

from property_sync import (
    DEFAULT_ROOM_NAME,
    PropertySyncError,
    ensure_property_exists,
    fetch_room,
    map_room,
    sync_property,
)

ROOM = {
    "id": 42,
    "title": "Studio near Han Market",
    "addressDetails": "15 Tran Phu",
    "ward": "Hai Chau 1",
    "district": "Hai Chau",
    "city": "Da Nang",
    "latitude": "16.0678",
    "longitude": 108.2208,
}


def _response(status=200, body=None, json_error=False):
    resp = MagicMock()
    resp.status_code = status
    resp.ok = status < 400
    if json_error:
        resp.json.side_effect = ValueError("not json")
    else:
        resp.json.return_value = body
    return resp


class TestMapRoom:
    def test_maps_room_shape(self):
        fields = map_room(ROOM)
        assert fields == {
            "id": 42,
            "name": "Studio near Han Market",
            "address": "15 Tran Phu, Hai Chau 1, Hai Chau, Da Nang",
            "latitude": 16.0678,
            "longitude": 108.2208,
        }

    def test_skips_empty_address_parts(self):
        fields = map_room({"id": 1, "addressDetails": "", "ward": None, "city": "Hue"})
        assert fields["address"] == "Hue"

    def test_default_name(self):
        assert map_room({"id": 1})["name"] == DEFAULT_ROOM_NAME

    def test_flat_pushed_shape(self):
        fields = map_room({"id": "9", "name": "Room 9", "address": "1 Le Duan", "latitude": None})
        assert fields["id"] == 9
        assert fields["name"] == "Room 9"
        assert fields["address"] == "1 Le Duan"
        assert fields["latitude"] is None

    @pytest.mark.parametrize("payload", [{}, {"id": "abc"}, None, []])
    def test_invalid_id_rejected(self, payload):
        with pytest.raises(ValueError):
            map_room(payload)


class TestFetchRoom:
    @patch("property_sync.requests.Session")
    def test_unwraps_data_envelope(self, mock_session_cls):
        mock_session_cls.return_value.get.return_value = _response(body={"data": ROOM})
        assert fetch_room(42, base_url="http://core")["id"] == 42
        args, kwargs = mock_session_cls.return_value.get.call_args
        assert args[0] == "http://core/api/rooms/42"
        assert kwargs["timeout"] == 5

    @patch("property_sync.requests.Session")
    def test_bare_body(self, mock_session_cls):
        mock_session_cls.return_value.get.return_value = _response(body=ROOM)
        assert fetch_room(42, base_url="http://core")["title"] == ROOM["title"]

    @patch("property_sync.requests.Session")
    def test_404_raises(self, mock_session_cls):
        mock_session_cls.return_value.get.return_value = _response(status=404, body={})
        with pytest.raises(PropertySyncError) as exc:
            fetch_room(42, base_url="http://core")
        assert exc.value.property_id == 42

    @patch("property_sync.requests.Session")
    def test_network_error_raises(self, mock_session_cls):
        mock_session_cls.return_value.get.side_effect = requests.ConnectionError("refused")
        with pytest.raises(PropertySyncError):
            fetch_room(42, base_url="http://core")

    @patch("property_sync.requests.Session")
    def test_invalid_json_raises(self, mock_session_cls):
        mock_session_cls.return_value.get.return_value = _response(json_error=True)
        with pytest.raises(PropertySyncError):
            fetch_room(42, base_url="http://core")

    @pytest.mark.parametrize("body", [{"data": [{"id": 42}]}, {"data": "x"}, {"data": {}}, [ROOM]])
    @patch("property_sync.requests.Session")
    def test_malformed_room_raises(self, mock_session_cls, body):
        mock_session_cls.return_value.get.return_value = _response(body=body)
        with pytest.raises(PropertySyncError):
            fetch_room(42, base_url="http://core")

    @patch("property_sync.requests.Session")
    def test_session_closed(self, mock_session_cls):
        mock_session_cls.return_value.get.return_value = _response(body=ROOM)
        fetch_room(42, base_url="http://core")
        mock_session_cls.return_value.close.assert_called_once()


class TestEnsurePropertyExists:
    def test_local_hit_skips_network(self, db):
        db.upsert_property(42, "Local", None, None, None)
        with patch("property_sync.fetch_room") as fetch:
            assert ensure_property_exists(db, 42)["name"] == "Local"
        fetch.assert_not_called()

    def test_miss_fetches_and_upserts(self, db):
        with patch("property_sync.fetch_room", return_value=dict(ROOM)):
            prop = ensure_property_exists(db, 42)
        assert prop["address"] == "15 Tran Phu, Hai Chau 1, Hai Chau, Da Nang"
        assert db.get_property(42)["latitude"] == pytest.approx(16.0678)

    def test_failure_blocks_and_leaves_nothing(self, db):
        with patch("property_sync.fetch_room", side_effect=PropertySyncError(42, "not found")):
            with pytest.raises(PropertySyncError):
                ensure_property_exists(db, 42)
        assert db.get_property(42) is None

    @patch("property_sync.requests.Session")
    def test_malformed_envelope_is_typed_error(self, mock_session_cls, db):
        mock_session_cls.return_value.get.return_value = _response(body={"data": [{"id": 7}]})
        with pytest.raises(PropertySyncError):
            ensure_property_exists(db, 7, base_url="http://core")
        assert db.get_property(7) is None

    def test_mismatched_remote_id_rejected(self, db):
        with patch("property_sync.fetch_room", return_value=dict(ROOM, id=43)):
            with pytest.raises(PropertySyncError):
                ensure_property_exists(db, 42)
        assert db.get_property(42) is None
        assert db.get_property(43) is None


class TestSyncProperty:
    def test_upserts(self, db):
        prop = sync_property(db, {"id": 5, "name": "Five", "address": "5 Hung Vuong",
                                  "latitude": 16.0, "longitude": 108.0})
        assert prop["id"] == 5
        assert db.get_property(5)["name"] == "Five"
