"""Google Places client used for noise-source lookups."""

import logging
import time
from typing import Dict, List, Optional

import requests

from score_trace import get_trace

logger = logging.getLogger(__name__)


class PlacesAPIError(Exception):
    """Raised when the Places API answers with a non-OK status."""


class GooglePlacesClient:
    """Client for the Google Places Nearby Search API."""

    # Short by default: the scoring path degrades instead of waiting.
    DEFAULT_TIMEOUT = 3

    def __init__(self, api_key: str, timeout: Optional[float] = None):
        self.api_key = api_key
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.base_url = "https://maps.googleapis.com/maps/api"
        self.session = requests.Session()
        self.session.trust_env = False

    def close(self):
        self.session.close()

    def _traced_get(self, endpoint_name: str, url: str, params: dict) -> dict:
        """GET request with automatic trace recording."""
        t0 = time.time()
        response = self.session.get(url, params=params, timeout=self.timeout)
        elapsed_ms = int((time.time() - t0) * 1000)
        data = response.json()
        provider_status = data.get("status", "") if isinstance(data, dict) else ""
        trace = get_trace()
        if trace:
            trace.record_api_call(
                service="google_places",
                endpoint=endpoint_name,
                elapsed_ms=elapsed_ms,
                status_code=response.status_code,
                provider_status=provider_status,
            )
        return data

    def places_nearby(
        self,
        lat: float,
        lng: float,
        radius_meters: int,
        keyword: Optional[str] = None,
        place_type: Optional[str] = None,
    ) -> List[Dict]:
        """Search for places near a location."""
        url = f"{self.base_url}/place/nearbysearch/json"
        params = {
            "location": f"{lat},{lng}",
            "radius": radius_meters,
            "key": self.api_key,
        }
        if keyword:
            params["keyword"] = keyword
        if place_type:
            params["type"] = place_type

        data = self._traced_get("places_nearby", url, params)

        if data.get("status") not in ["OK", "ZERO_RESULTS"]:
            raise PlacesAPIError(f"Places API failed: {data.get('status')}")

        return data.get("results", [])
