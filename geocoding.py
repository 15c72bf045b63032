"""
LocationIQ geocoding client.

Forward geocoding (address -> lat/lng) for listing creation and the
location fallback of listing search, plus address autocomplete for the
search box.

Error contract:
- AddressNotFound: the provider answered but could not resolve the text.
- GeocodingError: anything else (network failure, timeout, non-2xx status,
  malformed body). AddressNotFound is a subclass, so callers that treat
  every failure the same catch GeocodingError.
"""

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from dotenv import load_dotenv

from hf_trace import get_trace

logger = logging.getLogger(__name__)

load_dotenv()

DEFAULT_BASE_URL = "https://us1.locationiq.com/v1"


class GeocodingError(Exception):
    """Raised when the geocoding provider cannot be reached or answers badly."""

    pass


class AddressNotFound(GeocodingError):
    """Raised when the provider has no match for the given text."""

    def __init__(self, address: str):
        self.address = address
        super().__init__(f"Address not found: {address!r}")


@dataclass(frozen=True)
class GeocodeResult:
    lat: float
    lng: float
    formatted_address: str

    def to_dict(self) -> dict:
        return {
            "lat": self.lat,
            "lng": self.lng,
            "address": self.formatted_address,
        }


class LocationIQClient:
    """Client for the LocationIQ search and autocomplete endpoints."""

    # Per-call timeout in seconds. A slow provider turns into a
    # GeocodingError rather than a hung request.
    DEFAULT_TIMEOUT = 10

    def __init__(self, api_key: str, base_url: Optional[str] = None):
        self.api_key = api_key
        self.base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self.session = requests.Session()
        self.session.trust_env = False

    def _traced_get(self, endpoint_name: str, url: str, params: dict) -> requests.Response:
        """GET request with automatic trace recording.

        Transport failures are re-raised as GeocodingError; the response is
        returned whatever its status so callers can map 404 themselves.
        """
        t0 = time.time()
        try:
            response = self.session.get(url, params=params, timeout=self.DEFAULT_TIMEOUT)
        except requests.RequestException as e:
            logger.warning("LocationIQ %s request failed: %s", endpoint_name, e)
            raise GeocodingError(f"{endpoint_name} request failed: {e}") from e
        elapsed_ms = int((time.time() - t0) * 1000)
        trace = get_trace()
        if trace:
            trace.record_api_call(
                service="locationiq",
                endpoint=endpoint_name,
                elapsed_ms=elapsed_ms,
                status_code=response.status_code,
            )
        return response

    @staticmethod
    def _json_list(endpoint_name: str, response: requests.Response) -> List[Dict[str, Any]]:
        if response.status_code != 200:
            raise GeocodingError(
                f"{endpoint_name} failed: HTTP {response.status_code}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise GeocodingError(f"{endpoint_name} returned invalid JSON") from e
        if not isinstance(data, list):
            raise GeocodingError(f"{endpoint_name} returned unexpected payload")
        return data

    def geocode(self, address: str) -> GeocodeResult:
        """Convert an address to coordinates and the provider's display name."""
        url = f"{self.base_url}/search.php"
        params = {
            "key": self.api_key,
            "q": address,
            "format": "json",
            "limit": 1,
        }
        response = self._traced_get("geocode", url, params)

        # LocationIQ answers 404 {"error": "Unable to geocode"} for no match
        if response.status_code == 404:
            raise AddressNotFound(address)
        results = self._json_list("geocode", response)
        if not results:
            raise AddressNotFound(address)

        first = results[0]
        try:
            return GeocodeResult(
                lat=float(first["lat"]),
                lng=float(first["lon"]),
                formatted_address=first.get("display_name") or address,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise GeocodingError(f"geocode returned malformed result: {first!r}") from e

    def autocomplete(self, query: str, limit: int = 5) -> List[Dict[str, Any]]:
        """Address suggestions for a partial query.

        Returns [{"label", "lat", "lng"}]; results missing coordinates are
        skipped.
        """
        url = f"{self.base_url}/autocomplete.php"
        params = {
            "key": self.api_key,
            "q": query,
            "limit": limit,
            "format": "json",
        }
        response = self._traced_get("autocomplete", url, params)
        if response.status_code == 404:
            return []

        suggestions = []
        for item in self._json_list("autocomplete", response)[:limit]:
            try:
                suggestions.append({
                    "label": item["display_name"],
                    "lat": float(item["lat"]),
                    "lng": float(item["lon"]),
                })
            except (KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed autocomplete item: %r", item)
        return suggestions


def get_geocoder() -> LocationIQClient:
    """Build a client from LOCATIONIQ_API_KEY / LOCATIONIQ_BASE_URL."""
    return LocationIQClient(
        api_key=os.environ.get("LOCATIONIQ_API_KEY", ""),
        base_url=os.environ.get("LOCATIONIQ_BASE_URL"),
    )
