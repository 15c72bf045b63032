"""
Listing search: text match first, geocoded proximity search second.

    resolver = ListingSearchResolver(ListingStore(), get_geocoder())
    result = resolver.resolve("Sunset Villa")          # NameMatch
    result = resolver.resolve("123 Main St", 5000)     # LocationMatch or NoMatch
    resolver.suggest("123 Ma")                         # address suggestions

Outcomes are plain values (NameMatch | LocationMatch | NoMatch). A query
that cannot be geocoded is a NoMatch, not an error. Store failures
(models.StoreError) propagate unchanged.
"""

import logging
import math
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from geo import haversine_meters
from geocoding import GeocodeResult, GeocodingError
from hf_trace import get_trace
from models import Listing

logger = logging.getLogger(__name__)

DEFAULT_RADIUS_METERS = 10000
TEXT_MATCH_LIMIT = 50
NEARBY_LIMIT = 50
SUGGESTION_LIMIT = 5
SUGGESTION_MIN_CHARS = 3


class ValidationError(ValueError):
    """The caller supplied invalid input."""

    pass


# =============================================================================
# Result variants
# =============================================================================

@dataclass
class RankedListing:
    """A listing plus its distance from the searched point."""
    listing: Listing
    distance_meters: float

    @property
    def distance(self) -> int:
        # Halves round up, not to even
        return int(math.floor(self.distance_meters + 0.5))

    @property
    def distance_km(self) -> str:
        return f"{self.distance_meters / 1000:.2f}"

    def to_dict(self) -> Dict[str, Any]:
        data = self.listing.to_dict()
        data["distance"] = self.distance
        data["distanceKm"] = self.distance_km
        return data


@dataclass
class NameMatch:
    listings: List[Listing] = field(default_factory=list)
    search_type = "name"

    @property
    def count(self) -> int:
        return len(self.listings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "searchType": self.search_type,
            "count": self.count,
            "listings": [l.to_dict() for l in self.listings],
        }


@dataclass
class LocationMatch:
    location: GeocodeResult
    radius: int
    listings: List[RankedListing] = field(default_factory=list)
    search_type = "location"

    @property
    def count(self) -> int:
        return len(self.listings)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "searchType": self.search_type,
            "location": self.location.to_dict(),
            "radius": self.radius,
            "count": self.count,
            "listings": [r.to_dict() for r in self.listings],
        }


@dataclass
class NoMatch:
    """Nothing matched by text and the query could not be geocoded."""
    search_type = None
    listings: List[Listing] = field(default_factory=list)

    @property
    def count(self) -> int:
        return 0

    def to_dict(self) -> Dict[str, Any]:
        return {"count": 0, "listings": []}


SearchResult = Union[NameMatch, LocationMatch, NoMatch]


# =============================================================================
# Resolver
# =============================================================================

def _stage(name: str):
    trace = get_trace()
    return trace.stage(name) if trace else nullcontext(None)


def _validate_radius(value: Any) -> int:
    """Accept a positive int (or its decimal string form); None means default."""
    if value is None:
        return DEFAULT_RADIUS_METERS
    if isinstance(value, str):
        text = value.strip()
        # ASCII digits only; int() rejects superscripts that isdigit() accepts
        if not (text.isascii() and text.isdecimal()):
            raise ValidationError("Radius must be a positive integer")
        radius = int(text)
    elif isinstance(value, int) and not isinstance(value, bool):
        radius = value
    elif isinstance(value, float) and value.is_integer():
        radius = int(value)
    else:
        raise ValidationError("Radius must be a positive integer")
    if radius <= 0:
        raise ValidationError("Radius must be a positive integer")
    return radius


class ListingSearchResolver:
    """
    Two-phase listing search over a listing store and a geocoder.

    store needs find_by_text_match(substring, limit) and
    find_near(lat, lng, max_distance_meters, limit); geocoder needs
    geocode(address) and autocomplete(query, limit). Holds no other state.
    """

    def __init__(self, store, geocoder):
        self.store = store
        self.geocoder = geocoder

    def resolve(
        self, query: Optional[str], radius_meters: Any = DEFAULT_RADIUS_METERS
    ) -> SearchResult:
        if query is None or not isinstance(query, str) or not query.strip():
            raise ValidationError("Search query is required")
        radius = _validate_radius(radius_meters)
        text = query.strip()

        with _stage("text_match") as rec:
            by_name = list(self.store.find_by_text_match(text, TEXT_MATCH_LIMIT))
            if rec is not None:
                rec.result_count = len(by_name)
        if by_name:
            logger.info("Search %r matched %d listings by name", text, len(by_name))
            return NameMatch(listings=by_name)

        try:
            with _stage("geocode"):
                point = self.geocoder.geocode(text)
        except GeocodingError as e:
            logger.info("Search %r: no text match and geocoding failed: %s", text, e)
            return NoMatch()

        with _stage("nearby") as rec:
            nearby = list(self.store.find_near(point.lat, point.lng, radius, NEARBY_LIMIT))
            if rec is not None:
                rec.result_count = len(nearby)

        ranked = [
            RankedListing(
                listing=listing,
                distance_meters=haversine_meters(
                    point.lat, point.lng, listing.lat, listing.lng
                ),
            )
            for listing in nearby
        ]
        ranked.sort(key=lambda r: r.distance_meters)

        logger.info(
            "Search %r geocoded to (%.5f, %.5f); %d listings within %dm",
            text, point.lat, point.lng, len(ranked), radius,
        )
        return LocationMatch(location=point, radius=radius, listings=ranked)

    def suggest(self, query: Optional[str]) -> List[Dict[str, Any]]:
        """
        Address suggestions for a partial query. Short queries never reach
        the provider, and provider failures come back as an empty list.
        """
        if not query or not isinstance(query, str) or len(query.strip()) < SUGGESTION_MIN_CHARS:
            return []
        try:
            raw = self.geocoder.autocomplete(query.strip(), SUGGESTION_LIMIT)
        except Exception as e:
            logger.warning("Address autocomplete failed for %r: %s", query, e)
            return []

        suggestions = []
        for item in list(raw)[:SUGGESTION_LIMIT]:
            try:
                suggestions.append({
                    "label": item["label"],
                    "value": item["label"],
                    "lat": float(item["lat"]),
                    "lng": float(item["lng"]),
                })
            except (KeyError, TypeError, ValueError):
                logger.debug("Dropping malformed suggestion: %r", item)
        return suggestions
