"""Shared fixtures for the HomeFind test suite.

Provides a Flask test client wired to a temporary SQLite database, plus
in-memory fakes for the listing store and geocoder used by search tests.
"""

import atexit
import os
import tempfile

import pytest

# Point the DB at a temp file BEFORE importing app/models (they read DB_PATH at import time)
_test_db_fd, _test_db_path = tempfile.mkstemp(suffix=".db")
os.close(_test_db_fd)  # close the fd immediately; sqlite3 opens its own handle
os.environ["HOMEFIND_DB_PATH"] = _test_db_path
atexit.register(lambda: os.unlink(_test_db_path) if os.path.exists(_test_db_path) else None)

# Suppress the SECRET_KEY startup guard
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOCATIONIQ_API_KEY", "fake-key-for-tests")
os.environ.pop("RESEND_API_KEY", None)
os.environ.pop("SENTRY_DSN", None)

from app import app  # noqa: E402
from geocoding import AddressNotFound, GeocodeResult  # noqa: E402
from models import Listing, init_db, _get_db  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_db():
    """Reset the database before every test, keeping the schema."""
    init_db()
    conn = _get_db()
    for table in ("listings", "users"):
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    yield


@pytest.fixture()
def client():
    """Flask test client with CSRF disabled (we're testing logic, not CSRF)."""
    app.config["TESTING"] = True
    app.config["WTF_CSRF_ENABLED"] = False
    with app.test_client() as c:
        yield c


def make_listing(listing_id, name, lat, lng, address="", user_ref=1):
    return Listing(
        id=listing_id,
        name=name,
        address=address or f"{listing_id} Test Street",
        lat=lat,
        lng=lng,
        user_ref=user_ref,
    )


class FakeStore:
    """In-memory listing store that records every call."""

    def __init__(self, listings=None, near=None):
        self.listings = list(listings or [])
        # When set, find_near returns exactly this list (store-provided order).
        self.near = near
        self.calls = []

    def find_by_text_match(self, substring, limit):
        self.calls.append(("text", substring, limit))
        needle = substring.lower()
        hits = [
            l for l in self.listings
            if needle in l.name.lower() or needle in l.address.lower()
        ]
        return hits[:limit]

    def find_near(self, lat, lng, max_distance_meters, limit):
        self.calls.append(("near", lat, lng, max_distance_meters, limit))
        if self.near is not None:
            return list(self.near)[:limit]
        return []


class FakeGeocoder:
    """Geocoder returning fixed answers; raises AddressNotFound for unknown text."""

    def __init__(self, answers=None, suggestions=None, error=None):
        self.answers = dict(answers or {})
        self.suggestions = list(suggestions or [])
        self.error = error
        self.geocode_calls = []
        self.autocomplete_calls = []

    def geocode(self, address):
        self.geocode_calls.append(address)
        if self.error is not None:
            raise self.error
        if address not in self.answers:
            raise AddressNotFound(address)
        lat, lng = self.answers[address]
        return GeocodeResult(lat=lat, lng=lng, formatted_address=f"{address}, Resolved")

    def autocomplete(self, query, limit=5):
        self.autocomplete_calls.append((query, limit))
        if self.error is not None:
            raise self.error
        return self.suggestions[:limit]
