"""
SQLite persistence for HomeFind users and property listings.

No ORM, just raw sqlite3. Listings keep latitude/longitude in two indexed
REAL columns; proximity queries pre-filter with a bounding box in SQL and
finish with an exact haversine filter in Python.

Every sqlite3 failure leaves this module as StoreError.
"""

import json
import logging
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from geo import bounding_box, haversine_meters

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("HOMEFIND_DB_PATH", "homefind.db")

DEFAULT_AVATAR = (
    "https://cdn.pixabay.com/photo/2015/10/05/22/37/"
    "blank-profile-picture-973460_1280.png"
)

LISTING_TYPES = ("sale", "rent")

# Public sort keys accepted by get_listings -> column names.
SORT_COLUMNS = {
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "regularPrice": "regular_price",
    "discountPrice": "discount_price",
    "name": "name",
}


class StoreError(Exception):
    """Raised when the database cannot be reached or a query fails."""

    pass


class DuplicateUser(StoreError):
    """Raised when a username or email is already taken."""

    pass


def _get_db():
    """Get a sqlite3 connection with WAL mode for concurrent reads."""
    conn = sqlite3.connect(DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


@contextmanager
def _connection() -> Iterator[sqlite3.Connection]:
    """Open a connection, translate sqlite3 errors to StoreError, always close."""
    try:
        conn = _get_db()
    except sqlite3.Error as e:
        logger.error("Cannot open database at %s: %s", DB_PATH, e)
        raise StoreError(f"Database unavailable: {e}") from e
    try:
        yield conn
    except sqlite3.IntegrityError as e:
        conn.rollback()
        if "UNIQUE" in str(e):
            raise DuplicateUser(str(e)) from e
        raise StoreError(f"Integrity error: {e}") from e
    except sqlite3.Error as e:
        conn.rollback()
        logger.error("Database error: %s", e)
        raise StoreError(f"Database error: {e}") from e
    finally:
        conn.close()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def init_db():
    """Create tables if they don't exist. Safe to call on every startup."""
    with _connection() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id                          INTEGER PRIMARY KEY AUTOINCREMENT,
                username                    TEXT NOT NULL UNIQUE,
                email                       TEXT NOT NULL UNIQUE,
                password_hash               TEXT NOT NULL,
                avatar                      TEXT NOT NULL,
                is_email_verified           INTEGER NOT NULL DEFAULT 0,
                email_verification_token    TEXT,
                email_verification_expires  TEXT,
                created_at                  TEXT NOT NULL,
                updated_at                  TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_users_verification
                ON users(email_verification_token);

            CREATE TABLE IF NOT EXISTS listings (
                id              INTEGER PRIMARY KEY AUTOINCREMENT,
                name            TEXT NOT NULL,
                description     TEXT NOT NULL DEFAULT '',
                address         TEXT NOT NULL,
                lat             REAL NOT NULL,
                lng             REAL NOT NULL,
                regular_price   REAL NOT NULL DEFAULT 0,
                discount_price  REAL NOT NULL DEFAULT 0,
                bathrooms       INTEGER NOT NULL DEFAULT 1,
                bedrooms        INTEGER NOT NULL DEFAULT 1,
                furnished       INTEGER NOT NULL DEFAULT 0,
                parking         INTEGER NOT NULL DEFAULT 0,
                type            TEXT NOT NULL DEFAULT 'rent',
                offer           INTEGER NOT NULL DEFAULT 0,
                image_urls      TEXT NOT NULL DEFAULT '[]',
                user_ref        INTEGER NOT NULL,
                created_at      TEXT NOT NULL,
                updated_at      TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_listings_lat_lng ON listings(lat, lng);
            CREATE INDEX IF NOT EXISTS idx_listings_user ON listings(user_ref);
            CREATE INDEX IF NOT EXISTS idx_listings_created ON listings(created_at);
        """)
        conn.commit()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def create_user(
    username: str,
    email: str,
    password_hash: str,
    avatar: Optional[str] = None,
    is_email_verified: bool = False,
    verification_token: Optional[str] = None,
    verification_expires: Optional[str] = None,
) -> dict:
    """Insert a user and return it. Raises DuplicateUser on a taken name/email."""
    now = _now()
    with _connection() as conn:
        cur = conn.execute(
            """INSERT INTO users
               (username, email, password_hash, avatar, is_email_verified,
                email_verification_token, email_verification_expires,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                username,
                email,
                password_hash,
                avatar or DEFAULT_AVATAR,
                1 if is_email_verified else 0,
                verification_token,
                verification_expires,
                now,
                now,
            ),
        )
        conn.commit()
        user_id = cur.lastrowid
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    return dict(row)


def get_user_by_id(user_id: int) -> Optional[dict]:
    with _connection() as conn:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
    return dict(row) if row else None


def get_user_by_email(email: str) -> Optional[dict]:
    with _connection() as conn:
        row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
    return dict(row) if row else None


def find_user_by_email_or_username(email: str, username: str) -> Optional[dict]:
    with _connection() as conn:
        row = conn.execute(
            "SELECT * FROM users WHERE email = ? OR username = ? LIMIT 1",
            (email, username),
        ).fetchone()
    return dict(row) if row else None


def get_user_by_verification_token(token: str) -> Optional[dict]:
    """Return the user holding this token, only while it has not expired."""
    with _connection() as conn:
        row = conn.execute(
            """SELECT * FROM users
               WHERE email_verification_token = ?
                 AND email_verification_expires > ?""",
            (token, _now()),
        ).fetchone()
    return dict(row) if row else None


def set_verification_token(user_id: int, token: str, expires_at: str) -> None:
    with _connection() as conn:
        conn.execute(
            """UPDATE users
               SET email_verification_token = ?, email_verification_expires = ?,
                   updated_at = ?
               WHERE id = ?""",
            (token, expires_at, _now(), user_id),
        )
        conn.commit()


def mark_email_verified(user_id: int) -> None:
    """Flag the user verified and drop any outstanding token."""
    with _connection() as conn:
        conn.execute(
            """UPDATE users
               SET is_email_verified = 1, email_verification_token = NULL,
                   email_verification_expires = NULL, updated_at = ?
               WHERE id = ?""",
            (_now(), user_id),
        )
        conn.commit()


def public_user(user: dict) -> dict:
    """User as returned to clients: no password hash, no verification token."""
    return {
        "id": user["id"],
        "username": user["username"],
        "email": user["email"],
        "avatar": user["avatar"],
        "isEmailVerified": bool(user["is_email_verified"]),
        "createdAt": user["created_at"],
        "updatedAt": user["updated_at"],
    }


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

@dataclass
class Listing:
    id: int
    name: str
    address: str
    lat: float
    lng: float
    user_ref: int
    description: str = ""
    regular_price: float = 0.0
    discount_price: float = 0.0
    bathrooms: int = 1
    bedrooms: int = 1
    furnished: bool = False
    parking: bool = False
    type: str = "rent"
    offer: bool = False
    image_urls: List[str] = field(default_factory=list)
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Listing":
        try:
            image_urls = json.loads(row["image_urls"] or "[]")
        except (json.JSONDecodeError, TypeError):
            logger.error("Corrupted image_urls for listing %s", row["id"])
            image_urls = []
        return cls(
            id=row["id"],
            name=row["name"],
            address=row["address"],
            lat=row["lat"],
            lng=row["lng"],
            user_ref=row["user_ref"],
            description=row["description"],
            regular_price=row["regular_price"],
            discount_price=row["discount_price"],
            bathrooms=row["bathrooms"],
            bedrooms=row["bedrooms"],
            furnished=bool(row["furnished"]),
            parking=bool(row["parking"]),
            type=row["type"],
            offer=bool(row["offer"]),
            image_urls=image_urls,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        """JSON shape. location.coordinates is [longitude, latitude]."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "address": self.address,
            "location": {
                "type": "Point",
                "coordinates": [self.lng, self.lat],
            },
            "regularPrice": self.regular_price,
            "discountPrice": self.discount_price,
            "bathrooms": self.bathrooms,
            "bedrooms": self.bedrooms,
            "furnished": self.furnished,
            "parking": self.parking,
            "type": self.type,
            "offer": self.offer,
            "imageUrls": list(self.image_urls),
            "userRef": self.user_ref,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


# Columns a caller may set through create_listing / update_listing.
_WRITABLE_COLUMNS = (
    "name", "description", "address", "lat", "lng", "regular_price",
    "discount_price", "bathrooms", "bedrooms", "furnished", "parking",
    "type", "offer", "image_urls",
)


def _column_value(column: str, value: Any) -> Any:
    if column == "image_urls":
        return json.dumps(list(value or []))
    if column in ("furnished", "parking", "offer"):
        return 1 if value else 0
    return value


def create_listing(fields: Dict[str, Any], user_ref: int) -> Listing:
    """
    Insert a listing. fields uses column names (see _WRITABLE_COLUMNS) and
    must include name, address, lat and lng.
    """
    columns = [c for c in _WRITABLE_COLUMNS if c in fields]
    values = [_column_value(c, fields[c]) for c in columns]
    now = _now()
    columns += ["user_ref", "created_at", "updated_at"]
    values += [user_ref, now, now]

    placeholders = ", ".join("?" for _ in columns)
    with _connection() as conn:
        cur = conn.execute(
            f"INSERT INTO listings ({', '.join(columns)}) VALUES ({placeholders})",
            values,
        )
        conn.commit()
        row = conn.execute(
            "SELECT * FROM listings WHERE id = ?", (cur.lastrowid,)
        ).fetchone()
    return Listing.from_row(row)


def get_listing(listing_id: int) -> Optional[Listing]:
    with _connection() as conn:
        row = conn.execute(
            "SELECT * FROM listings WHERE id = ?", (listing_id,)
        ).fetchone()
    return Listing.from_row(row) if row else None


def update_listing(listing_id: int, fields: Dict[str, Any]) -> Optional[Listing]:
    """Apply a partial update. Returns the updated listing, or None if missing."""
    columns = [c for c in _WRITABLE_COLUMNS if c in fields]
    assignments = [f"{c} = ?" for c in columns] + ["updated_at = ?"]
    values = [_column_value(c, fields[c]) for c in columns] + [_now(), listing_id]
    with _connection() as conn:
        conn.execute(
            f"UPDATE listings SET {', '.join(assignments)} WHERE id = ?",
            values,
        )
        conn.commit()
        row = conn.execute(
            "SELECT * FROM listings WHERE id = ?", (listing_id,)
        ).fetchone()
    return Listing.from_row(row) if row else None


def delete_listing(listing_id: int) -> bool:
    with _connection() as conn:
        cur = conn.execute("DELETE FROM listings WHERE id = ?", (listing_id,))
        conn.commit()
    return cur.rowcount > 0


def get_user_listings(user_id: int) -> List[Listing]:
    with _connection() as conn:
        rows = conn.execute(
            "SELECT * FROM listings WHERE user_ref = ? ORDER BY created_at DESC",
            (user_id,),
        ).fetchall()
    return [Listing.from_row(r) for r in rows]


def _like_pattern(text: str) -> str:
    """Substring LIKE pattern with %, _ and the escape char taken literally."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def get_listings(
    search_term: str = "",
    offer: Optional[bool] = None,
    furnished: Optional[bool] = None,
    parking: Optional[bool] = None,
    listing_type: Optional[str] = None,
    sort: str = "createdAt",
    order: str = "desc",
    limit: int = 9,
    start_index: int = 0,
) -> List[Listing]:
    """
    Filtered, paginated listing browse. None for a flag means "either".
    Unknown sort keys fall back to createdAt.
    """
    clauses = ["name LIKE ? ESCAPE '\\'"]
    params: List[Any] = [_like_pattern(search_term or "")]
    for column, flag in (("offer", offer), ("furnished", furnished), ("parking", parking)):
        if flag is not None:
            clauses.append(f"{column} = ?")
            params.append(1 if flag else 0)
    if listing_type in LISTING_TYPES:
        clauses.append("type = ?")
        params.append(listing_type)

    sort_column = SORT_COLUMNS.get(sort, "created_at")
    direction = "ASC" if order == "asc" else "DESC"
    params += [limit, start_index]

    with _connection() as conn:
        rows = conn.execute(
            f"""SELECT * FROM listings
                WHERE {' AND '.join(clauses)}
                ORDER BY {sort_column} {direction}, id {direction}
                LIMIT ? OFFSET ?""",
            params,
        ).fetchall()
    return [Listing.from_row(r) for r in rows]


def find_by_text_match(substring: str, limit: int = 50) -> List[Listing]:
    """
    Listings whose name or address contains substring, case-insensitively.
    Insertion order; at most limit rows.
    """
    pattern = _like_pattern(substring)
    with _connection() as conn:
        rows = conn.execute(
            """SELECT * FROM listings
               WHERE name LIKE ? ESCAPE '\\' OR address LIKE ? ESCAPE '\\'
               ORDER BY id ASC
               LIMIT ?""",
            (pattern, pattern, limit),
        ).fetchall()
    return [Listing.from_row(r) for r in rows]


def find_near(
    lat: float, lng: float, max_distance_meters: float, limit: int = 50
) -> List[Listing]:
    """Listings within max_distance_meters of (lat, lng), nearest first."""
    min_lat, max_lat, lng_ranges = bounding_box(lat, lng, max_distance_meters)
    lng_clause = " OR ".join("(lng BETWEEN ? AND ?)" for _ in lng_ranges)
    params: List[Any] = [min_lat, max_lat]
    for lo, hi in lng_ranges:
        params += [lo, hi]

    with _connection() as conn:
        rows = conn.execute(
            f"SELECT * FROM listings WHERE lat BETWEEN ? AND ? AND ({lng_clause})",
            params,
        ).fetchall()

    candidates = []
    for row in rows:
        listing = Listing.from_row(row)
        dist = haversine_meters(lat, lng, listing.lat, listing.lng)
        if dist <= max_distance_meters:
            candidates.append((dist, listing.id, listing))
    candidates.sort(key=lambda c: (c[0], c[1]))
    return [listing for _, _, listing in candidates[:limit]]


class ListingStore:
    """
    The read-only view of listings that search depends on.

    Usage:
        store = ListingStore()
        store.find_near(40.71, -74.00, 5000, limit=50)
    """

    def find_by_text_match(self, substring: str, limit: int) -> List[Listing]:
        return find_by_text_match(substring, limit)

    def find_near(
        self, lat: float, lng: float, max_distance_meters: float, limit: int
    ) -> List[Listing]:
        return find_near(lat, lng, max_distance_meters, limit)
