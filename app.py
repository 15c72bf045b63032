import os
import sys
import logging
import uuid
from typing import Any, Dict, Optional

from flask import Flask, request, jsonify, g
from flask_wtf.csrf import CSRFProtect, CSRFError, generate_csrf
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException
from werkzeug.middleware.proxy_fix import ProxyFix
from dotenv import load_dotenv

from auth import (
    AuthError, login_required, hash_password, verify_password,
    random_password, username_from_name, new_verification_token,
    set_auth_cookie, clear_auth_cookie,
)
from email_service import send_verification_email
from geocoding import AddressNotFound, GeocodingError, get_geocoder
from hf_trace import TraceContext, set_trace, clear_trace
from listing_search import ListingSearchResolver, NoMatch, ValidationError
from models import (
    init_db, StoreError, DuplicateUser, LISTING_TYPES,
    create_user, get_user_by_id, get_user_by_email,
    find_user_by_email_or_username, get_user_by_verification_token,
    set_verification_token, mark_email_verified, public_user,
    ListingStore, create_listing, get_listing, update_listing,
    delete_listing, get_listings, get_user_listings,
)

load_dotenv()

# ---------------------------------------------------------------------------
# Sentry error tracking, gated on SENTRY_DSN; silent when unset (local dev)
# ---------------------------------------------------------------------------
_sentry_dsn = os.environ.get("SENTRY_DSN")
if _sentry_dsn:
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration

    def _sentry_before_send(event, hint):
        """Demote expected geocoding failures to breadcrumbs."""
        exc_info = hint.get("exc_info")
        if exc_info:
            exc_type, exc_value, _ = exc_info
            if exc_type is not None and issubclass(exc_type, GeocodingError):
                sentry_sdk.add_breadcrumb(
                    category="geocoding",
                    message=str(exc_value),
                    level="warning",
                )
                return None
        return event

    sentry_sdk.init(
        dsn=_sentry_dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=0.0,
        environment=os.environ.get("HOMEFIND_ENV", "production"),
        before_send=_sentry_before_send,
    )

app = Flask(__name__)
app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'homefind-dev-key')
if (not app.config['SECRET_KEY'] or app.config['SECRET_KEY'] == 'homefind-dev-key') and os.environ.get('FLASK_DEBUG') != '1':
    print("FATAL: SECRET_KEY is not set. Refusing to start with insecure default.", file=sys.stderr)
    print("Set SECRET_KEY in your environment or .env file.", file=sys.stderr)
    sys.exit(1)

# Behind a reverse proxy: trust one hop of X-Forwarded-For so the limiter
# and logs see the client address.
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1)

# CSRF protection: JSON clients read a token from /api/csrf-token and send
# it back as the X-CSRFToken header on every state-changing request.
csrf = CSRFProtect(app)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Rate limiting. In-memory storage is per-process.
# ---------------------------------------------------------------------------
RATE_LIMIT_DEFAULT = os.environ.get("RATE_LIMIT_DEFAULT", "60/minute")
RATE_LIMIT_SEARCH = os.environ.get("RATE_LIMIT_SEARCH", "30/minute")
RATE_LIMIT_AUTH = os.environ.get("RATE_LIMIT_AUTH", "10/minute")

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[RATE_LIMIT_DEFAULT],
    storage_uri="memory://",
)
logging.getLogger("flask-limiter").setLevel(logging.WARNING)


@limiter.request_filter
def _testing_bypass():
    """Exempt test-client requests from all rate limits."""
    return app.testing


if not os.environ.get("LOCATIONIQ_API_KEY"):
    logger.warning(
        "LOCATIONIQ_API_KEY is not set. "
        "Listing creation and location search will fail until it is configured. "
        "For local development, copy .env.example to .env and add your key."
    )


# ---------------------------------------------------------------------------
# Request ID middleware: every request gets a unique ID for tracing
# ---------------------------------------------------------------------------
def _generate_request_id():
    return uuid.uuid4().hex[:10]


@app.before_request
def _set_request_context():
    g.request_id = _generate_request_id()


@app.after_request
def _after_request(response):
    response.headers["X-Request-ID"] = getattr(g, "request_id", "unknown")
    return response


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ApiError(Exception):
    """A route-level failure with the HTTP status to report."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def _error_response(status_code: int, message: str):
    return jsonify({
        "success": False,
        "statusCode": status_code,
        "message": message,
        "request_id": getattr(g, "request_id", "unknown"),
    }), status_code


@app.errorhandler(ApiError)
def _handle_api_error(e):
    return _error_response(e.status_code, e.message)


@app.errorhandler(AuthError)
def _handle_auth_error(e):
    return _error_response(e.status_code, e.message)


@app.errorhandler(ValidationError)
def _handle_validation_error(e):
    return _error_response(400, str(e))


@app.errorhandler(CSRFError)
def _handle_csrf_error(e):
    return _error_response(400, e.description)


@app.errorhandler(StoreError)
def _handle_store_error(e):
    logger.error("[%s] Store error: %s", getattr(g, "request_id", "-"), e)
    return _error_response(500, "Database error")


@app.errorhandler(HTTPException)
def _handle_http_error(e):
    if e.code == 429:
        return _error_response(429, "Too many requests. Please wait and try again.")
    return _error_response(e.code or 500, e.description or e.name)


@app.errorhandler(Exception)
def _handle_unexpected(e):
    logger.exception("[%s] Unhandled error", getattr(g, "request_id", "-"))
    return _error_response(500, "Internal server error")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _check_service_config():
    """
    Validate required service configuration.
    Returns (is_ok, missing_keys) tuple.
    """
    missing = []
    if not os.environ.get("LOCATIONIQ_API_KEY"):
        missing.append("LOCATIONIQ_API_KEY")
    return (len(missing) == 0, missing)


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _required_str(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{key} is required")
    return value.strip()


def _mask(email: str) -> str:
    return email[:3] + "***"


def _resolver() -> ListingSearchResolver:
    return ListingSearchResolver(ListingStore(), get_geocoder())


def _geocode_address(address: str):
    try:
        return get_geocoder().geocode(address)
    except AddressNotFound:
        raise ApiError(400, "Could not find that address")
    except GeocodingError as e:
        logger.warning("[%s] Geocoding unavailable: %s", g.request_id, e)
        raise ApiError(502, "Geocoding service unavailable, please try again")


def _number(value: Any, key: str, integer: bool = False):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{key} must be a number")
    if integer and not float(value).is_integer():
        raise ValidationError(f"{key} must be a whole number")
    if value < 0:
        raise ValidationError(f"{key} must not be negative")
    return int(value) if integer else float(value)


def _listing_fields(data: Dict[str, Any], partial: bool) -> Dict[str, Any]:
    """
    Map a client listing body (camelCase) to column values.

    location and userRef are never client-settable; location comes from
    geocoding the address and userRef from the session.
    """
    fields: Dict[str, Any] = {}
    for key, column in (("name", "name"), ("address", "address")):
        if key in data or not partial:
            fields[column] = _required_str(data, key)
    if "description" in data:
        if not isinstance(data["description"], str):
            raise ValidationError("description must be a string")
        fields["description"] = data["description"]
    for key, column in (("regularPrice", "regular_price"), ("discountPrice", "discount_price")):
        if key in data:
            fields[column] = _number(data[key], key)
    for key in ("bathrooms", "bedrooms"):
        if key in data:
            fields[key] = _number(data[key], key, integer=True)
    for key in ("furnished", "parking", "offer"):
        if key in data:
            if not isinstance(data[key], bool):
                raise ValidationError(f"{key} must be true or false")
            fields[key] = data[key]
    if "type" in data:
        if data["type"] not in LISTING_TYPES:
            raise ValidationError("type must be 'sale' or 'rent'")
        fields["type"] = data["type"]
    if "imageUrls" in data:
        urls = data["imageUrls"]
        if not isinstance(urls, list) or not all(isinstance(u, str) for u in urls):
            raise ValidationError("imageUrls must be a list of strings")
        fields["image_urls"] = urls
    return fields


def _flag(name: str) -> Optional[bool]:
    """'true' filters on the flag; anything else (or absent) means either."""
    return True if request.args.get(name) == "true" else None


def _int_arg(name: str, default: int, minimum: int, maximum: int) -> int:
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        return default
    return max(minimum, min(maximum, value))


def _sign_in_response(user: dict, status_code: int = 200):
    response = jsonify(public_user(user))
    response.status_code = status_code
    return set_auth_cookie(response, user["id"])


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------

@app.route("/api/auth/signup", methods=["POST"])
@limiter.limit(RATE_LIMIT_AUTH)
def signup():
    data = _json_body()
    username = _required_str(data, "username")
    email = _required_str(data, "email")
    password = _required_str(data, "password")

    if find_user_by_email_or_username(email, username):
        raise ApiError(400, "Email or username is already in use!")

    token, expires_at = new_verification_token()
    try:
        create_user(
            username=username,
            email=email,
            password_hash=hash_password(password),
            verification_token=token,
            verification_expires=expires_at,
        )
    except DuplicateUser:
        raise ApiError(400, "Email or username is already in use!")

    logger.info("[%s] Signup for %s", g.request_id, _mask(email))
    email_sent = send_verification_email(email, username, token)
    return jsonify({
        "success": True,
        "message": (
            "Account created successfully! "
            "Please check your email to verify your account."
        ),
        "emailSent": email_sent,
    }), 201


@app.route("/api/auth/verify-email/<token>")
def verify_email(token):
    user = get_user_by_verification_token(token)
    if not user:
        raise ApiError(400, "Invalid or expired token!")
    mark_email_verified(user["id"])
    logger.info("[%s] Email verified for user %s", g.request_id, user["id"])
    return jsonify({
        "success": True,
        "message": "Email verified successfully! You can now log in.",
    })


@app.route("/api/auth/resend-verification", methods=["POST"])
@limiter.limit(RATE_LIMIT_AUTH)
def resend_verification():
    email = _required_str(_json_body(), "email")
    user = get_user_by_email(email)
    if not user:
        raise ApiError(404, "User not found with this email!")
    if user["is_email_verified"]:
        raise ApiError(400, "Email is already verified!")

    token, expires_at = new_verification_token()
    set_verification_token(user["id"], token, expires_at)
    email_sent = send_verification_email(email, user["username"], token)
    return jsonify({
        "success": True,
        "message": "Verification email has been resent!",
        "emailSent": email_sent,
    })


@app.route("/api/auth/signin", methods=["POST"])
@limiter.limit(RATE_LIMIT_AUTH)
def signin():
    data = _json_body()
    email = _required_str(data, "email")
    password = _required_str(data, "password")

    user = get_user_by_email(email)
    if not user:
        raise ApiError(404, "User not found!")
    if not user["is_email_verified"]:
        raise ApiError(401, "Please verify your email before logging in!")
    if not verify_password(password, user["password_hash"]):
        logger.info("[%s] Failed sign-in for %s", g.request_id, _mask(email))
        raise ApiError(401, "Wrong credentials!")
    return _sign_in_response(user)


@app.route("/api/auth/google", methods=["POST"])
@limiter.limit(RATE_LIMIT_AUTH)
def google_sign_in():
    """Sign in (or sign up) with a profile from the client's Google flow."""
    data = _json_body()
    email = _required_str(data, "email")

    user = get_user_by_email(email)
    if user:
        if not user["is_email_verified"]:
            mark_email_verified(user["id"])
            user = get_user_by_id(user["id"])
        return _sign_in_response(user)

    name = data.get("name") if isinstance(data.get("name"), str) else ""
    photo = data.get("photo") if isinstance(data.get("photo"), str) else None
    # Generated usernames can collide; a fresh suffix almost always fixes it.
    for attempt in range(3):
        try:
            user = create_user(
                username=username_from_name(name),
                email=email,
                password_hash=hash_password(random_password()),
                avatar=photo,
                is_email_verified=True,
            )
            break
        except DuplicateUser:
            if get_user_by_email(email):
                raise ApiError(400, "Email is already in use!")
            if attempt == 2:
                raise ApiError(500, "Could not create account, please try again")
    logger.info("[%s] Google sign-up for %s", g.request_id, _mask(email))
    return _sign_in_response(user)


@app.route("/api/auth/signout")
def signout():
    response = jsonify("User has been logged out!")
    return clear_auth_cookie(response)


@app.route("/api/csrf-token")
def csrf_token():
    return jsonify({"csrfToken": generate_csrf()})


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------

@app.route("/api/listing/create", methods=["POST"])
@login_required
def create_listing_route():
    fields = _listing_fields(_json_body(), partial=False)
    geocoded = _geocode_address(fields["address"])
    fields["address"] = geocoded.formatted_address
    fields["lat"] = geocoded.lat
    fields["lng"] = geocoded.lng

    listing = create_listing(fields, user_ref=g.user_id)
    logger.info(
        "[%s] Listing %s created at (%.5f, %.5f)",
        g.request_id, listing.id, listing.lat, listing.lng,
    )
    return jsonify({
        "success": True,
        "message": "Listing created successfully",
        "listing": listing.to_dict(),
    }), 201


@app.route("/api/listing/delete/<int:listing_id>", methods=["DELETE"])
@login_required
def delete_listing_route(listing_id):
    listing = get_listing(listing_id)
    if not listing:
        raise ApiError(404, "Listing not found!")
    if listing.user_ref != g.user_id:
        raise ApiError(401, "You can only delete your own listings!")
    delete_listing(listing_id)
    return jsonify("Listing has been deleted!")


@app.route("/api/listing/update/<int:listing_id>", methods=["POST"])
@login_required
def update_listing_route(listing_id):
    listing = get_listing(listing_id)
    if not listing:
        raise ApiError(404, "Listing not found!")
    if listing.user_ref != g.user_id:
        raise ApiError(401, "You can only update your own listings!")

    fields = _listing_fields(_json_body(), partial=True)
    if "address" in fields:
        if fields["address"] == listing.address:
            del fields["address"]
        else:
            geocoded = _geocode_address(fields["address"])
            fields["address"] = geocoded.formatted_address
            fields["lat"] = geocoded.lat
            fields["lng"] = geocoded.lng

    updated = update_listing(listing_id, fields)
    if not updated:
        raise ApiError(404, "Listing not found!")
    return jsonify(updated.to_dict())


@app.route("/api/listing/get/<int:listing_id>")
def get_listing_route(listing_id):
    listing = get_listing(listing_id)
    if not listing:
        raise ApiError(404, "Listing not found!")
    return jsonify(listing.to_dict())


@app.route("/api/listing/get")
def get_listings_route():
    listing_type = request.args.get("type")
    listings = get_listings(
        search_term=request.args.get("searchTerm", ""),
        offer=_flag("offer"),
        furnished=_flag("furnished"),
        parking=_flag("parking"),
        listing_type=None if listing_type in (None, "all") else listing_type,
        sort=request.args.get("sort", "createdAt"),
        order=request.args.get("order", "desc"),
        limit=_int_arg("limit", 9, 1, 100),
        start_index=_int_arg("startIndex", 0, 0, 1_000_000),
    )
    return jsonify([l.to_dict() for l in listings])


@app.route("/api/listing/user/<int:user_id>")
@login_required
def user_listings_route(user_id):
    if user_id != g.user_id:
        raise ApiError(401, "You can only view your own listings!")
    return jsonify([l.to_dict() for l in get_user_listings(user_id)])


@app.route("/api/listing/search")
@limiter.limit(RATE_LIMIT_SEARCH)
def search_listings_route():
    """
    Text search over listing names/addresses, falling back to a geocoded
    radius search. Query params: query (required), radius (meters).
    """
    query = request.args.get("query")
    radius = request.args.get("radius") or None
    logger.info("[%s] GET search query=%r radius=%s", g.request_id, query, radius)

    trace_ctx = TraceContext(trace_id=g.request_id)
    set_trace(trace_ctx)
    try:
        result = _resolver().resolve(query, radius)
    finally:
        trace_ctx.log_summary()
        clear_trace()

    payload = {"success": True}
    payload.update(result.to_dict())
    if isinstance(result, NoMatch):
        payload["message"] = "No listings found"
    return jsonify(payload)


@app.route("/api/listing/suggestions")
@limiter.limit(RATE_LIMIT_SEARCH)
def address_suggestions_route():
    suggestions = _resolver().suggest(request.args.get("query"))
    return jsonify({"success": True, "suggestions": suggestions})


@app.route("/healthz")
@limiter.exempt
def healthz():
    """Lightweight health-check endpoint for monitoring."""
    config_ok, missing = _check_service_config()
    return jsonify({
        "status": "ok" if config_ok else "degraded",
        "missing_keys": missing,
    }), 200 if config_ok else 503


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------

# Initialize database on import (safe to call repeatedly)
init_db()

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5001))
    debug = os.environ.get("FLASK_DEBUG", "0") == "1"
    app.run(host="0.0.0.0", port=port, debug=debug)
