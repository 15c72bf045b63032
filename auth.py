"""
Authentication helpers: password hashing, signed access-token cookies,
email verification tokens, and the login_required route decorator.

Access tokens are HS256 JWTs carrying {"id": user_id}, delivered as an
httponly cookie. Route handlers in app.py own the sign-up/sign-in flows;
this module only knows about tokens and hashes.
"""

import logging
import os
import re
import secrets
from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Optional, Tuple

import jwt
from flask import current_app, g, request
from werkzeug.security import check_password_hash, generate_password_hash

logger = logging.getLogger(__name__)

ACCESS_TOKEN_COOKIE = "access_token"
ALGORITHM = "HS256"
ACCESS_TOKEN_DAYS = int(os.environ.get("ACCESS_TOKEN_DAYS", "7"))
VERIFICATION_TOKEN_HOURS = 24


class AuthError(Exception):
    """Missing or invalid credentials on a protected route."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(message)


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return check_password_hash(password_hash, password)


def random_password() -> str:
    """Throwaway password for accounts created through Google sign-in."""
    return secrets.token_urlsafe(12)


def username_from_name(name: str) -> str:
    """'Jane Doe' -> 'janedoe' plus four random characters."""
    base = re.sub(r"\s+", "", name or "").lower() or "user"
    return base + secrets.token_hex(2)


def new_verification_token() -> Tuple[str, str]:
    """Return (token, expires_at_iso) for an email verification link."""
    token = secrets.token_hex(32)
    expires = datetime.now(timezone.utc) + timedelta(hours=VERIFICATION_TOKEN_HOURS)
    return token, expires.isoformat()


def _jwt_secret() -> str:
    return os.environ.get("JWT_SECRET") or current_app.config["SECRET_KEY"]


def issue_access_token(user_id: int) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "id": user_id,
        "iat": now,
        "exp": now + timedelta(days=ACCESS_TOKEN_DAYS),
    }
    return jwt.encode(payload, _jwt_secret(), algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[int]:
    """User id from a valid token, or None if it is invalid or expired."""
    try:
        payload = jwt.decode(token, _jwt_secret(), algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired access token")
        return None
    except jwt.InvalidTokenError:
        logger.info("Rejected invalid access token")
        return None
    user_id = payload.get("id")
    return user_id if isinstance(user_id, int) else None


def set_auth_cookie(response, user_id: int):
    response.set_cookie(
        ACCESS_TOKEN_COOKIE,
        issue_access_token(user_id),
        max_age=ACCESS_TOKEN_DAYS * 24 * 3600,
        httponly=True,
        samesite="Lax",
        secure=os.environ.get("COOKIE_SECURE", "false").lower() == "true",
    )
    return response


def clear_auth_cookie(response):
    response.delete_cookie(ACCESS_TOKEN_COOKIE)
    return response


def login_required(view):
    """Require a valid access_token cookie; sets g.user_id for the view."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        token = request.cookies.get(ACCESS_TOKEN_COOKIE)
        if not token:
            raise AuthError(401, "Unauthorized")
        user_id = decode_access_token(token)
        if user_id is None:
            raise AuthError(403, "Forbidden")
        g.user_id = user_id
        return view(*args, **kwargs)
    return wrapper
