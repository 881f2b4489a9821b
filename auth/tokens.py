"""
auth/tokens.py -- Session tokens, password hashing, and API key utilities.

  Session tokens: python-jose HS256 JWTs signed with SECRET_KEY. Claims are
       sub (username), user_id, role and exp. decode_access_token() returns
       None for anything it cannot verify; the dependency layer maps that to
       "not authenticated".

  Passwords: bcrypt. authenticate_user() always runs one bcrypt check, even
       for unknown usernames, so login timing does not reveal which accounts
       exist.

  API keys: "ciot_" + 64 hex chars (256 bits). Only HMAC-SHA256(SECRET_KEY,
       key) is stored, which keeps lookup a single indexed query.

Layer rule: no imports from api/ or cmdb/. core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("cryptiomt.auth")

_ALGORITHM = "HS256"
API_KEY_PREFIX = "ciot_"


# ---------------------------------------------------------------------------
# Passwords
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of plain. Input is capped at the API layer (255 chars)."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if plain matches hashed. A malformed hash counts as a mismatch."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is not a valid bcrypt hash")
        return False


# Checked against when the username is unknown.
_DUMMY_HASH: str = hash_password("cryptiomt_timing_dummy")


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def create_access_token(user_id: int, username: str, role: str, expire_seconds: int = 0) -> str:
    """Sign a session token for the given identity.

    expire_seconds of 0 means Settings.token_expire_seconds.
    """
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.token_expire_seconds
    payload = {
        "sub": username,
        "user_id": user_id,
        "role": role,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=duration),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Verify a session token and return its claims, or None."""
    try:
        payload = jwt.decode(token, get_settings().secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if "user_id" not in payload or "role" not in payload:
        return None
    return payload


def authenticate_user(store: UserStore, username: str, password: str) -> User | None:
    """Check a username/password pair. Returns the active User or None."""
    user = store.get_by_username(username)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        logger.info("Login refused for deactivated user %d", user.id)
        return None
    return user


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


def generate_api_key() -> str:
    return f"{API_KEY_PREFIX}{secrets.token_hex(32)}"


def hash_api_key(raw_key: str) -> str:
    """HMAC-SHA256(SECRET_KEY, raw_key) as hex. Deterministic, so it can be looked up."""
    return hmac.new(get_settings().secret_key.encode(), raw_key.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Cookie
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Store the session token in an httpOnly, samesite=lax cookie.

    The cookie max_age matches the token expiry. secure follows
    SECURE_COOKIES.
    """
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=duration,
    )
