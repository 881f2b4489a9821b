"""
auth/dependencies.py -- FastAPI Depends() helpers that resolve the caller.

Credentials are checked in this order:
  1. "access_token" cookie set by POST /api/v1/auth/login.
  2. Authorization: Bearer <token>.
  3. X-API-Key: ciot_... for scheduled runners and scripts.

The resolved User is the principal passed into cmdb/ operations, which do
their own organization-level checks.

Layer rule: no imports from cmdb/. fastapi is allowed here because these
functions only exist to be used with Depends().
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import User
from auth.tokens import decode_access_token, hash_api_key


def _bearer_or_cookie(request: Request) -> str | None:
    token = request.cookies.get("access_token")
    if token:
        return token
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[7:]
    return None


def try_get_current_user(request: Request) -> User | None:
    """Return the authenticated User, or None. Never raises."""
    user_store = request.app.state.user_store

    token = _bearer_or_cookie(request)
    if token:
        payload = decode_access_token(token)
        if payload:
            user = user_store.get_by_id(payload["user_id"])
            if user and user.is_active:
                return user

    raw_key = request.headers.get("X-API-Key", "")
    if raw_key:
        key = user_store.get_api_key_by_hash(hash_api_key(raw_key))
        if key and key.is_active:
            user = user_store.get_by_id(key.user_id)
            if user and user.is_active:
                user_store.update_api_key_last_used(key.id)
                return user

    return None


def get_current_user(request: Request) -> User:
    """Depends() target for any signed-in caller. 401 otherwise."""
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_admin(request: Request) -> User:
    """Depends() target for admin-only endpoints. 401 or 403 otherwise."""
    user = get_current_user(request)
    if user.role != "admin":
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user
