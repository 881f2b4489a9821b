"""
api/routes/v1/auth.py -- Authentication and user management REST endpoints.

Routes:
  POST   /api/v1/auth/setup            -- create the first admin (only while no users exist)
  POST   /api/v1/auth/login            -- password login; sets JWT cookie
  POST   /api/v1/auth/logout           -- clears cookie
  GET    /api/v1/auth/me               -- current user info
  POST   /api/v1/auth/api-keys         -- create API key
  GET    /api/v1/auth/api-keys         -- list the caller's API keys
  DELETE /api/v1/auth/api-keys/{id}    -- revoke key (ownership checked in the store)
  POST   /api/v1/auth/users            -- create user (admin only)
  GET    /api/v1/auth/users            -- list users (admin only)
  PATCH  /api/v1/auth/users/{id}       -- update role/is_active/display_name (admin only)

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT).
  authenticate_user() equalizes timing for unknown usernames; never inline it.
  PATCH /users/{id} blocks self-deactivation and last-admin deactivation.
  Login and setup responses carry Cache-Control: no-store.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import (
    ApiKeyCreate,
    ApiKeyCreatedResponse,
    ApiKeyResponse,
    LoginRequest,
    LoginResponse,
    MeResponse,
    SetupRequest,
    UserCreate,
    UserPatch,
    UserResponse,
)
from auth.dependencies import get_current_user, require_admin
from auth.models import ApiKey, User
from auth.store import UserStore
from auth.tokens import (
    authenticate_user,
    create_access_token,
    generate_api_key,
    hash_api_key,
    hash_password,
    set_auth_cookie,
)
from core.config import get_settings

router = APIRouter()

_MAX_KEYS_PER_USER = 10


def _login_response(user: User) -> JSONResponse:
    token = create_access_token(user.id, user.username, user.role)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=token,
            token_type="bearer",  # noqa: S106 # nosec B106 -- token type, not a password
            expires_in=get_settings().token_expire_seconds,
            username=user.username,
            role=user.role,
        ).model_dump(),
    )
    set_auth_cookie(resp, token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit("5/minute")
@router.post("/auth/setup", response_model=LoginResponse, status_code=200)
def setup(request: Request, body: SetupRequest) -> JSONResponse:
    """Create the first admin account and sign it in.

    The in-memory setup_required flag is a fast path; the DB is re-checked
    so two concurrent setup calls cannot both create an admin.
    """
    user_store: UserStore = request.app.state.user_store
    if not request.app.state.setup_required or user_store.has_users():
        raise HTTPException(
            status_code=409,
            detail={"code": "already_configured", "message": "Setup has already been completed."},
        )
    user_id = user_store.create_user(
        User(
            username=body.username,
            role="admin",
            hashed_password=hash_password(body.password),
            display_name=body.display_name,
        )
    )
    request.app.state.setup_required = False
    return _login_response(user_store.get_by_id(user_id))


@limiter.limit(get_settings().login_rate_limit)
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set the session cookie.

    Wrong username and wrong password get the same "bad_credentials" error.
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.username, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid username or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    user_store.update_last_login(user.id)
    return _login_response(user)


@router.post("/auth/logout")
async def logout() -> JSONResponse:
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("access_token")
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
async def me(current_user: User = Depends(get_current_user)) -> MeResponse:
    return MeResponse(
        user_id=current_user.id,
        username=current_user.username,
        role=current_user.role,
        display_name=current_user.display_name,
    )


@router.post("/auth/api-keys", response_model=ApiKeyCreatedResponse, status_code=201)
async def create_api_key(
    request: Request,
    body: ApiKeyCreate,
    current_user: User = Depends(get_current_user),
) -> ApiKeyCreatedResponse:
    """Generate a new API key. The raw key is shown once and never stored.

    Capped at 10 active keys per user.
    """
    user_store: UserStore = request.app.state.user_store

    if len(user_store.get_api_keys(current_user.id)) >= _MAX_KEYS_PER_USER:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "key_limit_reached",
                "message": f"Maximum of {_MAX_KEYS_PER_USER} API keys per user. Revoke an existing key first.",
            },
        )

    raw_key = generate_api_key()
    key_prefix = raw_key[:12]
    key_id = user_store.create_api_key(
        ApiKey(user_id=current_user.id, name=body.name, key_hash=hash_api_key(raw_key), key_prefix=key_prefix)
    )
    created = next((k for k in user_store.get_api_keys(current_user.id) if k.id == key_id), None)

    return ApiKeyCreatedResponse(
        id=key_id,
        name=body.name,
        key_prefix=key_prefix,
        created_at=created.created_at if created else "",
        last_used=None,
        key=raw_key,
    )


@router.get("/auth/api-keys", response_model=list[ApiKeyResponse])
async def list_api_keys(
    request: Request,
    current_user: User = Depends(get_current_user),
) -> list[ApiKeyResponse]:
    """Active keys for the caller. Raw key values are never returned."""
    user_store: UserStore = request.app.state.user_store
    return [
        ApiKeyResponse(
            id=k.id,
            name=k.name,
            key_prefix=k.key_prefix,
            created_at=k.created_at or "",
            last_used=k.last_used,
        )
        for k in user_store.get_api_keys(current_user.id)
    ]


@router.delete("/auth/api-keys/{key_id}", status_code=204)
async def revoke_api_key(
    request: Request,
    key_id: int,
    current_user: User = Depends(get_current_user),
) -> Response:
    """Revoke one of the caller's keys. Someone else's key reads as 404."""
    user_store: UserStore = request.app.state.user_store
    if not user_store.revoke_api_key(key_id, current_user.id):
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "API key not found."},
        )
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# User management (admin only)
# ---------------------------------------------------------------------------


@router.post("/auth/users", response_model=UserResponse, status_code=201)
async def create_user(
    request: Request,
    body: UserCreate,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    user_store: UserStore = request.app.state.user_store
    new_user = User(
        username=body.username,
        role=body.role.value,
        hashed_password=hash_password(body.password),
        display_name=body.display_name,
    )
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A user with that username already exists."},
        ) from exc
    return _user_to_response(user_store.get_by_id(user_id))


@router.get("/auth/users", response_model=list[UserResponse])
async def list_users(
    request: Request,
    current_user: User = Depends(require_admin),
) -> list[UserResponse]:
    user_store: UserStore = request.app.state.user_store
    return [_user_to_response(u) for u in user_store.list_users()]


@router.patch("/auth/users/{user_id}", response_model=UserResponse)
async def update_user(
    request: Request,
    user_id: int,
    body: UserPatch,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    """Update a user's role, active flag or display name.

    Refuses to deactivate the caller or the last active admin.
    """
    user_store: UserStore = request.app.state.user_store

    target = user_store.get_by_id(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )

    updates: dict = {}
    if body.role is not None:
        updates["role"] = body.role.value
    if body.display_name is not None:
        updates["display_name"] = body.display_name
    if body.is_active is not None:
        if not body.is_active and target.id == current_user.id:
            raise HTTPException(
                status_code=400,
                detail={"code": "self_deactivation", "message": "You cannot deactivate your own account."},
            )
        if not body.is_active and target.role == "admin" and user_store.count_active_admins() <= 1:
            raise HTTPException(
                status_code=400,
                detail={"code": "last_admin", "message": "Cannot deactivate the last active admin account."},
            )
        updates["is_active"] = body.is_active

    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    user_store.update_user(user_id, **updates)
    return _user_to_response(user_store.get_by_id(user_id))


def _user_to_response(user: User | None) -> UserResponse:
    if user is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "User not found after write."},
        )
    return UserResponse(
        id=user.id,
        username=user.username,
        role=user.role,
        display_name=user.display_name,
        is_active=user.is_active,
        created_at=user.created_at or "",
        last_login=user.last_login,
    )
