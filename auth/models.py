"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Mirrors the approach
in core/models.py and cmdb/models.py -- dataclasses own domain shape; stores
and routes do the work.

User is also the principal handed to every cmdb/ operation: it carries the
``id`` and ``role`` attributes that cmdb.models.Principal describes.

Layer rule: no imports from api/, core/ or cmdb/.
"""

from __future__ import annotations

from dataclasses import dataclass

ROLES = ("admin", "analyst", "viewer")


@dataclass
class User:
    """Represents an authenticated identity in CryptIoMT.

    username is the login email. Roles: admin (all organizations, user
    management, device import), analyst (read/write within member
    organizations), viewer (read-only within member organizations).
    """

    username: str
    role: str  # "admin", "analyst", "viewer"
    id: int | None = None
    hashed_password: str | None = None
    display_name: str | None = None
    created_at: str | None = None
    is_active: bool = True
    last_login: str = ""


@dataclass
class ApiKey:
    """A long-lived credential for non-browser API clients (cron runners, scripts).

    Security design:
    - key_hash is HMAC-SHA256(SECRET_KEY, raw_key). Deterministic hash lets the
      store do an O(1) lookup without bcrypt's intentional slowness. Long random
      keys (256-bit entropy) make brute-force attacks infeasible.
    - key_prefix (first 12 chars of the raw key) is stored for display purposes
      only.
    - The raw key is never persisted. It is returned ONCE at creation.
    """

    user_id: int
    name: str
    key_hash: str  # HMAC-SHA256 of the raw key
    key_prefix: str  # first 12 chars of raw key, display only
    id: int | None = None
    created_at: str | None = None
    last_used: str | None = None
    is_active: bool = True
