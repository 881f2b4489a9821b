"""
cmdb/access.py -- Authorization checks shared by every mutating operation.

The caller's identity arrives as an explicit principal argument (any object
with ``id`` and ``role``). Checks fail closed: a missing principal raises
before any read or write happens.

Roles (see auth/models.py): admin may act on every organization; analyst and
viewer need a membership. Viewers are read-only.
"""

from typing import Optional

from cmdb.errors import NotAuthenticatedError, NotFoundError, PermissionDeniedError
from cmdb.models import Organization, Principal
from cmdb.store import CMDBStore

ADMIN_ROLE = "admin"
READ_ONLY_ROLES = {"viewer"}


def require_principal(principal: Optional[Principal]) -> Principal:
    if principal is None:
        raise NotAuthenticatedError("authentication required")
    return principal


def require_admin(principal: Optional[Principal]) -> Principal:
    principal = require_principal(principal)
    if principal.role != ADMIN_ROLE:
        raise PermissionDeniedError("admin role required")
    return principal


def require_org_access(
    store: CMDBStore,
    principal: Optional[Principal],
    org_id: int,
    write: bool = False,
) -> Organization:
    """Return the organization if the principal may read (or write) it.

    Raises NotAuthenticatedError, NotFoundError or PermissionDeniedError.
    Non-members get PermissionDeniedError rather than NotFoundError only once
    the organization is known to exist.
    """
    principal = require_principal(principal)
    org = store.get_organization(org_id)
    if org is None:
        raise NotFoundError(f"organization {org_id} not found")
    if principal.role == ADMIN_ROLE:
        return org
    if store.get_membership(principal.id, org_id) is None:
        raise PermissionDeniedError("not a member of this organization")
    if write and principal.role in READ_ONLY_ROLES:
        raise PermissionDeniedError("read-only role")
    return org
