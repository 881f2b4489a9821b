"""
cmdb/orgs.py -- Organizations, memberships, and organization-scoped reads.

Everything here is called from the API routes and the CLI with an explicit
principal; cmdb.access does the authorization checks.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError

from cmdb.access import require_admin, require_org_access, require_principal
from cmdb.alerts import detect_device_alerts
from cmdb.errors import InvalidInputError, NotFoundError
from cmdb.ingest import devices_to_csv
from cmdb.models import LINK_STATUSES, Device, DeviceLog, Membership, Organization, Principal
from cmdb.risk import risk_summary
from cmdb.store import CMDBStore

logger = logging.getLogger("cryptiomt.orgs")

ORGANIZATION_TYPES = ("hospital", "clinic", "healthcare_system")
MEMBER_ROLES = ("owner", "admin", "member")


# ---------------------------------------------------------------------------
# Organizations and members
# ---------------------------------------------------------------------------


def create_organization(
    store: CMDBStore,
    principal: Optional[Principal],
    name: str,
    contact_email: str = "",
    type_: str = "hospital",
    logo_url: Optional[str] = None,
) -> Organization:
    require_admin(principal)
    if not name or not name.strip():
        raise InvalidInputError("name is required")
    if type_ not in ORGANIZATION_TYPES:
        raise InvalidInputError(f"type must be one of {', '.join(ORGANIZATION_TYPES)}")
    org_id = store.create_organization(
        Organization(name=name.strip(), contact_email=contact_email, type=type_, logo_url=logo_url)
    )
    logger.info("Organization %d (%s) created", org_id, name.strip())
    return store.get_organization(org_id)


def list_organizations(store: CMDBStore, principal: Optional[Principal]) -> list[Organization]:
    """Admins see every organization; everyone else sees their memberships."""
    principal = require_principal(principal)
    if principal.role == "admin":
        return store.list_organizations()
    return store.list_organizations_for_user(principal.id)


def add_member(
    store: CMDBStore,
    principal: Optional[Principal],
    org_id: int,
    user_id: int,
    member_role: str = "member",
) -> Membership:
    require_admin(principal)
    if member_role not in MEMBER_ROLES:
        raise InvalidInputError(f"member_role must be one of {', '.join(MEMBER_ROLES)}")
    require_org_access(store, principal, org_id, write=True)
    try:
        store.add_membership(Membership(user_id=user_id, organization_id=org_id, member_role=member_role))
    except IntegrityError as exc:
        raise InvalidInputError(f"user {user_id} is already a member of organization {org_id}") from exc
    return store.get_membership(user_id, org_id)


# ---------------------------------------------------------------------------
# Device reads
# ---------------------------------------------------------------------------


def list_devices(store: CMDBStore, principal: Optional[Principal], org_id: int) -> list[Device]:
    require_org_access(store, principal, org_id)
    return store.list_devices(org_id)


def get_device(store: CMDBStore, principal: Optional[Principal], device_id: int) -> Device:
    require_principal(principal)
    device = store.get_device(device_id)
    if device is None:
        raise NotFoundError(f"device {device_id} not found")
    require_org_access(store, principal, device.organization_id)
    return device


def device_history(
    store: CMDBStore, principal: Optional[Principal], device_id: int, limit: int = 100
) -> list[DeviceLog]:
    """Newest first."""
    device = get_device(store, principal, device_id)
    return store.list_device_logs(device.id, limit)


# Fields a member with write access may change on one device. Manufacturer
# and model stay import-only because links were matched against them.
EDITABLE_DEVICE_FIELDS = {
    "name",
    "entity",
    "serial_number",
    "category",
    "classification",
    "technician",
    "os_manufacturer",
    "os_version",
    "has_phi",
    "phi_category",
    "on_network",
    "ip_address",
    "mac_address",
    "owner_id",
    "last_seen",
    "status",
}

# Editable fields that cannot be cleared.
_NON_NULL_DEVICE_FIELDS = {
    "name",
    "entity",
    "serial_number",
    "category",
    "classification",
    "has_phi",
    "on_network",
    "status",
}

MAX_TAGS = 20
MAX_TAG_LENGTH = 50


def update_device(store: CMDBStore, principal: Optional[Principal], device_id: int, **fields) -> Device:
    """Change editable fields of one device and return the updated record.

    owner_id must name the caller or a member of the device's organization.
    last_seen must be an ISO 8601 timestamp.
    """
    require_principal(principal)
    device = store.get_device(device_id)
    if device is None:
        raise NotFoundError(f"device {device_id} not found")
    require_org_access(store, principal, device.organization_id, write=True)

    unknown = set(fields) - EDITABLE_DEVICE_FIELDS
    if unknown:
        raise InvalidInputError(f"cannot update device fields: {', '.join(sorted(unknown))}")
    if not fields:
        return device
    cleared = sorted(f for f in _NON_NULL_DEVICE_FIELDS if f in fields and fields[f] is None)
    if cleared:
        raise InvalidInputError(f"fields cannot be empty: {', '.join(cleared)}")

    owner_id = fields.get("owner_id")
    if owner_id is not None and owner_id != principal.id:
        if store.get_membership(owner_id, device.organization_id) is None:
            raise InvalidInputError(f"user {owner_id} is not a member of organization {device.organization_id}")
    last_seen = fields.get("last_seen")
    if last_seen is not None:
        try:
            datetime.fromisoformat(last_seen)
        except ValueError as exc:
            raise InvalidInputError(f"last_seen is not an ISO 8601 timestamp: {last_seen!r}") from exc
    if "status" in fields and not (fields["status"] or "").strip():
        raise InvalidInputError("status must not be empty")

    store.update_device(device_id, **fields)
    logger.info("Device %d updated by user %d: %s", device_id, principal.id, ", ".join(sorted(fields)))
    return store.get_device(device_id)


def update_device_tags(store: CMDBStore, principal: Optional[Principal], device_id: int, tags: list[str]) -> Device:
    """Replace a device's tags. Tags are trimmed and de-duplicated in order."""
    require_principal(principal)
    device = store.get_device(device_id)
    if device is None:
        raise NotFoundError(f"device {device_id} not found")
    require_org_access(store, principal, device.organization_id, write=True)

    cleaned: list[str] = []
    for tag in tags:
        tag = (tag or "").strip()
        if not tag or tag in cleaned:
            continue
        if len(tag) > MAX_TAG_LENGTH:
            raise InvalidInputError(f"tag longer than {MAX_TAG_LENGTH} characters: {tag[:20]}...")
        cleaned.append(tag)
    if len(cleaned) > MAX_TAGS:
        raise InvalidInputError(f"a device may carry at most {MAX_TAGS} tags")
    store.set_device_tags(device_id, cleaned)
    return store.get_device(device_id)


def export_devices(store: CMDBStore, principal: Optional[Principal], org_id: int) -> str:
    require_org_access(store, principal, org_id)
    return devices_to_csv(store.list_devices(org_id))


def vulnerability_stats(store: CMDBStore, principal: Optional[Principal]) -> dict:
    """Counts over the shared vulnerability catalog, by severity."""
    require_principal(principal)
    by_severity = store.count_vulnerabilities_by_severity()
    return {"total": sum(by_severity.values()), "by_severity": by_severity}


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


def dashboard(store: CMDBStore, principal: Optional[Principal], org_id: int) -> dict:
    """One payload for the organization overview.

    Keys: organization, devices (total, on_network, with_phi,
    with_vulnerabilities), risk (see risk_summary), links (total and per
    status), alerts (summary plus the ten most severe).
    """
    org = require_org_access(store, principal, org_id)
    devices = store.list_devices(org_id)
    status_counts = Counter(item.link.status for item in store.list_organization_links(org_id))
    alerts = detect_device_alerts(devices)

    return {
        "organization": {"id": org.id, "name": org.name},
        "devices": {
            "total": len(devices),
            "on_network": sum(1 for d in devices if d.on_network),
            "with_phi": sum(1 for d in devices if d.has_phi),
            "with_vulnerabilities": sum(1 for d in devices if d.vulnerability_link_count > 0),
        },
        "risk": risk_summary(devices),
        "links": {
            "total": sum(status_counts.values()),
            "by_status": {s: status_counts.get(s, 0) for s in LINK_STATUSES},
        },
        "alerts": {"summary": alerts["summary"], "top": alerts["alerts"][:10]},
    }
