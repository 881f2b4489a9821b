"""
cmdb/groups.py -- Saved device groups and their risk roll-up.

A group is a named filter over an organization's inventory. Membership is
never stored: group_devices() evaluates the filter against the current
devices every time, so imports and tag edits are reflected immediately.
"""

import logging
from typing import Optional

from cmdb.access import require_org_access, require_principal
from cmdb.errors import InvalidInputError, NotFoundError
from cmdb.models import Device, DeviceGroup, Principal
from cmdb.risk import device_risk_score
from cmdb.store import CMDBStore

logger = logging.getLogger("cryptiomt.groups")

FILTER_KEYS = ("tags", "category", "manufacturer", "classification", "status", "has_phi", "network", "search")
_EXACT_KEYS = ("category", "manufacturer", "classification", "status")

# device_risk_score() bands used when rolling a group up.
CRITICAL_SCORE = 80
HIGH_SCORE = 60


def normalize_filters(filters: Optional[dict]) -> dict:
    """Drop empty values and reject unknown keys or choices."""
    filters = dict(filters or {})
    unknown = set(filters) - set(FILTER_KEYS)
    if unknown:
        raise InvalidInputError(f"unknown group filters: {', '.join(sorted(unknown))}")
    if filters.get("has_phi") not in (None, "", "yes", "no"):
        raise InvalidInputError("has_phi filter must be 'yes' or 'no'")
    if filters.get("network") not in (None, "", "connected", "offline"):
        raise InvalidInputError("network filter must be 'connected' or 'offline'")
    tags = [t.strip() for t in filters.get("tags") or [] if t and t.strip()]
    cleaned = {k: v for k, v in filters.items() if k != "tags" and v not in (None, "")}
    if tags:
        cleaned["tags"] = tags
    return cleaned


def device_in_group(device: Device, filters: dict) -> bool:
    """True if the device passes every filter. Tags use AND logic."""
    for key in _EXACT_KEYS:
        if filters.get(key) and getattr(device, key) != filters[key]:
            return False
    if filters.get("has_phi") == "yes" and not device.has_phi:
        return False
    if filters.get("has_phi") == "no" and device.has_phi:
        return False
    if filters.get("network") == "connected" and not device.on_network:
        return False
    if filters.get("network") == "offline" and device.on_network:
        return False
    if any(tag not in device.tags for tag in filters.get("tags") or []):
        return False
    search = (filters.get("search") or "").casefold()
    if search:
        haystack = (device.name, device.manufacturer, device.model, device.serial_number)
        return any(search in (value or "").casefold() for value in haystack)
    return True


def group_devices(devices: list[Device], filters: dict) -> list[Device]:
    return [d for d in devices if device_in_group(d, filters)]


def risk_rollup(devices: list[Device]) -> dict:
    """{"device_count", "avg_risk_score", "critical_count", "high_count"}."""
    if not devices:
        return {"device_count": 0, "avg_risk_score": 0, "critical_count": 0, "high_count": 0}
    scores = [device_risk_score(d) for d in devices]
    return {
        "device_count": len(devices),
        "avg_risk_score": int(sum(scores) / len(scores) + 0.5),
        "critical_count": sum(1 for s in scores if s >= CRITICAL_SCORE),
        "high_count": sum(1 for s in scores if HIGH_SCORE <= s < CRITICAL_SCORE),
    }


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def create_group(
    store: CMDBStore,
    principal: Optional[Principal],
    org_id: int,
    name: str,
    filters: Optional[dict] = None,
    description: Optional[str] = None,
    is_smart_group: bool = True,
) -> DeviceGroup:
    require_org_access(store, principal, org_id, write=True)
    if not name or not name.strip():
        raise InvalidInputError("name is required")
    group_id = store.create_group(
        DeviceGroup(
            organization_id=org_id,
            name=name.strip(),
            description=description,
            filters=normalize_filters(filters),
            is_smart_group=is_smart_group,
            created_by=principal.id,
        )
    )
    logger.info("Group %d (%s) created in org %d", group_id, name.strip(), org_id)
    return store.get_group(group_id)


def list_groups(store: CMDBStore, principal: Optional[Principal], org_id: int) -> list[DeviceGroup]:
    require_org_access(store, principal, org_id)
    return store.list_groups(org_id)


def _readable_group(store: CMDBStore, principal: Optional[Principal], group_id: int, write: bool = False):
    require_principal(principal)
    group = store.get_group(group_id)
    if group is None:
        raise NotFoundError(f"group {group_id} not found")
    require_org_access(store, principal, group.organization_id, write=write)
    return group


def delete_group(store: CMDBStore, principal: Optional[Principal], group_id: int) -> None:
    _readable_group(store, principal, group_id, write=True)
    store.delete_group(group_id)


def get_group_devices(store: CMDBStore, principal: Optional[Principal], group_id: int) -> list[Device]:
    group = _readable_group(store, principal, group_id)
    return group_devices(store.list_devices(group.organization_id), group.filters)


def get_group_risk_summary(store: CMDBStore, principal: Optional[Principal], group_id: int) -> dict:
    group = _readable_group(store, principal, group_id)
    return risk_rollup(group_devices(store.list_devices(group.organization_id), group.filters))


def preview_group_risk_summary(
    store: CMDBStore, principal: Optional[Principal], org_id: int, filters: Optional[dict]
) -> dict:
    """Risk roll-up for an unsaved filter."""
    require_org_access(store, principal, org_id)
    return risk_rollup(group_devices(store.list_devices(org_id), normalize_filters(filters)))
