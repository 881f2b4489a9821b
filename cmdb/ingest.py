"""
cmdb/ingest.py -- Device inventory import from spreadsheet exports.

Parsers normalize a spreadsheet row (header -> cell) to a Device. The
expected headers are the ones hospital biomedical teams export from their
asset systems; a caller-supplied column mapping lets other spreadsheets be
imported without renaming columns first.

Pipeline:
  CSV text -> parse_device_csv() -> parse_device_rows() -> list[Device]
  -> replace_devices() (destructive: the organization's whole inventory is
     replaced) -> caller schedules match_all() for the organization

An import is "replace all", never a merge. Devices missing from the new
file are deleted together with their vulnerability links and history.
"""

import csv
import io
import logging
import uuid
from datetime import datetime
from collections.abc import Iterable, Mapping
from typing import Optional

from cmdb.access import require_admin, require_org_access
from cmdb.errors import InvalidInputError
from cmdb.models import Device, Principal
from cmdb.risk import classify
from cmdb.store import CMDBStore
from core.formatter import to_csv

logger = logging.getLogger("cryptiomt.ingest")

# Target field -> spreadsheet header.
DEFAULT_COLUMN_MAP: dict[str, str] = {
    "name": "Name",
    "entity": "Entity",
    "serial_number": "Serial Number",
    "manufacturer": "Manufacturer",
    "model": "Model",
    "category": "Category",
    "classification": "Classification",
    "technician": "Technician",
    "phi_category": "Customer PHI category",
    "on_network": "Device on network?",
    "has_phi": "Has PHI",
    "ip_address": "IP Address",
    "mac_address": "MAC Address",
    "os_manufacturer": "OS manufacturer",
    "os_version": "OS Version",
    "last_seen": "Last Seen",
}

REQUIRED_FIELDS = ("name", "serial_number", "manufacturer", "model", "category")

_BOOL_FIELDS = {"on_network", "has_phi"}
_OPTIONAL_FIELDS = {
    "technician",
    "phi_category",
    "ip_address",
    "mac_address",
    "os_manufacturer",
    "os_version",
    "last_seen",
}
_TRUE_VALUES = {"yes", "y", "true", "1"}


def _flag(value: str) -> bool:
    return value.strip().lower() in _TRUE_VALUES


def _is_timestamp(value: str) -> bool:
    try:
        datetime.fromisoformat(value)
    except ValueError:
        return False
    return True


def parse_device_rows(
    rows: Iterable[Mapping[str, object]],
    organization_id: int,
    mapping: Optional[Mapping[str, str]] = None,
) -> tuple[list[Device], list[str]]:
    """Map spreadsheet rows to Device records.

    Returns (devices, errors). A row missing a required field is skipped
    and reported as "Row N: ..." (1-based, header excluded), and so is a
    blank row.
    """
    column_map = dict(DEFAULT_COLUMN_MAP)
    if mapping:
        unknown = set(mapping) - set(DEFAULT_COLUMN_MAP)
        if unknown:
            raise InvalidInputError(f"unknown target fields in mapping: {', '.join(sorted(unknown))}")
        column_map.update(mapping)

    devices: list[Device] = []
    errors: list[str] = []
    for index, row in enumerate(rows, start=1):
        values = {field: str(row.get(header) or "").strip() for field, header in column_map.items()}
        if not any(values.values()):
            errors.append(f"Row {index}: empty row")
            continue
        missing = [column_map[f] for f in REQUIRED_FIELDS if not values[f]]
        if missing:
            errors.append(f"Row {index}: missing {', '.join(missing)}")
            continue

        if values["last_seen"] and not _is_timestamp(values["last_seen"]):
            errors.append(f"Row {index}: invalid {column_map['last_seen']} '{values['last_seen']}'")
            continue

        fields: dict = {}
        for name, value in values.items():
            if name in _BOOL_FIELDS:
                fields[name] = _flag(value)
            elif name in _OPTIONAL_FIELDS:
                fields[name] = value or None
            else:
                fields[name] = value
        devices.append(Device(organization_id=organization_id, **fields))
    return devices, errors


def parse_device_csv(
    content: str,
    organization_id: int,
    mapping: Optional[Mapping[str, str]] = None,
) -> tuple[list[Device], list[str]]:
    """Parse CSV text with a header row. A leading UTF-8 BOM is ignored."""
    reader = csv.DictReader(io.StringIO(content.lstrip("\ufeff")))
    return parse_device_rows(reader, organization_id, mapping)


def replace_devices(
    store: CMDBStore,
    principal: Optional[Principal],
    org_id: int,
    devices: list[Device],
) -> dict:
    """Replace an organization's inventory with devices. Admin only.

    Returns {"imported", "removed", "batch"}. The link counters of the new
    devices start at zero until the matcher runs. Devices without an owner
    are assigned to the importing principal, who then receives their alerts.
    """
    require_admin(principal)
    require_org_access(store, principal, org_id, write=True)
    batch = uuid.uuid4().hex
    for device in devices:
        device.organization_id = org_id
        if device.owner_id is None:
            device.owner_id = principal.id
    imported, removed = store.replace_devices(org_id, devices, batch)
    logger.info("Org %d inventory replaced: %d imported, %d removed (batch %s)", org_id, imported, removed, batch)
    return {"imported": imported, "removed": removed, "batch": batch}


def devices_to_rows(devices: Iterable[Device]) -> list[dict]:
    """Flatten devices for CSV export, adding the derived risk level."""
    rows = []
    for d in devices:
        rows.append(
            {
                "Name": d.name,
                "Entity": d.entity,
                "Serial Number": d.serial_number,
                "Manufacturer": d.manufacturer,
                "Model": d.model,
                "Category": d.category,
                "Classification": d.classification,
                "Technician": d.technician,
                "Customer PHI category": d.phi_category,
                "Device on network?": d.on_network,
                "Has PHI": d.has_phi,
                "IP Address": d.ip_address,
                "MAC Address": d.mac_address,
                "OS manufacturer": d.os_manufacturer,
                "OS Version": d.os_version,
                "Last Seen": d.last_seen,
                "Risk Level": classify(d),
                "Vulnerabilities": d.vulnerability_link_count,
            }
        )
    return rows


EXPORT_COLUMNS = list(DEFAULT_COLUMN_MAP.values()) + ["Risk Level", "Vulnerabilities"]


def devices_to_csv(devices: Iterable[Device]) -> str:
    return to_csv(devices_to_rows(devices), EXPORT_COLUMNS)
