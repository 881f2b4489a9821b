"""
cmdb/alerts.py -- Device alert detection and user notifications.

Two concerns live here:
  detect_device_alerts()  -- read-time findings over an inventory (unsupported
                             OS, missing ownership data, duplicate IPs,
                             critical PHI on the network). Not persisted.
  check_device_alerts()   -- the periodic sweep that turns device state into
                             per-user Notification rows, deduplicated against
                             unread notifications with the same type and link.

Notifications are never edited except for the read flag.
"""

import logging
import re
from collections import Counter
from datetime import datetime, timedelta
from typing import Optional

from cmdb.access import require_principal
from cmdb.errors import NotFoundError
from cmdb.models import Device, Notification, Principal
from cmdb.risk import is_critical_phi
from cmdb.store import CMDBStore
from core.config import get_settings, now_utc

logger = logging.getLogger("cryptiomt.alerts")

ALERT_SEVERITIES = ("critical", "high", "medium", "low")

# Broader than the classifier's keyword set: alerts also flag OS labels that
# are explicitly marked unsupported or end-of-life.
_UNSUPPORTED_OS_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"windows\s*xp",
        r"windows\s*7",
        r"windows\s*vista",
        r"windows\s*2000",
        r"server\s*2003",
        r"server\s*2008",
        r"unsupported",
        r"legacy",
        r"end\s*of\s*life",
        r"\beol\b",
    )
]


# ---------------------------------------------------------------------------
# Read-time alert detection
# ---------------------------------------------------------------------------


def _alert(type_: str, severity: str, device: Optional[Device], message: str) -> dict:
    return {
        "type": type_,
        "severity": severity,
        "device_id": device.id if device else None,
        "device_name": (device.name or f"{device.manufacturer} {device.model}".strip()) if device else "Multiple Devices",
        "entity": device.entity if device else None,
        "message": message,
    }


def detect_device_alerts(devices: list[Device], limit: int = 100) -> dict:
    """Scan an inventory for alert conditions.

    Returns {"alerts": [...], "summary": {"total", "critical", "high",
    "medium", "low"}} with alerts ordered most severe first.
    """
    alerts: list[dict] = []
    ip_counts: Counter = Counter()

    for device in devices:
        if device.on_network and is_critical_phi(device):
            alerts.append(_alert("critical_phi_on_network", "critical", device, "Critical PHI device is on the network"))
        os_label = device.os_version or ""
        if os_label and any(p.search(os_label) for p in _UNSUPPORTED_OS_PATTERNS):
            alerts.append(_alert("unsupported_os", "high", device, f"Unsupported OS detected: {os_label}"))
        if not device.technician or not device.entity or (device.on_network and not device.ip_address):
            alerts.append(_alert("missing_device_info", "medium", device, "Device missing critical information"))
        if device.ip_address:
            ip_counts[device.ip_address] += 1

    for ip, count in sorted(ip_counts.items()):
        if count > 1:
            alerts.append(_alert("duplicate_ip", "high", None, f"Duplicate IP address detected: {ip} ({count} devices)"))

    rank = {s: i for i, s in enumerate(ALERT_SEVERITIES)}
    alerts.sort(key=lambda a: rank[a["severity"]])
    alerts = alerts[:limit]

    summary = {"total": len(alerts)}
    for severity in ALERT_SEVERITIES:
        summary[severity] = sum(1 for a in alerts if a["severity"] == severity)
    return {"alerts": alerts, "summary": summary}


# ---------------------------------------------------------------------------
# Notification sweep
# ---------------------------------------------------------------------------


def _device_link(device: Device) -> str:
    return f"/dashboard?tab=devices&deviceId={device.id}"


def _notify_once(store: CMDBStore, notification: Notification) -> bool:
    if store.find_unread_notification(notification.user_id, notification.type, notification.link) is not None:
        return False
    store.create_notification(notification)
    return True


def _is_stale(last_seen: Optional[str], cutoff: datetime) -> bool:
    if not last_seen:
        return False
    try:
        seen = datetime.fromisoformat(last_seen)
    except ValueError:
        logger.warning("Ignoring unparseable last_seen %r", last_seen)
        return False
    if seen.tzinfo is None:
        seen = seen.replace(tzinfo=cutoff.tzinfo)
    return seen < cutoff


def check_device_alerts(store: CMDBStore, now: Optional[datetime] = None) -> int:
    """Create offline and vulnerability notifications for device owners.

    Devices without an owner are skipped. Returns the number of
    notifications created.
    """
    now = now or now_utc()
    cutoff = now - timedelta(hours=get_settings().offline_alert_hours)
    created = 0

    for device in store.list_all_devices():
        if device.owner_id is None:
            continue
        link = _device_link(device)
        name = device.name or f"{device.manufacturer} {device.model}".strip()

        if device.on_network and _is_stale(device.last_seen, cutoff):
            created += _notify_once(
                store,
                Notification(
                    user_id=device.owner_id,
                    type="offline",
                    title="Device Offline",
                    message=f"Device {name} has not been seen for over {get_settings().offline_alert_hours} hours.",
                    link=link,
                    created_at=now.isoformat(),
                ),
            )

        if device.vulnerability_link_count > 0:
            created += _notify_once(
                store,
                Notification(
                    user_id=device.owner_id,
                    type="cve",
                    title="Vulnerabilities Detected",
                    message=f"Device {name} has {device.vulnerability_link_count} active vulnerabilities.",
                    link=link,
                    created_at=now.isoformat(),
                ),
            )

    logger.info("Alert sweep created %d notification(s)", created)
    return created


# ---------------------------------------------------------------------------
# User-facing notification operations
# ---------------------------------------------------------------------------


def list_notifications(store: CMDBStore, principal: Optional[Principal], limit: int = 50) -> list[Notification]:
    principal = require_principal(principal)
    return store.list_notifications(principal.id, limit)


def mark_as_read(store: CMDBStore, principal: Optional[Principal], notification_id: int) -> Notification:
    """Mark one of the principal's notifications read.

    Someone else's notification is reported as missing.
    """
    principal = require_principal(principal)
    notification = store.get_notification(notification_id)
    if notification is None or notification.user_id != principal.id:
        raise NotFoundError(f"notification {notification_id} not found")
    store.mark_notification_read(notification_id)
    notification.read = True
    return notification


def mark_all_as_read(store: CMDBStore, principal: Optional[Principal]) -> int:
    principal = require_principal(principal)
    return store.mark_all_notifications_read(principal.id)
