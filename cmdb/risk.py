"""
cmdb/risk.py -- Heuristic device risk classification and risk aggregates.

The classifier is an illustrative keyword heuristic, not a certified risk
methodology. It exists to rank devices for attention, and its output is
computed on read, never stored.

Classification is an ordered rule table: the first rule whose predicate
holds decides the level, and every device falls through to "low". New rules
are added to RISK_RULES, not as inline conditionals.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Optional

from cmdb.access import require_org_access
from cmdb.models import Device, Principal, RiskSnapshot
from cmdb.store import CMDBStore
from core.config import now_utc

logger = logging.getLogger("cryptiomt.risk")

RISK_LEVELS = ("critical", "high", "medium", "low")

# End-of-life operating system markers, matched as case-folded substrings
# of the device's OS version label.
LEGACY_OS_KEYWORDS = ("xp", "2000", "vista")

CRITICAL_PHI_MARKER = "critical"
HIGH_PHI_MARKER = "high"


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def is_legacy_os(device: Device) -> bool:
    label = (device.os_version or "").casefold()
    return any(keyword in label for keyword in LEGACY_OS_KEYWORDS)


def is_critical_phi(device: Device) -> bool:
    return device.has_phi and CRITICAL_PHI_MARKER in (device.phi_category or "").casefold()


def is_high_phi(device: Device) -> bool:
    return device.has_phi and not is_critical_phi(device) and HIGH_PHI_MARKER in (device.phi_category or "").casefold()


def is_network_exposed_phi(device: Device) -> bool:
    return device.on_network and device.has_phi


def is_networked_unknown_os(device: Device) -> bool:
    return device.on_network and not (device.os_version or "").strip()


RiskRule = tuple[str, Callable[[Device], bool]]

RISK_RULES: list[RiskRule] = [
    ("critical", is_legacy_os),
    ("critical", is_critical_phi),
    ("critical", is_network_exposed_phi),
    ("high", is_high_phi),
    ("high", is_networked_unknown_os),
    ("medium", lambda d: d.has_phi),
    ("medium", lambda d: d.on_network),
]


def classify(device: Device, rules: Optional[list[RiskRule]] = None) -> str:
    """Return the device's risk level: critical, high, medium or low."""
    for level, predicate in rules if rules is not None else RISK_RULES:
        if predicate(device):
            return level
    return "low"


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

_LEVEL_WEIGHTS = {"critical": 4, "high": 3, "medium": 2, "low": 1}


def _empty_counts() -> dict[str, int]:
    return {level: 0 for level in RISK_LEVELS}


def weighted_risk_score(counts: dict[str, int]) -> int:
    """0-100 score: mean level weight (low=1 .. critical=4) scaled by 25."""
    total = sum(counts.values())
    if total == 0:
        return 0
    weighted = sum(_LEVEL_WEIGHTS[level] * n for level, n in counts.items())
    return round(weighted / total * 25)


def risk_summary(devices: list[Device]) -> dict:
    """Per-level counts overall and per entity (hospital / site).

    Returns:
        {
          "total": int,
          "counts": {"critical", "high", "medium", "low"},
          "risk_score": int,
          "entities": [{"entity", "total", "counts", "risk_score"}, ...]
        }
        entities are sorted by risk_score descending, then name.
    """
    overall = _empty_counts()
    by_entity: dict[str, dict[str, int]] = {}
    for device in devices:
        level = classify(device)
        overall[level] += 1
        by_entity.setdefault(device.entity or "Unassigned", _empty_counts())[level] += 1

    entities = [
        {
            "entity": name,
            "total": sum(counts.values()),
            "counts": counts,
            "risk_score": weighted_risk_score(counts),
        }
        for name, counts in by_entity.items()
    ]
    entities.sort(key=lambda e: (-e["risk_score"], e["entity"]))
    return {
        "total": len(devices),
        "counts": overall,
        "risk_score": weighted_risk_score(overall),
        "entities": entities,
    }


def device_risk_score(device: Device) -> int:
    """Numeric 0-100 score used for daily risk trend snapshots.

    Base 90 for a critical device category or legacy OS, 70 for a high
    category, otherwise 10; plus 5 per linked vulnerability up to 20.
    """
    category = (device.category or "").casefold()
    if "critical" in category or is_legacy_os(device):
        base = 90
    elif "high" in category:
        base = 70
    else:
        base = 10
    return min(100, base + min(20, device.vulnerability_link_count * 5))


def build_snapshot(org_id: int, devices: list[Device], now: datetime) -> RiskSnapshot:
    scores = [device_risk_score(d) for d in devices]
    total = sum(scores)
    return RiskSnapshot(
        organization_id=org_id,
        snapshot_date=now.date().isoformat(),
        timestamp=now.isoformat(),
        total_risk_score=total,
        avg_risk_score=round(total / len(scores)) if scores else 0,
        device_count=len(devices),
        high_risk_count=sum(1 for s in scores if s >= 70),
        critical_risk_count=sum(1 for s in scores if s >= 90),
        devices_with_vulnerabilities=sum(1 for d in devices if d.vulnerability_link_count > 0),
    )


def capture_risk_snapshots(store: CMDBStore, now: Optional[datetime] = None) -> int:
    """Write today's snapshot for every organization that has devices.

    Re-running on the same day overwrites that day's snapshot. Returns the
    number of snapshots written.
    """
    now = now or now_utc()
    written = 0
    for org in store.list_organizations():
        devices = store.list_devices(org.id)
        if not devices:
            continue
        store.upsert_risk_snapshot(build_snapshot(org.id, devices, now))
        written += 1
    logger.info("Captured %d risk snapshot(s) for %s", written, now.date().isoformat())
    return written


def risk_history(
    store: CMDBStore,
    principal: Optional[Principal],
    org_id: int,
    days: int = 30,
    now: Optional[datetime] = None,
) -> list[RiskSnapshot]:
    require_org_access(store, principal, org_id)
    since = ((now or now_utc()) - timedelta(days=days)).date().isoformat()
    return store.list_risk_snapshots(org_id, since)
