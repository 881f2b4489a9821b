"""
cmdb/sync.py -- Vulnerability import and device matching.

Pipeline:
  fetch_nvd_window() -> normalize_nvd_item() -> CMDBStore.upsert_vulnerabilities()
  -> match_all() per organization -> vulnerability_links + device counters

The matcher is the single writer of Device.vulnerability_link_count. It is
safe to re-run at any time: links are checked before insert and the
(device_id, vulnerability_id) unique constraint absorbs concurrent duplicates.
Neither step retries on failure; that is the caller's (cron runner's) call.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError

from cmdb.access import require_org_access, require_principal
from cmdb.errors import InvalidInputError, NotFoundError
from cmdb.models import LINK_STATUSES, LinkedVulnerability, Principal, VulnerabilityLink
from cmdb.store import CMDBStore
from core.config import get_settings, now_iso, now_utc
from core.fetcher import fetch_nvd_window
from core.matcher import device_matches
from core.models import SEVERITY_RANK, VulnerabilityEntry
from core.normalizer import normalize_nvd_item

logger = logging.getLogger("cryptiomt.sync")

FetchFn = Callable[[datetime, datetime], list[dict[str, Any]]]


@dataclass
class ImportResult:
    imported: int


@dataclass
class MatchResult:
    new_links_created: int
    devices_processed: int = 0
    devices_skipped: int = 0


# ---------------------------------------------------------------------------
# Importer
# ---------------------------------------------------------------------------


def _chunks(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _run_follow_up(callback: Callable[[], Any]) -> None:
    """Run a follow-up step whose failure must not fail the import."""
    try:
        callback()
    except Exception:
        logger.exception("Post-import follow-up failed")


def import_vulnerabilities(
    store: CMDBStore,
    window_start: datetime,
    window_end: datetime,
    *,
    fetch: Optional[FetchFn] = None,
    batch_size: Optional[int] = None,
    on_complete: Optional[Callable[[], Any]] = None,
) -> ImportResult:
    """Fetch, normalize and upsert every entry published in the window.

    A feed failure (FeedError) or an unparseable item (ValueError) aborts
    before anything is written. A store failure part-way through leaves the
    batches already written committed. on_complete runs after the last batch;
    its errors are logged and swallowed here so the import still reports
    success.
    """
    fetch = fetch or fetch_nvd_window
    size = batch_size if batch_size is not None else get_settings().import_batch_size
    if size < 1:
        raise ValueError("batch_size must be at least 1")

    raw_items = fetch(window_start, window_end)
    entries = [normalize_nvd_item(item) for item in raw_items]

    imported = 0
    for batch in _chunks(entries, size):
        imported += store.upsert_vulnerabilities(batch)
        logger.debug("Upserted batch of %d (%d/%d)", len(batch), imported, len(entries))

    logger.info("Imported %d vulnerability entries", imported)
    if on_complete is not None:
        _run_follow_up(on_complete)
    return ImportResult(imported=imported)


def sync_recent(
    store: CMDBStore,
    days_back: Optional[int] = None,
    now: Optional[datetime] = None,
    fetch: Optional[FetchFn] = None,
) -> ImportResult:
    """Import the last ``days_back`` days, then re-match every organization.

    The daily job passes settings.daily_sync_days_back; manual runs default
    to settings.manual_sync_days_back.
    """
    settings = get_settings()
    days = days_back if days_back is not None else settings.manual_sync_days_back
    if days < 1:
        raise ValueError("days_back must be at least 1")
    end = now or now_utc()
    start = end - timedelta(days=days)
    logger.info("Syncing vulnerabilities published in the last %d day(s)", days)
    return import_vulnerabilities(
        store,
        start,
        end,
        fetch=fetch,
        on_complete=lambda: match_all_organizations(store),
    )


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------


def match_all(store: CMDBStore, org_id: int) -> MatchResult:
    """Link every device in an organization to the entries it matches.

    Devices with an empty manufacturer or model are not matched, but their
    counter is still reconciled with their existing links. The counter is
    written (with a history entry) only when it changes.
    """
    if store.get_organization(org_id) is None:
        raise NotFoundError(f"organization {org_id} not found")

    devices = store.list_devices(org_id)
    entries = store.list_vulnerabilities()
    result = MatchResult(new_links_created=0)

    for device in devices:
        if device.manufacturer and device.model:
            result.devices_processed += 1
            for entry in entries:
                if device_matches(device.manufacturer, device.model, entry):
                    if _link_if_absent(store, device.id, org_id, entry):
                        result.new_links_created += 1
        else:
            result.devices_skipped += 1

        count = store.count_links(device.id)
        if count != device.vulnerability_link_count:
            store.set_link_count(
                device.id,
                device.vulnerability_link_count,
                count,
                f"Vulnerability count changed from {device.vulnerability_link_count} to {count}",
            )

    logger.info(
        "Matched org %d: %d device(s), %d skipped, %d new link(s)",
        org_id,
        result.devices_processed,
        result.devices_skipped,
        result.new_links_created,
    )
    return result


def _link_if_absent(store: CMDBStore, device_id: int, org_id: int, entry: VulnerabilityEntry) -> bool:
    if store.get_link(device_id, entry.id) is not None:
        return False
    try:
        store.create_link(
            VulnerabilityLink(
                device_id=device_id,
                vulnerability_id=entry.id,
                organization_id=org_id,
                display_id=entry.id,
                status="active",
                detected_at=now_iso(),
            )
        )
    except IntegrityError:
        # A concurrent run inserted the same pair first.
        return False
    return True


def match_all_organizations(store: CMDBStore) -> int:
    """Run the matcher for every organization. Returns total new links."""
    total = 0
    for org in store.list_organizations():
        total += match_all(store, org.id).new_links_created
    return total


def run_match(store: CMDBStore, principal: Optional[Principal], org_id: int) -> MatchResult:
    """User-triggered match_all(); needs write access to the organization."""
    require_org_access(store, principal, org_id, write=True)
    return match_all(store, org_id)


# ---------------------------------------------------------------------------
# Link reads and user status changes
# ---------------------------------------------------------------------------


def _severity_key(item: LinkedVulnerability):
    return (SEVERITY_RANK.get(item.severity, len(SEVERITY_RANK)), -(item.cvss_score or 0.0), item.link.display_id)


def get_device_vulnerabilities(store: CMDBStore, principal: Optional[Principal], device_id: int):
    """Return (device, links) with links sorted CRITICAL first, unknown last."""
    # Authenticate before revealing whether the device exists.
    require_principal(principal)
    device = store.get_device(device_id)
    if device is None:
        raise NotFoundError(f"device {device_id} not found")
    require_org_access(store, principal, device.organization_id)
    links = sorted(store.list_device_links(device_id), key=_severity_key)
    return device, links


def get_organization_vulnerabilities(
    store: CMDBStore, principal: Optional[Principal], org_id: int
) -> list[dict[str, Any]]:
    """Aggregate an organization's links per vulnerability entry.

    Each item carries the entry fields, affected_devices, a count per link
    status, and first/last detection times. Sorted by severity then score.
    """
    require_org_access(store, principal, org_id)
    grouped: dict[str, dict[str, Any]] = {}
    for item in store.list_organization_links(org_id):
        link = item.link
        agg = grouped.get(link.vulnerability_id)
        if agg is None:
            agg = {
                "vulnerability_id": link.vulnerability_id,
                "display_id": link.display_id,
                "description": item.description,
                "severity": item.severity,
                "cvss_score": item.cvss_score,
                "published_at": item.published_at,
                "affected_devices": 0,
                "status_counts": {s: 0 for s in LINK_STATUSES},
                "first_detected": link.detected_at,
                "last_detected": link.detected_at,
            }
            grouped[link.vulnerability_id] = agg
        agg["affected_devices"] += 1
        agg["status_counts"][link.status] = agg["status_counts"].get(link.status, 0) + 1
        agg["first_detected"] = min(agg["first_detected"], link.detected_at)
        agg["last_detected"] = max(agg["last_detected"], link.detected_at)

    return sorted(
        grouped.values(),
        key=lambda a: (SEVERITY_RANK.get(a["severity"], len(SEVERITY_RANK)), -(a["cvss_score"] or 0.0), a["display_id"]),
    )


def _validate_status(status: str) -> None:
    if status not in LINK_STATUSES:
        raise InvalidInputError(f"status must be one of {', '.join(LINK_STATUSES)}")


def update_link_status(
    store: CMDBStore,
    principal: Optional[Principal],
    device_id: int,
    vuln_id: str,
    status: str,
    notes: Optional[str] = None,
) -> VulnerabilityLink:
    """Set the status of one device's link. mitigated and patched stamp mitigated_at."""

    require_principal(principal)
    _validate_status(status)
    device = store.get_device(device_id)
    if device is None:
        raise NotFoundError(f"device {device_id} not found")
    require_org_access(store, principal, device.organization_id, write=True)

    mitigated_at = now_iso() if status in ("mitigated", "patched") else None
    if not store.update_link_status(device_id, vuln_id, status, notes, mitigated_at):
        raise NotFoundError(f"{vuln_id} is not linked to device {device_id}")
    logger.info("Link %s on device %d set to %s by user %s", vuln_id, device_id, status, principal.id)
    return store.get_link(device_id, vuln_id)


def bulk_update_link_status(
    store: CMDBStore,
    principal: Optional[Principal],
    org_id: int,
    vuln_id: str,
    status: str,
    notes: Optional[str] = None,
) -> int:
    """Set the status of every link to vuln_id within an organization.

    Raises NotFoundError when the organization has no such link. Returns the
    number of links updated.
    """

    require_principal(principal)
    _validate_status(status)
    require_org_access(store, principal, org_id, write=True)

    links = store.list_links_for_vulnerability(org_id, vuln_id)
    if not links:
        raise NotFoundError(f"{vuln_id} is not linked to any device in organization {org_id}")
    mitigated_at = now_iso() if status in ("mitigated", "patched") else None
    updated = 0
    for link in links:
        if store.update_link_status(link.device_id, vuln_id, status, notes, mitigated_at):
            updated += 1
    logger.info("Bulk set %s to %s on %d device(s) in org %d", vuln_id, status, updated, org_id)
    return updated


# ---------------------------------------------------------------------------
# Demo data
# ---------------------------------------------------------------------------

_DEMO_ENTRIES = [
    VulnerabilityEntry(
        id="CVE-2023-30561",
        description="Improper access control in GE Healthcare Centricity Clinical Archive allows information disclosure.",
        published_at="2023-07-13T20:15:09.000",
        last_modified_at="2023-07-20T16:42:11.000",
        cvss_score=7.5,
        severity="HIGH",
        vendors=["ge_healthcare", "ge"],
        products=["centricity"],
        references=["https://www.cisa.gov/news-events/ics-medical-advisories"],
    ),
    VulnerabilityEntry(
        id="CVE-2022-29968",
        description="Philips IntelliVue patient monitors accept unauthenticated network connections.",
        published_at="2022-05-03T12:15:08.000",
        last_modified_at="2022-05-11T14:03:21.000",
        cvss_score=9.1,
        severity="CRITICAL",
        vendors=["philips"],
        products=["intellivue"],
        references=["https://www.philips.com/a-w/security/security-advisories.html"],
    ),
    VulnerabilityEntry(
        id="CVE-2021-27495",
        description="Siemens syngo imaging workstation exposes a vulnerable remote management service.",
        published_at="2021-04-13T07:15:13.000",
        last_modified_at="2021-04-22T19:08:44.000",
        cvss_score=6.5,
        severity="MEDIUM",
        vendors=["siemens"],
        products=["syngo"],
        references=["https://cert-portal.siemens.com/productcert/"],
    ),
    VulnerabilityEntry(
        id="CVE-2019-0708",
        description="Remote Desktop Services remote code execution (BlueKeep) in legacy Windows releases.",
        published_at="2019-05-16T19:29:00.000",
        last_modified_at="2021-06-03T18:15:08.000",
        cvss_score=9.8,
        severity="CRITICAL",
        vendors=["microsoft"],
        products=["windows_xp", "windows_7", "windows_server_2008"],
        references=["https://portal.msrc.microsoft.com/en-US/security-guidance/advisory/CVE-2019-0708"],
    ),
]


def seed_demo_vulnerabilities(store: CMDBStore) -> ImportResult:
    """Load a fixed set of illustrative entries and re-match all organizations.

    For demo environments without feed access. Never called as a fallback
    for a failed feed fetch.
    """
    imported = store.upsert_vulnerabilities(list(_DEMO_ENTRIES))
    match_all_organizations(store)
    logger.info("Seeded %d demo vulnerability entries", imported)
    return ImportResult(imported=imported)
