"""
normalizer.py -- Turns raw NVD feed items into VulnerabilityEntry records.

The feed nests everything the matcher needs inside CPE match strings
(``cpe:2.3:part:vendor:product:version:...``). Vendors and products are
accumulated across every configuration node of an entry. A malformed CPE
string only drops that one identifier; the rest of the entry still imports.
"""

import logging
from typing import Any, Optional

from .models import SEVERITIES, VulnerabilityEntry

logger = logging.getLogger("cryptiomt.normalizer")

_MIN_CPE_PARTS = 5


def parse_cpe(identifier: str) -> Optional[tuple[str, str]]:
    """Return (vendor, product) from a CPE identifier, or None if malformed.

    >>> parse_cpe("cpe:2.3:a:acme:scanner-9000:3.1:*:*:*:*:*:*:*")
    ('acme', 'scanner-9000')
    """
    parts = (identifier or "").split(":")
    if len(parts) < _MIN_CPE_PARTS:
        return None
    vendor, product = parts[3].strip().lower(), parts[4].strip().lower()
    if not vendor or not product:
        return None
    return vendor, product


def extract_vendors_products(cve: dict[str, Any]) -> tuple[list[str], list[str]]:
    """Collect unique vendors and products across all configuration nodes.

    Order is first-seen, so re-normalizing the same record is stable.
    """
    vendors: list[str] = []
    products: list[str] = []
    for config in cve.get("configurations", []) or []:
        for node in config.get("nodes", []) or []:
            for match in node.get("cpeMatch", []) or []:
                criteria = match.get("criteria", "")
                parsed = parse_cpe(criteria)
                if parsed is None:
                    logger.debug("Skipping malformed CPE %r in %s", criteria, cve.get("id"))
                    continue
                vendor, product = parsed
                if vendor not in vendors:
                    vendors.append(vendor)
                if product not in products:
                    products.append(product)
    return vendors, products


def _extract_cvss(cve: dict[str, Any]) -> tuple[Optional[float], Optional[str]]:
    metrics = cve.get("metrics", {}) or {}
    for key in ("cvssMetricV31", "cvssMetricV30", "cvssMetricV2"):
        if metrics.get(key):
            entry = metrics[key][0]
            cvss_data = entry.get("cvssData", {})
            score = cvss_data.get("baseScore")
            severity = (cvss_data.get("baseSeverity") or entry.get("baseSeverity") or "").upper()
            return (
                float(score) if score is not None else None,
                severity if severity in SEVERITIES else None,
            )
    return None, None


def normalize_nvd_item(item: dict[str, Any]) -> VulnerabilityEntry:
    """Convert one ``vulnerabilities[]`` item from the NVD 2.0 API.

    Accepts either the wrapper ``{"cve": {...}}`` or the bare cve object.
    Raises ValueError when the item carries no identifier: an entry that
    cannot be keyed cannot be upserted.
    """
    cve = item.get("cve", item)
    cve_id = cve.get("id")
    if not cve_id:
        raise ValueError("feed item has no cve.id")

    descriptions = cve.get("descriptions") or []
    description = descriptions[0].get("value") if descriptions else None

    score, severity = _extract_cvss(cve)
    vendors, products = extract_vendors_products(cve)
    references = [r["url"] for r in cve.get("references", []) or [] if r.get("url")]

    return VulnerabilityEntry(
        id=cve_id,
        description=description or "No description",
        published_at=cve.get("published", ""),
        last_modified_at=cve.get("lastModified", ""),
        cvss_score=score,
        severity=severity,
        vendors=vendors,
        products=products,
        references=references,
    )
