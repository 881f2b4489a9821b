from dataclasses import dataclass, field
from typing import Optional

# ---------------------------------------------------------------------------
# Domain constants
# ---------------------------------------------------------------------------

# Canonical CVE ID format. A domain rule -- not an API contract.
CVE_PATTERN = r"^CVE-\d{4}-\d{4,}$"

SEVERITIES = ("CRITICAL", "HIGH", "MEDIUM", "LOW")

# Lower rank sorts first. Entries without a severity sort last.
SEVERITY_RANK: dict[Optional[str], int] = {
    "CRITICAL": 0,
    "HIGH": 1,
    "MEDIUM": 2,
    "LOW": 3,
    None: 4,
}


@dataclass
class VulnerabilityEntry:
    """One normalized record from the public vulnerability feed.

    vendors and products are the lowercase names extracted from the
    entry's CPE configuration nodes. They drive device matching.
    """

    id: str
    description: str
    published_at: str
    last_modified_at: str
    cvss_score: Optional[float] = None
    severity: Optional[str] = None  # CRITICAL | HIGH | MEDIUM | LOW
    vendors: list[str] = field(default_factory=list)
    products: list[str] = field(default_factory=list)
    references: list[str] = field(default_factory=list)
