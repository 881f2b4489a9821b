"""
cmdb/models.py -- Domain dataclasses for the CryptIoMT device registry.

These are pure data containers with zero logic. Matching lives in
cmdb/sync.py, risk classification in cmdb/risk.py, scheduling in
cmdb/reports.py, and persistence in cmdb/store.py.

Separation of concerns: these dataclasses are the registry's domain truth,
just as core/models.py is the vulnerability feed's domain truth.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol

LINK_STATUSES = ("active", "mitigated", "patched", "accepted")
FREQUENCIES = ("daily", "weekly", "monthly")
REPORT_TYPES = ("summary", "risk_detail", "compliance")
NOTIFICATION_TYPES = ("cve", "risk", "offline", "info")
COMPLIANCE_STATUSES = ("not_started", "in_progress", "compliant", "non_compliant", "not_applicable")


class Principal(Protocol):
    """The authenticated caller passed into every mutating operation.

    auth.models.User satisfies this structurally; cmdb/ never imports auth/.
    """

    id: int
    role: str


@dataclass
class Organization:
    name: str
    contact_email: str = ""
    type: str = "hospital"  # "hospital" | "clinic" | "healthcare_system"
    logo_url: Optional[str] = None
    is_active: bool = True
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class Membership:
    user_id: int
    organization_id: int
    member_role: str = "member"  # "owner" | "admin" | "member"
    id: Optional[int] = None


@dataclass
class Device:
    """A medical device in an organization's inventory.

    vulnerability_link_count is a cache of the number of links for this
    device. Only the matcher writes it; every other path treats it as
    read-only.

    id is None before the record is written to the database.
    """

    organization_id: int
    manufacturer: str
    model: str
    name: str = ""
    entity: str = ""  # hospital / site the device belongs to
    serial_number: str = ""
    category: str = ""
    classification: str = ""
    technician: Optional[str] = None
    os_manufacturer: Optional[str] = None
    os_version: Optional[str] = None
    has_phi: bool = False
    phi_category: Optional[str] = None
    on_network: bool = False
    ip_address: Optional[str] = None
    mac_address: Optional[str] = None
    owner_id: Optional[int] = None
    last_seen: Optional[str] = None  # ISO 8601
    status: str = "active"
    vulnerability_link_count: int = 0
    import_batch: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""


@dataclass
class VulnerabilityLink:
    """A vulnerability entry detected on a device.

    display_id copies the entry's identifier at link time. At most one link
    exists per (device_id, vulnerability_id).
    """

    device_id: int
    vulnerability_id: str
    organization_id: int
    display_id: str = ""
    status: str = "active"  # one of LINK_STATUSES
    detected_at: str = ""
    mitigated_at: Optional[str] = None
    notes: Optional[str] = None
    id: Optional[int] = None


@dataclass
class DeviceLog:
    """Append-only history entry for a device. Never updated or deleted
    except together with its device."""

    device_id: int
    type: str  # "cve_match" | "status_change"
    timestamp: str
    previous_value: str = ""
    new_value: str = ""
    details: str = ""
    id: Optional[int] = None


@dataclass
class ReportSchedule:
    organization_id: int
    name: str
    frequency: str  # one of FREQUENCIES
    recipients: list[str]
    report_type: str  # one of REPORT_TYPES
    next_run_at: str  # ISO 8601
    is_active: bool = True
    last_run_at: Optional[str] = None
    created_by: Optional[int] = None
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class Notification:
    user_id: int
    type: str  # one of NOTIFICATION_TYPES
    title: str
    message: str
    read: bool = False
    link: Optional[str] = None
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class RiskSnapshot:
    organization_id: int
    snapshot_date: str  # YYYY-MM-DD
    timestamp: str
    total_risk_score: int = 0
    avg_risk_score: int = 0
    device_count: int = 0
    high_risk_count: int = 0
    critical_risk_count: int = 0
    devices_with_vulnerabilities: int = 0
    id: Optional[int] = None


@dataclass
class LinkedVulnerability:
    """Read model: a link joined with its vulnerability entry."""

    link: VulnerabilityLink
    description: str = ""
    severity: Optional[str] = None
    cvss_score: Optional[float] = None
    published_at: str = ""
    references: list[str] = field(default_factory=list)


@dataclass
class DeviceGroup:
    """A saved device filter within an organization.

    filters keys: tags (all must be present), category, manufacturer,
    classification, status, has_phi ("yes" | "no"), network
    ("connected" | "offline") and search (substring of name, manufacturer,
    model or serial number).
    """

    organization_id: int
    name: str
    filters: dict = field(default_factory=dict)
    description: Optional[str] = None
    is_smart_group: bool = True
    created_by: Optional[int] = None
    id: Optional[int] = None
    created_at: str = ""


@dataclass
class ComplianceAssessment:
    """An organization's recorded status for one control of a framework."""

    organization_id: int
    framework_id: str  # "hipaa"
    control_id: str  # e.g. "164.312(b)"
    status: str  # one of COMPLIANCE_STATUSES
    evidence: Optional[str] = None
    updated_by: Optional[int] = None
    last_updated: str = ""
    id: Optional[int] = None
