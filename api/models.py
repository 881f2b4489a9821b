"""
API request and response models for the CryptIoMT REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are kept
separate from the dataclasses in core/models.py and cmdb/models.py, which
own the internal domain representation; route handlers map between the two
with the from_domain() factories below.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cmdb.models import (
    Device,
    DeviceGroup,
    DeviceLog,
    LinkedVulnerability,
    Notification,
    ReportSchedule,
    RiskSnapshot,
)
from cmdb.risk import classify

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoleEnum(str, Enum):
    admin = "admin"
    analyst = "analyst"
    viewer = "viewer"


class LinkStatusEnum(str, Enum):
    active = "active"
    mitigated = "mitigated"
    patched = "patched"
    accepted = "accepted"


class FrequencyEnum(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"


class ReportTypeEnum(str, Enum):
    summary = "summary"
    risk_detail = "risk_detail"
    compliance = "compliance"


class OrganizationTypeEnum(str, Enum):
    hospital = "hospital"
    clinic = "clinic"
    healthcare_system = "healthcare_system"


class MemberRoleEnum(str, Enum):
    owner = "owner"
    admin = "admin"
    member = "member"


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class LoginResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    username: str
    role: str


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    username: str
    role: str
    display_name: Optional[str] = None


class SetupRequest(BaseModel):
    """First-run admin account. Only accepted while no users exist."""

    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=12, max_length=255)
    display_name: Optional[str] = Field(default=None, max_length=255)


class ApiKeyCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)


class ApiKeyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    key_prefix: str
    created_at: str
    last_used: Optional[str] = None


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Returned once at creation. key is the only copy of the raw key."""

    key: str


class UserCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=12, max_length=255)
    role: RoleEnum = RoleEnum.analyst
    display_name: Optional[str] = Field(default=None, max_length=255)


class UserPatch(BaseModel):
    role: Optional[RoleEnum] = None
    is_active: Optional[bool] = None
    display_name: Optional[str] = Field(default=None, max_length=255)


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: str
    display_name: Optional[str] = None
    is_active: bool
    created_at: str
    last_login: str = ""


# ---------------------------------------------------------------------------
# Organizations
# ---------------------------------------------------------------------------


class OrganizationCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    contact_email: str = Field(default="", max_length=255)
    type: OrganizationTypeEnum = OrganizationTypeEnum.hospital
    logo_url: Optional[str] = Field(default=None, max_length=1000)


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    contact_email: str
    type: str
    logo_url: Optional[str] = None
    is_active: bool
    created_at: str


class MemberCreate(BaseModel):
    user_id: int = Field(gt=0)
    member_role: MemberRoleEnum = MemberRoleEnum.member


class MemberResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: int
    organization_id: int
    member_role: str


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


class DeviceResponse(BaseModel):
    """A device plus its derived risk level."""

    model_config = ConfigDict(frozen=True)

    id: int
    organization_id: int
    name: str
    entity: str
    serial_number: str
    manufacturer: str
    model: str
    category: str
    classification: str
    technician: Optional[str] = None
    os_manufacturer: Optional[str] = None
    os_version: Optional[str] = None
    has_phi: bool
    phi_category: Optional[str] = None
    on_network: bool
    ip_address: Optional[str] = None
    mac_address: Optional[str] = None
    status: str
    owner_id: Optional[int] = None
    last_seen: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    vulnerability_link_count: int
    risk_level: str
    import_batch: Optional[str] = None
    updated_at: str = ""

    @classmethod
    def from_domain(cls, device: Device) -> "DeviceResponse":
        return cls(
            id=device.id,
            organization_id=device.organization_id,
            name=device.name,
            entity=device.entity,
            serial_number=device.serial_number,
            manufacturer=device.manufacturer,
            model=device.model,
            category=device.category,
            classification=device.classification,
            technician=device.technician,
            os_manufacturer=device.os_manufacturer,
            os_version=device.os_version,
            has_phi=device.has_phi,
            phi_category=device.phi_category,
            on_network=device.on_network,
            ip_address=device.ip_address,
            mac_address=device.mac_address,
            status=device.status,
            owner_id=device.owner_id,
            last_seen=device.last_seen,
            tags=list(device.tags),
            vulnerability_link_count=device.vulnerability_link_count,
            risk_level=classify(device),
            import_batch=device.import_batch,
            updated_at=device.updated_at,
        )


class DeviceUpdate(BaseModel):
    """Request body for PATCH /devices/{id}. Only fields that are sent are changed."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, max_length=255)
    entity: Optional[str] = Field(default=None, max_length=255)
    serial_number: Optional[str] = Field(default=None, max_length=255)
    category: Optional[str] = Field(default=None, max_length=255)
    classification: Optional[str] = Field(default=None, max_length=255)
    technician: Optional[str] = Field(default=None, max_length=255)
    os_manufacturer: Optional[str] = Field(default=None, max_length=255)
    os_version: Optional[str] = Field(default=None, max_length=255)
    has_phi: Optional[bool] = None
    phi_category: Optional[str] = Field(default=None, max_length=100)
    on_network: Optional[bool] = None
    ip_address: Optional[str] = Field(default=None, max_length=45)
    mac_address: Optional[str] = Field(default=None, max_length=32)
    owner_id: Optional[int] = Field(default=None, ge=1)
    last_seen: Optional[str] = Field(default=None, max_length=32)
    status: Optional[str] = Field(default=None, min_length=1, max_length=30)


class DeviceTagsUpdate(BaseModel):
    """Request body for PUT /devices/{id}/tags. Replaces the whole list."""

    tags: list[str] = Field(max_length=50)


class DeviceImportResponse(BaseModel):
    """Response for POST /organizations/{id}/devices/import.

    Matching for the new inventory runs in the background after the
    response is sent.
    """

    model_config = ConfigDict(frozen=True)

    imported: int
    removed: int
    batch: str
    errors: list[str] = Field(default_factory=list)


class DeviceLogResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    type: str
    timestamp: str
    previous_value: str
    new_value: str
    details: str

    @classmethod
    def from_domain(cls, log: DeviceLog) -> "DeviceLogResponse":
        return cls(
            id=log.id,
            type=log.type,
            timestamp=log.timestamp,
            previous_value=log.previous_value,
            new_value=log.new_value,
            details=log.details,
        )


# ---------------------------------------------------------------------------
# Vulnerabilities and links
# ---------------------------------------------------------------------------


class LinkResponse(BaseModel):
    """One vulnerability detected on a device."""

    model_config = ConfigDict(frozen=True)

    vulnerability_id: str
    display_id: str
    status: str
    detected_at: str
    mitigated_at: Optional[str] = None
    notes: Optional[str] = None
    description: str = ""
    severity: Optional[str] = None
    cvss_score: Optional[float] = None
    published_at: str = ""
    references: list[str] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, item: LinkedVulnerability) -> "LinkResponse":
        link = item.link
        return cls(
            vulnerability_id=link.vulnerability_id,
            display_id=link.display_id,
            status=link.status,
            detected_at=link.detected_at,
            mitigated_at=link.mitigated_at,
            notes=link.notes,
            description=item.description,
            severity=item.severity,
            cvss_score=item.cvss_score,
            published_at=item.published_at,
            references=item.references,
        )


class DeviceVulnerabilitiesResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    device: DeviceResponse
    vulnerabilities: list[LinkResponse]


class LinkStatusUpdate(BaseModel):
    """Request body for the PATCH .../vulnerabilities/{vulnerability_id}/status routes."""

    model_config = ConfigDict(str_strip_whitespace=True)

    status: LinkStatusEnum
    notes: Optional[str] = Field(default=None, max_length=2000)


class LinkStatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    vulnerability_id: str
    status: str
    updated: int
    mitigated_at: Optional[str] = None


class OrganizationVulnerabilityRow(BaseModel):
    """One vulnerability entry aggregated over an organization's devices."""

    model_config = ConfigDict(frozen=True)

    vulnerability_id: str
    display_id: str
    description: str
    severity: Optional[str] = None
    cvss_score: Optional[float] = None
    published_at: str = ""
    affected_devices: int
    status_counts: dict[str, int]
    first_detected: str
    last_detected: str


class VulnerabilityStatsResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    total: int
    by_severity: dict[str, int]


class SyncResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    imported: int
    days_back: int


class MatchResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    new_links_created: int
    devices_processed: int
    devices_skipped: int


# ---------------------------------------------------------------------------
# Report schedules
# ---------------------------------------------------------------------------


class ScheduleCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=255)
    frequency: FrequencyEnum
    recipients: list[str] = Field(min_length=1, max_length=50)
    report_type: ReportTypeEnum = ReportTypeEnum.summary

    @field_validator("recipients", mode="before")
    @classmethod
    def dedupe_recipients(cls, values: list) -> list[str]:
        """Strip and deduplicate addresses, preserving order."""
        seen: set[str] = set()
        result: list[str] = []
        for v in values:
            address = str(v).strip()
            if address and address.lower() not in seen:
                seen.add(address.lower())
                result.append(address)
        return result


class SchedulePatch(BaseModel):
    is_active: bool


class ScheduleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    organization_id: int
    name: str
    frequency: str
    recipients: list[str]
    report_type: str
    is_active: bool
    next_run_at: str
    last_run_at: Optional[str] = None
    created_at: str = ""

    @classmethod
    def from_domain(cls, schedule: ReportSchedule) -> "ScheduleResponse":
        return cls(
            id=schedule.id,
            organization_id=schedule.organization_id,
            name=schedule.name,
            frequency=schedule.frequency,
            recipients=schedule.recipients,
            report_type=schedule.report_type,
            is_active=schedule.is_active,
            next_run_at=schedule.next_run_at,
            last_run_at=schedule.last_run_at,
            created_at=schedule.created_at,
        )


class RunDueResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    processed: int
    skipped: list[int]


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    type: str
    title: str
    message: str
    read: bool
    link: Optional[str] = None
    created_at: str

    @classmethod
    def from_domain(cls, notification: Notification) -> "NotificationResponse":
        return cls(
            id=notification.id,
            type=notification.type,
            title=notification.title,
            message=notification.message,
            read=notification.read,
            link=notification.link,
            created_at=notification.created_at,
        )


class ReadAllResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    updated: int


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


class DashboardResponse(BaseModel):
    """Response for GET /organizations/{id}/dashboard."""

    model_config = ConfigDict(frozen=True)

    organization: dict
    devices: dict[str, int]
    risk: dict
    links: dict
    alerts: dict


class RiskSnapshotResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    snapshot_date: str
    timestamp: str
    total_risk_score: int
    avg_risk_score: int
    device_count: int
    high_risk_count: int
    critical_risk_count: int
    devices_with_vulnerabilities: int

    @classmethod
    def from_domain(cls, snapshot: RiskSnapshot) -> "RiskSnapshotResponse":
        return cls(
            snapshot_date=snapshot.snapshot_date,
            timestamp=snapshot.timestamp,
            total_risk_score=snapshot.total_risk_score,
            avg_risk_score=snapshot.avg_risk_score,
            device_count=snapshot.device_count,
            high_risk_count=snapshot.high_risk_count,
            critical_risk_count=snapshot.critical_risk_count,
            devices_with_vulnerabilities=snapshot.devices_with_vulnerabilities,
        )


# ---------------------------------------------------------------------------
# Device groups
# ---------------------------------------------------------------------------


class PhiFilterEnum(str, Enum):
    yes = "yes"
    no = "no"


class NetworkFilterEnum(str, Enum):
    connected = "connected"
    offline = "offline"


class GroupFilters(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tags: list[str] = Field(default_factory=list, max_length=20)
    category: Optional[str] = None
    manufacturer: Optional[str] = None
    classification: Optional[str] = None
    status: Optional[str] = None
    has_phi: Optional[PhiFilterEnum] = None
    network: Optional[NetworkFilterEnum] = None
    search: Optional[str] = Field(default=None, max_length=100)


class GroupCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    filters: GroupFilters = Field(default_factory=GroupFilters)
    is_smart_group: bool = True


class GroupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    organization_id: int
    name: str
    description: Optional[str] = None
    filters: dict
    is_smart_group: bool
    created_by: Optional[int] = None
    created_at: str

    @classmethod
    def from_domain(cls, group: DeviceGroup) -> "GroupResponse":
        return cls(
            id=group.id,
            organization_id=group.organization_id,
            name=group.name,
            description=group.description,
            filters=group.filters,
            is_smart_group=group.is_smart_group,
            created_by=group.created_by,
            created_at=group.created_at,
        )


class GroupRiskSummaryResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_count: int
    avg_risk_score: int
    critical_count: int
    high_count: int


# ---------------------------------------------------------------------------
# Compliance
# ---------------------------------------------------------------------------


class ComplianceStatusEnum(str, Enum):
    not_started = "not_started"
    in_progress = "in_progress"
    compliant = "compliant"
    non_compliant = "non_compliant"
    not_applicable = "not_applicable"


class ComplianceUpdate(BaseModel):
    control_id: str = Field(min_length=1, max_length=50)
    status: ComplianceStatusEnum
    evidence: Optional[str] = Field(default=None, max_length=2000)


class ComplianceControlResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str
    category: str
    status: str
    evidence: str = ""
    last_updated: Optional[str] = None
    updated_by: Optional[int] = None


class ComplianceStatusResponse(BaseModel):
    """Response for GET/PUT /organizations/{id}/compliance."""

    model_config = ConfigDict(frozen=True)

    framework_id: str
    score: int
    controls: list[ComplianceControlResponse]
