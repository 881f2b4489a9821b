"""
cmdb/store.py -- SQLAlchemy-backed persistence layer for the CryptIoMT registry.

Uses SQLAlchemy Core (not ORM) so the domain dataclasses in cmdb/models.py
remain the authoritative domain representation. Swapping SQLite for
PostgreSQL is a connection string change, not a rewrite.

Pattern: Repository + Data Mapper. CMDBStore is the repository (one clean
interface per entity). The _row_to_* functions are the mappers (they translate
raw DB rows into domain dataclasses). Route handlers never touch SQL directly.

Transactions: every public method is its own transaction. Multi-step
workflows (the importer, the matcher) call several methods in sequence and
accept that earlier steps stay committed if a later one fails.

Security: all queries use bound parameters. No f-strings in SQL.

Usage:
    store = CMDBStore()                                # SQLite default
    store = CMDBStore("postgresql://user:pw@host/db")  # PostgreSQL
    org_id = store.create_organization(Organization(name="St. Mary"))
    store.upsert_vulnerabilities(entries)
    devices = store.list_devices(org_id)
    store.close()
"""

import json
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine

from cmdb.models import (
    ComplianceAssessment,
    Device,
    DeviceGroup,
    DeviceLog,
    LinkedVulnerability,
    Membership,
    Notification,
    Organization,
    ReportSchedule,
    RiskSnapshot,
    VulnerabilityLink,
)
from core.config import get_settings, now_iso
from core.models import VulnerabilityEntry

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_organizations = Table(
    "organizations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(255), nullable=False),
    Column("contact_email", String(255), nullable=False, server_default=""),
    Column("type", String(50), nullable=False, server_default="hospital"),
    Column("logo_url", Text),
    Column("is_active", Integer, nullable=False, server_default="1"),  # boolean stored as 0/1
    Column("created_at", String(32), nullable=False),
    sqlite_autoincrement=True,
)

_memberships = Table(
    "memberships",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("organization_id", Integer, nullable=False),
    Column("member_role", String(20), nullable=False, server_default="member"),
    UniqueConstraint("user_id", "organization_id", name="uq_member_org"),
    sqlite_autoincrement=True,
)

_vulnerabilities = Table(
    "vulnerabilities",
    metadata,
    Column("id", String(30), primary_key=True),
    Column("description", Text, nullable=False),
    Column("published_at", String(32), nullable=False, server_default=""),
    Column("last_modified_at", String(32), nullable=False, server_default=""),
    Column("cvss_score", Float),
    Column("severity", String(10)),
    Column("vendors", Text),  # JSON array serialized as text
    Column("products", Text),  # JSON array
    Column("reference_urls", Text),  # JSON array
    Column("updated_at", String(32), nullable=False),
)

_devices = Table(
    "devices",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False, server_default=""),
    Column("entity", String(255), nullable=False, server_default=""),
    Column("serial_number", String(255), nullable=False, server_default=""),
    Column("manufacturer", String(255), nullable=False, server_default=""),
    Column("model", String(255), nullable=False, server_default=""),
    Column("category", String(255), nullable=False, server_default=""),
    Column("classification", String(255), nullable=False, server_default=""),
    Column("technician", String(255)),
    Column("os_manufacturer", String(255)),
    Column("os_version", String(255)),
    Column("has_phi", Integer, nullable=False, server_default="0"),
    Column("phi_category", String(100)),
    Column("on_network", Integer, nullable=False, server_default="0"),
    Column("ip_address", String(45)),
    Column("mac_address", String(32)),
    Column("owner_id", Integer),
    Column("last_seen", String(32)),
    Column("status", String(30), nullable=False, server_default="active"),
    Column("vulnerability_link_count", Integer, nullable=False, server_default="0"),
    Column("import_batch", String(64)),
    Column("tags", Text),  # JSON array
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    sqlite_autoincrement=True,
)

_links = Table(
    "vulnerability_links",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("device_id", Integer, nullable=False, index=True),
    Column("vulnerability_id", String(30), nullable=False),
    Column("organization_id", Integer, nullable=False, index=True),
    Column("display_id", String(30), nullable=False),
    Column("status", String(20), nullable=False, server_default="active"),
    Column("detected_at", String(32), nullable=False),
    Column("mitigated_at", String(32)),
    Column("notes", Text),
    UniqueConstraint("device_id", "vulnerability_id", name="uq_device_vulnerability"),
    sqlite_autoincrement=True,
)

_device_logs = Table(
    "device_logs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("device_id", Integer, nullable=False, index=True),
    Column("timestamp", String(32), nullable=False),
    Column("type", String(30), nullable=False),
    Column("previous_value", Text),
    Column("new_value", Text),
    Column("details", Text),
    sqlite_autoincrement=True,
)

_schedules = Table(
    "report_schedules",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("frequency", String(10), nullable=False),
    Column("recipients", Text, nullable=False),  # JSON array
    Column("report_type", String(20), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_run_at", String(32)),
    Column("next_run_at", String(32), nullable=False),
    Column("created_by", Integer),
    Column("created_at", String(32), nullable=False),
    sqlite_autoincrement=True,
)

_notifications = Table(
    "notifications",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("type", String(10), nullable=False),
    Column("title", String(255), nullable=False),
    Column("message", Text, nullable=False),
    Column("read", Integer, nullable=False, server_default="0"),
    Column("link", Text),
    Column("created_at", String(32), nullable=False),
    sqlite_autoincrement=True,
)

_snapshots = Table(
    "risk_snapshots",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, nullable=False),
    Column("snapshot_date", String(10), nullable=False),  # YYYY-MM-DD
    Column("timestamp", String(32), nullable=False),
    Column("total_risk_score", Integer, nullable=False, server_default="0"),
    Column("avg_risk_score", Integer, nullable=False, server_default="0"),
    Column("device_count", Integer, nullable=False, server_default="0"),
    Column("high_risk_count", Integer, nullable=False, server_default="0"),
    Column("critical_risk_count", Integer, nullable=False, server_default="0"),
    Column("devices_with_vulnerabilities", Integer, nullable=False, server_default="0"),
    UniqueConstraint("organization_id", "snapshot_date", name="uq_org_snapshot_date"),
    sqlite_autoincrement=True,
)

_groups = Table(
    "device_groups",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, nullable=False, index=True),
    Column("name", String(255), nullable=False),
    Column("description", Text),
    Column("filters", Text, nullable=False),  # JSON object
    Column("is_smart_group", Integer, nullable=False, server_default="1"),
    Column("created_by", Integer),
    Column("created_at", String(32), nullable=False),
    sqlite_autoincrement=True,
)

_assessments = Table(
    "compliance_assessments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organization_id", Integer, nullable=False),
    Column("framework_id", String(30), nullable=False),
    Column("control_id", String(50), nullable=False),
    Column("status", String(20), nullable=False),
    Column("evidence", Text),
    Column("updated_by", Integer),
    Column("last_updated", String(32), nullable=False),
    UniqueConstraint("organization_id", "framework_id", "control_id", name="uq_org_framework_control"),
    sqlite_autoincrement=True,
)

# Columns a caller may change through update_device(). The link counter is
# deliberately absent: only set_link_count() writes it.
_DEVICE_MUTABLE = {
    "name",
    "entity",
    "serial_number",
    "manufacturer",
    "model",
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


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        # Naive datetime -- assume UTC
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class CMDBStore:
    def __init__(self, db_url: Optional[str] = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # SQLite requires check_same_thread=False when used from FastAPI's
            # threadpool and the background job loops.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    def create_organization(self, org: Organization) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _organizations.insert().values(
                    name=org.name,
                    contact_email=org.contact_email,
                    type=org.type,
                    logo_url=org.logo_url,
                    is_active=1 if org.is_active else 0,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_organization(self, org_id: int) -> Optional[Organization]:
        with self.engine.connect() as conn:
            row = conn.execute(_organizations.select().where(_organizations.c.id == org_id)).fetchone()
        return _row_to_organization(row) if row is not None else None

    def list_organizations(self) -> list[Organization]:
        """Return all organizations ordered by name."""
        with self.engine.connect() as conn:
            rows = conn.execute(_organizations.select().order_by(_organizations.c.name)).fetchall()
        return [_row_to_organization(r) for r in rows]

    def list_organizations_for_user(self, user_id: int) -> list[Organization]:
        stmt = (
            select(_organizations)
            .select_from(_organizations.join(_memberships, _memberships.c.organization_id == _organizations.c.id))
            .where(_memberships.c.user_id == user_id)
            .order_by(_organizations.c.name)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_organization(r) for r in rows]

    def add_membership(self, membership: Membership) -> int:
        """Link a user to an organization.

        Raises sqlalchemy.exc.IntegrityError if the pair already exists.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _memberships.insert().values(
                    user_id=membership.user_id,
                    organization_id=membership.organization_id,
                    member_role=membership.member_role,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_membership(self, user_id: int, org_id: int) -> Optional[Membership]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _memberships.select().where(
                    (_memberships.c.user_id == user_id) & (_memberships.c.organization_id == org_id)
                )
            ).fetchone()
        if row is None:
            return None
        return Membership(
            id=row.id, user_id=row.user_id, organization_id=row.organization_id, member_role=row.member_role
        )

    # ------------------------------------------------------------------
    # Vulnerability entries
    # ------------------------------------------------------------------

    def upsert_vulnerabilities(self, entries: list[VulnerabilityEntry]) -> int:
        """Insert or fully replace a batch of entries in one transaction.

        Existing rows are overwritten field by field (no merge), so vendors
        and products always reflect the latest ingestion. Returns the number
        of entries written.
        """
        now = now_iso()
        with self.engine.connect() as conn:
            for entry in entries:
                values = {
                    "description": entry.description,
                    "published_at": entry.published_at,
                    "last_modified_at": entry.last_modified_at,
                    "cvss_score": entry.cvss_score,
                    "severity": entry.severity,
                    "vendors": json.dumps(list(entry.vendors)),
                    "products": json.dumps(list(entry.products)),
                    "reference_urls": json.dumps(list(entry.references)),
                    "updated_at": now,
                }
                exists = conn.execute(
                    select(_vulnerabilities.c.id).where(_vulnerabilities.c.id == entry.id)
                ).fetchone()
                if exists is not None:
                    conn.execute(_vulnerabilities.update().where(_vulnerabilities.c.id == entry.id).values(**values))
                else:
                    conn.execute(_vulnerabilities.insert().values(id=entry.id, **values))
            conn.commit()
        return len(entries)

    def get_vulnerability(self, vuln_id: str) -> Optional[VulnerabilityEntry]:
        with self.engine.connect() as conn:
            row = conn.execute(_vulnerabilities.select().where(_vulnerabilities.c.id == vuln_id)).fetchone()
        return _row_to_vulnerability(row) if row is not None else None

    def list_vulnerabilities(self) -> list[VulnerabilityEntry]:
        """Full scan of known entries, ordered by identifier."""
        with self.engine.connect() as conn:
            rows = conn.execute(_vulnerabilities.select().order_by(_vulnerabilities.c.id)).fetchall()
        return [_row_to_vulnerability(r) for r in rows]

    def count_vulnerabilities_by_severity(self) -> dict[str, int]:
        stmt = select(_vulnerabilities.c.severity, func.count().label("n")).group_by(_vulnerabilities.c.severity)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        counts = {"CRITICAL": 0, "HIGH": 0, "MEDIUM": 0, "LOW": 0, "UNKNOWN": 0}
        for row in rows:
            counts[row.severity if row.severity in counts else "UNKNOWN"] += row.n
        return counts

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    def create_device(self, device: Device) -> int:
        """Insert a new device and return its assigned database ID.

        The link counter always starts at zero; the matcher owns it.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_devices.insert().values(**_device_values(device, now_iso())))
            conn.commit()
            return result.inserted_primary_key[0]

    def get_device(self, device_id: int) -> Optional[Device]:
        with self.engine.connect() as conn:
            row = conn.execute(_devices.select().where(_devices.c.id == device_id)).fetchone()
        return _row_to_device(row) if row is not None else None

    def list_devices(self, org_id: int) -> list[Device]:
        """Return an organization's devices ordered by entity then name."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _devices.select()
                .where(_devices.c.organization_id == org_id)
                .order_by(_devices.c.entity, _devices.c.name, _devices.c.id)
            ).fetchall()
        return [_row_to_device(r) for r in rows]

    def list_all_devices(self) -> list[Device]:
        with self.engine.connect() as conn:
            rows = conn.execute(_devices.select().order_by(_devices.c.id)).fetchall()
        return [_row_to_device(r) for r in rows]

    def update_device(self, device_id: int, **fields) -> bool:
        """Update mutable fields on an existing device.

        Raises ValueError for unknown fields or for vulnerability_link_count.
        Returns True if a row was updated, False if device_id was not found.
        """
        unknown = set(fields) - _DEVICE_MUTABLE
        if unknown:
            raise ValueError(f"cannot update device fields: {sorted(unknown)}")
        for flag in ("has_phi", "on_network"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        fields["updated_at"] = now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(_devices.update().where(_devices.c.id == device_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def replace_devices(self, org_id: int, devices: list[Device], batch: str) -> tuple[int, int]:
        """Replace an organization's whole device set in one transaction.

        Removed devices take their links and logs with them. Returns
        (inserted, removed).
        """
        now = now_iso()
        with self.engine.begin() as conn:
            old_ids = [
                r.id for r in conn.execute(select(_devices.c.id).where(_devices.c.organization_id == org_id))
            ]
            if old_ids:
                conn.execute(_links.delete().where(_links.c.device_id.in_(old_ids)))
                conn.execute(_device_logs.delete().where(_device_logs.c.device_id.in_(old_ids)))
                conn.execute(_devices.delete().where(_devices.c.id.in_(old_ids)))
            for device in devices:
                values = _device_values(device, now)
                values["organization_id"] = org_id
                values["import_batch"] = batch
                conn.execute(_devices.insert().values(**values))
        return len(devices), len(old_ids)

    def set_device_tags(self, device_id: int, tags: list[str]) -> bool:
        """Replace a device's tag list. Returns False if the device is missing."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _devices.update()
                .where(_devices.c.id == device_id)
                .values(tags=json.dumps(list(tags)), updated_at=now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def set_link_count(self, device_id: int, previous: int, new: int, details: str) -> None:
        """Write the cached link count and its history entry together.

        Only the matcher calls this, and only when the value changed.
        """
        now = now_iso()
        with self.engine.connect() as conn:
            conn.execute(
                _devices.update().where(_devices.c.id == device_id).values(vulnerability_link_count=new, updated_at=now)
            )
            conn.execute(
                _device_logs.insert().values(
                    device_id=device_id,
                    timestamp=now,
                    type="cve_match",
                    previous_value=str(previous),
                    new_value=str(new),
                    details=details,
                )
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Vulnerability links
    # ------------------------------------------------------------------

    def get_link(self, device_id: int, vuln_id: str) -> Optional[VulnerabilityLink]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _links.select().where((_links.c.device_id == device_id) & (_links.c.vulnerability_id == vuln_id))
            ).fetchone()
        return _row_to_link(row) if row is not None else None

    def create_link(self, link: VulnerabilityLink) -> int:
        """Insert a device-vulnerability link and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the (device_id,
        vulnerability_id) pair already exists -- caller should catch and
        treat as a skip.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _links.insert().values(
                    device_id=link.device_id,
                    vulnerability_id=link.vulnerability_id,
                    organization_id=link.organization_id,
                    display_id=link.display_id or link.vulnerability_id,
                    status=link.status,
                    detected_at=link.detected_at or now_iso(),
                    mitigated_at=link.mitigated_at,
                    notes=link.notes,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def count_links(self, device_id: int) -> int:
        with self.engine.connect() as conn:
            return conn.execute(
                select(func.count()).select_from(_links).where(_links.c.device_id == device_id)
            ).scalar_one()

    def list_device_links(self, device_id: int) -> list[LinkedVulnerability]:
        """Return a device's links joined with their entries (unsorted)."""
        return self._linked(_links.c.device_id == device_id)

    def list_organization_links(self, org_id: int) -> list[LinkedVulnerability]:
        return self._linked(_links.c.organization_id == org_id)

    def _linked(self, condition) -> list[LinkedVulnerability]:
        stmt = (
            select(
                _links,
                _vulnerabilities.c.description,
                _vulnerabilities.c.severity,
                _vulnerabilities.c.cvss_score,
                _vulnerabilities.c.published_at,
                _vulnerabilities.c.reference_urls,
            )
            .select_from(_links.outerjoin(_vulnerabilities, _links.c.vulnerability_id == _vulnerabilities.c.id))
            .where(condition)
            .order_by(_links.c.id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [
            LinkedVulnerability(
                link=_row_to_link(r),
                description=r.description or "",
                severity=r.severity,
                cvss_score=r.cvss_score,
                published_at=r.published_at or "",
                references=json.loads(r.reference_urls) if r.reference_urls else [],
            )
            for r in rows
        ]

    def update_link_status(
        self,
        device_id: int,
        vuln_id: str,
        status: str,
        notes: Optional[str] = None,
        mitigated_at: Optional[str] = None,
    ) -> bool:
        """Change one link's status and record it in the device history.

        Returns False if the link does not exist.
        """
        now = now_iso()
        with self.engine.connect() as conn:
            row = conn.execute(
                _links.select().where((_links.c.device_id == device_id) & (_links.c.vulnerability_id == vuln_id))
            ).fetchone()
            if row is None:
                return False
            values: dict = {"status": status, "notes": notes if notes is not None else row.notes}
            if mitigated_at is not None:
                values["mitigated_at"] = mitigated_at
            conn.execute(_links.update().where(_links.c.id == row.id).values(**values))
            conn.execute(
                _device_logs.insert().values(
                    device_id=device_id,
                    timestamp=now,
                    type="status_change",
                    previous_value=row.status,
                    new_value=status,
                    details=f"{row.display_id} status changed from {row.status} to {status}",
                )
            )
            conn.commit()
        return True

    def list_links_for_vulnerability(self, org_id: int, vuln_id: str) -> list[VulnerabilityLink]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _links.select()
                .where((_links.c.organization_id == org_id) & (_links.c.vulnerability_id == vuln_id))
                .order_by(_links.c.id)
            ).fetchall()
        return [_row_to_link(r) for r in rows]

    # ------------------------------------------------------------------
    # Device history
    # ------------------------------------------------------------------

    def list_device_logs(self, device_id: int, limit: int = 100) -> list[DeviceLog]:
        """Return a device's history, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _device_logs.select()
                .where(_device_logs.c.device_id == device_id)
                .order_by(_device_logs.c.timestamp.desc(), _device_logs.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [
            DeviceLog(
                id=r.id,
                device_id=r.device_id,
                type=r.type,
                timestamp=r.timestamp,
                previous_value=r.previous_value or "",
                new_value=r.new_value or "",
                details=r.details or "",
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Report schedules
    # ------------------------------------------------------------------

    def create_schedule(self, schedule: ReportSchedule) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _schedules.insert().values(
                    organization_id=schedule.organization_id,
                    name=schedule.name,
                    frequency=schedule.frequency,
                    recipients=json.dumps(schedule.recipients),
                    report_type=schedule.report_type,
                    is_active=1 if schedule.is_active else 0,
                    last_run_at=schedule.last_run_at,
                    next_run_at=schedule.next_run_at,
                    created_by=schedule.created_by,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_schedule(self, schedule_id: int) -> Optional[ReportSchedule]:
        with self.engine.connect() as conn:
            row = conn.execute(_schedules.select().where(_schedules.c.id == schedule_id)).fetchone()
        return _row_to_schedule(row) if row is not None else None

    def list_schedules(self, org_id: int) -> list[ReportSchedule]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _schedules.select().where(_schedules.c.organization_id == org_id).order_by(_schedules.c.id)
            ).fetchall()
        return [_row_to_schedule(r) for r in rows]

    def list_due_schedules(self, now: datetime, limit: int) -> list[ReportSchedule]:
        """Return active schedules whose next run is at or before now.

        Uses Python date arithmetic (not database date functions) for
        portability: stored timestamps may carry different offsets or
        precisions, so string comparison is not reliable. Ordered by
        next_run_at, oldest first, capped at limit.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(_schedules.select().where(_schedules.c.is_active == 1)).fetchall()
        due: list[tuple[datetime, ReportSchedule]] = []
        for row in rows:
            next_run = _parse_iso(row.next_run_at)
            if next_run is not None and next_run <= now:
                due.append((next_run, _row_to_schedule(row)))
        due.sort(key=lambda pair: (pair[0], pair[1].id))
        return [schedule for _, schedule in due[:limit]]

    def advance_schedule(self, schedule_id: int, last_run_at: str, next_run_at: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _schedules.update()
                .where(_schedules.c.id == schedule_id)
                .values(last_run_at=last_run_at, next_run_at=next_run_at)
            )
            conn.commit()
        return result.rowcount > 0

    def set_schedule_active(self, schedule_id: int, is_active: bool) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _schedules.update().where(_schedules.c.id == schedule_id).values(is_active=1 if is_active else 0)
            )
            conn.commit()
        return result.rowcount > 0

    def delete_schedule(self, schedule_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_schedules.delete().where(_schedules.c.id == schedule_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def create_notification(self, notification: Notification) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _notifications.insert().values(
                    user_id=notification.user_id,
                    type=notification.type,
                    title=notification.title,
                    message=notification.message,
                    read=1 if notification.read else 0,
                    link=notification.link,
                    created_at=notification.created_at or now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def find_unread_notification(self, user_id: int, type_: str, link: Optional[str]) -> Optional[Notification]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _notifications.select()
                .where(
                    (_notifications.c.user_id == user_id)
                    & (_notifications.c.type == type_)
                    & (_notifications.c.link == link)
                    & (_notifications.c.read == 0)
                )
                .limit(1)
            ).fetchone()
        return _row_to_notification(row) if row is not None else None

    def get_notification(self, notification_id: int) -> Optional[Notification]:
        with self.engine.connect() as conn:
            row = conn.execute(_notifications.select().where(_notifications.c.id == notification_id)).fetchone()
        return _row_to_notification(row) if row is not None else None

    def list_notifications(self, user_id: int, limit: int = 50) -> list[Notification]:
        """Return a user's notifications, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _notifications.select()
                .where(_notifications.c.user_id == user_id)
                .order_by(_notifications.c.created_at.desc(), _notifications.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_notification(r) for r in rows]

    def mark_notification_read(self, notification_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _notifications.update().where(_notifications.c.id == notification_id).values(read=1)
            )
            conn.commit()
        return result.rowcount > 0

    def mark_all_notifications_read(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _notifications.update()
                .where((_notifications.c.user_id == user_id) & (_notifications.c.read == 0))
                .values(read=1)
            )
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Risk snapshots
    # ------------------------------------------------------------------

    def upsert_risk_snapshot(self, snapshot: RiskSnapshot) -> None:
        """Write the day's snapshot for an organization, replacing any earlier one."""
        values = {
            "timestamp": snapshot.timestamp,
            "total_risk_score": snapshot.total_risk_score,
            "avg_risk_score": snapshot.avg_risk_score,
            "device_count": snapshot.device_count,
            "high_risk_count": snapshot.high_risk_count,
            "critical_risk_count": snapshot.critical_risk_count,
            "devices_with_vulnerabilities": snapshot.devices_with_vulnerabilities,
        }
        key = (_snapshots.c.organization_id == snapshot.organization_id) & (
            _snapshots.c.snapshot_date == snapshot.snapshot_date
        )
        with self.engine.connect() as conn:
            result = conn.execute(_snapshots.update().where(key).values(**values))
            if result.rowcount == 0:
                conn.execute(
                    _snapshots.insert().values(
                        organization_id=snapshot.organization_id,
                        snapshot_date=snapshot.snapshot_date,
                        **values,
                    )
                )
            conn.commit()

    def list_risk_snapshots(self, org_id: int, since_date: str = "") -> list[RiskSnapshot]:
        """Return snapshots on or after since_date (YYYY-MM-DD), oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _snapshots.select()
                .where((_snapshots.c.organization_id == org_id) & (_snapshots.c.snapshot_date >= since_date))
                .order_by(_snapshots.c.snapshot_date)
            ).fetchall()
        return [
            RiskSnapshot(
                id=r.id,
                organization_id=r.organization_id,
                snapshot_date=r.snapshot_date,
                timestamp=r.timestamp,
                total_risk_score=r.total_risk_score,
                avg_risk_score=r.avg_risk_score,
                device_count=r.device_count,
                high_risk_count=r.high_risk_count,
                critical_risk_count=r.critical_risk_count,
                devices_with_vulnerabilities=r.devices_with_vulnerabilities,
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Device groups
    # ------------------------------------------------------------------

    def create_group(self, group: DeviceGroup) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _groups.insert().values(
                    organization_id=group.organization_id,
                    name=group.name,
                    description=group.description,
                    filters=json.dumps(group.filters),
                    is_smart_group=1 if group.is_smart_group else 0,
                    created_by=group.created_by,
                    created_at=now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_group(self, group_id: int) -> Optional[DeviceGroup]:
        with self.engine.connect() as conn:
            row = conn.execute(_groups.select().where(_groups.c.id == group_id)).fetchone()
        return _row_to_group(row) if row is not None else None

    def list_groups(self, org_id: int) -> list[DeviceGroup]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _groups.select().where(_groups.c.organization_id == org_id).order_by(_groups.c.name, _groups.c.id)
            ).fetchall()
        return [_row_to_group(r) for r in rows]

    def delete_group(self, group_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_groups.delete().where(_groups.c.id == group_id))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Compliance assessments
    # ------------------------------------------------------------------

    def list_assessments(self, org_id: int, framework_id: str) -> list[ComplianceAssessment]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _assessments.select()
                .where((_assessments.c.organization_id == org_id) & (_assessments.c.framework_id == framework_id))
                .order_by(_assessments.c.control_id)
            ).fetchall()
        return [
            ComplianceAssessment(
                id=r.id,
                organization_id=r.organization_id,
                framework_id=r.framework_id,
                control_id=r.control_id,
                status=r.status,
                evidence=r.evidence,
                updated_by=r.updated_by,
                last_updated=r.last_updated,
            )
            for r in rows
        ]

    def upsert_assessment(self, assessment: ComplianceAssessment) -> None:
        """Write the status of one control, replacing any earlier assessment."""
        values = {
            "status": assessment.status,
            "evidence": assessment.evidence,
            "updated_by": assessment.updated_by,
            "last_updated": assessment.last_updated or now_iso(),
        }
        key = (
            (_assessments.c.organization_id == assessment.organization_id)
            & (_assessments.c.framework_id == assessment.framework_id)
            & (_assessments.c.control_id == assessment.control_id)
        )
        with self.engine.connect() as conn:
            result = conn.execute(_assessments.update().where(key).values(**values))
            if result.rowcount == 0:
                conn.execute(
                    _assessments.insert().values(
                        organization_id=assessment.organization_id,
                        framework_id=assessment.framework_id,
                        control_id=assessment.control_id,
                        **values,
                    )
                )
            conn.commit()

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern -- DB row -> domain dataclass)
# ---------------------------------------------------------------------------


def _device_values(device: Device, now: str) -> dict:
    return {
        "organization_id": device.organization_id,
        "name": device.name,
        "entity": device.entity,
        "serial_number": device.serial_number,
        "manufacturer": device.manufacturer,
        "model": device.model,
        "category": device.category,
        "classification": device.classification,
        "technician": device.technician,
        "os_manufacturer": device.os_manufacturer,
        "os_version": device.os_version,
        "has_phi": 1 if device.has_phi else 0,
        "phi_category": device.phi_category,
        "on_network": 1 if device.on_network else 0,
        "ip_address": device.ip_address,
        "mac_address": device.mac_address,
        "owner_id": device.owner_id,
        "last_seen": device.last_seen,
        "status": device.status,
        "vulnerability_link_count": 0,
        "import_batch": device.import_batch,
        "tags": json.dumps(list(device.tags)),
        "created_at": now,
        "updated_at": now,
    }


def _row_to_organization(row) -> Organization:
    return Organization(
        id=row.id,
        name=row.name,
        contact_email=row.contact_email,
        type=row.type,
        logo_url=row.logo_url,
        is_active=bool(row.is_active),
        created_at=row.created_at,
    )


def _row_to_vulnerability(row) -> VulnerabilityEntry:
    return VulnerabilityEntry(
        id=row.id,
        description=row.description,
        published_at=row.published_at,
        last_modified_at=row.last_modified_at,
        cvss_score=row.cvss_score,
        severity=row.severity,
        vendors=json.loads(row.vendors) if row.vendors else [],
        products=json.loads(row.products) if row.products else [],
        references=json.loads(row.reference_urls) if row.reference_urls else [],
    )


def _row_to_device(row) -> Device:
    return Device(
        id=row.id,
        organization_id=row.organization_id,
        name=row.name,
        entity=row.entity,
        serial_number=row.serial_number,
        manufacturer=row.manufacturer,
        model=row.model,
        category=row.category,
        classification=row.classification,
        technician=row.technician,
        os_manufacturer=row.os_manufacturer,
        os_version=row.os_version,
        has_phi=bool(row.has_phi),
        phi_category=row.phi_category,
        on_network=bool(row.on_network),
        ip_address=row.ip_address,
        mac_address=row.mac_address,
        owner_id=row.owner_id,
        last_seen=row.last_seen,
        status=row.status,
        vulnerability_link_count=row.vulnerability_link_count,
        import_batch=row.import_batch,
        tags=json.loads(row.tags) if row.tags else [],
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_link(row) -> VulnerabilityLink:
    return VulnerabilityLink(
        id=row.id,
        device_id=row.device_id,
        vulnerability_id=row.vulnerability_id,
        organization_id=row.organization_id,
        display_id=row.display_id,
        status=row.status,
        detected_at=row.detected_at,
        mitigated_at=row.mitigated_at,
        notes=row.notes,
    )


def _row_to_schedule(row) -> ReportSchedule:
    return ReportSchedule(
        id=row.id,
        organization_id=row.organization_id,
        name=row.name,
        frequency=row.frequency,
        recipients=json.loads(row.recipients) if row.recipients else [],
        report_type=row.report_type,
        is_active=bool(row.is_active),
        last_run_at=row.last_run_at,
        next_run_at=row.next_run_at,
        created_by=row.created_by,
        created_at=row.created_at,
    )


def _row_to_notification(row) -> Notification:
    return Notification(
        id=row.id,
        user_id=row.user_id,
        type=row.type,
        title=row.title,
        message=row.message,
        read=bool(row.read),
        link=row.link,
        created_at=row.created_at,
    )


def _row_to_group(row) -> DeviceGroup:
    return DeviceGroup(
        id=row.id,
        organization_id=row.organization_id,
        name=row.name,
        description=row.description,
        filters=json.loads(row.filters) if row.filters else {},
        is_smart_group=bool(row.is_smart_group),
        created_by=row.created_by,
        created_at=row.created_at,
    )
