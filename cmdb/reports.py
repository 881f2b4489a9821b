"""
cmdb/reports.py -- Recurring report schedules and the send pipeline.

Flow:
  advance_due_schedules()  -- periodic sweep: pick due schedules, persist the
                              next run, then enqueue a ReportJob per schedule
  ReportDispatcher         -- runs queued jobs on a small worker pool
  send_report()            -- compose_report() + Mailer.send()

Delivery is at-most-once. The next run is persisted before the job is
enqueued, so a failed persist never sends, and a failed enqueue or send is
logged and not retried; the schedule has already moved on.
"""

import calendar
import logging
import re
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Protocol

from cmdb.access import require_org_access, require_principal
from cmdb.alerts import detect_device_alerts
from cmdb.compliance import build_compliance_status
from cmdb.errors import InvalidInputError, NotFoundError
from cmdb.models import FREQUENCIES, REPORT_TYPES, Principal, ReportSchedule
from cmdb.risk import classify, risk_summary
from cmdb.store import CMDBStore
from core.config import get_settings, now_utc
from core.formatter import badge, to_html_report

logger = logging.getLogger("cryptiomt.reports")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# ---------------------------------------------------------------------------
# Period arithmetic
# ---------------------------------------------------------------------------


def add_months(moment: datetime, months: int) -> datetime:
    """Shift by calendar months, clamping the day to the target month's length.

    Jan 31 + 1 month is Feb 28 (or 29 in a leap year); Dec + 1 rolls the year.
    """
    index = moment.month - 1 + months
    year = moment.year + index // 12
    month = index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def add_period(moment: datetime, frequency: str) -> datetime:
    """Return moment advanced by exactly one schedule period."""
    if frequency == "daily":
        return moment + timedelta(days=1)
    if frequency == "weekly":
        return moment + timedelta(days=7)
    if frequency == "monthly":
        return add_months(moment, 1)
    raise ValueError(f"unknown frequency {frequency!r}")


# ---------------------------------------------------------------------------
# Jobs and the due-schedule sweep
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ReportJob:
    """Snapshot of everything a send needs, taken when the schedule fires."""

    schedule_id: int
    organization_id: int
    organization_name: str
    report_type: str
    recipients: tuple[str, ...]
    logo_url: Optional[str] = None


@dataclass
class AdvanceResult:
    processed: int
    skipped: list[int] = field(default_factory=list)


def advance_due_schedules(
    store: CMDBStore,
    now: datetime,
    enqueue: Callable[[ReportJob], None],
    batch_size: Optional[int] = None,
) -> AdvanceResult:
    """Advance up to batch_size due schedules and enqueue their sends.

    Due means active with next_run_at <= now. A schedule whose organization
    has been removed is skipped and left untouched. If persisting the next
    run raises, the exception propagates and that schedule is not enqueued.
    """
    limit = batch_size if batch_size is not None else get_settings().report_batch_size
    if limit < 1:
        raise ValueError("batch_size must be at least 1")
    result = AdvanceResult(processed=0)

    for schedule in store.list_due_schedules(now, limit):
        org = store.get_organization(schedule.organization_id)
        if org is None:
            logger.warning(
                "Skipping schedule %d: organization %d no longer exists", schedule.id, schedule.organization_id
            )
            result.skipped.append(schedule.id)
            continue

        next_run = add_period(now, schedule.frequency)
        store.advance_schedule(schedule.id, now.isoformat(), next_run.isoformat())
        result.processed += 1

        job = ReportJob(
            schedule_id=schedule.id,
            organization_id=org.id,
            organization_name=org.name,
            report_type=schedule.report_type,
            recipients=tuple(schedule.recipients),
            logo_url=org.logo_url,
        )
        try:
            enqueue(job)
        except Exception:
            logger.exception("Could not enqueue report for schedule %d; next run stays %s", schedule.id, next_run)

    if result.processed or result.skipped:
        logger.info("Report sweep: %d processed, %d skipped", result.processed, len(result.skipped))
    return result


# ---------------------------------------------------------------------------
# Schedule management (user actions)
# ---------------------------------------------------------------------------


def _validate_recipients(recipients: list[str]) -> list[str]:
    cleaned = [r.strip() for r in recipients if r and r.strip()]
    if not cleaned:
        raise InvalidInputError("at least one recipient is required")
    bad = [r for r in cleaned if not _EMAIL_RE.match(r)]
    if bad:
        raise InvalidInputError(f"invalid recipient address: {bad[0]}")
    return cleaned


def create_schedule(
    store: CMDBStore,
    principal: Optional[Principal],
    org_id: int,
    name: str,
    frequency: str,
    recipients: list[str],
    report_type: str,
    now: Optional[datetime] = None,
) -> ReportSchedule:
    """Create an active schedule whose first run is one period from now."""
    principal = require_principal(principal)
    if frequency not in FREQUENCIES:
        raise InvalidInputError(f"frequency must be one of {', '.join(FREQUENCIES)}")
    if report_type not in REPORT_TYPES:
        raise InvalidInputError(f"report_type must be one of {', '.join(REPORT_TYPES)}")
    if not name or not name.strip():
        raise InvalidInputError("name is required")
    cleaned = _validate_recipients(recipients)
    require_org_access(store, principal, org_id, write=True)

    schedule = ReportSchedule(
        organization_id=org_id,
        name=name.strip(),
        frequency=frequency,
        recipients=cleaned,
        report_type=report_type,
        next_run_at=add_period(now or now_utc(), frequency).isoformat(),
        created_by=principal.id,
    )
    schedule.id = store.create_schedule(schedule)
    logger.info("Schedule %d (%s, %s) created for org %d", schedule.id, frequency, report_type, org_id)
    return store.get_schedule(schedule.id)


def list_schedules(store: CMDBStore, principal: Optional[Principal], org_id: int) -> list[ReportSchedule]:
    require_org_access(store, principal, org_id)
    return store.list_schedules(org_id)


def _owned_schedule(store: CMDBStore, principal: Optional[Principal], schedule_id: int) -> ReportSchedule:
    require_principal(principal)
    schedule = store.get_schedule(schedule_id)
    if schedule is None:
        raise NotFoundError(f"report schedule {schedule_id} not found")
    require_org_access(store, principal, schedule.organization_id, write=True)
    return schedule


def set_schedule_active(
    store: CMDBStore, principal: Optional[Principal], schedule_id: int, is_active: bool
) -> ReportSchedule:
    _owned_schedule(store, principal, schedule_id)
    store.set_schedule_active(schedule_id, is_active)
    return store.get_schedule(schedule_id)


def delete_schedule(store: CMDBStore, principal: Optional[Principal], schedule_id: int) -> None:
    _owned_schedule(store, principal, schedule_id)
    store.delete_schedule(schedule_id)
    logger.info("Schedule %d deleted", schedule_id)


# ---------------------------------------------------------------------------
# Composing and sending
# ---------------------------------------------------------------------------


class Mailer(Protocol):
    def send(self, recipients: list[str], subject: str, html_body: str) -> None: ...


class LoggingMailer:
    """Default transport: logs the message instead of delivering it.

    Swap in a provider-backed mailer with the same send() signature.
    """

    def send(self, recipients: list[str], subject: str, html_body: str) -> None:
        logger.info("Report email to %s: %s (%d bytes)", ", ".join(recipients), subject, len(html_body))


def compose_report(store: CMDBStore, job: ReportJob, now: Optional[datetime] = None) -> tuple[str, str]:
    """Return (subject, html_body) for a report job."""
    now = now or now_utc()
    devices = store.list_devices(job.organization_id)
    alerts = detect_device_alerts(devices)
    summary = risk_summary(devices)
    snapshots = store.list_risk_snapshots(job.organization_id, (now - timedelta(days=30)).date().isoformat())
    current = snapshots[-1] if snapshots else None

    subject = f"Security Report: {job.organization_name} - {now.date().isoformat()}"
    items: list[tuple[str, object]] = []
    tables = []

    if job.report_type in ("summary", "risk_detail"):
        items += [
            ("Total Devices", summary["total"]),
            ("Current Risk Score", current.avg_risk_score if current else "N/A"),
            ("Critical Alerts", alerts["summary"]["critical"]),
            ("High Alerts", alerts["summary"]["high"]),
            ("Devices With Vulnerabilities", sum(1 for d in devices if d.vulnerability_link_count > 0)),
        ]

    if job.report_type == "risk_detail":
        top_alerts = alerts["alerts"][:5]
        if top_alerts:
            tables.append(
                (
                    "Top Critical Alerts",
                    ["Severity", "Device", "Finding"],
                    [[badge(a["severity"]), a["device_name"], a["message"]] for a in top_alerts],
                )
            )
        critical = [d for d in devices if classify(d) == "critical"][:5]
        if critical:
            tables.append(
                (
                    "Critical Devices",
                    ["Device", "Entity", "Manufacturer", "Model", "Vulnerabilities"],
                    [[d.name, d.entity, d.manufacturer, d.model, d.vulnerability_link_count] for d in critical],
                )
            )

    if job.report_type == "compliance":
        items += [
            ("Total Devices", summary["total"]),
            ("Devices Storing PHI", sum(1 for d in devices if d.has_phi)),
            ("Networked PHI Devices", sum(1 for d in devices if d.has_phi and d.on_network)),
            ("Devices Missing OS Version", sum(1 for d in devices if not d.os_version)),
            ("Open Critical Findings", alerts["summary"]["critical"]),
        ]
        checklist = build_compliance_status(store, job.organization_id)
        items.append(("HIPAA Checklist Score", f"{checklist['score']}%"))
        tables.append(
            (
                "HIPAA Security Rule Controls",
                ["Control", "Name", "Status"],
                [[c["id"], c["name"], c["status"].replace("_", " ")] for c in checklist["controls"]],
            )
        )

    tables.append(
        (
            "Risk by Entity",
            ["Entity", "Devices", "Critical", "High", "Score"],
            [
                [e["entity"], e["total"], e["counts"]["critical"], e["counts"]["high"], e["risk_score"]]
                for e in summary["entities"]
            ],
        )
    )

    body = to_html_report(
        title=f"Security Report for {job.organization_name}",
        subtitle=f"{job.report_type.replace('_', ' ').title()} report, generated {now.date().isoformat()}",
        summary=items,
        tables=tables,
        logo_url=job.logo_url,
    )
    return subject, body


def send_report(store: CMDBStore, job: ReportJob, mailer: Mailer) -> None:
    subject, body = compose_report(store, job)
    mailer.send(list(job.recipients), subject, body)
    logger.info("Report for schedule %d sent to %d recipient(s)", job.schedule_id, len(job.recipients))


class ReportDispatcher:
    """Runs report sends off the caller's thread, fire-and-forget.

    enqueue() is the callable handed to advance_due_schedules(). Failures
    are logged by a done-callback and never retried.
    """

    def __init__(self, store: CMDBStore, mailer: Optional[Mailer] = None, max_workers: int = 2) -> None:
        self.store = store
        self.mailer = mailer or LoggingMailer()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="report-send")

    def enqueue(self, job: ReportJob) -> Future:
        future = self._executor.submit(send_report, self.store, job, self.mailer)
        future.add_done_callback(lambda f: self._log_failure(job, f))
        return future

    @staticmethod
    def _log_failure(job: ReportJob, future: Future) -> None:
        if future.cancelled():
            logger.warning("Report send for schedule %d was cancelled", job.schedule_id)
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Report send for schedule %d failed: %s", job.schedule_id, exc, exc_info=exc)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
