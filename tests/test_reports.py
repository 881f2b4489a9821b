"""Tests for cmdb/reports.py -- period arithmetic, the due-schedule sweep,
schedule management, report composition and the dispatcher.

Covers:
  - add_months day clamping and year rollover
  - advance_due_schedules: next run persisted before enqueue, org-less skip,
    persist failure never enqueues, enqueue failure still advances
  - create_schedule validation and access checks
  - compose_report per report type
  - ReportDispatcher sends through the mailer and survives send failures
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from cmdb.compliance import update_compliance_status
from cmdb.errors import InvalidInputError, NotAuthenticatedError, NotFoundError, PermissionDeniedError
from cmdb.models import Membership, Organization, ReportSchedule
from cmdb.reports import (
    ReportDispatcher,
    ReportJob,
    add_months,
    add_period,
    advance_due_schedules,
    compose_report,
    create_schedule,
    delete_schedule,
    list_schedules,
    set_schedule_active,
)
from cmdb.store import CMDBStore

NOW = datetime(2024, 1, 31, 9, 0, tzinfo=timezone.utc)


def _schedule(store, org_id, next_run, frequency="daily", **fields):
    schedule = ReportSchedule(
        organization_id=org_id,
        name=fields.pop("name", "Weekly CISO summary"),
        frequency=frequency,
        recipients=fields.pop("recipients", ["ciso@example.org"]),
        report_type=fields.pop("report_type", "summary"),
        next_run_at=next_run.isoformat(),
        **fields,
    )
    return store.create_schedule(schedule)


def _job(org_id, report_type="summary", name="St. Example Hospital"):
    return ReportJob(
        schedule_id=1,
        organization_id=org_id,
        organization_name=name,
        report_type=report_type,
        recipients=("ciso@example.org",),
    )


# ---------------------------------------------------------------------------
# Period arithmetic
# ---------------------------------------------------------------------------


class TestPeriods:
    def test_jan_31_plus_one_month_is_end_of_feb(self):
        assert add_months(datetime(2023, 1, 31), 1) == datetime(2023, 2, 28)
        assert add_months(datetime(2024, 1, 31), 1) == datetime(2024, 2, 29)

    def test_december_rolls_year(self):
        assert add_months(datetime(2024, 12, 15), 1) == datetime(2025, 1, 15)

    def test_multi_month_shift(self):
        assert add_months(datetime(2024, 3, 31), 13) == datetime(2025, 4, 30)

    def test_keeps_time_of_day(self):
        assert add_period(NOW, "monthly") == datetime(2024, 2, 29, 9, 0, tzinfo=timezone.utc)

    def test_daily_and_weekly(self):
        assert add_period(NOW, "daily") == NOW + timedelta(days=1)
        assert add_period(NOW, "weekly") == NOW + timedelta(days=7)

    def test_unknown_frequency(self):
        with pytest.raises(ValueError):
            add_period(NOW, "hourly")


# ---------------------------------------------------------------------------
# Due-schedule sweep
# ---------------------------------------------------------------------------


class TestAdvanceDueSchedules:
    def test_due_schedule_advances_then_enqueues(self, store, org_id):
        sid = _schedule(store, org_id, NOW - timedelta(hours=1), frequency="weekly")
        seen = []

        def enqueue(job):
            # The next run is already persisted when the job is handed over.
            seen.append((job, store.get_schedule(sid).next_run_at))

        result = advance_due_schedules(store, NOW, enqueue)

        assert result.processed == 1
        job, next_run_at_enqueue = seen[0]
        assert job.schedule_id == sid
        assert job.organization_name == "St. Example Hospital"
        assert job.recipients == ("ciso@example.org",)
        assert next_run_at_enqueue == (NOW + timedelta(days=7)).isoformat()
        assert store.get_schedule(sid).last_run_at == NOW.isoformat()

    def test_not_due_inactive_are_ignored(self, store, org_id):
        _schedule(store, org_id, NOW + timedelta(minutes=1))
        _schedule(store, org_id, NOW - timedelta(days=1), is_active=False)
        enqueue = MagicMock()
        assert advance_due_schedules(store, NOW, enqueue).processed == 0
        enqueue.assert_not_called()

    def test_next_run_moves_past_now(self, store, org_id):
        sid = _schedule(store, org_id, NOW - timedelta(days=3), frequency="daily")
        advance_due_schedules(store, NOW, MagicMock())
        assert datetime.fromisoformat(store.get_schedule(sid).next_run_at) > NOW
        assert advance_due_schedules(store, NOW, MagicMock()).processed == 0

    def test_batch_size_caps_processing(self, store, org_id):
        for hours in (3, 2, 1):
            _schedule(store, org_id, NOW - timedelta(hours=hours))
        enqueue = MagicMock()
        assert advance_due_schedules(store, NOW, enqueue, batch_size=2).processed == 2
        assert enqueue.call_count == 2

    def test_zero_batch_size_is_rejected(self, store, org_id):
        sid = _schedule(store, org_id, NOW - timedelta(hours=1))
        enqueue = MagicMock()
        with pytest.raises(ValueError):
            advance_due_schedules(store, NOW, enqueue, batch_size=0)
        enqueue.assert_not_called()
        assert store.get_schedule(sid).last_run_at is None

    def test_schedule_without_organization_is_skipped(self, store):
        sid = _schedule(store, 999, NOW - timedelta(hours=1))
        enqueue = MagicMock()

        result = advance_due_schedules(store, NOW, enqueue)

        assert result.processed == 0
        assert result.skipped == [sid]
        enqueue.assert_not_called()
        assert store.get_schedule(sid).next_run_at == (NOW - timedelta(hours=1)).isoformat()

    def test_persist_failure_does_not_enqueue(self, store, org_id):
        _schedule(store, org_id, NOW - timedelta(hours=1))
        enqueue = MagicMock()
        with patch.object(store, "advance_schedule", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                advance_due_schedules(store, NOW, enqueue)
        enqueue.assert_not_called()

    def test_enqueue_failure_still_advances(self, store, org_id):
        sid = _schedule(store, org_id, NOW - timedelta(hours=1))
        enqueue = MagicMock(side_effect=RuntimeError("queue closed"))

        result = advance_due_schedules(store, NOW, enqueue)

        assert result.processed == 1
        assert store.get_schedule(sid).next_run_at == (NOW + timedelta(days=1)).isoformat()


# ---------------------------------------------------------------------------
# Schedule management
# ---------------------------------------------------------------------------


class TestCreateSchedule:
    def test_creates_active_schedule_one_period_out(self, store, org_id, admin):
        schedule = create_schedule(
            store, admin, org_id, "  Monthly board pack ", "monthly", [" ciso@example.org ", ""], "compliance", now=NOW
        )
        assert schedule.id is not None
        assert schedule.name == "Monthly board pack"
        assert schedule.is_active is True
        assert schedule.recipients == ["ciso@example.org"]
        assert schedule.next_run_at == datetime(2024, 2, 29, 9, 0, tzinfo=timezone.utc).isoformat()
        assert schedule.created_by == admin.id

    @pytest.mark.parametrize(
        "name, frequency, recipients, report_type",
        [
            ("R", "hourly", ["a@example.org"], "summary"),
            ("R", "daily", ["a@example.org"], "full"),
            ("R", "daily", [], "summary"),
            ("R", "daily", ["not-an-email"], "summary"),
            ("   ", "daily", ["a@example.org"], "summary"),
        ],
    )
    def test_rejects_invalid_input(self, store, org_id, admin, name, frequency, recipients, report_type):
        with pytest.raises(InvalidInputError):
            create_schedule(store, admin, org_id, name, frequency, recipients, report_type)

    def test_requires_principal(self, store, org_id):
        with pytest.raises(NotAuthenticatedError):
            create_schedule(store, None, org_id, "R", "daily", ["a@example.org"], "summary")

    def test_viewer_member_cannot_create(self, store, org_id, viewer):
        store.add_membership(Membership(user_id=viewer.id, organization_id=org_id))
        with pytest.raises(PermissionDeniedError):
            create_schedule(store, viewer, org_id, "R", "daily", ["a@example.org"], "summary")
        assert list_schedules(store, viewer, org_id) == []


class TestScheduleLifecycle:
    def test_pause_resume_delete(self, store, org_id, admin):
        schedule = create_schedule(store, admin, org_id, "R", "daily", ["a@example.org"], "summary")

        assert set_schedule_active(store, admin, schedule.id, False).is_active is False
        assert set_schedule_active(store, admin, schedule.id, True).is_active is True

        delete_schedule(store, admin, schedule.id)
        assert store.get_schedule(schedule.id) is None
        with pytest.raises(NotFoundError):
            delete_schedule(store, admin, schedule.id)


# ---------------------------------------------------------------------------
# Composition and dispatch
# ---------------------------------------------------------------------------


class TestComposeReport:
    def test_summary_report(self, store, org_id, make_device):
        make_device(name="CT-01", entity="North", os_version="Windows XP")
        subject, body = compose_report(store, _job(org_id), now=NOW)
        assert subject == "Security Report: St. Example Hospital - 2024-01-31"
        assert "Total Devices" in body
        assert "Risk by Entity" in body
        assert "Critical Devices" not in body

    def test_risk_detail_lists_critical_devices(self, store, org_id, make_device):
        make_device(name="CT-01", entity="North", os_version="Windows XP")
        _, body = compose_report(store, _job(org_id, "risk_detail"), now=NOW)
        assert "Critical Devices" in body
        assert "Top Critical Alerts" in body
        assert "CT-01" in body

    def test_compliance_report(self, store, org_id, make_device):
        make_device(has_phi=True, on_network=True)
        _, body = compose_report(store, _job(org_id, "compliance"), now=NOW)
        assert "Networked PHI Devices" in body

    def test_compliance_report_includes_checklist(self, store, org_id, admin):
        update_compliance_status(store, admin, org_id, "164.312(b)", "compliant")
        _, body = compose_report(store, _job(org_id, "compliance"), now=NOW)
        assert "HIPAA Security Rule Controls" in body
        assert "Audit Controls" in body
        assert "14%" in body

    def test_organization_name_is_escaped(self, store, org_id):
        _, body = compose_report(store, _job(org_id, name="<script>x</script>"), now=NOW)
        assert "<script>x</script>" not in body
        assert "&lt;script&gt;" in body


class TestReportDispatcher:
    """Sends run on worker threads, so these use a file-backed store."""

    @pytest.fixture
    def file_store(self, tmp_path):
        s = CMDBStore(f"sqlite:///{tmp_path / 'reports.db'}")
        yield s
        s.close()

    def test_sends_through_mailer(self, file_store):
        org_id = file_store.create_organization(Organization(name="St. Example Hospital"))
        mailer = MagicMock()
        dispatcher = ReportDispatcher(file_store, mailer=mailer)
        future = dispatcher.enqueue(_job(org_id))
        future.result(timeout=10)
        dispatcher.shutdown()

        recipients, subject, body = mailer.send.call_args.args
        assert recipients == ["ciso@example.org"]
        assert subject.startswith("Security Report: St. Example Hospital")
        assert "<html" in body.lower()

    def test_send_failure_is_contained(self, file_store):
        org_id = file_store.create_organization(Organization(name="St. Example Hospital"))
        mailer = MagicMock()
        mailer.send.side_effect = ConnectionError("smtp down")
        dispatcher = ReportDispatcher(file_store, mailer=mailer)
        future = dispatcher.enqueue(_job(org_id))
        with pytest.raises(ConnectionError):
            future.result(timeout=10)
        dispatcher.shutdown()
