"""Tests for cmdb/alerts.py -- read-time alert detection and the notification sweep."""

from datetime import datetime, timedelta, timezone

import pytest

from cmdb.alerts import check_device_alerts, detect_device_alerts, list_notifications, mark_all_as_read, mark_as_read
from cmdb.errors import NotAuthenticatedError, NotFoundError
from cmdb.ingest import parse_device_csv, replace_devices
from cmdb.models import Device, Notification
from cmdb.orgs import update_device
from cmdb.sync import match_all
from core.models import VulnerabilityEntry

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _device(id_, **fields):
    fields.setdefault("organization_id", 1)
    fields.setdefault("manufacturer", "Acme")
    fields.setdefault("model", "Pump")
    fields.setdefault("name", f"Device {id_}")
    fields.setdefault("technician", "J. Doe")
    fields.setdefault("entity", "North")
    return Device(id=id_, **fields)


class TestDetectDeviceAlerts:
    def test_clean_inventory_has_no_alerts(self):
        result = detect_device_alerts([_device(1, os_version="Windows 10")])
        assert result["alerts"] == []
        assert result["summary"]["total"] == 0

    def test_critical_phi_on_network(self):
        device = _device(1, has_phi=True, phi_category="Critical", on_network=True, ip_address="10.0.0.5")
        alerts = detect_device_alerts([device])["alerts"]
        assert [a["type"] for a in alerts] == ["critical_phi_on_network"]
        assert alerts[0]["severity"] == "critical"
        assert alerts[0]["device_id"] == 1

    @pytest.mark.parametrize("os_label", ["Windows 7 Embedded", "windows xp", "Server 2008 R2", "EOL build", "Legacy RTOS"])
    def test_unsupported_os(self, os_label):
        alerts = detect_device_alerts([_device(1, os_version=os_label)])["alerts"]
        assert [a["type"] for a in alerts] == ["unsupported_os"]

    def test_missing_info(self):
        alerts = detect_device_alerts([_device(1, technician=None), _device(2, on_network=True)])["alerts"]
        assert [a["type"] for a in alerts] == ["missing_device_info", "missing_device_info"]

    def test_duplicate_ip_reported_once(self):
        devices = [_device(i, ip_address="10.0.0.9") for i in (1, 2, 3)]
        alerts = detect_device_alerts(devices)["alerts"]
        assert len(alerts) == 1
        assert alerts[0]["device_name"] == "Multiple Devices"
        assert "(3 devices)" in alerts[0]["message"]

    def test_sorted_most_severe_first_and_limited(self):
        devices = [
            _device(1, technician=None),
            _device(2, os_version="Windows XP"),
            _device(3, has_phi=True, phi_category="critical", on_network=True, ip_address="10.0.0.1"),
        ]
        result = detect_device_alerts(devices, limit=2)
        assert [a["severity"] for a in result["alerts"]] == ["critical", "high"]
        assert result["summary"] == {"total": 2, "critical": 1, "high": 1, "medium": 0, "low": 0}


class TestCheckDeviceAlerts:
    def test_creates_offline_and_vulnerability_notifications(self, store, org_id, make_device):
        stale = (NOW - timedelta(hours=30)).isoformat()
        device = make_device(owner_id=5, on_network=True, last_seen=stale)
        store.set_link_count(device.id, 0, 2, "test")

        assert check_device_alerts(store, NOW) == 2
        types = sorted(n.type for n in store.list_notifications(5))
        assert types == ["cve", "offline"]

    def test_unread_duplicates_are_not_recreated(self, store, make_device):
        device = make_device(owner_id=5)
        store.set_link_count(device.id, 0, 1, "test")

        assert check_device_alerts(store, NOW) == 1
        assert check_device_alerts(store, NOW) == 0

        store.mark_all_notifications_read(5)
        assert check_device_alerts(store, NOW) == 1

    def test_recently_seen_and_unowned_devices(self, store, make_device):
        make_device(owner_id=5, on_network=True, last_seen=(NOW - timedelta(hours=1)).isoformat())
        unowned = make_device(on_network=True, last_seen="2020-01-01T00:00:00+00:00")
        store.set_link_count(unowned.id, 0, 3, "test")
        assert check_device_alerts(store, NOW) == 0

    def test_unparseable_last_seen_is_ignored(self, store, make_device):
        make_device(owner_id=5, on_network=True, last_seen="yesterday")
        assert check_device_alerts(store, NOW) == 0


class TestNotificationOperations:
    def _notify(self, store, user_id, title="Hello"):
        return store.create_notification(Notification(user_id=user_id, type="info", title=title, message="m"))

    def test_list_requires_principal(self, store):
        with pytest.raises(NotAuthenticatedError):
            list_notifications(store, None)

    def test_list_only_own(self, store, admin, analyst):
        self._notify(store, admin.id, "mine")
        self._notify(store, analyst.id, "theirs")
        assert [n.title for n in list_notifications(store, admin)] == ["mine"]

    def test_mark_as_read(self, store, admin):
        nid = self._notify(store, admin.id)
        assert mark_as_read(store, admin, nid).read is True
        assert store.get_notification(nid).read is True

    def test_someone_elses_notification_is_not_found(self, store, admin, analyst):
        nid = self._notify(store, analyst.id)
        with pytest.raises(NotFoundError):
            mark_as_read(store, admin, nid)
        assert store.get_notification(nid).read is False

    def test_mark_all_as_read(self, store, admin):
        self._notify(store, admin.id)
        self._notify(store, admin.id)
        assert mark_all_as_read(store, admin) == 2
        assert mark_all_as_read(store, admin) == 0


class TestAlertsFromImportedInventory:
    """The sweep sees owners and last-seen times written by the import and by device edits."""

    def test_import_match_then_sweep_notifies_the_importer(self, store, org_id, admin):
        stale = (NOW - timedelta(hours=30)).isoformat()
        content = (
            "Name,Serial Number,Manufacturer,Model,Category,Device on network?,Last Seen\n"
            f"MRI-01,SN-1,Acme Medical,Scanner 9000,Imaging,Yes,{stale}\n"
            "PUMP-02,SN-2,Baxter,Sigma,Infusion,No,\n"
        )
        devices, errors = parse_device_csv(content, org_id)
        assert errors == []
        replace_devices(store, admin, org_id, devices)
        store.upsert_vulnerabilities(
            [VulnerabilityEntry("CVE-2024-0001", "d", "", "", severity="HIGH", vendors=["acme"], products=["scanner"])]
        )
        match_all(store, org_id)

        assert check_device_alerts(store, NOW) == 2
        mri = next(d for d in store.list_devices(org_id) if d.name == "MRI-01")
        notes = store.list_notifications(admin.id)
        assert sorted(n.type for n in notes) == ["cve", "offline"]
        assert {n.link for n in notes} == {f"/dashboard?tab=devices&deviceId={mri.id}"}

        pump = next(d for d in store.list_devices(org_id) if d.name == "PUMP-02")
        update_device(store, admin, pump.id, on_network=True, last_seen=stale)
        assert check_device_alerts(store, NOW) == 1
        assert check_device_alerts(store, NOW) == 0
