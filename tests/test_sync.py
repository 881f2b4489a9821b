"""Tests for cmdb/sync.py -- vulnerability import and device matching.

Covers:
  - import with an injected fetch; batching; feed failure writes nothing
  - match_all idempotence and link counter reconciliation
  - devices without manufacturer/model are skipped
  - pre-existing links are not duplicated, including one inserted by a
    concurrent run between the existence check and the insert
  - a store failure part-way through keeps the earlier batches
  - device/org vulnerability reads, sorting and access checks
  - single and bulk link status changes
"""

from datetime import datetime, timezone

import pytest

from cmdb.errors import InvalidInputError, NotAuthenticatedError, NotFoundError, PermissionDeniedError
from cmdb.models import Device, Membership, Organization, VulnerabilityLink
from cmdb.store import CMDBStore
from cmdb.sync import (
    bulk_update_link_status,
    get_device_vulnerabilities,
    get_organization_vulnerabilities,
    import_vulnerabilities,
    match_all,
    match_all_organizations,
    run_match,
    seed_demo_vulnerabilities,
    sync_recent,
    update_link_status,
)
from core.fetcher import FeedError
from core.models import VulnerabilityEntry

START = datetime(2024, 3, 1, tzinfo=timezone.utc)
END = datetime(2024, 3, 8, tzinfo=timezone.utc)


def _item(cve_id, vendor="acme", product="scanner", severity="HIGH", score=7.5):
    return {
        "cve": {
            "id": cve_id,
            "published": "2024-03-02T00:00:00.000",
            "lastModified": "2024-03-02T00:00:00.000",
            "descriptions": [{"lang": "en", "value": f"{cve_id} description"}],
            "metrics": {"cvssMetricV31": [{"cvssData": {"baseScore": score, "baseSeverity": severity}}]},
            "configurations": [
                {"nodes": [{"cpeMatch": [{"criteria": f"cpe:2.3:a:{vendor}:{product}:1.0:*:*:*:*:*:*:*"}]}]}
            ],
        }
    }


def _fetch_returning(*items):
    calls = []

    def fetch(start, end):
        calls.append((start, end))
        return list(items)

    fetch.calls = calls
    return fetch


def _entry(cve_id, vendors=("acme",), products=("scanner",), severity="HIGH", score=7.5):
    return VulnerabilityEntry(
        id=cve_id,
        description=cve_id,
        published_at="2024-03-02T00:00:00.000",
        last_modified_at="2024-03-02T00:00:00.000",
        cvss_score=score,
        severity=severity,
        vendors=list(vendors),
        products=list(products),
    )


class _InterleavedLinkStore(CMDBStore):
    """Simulates another matcher run inserting the same link between the
    existence check and the insert."""

    def __init__(self, db_url):
        super().__init__(db_url)
        self.interleaved = []

    def get_link(self, device_id, vuln_id):
        found = super().get_link(device_id, vuln_id)
        if found is None:
            org_id = self.get_device(device_id).organization_id
            super().create_link(VulnerabilityLink(device_id=device_id, vulnerability_id=vuln_id, organization_id=org_id))
            self.interleaved.append((device_id, vuln_id))
        return found


# ---------------------------------------------------------------------------
# Importer
# ---------------------------------------------------------------------------


class TestImportVulnerabilities:
    def test_imports_every_item(self, store):
        fetch = _fetch_returning(_item("CVE-2024-0001"), _item("CVE-2024-0002"), _item("CVE-2024-0003"))
        result = import_vulnerabilities(store, START, END, fetch=fetch, batch_size=2)
        assert result.imported == 3
        assert fetch.calls == [(START, END)]
        assert [e.id for e in store.list_vulnerabilities()] == ["CVE-2024-0001", "CVE-2024-0002", "CVE-2024-0003"]

    def test_reimport_replaces_fields(self, store):
        import_vulnerabilities(store, START, END, fetch=_fetch_returning(_item("CVE-2024-0001", product="viewer")))
        import_vulnerabilities(store, START, END, fetch=_fetch_returning(_item("CVE-2024-0001", product="scanner")))
        entry = store.get_vulnerability("CVE-2024-0001")
        assert entry.products == ["scanner"]
        assert len(store.list_vulnerabilities()) == 1

    def test_feed_failure_writes_nothing(self, store):
        def failing(start, end):
            raise FeedError("NVD request failed: timeout")

        with pytest.raises(FeedError):
            import_vulnerabilities(store, START, END, fetch=failing)
        assert store.list_vulnerabilities() == []

    def test_unkeyed_item_aborts_before_writing(self, store):
        fetch = _fetch_returning(_item("CVE-2024-0001"), {"cve": {"descriptions": []}})
        with pytest.raises(ValueError):
            import_vulnerabilities(store, START, END, fetch=fetch)
        assert store.list_vulnerabilities() == []

    def test_on_complete_failure_does_not_fail_import(self, store):
        def boom():
            raise RuntimeError("matcher down")

        result = import_vulnerabilities(store, START, END, fetch=_fetch_returning(_item("CVE-2024-0001")), on_complete=boom)
        assert result.imported == 1

    def test_rejects_zero_batch_size(self, store):
        with pytest.raises(ValueError):
            import_vulnerabilities(store, START, END, fetch=_fetch_returning(), batch_size=0)

    def test_store_failure_keeps_earlier_batches(self, store):
        fetch = _fetch_returning(*[_item(f"CVE-2024-000{n}") for n in range(1, 6)])
        real_upsert = store.upsert_vulnerabilities
        batches = []

        def upsert_then_fail(batch):
            batches.append([e.id for e in batch])
            if len(batches) == 2:
                raise RuntimeError("database is locked")
            return real_upsert(batch)

        store.upsert_vulnerabilities = upsert_then_fail
        follow_up = []

        with pytest.raises(RuntimeError):
            import_vulnerabilities(store, START, END, fetch=fetch, batch_size=2, on_complete=lambda: follow_up.append(1))

        assert len(batches) == 2
        assert [e.id for e in store.list_vulnerabilities()] == ["CVE-2024-0001", "CVE-2024-0002"]
        assert follow_up == []


class TestSyncRecent:
    def test_window_and_rematch(self, store, make_device):
        device = make_device(manufacturer="Acme Medical", model="Scanner 9000")
        fetch = _fetch_returning(_item("CVE-2024-0001"))

        result = sync_recent(store, days_back=7, now=END, fetch=fetch)

        assert result.imported == 1
        assert fetch.calls == [(datetime(2024, 3, 1, tzinfo=timezone.utc), END)]
        assert store.get_device(device.id).vulnerability_link_count == 1

    def test_rejects_non_positive_days(self, store):
        with pytest.raises(ValueError):
            sync_recent(store, days_back=0, now=END, fetch=_fetch_returning())


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------


class TestMatchAll:
    def test_creates_links_and_counter(self, store, org_id, make_device):
        store.upsert_vulnerabilities([_entry("CVE-2024-0001"), _entry("CVE-2024-0002", vendors=["philips"])])
        device = make_device()

        result = match_all(store, org_id)

        assert result.new_links_created == 1
        assert result.devices_processed == 1
        assert store.get_link(device.id, "CVE-2024-0001").status == "active"
        assert store.get_device(device.id).vulnerability_link_count == 1

    def test_second_run_is_a_no_op(self, store, org_id, make_device):
        store.upsert_vulnerabilities([_entry("CVE-2024-0001"), _entry("CVE-2024-0002")])
        device = make_device()
        match_all(store, org_id)
        logs_before = store.list_device_logs(device.id)

        second = match_all(store, org_id)

        assert second.new_links_created == 0
        assert store.count_links(device.id) == 2
        assert store.get_device(device.id).vulnerability_link_count == 2
        assert len(store.list_device_logs(device.id)) == len(logs_before)

    def test_existing_link_not_duplicated(self, store, org_id, make_device):
        store.upsert_vulnerabilities([_entry("CVE-2024-0001")])
        device = make_device()
        store.create_link(
            VulnerabilityLink(device_id=device.id, vulnerability_id="CVE-2024-0001", organization_id=org_id, status="patched")
        )

        result = match_all(store, org_id)

        assert result.new_links_created == 0
        assert store.count_links(device.id) == 1
        assert store.get_link(device.id, "CVE-2024-0001").status == "patched"
        assert store.get_device(device.id).vulnerability_link_count == 1

    def test_link_created_concurrently_is_skipped(self):
        store = _InterleavedLinkStore("sqlite:///:memory:")
        try:
            org = store.create_organization(Organization(name="Race Clinic"))
            device_id = store.create_device(
                Device(organization_id=org, manufacturer="Acme Medical", model="Scanner 9000", name="CT-01")
            )
            store.upsert_vulnerabilities([_entry("CVE-2024-0001")])

            result = match_all(store, org)

            assert store.interleaved == [(device_id, "CVE-2024-0001")]
            assert result.new_links_created == 0
            assert store.count_links(device_id) == 1
            assert store.get_device(device_id).vulnerability_link_count == 1
        finally:
            store.close()

    def test_counter_counts_links_of_every_status(self, store, org_id, make_device):
        store.upsert_vulnerabilities([_entry("CVE-2024-0001"), _entry("CVE-2024-0002")])
        device = make_device()
        match_all(store, org_id)
        store.update_link_status(device.id, "CVE-2024-0001", "mitigated")

        match_all(store, org_id)

        assert store.get_device(device.id).vulnerability_link_count == store.count_links(device.id) == 2

    def test_counter_change_is_logged(self, store, org_id, make_device):
        store.upsert_vulnerabilities([_entry("CVE-2024-0001")])
        device = make_device()
        match_all(store, org_id)

        logs = store.list_device_logs(device.id)
        assert len(logs) == 1
        assert logs[0].type == "cve_match"
        assert (logs[0].previous_value, logs[0].new_value) == ("0", "1")

    def test_skips_devices_without_manufacturer_or_model(self, store, org_id, make_device):
        store.upsert_vulnerabilities([_entry("CVE-2024-0001")])
        make_device(manufacturer="", model="Scanner")
        make_device(manufacturer="Acme", model="")
        matched = make_device()

        result = match_all(store, org_id)

        assert result.devices_skipped == 2
        assert result.devices_processed == 1
        assert result.new_links_created == 1
        assert store.get_device(matched.id).vulnerability_link_count == 1

    def test_unknown_organization(self, store):
        with pytest.raises(NotFoundError):
            match_all(store, 999)

    def test_all_organizations(self, store, org_id, make_device):
        from cmdb.models import Organization

        other = store.create_organization(Organization(name="Other Clinic", type="clinic"))
        store.upsert_vulnerabilities([_entry("CVE-2024-0001")])
        make_device()
        make_device(organization_id=other)
        assert match_all_organizations(store) == 2

    def test_seed_demo_links_matching_devices(self, store, make_device):
        device = make_device(manufacturer="Philips Healthcare", model="IntelliVue MX800")
        result = seed_demo_vulnerabilities(store)
        assert result.imported == 4
        assert store.get_link(device.id, "CVE-2022-29968") is not None


class TestRunMatch:
    def test_requires_principal(self, store, org_id):
        with pytest.raises(NotAuthenticatedError):
            run_match(store, None, org_id)

    def test_viewer_member_cannot_trigger(self, store, org_id, viewer):
        store.add_membership(Membership(user_id=viewer.id, organization_id=org_id))
        with pytest.raises(PermissionDeniedError):
            run_match(store, viewer, org_id)

    def test_analyst_member_can_trigger(self, store, org_id, analyst):
        store.add_membership(Membership(user_id=analyst.id, organization_id=org_id))
        assert run_match(store, analyst, org_id).new_links_created == 0


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestVulnerabilityReads:
    def test_device_links_sorted_by_severity(self, store, org_id, admin, make_device):
        store.upsert_vulnerabilities(
            [
                _entry("CVE-2024-0001", severity="LOW", score=2.0),
                _entry("CVE-2024-0002", severity=None, score=None),
                _entry("CVE-2024-0003", severity="CRITICAL", score=9.8),
                _entry("CVE-2024-0004", severity="HIGH", score=7.0),
            ]
        )
        device = make_device()
        match_all(store, org_id)

        _, links = get_device_vulnerabilities(store, admin, device.id)

        assert [item.link.vulnerability_id for item in links] == [
            "CVE-2024-0003",
            "CVE-2024-0004",
            "CVE-2024-0001",
            "CVE-2024-0002",
        ]

    def test_device_read_requires_principal_before_lookup(self, store):
        with pytest.raises(NotAuthenticatedError):
            get_device_vulnerabilities(store, None, 12345)

    def test_device_read_needs_membership(self, store, analyst, make_device):
        device = make_device()
        with pytest.raises(PermissionDeniedError):
            get_device_vulnerabilities(store, analyst, device.id)

    def test_organization_aggregate(self, store, org_id, admin, make_device):
        store.upsert_vulnerabilities([_entry("CVE-2024-0001", severity="CRITICAL", score=9.0), _entry("CVE-2024-0002")])
        first = make_device(name="CT-01")
        make_device(name="CT-02")
        match_all(store, org_id)
        store.update_link_status(first.id, "CVE-2024-0001", "patched")

        rows = get_organization_vulnerabilities(store, admin, org_id)

        assert [r["vulnerability_id"] for r in rows] == ["CVE-2024-0001", "CVE-2024-0002"]
        assert rows[0]["affected_devices"] == 2
        assert rows[0]["status_counts"]["patched"] == 1
        assert rows[0]["status_counts"]["active"] == 1


# ---------------------------------------------------------------------------
# Status changes
# ---------------------------------------------------------------------------


class TestLinkStatus:
    def test_mitigated_stamps_time(self, store, org_id, admin, make_device):
        store.upsert_vulnerabilities([_entry("CVE-2024-0001")])
        device = make_device()
        match_all(store, org_id)

        link = update_link_status(store, admin, device.id, "CVE-2024-0001", "mitigated", notes="segmented VLAN")

        assert link.status == "mitigated"
        assert link.mitigated_at
        assert link.notes == "segmented VLAN"
        assert store.list_device_logs(device.id)[0].type == "status_change"

    def test_accepted_does_not_stamp(self, store, org_id, admin, make_device):
        store.upsert_vulnerabilities([_entry("CVE-2024-0001")])
        device = make_device()
        match_all(store, org_id)
        link = update_link_status(store, admin, device.id, "CVE-2024-0001", "accepted")
        assert link.mitigated_at is None

    def test_invalid_status(self, store, admin, make_device):
        device = make_device()
        with pytest.raises(InvalidInputError):
            update_link_status(store, admin, device.id, "CVE-2024-0001", "fixed")

    def test_unlinked_vulnerability(self, store, admin, make_device):
        device = make_device()
        with pytest.raises(NotFoundError):
            update_link_status(store, admin, device.id, "CVE-2024-9999", "patched")

    def test_requires_principal(self, store, make_device):
        device = make_device()
        with pytest.raises(NotAuthenticatedError):
            update_link_status(store, None, device.id, "CVE-2024-0001", "patched")

    def test_viewer_cannot_change(self, store, org_id, viewer, make_device):
        store.add_membership(Membership(user_id=viewer.id, organization_id=org_id))
        device = make_device()
        with pytest.raises(PermissionDeniedError):
            update_link_status(store, viewer, device.id, "CVE-2024-0001", "patched")

    def test_bulk_update(self, store, org_id, admin, make_device):
        store.upsert_vulnerabilities([_entry("CVE-2024-0001")])
        devices = [make_device(name=f"CT-0{i}") for i in range(3)]
        match_all(store, org_id)

        assert bulk_update_link_status(store, admin, org_id, "CVE-2024-0001", "patched") == 3
        assert all(store.get_link(d.id, "CVE-2024-0001").status == "patched" for d in devices)

    def test_bulk_update_unknown_vulnerability(self, store, org_id, admin):
        with pytest.raises(NotFoundError):
            bulk_update_link_status(store, admin, org_id, "CVE-2024-9999", "patched")
