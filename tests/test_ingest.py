"""
tests/test_ingest.py -- Tests for cmdb/ingest.py inventory import and export.

Parsers are pure functions, tested directly with inline CSV text.
replace_devices() and the export use the in-memory store fixture.

Coverage: required columns, blank rows, flag parsing, custom column mapping,
the optional Last Seen column, owner assignment on import,
destructive replace semantics, admin-only access, and CSV export shape.
"""

import pytest

from cmdb.errors import InvalidInputError, PermissionDeniedError
from cmdb.ingest import EXPORT_COLUMNS, devices_to_csv, parse_device_csv, parse_device_rows, replace_devices
from cmdb.models import Device, Membership, VulnerabilityLink

HEADER = (
    "Name,Entity,Serial Number,Manufacturer,Model,Category,Classification,Technician,"
    "Customer PHI category,Device on network?,Has PHI,IP Address,MAC Address,OS manufacturer,OS Version"
)


def _csv(*rows):
    return "\n".join([HEADER, *rows]) + "\n"


# ===========================================================================
# Parsing
# ===========================================================================


class TestParseDeviceCsv:
    """Tests for the spreadsheet CSV parser."""

    def test_full_row(self):
        content = _csv(
            "CT-01,North Campus,SN-1,Acme Medical,Scanner 9000,Imaging,Class II,J. Doe,"
            "Critical,Yes,Y,10.0.0.5,00:11:22:33:44:55,Microsoft,Windows 7"
        )
        devices, errors = parse_device_csv(content, organization_id=4)

        assert errors == []
        d = devices[0]
        assert d.organization_id == 4
        assert (d.name, d.entity, d.serial_number) == ("CT-01", "North Campus", "SN-1")
        assert (d.manufacturer, d.model, d.category) == ("Acme Medical", "Scanner 9000", "Imaging")
        assert d.on_network is True
        assert d.has_phi is True
        assert d.phi_category == "Critical"
        assert d.ip_address == "10.0.0.5"
        assert d.os_version == "Windows 7"
        assert d.vulnerability_link_count == 0

    def test_optional_blank_cells_become_none(self):
        devices, _ = parse_device_csv(_csv("CT-01,,SN-1,Acme,Scanner,Imaging,,,,No,,,,,"), 1)
        d = devices[0]
        assert d.technician is None
        assert d.ip_address is None
        assert d.os_version is None
        assert d.entity == ""
        assert d.on_network is False
        assert d.has_phi is False

    def test_missing_required_columns_reported_by_row(self):
        content = _csv(
            "CT-01,,SN-1,Acme,Scanner,Imaging,,,,,,,,,",
            "CT-02,,,Acme,,Imaging,,,,,,,,,",
        )
        devices, errors = parse_device_csv(content, 1)
        assert [d.name for d in devices] == ["CT-01"]
        assert errors == ["Row 2: missing Serial Number, Model"]

    def test_blank_row_is_an_error(self):
        content = _csv("CT-01,,SN-1,Acme,Scanner,Imaging,,,,,,,,,", ",,,,,,,,,,,,,,")
        devices, errors = parse_device_csv(content, 1)
        assert len(devices) == 1
        assert errors == ["Row 2: empty row"]

    def test_leading_bom_is_ignored(self):
        devices, errors = parse_device_csv("\ufeff" + _csv("CT-01,,SN-1,Acme,Scanner,Imaging,,,,,,,,,"), 1)
        assert errors == []
        assert devices[0].name == "CT-01"

    def test_header_only(self):
        assert parse_device_csv(_csv(), 1) == ([], [])

    @pytest.mark.parametrize("flag", ["yes", "YES", "y", "true", "1", " Yes "])
    def test_truthy_flags(self, flag):
        devices, _ = parse_device_csv(_csv(f"CT-01,,SN-1,Acme,Scanner,Imaging,,,,{flag},,,,,"), 1)
        assert devices[0].on_network is True

    def test_last_seen_column(self):
        content = (
            "Name,Serial Number,Manufacturer,Model,Category,Last Seen\n"
            "CT-01,SN-1,Acme,Scanner,Imaging,2024-06-01T08:00:00+00:00\n"
            "CT-02,SN-2,Acme,Scanner,Imaging,\n"
            "CT-03,SN-3,Acme,Scanner,Imaging,last week\n"
        )
        devices, errors = parse_device_csv(content, 1)
        assert [(d.name, d.last_seen) for d in devices] == [("CT-01", "2024-06-01T08:00:00+00:00"), ("CT-02", None)]
        assert errors == ["Row 3: invalid Last Seen 'last week'"]


class TestParseDeviceRows:
    def test_custom_mapping(self):
        rows = [{"Asset": "Pump 7", "SN": "X1", "Vendor": "Baxter", "Product": "Sigma", "Type": "Infusion"}]
        mapping = {
            "name": "Asset",
            "serial_number": "SN",
            "manufacturer": "Vendor",
            "model": "Product",
            "category": "Type",
        }
        devices, errors = parse_device_rows(rows, 2, mapping)
        assert errors == []
        assert (devices[0].manufacturer, devices[0].model) == ("Baxter", "Sigma")

    def test_unknown_target_field_rejected(self):
        with pytest.raises(InvalidInputError):
            parse_device_rows([], 1, {"colour": "Color"})


# ===========================================================================
# Replace-all import
# ===========================================================================


class TestReplaceDevices:
    def test_replaces_inventory_and_drops_links(self, store, org_id, admin, make_device):
        old = make_device(name="OLD-1")
        store.create_link(VulnerabilityLink(device_id=old.id, vulnerability_id="CVE-2024-0001", organization_id=org_id))

        new = [Device(organization_id=0, manufacturer="Acme", model="Scanner", name="NEW-1")]
        result = replace_devices(store, admin, org_id, new)

        assert result["imported"] == 1
        assert result["removed"] == 1
        assert result["batch"]
        devices = store.list_devices(org_id)
        assert [d.name for d in devices] == ["NEW-1"]
        assert devices[0].organization_id == org_id
        assert devices[0].import_batch == result["batch"]
        assert store.get_device(old.id) is None
        assert store.get_link(old.id, "CVE-2024-0001") is None

    def test_other_organizations_untouched(self, store, org_id, admin, make_device):
        from cmdb.models import Organization

        other = store.create_organization(Organization(name="Other Clinic"))
        kept = make_device(organization_id=other)
        replace_devices(store, admin, org_id, [])
        assert store.get_device(kept.id) is not None

    def test_admin_only(self, store, org_id, analyst):
        store.add_membership(Membership(user_id=analyst.id, organization_id=org_id, member_role="admin"))
        with pytest.raises(PermissionDeniedError):
            replace_devices(store, analyst, org_id, [])

    def test_unowned_devices_are_assigned_to_the_importer(self, store, org_id, admin):
        devices = [
            Device(organization_id=0, manufacturer="Acme", model="Scanner", name="CT-01"),
            Device(organization_id=0, manufacturer="Acme", model="Scanner", name="CT-02", owner_id=7),
        ]
        replace_devices(store, admin, org_id, devices)
        owners = {d.name: d.owner_id for d in store.list_devices(org_id)}
        assert owners == {"CT-01": admin.id, "CT-02": 7}


# ===========================================================================
# Export
# ===========================================================================


class TestExport:
    def test_header_and_derived_columns(self):
        device = Device(
            organization_id=1,
            manufacturer="Acme, Inc.",
            model="Scanner",
            name="CT-01",
            os_version="Windows XP",
            on_network=True,
            vulnerability_link_count=3,
        )
        lines = devices_to_csv([device]).splitlines()
        assert lines[0] == ",".join(EXPORT_COLUMNS)
        cells = lines[1].split(",")
        assert len(cells) == len(EXPORT_COLUMNS)
        assert cells[EXPORT_COLUMNS.index("Manufacturer")] == "Acme; Inc."
        assert cells[EXPORT_COLUMNS.index("Device on network?")] == "Yes"
        assert cells[EXPORT_COLUMNS.index("Risk Level")] == "critical"
        assert cells[EXPORT_COLUMNS.index("Vulnerabilities")] == "3"

    def test_export_reimports(self):
        device = Device(
            organization_id=1, manufacturer="Acme", model="Scanner", name="CT-01", serial_number="SN-1", category="Imaging"
        )
        devices, errors = parse_device_csv(devices_to_csv([device]), 1)
        assert errors == []
        assert (devices[0].name, devices[0].serial_number) == ("CT-01", "SN-1")
