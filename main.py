#!/usr/bin/env python3
"""
CryptIoMT -- medical device vulnerability matching and risk reporting.

Operator CLI for the jobs the API server otherwise runs on a schedule.
Commands act directly on the configured databases as an administrator.

Usage:
  python main.py sync [--days N]
  python main.py seed-demo
  python main.py match ORG_ID
  python main.py run-reports
  python main.py check-alerts
  python main.py snapshot
  python main.py import-devices ORG_ID FILE
  python main.py export-devices ORG_ID > devices.csv
  python main.py summary ORG_ID [--no-color]

Environment variables:
  NVD_API_KEY    Optional NVD API key (higher NVD rate limit).
  DATABASE_URL   Registry database (default: sqlite file under cmdb/).
"""

import argparse
import logging
import sys
from pathlib import Path

from auth.models import User
from cmdb.alerts import check_device_alerts
from cmdb.errors import CMDBError
from cmdb.ingest import parse_device_csv, replace_devices
from cmdb.orgs import export_devices
from cmdb.reports import ReportDispatcher, advance_due_schedules
from cmdb.risk import capture_risk_snapshots, classify, risk_summary
from cmdb.store import CMDBStore
from cmdb.sync import match_all, seed_demo_vulnerabilities, sync_recent
from core.config import get_settings, now_utc
from core.fetcher import FeedError
from core.formatter import disable_color, print_risk_summary

logger = logging.getLogger("cryptiomt.cli")

# Commands run with operator rights: whoever can run this has the database.
_OPERATOR = User(username="cli", role="admin", id=0)


def _read_file(path: str) -> str:
    """Read a UTF-8 text file, refusing anything that is not a regular file."""
    file_path = Path(path).resolve()
    if not file_path.is_file():
        raise CMDBError(f"'{path}' is not a readable file")
    try:
        return file_path.read_text(encoding="utf-8-sig")
    except OSError as e:
        raise CMDBError(f"could not read '{path}': {e}") from e


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_sync(store: CMDBStore, args: argparse.Namespace) -> None:
    days = args.days if args.days is not None else get_settings().manual_sync_days_back
    print(f"Importing vulnerabilities published in the last {days} day(s)...", end=" ", flush=True)
    result = sync_recent(store, days_back=days)
    print(f"{result.imported} entries imported; organizations re-matched.")


def cmd_seed_demo(store: CMDBStore, args: argparse.Namespace) -> None:
    result = seed_demo_vulnerabilities(store)
    print(f"{result.imported} demo vulnerability entries written.")


def cmd_match(store: CMDBStore, args: argparse.Namespace) -> None:
    result = match_all(store, args.org_id)
    print(
        f"{result.devices_processed} device(s) matched, {result.devices_skipped} skipped, "
        f"{result.new_links_created} new link(s)."
    )


def cmd_run_reports(store: CMDBStore, args: argparse.Namespace) -> None:
    dispatcher = ReportDispatcher(store)
    try:
        result = advance_due_schedules(store, now_utc(), dispatcher.enqueue)
    finally:
        dispatcher.shutdown(wait=True)
    print(f"{result.processed} report(s) sent, {len(result.skipped)} schedule(s) skipped.")


def cmd_check_alerts(store: CMDBStore, args: argparse.Namespace) -> None:
    print(f"{check_device_alerts(store)} notification(s) created.")


def cmd_snapshot(store: CMDBStore, args: argparse.Namespace) -> None:
    print(f"{capture_risk_snapshots(store)} risk snapshot(s) written.")


def cmd_import_devices(store: CMDBStore, args: argparse.Namespace) -> None:
    devices, errors = parse_device_csv(_read_file(args.file), args.org_id)
    for error in errors:
        print(f"  [!] {error}", file=sys.stderr)
    if not devices:
        raise CMDBError("no importable devices in file; inventory left unchanged")
    result = replace_devices(store, _OPERATOR, args.org_id, devices)
    print(f"{result['imported']} device(s) imported, {result['removed']} removed (batch {result['batch']}).")
    match = match_all(store, args.org_id)
    print(f"{match.new_links_created} vulnerability link(s) created.")


def cmd_export_devices(store: CMDBStore, args: argparse.Namespace) -> None:
    sys.stdout.write(export_devices(store, _OPERATOR, args.org_id))


def cmd_summary(store: CMDBStore, args: argparse.Namespace) -> None:
    org = store.get_organization(args.org_id)
    if org is None:
        raise CMDBError(f"organization {args.org_id} not found")
    devices = store.list_devices(org.id)
    summary = risk_summary(devices)
    rows = [
        (d.name, d.manufacturer, d.model, classify(d), d.vulnerability_link_count)
        for d in sorted(devices, key=lambda d: -d.vulnerability_link_count)
    ]
    print_risk_summary(f"{org.name} -- risk score {summary['risk_score']}", summary["counts"], rows)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cryptiomt",
        description="Medical device vulnerability matching, risk classification and reporting.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py sync --days 7
  python main.py import-devices 1 inventory.csv
  python main.py export-devices 1 > devices.csv
  NVD_API_KEY=your-key python main.py sync
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log at DEBUG level")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("sync", help="Import recent NVD entries, then re-match every organization")
    p.add_argument("--days", type=int, default=None, metavar="N", help="Look back N days (default: 30)")
    p.set_defaults(func=cmd_sync)

    p = sub.add_parser("seed-demo", help="Write a handful of demo vulnerability entries")
    p.set_defaults(func=cmd_seed_demo)

    p = sub.add_parser("match", help="Match one organization's devices against the catalog")
    p.add_argument("org_id", type=int, metavar="ORG_ID")
    p.set_defaults(func=cmd_match)

    p = sub.add_parser("run-reports", help="Send every report schedule that is due")
    p.set_defaults(func=cmd_run_reports)

    p = sub.add_parser("check-alerts", help="Create offline and vulnerability notifications")
    p.set_defaults(func=cmd_check_alerts)

    p = sub.add_parser("snapshot", help="Record today's risk snapshot for every organization")
    p.set_defaults(func=cmd_snapshot)

    p = sub.add_parser("import-devices", help="Replace an organization's inventory from a CSV file")
    p.add_argument("org_id", type=int, metavar="ORG_ID")
    p.add_argument("file", metavar="FILE")
    p.set_defaults(func=cmd_import_devices)

    p = sub.add_parser("export-devices", help="Write an organization's inventory as CSV to stdout")
    p.add_argument("org_id", type=int, metavar="ORG_ID")
    p.set_defaults(func=cmd_export_devices)

    p = sub.add_parser("summary", help="Print an organization's risk summary")
    p.add_argument("org_id", type=int, metavar="ORG_ID")
    p.add_argument("--no-color", action="store_true", help="Disable ANSI color codes")
    p.set_defaults(func=cmd_summary)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 2

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    if getattr(args, "no_color", False):
        disable_color()

    store = CMDBStore()
    try:
        args.func(store, args)
    except FeedError as e:
        print(f"\n  [!] Vulnerability feed unavailable: {e}", file=sys.stderr)
        return 1
    except (CMDBError, ValueError) as e:
        print(f"  [!] {e}", file=sys.stderr)
        return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
