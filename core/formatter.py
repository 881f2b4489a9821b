"""
formatter.py -- Renders device and vulnerability data to terminal output, CSV, or HTML.

Inputs are plain dicts and tuples so the formatter stays independent of the
CMDB dataclasses.
"""

import html
import os
import sys
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Optional

W = 68  # output width

# ---------------------------------------------------------------------------
# ANSI color control
# ---------------------------------------------------------------------------


def _use_color() -> bool:
    """Return True if stdout is a TTY and color has not been disabled.

    Respects NO_COLOR env var (https://no-color.org) and checks sys.stdout.isatty().
    """
    if os.environ.get("NO_COLOR"):
        return False
    if os.environ.get("FORCE_COLOR"):
        return True
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


_color_enabled: Optional[bool] = None  # None = auto-detect


def disable_color() -> None:
    """Force-disable color output (called when --no-color flag is set)."""
    global _color_enabled
    _color_enabled = False


def _color_active() -> bool:
    if _color_enabled is not None:
        return _color_enabled
    return _use_color()


RISK_COLORS = {
    "critical": "\033[91m",  # red
    "high": "\033[93m",  # yellow
    "medium": "\033[94m",  # blue
    "low": "\033[92m",  # green
}


def _reset() -> str:
    return "\033[0m" if _color_active() else ""


def _bold() -> str:
    return "\033[1m" if _color_active() else ""


def _risk_color(level: str) -> str:
    return RISK_COLORS.get(level, "") if _color_active() else ""


def _bar(char: str = "═") -> str:
    return char * W


# ---------------------------------------------------------------------------
# Terminal renderer
# ---------------------------------------------------------------------------


def print_risk_summary(title: str, counts: Mapping[str, int], rows: Iterable[Sequence[Any]] = ()) -> None:
    """Print per-level device counts followed by an optional detail listing.

    counts keys are risk levels (critical/high/medium/low). rows are
    (name, manufacturer, model, risk_level, link_count) tuples.
    """
    bold = _bold()
    reset = _reset()

    print(f"\n{bold}{_bar()}{reset}")
    print(f"  {bold}{title}{reset}")
    print(f"{bold}{_bar()}{reset}")

    for level in ("critical", "high", "medium", "low"):
        color = _risk_color(level)
        print(f"  {color}{bold}{level.upper():<10}{reset} {counts.get(level, 0):>5}")

    rows = list(rows)
    if rows:
        print(f"\n  {'─' * (W - 2)}")
        for name, manufacturer, model, level, link_count in rows:
            color = _risk_color(level)
            label = f"{manufacturer} {model}"[:30]
            print(f"  {str(name)[:20]:<20} {label:<30} {color}{level:<8}{reset} {link_count:>3}")

    print(f"\n{_bar()}\n")


# ---------------------------------------------------------------------------
# CSV export
# ---------------------------------------------------------------------------


def _csv_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if isinstance(value, (list, tuple)):
        value = "; ".join(str(v) for v in value)
    return str(value).replace(",", ";").replace("\r", " ").replace("\n", " ")


def to_csv(rows: Iterable[Mapping[str, Any]], columns: Sequence[str]) -> str:
    """Render rows as comma-delimited text with a header line.

    Commas inside values become semicolons. No other quoting or escaping
    is applied, so the output opens cleanly in spreadsheet tools that split
    on commas. Line breaks inside values are flattened to spaces to keep one
    record per line.
    """
    lines = [",".join(columns)]
    for row in rows:
        lines.append(",".join(_csv_cell(row.get(col)) for col in columns))
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# HTML export
# ---------------------------------------------------------------------------

_SEVERITY_HTML_COLORS = {
    "CRITICAL": "#dc2626",
    "HIGH": "#ea580c",
    "MEDIUM": "#ca8a04",
    "LOW": "#16a34a",
    "critical": "#dc2626",
    "high": "#ea580c",
    "medium": "#ca8a04",
    "low": "#16a34a",
}

_HTML_STYLE = """
    body { font-family: Arial, sans-serif; margin: 32px; background: #f9fafb; color: #111827; }
    h1 { font-size: 1.5rem; margin-bottom: 4px; }
    h2 { font-size: 1.1rem; margin-top: 28px; }
    p.subtitle { color: #6b7280; margin-top: 0; margin-bottom: 24px; font-size: 0.9rem; }
    table { border-collapse: collapse; width: 100%; background: #ffffff; }
    th { background: #1f2937; color: #f9fafb; text-align: left; padding: 10px 12px; font-size: 0.85rem; }
    td { padding: 9px 12px; font-size: 0.85rem; border-bottom: 1px solid #e5e7eb; vertical-align: middle; }
    tr:nth-child(even) td { background: #f3f4f6; }
    .badge {
        display: inline-block; padding: 2px 10px; border-radius: 12px;
        color: #ffffff; font-weight: bold; font-size: 0.8rem;
    }
    ul.summary { padding-left: 18px; }
"""


class SafeHTML(str):
    """Pre-rendered markup that to_html_report() inserts without escaping."""


def badge(level: str) -> SafeHTML:
    """Colored pill for a severity or risk level. Unknown levels render grey."""
    color = _SEVERITY_HTML_COLORS.get(level, "#6b7280")
    return SafeHTML(f'<span class="badge" style="background:{color}">{html.escape(level)}</span>')


def to_html_report(
    title: str,
    subtitle: str,
    summary: Sequence[tuple[str, Any]],
    tables: Sequence[tuple[str, Sequence[str], Sequence[Sequence[str]]]] = (),
    logo_url: Optional[str] = None,
) -> str:
    """Render a self-contained HTML report suitable for an email body.

    summary is a list of (label, value) pairs. tables is a list of
    (heading, column headers, rows); row cells are escaped here except
    SafeHTML cells such as those produced by badge().
    """
    logo = f'  <img src="{html.escape(logo_url, quote=True)}" alt="" height="40">\n' if logo_url else ""
    summary_html = "\n".join(
        f"    <li><strong>{html.escape(label)}:</strong> {html.escape(str(value))}</li>" for label, value in summary
    )

    sections = []
    for heading, headers, rows in tables:
        head = "".join(f"<th>{html.escape(h)}</th>" for h in headers)
        body = "\n".join(
            "    <tr>" + "".join(f"<td>{_html_cell(c)}</td>" for c in row) + "</tr>" for row in rows
        )
        sections.append(
            f"  <h2>{html.escape(heading)}</h2>\n"
            "  <table>\n"
            f"    <thead><tr>{head}</tr></thead>\n"
            "    <tbody>\n"
            f"{body}\n"
            "    </tbody>\n"
            "  </table>\n"
        )

    return (
        "<!DOCTYPE html>\n"
        '<html lang="en">\n'
        "<head>\n"
        '  <meta charset="UTF-8">\n'
        f"  <title>{html.escape(title)}</title>\n"
        f"  <style>{_HTML_STYLE}  </style>\n"
        "</head>\n"
        "<body>\n"
        f"{logo}"
        f"  <h1>{html.escape(title)}</h1>\n"
        f'  <p class="subtitle">{html.escape(subtitle)}</p>\n'
        '  <ul class="summary">\n'
        f"{summary_html}\n"
        "  </ul>\n"
        f"{''.join(sections)}"
        "</body>\n"
        "</html>\n"
    )


def _html_cell(value: Any) -> str:
    if isinstance(value, SafeHTML):
        return value
    return html.escape("" if value is None else str(value))
