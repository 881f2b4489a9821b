"""
tests/test_formatter.py -- CSV and HTML rendering in core/formatter.py.

Covers:
  - to_csv: header line, comma substitution, booleans and lists, flattened newlines
  - to_html_report: escaping of every text input, SafeHTML passthrough
  - badge: known and unknown levels
  - print_risk_summary with color disabled
"""

from core.formatter import SafeHTML, badge, disable_color, print_risk_summary, to_csv, to_html_report


class TestToCsv:
    def test_header_and_rows(self):
        out = to_csv([{"a": 1, "b": "x"}, {"a": 2}], ["a", "b"])
        assert out == "a,b\n1,x\n2,\n"

    def test_commas_become_semicolons(self):
        assert to_csv([{"v": "Acme, Inc."}], ["v"]).splitlines()[1] == "Acme; Inc."

    def test_booleans_and_lists(self):
        out = to_csv([{"f": True, "g": False, "l": ["a", "b"]}], ["f", "g", "l"])
        assert out.splitlines()[1] == "Yes,No,a; b"

    def test_line_breaks_flattened(self):
        out = to_csv([{"v": "line1\nline2\r\n"}], ["v"])
        assert len(out.splitlines()) == 2


class TestHtmlReport:
    def test_text_inputs_are_escaped(self):
        body = to_html_report(
            title="<b>Org</b>",
            subtitle="a & b",
            summary=[("<i>label</i>", "<script>")],
            tables=[("<h>", ["<col>"], [["<td>"]])],
            logo_url='https://x.test/logo.png" onerror="alert(1)',
        )
        assert "<b>Org</b>" not in body
        assert "&lt;b&gt;Org&lt;/b&gt;" in body
        assert "a &amp; b" in body
        assert "<script>" not in body
        assert "&lt;td&gt;" in body
        assert 'onerror="alert(1)' not in body

    def test_safe_html_cells_pass_through(self):
        body = to_html_report("T", "S", [], tables=[("H", ["Severity"], [[badge("critical")]])])
        assert '<span class="badge" style="background:#dc2626">critical</span>' in body

    def test_no_logo_without_url(self):
        assert "<img" not in to_html_report("T", "S", [])


class TestBadge:
    def test_unknown_level_is_grey_and_escaped(self):
        out = badge("<odd>")
        assert isinstance(out, SafeHTML)
        assert "#6b7280" in out
        assert "&lt;odd&gt;" in out


class TestPrintRiskSummary:
    def test_plain_output(self, capsys):
        disable_color()
        print_risk_summary("St. Example", {"critical": 2, "low": 1}, [("CT-01", "Acme", "Scanner", "critical", 4)])
        out = capsys.readouterr().out
        assert "St. Example" in out
        assert "CRITICAL" in out
        assert "CT-01" in out
        assert "\033[" not in out
