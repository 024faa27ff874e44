"""
Tests for SuiteReport aggregation and rendering.
"""
import io

from rich.console import Console

from conformance.core.json_utils import loads
from conformance.report import ABORTED, FAIL, PASS, ScenarioResult, SuiteReport


def report_with(*verdicts):
    report = SuiteReport(venue="sim", profile="test")
    for i, verdict in enumerate(verdicts):
        failure_kind = None if verdict == PASS else ("connection" if verdict == ABORTED else "outcome")
        report.add(ScenarioResult(
            label=f"s{i}",
            verdict=verdict,
            expected_outcome="FILLED",
            failure_kind=failure_kind,
            error=None if verdict == PASS else {"message": "boom"},
        ))
    report.finish()
    return report


class TestSuiteReport:

    def test_all_pass(self):
        report = report_with(PASS, PASS)
        assert report.ok
        assert report.exit_code == 0

    def test_any_failure_fails(self):
        report = report_with(PASS, FAIL)
        assert not report.ok
        assert report.exit_code == 1
        assert report.failures_by_kind() == {"outcome": 1}

    def test_abort_fails(self):
        report = report_with(PASS)
        report.aborted_reason = {"kind": "connection", "message": "gone"}
        assert not report.ok

    def test_bad_holdings_check_fails(self):
        report = report_with(PASS)
        report.holdings_check = {"ok": False, "problems": ["x"]}
        assert not report.ok

    def test_summary(self):
        data = loads(report_with(PASS, FAIL, ABORTED).to_json())
        assert data["summary"] == {
            "total": 3,
            "passed": 1,
            "failed": 1,
            "aborted": 1,
            "failures_by_kind": {"outcome": 1, "connection": 1},
            "ok": False,
        }
        assert [s["verdict"] for s in data["scenarios"]] == ["pass", "fail", "aborted"]

    def test_write_creates_directories(self, tmp_path):
        path = tmp_path / "nested" / "dir" / "report.json"
        report_with(PASS).write(str(path))
        assert loads(path.read_bytes())["venue"] == "sim"

    def test_render(self):
        buf = io.StringIO()
        report = report_with(PASS, FAIL)
        report.aborted_reason = {"message": "lost venue"}
        report.render(Console(file=buf, width=200, color_system=None))
        out = buf.getvalue()
        assert "s0" in out and "s1" in out
        assert "outcome: boom" in out
        assert "passed=1 failed=1 aborted=0" in out
        assert "lost venue" in out
