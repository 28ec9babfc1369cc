import io
import json
import xml.etree.ElementTree as ET

import pytest

from compatmatrix.core.aggregator import ResultAggregator
from compatmatrix.core.correlator import correlate
from compatmatrix.core.reporter import (
    ARTIFACT_NAMES,
    append_step_summary,
    print_plan,
    print_summary,
    render_github,
    render_json,
    render_junit,
    render_markdown,
    write_reports,
)
from compatmatrix.models import CellState, ReportFormat

from .conftest import make_cell, make_config, make_plan, make_record


def _records():
    return [
        make_record("1.8.0", "linux", state=CellState.PASSED, duration=12),
        make_record("1.8.0", "darwin", state=CellState.FAILED, duration=4,
                    error="exit code 1", output_tail="--- FAIL: TestThing\nboom, 100%"),
        make_record("1.9.0", "linux", state=CellState.TIMED_OUT, duration=60, error="timed out after 60s"),
        make_record("1.9.0", "darwin", state=CellState.SKIPPED, duration=0, error="no binary"),
        make_record("1.10.0", "linux", state=CellState.CANCELLED, duration=0),
        make_record("1.10.0", "darwin", state=CellState.FAILED, duration=3, error="exit code 2"),
    ]


@pytest.fixture
def report(tmp_path):
    records = _records()
    return ResultAggregator(make_config(tmp_path)).aggregate(
        records, preset="minimal", correlation=correlate(records, 0.5),
    )


@pytest.fixture
def report_with_logs(tmp_path):
    config = make_config(tmp_path, include_logs=True)
    return ResultAggregator(config).aggregate(_records(), preset="minimal")


class TestJson:
    def test_drops_output_without_include_logs(self, report):
        data = json.loads(render_json(report))
        assert data["preset"] == "minimal"
        assert data["summary"]["pass_rate"] == pytest.approx(0.2)
        assert all("output_tail" not in r for r in data["records"])

    def test_keeps_output_with_include_logs(self, report_with_logs):
        data = json.loads(render_json(report_with_logs))
        tails = [r["output_tail"] for r in data["records"] if r["state"] == "failed"]
        assert "--- FAIL: TestThing\nboom, 100%" in tails


class TestMarkdown:
    def test_sections(self, report):
        text = render_markdown(report)
        assert "# Compatibility Matrix Report" in text
        assert "## Failure correlation" in text
        assert "Trend analysis unavailable: trend analysis disabled." in text
        assert "`1.8.0/darwin/amd64/unit` failed" in text
        assert "Partial report" not in text
        assert "```" not in text

    def test_logs_and_partial(self, tmp_path):
        config = make_config(tmp_path, include_logs=True)
        report = ResultAggregator(config).aggregate(_records(), preset="minimal", partial=True)
        text = render_markdown(report)
        assert "Partial report" in text
        assert "  --- FAIL: TestThing" in text


class TestJunit:
    def test_structure(self, report):
        root = ET.fromstring(render_junit(report).split("\n", 1)[1])
        assert root.tag == "testsuites"
        assert root.get("tests") == "6"
        assert root.get("failures") == "2"
        assert root.get("errors") == "1"
        assert root.get("skipped") == "2"
        cases = {c.get("name"): c for c in root.iter("testcase")}
        assert cases["1.8.0/darwin/amd64/unit"].find("failure").get("message") == "exit code 1"
        assert cases["1.9.0/linux/amd64/unit"].find("error").get("type") == "timeout"
        assert cases["1.9.0/darwin/amd64/unit"].find("skipped") is not None
        assert cases["1.10.0/linux/amd64/unit"].find("skipped").get("message") == "cancelled"
        assert list(cases["1.8.0/linux/amd64/unit"]) == []

    def test_declaration(self, report):
        assert render_junit(report).startswith("<?xml")


class TestGithub:
    def test_annotations(self, report):
        lines = render_github(report).splitlines()
        errors = [l for l in lines if l.startswith("::error title=1.")]
        assert len(errors) == 3
        assert any(l.startswith("::warning title=suspect ") for l in lines)
        assert lines[-1] == "::error title=Pass rate::20.0% (threshold 80.0%)"

    def test_escaping(self, report_with_logs):
        text = render_github(report_with_logs)
        line = next(l for l in text.splitlines() if "1.8.0/darwin" in l)
        assert line.startswith("::error title=1.8.0/darwin/amd64/unit failed::")
        assert "exit code 1%0A--- FAIL: TestThing%0Aboom, 100%25" in line

    def test_property_escaping(self, report):
        text = render_github(report)
        assert "::warning title=suspect os=darwin::2/3 cells failed" in text
        for line in text.splitlines():
            title = line.split("title=", 1)[1].split("::", 1)[0]
            assert ":" not in title and "," not in title

    def test_threshold_met_is_notice(self, tmp_path):
        records = [make_record("1.8.0"), make_record("1.9.0")]
        report = ResultAggregator(make_config(tmp_path)).aggregate(records, preset="minimal")
        assert render_github(report).strip() == "::notice title=Pass rate::100.0% (threshold 80.0%)"


class TestWrite:
    def test_writes_requested_formats(self, report, tmp_path, monkeypatch):
        monkeypatch.delenv("GITHUB_STEP_SUMMARY", raising=False)
        out = tmp_path / "reports"
        paths = write_reports(report, [ReportFormat.JSON, ReportFormat.JUNIT], out)
        assert [p.name for p in paths] == [
            ARTIFACT_NAMES[ReportFormat.JSON], ARTIFACT_NAMES[ReportFormat.JUNIT],
        ]
        assert all(p.exists() for p in paths)
        assert not (out / "report.md").exists()

    def test_github_appends_step_summary(self, report, tmp_path, monkeypatch):
        summary = tmp_path / "step-summary.md"
        monkeypatch.setenv("GITHUB_STEP_SUMMARY", str(summary))
        write_reports(report, [ReportFormat.GITHUB], tmp_path / "reports")
        assert "# Compatibility Matrix Report" in summary.read_text()

    def test_step_summary_unset(self, report):
        assert append_step_summary(report, env={}) is None

    def test_step_summary_appends(self, report, tmp_path):
        target = tmp_path / "summary.md"
        target.write_text("existing\n")
        append_step_summary(report, env={"GITHUB_STEP_SUMMARY": str(target)})
        text = target.read_text()
        assert text.startswith("existing\n# Compatibility Matrix Report")


class TestConsole:
    def test_summary_plain(self, report):
        out = io.StringIO()
        print_summary(report, out)
        text = out.getvalue()
        assert "\033[" not in text
        assert "1 passed, 2 failed, 1 timed out, 1 skipped, 1 cancelled of 6" in text
        assert "THRESHOLD NOT MET" in text
        assert "└─ exit code 1" in text
        assert "Suspects:" in text

    def test_summary_color(self, report):
        out = io.StringIO()
        print_summary(report, out, use_color=True)
        assert "\033[31m" in out.getvalue()

    def test_plan(self):
        plan = make_plan([make_cell("1.8.0", cost=30), make_cell("1.9.0", cost=90)])
        out = io.StringIO()
        print_plan(plan, out)
        text = out.getvalue()
        assert "2 cells, estimated 120s of work" in text
        assert "1.9.0/linux/amd64/unit" in text


def test_junit_strips_control_characters(tmp_path):
    records = [
        make_record("1.8.0", state=CellState.FAILED, error="exit code 1\x07",
                    output_tail="\x1b[31mFAIL\x1b[0m\x00 done\n"),
    ]
    report = ResultAggregator(make_config(tmp_path, include_logs=True)).aggregate(
        records, preset="minimal",
    )
    root = ET.fromstring(render_junit(report).split("\n", 1)[1])
    failure = root.find("./testsuite/testcase/failure")
    assert failure.get("message") == "exit code 1"
    assert failure.text == "FAIL done\n"
