"""Render an AggregatedReport.

Every artifact is derived from the same frozen report value:
json, markdown, JUnit XML, GitHub workflow-command annotations, and the
console summary table.
"""

from __future__ import annotations

import json
import logging
import os
import re
import sys
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Callable, TextIO

from compatmatrix.models import (
    AggregatedReport,
    CellState,
    Dimension,
    ExecutionPlan,
    ReportFormat,
    ResultRecord,
)

logger = logging.getLogger(__name__)

ARTIFACT_NAMES: dict[ReportFormat, str] = {
    ReportFormat.JSON: "report.json",
    ReportFormat.MARKDOWN: "report.md",
    ReportFormat.JUNIT: "junit.xml",
    ReportFormat.GITHUB: "github-annotations.txt",
}

# ANSI color codes (disabled if not a tty)
_GREEN = "\033[32m"
_RED = "\033[31m"
_YELLOW = "\033[33m"
_RESET = "\033[0m"
_BOLD = "\033[1m"

STATUS_COLORS = {
    "passed": _GREEN,
    "failed": _RED,
    "timed_out": _RED,
    "skipped": _YELLOW,
    "cancelled": _YELLOW,
}

_STATUS_ICONS = {
    CellState.PASSED: "✅",
    CellState.FAILED: "❌",
    CellState.TIMED_OUT: "⏱️",
    CellState.SKIPPED: "⏭️",
    CellState.CANCELLED: "🚫",
}

_DIMENSION_TITLES = {
    Dimension.TOOL_VERSION: "Tool version",
    Dimension.OS: "Operating system",
    Dimension.ARCH: "Architecture",
    Dimension.SUITE: "Suite",
}


def _color(text: str, status: str, use_color: bool) -> str:
    if not use_color:
        return text
    c = STATUS_COLORS.get(status, "")
    return f"{c}{text}{_RESET}" if c else text


# ── JSON ────────────────────────────────────────────────────────


def render_json(report: AggregatedReport) -> str:
    data = report.model_dump(mode="json")
    data["summary"]["pass_rate"] = report.summary.pass_rate
    if not report.include_logs:
        for rec in data["records"]:
            rec.pop("output_tail", None)
    return json.dumps(data, indent=2)


# ── Markdown ────────────────────────────────────────────────────


def render_markdown(report: AggregatedReport) -> str:
    s = report.summary
    t = report.threshold
    lines = ["# Compatibility Matrix Report", ""]
    if report.partial:
        lines += ["> **Partial report**: the run was cancelled before all cells ran.", ""]
    verdict = "✅ threshold met" if t.met else "❌ threshold not met"
    lines += [
        f"Generated {report.generated_at.isoformat()} (preset `{report.preset}`)",
        "",
        "## Summary",
        "",
        "| Total | Passed | Failed | Timed out | Skipped | Cancelled | Pass rate |",
        "|---|---|---|---|---|---|---|",
        f"| {s.total} | {s.passed} | {s.failed} | {s.timed_out} | {s.skipped} "
        f"| {s.cancelled} | {t.pass_rate_pct:.1f}% |",
        "",
        f"**Verdict:** {verdict} (threshold {t.threshold_pct:.1f}%)",
        "",
    ]

    d = report.durations
    if d.count:
        lines += [
            "## Durations",
            "",
            "| Executed | Mean | p50 | p90 | p99 | Total |",
            "|---|---|---|---|---|---|",
            f"| {d.count} | {d.mean:.1f}s | {d.p50:.1f}s | {d.p90:.1f}s "
            f"| {d.p99:.1f}s | {d.total:.1f}s |",
            "",
        ]

    lines += ["## Breakdown", ""]
    for dim in Dimension:
        rows = report.breakdown_for(dim)
        if not rows:
            continue
        lines += [
            f"### {_DIMENSION_TITLES[dim]}",
            "",
            "| Value | Total | Passed | Failed | Timed out | Skipped | Pass rate | Mean |",
            "|---|---|---|---|---|---|---|---|",
        ]
        for b in rows:
            lines.append(
                f"| {b.value} | {b.total} | {b.passed} | {b.failed} | {b.timed_out} "
                f"| {b.skipped} | {b.pass_rate * 100:.1f}% | {b.mean_duration_sec:.1f}s |"
            )
        lines.append("")

    if report.correlation is not None:
        lines += ["## Failure correlation", ""]
        if report.correlation.suspects:
            lines += ["| Dimension | Value | Failed | Total | Ratio |", "|---|---|---|---|---|"]
            for sv in report.correlation.suspects:
                lines.append(
                    f"| {sv.dimension.value} | {sv.value} | {sv.failed} | {sv.total} "
                    f"| {sv.ratio:.2f} |"
                )
        else:
            lines.append(
                f"No dimension value reached the suspect threshold "
                f"({report.correlation.threshold:.2f})."
            )
        lines.append("")

    lines += ["## Trend", ""]
    tr = report.trend
    if tr.available:
        lines.append(
            f"Baseline from {tr.baseline_created_at.isoformat()}: pass rate "
            f"{tr.baseline_pass_rate * 100:.1f}% ({tr.pass_rate_delta_pp:+.1f} pp)."
        )
        for dim, deltas in tr.duration_deltas.items():
            parts = ", ".join(f"{v} {delta:+.1f}s" for v, delta in deltas.items())
            lines.append(f"- {_DIMENSION_TITLES[dim]}: {parts}")
    else:
        lines.append(f"Trend analysis unavailable: {tr.reason}.")
    lines.append("")

    if report.resource_usage:
        u = report.resource_usage
        lines += [
            "## Resource usage",
            "",
            f"CPU avg {u.get('cpu_avg_pct', 0):.1f}% / peak {u.get('cpu_peak_pct', 0):.1f}%, "
            f"memory avg {u.get('memory_avg_pct', 0):.1f}% / peak "
            f"{u.get('memory_peak_pct', 0):.1f}%.",
            "",
        ]

    failed = [r for r in report.records if r.state is not CellState.PASSED]
    if failed:
        lines += ["## Cells not passed", ""]
        for rec in failed:
            icon = _STATUS_ICONS.get(rec.state, "")
            detail = f": {rec.error}" if rec.error else ""
            classification = ""
            if report.correlation is not None and rec.cell_id in report.correlation.classification:
                classification = f" [{report.correlation.classification[rec.cell_id]}]"
            lines.append(f"- {icon} `{rec.cell_id}` {rec.state.value}{classification}{detail}")
            if report.include_logs and rec.state.is_failure and rec.output_tail:
                lines += ["", "  ```", *(f"  {ln}" for ln in rec.output_tail.splitlines()), "  ```"]
        lines.append("")

    return "\n".join(lines)


# ── JUnit ───────────────────────────────────────────────────────

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")
# Characters outside the XML 1.0 Char production
_XML_INVALID = re.compile(r"[^\x09\x0a\x0d\x20-\uD7FF\uE000-\uFFFD\U00010000-\U0010FFFF]")


def _xml_text(value: str) -> str:
    return _XML_INVALID.sub("", _ANSI_ESCAPE.sub("", value))


def render_junit(report: AggregatedReport) -> str:
    s = report.summary
    root = ET.Element(
        "testsuites",
        name="compatibility-matrix",
        tests=str(s.total),
        failures=str(s.failed),
        errors=str(s.timed_out),
        skipped=str(s.skipped + s.cancelled),
        time=f"{report.durations.total:.3f}",
    )
    by_suite: dict[str, list[ResultRecord]] = {}
    for rec in report.records:
        by_suite.setdefault(rec.suite.value, []).append(rec)
    for suite_name, records in by_suite.items():
        sub = [r.state for r in records]
        suite_el = ET.SubElement(
            root,
            "testsuite",
            name=suite_name,
            tests=str(len(records)),
            failures=str(sub.count(CellState.FAILED)),
            errors=str(sub.count(CellState.TIMED_OUT)),
            skipped=str(sub.count(CellState.SKIPPED) + sub.count(CellState.CANCELLED)),
            time=f"{sum(r.duration_sec for r in records):.3f}",
        )
        for rec in records:
            case = ET.SubElement(
                suite_el,
                "testcase",
                classname=f"{suite_name}.{rec.os}.{rec.arch}",
                name=rec.cell_id,
                time=f"{rec.duration_sec:.3f}",
            )
            if rec.state is CellState.FAILED:
                el = ET.SubElement(case, "failure", message=_xml_text(rec.error or "failed"))
                if report.include_logs:
                    el.text = _xml_text(rec.output_tail)
            elif rec.state is CellState.TIMED_OUT:
                el = ET.SubElement(
                    case, "error", type="timeout", message=_xml_text(rec.error or "timed out"),
                )
                if report.include_logs:
                    el.text = _xml_text(rec.output_tail)
            elif rec.state in (CellState.SKIPPED, CellState.CANCELLED):
                ET.SubElement(case, "skipped", message=_xml_text(rec.error or rec.state.value))
    ET.indent(root)
    return ET.tostring(root, encoding="unicode", xml_declaration=True) + "\n"


# ── GitHub ──────────────────────────────────────────────────────


def _escape_data(value: str) -> str:
    return value.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")


def _escape_property(value: str) -> str:
    return _escape_data(value).replace(":", "%3A").replace(",", "%2C")


def render_github(report: AggregatedReport) -> str:
    """Workflow-command annotations: one per failed cell and per suspect."""
    lines = []
    for rec in report.failed_records:
        title = _escape_property(f"{rec.cell_id} {rec.state.value}")
        message = rec.error or rec.state.value
        if report.include_logs and rec.output_tail:
            message = f"{message}\n{rec.output_tail}"
        lines.append(f"::error title={title}::{_escape_data(message)}")
    if report.correlation is not None:
        for sv in report.correlation.suspects:
            title = _escape_property(f"suspect {sv.dimension.value}={sv.value}")
            lines.append(
                f"::warning title={title}::{sv.failed}/{sv.total} cells failed "
                f"(ratio {sv.ratio:.2f})"
            )
    t = report.threshold
    level = "notice" if t.met else "error"
    lines.append(
        f"::{level} title=Pass rate::{t.pass_rate_pct:.1f}% "
        f"(threshold {t.threshold_pct:.1f}%)"
    )
    return "\n".join(lines) + "\n"


def append_step_summary(report: AggregatedReport, env: dict[str, str] | None = None) -> Path | None:
    """Append the markdown report to $GITHUB_STEP_SUMMARY when it is set."""
    env = os.environ if env is None else env
    target = env.get("GITHUB_STEP_SUMMARY")
    if not target:
        return None
    path = Path(target)
    with open(path, "a") as f:
        f.write(render_markdown(report))
        f.write("\n")
    logger.info("Appended summary to %s", path)
    return path


RENDERERS: dict[ReportFormat, Callable[[AggregatedReport], str]] = {
    ReportFormat.JSON: render_json,
    ReportFormat.MARKDOWN: render_markdown,
    ReportFormat.JUNIT: render_junit,
    ReportFormat.GITHUB: render_github,
}


def write_reports(
    report: AggregatedReport, formats: list[ReportFormat], reports_dir: Path,
) -> list[Path]:
    """Write one artifact per requested format.  Returns the written paths."""
    reports_dir.mkdir(parents=True, exist_ok=True)
    written = []
    for fmt in formats:
        path = reports_dir / ARTIFACT_NAMES[fmt]
        path.write_text(RENDERERS[fmt](report))
        logger.info("Wrote %s report to %s", fmt.value, path)
        written.append(path)
    if ReportFormat.GITHUB in formats:
        append_step_summary(report)
    return written


# ── Console ─────────────────────────────────────────────────────


def print_summary(
    report: AggregatedReport,
    out: TextIO = sys.stdout,
    use_color: bool | None = None,
) -> None:
    """Print a per-cell status table with totals and the verdict."""
    if use_color is None:
        use_color = hasattr(out, "isatty") and out.isatty()

    width = max([len(r.cell_id) for r in report.records] + [20])
    hdr = f"{'Cell':<{width}s}  {'Status':<9s}  {'Time':>8s}  {'Try':>3s}"
    sep = "-" * max(len(hdr) + 10, 70)
    out.write(f"\n{sep}\n")
    if use_color:
        out.write(f"{_BOLD}{hdr}{_RESET}\n")
    else:
        out.write(f"{hdr}\n")
    out.write(f"{sep}\n")

    for r in report.records:
        time_str = f"{r.duration_sec:.1f}s" if r.duration_sec > 0 else "-"
        status_str = _color(f"{r.state.value:<9s}", r.state.value, use_color)
        out.write(f"{r.cell_id:<{width}s}  {status_str}  {time_str:>8s}  {r.attempts:>3d}\n")
        if r.error and r.state is not CellState.PASSED:
            out.write(f"{'':<{width}s}  └─ {r.error}\n")

    out.write(f"{sep}\n")

    s = report.summary
    parts = [f"{s.passed} passed"]
    if s.failed:
        parts.append(_color(f"{s.failed} failed", "failed", use_color))
    if s.timed_out:
        parts.append(_color(f"{s.timed_out} timed out", "timed_out", use_color))
    if s.skipped:
        parts.append(_color(f"{s.skipped} skipped", "skipped", use_color))
    if s.cancelled:
        parts.append(_color(f"{s.cancelled} cancelled", "cancelled", use_color))
    out.write(f"{', '.join(parts)} of {s.total} in {report.durations.total:.1f}s\n")

    if report.correlation is not None and report.correlation.suspects:
        suspects = ", ".join(
            f"{sv.dimension.value}={sv.value} ({sv.ratio:.0%})"
            for sv in report.correlation.suspects
        )
        out.write(f"Suspects: {suspects}\n")

    t = report.threshold
    verdict_status = "passed" if t.met else "failed"
    verdict = "threshold met" if t.met else "THRESHOLD NOT MET"
    out.write(
        _color(
            f"Pass rate {t.pass_rate_pct:.1f}% (threshold {t.threshold_pct:.1f}%): {verdict}",
            verdict_status, use_color,
        )
    )
    if report.partial:
        out.write(_color("  [partial]", "cancelled", use_color))
    out.write("\n\n")


def print_plan(plan: ExecutionPlan, out: TextIO = sys.stdout) -> None:
    """Print the cells a run would execute, in plan order."""
    out.write(
        f"\nPlan '{plan.preset}': {len(plan)} cells, "
        f"estimated {plan.total_estimated_cost_sec:.0f}s of work\n"
    )
    out.write(f"  versions: {', '.join(plan.versions)}\n")
    out.write(f"  os:       {', '.join(plan.oses)}\n")
    out.write(f"  arch:     {', '.join(plan.archs)}\n")
    out.write(f"  suites:   {', '.join(s.value for s in plan.suites)}\n\n")
    for cell in plan.cells:
        out.write(f"  {cell.cell_id:<40s} ~{cell.estimated_cost_sec:.0f}s\n")
    out.write("\n")
