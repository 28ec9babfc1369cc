"""CLI entry point: compatmatrix / python -m compatmatrix

Usage:
    compatmatrix -m minimal                         # run the minimal preset
    compatmatrix -v 1.9.8 --suites unit,acceptance  # one version, two suites
    compatmatrix --max-parallel 8 --adaptive-parallelism --failure-correlation
    compatmatrix --generate-report --formats json,junit --threshold 90
    compatmatrix --validate-only -m extended        # print the plan only
    compatmatrix --report                           # re-render from saved raw results
    compatmatrix --presets                          # list presets
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import re
import sys
from pathlib import Path

from pydantic import ValidationError

from compatmatrix import __version__
from compatmatrix.config import RunConfig
from compatmatrix.core.aggregator import ResultAggregator
from compatmatrix.core.baseline import load_baseline
from compatmatrix.core.correlator import correlate
from compatmatrix.core.orchestrator import ExitCode, Orchestrator
from compatmatrix.core.planner import PRESETS
from compatmatrix.core.reporter import print_summary, write_reports
from compatmatrix.core.results_store import ResultStore
from compatmatrix.errors import AggregationError
from compatmatrix.models import ReportFormat, SuiteKind

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(r"^(?:(\d+)h)?(?:(\d+)m)?(?:(\d+(?:\.\d+)?)s)?$")


def parse_duration(text: str) -> float:
    """Parse ``90s``, ``15m``, ``1h30m`` or bare seconds into seconds."""
    text = text.strip().lower()
    try:
        value = float(text)
    except ValueError:
        pass
    else:
        if value <= 0:
            raise argparse.ArgumentTypeError(f"duration must be positive: '{text}'")
        return value
    m = _DURATION_RE.match(text)
    if not text or m is None or not any(m.groups()):
        raise argparse.ArgumentTypeError(f"invalid duration '{text}' (e.g. 90s, 15m, 1h30m)")
    hours, minutes, seconds = m.groups()
    total = int(hours or 0) * 3600 + int(minutes or 0) * 60 + float(seconds or 0)
    if total <= 0:
        raise argparse.ArgumentTypeError(f"duration must be positive: '{text}'")
    return total


def _csv(text: str) -> tuple[str, ...]:
    return tuple(p.strip() for p in text.split(",") if p.strip())


def _formats(text: str) -> tuple[str, ...]:
    values = _csv(text)
    valid = {f.value for f in ReportFormat}
    bad = [v for v in values if v not in valid]
    if bad:
        raise argparse.ArgumentTypeError(
            f"unknown format(s) {', '.join(bad)} (valid: {', '.join(sorted(valid))})"
        )
    return values


def _suite_command(text: str) -> tuple[str, str]:
    name, sep, command = text.partition("=")
    if not sep or not command.strip():
        raise argparse.ArgumentTypeError(f"expected SUITE=COMMAND, got '{text}'")
    name = name.strip().lower()
    if name not in {s.value for s in SuiteKind}:
        raise argparse.ArgumentTypeError(f"unknown suite '{name}'")
    return name, command.strip()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="compatmatrix",
        description="Compatibility matrix test orchestration and result aggregation",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    sel = parser.add_argument_group("matrix selection")
    sel.add_argument("-m", "--matrix", dest="preset", choices=sorted(PRESETS),
                     help="Preset matrix size (default: standard)")
    sel.add_argument("-v", dest="single_version", metavar="VERSION",
                     help="Restrict to a single tool version")
    sel.add_argument("--versions", type=_csv, metavar="LIST", help="Comma-separated tool versions")
    sel.add_argument("--os", dest="oses", type=_csv, metavar="LIST",
                     help="Comma-separated operating systems")
    sel.add_argument("--arch", dest="archs", type=_csv, metavar="LIST",
                     help="Comma-separated architectures")
    sel.add_argument("--suites", type=_csv, metavar="LIST",
                     help=f"Comma-separated suites ({', '.join(s.value for s in SuiteKind)})")

    par = parser.add_argument_group("parallelism")
    par.add_argument("--max-parallel", type=int, metavar="N", help="Upper bound on concurrent cells")
    par.add_argument("--min-parallel", type=int, metavar="N", help="Lower bound on concurrent cells")
    par.add_argument("--load-balancing", action="store_true", default=None,
                     help="Assign the longest estimated cell first")
    par.add_argument("--adaptive-parallelism", action="store_true", default=None,
                     help="Resize parallelism from CPU/memory utilization")
    par.add_argument("--resource-monitoring", action="store_true", default=None,
                     help="Sample CPU/memory during the run")

    ex = parser.add_argument_group("execution")
    ex.add_argument("--timeout", type=parse_duration, metavar="DURATION",
                    help="Per-cell timeout (90s, 15m, 1h30m, or seconds)")
    ex.add_argument("--retries", type=int, metavar="N", help="Extra attempts for a failed cell")
    ex.add_argument("--retry-backoff", choices=["fixed", "linear", "exponential"],
                    help="Delay strategy between attempts")
    ex.add_argument("--retry-delay", type=parse_duration, metavar="DURATION",
                    help="Base delay between attempts")
    ex.add_argument("--jitter", type=float, metavar="F", help="Retry delay jitter factor (0..1)")
    ex.add_argument("--circuit-breaker", type=float, metavar="THRESHOLD",
                    help="Skip a suite's pending cells once its failure rate reaches THRESHOLD")
    ex.add_argument("--fail-fast", action="store_true", default=None,
                    help="Cancel pending cells after the first failure")
    ex.add_argument("--project-dir", type=Path, metavar="DIR",
                    help="Project the suites run against (default: .)")
    ex.add_argument("--suite-command", type=_suite_command, action="append",
                    metavar="SUITE=COMMAND", help="Override the command for one suite")
    ex.add_argument("--tool-binary-template", metavar="TEMPLATE",
                    help="Path template for versioned tool binaries ({version})")
    ex.add_argument("--allow-missing-binary", action="store_true",
                    help="Run cells even when their tool binary is not installed")

    rep = parser.add_argument_group("analysis and reporting")
    rep.add_argument("--failure-correlation", action="store_true", default=None,
                     help="Correlate failures by shared dimension values")
    rep.add_argument("--suspect-threshold", type=float, metavar="F",
                     help="Failure ratio at which a value is suspect (default: 0.5)")
    rep.add_argument("--generate-report", action="store_true", default=None,
                     help="Write report artifacts")
    rep.add_argument("--formats", type=_formats, metavar="LIST",
                     help="Report formats (json,markdown,junit,github)")
    rep.add_argument("--include-logs", action="store_true", default=None,
                     help="Embed failed cells' output in reports")
    rep.add_argument("--trend-analysis", action="store_true", default=None,
                     help="Compare against the baseline")
    rep.add_argument("--baseline", dest="baseline_path", type=Path, metavar="FILE",
                     help="Baseline file (default: <output-dir>/baseline.json)")
    rep.add_argument("--update-baseline", action="store_true", default=None,
                     help="Rewrite the baseline at the end of the run")
    rep.add_argument("--threshold", type=float, metavar="N",
                     help="Pass-rate gate in percent (default: 80)")
    rep.add_argument("--output-dir", type=Path, metavar="DIR",
                     help="Root for raw results, reports, logs and work dirs")
    rep.add_argument("--webhook-url", metavar="URL", help="POST the verdict to a webhook")

    mode = parser.add_argument_group("modes")
    mode.add_argument("--validate-only", action="store_true", default=None,
                      help="Plan and check the environment, then exit")
    mode.add_argument("--report", action="store_true",
                      help="Re-render reports from saved raw results without running")
    mode.add_argument("--presets", action="store_true", help="List presets and exit")
    mode.add_argument("--verbose", action="store_true", default=None,
                      help="Enable debug logging")
    return parser


_DIRECT = (
    "preset", "versions", "oses", "archs", "suites", "max_parallel", "min_parallel",
    "load_balancing", "adaptive_parallelism", "resource_monitoring", "retries",
    "retry_backoff", "fail_fast", "project_dir", "tool_binary_template",
    "failure_correlation", "suspect_threshold", "generate_report", "formats",
    "include_logs", "trend_analysis", "baseline_path", "update_baseline",
    "output_dir", "webhook_url", "validate_only", "verbose",
)


def build_config(args: argparse.Namespace) -> RunConfig:
    """RunConfig from COMPATMATRIX_* defaults with CLI flags applied."""
    overrides: dict = {
        name: getattr(args, name) for name in _DIRECT if getattr(args, name) is not None
    }
    if args.single_version:
        overrides["versions"] = (args.single_version,)
    if args.timeout is not None:
        overrides["timeout_sec"] = args.timeout
    if args.retry_delay is not None:
        overrides["retry_base_delay_sec"] = args.retry_delay
    if args.jitter is not None:
        overrides["retry_jitter"] = args.jitter
    if args.circuit_breaker is not None:
        overrides["circuit_breaker_threshold"] = args.circuit_breaker
    if args.threshold is not None:
        overrides["threshold_pct"] = args.threshold
    if args.suite_command:
        overrides["suite_commands"] = dict(args.suite_command)
    if args.allow_missing_binary:
        overrides["require_tool_binary"] = False
    if args.adaptive_parallelism:
        overrides["resource_monitoring"] = True
    if args.verbose:
        overrides["log_level"] = "DEBUG"
    return RunConfig(**overrides)


def _print_presets() -> None:
    print("\nAvailable presets:")
    for name, p in PRESETS.items():
        print(
            f"  {name:<10s} {len(p.versions)} versions x {len(p.oses)} os x "
            f"{len(p.archs)} arch x {len(p.suites)} suites"
        )
        print(f"  {'':<10s} versions: {', '.join(p.versions)}")
        print(f"  {'':<10s} os: {', '.join(p.oses)}; arch: {', '.join(p.archs)}; "
              f"suites: {', '.join(s.value for s in p.suites)}")
    print()


def rerender(config: RunConfig) -> int:
    """Rebuild the report from ``<output-dir>/raw`` without running anything."""
    records = ResultStore(config.raw_dir).load_all()
    if not records:
        logger.error("No saved results in %s", config.raw_dir)
        return ExitCode.FATAL
    correlation = correlate(records, config.suspect_threshold) if config.failure_correlation else None
    baseline, baseline_error = None, None
    if config.trend_analysis:
        path = config.resolved_baseline_path
        try:
            baseline = load_baseline(path)
        except AggregationError as exc:
            logger.warning("Baseline unavailable: %s", exc)
            baseline_error = str(exc)
        else:
            if baseline is None:
                baseline_error = f"no baseline at {path}"
    report = ResultAggregator(config).aggregate(
        records,
        preset=config.preset,
        correlation=correlation,
        baseline=baseline,
        baseline_error=baseline_error,
    )
    write_reports(report, [ReportFormat(f) for f in config.formats], config.reports_dir)
    print_summary(report)
    return ExitCode.SUCCESS if report.threshold.met else ExitCode.THRESHOLD_NOT_MET


async def _run(config: RunConfig) -> int:
    orchestrator = Orchestrator(config)
    orchestrator.install_signal_handlers()
    outcome = await orchestrator.run()
    return outcome.exit_code


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.presets:
        _print_presets()
        return 0

    try:
        config = build_config(args)
    except ValidationError as exc:
        logging.basicConfig(level=logging.INFO)
        logger.error("PLANNING ERROR: invalid configuration: %s", exc)
        return int(ExitCode.FATAL)

    level = logging.DEBUG if config.verbose else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-5s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.report:
        return int(rerender(config))

    try:
        return int(asyncio.run(_run(config)))
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return int(ExitCode.CANCELLED)


if __name__ == "__main__":
    sys.exit(main())
