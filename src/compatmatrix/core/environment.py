"""Pre-flight environment checks.

Each check function returns (ok: bool, detail: str).  ``run_preflight``
runs all of them and raises EnvironmentCheckError listing every failure,
before any cell is scheduled.
"""

from __future__ import annotations

import logging
import shutil
import sys
import uuid
from pathlib import Path

from compatmatrix.config import RunConfig
from compatmatrix.errors import EnvironmentCheckError
from compatmatrix.models import ExecutionPlan

from .executor import resolve_tool_binary
from .suites import get_suite

logger = logging.getLogger(__name__)


def check_python_version(min_version=(3, 10)):
    """Python >= 3.10."""
    v = sys.version_info[:2]
    if v >= min_version:
        return True, f"Python {v[0]}.{v[1]}"
    return False, f"Python {v[0]}.{v[1]} < {min_version[0]}.{min_version[1]}"


def check_tool(name):
    """An executable is on PATH (or is an existing executable path)."""
    path = shutil.which(name)
    if path:
        return True, f"{name}: {path}"
    return False, f"required tool '{name}' not found on PATH"


def check_directory_writable(path: Path):
    """*path* can be created and written to."""
    try:
        path.mkdir(parents=True, exist_ok=True)
        marker = path / f".write-marker-{uuid.uuid4().hex}"
        marker.write_text("ok")
        marker.unlink()
    except OSError as exc:
        return False, f"output directory {path} is not writable: {exc}"
    return True, f"{path} writable"


def check_disk_space(path: Path, min_free_mb: int):
    """At least *min_free_mb* free on the filesystem holding *path*."""
    existing = path
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    try:
        stat = shutil.disk_usage(existing)
    except OSError as exc:
        return False, f"cannot stat filesystem for {path}: {exc}"
    free_mb = stat.free / (1024 ** 2)
    if free_mb < min_free_mb:
        return False, (
            f"insufficient disk space for {path}: {free_mb:.0f} MB free, "
            f"need {min_free_mb} MB"
        )
    return True, f"{path}: {free_mb:.0f} MB free"


def check_project_dir(path: Path):
    if path.is_dir():
        return True, f"project directory {path.resolve()}"
    return False, f"project directory {path} does not exist"


def required_tools(config: RunConfig, plan: ExecutionPlan) -> list[str]:
    """Executables the planned suites invoke, in first-use order.

    A command that starts with the versioned tool binary is checked against
    the resolved binary.  When that binary is missing the cell is skipped at
    run time, so it is not a pre-flight failure.
    """
    tools: list[str] = []
    seen_suites = set()
    for cell in plan.cells:
        if cell.suite in seen_suites:
            continue
        seen_suites.add(cell.suite)
        suite = get_suite(cell.suite)
        binary = ""
        if suite.needs_tool_binary:
            binary = resolve_tool_binary(cell.tool_version, config) or ""
        argv = suite.build_command(
            cell,
            binary=binary,
            template=config.suite_commands.get(cell.suite.value),
            project_dir=str(config.project_dir),
            work_dir=str(config.work_dir),
        )
        if not argv[0]:
            logger.info("No tool binary for %s; its cells are checked at run time", cell.cell_id)
            continue
        if argv[0] not in tools:
            tools.append(argv[0])
    return tools


def run_preflight(config: RunConfig, plan: ExecutionPlan) -> list[tuple[str, bool, str]]:
    """Run every check; raise EnvironmentCheckError if any failed."""
    checks = [
        ("python", check_python_version()),
        ("project", check_project_dir(config.project_dir)),
    ]
    for tool in required_tools(config, plan):
        checks.append((f"tool:{tool}", check_tool(tool)))
    for label, path in (
        ("output", config.output_dir),
        ("raw", config.raw_dir),
        ("logs", config.logs_dir),
        ("work", config.work_dir),
    ):
        checks.append((f"writable:{label}", check_directory_writable(path)))
    checks.append(("disk", check_disk_space(config.output_dir, config.min_free_disk_mb)))

    results = [(name, ok, detail) for name, (ok, detail) in checks]
    for name, ok, detail in results:
        if ok:
            logger.info("Check %s: %s", name, detail)
        else:
            logger.error("Check %s FAILED: %s", name, detail)

    failures = [detail for _, ok, detail in results if not ok]
    if failures:
        raise EnvironmentCheckError(failures)
    return results
