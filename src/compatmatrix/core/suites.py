"""Suite catalog: one Suite definition per SuiteKind.

Command templates are split with shlex first and each token is then
formatted, so substituted paths containing spaces stay one argument.
Available placeholders: {version} {os} {arch} {suite} {binary} {cell_id}
{project_dir} {work_dir}.
"""

from __future__ import annotations

import shlex
from dataclasses import dataclass, field
from typing import Mapping

from compatmatrix.errors import PlanningError
from compatmatrix.models import SuiteKind, TestMatrixCell

_PROVIDER_PKG = "./internal/provider/"
_GO_TEST = "go -C {project_dir} test -count=1"


@dataclass(frozen=True)
class Suite:
    kind: SuiteKind
    description: str
    command: str
    env: Mapping[str, str] = field(default_factory=dict)
    needs_tool_binary: bool = True

    def _placeholders(self, cell: TestMatrixCell, binary: str, extra: dict) -> dict[str, str]:
        return {
            **extra,
            "version": cell.tool_version,
            "os": cell.os,
            "arch": cell.arch,
            "suite": cell.suite.value,
            "binary": binary,
            "cell_id": cell.cell_id,
        }

    def build_command(
        self,
        cell: TestMatrixCell,
        binary: str = "",
        template: str | None = None,
        **extra: str,
    ) -> list[str]:
        """Argument vector for running this suite against *cell*."""
        values = self._placeholders(cell, binary, extra)
        tokens = shlex.split(template or self.command)
        if not tokens:
            raise PlanningError(f"empty command for suite '{self.kind.value}'")
        try:
            return [tok.format(**values) for tok in tokens]
        except (KeyError, IndexError) as exc:
            raise PlanningError(
                f"bad placeholder {exc} in command for suite '{self.kind.value}'"
            ) from None

    def build_env(self, cell: TestMatrixCell, binary: str = "") -> dict[str, str]:
        env = {
            "MATRIX_TOOL_VERSION": cell.tool_version,
            "MATRIX_OS": cell.os,
            "MATRIX_ARCH": cell.arch,
            "MATRIX_SUITE": cell.suite.value,
            "MATRIX_TOOL_BINARY": binary,
            "MATRIX_CELL_ID": cell.cell_id,
            "GOOS": cell.os,
            "GOARCH": cell.arch,
        }
        env.update(self.env)
        if self.needs_tool_binary and binary:
            env["TF_ACC_TERRAFORM_PATH"] = binary
        return env


_ACC = {"TF_ACC": "1"}

SUITES: dict[SuiteKind, Suite] = {
    SuiteKind.UNIT: Suite(
        kind=SuiteKind.UNIT,
        description="Provider unit tests",
        command=f"{_GO_TEST} {_PROVIDER_PKG}",
        needs_tool_binary=False,
    ),
    SuiteKind.ACCEPTANCE: Suite(
        kind=SuiteKind.ACCEPTANCE,
        description="Acceptance tests against a real tool binary",
        command=f"{_GO_TEST} -run TestTerraformVersionCompatibility {_PROVIDER_PKG}",
        env=_ACC,
    ),
    SuiteKind.FUNCTION: Suite(
        kind=SuiteKind.FUNCTION,
        description="Provider function tests",
        command=f"{_GO_TEST} -run TestJsonPrettyPrintFunction {_PROVIDER_PKG}",
        env=_ACC,
    ),
    SuiteKind.INTEGRATION: Suite(
        kind=SuiteKind.INTEGRATION,
        description="End-to-end integration tests",
        command=f"{_GO_TEST} {_PROVIDER_PKG}",
        env=_ACC,
    ),
    SuiteKind.PERFORMANCE: Suite(
        kind=SuiteKind.PERFORMANCE,
        description="Performance tests and benchmarks",
        command=(
            f"{_GO_TEST} -run TestTerraformVersionPerformance "
            f"-bench=BenchmarkJsonPrettyPrintFunction -benchmem {_PROVIDER_PKG}"
        ),
        env=_ACC,
    ),
}


def get_suite(kind: SuiteKind) -> Suite:
    return SUITES[kind]
