import pytest

from compatmatrix.core.suites import SUITES, get_suite
from compatmatrix.errors import PlanningError
from compatmatrix.models import SuiteKind

from .conftest import make_cell


def test_every_suite_kind_has_a_definition():
    assert set(SUITES) == set(SuiteKind)
    assert not get_suite(SuiteKind.UNIT).needs_tool_binary
    assert get_suite(SuiteKind.ACCEPTANCE).env["TF_ACC"] == "1"


def test_default_command_runs_in_project_dir():
    cell = make_cell("1.9.8", suite=SuiteKind.ACCEPTANCE)
    argv = get_suite(SuiteKind.ACCEPTANCE).build_command(cell, project_dir="/src/provider")
    assert argv[:4] == ["go", "-C", "/src/provider", "test"]
    assert "TestTerraformVersionCompatibility" in argv
    assert argv[-1] == "./internal/provider/"


def test_performance_runs_benchmarks():
    cell = make_cell(suite=SuiteKind.PERFORMANCE)
    argv = get_suite(SuiteKind.PERFORMANCE).build_command(cell, project_dir=".")
    assert "-bench=BenchmarkJsonPrettyPrintFunction" in argv
    assert "-benchmem" in argv


def test_template_placeholders_stay_single_arguments():
    cell = make_cell("1.10.0", "darwin", "arm64", SuiteKind.FUNCTION)
    argv = get_suite(SuiteKind.FUNCTION).build_command(
        cell,
        binary="/opt/tf dir/terraform",
        template="run-tests --bin {binary} --cell {cell_id} --target {os}-{arch} {work_dir}",
        work_dir="/tmp/work 1",
    )
    assert argv == [
        "run-tests", "--bin", "/opt/tf dir/terraform",
        "--cell", "1.10.0/darwin/arm64/function",
        "--target", "darwin-arm64", "/tmp/work 1",
    ]


def test_unknown_placeholder():
    with pytest.raises(PlanningError, match="bad placeholder"):
        get_suite(SuiteKind.UNIT).build_command(make_cell(), template="echo {nope}")


def test_empty_template_falls_back_to_default():
    argv = get_suite(SuiteKind.UNIT).build_command(make_cell(), template="", project_dir=".")
    assert argv[0] == "go"


def test_blank_template():
    with pytest.raises(PlanningError, match="empty command"):
        get_suite(SuiteKind.UNIT).build_command(make_cell(), template="   ")


def test_env():
    cell = make_cell("1.9.8", "windows", "amd64", SuiteKind.INTEGRATION)
    env = get_suite(SuiteKind.INTEGRATION).build_env(cell, binary="/bin/terraform")
    assert env["MATRIX_TOOL_VERSION"] == "1.9.8"
    assert env["GOOS"] == "windows"
    assert env["TF_ACC"] == "1"
    assert env["TF_ACC_TERRAFORM_PATH"] == "/bin/terraform"

    unit_env = get_suite(SuiteKind.UNIT).build_env(make_cell(), binary="/bin/terraform")
    assert "TF_ACC_TERRAFORM_PATH" not in unit_env
    assert "TF_ACC" not in unit_env
