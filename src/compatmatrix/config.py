from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings


class RunConfig(BaseSettings):
    """Immutable configuration for one matrix run.

    Defaults come from COMPATMATRIX_* environment variables; the CLI builds
    the final instance with its flags applied.  Every component receives
    this object instead of reading globals.
    """

    model_config = {"env_prefix": "COMPATMATRIX_", "frozen": True}

    # Matrix selection (None = take the preset's dimension set)
    preset: str = "standard"
    versions: tuple[str, ...] | None = None
    oses: tuple[str, ...] | None = None
    archs: tuple[str, ...] | None = None
    suites: tuple[str, ...] | None = None
    min_tool_version: str = "1.8.0"

    # Parallelism
    min_parallel: int = 1
    max_parallel: int = 4
    load_balancing: bool = False
    adaptive_parallelism: bool = False
    scheduler_tick_sec: float = 2.0
    default_cell_cost_sec: float = 60.0

    # Adaptive parallelism watermarks (percent utilization)
    low_watermark: float = 50.0
    high_watermark: float = 85.0
    hysteresis_ticks: int = 3

    # Resource monitor
    resource_monitoring: bool = False
    monitor_interval_sec: float = 1.0

    # Per-cell execution
    timeout_sec: float = 15 * 60
    kill_grace_sec: float = 5.0
    retries: int = 0
    retry_backoff: str = "exponential"  # fixed | linear | exponential
    retry_base_delay_sec: float = 5.0
    retry_jitter: float = 0.1
    circuit_breaker_threshold: float | None = None
    fail_fast: bool = False
    log_tail_lines: int = 50

    # Suite commands (overrides of the built-in defaults, keyed by suite name)
    suite_commands: dict[str, str] = {}
    project_dir: Path = Path(".")

    # Tool binaries: "latest" resolves via PATH, others via the template
    tool_binary_template: str = "~/.terraform-versions/terraform-{version}"
    tool_latest_binary: str = "terraform"
    require_tool_binary: bool = True

    # Correlation
    failure_correlation: bool = False
    suspect_threshold: float = 0.5

    # Reporting
    generate_report: bool = False
    formats: tuple[str, ...] = ("json", "markdown", "junit", "github")
    include_logs: bool = False
    threshold_pct: float = 80.0
    trend_analysis: bool = False
    baseline_path: Path | None = None
    update_baseline: bool = False
    webhook_url: str | None = None

    # Output
    output_dir: Path = Path("matrix-results")
    min_free_disk_mb: int = 1024

    # Modes
    validate_only: bool = False
    verbose: bool = False
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _check_bounds(self):
        if self.min_parallel < 1:
            raise ValueError("min_parallel must be >= 1")
        if self.max_parallel < self.min_parallel:
            raise ValueError(
                f"max_parallel ({self.max_parallel}) < min_parallel ({self.min_parallel})"
            )
        if self.low_watermark >= self.high_watermark:
            raise ValueError("low_watermark must be below high_watermark")
        if self.hysteresis_ticks < 1:
            raise ValueError("hysteresis_ticks must be >= 1")
        if self.retry_backoff not in ("fixed", "linear", "exponential"):
            raise ValueError(f"unknown retry_backoff '{self.retry_backoff}'")
        if not 0.0 <= self.threshold_pct <= 100.0:
            raise ValueError("threshold_pct must be within 0..100")
        return self

    # ── Derived paths ───────────────────────────────────────────

    @property
    def raw_dir(self) -> Path:
        return self.output_dir / "raw"

    @property
    def reports_dir(self) -> Path:
        return self.output_dir / "reports"

    @property
    def logs_dir(self) -> Path:
        return self.output_dir / "logs"

    @property
    def work_dir(self) -> Path:
        return self.output_dir / "work"

    @property
    def resolved_baseline_path(self) -> Path:
        return self.baseline_path or self.output_dir / "baseline.json"

    @property
    def monitoring_enabled(self) -> bool:
        return self.resource_monitoring or self.adaptive_parallelism
