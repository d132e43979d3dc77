"""
Configuration loading and validation for rate-gate.

Single source of truth — all modules import config from here.
"""

import math
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path

from rate_gate import GateConfigurationError, RateGate


class ConfigurationError(Exception):
    """Raised when configuration is missing or invalid."""


@dataclass(frozen=True)
class GateConfig:
    max_count: int = 5
    reset_seconds: float = 1.0
    name: str = "default"


@dataclass(frozen=True)
class LoggingConfig:
    verbose_console_logging: bool = True


@dataclass(frozen=True)
class HttpConfig:
    base_url: str = ""
    app_name: str = "rate-gate"
    app_version: str = "0.1.0"
    contact: str = ""
    timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_delay: float = 1.0
    retry_backoff_factor: float = 2.0

    def format_user_agent(self) -> str:
        """Build a User-Agent string: AppName/Version (contact)"""
        header = f"{self.app_name}/{self.app_version}"
        if self.contact:
            header += f" ({self.contact})"
        return header


@dataclass(frozen=True)
class BenchConfig:
    callers: int = 100
    duration_seconds: float = 2.0
    mode: str = "thread"


@dataclass(frozen=True)
class PathsConfig:
    output_dir: str = "output"


@dataclass(frozen=True)
class AppConfig:
    gate: GateConfig = GateConfig()
    logging: LoggingConfig = LoggingConfig()
    http: HttpConfig = HttpConfig()
    bench: BenchConfig = BenchConfig()
    paths: PathsConfig = PathsConfig()
    project_root: Path = Path(".")

    def resolve_path(self, path: str | Path) -> Path:
        """Resolve a path relative to project_root.

        - Expands ~ to home directory
        - Returns absolute paths unchanged
        - Resolves relative paths against project_root
        """
        p = Path(path).expanduser()
        if p.is_absolute():
            return p
        return self.project_root / p


BENCH_MODES = ("thread", "async")


def _section(cls, raw: dict, name: str):
    """Build a config dataclass from a TOML table, rejecting unknown keys."""
    table = raw.get(name, {})
    if not isinstance(table, dict):
        raise ConfigurationError(f"[{name}] must be a table.")
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(table) - known)
    if unknown:
        raise ConfigurationError(f"Unknown key(s) in [{name}]: {', '.join(unknown)}")
    return cls(**table)


def _check_number(value, name: str, *, integer: bool = False, positive: bool = False) -> None:
    """Reject non-numeric, boolean, non-finite or out-of-range values."""
    kinds = int if integer else (int, float)
    kind_name = "an integer" if integer else "a number"
    if isinstance(value, bool) or not isinstance(value, kinds) or not math.isfinite(value):
        raise ConfigurationError(f"{name} must be {kind_name}, got {value!r}")
    if positive and value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value!r}")
    if value < 0:
        raise ConfigurationError(f"{name} must be non-negative, got {value!r}")


def validate_config(config: AppConfig) -> None:
    """Check value types and ranges the dataclasses can't express."""
    _check_number(config.gate.max_count, "gate.max_count", integer=True, positive=True)
    _check_number(config.gate.reset_seconds, "gate.reset_seconds")
    _check_number(config.http.max_retries, "http.max_retries", integer=True)
    _check_number(config.http.timeout_seconds, "http.timeout_seconds", positive=True)
    _check_number(config.http.retry_delay, "http.retry_delay")
    _check_number(config.http.retry_backoff_factor, "http.retry_backoff_factor")
    _check_number(config.bench.callers, "bench.callers", integer=True, positive=True)
    _check_number(config.bench.duration_seconds, "bench.duration_seconds", positive=True)
    if config.bench.mode not in BENCH_MODES:
        raise ConfigurationError(f"bench.mode must be one of {BENCH_MODES}, got {config.bench.mode!r}")


def load_config(config_path: str | Path = "rate_gate.toml") -> AppConfig:
    """Load configuration from TOML file and return an AppConfig instance.

    Applies defaults for any missing sections/keys so older config files
    still work after new settings are added.
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise ConfigurationError(f"Configuration file '{config_path}' not found.")

    try:
        with open(config_file, "rb") as f:
            raw = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in '{config_path}': {e}") from e

    config = AppConfig(
        gate=_section(GateConfig, raw, "gate"),
        logging=_section(LoggingConfig, raw, "logging"),
        http=_section(HttpConfig, raw, "http"),
        bench=_section(BenchConfig, raw, "bench"),
        paths=_section(PathsConfig, raw, "paths"),
        project_root=config_file.resolve().parent,
    )
    validate_config(config)
    return config


def build_gate(gate_config: GateConfig) -> RateGate:
    """Construct a RateGate from its config section."""
    try:
        return RateGate(
            gate_config.max_count,
            gate_config.reset_seconds,
            name=gate_config.name,
        )
    except GateConfigurationError as e:
        raise ConfigurationError(str(e)) from e
