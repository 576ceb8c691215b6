"""Configuration management for valorch.

Handles configuration loading from multiple sources with precedence:
CLI args > environment variables > .valorchrc > pyproject.toml > defaults

The result is loaded once at orchestrator start and frozen into the
RunContext every validator receives.
"""

from __future__ import annotations

import os
import re
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

# tomllib is only available in Python 3.11+
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib  # type: ignore[import-not-found]

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}


def parse_duration(value: str | int | float) -> float:
    """Parse a duration such as ``2s``, ``500ms``, ``1.5m`` or ``30`` into seconds.

    Raises:
        ValueError: If the value is not a positive duration.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        match = _DURATION_RE.match(value)
        if match is None:
            raise ValueError(f"Invalid duration: {value!r}")
        seconds = float(match.group(1)) * _DURATION_UNITS[match.group(2)]
    if seconds <= 0:
        raise ValueError(f"Duration must be positive: {value!r}")
    return seconds


def parse_bool(value: str | bool) -> bool:
    """Parse a boolean from config or environment text.

    Raises:
        ValueError: If the text is not a recognized boolean.
    """
    if isinstance(value, bool):
        return value
    lowered = value.strip().lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(f"Invalid boolean: {value!r}")


@dataclass
class OrchestratorConfig:
    """Configuration for a validation run.

    Attributes:
        fix_mode: Let validators remediate findings (default: False)
        dry_run: Announce fixes without applying them (default: False)
        parallel: Run validators on a worker pool (default: False)
        workers: Pool size; 0 means one per CPU core (default: 0)
        timeout: Per-validator deadline in seconds (default: 300)
        report_dir: Directory for persisted reports (default: ".validation-reports")
        write_report: Persist the report to report_dir (default: True)
        warn_as_failure: Treat a Warn verdict like Fail for the exit code
        verbosity: 0 normal, 1 verbose, 2+ debug
        manifest: YAML file declaring external validators (default: "validators.yaml")
        validators: Names to run; None runs every registered validator
        environment: Environment overrides passed to every validator
        ci: Running under CI (set when the CI variable is present)
    """

    fix_mode: bool = False
    dry_run: bool = False
    parallel: bool = False
    workers: int = 0
    timeout: float = 300.0
    report_dir: str = ".validation-reports"
    write_report: bool = True
    warn_as_failure: bool = False
    verbosity: int = 0
    manifest: str = "validators.yaml"
    validators: list[str] | None = None
    environment: dict[str, str] = field(default_factory=dict)
    ci: bool = False

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        self._coerce()
        self._validate()

    def _coerce(self) -> None:
        # Values from TOML or the environment may arrive as strings
        for name in ("fix_mode", "dry_run", "parallel", "write_report", "warn_as_failure", "ci"):
            value = getattr(self, name)
            if isinstance(value, str):
                setattr(self, name, parse_bool(value))
        if isinstance(self.timeout, (str, int)) and not isinstance(self.timeout, bool):
            self.timeout = parse_duration(self.timeout)
        if isinstance(self.workers, str):
            self.workers = int(self.workers)
        if isinstance(self.verbosity, str):
            self.verbosity = int(self.verbosity)
        if isinstance(self.validators, str):
            self.validators = [v.strip() for v in self.validators.split(",") if v.strip()]
        if self.dry_run:
            # A dry run evaluates fixes, so it implies fix mode
            self.fix_mode = True

    def _validate(self) -> None:
        """Validate configuration values.

        Raises:
            ValueError: If any configuration value is invalid.
        """
        if not isinstance(self.timeout, float) or self.timeout <= 0:
            raise ValueError("timeout must be a positive duration")

        if not isinstance(self.workers, int) or isinstance(self.workers, bool) or self.workers < 0:
            raise ValueError("workers must be a non-negative integer")

        if not isinstance(self.verbosity, int) or self.verbosity < 0:
            raise ValueError("verbosity must be a non-negative integer")

        if not self.report_dir or not isinstance(self.report_dir, str):
            raise ValueError("report_dir must be a non-empty string")

        if not self.manifest or not isinstance(self.manifest, str):
            raise ValueError("manifest must be a non-empty string")

        if self.validators is not None and (
            not isinstance(self.validators, list)
            or not all(isinstance(v, str) and v for v in self.validators)
        ):
            raise ValueError("validators must be a list of validator names")

        if not isinstance(self.environment, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in self.environment.items()
        ):
            raise ValueError("environment must map strings to strings")

    @property
    def worker_count(self) -> int:
        """Resolved pool size for parallel mode."""
        return self.workers or os.cpu_count() or 1

    def get_report_dir(self, base_path: Path | None = None) -> Path:
        """Get the full path to the report directory.

        Args:
            base_path: Base path to resolve from. Defaults to current directory.

        Returns:
            Path to the report directory.
        """
        base = base_path or Path.cwd()
        return base / self.report_dir

    def get_manifest_path(self, base_path: Path | None = None) -> Path:
        """Get the full path to the external validator manifest."""
        base = base_path or Path.cwd()
        return base / self.manifest


def _get_config_field_names() -> set[str]:
    """Get the set of valid configuration field names.

    Returns:
        Set of field names from OrchestratorConfig.
    """
    return {f.name for f in fields(OrchestratorConfig)}


def find_config_file(filename: str = ".valorchrc", start_dir: Path | None = None) -> Path | None:
    """Find a configuration file by traversing up the directory tree.

    Searches for the specified file starting from start_dir (or current directory)
    and traversing up to the filesystem root.

    Args:
        filename: Name of the config file to find.
        start_dir: Directory to start searching from. Defaults to current directory.

    Returns:
        Path to the config file if found, None otherwise.
    """
    current = start_dir or Path.cwd()
    current = current.resolve()

    while True:
        config_path = current / filename
        if config_path.is_file():
            return config_path

        parent = current.parent
        if parent == current:
            # Reached filesystem root
            return None
        current = parent


def _load_toml_file(path: Path) -> dict[str, Any]:
    """Load a TOML file and return its contents.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        tomllib.TOMLDecodeError: If the file is not valid TOML.
    """
    with open(path, "rb") as f:
        result: dict[str, Any] = tomllib.load(f)
        return result


def _filter_fields(data: dict[str, Any]) -> dict[str, Any]:
    valid_fields = _get_config_field_names()
    return {k: v for k, v in data.items() if k in valid_fields}


def _load_from_rcfile(start_dir: Path | None = None) -> dict[str, Any]:
    """Load configuration from a .valorchrc file, or {} if there is none."""
    config_path = find_config_file(".valorchrc", start_dir)
    if config_path is None:
        return {}

    try:
        return _filter_fields(_load_toml_file(config_path))
    except (tomllib.TOMLDecodeError, OSError):
        return {}


def _load_from_pyproject(start_dir: Path | None = None) -> dict[str, Any]:
    """Load configuration from the pyproject.toml [tool.valorch] section."""
    config_path = find_config_file("pyproject.toml", start_dir)
    if config_path is None:
        return {}

    try:
        data = _load_toml_file(config_path)
        section = data.get("tool", {}).get("valorch", {})
        return _filter_fields(section) if isinstance(section, dict) else {}
    except (tomllib.TOMLDecodeError, OSError):
        return {}


def _load_from_env() -> dict[str, Any]:
    """Load configuration from environment variables.

    FIX_MODE, VALIDATION_TIMEOUT and VALIDATION_REPORT_DIR map to fields;
    the mere presence of CI turns on CI mode.

    Returns:
        Dictionary containing configuration from environment variables.
    """
    env_mapping = {
        "FIX_MODE": "fix_mode",
        "VALIDATION_TIMEOUT": "timeout",
        "VALIDATION_REPORT_DIR": "report_dir",
    }

    result: dict[str, Any] = {}
    for env_var, config_key in env_mapping.items():
        value = os.environ.get(env_var)
        if value is not None and value != "":
            result[config_key] = value

    if "CI" in os.environ:
        result["ci"] = True

    return result


def _merge_configs(*configs: dict[str, Any]) -> dict[str, Any]:
    """Merge configuration dictionaries; later ones take precedence."""
    result: dict[str, Any] = {}
    for config in configs:
        for key, value in config.items():
            if value is not None:
                result[key] = value
    return result


def load_config(
    cli_overrides: dict[str, Any] | None = None,
    start_dir: Path | None = None,
) -> OrchestratorConfig:
    """Load configuration with full precedence chain.

    Precedence (highest to lowest):
    1. CLI arguments (cli_overrides)
    2. Environment variables (FIX_MODE, VALIDATION_TIMEOUT, VALIDATION_REPORT_DIR, CI)
    3. .valorchrc file
    4. pyproject.toml [tool.valorch] section
    5. Default values

    Args:
        cli_overrides: Configuration overrides from CLI arguments.
        start_dir: Directory to start searching for config files.

    Returns:
        Fully resolved OrchestratorConfig instance.

    Raises:
        ValueError: If the resulting configuration is invalid.
    """
    pyproject_config = _load_from_pyproject(start_dir)
    rc_config = _load_from_rcfile(start_dir)
    env_config = _load_from_env()
    cli_config = _filter_fields({k: v for k, v in (cli_overrides or {}).items() if v is not None})

    merged = _merge_configs(
        pyproject_config,
        rc_config,
        env_config,
        cli_config,
    )

    # Defaults are applied by the dataclass
    return OrchestratorConfig(**merged)
