"""CLI utility functions for valorch.

Provides helper functions for:
- Config wiring: Extracting Typer CLI options and passing to load_config
- Logging setup: Routing module loggers through rich on stderr
- Error formatting: Consistent user-friendly error messages with exit codes
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Literal, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler

from valorch.config import OrchestratorConfig, load_config
from valorch.orchestrator import EXIT_FATAL

OutputFormat = Literal["human", "json", "markdown"]
OUTPUT_FORMATS: tuple[str, ...] = ("human", "json", "markdown")

_LOG_FORMAT = "%(name)s: %(message)s"


# -----------------------------------------------------------------------------
# Error Formatting Helpers
# -----------------------------------------------------------------------------


def error(msg: str, *, exit_code: int = EXIT_FATAL) -> NoReturn:
    """Print an error message and exit with the given exit code.

    Args:
        msg: The error message to display.
        exit_code: Exit code to use (default: EXIT_FATAL=3).

    Raises:
        typer.Exit: Always raises to exit the program.
    """
    styled_prefix = typer.style("Error:", fg=typer.colors.RED, bold=True)
    typer.echo(f"{styled_prefix} {msg}", err=True)
    raise typer.Exit(code=exit_code)


def warning(msg: str) -> None:
    """Print a warning message to stderr."""
    styled_prefix = typer.style("Warning:", fg=typer.colors.YELLOW, bold=True)
    typer.echo(f"{styled_prefix} {msg}", err=True)


def info(msg: str) -> None:
    """Print an info message to stderr, keeping stdout for report output."""
    typer.echo(msg, err=True)


# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------


def log_level_for(verbosity: int, quiet: bool = False) -> int:
    """Map ``-v`` count to a logging level: WARNING, INFO, then DEBUG."""
    if quiet:
        return logging.ERROR
    if verbosity >= 2:
        return logging.DEBUG
    if verbosity == 1:
        return logging.INFO
    return logging.WARNING


def configure_logging(verbosity: int = 0, *, quiet: bool = False) -> None:
    """Send log records to stderr through rich.

    Calling again replaces the handler, so each command invocation starts
    from a clean configuration.
    """
    handler = RichHandler(
        console=Console(stderr=True),
        show_time=verbosity >= 2,
        show_path=False,
        rich_tracebacks=True,
    )
    logging.basicConfig(
        level=log_level_for(verbosity, quiet),
        format=_LOG_FORMAT,
        handlers=[handler],
        force=True,
    )


# -----------------------------------------------------------------------------
# Config Wiring Helper
# -----------------------------------------------------------------------------


def wire_config(
    *,
    fix_mode: bool | None = None,
    dry_run: bool | None = None,
    parallel: bool | None = None,
    workers: int | None = None,
    timeout: str | None = None,
    report_dir: str | None = None,
    write_report: bool | None = None,
    warn_as_failure: bool | None = None,
    verbosity: int | None = None,
    manifest: str | None = None,
    validators: list[str] | None = None,
    start_dir: Path | None = None,
) -> OrchestratorConfig:
    """Wire CLI options to load_config with appropriate overrides.

    Flags left at their "not given" value (None, or False for switches)
    do not override lower-precedence sources.

    Raises:
        typer.Exit: If configuration is invalid (exit code 3).
    """
    cli_overrides: dict[str, Any] = {
        # Switches only override when set, so FIX_MODE=1 still applies
        "fix_mode": fix_mode or None,
        "dry_run": dry_run or None,
        "parallel": parallel or None,
        "warn_as_failure": warn_as_failure or None,
        "write_report": write_report,
        "workers": workers,
        "timeout": timeout,
        "report_dir": report_dir,
        "verbosity": verbosity or None,
        "manifest": manifest,
        "validators": validators or None,
    }

    try:
        return load_config(cli_overrides=cli_overrides, start_dir=start_dir)
    except (ValueError, TypeError) as e:
        error(f"Invalid configuration: {e}")


# -----------------------------------------------------------------------------
# Typer Option Factory Functions
# -----------------------------------------------------------------------------
# Typer consumes Option objects when decorating commands, so each command
# needs a fresh instance.


def json_option() -> Any:
    """Create a Typer Option for --json."""
    return typer.Option(
        False,
        "--json",
        help="Output as JSON (same as --format json).",
    )


def verbose_option() -> Any:
    """Create a Typer Option for -v/--verbose (repeatable)."""
    return typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase verbosity (-v info, -vv debug).",
    )


def quiet_option() -> Any:
    """Create a Typer Option for --quiet / -q."""
    return typer.Option(
        False,
        "--quiet",
        "-q",
        help="Minimal output for CI.",
    )


def manifest_option() -> Any:
    """Create a Typer Option for --manifest."""
    return typer.Option(
        None,
        "--manifest",
        "-m",
        help="YAML manifest of external validators (default: validators.yaml).",
        envvar="VALORCH_MANIFEST",
    )
