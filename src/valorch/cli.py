"""Validation orchestrator CLI - Main entry point."""

from __future__ import annotations

import json
import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from types import FrameType

import typer
from rich.console import Console
from rich.table import Table

from valorch import __version__
from valorch.cli_utils import (
    OUTPUT_FORMATS,
    configure_logging,
    error,
    info,
    json_option,
    manifest_option,
    quiet_option,
    verbose_option,
    warning,
    wire_config,
)
from valorch.config import load_config
from valorch.errors import OrchestratorError, ReportWriteError
from valorch.models import RunReport
from valorch.orchestrator import EXIT_FATAL, Orchestrator, exit_code_for
from valorch.reporting import (
    ensure_report_dir,
    persist_report,
    render_human,
    render_json,
    render_markdown,
)
from valorch.validators.registry import ValidatorRegistry, build_registry

logger = logging.getLogger(__name__)

app = typer.Typer(
    name="orchestrator",
    help="Validation orchestrator - run environment validators, apply safe fixes, report.",
    add_completion=False,
)

# Rich console for report output; diagnostics go to stderr
console = Console()


# -----------------------------------------------------------------------------
# Version and Main Callbacks
# -----------------------------------------------------------------------------


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"orchestrator version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        help="Show version and exit.",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """Validation orchestrator - run environment validators, apply safe fixes, report."""
    pass


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _load_registry(manifest_path: Path) -> ValidatorRegistry:
    try:
        return build_registry(manifest_path)
    except ValueError as e:
        error(f"Invalid validator manifest: {e}")
    except OSError as e:
        error(f"Cannot read validator manifest {manifest_path}: {e}")


@contextmanager
def _cancel_on_sigterm(orchestrator: Orchestrator) -> Iterator[None]:
    """Turn SIGTERM into a cooperative cancel for the duration of a run.

    Ctrl-C arrives as KeyboardInterrupt and is handled by the orchestrator.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def handler(signum: int, frame: FrameType | None) -> None:  # noqa: ARG001
        orchestrator.cancel("terminated")

    previous = signal.signal(signal.SIGTERM, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def _print_report(report: RunReport, output_format: str, *, verbose: bool, quiet: bool) -> None:
    if output_format == "json":
        typer.echo(render_json(report))
    elif output_format == "markdown":
        typer.echo(render_markdown(report), nl=False)
    elif quiet:
        status = report.overall_status.value.upper() if report.overall_status else "UNKNOWN"
        console.print(status)
    else:
        render_human(report, console, verbose=verbose)


# -----------------------------------------------------------------------------
# Run Command
# -----------------------------------------------------------------------------


@app.command()
def run(
    fix: bool = typer.Option(
        False,
        "--fix",
        help="Let validators remediate what they find (env: FIX_MODE).",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Show which fixes would be applied without applying them.",
    ),
    parallel: bool = typer.Option(
        False,
        "--parallel",
        help="Run independent validators concurrently.",
    ),
    workers: int | None = typer.Option(
        None,
        "--workers",
        "-w",
        min=1,
        help="Worker pool size for --parallel (default: CPU count).",
    ),
    output_format: str = typer.Option(
        "human",
        "--format",
        "-f",
        help="Output format: human, json or markdown.",
    ),
    json_output: bool = json_option(),
    timeout: str | None = typer.Option(
        None,
        "--timeout",
        "-t",
        help="Per-validator deadline, e.g. 30s, 2m (env: VALIDATION_TIMEOUT).",
    ),
    report_dir: str | None = typer.Option(
        None,
        "--report-dir",
        help="Directory for persisted JSON reports (env: VALIDATION_REPORT_DIR).",
    ),
    manifest: str | None = manifest_option(),
    only: list[str] | None = typer.Option(
        None,
        "--only",
        help="Run only the named validator (repeatable).",
    ),
    warn_as_failure: bool = typer.Option(
        False,
        "--warn-as-failure",
        help="Exit 2 instead of 1 when only warnings remain.",
    ),
    no_report: bool = typer.Option(
        False,
        "--no-report",
        help="Do not persist the JSON report.",
    ),
    verbose: int = verbose_option(),
    quiet: bool = quiet_option(),
) -> None:
    """Run validators and report the results.

    Exit codes: 0 pass, 1 warnings, 2 errors, 3 run aborted.
    """
    configure_logging(verbose, quiet=quiet)

    if json_output:
        output_format = "json"
    output_format = output_format.lower()
    if output_format not in OUTPUT_FORMATS:
        error(f"Invalid format: {output_format}. Must be one of: {', '.join(OUTPUT_FORMATS)}")

    base = Path.cwd()
    config = wire_config(
        fix_mode=fix,
        dry_run=dry_run,
        parallel=parallel,
        workers=workers,
        timeout=timeout,
        report_dir=report_dir,
        write_report=False if no_report else None,
        warn_as_failure=warn_as_failure,
        verbosity=verbose,
        manifest=manifest,
        validators=only,
        start_dir=base,
    )
    logger.debug("Resolved configuration: %s", config)

    registry = _load_registry(config.get_manifest_path(base))
    try:
        validators = registry.create(config.validators)
    except KeyError as e:
        error(str(e.args[0]))
    if not validators:
        error("No validators registered")

    report_path = config.get_report_dir(base)
    if config.write_report:
        try:
            ensure_report_dir(report_path)
        except ReportWriteError as e:
            error(str(e))

    orchestrator = Orchestrator.from_config(validators, config, base)
    try:
        with _cancel_on_sigterm(orchestrator):
            report = orchestrator.run()
    except OrchestratorError as e:
        error(str(e))

    _print_report(report, output_format, verbose=config.verbosity >= 1, quiet=quiet)

    exit_code = exit_code_for(report, config.warn_as_failure)
    if config.write_report:
        try:
            written = persist_report(report, report_path)
        except ReportWriteError as e:
            warning(str(e))
            exit_code = EXIT_FATAL
        else:
            if not quiet and output_format == "human":
                info(f"Report written to {written}")

    raise typer.Exit(code=exit_code)


# -----------------------------------------------------------------------------
# List Command
# -----------------------------------------------------------------------------


@app.command("list")
def list_validators(
    manifest: str | None = manifest_option(),
    json_output: bool = json_option(),
    quiet: bool = quiet_option(),
) -> None:
    """List registered validators in run order."""
    configure_logging(0, quiet=quiet)
    base = Path.cwd()
    try:
        config = load_config(cli_overrides={"manifest": manifest}, start_dir=base)
    except (ValueError, TypeError) as e:
        error(f"Invalid configuration: {e}")

    registry = _load_registry(config.get_manifest_path(base))
    entries = [
        {
            "name": validator.name,
            "kind": validator.kind.value,
            "sharedResources": list(validator.shared_resources),
            "source": registry.source(validator.name),
            "description": validator.description,
        }
        for validator in registry.create()
    ]

    if json_output:
        console.print_json(json.dumps({"validators": entries}))
        return

    if quiet:
        for entry in entries:
            console.print(entry["name"])
        return

    table = Table(title="Registered Validators")
    table.add_column("Name", style="cyan")
    table.add_column("Kind", style="green")
    table.add_column("Shared resources")
    table.add_column("Source", style="dim")
    table.add_column("Description")

    for entry in entries:
        table.add_row(
            entry["name"],
            entry["kind"],
            ", ".join(entry["sharedResources"]) or "-",
            entry["source"],
            entry["description"] or "-",
        )

    console.print(table)


if __name__ == "__main__":
    app()
