"""Report rendering and persistence.

Renders a sealed RunReport as rich console output, canonical JSON or
Markdown, and writes the JSON form to the report directory.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from rich.console import Console
from rich.markup import escape

from valorch.errors import ReportWriteError
from valorch.models import (
    OverallStatus,
    ResultStatus,
    RunReport,
    Severity,
    ValidatorResult,
)

logger = logging.getLogger(__name__)

SEVERITY_STYLES = {
    Severity.ERROR: "red",
    Severity.WARNING: "yellow",
    Severity.INFO: "blue",
    Severity.FIXED: "green",
}

STATUS_STYLES = {
    OverallStatus.PASS: "green",
    OverallStatus.WARN: "yellow",
    OverallStatus.FAIL: "red",
}

# Display order of findings within one validator
SEVERITY_ORDER = (Severity.ERROR, Severity.WARNING, Severity.FIXED, Severity.INFO)


def result_label(result: ValidatorResult) -> str:
    """Short verdict for one validator: PASS, WARN, FAIL, ERROR or SKIP."""
    if result.status is ResultStatus.CANCELLED:
        return "SKIP"
    if result.infrastructure_failed:
        return "ERROR"
    if result.errors:
        return "FAIL"
    if result.warnings:
        return "WARN"
    return "PASS"


_LABEL_STYLES = {
    "PASS": "green",
    "WARN": "yellow",
    "FAIL": "red",
    "ERROR": "bold red",
    "SKIP": "dim",
}


# -----------------------------------------------------------------------------
# Human output
# -----------------------------------------------------------------------------


def render_human(report: RunReport, console: Console, *, verbose: bool = False) -> None:
    """Print the report for a terminal.

    Info findings and captured output are only shown when ``verbose``.
    """
    mode_str = ""
    if report.fix_mode:
        mode_str = " [dim](fix mode)[/dim]"
    console.print(f"\n[bold]Validation Report{mode_str}[/bold]")
    console.print(f"[dim]run {report.run_id} on {escape(report.host_info.hostname)}[/dim]\n")

    for result in report.results:
        label = result_label(result)
        style = _LABEL_STYLES[label]
        console.print(
            f"  [{style}]{label:<5}[/{style}] [bold]{escape(result.validator_name)}[/bold] "
            f"[dim]({result.duration:.2f}s, exit {result.exit_code})[/dim]"
        )
        for severity in SEVERITY_ORDER:
            if severity is Severity.INFO and not verbose:
                continue
            color = SEVERITY_STYLES[severity]
            for finding in (f for f in result.findings if f.severity is severity):
                console.print(
                    f"      [{color}]{severity.value}[/{color}] "
                    f"[dim]{escape(finding.component)}[/dim]: {escape(finding.message)}"
                )
                if finding.fix_suggestion and severity in (Severity.ERROR, Severity.WARNING):
                    console.print(f"        [green]Fix:[/green] {escape(finding.fix_suggestion)}")
        if verbose and result.raw_output.strip():
            for line in result.raw_output.rstrip().splitlines():
                console.print(f"        [dim]{escape(line)}[/dim]")

    totals = report.totals
    if totals is not None:
        console.print(
            f"\nTotals: [red]{totals.errors} error(s)[/red], "
            f"[yellow]{totals.warnings} warning(s)[/yellow], "
            f"[green]{totals.fixed} fixed[/green]"
        )
    if report.overall_status is not None:
        style = STATUS_STYLES[report.overall_status]
        console.print(f"Overall: [bold {style}]{report.overall_status.value.upper()}[/bold {style}]")
    if report.cancelled:
        console.print("[bold red]Run was cancelled; remaining validators were not run.[/bold red]")
    if report.fatal_error:
        console.print(f"[bold red]Run aborted:[/bold red] {escape(report.fatal_error)}")


# -----------------------------------------------------------------------------
# Machine-readable output
# -----------------------------------------------------------------------------


def render_json(report: RunReport) -> str:
    """Canonical JSON form of a sealed report."""
    return json.dumps(report.to_dict(), indent=2)


def _md_cell(text: str) -> str:
    return text.replace("|", "\\|").replace("\n", " ")


def render_markdown(report: RunReport) -> str:
    """Markdown summary suitable for CI job summaries."""
    lines = [
        "# Validation Report",
        "",
        f"- Run: `{report.run_id}`",
        f"- Timestamp: {report.timestamp.isoformat()}",
        f"- Host: {report.host_info.hostname} ({report.host_info.os})",
        f"- Fix mode: {'yes' if report.fix_mode else 'no'}",
    ]
    if report.overall_status is not None:
        lines.append(f"- Overall status: **{report.overall_status.value.upper()}**")
    if report.cancelled:
        lines.append("- Cancelled: yes")
    if report.fatal_error:
        lines.append(f"- Fatal error: {report.fatal_error}")

    lines += [
        "",
        "| Validator | Result | Errors | Warnings | Fixed | Duration |",
        "|---|---|---|---|---|---|",
    ]
    for result in report.results:
        lines.append(
            f"| {_md_cell(result.validator_name)} | {result_label(result)} | {result.errors} "
            f"| {result.warnings} | {result.fixed} | {result.duration:.2f}s |"
        )

    with_findings = [r for r in report.results if r.findings]
    if with_findings:
        lines += ["", "## Findings"]
        for result in with_findings:
            lines += ["", f"### {result.validator_name}", ""]
            for finding in result.findings:
                entry = f"- **{finding.severity.value}** `{finding.component}`: {finding.message}"
                if finding.fix_suggestion:
                    entry += f" (fix: {finding.fix_suggestion})"
                lines.append(entry)

    if report.totals is not None:
        totals = report.totals
        lines += [
            "",
            f"**Totals:** {totals.errors} error(s), {totals.warnings} warning(s), {totals.fixed} fixed",
        ]
    return "\n".join(lines) + "\n"


# -----------------------------------------------------------------------------
# Persistence
# -----------------------------------------------------------------------------


def ensure_report_dir(report_dir: Path) -> Path:
    """Create the report directory if needed and check it is writable.

    Raises:
        ReportWriteError: If the directory cannot be created or written.
    """
    try:
        report_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ReportWriteError(f"Cannot create report directory {report_dir}: {e}") from e
    if not report_dir.is_dir():
        raise ReportWriteError(f"Report path is not a directory: {report_dir}")
    if not os.access(report_dir, os.W_OK | os.X_OK):
        raise ReportWriteError(f"Report directory is not writable: {report_dir}")
    return report_dir


def report_filename(report: RunReport, attempt: int = 0) -> str:
    stamp = report.timestamp.strftime("%Y%m%dT%H%M%SZ")
    suffix = f"-{attempt}" if attempt else ""
    return f"validation-{stamp}-{report.run_id}{suffix}.json"


def persist_report(report: RunReport, report_dir: Path) -> Path:
    """Write the report JSON under ``report_dir`` without overwriting anything.

    Returns:
        Path of the written file.

    Raises:
        ReportWriteError: If the report cannot be written.
    """
    ensure_report_dir(report_dir)
    content = render_json(report) + "\n"
    for attempt in range(100):
        path = report_dir / report_filename(report, attempt)
        try:
            with open(path, "x", encoding="utf-8") as f:
                f.write(content)
        except FileExistsError:
            continue
        except OSError as e:
            raise ReportWriteError(f"Cannot write report {path}: {e}") from e
        logger.info("Report written to %s", path)
        return path
    raise ReportWriteError(f"Cannot find a free report filename in {report_dir}")
