"""Validators that run as separate processes.

The process receives the RunContext as environment variables (plus the
whole context as JSON in ``VALIDATION_CONTEXT``), must print a single JSON
document with a ``findings`` array on stdout, and uses its exit status only
to signal infrastructure health: 0 means it ran to completion, whatever it
found.
"""

from __future__ import annotations

import json
import shlex
import signal
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from valorch.errors import MalformedResultError, ValidatorCrashedError
from valorch.models import Finding, Severity
from valorch.validators.base import BaseValidator, CheckKind

if TYPE_CHECKING:
    from valorch.helpers import ValidationHelper


def _describe_exit(returncode: int) -> str:
    if returncode < 0:
        try:
            return f"killed by {signal.Signals(-returncode).name}"
        except ValueError:
            return f"killed by signal {-returncode}"
    return f"exit status {returncode}"


def parse_result_document(stdout: str) -> tuple[list[Finding], str]:
    """Parse a plugin's stdout into findings and optional raw output.

    Raises:
        MalformedResultError: If stdout is not a single JSON object with a
            valid ``findings`` array.
    """
    text = stdout.strip()
    if not text:
        raise MalformedResultError("validator produced no output")
    try:
        document: Any = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedResultError(f"output is not valid JSON: {e.msg} at line {e.lineno}") from e
    if not isinstance(document, dict):
        raise MalformedResultError("output must be a JSON object")

    raw_findings = document.get("findings")
    if not isinstance(raw_findings, list):
        raise MalformedResultError("output is missing a 'findings' array")

    findings: list[Finding] = []
    for index, item in enumerate(raw_findings):
        try:
            findings.append(Finding.from_dict(item))
        except ValueError as e:
            raise MalformedResultError(f"finding {index}: {e}") from e

    raw_output = document.get("rawOutput", "")
    if not isinstance(raw_output, str):
        raw_output = ""
    return findings, raw_output


class ExternalValidator(BaseValidator):
    """Validator backed by an executable honoring the plugin calling convention."""

    kind = CheckKind.EXTERNAL

    def __init__(
        self,
        name: str,
        command: str | Sequence[str],
        *,
        kind: CheckKind = CheckKind.EXTERNAL,
        description: str = "",
        shared_resources: Sequence[str] = (),
        timeout: float | None = None,
    ) -> None:
        if not name:
            raise ValueError("External validator needs a name")
        argv = shlex.split(command) if isinstance(command, str) else [str(c) for c in command]
        if not argv:
            raise ValueError(f"External validator {name!r} has an empty command")
        self.name = name
        self.command = argv
        self.kind = kind
        self.description = description or f"Runs {shlex.join(argv)}"
        self.shared_resources = tuple(shared_resources)
        self.timeout = timeout

    def check(self, helper: ValidationHelper) -> None:
        context = helper.context
        result = helper.safe_run(
            self.command,
            timeout=self.timeout if self.timeout is not None else context.timeout,
            env=context.to_env(),
            check=False,
        )
        if result.returncode != 0:
            raise ValidatorCrashedError(
                _describe_exit(result.returncode),
                exit_code=result.returncode if result.returncode > 0 else 128 - result.returncode,
            )

        findings, raw_output = parse_result_document(result.stdout)
        if raw_output:
            helper.write_output(raw_output if raw_output.endswith("\n") else raw_output + "\n")
        for finding in findings:
            if finding.severity is Severity.FIXED:
                helper.report_external_fix(finding)
            else:
                helper.report(finding)
