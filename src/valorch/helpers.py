"""Helper library handed to every validator.

Provides leveled logging with validator-local log-line counters, the fix-mode
query, bounded command execution that honors cancellation, and the
``report`` entry point that routes fixes through the remediation engine.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from typing import TYPE_CHECKING

from valorch.errors import (
    CommandError,
    CommandTimeoutError,
    MalformedResultError,
    RemediationError,
    SnapshotError,
    ValidatorCancelledError,
)
from valorch.models import (
    MAX_RAW_OUTPUT,
    Finding,
    Severity,
    ValidatorResult,
    truncate_output,
)

if TYPE_CHECKING:
    from valorch.remediation import RemediationEngine, Target
    from valorch.validators.base import RunContext

logger = logging.getLogger(__name__)

# How often blocking waits re-check cancellation
POLL_INTERVAL = 0.05

_LOG_LEVELS = {
    Severity.ERROR: logging.ERROR,
    Severity.WARNING: logging.WARNING,
    Severity.INFO: logging.INFO,
    Severity.FIXED: logging.INFO,
}


# -----------------------------------------------------------------------------
# Cancellation
# -----------------------------------------------------------------------------


class CancelToken:
    """Cooperative cancellation flag that can be chained to a parent.

    A child token reports cancelled when either it or any ancestor has been
    cancelled. Cancelling a child never affects its parent.
    """

    def __init__(self, parent: CancelToken | None = None) -> None:
        self._event = threading.Event()
        self._parent = parent
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str | None:
        if self._event.is_set():
            return self._reason
        if self._parent is not None:
            return self._parent.reason
        return None

    def child(self) -> CancelToken:
        return CancelToken(parent=self)

    def wait(self, timeout: float) -> bool:
        """Block up to ``timeout`` seconds; return True if cancelled."""
        deadline = time.monotonic() + timeout
        while not self.cancelled:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._event.wait(min(remaining, POLL_INTERVAL))
        return True

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise ValidatorCancelledError(f"Run cancelled: {self.reason or 'cancelled'}")


# -----------------------------------------------------------------------------
# Command execution
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class CommandResult:
    """Captured outcome of an external command."""

    args: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_command(
    args: Sequence[str],
    *,
    timeout: float,
    cwd: str | os.PathLike[str] | None = None,
    env: Mapping[str, str] | None = None,
    cancel: CancelToken | None = None,
    check: bool = True,
) -> CommandResult:
    """Run a command with a hard timeout and captured output.

    The process is killed when the timeout expires or ``cancel`` fires.

    Raises:
        CommandTimeoutError: If the command exceeded ``timeout``.
        ValidatorCancelledError: If ``cancel`` fired while the command ran.
        CommandError: If the command could not be started, or exited nonzero
            and ``check`` is True.
    """
    argv = [str(a) for a in args]
    if not argv:
        raise CommandError(argv, 127, "", "empty command")
    if cancel is not None:
        cancel.raise_if_cancelled()

    try:
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
    except FileNotFoundError as e:
        raise CommandError(argv, 127, "", str(e)) from e
    except OSError as e:
        raise CommandError(argv, 126, "", str(e)) from e

    deadline = time.monotonic() + timeout
    while True:
        try:
            stdout, stderr = proc.communicate(timeout=POLL_INTERVAL)
            break
        except subprocess.TimeoutExpired:
            if cancel is not None and cancel.cancelled:
                proc.kill()
                proc.communicate()
                raise ValidatorCancelledError(f"Command {argv[0]} aborted: run cancelled") from None
            if time.monotonic() >= deadline:
                proc.kill()
                stdout, stderr = proc.communicate()
                raise CommandTimeoutError(argv, timeout, stdout or "", stderr or "") from None

    result = CommandResult(args=argv, returncode=proc.returncode, stdout=stdout or "", stderr=stderr or "")
    if check and not result.ok:
        raise CommandError(argv, result.returncode, result.stdout, result.stderr)
    return result


# -----------------------------------------------------------------------------
# Validator-local state
# -----------------------------------------------------------------------------


class SeverityCounters:
    """Mutex-guarded per-severity counters."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts = {severity.value: 0 for severity in Severity}

    def increment(self, severity: Severity) -> None:
        with self._lock:
            self._counts[severity.value] += 1

    def as_dict(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counts)


class OutputBuffer:
    """Thread-safe text buffer that keeps at most ``limit`` trailing characters."""

    def __init__(self, limit: int = MAX_RAW_OUTPUT) -> None:
        self._lock = threading.Lock()
        self._chunks: list[str] = []
        self._size = 0
        self._dropped = 0
        self.limit = limit

    def write(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            self._chunks.append(text)
            self._size += len(text)
            while self._size > self.limit and len(self._chunks) > 1:
                removed = self._chunks.pop(0)
                self._size -= len(removed)
                self._dropped += len(removed)

    def getvalue(self) -> str:
        with self._lock:
            text = "".join(self._chunks)
            dropped = self._dropped
        text = truncate_output(text, self.limit)
        if dropped:
            text = f"[... {dropped} characters dropped ...]\n" + text
        return text


def _coerce_severity(level: Severity | str) -> Severity:
    if isinstance(level, Severity):
        return level
    return Severity(level.lower())


class ValidationHelper:
    """Primitives for one validator invocation.

    Every counter and finding list lives on the helper instance, so nothing is
    shared between validators. The orchestrator reads them once the validator
    returns.

    Attributes:
        name: Name of the validator this helper serves.
        context: Immutable run context.
        engine: Remediation engine used for fixes.
        token: Cancellation token for this validator.
        counters: Log lines per severity written through ``log``. Findings
            are tallied from the recorded findings, not from these.
    """

    def __init__(
        self,
        name: str,
        context: RunContext,
        engine: RemediationEngine,
        token: CancelToken | None = None,
    ) -> None:
        self.name = name
        self.context = context
        self.engine = engine
        self.token = token or CancelToken()
        self.counters = SeverityCounters()
        self._output = OutputBuffer()
        self._findings: list[Finding] = []
        self._lock = threading.Lock()
        self._logger = logger.getChild(name)

    # -- logging ---------------------------------------------------------------

    def log(self, level: Severity | str, message: str) -> None:
        """Log a message and count it against ``level``."""
        severity = _coerce_severity(level)
        self.counters.increment(severity)
        self._logger.log(_LOG_LEVELS[severity], "[%s] %s", self.name, message)
        self._output.write(f"[{severity.value.upper()}] {message}\n")

    def debug(self, message: str) -> None:
        """Log a message without counting it; captured only at verbosity >= 1."""
        self._logger.debug("[%s] %s", self.name, message)
        if self.context.verbosity >= 1:
            self._output.write(f"[DEBUG] {message}\n")

    def write_output(self, text: str) -> None:
        """Append raw text (e.g. tool output) to the captured output."""
        self._output.write(text)

    # -- run context -----------------------------------------------------------

    def is_fix_mode(self) -> bool:
        return self.context.fix_mode

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def check_cancelled(self) -> None:
        """Raise ValidatorCancelledError if the run has been cancelled."""
        self.token.raise_if_cancelled()

    def safe_run(
        self,
        cmd: str | Sequence[str],
        *,
        timeout: float | None = None,
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Run an external command bounded by the validator timeout.

        Environment overrides from the run context are applied on top of the
        process environment, then ``env`` on top of those.

        Raises:
            CommandError: On nonzero exit (when ``check``) or if the command
                cannot be started. Carries captured stderr.
            CommandTimeoutError: If the command outlived its timeout.
            ValidatorCancelledError: If the run was cancelled meanwhile.
        """
        args = shlex.split(cmd) if isinstance(cmd, str) else list(cmd)
        full_env = {**os.environ, **self.context.environment_overrides, **(env or {})}
        self.debug(f"$ {shlex.join(args)}")
        result = run_command(
            args,
            timeout=timeout if timeout is not None else self.context.timeout,
            cwd=cwd if cwd is not None else self.context.working_dir,
            env=full_env,
            cancel=self.token,
            check=check,
        )
        if result.stderr:
            self._output.write(result.stderr if result.stderr.endswith("\n") else result.stderr + "\n")
        return result

    # -- findings --------------------------------------------------------------

    def report(
        self,
        finding: Finding,
        *,
        fix: Callable[[], None] | None = None,
        targets: Iterable[Target] = (),
    ) -> Finding:
        """Record a finding, remediating it first when fix mode allows.

        In fix mode a fixable finding with a ``fix`` callable is handed to the
        remediation engine together with the ``targets`` it mutates. The
        recorded finding is FIXED on success and ERROR when the fix could not
        be applied. In dry-run mode the fix is only announced.

        Returns:
            The finding as recorded.

        Raises:
            MalformedResultError: If the finding is already FIXED.
            RollbackError: If a failed fix could not be rolled back.
        """
        if finding.severity is Severity.FIXED:
            raise MalformedResultError(
                f"finding for {finding.component!r} reported as fixed; only the remediation engine marks findings fixed"
            )
        if fix is not None and finding.fixable and self.is_fix_mode():
            finding = self._remediate(finding, fix, list(targets))
        self._record(finding)
        return finding

    def report_external_fix(self, finding: Finding) -> Finding:
        """Record a FIXED finding remediated by a plugin process.

        Raises:
            MalformedResultError: If the run does not apply fixes.
        """
        if not self.is_fix_mode() or self.context.dry_run:
            raise MalformedResultError(
                f"finding for {finding.component!r} reported as fixed while fixes are disabled"
            )
        self._record(finding)
        return finding

    def error(self, component: str, message: str, fix_suggestion: str | None = None) -> Finding:
        return self.report(Finding(Severity.ERROR, component, message, fix_suggestion))

    def warning(self, component: str, message: str, fix_suggestion: str | None = None) -> Finding:
        return self.report(Finding(Severity.WARNING, component, message, fix_suggestion))

    def info(self, component: str, message: str) -> Finding:
        return self.report(Finding(Severity.INFO, component, message))

    def _remediate(self, finding: Finding, fix: Callable[[], None], targets: list[Target]) -> Finding:
        if finding.severity not in (Severity.ERROR, Severity.WARNING):
            return finding
        if self.context.dry_run:
            self.debug(f"would fix {finding.component}: {finding.fix_suggestion or finding.message}")
            return finding
        try:
            self.engine.remediate(targets, fix)
        except SnapshotError as e:
            return replace(
                finding,
                severity=Severity.ERROR,
                message=f"{finding.message} (fix not attempted: {e})",
            )
        except RemediationError as e:
            return replace(
                finding,
                severity=Severity.ERROR,
                message=f"{finding.message} (fix failed and was rolled back: {e})",
            )
        return finding.as_fixed()

    def _record(self, finding: Finding) -> None:
        with self._lock:
            self._findings.append(finding)
        # Findings are logged at INFO; the report is where users see them
        self._logger.info("[%s] %s %s: %s", self.name, finding.severity.value, finding.component, finding.message)
        self._output.write(f"[{finding.severity.value.upper()}] {finding.component}: {finding.message}\n")

    @property
    def findings(self) -> list[Finding]:
        with self._lock:
            return list(self._findings)

    @property
    def raw_output(self) -> str:
        return self._output.getvalue()

    def build_result(self, *, started_at: datetime, duration: float) -> ValidatorResult:
        """Merge the validator-local state into a ValidatorResult."""
        return ValidatorResult.from_findings(
            self.name,
            self.findings,
            started_at=started_at,
            duration=duration,
            raw_output=self.raw_output,
            log_counts=self.counters.as_dict(),
        )
