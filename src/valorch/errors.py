"""Exception hierarchy for valorch.

Validator infrastructure failures, command failures, remediation failures and
orchestrator-fatal errors each get their own branch so callers can isolate
them at the right seam.
"""

from __future__ import annotations

from collections.abc import Sequence

# Exit codes reported on ValidatorResult for infrastructure failures
EXIT_TIMEOUT = 124
EXIT_CRASHED = 70
EXIT_MALFORMED = 65
EXIT_CANCELLED = 130


class ValorchError(Exception):
    """Base class for all valorch errors."""


# -----------------------------------------------------------------------------
# Validator infrastructure failures
# -----------------------------------------------------------------------------


class ValidatorError(ValorchError):
    """A validator could not produce a trustworthy result.

    Attributes:
        reason: Short reason used in the synthetic infrastructure finding.
        exit_code: Exit code recorded on the ValidatorResult.
    """

    reason = "error"
    exit_code = EXIT_CRASHED

    def __init__(self, message: str, *, exit_code: int | None = None) -> None:
        super().__init__(message)
        if exit_code is not None:
            self.exit_code = exit_code


class ValidatorTimeoutError(ValidatorError):
    """Validator exceeded its deadline."""

    reason = "timeout"
    exit_code = EXIT_TIMEOUT


class ValidatorCrashedError(ValidatorError):
    """Validator terminated unexpectedly (exception, signal or nonzero exit)."""

    reason = "crashed"


class MalformedResultError(ValidatorError):
    """Validator output did not conform to the result schema."""

    reason = "malformed result"
    exit_code = EXIT_MALFORMED


class ValidatorCancelledError(ValidatorError):
    """Validator aborted because the run was cancelled."""

    reason = "cancelled"
    exit_code = EXIT_CANCELLED


# -----------------------------------------------------------------------------
# Command execution
# -----------------------------------------------------------------------------


class CommandError(ValorchError):
    """External command exited with a nonzero status.

    Attributes:
        cmd: Command argument vector.
        returncode: Process exit status (negative for signals).
        stdout: Captured standard output.
        stderr: Captured standard error.
    """

    def __init__(
        self,
        args: Sequence[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
        message: str | None = None,
    ) -> None:
        self.cmd = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        if message is None:
            detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no stderr"
            message = f"Command {self.program} exited with {returncode}: {detail}"
        super().__init__(message)

    @property
    def program(self) -> str:
        """Name of the executed program."""
        return self.cmd[0] if self.cmd else "?"


class CommandTimeoutError(CommandError):
    """External command exceeded its timeout and was killed."""

    def __init__(self, args: Sequence[str], timeout: float, stdout: str = "", stderr: str = "") -> None:
        self.timeout = timeout
        name = args[0] if args else "?"
        super().__init__(args, -9, stdout, stderr, message=f"Command {name} timed out after {timeout:g}s")


# -----------------------------------------------------------------------------
# Remediation
# -----------------------------------------------------------------------------


class RemediationError(ValorchError):
    """A fix mutation failed; the snapshot was rolled back."""


class SnapshotError(RemediationError):
    """A snapshot could not be created or used."""


class RollbackError(ValorchError):
    """Restoring a snapshot failed and the system may be inconsistent.

    Attributes:
        unrestored: Targets that could not be restored.
    """

    def __init__(self, unrestored: Sequence[str], detail: str = "") -> None:
        self.unrestored = list(unrestored)
        message = "Rollback failed; unrestored targets: " + ", ".join(self.unrestored)
        if detail:
            message += f" ({detail})"
        super().__init__(message)


# -----------------------------------------------------------------------------
# Orchestrator / reporting
# -----------------------------------------------------------------------------


class OrchestratorError(ValorchError):
    """Orchestrator-level fatal error; the run cannot proceed."""


class ReportWriteError(ValorchError):
    """A report could not be persisted."""


class ReportSealedError(ValorchError):
    """Attempted to modify a sealed RunReport."""
