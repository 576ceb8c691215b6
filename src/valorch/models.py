"""Result model shared by validators, the orchestrator and the reporter.

The JSON produced by the ``to_dict`` methods is an external contract: field
names and enum string values only change together with SCHEMA_VERSION.
"""

from __future__ import annotations

import getpass
import platform
import socket
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from valorch.errors import ReportSealedError

SCHEMA_VERSION = "1.0"

# Upper bound on captured validator output kept in a result
MAX_RAW_OUTPUT = 64 * 1024

# Exit code of a validator that ran to completion and reported surviving errors
EXIT_FINDINGS = 1

# Exit code of the sentinel result for validators that never ran
EXIT_NOT_RUN = -1


class Severity(str, Enum):
    """Severity of a finding."""

    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    FIXED = "fixed"


class ResultStatus(str, Enum):
    """How a validator invocation ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OverallStatus(str, Enum):
    """Verdict of a whole run."""

    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def truncate_output(text: str, limit: int = MAX_RAW_OUTPUT) -> str:
    """Bound captured output, keeping the tail where errors usually are."""
    if len(text) <= limit:
        return text
    marker = f"[... {len(text) - limit} characters truncated ...]\n"
    return marker + text[-limit:]


@dataclass(frozen=True)
class Finding:
    """One observation from a validator.

    Attributes:
        severity: Severity of the observation.
        component: Checked subject (file path, package name, setting).
        message: Human-readable description.
        fix_suggestion: Optional remediation hint.
        fixable: Whether an automated fix exists.
    """

    severity: Severity
    component: str
    message: str
    fix_suggestion: str | None = None
    fixable: bool = False

    def as_fixed(self) -> Finding:
        """Return this finding marked as remediated.

        Raises:
            ValueError: If the finding is not an error or warning.
        """
        if self.severity not in (Severity.ERROR, Severity.WARNING):
            raise ValueError(f"Only error or warning findings can be fixed, got {self.severity.value}")
        return replace(self, severity=Severity.FIXED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "component": self.component,
            "message": self.message,
            "fixSuggestion": self.fix_suggestion,
            "fixable": self.fixable,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Finding:
        """Build a Finding from its JSON form.

        Raises:
            ValueError: If required fields are missing or have the wrong type.
        """
        if not isinstance(data, dict):
            raise ValueError("finding must be an object")
        try:
            severity = Severity(data["severity"])
        except KeyError as e:
            raise ValueError("finding is missing 'severity'") from e
        except ValueError as e:
            raise ValueError(f"unknown severity: {data['severity']!r}") from e

        component = data.get("component")
        message = data.get("message")
        if not isinstance(component, str) or not isinstance(message, str):
            raise ValueError("finding 'component' and 'message' must be strings")

        suggestion = data.get("fixSuggestion")
        if suggestion is not None and not isinstance(suggestion, str):
            raise ValueError("finding 'fixSuggestion' must be a string or null")

        fixable = data.get("fixable", False)
        if not isinstance(fixable, bool):
            raise ValueError("finding 'fixable' must be a boolean")

        return cls(
            severity=severity,
            component=component,
            message=message,
            fix_suggestion=suggestion,
            fixable=fixable,
        )


@dataclass
class ValidatorResult:
    """Outcome of one validator invocation.

    Attributes:
        validator_name: Registered name of the validator.
        started_at: When execution began (None if it never ran).
        duration: Wall-clock seconds spent executing.
        exit_code: 0 when no errors survive, EXIT_FINDINGS when errors survive,
            any other value for infrastructure failures.
        findings: Findings in the order they were reported.
        raw_output: Captured output, bounded to MAX_RAW_OUTPUT characters.
        status: Whether the validator completed, failed or never ran.
        counts: Findings per severity; always agrees with ``findings``.
        log_counts: Log lines per severity written through the helper
            library's ``log``.
    """

    validator_name: str
    started_at: datetime | None
    duration: float
    exit_code: int
    findings: list[Finding] = field(default_factory=list)
    raw_output: str = ""
    status: ResultStatus = ResultStatus.COMPLETED
    counts: dict[str, int] = field(default_factory=dict)
    log_counts: dict[str, int] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.raw_output = truncate_output(self.raw_output)

    @classmethod
    def from_findings(
        cls,
        name: str,
        findings: list[Finding],
        *,
        started_at: datetime,
        duration: float,
        raw_output: str = "",
        log_counts: dict[str, int] | None = None,
    ) -> ValidatorResult:
        """Build the result of a validator that ran to completion."""
        has_errors = any(f.severity is Severity.ERROR for f in findings)
        return cls(
            validator_name=name,
            started_at=started_at,
            duration=duration,
            exit_code=EXIT_FINDINGS if has_errors else 0,
            findings=list(findings),
            raw_output=raw_output,
            counts=count_severities(findings),
            log_counts=dict(log_counts or {}),
        )

    @classmethod
    def infrastructure_failure(
        cls,
        name: str,
        reason: str,
        exit_code: int,
        *,
        started_at: datetime | None = None,
        duration: float = 0.0,
        raw_output: str = "",
        detail: str = "",
    ) -> ValidatorResult:
        """Build the result of a validator that crashed, timed out or lied.

        The only finding is a synthetic error naming the failure reason;
        ``detail`` is appended to the captured output.
        """
        finding = Finding(
            severity=Severity.ERROR,
            component=name,
            message=f"validator infrastructure failure: {reason}",
        )
        if detail:
            raw_output = f"{raw_output}{detail}\n"
        return cls(
            validator_name=name,
            started_at=started_at,
            duration=duration,
            exit_code=exit_code if exit_code != 0 else EXIT_FINDINGS,
            findings=[finding],
            raw_output=raw_output,
            status=ResultStatus.FAILED,
            counts=count_severities([finding]),
        )

    @classmethod
    def not_run(cls, name: str, reason: str = "cancelled") -> ValidatorResult:
        """Sentinel result for a validator that never started."""
        return cls(
            validator_name=name,
            started_at=None,
            duration=0.0,
            exit_code=EXIT_NOT_RUN,
            findings=[],
            raw_output=f"not run: {reason}",
            status=ResultStatus.CANCELLED,
        )

    @property
    def infrastructure_failed(self) -> bool:
        return self.status is ResultStatus.FAILED

    @property
    def errors(self) -> int:
        return sum(1 for f in self.findings if f.severity is Severity.ERROR)

    @property
    def warnings(self) -> int:
        return sum(1 for f in self.findings if f.severity is Severity.WARNING)

    @property
    def fixed(self) -> int:
        return sum(1 for f in self.findings if f.severity is Severity.FIXED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "validatorName": self.validator_name,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "duration": round(self.duration, 6),
            "exitCode": self.exit_code,
            "status": self.status.value,
            "findings": [f.to_dict() for f in self.findings],
            "rawOutput": self.raw_output,
            "counts": dict(self.counts),
            "logCounts": dict(self.log_counts),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ValidatorResult:
        started = data.get("startedAt")
        return cls(
            validator_name=data["validatorName"],
            started_at=datetime.fromisoformat(started) if started else None,
            duration=float(data.get("duration", 0.0)),
            exit_code=int(data["exitCode"]),
            findings=[Finding.from_dict(f) for f in data.get("findings", [])],
            raw_output=data.get("rawOutput", ""),
            status=ResultStatus(data.get("status", ResultStatus.COMPLETED.value)),
            counts=dict(data.get("counts", {})),
            log_counts=dict(data.get("logCounts", {})),
        )


def count_severities(findings: list[Finding]) -> dict[str, int]:
    """Count findings per severity value."""
    counts = {severity.value: 0 for severity in Severity}
    for finding in findings:
        counts[finding.severity.value] += 1
    return counts


@dataclass(frozen=True)
class Totals:
    """Aggregated counts across all validators."""

    errors: int = 0
    warnings: int = 0
    fixed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"errors": self.errors, "warnings": self.warnings, "fixed": self.fixed}


@dataclass(frozen=True)
class HostInfo:
    """Where the run happened."""

    os: str
    user: str
    hostname: str

    @classmethod
    def collect(cls) -> HostInfo:
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            # No passwd entry and no LOGNAME/USER in the environment
            user = "unknown"
        return cls(os=platform.platform(), user=user, hostname=socket.gethostname())

    def to_dict(self) -> dict[str, str]:
        return {"os": self.os, "user": self.user, "hostname": self.hostname}


def derive_status(results: list[ValidatorResult]) -> OverallStatus:
    """Fail on any surviving error, warn on any surviving warning, else pass."""
    if any(r.errors for r in results):
        return OverallStatus.FAIL
    if any(r.warnings for r in results):
        return OverallStatus.WARN
    return OverallStatus.PASS


class RunReport:
    """Aggregate of one orchestrator invocation.

    Created when the run starts with one slot per registered validator,
    filled as validators complete, then sealed. Totals and the overall status
    only exist once the report is sealed.
    """

    def __init__(
        self,
        validator_names: list[str],
        *,
        fix_mode: bool = False,
        run_id: str | None = None,
        timestamp: datetime | None = None,
        host_info: HostInfo | None = None,
    ) -> None:
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.timestamp = timestamp or utcnow()
        self.host_info = host_info or HostInfo.collect()
        self.validator_names = list(validator_names)
        self.fix_mode = fix_mode
        self._slots: list[ValidatorResult | None] = [None] * len(validator_names)
        self._sealed = False
        self.totals: Totals | None = None
        self.overall_status: OverallStatus | None = None
        self.cancelled = False
        self.fatal_error: str | None = None

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def results(self) -> list[ValidatorResult]:
        """Recorded results in registration order (completed slots only until sealed)."""
        return [r for r in self._slots if r is not None]

    def record(self, index: int, result: ValidatorResult) -> None:
        """Store the result for the validator registered at ``index``.

        Raises:
            ReportSealedError: If the report has been sealed.
        """
        if self._sealed:
            raise ReportSealedError(f"Report {self.run_id} is sealed")
        self._slots[index] = result

    def seal(self, *, cancelled: bool = False, fatal_error: str | None = None) -> RunReport:
        """Freeze the report, filling never-run slots with sentinel results."""
        if self._sealed:
            raise ReportSealedError(f"Report {self.run_id} is already sealed")
        for index, slot in enumerate(self._slots):
            if slot is None:
                self._slots[index] = ValidatorResult.not_run(self.validator_names[index])
        results = self.results
        self.totals = Totals(
            errors=sum(r.errors for r in results),
            warnings=sum(r.warnings for r in results),
            fixed=sum(r.fixed for r in results),
        )
        self.overall_status = derive_status(results)
        self.cancelled = cancelled
        self.fatal_error = fatal_error
        self._sealed = True
        return self

    def to_dict(self) -> dict[str, Any]:
        """Canonical JSON form of a sealed report."""
        if not self._sealed or self.totals is None or self.overall_status is None:
            raise ValueError("Only sealed reports can be serialized")
        return {
            "schemaVersion": SCHEMA_VERSION,
            "runID": self.run_id,
            "timestamp": self.timestamp.isoformat(),
            "hostInfo": self.host_info.to_dict(),
            "fixMode": self.fix_mode,
            "results": [r.to_dict() for r in self.results],
            "totals": self.totals.to_dict(),
            "overallStatus": self.overall_status.value,
            "cancelled": self.cancelled,
            "fatalError": self.fatal_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunReport:
        """Rebuild a sealed report from its JSON form, ignoring unknown fields."""
        host = data.get("hostInfo", {})
        results = [ValidatorResult.from_dict(r) for r in data.get("results", [])]
        report = cls(
            [r.validator_name for r in results],
            fix_mode=bool(data.get("fixMode", False)),
            run_id=data["runID"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            host_info=HostInfo(
                os=host.get("os", ""),
                user=host.get("user", ""),
                hostname=host.get("hostname", ""),
            ),
        )
        for index, result in enumerate(results):
            report.record(index, result)
        return report.seal(
            cancelled=bool(data.get("cancelled", False)),
            fatal_error=data.get("fatalError"),
        )
