"""Validator contract.

Every validator, whether an in-process plugin or an external process, is
driven through ``BaseValidator.run`` with a ValidationHelper that carries the
immutable RunContext. Failures never cross this boundary as exceptions: they
come back as ValidatorResults. The single exception is RollbackError, which
means system state may be inconsistent and the whole run must stop.
"""

from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from valorch.errors import (
    CommandTimeoutError,
    MalformedResultError,
    RollbackError,
    ValidatorCrashedError,
    ValidatorError,
    ValidatorTimeoutError,
)
from valorch.models import ValidatorResult, utcnow

if TYPE_CHECKING:
    from valorch.helpers import ValidationHelper


class CheckKind(str, Enum):
    """Domain a validator checks."""

    PACKAGES = "packages"
    ENVIRONMENT = "environment"
    SECURITY = "security"
    FORMATTING = "formatting"
    EDITORCONFIG = "editorconfig"
    SCRIPTS = "scripts"
    SECRETS = "secrets"
    DOCS = "docs"
    EXTERNAL = "external"


@dataclass(frozen=True)
class RunContext:
    """Immutable input handed to every validator.

    Attributes:
        fix_mode: Whether validators may remediate findings.
        verbosity: 0 = normal, 1 = verbose, 2+ = debug.
        working_dir: Directory validators check.
        timeout: Per-validator deadline in seconds.
        environment_overrides: Extra environment for commands validators run.
        dry_run: Announce fixes instead of applying them.
        ci: Running under CI; validators must not prompt.
    """

    fix_mode: bool = False
    verbosity: int = 0
    working_dir: Path = field(default_factory=Path.cwd)
    timeout: float = 300.0
    environment_overrides: Mapping[str, str] = field(default_factory=dict)
    dry_run: bool = False
    ci: bool = False

    def __post_init__(self) -> None:
        # Freeze the mapping so validators cannot mutate shared state
        object.__setattr__(
            self, "environment_overrides", MappingProxyType(dict(self.environment_overrides))
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "fixMode": self.fix_mode,
            "verbosity": self.verbosity,
            "workingDir": str(self.working_dir),
            "timeout": self.timeout,
            "environmentOverrides": dict(self.environment_overrides),
            "dryRun": self.dry_run,
            "ci": self.ci,
        }

    def to_env(self) -> dict[str, str]:
        """Serialize the context as environment variables for plugin processes."""
        env = dict(self.environment_overrides)
        env.update(
            {
                "FIX_MODE": "1" if self.fix_mode else "0",
                "VALIDATION_TIMEOUT": f"{self.timeout:g}",
                "VALIDATION_VERBOSITY": str(self.verbosity),
                "VALIDATION_WORKING_DIR": str(self.working_dir),
                "VALIDATION_DRY_RUN": "1" if self.dry_run else "0",
                "VALIDATION_CONTEXT": json.dumps(self.to_dict()),
            }
        )
        if self.ci:
            env["CI"] = env.get("CI") or "true"
        return env


class BaseValidator(ABC):
    """Abstract base class for all validators.

    Subclasses set ``name`` and ``kind`` and implement ``check``, reporting
    findings through the helper. Fixes must go through ``helper.report`` so
    they run under a snapshot. ``check`` must be idempotent: a second run
    with no state change reports the same findings.

    Attributes:
        name: Registered validator name.
        kind: Domain the validator checks.
        description: One-line description for listings.
        shared_resources: Resource tags; validators sharing a tag never run
            concurrently.
        timeout: Optional per-validator deadline overriding the run timeout.
    """

    name: str = ""
    kind: CheckKind = CheckKind.EXTERNAL
    description: str = ""
    shared_resources: tuple[str, ...] = ()
    timeout: float | None = None

    @abstractmethod
    def check(self, helper: ValidationHelper) -> None:
        """Inspect the environment and report findings through ``helper``."""

    def run(self, helper: ValidationHelper) -> ValidatorResult:
        """Execute ``check`` and convert every outcome into a ValidatorResult.

        Raises:
            RollbackError: If a failed fix could not be rolled back.
        """
        started_at = utcnow()
        start = time.monotonic()
        try:
            self.check(helper)
        except RollbackError:
            raise
        except ValidatorError as e:
            return self._failure(helper, e, started_at, time.monotonic() - start)
        except CommandTimeoutError as e:
            timed_out = ValidatorTimeoutError(str(e))
            return self._failure(helper, timed_out, started_at, time.monotonic() - start)
        except Exception as e:
            crashed = ValidatorCrashedError(f"{type(e).__name__}: {e}")
            return self._failure(helper, crashed, started_at, time.monotonic() - start)
        return helper.build_result(started_at=started_at, duration=time.monotonic() - start)

    def _failure(
        self,
        helper: ValidationHelper,
        error: ValidatorError,
        started_at: datetime,
        duration: float,
    ) -> ValidatorResult:
        reason = error.reason
        if isinstance(error, (ValidatorCrashedError, MalformedResultError)) and str(error):
            reason = f"{error.reason} ({error})"
        helper.debug(f"infrastructure failure: {error}")
        return ValidatorResult.infrastructure_failure(
            self.name,
            reason,
            error.exit_code,
            started_at=started_at,
            duration=duration,
            raw_output=helper.raw_output,
            detail=str(error),
        )
