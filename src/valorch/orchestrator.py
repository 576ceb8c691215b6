"""Validation orchestrator.

Runs registered validators against the environment, isolates their
failures, aggregates results into a RunReport and derives the verdict.

Validators run sequentially in registration order by default. Parallel mode
uses a bounded worker pool; validators that declare the same shared resource
tag still run one at a time, in registration order. Every validator gets a
hard deadline regardless of mode, and report ordering is always registration
order.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from collections.abc import Sequence
from dataclasses import replace
from datetime import datetime
from enum import Enum
from pathlib import Path

from valorch.config import OrchestratorConfig
from valorch.errors import (
    EXIT_CRASHED,
    EXIT_MALFORMED,
    EXIT_TIMEOUT,
    OrchestratorError,
    RollbackError,
)
from valorch.helpers import CancelToken, ValidationHelper
from valorch.models import OverallStatus, RunReport, ValidatorResult, utcnow
from valorch.remediation import RemediationEngine
from valorch.validators.base import BaseValidator, RunContext

logger = logging.getLogger(__name__)

# Exit code conventions
EXIT_PASS = 0
EXIT_WARN = 1
EXIT_FAIL = 2
EXIT_FATAL = 3

# Seconds a cancelled validator gets to finish an in-flight fix or rollback
CANCEL_GRACE = 5.0


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AGGREGATING = "aggregating"
    SEALED = "sealed"


class ValidatorState(str, Enum):
    SCHEDULED = "scheduled"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def exit_code_for(report: RunReport, warn_as_failure: bool = False) -> int:
    """Map a sealed report to the process exit code.

    0 = pass, 1 = warnings only (2 when ``warn_as_failure``), 2 = surviving
    errors, 3 = the run was aborted or cancelled.
    """
    if report.fatal_error or report.cancelled:
        return EXIT_FATAL
    if report.overall_status is OverallStatus.FAIL:
        return EXIT_FAIL
    if report.overall_status is OverallStatus.WARN:
        return EXIT_FAIL if warn_as_failure else EXIT_WARN
    return EXIT_PASS


def build_context(config: OrchestratorConfig, working_dir: Path | None = None) -> RunContext:
    """Freeze a loaded configuration into the context every validator receives."""
    return RunContext(
        fix_mode=config.fix_mode,
        verbosity=config.verbosity,
        working_dir=(working_dir or Path.cwd()).resolve(),
        timeout=config.timeout,
        environment_overrides=config.environment,
        dry_run=config.dry_run,
        ci=config.ci,
    )


def resource_predecessors(validators: Sequence[BaseValidator]) -> list[list[int]]:
    """For each validator, the earlier validators it must wait for.

    A validator waits for the most recent earlier validator holding each of
    its shared resource tags, which serializes every tag in registration
    order.
    """
    last_holder: dict[str, int] = {}
    predecessors: list[list[int]] = []
    for index, validator in enumerate(validators):
        tags = set(validator.shared_resources)
        predecessors.append(sorted({last_holder[t] for t in tags if t in last_holder}))
        for tag in tags:
            last_holder[tag] = index
    return predecessors


class Orchestrator:
    """Drives one validation run end to end.

    Attributes:
        validators: Validators in registration order.
        context: Immutable run context.
        parallel: Whether to use the worker pool.
        workers: Pool size in parallel mode.
        engine: Remediation engine shared by every validator in the run.
        state: Current RunState.
        report: The run's report once ``run`` has started.
    """

    def __init__(
        self,
        validators: Sequence[BaseValidator],
        context: RunContext,
        *,
        parallel: bool = False,
        workers: int = 1,
        engine: RemediationEngine | None = None,
    ) -> None:
        self.validators = list(validators)
        self.context = context
        self.parallel = parallel
        self.workers = max(1, workers)
        self.engine = engine or RemediationEngine()
        self.state = RunState.PENDING
        self.report: RunReport | None = None
        self._token = CancelToken()
        self._lock = threading.Lock()
        self._states: dict[str, ValidatorState] = {}
        self._fatal_error: str | None = None

    @classmethod
    def from_config(
        cls,
        validators: Sequence[BaseValidator],
        config: OrchestratorConfig,
        working_dir: Path | None = None,
        engine: RemediationEngine | None = None,
    ) -> Orchestrator:
        return cls(
            validators,
            build_context(config, working_dir),
            parallel=config.parallel,
            workers=config.worker_count,
            engine=engine,
        )

    @property
    def validator_states(self) -> dict[str, ValidatorState]:
        with self._lock:
            return dict(self._states)

    @property
    def cancelled(self) -> bool:
        return self._token.cancelled

    def cancel(self, reason: str = "cancelled") -> None:
        """Cancel the run; in-flight validators are asked to stop."""
        if not self._token.cancelled:
            logger.warning("Cancelling validation run: %s", reason)
        self._token.cancel(reason)

    # -- run -------------------------------------------------------------------

    def run(self) -> RunReport:
        """Run every validator and return the sealed report.

        Raises:
            OrchestratorError: If no validators are registered, names are
                duplicated, the run was cancelled before starting, or the
                orchestrator was already used.
        """
        if self.state is not RunState.PENDING:
            raise OrchestratorError("An orchestrator can only run once")
        if not self.validators:
            raise OrchestratorError("No validators registered")
        names = [v.name for v in self.validators]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise OrchestratorError(f"Duplicate validator names: {', '.join(duplicates)}")
        if self._token.cancelled:
            raise OrchestratorError("Run cancelled before any validator started")

        report = RunReport(names, fix_mode=self.context.fix_mode)
        self.report = report
        with self._lock:
            self._states = {name: ValidatorState.SCHEDULED for name in names}
        self.state = RunState.RUNNING
        logger.info(
            "Starting run %s with %d validator(s) (%s)",
            report.run_id,
            len(names),
            f"parallel, {self.workers} workers" if self._use_pool else "sequential",
        )

        if self._use_pool:
            self._run_parallel(report)
        else:
            self._run_sequential(report)

        self.state = RunState.AGGREGATING
        with self._lock:
            for name, state in self._states.items():
                if state is ValidatorState.SCHEDULED:
                    self._states[name] = ValidatorState.CANCELLED
        report.seal(cancelled=self._token.cancelled, fatal_error=self._fatal_error)
        self.state = RunState.SEALED
        logger.info("Run %s sealed: %s", report.run_id, report.overall_status.value if report.overall_status else "?")
        return report

    @property
    def _use_pool(self) -> bool:
        return self.parallel and len(self.validators) > 1

    def _run_sequential(self, report: RunReport) -> None:
        try:
            for index, validator in enumerate(self.validators):
                if self._token.cancelled:
                    break
                self._record(report, index, self._execute(validator))
        except KeyboardInterrupt:
            self.cancel("interrupted")

    def _run_parallel(self, report: RunReport) -> None:
        predecessors = resource_predecessors(self.validators)
        done = [threading.Event() for _ in self.validators]

        def supervise(index: int, validator: BaseValidator) -> None:
            try:
                for before in predecessors[index]:
                    done[before].wait()
                if self._token.cancelled:
                    return
                self._record(report, index, self._execute(validator))
            finally:
                done[index].set()

        pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.workers, len(self.validators)),
            thread_name_prefix="valorch",
        )
        futures: list[concurrent.futures.Future[None]] = []
        try:
            # Submission order is registration order, so a validator's
            # predecessors are always already running or done
            futures = [pool.submit(supervise, i, v) for i, v in enumerate(self.validators)]
            concurrent.futures.wait(futures)
        except KeyboardInterrupt:
            self.cancel("interrupted")
            concurrent.futures.wait(futures)
        finally:
            pool.shutdown(wait=True)

        for future in futures:
            error = future.exception()
            if error is not None:
                # Supervisor bugs must not vanish silently
                raise OrchestratorError(f"Validator supervisor failed: {error}") from error

    def _record(self, report: RunReport, index: int, result: ValidatorResult) -> None:
        with self._lock:
            report.record(index, result)

    def _set_state(self, name: str, state: ValidatorState) -> None:
        with self._lock:
            self._states[name] = state

    def _abort(self, error: RollbackError) -> None:
        with self._lock:
            if self._fatal_error is None:
                self._fatal_error = str(error)
        logger.critical("%s", error)
        self._token.cancel("rollback failed")

    # -- one validator ---------------------------------------------------------

    def _execute(self, validator: BaseValidator) -> ValidatorResult:
        """Run one validator on its own thread under a hard deadline."""
        name = validator.name
        timeout = validator.timeout if validator.timeout is not None else self.context.timeout
        context = self.context if timeout == self.context.timeout else replace(self.context, timeout=timeout)
        token = self._token.child()
        helper = ValidationHelper(name, context, self.engine, token)
        outcome: dict[str, object] = {}

        def target() -> None:
            try:
                outcome["result"] = validator.run(helper)
            except BaseException as e:  # reported through ``outcome``
                outcome["error"] = e

        thread = threading.Thread(target=target, name=f"validator-{name}", daemon=True)
        started_at = utcnow()
        start = time.monotonic()
        self._set_state(name, ValidatorState.EXECUTING)
        logger.debug("Executing validator %s (deadline %gs)", name, timeout)
        thread.start()
        try:
            thread.join(timeout)
        except KeyboardInterrupt:
            self.cancel("interrupted")
            thread.join(CANCEL_GRACE)

        timed_out = thread.is_alive()
        if timed_out:
            token.cancel("timeout")
            # Let an in-flight fix finish or roll back before moving on
            thread.join(CANCEL_GRACE)
            if thread.is_alive():
                logger.warning("Validator %s did not stop within %gs of cancellation", name, CANCEL_GRACE)

        error = outcome.get("error")
        if isinstance(error, RollbackError):
            self._abort(error)

        if timed_out:
            result = ValidatorResult.infrastructure_failure(
                name,
                "timeout",
                EXIT_TIMEOUT,
                started_at=started_at,
                duration=time.monotonic() - start,
                raw_output=helper.raw_output,
                detail=f"exceeded {timeout:g}s deadline",
            )
        elif error is not None:
            result = ValidatorResult.infrastructure_failure(
                name,
                f"crashed ({type(error).__name__})",
                EXIT_CRASHED,
                started_at=started_at,
                duration=time.monotonic() - start,
                raw_output=helper.raw_output,
                detail=str(error),
            )
        else:
            result = self._checked(name, outcome.get("result"), helper, started_at, time.monotonic() - start)

        self._set_state(name, ValidatorState.FAILED if result.infrastructure_failed else ValidatorState.COMPLETED)
        logger.info(
            "Validator %s finished: exit %d, %d error(s), %d warning(s), %d fixed",
            name,
            result.exit_code,
            result.errors,
            result.warnings,
            result.fixed,
        )
        return result

    def _checked(
        self,
        name: str,
        result: object,
        helper: ValidationHelper,
        started_at: datetime,
        duration: float,
    ) -> ValidatorResult:
        """Reject results that break the result contract."""
        problem = None
        if not isinstance(result, ValidatorResult):
            problem = f"expected ValidatorResult, got {type(result).__name__}"
        elif result.exit_code == 0 and result.errors:
            problem = "exit code 0 with error findings"
        elif result.exit_code != 0 and not result.findings:
            problem = f"exit code {result.exit_code} without findings"
        if isinstance(result, ValidatorResult) and problem is None:
            result.validator_name = name
            return result
        return ValidatorResult.infrastructure_failure(
            name,
            f"malformed result ({problem})",
            EXIT_MALFORMED,
            started_at=started_at,
            duration=duration,
            raw_output=helper.raw_output,
        )
