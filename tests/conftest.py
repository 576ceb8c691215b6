"""Pytest configuration and fixtures for valorch tests."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Set a fixed terminal width to prevent line wrapping issues in CI
# This must be set before any Rich imports
os.environ.setdefault("COLUMNS", "200")
os.environ.setdefault("LINES", "50")
# Disable Rich's terminal detection to ensure consistent output
os.environ.setdefault("TERM", "dumb")

from valorch.helpers import ValidationHelper  # noqa: E402
from valorch.remediation import RemediationEngine  # noqa: E402
from valorch.validators.base import RunContext  # noqa: E402

ORCHESTRATOR_ENV_VARS = (
    "FIX_MODE",
    "VALIDATION_TIMEOUT",
    "VALIDATION_REPORT_DIR",
    "VALORCH_MANIFEST",
    "CI",
)


@pytest.fixture(autouse=True)
def clean_orchestrator_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the caller's environment from leaking into configuration."""
    for var in ORCHESTRATOR_ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def environ() -> dict[str, str]:
    """Private environment mapping for remediation engines."""
    return {}


@pytest.fixture
def engine(environ: dict[str, str]) -> RemediationEngine:
    """Remediation engine that never touches os.environ."""
    return RemediationEngine(environ=environ, lock_timeout=1.0)


@pytest.fixture
def make_context(tmp_path: Path) -> Callable[..., RunContext]:
    """Factory for run contexts rooted in tmp_path."""

    def factory(**overrides: Any) -> RunContext:
        overrides.setdefault("working_dir", tmp_path)
        return RunContext(**overrides)

    return factory


@pytest.fixture
def make_helper(
    make_context: Callable[..., RunContext], engine: RemediationEngine
) -> Callable[..., ValidationHelper]:
    """Factory for helpers bound to the shared test engine."""

    def factory(name: str = "test-validator", **context_overrides: Any) -> ValidationHelper:
        return ValidationHelper(name, make_context(**context_overrides), engine)

    return factory
