"""Tests for valorch configuration management."""

from __future__ import annotations

from pathlib import Path

import pytest

from valorch.config import (
    OrchestratorConfig,
    find_config_file,
    load_config,
    parse_bool,
    parse_duration,
)


class TestParseDuration:
    """Tests for duration parsing."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("2s", 2.0),
            ("500ms", 0.5),
            ("1.5m", 90.0),
            ("1h", 3600.0),
            ("30", 30.0),
            (45, 45.0),
            (0.25, 0.25),
        ],
    )
    def test_valid_durations(self, value: str | float, expected: float) -> None:
        """Test supported units convert to seconds."""
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["", "soon", "-1s", "0", "1d", 0])
    def test_invalid_durations(self, value: str | int) -> None:
        """Test bad or non-positive durations raise ValueError."""
        with pytest.raises(ValueError):
            parse_duration(value)

    def test_bool_is_not_a_duration(self) -> None:
        """Test True is not accepted as one second."""
        with pytest.raises(ValueError):
            parse_duration(True)


class TestParseBool:
    """Tests for boolean parsing."""

    @pytest.mark.parametrize("value", ["1", "true", "YES", "on"])
    def test_truthy(self, value: str) -> None:
        assert parse_bool(value) is True

    @pytest.mark.parametrize("value", ["0", "false", "No", "off", ""])
    def test_falsy(self, value: str) -> None:
        assert parse_bool(value) is False

    def test_invalid(self) -> None:
        with pytest.raises(ValueError, match="Invalid boolean"):
            parse_bool("maybe")


class TestOrchestratorConfig:
    """Tests for the OrchestratorConfig dataclass."""

    def test_default_values(self) -> None:
        """Test that default values are set correctly."""
        config = OrchestratorConfig()
        assert config.fix_mode is False
        assert config.parallel is False
        assert config.timeout == 300.0
        assert config.report_dir == ".validation-reports"
        assert config.write_report is True
        assert config.manifest == "validators.yaml"
        assert config.validators is None

    def test_string_values_are_coerced(self) -> None:
        """Test values read as text are converted."""
        config = OrchestratorConfig(
            fix_mode="1",  # type: ignore[arg-type]
            timeout="2m",  # type: ignore[arg-type]
            workers="4",  # type: ignore[arg-type]
            validators="a, b",  # type: ignore[arg-type]
        )
        assert config.fix_mode is True
        assert config.timeout == 120.0
        assert config.workers == 4
        assert config.validators == ["a", "b"]

    def test_dry_run_implies_fix_mode(self) -> None:
        """Test a dry run evaluates fixes."""
        assert OrchestratorConfig(dry_run=True).fix_mode is True

    def test_validation_bad_timeout(self) -> None:
        """Test an invalid timeout raises ValueError."""
        with pytest.raises(ValueError):
            OrchestratorConfig(timeout="never")  # type: ignore[arg-type]

    def test_validation_negative_workers(self) -> None:
        """Test negative worker counts are rejected."""
        with pytest.raises(ValueError, match="workers"):
            OrchestratorConfig(workers=-1)

    def test_validation_empty_report_dir(self) -> None:
        """Test that empty report_dir raises ValueError."""
        with pytest.raises(ValueError, match="report_dir must be a non-empty string"):
            OrchestratorConfig(report_dir="")

    def test_validation_environment_types(self) -> None:
        """Test environment overrides must be string pairs."""
        with pytest.raises(ValueError, match="environment"):
            OrchestratorConfig(environment={"A": 1})  # type: ignore[dict-item]

    def test_worker_count_defaults_to_cpus(self) -> None:
        """Test workers=0 resolves to at least one worker."""
        assert OrchestratorConfig().worker_count >= 1
        assert OrchestratorConfig(workers=3).worker_count == 3

    def test_paths_resolve_against_base(self, tmp_path: Path) -> None:
        """Test report dir and manifest are relative to the base path."""
        config = OrchestratorConfig(report_dir="out", manifest="checks.yaml")
        assert config.get_report_dir(tmp_path) == tmp_path / "out"
        assert config.get_manifest_path(tmp_path) == tmp_path / "checks.yaml"


class TestFindConfigFile:
    """Tests for config file discovery."""

    def test_finds_file_in_parent(self, tmp_path: Path) -> None:
        """Test discovery walks up the directory tree."""
        (tmp_path / ".valorchrc").write_text('timeout = "10s"\n')
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        assert find_config_file(".valorchrc", nested) == tmp_path / ".valorchrc"

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test None when no file exists up to the root."""
        assert find_config_file(".valorchrc-does-not-exist", tmp_path) is None


class TestLoadConfig:
    """Tests for the layered configuration loader."""

    def test_defaults_without_sources(self, tmp_path: Path) -> None:
        """Test defaults apply when nothing is configured."""
        config = load_config(start_dir=tmp_path)
        assert config.timeout == 300.0
        assert config.ci is False

    def test_pyproject_section(self, tmp_path: Path) -> None:
        """Test [tool.valorch] in pyproject.toml is read."""
        (tmp_path / "pyproject.toml").write_text(
            '[tool.valorch]\ntimeout = "45s"\nparallel = true\nunknown_key = 1\n'
        )
        config = load_config(start_dir=tmp_path)
        assert config.timeout == 45.0
        assert config.parallel is True

    def test_rcfile_beats_pyproject(self, tmp_path: Path) -> None:
        """Test .valorchrc overrides pyproject.toml."""
        (tmp_path / "pyproject.toml").write_text('[tool.valorch]\nreport_dir = "from-pyproject"\n')
        (tmp_path / ".valorchrc").write_text('report_dir = "from-rc"\n')
        assert load_config(start_dir=tmp_path).report_dir == "from-rc"

    def test_env_beats_rcfile(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test environment variables override the rc file."""
        (tmp_path / ".valorchrc").write_text('timeout = "10s"\n')
        monkeypatch.setenv("VALIDATION_TIMEOUT", "20s")
        monkeypatch.setenv("FIX_MODE", "1")
        monkeypatch.setenv("VALIDATION_REPORT_DIR", "env-reports")
        config = load_config(start_dir=tmp_path)
        assert config.timeout == 20.0
        assert config.fix_mode is True
        assert config.report_dir == "env-reports"

    def test_cli_beats_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test CLI overrides have the highest precedence."""
        monkeypatch.setenv("VALIDATION_TIMEOUT", "20s")
        config = load_config(cli_overrides={"timeout": "5s", "workers": None}, start_dir=tmp_path)
        assert config.timeout == 5.0
        assert config.workers == 0

    def test_ci_presence_enables_ci_mode(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the CI variable only needs to be present."""
        monkeypatch.setenv("CI", "")
        assert load_config(start_dir=tmp_path).ci is True

    def test_invalid_toml_is_ignored(self, tmp_path: Path) -> None:
        """Test a broken rc file falls back to defaults."""
        (tmp_path / ".valorchrc").write_text("this is = = not toml")
        assert load_config(start_dir=tmp_path).timeout == 300.0

    def test_invalid_value_raises(self, tmp_path: Path) -> None:
        """Test invalid merged values raise ValueError."""
        with pytest.raises(ValueError):
            load_config(cli_overrides={"timeout": "forever"}, start_dir=tmp_path)
