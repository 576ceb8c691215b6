"""Tests for validators that run as separate processes."""

from __future__ import annotations

import json
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

from valorch.errors import EXIT_MALFORMED, EXIT_TIMEOUT, MalformedResultError
from valorch.helpers import ValidationHelper
from valorch.models import ResultStatus, Severity
from valorch.validators.external import ExternalValidator, parse_result_document


def write_plugin(directory: Path, name: str, body: str) -> list[str]:
    """Write a Python plugin script and return its command line."""
    script = directory / f"{name}.py"
    script.write_text(body)
    return [sys.executable, str(script)]


class TestParseResultDocument:
    """Tests for the plugin output contract."""

    def test_valid_document(self) -> None:
        document = {
            "findings": [
                {"severity": "warning", "component": "node", "message": "old", "fixable": True},
            ],
            "rawOutput": "node v16",
        }
        findings, raw = parse_result_document(json.dumps(document))
        assert findings[0].severity is Severity.WARNING
        assert findings[0].fixable is True
        assert raw == "node v16"

    @pytest.mark.parametrize(
        "stdout,match",
        [
            ("", "no output"),
            ("not json", "not valid JSON"),
            ("[1, 2]", "JSON object"),
            ('{"result": []}', "findings"),
            ('{"findings": [{"severity": "bogus", "component": "a", "message": "b"}]}', "finding 0"),
        ],
    )
    def test_malformed_documents(self, stdout: str, match: str) -> None:
        with pytest.raises(MalformedResultError, match=match):
            parse_result_document(stdout)


class TestExternalValidator:
    """Tests for running plugin processes."""

    def test_requires_command(self) -> None:
        with pytest.raises(ValueError):
            ExternalValidator("empty", [])

    def test_reports_findings(self, make_helper: Callable[..., ValidationHelper], tmp_path: Path) -> None:
        """Test findings printed by the plugin land in the result."""
        command = write_plugin(
            tmp_path,
            "pkg",
            "import json\n"
            "print(json.dumps({'findings': ["
            "{'severity': 'error', 'component': 'requests', 'message': 'vulnerable version'},"
            "{'severity': 'info', 'component': 'pip', 'message': 'up to date'}]}))\n",
        )
        result = ExternalValidator("pkg", command).run(make_helper("pkg"))
        assert result.status is ResultStatus.COMPLETED
        assert result.exit_code == 1
        assert [f.component for f in result.findings] == ["requests", "pip"]

    def test_plugin_receives_context(self, make_helper: Callable[..., ValidationHelper], tmp_path: Path) -> None:
        """Test the run context reaches the plugin environment."""
        command = write_plugin(
            tmp_path,
            "ctx",
            "import json, os\n"
            "ctx = json.loads(os.environ['VALIDATION_CONTEXT'])\n"
            "print(json.dumps({'findings': [{'severity': 'info', 'component': 'ctx',"
            " 'message': os.environ['FIX_MODE'] + ':' + str(ctx['fixMode'])}]}))\n",
        )
        result = ExternalValidator("ctx", command).run(make_helper("ctx", fix_mode=True))
        assert result.findings[0].message == "1:True"

    def test_fixed_finding_without_fix_mode_is_malformed(
        self, make_helper: Callable[..., ValidationHelper], tmp_path: Path
    ) -> None:
        """Test a plugin claiming a fix outside fix mode is rejected."""
        command = write_plugin(
            tmp_path,
            "claims",
            "import json\n"
            "print(json.dumps({'findings': ["
            "{'severity': 'fixed', 'component': 'cache', 'message': 'cleared'}]}))\n",
        )
        result = ExternalValidator("claims", command).run(make_helper("claims"))
        assert result.exit_code == EXIT_MALFORMED
        assert result.fixed == 0
        assert "malformed result" in result.findings[0].message

    def test_fixed_finding_in_fix_mode(self, make_helper: Callable[..., ValidationHelper], tmp_path: Path) -> None:
        command = write_plugin(
            tmp_path,
            "fixes",
            "import json\n"
            "print(json.dumps({'findings': ["
            "{'severity': 'fixed', 'component': 'cache', 'message': 'cleared'}]}))\n",
        )
        result = ExternalValidator("fixes", command).run(make_helper("fixes", fix_mode=True))
        assert result.status is ResultStatus.COMPLETED
        assert result.fixed == 1

    def test_nonzero_exit_is_crash(self, make_helper: Callable[..., ValidationHelper], tmp_path: Path) -> None:
        """Test a plugin exiting nonzero is an infrastructure failure."""
        command = write_plugin(tmp_path, "dies", "import sys\nsys.stderr.write('segfault-ish\\n')\nsys.exit(4)\n")
        result = ExternalValidator("dies", command).run(make_helper("dies"))
        assert result.status is ResultStatus.FAILED
        assert result.exit_code == 4
        assert result.findings[0].message.startswith("validator infrastructure failure: crashed")
        assert "segfault-ish" in result.raw_output

    def test_garbage_output_is_malformed(self, make_helper: Callable[..., ValidationHelper], tmp_path: Path) -> None:
        command = write_plugin(tmp_path, "garbage", "print('all good!')\n")
        result = ExternalValidator("garbage", command).run(make_helper("garbage"))
        assert result.exit_code == EXIT_MALFORMED
        assert "malformed result" in result.findings[0].message

    def test_timeout(self, make_helper: Callable[..., ValidationHelper], tmp_path: Path) -> None:
        """Test a plugin outliving its timeout is killed and reported."""
        command = write_plugin(tmp_path, "hangs", "import time\ntime.sleep(30)\n")
        validator = ExternalValidator("hangs", command, timeout=0.3)
        result = validator.run(make_helper("hangs"))
        assert result.exit_code == EXIT_TIMEOUT
        assert result.findings[0].message == "validator infrastructure failure: timeout"

    def test_missing_executable_is_crash(self, make_helper: Callable[..., ValidationHelper]) -> None:
        result = ExternalValidator("ghost", ["valorch-no-such-plugin"]).run(make_helper("ghost"))
        assert result.status is ResultStatus.FAILED
        assert "crashed" in result.findings[0].message
