"""Shell script permission validator.

Scripts with a shebang must be executable; fix mode adds the execute bit
wherever the read bit is set, and always for the owner.
"""

from __future__ import annotations

import os
import stat
from collections.abc import Iterator
from pathlib import Path
from typing import TYPE_CHECKING

from valorch.models import Finding, Severity
from valorch.remediation import Target
from valorch.validators.base import BaseValidator, CheckKind

if TYPE_CHECKING:
    from valorch.helpers import ValidationHelper

SCRIPT_SUFFIXES = (".sh", ".bash")
EXCLUDED_DIRS = frozenset({".git", "node_modules", "vendor", "external", ".next", ".venv"})


def find_shell_scripts(root: Path) -> Iterator[Path]:
    """Yield shell scripts under ``root``, skipping vendored directories."""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in EXCLUDED_DIRS)
        for filename in sorted(filenames):
            if filename.endswith(SCRIPT_SUFFIXES):
                yield Path(dirpath) / filename


def has_shebang(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            return f.read(2) == b"#!"
    except OSError:
        return False


def executable_mode(mode: int) -> int:
    """Add execute bits matching each read bit, and always for the owner."""
    return mode | ((mode & 0o444) >> 2) | stat.S_IXUSR


class ScriptPermissionsValidator(BaseValidator):
    """Checks that shell scripts with a shebang are executable."""

    name = "script-permissions"
    kind = CheckKind.SCRIPTS
    description = "Shell scripts with a shebang are executable"

    def check(self, helper: ValidationHelper) -> None:
        root = helper.context.working_dir
        checked = 0
        for script in find_shell_scripts(root):
            helper.check_cancelled()
            checked += 1
            rel = str(script.relative_to(root))
            if not has_shebang(script):
                helper.info(rel, "script has no shebang line")
                continue

            mode = stat.S_IMODE(script.stat().st_mode)
            if mode & stat.S_IXUSR:
                continue

            def make_executable(script: Path = script) -> None:
                current = stat.S_IMODE(script.stat().st_mode)
                if not current & stat.S_IXUSR:
                    os.chmod(script, executable_mode(current))
                if not script.stat().st_mode & stat.S_IXUSR:
                    raise OSError(f"{script} is still not executable")

            helper.report(
                Finding(
                    Severity.WARNING,
                    rel,
                    f"script is not executable (mode {mode:o})",
                    fix_suggestion=f"chmod +x {rel}",
                    fixable=True,
                ),
                fix=make_executable,
                targets=[Target.file(script)],
            )
        helper.debug(f"checked {checked} shell script(s)")
