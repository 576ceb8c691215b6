"""EditorConfig presence validator."""

from __future__ import annotations

from typing import TYPE_CHECKING

from valorch.models import Finding, Severity
from valorch.remediation import Target
from valorch.validators.base import BaseValidator, CheckKind

if TYPE_CHECKING:
    from valorch.helpers import ValidationHelper

EDITORCONFIG_NAME = ".editorconfig"

DEFAULT_EDITORCONFIG = """\
root = true

[*]
charset = utf-8
end_of_line = lf
insert_final_newline = true
trim_trailing_whitespace = true
indent_style = space
indent_size = 2

[*.py]
indent_size = 4

[Makefile]
indent_style = tab

[*.md]
trim_trailing_whitespace = false
"""


def declares_root(text: str) -> bool:
    """Whether the preamble (before the first section) sets ``root = true``."""
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("["):
            return False
        key, sep, value = stripped.partition("=")
        if sep and key.strip().lower() == "root" and value.strip().lower() == "true":
            return True
    return False


class EditorConfigValidator(BaseValidator):
    """Checks that the project has a root .editorconfig."""

    name = "editorconfig"
    kind = CheckKind.EDITORCONFIG
    description = "Project has a root .editorconfig"
    shared_resources = (EDITORCONFIG_NAME,)

    def check(self, helper: ValidationHelper) -> None:
        path = helper.context.working_dir / EDITORCONFIG_NAME

        if not path.exists():

            def create() -> None:
                if not path.exists():
                    path.write_text(DEFAULT_EDITORCONFIG, encoding="utf-8")

            helper.report(
                Finding(
                    Severity.WARNING,
                    EDITORCONFIG_NAME,
                    ".editorconfig is missing",
                    fix_suggestion="Create a root .editorconfig with project defaults",
                    fixable=True,
                ),
                fix=create,
                targets=[Target.file(path)],
            )
            return

        text = path.read_text(encoding="utf-8", errors="replace")
        if declares_root(text):
            helper.debug(".editorconfig declares root = true")
            return

        def add_root() -> None:
            current = path.read_text(encoding="utf-8")
            if not declares_root(current):
                path.write_text("root = true\n\n" + current, encoding="utf-8")

        helper.report(
            Finding(
                Severity.WARNING,
                EDITORCONFIG_NAME,
                ".editorconfig does not declare root = true",
                fix_suggestion="Add 'root = true' at the top of .editorconfig",
                fixable=True,
            ),
            fix=add_root,
            targets=[Target.file(path)],
        )
