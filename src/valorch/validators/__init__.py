"""Validator framework for valorch.

Provides the validator contract, the registry, the external process
validator and the built-in validators.
"""

from __future__ import annotations

from valorch.validators.base import BaseValidator, CheckKind, RunContext
from valorch.validators.editorconfig import EditorConfigValidator
from valorch.validators.external import ExternalValidator, parse_result_document
from valorch.validators.registry import (
    ValidatorRegistry,
    build_registry,
    get_global_registry,
    load_manifest,
)
from valorch.validators.script_permissions import ScriptPermissionsValidator

__all__ = [
    # Contract
    "BaseValidator",
    "CheckKind",
    "RunContext",
    # Validators
    "EditorConfigValidator",
    "ExternalValidator",
    "ScriptPermissionsValidator",
    "parse_result_document",
    # Registry
    "ValidatorRegistry",
    "build_registry",
    "get_global_registry",
    "load_manifest",
]
