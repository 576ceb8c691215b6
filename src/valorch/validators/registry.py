"""Validator registry.

Maps validator names and check kinds to implementations, resolved once at
startup. Built-in validators register by class; external validators come
from a YAML manifest. Registration order is the run order.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from pathlib import Path
from typing import Any

import yaml

from valorch.config import parse_duration
from valorch.validators.base import BaseValidator, CheckKind
from valorch.validators.external import ExternalValidator


class ValidatorRegistry:
    """Ordered registry of validator factories.

    Example:
        >>> registry = ValidatorRegistry()
        >>> registry.register(EditorConfigValidator)
        >>> validators = registry.create(["editorconfig"])
    """

    def __init__(self) -> None:
        """Initialize an empty registry."""
        self._factories: dict[str, Callable[[], BaseValidator]] = {}
        self._kinds: dict[str, CheckKind] = {}
        self._sources: dict[str, str] = {}

    def register(self, validator_class: type[BaseValidator]) -> None:
        """Register a validator class under its ``name``.

        Raises:
            ValueError: If the class has no name or the name is taken.
        """
        name = validator_class.name
        if not name:
            raise ValueError(f"Validator class {validator_class.__name__} has no name defined")
        self._add(name, validator_class.kind, validator_class, "builtin")

    def register_instance(self, validator: BaseValidator, source: str = "manifest") -> None:
        """Register an already-configured validator (e.g. from a manifest).

        Raises:
            ValueError: If the name is taken.
        """
        self._add(validator.name, validator.kind, lambda: validator, source)

    def _add(self, name: str, kind: CheckKind, factory: Callable[[], BaseValidator], source: str) -> None:
        if name in self._factories:
            raise ValueError(f"Validator '{name}' already registered ({self._sources[name]})")
        self._factories[name] = factory
        self._kinds[name] = kind
        self._sources[name] = source

    def has_validator(self, name: str) -> bool:
        return name in self._factories

    def names(self) -> list[str]:
        """Registered names in registration order."""
        return list(self._factories)

    def by_kind(self, kind: CheckKind) -> list[str]:
        """Names of validators registered for ``kind``, in registration order."""
        return [name for name, k in self._kinds.items() if k is kind]

    def source(self, name: str) -> str:
        return self._sources[name]

    def copy(self) -> ValidatorRegistry:
        """Shallow copy sharing the registered factories."""
        clone = ValidatorRegistry()
        clone._factories = dict(self._factories)
        clone._kinds = dict(self._kinds)
        clone._sources = dict(self._sources)
        return clone

    def create(self, names: Iterable[str] | None = None) -> list[BaseValidator]:
        """Instantiate validators in registration order.

        Args:
            names: Subset to instantiate; None means all.

        Raises:
            KeyError: If a requested name is not registered.
        """
        if names is None:
            selected = self.names()
        else:
            wanted = list(dict.fromkeys(names))
            unknown = [n for n in wanted if n not in self._factories]
            if unknown:
                raise KeyError(f"Unknown validator(s): {', '.join(unknown)}")
            selected = [n for n in self._factories if n in wanted]
        return [self._factories[name]() for name in selected]


def _validator_from_entry(entry: dict[str, Any], index: int) -> ExternalValidator:
    name = entry.get("name")
    command = entry.get("command")
    if not isinstance(name, str) or not name:
        raise ValueError(f"Manifest entry {index} needs a 'name'")
    if not command or not isinstance(command, (str, list)):
        raise ValueError(f"Manifest entry '{name}' needs a 'command' (string or list)")

    kind_value = entry.get("kind", CheckKind.EXTERNAL.value)
    try:
        kind = CheckKind(kind_value)
    except ValueError as e:
        raise ValueError(f"Manifest entry '{name}' has unknown kind: {kind_value!r}") from e

    shared = entry.get("shared_resource", [])
    if isinstance(shared, str):
        shared = [shared]
    if not isinstance(shared, list) or not all(isinstance(t, str) for t in shared):
        raise ValueError(f"Manifest entry '{name}' has an invalid 'shared_resource'")

    timeout = entry.get("timeout")
    return ExternalValidator(
        name,
        command,
        kind=kind,
        description=str(entry.get("description", "")),
        shared_resources=shared,
        timeout=parse_duration(timeout) if timeout is not None else None,
    )


def load_manifest(path: Path) -> list[ExternalValidator]:
    """Load external validators declared in a YAML manifest.

    The manifest has a top-level ``validators`` list. A missing file yields
    an empty list.

    Raises:
        ValueError: If the manifest is malformed.
    """
    if not path.is_file():
        return []
    with open(path, encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid manifest {path}: {e}") from e

    if not data:
        return []
    if not isinstance(data, dict) or not isinstance(data.get("validators", []), list):
        raise ValueError(f"Manifest {path} must contain a 'validators' list")

    validators: list[ExternalValidator] = []
    for index, entry in enumerate(data.get("validators", [])):
        if not isinstance(entry, dict):
            raise ValueError(f"Manifest entry {index} must be a mapping")
        validators.append(_validator_from_entry(entry, index))
    return validators


# Global registry instance - populated lazily with the built-ins
_global_registry: ValidatorRegistry | None = None


def get_global_registry() -> ValidatorRegistry:
    """Get the registry of built-in validators.

    Returns a fresh copy each call so manifest registrations never leak
    between runs.
    """
    global _global_registry
    if _global_registry is None:
        _global_registry = _create_default_registry()
    return _global_registry.copy()


def _create_default_registry() -> ValidatorRegistry:
    # Import here to avoid circular imports
    from valorch.validators.editorconfig import EditorConfigValidator
    from valorch.validators.script_permissions import ScriptPermissionsValidator

    registry = ValidatorRegistry()
    registry.register(EditorConfigValidator)
    registry.register(ScriptPermissionsValidator)
    return registry


def build_registry(manifest_path: Path | None = None) -> ValidatorRegistry:
    """Built-in validators followed by those declared in ``manifest_path``.

    Raises:
        ValueError: If the manifest is malformed or reuses a name.
    """
    registry = get_global_registry()
    if manifest_path is not None:
        for validator in load_manifest(manifest_path):
            registry.register_instance(validator, source=str(manifest_path))
    return registry
