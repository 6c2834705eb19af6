"""
Workflow definition registry.

Built-in definitions ship as YAML files in the ``codesweep/workflows``
package directory. Custom definitions (for example from a company or project
layer) are registered per instance; shadowing a built-in type requires an
explicit ``allow_override=True``.
"""

import importlib.resources
import logging
from pathlib import Path
from typing import Iterable, Optional

import yaml
from pydantic import ValidationError

from .errors import DefinitionConflict, UnknownWorkflowType
from .schema import WorkflowDefinition

logger = logging.getLogger(__name__)

BUNDLED_PACKAGE = "codesweep"
BUNDLED_DIR = "workflows"


def parse_definition(text: str, source: str = "<string>") -> WorkflowDefinition:
    """Parse and validate a workflow definition from YAML text."""
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML syntax in {source}: {e}")
    if not isinstance(data, dict):
        raise ValueError(f"Empty or invalid workflow definition: {source}")
    try:
        return WorkflowDefinition(**data)
    except ValidationError as e:
        raise ValueError(f"Invalid workflow definition in {source}: {e}")


def load_bundled_definitions() -> list[WorkflowDefinition]:
    """Load every definition bundled with the package."""
    root = importlib.resources.files(BUNDLED_PACKAGE) / BUNDLED_DIR
    definitions = []
    for entry in sorted(root.iterdir(), key=lambda e: e.name):
        if entry.name.endswith((".yaml", ".yml")):
            definitions.append(parse_definition(entry.read_text(encoding="utf-8"), entry.name))
    return definitions


class WorkflowRegistry:
    """Lookup of workflow definitions by type."""

    def __init__(self, builtins: Optional[Iterable[WorkflowDefinition]] = None):
        """
        Args:
            builtins: Built-in definitions. Defaults to the bundled YAML files.
        """
        if builtins is None:
            builtins = load_bundled_definitions()
        self._builtin: dict[str, WorkflowDefinition] = {}
        for definition in builtins:
            self._builtin[definition.type] = definition
        self._custom: dict[str, WorkflowDefinition] = {}

    def register(self, definition: WorkflowDefinition, allow_override: bool = False) -> None:
        """
        Register a custom workflow definition.

        Raises:
            DefinitionConflict: If the type is built in and allow_override is False
        """
        if definition.type in self._builtin and not allow_override:
            raise DefinitionConflict(
                f"Workflow type '{definition.type}' is a built-in type. "
                f"Use allow_override=True to replace it with a custom definition."
            )
        if definition.type in self._custom:
            logger.info(f"Replacing custom workflow definition '{definition.type}'")
        self._custom[definition.type] = definition

    def unregister(self, workflow_type: str) -> bool:
        """Remove a custom definition. Built-ins cannot be removed."""
        return self._custom.pop(workflow_type, None) is not None

    def clear_custom(self) -> None:
        self._custom.clear()

    def get_definition(self, workflow_type: str) -> WorkflowDefinition:
        """
        Get a definition; custom definitions take precedence.

        Raises:
            UnknownWorkflowType: If no definition exists for the type
        """
        definition = self._custom.get(workflow_type) or self._builtin.get(workflow_type)
        if definition is None:
            raise UnknownWorkflowType(workflow_type, self.available_types())
        return definition

    def is_available(self, workflow_type: str) -> bool:
        return workflow_type in self._custom or workflow_type in self._builtin

    def available_types(self) -> list[str]:
        types = list(self._builtin)
        types.extend(t for t in self._custom if t not in self._builtin)
        return types

    def builtin_types(self) -> list[str]:
        return list(self._builtin)

    def custom_types(self) -> list[str]:
        return list(self._custom)

    def load_file(self, path: Path, allow_override: bool = False) -> WorkflowDefinition:
        """Load and register a definition from a YAML file."""
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            raise ValueError(f"Workflow file not found: {path}")
        definition = parse_definition(text, str(path))
        self.register(definition, allow_override=allow_override)
        return definition

    def load_directory(self, directory: Path, allow_override: bool = False) -> list[WorkflowDefinition]:
        """Load every *.yaml / *.yml definition in a directory."""
        directory = Path(directory)
        if not directory.is_dir():
            return []
        loaded = []
        for path in sorted(directory.iterdir()):
            if path.suffix in (".yaml", ".yml"):
                loaded.append(self.load_file(path, allow_override=allow_override))
        logger.debug(f"Loaded {len(loaded)} custom workflow definition(s) from {directory}")
        return loaded
