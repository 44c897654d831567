"""
Workflow definition sources.

The engine only ever asks for a definition by id. Where definitions live is
up to the caller: memory for tests and embedding, a directory of JSON files
for the CLI, or any catalog service that implements ``DefinitionSource``.
"""

import json
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from agentgraph.errors import DefinitionNotFound
from agentgraph.graph.definition import WorkflowDefinition


@runtime_checkable
class DefinitionSource(Protocol):
    def get_definition(self, workflow_id: str) -> WorkflowDefinition: ...


class InMemoryDefinitionSource:
    """Definitions held in a dict keyed by workflow id."""

    def __init__(self, definitions: list[WorkflowDefinition] | None = None):
        self._definitions: dict[str, WorkflowDefinition] = {}
        for definition in definitions or []:
            self.add(definition)

    def add(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.id] = definition

    def get_definition(self, workflow_id: str) -> WorkflowDefinition:
        try:
            return self._definitions[workflow_id]
        except KeyError:
            raise DefinitionNotFound(workflow_id) from None


class FileDefinitionSource:
    """
    Definitions stored as ``{base_path}/{workflow_id}.json``.

    Files are read on every lookup so edits on disk are picked up without a
    restart.
    """

    def __init__(self, base_path: str | Path):
        self.base_path = Path(base_path)

    def _validate_key(self, key: str) -> None:
        """Reject ids that could escape ``base_path``."""
        if not key or key.strip() == "":
            raise ValueError("Workflow id cannot be empty")
        if "/" in key or "\\" in key:
            raise ValueError(f"Invalid workflow id: path separators not allowed in '{key}'")
        if ".." in key or key.startswith("."):
            raise ValueError(f"Invalid workflow id: path traversal detected in '{key}'")
        if "\x00" in key:
            raise ValueError("Invalid workflow id: null bytes not allowed")

    def get_definition(self, workflow_id: str) -> WorkflowDefinition:
        self._validate_key(workflow_id)
        path = self.base_path / f"{workflow_id}.json"
        if not path.exists():
            raise DefinitionNotFound(workflow_id)
        return load_definition(path)


def load_definition(path: str | Path) -> WorkflowDefinition:
    """Read one definition from a JSON file."""
    path = Path(path)
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    try:
        return WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        raise ValueError(f"Malformed workflow definition in {path}: {e}") from e
