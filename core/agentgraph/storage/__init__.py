"""Workflow definition sources."""

from agentgraph.storage.definitions import (
    DefinitionSource,
    FileDefinitionSource,
    InMemoryDefinitionSource,
    load_definition,
)

__all__ = ["DefinitionSource", "FileDefinitionSource", "InMemoryDefinitionSource", "load_definition"]
