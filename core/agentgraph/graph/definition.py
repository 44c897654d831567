"""
Workflow definition - the declarative graph a run executes.

A definition is a list of typed nodes plus the edges between them. The
engine never edits a definition: it validates it once, derives the queries
the executor needs (start node, end nodes, in/out edges) and reads the
per-node ``config`` payload through the typed records in ``node_config``.

Definitions usually arrive as JSON exported by the canvas editor, so every
field also accepts its camelCase spelling (``sourceHandle``, ``isStart``).
"""

import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

# Handles a Condition node puts on its two outgoing edges
TRUE_HANDLE = "true"
FALSE_HANDLE = "false"

_MODEL_CONFIG = {
    "extra": "allow",
    "populate_by_name": True,
    "alias_generator": to_camel,
}


class NodeType(StrEnum):
    """The closed set of node kinds the engine can dispatch."""

    INPUT = "input"
    OUTPUT = "output"
    AGENT = "agent"
    CODE = "code"
    CONDITION = "condition"
    HTTP = "http"
    TOOL = "tool"


class Position(BaseModel):
    """Canvas coordinates. Display only."""

    x: float = 0.0
    y: float = 0.0


class NodeDefinition(BaseModel):
    """One typed unit of work in a workflow."""

    id: str
    type: NodeType
    name: str = ""
    position: Position | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    is_start: bool = False
    is_end: bool = False

    model_config = _MODEL_CONFIG

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @field_validator("config", mode="before")
    @classmethod
    def _default_config(cls, value: Any) -> Any:
        return {} if value is None else value

    @property
    def display_name(self) -> str:
        return self.name or self.id


class EdgeDefinition(BaseModel):
    """
    Directed connection between two nodes.

    ``source_handle`` is how a Condition node labels its branches ("true" /
    "false"). ``condition`` is carried for compatibility with older editors
    and is not evaluated; branching is decided by the Condition node itself.
    """

    id: str
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    source_handle: str | None = None
    target_handle: str | None = None
    condition: str | None = None

    model_config = _MODEL_CONFIG


@dataclass
class ValidationResult:
    """Outcome of static validation. Never raised, always returned."""

    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""


class WorkflowDefinition(BaseModel):
    """
    A complete workflow graph.

    Example:
        WorkflowDefinition(
            id="greet",
            name="Greeter",
            nodes=[
                NodeDefinition(id="in", type="input", is_start=True),
                NodeDefinition(id="out", type="output", is_end=True,
                               config={"outputMapping": {"text": "Hi {{input.name}}"}}),
            ],
            edges=[EdgeDefinition(id="e1", source="in", target="out")],
        )
    """

    id: str
    name: str = ""
    description: str = ""
    version: int = 1
    nodes: list[NodeDefinition] = Field(default_factory=list)
    edges: list[EdgeDefinition] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)

    model_config = _MODEL_CONFIG

    @field_validator("nodes", "edges", "tags", mode="before")
    @classmethod
    def _default_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("settings", mode="before")
    @classmethod
    def _default_settings(cls, value: Any) -> Any:
        return {} if value is None else value

    # ------------------------------------------------------------------
    # Derived queries
    # ------------------------------------------------------------------

    def start_node(self) -> NodeDefinition | None:
        """Explicit start-flagged node, else the first node, else None."""
        for node in self.nodes:
            if node.is_start:
                return node
        return self.nodes[0] if self.nodes else None

    def end_nodes(self) -> list[NodeDefinition]:
        return [node for node in self.nodes if node.is_end]

    def node(self, node_id: str) -> NodeDefinition | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def input_edges(self, node_id: str) -> list[EdgeDefinition]:
        return [edge for edge in self.edges if edge.target == node_id]

    def output_edges(self, node_id: str) -> list[EdgeDefinition]:
        return [edge for edge in self.edges if edge.source == node_id]

    def sink_nodes(self) -> list[NodeDefinition]:
        """Nodes with no outgoing edges."""
        sources = {edge.source for edge in self.edges}
        return [node for node in self.nodes if node.id not in sources]

    def reachable_from(self, node_id: str) -> set[str]:
        """Ids of every node reachable from ``node_id``, itself included."""
        known = {node.id for node in self.nodes}
        if node_id not in known:
            return set()

        seen = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for edge in self.output_edges(current):
                if edge.target in known and edge.target not in seen:
                    seen.add(edge.target)
                    queue.append(edge.target)
        return seen

    def validate_graph(self) -> ValidationResult:
        return validate(self)


def _blocked_by_cycle(
    definition: WorkflowDefinition, start_id: str, node_ids: set[str]
) -> list[str]:
    """Nodes among ``node_ids`` that sit on, or downstream of, a cycle."""
    # the start node is dispatched directly, so edges into it never hold it back
    indegree = dict.fromkeys(node_ids, 0)
    for edge in definition.edges:
        if edge.source in node_ids and edge.target in node_ids and edge.target != start_id:
            indegree[edge.target] += 1

    queue = deque(node_id for node_id, count in indegree.items() if count == 0)
    while queue:
        current = queue.popleft()
        for edge in definition.output_edges(current):
            if edge.target in indegree and edge.target != start_id:
                indegree[edge.target] -= 1
                if indegree[edge.target] == 0:
                    queue.append(edge.target)
    return [node.id for node in definition.nodes if indegree.get(node.id, 0) > 0]


def validate(definition: WorkflowDefinition) -> ValidationResult:
    """
    Run the static checks a definition must pass before it can execute.

    Checks, in order: the name is non-empty, node ids are unique, and every
    edge's source and target name a known node. Problems that do not stop a
    run (several start flags, unreachable nodes, cycles, odd Condition
    handles) are reported as warnings.
    """
    errors: list[str] = []
    warnings: list[str] = []

    if definition.nodes is None:
        definition.nodes = []
    if definition.edges is None:
        definition.edges = []

    if not definition.name or not definition.name.strip():
        errors.append("Workflow name must not be empty")

    node_ids = [node.id for node in definition.nodes]
    if len(set(node_ids)) != len(node_ids):
        duplicates = sorted(nid for nid, count in Counter(node_ids).items() if count > 1)
        errors.append(f"Duplicate node ids: {', '.join(duplicates)}")

    known = set(node_ids)
    for edge in definition.edges:
        if edge.source not in known:
            errors.append(f"Edge '{edge.id}' references missing source '{edge.source}'")
        if edge.target not in known:
            errors.append(f"Edge '{edge.id}' references missing target '{edge.target}'")

    start_flagged = [node.id for node in definition.nodes if node.is_start]
    if len(start_flagged) > 1:
        warnings.append(
            f"Multiple start nodes flagged ({', '.join(start_flagged)}); using '{start_flagged[0]}'"
        )

    start = definition.start_node()
    if start is not None and not errors:
        reachable = definition.reachable_from(start.id)
        for node in definition.nodes:
            if node.id not in reachable:
                warnings.append(f"Node '{node.id}' is unreachable from start node '{start.id}'")
        blocked = _blocked_by_cycle(definition, start.id, reachable)
        if blocked:
            warnings.append(
                f"Graph contains a cycle; these nodes wait on themselves and will "
                f"never run: {', '.join(blocked)}"
            )

    for node in definition.nodes:
        if node.type != NodeType.CONDITION:
            continue
        for edge in definition.output_edges(node.id):
            if edge.source_handle not in (TRUE_HANDLE, FALSE_HANDLE):
                warnings.append(
                    f"Edge '{edge.id}' leaves condition node '{node.id}' without a "
                    f"'true'/'false' handle and will never be followed"
                )

    if errors:
        logger.debug("Definition '%s' failed validation: %s", definition.id, errors)

    return ValidationResult(valid=not errors, errors=errors, warnings=warnings)
