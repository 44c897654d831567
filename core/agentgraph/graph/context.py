"""
Per-execution context shared by the node handlers of one run.

The ``OutputArena`` is the only state concurrent branches share. Each node
id is written exactly once, under a single lock, and is read-only after that,
so readers never need to lock.
"""

import asyncio
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any


class OutputArena:
    """Write-once map from node id to that node's output."""

    def __init__(self) -> None:
        self._outputs: dict[str, dict[str, Any]] = {}
        self._order: list[str] = []
        self._lock = asyncio.Lock()

    async def write(self, node_id: str, output: dict[str, Any]) -> None:
        async with self._lock:
            if node_id in self._outputs:
                raise RuntimeError(f"Output for node '{node_id}' was already recorded")
            self._outputs[node_id] = output
            self._order.append(node_id)

    def get(self, node_id: str) -> dict[str, Any] | None:
        return self._outputs.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._outputs

    def __len__(self) -> int:
        return len(self._outputs)

    @property
    def last_written(self) -> str | None:
        return self._order[-1] if self._order else None

    def snapshot(self) -> MappingProxyType:
        """Read-only view of all recorded outputs."""
        return MappingProxyType(dict(self._outputs))


@dataclass
class NodeContext:
    """
    What a node handler can see: the workflow input, the shared context map,
    every finished node's output and its own raw input.

    The executor creates one root context per run and derives a per-node view
    with ``for_node``; the arena is shared between views.
    """

    workflow_input: dict[str, Any]
    variables: dict[str, Any] = field(default_factory=dict)
    outputs: OutputArena = field(default_factory=OutputArena)
    node_id: str | None = None
    node_name: str | None = None
    input: dict[str, Any] = field(default_factory=dict)
    execution_id: str | None = None
    workflow_id: str | None = None
    # ExecutionEmitter of the run, for handlers that stream (TOKEN, TOOL_CALL)
    events: Any = None

    def for_node(self, node_id: str, node_name: str, node_input: dict[str, Any]) -> "NodeContext":
        return NodeContext(
            workflow_input=self.workflow_input,
            variables=self.variables,
            outputs=self.outputs,
            node_id=node_id,
            node_name=node_name,
            input=node_input,
            execution_id=self.execution_id,
            workflow_id=self.workflow_id,
            events=self.events,
        )

    def node_output(self, node_id: str) -> dict[str, Any] | None:
        return self.outputs.get(node_id)

    def variable(self, name: str) -> Any:
        return self.variables.get(name)
