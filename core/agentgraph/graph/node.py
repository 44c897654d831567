"""
Node protocol - the uniform contract every node kind implements.

A handler receives its typed config and a NodeContext and returns a
NodeResult. Failures are values, not exceptions: a handler that cannot do its
job returns ``NodeResult.fail(...)``. The executor additionally converts any
exception that slips out of a handler into a failed result, so one node can
only ever fail its own execution, never the process.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from agentgraph.graph.context import NodeContext


@dataclass
class NodeResult:
    """Outcome of one handler call."""

    success: bool
    output: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    # Condition nodes only: which labeled edge ("true"/"false") to follow
    branch: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(
        cls,
        output: dict[str, Any] | None = None,
        *,
        branch: str | None = None,
        **metadata: Any,
    ) -> "NodeResult":
        return cls(success=True, output=output or {}, branch=branch, metadata=metadata)

    @classmethod
    def fail(cls, error: str, output: dict[str, Any] | None = None, **metadata: Any) -> "NodeResult":
        return cls(success=False, output=output or {}, error=error, metadata=metadata)


class NodeHandler(ABC):
    """Executes one node kind."""

    @abstractmethod
    async def execute(self, config: Any, context: NodeContext) -> NodeResult:
        """Run the node with its parsed config against ``context``."""
