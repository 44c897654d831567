"""agentgraph - declarative workflow graphs with tool-calling agent nodes."""

from agentgraph.config import EngineConfig
from agentgraph.graph.definition import WorkflowDefinition, validate
from agentgraph.graph.executor import ExecutionRecord, ExecutionStatus, GraphExecutor
from agentgraph.runtime.execution_service import ExecutionHandle, ExecutionService

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "WorkflowDefinition",
    "validate",
    "GraphExecutor",
    "ExecutionRecord",
    "ExecutionStatus",
    "ExecutionService",
    "ExecutionHandle",
]
