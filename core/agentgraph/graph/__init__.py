"""Graph structures: definitions, node handlers, the agent loop and the executor."""

from agentgraph.graph.agent_loop import AgentLoop, AgentLoopResult, LoopConfig, LoopPhase
from agentgraph.graph.agent_state import AgentState, Message, StateContext
from agentgraph.graph.code_sandbox import CodeSandbox
from agentgraph.graph.context import NodeContext, OutputArena
from agentgraph.graph.definition import (
    EdgeDefinition,
    NodeDefinition,
    NodeType,
    ValidationResult,
    WorkflowDefinition,
    validate,
)
from agentgraph.graph.executor import (
    CancellationToken,
    ExecutionRecord,
    ExecutionStatus,
    FailurePolicy,
    GraphExecutor,
    NodeExecutionResult,
    NodeStatus,
)
from agentgraph.graph.node import NodeHandler, NodeResult
from agentgraph.graph.node_config import parse_node_config
from agentgraph.graph.reducers import StateReducer, build_reducer_chain, compose

__all__ = [
    # Definition
    "WorkflowDefinition",
    "NodeDefinition",
    "EdgeDefinition",
    "NodeType",
    "ValidationResult",
    "validate",
    "parse_node_config",
    # Nodes
    "NodeContext",
    "OutputArena",
    "NodeHandler",
    "NodeResult",
    "CodeSandbox",
    # Agent loop
    "AgentLoop",
    "AgentLoopResult",
    "LoopConfig",
    "LoopPhase",
    "AgentState",
    "Message",
    "StateContext",
    "StateReducer",
    "build_reducer_chain",
    "compose",
    # Executor
    "GraphExecutor",
    "ExecutionRecord",
    "ExecutionStatus",
    "NodeExecutionResult",
    "NodeStatus",
    "FailurePolicy",
    "CancellationToken",
]
