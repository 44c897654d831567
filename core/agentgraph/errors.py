"""
Error taxonomy for the workflow engine.

Static problems (an invalid definition) surface before any node runs.
Node-local problems are converted into FAILED node results by the executor
and never escape a run. Model errors carry a ``retryable`` flag so an outer
policy can decide whether to try again; the agent loop itself never retries.
"""

from typing import Any


class AgentGraphError(Exception):
    """Base class for all engine errors."""


class ValidationFailure(AgentGraphError):
    """A workflow definition failed static validation."""

    def __init__(self, result: Any):
        self.result = result
        super().__init__(f"Invalid workflow definition: {result.error}")


class NodeFailure(AgentGraphError):
    """A node handler could not produce a result."""

    def __init__(self, node_id: str, message: str):
        self.node_id = node_id
        super().__init__(message)


class ModelError(AgentGraphError):
    """A language model call failed."""

    retryable = False

    def __init__(self, message: str, *, model: str | None = None):
        self.model = model
        super().__init__(message)


class ModelTimeout(ModelError):
    retryable = True


class ModelRateLimited(ModelError):
    retryable = True


class ModelUnauthorized(ModelError):
    pass


class ModelUnavailable(ModelError):
    pass


class ModelQuotaExceeded(ModelError):
    pass


class ToolInvocationError(AgentGraphError):
    """An external tool could not be found or failed while running."""

    def __init__(self, server_id: str, tool_name: str, message: str):
        self.server_id = server_id
        self.tool_name = tool_name
        super().__init__(f"Tool '{server_id}/{tool_name}' failed: {message}")


class SandboxError(AgentGraphError):
    """A script was rejected or raised inside the code sandbox."""


class SandboxTimeout(SandboxError):
    """A script exceeded its execution time limit."""


class ExecutionCancelled(AgentGraphError):
    """Cancellation was requested for a running execution."""


class DefinitionNotFound(AgentGraphError, LookupError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow definition not found: {workflow_id}")


class ExecutionNotFound(AgentGraphError, LookupError):
    def __init__(self, execution_id: str):
        self.execution_id = execution_id
        super().__init__(f"Execution not found: {execution_id}")
