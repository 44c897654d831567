"""Tool node - one direct call to an external tool, no model involved."""

import asyncio
from typing import Any

from agentgraph.errors import ToolInvocationError
from agentgraph.graph.context import NodeContext
from agentgraph.graph.node import NodeHandler, NodeResult
from agentgraph.graph.node_config import ToolNodeConfig
from agentgraph.graph.resolver import resolve_structure
from agentgraph.runner.tool_registry import ToolCollaborator


class ToolNode(NodeHandler):
    def __init__(self, tools: ToolCollaborator | None, default_timeout: float = 60.0):
        self.tools = tools
        self.default_timeout = default_timeout

    async def execute(self, config: ToolNodeConfig, context: NodeContext) -> NodeResult:
        if self.tools is None:
            return NodeResult.fail("No tool collaborator configured")

        arguments = resolve_structure(config.arguments, context)
        timeout = config.timeout_seconds or self.default_timeout
        try:
            result: Any = await asyncio.wait_for(
                self.tools.invoke(config.server_id, config.tool_name, arguments),
                timeout=timeout,
            )
        except TimeoutError:
            return NodeResult.fail(
                f"Tool '{config.server_id}/{config.tool_name}' timed out after {timeout}s"
            )
        except ToolInvocationError as e:
            return NodeResult.fail(str(e))

        if isinstance(result, dict):
            return NodeResult.ok(result)
        return NodeResult.ok({"result": result})
