"""Tool catalog and invocation for Tool and Agent nodes."""

import asyncio
import inspect
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from agentgraph.errors import ToolInvocationError
from agentgraph.llm.provider import Tool
from agentgraph.runner.mcp_client import MCPClient, MCPServerConfig

logger = logging.getLogger(__name__)

LOCAL_SERVER = "local"


@runtime_checkable
class ToolCollaborator(Protocol):
    """What the engine needs from a tool catalog."""

    def list_tools(self, server_id: str) -> list[Tool]: ...

    async def invoke(self, server_id: str, tool_name: str, args: dict[str, Any]) -> Any: ...


@dataclass
class RegisteredTool:
    """A tool with its executor function."""

    server_id: str
    tool: Tool
    executor: Callable[[dict], Any]


def _mcp_executor(client: MCPClient, tool_name: str) -> Callable[[dict], Any]:
    async def executor(inputs: dict) -> Any:
        return await client.acall_tool(tool_name, inputs)

    return executor


def _json_type(annotation: Any) -> str:
    if annotation is int:
        return "integer"
    if annotation is float:
        return "number"
    if annotation is bool:
        return "boolean"
    if annotation is dict:
        return "object"
    if annotation is list:
        return "array"
    return "string"


class ToolRegistry:
    """
    In-process tool catalog, grouped by server id.

    Tools come from three places:
    1. Python functions (``register_function`` or the ``@tool`` decorator)
    2. MCP servers (``register_mcp_server`` / ``load_mcp_config``)
    3. Explicit ``register`` calls with a hand-written schema

    Executors may be sync or async. Sync executors run in a worker thread so
    a slow tool never blocks other branches, and every call can be cancelled.
    """

    def __init__(self):
        self._servers: dict[str, dict[str, RegisteredTool]] = {}
        self._mcp_clients: list[MCPClient] = []

    def register(
        self,
        name: str,
        tool: Tool,
        executor: Callable[[dict], Any],
        server_id: str = LOCAL_SERVER,
    ) -> None:
        """
        Register a single tool with its executor.

        Args:
            name: Tool name (must match tool.name)
            tool: Tool definition shown to models
            executor: Function taking the argument dict and returning a result
            server_id: Server the tool belongs to
        """
        self._servers.setdefault(server_id, {})[name] = RegisteredTool(
            server_id=server_id, tool=tool, executor=executor
        )

    def register_function(
        self,
        func: Callable,
        name: str | None = None,
        description: str | None = None,
        server_id: str = LOCAL_SERVER,
    ) -> None:
        """Register a function as a tool, deriving the JSON schema from its signature."""
        metadata = getattr(func, "_tool_metadata", {})
        tool_name = name or metadata.get("name") or func.__name__
        tool_desc = description or metadata.get("description") or func.__doc__ or f"Execute {tool_name}"

        properties = {}
        required = []
        for param_name, param in inspect.signature(func).parameters.items():
            if param_name in ("self", "cls"):
                continue
            properties[param_name] = {"type": _json_type(param.annotation)}
            if param.default is inspect.Parameter.empty:
                required.append(param_name)

        tool = Tool(
            name=tool_name,
            description=tool_desc.strip(),
            parameters={"type": "object", "properties": properties, "required": required},
        )

        def executor(inputs: dict) -> Any:
            return func(**inputs)

        self.register(tool_name, tool, executor, server_id=server_id)

    def servers(self) -> list[str]:
        return list(self._servers)

    def list_tools(self, server_id: str) -> list[Tool]:
        return [registered.tool for registered in self._servers.get(server_id, {}).values()]

    def has_tool(self, server_id: str, tool_name: str) -> bool:
        return self._lookup(server_id, tool_name) is not None

    def _lookup(self, server_id: str, tool_name: str) -> RegisteredTool | None:
        if server_id:
            return self._servers.get(server_id, {}).get(tool_name)
        # No server given: first server that has the tool
        for tools in self._servers.values():
            if tool_name in tools:
                return tools[tool_name]
        return None

    async def invoke(self, server_id: str, tool_name: str, args: dict[str, Any]) -> Any:
        """Run one tool. Raises ToolInvocationError for unknown tools and tool errors."""
        registered = self._lookup(server_id, tool_name)
        if registered is None:
            raise ToolInvocationError(server_id, tool_name, "unknown tool")

        try:
            if inspect.iscoroutinefunction(registered.executor):
                result = await registered.executor(args)
            else:
                result = await asyncio.to_thread(registered.executor, args)
                if inspect.isawaitable(result):
                    result = await result
        except ToolInvocationError:
            raise
        except TypeError as e:
            raise ToolInvocationError(registered.server_id, tool_name, f"invalid arguments: {e}") from e
        except Exception as e:
            raise ToolInvocationError(registered.server_id, tool_name, str(e)) from e
        return result

    # ------------------------------------------------------------------
    # MCP servers
    # ------------------------------------------------------------------

    def load_mcp_config(self, config_path: Path) -> int:
        """
        Register every server listed in an ``mcp_servers.json`` file.

        Accepts ``{"servers": [{"name": ...}, ...]}`` or a plain
        ``{"server-name": {...}}`` map. A server that cannot be reached is
        logged and skipped. Returns the number of tools registered.
        """
        config_path = Path(config_path)
        try:
            with open(config_path, encoding="utf-8") as f:
                config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load MCP config from {config_path}: {e}")
            return 0

        if "servers" in config:
            entries = config["servers"] or []
        else:
            entries = [{"name": name, **entry} for name, entry in config.items()]

        count = 0
        for entry in entries:
            try:
                count += self.register_mcp_server(
                    MCPServerConfig.from_dict(entry, base_dir=config_path.parent)
                )
            except Exception as e:
                logger.warning(f"✗ Skipping MCP server '{entry.get('name', '?')}': {e}")
        return count

    def register_mcp_server(self, config: MCPServerConfig) -> int:
        """Connect to one MCP server and register its tools under ``config.name``."""
        client = MCPClient(config)
        client.connect()
        self._mcp_clients.append(client)

        for mcp_tool in client.list_tools():
            tool = Tool(
                name=mcp_tool.name,
                description=mcp_tool.description,
                parameters=mcp_tool.input_schema or {"type": "object", "properties": {}},
            )
            self.register(mcp_tool.name, tool, _mcp_executor(client, mcp_tool.name), server_id=config.name)

        logger.info(f"Registered {len(client.tools)} tools from MCP server '{config.name}'")
        return len(client.tools)

    def cleanup(self) -> None:
        """Disconnect all MCP clients."""
        for client in self._mcp_clients:
            try:
                client.disconnect()
            except Exception as e:
                logger.warning(f"Error disconnecting MCP client: {e}")
        self._mcp_clients.clear()


def tool(
    description: str | None = None,
    name: str | None = None,
) -> Callable:
    """
    Decorator to mark a function as a tool.

    Usage:
        @tool(description="Look up a customer by email")
        def find_customer(email: str) -> dict:
            return {"id": 42}

        registry.register_function(find_customer)
    """

    def decorator(func: Callable) -> Callable:
        func._tool_metadata = {
            "name": name or func.__name__,
            "description": description or func.__doc__,
        }
        return func

    return decorator
