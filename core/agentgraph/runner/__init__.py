"""Tool catalogs: in-process Python tools and MCP servers."""

from agentgraph.runner.tool_registry import ToolCollaborator, ToolRegistry, tool

__all__ = ["ToolCollaborator", "ToolRegistry", "tool"]
