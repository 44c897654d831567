"""Input and Output nodes: where data enters and leaves a workflow."""

from typing import Any

from agentgraph.graph.context import NodeContext
from agentgraph.graph.node import NodeHandler, NodeResult
from agentgraph.graph.node_config import InputNodeConfig, OutputNodeConfig
from agentgraph.graph.resolver import resolve_structure


class InputNode(NodeHandler):
    """Passes the workflow input through unchanged. The schema is advisory."""

    async def execute(self, config: InputNodeConfig, context: NodeContext) -> NodeResult:
        return NodeResult.ok(dict(context.workflow_input))


class OutputNode(NodeHandler):
    """
    Builds the workflow's final output.

    Each entry of ``output_mapping`` maps an output field to a template. A
    template that is exactly one reference keeps the value's type; anything
    else is string interpolation. Without a mapping the node's input (the
    merged outputs of its predecessors) is passed through.
    """

    async def execute(self, config: OutputNodeConfig, context: NodeContext) -> NodeResult:
        if not config.output_mapping:
            return NodeResult.ok(dict(context.input))

        output: dict[str, Any] = {
            field_name: resolve_structure(template, context)
            for field_name, template in config.output_mapping.items()
        }
        return NodeResult.ok(output)
