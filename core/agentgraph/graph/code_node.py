"""Code node - runs a user script in a fresh sandbox."""

from typing import Any

from agentgraph.errors import SandboxError
from agentgraph.graph.code_sandbox import CodeSandbox
from agentgraph.graph.context import NodeContext
from agentgraph.graph.node import NodeHandler, NodeResult
from agentgraph.graph.node_config import CodeNodeConfig
from agentgraph.graph.resolver import resolve_structure

DEFAULT_OUTPUT_KEY = "result"


class CodeNode(NodeHandler):
    """
    Bindings available to the script: ``input`` (the node input),
    ``context`` (the shared context map) and one name per ``input_mapping``
    entry, resolved through the variable resolver.

    With an ``output_mapping`` each output field reads a binding back out of
    the finished script. Without one the output is the value of the script's
    trailing expression (or its ``result`` variable) under ``"result"``.
    """

    def __init__(self, default_timeout: float = 5.0):
        self.default_timeout = default_timeout

    async def execute(self, config: CodeNodeConfig, context: NodeContext) -> NodeResult:
        if config.language.lower() not in ("python", "py"):
            return NodeResult.fail(f"Unsupported script language: {config.language}")
        if not config.script.strip():
            return NodeResult.fail("Code node has no script")

        bindings: dict[str, Any] = {
            "input": dict(context.input),
            "context": dict(context.variables),
        }
        for name, ref in config.input_mapping.items():
            bindings[name] = resolve_structure(ref, context)

        sandbox = CodeSandbox(timeout=config.timeout_seconds or self.default_timeout)
        try:
            result = await sandbox.run_async(config.script, bindings)
        except SandboxError as e:
            return NodeResult.fail(str(e))

        if config.output_mapping:
            output = {
                field_name: result.bindings.get(var_name)
                for field_name, var_name in config.output_mapping.items()
            }
            return NodeResult.ok(output)

        value = result.value
        if value is None:
            value = result.bindings.get(DEFAULT_OUTPUT_KEY)
        return NodeResult.ok({DEFAULT_OUTPUT_KEY: value})
