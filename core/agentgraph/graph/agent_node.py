"""Agent node - runs the agent loop against the configured model and tools."""

import json
import logging
from typing import Any

from agentgraph.config import EngineConfig
from agentgraph.errors import ModelError
from agentgraph.graph.agent_loop import AgentLoop, BoundTool, LoopConfig, LoopPhase
from agentgraph.graph.agent_state import AgentState, Message, StateContext
from agentgraph.graph.context import NodeContext
from agentgraph.graph.node import NodeHandler, NodeResult
from agentgraph.graph.node_config import AgentNodeConfig
from agentgraph.graph.reducers import build_reducer_chain
from agentgraph.llm.provider import LLMProvider, ModelConfig, Tool
from agentgraph.runner.tool_registry import ToolCollaborator

logger = logging.getLogger(__name__)


def build_agent_input(node_input: dict[str, Any]) -> str:
    """The user message for the agent, taken from the node's input map.

    ``input`` wins, then ``message``, then the only value of a one-entry map.
    Anything else is sent as JSON.
    """
    for key in ("input", "message"):
        if node_input.get(key) is not None:
            return _as_text(node_input[key])
    if len(node_input) == 1:
        return _as_text(next(iter(node_input.values())))
    if not node_input:
        return ""
    return json.dumps(node_input, default=str)


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


class AgentNode(NodeHandler):
    def __init__(
        self,
        llm: LLMProvider | None,
        tools: ToolCollaborator | None = None,
        engine_config: EngineConfig | None = None,
    ):
        self.llm = llm
        self.tools = tools
        self.engine_config = engine_config or EngineConfig()

    def bind_tools(self, config: AgentNodeConfig) -> tuple[list[BoundTool], list[str]]:
        """
        Look up every selected tool in the catalog.

        Returns the bound tools plus the refs that could not be found. Exposed
        names are the plain tool names; when two servers offer the same name
        both become ``server__tool``.
        """
        found: list[tuple[str, str, Tool]] = []
        missing: list[str] = []
        for server_id, tool_name in config.tool_refs():
            tool = self._find_descriptor(server_id, tool_name)
            if tool is None:
                missing.append(f"{server_id}/{tool_name}" if server_id else tool_name)
                continue
            found.append((server_id, tool_name, tool))

        names = [tool_name for _, tool_name, _ in found]
        bound: list[BoundTool] = []
        for server_id, tool_name, tool in found:
            exposed = tool_name
            if names.count(tool_name) > 1:
                exposed = f"{server_id}__{tool_name}"
            bound.append(
                BoundTool(
                    server_id=server_id,
                    tool_name=tool_name,
                    tool=Tool(name=exposed, description=tool.description, parameters=tool.parameters),
                )
            )
        return bound, missing

    def _find_descriptor(self, server_id: str, tool_name: str) -> Tool | None:
        if self.tools is None:
            return None
        if server_id:
            candidates = self.tools.list_tools(server_id)
        else:
            servers = getattr(self.tools, "servers", None)
            server_ids = servers() if callable(servers) else [""]
            candidates = [tool for sid in server_ids for tool in self.tools.list_tools(sid)]
        for tool in candidates:
            if tool.name == tool_name:
                return tool
        return None

    def _loop_config(self, config: AgentNodeConfig) -> LoopConfig:
        defaults = self.engine_config
        model_config = ModelConfig(
            model=config.model_id or defaults.model,
            temperature=config.temperature if config.temperature is not None else defaults.temperature,
            max_tokens=config.max_tokens or defaults.max_tokens,
            timeout=defaults.model_timeout,
        )
        return LoopConfig(
            max_iterations=max(1, config.max_iterations or defaults.max_iterations),
            model_config=model_config,
            tool_timeout=defaults.tool_timeout,
            stream_tokens=config.stream_tokens,
        )

    async def execute(self, config: AgentNodeConfig, context: NodeContext) -> NodeResult:
        if self.llm is None:
            return NodeResult.fail("No model provider configured")

        try:
            reducer = build_reducer_chain(config.middleware_chain)
        except ValueError as e:
            return NodeResult.fail(str(e))

        bound_tools, missing = self.bind_tools(config)
        if missing:
            logger.warning(f"Agent '{context.node_id}' skips unknown tools: {', '.join(missing)}")

        messages = []
        if config.system_prompt:
            messages.append(Message.system(config.system_prompt))
        messages.append(Message.user(build_agent_input(context.input)))
        state = AgentState(messages=tuple(messages))

        emitter = context.events
        node_id = context.node_id

        async def on_event(event_type, **data):
            if emitter is not None:
                await emitter.emit(event_type, node_id=node_id, **data)

        loop = AgentLoop(
            llm=self.llm,
            tools=self.tools,
            bound_tools=bound_tools,
            reducer=reducer,
            config=self._loop_config(config),
            on_event=on_event,
            agent_id=node_id,
        )
        loop_context = StateContext(
            agent_id=node_id,
            extra={"execution_id": context.execution_id, "workflow_id": context.workflow_id},
        )

        try:
            result = await loop.run(state, loop_context)
        except ModelError as e:
            logger.error(f"✗ Agent '{node_id}' model call failed: {e}")
            return NodeResult.fail(f"Model error: {e}", retryable=e.retryable)

        output = {
            "output": result.output,
            "iterations": result.iterations,
            "toolCalls": result.tool_calls,
            "messages": [message.to_dict() for message in result.state.messages],
        }
        return NodeResult.ok(
            output,
            phase=result.phase.value,
            aborted=result.phase == LoopPhase.ABORTED,
            inputTokens=result.input_tokens,
            outputTokens=result.output_tokens,
        )
