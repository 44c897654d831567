"""
Tests for the agent loop and the Agent node, driven by a scripted model.
"""

import pytest

from agentgraph.errors import ModelError, ModelRateLimited
from agentgraph.graph.agent_loop import AgentLoop, BoundTool, LoopConfig, LoopPhase
from agentgraph.graph.agent_node import AgentNode, build_agent_input
from agentgraph.graph.agent_state import AgentState, Message
from agentgraph.graph.context import NodeContext
from agentgraph.graph.node_config import AgentNodeConfig
from agentgraph.llm.mock import MockLLMProvider
from agentgraph.llm.provider import Tool
from agentgraph.runner.tool_registry import ToolRegistry
from agentgraph.runtime.event_bus import EventType


def make_registry() -> ToolRegistry:
    registry = ToolRegistry()

    def add(a: int, b: int) -> int:
        return a + b

    def weather(city: str) -> dict:
        return {"city": city, "temp": 18}

    registry.register_function(add, server_id="math")
    registry.register_function(weather, server_id="weather")
    return registry


def bound(server_id: str, name: str) -> BoundTool:
    return BoundTool(server_id=server_id, tool_name=name, tool=Tool(name=name, description=name))


def start(text: str = "What is 2 + 3?") -> AgentState:
    return AgentState(messages=(Message.system("Be brief."), Message.user(text)))


class RecordingEvents:
    def __init__(self):
        self.events = []

    async def __call__(self, event_type, **data):
        self.events.append((event_type, data))

    def of(self, event_type):
        return [data for kind, data in self.events if kind == event_type]


# ---- Loop ----


@pytest.mark.asyncio
async def test_answer_without_tools_finishes_in_one_iteration():
    llm = MockLLMProvider([MockLLMProvider.text("Five.")])
    events = RecordingEvents()
    loop = AgentLoop(llm, on_event=events)

    result = await loop.run(start())

    assert result.phase == LoopPhase.DONE
    assert result.iterations == 1
    assert result.output == "Five."
    assert result.state.done is True
    assert result.state.messages[-1].role == "assistant"
    assert "".join(data["content"] for data in events.of(EventType.TOKEN)) == "Five."


@pytest.mark.asyncio
async def test_tool_call_then_answer():
    llm = MockLLMProvider(
        [
            MockLLMProvider.tool_call("add", {"a": 2, "b": 3}, call_id="c1"),
            MockLLMProvider.text("The answer is 5."),
        ]
    )
    events = RecordingEvents()
    loop = AgentLoop(llm, tools=make_registry(), bound_tools=[bound("math", "add")], on_event=events)

    result = await loop.run(start())

    assert result.phase == LoopPhase.DONE
    assert result.iterations == 2
    assert result.output == "The answer is 5."
    assert result.tool_calls == [
        {"id": "c1", "name": "add", "arguments": {"a": 2, "b": 3}, "result": "5", "isError": False, "iteration": 1}
    ]
    tool_message = result.state.messages[3]
    assert tool_message.role == "tool"
    assert tool_message.tool_call_id == "c1"
    assert events.of(EventType.TOOL_CALL) == [{"toolCallId": "c1", "name": "add", "arguments": {"a": 2, "b": 3}}]
    # the second model call saw the tool result
    assert llm.calls[1]["messages"][-1]["content"] == "5"
    assert llm.calls[0]["tools"] == ["add"]


@pytest.mark.asyncio
async def test_unknown_tool_becomes_error_observation():
    llm = MockLLMProvider(
        [MockLLMProvider.tool_call("delete_everything", {}), MockLLMProvider.text("Sorry.")]
    )
    loop = AgentLoop(llm, tools=make_registry(), bound_tools=[bound("math", "add")])

    result = await loop.run(start())

    assert result.phase == LoopPhase.DONE
    assert result.tool_calls[0]["isError"] is True
    assert "unknown tool" in result.tool_calls[0]["result"]


@pytest.mark.asyncio
async def test_failing_tool_becomes_error_observation():
    llm = MockLLMProvider([MockLLMProvider.tool_call("add", {"a": 1}), MockLLMProvider.text("Oops.")])
    loop = AgentLoop(llm, tools=make_registry(), bound_tools=[bound("math", "add")])

    result = await loop.run(start())

    assert result.tool_calls[0]["isError"] is True
    assert result.tool_calls[0]["result"].startswith("Error:")
    assert result.state.last_tool_results[0].is_error is True


@pytest.mark.asyncio
async def test_iteration_bound_aborts_with_last_text():
    llm = MockLLMProvider([MockLLMProvider.tool_call("add", {"a": 1, "b": 1}, content="Still working")])
    loop = AgentLoop(
        llm,
        tools=make_registry(),
        bound_tools=[bound("math", "add")],
        config=LoopConfig(max_iterations=3),
    )

    result = await loop.run(start())

    assert result.phase == LoopPhase.ABORTED
    assert result.iterations == 3
    assert len(result.tool_calls) == 3
    assert len(llm.calls) == 3
    assert result.output == "Still working"


@pytest.mark.asyncio
async def test_model_errors_propagate():
    llm = MockLLMProvider([ModelError("backend exploded", model="mock")])
    loop = AgentLoop(llm)

    with pytest.raises(ModelError, match="backend exploded"):
        await loop.run(start())


@pytest.mark.asyncio
async def test_reducer_sees_every_transition():
    phases = []

    def spy(old, candidate, context):
        phases.append((context["phase"], context["step"]))
        return candidate

    llm = MockLLMProvider([MockLLMProvider.tool_call("add", {"a": 1, "b": 2}), MockLLMProvider.text("3")])
    loop = AgentLoop(llm, tools=make_registry(), bound_tools=[bound("math", "add")], reducer=spy)

    await loop.run(start())

    assert phases == [("acting", 1), ("observing", 1), ("done", 2)]


# ---- Agent node ----


def test_build_agent_input():
    assert build_agent_input({"input": "hi", "message": "no"}) == "hi"
    assert build_agent_input({"message": "hello"}) == "hello"
    assert build_agent_input({"q": "only one"}) == "only one"
    assert build_agent_input({"q": {"x": 1}}) == '{"x": 1}'
    assert build_agent_input({}) == ""
    assert build_agent_input({"a": 1, "b": 2}) == '{"a": 1, "b": 2}'


def test_bind_tools_renames_collisions_and_reports_missing():
    registry = make_registry()

    def add(a: int, b: int) -> int:
        return a + b

    registry.register_function(add, server_id="calculator")
    node = AgentNode(MockLLMProvider(), registry)
    config = AgentNodeConfig.model_validate(
        {"tools": ["math/add", "calculator/add", "weather", "math/missing"]}
    )

    tools, missing = node.bind_tools(config)

    assert [t.exposed_name for t in tools] == ["math__add", "calculator__add", "weather"]
    assert tools[2].server_id == ""
    assert missing == ["math/missing"]


class FakeEmitter:
    def __init__(self):
        self.events = []

    async def emit(self, event_type, node_id=None, **data):
        self.events.append((event_type, node_id, data))


@pytest.mark.asyncio
async def test_agent_node_output_and_metadata():
    llm = MockLLMProvider(
        [MockLLMProvider.tool_call("weather", {"city": "Oslo"}), MockLLMProvider.text("Cool and 18.")]
    )
    node = AgentNode(llm, make_registry())
    emitter = FakeEmitter()
    context = NodeContext(workflow_input={}, events=emitter).for_node(
        "assistant", "Assistant", {"input": "Weather in Oslo?"}
    )
    config = AgentNodeConfig.model_validate(
        {"systemPrompt": "You report weather.", "mcpTools": [{"serverId": "weather", "tools": ["weather"]}]}
    )

    result = await node.execute(config, context)

    assert result.success is True
    assert result.output["output"] == "Cool and 18."
    assert result.output["iterations"] == 2
    assert result.output["toolCalls"][0]["result"] == '{"city": "Oslo", "temp": 18}'
    assert result.output["messages"][0] == {"role": "system", "content": "You report weather."}
    assert result.output["messages"][1] == {"role": "user", "content": "Weather in Oslo?"}
    assert result.metadata["aborted"] is False
    assert {node_id for _, node_id, _ in emitter.events} == {"assistant"}
    assert EventType.TOKEN in {event_type for event_type, _, _ in emitter.events}


@pytest.mark.asyncio
async def test_agent_node_failures():
    context = NodeContext(workflow_input={}).for_node("a", "A", {"input": "hi"})

    no_model = await AgentNode(None).execute(AgentNodeConfig(), context)
    bad_chain = await AgentNode(MockLLMProvider()).execute(
        AgentNodeConfig.model_validate({"middlewareChain": ["nonsense"]}), context
    )
    rate_limited = await AgentNode(MockLLMProvider([ModelRateLimited("slow down")])).execute(
        AgentNodeConfig(), context
    )

    assert no_model.success is False
    assert "Unknown reducer" in bad_chain.error
    assert rate_limited.success is False
    assert rate_limited.error.startswith("Model error:")
