"""
Tests for ExecutionService: the blocking, deferred and streaming run modes,
record retention, and cancellation.
"""

import asyncio

import pytest

from agentgraph.config import EngineConfig
from agentgraph.errors import DefinitionNotFound, ExecutionNotFound, ValidationFailure
from agentgraph.graph.definition import NodeType, WorkflowDefinition
from agentgraph.graph.executor import ExecutionStatus, NodeStatus
from agentgraph.graph.node import NodeHandler, NodeResult
from agentgraph.llm.mock import MockLLMProvider
from agentgraph.runtime.event_bus import EventBus, EventType
from agentgraph.runtime.execution_service import ExecutionService
from agentgraph.storage.definitions import InMemoryDefinitionSource


def chat_workflow() -> WorkflowDefinition:
    return WorkflowDefinition.model_validate(
        {
            "id": "chat",
            "name": "Chat",
            "nodes": [
                {"id": "in", "type": "input"},
                {"id": "agent", "type": "agent"},
                {"id": "out", "type": "output", "isEnd": True, "config": {"outputMapping": {"reply": "{{agent.output}}"}}},
            ],
            "edges": [
                {"id": "e1", "source": "in", "target": "agent"},
                {"id": "e2", "source": "agent", "target": "out"},
            ],
        }
    )


def slow_workflow() -> WorkflowDefinition:
    return WorkflowDefinition.model_validate(
        {
            "id": "slow",
            "name": "Slow",
            "nodes": [{"id": "in", "type": "input"}, {"id": "work", "type": "code", "isEnd": True}],
            "edges": [{"id": "e1", "source": "in", "target": "work"}],
        }
    )


class SlowNode(NodeHandler):
    def __init__(self):
        self.started = asyncio.Event()

    async def execute(self, config, context) -> NodeResult:
        self.started.set()
        await asyncio.sleep(10)
        return NodeResult.ok({})


def make_service(config: EngineConfig | None = None, bus: EventBus | None = None) -> ExecutionService:
    definitions = InMemoryDefinitionSource([chat_workflow(), slow_workflow()])
    llm = MockLLMProvider([MockLLMProvider.text("Hi, how can I help?")])
    return ExecutionService(definitions, llm=llm, config=config, event_bus=bus)


# ---- Run modes ----


@pytest.mark.asyncio
async def test_run_returns_terminal_record():
    service = make_service()

    record = await service.run("chat", {"message": "hello"})

    assert record.status == ExecutionStatus.COMPLETED
    assert record.output == {"reply": "Hi, how can I help?"}
    assert service.get(record.id).status == ExecutionStatus.COMPLETED
    assert service.active() == []


def test_run_sync():
    service = make_service()

    record = service.run_sync("chat", {"message": "hello"})

    assert record.status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_stream_event_order():
    service = make_service()

    events = [event async for event in service.stream("chat", {"message": "hello"})]
    types = [event.type for event in events]

    assert types[0] == EventType.WORKFLOW_STARTED
    assert types[-1] == EventType.WORKFLOW_COMPLETED
    assert sum(1 for event in events if event.is_terminal) == 1
    sequences = [event.sequence for event in events]
    assert sequences == sorted(sequences)
    assert len(set(sequences)) == len(sequences)

    agent_started = next(
        i for i, e in enumerate(events) if e.type == EventType.NODE_STARTED and e.node_id == "agent"
    )
    agent_completed = next(
        i for i, e in enumerate(events) if e.type == EventType.NODE_COMPLETED and e.node_id == "agent"
    )
    tokens = [i for i, e in enumerate(events) if e.type == EventType.TOKEN]
    assert tokens
    assert all(agent_started < i < agent_completed for i in tokens)
    assert "".join(events[i].data["content"] for i in tokens) == "Hi, how can I help?"


@pytest.mark.asyncio
async def test_run_streaming_with_async_sink():
    service = make_service()
    received = []

    async def sink(event):
        received.append(event.type)

    record = await service.run_streaming("chat", {"message": "hello"}, sink)

    assert record.status == ExecutionStatus.COMPLETED
    assert received[0] == EventType.WORKFLOW_STARTED
    assert received[-1] == EventType.WORKFLOW_COMPLETED


@pytest.mark.asyncio
async def test_sink_returning_false_cancels_execution():
    service = make_service()
    received = []

    def sink(event):
        received.append(event)
        return False

    record = await service.run_streaming("chat", {"message": "hello"}, sink)

    assert record.status == ExecutionStatus.CANCELLED
    assert record.error == "Event consumer disconnected"
    assert len(received) == 1
    assert all(result.status == NodeStatus.SKIPPED for result in record.node_results)


@pytest.mark.asyncio
async def test_run_deferred_and_result():
    service = make_service()

    handle = await service.run_deferred("chat", {"message": "hello"})
    record = await handle.result()

    assert handle.done()
    assert record.id == handle.execution_id
    assert record.status == ExecutionStatus.COMPLETED
    assert handle.cancel() is False


@pytest.mark.asyncio
async def test_event_bus_sees_every_execution():
    bus = EventBus()
    completed = []

    async def on_completed(event):
        completed.append(event.execution_id)

    bus.subscribe([EventType.WORKFLOW_COMPLETED], on_completed)
    service = make_service(bus=bus)

    first = await service.run("chat", {"message": "a"})
    second = await service.run("chat", {"message": "b"})

    assert completed == [first.id, second.id]
    assert bus.get_history(EventType.WORKFLOW_STARTED, limit=1)[0].execution_id == second.id


# ---- Lookup and errors ----


@pytest.mark.asyncio
async def test_unknown_workflow_and_execution():
    service = make_service()

    with pytest.raises(DefinitionNotFound):
        await service.run("nope")
    with pytest.raises(ExecutionNotFound):
        service.get("exec_missing")
    assert service.cancel("exec_missing") is False


@pytest.mark.asyncio
async def test_invalid_definition_is_rejected_before_registering():
    broken = WorkflowDefinition.model_validate(
        {"id": "broken", "name": "Broken", "nodes": [{"id": "a", "type": "input"}, {"id": "a", "type": "output"}]}
    )
    service = ExecutionService(InMemoryDefinitionSource([broken]))

    with pytest.raises(ValidationFailure):
        await service.run_deferred("broken")
    assert service.history() == []


@pytest.mark.asyncio
async def test_history_newest_first_and_filtered():
    service = make_service()
    service.executor.handlers[NodeType.CODE] = _InstantNode()

    first = await service.run("chat", {"message": "a"})
    second = await service.run("slow", {})
    third = await service.run("chat", {"message": "b"})

    assert [r.id for r in service.history()] == [third.id, second.id, first.id]
    assert [r.id for r in service.history("chat")] == [third.id, first.id]
    assert [r.id for r in service.history(limit=1)] == [third.id]


class _InstantNode(NodeHandler):
    async def execute(self, config, context) -> NodeResult:
        return NodeResult.ok({"done": True})


@pytest.mark.asyncio
async def test_retention_drops_oldest_finished_records():
    service = make_service(config=EngineConfig(max_retained_executions=2))

    records = [await service.run("chat", {"message": str(i)}) for i in range(3)]

    assert [r.id for r in service.history()] == [records[2].id, records[1].id]
    with pytest.raises(ExecutionNotFound):
        service.get(records[0].id)


# ---- Cancellation ----


@pytest.mark.asyncio
async def test_cancel_running_execution():
    service = make_service()
    slow = SlowNode()
    service.executor.handlers[NodeType.CODE] = slow

    handle = await service.run_deferred("slow")
    await asyncio.wait_for(slow.started.wait(), timeout=2)

    assert service.active() == [handle.execution_id]
    assert service.cancel(handle.execution_id, "user asked") is True

    record = await asyncio.wait_for(handle.result(), timeout=2)

    assert record.status == ExecutionStatus.CANCELLED
    assert record.error == "user asked"
    assert record.node_result("work").status == NodeStatus.SKIPPED
    assert service.cancel(handle.execution_id) is False


@pytest.mark.asyncio
async def test_closing_stream_cancels_execution():
    service = make_service()
    slow = SlowNode()
    service.executor.handlers[NodeType.CODE] = slow

    stream = service.stream("slow")
    execution_id = None
    async for event in stream:
        execution_id = event.execution_id
        if event.type == EventType.NODE_STARTED and event.node_id == "work":
            break
    await stream.aclose()

    record = service.get(execution_id)
    assert record.status == ExecutionStatus.CANCELLED
    assert record.error == "Stream consumer closed"
