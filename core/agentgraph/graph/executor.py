"""
Graph Executor - Runs workflow graphs.

The executor:
1. Validates the definition (results cached per definition content)
2. Walks the graph from the start node, dispatching every ready node as its
   own asyncio task so independent branches run concurrently
3. Follows only the labeled edge a Condition node selects and propagates
   dead edges, so join nodes still fire when some of their inputs are pruned
4. Stops on the first failure (fail-fast) or on cancellation, recording the
   nodes that never finished as SKIPPED
5. Merges the end nodes' outputs into the ExecutionRecord
"""

import asyncio
import hashlib
import logging
import time
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError, computed_field

from agentgraph.config import EngineConfig
from agentgraph.errors import NodeFailure, ValidationFailure
from agentgraph.graph.agent_node import AgentNode
from agentgraph.graph.code_node import CodeNode
from agentgraph.graph.condition_node import ConditionNode
from agentgraph.graph.context import NodeContext
from agentgraph.graph.definition import (
    EdgeDefinition,
    NodeDefinition,
    NodeType,
    ValidationResult,
    WorkflowDefinition,
    validate,
)
from agentgraph.graph.http_node import HttpNode
from agentgraph.graph.io_nodes import InputNode, OutputNode
from agentgraph.graph.node import NodeHandler, NodeResult
from agentgraph.graph.node_config import parse_node_config
from agentgraph.graph.tool_node import ToolNode
from agentgraph.llm.provider import LLMProvider
from agentgraph.observability import set_trace_context
from agentgraph.runner.tool_registry import ToolCollaborator
from agentgraph.runtime.event_bus import EventType, ExecutionEmitter

logger = logging.getLogger(__name__)


class ExecutionStatus(StrEnum):
    """Status of an execution."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)

_ALLOWED_TRANSITIONS = {
    ExecutionStatus.PENDING: {
        ExecutionStatus.RUNNING,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
    ExecutionStatus.RUNNING: {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    },
}


class NodeStatus(StrEnum):
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class FailurePolicy(StrEnum):
    """What a failed node does to the rest of the run."""

    FAIL_FAST = "fail_fast"  # abort the run, skip everything not yet finished
    CONTINUE = "continue"  # record the failure and keep following edges


class NodeExecutionResult(BaseModel):
    """What happened to one node during an execution."""

    node_id: str
    name: str | None = None
    node_type: str | None = None
    status: NodeStatus
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    # handler details such as conditionMet, an agent's phase or token counts
    metadata: dict[str, Any] = Field(default_factory=dict)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None

    model_config = {"frozen": True}


class ExecutionRecord(BaseModel):
    """
    One execution of a workflow.

    Node results are kept in the order the nodes finished. Status only moves
    forward: PENDING -> RUNNING -> one of the terminal states.
    """

    id: str = Field(default_factory=lambda: f"exec_{uuid4().hex[:12]}")
    workflow_id: str | None = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] = Field(default_factory=dict)
    node_results: list[NodeExecutionResult] = Field(default_factory=list)
    error: str | None = None
    error_node_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    model_config = {"extra": "allow"}

    @computed_field
    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, status: ExecutionStatus) -> None:
        """Move to ``status``. Raises ValueError for a backwards or repeated move."""
        if status not in _ALLOWED_TRANSITIONS.get(self.status, set()):
            raise ValueError(f"Illegal execution transition {self.status} -> {status}")
        self.status = status

    def node_result(self, node_id: str) -> NodeExecutionResult | None:
        for result in self.node_results:
            if result.node_id == node_id:
                return result
        return None

    def results_with_status(self, status: NodeStatus) -> list[NodeExecutionResult]:
        return [result for result in self.node_results if result.status == status]

    def snapshot(self) -> "ExecutionRecord":
        """Detached deep copy, safe to hand to callers while the run goes on."""
        return self.model_copy(deep=True)


class CancellationToken:
    """Cooperative cancellation flag shared by a caller and one execution."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    def cancel(self, reason: str = "Execution cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


@dataclass
class _Outcome:
    result: NodeResult
    started_at: datetime
    completed_at: datetime
    duration_ms: int


class GraphExecutor:
    """
    Executes workflow graphs.

    Example:
        executor = GraphExecutor(llm=LiteLLMProvider(), tools=registry)
        record = await executor.run(definition, {"q": "hi"})
        print(record.status, record.output)
    """

    def __init__(
        self,
        llm: LLMProvider | None = None,
        tools: ToolCollaborator | None = None,
        config: EngineConfig | None = None,
        handlers: dict[NodeType, NodeHandler] | None = None,
    ):
        """
        Initialize the executor.

        Args:
            llm: Model provider for Agent nodes
            tools: Tool catalog for Tool and Agent nodes
            config: Engine defaults (timeouts, model, failure policy)
            handlers: Replacement handlers by node type
        """
        self.llm = llm
        self.tools = tools
        self.config = config or EngineConfig()
        self.handlers: dict[NodeType, NodeHandler] = {
            NodeType.INPUT: InputNode(),
            NodeType.OUTPUT: OutputNode(),
            NodeType.CONDITION: ConditionNode(),
            NodeType.CODE: CodeNode(default_timeout=self.config.code_timeout),
            NodeType.HTTP: HttpNode(default_timeout=self.config.http_timeout),
            NodeType.TOOL: ToolNode(tools, default_timeout=self.config.tool_timeout),
            NodeType.AGENT: AgentNode(llm, tools, self.config),
        }
        if handlers:
            self.handlers.update(handlers)
        self._validation_cache: dict[str, ValidationResult] = {}

    def validate(self, definition: WorkflowDefinition) -> ValidationResult:
        """Validate ``definition``, reusing the result for identical content."""
        key = hashlib.sha256(definition.model_dump_json().encode()).hexdigest()
        cached = self._validation_cache.get(key)
        if cached is not None:
            return cached
        result = validate(definition)
        for warning in result.warnings:
            logger.warning(f"⚠ {definition.id}: {warning}")
        self._validation_cache[key] = result
        return result

    def _failure_policy(self, definition: WorkflowDefinition) -> FailurePolicy:
        raw = definition.settings.get("failurePolicy") or self.config.failure_policy
        try:
            return FailurePolicy(str(raw).lower())
        except ValueError:
            logger.warning(f"Unknown failure policy '{raw}', using fail_fast")
            return FailurePolicy.FAIL_FAST

    def _node_timeout(self, definition: WorkflowDefinition) -> float | None:
        raw = definition.settings.get("nodeTimeoutSeconds")
        if raw is None:
            return self.config.node_timeout
        return float(raw)

    async def run(
        self,
        definition: WorkflowDefinition,
        input: dict[str, Any] | None = None,
        *,
        context: dict[str, Any] | None = None,
        record: ExecutionRecord | None = None,
        emitter: ExecutionEmitter | None = None,
        cancellation: CancellationToken | None = None,
    ) -> ExecutionRecord:
        """
        Execute ``definition`` to a terminal record.

        Args:
            definition: Workflow to run
            input: Workflow input map
            context: Shared context values, layered over ``settings["context"]``
            record: Pre-created record to fill in (the service registers it first)
            emitter: Event emitter for this execution
            cancellation: Token the caller can use to stop the run

        Returns:
            The finished ExecutionRecord

        Raises:
            ValidationFailure: the definition is invalid; no node has run
        """
        validation = self.validate(definition)
        if not validation.valid:
            raise ValidationFailure(validation)

        record = record or ExecutionRecord()
        record.workflow_id = definition.id
        record.input = dict(input or {})
        emitter = emitter or ExecutionEmitter(record.id, definition.id)
        cancellation = cancellation or CancellationToken()

        variables = {**(definition.settings.get("context") or {}), **(context or {})}
        set_trace_context(execution_id=record.id, workflow_id=definition.id)

        record.transition(ExecutionStatus.RUNNING)
        record.started_at = datetime.now()
        logger.info(f"▶ Starting execution {record.id} of '{definition.name}'")
        await emitter.emit(EventType.WORKFLOW_STARTED, input=record.input)

        graph_run = _GraphRun(
            executor=self,
            definition=definition,
            record=record,
            root=NodeContext(
                workflow_input=record.input,
                variables=variables,
                execution_id=record.id,
                workflow_id=definition.id,
                events=emitter,
            ),
            emitter=emitter,
            cancellation=cancellation,
            policy=self._failure_policy(definition),
            node_timeout=self._node_timeout(definition),
        )
        try:
            await graph_run.execute()
        except asyncio.CancelledError:
            if not record.is_terminal:
                record.transition(ExecutionStatus.CANCELLED)
                record.error = "Execution task cancelled"
                record.completed_at = datetime.now()
            await self._emit_terminal(record, emitter)
            raise

        record.completed_at = datetime.now()
        await self._emit_terminal(record, emitter)
        return record

    async def _emit_terminal(self, record: ExecutionRecord, emitter: ExecutionEmitter) -> None:
        if record.status == ExecutionStatus.COMPLETED:
            logger.info(f"✓ Execution {record.id} completed in {record.duration_ms}ms")
            await emitter.emit(
                EventType.WORKFLOW_COMPLETED, output=record.output, durationMs=record.duration_ms
            )
        elif record.status == ExecutionStatus.FAILED:
            logger.error(f"✗ Execution {record.id} failed: {record.error}")
            await emitter.emit(
                EventType.WORKFLOW_FAILED, error=record.error, nodeId=record.error_node_id
            )
        else:
            logger.info(f"■ Execution {record.id} cancelled: {record.error}")
            await emitter.emit(EventType.WORKFLOW_CANCELLED, reason=record.error)


class _GraphRun:
    """Scheduling state for one execution of one definition."""

    def __init__(
        self,
        executor: GraphExecutor,
        definition: WorkflowDefinition,
        record: ExecutionRecord,
        root: NodeContext,
        emitter: ExecutionEmitter,
        cancellation: CancellationToken,
        policy: FailurePolicy,
        node_timeout: float | None,
    ):
        self.executor = executor
        self.definition = definition
        self.record = record
        self.root = root
        self.emitter = emitter
        self.cancellation = cancellation
        self.policy = policy
        self.node_timeout = node_timeout

        start = definition.start_node()
        self.start_id = start.id if start else None
        self.reachable = definition.reachable_from(self.start_id) if self.start_id else set()
        self.order = {node.id: i for i, node in enumerate(definition.nodes)}

        # Edges are keyed by position: edge ids are not guaranteed unique
        self.edges: list[EdgeDefinition] = list(definition.edges)
        self.incoming: dict[str, list[int]] = {node_id: [] for node_id in self.reachable}
        self.outgoing: dict[str, list[int]] = {node_id: [] for node_id in self.reachable}
        for index, edge in enumerate(self.edges):
            if edge.source in self.reachable and edge.target in self.reachable:
                self.incoming[edge.target].append(index)
                self.outgoing[edge.source].append(index)

        self.edge_live: dict[int, bool] = {}
        self.scheduled: set[str] = set()
        self.pruned: set[str] = set()
        self.ready: deque[str] = deque()
        self.inputs: dict[str, dict[str, Any]] = {}
        self.running: dict[asyncio.Task, str] = {}

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def execute(self) -> None:
        if self.start_id is None:
            self.record.transition(ExecutionStatus.COMPLETED)
            return

        self.scheduled.add(self.start_id)
        self.ready.append(self.start_id)
        cancel_wait = asyncio.create_task(self.cancellation.wait())
        try:
            while True:
                if self.cancellation.is_cancelled:
                    await self._stop(ExecutionStatus.CANCELLED, self.cancellation.reason)
                    return

                while self.ready:
                    await self._dispatch(self.ready.popleft())
                if not self.running:
                    break

                done, _ = await asyncio.wait(
                    {*self.running, cancel_wait}, return_when=asyncio.FIRST_COMPLETED
                )
                finished = sorted(
                    (task for task in done if task is not cancel_wait),
                    key=lambda task: self.order[self.running[task]],
                )
                # every finished sibling is recorded before a failure stops the run
                failure: str | None = None
                for task in finished:
                    node_id = self.running.pop(task)
                    outcome: _Outcome = task.result()
                    node_result = await self._record(node_id, outcome)
                    if failure is not None:
                        continue
                    failure = self._fail_fast_error(node_result, outcome.result)
                    if failure is not None:
                        self.record.error = failure
                        self.record.error_node_id = node_id
                        continue
                    self._propagate(node_id, outcome.result)
                if failure is not None:
                    await self._stop(ExecutionStatus.FAILED, failure)
                    return
        except asyncio.CancelledError:
            await self._cancel_running("cancelled")
            raise
        finally:
            cancel_wait.cancel()

        stuck = self.reachable - self.scheduled - self.pruned
        if stuck:
            logger.warning(f"Nodes never became ready (cycle?): {', '.join(sorted(stuck))}")

        self.record.output = self._collect_output()
        self.record.transition(ExecutionStatus.COMPLETED)

    def _fail_fast_error(self, node_result: NodeExecutionResult, result: NodeResult) -> str | None:
        """The run's error message if this result ends a fail-fast run, else None."""
        if self.policy != FailurePolicy.FAIL_FAST:
            return None
        label = f"Node '{node_result.name}' ({node_result.node_id})"
        if not result.success:
            return f"{label} failed: {node_result.error}"
        # A captured request error only ends the run when no Condition node
        # downstream can branch on it
        request_error = result.metadata.get("requestError")
        if request_error and not self._feeds_condition(node_result.node_id):
            return f"{label} request failed: {request_error}"
        return None

    def _feeds_condition(self, node_id: str) -> bool:
        return any(
            self.definition.node(self.edges[index].target).type == NodeType.CONDITION
            for index in self.outgoing[node_id]
        )

    async def _dispatch(self, node_id: str) -> None:
        node = self.definition.node(node_id)
        node_input = self._build_input(node_id)
        self.inputs[node_id] = node_input
        logger.info(f"▶ {node.display_name} ({node.type.value})")
        await self.emitter.emit(
            EventType.NODE_STARTED, node_id=node_id, name=node.display_name, nodeType=node.type.value
        )
        task = asyncio.create_task(self._run_node(node, node_input), name=f"node:{node_id}")
        self.running[task] = node_id

    def _build_input(self, node_id: str) -> dict[str, Any]:
        """Workflow input merged with every live predecessor's output, in edge order."""
        merged = dict(self.root.workflow_input)
        if node_id == self.start_id:
            return merged
        for index in self.incoming[node_id]:
            if not self.edge_live.get(index):
                continue
            output = self.root.outputs.get(self.edges[index].source)
            if output:
                merged.update(output)
        return merged

    # ------------------------------------------------------------------
    # One node
    # ------------------------------------------------------------------

    async def _run_node(self, node: NodeDefinition, node_input: dict[str, Any]) -> _Outcome:
        """Run one handler. Never raises, except for cancellation and MemoryError."""
        set_trace_context(node_id=node.id)
        started_at = datetime.now()
        start = time.perf_counter()

        try:
            result = await self._invoke_handler(node, node_input)
        except MemoryError:
            raise
        except NodeFailure as e:
            result = NodeResult.fail(str(e))
        except TimeoutError:
            result = NodeResult.fail(f"Node timed out after {self.node_timeout}s")
        except Exception as e:
            logger.exception(f"Handler for node '{node.id}' raised")
            result = NodeResult.fail(f"{type(e).__name__}: {e}")

        return _Outcome(
            result=result,
            started_at=started_at,
            completed_at=datetime.now(),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )

    async def _invoke_handler(self, node: NodeDefinition, node_input: dict[str, Any]) -> NodeResult:
        handler = self.executor.handlers.get(node.type)
        if handler is None:
            raise NodeFailure(node.id, f"No handler registered for node type '{node.type}'")
        try:
            config = parse_node_config(node)
        except ValidationError as e:
            raise NodeFailure(node.id, f"Invalid config for node '{node.id}': {e}") from e

        context = self.root.for_node(node.id, node.display_name, node_input)
        call = handler.execute(config, context)
        if self.node_timeout:
            return await asyncio.wait_for(call, timeout=self.node_timeout)
        return await call

    async def _record(self, node_id: str, outcome: _Outcome) -> NodeExecutionResult:
        node = self.definition.node(node_id)
        result = outcome.result
        status = NodeStatus.COMPLETED if result.success else NodeStatus.FAILED
        node_result = NodeExecutionResult(
            node_id=node_id,
            name=node.display_name,
            node_type=node.type.value,
            status=status,
            input=self.inputs.get(node_id, {}),
            output=result.output,
            error=result.error,
            metadata=result.metadata,
            started_at=outcome.started_at,
            completed_at=outcome.completed_at,
            duration_ms=outcome.duration_ms,
        )
        self.record.node_results.append(node_result)
        await self.root.outputs.write(node_id, result.output)

        if result.success:
            logger.info(f"✓ {node.display_name} ({outcome.duration_ms}ms)")
            data: dict[str, Any] = {"output": result.output, "durationMs": outcome.duration_ms}
            if result.branch is not None:
                data["branch"] = result.branch
            if result.metadata:
                data["metadata"] = result.metadata
            await self.emitter.emit(EventType.NODE_COMPLETED, node_id=node_id, **data)
        else:
            logger.error(f"✗ {node.display_name} failed: {result.error}")
            await self.emitter.emit(
                EventType.NODE_FAILED,
                node_id=node_id,
                error=result.error,
                output=result.output,
                metadata=result.metadata,
            )
        return node_result

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def _propagate(self, node_id: str, result: NodeResult) -> None:
        node = self.definition.node(node_id)
        for index in self.outgoing[node_id]:
            edge = self.edges[index]
            if node.type == NodeType.CONDITION:
                live = result.branch is not None and edge.source_handle == result.branch
            else:
                live = True
            self.edge_live[index] = live
            self._check_ready(edge.target)

    def _check_ready(self, node_id: str) -> None:
        if node_id in self.scheduled or node_id in self.pruned:
            return
        edges = self.incoming[node_id]
        if any(index not in self.edge_live for index in edges):
            return
        if any(self.edge_live[index] for index in edges):
            self.scheduled.add(node_id)
            self.ready.append(node_id)
            return

        # Every input edge is dead: the node is pruned and so are its out edges
        self.pruned.add(node_id)
        logger.debug(f"Pruned node '{node_id}' (no live input edges)")
        for index in self.outgoing[node_id]:
            self.edge_live[index] = False
            self._check_ready(self.edges[index].target)

    # ------------------------------------------------------------------
    # Stopping
    # ------------------------------------------------------------------

    async def _cancel_running(self, reason: str) -> list[str]:
        tasks = list(self.running)
        if not tasks:
            return []
        cancelled = [self.running[task] for task in tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.running.clear()
        logger.info(f"Cancelled in-flight nodes ({reason}): {', '.join(cancelled)}")
        return cancelled

    async def _stop(self, status: ExecutionStatus, reason: str | None) -> None:
        """End the run early: cancel in-flight nodes, skip the unfinished ones."""
        # tasks that finished after the last wait keep their results
        for task in sorted(
            (t for t in self.running if t.done() and not t.cancelled() and t.exception() is None),
            key=lambda t: self.order[self.running[t]],
        ):
            await self._record(self.running.pop(task), task.result())

        in_flight = await self._cancel_running(reason or status.value)
        for node_id in self._sorted(in_flight):
            await self._skip(node_id, "cancelled")

        finished = {result.node_id for result in self.record.node_results}
        remaining = self.reachable - finished - set(in_flight)
        skip_reason = "upstream failure" if status == ExecutionStatus.FAILED else "cancelled"
        for node_id in self._sorted(remaining):
            await self._skip(node_id, skip_reason)

        if status == ExecutionStatus.CANCELLED:
            self.record.error = reason
        self.record.transition(status)

    async def _skip(self, node_id: str, reason: str) -> None:
        node = self.definition.node(node_id)
        self.record.node_results.append(
            NodeExecutionResult(
                node_id=node_id,
                name=node.display_name,
                node_type=node.type.value,
                status=NodeStatus.SKIPPED,
                error=reason,
            )
        )
        await self.emitter.emit(EventType.NODE_SKIPPED, node_id=node_id, reason=reason)

    def _sorted(self, node_ids: Iterable[str]) -> list[str]:
        return sorted(node_ids, key=lambda node_id: self.order[node_id])

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _collect_output(self) -> dict[str, Any]:
        """
        Merge the outputs of, in order of preference: Output-type end nodes,
        any end nodes, sink nodes that ran. Falls back to the output of the
        last node that finished.
        """
        completed = {
            result.node_id: result.output
            for result in self.record.node_results
            if result.status == NodeStatus.COMPLETED
        }
        end_nodes = [node for node in self.definition.end_nodes() if node.id in completed]
        candidates = [node for node in end_nodes if node.type == NodeType.OUTPUT] or end_nodes
        if not candidates:
            candidates = [node for node in self.definition.sink_nodes() if node.id in completed]

        if candidates:
            merged: dict[str, Any] = {}
            for node in candidates:
                merged.update(completed[node.id])
            return merged

        if self.record.node_results:
            return dict(self.record.node_results[-1].output)
        return {}
