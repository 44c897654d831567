"""
Execution Service - the three ways a caller can run a workflow.

- ``run``: wait for the terminal ExecutionRecord
- ``run_deferred``: start in the background, get an ExecutionHandle back
- ``run_streaming`` / ``stream``: receive every ExecutionEvent as it happens

All three share one GraphExecutor, one EventBus and one bounded table of
execution records, so ``get``, ``history`` and ``cancel`` work the same way
no matter how an execution was started.
"""

import asyncio
import logging
from collections import OrderedDict
from collections.abc import AsyncIterator
from typing import Any

from agentgraph.config import EngineConfig
from agentgraph.errors import ExecutionCancelled, ExecutionNotFound, ValidationFailure
from agentgraph.graph.definition import WorkflowDefinition
from agentgraph.graph.executor import (
    CancellationToken,
    ExecutionRecord,
    ExecutionStatus,
    GraphExecutor,
)
from agentgraph.llm.provider import LLMProvider
from agentgraph.observability import clear_trace_context
from agentgraph.runner.tool_registry import ToolCollaborator
from agentgraph.runtime.event_bus import EventBus, EventSink, ExecutionEmitter, ExecutionEvent
from agentgraph.storage.definitions import DefinitionSource

logger = logging.getLogger(__name__)


class ExecutionHandle:
    """A background execution: await ``result()`` or ``cancel()`` it."""

    def __init__(self, execution_id: str, task: asyncio.Task, token: CancellationToken):
        self.execution_id = execution_id
        self._task = task
        self._token = token

    def done(self) -> bool:
        return self._task.done()

    async def result(self) -> ExecutionRecord:
        """
        Wait for the terminal record.

        Raises:
            ExecutionCancelled: the background task itself was cancelled
            Exception: whatever escaped the executor (never a node failure)
        """
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError as e:
            if self._task.cancelled():
                raise ExecutionCancelled(f"Execution {self.execution_id} was cancelled") from e
            raise

    def cancel(self, reason: str = "Execution cancelled") -> bool:
        if self._task.done():
            return False
        self._token.cancel(reason)
        return True


class ExecutionService:
    """
    Runs workflows by id and keeps their records.

    Example:
        service = ExecutionService(
            definitions=FileDefinitionSource("workflows/"),
            llm=LiteLLMProvider(),
            tools=registry,
        )

        record = await service.run("support-triage", {"ticket": "..."})

        async for event in service.stream("support-triage", {"ticket": "..."}):
            print(event.type, event.data)
    """

    def __init__(
        self,
        definitions: DefinitionSource,
        llm: LLMProvider | None = None,
        tools: ToolCollaborator | None = None,
        config: EngineConfig | None = None,
        event_bus: EventBus | None = None,
    ):
        """
        Initialize the service.

        Args:
            definitions: Where workflow definitions are looked up by id
            llm: Model provider for Agent nodes
            tools: Tool catalog for Tool and Agent nodes
            config: Engine defaults, including how many records to retain
            event_bus: Bus that receives every event of every execution
        """
        self.definitions = definitions
        self.config = config or EngineConfig()
        self.event_bus = event_bus or EventBus(max_history=self.config.event_history_size)
        self.executor = GraphExecutor(llm=llm, tools=tools, config=self.config)

        self._records: OrderedDict[str, ExecutionRecord] = OrderedDict()
        self._tokens: dict[str, CancellationToken] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    def _prepare(self, workflow_id: str) -> tuple[WorkflowDefinition, ExecutionRecord, CancellationToken]:
        """Look up and validate the definition, then register a PENDING record."""
        definition = self.definitions.get_definition(workflow_id)
        validation = self.executor.validate(definition)
        if not validation.valid:
            raise ValidationFailure(validation)

        record = ExecutionRecord(workflow_id=definition.id)
        token = CancellationToken()
        self._records[record.id] = record
        self._tokens[record.id] = token
        self._prune_records()
        logger.debug(f"Registered execution {record.id} for workflow '{workflow_id}'")
        return definition, record, token

    def _prune_records(self) -> None:
        """Drop the oldest finished records beyond the retention limit."""
        limit = self.config.max_retained_executions
        if len(self._records) <= limit:
            return
        for execution_id in list(self._records):
            if len(self._records) <= limit:
                break
            if self._records[execution_id].is_terminal:
                del self._records[execution_id]

    async def _execute(
        self,
        definition: WorkflowDefinition,
        record: ExecutionRecord,
        token: CancellationToken,
        input: dict[str, Any] | None,
        context: dict[str, Any] | None,
        sink: EventSink | None = None,
    ) -> ExecutionRecord:
        emitter = ExecutionEmitter(
            record.id,
            definition.id,
            sink=sink,
            bus=self.event_bus,
            on_disconnect=lambda: token.cancel("Event consumer disconnected"),
        )
        try:
            return await self.executor.run(
                definition,
                input,
                context=context,
                record=record,
                emitter=emitter,
                cancellation=token,
            )
        finally:
            self._tokens.pop(record.id, None)
            self._tasks.pop(record.id, None)
            clear_trace_context()
            self._prune_records()

    # ------------------------------------------------------------------
    # Execution modes
    # ------------------------------------------------------------------

    async def run(
        self,
        workflow_id: str,
        input: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> ExecutionRecord:
        """
        Run a workflow and wait for its terminal record.

        Raises:
            DefinitionNotFound: no workflow with that id
            ValidationFailure: the definition is invalid
        """
        definition, record, token = self._prepare(workflow_id)
        return await self._execute(definition, record, token, input, context)

    def run_sync(
        self,
        workflow_id: str,
        input: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> ExecutionRecord:
        """Blocking ``run`` for callers without an event loop."""
        return asyncio.run(self.run(workflow_id, input, context))

    async def run_deferred(
        self,
        workflow_id: str,
        input: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> ExecutionHandle:
        """
        Start a workflow in the background.

        Lookup and validation errors are raised here, before anything runs.
        """
        definition, record, token = self._prepare(workflow_id)
        task = asyncio.create_task(
            self._execute(definition, record, token, input, context), name=f"execution:{record.id}"
        )
        self._tasks[record.id] = task
        logger.debug(f"Started deferred execution {record.id}")
        return ExecutionHandle(record.id, task, token)

    async def run_streaming(
        self,
        workflow_id: str,
        input: dict[str, Any] | None,
        event_sink: EventSink,
        context: dict[str, Any] | None = None,
    ) -> ExecutionRecord:
        """
        Run a workflow, handing every event to ``event_sink`` in order.

        The sink may be sync or async. If it raises or returns ``False`` the
        consumer is considered gone: the sink is detached and the execution
        is cancelled.
        """
        definition, record, token = self._prepare(workflow_id)
        return await self._execute(definition, record, token, input, context, sink=event_sink)

    async def stream(
        self,
        workflow_id: str,
        input: dict[str, Any] | None = None,
        context: dict[str, Any] | None = None,
    ) -> AsyncIterator[ExecutionEvent]:
        """
        Async iterator over the events of one execution, ending after the
        terminal event. Closing the iterator early cancels the execution.
        """
        definition, record, token = self._prepare(workflow_id)
        queue: asyncio.Queue[ExecutionEvent | None] = asyncio.Queue()

        task = asyncio.create_task(
            self._execute(definition, record, token, input, context, sink=queue.put_nowait),
            name=f"execution:{record.id}",
        )
        self._tasks[record.id] = task
        task.add_done_callback(lambda _: queue.put_nowait(None))

        try:
            while True:
                event = await queue.get()
                if event is None:
                    # Task ended without a terminal event: surface its error
                    if not task.cancelled() and task.exception() is not None:
                        raise task.exception()
                    return
                yield event
                if event.is_terminal:
                    return
        finally:
            if not task.done():
                token.cancel("Stream consumer closed")
                await asyncio.wait({task})

    # ------------------------------------------------------------------
    # Queries and control
    # ------------------------------------------------------------------

    def get(self, execution_id: str) -> ExecutionRecord:
        """Snapshot of one execution. Raises ExecutionNotFound."""
        record = self._records.get(execution_id)
        if record is None:
            raise ExecutionNotFound(execution_id)
        return record.snapshot()

    def history(self, workflow_id: str | None = None, limit: int | None = None) -> list[ExecutionRecord]:
        """Retained executions, newest first, optionally for one workflow."""
        records = [
            record.snapshot()
            for record in reversed(self._records.values())
            if workflow_id is None or record.workflow_id == workflow_id
        ]
        return records[:limit] if limit is not None else records

    def active(self) -> list[str]:
        """Ids of executions that have not reached a terminal state."""
        return [
            execution_id
            for execution_id, record in self._records.items()
            if record.status in (ExecutionStatus.PENDING, ExecutionStatus.RUNNING)
        ]

    def cancel(self, execution_id: str, reason: str = "Execution cancelled") -> bool:
        """Request cancellation. False when the execution is unknown or already finished."""
        token = self._tokens.get(execution_id)
        record = self._records.get(execution_id)
        if token is None or record is None or record.is_terminal:
            return False
        logger.info(f"Cancellation requested for execution {execution_id}: {reason}")
        token.cancel(reason)
        return True
