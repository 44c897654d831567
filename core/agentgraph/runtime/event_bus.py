"""
Execution events - what a streaming caller sees while a workflow runs.

Two pieces:

- ``EventBus``: process-wide pub/sub with type and execution filters and a
  bounded history. Useful for monitoring many executions at once.
- ``ExecutionEmitter``: one per execution. Serializes every event of that
  execution under a lock, hands it to the caller's sink (if any) and then to
  the bus, so delivery order is exactly emission order. A sink that raises
  or returns ``False`` is treated as a disconnected consumer: it is detached
  and the execution is asked to cancel.
"""

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Types of events emitted during an execution."""

    # Workflow lifecycle (exactly one terminal event per execution)
    WORKFLOW_STARTED = "workflow_started"
    WORKFLOW_COMPLETED = "workflow_completed"
    WORKFLOW_FAILED = "workflow_failed"
    WORKFLOW_CANCELLED = "workflow_cancelled"

    # Node lifecycle
    NODE_STARTED = "node_started"
    NODE_COMPLETED = "node_completed"
    NODE_FAILED = "node_failed"
    NODE_SKIPPED = "node_skipped"

    # Agent node internals
    TOKEN = "token"
    TOOL_CALL = "tool_call"
    REASONING = "reasoning"


TERMINAL_EVENTS = frozenset(
    {EventType.WORKFLOW_COMPLETED, EventType.WORKFLOW_FAILED, EventType.WORKFLOW_CANCELLED}
)


@dataclass
class ExecutionEvent:
    """One event in an execution's stream."""

    type: EventType
    execution_id: str
    workflow_id: str | None = None
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)
    sequence: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization (SSE, websockets, logs)."""
        return {
            "type": self.type.value,
            "execution_id": self.execution_id,
            "workflow_id": self.workflow_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "sequence": self.sequence,
        }


EventHandler = Callable[[ExecutionEvent], Awaitable[None]]
# Sinks may be sync or async; returning False means "stop sending me events"
EventSink = Callable[[ExecutionEvent], Any]


@dataclass
class Subscription:
    """A subscription to events."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_execution: str | None = None
    filter_workflow: str | None = None


class EventBus:
    """
    Pub/sub event bus shared by all executions of a service.

    Example:
        bus = EventBus()

        async def on_failed(event: ExecutionEvent):
            alert(event.execution_id, event.data["error"])

        bus.subscribe([EventType.WORKFLOW_FAILED], on_failed)
    """

    def __init__(
        self,
        max_history: int = 1000,
        max_concurrent_handlers: int = 10,
    ):
        self._subscriptions: dict[str, Subscription] = {}
        self._event_history: list[ExecutionEvent] = []
        self._max_history = max_history
        self._semaphore = asyncio.Semaphore(max_concurrent_handlers)
        self._subscription_counter = 0
        self._lock = asyncio.Lock()

    def subscribe(
        self,
        event_types: list[EventType],
        handler: EventHandler,
        filter_execution: str | None = None,
        filter_workflow: str | None = None,
    ) -> str:
        """
        Subscribe to events.

        Args:
            event_types: Types of events to receive
            handler: Async function to call when an event occurs
            filter_execution: Only receive events from this execution
            filter_workflow: Only receive events from executions of this workflow

        Returns:
            Subscription ID (use to unsubscribe)
        """
        self._subscription_counter += 1
        sub_id = f"sub_{self._subscription_counter}"
        self._subscriptions[sub_id] = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_execution=filter_execution,
            filter_workflow=filter_workflow,
        )
        logger.debug(f"Subscription {sub_id} registered for {event_types}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        if subscription_id in self._subscriptions:
            del self._subscriptions[subscription_id]
            logger.debug(f"Subscription {subscription_id} removed")
            return True
        return False

    async def publish(self, event: ExecutionEvent) -> None:
        """Record ``event`` and run every matching handler before returning."""
        async with self._lock:
            self._event_history.append(event)
            if len(self._event_history) > self._max_history:
                self._event_history = self._event_history[-self._max_history :]

        handlers = [
            subscription.handler
            for subscription in list(self._subscriptions.values())
            if self._matches(subscription, event)
        ]
        if handlers:
            await self._execute_handlers(event, handlers)

    def _matches(self, subscription: Subscription, event: ExecutionEvent) -> bool:
        if event.type not in subscription.event_types:
            return False
        if subscription.filter_execution and subscription.filter_execution != event.execution_id:
            return False
        if subscription.filter_workflow and subscription.filter_workflow != event.workflow_id:
            return False
        return True

    async def _execute_handlers(self, event: ExecutionEvent, handlers: list[EventHandler]) -> None:
        """Execute handlers concurrently with rate limiting."""

        async def run_handler(handler: EventHandler) -> None:
            async with self._semaphore:
                try:
                    await handler(event)
                except Exception as e:
                    logger.error(f"Handler error for {event.type}: {e}")

        await asyncio.gather(*[run_handler(h) for h in handlers], return_exceptions=True)

    def get_history(
        self,
        event_type: EventType | None = None,
        execution_id: str | None = None,
        limit: int = 100,
    ) -> list[ExecutionEvent]:
        """Most recent events first, optionally filtered."""
        events = self._event_history[::-1]
        if event_type:
            events = [e for e in events if e.type == event_type]
        if execution_id:
            events = [e for e in events if e.execution_id == execution_id]
        return events[:limit]

    async def wait_for(
        self,
        event_type: EventType,
        execution_id: str | None = None,
        timeout: float | None = None,
    ) -> ExecutionEvent | None:
        """Wait for the next matching event; None on timeout."""
        result: ExecutionEvent | None = None
        received = asyncio.Event()

        async def handler(event: ExecutionEvent) -> None:
            nonlocal result
            result = event
            received.set()

        sub_id = self.subscribe([event_type], handler, filter_execution=execution_id)
        try:
            if timeout:
                await asyncio.wait_for(received.wait(), timeout=timeout)
            else:
                await received.wait()
        except TimeoutError:
            return None
        finally:
            self.unsubscribe(sub_id)
        return result


class ExecutionEmitter:
    """Ordered event delivery for one execution."""

    def __init__(
        self,
        execution_id: str,
        workflow_id: str | None = None,
        sink: EventSink | None = None,
        bus: EventBus | None = None,
        on_disconnect: Callable[[], None] | None = None,
    ):
        self.execution_id = execution_id
        self.workflow_id = workflow_id
        self._sink = sink
        self._bus = bus
        self._on_disconnect = on_disconnect
        self._lock = asyncio.Lock()
        self._sequence = 0
        self.disconnected = False

    async def emit(self, event_type: EventType, node_id: str | None = None, **data: Any) -> None:
        async with self._lock:
            self._sequence += 1
            event = ExecutionEvent(
                type=event_type,
                execution_id=self.execution_id,
                workflow_id=self.workflow_id,
                node_id=node_id,
                data=data,
                sequence=self._sequence,
            )
            if self._sink is not None:
                await self._deliver(event)
            if self._bus is not None:
                await self._bus.publish(event)

    async def _deliver(self, event: ExecutionEvent) -> None:
        try:
            accepted = self._sink(event)
            if inspect.isawaitable(accepted):
                accepted = await accepted
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.info(f"Event sink for execution {self.execution_id} failed ({e}); detaching")
            accepted = False

        if accepted is False:
            self._sink = None
            self.disconnected = True
            if self._on_disconnect is not None and not event.is_terminal:
                self._on_disconnect()
