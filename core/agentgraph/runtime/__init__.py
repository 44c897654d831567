"""Execution events. The execution service lives in ``agentgraph.runtime.execution_service``."""

from agentgraph.runtime.event_bus import EventBus, EventType, ExecutionEmitter, ExecutionEvent

__all__ = ["EventBus", "EventType", "ExecutionEmitter", "ExecutionEvent"]
