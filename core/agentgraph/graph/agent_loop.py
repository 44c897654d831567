"""
Agent loop - the bounded think/act/observe cycle behind an Agent node.

Each iteration:
1. THINKING: stream one model turn; text deltas go out as TOKEN events
2. ACTING: run every tool call the model asked for
3. OBSERVING: fold the tool results back into the conversation

A turn without tool calls ends the loop (DONE). Running out of iterations
ends it too (ABORTED), with whatever the model said last as the output.
Every state transition passes through the reducer chain.

There are no automatic retries. A ``ModelError`` raised by the provider
propagates to the caller; a failing or unknown tool becomes an error
observation the model can react to.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from agentgraph.errors import ModelError, ToolInvocationError
from agentgraph.graph.agent_state import (
    ASSISTANT,
    AgentState,
    Message,
    StateContext,
    ToolCall,
    ToolObservation,
)
from agentgraph.graph.reducers import StateReducer, identity
from agentgraph.llm.provider import LLMProvider, ModelConfig, Tool
from agentgraph.llm.stream_events import (
    FinishEvent,
    ReasoningDeltaEvent,
    StreamErrorEvent,
    TextDeltaEvent,
    TextEndEvent,
    ToolCallEvent,
)
from agentgraph.runner.tool_registry import ToolCollaborator
from agentgraph.runtime.event_bus import EventType

logger = logging.getLogger(__name__)

# await on_event(EventType.TOKEN, content="...")
EventCallback = Callable[..., Awaitable[None]]


class LoopPhase(StrEnum):
    THINKING = "thinking"
    ACTING = "acting"
    OBSERVING = "observing"
    DONE = "done"
    ABORTED = "aborted"


@dataclass
class LoopConfig:
    """Configuration for the agent loop."""

    max_iterations: int = 10
    model_config: ModelConfig = field(default_factory=lambda: ModelConfig(model=""))
    tool_timeout: float = 60.0
    stream_tokens: bool = True


@dataclass(frozen=True)
class BoundTool:
    """A tool offered to the model, tied to the server that runs it."""

    server_id: str
    tool_name: str
    tool: Tool

    @property
    def exposed_name(self) -> str:
        return self.tool.name


@dataclass
class AgentLoopResult:
    state: AgentState
    phase: LoopPhase
    iterations: int
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    output: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class _Turn:
    text: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str = ""
    input_tokens: int = 0
    output_tokens: int = 0


def _stringify_result(result: Any) -> str:
    if result is None:
        return ""
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, default=str)
    except (TypeError, ValueError):
        return str(result)


class AgentLoop:
    """
    Runs one agent to completion or to its iteration bound.

    Args:
        llm: Chat model used for every THINKING phase
        tools: Collaborator that executes tool calls (None disables tools)
        bound_tools: Tools the model may call
        reducer: State reducer applied on every transition
        config: Iteration bound, model settings, tool timeout
        on_event: Async callback for TOKEN, TOOL_CALL and REASONING events
        agent_id: Name passed to reducers through StateContext
    """

    def __init__(
        self,
        llm: LLMProvider,
        tools: ToolCollaborator | None = None,
        bound_tools: list[BoundTool] | None = None,
        reducer: StateReducer = identity,
        config: LoopConfig | None = None,
        on_event: EventCallback | None = None,
        agent_id: str | None = None,
    ):
        self.llm = llm
        self.tools = tools
        self.bound_tools = list(bound_tools or [])
        self.reducer = reducer
        self.config = config or LoopConfig()
        self.on_event = on_event
        self.agent_id = agent_id

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def run(self, state: AgentState, context: StateContext | None = None) -> AgentLoopResult:
        base_context = context or StateContext(agent_id=self.agent_id)
        calls_made: list[dict[str, Any]] = []
        input_tokens = 0
        output_tokens = 0

        for step in range(1, self.config.max_iterations + 1):
            logger.debug(f"Agent '{self.agent_id}' iteration {step}/{self.config.max_iterations}")

            turn = await self._think(state)
            input_tokens += turn.input_tokens
            output_tokens += turn.output_tokens

            candidate = state.append(Message.assistant(turn.text, tuple(turn.tool_calls)))
            candidate = candidate.evolve(iteration=step)

            if not turn.tool_calls:
                candidate = candidate.evolve(done=True)
                state = self._reduce(state, candidate, base_context, step, LoopPhase.DONE)
                return AgentLoopResult(
                    state=state,
                    phase=LoopPhase.DONE,
                    iterations=step,
                    tool_calls=calls_made,
                    output=turn.text,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                )

            state = self._reduce(state, candidate, base_context, step, LoopPhase.ACTING)

            observations = await self._act(turn.tool_calls)
            for call, observation in zip(turn.tool_calls, observations, strict=True):
                calls_made.append(
                    {
                        "id": call.id,
                        "name": call.name,
                        "arguments": call.arguments,
                        "result": observation.content,
                        "isError": observation.is_error,
                        "iteration": step,
                    }
                )

            candidate = state.append(
                *(Message.tool(o.tool_call_id, o.tool_name, o.content) for o in observations)
            ).evolve(last_tool_results=tuple(observations))
            state = self._reduce(state, candidate, base_context, step, LoopPhase.OBSERVING)

        logger.warning(
            f"Agent '{self.agent_id}' stopped after {self.config.max_iterations} iterations"
        )
        state = self._reduce(state, state, base_context, self.config.max_iterations, LoopPhase.ABORTED)
        return AgentLoopResult(
            state=state,
            phase=LoopPhase.ABORTED,
            iterations=self.config.max_iterations,
            tool_calls=calls_made,
            output=self._last_assistant_text(state),
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    def _reduce(
        self,
        old: AgentState,
        candidate: AgentState,
        context: StateContext,
        step: int,
        phase: LoopPhase,
    ) -> AgentState:
        step_context = StateContext(
            agent_id=context.agent_id or self.agent_id,
            step=step,
            phase=phase.value,
            extra=context.extra,
        )
        return self.reducer(old, candidate, step_context)

    @staticmethod
    def _last_assistant_text(state: AgentState) -> str:
        for message in reversed(state.messages):
            if message.role == ASSISTANT and message.content:
                return message.content
        return ""

    async def _emit(self, event_type: EventType, **data: Any) -> None:
        if self.on_event is not None:
            await self.on_event(event_type, **data)

    # ------------------------------------------------------------------
    # THINKING
    # ------------------------------------------------------------------

    async def _think(self, state: AgentState) -> _Turn:
        """Stream one model turn and collect its text and tool calls."""
        messages = [message.to_chat() for message in state.messages]
        tools = [bound.tool for bound in self.bound_tools] or None
        model_config = self.config.model_config

        turn = _Turn()
        accumulated = ""
        async for event in self.llm.stream(messages, tools, model_config):
            if isinstance(event, TextDeltaEvent):
                accumulated = event.snapshot or accumulated + event.content
                if self.config.stream_tokens and event.content:
                    await self._emit(EventType.TOKEN, content=event.content)

            elif isinstance(event, TextEndEvent):
                if event.full_text:
                    accumulated = event.full_text

            elif isinstance(event, ReasoningDeltaEvent):
                if event.content:
                    await self._emit(EventType.REASONING, content=event.content)

            elif isinstance(event, ToolCallEvent):
                turn.tool_calls.append(
                    ToolCall(
                        id=event.tool_use_id or f"call_{len(turn.tool_calls)}",
                        name=event.tool_name,
                        arguments=dict(event.tool_input),
                    )
                )

            elif isinstance(event, FinishEvent):
                turn.stop_reason = event.stop_reason
                turn.input_tokens = event.input_tokens
                turn.output_tokens = event.output_tokens
                logger.debug(
                    f"Model turn finished ({event.stop_reason or 'no stop reason'}), "
                    f"{event.total_tokens} tokens"
                )

            elif isinstance(event, StreamErrorEvent):
                if not event.recoverable:
                    raise ModelError(event.error, model=model_config.model)
                logger.warning(f"Recoverable stream error from {model_config.model}: {event.error}")

        turn.text = accumulated
        return turn

    # ------------------------------------------------------------------
    # ACTING
    # ------------------------------------------------------------------

    def _find_tool(self, name: str) -> BoundTool | None:
        for bound in self.bound_tools:
            if name == bound.exposed_name:
                return bound
        for bound in self.bound_tools:
            if name == f"{bound.server_id}/{bound.tool_name}" or name == bound.tool_name:
                return bound
        return None

    async def _act(self, calls: list[ToolCall]) -> list[ToolObservation]:
        """Run the turn's tool calls concurrently; results keep call order."""
        return list(await asyncio.gather(*(self._execute_tool(call) for call in calls)))

    async def _execute_tool(self, call: ToolCall) -> ToolObservation:
        await self._emit(EventType.TOOL_CALL, toolCallId=call.id, name=call.name, arguments=call.arguments)

        bound = self._find_tool(call.name)
        if bound is None:
            content = f"Error: unknown tool '{call.name}'"
            logger.warning(f"Model requested unknown tool '{call.name}'")
            return ToolObservation(call.id, call.name, content, is_error=True)
        if self.tools is None:
            content = f"Error: no tool executor configured for '{call.name}'"
            return ToolObservation(call.id, call.name, content, is_error=True)

        try:
            result = await asyncio.wait_for(
                self.tools.invoke(bound.server_id, bound.tool_name, call.arguments),
                timeout=self.config.tool_timeout,
            )
        except TimeoutError:
            content = f"Error: tool '{call.name}' timed out after {self.config.tool_timeout}s"
            logger.warning(content)
            return ToolObservation(call.id, call.name, content, is_error=True)
        except ToolInvocationError as e:
            logger.warning(f"✗ Tool call {call.name} failed: {e}")
            return ToolObservation(call.id, call.name, f"Error: {e}", is_error=True)
        except Exception as e:
            logger.warning(f"✗ Tool call {call.name} raised {type(e).__name__}: {e}")
            return ToolObservation(call.id, call.name, f"Error: {e}", is_error=True)

        logger.debug(f"✓ Tool call {call.name} returned")
        return ToolObservation(call.id, call.name, _stringify_result(result))
