"""
Incremental model output, as yielded by ``LLMProvider.stream()``.

The agent loop consumes these by type: text deltas become TOKEN events,
reasoning deltas become REASONING events, tool calls are collected for the
ACTING phase and the finish event carries token usage. A provider emits, in
order: zero or more deltas, one ``TextEndEvent``, the turn's tool calls and
exactly one ``FinishEvent``. ``StreamErrorEvent`` may appear anywhere; a
non-recoverable one ends the turn with a ModelError.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class StreamEventKind(StrEnum):
    TEXT_DELTA = "text_delta"
    TEXT_END = "text_end"
    TOOL_CALL = "tool_call"
    REASONING_DELTA = "reasoning_delta"
    FINISH = "finish"
    ERROR = "error"


@dataclass(frozen=True)
class TextDeltaEvent:
    content: str = ""
    # everything said so far in this turn, this chunk included
    snapshot: str = ""
    kind: StreamEventKind = field(default=StreamEventKind.TEXT_DELTA, init=False)


@dataclass(frozen=True)
class TextEndEvent:
    full_text: str = ""
    kind: StreamEventKind = field(default=StreamEventKind.TEXT_END, init=False)


@dataclass(frozen=True)
class ToolCallEvent:
    """One complete tool call. Providers reassemble argument fragments first."""

    tool_use_id: str = ""
    tool_name: str = ""
    tool_input: dict[str, Any] = field(default_factory=dict)
    kind: StreamEventKind = field(default=StreamEventKind.TOOL_CALL, init=False)


@dataclass(frozen=True)
class ReasoningDeltaEvent:
    content: str = ""
    kind: StreamEventKind = field(default=StreamEventKind.REASONING_DELTA, init=False)


@dataclass(frozen=True)
class FinishEvent:
    stop_reason: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    model: str = ""
    kind: StreamEventKind = field(default=StreamEventKind.FINISH, init=False)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class StreamErrorEvent:
    error: str = ""
    recoverable: bool = False
    kind: StreamEventKind = field(default=StreamEventKind.ERROR, init=False)


StreamEvent = (
    TextDeltaEvent
    | TextEndEvent
    | ToolCallEvent
    | ReasoningDeltaEvent
    | FinishEvent
    | StreamErrorEvent
)
