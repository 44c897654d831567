"""Chat model abstraction.

``LiteLLMProvider`` lives in ``agentgraph.llm.litellm`` and is imported
explicitly so that loading the engine does not pull in litellm.
"""

from agentgraph.llm.mock import MockLLMProvider
from agentgraph.llm.provider import LLMProvider, LLMResponse, ModelConfig, Tool, ToolUse
from agentgraph.llm.stream_events import (
    FinishEvent,
    ReasoningDeltaEvent,
    StreamErrorEvent,
    StreamEvent,
    StreamEventKind,
    TextDeltaEvent,
    TextEndEvent,
    ToolCallEvent,
)

__all__ = [
    "LLMProvider",
    "LLMResponse",
    "ModelConfig",
    "Tool",
    "ToolUse",
    "MockLLMProvider",
    "StreamEvent",
    "StreamEventKind",
    "TextDeltaEvent",
    "TextEndEvent",
    "ToolCallEvent",
    "ReasoningDeltaEvent",
    "FinishEvent",
    "StreamErrorEvent",
]
