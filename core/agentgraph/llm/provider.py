"""Chat model abstraction used by Agent nodes."""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from agentgraph.llm.stream_events import (
    FinishEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
    ToolCallEvent,
)


@dataclass
class ModelConfig:
    """Per-call model settings, built from an Agent node's configuration."""

    model: str
    temperature: float | None = None
    max_tokens: int | None = None
    timeout: float | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class Tool:
    """A tool the model can call. ``name`` is what the model sees."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


@dataclass
class ToolUse:
    """A tool call requested by the model."""

    id: str
    name: str
    input: dict[str, Any]


@dataclass
class LLMResponse:
    """Response from one model call."""

    content: str
    model: str = ""
    tool_calls: list[ToolUse] = field(default_factory=list)
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = ""
    raw_response: Any = None


class LLMProvider(ABC):
    """
    Abstract chat model - plug in any backend.

    Messages use the OpenAI chat shape (``{"role", "content"}`` plus
    ``tool_calls`` on assistant turns and ``tool_call_id`` on tool turns).
    Implementations map their transport failures onto the ``ModelError``
    subclasses in ``agentgraph.errors``.
    """

    @abstractmethod
    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[Tool] | None,
        model_config: ModelConfig,
    ) -> LLMResponse:
        """
        Generate one assistant turn.

        Args:
            messages: Conversation so far, system prompt included
            tools: Tools the model may call, or None
            model_config: Model id and sampling settings

        Returns:
            LLMResponse with text and any requested tool calls
        """

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[Tool] | None,
        model_config: ModelConfig,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream one assistant turn as StreamEvents.

        Default implementation wraps chat() with synthetic events; providers
        with real incremental output should override it. Tool execution is
        the caller's job: it collects ToolCallEvents and calls again.
        """
        response = await self.chat(messages, tools, model_config)
        if response.content:
            yield TextDeltaEvent(content=response.content, snapshot=response.content)
        yield TextEndEvent(full_text=response.content)
        for call in response.tool_calls:
            yield ToolCallEvent(tool_use_id=call.id, tool_name=call.name, tool_input=call.input)
        yield FinishEvent(
            stop_reason=response.stop_reason,
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            model=response.model,
        )
