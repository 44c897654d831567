"""Scripted chat model for tests and dry runs."""

from collections.abc import AsyncIterator, Callable
from typing import Any

from agentgraph.llm.provider import LLMProvider, LLMResponse, ModelConfig, Tool, ToolUse
from agentgraph.llm.stream_events import (
    FinishEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
    ToolCallEvent,
)

ScriptStep = LLMResponse | Exception | Callable[[list[dict[str, Any]]], LLMResponse]


class MockLLMProvider(LLMProvider):
    """
    Plays back a fixed list of responses, one per call.

    Steps may be an ``LLMResponse``, an exception to raise, or a callable that
    receives the messages and returns a response. When the script runs out the
    last step repeats. ``stream()`` splits text on spaces so callers see real
    incremental deltas.

    Example:
        llm = MockLLMProvider([
            MockLLMProvider.tool_call("search", {"q": "weather oslo"}),
            MockLLMProvider.text("Found it."),
        ])
    """

    def __init__(self, script: list[ScriptStep] | None = None, default_text: str = "ok"):
        self.script: list[ScriptStep] = list(script or [])
        self.default_text = default_text
        self.calls: list[dict[str, Any]] = []

    @staticmethod
    def text(content: str) -> LLMResponse:
        return LLMResponse(content=content, model="mock", stop_reason="stop")

    @staticmethod
    def tool_call(name: str, arguments: dict[str, Any], call_id: str | None = None, content: str = "") -> LLMResponse:
        return LLMResponse(
            content=content,
            model="mock",
            tool_calls=[ToolUse(id=call_id or f"call_{name}", name=name, input=arguments)],
            stop_reason="tool_calls",
        )

    def _next_step(self, messages: list[dict[str, Any]]) -> LLMResponse:
        index = len(self.calls) - 1
        if not self.script:
            return self.text(self.default_text)
        step = self.script[min(index, len(self.script) - 1)]
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step(messages)
        return step

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[Tool] | None,
        model_config: ModelConfig,
    ) -> LLMResponse:
        self.calls.append(
            {
                "messages": list(messages),
                "tools": [tool.name for tool in tools or []],
                "model": model_config.model,
            }
        )
        return self._next_step(messages)

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[Tool] | None,
        model_config: ModelConfig,
    ) -> AsyncIterator[StreamEvent]:
        response = await self.chat(messages, tools, model_config)
        snapshot = ""
        words = response.content.split(" ") if response.content else []
        for i, word in enumerate(words):
            chunk = word if i == 0 else f" {word}"
            snapshot += chunk
            yield TextDeltaEvent(content=chunk, snapshot=snapshot)
        yield TextEndEvent(full_text=response.content)
        for call in response.tool_calls:
            yield ToolCallEvent(tool_use_id=call.id, tool_name=call.name, tool_input=call.input)
        yield FinishEvent(stop_reason=response.stop_reason, model=response.model)
