"""
Tests for the litellm-backed provider with ``litellm.acompletion`` patched out.
"""

from types import SimpleNamespace

import litellm
import pytest

from agentgraph.errors import ModelError, ModelQuotaExceeded, ModelRateLimited, ModelTimeout
from agentgraph.llm.litellm import LiteLLMProvider, translate_error
from agentgraph.llm.provider import ModelConfig, Tool
from agentgraph.llm.stream_events import (
    FinishEvent,
    StreamEventKind,
    TextDeltaEvent,
    TextEndEvent,
    ToolCallEvent,
)


def tool_call(index, call_id=None, name=None, arguments=None):
    return SimpleNamespace(
        index=index, id=call_id, function=SimpleNamespace(name=name, arguments=arguments)
    )


def chunk(content=None, tool_calls=None, finish_reason=None, usage=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(
        choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)], usage=usage
    )


@pytest.mark.asyncio
async def test_chat_builds_request_and_parses_tool_calls(monkeypatch):
    captured = {}

    async def fake_acompletion(**kwargs):
        captured.update(kwargs)
        message = SimpleNamespace(
            content=None,
            tool_calls=[
                SimpleNamespace(id="c1", function=SimpleNamespace(name="search", arguments='{"q": "x"}'))
            ],
        )
        return SimpleNamespace(
            choices=[SimpleNamespace(message=message, finish_reason="tool_calls")],
            usage=SimpleNamespace(prompt_tokens=11, completion_tokens=4),
            model="openai/gpt-test",
        )

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)
    provider = LiteLLMProvider(api_key="sk-test")

    response = await provider.chat(
        [{"role": "user", "content": "hi"}],
        [Tool("search", "Search the web")],
        ModelConfig(model="openai/gpt-test", temperature=0.2),
    )

    assert captured["model"] == "openai/gpt-test"
    assert captured["temperature"] == 0.2
    assert captured["api_key"] == "sk-test"
    assert captured["tools"][0]["function"]["name"] == "search"
    assert "max_tokens" not in captured
    assert response.content == ""
    assert response.tool_calls[0].input == {"q": "x"}
    assert (response.input_tokens, response.output_tokens) == (11, 4)


@pytest.mark.asyncio
async def test_stream_reassembles_tool_call_fragments(monkeypatch):
    chunks = [
        chunk(content="Let me "),
        chunk(content="check."),
        chunk(tool_calls=[tool_call(0, "c1", "weather", '{"ci')]),
        chunk(tool_calls=[tool_call(0, arguments='ty": "Oslo"}')]),
        chunk(finish_reason="tool_calls"),
        SimpleNamespace(choices=[], usage=SimpleNamespace(prompt_tokens=20, completion_tokens=7)),
    ]

    async def fake_acompletion(**kwargs):
        assert kwargs["stream"] is True

        async def generator():
            for item in chunks:
                yield item

        return generator()

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)

    events = [
        event
        async for event in LiteLLMProvider().stream([], None, ModelConfig(model="openai/gpt-test"))
    ]

    deltas = [e for e in events if isinstance(e, TextDeltaEvent)]
    assert [d.snapshot for d in deltas] == ["Let me ", "Let me check."]
    assert isinstance(events[2], TextEndEvent)
    assert events[2].full_text == "Let me check."
    call = events[3]
    assert isinstance(call, ToolCallEvent)
    assert (call.tool_use_id, call.tool_name, call.tool_input) == ("c1", "weather", {"city": "Oslo"})
    assert [e.kind for e in events][-2:] == [StreamEventKind.TOOL_CALL, StreamEventKind.FINISH]
    finish = events[-1]
    assert isinstance(finish, FinishEvent)
    assert (finish.stop_reason, finish.input_tokens, finish.output_tokens) == ("tool_calls", 20, 7)


@pytest.mark.asyncio
async def test_transport_errors_are_translated(monkeypatch):
    async def fake_acompletion(**kwargs):
        raise litellm.exceptions.Timeout(message="took too long", model="m", llm_provider="openai")

    monkeypatch.setattr(litellm, "acompletion", fake_acompletion)

    with pytest.raises(ModelTimeout) as excinfo:
        await LiteLLMProvider().chat([], None, ModelConfig(model="m"))

    assert excinfo.value.retryable is True
    assert excinfo.value.model == "m"


def test_translate_error():
    limited = litellm.exceptions.RateLimitError(message="slow down", llm_provider="openai", model="m")
    quota = litellm.exceptions.RateLimitError(
        message="You exceeded your current quota", llm_provider="openai", model="m"
    )

    assert isinstance(translate_error(limited, "m"), ModelRateLimited)
    assert isinstance(translate_error(quota, "m"), ModelQuotaExceeded)
    assert translate_error(quota, "m").retryable is False
    other = translate_error(ValueError("weird"), "m")
    assert type(other) is ModelError
