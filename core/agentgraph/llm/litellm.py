"""LiteLLM-backed chat model: one provider for OpenAI, Anthropic, Gemini and friends."""

import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import litellm

from agentgraph.errors import (
    ModelError,
    ModelQuotaExceeded,
    ModelRateLimited,
    ModelTimeout,
    ModelUnauthorized,
    ModelUnavailable,
)
from agentgraph.llm.provider import LLMProvider, LLMResponse, ModelConfig, Tool, ToolUse
from agentgraph.llm.stream_events import (
    FinishEvent,
    StreamEvent,
    TextDeltaEvent,
    TextEndEvent,
    ToolCallEvent,
)

logger = logging.getLogger(__name__)


def translate_error(error: Exception, model: str) -> ModelError:
    """Map a litellm exception onto the engine's model error taxonomy."""
    message = str(error)
    if isinstance(error, litellm.exceptions.AuthenticationError | litellm.exceptions.PermissionDeniedError):
        return ModelUnauthorized(message, model=model)
    if isinstance(error, litellm.exceptions.RateLimitError):
        if "quota" in message.lower():
            return ModelQuotaExceeded(message, model=model)
        return ModelRateLimited(message, model=model)
    if isinstance(error, litellm.exceptions.Timeout):
        return ModelTimeout(message, model=model)
    if isinstance(
        error,
        litellm.exceptions.ServiceUnavailableError
        | litellm.exceptions.APIConnectionError
        | litellm.exceptions.InternalServerError,
    ):
        return ModelUnavailable(message, model=model)
    return ModelError(message, model=model)


def _parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        # litellm convention for arguments that are not valid JSON
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"value": parsed}


class LiteLLMProvider(LLMProvider):
    """
    Chat model backed by ``litellm.acompletion``.

    Example:
        llm = LiteLLMProvider(api_key=os.environ["OPENAI_API_KEY"])
        response = await llm.chat(messages, None, ModelConfig(model="openai/gpt-4o-mini"))
    """

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        api_base: str | None = None,
        timeout: float = 120.0,
    ):
        self.model = model
        self.api_key = api_key
        self.api_base = api_base
        self.timeout = timeout

    def _request_kwargs(
        self,
        messages: list[dict[str, Any]],
        tools: list[Tool] | None,
        model_config: ModelConfig,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": model_config.model or self.model,
            "messages": messages,
            "timeout": model_config.timeout or self.timeout,
            **model_config.extra,
        }
        if model_config.temperature is not None:
            kwargs["temperature"] = model_config.temperature
        if model_config.max_tokens is not None:
            kwargs["max_tokens"] = model_config.max_tokens
        if tools:
            kwargs["tools"] = [tool.to_openai() for tool in tools]
        if self.api_key:
            kwargs["api_key"] = self.api_key
        if self.api_base:
            kwargs["api_base"] = self.api_base
        return kwargs

    async def chat(
        self,
        messages: list[dict[str, Any]],
        tools: list[Tool] | None,
        model_config: ModelConfig,
    ) -> LLMResponse:
        kwargs = self._request_kwargs(messages, tools, model_config)
        try:
            response = await litellm.acompletion(**kwargs)
        except Exception as e:
            raise translate_error(e, kwargs["model"]) from e

        choice = response.choices[0]
        message = choice.message
        tool_calls = [
            ToolUse(
                id=call.id,
                name=call.function.name,
                input=_parse_arguments(call.function.arguments),
            )
            for call in (message.tool_calls or [])
        ]
        usage = getattr(response, "usage", None)
        return LLMResponse(
            content=message.content or "",
            model=getattr(response, "model", kwargs["model"]) or kwargs["model"],
            tool_calls=tool_calls,
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            stop_reason=choice.finish_reason or "",
            raw_response=response,
        )

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[Tool] | None,
        model_config: ModelConfig,
    ) -> AsyncIterator[StreamEvent]:
        kwargs = self._request_kwargs(messages, tools, model_config)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        snapshot = ""
        # tool call fragments arrive keyed by index: id/name first, arguments in pieces
        pending_calls: dict[int, dict[str, str]] = {}
        stop_reason = ""
        input_tokens = output_tokens = 0

        try:
            response = await litellm.acompletion(**kwargs)
            async for chunk in response:
                usage = getattr(chunk, "usage", None)
                if usage:
                    input_tokens = getattr(usage, "prompt_tokens", 0) or input_tokens
                    output_tokens = getattr(usage, "completion_tokens", 0) or output_tokens
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if delta is not None and delta.content:
                    snapshot += delta.content
                    yield TextDeltaEvent(content=delta.content, snapshot=snapshot)
                for call in (getattr(delta, "tool_calls", None) or []):
                    slot = pending_calls.setdefault(call.index or 0, {"id": "", "name": "", "arguments": ""})
                    if call.id:
                        slot["id"] = call.id
                    if call.function is not None:
                        if call.function.name:
                            slot["name"] = call.function.name
                        if call.function.arguments:
                            slot["arguments"] += call.function.arguments
                if choice.finish_reason:
                    stop_reason = choice.finish_reason
        except Exception as e:
            raise translate_error(e, kwargs["model"]) from e

        yield TextEndEvent(full_text=snapshot)
        for index in sorted(pending_calls):
            slot = pending_calls[index]
            yield ToolCallEvent(
                tool_use_id=slot["id"] or f"call_{index}",
                tool_name=slot["name"],
                tool_input=_parse_arguments(slot["arguments"]),
            )
        logger.debug(
            "Model %s finished (%s), tokens in=%d out=%d",
            kwargs["model"],
            stop_reason,
            input_tokens,
            output_tokens,
        )
        yield FinishEvent(
            stop_reason=stop_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            model=kwargs["model"],
        )
