"""
Agent state - the immutable value the agent loop threads through each turn.

Every change produces a new AgentState; reducers receive the old state and a
candidate and return the state the loop continues with. Nothing here is
persisted: the state lives only for one Agent node execution.
"""

import json
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any

SYSTEM = "system"
USER = "user"
ASSISTANT = "assistant"
TOOL = "tool"


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Message:
    """One chat message."""

    role: str
    content: str = ""
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=USER, content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: tuple[ToolCall, ...] = ()) -> "Message":
        return cls(role=ASSISTANT, content=content, tool_calls=tool_calls)

    @classmethod
    def tool(cls, tool_call_id: str, name: str, content: str) -> "Message":
        return cls(role=TOOL, content=content, tool_call_id=tool_call_id, name=name)

    def to_chat(self) -> dict[str, Any]:
        """OpenAI chat format, as expected by LLMProvider."""
        message: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": json.dumps(call.arguments)},
                }
                for call in self.tool_calls
            ]
        if self.tool_call_id is not None:
            message["tool_call_id"] = self.tool_call_id
        if self.name is not None and self.role == TOOL:
            message["name"] = self.name
        return message

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["toolCalls"] = [
                {"id": call.id, "name": call.name, "arguments": call.arguments}
                for call in self.tool_calls
            ]
        if self.tool_call_id is not None:
            data["toolCallId"] = self.tool_call_id
        if self.name is not None:
            data["name"] = self.name
        return data


@dataclass(frozen=True)
class ToolObservation:
    """Result of one tool call, as folded back into the conversation."""

    tool_call_id: str
    tool_name: str
    content: str
    is_error: bool = False


@dataclass(frozen=True)
class AgentState:
    messages: tuple[Message, ...] = ()
    iteration: int = 0
    last_tool_results: tuple[ToolObservation, ...] = ()
    done: bool = False
    data: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def evolve(self, **changes: Any) -> "AgentState":
        if "data" in changes:
            changes["data"] = MappingProxyType(dict(changes["data"]))
        if "messages" in changes:
            changes["messages"] = tuple(changes["messages"])
        return replace(self, **changes)

    def append(self, *messages: Message) -> "AgentState":
        return replace(self, messages=self.messages + messages)

    def with_messages(self, messages: tuple[Message, ...] | list[Message]) -> "AgentState":
        return replace(self, messages=tuple(messages))

    def with_data(self, **values: Any) -> "AgentState":
        return self.evolve(data={**self.data, **values})

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None


@dataclass(frozen=True)
class StateContext(Mapping):
    """
    Read-only side channel for reducers: who is reducing (agent id) and
    where in the loop (step, phase), plus any extra values.
    """

    agent_id: str | None = None
    step: int = 0
    phase: str | None = None
    extra: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    def _as_dict(self) -> dict[str, Any]:
        return {"agent_id": self.agent_id, "step": self.step, "phase": self.phase, **self.extra}

    def __getitem__(self, key: str) -> Any:
        return self._as_dict()[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._as_dict())

    def __len__(self) -> int:
        return len(self._as_dict())

    def with_values(self, **values: Any) -> "StateContext":
        return replace(self, extra=MappingProxyType({**self.extra, **values}))
