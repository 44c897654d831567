"""
State reducers for the agent loop.

A reducer folds a candidate state into the state the loop continues with:

    reduce(old_state, candidate_state, context) -> final_state

Reducers must be pure. The loop may call them more than once per turn, so a
reducer applied twice must give the same result as applying it once.
``compose`` chains reducers left to right; an Agent node's
``middlewareChain`` names the chain as strings, e.g.

    ["truncate_tool_results:2000", "limit_messages:20"]
"""

import logging
from collections.abc import Callable

from agentgraph.graph.agent_state import SYSTEM, TOOL, AgentState, Message, StateContext

logger = logging.getLogger(__name__)

StateReducer = Callable[[AgentState, AgentState, StateContext], AgentState]

SUMMARY_MARKER = "[Summary of earlier conversation]"
TRUNCATION_SUFFIX = "... [truncated]"


def identity(old: AgentState, candidate: AgentState, context: StateContext) -> AgentState:
    """Accept the candidate as-is."""
    return candidate


def compose(*reducers: StateReducer) -> StateReducer:
    """Apply ``reducers`` in order, each one's output feeding the next."""
    if not reducers:
        return identity
    if len(reducers) == 1:
        return reducers[0]

    def composed(old: AgentState, candidate: AgentState, context: StateContext) -> AgentState:
        state = candidate
        for reducer in reducers:
            state = reducer(old, state, context)
        return state

    return composed


def _split_system(messages: tuple[Message, ...]) -> tuple[list[Message], list[Message]]:
    system = [m for m in messages if m.role == SYSTEM]
    rest = [m for m in messages if m.role != SYSTEM]
    return system, rest


def limit_messages(max_messages: int = 20) -> StateReducer:
    """
    Keep system messages plus the last ``max_messages`` others.

    The kept window never starts with a tool message, since a tool result
    without the assistant turn that requested it is rejected by most models.
    """
    if max_messages < 1:
        raise ValueError("limit_messages needs a positive message count")

    def reducer(old: AgentState, candidate: AgentState, context: StateContext) -> AgentState:
        system, rest = _split_system(candidate.messages)
        if len(rest) <= max_messages:
            return candidate
        kept = rest[-max_messages:]
        while kept and kept[0].role == TOOL:
            kept = kept[1:]
        return candidate.with_messages(system + kept)

    return reducer


def truncate_tool_results(max_chars: int = 4000) -> StateReducer:
    """Shorten tool message bodies to at most ``max_chars`` characters."""
    if max_chars <= len(TRUNCATION_SUFFIX):
        raise ValueError(f"truncate_tool_results needs more than {len(TRUNCATION_SUFFIX)} chars")

    def reducer(old: AgentState, candidate: AgentState, context: StateContext) -> AgentState:
        changed = False
        messages = []
        for message in candidate.messages:
            if message.role == TOOL and len(message.content) > max_chars:
                message = Message.tool(
                    message.tool_call_id or "",
                    message.name or "",
                    message.content[: max_chars - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX,
                )
                changed = True
            messages.append(message)
        return candidate.with_messages(messages) if changed else candidate

    return reducer


def estimate_tokens(messages: tuple[Message, ...] | list[Message]) -> int:
    """Rough token count: about four characters per token."""
    return sum(len(m.content) + 16 * len(m.tool_calls) for m in messages) // 4


def _is_summary(message: Message) -> bool:
    return message.role == SYSTEM and message.content.startswith(SUMMARY_MARKER)


def summarize_history(max_tokens: int = 4000, recent_messages: int = 10) -> StateReducer:
    """
    Collapse older turns into one summary note once the conversation grows
    past ``max_tokens`` (estimated). The system prompt and the most recent
    ``recent_messages`` messages are kept verbatim.
    """

    def reducer(old: AgentState, candidate: AgentState, context: StateContext) -> AgentState:
        if estimate_tokens(candidate.messages) <= max_tokens:
            return candidate

        system, rest = _split_system(candidate.messages)
        if len(rest) <= recent_messages:
            return candidate

        older, recent = rest[:-recent_messages], rest[-recent_messages:]
        while recent and recent[0].role == TOOL:
            older.append(recent.pop(0))

        # an earlier summary is folded into the new one, so there is only ever one
        lines = []
        for message in system:
            if _is_summary(message):
                lines.extend(message.content.splitlines()[1:])
        system = [m for m in system if not _is_summary(m)]
        for message in older:
            text = message.content.strip().replace("\n", " ")
            if message.tool_calls:
                calls = ", ".join(call.name for call in message.tool_calls)
                text = f"{text} (called: {calls})".strip()
            if text:
                lines.append(f"- {message.role}: {text[:200]}")

        summary = Message.system(f"{SUMMARY_MARKER}\n" + "\n".join(lines))
        logger.debug(f"Summarized {len(older)} messages for agent '{context.agent_id}'")
        return candidate.with_messages(system + [summary] + recent)

    return reducer


# name -> factory taking the optional ":arg" as an int
_REGISTRY: dict[str, Callable[..., StateReducer]] = {
    "identity": lambda: identity,
    "limit_messages": limit_messages,
    "truncate_tool_results": truncate_tool_results,
    "summarize": summarize_history,
    "summarization": summarize_history,
}


def register_reducer(name: str, factory: Callable[..., StateReducer]) -> None:
    """Make a reducer available to ``middlewareChain`` entries."""
    _REGISTRY[name] = factory


def build_reducer_chain(names: list[str]) -> StateReducer:
    """
    Resolve chain entries like ``"limit_messages:20"`` into one reducer.

    Raises:
        ValueError: unknown reducer name or non-integer argument
    """
    reducers: list[StateReducer] = []
    for entry in names:
        name, _, raw_arg = entry.partition(":")
        name = name.strip()
        factory = _REGISTRY.get(name)
        if factory is None:
            raise ValueError(f"Unknown reducer '{name}' in middleware chain")
        if raw_arg.strip():
            try:
                reducers.append(factory(int(raw_arg)))
            except ValueError as e:
                raise ValueError(f"Bad argument for reducer '{name}': {raw_arg!r}") from e
        else:
            reducers.append(factory())
    return compose(*reducers)
