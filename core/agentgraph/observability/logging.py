"""
Structured logging with execution-scoped trace context.

Every workflow run sets ``execution_id`` and ``workflow_id`` once; node tasks
add ``node_id``. Because the context lives in a ContextVar, each asyncio task
spawned for a node inherits a copy, so concurrent branches and concurrent
executions never see each other's ids.

    ExecutionService.run() -> set_trace_context(execution_id, workflow_id)
        ↓ (inherited by node tasks)
    GraphExecutor._run_node() -> set_trace_context(node_id=...)
        ↓
    logger.info("...") -> record carries all three ids
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar(
    "agentgraph_trace_context", default=None
)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")

# Extra attributes copied from ``logger.x(..., extra={...})`` into JSON output
_EXTRA_FIELDS = ("event", "latency_ms", "node_type", "model", "tool", "iteration")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class TraceContextFilter(logging.Filter):
    """Copies the current trace context onto each record as attributes."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in (trace_context.get() or {}).items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class StructuredFormatter(logging.Formatter):
    """JSON formatter: one object per line with trace ids and known extras."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(trace_context.get() or {})

        for name in _EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colorized single-line output with a short execution/node prefix."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        prefix_parts = []
        if context.get("workflow_id"):
            prefix_parts.append(f"wf:{context['workflow_id']}")
        if context.get("execution_id"):
            prefix_parts.append(f"exec:{context['execution_id'][-8:]}")
        if context.get("node_id"):
            prefix_parts.append(f"node:{context['node_id']}")
        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"
        message = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}"
        if record.exc_info:
            message = f"{message}\n{self.formatException(record.exc_info)}"
        return message


def configure_logging(
    level: str | None = None,
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure logging for the engine. Call once at startup (CLI entry point,
    service bootstrap, or a test fixture).

    Args:
        level: Log level name. Defaults to AGENTGRAPH_LOG_LEVEL or INFO.
        format: "json", "human", or "auto" (JSON when LOG_FORMAT=json or
            ENV=production).
    """
    level = level or os.getenv("AGENTGRAPH_LOG_LEVEL", "INFO")

    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    formatter: logging.Formatter
    if format == "json":
        formatter = StructuredFormatter()
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handler.addFilter(TraceContextFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Chatty HTTP client loggers stay at WARNING unless explicitly debugging
    if level.upper() != "DEBUG":
        for noisy in ("httpx", "httpcore", "LiteLLM"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


def set_trace_context(**kwargs: Any) -> None:
    """
    Merge fields (execution_id, workflow_id, node_id, ...) into the trace
    context of the current task. Child tasks created afterwards inherit it.
    """
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict:
    """Return a copy of the current trace context (empty dict if unset)."""
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    """Clear trace context. Mostly useful between tests."""
    trace_context.set(None)
