"""
Observability for workflow runs: structured logging with execution, workflow
and node ids attached to every record automatically.
"""

from agentgraph.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
]
