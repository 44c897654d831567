"""
Tests for structured logging and the execution trace context.
"""

import asyncio
import json
import logging

import pytest

from agentgraph.observability import (
    clear_trace_context,
    get_trace_context,
    set_trace_context,
)
from agentgraph.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    TraceContextFilter,
    strip_ansi_codes,
)


@pytest.fixture(autouse=True)
def reset_context():
    clear_trace_context()
    yield
    clear_trace_context()


def make_record(message: str = "hello", **extra) -> logging.LogRecord:
    record = logging.LogRecord("agentgraph.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_set_get_clear():
    set_trace_context(execution_id="exec_abc", workflow_id="wf")
    set_trace_context(node_id="n1")

    assert get_trace_context() == {"execution_id": "exec_abc", "workflow_id": "wf", "node_id": "n1"}

    clear_trace_context()
    assert get_trace_context() == {}


def test_structured_formatter_includes_trace_ids_and_extras():
    set_trace_context(execution_id="exec_abc", workflow_id="wf", node_id="n1")

    line = StructuredFormatter().format(make_record("\x1b[32mdone\x1b[0m", latency_ms=12))
    entry = json.loads(line)

    assert entry["message"] == "done"
    assert entry["level"] == "info"
    assert entry["execution_id"] == "exec_abc"
    assert entry["node_id"] == "n1"
    assert entry["latency_ms"] == 12


def test_human_formatter_prefix():
    set_trace_context(execution_id="exec_0123456789ab", workflow_id="wf", node_id="n1")

    line = strip_ansi_codes(HumanReadableFormatter().format(make_record("working")))

    assert "[wf:wf | exec:456789ab | node:n1] working" in line


def test_filter_copies_context_onto_records():
    set_trace_context(execution_id="exec_x")
    record = make_record()

    assert TraceContextFilter().filter(record) is True
    assert record.execution_id == "exec_x"


@pytest.mark.asyncio
async def test_child_tasks_do_not_leak_context_to_parent():
    set_trace_context(execution_id="exec_parent")

    async def node_task():
        set_trace_context(node_id="child")
        return get_trace_context()

    child = await asyncio.create_task(node_task())

    assert child == {"execution_id": "exec_parent", "node_id": "child"}
    assert get_trace_context() == {"execution_id": "exec_parent"}
