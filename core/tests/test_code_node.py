"""
Tests for the script sandbox and the Code node built on it.
"""

import pytest

from agentgraph.errors import SandboxError, SandboxTimeout
from agentgraph.graph.code_node import CodeNode
from agentgraph.graph.code_sandbox import CodeSandbox
from agentgraph.graph.context import NodeContext
from agentgraph.graph.node_config import CodeNodeConfig


def ctx(node_input=None, variables=None) -> NodeContext:
    root = NodeContext(workflow_input={"n": 2}, variables=variables or {})
    return root.for_node("code", "Script", node_input if node_input is not None else {"n": 2})


# ---- Sandbox ----


def test_trailing_expression_is_the_value():
    result = CodeSandbox().run("total = a + b\ntotal * 2", {"a": 1, "b": 2})

    assert result.value == 6
    assert result.bindings["total"] == 3


def test_helpers_are_available():
    script = "\n".join(
        [
            "words = text.split()",
            "counts = {w: len(w) for w in words}",
            "best = max(counts.values())",
            "json.dumps({'best': best, 'root': math.sqrt(16)})",
        ]
    )

    result = CodeSandbox().run(script, {"text": "a bb ccc"})

    assert result.value == '{"best": 3, "root": 4.0}'


@pytest.mark.parametrize(
    "script",
    [
        "import os",
        "open('/etc/passwd')",
        "x = ().__class__",
        "__import__('os')",
        "def f():\n    return 1",
        "lambda: 1",
        "'{0.__class__}'.format(1)",
        "json.codecs",
        "g = (x for x in [1])\nframe = g.gi_frame",
        "holder = []\ng = (holder[0].gi_frame.f_back.f_globals for _ in [1])\nholder.append(g)\nlist(g)",
        "e = None\ne.tb_frame",
        "unknown_name + 1",
        "y += 1",
    ],
)
def test_rejected_scripts(script):
    with pytest.raises(SandboxError):
        CodeSandbox().run(script, {})


def test_runtime_errors_are_wrapped():
    with pytest.raises(SandboxError, match="ZeroDivisionError"):
        CodeSandbox().run("1 / 0", {})


def test_syntax_error_is_reported():
    with pytest.raises(SandboxError, match="Syntax error"):
        CodeSandbox().run("x = (", {})


def test_runaway_loop_times_out():
    with pytest.raises(SandboxTimeout):
        CodeSandbox(timeout=0.2).run("while True:\n    pass", {})


def test_huge_range_is_refused():
    with pytest.raises(SandboxError):
        CodeSandbox().run("sum(range(10 ** 9))", {})


@pytest.mark.asyncio
async def test_run_async_uses_a_worker_thread():
    result = await CodeSandbox().run_async("[i * i for i in range(4)]", {})

    assert result.value == [0, 1, 4, 9]


# ---- Code node ----


@pytest.mark.asyncio
async def test_code_node_result_from_trailing_expression():
    node = CodeNode()

    result = await node.execute(CodeNodeConfig(script="input['n'] * 10"), ctx())

    assert result.success is True
    assert result.output == {"result": 20}


@pytest.mark.asyncio
async def test_code_node_result_variable_and_context_binding():
    node = CodeNode()

    result = await node.execute(
        CodeNodeConfig(script="result = context['prefix'] + '-' + str(input['n'])"),
        ctx(variables={"prefix": "job"}),
    )

    assert result.output == {"result": "job-2"}


@pytest.mark.asyncio
async def test_code_node_mappings():
    node = CodeNode()
    config = CodeNodeConfig(
        script="doubled = value * 2\nlabel = 'big' if doubled > 3 else 'small'",
        input_mapping={"value": "{{input.n}}"},
        output_mapping={"twice": "doubled", "size": "label"},
    )

    result = await node.execute(config, ctx())

    assert result.output == {"twice": 4, "size": "big"}


@pytest.mark.asyncio
async def test_code_node_failures_are_results():
    node = CodeNode()

    empty = await node.execute(CodeNodeConfig(script="  "), ctx())
    wrong_language = await node.execute(CodeNodeConfig(script="1", language="javascript"), ctx())
    broken = await node.execute(CodeNodeConfig(script="input['missing']"), ctx())

    assert empty.success is False
    assert "javascript" in wrong_language.error
    assert broken.success is False
    assert "KeyError" in broken.error
