"""
Tests for Condition node expressions and branch selection.
"""

import pytest

from agentgraph.graph.condition_node import (
    ConditionNode,
    evaluate_expression,
    format_literal,
    parse_literal,
)
from agentgraph.graph.context import NodeContext
from agentgraph.graph.node_config import ConditionNodeConfig


def ctx(**workflow_input) -> NodeContext:
    return NodeContext(workflow_input=workflow_input).for_node("cond", "Check", dict(workflow_input))


def test_literals():
    assert parse_literal("null") is None
    assert parse_literal("") is None
    assert parse_literal("true") is True
    assert parse_literal(' "NL" ') == "NL"
    assert parse_literal("'x'") == "x"
    assert parse_literal("0.5") == 0.5
    assert parse_literal("-3") == -3
    assert parse_literal("bare") == "bare"

    assert format_literal(None) == "null"
    assert format_literal(True) == "true"
    assert format_literal("a") == '"a"'
    assert format_literal(2) == "2"


@pytest.mark.parametrize(
    "expression,inputs,expected",
    [
        ("{{input.score}} >= 0.8", {"score": 0.9}, True),
        ("{{input.score}} >= 0.8", {"score": 0.5}, False),
        ("{{input.count}} < 10", {"count": 3}, True),
        ('{{input.country}} == "NL"', {"country": "NL"}, True),
        ('{{input.country}} != "NL"', {"country": "NL"}, False),
        ("{{input.missing}} == null", {}, True),
        ("{{input.flag}}", {"flag": True}, True),
        ("{{input.flag}}", {"flag": False}, False),
        ("{{input.missing}}", {}, False),
        ("", {}, True),
        ("   ", {}, True),
    ],
)
def test_evaluate_expression(expression, inputs, expected):
    assert evaluate_expression(expression, ctx(**inputs)) is expected


def test_expression_without_operator_defaults_to_true(caplog):
    assert evaluate_expression("{{input.word}} maybe", ctx(word="x")) is True
    assert "no comparison operator" in caplog.text


def test_ordering_a_non_number_raises():
    with pytest.raises(ValueError):
        evaluate_expression("{{input.name}} > 3", ctx(name="bob"))


@pytest.mark.asyncio
async def test_node_reports_branch_without_output():
    node = ConditionNode()

    result = await node.execute(ConditionNodeConfig(expression="{{input.n}} > 2"), ctx(n=5))

    assert result.success is True
    assert result.branch == "true"
    assert result.output == {}
    assert result.metadata["conditionMet"] is True


@pytest.mark.asyncio
async def test_node_comparison_ref_truthiness():
    node = ConditionNode()

    yes = await node.execute(ConditionNodeConfig(comparison_ref="input.items"), ctx(items=[1]))
    no = await node.execute(ConditionNodeConfig(comparison_ref="input.items"), ctx(items=[]))

    assert yes.branch == "true"
    assert no.branch == "false"


@pytest.mark.asyncio
async def test_node_fails_on_bad_comparison():
    node = ConditionNode()

    result = await node.execute(ConditionNodeConfig(expression="{{input.name}} >= 1"), ctx(name="x"))

    assert result.success is False
    assert "Condition evaluation failed" in result.error
