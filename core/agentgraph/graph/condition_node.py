"""
Condition node - picks the "true" or "false" branch.

Expressions are deliberately tiny: one comparison between two literals after
``{{ref}}`` substitution, or a bare ``true``/``false``/``null``.

    {{score.value}} >= 0.8
    {{input.country}} == "NL"
    {{lookup.error}} != null

Substituted strings are quoted and missing values become ``null``, so the
right-hand side of ``==`` can be any literal. Ordering operators compare as
numbers. An empty expression, or one with no recognizable operator, selects
the "true" branch.
"""

import logging
import re
from typing import Any

from agentgraph.graph.context import NodeContext
from agentgraph.graph.definition import FALSE_HANDLE, TRUE_HANDLE
from agentgraph.graph.node import NodeHandler, NodeResult
from agentgraph.graph.node_config import ConditionNodeConfig
from agentgraph.graph.resolver import VARIABLE_PATTERN, resolve_value

logger = logging.getLogger(__name__)

# Order matters: two-character operators must be tried before their prefixes
OPERATORS = (">=", "<=", "!=", "==", ">", "<")
_INT_PATTERN = re.compile(r"^[+-]?\d+$")


def format_literal(value: Any) -> str:
    """Render a resolved value as an expression literal."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return f'"{value}"'
    return str(value)


def parse_literal(text: str) -> Any:
    text = text.strip()
    if text == "null" or text == "":
        return None
    if text == "true":
        return True
    if text == "false":
        return False
    if len(text) >= 2 and text[0] == text[-1] and text[0] in ('"', "'"):
        return text[1:-1]
    try:
        if "." in text:
            return float(text)
        if _INT_PATTERN.match(text):
            return int(text)
    except ValueError:
        pass
    return text


def _as_number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str):
        return float(value)
    raise ValueError(f"Cannot compare {value!r} as a number")


def compare(left: Any, right: Any, operator: str) -> bool:
    match operator:
        case "==":
            return left == right
        case "!=":
            return left != right
        case ">":
            return _as_number(left) > _as_number(right)
        case "<":
            return _as_number(left) < _as_number(right)
        case ">=":
            return _as_number(left) >= _as_number(right)
        case "<=":
            return _as_number(left) <= _as_number(right)
    raise ValueError(f"Unknown operator: {operator}")


def evaluate_expression(expression: str | None, context: NodeContext) -> bool:
    """Evaluate a condition expression against ``context``."""
    if expression is None or not expression.strip():
        return True

    substituted = VARIABLE_PATTERN.sub(
        lambda match: format_literal(resolve_value(match.group(1), context)), expression
    ).strip()

    if substituted == "true":
        return True
    if substituted in ("false", "null"):
        return False

    for operator in OPERATORS:
        if operator in substituted:
            left, right = substituted.split(operator, 1)
            return compare(parse_literal(left), parse_literal(right), operator)

    logger.warning(f"Condition '{expression}' has no comparison operator; defaulting to true")
    return True


class ConditionNode(NodeHandler):
    """Evaluates its condition and reports the branch to follow."""

    async def execute(self, config: ConditionNodeConfig, context: NodeContext) -> NodeResult:
        try:
            if config.expression is not None:
                condition_met = evaluate_expression(config.expression, context)
            elif config.comparison_ref:
                condition_met = bool(resolve_value(config.comparison_ref, context))
            else:
                condition_met = True
        except ValueError as e:
            return NodeResult.fail(f"Condition evaluation failed: {e}")

        branch = TRUE_HANDLE if condition_met else FALSE_HANDLE
        logger.debug(f"Condition on node '{context.node_id}' selected branch '{branch}'")
        return NodeResult.ok(branch=branch, conditionMet=condition_met)
