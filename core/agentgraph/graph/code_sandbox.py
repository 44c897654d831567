"""
Restricted script evaluation for Code nodes.

Scripts are a small Python subset: assignments, arithmetic, comparisons,
``if``/``for``/``while``, comprehensions, literals, calls to a fixed set of
helper builtins and method calls on plain values. Imports, function and class
definitions, ``global``, attribute access to underscore names or to
frame and generator internals, and any name outside the bindings or the
helper set are rejected before anything runs.

Each run gets a fresh namespace and a hard wall-clock deadline enforced by a
line tracer, so a runaway loop raises ``SandboxTimeout`` instead of hanging
the worker thread.
"""

import ast
import asyncio
import json
import logging
import math
import sys
import time
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any

from agentgraph.errors import SandboxError, SandboxTimeout

logger = logging.getLogger(__name__)

SANDBOX_FILENAME = "<agentgraph-script>"
MAX_RANGE = 1_000_000

# str.format can reach attributes through its field syntax ("{0.__class__}")
BLOCKED_ATTRIBUTES = frozenset({"format", "format_map", "mro"})

# generator, coroutine, frame, traceback and code object internals lead back to
# the interpreter's globals
BLOCKED_ATTRIBUTE_PREFIXES = ("gi_", "cr_", "ag_", "f_", "tb_", "co_")


def _bounded_range(*args: int) -> range:
    result = range(*args)
    if len(result) > MAX_RANGE:
        raise SandboxError(f"range() larger than {MAX_RANGE} items is not allowed")
    return result


SAFE_BUILTINS: dict[str, Any] = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "dict": dict,
    "enumerate": enumerate,
    "filter": filter,
    "float": float,
    "int": int,
    "isinstance": isinstance,
    "len": len,
    "list": list,
    "map": map,
    "max": max,
    "min": min,
    "range": _bounded_range,
    "reversed": reversed,
    "round": round,
    "set": set,
    "sorted": sorted,
    "str": str,
    "sum": sum,
    "tuple": tuple,
    "zip": zip,
    "json": SimpleNamespace(dumps=json.dumps, loads=json.loads),
    "math": SimpleNamespace(**{name: getattr(math, name) for name in dir(math) if not name.startswith("_")}),
}


class _ScriptValidator(ast.NodeVisitor):
    ALLOWED_NODES = (
        ast.Module,
        ast.Expression,
        ast.Expr,
        ast.Assign,
        ast.AugAssign,
        ast.AnnAssign,
        ast.If,
        ast.IfExp,
        ast.For,
        ast.While,
        ast.Break,
        ast.Continue,
        ast.Pass,
        ast.BoolOp,
        ast.BinOp,
        ast.UnaryOp,
        ast.Compare,
        ast.Call,
        ast.keyword,
        ast.Name,
        ast.Load,
        ast.Store,
        ast.Del,
        ast.Delete,
        ast.Constant,
        ast.Attribute,
        ast.Subscript,
        ast.Slice,
        ast.List,
        ast.Tuple,
        ast.Dict,
        ast.Set,
        ast.ListComp,
        ast.SetComp,
        ast.DictComp,
        ast.GeneratorExp,
        ast.comprehension,
        ast.JoinedStr,
        ast.FormattedValue,
        ast.Starred,
    )

    def __init__(self, allowed_names: set[str]) -> None:
        self.allowed_names = set(allowed_names)

    def generic_visit(self, node: ast.AST) -> None:
        if isinstance(node, ast.cmpop | ast.operator | ast.boolop | ast.unaryop | ast.expr_context):
            return
        if not isinstance(node, self.ALLOWED_NODES):
            raise SandboxError(f"Disallowed syntax: {type(node).__name__}")
        super().generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if (
            node.attr.startswith("_")
            or node.attr in BLOCKED_ATTRIBUTES
            or node.attr.startswith(BLOCKED_ATTRIBUTE_PREFIXES)
        ):
            raise SandboxError(f"Access to attribute '{node.attr}' is not allowed")
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("__"):
            raise SandboxError(f"Name '{node.id}' is not allowed")
        if isinstance(node.ctx, ast.Store | ast.Del):
            self.allowed_names.add(node.id)
            return
        if node.id not in self.allowed_names and node.id not in SAFE_BUILTINS:
            raise SandboxError(f"Unknown name '{node.id}' in script")

    def visit_Assign(self, node: ast.Assign) -> None:
        # value first: in ``x = y`` the name y must already be known
        self.visit(node.value)
        for target in node.targets:
            self.visit(target)

    def visit_AnnAssign(self, node: ast.AnnAssign) -> None:
        if node.value is not None:
            self.visit(node.value)
        self.visit(node.target)

    def visit_AugAssign(self, node: ast.AugAssign) -> None:
        if isinstance(node.target, ast.Name) and node.target.id not in self.allowed_names:
            raise SandboxError(f"Unknown name '{node.target.id}' in script")
        self.visit(node.value)
        self.visit(node.target)

    def visit_For(self, node: ast.For) -> None:
        self.visit(node.iter)
        self.visit(node.target)
        for stmt in node.body + node.orelse:
            self.visit(stmt)

    def visit_comprehension(self, node: ast.comprehension) -> None:
        self.visit(node.iter)
        self.visit(node.target)
        for condition in node.ifs:
            self.visit(condition)

    def _visit_comprehension_expr(self, node: ast.AST) -> None:
        # Generators bind their targets before the element expression runs
        for generator in node.generators:
            self.visit(generator)
        for name in ("elt", "key", "value"):
            child = getattr(node, name, None)
            if child is not None:
                self.visit(child)

    visit_ListComp = _visit_comprehension_expr
    visit_SetComp = _visit_comprehension_expr
    visit_GeneratorExp = _visit_comprehension_expr
    visit_DictComp = _visit_comprehension_expr


@dataclass
class SandboxResult:
    """Value of the script's trailing expression plus the final bindings."""

    value: Any = None
    bindings: dict[str, Any] = field(default_factory=dict)


class CodeSandbox:
    """
    Single-use evaluator for one script run.

    Usage:
        sandbox = CodeSandbox(timeout=2.0)
        result = await sandbox.run_async("total = a + b\\ntotal * 2", {"a": 1, "b": 2})
        result.value      # 6
        result.bindings   # {"a": 1, "b": 2, "total": 3}
    """

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout

    def compile(self, script: str, names: set[str]) -> tuple[Any, Any]:
        """Validate and compile ``script``; returns (body_code, tail_expr_code)."""
        try:
            tree = ast.parse(script, filename=SANDBOX_FILENAME, mode="exec")
        except SyntaxError as e:
            raise SandboxError(f"Syntax error in script: {e.msg} (line {e.lineno})") from e

        _ScriptValidator(names).visit(tree)

        tail = None
        if tree.body and isinstance(tree.body[-1], ast.Expr):
            tail = ast.Expression(body=tree.body.pop().value)
            tail = compile(ast.fix_missing_locations(tail), SANDBOX_FILENAME, "eval")
        body = compile(tree, SANDBOX_FILENAME, "exec")
        return body, tail

    def run(self, script: str, bindings: dict[str, Any]) -> SandboxResult:
        """Run ``script`` synchronously in the calling thread."""
        body, tail = self.compile(script, set(bindings))
        namespace: dict[str, Any] = {"__builtins__": SAFE_BUILTINS, **bindings}
        deadline = time.monotonic() + self.timeout

        def tracer(frame, event, arg):
            if frame.f_code.co_filename != SANDBOX_FILENAME:
                return None
            if time.monotonic() > deadline:
                raise SandboxTimeout(f"Script exceeded {self.timeout}s time limit")
            return tracer

        previous = sys.gettrace()
        sys.settrace(tracer)
        try:
            exec(body, namespace)
            value = eval(tail, namespace) if tail is not None else None
        except SandboxError:
            raise
        except MemoryError:
            raise
        except Exception as e:
            raise SandboxError(f"{type(e).__name__}: {e}") from e
        finally:
            sys.settrace(previous)

        namespace.pop("__builtins__", None)
        return SandboxResult(value=value, bindings=namespace)

    async def run_async(self, script: str, bindings: dict[str, Any]) -> SandboxResult:
        """Run ``script`` in a worker thread so the event loop keeps serving other nodes."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.run, script, bindings),
                # the tracer fires first; the outer bound covers time spent inside builtins
                timeout=self.timeout + 1.0,
            )
        except TimeoutError as e:
            logger.warning("Script still running after %.1fs; abandoning worker thread", self.timeout)
            raise SandboxTimeout(f"Script exceeded {self.timeout}s time limit") from e
