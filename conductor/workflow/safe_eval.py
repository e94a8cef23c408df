"""
AST-whitelist expression evaluator.

Evaluates workflow conditions and transform expressions without ``eval``.
Only literals, arithmetic, comparisons, boolean logic, conditional
expressions, subscripts, list comprehensions and calls to a fixed set of
functions and methods are accepted. Attribute access on a mapping reads the
key (``context.count`` is ``context["count"]``), so expressions written
against workflow context read naturally.

Example:
    safe_eval("item.price * qty > 100", {"item": {"price": 30}, "qty": 4})  # True
"""

import ast
import operator
from collections.abc import Mapping
from typing import Any

from conductor.errors import ExpressionError

MAX_POWER = 1000

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

SAFE_FUNCTIONS = {
    "abs": abs,
    "all": all,
    "any": any,
    "bool": bool,
    "float": float,
    "int": int,
    "len": len,
    "list": list,
    "max": max,
    "min": min,
    "round": round,
    "sorted": sorted,
    "str": str,
    "sum": sum,
}

SAFE_CONSTANTS = {"true": True, "false": False, "null": None, "None": None, "True": True, "False": False}

SAFE_METHODS = frozenset(
    {
        "get",
        "keys",
        "values",
        "items",
        "lower",
        "upper",
        "strip",
        "startswith",
        "endswith",
        "split",
        "join",
        "replace",
        "count",
        "index",
    }
)


class _Evaluator:
    def __init__(self, names: Mapping[str, Any]):
        self.names = names

    def eval(self, node: ast.AST) -> Any:
        handler = getattr(self, f"_eval_{type(node).__name__}", None)
        if handler is None:
            raise ExpressionError(f"Unsupported expression element: {type(node).__name__}")
        return handler(node)

    def _eval_Expression(self, node: ast.Expression) -> Any:
        return self.eval(node.body)

    def _eval_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _eval_Name(self, node: ast.Name) -> Any:
        if node.id in self.names:
            return self.names[node.id]
        raise ExpressionError(f"Unknown name: {node.id}")

    def _eval_List(self, node: ast.List) -> list:
        return [self.eval(e) for e in node.elts]

    def _eval_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.eval(e) for e in node.elts)

    def _eval_Set(self, node: ast.Set) -> set:
        return {self.eval(e) for e in node.elts}

    def _eval_Dict(self, node: ast.Dict) -> dict:
        if any(k is None for k in node.keys):
            raise ExpressionError("Dict unpacking is not allowed")
        return {self.eval(k): self.eval(v) for k, v in zip(node.keys, node.values, strict=True)}

    def _eval_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            value: Any = True
            for operand in node.values:
                value = self.eval(operand)
                if not value:
                    return value
            return value
        value = False
        for operand in node.values:
            value = self.eval(operand)
            if value:
                return value
        return value

    def _eval_BinOp(self, node: ast.BinOp) -> Any:
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        left, right = self.eval(node.left), self.eval(node.right)
        if isinstance(node.op, ast.Pow) and isinstance(right, int | float) and abs(right) > MAX_POWER:
            raise ExpressionError(f"Exponent too large: {right}")
        return op(left, right)

    def _eval_UnaryOp(self, node: ast.UnaryOp) -> Any:
        op = _UNARY_OPS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        return op(self.eval(node.operand))

    def _eval_Compare(self, node: ast.Compare) -> bool:
        left = self.eval(node.left)
        for op_node, comparator in zip(node.ops, node.comparators, strict=True):
            right = self.eval(comparator)
            if not _COMPARE_OPS[type(op_node)](left, right):
                return False
            left = right
        return True

    def _eval_IfExp(self, node: ast.IfExp) -> Any:
        return self.eval(node.body) if self.eval(node.test) else self.eval(node.orelse)

    def _eval_Subscript(self, node: ast.Subscript) -> Any:
        value = self.eval(node.value)
        return value[self.eval(node.slice)]

    def _eval_Slice(self, node: ast.Slice) -> slice:
        return slice(
            self.eval(node.lower) if node.lower else None,
            self.eval(node.upper) if node.upper else None,
            self.eval(node.step) if node.step else None,
        )

    def _eval_Attribute(self, node: ast.Attribute) -> Any:
        if node.attr.startswith("_"):
            raise ExpressionError(f"Access to private attribute '{node.attr}' is not allowed")
        value = self.eval(node.value)
        if isinstance(value, Mapping):
            if node.attr in value:
                return value[node.attr]
            if node.attr in SAFE_METHODS and hasattr(value, node.attr):
                return getattr(value, node.attr)
            return None
        if node.attr in SAFE_METHODS:
            return getattr(value, node.attr)
        raise ExpressionError(f"Attribute '{node.attr}' is not allowed")

    def _eval_Call(self, node: ast.Call) -> Any:
        if isinstance(node.func, ast.Name):
            func = SAFE_FUNCTIONS.get(node.func.id)
            if func is None:
                raise ExpressionError(f"Function '{node.func.id}' is not allowed")
        elif isinstance(node.func, ast.Attribute) and node.func.attr in SAFE_METHODS:
            func = self.eval(node.func)
        else:
            raise ExpressionError("Only whitelisted functions and methods can be called")

        args = []
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                raise ExpressionError("Star arguments are not allowed")
            args.append(self.eval(arg))
        kwargs = {}
        for keyword in node.keywords:
            if keyword.arg is None:
                raise ExpressionError("Keyword unpacking is not allowed")
            kwargs[keyword.arg] = self.eval(keyword.value)
        return func(*args, **kwargs)

    def _eval_ListComp(self, node: ast.ListComp) -> list:
        return list(self._comprehend(node.elt, node.generators, dict(self.names)))

    def _eval_GeneratorExp(self, node: ast.GeneratorExp) -> list:
        return list(self._comprehend(node.elt, node.generators, dict(self.names)))

    def _comprehend(self, elt: ast.AST, generators: list[ast.comprehension], scope: dict):
        if not generators:
            yield _Evaluator(scope).eval(elt)
            return
        first, rest = generators[0], generators[1:]
        if first.is_async:
            raise ExpressionError("Async comprehensions are not allowed")
        for item in _Evaluator(scope).eval(first.iter):
            inner = dict(scope)
            _bind(first.target, item, inner)
            evaluator = _Evaluator(inner)
            if all(evaluator.eval(cond) for cond in first.ifs):
                yield from self._comprehend(elt, rest, inner)


def _bind(target: ast.AST, value: Any, scope: dict) -> None:
    if isinstance(target, ast.Name):
        scope[target.id] = value
    elif isinstance(target, ast.Tuple):
        values = list(value)
        if len(values) != len(target.elts):
            raise ExpressionError("Cannot unpack comprehension item")
        for sub_target, sub_value in zip(target.elts, values, strict=True):
            _bind(sub_target, sub_value, scope)
    else:
        raise ExpressionError("Unsupported comprehension target")


def safe_eval(expression: str, variables: Mapping[str, Any] | None = None) -> Any:
    """
    Evaluate ``expression`` against ``variables``.

    Raises:
        ExpressionError: The expression is malformed, uses a construct outside
            the whitelist, or fails while evaluating
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ExpressionError("Expression must be a non-empty string")
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression {expression!r}: {e.msg}") from e

    names = {**SAFE_CONSTANTS, **(variables or {})}
    try:
        return _Evaluator(names).eval(tree)
    except ExpressionError:
        raise
    except Exception as e:
        raise ExpressionError(f"Error evaluating {expression!r}: {e}") from e
