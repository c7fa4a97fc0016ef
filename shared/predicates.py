"""Step predicates (``skipIf``) evaluated against session data.

A predicate is one of:
- a bool,
- a dict condition (``all``/``any``/``not``/``path`` with ``exists``, ``truthy``,
  ``equals``, ``in``),
- a constrained Python expression string evaluated without arbitrary code execution.
"""

from __future__ import annotations

import ast
import logging
from typing import Any, Mapping

logger = logging.getLogger(__name__)


class PredicateError(ValueError):
    """Raised when a predicate contains unsupported/unsafe constructs."""


_ALLOWED_FUNCS = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
}

_LITERAL_NAMES = {
    "True": True,
    "False": False,
    "None": None,
    "true": True,
    "false": False,
    "null": None,
    "none": None,
}

_CONDITION_OPERATORS = ("exists", "truthy", "equals", "in", "missing")


def resolve_path(context: Any, path: str) -> Any:
    """Nested lookup of a dotted path; list segments may be numeric indexes."""
    current = context
    for part in str(path).strip().split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            idx = int(part)
            if idx >= len(current):
                return None
            current = current[idx]
        else:
            return None
        if current is None:
            return None
    return current


class _Evaluator:
    def __init__(self, context: Mapping[str, Any]):
        self.context = context

    def eval(self, expression: str) -> Any:
        tree = ast.parse(expression, mode="eval")
        return self._eval_node(tree)

    def _eval_node(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return self._eval_node(node.body)

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in _LITERAL_NAMES:
                return _LITERAL_NAMES[node.id]
            return self.context.get(node.id)

        if isinstance(node, ast.Attribute):
            value = self._eval_node(node.value)
            if isinstance(value, Mapping):
                return value.get(node.attr)
            return None

        if isinstance(node, ast.Subscript):
            value = self._eval_node(node.value)
            index = self._eval_node(node.slice)
            if isinstance(value, (list, tuple)) and isinstance(index, int):
                if 0 <= index < len(value):
                    return value[index]
                return None
            if isinstance(value, Mapping):
                return value.get(index)
            return None

        if isinstance(node, ast.List):
            return [self._eval_node(item) for item in node.elts]

        if isinstance(node, ast.Tuple):
            return tuple(self._eval_node(item) for item in node.elts)

        if isinstance(node, ast.BoolOp):
            values = [self._eval_node(value) for value in node.values]
            if isinstance(node.op, ast.And):
                return all(bool(item) for item in values)
            return any(bool(item) for item in values)

        if isinstance(node, ast.UnaryOp):
            operand = self._eval_node(node.operand)
            if isinstance(node.op, ast.Not):
                return not bool(operand)
            if isinstance(node.op, ast.USub):
                return -operand
            if isinstance(node.op, ast.UAdd):
                return +operand
            raise PredicateError("Unsupported unary operator")

        if isinstance(node, ast.BinOp):
            left = self._eval_node(node.left)
            right = self._eval_node(node.right)
            if isinstance(node.op, ast.Add):
                return left + right
            if isinstance(node.op, ast.Sub):
                return left - right
            if isinstance(node.op, ast.Mult):
                return left * right
            if isinstance(node.op, ast.Mod):
                return left % right
            raise PredicateError("Unsupported binary operator")

        if isinstance(node, ast.Compare):
            left = self._eval_node(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval_node(comparator)
                if not _compare(op, left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            test = bool(self._eval_node(node.test))
            return self._eval_node(node.body if test else node.orelse)

        if isinstance(node, ast.Call):
            if not isinstance(node.func, ast.Name):
                raise PredicateError("Only direct safe function calls are allowed")
            fn = _ALLOWED_FUNCS.get(node.func.id)
            if fn is None:
                raise PredicateError(f"Function '{node.func.id}' is not allowed")
            args = [self._eval_node(arg) for arg in node.args]
            return fn(*args)

        raise PredicateError(f"Unsupported expression node: {type(node).__name__}")


def _compare(op: ast.cmpop, left: Any, right: Any) -> bool:
    if isinstance(op, ast.Eq):
        return left == right
    if isinstance(op, ast.NotEq):
        return left != right
    if isinstance(op, ast.Lt):
        return left < right
    if isinstance(op, ast.LtE):
        return left <= right
    if isinstance(op, ast.Gt):
        return left > right
    if isinstance(op, ast.GtE):
        return left >= right
    if isinstance(op, ast.In):
        return left in right
    if isinstance(op, ast.NotIn):
        return left not in right
    if isinstance(op, ast.Is):
        return left is right
    if isinstance(op, ast.IsNot):
        return left is not right
    raise PredicateError(f"Unsupported comparison operator: {type(op).__name__}")


_ALLOWED_NODES = (
    ast.Expression,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Subscript,
    ast.List,
    ast.Tuple,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.UAdd,
    ast.BinOp,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Mod,
    ast.Compare,
    ast.cmpop,
    ast.IfExp,
    ast.Call,
)


def validate_predicate(condition: Any) -> list[str]:
    """Return the problems found in ``condition``; empty when it parses."""
    if condition is None or isinstance(condition, bool):
        return []

    if isinstance(condition, dict):
        issues: list[str] = []
        if "all" in condition or "any" in condition:
            key = "all" if "all" in condition else "any"
            items = condition[key]
            if not isinstance(items, list) or not items:
                return [f"'{key}' must be a non-empty list"]
            for item in items:
                issues.extend(validate_predicate(item))
            return issues
        if "not" in condition:
            return validate_predicate(condition["not"])
        path = condition.get("path")
        if not isinstance(path, str) or not path.strip():
            return ["dict predicate requires a non-empty 'path'"]
        if not any(op in condition for op in _CONDITION_OPERATORS):
            return [f"dict predicate on '{path}' has no operator ({', '.join(_CONDITION_OPERATORS)})"]
        return []

    if isinstance(condition, str):
        expr = condition.strip()
        if not expr:
            return []
        try:
            tree = ast.parse(expr, mode="eval")
        except SyntaxError as exc:
            return [f"predicate '{expr}' does not parse: {exc.msg}"]
        for node in ast.walk(tree):
            if not isinstance(node, _ALLOWED_NODES):
                return [f"predicate '{expr}' uses unsupported construct {type(node).__name__}"]
            if isinstance(node, ast.Call):
                if not isinstance(node.func, ast.Name) or node.func.id not in _ALLOWED_FUNCS:
                    return [f"predicate '{expr}' calls a function that is not allowed"]
                if node.keywords:
                    return [f"predicate '{expr}' uses keyword arguments"]
        return []

    return [f"unsupported predicate type: {type(condition).__name__}"]


def predicate_field_names(condition: Any) -> list[str]:
    """Root data fields a predicate reads, in first-seen order."""
    names: list[str] = []

    def _add(name: str) -> None:
        if name and name not in names:
            names.append(name)

    if condition is None or isinstance(condition, bool):
        return names

    if isinstance(condition, dict):
        for key in ("all", "any"):
            if isinstance(condition.get(key), list):
                for item in condition[key]:
                    for name in predicate_field_names(item):
                        _add(name)
        if "not" in condition:
            for name in predicate_field_names(condition["not"]):
                _add(name)
        path = condition.get("path")
        if isinstance(path, str) and path.strip():
            _add(path.strip().split(".")[0])
        return names

    if isinstance(condition, str):
        try:
            tree = ast.parse(condition.strip(), mode="eval")
        except SyntaxError:
            return names
        called = {
            id(node.func) for node in ast.walk(tree) if isinstance(node, ast.Call) and isinstance(node.func, ast.Name)
        }
        for node in ast.walk(tree):
            if isinstance(node, ast.Name) and id(node) not in called and node.id not in _LITERAL_NAMES:
                _add(node.id)
    return names


def evaluate_predicate(condition: Any, data: Mapping[str, Any]) -> bool:
    """Evaluate ``condition`` over ``data``. Unparseable expressions evaluate to False."""
    if condition is None:
        return False
    if isinstance(condition, bool):
        return condition

    if isinstance(condition, dict):
        if isinstance(condition.get("all"), list):
            return all(evaluate_predicate(item, data) for item in condition["all"])
        if isinstance(condition.get("any"), list):
            return any(evaluate_predicate(item, data) for item in condition["any"])
        if "not" in condition:
            return not evaluate_predicate(condition["not"], data)

        path = condition.get("path")
        if not isinstance(path, str) or not path.strip():
            return False
        value = resolve_path(data, path)
        if condition.get("exists") is True:
            return value is not None
        if condition.get("missing") is True:
            return value is None
        if condition.get("truthy") is True:
            return bool(value)
        if "equals" in condition:
            return value == condition.get("equals")
        if "in" in condition and isinstance(condition["in"], list):
            return value in condition["in"]
        return False

    if isinstance(condition, str):
        expr = condition.strip()
        if not expr:
            return False
        context = {key: value for key, value in data.items() if isinstance(key, str) and key.isidentifier()}
        context["data"] = dict(data)
        try:
            return bool(_Evaluator(context).eval(expr))
        except Exception as exc:
            logger.debug("Predicate '%s' evaluated to False: %s", expr, exc)
            return False

    return False
