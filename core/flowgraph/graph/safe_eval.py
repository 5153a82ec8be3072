"""
Safe expression evaluation for guards, conditions and templates.

Expressions are parsed with ``ast`` and walked by a small interpreter that
only knows a whitelisted subset of Python: literals, arithmetic, comparisons,
boolean logic, the ternary, subscripts, dict attribute access and calls to a
fixed table of helper functions. There is no ``eval``, no attribute access on
arbitrary objects and no way to reach builtins, modules or the environment.

A handful of JavaScript spellings (``&&``, ``||``, ``!``, ``===``, ``!==``,
``true``/``false``/``null``, ``.length``, ``Math.*``, ``JSON.*``) are accepted
so that workflow authors can write conditions the way they are used to.
"""

import ast
import json
import logging
import math
import operator
import re
from functools import lru_cache
from typing import Any

from flowgraph.graph.errors import ExpressionError

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([\w.]+)\s*\}\}|\$\{\s*([\w.]+)\s*\}")

MAX_REPEAT = 100_000
MAX_EXPONENT = 1_000
MAX_INT_BITS = 100_000
MAX_EXPRESSION_LENGTH = 10_000

_MISSING = object()


# ---------------------------------------------------------------------------
# Template interpolation
# ---------------------------------------------------------------------------


def resolve_path(context: dict[str, Any], path: str) -> Any:
    """Resolve a dotted path against nested dicts/lists. Returns _MISSING if absent."""
    current: Any = context
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _render(value: Any, as_json: bool) -> str:
    if as_json:
        return json.dumps(value, default=str)
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def interpolate(template: str, context: dict[str, Any], *, as_json: bool = True) -> str:
    """
    Replace ``{{name}}`` and ``${name}`` placeholders with context values.

    Values are JSON-serialized by default so that the result can be fed back
    into the evaluator. With ``as_json=False`` strings are inserted verbatim,
    which is what prompt templates want. Unknown names are left in place.
    """
    if not isinstance(template, str):
        return template

    def _replace(match: re.Match) -> str:
        name = match.group(1) or match.group(2)
        value = resolve_path(context, name)
        if value is _MISSING:
            return match.group(0)
        return _render(value, as_json)

    return PLACEHOLDER_PATTERN.sub(_replace, template)


def interpolate_value(value: Any, context: dict[str, Any]) -> Any:
    """Interpolate every string inside a nested structure."""
    if isinstance(value, str):
        return interpolate(value, context, as_json=False)
    if isinstance(value, dict):
        return {k: interpolate_value(v, context) for k, v in value.items()}
    if isinstance(value, list):
        return [interpolate_value(v, context) for v in value]
    return value


# ---------------------------------------------------------------------------
# JavaScript spelling normalization
# ---------------------------------------------------------------------------

_JS_TOKENS = [
    ("===", "=="),
    ("!==", "!="),
    ("&&", " and "),
    ("||", " or "),
]


def normalize(expression: str) -> str:
    """Rewrite JS operators outside of string literals into Python ones."""
    out: list[str] = []
    i = 0
    quote: str | None = None
    n = len(expression)
    while i < n:
        ch = expression[i]
        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < n:
                out.append(expression[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in ("'", '"'):
            quote = ch
            out.append(ch)
            i += 1
            continue
        for js, py in _JS_TOKENS:
            if expression.startswith(js, i):
                out.append(py)
                i += len(js)
                break
        else:
            if ch == "!" and not expression.startswith("!=", i):
                out.append(" not ")
            else:
                out.append(ch)
            i += 1
    return "".join(out)


# ---------------------------------------------------------------------------
# Whitelisted callables
# ---------------------------------------------------------------------------


class _SafeCallable:
    """Marks a callable as allowed. Only these can be invoked from expressions."""

    __slots__ = ("fn", "name")

    def __init__(self, fn: Any, name: str):
        self.fn = fn
        self.name = name

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.fn(*args, **kwargs)


class _Namespace:
    """Read-only bag of safe callables, e.g. ``math`` or ``JSON``."""

    __slots__ = ("name", "members")

    def __init__(self, name: str, members: dict[str, Any]):
        self.name = name
        self.members = members


def _json_stringify(value: Any) -> str:
    return json.dumps(value, default=str)


def _contains(container: Any, item: Any) -> bool:
    return item in container


_MATH = _Namespace(
    "math",
    {
        "floor": _SafeCallable(math.floor, "floor"),
        "ceil": _SafeCallable(math.ceil, "ceil"),
        "sqrt": _SafeCallable(math.sqrt, "sqrt"),
        "log": _SafeCallable(math.log, "log"),
        "abs": _SafeCallable(abs, "abs"),
        "round": _SafeCallable(round, "round"),
        "min": _SafeCallable(min, "min"),
        "max": _SafeCallable(max, "max"),
        "pow": _SafeCallable(lambda a, b: _safe_pow(a, b), "pow"),
        "pi": math.pi,
        "e": math.e,
        "PI": math.pi,
        "E": math.e,
    },
)

_JSON = _Namespace(
    "json",
    {
        "parse": _SafeCallable(json.loads, "parse"),
        "loads": _SafeCallable(json.loads, "loads"),
        "stringify": _SafeCallable(_json_stringify, "stringify"),
        "dumps": _SafeCallable(_json_stringify, "dumps"),
    },
)

SAFE_FUNCTIONS: dict[str, Any] = {
    "len": _SafeCallable(len, "len"),
    "abs": _SafeCallable(abs, "abs"),
    "round": _SafeCallable(round, "round"),
    "min": _SafeCallable(min, "min"),
    "max": _SafeCallable(max, "max"),
    "sum": _SafeCallable(sum, "sum"),
    "str": _SafeCallable(str, "str"),
    "int": _SafeCallable(int, "int"),
    "float": _SafeCallable(float, "float"),
    "bool": _SafeCallable(bool, "bool"),
    "list": _SafeCallable(list, "list"),
    "sorted": _SafeCallable(sorted, "sorted"),
    "any": _SafeCallable(any, "any"),
    "all": _SafeCallable(all, "all"),
    "lower": _SafeCallable(lambda s: str(s).lower(), "lower"),
    "upper": _SafeCallable(lambda s: str(s).upper(), "upper"),
    "keys": _SafeCallable(lambda d: list(d.keys()), "keys"),
    "values": _SafeCallable(lambda d: list(d.values()), "values"),
    "contains": _SafeCallable(_contains, "contains"),
    "json_parse": _SafeCallable(json.loads, "json_parse"),
    "json_stringify": _SafeCallable(_json_stringify, "json_stringify"),
    "math": _MATH,
    "Math": _MATH,
    "json": _JSON,
    "JSON": _JSON,
}

CONSTANTS: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
    "True": True,
    "False": False,
    "None": None,
}

_STR_METHODS = {
    "lower",
    "upper",
    "strip",
    "lstrip",
    "rstrip",
    "startswith",
    "endswith",
    "split",
    "replace",
    "find",
    "count",
    "join",
    "title",
    "isdigit",
}
_JS_STR_METHODS = {
    "toLowerCase": str.lower,
    "toUpperCase": str.upper,
    "trim": str.strip,
    "startsWith": str.startswith,
    "endsWith": str.endswith,
    "includes": lambda s, sub: sub in s,
}
_LIST_METHODS = {"index", "count"}
_JS_LIST_METHODS = {
    "includes": lambda seq, item: item in seq,
    "indexOf": lambda seq, item: seq.index(item) if item in seq else -1,
    "join": lambda seq, sep=",": sep.join(str(v) for v in seq),
}
_DICT_METHODS = {"get", "keys", "values", "items"}


def _safe_pow(base: Any, exponent: Any) -> Any:
    if isinstance(exponent, (int, float)) and abs(exponent) > MAX_EXPONENT:
        raise ExpressionError(f"Exponent too large: {exponent}")
    if (
        isinstance(base, int)
        and isinstance(exponent, int)
        and exponent > 0
        and abs(base).bit_length() * exponent > MAX_INT_BITS
    ):
        raise ExpressionError("Power result too large")
    return operator.pow(base, exponent)


def _safe_mul(left: Any, right: Any) -> Any:
    for seq, count in ((left, right), (right, left)):
        if (
            isinstance(seq, (str, list, tuple))
            and isinstance(count, int)
            and len(seq) * count > MAX_REPEAT
        ):
            raise ExpressionError("Sequence repetition too large")
    return operator.mul(left, right)


_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: _safe_mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: _safe_pow,
}

_CMP_OPS = {
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

_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}


# ---------------------------------------------------------------------------
# Interpreter
# ---------------------------------------------------------------------------


class _Interpreter:
    def __init__(self, context: dict[str, Any]):
        self.context = context

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"Unsupported expression: {type(node).__name__}")
        return method(node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        name = node.id
        if name.startswith("__"):
            raise ExpressionError(f"Access to '{name}' is not allowed")
        if name in CONSTANTS:
            return CONSTANTS[name]
        if name in self.context:
            return self.context[name]
        if name in SAFE_FUNCTIONS:
            return SAFE_FUNCTIONS[name]
        raise ExpressionError(f"Unknown name: {name}")

    def visit_List(self, node: ast.List) -> list:
        return [self.visit(e) for e in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.visit(e) for e in node.elts)

    def visit_Set(self, node: ast.Set) -> set:
        try:
            return {self.visit(e) for e in node.elts}
        except TypeError as e:
            raise ExpressionError(f"Invalid set member: {e}") from e

    def visit_Dict(self, node: ast.Dict) -> dict:
        result = {}
        for key, value in zip(node.keys, node.values, strict=True):
            if key is None:
                raise ExpressionError("Dict unpacking is not allowed")
            try:
                result[self.visit(key)] = self.visit(value)
            except TypeError as e:
                raise ExpressionError(f"Invalid dict key: {e}") from e
        return result

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            value: Any = True
            for operand in node.values:
                value = self.visit(operand)
                if not value:
                    return value
            return value
        value = False
        for operand in node.values:
            value = self.visit(operand)
            if value:
                return value
        return value

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        left = self.visit(node.left)
        right = self.visit(node.right)
        try:
            return op(left, right)
        except ExpressionError:
            raise
        except (TypeError, ValueError, ZeroDivisionError, OverflowError) as e:
            raise ExpressionError(str(e)) from e

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        op = _UNARY_OPS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        try:
            return op(self.visit(node.operand))
        except TypeError as e:
            raise ExpressionError(str(e)) from e

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op_node, comparator in zip(node.ops, node.comparators, strict=True):
            op = _CMP_OPS.get(type(op_node))
            if op is None:
                raise ExpressionError(f"Unsupported comparison: {type(op_node).__name__}")
            right = self.visit(comparator)
            try:
                if not op(left, right):
                    return False
            except TypeError as e:
                raise ExpressionError(str(e)) from e
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        key = self.visit(node.slice)
        if isinstance(value, (_SafeCallable, _Namespace)):
            raise ExpressionError("Subscript on a function is not allowed")
        try:
            return value[key]
        except (KeyError, IndexError, TypeError) as e:
            raise ExpressionError(f"Invalid subscript: {e}") from e

    def visit_Slice(self, node: ast.Slice) -> slice:
        lower = self.visit(node.lower) if node.lower else None
        upper = self.visit(node.upper) if node.upper else None
        step = self.visit(node.step) if node.step else None
        return slice(lower, upper, step)

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        attr = node.attr
        if attr.startswith("_"):
            raise ExpressionError(f"Access to '{attr}' is not allowed")
        value = self.visit(node.value)

        if isinstance(value, _Namespace):
            if attr in value.members:
                return value.members[attr]
            raise ExpressionError(f"Unknown function: {value.name}.{attr}")

        if isinstance(value, dict):
            if attr in value:
                return value[attr]
            if attr in _DICT_METHODS:
                return _SafeCallable(getattr(value, attr), attr)
            if attr == "length":
                return len(value)
            return None

        if isinstance(value, str):
            if attr == "length":
                return len(value)
            if attr in _STR_METHODS:
                return _SafeCallable(getattr(value, attr), attr)
            if attr in _JS_STR_METHODS:
                fn = _JS_STR_METHODS[attr]
                return _SafeCallable(lambda *a: fn(value, *a), attr)

        if isinstance(value, (list, tuple)):
            if attr == "length":
                return len(value)
            if attr in _LIST_METHODS:
                return _SafeCallable(getattr(value, attr), attr)
            if attr in _JS_LIST_METHODS:
                fn = _JS_LIST_METHODS[attr]
                return _SafeCallable(lambda *a: fn(value, *a), attr)

        raise ExpressionError(f"Attribute '{attr}' is not allowed on {type(value).__name__}")

    def visit_Call(self, node: ast.Call) -> Any:
        func = self.visit(node.func)
        if not isinstance(func, _SafeCallable):
            raise ExpressionError("Only whitelisted functions may be called")
        args = []
        for arg in node.args:
            if isinstance(arg, ast.Starred):
                raise ExpressionError("Star arguments are not allowed")
            args.append(self.visit(arg))
        kwargs = {}
        for kw in node.keywords:
            if kw.arg is None:
                raise ExpressionError("Keyword unpacking is not allowed")
            kwargs[kw.arg] = self.visit(kw.value)
        try:
            return func(*args, **kwargs)
        except ExpressionError:
            raise
        except (
            TypeError,
            ValueError,
            KeyError,
            IndexError,
            AttributeError,
            ZeroDivisionError,
            OverflowError,
        ) as e:
            raise ExpressionError(f"{func.name}() failed: {e}") from e


@lru_cache(maxsize=512)
def _parse(expression: str) -> ast.Expression:
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError("Expression is too long")
    try:
        return ast.parse(normalize(expression).strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression syntax: {e.msg}") from e


def safe_eval(expression: str, context: dict[str, Any] | None = None) -> Any:
    """
    Evaluate a restricted expression against a context dict.

    Raises:
        ExpressionError: on syntax errors, forbidden constructs or runtime failures
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ExpressionError("Expression must be a non-empty string")
    tree = _parse(expression)
    return _Interpreter(context or {}).visit(tree)


def evaluate(expression: str, context: dict[str, Any] | None = None) -> tuple[Any, str | None]:
    """Evaluate and return ``(value, error)`` instead of raising."""
    try:
        return safe_eval(expression, context), None
    except ExpressionError as e:
        return None, str(e)
    except RecursionError:
        return None, "Expression is nested too deeply"


def evaluate_guard(expression: str, context: dict[str, Any] | None = None) -> bool:
    """Evaluate a boolean guard. Any failure counts as False."""
    context = context or {}
    try:
        value, error = evaluate(interpolate(expression, context), context)
    except Exception as e:
        value, error = None, f"{type(e).__name__}: {e}"
    if error is not None:
        logger.warning(f"      ⚠ Condition evaluation failed: {expression}")
        logger.warning(f"         Error: {error}")
        logger.debug(f"         Available context keys: {list(context.keys())}")
        return False
    return bool(value)
