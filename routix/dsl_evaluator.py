"""
Expression evaluator for the Routix DSL.

Evaluates an Expr AST against a Context holding the case record, the
optional candidate agent, the function table and any call bindings. Values
are immutable: float, str, bool, or a tuple of values for lists.
"""

import sys
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional, Sequence, Tuple, Union

from .dsl_ast import (
    Expr, Identifier, Literal, BinaryExpr, UnaryExpr, FunctionCallExpr,
    BinaryOperator, UnaryOperator, FunctionDef, expression_height,
)

DEFAULT_MAX_CALL_DEPTH = 256

# Interpreter frames one level of expression nesting can take in _eval
FRAMES_PER_LEVEL = 3
# Ceiling for the recursion limit evaluate() sets while it runs
MAX_RECURSION_LIMIT = 20000

Value = Union[float, str, bool, Tuple['Value', ...]]


class EvalErrorKind(Enum):
    UNBOUND_NAME = "UnboundName"
    MISSING_FIELD = "MissingField"
    TYPE_MISMATCH = "TypeMismatch"
    DIVISION_BY_ZERO = "DivisionByZero"
    UNKNOWN_FUNCTION = "UnknownFunction"
    ARITY_MISMATCH = "ArityMismatch"
    RECURSION_LIMIT_EXCEEDED = "RecursionLimitExceeded"


class EvalError(Exception):
    """Raised when an expression cannot be evaluated."""
    def __init__(self, kind: EvalErrorKind, message: str):
        self.kind = kind
        self.message = message
        super().__init__(f"{kind.value}: {message}")


EMPTY_MAPPING: Mapping[str, Any] = MappingProxyType({})


# =============================================================================
# Values
# =============================================================================

def type_name(value: Value) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, tuple):
        return "list"
    return type(value).__name__


def values_equal(left: Value, right: Value) -> bool:
    """Compare by value; values of different types are never equal."""
    if type_name(left) != type_name(right):
        return False
    if isinstance(left, tuple):
        return len(left) == len(right) and all(
            values_equal(a, b) for a, b in zip(left, right))
    return left == right


def to_value(raw: Any, name: str) -> Value:
    """Coerce a host value from a case or agent record into a DSL value."""
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, (int, float)):
        try:
            return float(raw)
        except OverflowError:
            raise EvalError(EvalErrorKind.TYPE_MISMATCH,
                            f"'{name}' is too large for a number") from None
    if isinstance(raw, str):
        return raw
    if isinstance(raw, (list, tuple)):
        return tuple(to_value(item, name) for item in raw)
    if isinstance(raw, Mapping):
        raise EvalError(EvalErrorKind.TYPE_MISMATCH, f"'{name}' is a record, not a value")
    raise EvalError(EvalErrorKind.TYPE_MISMATCH,
                    f"'{name}' holds unsupported type {type(raw).__name__}")


def to_display_string(value: Value) -> str:
    """Text form of a value, used for log messages."""
    if isinstance(value, str):
        return value
    return _display(value)


def _display(value: Value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, str):
        return f'"{value}"'
    if isinstance(value, tuple):
        return "[" + ", ".join(_display(v) for v in value) + "]"
    return str(value)


# =============================================================================
# Built-in functions
# =============================================================================

def _expect_arity(name: str, args: Sequence[Value], count: int):
    if len(args) != count:
        raise EvalError(EvalErrorKind.ARITY_MISMATCH,
                        f"{name}() takes {count} argument(s), got {len(args)}")


def _expect_numbers(name: str, args: Sequence[Value]):
    if not args:
        raise EvalError(EvalErrorKind.ARITY_MISMATCH, f"{name}() requires at least 1 argument")
    for arg in args:
        if type_name(arg) != "number":
            raise EvalError(EvalErrorKind.TYPE_MISMATCH,
                            f"{name}() can only be applied to numbers, got {type_name(arg)}")


def _builtin_len(args: Sequence[Value]) -> Value:
    _expect_arity("len", args, 1)
    if type_name(args[0]) not in ("list", "string"):
        raise EvalError(EvalErrorKind.TYPE_MISMATCH,
                        f"len() can only be applied to lists or strings, got {type_name(args[0])}")
    return float(len(args[0]))


def _builtin_max(args: Sequence[Value]) -> Value:
    _expect_numbers("max", args)
    return max(args)


def _builtin_min(args: Sequence[Value]) -> Value:
    _expect_numbers("min", args)
    return min(args)


def _builtin_contains(args: Sequence[Value]) -> Value:
    _expect_arity("contains", args, 2)
    haystack, needle = args
    if isinstance(haystack, tuple):
        return any(values_equal(item, needle) for item in haystack)
    if type_name(haystack) == "string" and type_name(needle) == "string":
        return needle in haystack
    raise EvalError(EvalErrorKind.TYPE_MISMATCH,
                    "contains() first argument must be a list or string")


BUILTIN_FUNCTIONS: Mapping[str, Callable[[Sequence[Value]], Value]] = MappingProxyType({
    'len': _builtin_len,
    'max': _builtin_max,
    'min': _builtin_min,
    'contains': _builtin_contains,
})


# =============================================================================
# Context
# =============================================================================

@dataclass(frozen=True)
class Context:
    """Everything an expression can see. Extended, never modified."""
    case: Mapping[str, Any]
    agent: Optional[Mapping[str, Any]] = None
    functions: Mapping[str, FunctionDef] = field(default_factory=lambda: EMPTY_MAPPING)
    builtins: Mapping[str, Callable[[Sequence[Value]], Value]] = field(
        default_factory=lambda: BUILTIN_FUNCTIONS)
    bindings: Mapping[str, Value] = field(default_factory=lambda: EMPTY_MAPPING)
    depth: int = 0
    max_depth: int = DEFAULT_MAX_CALL_DEPTH
    # Stack frames one user function call can take; derived from the bodies
    call_frames: Optional[int] = None

    def __post_init__(self):
        if self.call_frames is None:
            height = max((expression_height(f.body) for f in self.functions.values()), default=0)
            object.__setattr__(self, 'call_frames', FRAMES_PER_LEVEL * (height + 1))

    def with_agent(self, agent: Optional[Mapping[str, Any]]) -> 'Context':
        return replace(self, agent=agent)

    def enter_call(self, bindings: Mapping[str, Value]) -> 'Context':
        return replace(self, bindings=MappingProxyType(dict(bindings)), depth=self.depth + 1)


# =============================================================================
# Evaluation
# =============================================================================

@contextmanager
def _stack_room(frames: int):
    """Raise the recursion limit by frames (up to MAX_RECURSION_LIMIT) for the block."""
    previous = sys.getrecursionlimit()
    limit = min(previous + frames, MAX_RECURSION_LIMIT)
    if limit <= previous:
        yield
        return
    sys.setrecursionlimit(limit)
    try:
        yield
    finally:
        sys.setrecursionlimit(previous)


def evaluate(expr: Expr, context: Context) -> Value:
    """Evaluate expr in context, raising EvalError on failure.

    Recursion up to the context's max_depth gets the interpreter stack it
    needs; the recursion limit is restored afterwards.
    """
    try:
        frames = (FRAMES_PER_LEVEL * expression_height(expr)
                  + (context.max_depth - context.depth) * context.call_frames)
        with _stack_room(frames):
            return _eval(expr, context)
    except RecursionError:
        # The interpreter's own stack ran out before the call-depth limit
        raise EvalError(EvalErrorKind.RECURSION_LIMIT_EXCEEDED,
                        "expression nesting exceeds the interpreter stack") from None


def _eval(expr: Expr, ctx: Context) -> Value:
    if isinstance(expr, Literal):
        if expr.type == "list":
            return tuple(_eval(e, ctx) for e in expr.value)
        if expr.type == "number":
            return float(expr.value)
        return expr.value
    elif isinstance(expr, Identifier):
        return _resolve_identifier(expr, ctx)
    elif isinstance(expr, UnaryExpr):
        return _eval_unary(expr, ctx)
    elif isinstance(expr, BinaryExpr):
        return _eval_binary(expr, ctx)
    elif isinstance(expr, FunctionCallExpr):
        return _eval_call(expr, ctx)
    raise TypeError(f"Not an expression node: {expr!r}")


def _resolve_identifier(expr: Identifier, ctx: Context) -> Value:
    root, fields = expr.path[0], expr.path[1:]

    if root in ctx.bindings:
        current = ctx.bindings[root]
    elif root == 'case':
        current = ctx.case
    elif root == 'agent' and ctx.agent is not None:
        current = ctx.agent
    elif root == 'agent':
        raise EvalError(EvalErrorKind.UNBOUND_NAME, "'agent' is not available outside a match phase")
    else:
        raise EvalError(EvalErrorKind.UNBOUND_NAME, f"unknown name '{root}'")

    for i, segment in enumerate(fields):
        prefix = '.'.join(expr.path[:i + 1])
        if not isinstance(current, Mapping):
            raise EvalError(EvalErrorKind.TYPE_MISMATCH, f"'{prefix}' is not a record")
        if current.get(segment) is None:
            raise EvalError(EvalErrorKind.MISSING_FIELD, f"'{prefix}' has no field '{segment}'")
        current = current[segment]

    return to_value(current, expr.name)


def _expect_type(value: Value, expected: str, what: str) -> Value:
    if type_name(value) != expected:
        raise EvalError(EvalErrorKind.TYPE_MISMATCH,
                        f"{what} needs a {expected}, got {type_name(value)}")
    return value


def _eval_unary(expr: UnaryExpr, ctx: Context) -> Value:
    operand = _eval(expr.operand, ctx)
    if expr.op == UnaryOperator.NOT:
        return not _expect_type(operand, "bool", "'!'")
    raise TypeError(f"Unknown unary operator: {expr.op}")


_ARITHMETIC = {
    BinaryOperator.ADD: lambda a, b: a + b,
    BinaryOperator.SUB: lambda a, b: a - b,
    BinaryOperator.MUL: lambda a, b: a * b,
    BinaryOperator.DIV: lambda a, b: a / b,
}

_COMPARISON = {
    BinaryOperator.GT: lambda a, b: a > b,
    BinaryOperator.LT: lambda a, b: a < b,
    BinaryOperator.GTE: lambda a, b: a >= b,
    BinaryOperator.LTE: lambda a, b: a <= b,
}


def _eval_binary(expr: BinaryExpr, ctx: Context) -> Value:
    op = expr.op

    # Short-circuit operators evaluate the right side only when needed
    if op in (BinaryOperator.AND, BinaryOperator.OR):
        left = _expect_type(_eval(expr.left, ctx), "bool", f"'{op.value}'")
        if op == BinaryOperator.AND and not left:
            return False
        if op == BinaryOperator.OR and left:
            return True
        return _expect_type(_eval(expr.right, ctx), "bool", f"'{op.value}'")

    left = _eval(expr.left, ctx)
    right = _eval(expr.right, ctx)

    if op in _ARITHMETIC:
        _expect_type(left, "number", f"'{op.value}'")
        _expect_type(right, "number", f"'{op.value}'")
        if op == BinaryOperator.DIV and right == 0:
            raise EvalError(EvalErrorKind.DIVISION_BY_ZERO, "division by zero")
        return _ARITHMETIC[op](left, right)

    if op in _COMPARISON:
        _expect_type(left, "number", f"'{op.value}'")
        _expect_type(right, "number", f"'{op.value}'")
        return _COMPARISON[op](left, right)

    if op == BinaryOperator.EQ:
        return values_equal(left, right)
    if op == BinaryOperator.NEQ:
        return not values_equal(left, right)

    if op == BinaryOperator.IN:
        _expect_type(right, "list", "right side of 'in'")
        if isinstance(left, tuple):
            # Any overlap counts: agent.skills in ["billing", "finance"]
            return any(values_equal(a, b) for a in left for b in right)
        return any(values_equal(left, item) for item in right)

    raise TypeError(f"Unknown binary operator: {op}")


def _eval_call(expr: FunctionCallExpr, ctx: Context) -> Value:
    func = ctx.functions.get(expr.name)

    if func is None:
        builtin = ctx.builtins.get(expr.name)
        if builtin is None:
            raise EvalError(EvalErrorKind.UNKNOWN_FUNCTION, f"unknown function '{expr.name}'")
        return builtin([_eval(arg, ctx) for arg in expr.args])

    if len(expr.args) != len(func.params):
        raise EvalError(EvalErrorKind.ARITY_MISMATCH,
                        f"{func.name}() takes {len(func.params)} argument(s), got {len(expr.args)}")
    if ctx.depth >= ctx.max_depth:
        raise EvalError(EvalErrorKind.RECURSION_LIMIT_EXCEEDED,
                        f"call depth limit of {ctx.max_depth} exceeded in '{func.name}'")

    # Arguments are evaluated in the caller's context and bound by value
    args = [_eval(arg, ctx) for arg in expr.args]
    return _eval(func.body, ctx.enter_call(dict(zip(func.params, args))))
