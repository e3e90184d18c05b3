"""
AST node definitions for the Routix workflow DSL.

Nodes are frozen dataclasses holding tuples of children, so a tree built by
the parser (or by the model converter) can be shared between concurrent
workflow runs. Source positions are carried for diagnostics but take no part
in equality: two trees are equal when their shapes and literal values match.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Tuple, Union


# =============================================================================
# Expression AST nodes
# =============================================================================

class BinaryOperator(Enum):
    """Binary operators, valued by their DSL spelling."""
    # Boolean
    OR = 'or'
    AND = 'and'
    # Equality
    EQ = '=='
    NEQ = '!='
    # Relational
    GT = '>'
    LT = '<'
    GTE = '>='
    LTE = '<='
    IN = 'in'
    # Arithmetic
    ADD = '+'
    SUB = '-'
    MUL = '*'
    DIV = '/'


class UnaryOperator(Enum):
    """Unary operators."""
    NOT = '!'


# Binding strength, loosest first. Everything at one level is left-associative.
PRECEDENCE = {
    BinaryOperator.OR: 1,
    BinaryOperator.AND: 2,
    BinaryOperator.EQ: 3,
    BinaryOperator.NEQ: 3,
    BinaryOperator.GT: 4,
    BinaryOperator.LT: 4,
    BinaryOperator.GTE: 4,
    BinaryOperator.LTE: 4,
    BinaryOperator.IN: 4,
    BinaryOperator.ADD: 5,
    BinaryOperator.SUB: 5,
    BinaryOperator.MUL: 6,
    BinaryOperator.DIV: 6,
}
UNARY_PRECEDENCE = 7


@dataclass(frozen=True)
class Literal:
    """Literal value: number, string, bool or list of expressions."""
    value: Any  # float, str, bool, or Tuple[Expr, ...] for lists
    type: str   # "number", "string", "bool", "list"
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)


@dataclass(frozen=True)
class Identifier:
    """Dot-path reference such as case.priority or agent.skills."""
    path: Tuple[str, ...]
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)

    @property
    def name(self) -> str:
        return '.'.join(self.path)


@dataclass(frozen=True)
class UnaryExpr:
    """Unary operation: op operand."""
    op: UnaryOperator
    operand: 'Expr'
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)


@dataclass(frozen=True)
class BinaryExpr:
    """Binary operation: left op right."""
    left: 'Expr'
    op: BinaryOperator
    right: 'Expr'
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)


@dataclass(frozen=True)
class FunctionCallExpr:
    """Function call: func(arg1, arg2, ...)."""
    name: str
    args: Tuple['Expr', ...] = ()
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)


# Union type for all expressions
Expr = Union[Literal, Identifier, UnaryExpr, BinaryExpr, FunctionCallExpr]


def number(value, line: int = 0, column: int = 0) -> Literal:
    return Literal(float(value), "number", line, column)


def string(value: str, line: int = 0, column: int = 0) -> Literal:
    return Literal(value, "string", line, column)


def boolean(value: bool, line: int = 0, column: int = 0) -> Literal:
    return Literal(bool(value), "bool", line, column)


def list_of(elements, line: int = 0, column: int = 0) -> Literal:
    return Literal(tuple(elements), "list", line, column)


# =============================================================================
# Actions and rules
# =============================================================================

@dataclass(frozen=True)
class ScoreAction:
    """score += delta"""
    delta: Expr
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)


@dataclass(frozen=True)
class LogAction:
    """log message"""
    message: Expr
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)


Action = Union[ScoreAction, LogAction]


@dataclass(frozen=True)
class ScoreRule:
    """when condition then (score += delta | log message)"""
    condition: Expr
    action: Action
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)


@dataclass(frozen=True)
class MatchRule:
    """when condition then assign to target"""
    condition: Expr
    target: str
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)


# =============================================================================
# Phases and workflows
# =============================================================================

@dataclass(frozen=True)
class ScorePhase:
    rules: Tuple[ScoreRule, ...] = ()
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)


@dataclass(frozen=True)
class MatchPhase:
    rules: Tuple[MatchRule, ...] = ()
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)


Phase = Union[ScorePhase, MatchPhase]


@dataclass(frozen=True)
class Workflow:
    name: str
    phases: Tuple[Phase, ...] = ()
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)


# =============================================================================
# Functions
# =============================================================================

@dataclass(frozen=True)
class FunctionDef:
    """function name(params) = body"""
    name: str
    params: Tuple[str, ...]
    body: Expr
    line: int = field(default=0, compare=False)
    column: int = field(default=0, compare=False)


# =============================================================================
# Program (root node)
# =============================================================================

Declaration = Union[FunctionDef, Workflow]


@dataclass(frozen=True)
class Program:
    """Top-level declarations in document order."""
    declarations: Tuple[Declaration, ...] = ()

    @property
    def functions(self) -> Tuple[FunctionDef, ...]:
        return tuple(d for d in self.declarations if isinstance(d, FunctionDef))

    @property
    def workflows(self) -> Tuple[Workflow, ...]:
        return tuple(d for d in self.declarations if isinstance(d, Workflow))

    def workflow(self, name: str) -> Workflow:
        """Return the first workflow called name; KeyError if there is none."""
        for wf in self.workflows:
            if wf.name == name:
                return wf
        raise KeyError(name)

    def function_table(self) -> Mapping[str, FunctionDef]:
        """Read-only name -> FunctionDef mapping used by the evaluator."""
        return MappingProxyType({f.name: f for f in self.functions})


def child_expressions(expr: Expr) -> Tuple[Expr, ...]:
    """Direct operands of expr."""
    if isinstance(expr, Literal):
        return tuple(expr.value) if expr.type == "list" else ()
    if isinstance(expr, UnaryExpr):
        return (expr.operand,)
    if isinstance(expr, BinaryExpr):
        return (expr.left, expr.right)
    if isinstance(expr, FunctionCallExpr):
        return tuple(expr.args)
    return ()


def iter_subexpressions(expr: Expr):
    """Yield expr and every expression nested inside it, depth first."""
    yield expr
    for child in child_expressions(expr):
        yield from iter_subexpressions(child)


def expression_height(expr: Expr) -> int:
    """Number of nodes on the longest path from expr down to a leaf."""
    height = 0
    stack = [(expr, 1)]
    while stack:
        node, level = stack.pop()
        height = max(height, level)
        stack.extend((child, level + 1) for child in child_expressions(node))
    return height
