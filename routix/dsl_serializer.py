"""
Canonical text rendering of Routix ASTs.

The output is deterministic: lowercase keywords, one rule per line, four
spaces per block level, spaced binary operators and only the parentheses the
precedence rules require. Parsing the output yields an equal AST.
"""

import re
from decimal import Decimal
from typing import List

from .dsl_ast import (
    Program, Workflow, ScorePhase, MatchPhase, ScoreRule, MatchRule,
    ScoreAction, LogAction, FunctionDef,
    Expr, Identifier, Literal, BinaryExpr, UnaryExpr, FunctionCallExpr,
    PRECEDENCE, UNARY_PRECEDENCE,
)
from .dsl_lexer import is_keyword

INDENT = "    "

_IDENTIFIER_RE = re.compile(r'[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*\Z')


def is_identifier_text(text: str) -> bool:
    """True when text lexes as a single identifier token."""
    return bool(_IDENTIFIER_RE.match(text)) and not is_keyword(text)


def format_number(value: float) -> str:
    """Render a number the lexer can read back: no exponent, no sign."""
    if value == int(value):
        return str(int(value))
    text = repr(value)
    if 'e' in text or 'E' in text:
        text = format(Decimal(text), 'f')
    return text


# =============================================================================
# Expressions
# =============================================================================

def serialize_expr(expr: Expr) -> str:
    """Convert an Expr AST node to canonical DSL text."""
    if isinstance(expr, Literal):
        return _literal_to_string(expr)
    elif isinstance(expr, Identifier):
        return expr.name
    elif isinstance(expr, UnaryExpr):
        operand = serialize_expr(expr.operand)
        if _precedence(expr.operand) < UNARY_PRECEDENCE:
            operand = f"({operand})"
        return f"{expr.op.value}{operand}"
    elif isinstance(expr, BinaryExpr):
        level = PRECEDENCE[expr.op]
        left = serialize_expr(expr.left)
        right = serialize_expr(expr.right)
        if _precedence(expr.left) < level:
            left = f"({left})"
        # Left-associative: an equal-precedence right operand needs parens
        if _precedence(expr.right) <= level:
            right = f"({right})"
        return f"{left} {expr.op.value} {right}"
    elif isinstance(expr, FunctionCallExpr):
        args = ', '.join(serialize_expr(arg) for arg in expr.args)
        return f"{expr.name}({args})"
    else:
        raise TypeError(f"Not an expression node: {expr!r}")


def _precedence(expr: Expr) -> int:
    if isinstance(expr, BinaryExpr):
        return PRECEDENCE[expr.op]
    if isinstance(expr, UnaryExpr):
        return UNARY_PRECEDENCE
    # Primaries, including negative numbers which render as (0 - n)
    return UNARY_PRECEDENCE + 1


def _literal_to_string(lit: Literal) -> str:
    if lit.type == "string":
        return f'"{lit.value}"'
    elif lit.type == "bool":
        return "true" if lit.value else "false"
    elif lit.type == "number":
        if lit.value < 0:
            return f"(0 - {format_number(-lit.value)})"
        return format_number(lit.value)
    elif lit.type == "list":
        elements = ', '.join(serialize_expr(e) for e in lit.value)
        return f"[{elements}]"
    raise ValueError(f"Unknown literal type: {lit.type}")


# =============================================================================
# Declarations
# =============================================================================

def _target_to_string(target: str) -> str:
    if is_identifier_text(target):
        return target
    return f'"{target}"'


def _score_rule_to_string(rule: ScoreRule) -> str:
    condition = serialize_expr(rule.condition)
    if isinstance(rule.action, ScoreAction):
        action = f"score += {serialize_expr(rule.action.delta)}"
    elif isinstance(rule.action, LogAction):
        action = f"log {serialize_expr(rule.action.message)}"
    else:
        raise TypeError(f"Unknown action: {rule.action!r}")
    return f"when {condition} then {action}"


def _match_rule_to_string(rule: MatchRule) -> str:
    return f"when {serialize_expr(rule.condition)} then assign to {_target_to_string(rule.target)}"


def _workflow_lines(workflow: Workflow) -> List[str]:
    if not workflow.phases:
        return [f"workflow {workflow.name} {{}}"]

    lines = [f"workflow {workflow.name} {{"]
    for phase in workflow.phases:
        if isinstance(phase, ScorePhase):
            keyword, render = "score", _score_rule_to_string
        elif isinstance(phase, MatchPhase):
            keyword, render = "match", _match_rule_to_string
        else:
            raise TypeError(f"Unknown phase: {phase!r}")

        if not phase.rules:
            lines.append(f"{INDENT}{keyword} {{}}")
            continue
        lines.append(f"{INDENT}{keyword} {{")
        lines.extend(f"{INDENT * 2}{render(rule)}" for rule in phase.rules)
        lines.append(f"{INDENT}}}")
    lines.append("}")
    return lines


def _function_line(func: FunctionDef) -> str:
    params = ', '.join(func.params)
    return f"function {func.name}({params}) = {serialize_expr(func.body)}"


def serialize(program: Program) -> str:
    """Render a Program as canonical DSL text."""
    blocks = []
    for decl in program.declarations:
        if isinstance(decl, FunctionDef):
            blocks.append(_function_line(decl))
        elif isinstance(decl, Workflow):
            blocks.append('\n'.join(_workflow_lines(decl)))
        else:
            raise TypeError(f"Unknown declaration: {decl!r}")
    if not blocks:
        return ""
    return '\n\n'.join(blocks) + '\n'


def serialize_model(model) -> str:
    """Render a structured model document as DSL text."""
    from .dsl_converter import from_model
    return serialize(from_model(model))
