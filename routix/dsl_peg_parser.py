"""
Grammar-based parser for the Routix DSL using Lark.

Uses a formal grammar definition (dsl_grammar.lark) to produce the same AST
nodes as the hand-written parser in dsl_parser.py. The two parsers are kept
in lockstep by the parity tests and the fuzzer; Lark failures are reported
as ParseError so callers can swap one parser for the other.
"""

import math
from pathlib import Path
from typing import List, Optional

from lark import Lark, Transformer, Tree, Token as LarkToken, v_args
from lark.exceptions import UnexpectedCharacters, UnexpectedEOF, UnexpectedToken, VisitError

from .dsl_ast import (
    Program, Workflow, ScorePhase, MatchPhase, ScoreRule, MatchRule,
    ScoreAction, LogAction, FunctionDef,
    # Expression AST
    Expr, Identifier, Literal, BinaryExpr, UnaryExpr, FunctionCallExpr,
    BinaryOperator, UnaryOperator,
)
from .dsl_lexer import Token, TokenType
from .dsl_parser import MAX_NESTING_DEPTH, ParseError


# Load grammar from file
GRAMMAR_PATH = Path(__file__).parent / "dsl_grammar.lark"


def _error_token(lark_token: LarkToken, value: Optional[str] = None) -> Token:
    """Re-express a Lark token as a lexer token for ParseError."""
    return Token(TokenType.IDENTIFIER, value if value is not None else str(lark_token),
                 getattr(lark_token, 'line', 0) or 0, getattr(lark_token, 'column', 0) or 0)


def _plain_name(token: LarkToken, expected: str) -> str:
    name = str(token)
    if '.' in name:
        raise ParseError(expected, _error_token(token))
    return name


@v_args(inline=True)
class DSLTransformer(Transformer):
    """Transform Lark parse tree into our AST nodes."""

    # =========================================================================
    # Top-level
    # =========================================================================

    def start(self, *declarations):
        seen = set()
        for decl in declarations:
            if isinstance(decl, FunctionDef):
                if decl.name in seen:
                    raise ParseError(
                        "a function name not defined earlier",
                        Token(TokenType.IDENTIFIER, decl.name, decl.line, decl.column),
                        found=f"redefinition of function '{decl.name}'",
                    )
                seen.add(decl.name)
        return Program(tuple(declarations))

    def expression(self, expr):
        return expr

    # =========================================================================
    # Functions and workflows
    # =========================================================================

    def function_def(self, name, params, body):
        return FunctionDef(
            _plain_name(name, "function name"),
            tuple(params or ()),
            body,
            name.line, name.column,
        )

    def params(self, *names):
        params: List[str] = []
        for token in names:
            param = _plain_name(token, "parameter name")
            if param in params:
                raise ParseError("a unique parameter name", _error_token(token),
                                 found=f"duplicate parameter '{param}'")
            params.append(param)
        return params

    def workflow(self, name, *phases):
        return Workflow(_plain_name(name, "workflow name"), tuple(phases), name.line, name.column)

    def score_phase(self, *rules):
        return ScorePhase(tuple(rules))

    def match_phase(self, *rules):
        return MatchPhase(tuple(rules))

    def score_action_rule(self, condition, delta):
        return ScoreRule(condition, ScoreAction(delta), condition.line, condition.column)

    def log_action_rule(self, condition, message):
        return ScoreRule(condition, LogAction(message), condition.line, condition.column)

    def match_rule(self, condition, target):
        value = str(target)
        if target.type == 'STRING':
            value = self._unquote(value)
        return MatchRule(condition, value, condition.line, condition.column)

    # =========================================================================
    # Expressions
    # =========================================================================

    def _binary(self, left, op, right):
        return BinaryExpr(left, op, right, left.line, left.column)

    def binary_or(self, left, right):
        return self._binary(left, BinaryOperator.OR, right)

    def binary_and(self, left, right):
        return self._binary(left, BinaryOperator.AND, right)

    def binary_eq(self, left, right):
        return self._binary(left, BinaryOperator.EQ, right)

    def binary_neq(self, left, right):
        return self._binary(left, BinaryOperator.NEQ, right)

    def binary_gt(self, left, right):
        return self._binary(left, BinaryOperator.GT, right)

    def binary_lt(self, left, right):
        return self._binary(left, BinaryOperator.LT, right)

    def binary_gte(self, left, right):
        return self._binary(left, BinaryOperator.GTE, right)

    def binary_lte(self, left, right):
        return self._binary(left, BinaryOperator.LTE, right)

    def binary_in(self, left, right):
        return self._binary(left, BinaryOperator.IN, right)

    def binary_add(self, left, right):
        return self._binary(left, BinaryOperator.ADD, right)

    def binary_sub(self, left, right):
        return self._binary(left, BinaryOperator.SUB, right)

    def binary_mul(self, left, right):
        return self._binary(left, BinaryOperator.MUL, right)

    def binary_div(self, left, right):
        return self._binary(left, BinaryOperator.DIV, right)

    def group(self, expr):
        return expr

    def unary_not(self, operand):
        return UnaryExpr(UnaryOperator.NOT, operand, operand.line, operand.column)

    def func_call(self, name, args=None):
        return FunctionCallExpr(str(name), tuple(args or ()), name.line, name.column)

    def list_literal(self, args=None):
        return Literal(tuple(args or ()), "list")

    def args(self, *exprs):
        return list(exprs)

    def identifier(self, name):
        return Identifier(tuple(str(name).split('.')), name.line, name.column)

    def number(self, n):
        value = float(str(n))
        if math.isinf(value):
            raise ParseError("a number within range", _error_token(n))
        return Literal(value, "number", n.line, n.column)

    def string(self, s):
        return Literal(self._unquote(s), "string", s.line, s.column)

    def true_lit(self):
        return Literal(True, "bool")

    def false_lit(self):
        return Literal(False, "bool")

    # =========================================================================
    # Helpers
    # =========================================================================

    def _unquote(self, s):
        """Remove quotes from a string token."""
        s = str(s)
        if s.startswith('"') and s.endswith('"'):
            return s[1:-1]
        return s


# Create parser instance
_parser = None


def get_parser() -> Lark:
    """Get or create the Lark parser instance."""
    global _parser
    if _parser is None:
        with open(GRAMMAR_PATH) as f:
            grammar = f.read()
        _parser = Lark(
            grammar,
            start=['start', 'expression'],
            parser='lalr',
            lexer='basic',
            propagate_positions=True,
            maybe_placeholders=True,
        )
    return _parser


def _position(error) -> tuple:
    line, column = getattr(error, "line", 0), getattr(error, "column", 0)
    return (line if isinstance(line, int) and line > 0 else 0,
            column if isinstance(column, int) and column > 0 else 0)


def _expected_names(expected) -> str:
    return ", ".join(sorted(name.lstrip("_") for name in expected)) or "valid syntax"


def _to_parse_error(error: Exception) -> ParseError:
    line, column = _position(error)
    if isinstance(error, UnexpectedToken):
        token = error.token
        if token.type == '$END':
            found = Token(TokenType.EOF, '', line, column)
        else:
            found = _error_token(token)
        return ParseError(_expected_names(error.expected), found)
    if isinstance(error, UnexpectedCharacters):
        char = Token(TokenType.IDENTIFIER, error.char, line, column)
        return ParseError("valid token", char, found=f"unexpected character {error.char!r}")
    if isinstance(error, UnexpectedEOF):
        return ParseError(_expected_names(error.expected), Token(TokenType.EOF, '', line, column))
    raise error


NESTING_RULES = {'group', 'list_literal', 'func_call', 'unary_not'}


def _check_nesting(tree: Tree):
    """Apply the hand-written parser's nesting bound to a parse tree."""
    stack = [(tree, 0)]
    while stack:
        node, depth = stack.pop()
        if node.data in NESTING_RULES:
            depth += 1
            if depth > MAX_NESTING_DEPTH:
                meta = node.meta
                token = Token(TokenType.IDENTIFIER, str(node.data),
                              getattr(meta, 'line', 0), getattr(meta, 'column', 0))
                raise ParseError("shallower nesting", token,
                                 found=f"nesting deeper than {MAX_NESTING_DEPTH} levels")
        stack.extend((child, depth) for child in node.children if isinstance(child, Tree))


def _parse(source: str, start: str):
    try:
        tree = get_parser().parse(source, start=start)
    except (UnexpectedToken, UnexpectedCharacters, UnexpectedEOF) as e:
        raise _to_parse_error(e) from None
    _check_nesting(tree)
    try:
        return DSLTransformer().transform(tree)
    except VisitError as e:
        raise e.orig_exc from None


def parse(source: str) -> Program:
    """Parse DSL source code into a Program AST."""
    return _parse(source, 'start')


def parse_expression(source: str) -> Expr:
    """Parse a standalone expression."""
    return _parse(source, 'expression')


def parse_file(path: str) -> Program:
    """Parse a DSL file into a Program AST."""
    with open(path) as f:
        return parse(f.read())
