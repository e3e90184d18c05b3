"""
Parser for the Routix workflow DSL.

Parses a token stream into an AST.
"""

import math
from typing import List, Optional, Set

from .dsl_lexer import Token, TokenType, tokenize
from .dsl_ast import (
    Program, Workflow, ScorePhase, MatchPhase, ScoreRule, MatchRule,
    ScoreAction, LogAction, FunctionDef, Declaration, Phase,
    # Expression AST
    Expr, Identifier, Literal, BinaryExpr, UnaryExpr, FunctionCallExpr,
    BinaryOperator, UnaryOperator,
)


class ParseError(Exception):
    """Raised when parser encounters invalid syntax."""
    def __init__(self, expected: str, token: Token, found: Optional[str] = None):
        self.token = token
        self.expected = expected
        self.found = found if found is not None else token.describe()
        self.line = token.line
        self.column = token.column
        super().__init__(
            f"Line {token.line}, column {token.column}: expected {expected}, found {self.found}"
        )


# Operator tokens per precedence level
EQUALITY_OPERATORS = {
    TokenType.EQ: BinaryOperator.EQ,
    TokenType.NEQ: BinaryOperator.NEQ,
}
RELATIONAL_OPERATORS = {
    TokenType.GT: BinaryOperator.GT,
    TokenType.LT: BinaryOperator.LT,
    TokenType.GTE: BinaryOperator.GTE,
    TokenType.LTE: BinaryOperator.LTE,
    TokenType.IN: BinaryOperator.IN,
}
ADDITIVE_OPERATORS = {
    TokenType.PLUS: BinaryOperator.ADD,
    TokenType.MINUS: BinaryOperator.SUB,
}
MULTIPLICATIVE_OPERATORS = {
    TokenType.STAR: BinaryOperator.MUL,
    TokenType.SLASH: BinaryOperator.DIV,
}

# Groups, lists, calls and `!` operators open one nesting level each
MAX_NESTING_DEPTH = 48


class Parser:
    """Recursive descent parser for the Routix DSL."""

    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.pos = 0
        self.depth = 0

    def parse(self) -> Program:
        """Parse the token stream into a Program AST."""
        declarations: List[Declaration] = []
        function_names: Set[str] = set()

        while not self._at_end():
            if self._check(TokenType.FUNCTION):
                name_token = self._peek(1)
                func = self._parse_function()
                if func.name in function_names:
                    raise ParseError(
                        "a function name not defined earlier", name_token,
                        found=f"redefinition of function '{func.name}'",
                    )
                function_names.add(func.name)
                declarations.append(func)
            elif self._check(TokenType.WORKFLOW):
                declarations.append(self._parse_workflow())
            else:
                raise ParseError("'function' or 'workflow'", self._peek())

        return Program(tuple(declarations))

    def parse_expression(self) -> Expr:
        """Parse a single expression that must span the whole input."""
        expr = self._parse_expr()
        if not self._at_end():
            raise ParseError("end of input", self._peek())
        return expr

    # =========================================================================
    # Helper methods
    # =========================================================================

    def _at_end(self) -> bool:
        return self._peek().type == TokenType.EOF

    def _peek(self, offset: int = 0) -> Token:
        pos = self.pos + offset
        if pos >= len(self.tokens):
            return self.tokens[-1]  # EOF
        return self.tokens[pos]

    def _advance(self) -> Token:
        token = self.tokens[self.pos]
        if not self._at_end():
            self.pos += 1
        return token

    def _check(self, token_type: TokenType) -> bool:
        return self._peek().type == token_type

    def _match(self, *token_types: TokenType) -> bool:
        for tt in token_types:
            if self._check(tt):
                self._advance()
                return True
        return False

    def _expect(self, token_type: TokenType, expected: str) -> Token:
        if self._check(token_type):
            return self._advance()
        raise ParseError(expected, self._peek())

    def _nest(self, token: Token):
        self.depth += 1
        if self.depth > MAX_NESTING_DEPTH:
            raise ParseError("shallower nesting", token,
                             found=f"nesting deeper than {MAX_NESTING_DEPTH} levels")

    def _expect_plain_name(self, expected: str) -> Token:
        """Expect an identifier without dot-path segments."""
        token = self._expect(TokenType.IDENTIFIER, expected)
        if '.' in token.value:
            raise ParseError(expected, token)
        return token

    # =========================================================================
    # Declarations
    # =========================================================================

    def _parse_function(self) -> FunctionDef:
        """function name(a, b) = expr"""
        keyword = self._advance()
        name = self._expect_plain_name("function name").value

        self._expect(TokenType.LPAREN, "'(' after function name")
        params: List[str] = []
        if not self._check(TokenType.RPAREN):
            params.append(self._parse_param(params))
            while self._match(TokenType.COMMA):
                params.append(self._parse_param(params))
        self._expect(TokenType.RPAREN, "')' after function parameters")

        self._expect(TokenType.EQUALS, "'=' before function body")
        body = self._parse_expr()
        return FunctionDef(name, tuple(params), body, keyword.line, keyword.column)

    def _parse_param(self, seen: List[str]) -> str:
        token = self._expect_plain_name("parameter name")
        if token.value in seen:
            raise ParseError("a unique parameter name", token,
                             found=f"duplicate parameter '{token.value}'")
        return token.value

    def _parse_workflow(self) -> Workflow:
        """workflow name { phase* }"""
        keyword = self._advance()
        name = self._expect_plain_name("workflow name").value
        self._expect(TokenType.LBRACE, "'{' after workflow name")

        phases: List[Phase] = []
        while not self._check(TokenType.RBRACE):
            if self._check(TokenType.SCORE):
                phases.append(self._parse_score_phase())
            elif self._check(TokenType.MATCH):
                phases.append(self._parse_match_phase())
            else:
                raise ParseError("'score', 'match' or '}'", self._peek())

        self._expect(TokenType.RBRACE, "'}' to close workflow")
        return Workflow(name, tuple(phases), keyword.line, keyword.column)

    def _parse_score_phase(self) -> ScorePhase:
        keyword = self._advance()
        self._expect(TokenType.LBRACE, "'{' after 'score'")
        rules = []
        while self._check(TokenType.WHEN):
            rules.append(self._parse_score_rule())
        self._expect(TokenType.RBRACE, "'when' or '}' in score phase")
        return ScorePhase(tuple(rules), keyword.line, keyword.column)

    def _parse_match_phase(self) -> MatchPhase:
        keyword = self._advance()
        self._expect(TokenType.LBRACE, "'{' after 'match'")
        rules = []
        while self._check(TokenType.WHEN):
            rules.append(self._parse_match_rule())
        self._expect(TokenType.RBRACE, "'when' or '}' in match phase")
        return MatchPhase(tuple(rules), keyword.line, keyword.column)

    def _parse_score_rule(self) -> ScoreRule:
        """when cond then score += expr | when cond then log expr"""
        when = self._advance()
        condition = self._parse_expr()
        self._expect(TokenType.THEN, "'then' after rule condition")

        action_token = self._peek()
        if self._match(TokenType.SCORE):
            self._expect(TokenType.PLUS_EQUALS, "'+=' after 'score'")
            action = ScoreAction(self._parse_expr(), action_token.line, action_token.column)
        elif self._match(TokenType.LOG):
            action = LogAction(self._parse_expr(), action_token.line, action_token.column)
        else:
            raise ParseError("'score' or 'log' action", action_token)

        return ScoreRule(condition, action, when.line, when.column)

    def _parse_match_rule(self) -> MatchRule:
        """when cond then assign to target"""
        when = self._advance()
        condition = self._parse_expr()
        self._expect(TokenType.THEN, "'then' after rule condition")
        self._expect(TokenType.ASSIGN, "'assign' action")
        self._expect(TokenType.TO, "'to' after 'assign'")

        target = self._peek()
        if not self._match(TokenType.IDENTIFIER, TokenType.STRING):
            raise ParseError("agent id after 'assign to'", target)

        return MatchRule(condition, target.value, when.line, when.column)

    # =========================================================================
    # Expression parsing (increasing precedence)
    # =========================================================================

    def _parse_expr(self) -> Expr:
        return self._parse_or_expr()

    def _parse_or_expr(self) -> Expr:
        left = self._parse_and_expr()
        while self._check(TokenType.OR):
            op_token = self._advance()
            right = self._parse_and_expr()
            left = BinaryExpr(left, BinaryOperator.OR, right, op_token.line, op_token.column)
        return left

    def _parse_and_expr(self) -> Expr:
        left = self._parse_equality_expr()
        while self._check(TokenType.AND):
            op_token = self._advance()
            right = self._parse_equality_expr()
            left = BinaryExpr(left, BinaryOperator.AND, right, op_token.line, op_token.column)
        return left

    def _parse_binary_level(self, operators, parse_operand) -> Expr:
        left = parse_operand()
        while self._peek().type in operators:
            op_token = self._advance()
            right = parse_operand()
            left = BinaryExpr(left, operators[op_token.type], right,
                              op_token.line, op_token.column)
        return left

    def _parse_equality_expr(self) -> Expr:
        return self._parse_binary_level(EQUALITY_OPERATORS, self._parse_relational_expr)

    def _parse_relational_expr(self) -> Expr:
        return self._parse_binary_level(RELATIONAL_OPERATORS, self._parse_additive_expr)

    def _parse_additive_expr(self) -> Expr:
        return self._parse_binary_level(ADDITIVE_OPERATORS, self._parse_multiplicative_expr)

    def _parse_multiplicative_expr(self) -> Expr:
        return self._parse_binary_level(MULTIPLICATIVE_OPERATORS, self._parse_unary_expr)

    def _parse_unary_expr(self) -> Expr:
        if self._check(TokenType.BANG):
            token = self._advance()
            self._nest(token)
            operand = self._parse_unary_expr()
            self.depth -= 1
            return UnaryExpr(UnaryOperator.NOT, operand, token.line, token.column)
        return self._parse_primary_expr()

    def _parse_primary_expr(self) -> Expr:
        """Parse primary expressions (literals, identifiers, calls, grouped, list)."""
        token = self._peek()

        if self._match(TokenType.NUMBER):
            value = float(token.value)
            if math.isinf(value):
                raise ParseError("a number within range", token)
            return Literal(value, "number", token.line, token.column)

        if self._match(TokenType.STRING):
            return Literal(token.value, "string", token.line, token.column)

        if self._match(TokenType.TRUE):
            return Literal(True, "bool", token.line, token.column)

        if self._match(TokenType.FALSE):
            return Literal(False, "bool", token.line, token.column)

        if self._match(TokenType.IDENTIFIER):
            if self._check(TokenType.LPAREN):
                self._nest(token)
                call = self._parse_function_call(token)
                self.depth -= 1
                return call
            return Identifier(tuple(token.value.split('.')), token.line, token.column)

        if self._match(TokenType.LPAREN):
            self._nest(token)
            expr = self._parse_expr()
            self._expect(TokenType.RPAREN, "')' after grouped expression")
            self.depth -= 1
            return expr

        if self._match(TokenType.LBRACKET):
            self._nest(token)
            literal = self._parse_list_literal(token)
            self.depth -= 1
            return literal

        raise ParseError("expression", token)

    def _parse_function_call(self, name_token: Token) -> FunctionCallExpr:
        """Parse function call arguments."""
        self._advance()  # (
        args = []
        if not self._check(TokenType.RPAREN):
            args.append(self._parse_expr())
            while self._match(TokenType.COMMA):
                args.append(self._parse_expr())
        self._expect(TokenType.RPAREN, "')' after function arguments")
        return FunctionCallExpr(name_token.value, tuple(args), name_token.line, name_token.column)

    def _parse_list_literal(self, open_token: Token) -> Literal:
        """Parse list literal: [a, b, c]."""
        elements = []
        if not self._check(TokenType.RBRACKET):
            elements.append(self._parse_expr())
            while self._match(TokenType.COMMA):
                elements.append(self._parse_expr())
        self._expect(TokenType.RBRACKET, "']' to close list literal")
        return Literal(tuple(elements), "list", open_token.line, open_token.column)


def parse(source: str) -> Program:
    """Convenience function to parse source code into a Program."""
    tokens = tokenize(source)
    parser = Parser(tokens)
    return parser.parse()


def parse_expression(source: str) -> Expr:
    """Parse a standalone expression such as a rule condition."""
    return Parser(tokenize(source)).parse_expression()
