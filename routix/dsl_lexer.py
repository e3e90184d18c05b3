"""
Lexer for the Routix workflow DSL.

Tokenizes the input into a stream of tokens for the parser.
"""

import string
from dataclasses import dataclass
from enum import Enum, auto
from typing import List


class TokenType(Enum):
    # Keywords
    WORKFLOW = auto()
    FUNCTION = auto()
    SCORE = auto()
    MATCH = auto()
    WHEN = auto()
    THEN = auto()
    ASSIGN = auto()
    TO = auto()
    LOG = auto()

    # Keyword operators
    AND = auto()
    OR = auto()
    IN = auto()

    # Symbols
    LPAREN = auto()      # (
    RPAREN = auto()      # )
    LBRACKET = auto()    # [
    RBRACKET = auto()    # ]
    LBRACE = auto()      # {
    RBRACE = auto()      # }
    COMMA = auto()       # ,
    EQUALS = auto()      # =
    PLUS_EQUALS = auto() # +=
    BANG = auto()        # !

    # Comparison operators
    EQ = auto()          # ==
    NEQ = auto()         # !=
    LT = auto()          # <
    GT = auto()          # >
    LTE = auto()         # <=
    GTE = auto()         # >=

    # Arithmetic operators
    PLUS = auto()        # +
    MINUS = auto()       # -
    STAR = auto()        # *
    SLASH = auto()       # /

    # Literals
    STRING = auto()
    NUMBER = auto()
    TRUE = auto()
    FALSE = auto()
    IDENTIFIER = auto()

    # Special
    EOF = auto()


@dataclass(frozen=True)
class Token:
    type: TokenType
    value: str
    line: int
    column: int

    def __repr__(self):
        return f"Token({self.type.name}, {self.value!r}, {self.line}:{self.column})"

    def describe(self) -> str:
        """Human readable form used in error messages."""
        if self.type == TokenType.EOF:
            return "end of input"
        if self.type == TokenType.STRING:
            return f'"{self.value}"'
        return repr(self.value)


# Keywords mapping (looked up on the lowercased text)
KEYWORDS = {
    'workflow': TokenType.WORKFLOW,
    'function': TokenType.FUNCTION,
    'method': TokenType.FUNCTION,
    'score': TokenType.SCORE,
    'match': TokenType.MATCH,
    'when': TokenType.WHEN,
    'then': TokenType.THEN,
    'assign': TokenType.ASSIGN,
    'to': TokenType.TO,
    'log': TokenType.LOG,
    'and': TokenType.AND,
    'or': TokenType.OR,
    'in': TokenType.IN,
    'true': TokenType.TRUE,
    'false': TokenType.FALSE,
}

SINGLE_CHAR_TOKENS = {
    '(': TokenType.LPAREN,
    ')': TokenType.RPAREN,
    '[': TokenType.LBRACKET,
    ']': TokenType.RBRACKET,
    '{': TokenType.LBRACE,
    '}': TokenType.RBRACE,
    ',': TokenType.COMMA,
    '=': TokenType.EQUALS,
    '!': TokenType.BANG,
    '<': TokenType.LT,
    '>': TokenType.GT,
    '+': TokenType.PLUS,
    '-': TokenType.MINUS,
    '*': TokenType.STAR,
    '/': TokenType.SLASH,
}

TWO_CHAR_TOKENS = {
    '==': TokenType.EQ,
    '!=': TokenType.NEQ,
    '<=': TokenType.LTE,
    '>=': TokenType.GTE,
    '+=': TokenType.PLUS_EQUALS,
}


DIGITS = string.digits
IDENT_START = string.ascii_letters + '_'
IDENT_CHARS = IDENT_START + string.digits


def is_keyword(text: str) -> bool:
    return text.lower() in KEYWORDS


class LexError(Exception):
    """Raised when lexer encounters invalid input."""
    def __init__(self, message: str, line: int, column: int):
        self.message = message
        self.line = line
        self.column = column
        super().__init__(f"Line {line}, column {column}: {message}")


class Lexer:
    """Tokenizer for the Routix DSL."""

    def __init__(self, source: str):
        self.source = source
        self.pos = 0
        self.line = 1
        self.column = 1
        self.tokens: List[Token] = []

    def tokenize(self) -> List[Token]:
        """Tokenize the entire source and return list of tokens."""
        while not self._at_end():
            self._scan_token()

        self.tokens.append(Token(TokenType.EOF, '', self.line, self.column))
        return self.tokens

    def _at_end(self) -> bool:
        return self.pos >= len(self.source)

    def _peek(self, offset: int = 0) -> str:
        pos = self.pos + offset
        if pos >= len(self.source):
            return '\0'
        return self.source[pos]

    def _advance(self) -> str:
        char = self.source[self.pos]
        self.pos += 1
        if char == '\n':
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        return char

    def _add_token(self, token_type: TokenType, value: str, line: int, column: int):
        self.tokens.append(Token(token_type, value, line, column))

    def _skip_whitespace_and_comments(self):
        while not self._at_end():
            char = self._peek()
            if char in ' \t\r\n':
                self._advance()
            elif char == '#':
                while not self._at_end() and self._peek() != '\n':
                    self._advance()
            else:
                break

    def _scan_token(self):
        self._skip_whitespace_and_comments()

        if self._at_end():
            return

        start_line = self.line
        start_column = self.column
        char = self._advance()

        # Strings
        if char == '"':
            self._scan_string(start_line, start_column)
            return

        # Numbers (a leading '-' is always a separate operator)
        if char in DIGITS:
            self._scan_number(char, start_line, start_column)
            return

        # Identifiers and keywords
        if char in IDENT_START:
            self._scan_identifier(char, start_line, start_column)
            return

        # Two-character tokens
        pair = char + self._peek()
        if pair in TWO_CHAR_TOKENS:
            self._advance()
            self._add_token(TWO_CHAR_TOKENS[pair], pair, start_line, start_column)
            return

        # Single-character tokens
        if char in SINGLE_CHAR_TOKENS:
            self._add_token(SINGLE_CHAR_TOKENS[char], char, start_line, start_column)
            return

        raise LexError(f"Unexpected character: {char!r}", start_line, start_column)

    def _scan_string(self, start_line: int, start_column: int):
        value = ''
        while not self._at_end() and self._peek() != '"':
            if self._peek() == '\n':
                raise LexError("Unterminated string", start_line, start_column)
            value += self._advance()

        if self._at_end():
            raise LexError("Unterminated string", start_line, start_column)

        self._advance()  # Closing "
        self._add_token(TokenType.STRING, value, start_line, start_column)

    def _scan_number(self, first_char: str, start_line: int, start_column: int):
        value = first_char
        while self._peek() in DIGITS:
            value += self._advance()

        # Fractional part needs at least one digit after the dot
        if self._peek() == '.' and self._peek(1) in DIGITS:
            value += self._advance()
            while self._peek() in DIGITS:
                value += self._advance()

        self._add_token(TokenType.NUMBER, value, start_line, start_column)

    def _scan_identifier(self, first_char: str, start_line: int, start_column: int):
        value = first_char
        while True:
            char = self._peek()
            if char in IDENT_CHARS:
                value += self._advance()
            elif char == '.' and self._peek(1) in IDENT_START:
                # Dot-path segment: case.score, agent.skills
                value += self._advance()
            else:
                break

        # Check for keywords
        token_type = KEYWORDS.get(value.lower(), TokenType.IDENTIFIER)

        # Keep original case for identifiers
        self._add_token(token_type, value, start_line, start_column)


def tokenize(source: str) -> List[Token]:
    """Convenience function to tokenize source code."""
    lexer = Lexer(source)
    return lexer.tokenize()
