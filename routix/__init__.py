"""Routix: a DSL for scoring cases and routing them to agents."""

from .dsl_ast import Program
from .dsl_converter import ModelError, from_model, to_model
from .dsl_engine import AssignMode, EngineConfig, ExecutionResult, RuleEngine, run, run_program
from .dsl_evaluator import Context, EvalError, EvalErrorKind, evaluate
from .dsl_lexer import LexError, tokenize
from .dsl_parser import ParseError, parse, parse_expression
from .dsl_serializer import serialize

__version__ = "0.1.0"
