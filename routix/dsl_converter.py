"""
DSL converter utilities.

Provides:
- to_model(): Convert a Program AST to the structured model used by the editor
- from_model(): Build a Program AST from a structured model, validating it
- load_model() / dump_model(): Read and write model documents (YAML or JSON)
- load_program(): Load a .rtx source file or a model document as a Program
"""

import json
import math
from pathlib import Path
from typing import Any, Dict, List

import yaml

from .dsl_ast import (
    Program, Workflow, ScorePhase, MatchPhase, ScoreRule, MatchRule,
    ScoreAction, LogAction, FunctionDef,
    Expr, Identifier, Literal, BinaryExpr, UnaryExpr, FunctionCallExpr,
    BinaryOperator, UnaryOperator,
)
from .dsl_parser import parse
from .dsl_serializer import is_identifier_text

MODEL_SUFFIXES = {'.yaml', '.yml', '.json'}


class ModelError(Exception):
    """Raised when a structured model does not describe a valid program."""
    def __init__(self, path: str, message: str):
        self.path = path
        self.message = message
        super().__init__(f"{path}: {message}")


# =============================================================================
# AST -> model
# =============================================================================

def expr_to_model(expr: Expr) -> Dict[str, Any]:
    """Convert an Expr AST node to a tagged model node."""
    if isinstance(expr, Literal):
        if expr.type == "list":
            value = [expr_to_model(e) for e in expr.value]
        else:
            value = expr.value
        return {'kind': 'literal', 'type': expr.type, 'value': value}
    elif isinstance(expr, Identifier):
        return {'kind': 'identifier', 'path': list(expr.path)}
    elif isinstance(expr, UnaryExpr):
        return {'kind': 'unary', 'op': expr.op.value, 'operand': expr_to_model(expr.operand)}
    elif isinstance(expr, BinaryExpr):
        return {
            'kind': 'binary',
            'op': expr.op.value,
            'left': expr_to_model(expr.left),
            'right': expr_to_model(expr.right),
        }
    elif isinstance(expr, FunctionCallExpr):
        return {'kind': 'call', 'name': expr.name, 'args': [expr_to_model(a) for a in expr.args]}
    raise TypeError(f"Not an expression node: {expr!r}")


def _rule_to_model(rule) -> Dict[str, Any]:
    if isinstance(rule, MatchRule):
        return {'condition': expr_to_model(rule.condition), 'assignTo': rule.target}
    if isinstance(rule.action, ScoreAction):
        action = {'kind': 'score', 'delta': expr_to_model(rule.action.delta)}
    else:
        action = {'kind': 'log', 'message': expr_to_model(rule.action.message)}
    return {'condition': expr_to_model(rule.condition), 'action': action}


def to_model(program: Program) -> Dict[str, Any]:
    """Convert a Program AST to the structured model."""
    functions = [
        {'name': f.name, 'params': list(f.params), 'body': expr_to_model(f.body)}
        for f in program.functions
    ]

    workflows = []
    for wf in program.workflows:
        phases = []
        for phase in wf.phases:
            phase_type = 'score' if isinstance(phase, ScorePhase) else 'match'
            phases.append({'type': phase_type, 'rules': [_rule_to_model(r) for r in phase.rules]})
        workflows.append({'name': wf.name, 'phases': phases})

    return {'functions': functions, 'workflows': workflows}


# =============================================================================
# model -> AST
# =============================================================================

_BINARY_OPS = {op.value: op for op in BinaryOperator}
_UNARY_OPS = {op.value: op for op in UnaryOperator}


def _require(node: Any, key: str, path: str) -> Any:
    if not isinstance(node, dict):
        raise ModelError(path, f"expected an object, got {type(node).__name__}")
    if key not in node:
        raise ModelError(path, f"missing required field '{key}'")
    return node[key]


def _require_list(node: Any, key: str, path: str) -> List[Any]:
    value = _require(node, key, path)
    if not isinstance(value, list):
        raise ModelError(f"{path}.{key}", f"expected a list, got {type(value).__name__}")
    return value


def _require_str(node: Any, key: str, path: str) -> str:
    value = _require(node, key, path)
    if not isinstance(value, str):
        raise ModelError(f"{path}.{key}", f"expected a string, got {type(value).__name__}")
    return value


def _check_text(value: str, path: str):
    """Strings must survive a trip through DSL text."""
    if '"' in value or '\n' in value or '\r' in value:
        raise ModelError(path, "string cannot contain a double quote or a line break")


def _check_name(value: str, path: str, dotted: bool = False):
    if not is_identifier_text(value) or (not dotted and '.' in value):
        raise ModelError(path, f"invalid name {value!r}")


def model_to_expr(node: Any, path: str = "expr") -> Expr:
    """Build an Expr AST node from a tagged model node."""
    kind = _require(node, 'kind', path)

    if kind == 'literal':
        lit_type = _require(node, 'type', path)
        value = _require(node, 'value', path)
        if lit_type == 'number':
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ModelError(f"{path}.value", "number literal needs a numeric value")
            try:
                value = float(value)
            except OverflowError:
                raise ModelError(f"{path}.value", "number literal out of range") from None
            if not math.isfinite(value):
                raise ModelError(f"{path}.value", "number literal must be finite")
            return Literal(value, 'number')
        elif lit_type == 'string':
            if not isinstance(value, str):
                raise ModelError(f"{path}.value", "string literal needs a string value")
            _check_text(value, f"{path}.value")
            return Literal(value, 'string')
        elif lit_type == 'bool':
            if not isinstance(value, bool):
                raise ModelError(f"{path}.value", "bool literal needs true or false")
            return Literal(value, 'bool')
        elif lit_type == 'list':
            if not isinstance(value, list):
                raise ModelError(f"{path}.value", "list literal needs a list of expressions")
            elements = tuple(model_to_expr(e, f"{path}.value[{i}]") for i, e in enumerate(value))
            return Literal(elements, 'list')
        raise ModelError(f"{path}.type", f"unknown literal type {lit_type!r}")

    elif kind == 'identifier':
        segments = _require_list(node, 'path', path)
        if not segments or not all(isinstance(s, str) and '.' not in s for s in segments):
            raise ModelError(f"{path}.path", "identifier path must be a non-empty list of names")
        _check_name('.'.join(segments), f"{path}.path", dotted=True)
        return Identifier(tuple(segments))

    elif kind == 'unary':
        op = _require(node, 'op', path)
        if op not in _UNARY_OPS:
            raise ModelError(f"{path}.op", f"unknown unary operator {op!r}")
        operand = model_to_expr(_require(node, 'operand', path), f"{path}.operand")
        return UnaryExpr(_UNARY_OPS[op], operand)

    elif kind == 'binary':
        op = _require(node, 'op', path)
        if op not in _BINARY_OPS:
            raise ModelError(f"{path}.op", f"unknown binary operator {op!r}")
        left = model_to_expr(_require(node, 'left', path), f"{path}.left")
        right = model_to_expr(_require(node, 'right', path), f"{path}.right")
        return BinaryExpr(left, _BINARY_OPS[op], right)

    elif kind == 'call':
        name = _require_str(node, 'name', path)
        _check_name(name, f"{path}.name", dotted=True)
        args = _require_list(node, 'args', path)
        return FunctionCallExpr(name, tuple(model_to_expr(a, f"{path}.args[{i}]")
                                            for i, a in enumerate(args)))

    raise ModelError(f"{path}.kind", f"unknown expression kind {kind!r}")


def _model_to_function(node: Any, path: str) -> FunctionDef:
    name = _require_str(node, 'name', path)
    _check_name(name, f"{path}.name")
    params = _require_list(node, 'params', path)
    for i, param in enumerate(params):
        if not isinstance(param, str):
            raise ModelError(f"{path}.params[{i}]", "parameter names must be strings")
        _check_name(param, f"{path}.params[{i}]")
    if len(set(params)) != len(params):
        raise ModelError(f"{path}.params", "duplicate parameter name")
    body = model_to_expr(_require(node, 'body', path), f"{path}.body")
    return FunctionDef(name, tuple(params), body)


def _model_to_score_rule(node: Any, path: str) -> ScoreRule:
    condition = model_to_expr(_require(node, 'condition', path), f"{path}.condition")
    action = _require(node, 'action', path)
    action_path = f"{path}.action"
    kind = _require(action, 'kind', action_path)
    if kind == 'score':
        delta = model_to_expr(_require(action, 'delta', action_path), f"{action_path}.delta")
        return ScoreRule(condition, ScoreAction(delta))
    elif kind == 'log':
        message = model_to_expr(_require(action, 'message', action_path), f"{action_path}.message")
        return ScoreRule(condition, LogAction(message))
    raise ModelError(f"{action_path}.kind", f"unknown action kind {kind!r}")


def _model_to_match_rule(node: Any, path: str) -> MatchRule:
    condition = model_to_expr(_require(node, 'condition', path), f"{path}.condition")
    target = _require_str(node, 'assignTo', path)
    _check_text(target, f"{path}.assignTo")
    if not target:
        raise ModelError(f"{path}.assignTo", "agent id cannot be empty")
    return MatchRule(condition, target)


def _model_to_workflow(node: Any, path: str) -> Workflow:
    name = _require_str(node, 'name', path)
    _check_name(name, f"{path}.name")
    phases = []
    for i, phase in enumerate(_require_list(node, 'phases', path)):
        phase_path = f"{path}.phases[{i}]"
        phase_type = _require(phase, 'type', phase_path)
        rules = _require_list(phase, 'rules', phase_path)
        if phase_type == 'score':
            phases.append(ScorePhase(tuple(
                _model_to_score_rule(r, f"{phase_path}.rules[{j}]") for j, r in enumerate(rules))))
        elif phase_type == 'match':
            phases.append(MatchPhase(tuple(
                _model_to_match_rule(r, f"{phase_path}.rules[{j}]") for j, r in enumerate(rules))))
        else:
            raise ModelError(f"{phase_path}.type", f"unknown phase type {phase_type!r}")
    return Workflow(name, tuple(phases))


def from_model(model: Any) -> Program:
    """Build a Program AST from the structured model.

    Raises ModelError naming the offending path; nothing is returned for a
    partially valid model.
    """
    functions = []
    seen = set()
    for i, node in enumerate(_require_list(model, 'functions', 'program')):
        func = _model_to_function(node, f"functions[{i}]")
        if func.name in seen:
            raise ModelError(f"functions[{i}].name", f"function '{func.name}' is defined twice")
        seen.add(func.name)
        functions.append(func)

    workflows = [
        _model_to_workflow(node, f"workflows[{i}]")
        for i, node in enumerate(_require_list(model, 'workflows', 'program'))
    ]
    return Program(tuple(functions) + tuple(workflows))


# =============================================================================
# Document loading
# =============================================================================

def load_model(path) -> Dict[str, Any]:
    """Read a model document. YAML is a superset of JSON, so both load here."""
    with open(path) as f:
        model = yaml.safe_load(f)
    if model is None:
        return {'functions': [], 'workflows': []}
    return model


def dump_model(model: Dict[str, Any], fmt: str = 'yaml') -> str:
    """Render a model document as YAML or JSON text."""
    if fmt == 'json':
        return json.dumps(model, indent=2) + '\n'
    if fmt == 'yaml':
        return yaml.safe_dump(model, sort_keys=False, default_flow_style=False)
    raise ValueError(f"Unknown model format: {fmt}")


def load_program(path) -> Program:
    """Load a Program from DSL source or from a model document."""
    path = Path(path)
    if path.suffix.lower() in MODEL_SUFFIXES:
        return from_model(load_model(path))
    return parse(path.read_text())
