"""
Semantic validation for Routix program ASTs.

These checks run after parsing but before a workflow is executed, to catch
mistakes the grammar can't express: calls to functions that don't exist,
wrong argument counts, names that can never resolve, and rules that can
never fire.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from .dsl_ast import (
    Program, Workflow, ScorePhase, MatchPhase, ScoreAction, LogAction, FunctionDef,
    Expr, Identifier, Literal, FunctionCallExpr, iter_subexpressions,
)
from .dsl_evaluator import BUILTIN_FUNCTIONS

# Names every workflow expression can start from
ROOT_NAMES = {"case", "agent"}

# Built-ins with a fixed argument count; max and min take one or more
BUILTIN_ARITY = {"len": 1, "contains": 2}
VARIADIC_BUILTINS = {"max", "min"}


@dataclass
class Fix:
    """A single textual replacement that resolves a finding."""
    old_text: str
    new_text: str
    line: int


@dataclass
class ValidationError:
    """A validation error with location info."""
    message: str
    line: int = 0
    column: int = 0
    severity: str = "error"  # "error" or "warning"
    fix: Optional[Fix] = None

    def __str__(self):
        loc = f"line {self.line}" if self.line else "unknown location"
        return f"[{self.severity}] {loc}: {self.message}"


@dataclass
class ValidationResult:
    """Result of validation."""
    errors: List[ValidationError] = field(default_factory=list)
    warnings: List[ValidationError] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return len(self.errors) > 0

    @property
    def has_warnings(self) -> bool:
        return len(self.warnings) > 0

    @property
    def fixes(self) -> List[Fix]:
        return [e.fix for e in self.errors + self.warnings if e.fix is not None]

    @property
    def fixable_count(self) -> int:
        return len(self.fixes)

    def add_error(self, message: str, line: int = 0, column: int = 0, fix: Optional[Fix] = None):
        self.errors.append(ValidationError(message, line, column, "error", fix))

    def add_warning(self, message: str, line: int = 0, column: int = 0, fix: Optional[Fix] = None):
        self.warnings.append(ValidationError(message, line, column, "warning", fix))

    def merge(self, other: 'ValidationResult'):
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)

    def __str__(self):
        lines = []
        for err in self.errors:
            lines.append(str(err))
        for warn in self.warnings:
            lines.append(str(warn))
        return "\n".join(lines)


# =============================================================================
# Typo detection
# =============================================================================

def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance between two strings (insert, delete, substitute)."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def find_similar(name: str, candidates: Iterable[str], max_distance: int = 2) -> List[str]:
    """Candidates within max_distance edits of name, closest first.

    Comparison ignores case so `Len` still suggests `len`.
    """
    scored = []
    for candidate in candidates:
        distance = levenshtein_distance(name.lower(), candidate.lower())
        if distance <= max_distance:
            scored.append((distance, candidate))
    return [c for _, c in sorted(scored)]


def format_alternatives(name: str, candidates: Set[str], max_listed: int = 5) -> str:
    """Suffix for an 'unknown name' message."""
    if not candidates:
        return "(none defined)"
    similar = find_similar(name, candidates)
    if similar:
        return "Did you mean " + " or ".join(f"'{s}'" for s in similar[:3]) + "?"
    if len(candidates) <= max_listed:
        return "Valid options: " + ", ".join(sorted(candidates))
    return f"({len(candidates)} defined in program)"


def _single_typo_fix(name: str, candidates: Iterable[str], line: int) -> Optional[Fix]:
    """A fix is offered only for a one-character slip with exactly one match."""
    close = [c for c in candidates if levenshtein_distance(name, c) == 1]
    if len(close) == 1 and line > 0:
        return Fix(old_text=name, new_text=close[0], line=line)
    return None


# =============================================================================
# Program context
# =============================================================================

@dataclass
class ProgramContext:
    """Program-level definitions visible to every expression."""
    functions: Dict[str, FunctionDef] = field(default_factory=dict)
    builtins: Set[str] = field(default_factory=lambda: set(BUILTIN_FUNCTIONS))

    @classmethod
    def from_program(cls, program: Program) -> 'ProgramContext':
        ctx = cls()
        for func in program.functions:
            ctx.functions.setdefault(func.name, func)
        return ctx

    @property
    def callable_names(self) -> Set[str]:
        return set(self.functions) | self.builtins


def validate_program(program: Program) -> ValidationResult:
    """Run all validations on a program."""
    result = ValidationResult()
    ctx = ProgramContext.from_program(program)

    for func in program.functions:
        result.merge(validate_function(func, ctx))

    seen: Dict[str, Workflow] = {}
    for wf in program.workflows:
        if wf.name in seen:
            result.add_error(
                f"Workflow '{wf.name}' is already defined at line {seen[wf.name].line}",
                wf.line, wf.column,
            )
        else:
            seen[wf.name] = wf
        result.merge(validate_workflow(wf, ctx))

    return result


def validate_and_report(program: Program, raise_on_error: bool = True) -> ValidationResult:
    """
    Validate a program and optionally raise on errors.

    Args:
        program: The program to validate
        raise_on_error: If True, raise ValueError on validation errors

    Returns:
        ValidationResult with all errors and warnings
    """
    result = validate_program(program)

    if result.has_errors and raise_on_error:
        raise ValueError(f"Program validation failed:\n{result}")

    return result


# =============================================================================
# Declarations
# =============================================================================

def validate_function(func: FunctionDef, ctx: ProgramContext) -> ValidationResult:
    """Validate a function definition."""
    result = ValidationResult()

    for param in func.params:
        if param in ROOT_NAMES:
            result.add_warning(
                f"Parameter '{param}' of function '{func.name}' shadows the '{param}' record",
                func.line, func.column,
            )

    location = f"function '{func.name}'"
    scope = set(func.params) | {"case"}
    result.merge(validate_expression(func.body, location, scope, ctx, agent_bound=False))
    return result


def validate_workflow(wf: Workflow, ctx: ProgramContext) -> ValidationResult:
    """Validate every rule of a workflow."""
    result = ValidationResult()

    for phase in wf.phases:
        if isinstance(phase, ScorePhase):
            location = f"score phase of workflow '{wf.name}'"
            for rule in phase.rules:
                result.merge(validate_expression(rule.condition, location, {"case"}, ctx,
                                                 agent_bound=False))
                if isinstance(rule.action, ScoreAction):
                    action_expr = rule.action.delta
                elif isinstance(rule.action, LogAction):
                    action_expr = rule.action.message
                else:
                    continue
                result.merge(validate_expression(action_expr, location, {"case"}, ctx,
                                                 agent_bound=False))

        elif isinstance(phase, MatchPhase):
            location = f"match phase of workflow '{wf.name}'"
            catch_all = None
            for rule in phase.rules:
                if catch_all is not None:
                    result.add_warning(
                        f"Rule assigning to '{rule.target}' in {location} is unreachable: "
                        f"the rule at line {catch_all.line} always matches",
                        rule.line, rule.column,
                    )
                result.merge(validate_expression(rule.condition, location, ROOT_NAMES, ctx,
                                                 agent_bound=True))
                if catch_all is None and _is_always_true(rule.condition):
                    catch_all = rule

    return result


def _is_always_true(expr: Expr) -> bool:
    return isinstance(expr, Literal) and expr.type == "bool" and expr.value is True


# =============================================================================
# Expressions
# =============================================================================

def validate_expression(
    expr: Expr,
    location: str,
    scope: Set[str],
    ctx: ProgramContext,
    agent_bound: bool = True,
) -> ValidationResult:
    """Validate names and calls in an expression.

    scope holds the root names that resolve here; agent_bound says whether an
    `agent` record exists (only inside match phases).
    """
    result = ValidationResult()

    for node in iter_subexpressions(expr):
        line = node.line

        if isinstance(node, Identifier):
            root = node.path[0]
            if root == "agent" and not agent_bound and "agent" not in scope:
                result.add_warning(
                    f"'{node.name}' in {location}: 'agent' is only bound in match phases",
                    line, node.column,
                )
            elif root not in scope and root != "agent":
                candidates = scope | ({"agent"} if agent_bound else set())
                result.add_warning(
                    f"Unknown name '{root}' in {location}. {format_alternatives(root, candidates)}",
                    line, node.column,
                    fix=_single_typo_fix(root, candidates, line),
                )

        elif isinstance(node, FunctionCallExpr):
            result.merge(_validate_call(node, location, ctx))

    return result


def _validate_call(call: FunctionCallExpr, location: str, ctx: ProgramContext) -> ValidationResult:
    result = ValidationResult()
    line = call.line
    argc = len(call.args)

    func = ctx.functions.get(call.name)
    if func is not None:
        if argc != len(func.params):
            result.add_error(
                f"Function '{call.name}' takes {len(func.params)} argument(s) "
                f"but is called with {argc} in {location}",
                line, call.column,
            )
        return result

    if call.name in ctx.builtins:
        expected = BUILTIN_ARITY.get(call.name)
        if expected is not None and argc != expected:
            result.add_error(
                f"Built-in '{call.name}' takes {expected} argument(s) "
                f"but is called with {argc} in {location}",
                line, call.column,
            )
        elif call.name in VARIADIC_BUILTINS and argc == 0:
            result.add_error(
                f"Built-in '{call.name}' needs at least one argument in {location}",
                line, call.column,
            )
        return result

    candidates = ctx.callable_names
    result.add_error(
        f"Call to undefined function '{call.name}' in {location}. "
        f"{format_alternatives(call.name, candidates)}",
        line, call.column,
        fix=_single_typo_fix(call.name, candidates, line),
    )
    return result
