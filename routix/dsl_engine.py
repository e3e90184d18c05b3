"""
Rule engine for Routix workflows.

Runs a workflow's phases in document order against one case and a list of
candidate agents:

- score phases evaluate every rule; a true condition either adds its delta
  to the running score or appends a log message
- match phases scan rules (outer) against candidates (inner) and stop at the
  first pair whose condition holds

Evaluation errors never abort a run. The failing condition counts as false
(or the failing action is skipped) and a diagnostic line is added to the
result's logs.
"""

import logging
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from .dsl_ast import (
    Program, Workflow, ScorePhase, MatchPhase, ScoreRule, MatchRule,
    ScoreAction, LogAction, FunctionDef,
)
from .dsl_evaluator import (
    Context, EvalError, EvalErrorKind, BUILTIN_FUNCTIONS, EMPTY_MAPPING,
    DEFAULT_MAX_CALL_DEPTH, evaluate, type_name, to_display_string,
)

logger = logging.getLogger(__name__)


class AssignMode(Enum):
    """What a match rule assigns."""
    LITERAL = "literal"      # the target written after 'assign to'
    CANDIDATE = "candidate"  # the 'id' field of the matched candidate


@dataclass
class EngineConfig:
    max_call_depth: int = DEFAULT_MAX_CALL_DEPTH
    assign_mode: AssignMode = AssignMode.LITERAL
    enable_builtins: bool = True

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> 'EngineConfig':
        """Build a config from a plain mapping such as a loaded YAML file."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown engine config key(s): {', '.join(unknown)}")

        config = cls()
        if 'max_call_depth' in data:
            depth = data['max_call_depth']
            if isinstance(depth, bool) or not isinstance(depth, int) or depth < 1:
                raise ValueError(f"max_call_depth must be a positive integer, got {depth!r}")
            config.max_call_depth = depth
        if 'assign_mode' in data:
            config.assign_mode = AssignMode(data['assign_mode'])
        if 'enable_builtins' in data:
            if not isinstance(data['enable_builtins'], bool):
                raise ValueError("enable_builtins must be true or false")
            config.enable_builtins = data['enable_builtins']
        return config


@dataclass
class ExecutionResult:
    final_score: float = 0.0
    logs: List[str] = field(default_factory=list)
    assignment: Optional[str] = None


@dataclass
class RunStats:
    count: int = 0
    total_score: float = 0.0
    average_score: float = 0.0
    max_score: Optional[float] = None
    min_score: Optional[float] = None
    assigned: int = 0


class RuleEngine:
    """Runs workflows against a fixed function table and configuration."""

    def __init__(self, functions: Optional[Mapping[str, FunctionDef]] = None,
                 config: Optional[EngineConfig] = None):
        self.functions = functions if functions is not None else EMPTY_MAPPING
        self.config = config or EngineConfig()

    @classmethod
    def for_program(cls, program: Program, config: Optional[EngineConfig] = None) -> 'RuleEngine':
        return cls(program.function_table(), config)

    def _context(self, case: Mapping[str, Any]) -> Context:
        return Context(
            case=case,
            functions=self.functions,
            builtins=BUILTIN_FUNCTIONS if self.config.enable_builtins else EMPTY_MAPPING,
            max_depth=self.config.max_call_depth,
        )

    def run(self, workflow: Workflow, case: Mapping[str, Any],
            candidate_agents: Sequence[Mapping[str, Any]] = ()) -> ExecutionResult:
        """Run one workflow for one case."""
        logger.debug("Running workflow '%s' with %d candidate(s)",
                     workflow.name, len(candidate_agents))
        result = ExecutionResult()
        result.final_score = self._seed_score(case, result)
        context = self._context(case)

        for index, phase in enumerate(workflow.phases):
            if isinstance(phase, ScorePhase):
                self._run_score_phase(phase, context, result)
            elif isinstance(phase, MatchPhase):
                if result.assignment is not None:
                    logger.debug("Skipping match phase %d: already assigned", index)
                    continue
                self._run_match_phase(phase, context, candidate_agents, result)
            else:
                raise TypeError(f"Unknown phase: {phase!r}")

        logger.debug("Workflow '%s' finished: score=%s assignment=%s",
                     workflow.name, result.final_score, result.assignment)
        return result

    def run_batch(self, workflow: Workflow, cases: Iterable[Mapping[str, Any]],
                  candidate_agents: Sequence[Mapping[str, Any]] = ()) -> List[ExecutionResult]:
        """Run a workflow for each case, returning results in input order."""
        return [self.run(workflow, case, candidate_agents) for case in cases]

    # =========================================================================
    # Phases
    # =========================================================================

    def _seed_score(self, case: Mapping[str, Any], result: ExecutionResult) -> float:
        seed = case.get('score')
        if seed is None:
            return 0.0
        if isinstance(seed, bool) or not isinstance(seed, (int, float)):
            self._diagnose(result, "case.score",
                           EvalError(EvalErrorKind.TYPE_MISMATCH,
                                     f"'case.score' must be a number, got {type(seed).__name__}"))
            return 0.0
        try:
            return float(seed)
        except OverflowError:
            self._diagnose(result, "case.score",
                           EvalError(EvalErrorKind.TYPE_MISMATCH,
                                     "'case.score' is too large for a number"))
            return 0.0

    def _run_score_phase(self, phase: ScorePhase, context: Context, result: ExecutionResult):
        for number, rule in enumerate(phase.rules, 1):
            where = f"score rule {number} (line {rule.line})"
            if not self._holds(rule.condition, context, result, where):
                continue
            try:
                self._apply_action(rule, context, result)
            except EvalError as e:
                self._diagnose(result, f"{where} action", e)

    def _apply_action(self, rule: ScoreRule, context: Context, result: ExecutionResult):
        action = rule.action
        if isinstance(action, ScoreAction):
            delta = evaluate(action.delta, context)
            if type_name(delta) != "number":
                raise EvalError(EvalErrorKind.TYPE_MISMATCH,
                                f"score delta must be a number, got {type_name(delta)}")
            result.final_score += delta
        elif isinstance(action, LogAction):
            result.logs.append(to_display_string(evaluate(action.message, context)))
        else:
            raise TypeError(f"Unknown action: {action!r}")

    def _run_match_phase(self, phase: MatchPhase, context: Context,
                         candidates: Sequence[Mapping[str, Any]], result: ExecutionResult):
        for number, rule in enumerate(phase.rules, 1):
            for agent in candidates:
                where = f"match rule {number} (line {rule.line})"
                if not self._holds(rule.condition, context.with_agent(agent), result, where):
                    continue
                assignment = self._assignment_for(rule, agent, result, where)
                if assignment is None:
                    continue
                result.assignment = assignment
                logger.debug("Assigned to '%s' by %s", assignment, where)
                return

    def _assignment_for(self, rule: MatchRule, agent: Mapping[str, Any],
                        result: ExecutionResult, where: str) -> Optional[str]:
        if self.config.assign_mode == AssignMode.LITERAL:
            return rule.target
        agent_id = agent.get('id')
        if agent_id is None:
            self._diagnose(result, f"{where} assignment",
                           EvalError(EvalErrorKind.MISSING_FIELD, "matched agent has no 'id'"))
            return None
        return str(agent_id)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _holds(self, condition, context: Context, result: ExecutionResult, where: str) -> bool:
        try:
            value = evaluate(condition, context)
        except EvalError as e:
            self._diagnose(result, f"{where} condition", e)
            return False
        if type_name(value) != "bool":
            self._diagnose(result, f"{where} condition",
                           EvalError(EvalErrorKind.TYPE_MISMATCH,
                                     f"condition must be a bool, got {type_name(value)}"))
            return False
        return value

    def _diagnose(self, result: ExecutionResult, where: str, error: EvalError):
        message = f"error in {where}: {error}"
        logger.debug(message)
        result.logs.append(message)


# =============================================================================
# Module-level helpers
# =============================================================================

def run(workflow: Workflow, case: Mapping[str, Any],
        candidate_agents: Sequence[Mapping[str, Any]] = (),
        functions: Optional[Mapping[str, FunctionDef]] = None,
        config: Optional[EngineConfig] = None) -> ExecutionResult:
    """Run a workflow once with a throwaway engine."""
    return RuleEngine(functions, config).run(workflow, case, candidate_agents)


def run_program(program: Program, name: str, case: Mapping[str, Any],
                candidate_agents: Sequence[Mapping[str, Any]] = (),
                config: Optional[EngineConfig] = None) -> ExecutionResult:
    """Run the workflow called name, using the program's functions."""
    try:
        workflow = program.workflow(name)
    except KeyError:
        raise KeyError(f"No workflow named '{name}'") from None
    return RuleEngine.for_program(program, config).run(workflow, case, candidate_agents)


def summarize(results: Iterable[ExecutionResult]) -> RunStats:
    """Aggregate scores and assignments over a batch of runs."""
    scores = []
    assigned = 0
    for result in results:
        scores.append(result.final_score)
        if result.assignment is not None:
            assigned += 1

    if not scores:
        return RunStats()
    total = sum(scores)
    return RunStats(
        count=len(scores),
        total_score=total,
        average_score=total / len(scores),
        max_score=max(scores),
        min_score=min(scores),
        assigned=assigned,
    )
