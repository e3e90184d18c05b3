"""Tests for DSL semantic validation."""

import pytest

from routix.dsl_ast import FunctionDef, FunctionCallExpr, Identifier, number
from routix.dsl_parser import parse
from routix.dsl_validate import (
    validate_program, validate_and_report, validate_function, validate_workflow,
    ProgramContext, ValidationResult, ValidationError, Fix,
    levenshtein_distance, find_similar, format_alternatives,
)


def validate(source: str) -> ValidationResult:
    return validate_program(parse(source))


class TestValidationResult:
    """Test ValidationResult class."""

    def test_empty_result(self):
        result = ValidationResult()
        assert not result.has_errors
        assert not result.has_warnings
        assert result.fixable_count == 0

    def test_add_error(self):
        result = ValidationResult()
        result.add_error("test error", line=10)
        assert result.has_errors
        assert len(result.errors) == 1
        assert result.errors[0].message == "test error"
        assert result.errors[0].line == 10

    def test_add_warning(self):
        result = ValidationResult()
        result.add_warning("test warning", line=5)
        assert result.has_warnings
        assert len(result.warnings) == 1

    def test_merge(self):
        r1 = ValidationResult()
        r1.add_error("error1")
        r1.add_warning("warning1")

        r2 = ValidationResult()
        r2.add_error("error2", fix=Fix(old_text="a", new_text="b", line=1))

        r1.merge(r2)
        assert len(r1.errors) == 2
        assert len(r1.warnings) == 1
        assert r1.fixable_count == 1

    def test_error_str(self):
        assert str(ValidationError("bad", line=3)) == "[error] line 3: bad"
        assert str(ValidationError("odd", severity="warning")) == \
            "[warning] unknown location: odd"


class TestNameValidation:
    """Identifier roots are checked against what each phase binds."""

    def test_valid_program(self):
        result = validate("""
        function urgent(p) = p > 3 and case.open
        workflow triage {
            score { when urgent(case.priority) then score += 1 }
            match { when "sql" in agent.skills then assign to dba }
        }
        """)
        assert not result.has_errors
        assert not result.has_warnings

    def test_unknown_root_in_score_phase(self):
        result = validate("""
        workflow w {
            score { when cas.priority > 3 then score += 1 }
        }
        """)
        assert len(result.warnings) == 1
        warning = result.warnings[0]
        assert "Unknown name 'cas'" in warning.message
        assert "Did you mean 'case'?" in warning.message
        assert warning.line == 3
        assert warning.fix == Fix(old_text="cas", new_text="case", line=3)

    def test_agent_in_score_phase(self):
        result = validate("workflow w { score { when agent.load > 1 then score += 1 } }")
        assert len(result.warnings) == 1
        assert "only bound in match phases" in result.warnings[0].message

    def test_agent_in_match_phase(self):
        result = validate("workflow w { match { when agent.load > 1 then assign to a } }")
        assert not result.has_warnings

    def test_typo_of_agent_in_match_phase(self):
        result = validate("workflow w { match { when agnt.load > 1 then assign to a } }")
        assert "Did you mean 'agent'?" in result.warnings[0].message

    def test_unknown_name_in_action(self):
        result = validate("workflow w { score { when true then log customer.name } }")
        assert "Unknown name 'customer'" in result.warnings[0].message

    def test_names_inside_lists_and_calls(self):
        result = validate("workflow w { score { when contains([foo], bar) then score += 1 } }")
        names = sorted(w.message.split("'")[1] for w in result.warnings)
        assert names == ["bar", "foo"]


class TestFunctionValidation:
    """Function definitions and calls."""

    def test_parameters_in_scope(self):
        func = FunctionDef("f", ("x",), Identifier(("x",)))
        result = validate_function(func, ProgramContext())
        assert not result.has_warnings

    def test_unknown_name_in_body(self):
        result = validate("function f(x) = y + 1")
        assert "Unknown name 'y' in function 'f'" in result.warnings[0].message

    def test_parameter_shadows_record(self):
        result = validate("function f(case) = case")
        assert any("shadows the 'case' record" in w.message for w in result.warnings)

    def test_undefined_function(self):
        result = validate("workflow w { score { when lenn([1]) > 0 then score += 1 } }")
        assert len(result.errors) == 1
        error = result.errors[0]
        assert "Call to undefined function 'lenn'" in error.message
        assert "Did you mean 'len'?" in error.message
        assert error.fix == Fix(old_text="lenn", new_text="len", line=1)

    def test_ambiguous_typo_has_no_fix(self):
        result = validate("workflow w { score { when mx(1) > 0 then score += 1 } }")
        error = result.errors[0]
        assert "Did you mean 'max' or 'min'?" in error.message
        assert error.fix is None

    def test_user_function_suggested(self):
        result = validate("""
        function priority_bonus(x) = x
        workflow w { score { when true then score += priority_bonuss(1) } }
        """)
        assert "Did you mean 'priority_bonus'?" in result.errors[0].message

    def test_user_function_arity(self):
        result = validate("""
        function f(a, b) = a + b
        workflow w { score { when true then score += f(1) } }
        """)
        assert result.errors[0].message.startswith(
            "Function 'f' takes 2 argument(s) but is called with 1")

    def test_builtin_arity(self):
        result = validate("workflow w { score { when len([1], [2]) > 0 then score += 1 } }")
        assert "Built-in 'len' takes 1 argument(s)" in result.errors[0].message

    def test_variadic_builtin_needs_argument(self):
        result = validate("workflow w { score { when true then score += max() } }")
        assert "needs at least one argument" in result.errors[0].message

    def test_user_function_shadows_builtin(self):
        result = validate("""
        function len(a, b) = a
        workflow w { score { when len(1, 2) > 0 then score += 1 } }
        """)
        assert not result.has_errors

    def test_call_inside_function_body(self):
        result = validate("function f(x) = g(x)")
        assert "Call to undefined function 'g' in function 'f'" in result.errors[0].message

    def test_validate_function_directly(self):
        ctx = ProgramContext(builtins=set())
        func = FunctionDef("f", (), FunctionCallExpr("len", (number(1),)))
        result = validate_function(func, ctx)
        assert "(none defined)" in result.errors[0].message


class TestWorkflowValidation:
    """Workflow-level checks."""

    def test_duplicate_workflow(self):
        result = validate("workflow w {}\nworkflow w {}")
        assert len(result.errors) == 1
        assert "Workflow 'w' is already defined at line 1" in result.errors[0].message
        assert result.errors[0].line == 2

    def test_unreachable_match_rule(self):
        result = validate("""
        workflow w { match {
            when true then assign to everyone
            when agent.load < 2 then assign to light
        } }
        """)
        assert len(result.warnings) == 1
        assert "unreachable" in result.warnings[0].message
        assert result.warnings[0].line == 4

    def test_catch_all_last_is_fine(self):
        result = validate("""
        workflow w { match {
            when agent.load < 2 then assign to light
            when true then assign to everyone
        } }
        """)
        assert not result.has_warnings

    def test_validate_workflow_directly(self):
        wf = parse("workflow w { score { when nope then score += 1 } }").workflows[0]
        result = validate_workflow(wf, ProgramContext())
        assert result.has_warnings


class TestValidateAndReport:

    def test_raises_on_error(self):
        with pytest.raises(ValueError, match="Program validation failed"):
            validate_and_report(parse("function f() = g()"))

    def test_returns_result_when_not_raising(self):
        result = validate_and_report(parse("function f() = g()"), raise_on_error=False)
        assert result.has_errors

    def test_warnings_do_not_raise(self):
        result = validate_and_report(parse("function f() = y"))
        assert result.has_warnings


class TestTypoDetection:
    """Test typo detection and suggestions."""

    def test_levenshtein_distance_identical(self):
        assert levenshtein_distance("case", "case") == 0

    def test_levenshtein_distance_single_char(self):
        assert levenshtein_distance("case", "cas") == 1
        assert levenshtein_distance("case", "cose") == 1
        assert levenshtein_distance("case", "cases") == 1

    def test_levenshtein_distance_two_chars(self):
        assert levenshtein_distance("agent", "agnet") == 2

    def test_levenshtein_distance_empty(self):
        assert levenshtein_distance("", "abc") == 3

    def test_find_similar_basic(self):
        assert find_similar("lenn", ["len", "max", "contains"]) == ["len"]

    def test_find_similar_case_insensitive(self):
        assert find_similar("LEN", ["len", "max"]) == ["len"]

    def test_find_similar_sorted_by_distance(self):
        assert find_similar("maxx", ["mix", "max"]) == ["max", "mix"]

    def test_find_similar_no_match(self):
        assert find_similar("completely_different", ["len", "max"]) == []

    def test_format_alternatives_lists_few_options(self):
        assert format_alternatives("xyz", {"case", "agent"}) == "Valid options: agent, case"

    def test_format_alternatives_counts_many_options(self):
        candidates = {f"function_{i}" for i in range(10)}
        assert format_alternatives("zzz", candidates) == "(10 defined in program)"

    def test_format_alternatives_prefers_typo_suggestion(self):
        assert format_alternatives("cas", {"case", "agent"}) == "Did you mean 'case'?"

    def test_format_alternatives_empty_candidates(self):
        assert format_alternatives("x", set()) == "(none defined)"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
