"""
Tests for the expression evaluator.
"""

import sys

import pytest

from routix.dsl_evaluator import (
    DEFAULT_MAX_CALL_DEPTH, Context, EvalError, EvalErrorKind, evaluate, values_equal, to_value,
    to_display_string, type_name, BUILTIN_FUNCTIONS,
)
from routix.dsl_parser import parse, parse_expression


def run(source, case=None, agent=None, program=None, **kwargs):
    functions = parse(program).function_table() if program else {}
    ctx = Context(case=case or {}, agent=agent, functions=functions, **kwargs)
    return evaluate(parse_expression(source), ctx)


def error_kind(source, **kwargs) -> EvalErrorKind:
    with pytest.raises(EvalError) as exc:
        run(source, **kwargs)
    return exc.value.kind


class TestLiterals:
    """Literals evaluate to immutable values."""

    def test_number(self):
        assert run("42") == 42.0
        assert isinstance(run("42"), float)

    def test_string(self):
        assert run('"hello"') == "hello"

    def test_bool(self):
        assert run("true") is True
        assert run("FALSE") is False

    def test_list(self):
        assert run('[1, "a", [true]]') == (1.0, "a", (True,))


class TestArithmetic:

    def test_precedence(self):
        assert run("1 + 2 * 3") == 7.0

    def test_left_associative(self):
        assert run("10 - 4 - 3") == 3.0
        assert run("12 / 3 / 2") == 2.0

    def test_fractional_division(self):
        assert run("7 / 2") == 3.5

    def test_division_by_zero(self):
        assert error_kind("1 / 0") == EvalErrorKind.DIVISION_BY_ZERO

    def test_division_by_computed_zero(self):
        assert error_kind("1 / (2 - 2)") == EvalErrorKind.DIVISION_BY_ZERO

    def test_string_plus_number(self):
        assert error_kind('"a" + 1') == EvalErrorKind.TYPE_MISMATCH

    def test_bool_is_not_a_number(self):
        assert error_kind("true + 1") == EvalErrorKind.TYPE_MISMATCH


class TestComparison:

    def test_relational(self):
        assert run("2 > 1") is True
        assert run("2 < 1") is False
        assert run("2 >= 2") is True
        assert run("3 <= 2") is False

    def test_relational_needs_numbers(self):
        assert error_kind('"b" > "a"') == EvalErrorKind.TYPE_MISMATCH

    def test_equality_is_typed(self):
        assert run("1 == 1") is True
        assert run('"1" == 1') is False
        assert run("true == 1") is False
        assert run("true != 1") is True

    def test_list_equality(self):
        assert run("[1, [2]] == [1, [2]]") is True
        assert run("[1, 2] == [2, 1]") is False
        assert run("[1] == [1, 1]") is False


class TestBoolean:

    def test_and_or(self):
        assert run("true and false") is False
        assert run("false or true") is True

    def test_not(self):
        assert run("!false") is True
        assert error_kind("!1") == EvalErrorKind.TYPE_MISMATCH

    def test_and_short_circuits(self):
        assert run("false and 1 / 0 > 0") is False

    def test_or_short_circuits(self):
        assert run("true or case.missing") is True

    def test_operands_must_be_bool(self):
        assert error_kind("1 and true") == EvalErrorKind.TYPE_MISMATCH
        assert error_kind("false or 1") == EvalErrorKind.TYPE_MISMATCH


class TestMembership:
    """`in` tests membership, or any overlap when the left side is a list."""

    def test_scalar_in_list(self):
        assert run('"sql" in ["python", "sql"]') is True
        assert run('"go" in ["python", "sql"]') is False

    def test_typed_membership(self):
        assert run('1 in ["1"]') is False

    def test_list_overlap(self):
        agent = {'skills': ["billing", "refunds"]}
        assert run('agent.skills in ["refunds", "legal"]', agent=agent) is True
        assert run('agent.skills in ["legal"]', agent=agent) is False

    def test_empty_list(self):
        assert run("1 in []") is False

    def test_right_side_must_be_list(self):
        assert error_kind('"a" in "abc"') == EvalErrorKind.TYPE_MISMATCH


class TestNames:
    """Identifier resolution against case, agent and call bindings."""

    def test_case_field(self):
        assert run("case.priority", case={'priority': 3}) == 3.0

    def test_nested_field(self):
        case = {'customer': {'tier': "gold"}}
        assert run('case.customer.tier == "gold"', case=case) is True

    def test_agent_field(self):
        assert run("agent.load", agent={'load': 2}) == 2.0

    def test_agent_outside_match(self):
        assert error_kind("agent.load") == EvalErrorKind.UNBOUND_NAME

    def test_unknown_root(self):
        assert error_kind("customer.tier") == EvalErrorKind.UNBOUND_NAME

    def test_missing_field(self):
        with pytest.raises(EvalError) as exc:
            run("case.priority", case={})
        assert exc.value.kind == EvalErrorKind.MISSING_FIELD
        assert str(exc.value) == "MissingField: 'case' has no field 'priority'"

    def test_none_field_is_missing(self):
        assert error_kind("case.owner", case={'owner': None}) == EvalErrorKind.MISSING_FIELD

    def test_field_of_non_record(self):
        assert error_kind("case.priority.level", case={'priority': 3}) == \
            EvalErrorKind.TYPE_MISMATCH

    def test_whole_record_is_not_a_value(self):
        assert error_kind("case", case={'a': 1}) == EvalErrorKind.TYPE_MISMATCH

    def test_host_values_converted(self):
        case = {'count': 3, 'tags': ["a", "b"], 'flag': True}
        assert run("case.count", case=case) == 3.0
        assert run("case.tags", case=case) == ("a", "b")
        assert run("case.flag", case=case) is True

    def test_huge_integer_field(self):
        assert error_kind("case.x > 1", case={'x': 10 ** 400}) == EvalErrorKind.TYPE_MISMATCH
        assert error_kind("case.xs", case={'xs': [1, 10 ** 400]}) == EvalErrorKind.TYPE_MISMATCH


class TestFunctions:
    """User-defined and built-in functions."""

    def test_user_function(self):
        assert run("double(4)", program="function double(x) = x * 2") == 8.0

    def test_nested_calls(self):
        program = """
        function double(x) = x * 2
        function quad(x) = double(double(x))
        """
        assert run("quad(3)", program=program) == 12.0

    def test_function_sees_case(self):
        program = "function urgent() = case.priority > 3"
        assert run("urgent()", case={'priority': 5}, program=program) is True

    def test_parameters_are_not_dynamically_scoped(self):
        program = """
        function inner() = x
        function outer(x) = inner()
        """
        assert error_kind("outer(1)", program=program) == EvalErrorKind.UNBOUND_NAME

    def test_parameter_shadows_case(self):
        program = "function f(case) = case + 1"
        assert run("f(1)", case={'a': 1}, program=program) == 2.0

    def test_unknown_function(self):
        assert error_kind("nope(1)") == EvalErrorKind.UNKNOWN_FUNCTION

    def test_arity_mismatch(self):
        assert error_kind("f(1, 2)", program="function f(x) = x") == EvalErrorKind.ARITY_MISMATCH

    def test_recursion_limit(self):
        program = "function loop(n) = loop(n + 1)"
        assert error_kind("loop(0)", program=program) == EvalErrorKind.RECURSION_LIMIT_EXCEEDED

    def test_custom_depth_limit(self):
        program = """
        function down(n) = n == 0 or down(n - 1)
        """
        assert run("down(5)", program=program, max_depth=10) is True
        assert error_kind("down(20)", program=program, max_depth=10) == \
            EvalErrorKind.RECURSION_LIMIT_EXCEEDED

    def test_recursion_reaches_default_limit(self):
        program = "function down(n) = n == 0 or !(!(down(n - 1) and true))"
        limit = sys.getrecursionlimit()
        assert run(f"down({DEFAULT_MAX_CALL_DEPTH - 1})", program=program) is True
        with pytest.raises(EvalError) as exc:
            run(f"down({DEFAULT_MAX_CALL_DEPTH})", program=program)
        assert exc.value.kind == EvalErrorKind.RECURSION_LIMIT_EXCEEDED
        assert "call depth limit of 256" in exc.value.message
        assert sys.getrecursionlimit() == limit

    def test_larger_depth_limit(self):
        program = "function down(n) = n == 0 or down(n - 1)"
        assert run("down(999)", program=program, max_depth=1000) is True

    def test_mutual_recursion(self):
        program = """
        function even(n) = n == 0 or odd(n - 1)
        function odd(n) = n != 0 and even(n - 1)
        """
        assert run("even(10)", program=program) is True
        assert run("odd(7)", program=program) is True
        assert run("even(7)", program=program) is False
        assert error_kind("even(300)", program=program) == \
            EvalErrorKind.RECURSION_LIMIT_EXCEEDED

    def test_user_function_overrides_builtin(self):
        assert run("len(1)", program="function len(x) = 99") == 99.0


class TestBuiltins:

    def test_len(self):
        assert run("len([1, 2, 3])") == 3.0
        assert run('len("abcd")') == 4.0
        assert error_kind("len(5)") == EvalErrorKind.TYPE_MISMATCH
        assert error_kind("len()") == EvalErrorKind.ARITY_MISMATCH

    def test_max_min(self):
        assert run("max(3, 9, 4)") == 9.0
        assert run("min(3, 9, 4)") == 3.0
        assert error_kind("max()") == EvalErrorKind.ARITY_MISMATCH
        assert error_kind('min(1, "a")') == EvalErrorKind.TYPE_MISMATCH

    def test_contains(self):
        assert run('contains(["a", "b"], "b")') is True
        assert run('contains("billing", "bill")') is True
        assert run('contains([1], "1")') is False
        assert error_kind("contains(1, 1)") == EvalErrorKind.TYPE_MISMATCH

    def test_builtins_can_be_disabled(self):
        assert error_kind("len([])", builtins={}) == EvalErrorKind.UNKNOWN_FUNCTION

    def test_registry(self):
        assert set(BUILTIN_FUNCTIONS) == {"len", "max", "min", "contains"}


class TestValues:
    """Value helpers."""

    def test_type_name(self):
        assert type_name(True) == "bool"
        assert type_name(1.0) == "number"
        assert type_name("s") == "string"
        assert type_name(()) == "list"

    def test_values_equal(self):
        assert values_equal((1.0, "a"), (1.0, "a"))
        assert not values_equal(True, 1.0)
        assert not values_equal(0.0, False)

    def test_to_value_rejects_unsupported(self):
        with pytest.raises(EvalError):
            to_value(object(), "case.thing")

    def test_to_value_huge_integer(self):
        with pytest.raises(EvalError) as exc:
            to_value(10 ** 400, "case.x")
        assert exc.value.kind == EvalErrorKind.TYPE_MISMATCH
        assert "too large" in exc.value.message

    def test_display_string(self):
        assert to_display_string("plain") == "plain"
        assert to_display_string(3.0) == "3"
        assert to_display_string(2.5) == "2.5"
        assert to_display_string(True) == "true"
        assert to_display_string((1.0, "a", False)) == '[1, "a", false]'

    def test_context_is_immutable(self):
        ctx = Context(case={})
        extended = ctx.enter_call({'x': 1.0})
        assert ctx.bindings == {}
        assert extended.depth == 1
        assert ctx.with_agent({'id': "a"}).agent == {'id': "a"}
        assert ctx.agent is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
