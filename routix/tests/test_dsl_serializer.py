"""
Tests for the canonical text serializer.
"""

import pytest

from routix.dsl_serializer import (
    serialize, serialize_expr, serialize_model, format_number, is_identifier_text,
)
from routix.dsl_converter import to_model
from routix.dsl_parser import parse, parse_expression
from routix.dsl_ast import (
    Program, Workflow, MatchPhase, MatchRule, BinaryExpr, BinaryOperator,
    number, boolean, list_of,
)


class TestCanonicalForm:
    """Layout of serialized programs."""

    def test_empty_program(self):
        assert serialize(Program(())) == ""

    def test_empty_workflow(self):
        assert serialize(parse("workflow   w{ }")) == "workflow w {}\n"

    def test_empty_phase(self):
        assert serialize(parse("workflow w { score {} }")) == (
            "workflow w {\n"
            "    score {}\n"
            "}\n"
        )

    def test_normalizes_keywords_and_spacing(self):
        source = "WORKFLOW w{SCORE{WHEN TRUE THEN SCORE+=1}}"
        assert serialize(parse(source)) == (
            "workflow w {\n"
            "    score {\n"
            "        when true then score += 1\n"
            "    }\n"
            "}\n"
        )

    def test_function_line(self):
        assert serialize(parse("method f( a,b )=a+b")) == "function f(a, b) = a + b\n"

    def test_declarations_separated_by_blank_line(self):
        text = serialize(parse("function f() = 1 workflow w {}"))
        assert text == "function f() = 1\n\nworkflow w {}\n"

    def test_comments_dropped(self):
        assert serialize(parse("# note\nworkflow w {} # trailing")) == "workflow w {}\n"

    def test_match_rules(self):
        text = serialize(parse("""
        workflow w { match {
            when agent.load<3 then assign to fast_lane
            when true then assign to "Queue A"
        } }
        """))
        assert text == (
            "workflow w {\n"
            "    match {\n"
            "        when agent.load < 3 then assign to fast_lane\n"
            '        when true then assign to "Queue A"\n'
            "    }\n"
            "}\n"
        )

    def test_keyword_target_is_quoted(self):
        program = Program((Workflow("w", (MatchPhase((MatchRule(boolean(True), "match"),)),)),))
        assert 'assign to "match"' in serialize(program)
        assert parse(serialize(program)) == program

    def test_log_action(self):
        text = serialize(parse('workflow w { score { when case.vip then log "vip" } }'))
        assert 'when case.vip then log "vip"' in text


class TestExpressions:
    """Operators get only the parentheses precedence requires."""

    @pytest.mark.parametrize("source,expected", [
        ("(1 + 2) * 3", "(1 + 2) * 3"),
        ("1 + (2 * 3)", "1 + 2 * 3"),
        ("(a - b) - c", "a - b - c"),
        ("a - (b - c)", "a - (b - c)"),
        ("a or (b and c)", "a or b and c"),
        ("(a or b) and c", "(a or b) and c"),
        ("!(a and b)", "!(a and b)"),
        ("! a", "!a"),
        ("!(!a)", "!!a"),
        ("(x)", "x"),
        ("max( 1 ,2 )", "max(1, 2)"),
        ("[ 1,[ ],\"s\" ]", '[1, [], "s"]'),
        ("x in [1]", "x in [1]"),
        ("(1 < 2) == true", "1 < 2 == true"),
    ])
    def test_parentheses(self, source, expected):
        assert serialize_expr(parse_expression(source)) == expected

    def test_negative_number(self):
        expr = BinaryExpr(number(-3), BinaryOperator.MUL, number(2))
        text = serialize_expr(expr)
        assert text == "(0 - 3) * 2"
        assert parse_expression(text) == BinaryExpr(
            BinaryExpr(number(0), BinaryOperator.SUB, number(3)),
            BinaryOperator.MUL, number(2),
        )

    def test_not_an_expression(self):
        with pytest.raises(TypeError):
            serialize_expr("x")

    def test_list_helper(self):
        assert serialize_expr(list_of([])) == "[]"


class TestFormatNumber:
    """Numbers render in a form the lexer reads back."""

    @pytest.mark.parametrize("value,expected", [
        (0.0, "0"),
        (7.0, "7"),
        (2.5, "2.5"),
        (0.1, "0.1"),
        (1e-07, "0.0000001"),
        (1e20, "100000000000000000000"),
    ])
    def test_format(self, value, expected):
        assert format_number(value) == expected

    def test_formatted_numbers_reparse(self):
        for value in (0.1, 1e-07, 123.456, 1e20):
            assert parse_expression(format_number(value)) == number(value)


class TestIdentifierText:

    def test_identifier_text(self):
        assert is_identifier_text("billing")
        assert is_identifier_text("team.billing")
        assert not is_identifier_text("Queue A")
        assert not is_identifier_text("match")
        assert not is_identifier_text("TRUE")
        assert not is_identifier_text("1st")
        assert not is_identifier_text("")


class TestRoundTrip:
    """Serialized text parses back to an equal AST."""

    SOURCE = """
    function clamp(x, lo, hi) = max(lo, min(hi, x))
    workflow triage {
        score {
            when case.priority >= 3 and !case.spam then score += clamp(case.priority * 2, 0, 10)
            when "vip" in case.tags or case.tier == "gold" then log "priority customer"
        }
        match {
            when contains(agent.skills, case.topic) and agent.load < 5 then assign to specialist
            when true then assign to "General Queue"
        }
        score { when case.score > 100 then score += (0 - 50) }
    }
    """

    def test_round_trip(self):
        program = parse(self.SOURCE)
        assert parse(serialize(program)) == program

    def test_idempotent(self):
        text = serialize(parse(self.SOURCE))
        assert serialize(parse(text)) == text

    def test_serialize_model(self):
        program = parse(self.SOURCE)
        assert serialize_model(to_model(program)) == serialize(program)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
