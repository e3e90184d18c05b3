"""Tests for the linter and its auto-fix support."""

import tempfile
from pathlib import Path

import pytest

from routix.dsl_converter import dump_model, to_model
from routix.dsl_lint import apply_fixes, save_backup, get_backup_path, lint_file, lint_source
from routix.dsl_parser import parse, ParseError
from routix.dsl_validate import Fix


TYPO_SOURCE = """workflow triage {
    score {
        when cas.priority > 3 then score += 1
    }
}
"""


class TestApplyFixes:
    """Test fix application logic."""

    def test_apply_single_fix(self):
        source = "when cas.priority > 3 then score += 1"
        fixes = [Fix(old_text="cas", new_text="case", line=1)]
        assert apply_fixes(source, fixes) == "when case.priority > 3 then score += 1"

    def test_apply_multiple_fixes_same_line(self):
        source = "when lenn(cas.tags) > 0 then score += 1"
        fixes = [
            Fix(old_text="lenn", new_text="len", line=1),
            Fix(old_text="cas", new_text="case", line=1),
        ]
        assert apply_fixes(source, fixes) == "when len(case.tags) > 0 then score += 1"

    def test_apply_fixes_different_lines(self):
        source = "when cas.vip then log 1\nwhen agnt.load < 2 then assign to a"
        fixes = [
            Fix(old_text="cas", new_text="case", line=1),
            Fix(old_text="agnt", new_text="agent", line=2),
        ]
        assert apply_fixes(source, fixes) == \
            "when case.vip then log 1\nwhen agent.load < 2 then assign to a"

    def test_fix_with_word_boundary(self):
        """Fixes should use word boundaries to avoid partial replacements."""
        source = "when cascade == cas.x then log 1"
        fixes = [Fix(old_text="cas", new_text="case", line=1)]
        assert apply_fixes(source, fixes) == "when cascade == case.x then log 1"

    def test_fix_skips_invalid_line(self):
        """Fixes with invalid line numbers should be skipped."""
        source = "when cas.x then log 1"
        fixes = [
            Fix(old_text="cas", new_text="case", line=0),
            Fix(old_text="cas", new_text="case", line=9),
        ]
        assert apply_fixes(source, fixes) == source

    def test_fix_preserves_other_lines(self):
        source = "line1\nwhen cas.x then log 1\nline3"
        fixes = [Fix(old_text="cas", new_text="case", line=2)]
        assert apply_fixes(source, fixes) == "line1\nwhen case.x then log 1\nline3"

    def test_replacement_is_literal(self):
        source = "when x then log 1"
        fixes = [Fix(old_text="x", new_text=r"a\1", line=1)]
        assert apply_fixes(source, fixes) == r"when a\1 then log 1"


class TestBackupFunctionality:
    """Test backup file handling."""

    def test_get_backup_path(self):
        path = Path("/tmp/flows/triage.rtx")
        assert get_backup_path(path) == Path("/tmp/flows/.triage.rtx.bak")

    def test_save_backup_overwrites(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = Path(tmpdir) / "triage.rtx"
            save_backup(path, "first")
            backup = save_backup(path, "second")
            assert backup == get_backup_path(path)
            assert backup.read_text() == "second"


class TestLintSource:

    def test_clean_source(self):
        program, result = lint_source("workflow w { score { when case.vip then score += 1 } }")
        assert program.workflows[0].name == "w"
        assert not result.has_errors
        assert not result.has_warnings

    def test_findings(self):
        _, result = lint_source(TYPO_SOURCE)
        assert result.fixable_count == 1

    def test_syntax_error_raises(self):
        with pytest.raises(ParseError):
            lint_source("workflow {")


class TestLintFile:
    """End-to-end linting of files on disk."""

    def test_clean_file(self, tmp_path, capsys):
        path = tmp_path / "ok.rtx"
        path.write_text("workflow w { score { when case.vip then score += 1 } }\n")
        assert lint_file(path) == (0, 0, 0)
        assert capsys.readouterr().out == ""

    def test_reports_warning(self, tmp_path, capsys):
        path = tmp_path / "triage.rtx"
        path.write_text(TYPO_SOURCE)
        assert lint_file(path) == (0, 1, 1)
        out = capsys.readouterr().out
        assert f"{path}:3: warning: Unknown name 'cas'" in out
        assert "[fixable]" in out

    def test_reports_error(self, tmp_path, capsys):
        path = tmp_path / "bad.rtx"
        path.write_text("workflow w { score { when nope(1) then score += 1 } }\n")
        errors, warnings, fixable = lint_file(path)
        assert errors == 1
        assert f"{path}:1: error: Call to undefined function 'nope'" in capsys.readouterr().out

    def test_syntax_error(self, tmp_path, capsys):
        path = tmp_path / "broken.rtx"
        path.write_text("workflow w {\n  score { when }\n}\n")
        assert lint_file(path) == (1, 0, 0)
        assert f"{path}:2: error:" in capsys.readouterr().out

    def test_lex_error(self, tmp_path, capsys):
        path = tmp_path / "broken.rtx"
        path.write_text('workflow w { score { when "open then log 1 } }')
        assert lint_file(path) == (1, 0, 0)
        assert "Unterminated string" in capsys.readouterr().out

    def test_missing_file(self, tmp_path, capsys):
        path = tmp_path / "nope.rtx"
        assert lint_file(path) == (1, 0, 0)
        assert "file not found" in capsys.readouterr().out

    def test_apply_fix(self, tmp_path, capsys):
        path = tmp_path / "triage.rtx"
        path.write_text(TYPO_SOURCE)
        assert lint_file(path, apply_fix=True) == (0, 0, 0)

        assert "when case.priority > 3" in path.read_text()
        assert get_backup_path(path).read_text() == TYPO_SOURCE
        assert "applied 1 fix(es)" in capsys.readouterr().out

    def test_fix_leaves_ambiguous_typos(self, tmp_path):
        path = tmp_path / "flow.rtx"
        source = "workflow w { score { when mx(1) > 0 then score += 1 } }\n"
        path.write_text(source)
        assert lint_file(path, apply_fix=True) == (1, 0, 0)
        assert path.read_text() == source
        assert not get_backup_path(path).exists()

    def test_model_file(self, tmp_path, capsys):
        path = tmp_path / "triage.yaml"
        path.write_text(dump_model(to_model(parse(TYPO_SOURCE))))
        errors, warnings, fixable = lint_file(path, apply_fix=True)
        assert (errors, warnings) == (0, 1)
        assert fixable == 0
        assert not get_backup_path(path).exists()
        assert "Unknown name 'cas'" in capsys.readouterr().out

    def test_invalid_model_file(self, tmp_path, capsys):
        path = tmp_path / "broken.json"
        path.write_text('{"functions": []}')
        assert lint_file(path) == (1, 0, 0)
        assert "missing required field 'workflows'" in capsys.readouterr().out


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
