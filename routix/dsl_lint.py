"""
Lint Routix workflow files for errors and warnings.

Parses each file, runs the semantic checks from dsl_validate and prints the
findings one per line as `path:line: severity: message`. With fix enabled,
one-character typos that have a single suggestion are rewritten in place
after the previous contents are saved next to the file.
"""

import re
from pathlib import Path
from typing import Dict, List, Tuple

import yaml

from .dsl_ast import Program
from .dsl_converter import ModelError, MODEL_SUFFIXES, load_program
from .dsl_lexer import LexError
from .dsl_parser import ParseError, parse
from .dsl_validate import Fix, ValidationResult, validate_program


def get_backup_path(path: Path) -> Path:
    """Backup written before a fix run: .name.bak beside the file."""
    return path.parent / f".{path.name}.bak"


def save_backup(path: Path, content: str) -> Path:
    """Save the pre-fix content, replacing any earlier backup."""
    backup = get_backup_path(path)
    backup.write_text(content)
    return backup


def apply_fixes(source: str, fixes: List[Fix]) -> str:
    """Apply fixes to source code.

    Each fix replaces the first whole-word occurrence of old_text on its
    line, so `cas` is fixed in `cas.priority` but not inside `cascade`.
    Fixes pointing outside the source are ignored.
    """
    lines = source.split('\n')

    fixes_by_line: Dict[int, List[Fix]] = {}
    for fix in fixes:
        if 0 < fix.line <= len(lines):
            fixes_by_line.setdefault(fix.line, []).append(fix)

    for line_num in sorted(fixes_by_line, reverse=True):
        line = lines[line_num - 1]
        for fix in fixes_by_line[line_num]:
            pattern = r'\b' + re.escape(fix.old_text) + r'\b'
            line = re.sub(pattern, lambda _m: fix.new_text, line, count=1)
        lines[line_num - 1] = line

    return '\n'.join(lines)


def _load(path: Path, source: str) -> Program:
    if path.suffix.lower() in MODEL_SUFFIXES:
        return load_program(path)
    return parse(source)


def _report(path: Path, result: ValidationResult):
    for severity, findings in (("error", result.errors), ("warning", result.warnings)):
        for finding in findings:
            loc = f":{finding.line}" if finding.line else ""
            fix_marker = " [fixable]" if finding.fix else ""
            print(f"{path}{loc}: {severity}: {finding.message}{fix_marker}")


def lint_source(source: str) -> Tuple[Program, ValidationResult]:
    """Parse and validate DSL text without touching the filesystem."""
    program = parse(source)
    return program, validate_program(program)


def lint_file(path: Path, apply_fix: bool = False) -> Tuple[int, int, int]:
    """Lint a single file. Returns (error_count, warning_count, fix_count)."""
    path = Path(path)
    try:
        source = path.read_text()
    except FileNotFoundError:
        print(f"{path}: error: file not found")
        return 1, 0, 0

    try:
        program = _load(path, source)
    except (LexError, ParseError) as e:
        print(f"{path}:{e.line}: error: {e}")
        return 1, 0, 0
    except (ModelError, yaml.YAMLError) as e:
        print(f"{path}: error: {e}")
        return 1, 0, 0

    result = validate_program(program)
    fixes = result.fixes

    # Model documents are rewritten by the editor, never patched as text
    if apply_fix and fixes and path.suffix.lower() not in MODEL_SUFFIXES:
        fixed_source = apply_fixes(source, fixes)
        if fixed_source != source:
            backup = save_backup(path, source)
            path.write_text(fixed_source)
            print(f"{path}: applied {len(fixes)} fix(es)")
            print(f"  Pre-fix backup: {backup}")
            # Re-lint to show remaining issues
            return lint_file(path, apply_fix=False)

    _report(path, result)
    return len(result.errors), len(result.warnings), result.fixable_count
