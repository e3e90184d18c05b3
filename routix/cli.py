#!/usr/bin/env python3
"""
Command line for the Routix workflow DSL.

Usage:
    routix fmt FILE... [--check | --write] # Print or rewrite canonical text
    routix lint FILE... [--fix]           # Parse and validate, print findings
    routix model FILE [--format yaml|json]
    routix compile MODEL                  # DSL text from a model document
    routix run FILE --workflow NAME --case CASE.yaml [--agents AGENTS.yaml]
               [--config CONFIG.yaml] [--max-depth N] [--assign-mode MODE]
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import yaml

from .dsl_converter import MODEL_SUFFIXES, ModelError, dump_model, load_model, load_program, to_model
from .dsl_engine import AssignMode, EngineConfig, run_program, summarize
from .dsl_lexer import LexError
from .dsl_lint import lint_file
from .dsl_parser import ParseError
from .dsl_serializer import serialize, serialize_model

logger = logging.getLogger(__name__)

RECORD_ERRORS = (yaml.YAMLError, OSError)
LOAD_ERRORS = (LexError, ParseError, ModelError) + RECORD_ERRORS


def _fail(path, error) -> int:
    print(f"{path}: error: {error}", file=sys.stderr)
    return 1


def _load_records(path: Path):
    """Read a YAML or JSON document holding a record or a list of records."""
    with open(path) as f:
        return yaml.safe_load(f)


def positive_int(value: str) -> int:
    """argparse type for counts that must be at least 1."""
    try:
        ivalue = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value}") from None
    if ivalue < 1:
        raise argparse.ArgumentTypeError(f"must be a positive integer (got {ivalue})")
    return ivalue


def canonical_text(path: Path, program) -> str:
    """Canonical form of a file: DSL text, or a re-dumped model document."""
    suffix = path.suffix.lower()
    if suffix in MODEL_SUFFIXES:
        return dump_model(to_model(program), 'json' if suffix == '.json' else 'yaml')
    return serialize(program)


# =============================================================================
# Subcommands
# =============================================================================

def cmd_fmt(args) -> int:
    status = 0
    for path in args.files:
        try:
            program = load_program(path)
        except LOAD_ERRORS as e:
            status = _fail(path, e)
            continue

        text = canonical_text(path, program)
        if args.check:
            if path.read_text() != text:
                print(f"{path}: would reformat")
                status = 1
        elif args.write:
            if path.read_text() != text:
                path.write_text(text)
                print(f"{path}: reformatted")
        else:
            sys.stdout.write(text)
    return status


def cmd_lint(args) -> int:
    total_errors = 0
    total_warnings = 0
    total_fixable = 0

    for path in args.files:
        errors, warnings, fixable = lint_file(path, apply_fix=args.fix)
        total_errors += errors
        total_warnings += warnings
        total_fixable += fixable

    if total_errors or total_warnings:
        print(f"\n{total_errors} error(s), {total_warnings} warning(s)")
        # Suggest --fix if there are fixable issues and we didn't already fix
        if total_fixable > 0 and not args.fix:
            print(f"\n{total_fixable} issue(s) can be auto-fixed. Run with --fix to apply.")

    return 1 if total_errors else 0


def cmd_model(args) -> int:
    try:
        program = load_program(args.file)
    except LOAD_ERRORS as e:
        return _fail(args.file, e)
    sys.stdout.write(dump_model(to_model(program), args.format))
    return 0


def cmd_compile(args) -> int:
    try:
        text = serialize_model(load_model(args.model))
    except (ModelError,) + RECORD_ERRORS as e:
        return _fail(args.model, e)
    sys.stdout.write(text)
    return 0


def _engine_config(args) -> EngineConfig:
    data = _load_records(args.config) if args.config else None
    config = EngineConfig.from_mapping(data)
    if args.max_depth is not None:
        config.max_call_depth = args.max_depth
    if args.assign_mode is not None:
        config.assign_mode = AssignMode(args.assign_mode)
    return config


def cmd_run(args) -> int:
    try:
        program = load_program(args.file)
    except LOAD_ERRORS as e:
        return _fail(args.file, e)

    try:
        config = _engine_config(args)
    except (ValueError,) + RECORD_ERRORS as e:
        return _fail(args.config, e)

    try:
        cases = _load_records(args.case)
    except RECORD_ERRORS as e:
        return _fail(args.case, e)
    try:
        agents = _load_records(args.agents) if args.agents else []
    except RECORD_ERRORS as e:
        return _fail(args.agents, e)
    batch = isinstance(cases, list)
    logger.debug("Loaded %s case(s) and %d agent(s)", len(cases) if batch else 1,
                 len(agents) if isinstance(agents, list) else 0)
    if not batch:
        cases = [cases]
    if not all(isinstance(c, dict) for c in cases):
        return _fail(args.case, "expected a record or a list of records")
    if not isinstance(agents, list) or not all(isinstance(a, dict) for a in agents):
        return _fail(args.agents, "expected a list of agent records")

    try:
        results = [run_program(program, args.workflow, case, agents, config) for case in cases]
    except KeyError as e:
        return _fail(args.file, e.args[0])

    report = {'results': [
        {'final_score': r.final_score, 'assignment': r.assignment, 'logs': r.logs}
        for r in results
    ]}
    if batch:
        stats = summarize(results)
        report['summary'] = {
            'count': stats.count,
            'total_score': stats.total_score,
            'average_score': stats.average_score,
            'max_score': stats.max_score,
            'min_score': stats.min_score,
            'assigned': stats.assigned,
        }
    print(json.dumps(report if batch else report['results'][0], indent=2))
    return 0


# =============================================================================
# Entry point
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="routix",
        description="Format, lint, convert and run Routix workflow files."
    )
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    fmt = sub.add_parser("fmt", help="Print files in canonical form")
    fmt.add_argument("files", nargs="+", type=Path)
    mode = fmt.add_mutually_exclusive_group()
    mode.add_argument("--check", action="store_true",
                      help="Exit 1 if any file is not in canonical form")
    mode.add_argument("--write", action="store_true",
                      help="Rewrite files in place")
    fmt.set_defaults(func=cmd_fmt)

    lint = sub.add_parser("lint", help="Report errors and warnings")
    lint.add_argument("files", nargs="+", type=Path)
    lint.add_argument("--fix", action="store_true",
                      help="Auto-fix obvious typos (single-character edits with one suggestion)")
    lint.set_defaults(func=cmd_lint)

    model = sub.add_parser("model", help="Print the structured model of a file")
    model.add_argument("file", type=Path)
    model.add_argument("--format", choices=["yaml", "json"], default="yaml")
    model.set_defaults(func=cmd_model)

    compile_ = sub.add_parser("compile", help="Print DSL text for a model document")
    compile_.add_argument("model", type=Path)
    compile_.set_defaults(func=cmd_compile)

    run = sub.add_parser("run", help="Run a workflow against one case or a batch")
    run.add_argument("file", type=Path)
    run.add_argument("--workflow", required=True, help="Workflow name")
    run.add_argument("--case", required=True, type=Path,
                     help="YAML/JSON case record, or a list of them")
    run.add_argument("--agents", type=Path, help="YAML/JSON list of candidate agents")
    run.add_argument("--config", type=Path, help="YAML engine configuration")
    run.add_argument("--max-depth", type=positive_int, default=None,
                     help="Function call depth limit")
    run.add_argument("--assign-mode", choices=[m.value for m in AssignMode], default=None,
                     help="Assign the rule target (literal) or the matched agent id (candidate)")
    run.set_defaults(func=cmd_run)

    return parser


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        return args.func(args)
    except RecursionError:
        print("error: input is nested too deeply", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
