#!/usr/bin/env python3
"""
Parser fuzzer for the Routix DSL.

Generates random and mutated inputs to find parser bugs like:
- Crashes (exceptions other than lex and parse errors)
- Hangs (infinite loops)
- Disagreement between the hand-written parser and the Lark grammar
- Programs whose canonical text does not parse back to the same AST

Usage:
    python -m routix.fuzz_parser [--duration MINUTES] [--iterations N]
                                 [--seed SEED] [--findings DIR]

Findings are saved to DIR when one is given.
"""

import argparse
import hashlib
import random
import re
import signal
import string
import threading
import time
import traceback
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Optional

import yaml

from . import dsl_parser, dsl_peg_parser
from .dsl_lexer import LexError
from .dsl_parser import ParseError
from .dsl_serializer import serialize

# Expected parse errors - these are normal rejections
EXPECTED_ERRORS = (LexError, ParseError)


class FuzzTimeout(Exception):
    pass


class Mismatch(Exception):
    """Two views of the same input disagree."""


@contextmanager
def timeout(seconds):
    """Context manager for timeout on Unix systems, main thread only."""
    def handler(signum, frame):
        raise FuzzTimeout(f"Timed out after {seconds} seconds")

    if hasattr(signal, 'SIGALRM') and threading.current_thread() is threading.main_thread():
        old_handler = signal.signal(signal.SIGALRM, handler)
        signal.alarm(seconds)
        try:
            yield
        finally:
            signal.alarm(0)
            signal.signal(signal.SIGALRM, old_handler)
    else:
        yield


class Fuzzer:
    """Routix parser fuzzer."""

    # Token pools for generation
    KEYWORDS = [
        "workflow", "function", "method", "score", "match", "when", "then",
        "assign", "to", "log", "and", "or", "in", "true", "false",
        "WHEN", "Then", "SCORE", "Match",
    ]

    OPERATORS = ["==", "!=", "<=", ">=", "<", ">", "+", "-", "*", "/", "!", "+=", "=", ",", "."]
    BRACKETS = ["(", ")", "[", "]", "{", "}"]

    IDENTIFIERS = ["x", "y", "n", "tier", "urgent", "bob", "queue_a", "Agent7"]
    FIELDS = ["priority", "tier", "skills", "region", "load", "score", "id", "tags"]
    FUNCTIONS = ["len", "max", "min", "contains", "weight", "boost", "is_vip"]

    # Lexical pieces of Routix source, used by the token-level mutations
    TOKEN_RE = re.compile(r'"[^"\n]*"|[A-Za-z_][A-Za-z0-9_.]*|\d+(?:\.\d+)?|\+=|==|!=|<=|>=|\S')

    # Snippets near the edges of the lexer
    EDGE_SNIPPETS = [
        "case.", ".priority", "agent..id", "score.total", "+= +=", '""', '"\n"',
        "# note\n", "\r\n", "\t", "\x00", "é", "🎉", "assign to", "then then",
    ]

    # Numbers near the edges of the number rule
    EDGE_NUMBERS = ["0", "007", "1.5", "1.", ".5", "0.0000000001", "2147483647", "1" * 400]

    # Seed corpus - known valid inputs
    SEED_CORPUS = [
        'workflow w {}',
        'workflow w { score {} }',
        'workflow w { match {} }',
        'workflow w { score { when true then score += 1 } }',
        'workflow w { score { when case.priority > 3 then score += 10 } }',
        'workflow w { score { when case.vip then log "vip case" } }',
        'workflow w { score { when !case.closed and case.age >= 2 then score += case.age * 2 } }',
        'workflow w { match { when true then assign to bob } }',
        'workflow w { match { when "billing" in agent.skills then assign to "queue a" } }',
        'workflow w { match { when agent.tags in ["x", "y"] then assign to t } }',
        'function f() = 1',
        'function f(x) = x + 1',
        'method g(a, b) = a * (b - 1) / 2',
        'function f(n) = f(n)',
        'function is_vip(c) = c == "gold" or c == "platinum"',
        'function f(x) = len([x, "a", true, [1, 2]])',
        'WORKFLOW W { SCORE { WHEN TRUE THEN SCORE += 1 } }',
        '# comment\nworkflow w { score { when 1 < 2 then score += 0.5 } }  # trailing',
        'function w(x) = max(x, 3, min(1, 2))\nworkflow w { score { when w(case.n) != 3 then log w(1) } }',
    ]

    def __init__(self, seed=None, findings_dir: Optional[Path] = None):
        self.rng = random.Random(seed)
        self.findings_dir = Path(findings_dir) if findings_dir else None
        self.stats = {
            "iterations": 0,
            "parse_ok": 0,
            "parse_error": 0,
            "crashes": 0,
            "timeouts": 0,
            "mismatches": 0,
            "too_deep": 0,
            "unique_findings": set(),
        }
        self.findings = []
        self.start_time = None

        if self.findings_dir:
            self.findings_dir.mkdir(parents=True, exist_ok=True)

    # =========================================================================
    # Generation
    # =========================================================================

    def random_identifier(self) -> str:
        """Generate a random identifier."""
        if self.rng.random() < 0.7:
            return self.rng.choice(self.IDENTIFIERS)
        length = self.rng.randint(1, 12)
        first = self.rng.choice(string.ascii_letters + "_")
        rest = "".join(self.rng.choices(string.ascii_letters + string.digits + "_", k=length - 1))
        name = first + rest
        # Keep generated names out of the keyword set
        return name if name.lower() not in {k.lower() for k in self.KEYWORDS} else name + "_"

    def random_path(self) -> str:
        root = self.rng.choice(["case", "agent", "case", self.random_identifier()])
        segments = [self.rng.choice(self.FIELDS) for _ in range(self.rng.randint(0, 2))]
        return ".".join([root] + segments)

    def random_number(self) -> str:
        """Generate a random number."""
        roll = self.rng.random()
        if roll < 0.4:
            return str(self.rng.randint(0, 1000))
        elif roll < 0.7:
            return f"{self.rng.uniform(0, 100):.{self.rng.randint(1, 4)}f}"
        # Edge cases
        return self.rng.choice(["0", "0.0", "999999999999", "0.001", "1.5", "00", "007.250"])

    def random_string(self) -> str:
        """Generate a random string literal."""
        if self.rng.random() < 0.2:
            return self.rng.choice(['""', '"test"', '" "', '"a b c"', '"123"', '"\\n"', '"#x"'])
        length = self.rng.randint(0, 20)
        pool = string.printable.replace('"', '').replace('\n', '').replace('\r', '')
        return '"' + "".join(self.rng.choices(pool, k=length)) + '"'

    def random_expr(self, depth=0) -> str:
        """Generate a random (syntactically valid) expression."""
        if depth > 4 or self.rng.random() < 0.3:
            choice = self.rng.randint(0, 4)
            if choice == 0:
                return self.random_path()
            elif choice == 1:
                return self.random_number()
            elif choice == 2:
                return self.rng.choice(["true", "false", "TRUE", "False"])
            elif choice == 3:
                return self.random_string()
            return self.random_identifier()

        choice = self.rng.randint(0, 5)
        if choice == 0:
            op = self.rng.choice(["+", "-", "*", "/", "==", "!=", "<", ">", "<=", ">=",
                                  "and", "or", "in", "AND"])
            return f"{self.random_expr(depth + 1)} {op} {self.random_expr(depth + 1)}"
        elif choice == 1:
            args = ", ".join(self.random_expr(depth + 1) for _ in range(self.rng.randint(0, 3)))
            return f"{self.rng.choice(self.FUNCTIONS)}({args})"
        elif choice == 2:
            items = ", ".join(self.random_expr(depth + 1) for _ in range(self.rng.randint(0, 4)))
            return f"[{items}]"
        elif choice == 3:
            return f"!{self.random_expr(depth + 1)}"
        return f"({self.random_expr(depth + 1)})"

    def random_function(self, name: str) -> str:
        params = []
        for _ in range(self.rng.randint(0, 3)):
            param = self.random_identifier()
            if param not in params:
                params.append(param)
        keyword = self.rng.choice(["function", "function", "method"])
        return f"{keyword} {name}({', '.join(params)}) = {self.random_expr()}"

    def random_workflow(self) -> str:
        phases = []
        for _ in range(self.rng.randint(0, 3)):
            rules = []
            if self.rng.random() < 0.5:
                for _ in range(self.rng.randint(0, 3)):
                    if self.rng.random() < 0.7:
                        action = f"score += {self.random_expr()}"
                    else:
                        action = f"log {self.random_expr()}"
                    rules.append(f"when {self.random_expr()} then {action}")
                phases.append("score { " + "\n".join(rules) + " }")
            else:
                for _ in range(self.rng.randint(0, 3)):
                    target = self.rng.choice([self.random_identifier(), self.random_string()])
                    rules.append(f"when {self.random_expr()} then assign to {target}")
                phases.append("match {\n" + "\n".join(rules) + "\n}")
        return f"workflow {self.random_identifier()} {{ {' '.join(phases)} }}"

    def generate_random(self) -> str:
        """Generate a random program; usually valid, sometimes not."""
        parts = []
        used = set()
        for _ in range(self.rng.randint(1, 4)):
            if self.rng.random() < 0.4:
                name = self.rng.choice(self.FUNCTIONS[4:] + [self.random_identifier()])
                if name in used:
                    continue
                used.add(name)
                parts.append(self.random_function(name))
            else:
                parts.append(self.random_workflow())
        return "\n\n".join(parts)

    # =========================================================================
    # Mutation
    # =========================================================================

    def mutate(self, input_str: str) -> str:
        """Apply one randomly chosen mutation."""
        mutations = [
            self._mutate_insert_token,
            self._mutate_drop_token,
            self._mutate_swap_operator,
            self._mutate_recase_keyword,
            self._mutate_wrap_operand,
            self._mutate_duplicate_rule,
            self._mutate_edge_snippet,
            self._mutate_edge_number,
        ]
        return self.rng.choice(mutations)(input_str)

    def _token_spans(self, s: str):
        return [m.span() for m in self.TOKEN_RE.finditer(s)]

    def _mutate_insert_token(self, s: str) -> str:
        pos = self.rng.randint(0, len(s))
        token = self.rng.choice([
            self.rng.choice(self.KEYWORDS),
            self.rng.choice(self.OPERATORS),
            self.rng.choice(self.BRACKETS),
            self.random_path(),
            self.random_number(),
            self.random_string(),
        ])
        return f"{s[:pos]} {token} {s[pos:]}"

    def _mutate_drop_token(self, s: str) -> str:
        spans = self._token_spans(s)
        if not spans:
            return s + " when"
        start, end = self.rng.choice(spans)
        return s[:start] + s[end:]

    def _mutate_swap_operator(self, s: str) -> str:
        spans = [(a, b) for a, b in self._token_spans(s) if s[a:b] in self.OPERATORS]
        if not spans:
            return self._mutate_insert_token(s)
        start, end = self.rng.choice(spans)
        return s[:start] + self.rng.choice(self.OPERATORS) + s[end:]

    def _mutate_recase_keyword(self, s: str) -> str:
        keywords = {k.lower() for k in self.KEYWORDS}
        spans = [(a, b) for a, b in self._token_spans(s) if s[a:b].lower() in keywords]
        if not spans:
            return s
        start, end = self.rng.choice(spans)
        word = "".join(c.upper() if self.rng.random() < 0.5 else c.lower() for c in s[start:end])
        return s[:start] + word + s[end:]

    def _mutate_wrap_operand(self, s: str) -> str:
        spans = [(a, b) for a, b in self._token_spans(s)
                 if s[a].isalnum() or s[a] in '_"']
        if not spans:
            return s
        start, end = self.rng.choice(spans)
        opener, closer = self.rng.choice([("(", ")"), ("!", ""), ("[", "]"), ("!(", ")")])
        return s[:start] + opener * self.rng.randint(1, 4) + s[start:end] + \
            closer * self.rng.randint(1, 4) + s[end:]

    def _mutate_duplicate_rule(self, s: str) -> str:
        starts = [m.start() for m in re.finditer(r'(?i)\bwhen\b', s)]
        if not starts:
            return self._mutate_edge_snippet(s)
        start = self.rng.choice(starts)
        end = start + 4
        following = re.search(r'(?i)\bwhen\b|}', s[end:])
        end = end + following.start() if following else len(s)
        return s[:end] + " " + s[start:end] + s[end:]

    def _mutate_edge_snippet(self, s: str) -> str:
        pos = self.rng.randint(0, len(s))
        return s[:pos] + self.rng.choice(self.EDGE_SNIPPETS) + s[pos:]

    def _mutate_edge_number(self, s: str) -> str:
        spans = [m.span() for m in re.finditer(r'\d+(\.\d+)?', s)]
        if not spans:
            return self._mutate_insert_token(s)
        start, end = self.rng.choice(spans)
        return s[:start] + self.rng.choice(self.EDGE_NUMBERS) + s[end:]

    # =========================================================================
    # Checking
    # =========================================================================

    def check(self, input_str: str) -> bool:
        """Run every oracle on one input. Returns True when it parsed.

        Raises Mismatch when the parsers disagree or the canonical text does
        not reproduce the AST; any other non-parse exception is a crash.
        """
        try:
            program = dsl_parser.parse(input_str)
        except EXPECTED_ERRORS as e:
            try:
                dsl_peg_parser.parse(input_str)
            except ParseError:
                return False
            raise Mismatch(f"hand-written parser rejected ({e}) but the grammar accepted")

        try:
            grammar_program = dsl_peg_parser.parse(input_str)
        except ParseError as e:
            raise Mismatch(f"grammar rejected ({e}) but the hand-written parser accepted")
        if grammar_program != program:
            raise Mismatch("parsers produced different ASTs")

        text = serialize(program)
        if dsl_parser.parse(text) != program:
            raise Mismatch("canonical text does not parse back to the same AST")
        if serialize(dsl_parser.parse(text)) != text:
            raise Mismatch("canonical text is not stable")
        return True

    def save_finding(self, input_str: str, error: Exception, category: str):
        """Record a finding once per distinct input; write it out when a directory is set."""
        digest = hashlib.sha1(input_str.encode('utf-8', errors='replace')).hexdigest()[:10]
        if digest in self.stats["unique_findings"]:
            return
        self.stats["unique_findings"].add(digest)

        message = f"{type(error).__name__}: {error}"
        self.findings.append((category, input_str, message))
        if self.findings_dir is None:
            return

        record = {
            'category': category,
            'error': message,
            'found_at': datetime.now().isoformat(timespec='seconds'),
            'iteration': self.stats["iterations"],
            'input': input_str,
            'traceback': traceback.format_exc(),
        }
        path = self.findings_dir / f"{category}_{digest}.yaml"
        with open(path, 'w', encoding='utf-8', errors='replace') as f:
            yaml.safe_dump(record, f, sort_keys=False, allow_unicode=True)
        print(f"\n[!] Saved {category}: {path}")

    def test_input(self, input_str: str) -> bool:
        """Test a single input. Returns True if interesting (crash/timeout/mismatch)."""
        try:
            with timeout(5):
                parsed = self.check(input_str)
        except RecursionError:
            # Nesting beyond the interpreter stack; neither parser can be compared
            self.stats["too_deep"] += 1
            return False
        except FuzzTimeout as e:
            self.stats["timeouts"] += 1
            self.save_finding(input_str, e, "timeout")
            return True
        except Mismatch as e:
            self.stats["mismatches"] += 1
            self.save_finding(input_str, e, "mismatch")
            return True
        except Exception as e:
            # Unexpected crash!
            self.stats["crashes"] += 1
            self.save_finding(input_str, e, "crash")
            return True

        if parsed:
            self.stats["parse_ok"] += 1
        else:
            self.stats["parse_error"] += 1
        return False

    def next_input(self, corpus) -> str:
        strategy = self.rng.random()
        if strategy < 0.4:
            return self.generate_random()
        if strategy < 0.8:
            input_str = self.mutate(self.rng.choice(corpus))
            for _ in range(self.rng.randint(0, 3)):
                input_str = self.mutate(input_str)
            return input_str
        return self.rng.choice(corpus)

    def run(self, duration_minutes: float = None, iterations: int = None, quiet: bool = False):
        """Run the fuzzer until the time or iteration budget runs out."""
        self.start_time = time.time()
        end_time = self.start_time + (duration_minutes * 60) if duration_minutes else None

        if not quiet:
            print(f"Starting fuzzer (seed corpus: {len(self.SEED_CORPUS)} inputs)")
            print(f"Duration: {'unlimited' if not duration_minutes else f'{duration_minutes} minutes'}")
            print(f"Findings directory: {self.findings_dir or '(not saved)'}")
            print("-" * 60)

        corpus = list(self.SEED_CORPUS)

        try:
            while True:
                if end_time and time.time() > end_time:
                    break
                if iterations is not None and self.stats["iterations"] >= iterations:
                    break
                self.stats["iterations"] += 1

                input_str = self.next_input(corpus)
                interesting = self.test_input(input_str)

                # Keep interesting inputs, plus the odd rejection, for further mutation
                if interesting or (self.rng.random() < 0.01 and len(input_str) < 1000):
                    corpus.append(input_str)
                    if len(corpus) > 1000:
                        corpus.pop(self.rng.randint(len(self.SEED_CORPUS), len(corpus) - 1))

                if not quiet and self.stats["iterations"] % 1000 == 0:
                    self.print_stats()

        except KeyboardInterrupt:
            print("\n\nInterrupted by user")

        if not quiet:
            print("\n" + "=" * 60)
            print("Final Statistics:")
            self.print_stats()
        return self.stats

    def print_stats(self):
        """Print current statistics."""
        elapsed = time.time() - self.start_time
        rate = self.stats["iterations"] / elapsed if elapsed > 0 else 0

        print(f"[{elapsed:.1f}s] "
              f"iterations={self.stats['iterations']} "
              f"({rate:.0f}/s) | "
              f"ok={self.stats['parse_ok']} "
              f"reject={self.stats['parse_error']} | "
              f"crashes={self.stats['crashes']} "
              f"mismatches={self.stats['mismatches']} "
              f"timeouts={self.stats['timeouts']} "
              f"unique={len(self.stats['unique_findings'])}")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Fuzz the Routix parsers")
    parser.add_argument("--duration", type=float, default=None,
                        help="Duration in minutes (default: run forever)")
    parser.add_argument("--iterations", type=int, default=None,
                        help="Stop after this many inputs")
    parser.add_argument("--seed", type=int, default=None,
                        help="Random seed for reproducibility")
    parser.add_argument("--findings", type=Path, default=None,
                        help="Directory to save findings in")
    args = parser.parse_args(argv)

    seed = args.seed if args.seed is not None else int(time.time())
    print(f"Random seed: {seed}")

    fuzzer = Fuzzer(seed=seed, findings_dir=args.findings)
    stats = fuzzer.run(duration_minutes=args.duration, iterations=args.iterations)
    return 1 if stats["crashes"] or stats["mismatches"] or stats["timeouts"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
