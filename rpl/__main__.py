#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
rpl/__main__.py
===============

Entry point for the RPL bug-pattern checker.

Usage
-----
    python -m rpl <command> [options]

Commands
--------
    check       Parse and lower pattern files, report pattern errors
    dump-sexp   Parse pattern files and print their canonical form
    run         Match patterns against MIR dumps and report matches
    explain     Print the description of one pattern

Pipeline
--------
    *.rpl files                 *.mir.json dumps
        │                              │
        ▼                              ▼
    ┌──────────┐                 ┌───────────┐
    │  Parser   │ sexpdata → AST  │  Loader    │ JSON → Function
    └────┬─────┘                 └─────┬─────┘
         ▼                              │
    ┌──────────┐                        │
    │ Lowering  │ AST → constraints     │
    └────┬─────┘                        │
         └──────────────┬───────────────┘
                        ▼
                ┌──────────────┐
                │  Matcher      │  one task per (function, pattern)
                └──────┬───────┘
                       ▼
                ┌──────────────┐
                │  Aggregator   │  sorted diagnostics + problems
                └──────────────┘

Exit codes
----------
    0   success
    1   matches found and ``--fail-on-match`` given
    2   fatal: no usable pattern, unreadable input, invalid pattern file
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import textwrap
from typing import List, Optional, Sequence, TextIO

from rpl import __version__
from rpl.driver import EXECUTORS, Analysis, AnalysisConfig
from rpl.errors import ParseError, PatternLibraryError, RplError
from rpl.library import PatternLibrary, iter_pattern_files
from rpl.matcher import EngineConfig
from rpl.parser import parse_file, unparse
from rpl_mir.loader import MirDump, load_dump

__description__ = "Match RPL bug patterns against the MIR of compiled functions."

EXIT_OK = 0
EXIT_MATCHES = 1
EXIT_FATAL = 2

logger = logging.getLogger("rpl")


# ═══════════════════════════════════════════════════════════════════════════
# TERMINAL OUTPUT
# ═══════════════════════════════════════════════════════════════════════════

class _Colors:
    """ANSI color codes, disabled when not writing to a TTY."""

    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled

    def _code(self, code: str) -> str:
        return code if self.enabled else ""

    @property
    def RESET(self) -> str:
        return self._code("\033[0m")

    @property
    def BOLD(self) -> str:
        return self._code("\033[1m")

    @property
    def RED(self) -> str:
        return self._code("\033[31m")

    @property
    def GREEN(self) -> str:
        return self._code("\033[32m")


def _get_colors(stream: TextIO) -> _Colors:
    isatty = getattr(stream, "isatty", None)
    is_tty = bool(isatty and isatty())
    return _Colors(enabled=is_tty and os.environ.get("NO_COLOR") is None)


class DiagnosticFormatter:
    """Writes GCC-style ``error:`` lines for CLI-level failures."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream or sys.stderr
        self.colors = _get_colors(self.stream)
        self.error_count = 0

    def error(self, message: str) -> None:
        self.error_count += 1
        c = self.colors
        self.stream.write(f"{c.BOLD}{c.RED}error:{c.RESET} {message}\n")

    def pattern_error(self, err: RplError) -> None:
        self.error_count += 1
        c = self.colors
        where = f"{err.pos}: " if err.pos is not None else ""
        name = f" (in pattern {err.pattern!r})" if err.pattern else ""
        self.stream.write(
            f"{c.BOLD}{where}{c.RED}error:{c.RESET} [{err.code.code}] {err.message}{name}\n"
        )

    def ok(self, message: str) -> None:
        c = self.colors
        self.stream.write(f"{c.GREEN}ok:{c.RESET} {message}\n")


def _configure_logging(args: argparse.Namespace) -> None:
    if getattr(args, "verbose", False):
        level = logging.DEBUG
    elif getattr(args, "quiet", False):
        level = logging.ERROR
    else:
        level = logging.WARNING
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


# ═══════════════════════════════════════════════════════════════════════════
# COMMANDS
# ═══════════════════════════════════════════════════════════════════════════

def cmd_check(args: argparse.Namespace) -> int:
    """Handle the 'check' command (parse + lower, no matching)."""
    formatter = DiagnosticFormatter()
    lib = PatternLibrary()
    try:
        lib.load_paths(args.patterns)
    except OSError as e:
        formatter.error(str(e))
        return EXIT_FATAL
    for err in lib.errors:
        formatter.pattern_error(err)
    if not args.quiet:
        for p in lib.patterns:
            formatter.ok(f"{p.name} ({p.source})")
        sys.stderr.write(
            f"{len(lib.patterns)} pattern(s) usable, {len(lib.errors)} error(s).\n"
        )
    return EXIT_FATAL if lib.errors or not lib.patterns else EXIT_OK


def cmd_dump_sexp(args: argparse.Namespace) -> int:
    """Handle the 'dump-sexp' command."""
    formatter = DiagnosticFormatter()
    status = EXIT_OK
    for path in iter_pattern_files(args.patterns):
        try:
            pf = parse_file(path)
        except (OSError, UnicodeDecodeError) as e:
            formatter.error(str(e))
            status = EXIT_FATAL
            continue
        except ParseError as e:
            formatter.pattern_error(e)
            status = EXIT_FATAL
            continue
        sys.stdout.write(unparse(pf))
    return status


def cmd_explain(args: argparse.Namespace) -> int:
    """Handle the 'explain' command."""
    formatter = DiagnosticFormatter()
    for path in iter_pattern_files(args.patterns):
        try:
            pf = parse_file(path)
        except (OSError, UnicodeDecodeError) as e:
            formatter.error(str(e))
            return EXIT_FATAL
        except ParseError as e:
            logger.warning("skipping %s: %s", path, e)
            continue
        p = pf.find(args.name)
        if p is None:
            continue
        out = [f"{p.name} [{p.severity.value}]"]
        if p.message:
            out.append(p.message)
        out.append("")
        out.append(textwrap.fill(p.description) if p.description else "(no description)")
        sys.stdout.write("\n".join(out) + "\n")
        return EXIT_OK
    formatter.error(f"no pattern named {args.name!r}")
    return EXIT_FATAL


def cmd_run(args: argparse.Namespace) -> int:
    """Handle the 'run' command (load, match, report)."""
    formatter = DiagnosticFormatter()

    lib = PatternLibrary()
    try:
        lib.load_paths(args.patterns)
        library = lib.freeze()
        if args.only:
            library = library.select(args.only)
    except OSError as e:
        formatter.error(str(e))
        return EXIT_FATAL
    except PatternLibraryError as e:
        for err in lib.errors:
            formatter.pattern_error(err)
        formatter.error(str(e))
        return EXIT_FATAL

    dumps: List[MirDump] = []
    for path in args.mir:
        try:
            dumps.append(load_dump(path))
        except (OSError, ValueError) as e:
            formatter.error(f"cannot read MIR dump {path}: {e}")
            return EXIT_FATAL

    config = AnalysisConfig(
        jobs=args.jobs,
        executor=args.executor,
        engine=EngineConfig(max_steps=args.max_steps),
        fail_on_match=args.fail_on_match,
    )
    report = Analysis(library, config).run(dumps, pattern_errors=lib.errors)

    if args.format == "json":
        json.dump(report.to_dict(), sys.stdout, indent=2)
        sys.stdout.write("\n")
    else:
        text = report.render_text()
        if text:
            sys.stdout.write(text + "\n")
        if not args.quiet:
            sys.stderr.write(
                f"{len(report.diagnostics)} match(es), {len(report.problems)} problem(s) "
                f"in {sum(len(d.functions) for d in dumps)} function(s).\n"
            )

    if config.fail_on_match and report.has_matches:
        return EXIT_MATCHES
    return EXIT_OK


# ═══════════════════════════════════════════════════════════════════════════
# ARGUMENT PARSER
# ═══════════════════════════════════════════════════════════════════════════

def _add_output_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "-v", "--verbose",
        action="store_true",
        default=False,
        help="Log debug information (per-task statistics)",
    )
    p.add_argument(
        "-q", "--quiet",
        action="store_true",
        default=False,
        help="Suppress non-error output",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the RPL CLI."""
    parser = argparse.ArgumentParser(
        prog="rpl",
        description=__description__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              %(prog)s check patterns/
              %(prog)s dump-sexp patterns/use-after-free.rpl
              %(prog)s run --patterns patterns/ crate.mir.json
              %(prog)s run --patterns patterns/ --format json --fail-on-match crate.mir.json
              %(prog)s explain use-after-free --patterns patterns/
        """),
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        title="commands",
        description="available commands",
        metavar="<command>",
    )

    # ── check ────────────────────────────────────────────────────────────

    p_check = subparsers.add_parser(
        "check",
        help="Parse and lower pattern files",
        description=(
            "Parse and lower every pattern in the given files or "
            "directories and report syntax and definition errors."
        ),
    )
    p_check.add_argument("patterns", nargs="+", metavar="PATTERNS",
                         help="Pattern files or directories of *.rpl files")
    _add_output_flags(p_check)
    p_check.set_defaults(func=cmd_check)

    # ── dump-sexp ────────────────────────────────────────────────────────

    p_dump = subparsers.add_parser(
        "dump-sexp",
        help="Print pattern files in canonical S-expression form",
        description=(
            "Parse pattern files and print them back in canonical form. "
            "Useful for normalization, diff, and round-trip testing."
        ),
    )
    p_dump.add_argument("patterns", nargs="+", metavar="PATTERNS",
                        help="Pattern files")
    _add_output_flags(p_dump)
    p_dump.set_defaults(func=cmd_dump_sexp)

    # ── run ──────────────────────────────────────────────────────────────

    p_run = subparsers.add_parser(
        "run",
        help="Match patterns against MIR dump(s)",
        description=(
            "Load the pattern library, match every pattern against every "
            "function of the given MIR dumps and report the matches."
        ),
    )
    p_run.add_argument("mir", nargs="+", metavar="MIR",
                       help="MIR dump file(s) (JSON)")
    p_run.add_argument("-p", "--patterns", action="append", required=True, metavar="PATTERNS",
                       help="Pattern file or directory (repeatable)")
    p_run.add_argument("--format", choices=("text", "json"), default="text",
                       help="Output format (default: text)")
    p_run.add_argument("-j", "--jobs", type=int, default=0,
                       help="Worker count; 0 uses one per CPU (default: 0)")
    p_run.add_argument("--executor", choices=EXECUTORS, default="thread",
                       help="Task executor (default: thread)")
    p_run.add_argument("--max-steps", type=int, default=EngineConfig.max_steps,
                       help=f"Step budget per (function, pattern) task (default: {EngineConfig.max_steps})")
    p_run.add_argument("--only", action="append", default=None, metavar="NAME",
                       help="Only run the named pattern (repeatable)")
    p_run.add_argument("--fail-on-match", action="store_true", default=False,
                       help="Exit with status 1 when any pattern matched")
    _add_output_flags(p_run)
    p_run.set_defaults(func=cmd_run)

    # ── explain ──────────────────────────────────────────────────────────

    p_explain = subparsers.add_parser(
        "explain",
        help="Describe one pattern",
        description="Print the message and description of the named pattern.",
    )
    p_explain.add_argument("name", help="Pattern name")
    p_explain.add_argument("--patterns", nargs="+", required=True, metavar="PATTERNS",
                           help="Pattern files")
    _add_output_flags(p_explain)
    p_explain.set_defaults(func=cmd_explain)

    return parser


# ═══════════════════════════════════════════════════════════════════════════
# MAIN
# ═══════════════════════════════════════════════════════════════════════════

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point for the RPL CLI.

    Parameters
    ----------
    argv : sequence of str, optional
        Command-line arguments. Defaults to sys.argv[1:].

    Returns
    -------
    int
        Exit code (see module docstring).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    _configure_logging(args)
    try:
        return args.func(args)
    except KeyboardInterrupt:
        sys.stderr.write("\nInterrupted.\n")
        return 130
    except BrokenPipeError:
        devnull = os.open(os.devnull, os.O_WRONLY)
        os.dup2(devnull, sys.stdout.fileno())
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
