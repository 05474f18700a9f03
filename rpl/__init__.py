"""rpl: Rust Pattern Language bug-pattern checker.

This package matches hand-written bug patterns against the mid-level
representation (MIR) of compiled functions.  Patterns are S-expressions
naming statement, terminator and block templates with typed holes
(metavariables), ordering constraints between them, type constraints and
negated regions.

Submodules
----------
errors
    Exception hierarchy with structured ``RPL-XXXX`` error codes.

ast / parser
    Pattern AST (frozen dataclasses), the ``sexpdata``-based parser and
    the canonical unparser.

builtins / constraints / lowering
    The operation and type vocabulary, the compiled constraint
    structures, and AST → constraint lowering (resolution, cycle check,
    check scheduling).

matcher
    Backtracking search of one function's CFG for one compiled pattern.

library / driver / aggregator
    Content-hash-cached pattern loading, per-(function, pattern) task
    scheduling on ``concurrent.futures`` pools, and deterministic
    result aggregation.

__main__
    CLI entry-point with subcommands: ``check``, ``dump-sexp``, ``run``,
    ``explain``.

Usage
-----
Command-line::

    python -m rpl run --patterns patterns/ crate.mir.json
    python -m rpl --help

Programmatic::

    from rpl.library import load_library
    from rpl.driver import Analysis, AnalysisConfig
    from rpl_mir.loader import load_dump

    library, errors = load_library(["patterns/"])
    report = Analysis(library, AnalysisConfig(jobs=4)).run(
        [load_dump("crate.mir.json")], pattern_errors=errors)
    print(report.render_text())
"""

from __future__ import annotations

__version__: str = "0.1.0"
__all__: list[str] = [
    "__version__",
    "errors",
    "ast",
    "parser",
    "builtins",
    "constraints",
    "lowering",
    "matcher",
    "library",
    "driver",
    "aggregator",
]
