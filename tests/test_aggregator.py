# tests/test_aggregator.py
"""
Tests for result aggregation and report rendering.
"""

import threading

from rpl.aggregator import Diagnostic, Problem, ProblemKind, Report, ResultAggregator
from rpl.ast import Severity
from rpl.errors import CyclicMetavarConstraint, ErrorCode, SourcePos
from rpl.matcher import MatchResult
from rpl_mir.mir import Span


def _match(pattern="p", function="demo::f", line=1, column=1, file="src/lib.rs",
           bindings=(("?x", "_1"),), severity=Severity.WARNING):
    return MatchResult(
        pattern=pattern,
        function=function,
        location=Span(file, line, column),
        site="bb0[0]",
        bindings=bindings,
        severity=severity,
        message="something odd",
    )


class TestDiagnostic:

    def test_from_match(self):
        d = Diagnostic.from_match(_match(line=4, column=5))
        assert d.pattern == "p"
        assert d.location == Span("src/lib.rs", 4, 5)
        assert d.bindings == (("?x", "_1"),)

    def test_gcc_format(self):
        d = Diagnostic.from_match(_match(line=4, column=5, bindings=(("?p", "_1"), ("?d", "_2"))))
        assert d.to_gcc_format() == (
            "src/lib.rs:4:5: warning: [p] something odd (in demo::f; ?p=_1; ?d=_2)"
        )

    def test_to_dict(self):
        d = Diagnostic.from_match(_match(severity=Severity.ERROR)).to_dict()
        assert d["kind"] == "bug-matched"
        assert d["severity"] == "error"
        assert d["location"] == {"file": "src/lib.rs", "line": 1, "column": 1}
        assert d["bindings"] == {"?x": "_1"}
        assert d["site"] == "bb0[0]"


class TestProblem:

    def test_from_error(self):
        err = CyclicMetavarConstraint("cannot be linearized",
                                      pos=SourcePos("a.rpl", 0, 3, 7), pattern="loopy")
        p = Problem.from_error(err, ProblemKind.PATTERN_ERROR)
        assert p.code == ErrorCode.CYCLIC_CONSTRAINT.code
        assert p.pattern == "loopy"
        assert p.location == "a.rpl:3:7"
        assert p.to_dict() == {
            "kind": "pattern-error",
            "code": "RPL-2002",
            "message": "cannot be linearized",
            "pattern": "loopy",
            "location": "a.rpl:3:7",
        }

    def test_unavailable(self):
        p = Problem.unavailable("demo::g", "const fn", "src/g.rs")
        assert p.kind is ProblemKind.ANALYSIS_INCOMPLETE
        assert p.code == "RPL-4001"
        assert "const fn" in p.message
        assert p.to_gcc_format().startswith("src/g.rs: note: [RPL-4001] analysis-incomplete:")

    def test_gcc_format_names_pattern_and_function(self):
        p = Problem(ProblemKind.ANALYSIS_INCOMPLETE, "RPL-3001", "budget", pattern="p", function="f")
        assert p.to_gcc_format() == "f: note: [RPL-3001] analysis-incomplete: budget (p on f)"


class TestAggregator:

    def test_sorted_by_location_then_pattern(self):
        agg = ResultAggregator()
        agg.add_matches([_match(pattern="b", line=2), _match(pattern="z", line=1)])
        agg.add_matches([_match(pattern="a", line=2), _match(file="src/a.rs", line=9)])
        report = agg.finalize()
        assert [(d.location.file, d.location.line, d.pattern) for d in report.diagnostics] == [
            ("src/a.rs", 9, "p"),
            ("src/lib.rs", 1, "z"),
            ("src/lib.rs", 2, "a"),
            ("src/lib.rs", 2, "b"),
        ]
        assert len(agg) == 4

    def test_duplicates_are_kept(self):
        agg = ResultAggregator()
        agg.add_matches([_match(), _match()])
        assert len(agg.finalize().diagnostics) == 2

    def test_problems_sorted(self):
        agg = ResultAggregator()
        agg.add_problem(Problem.unavailable("b", "x"))
        agg.add_problem(Problem(ProblemKind.PATTERN_ERROR, "RPL-2001", "m", pattern="q"))
        agg.add_problem(Problem.unavailable("a", "x"))
        kinds = [(p.kind.value, p.function) for p in agg.finalize().problems]
        assert kinds == [
            ("analysis-incomplete", "a"),
            ("analysis-incomplete", "b"),
            ("pattern-error", None),
        ]

    def test_concurrent_adds(self):
        agg = ResultAggregator()

        def worker(n):
            for i in range(50):
                agg.add_matches([_match(function=f"f{n}", line=i + 1)])

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        report = agg.finalize()
        assert len(report.diagnostics) == 400
        keys = [d.sort_key() for d in report.diagnostics]
        assert keys == sorted(keys)


class TestReport:

    def test_summary(self):
        agg = ResultAggregator()
        agg.add_matches([_match(), _match(severity=Severity.ERROR), _match(line=3)])
        agg.add_problem(Problem.unavailable("g", "x"))
        report = agg.finalize()
        assert report.has_matches
        assert report.count_by_severity() == {"warning": 2, "error": 1}
        summary = report.to_dict()["summary"]
        assert summary == {"matches": 3, "problems": 1, "by_severity": {"warning": 2, "error": 1}}

    def test_empty(self):
        report = Report()
        assert not report.has_matches
        assert report.render_text() == ""
        assert report.to_dict()["diagnostics"] == []

    def test_render_text_lists_diagnostics_before_problems(self):
        agg = ResultAggregator()
        agg.add_problem(Problem.unavailable("g", "x", "src/g.rs"))
        agg.add_matches([_match()])
        lines = agg.finalize().render_text().splitlines()
        assert lines[0].startswith("src/lib.rs:1:1: warning:")
        assert lines[1].startswith("src/g.rs: note:")
