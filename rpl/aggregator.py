"""
rpl/aggregator.py
=================

Collects match results and problems from concurrently running tasks and
produces a deterministically ordered report.

Ordering
--------
Diagnostics are sorted by (source file, line, column, pattern name,
function name, rendered bindings); problems by (kind, pattern, function,
message).  The order therefore never depends on task scheduling.

Output
------
:meth:`Report.to_dict` gives a JSON-ready structure, :meth:`Report.render_text`
GCC-style lines::

    src/lib.rs:12:5: warning: [use-after-free] read through freed pointer (in demo::f; ?p=_1)
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

from rpl.ast import Severity
from rpl.errors import ErrorCode, RplError
from rpl.matcher import MatchResult
from rpl_mir.mir import Span

logger = logging.getLogger(__name__)


class ProblemKind(Enum):
    PATTERN_ERROR = "pattern-error"
    ANALYSIS_INCOMPLETE = "analysis-incomplete"
    BUG_MATCHED = "bug-matched"


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """
    One reported bug-pattern match.

    Attributes:
        pattern: Name of the pattern that matched
        function: Fully qualified name of the analyzed function
        location: Source position of the primary label
        site: CFG address of the primary label (``bb3[1]``)
        severity: Severity declared by the pattern
        message: Human-readable description of the issue
        bindings: Rendered metavariable bindings, declaration order
    """
    pattern: str
    function: str
    location: Span
    site: str
    severity: Severity
    message: str
    bindings: Tuple[Tuple[str, str], ...] = ()

    @classmethod
    def from_match(cls, m: MatchResult) -> Diagnostic:
        return cls(
            pattern=m.pattern,
            function=m.function,
            location=m.location,
            site=m.site,
            severity=m.severity,
            message=m.message,
            bindings=m.bindings,
        )

    def sort_key(self) -> Tuple[Any, ...]:
        loc = self.location
        return (loc.file, loc.line, loc.column, self.pattern, self.function, self.bindings)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "kind": ProblemKind.BUG_MATCHED.value,
            "pattern": self.pattern,
            "function": self.function,
            "severity": self.severity.value,
            "message": self.message,
            "location": {
                "file": self.location.file,
                "line": self.location.line,
                "column": self.location.column,
            },
            "site": self.site,
            "bindings": dict(self.bindings),
        }

    def to_gcc_format(self) -> str:
        """Format as GCC-style diagnostic string."""
        context = [f"in {self.function}"]
        context.extend(f"{k}={v}" for k, v in self.bindings)
        return (f"{self.location}: {self.severity.value}: [{self.pattern}] "
                f"{self.message} ({'; '.join(context)})")


@dataclass(frozen=True, slots=True)
class Problem:
    """Something that made the analysis less than complete."""
    kind: ProblemKind
    code: str
    message: str
    pattern: Optional[str] = None
    function: Optional[str] = None
    location: Optional[str] = None

    @classmethod
    def from_error(cls, err: RplError, kind: ProblemKind, *,
                   function: Optional[str] = None) -> Problem:
        return cls(
            kind=kind,
            code=err.code.code,
            message=err.message,
            pattern=err.pattern,
            function=function or getattr(err, "function", None),
            location=str(err.pos) if err.pos is not None else None,
        )

    @classmethod
    def unavailable(cls, name: str, reason: str, file: Optional[str] = None) -> Problem:
        return cls(
            kind=ProblemKind.ANALYSIS_INCOMPLETE,
            code=ErrorCode.REPRESENTATION_UNAVAILABLE.code,
            message=f"representation unavailable: {reason}",
            function=name,
            location=file,
        )

    def sort_key(self) -> Tuple[str, ...]:
        return (self.kind.value, self.pattern or "", self.function or "", self.code, self.message)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
        }
        if self.pattern:
            result["pattern"] = self.pattern
        if self.function:
            result["function"] = self.function
        if self.location:
            result["location"] = self.location
        return result

    def to_gcc_format(self) -> str:
        where = self.location or self.function or self.pattern or "rpl"
        subject = ""
        if self.pattern and self.function:
            subject = f" ({self.pattern} on {self.function})"
        return f"{where}: note: [{self.code}] {self.kind.value}: {self.message}{subject}"


@dataclass(frozen=True, slots=True)
class Report:
    diagnostics: Tuple[Diagnostic, ...] = ()
    problems: Tuple[Problem, ...] = ()

    @property
    def has_matches(self) -> bool:
        return bool(self.diagnostics)

    def count_by_severity(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for d in self.diagnostics:
            counts[d.severity.value] = counts.get(d.severity.value, 0) + 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "problems": [p.to_dict() for p in self.problems],
            "summary": {
                "matches": len(self.diagnostics),
                "problems": len(self.problems),
                "by_severity": self.count_by_severity(),
            },
        }

    def render_text(self) -> str:
        lines = [d.to_gcc_format() for d in self.diagnostics]
        lines.extend(p.to_gcc_format() for p in self.problems)
        return "\n".join(lines)


class ResultAggregator:
    """Thread-safe sink for task outcomes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._diagnostics: List[Diagnostic] = []
        self._problems: List[Problem] = []

    def add_matches(self, matches: Iterable[MatchResult]) -> None:
        diags = [Diagnostic.from_match(m) for m in matches]
        with self._lock:
            self._diagnostics.extend(diags)

    def add_problem(self, problem: Problem) -> None:
        with self._lock:
            self._problems.append(problem)

    def add_error(self, err: RplError, kind: ProblemKind, *,
                  function: Optional[str] = None) -> None:
        self.add_problem(Problem.from_error(err, kind, function=function))

    def __len__(self) -> int:
        with self._lock:
            return len(self._diagnostics)

    def finalize(self) -> Report:
        """Snapshot everything collected so far, in canonical order."""
        with self._lock:
            diags = sorted(self._diagnostics, key=Diagnostic.sort_key)
            problems = sorted(self._problems, key=Problem.sort_key)
        logger.debug("report: %d diagnostic(s), %d problem(s)", len(diags), len(problems))
        return Report(tuple(diags), tuple(problems))


__all__ = [
    "ProblemKind",
    "Diagnostic",
    "Problem",
    "Report",
    "ResultAggregator",
]
