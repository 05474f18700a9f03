"""
rpl/driver.py
=============

Schedules one matching task per (function, pattern) pair and feeds the
outcomes into a :class:`~rpl.aggregator.ResultAggregator`.

Tasks share only read-only inputs (the frozen pattern library and the
functions), so they can run on a thread pool, a process pool or serially
without changing the report; the aggregator sorts everything at the end.

Functions whose MIR is unavailable never reach the pool: they are turned
into ``analysis-incomplete`` problems up front.  A task whose step budget
runs out is reported the same way and does not affect other tasks.
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple

from rpl.aggregator import Problem, ProblemKind, Report, ResultAggregator
from rpl.constraints import CompiledPattern
from rpl.errors import EngineTimeout, ErrorCode, RplError
from rpl.library import CompiledLibrary
from rpl.matcher import EngineConfig, MatchResult, match_function
from rpl_mir.loader import MirDump, UnavailableFunction
from rpl_mir.mir import Function

logger = logging.getLogger(__name__)

EXECUTORS = ("thread", "process", "serial")


@dataclass
class AnalysisConfig:
    """Tuning knobs for a whole analysis run."""
    jobs: int = 0                      # 0: one worker per CPU
    executor: str = "thread"
    engine: EngineConfig = field(default_factory=EngineConfig)
    fail_on_match: bool = False

    def validate(self) -> List[str]:
        """Return a list of validation warnings (empty if valid)."""
        warnings: List[str] = []
        if self.jobs < 0:
            warnings.append("jobs must be non-negative")
        if self.executor not in EXECUTORS:
            warnings.append(f"executor must be one of {', '.join(EXECUTORS)}")
        warnings.extend(self.engine.validate())
        return warnings

    def worker_count(self) -> int:
        if self.jobs > 0:
            return self.jobs
        return os.cpu_count() or 1


@dataclass(frozen=True, slots=True)
class TaskOutcome:
    """What one (pattern, function) task produced.

    ``timed_out`` is set instead of raising, so that outcomes can cross
    process boundaries as plain data.
    """
    pattern: str
    function: str
    matches: Tuple[MatchResult, ...] = ()
    timed_out: bool = False
    steps: int = 0


def run_task(pattern: CompiledPattern, function: Function, config: EngineConfig) -> TaskOutcome:
    """Match one pattern against one function; module-level so it pickles."""
    try:
        matches = match_function(pattern, function, config)
    except EngineTimeout as e:
        return TaskOutcome(pattern.name, function.name, timed_out=True, steps=e.steps)
    return TaskOutcome(pattern.name, function.name, tuple(matches))


class _SerialExecutor:
    """Runs each submitted call immediately; mirrors the pool interface used below."""

    def map(self, fn, *iterables):
        return map(fn, *iterables)

    def __enter__(self) -> _SerialExecutor:
        return self

    def __exit__(self, *exc) -> None:
        return None


class Analysis:
    """Runs a compiled library over a set of functions.

    Usage::

        library, errors = load_library(["patterns/"])
        analysis = Analysis(library, AnalysisConfig(jobs=4))
        report = analysis.run([load_dump("crate.mir.json")], pattern_errors=errors)
    """

    def __init__(
        self,
        library: CompiledLibrary,
        config: Optional[AnalysisConfig] = None,
    ) -> None:
        self.library = library
        self.config = config or AnalysisConfig()
        for warning in self.config.validate():
            logger.warning("config: %s", warning)

    def _executor(self):
        kind = self.config.executor
        workers = self.config.worker_count()
        if kind == "process":
            return ProcessPoolExecutor(max_workers=workers)
        if kind == "serial" or workers == 1:
            return _SerialExecutor()
        return ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rpl")

    def run(
        self,
        dumps: Iterable[MirDump],
        *,
        pattern_errors: Sequence[RplError] = (),
    ) -> Report:
        functions: List[Function] = []
        unavailable: List[UnavailableFunction] = []
        for dump in dumps:
            functions.extend(dump.functions)
            unavailable.extend(dump.unavailable)
        return self.run_functions(functions, unavailable=unavailable,
                                  pattern_errors=pattern_errors)

    def run_functions(
        self,
        functions: Sequence[Function],
        *,
        unavailable: Sequence[UnavailableFunction] = (),
        pattern_errors: Sequence[RplError] = (),
    ) -> Report:
        aggregator = ResultAggregator()
        for err in pattern_errors:
            aggregator.add_error(err, ProblemKind.PATTERN_ERROR)
        for fn in unavailable:
            logger.warning("skipping %s: representation unavailable (%s)", fn.name, fn.reason)
            aggregator.add_problem(Problem.unavailable(fn.name, fn.reason, fn.file))

        pairs = [(p, f) for f in functions for p in self.library.patterns]
        logger.info("matching %d pattern(s) against %d function(s) (%d task(s), %s executor)",
                    len(self.library), len(functions), len(pairs), self.config.executor)
        engine = self.config.engine
        with self._executor() as pool:
            outcomes = pool.map(
                run_task,
                [p for p, _ in pairs],
                [f for _, f in pairs],
                [engine] * len(pairs),
            )
            for outcome in outcomes:
                self._collect(aggregator, outcome)
        return aggregator.finalize()

    def _collect(self, aggregator: ResultAggregator, outcome: TaskOutcome) -> None:
        if outcome.timed_out:
            logger.warning("pattern %s skipped for %s: step budget of %d exhausted",
                           outcome.pattern, outcome.function, outcome.steps)
            aggregator.add_problem(Problem(
                kind=ProblemKind.ANALYSIS_INCOMPLETE,
                code=ErrorCode.TIMEOUT.code,
                message=f"step budget of {outcome.steps} exhausted; pattern skipped for this function",
                pattern=outcome.pattern,
                function=outcome.function,
            ))
            return
        aggregator.add_matches(outcome.matches)


__all__ = [
    "EXECUTORS",
    "AnalysisConfig",
    "TaskOutcome",
    "run_task",
    "Analysis",
]
