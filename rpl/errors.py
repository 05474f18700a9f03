# rpl/errors.py
"""
RPL Error Types

Error hierarchy for the pattern-language pipeline.  Every error carries a
structured :class:`ErrorCode` so that drivers can filter and count problems
without parsing messages.

Architecture Overview:
─────────────────────
┌─────────────────────────────────────────────────────────────────────────┐
│  RplError (base)                                                        │
│  ├── ParseError                 - pattern text malformed (one file)     │
│  ├── LoweringError              - pattern cannot be compiled            │
│  │   ├── UnresolvedSymbol       - name missing from the vocabulary      │
│  │   ├── CyclicMetavarConstraint- ordering constraints form a cycle     │
│  │   └── UnboundMetavar         - type constraint on an unbindable name │
│  ├── EngineError                - matching failed for one task          │
│  │   └── EngineTimeout          - step budget exhausted                 │
│  ├── RepresentationUnavailable  - no usable CFG for one function        │
│  └── PatternLibraryError        - no usable pattern at all (fatal)      │
└─────────────────────────────────────────────────────────────────────────┘

Error Codes:
────────────
  - RPL-1xxx: Parse errors
  - RPL-2xxx: Lowering errors
  - RPL-3xxx: Engine errors
  - RPL-4xxx: Representation errors
  - RPL-9xxx: Library / internal errors

Only :class:`PatternLibraryError` is fatal to a run; everything else is
collected and reported next to the diagnostics.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, unique
from typing import Any, Dict, Optional


@unique
class ErrorCode(Enum):
    # 1xxx parse
    SEXP_SYNTAX = "RPL-1001"
    UNBALANCED = "RPL-1002"
    UNEXPECTED_FORM = "RPL-1003"
    DUPLICATE_METAVAR = "RPL-1004"
    UNDECLARED_METAVAR = "RPL-1005"
    METAVAR_KIND = "RPL-1006"
    NESTED_NEGATION = "RPL-1007"
    DUPLICATE_LABEL = "RPL-1008"
    UNDEFINED_LABEL = "RPL-1009"
    DUPLICATE_PATTERN = "RPL-1010"
    UNREADABLE_FILE = "RPL-1011"
    # 2xxx lowering
    UNRESOLVED_SYMBOL = "RPL-2001"
    CYCLIC_CONSTRAINT = "RPL-2002"
    UNBOUND_METAVAR = "RPL-2003"
    # 3xxx engine
    TIMEOUT = "RPL-3001"
    # 4xxx representation
    REPRESENTATION_UNAVAILABLE = "RPL-4001"
    # 9xxx library
    NO_PATTERNS = "RPL-9001"

    @property
    def code(self) -> str:
        return self.value


@dataclass(frozen=True, slots=True)
class SourcePos:
    """Position inside a pattern file."""

    file: str = "<string>"
    offset: int = 0
    line: int = 1
    col: int = 1

    def __str__(self) -> str:
        return f"{self.file}:{self.line}:{self.col}"


class RplError(Exception):
    """Base class of every error raised by the pattern pipeline."""

    default_code: ErrorCode = ErrorCode.UNEXPECTED_FORM

    def __init__(
        self,
        message: str,
        *,
        code: Optional[ErrorCode] = None,
        pos: Optional[SourcePos] = None,
        pattern: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.pos = pos
        self.pattern = pattern

    def __str__(self) -> str:
        prefix = f"{self.pos}: " if self.pos is not None else ""
        where = f" (in pattern {self.pattern!r})" if self.pattern else ""
        return f"{prefix}[{self.code.code}] {self.message}{where}"

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "code": self.code.code,
            "kind": type(self).__name__,
            "message": self.message,
        }
        if self.pos is not None:
            out["location"] = {
                "file": self.pos.file,
                "offset": self.pos.offset,
                "line": self.pos.line,
                "column": self.pos.col,
            }
        if self.pattern:
            out["pattern"] = self.pattern
        return out


class ParseError(RplError):
    """Pattern text is malformed.

    ``expected`` describes what the parser was looking for at ``pos``.
    """

    default_code = ErrorCode.UNEXPECTED_FORM

    def __init__(
        self,
        message: str,
        *,
        expected: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        pos: Optional[SourcePos] = None,
        pattern: Optional[str] = None,
    ) -> None:
        if expected:
            message = f"{message}; expected {expected}"
        super().__init__(message, code=code, pos=pos, pattern=pattern)
        self.expected = expected


class LoweringError(RplError):
    default_code = ErrorCode.UNRESOLVED_SYMBOL


class UnresolvedSymbol(LoweringError):
    default_code = ErrorCode.UNRESOLVED_SYMBOL

    def __init__(self, symbol: str, namespace: str, **kwargs: Any) -> None:
        super().__init__(f"unknown {namespace} {symbol!r}", **kwargs)
        self.symbol = symbol
        self.namespace = namespace


class CyclicMetavarConstraint(LoweringError):
    default_code = ErrorCode.CYCLIC_CONSTRAINT


class UnboundMetavar(LoweringError):
    default_code = ErrorCode.UNBOUND_METAVAR


class EngineError(RplError):
    default_code = ErrorCode.TIMEOUT


class EngineTimeout(EngineError):
    """The step budget of one (function, pattern) search ran out."""

    default_code = ErrorCode.TIMEOUT

    def __init__(self, pattern: str, function: str, steps: int) -> None:
        super().__init__(
            f"step budget of {steps} exhausted in {function}",
            pattern=pattern,
        )
        self.function = function
        self.steps = steps


class RepresentationUnavailable(RplError):
    """The host could not provide a usable CFG for one function."""

    default_code = ErrorCode.REPRESENTATION_UNAVAILABLE

    def __init__(self, function: str, reason: str) -> None:
        super().__init__(f"{function}: {reason}")
        self.function = function
        self.reason = reason


class PatternLibraryError(RplError):
    """No usable pattern could be loaded."""

    default_code = ErrorCode.NO_PATTERNS


__all__ = [
    "ErrorCode",
    "SourcePos",
    "RplError",
    "ParseError",
    "LoweringError",
    "UnresolvedSymbol",
    "CyclicMetavarConstraint",
    "UnboundMetavar",
    "EngineError",
    "EngineTimeout",
    "PatternLibraryError",
    "RepresentationUnavailable",
]
