"""rpl/ast.py – AST definitions for the RPL pattern language.

A pattern file holds one or more ``(pattern ...)`` declarations.  Each
declaration names a set of metavariables (typed holes) and a body of
templates that must all be matched by one function's MIR, plus optional
``(not ...)`` regions whose contents must *not* be matchable.

Design invariants
-----------------
* Every node is a frozen dataclass; children are tuples.
* Every node that can be reported on carries a ``SourcePos``.  Positions
  are excluded from equality so that ``parse(unparse(ast)) == ast`` holds.
* Operation names and type names are kept as *strings* here.  Resolving
  them against the built-in vocabulary is the job of :mod:`rpl.lowering`.

Module layout
-------------
§1  Common: positions, metavariables, severities
§2  Operand, target and type templates
§3  Body items
§4  Declarations
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Optional, Tuple, Union

from rpl.errors import SourcePos

# ════════════════════════════════════════════════════════════════════════
# §1  Common
# ════════════════════════════════════════════════════════════════════════

#: Position of nodes synthesised in code rather than parsed.
NO_POS = SourcePos()


class MetaVarKind(Enum):
    """What a metavariable may be bound to."""

    PLACE = "place"
    TYPE = "type"
    CONST = "const"
    BLOCK = "block"


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"
    STYLE = "style"
    PERFORMANCE = "performance"
    PORTABILITY = "portability"
    INFORMATION = "information"


@dataclass(frozen=True, slots=True)
class MetaVarDecl:
    name: str
    kind: MetaVarKind
    loc: SourcePos = field(default=NO_POS, repr=False, compare=False)


# ════════════════════════════════════════════════════════════════════════
# §2  Templates
# ════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Wildcard:
    """``_`` – matches anything and binds nothing."""


@dataclass(frozen=True, slots=True)
class MetaRef:
    """``?name`` – a reference to a declared metavariable."""

    name: str
    loc: SourcePos = field(default=NO_POS, repr=False, compare=False)


@dataclass(frozen=True, slots=True)
class Literal:
    """An integer, float, string or boolean constant."""

    value: Union[int, float, str, bool]


@dataclass(frozen=True, slots=True)
class Deref:
    """``(deref <operand>)`` – a place whose last projection is ``*``."""

    inner: "OperandTemplate"


@dataclass(frozen=True, slots=True)
class FieldOf:
    """``(field <operand> N)`` – a place whose last projection is ``.N``."""

    inner: "OperandTemplate"
    index: int


OperandTemplate = Union[Wildcard, MetaRef, Literal, Deref, FieldOf]

#: Terminator successor templates: ``_``, ``?block`` or a block number.
TargetTemplate = Union[Wildcard, MetaRef, Literal]


@dataclass(frozen=True, slots=True)
class TypeName:
    """A bare type symbol such as ``i32``; resolved during lowering."""

    name: str
    loc: SourcePos = field(default=NO_POS, repr=False, compare=False)


@dataclass(frozen=True, slots=True)
class TypeCtor:
    """``(ref T)``, ``(tuple A B)``, ``(adt Vec T)`` ...

    ``name`` is only set for ``adt``.
    """

    ctor: str
    args: Tuple["TypeExpr", ...] = ()
    name: Optional[str] = None
    loc: SourcePos = field(default=NO_POS, repr=False, compare=False)


TypeExpr = Union[Wildcard, MetaRef, TypeName, TypeCtor]


# ════════════════════════════════════════════════════════════════════════
# §3  Body items
# ════════════════════════════════════════════════════════════════════════


class Relation(Enum):
    """Control-edge relations between two labelled templates."""

    PRECEDES = "precedes"          # first can reach second along the CFG
    UNIQUE_PRED = "unique-pred"    # first's block is the only predecessor of second's
    ONLY_THROUGH = "only-through"  # first is reached from entry only through second
    EDGE = "edge"                  # second's block is a direct successor of first's


@dataclass(frozen=True, slots=True)
class StmtTemplate:
    """``(stmt L (op operand...) [(in ?bb)])``."""

    label: str
    op: str
    operands: Tuple[OperandTemplate, ...] = ()
    block: Optional[str] = None
    loc: SourcePos = field(default=NO_POS, repr=False, compare=False)


@dataclass(frozen=True, slots=True)
class TermTemplate:
    """``(term L (op operand...) [(targets t...)] [(in ?bb)])``.

    ``targets`` of ``None`` means the successor list is unconstrained.
    """

    label: str
    op: str
    operands: Tuple[OperandTemplate, ...] = ()
    targets: Optional[Tuple[TargetTemplate, ...]] = None
    block: Optional[str] = None
    loc: SourcePos = field(default=NO_POS, repr=False, compare=False)


@dataclass(frozen=True, slots=True)
class BlockTemplate:
    """``(block L ?bb)`` – binds a whole basic block."""

    label: str
    metavar: str
    loc: SourcePos = field(default=NO_POS, repr=False, compare=False)


@dataclass(frozen=True, slots=True)
class OrderConstraint:
    relation: Relation
    first: str
    second: str
    loc: SourcePos = field(default=NO_POS, repr=False, compare=False)


@dataclass(frozen=True, slots=True)
class TypeConstraint:
    """``(type-of ?x T)``."""

    metavar: str
    type_expr: TypeExpr
    loc: SourcePos = field(default=NO_POS, repr=False, compare=False)


Template = Union[StmtTemplate, TermTemplate, BlockTemplate]


@dataclass(frozen=True, slots=True)
class Negate:
    """``(not item...)`` – a region that must have no match."""

    body: Tuple["BodyItem", ...]
    loc: SourcePos = field(default=NO_POS, repr=False, compare=False)


BodyItem = Union[StmtTemplate, TermTemplate, BlockTemplate, OrderConstraint, TypeConstraint, Negate]


# ════════════════════════════════════════════════════════════════════════
# §4  Declarations
# ════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class PatternDef:
    name: str
    metavars: Tuple[MetaVarDecl, ...] = ()
    body: Tuple[BodyItem, ...] = ()
    severity: Severity = Severity.WARNING
    message: Optional[str] = None
    description: Optional[str] = None
    primary: Optional[str] = None
    loc: SourcePos = field(default=NO_POS, repr=False, compare=False)

    def metavar(self, name: str) -> Optional[MetaVarDecl]:
        for decl in self.metavars:
            if decl.name == name:
                return decl
        return None

    def templates(self) -> Iterator[Template]:
        """Positive templates in declaration order."""
        for item in self.body:
            if isinstance(item, (StmtTemplate, TermTemplate, BlockTemplate)):
                yield item

    def negations(self) -> Iterator[Negate]:
        for item in self.body:
            if isinstance(item, Negate):
                yield item


@dataclass(frozen=True, slots=True)
class PatternFile:
    path: str
    patterns: Tuple[PatternDef, ...] = ()

    def find(self, name: str) -> Optional[PatternDef]:
        for p in self.patterns:
            if p.name == name:
                return p
        return None


__all__ = [
    "NO_POS",
    "MetaVarKind",
    "Severity",
    "MetaVarDecl",
    "Wildcard",
    "MetaRef",
    "Literal",
    "Deref",
    "FieldOf",
    "OperandTemplate",
    "TargetTemplate",
    "TypeName",
    "TypeCtor",
    "TypeExpr",
    "Relation",
    "StmtTemplate",
    "TermTemplate",
    "BlockTemplate",
    "OrderConstraint",
    "TypeConstraint",
    "Template",
    "Negate",
    "BodyItem",
    "PatternDef",
    "PatternFile",
]
