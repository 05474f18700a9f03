"""rpl/constraints.py – compiled constraint structures.

These are what :mod:`rpl.lowering` produces and :mod:`rpl.matcher`
consumes.  Compared to the AST every symbolic name has been resolved
(operation symbols to :class:`~rpl_mir.mir.OpKind`, type names to shapes),
metavariable references carry their declared kind, and the engine's work
schedule (which control-edge and type checks become decidable after which
node is bound) has been precomputed.

All structures are frozen so that one compiled library can be shared by
every matching task of a run.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple, Union

from rpl.ast import MetaVarKind, Relation, Severity
from rpl.errors import SourcePos
from rpl_mir.mir import OpKind, ProjectionElem, TypeKind

_NO_POS = SourcePos()


# ---------------------------------------------------------------------------
# Operand and type patterns
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class OpWild:
    pass


@dataclass(frozen=True, slots=True)
class OpVar:
    name: str
    kind: MetaVarKind


@dataclass(frozen=True, slots=True)
class OpLit:
    value: Union[int, float, str, bool]


@dataclass(frozen=True, slots=True)
class OpProj:
    """A place whose last projection step is ``elem`` and whose base matches ``inner``."""

    inner: "OperandPattern"
    elem: ProjectionElem


OperandPattern = Union[OpWild, OpVar, OpLit, OpProj]


@dataclass(frozen=True, slots=True)
class TyWild:
    pass


@dataclass(frozen=True, slots=True)
class TyVar:
    name: str


@dataclass(frozen=True, slots=True)
class TyShape:
    kind: TypeKind
    name: str = ""
    args: Tuple["TypePattern", ...] = ()


TypePattern = Union[TyWild, TyVar, TyShape]


# ---------------------------------------------------------------------------
# Constraint nodes
# ---------------------------------------------------------------------------


class NodeKind(Enum):
    STATEMENT = "statement"
    TERMINATOR = "terminator"
    BLOCK = "block"


@dataclass(frozen=True, slots=True)
class ConstraintNode:
    """One template to be bound to a CFG entity.

    ``op`` is ``None`` for ``BLOCK`` nodes.  ``block_var`` names the block
    metavariable bound to the containing block (``(in ?bb)``) or, for
    ``BLOCK`` nodes, to the block itself.
    """

    label: str
    kind: NodeKind
    op: Optional[OpKind] = None
    operands: Tuple[OperandPattern, ...] = ()
    targets: Optional[Tuple[OperandPattern, ...]] = None
    block_var: Optional[str] = None
    loc: SourcePos = field(default=_NO_POS, repr=False, compare=False)


@dataclass(frozen=True, slots=True)
class ControlEdge:
    """Ordering requirement between the entities bound to two labels."""

    relation: Relation
    source: str
    target: str


@dataclass(frozen=True, slots=True)
class TypeCheck:
    subject: str
    shape: TypePattern


@dataclass(frozen=True, slots=True)
class ConstraintBody:
    """A conjunction of nodes, control edges and type checks.

    ``edge_schedule[i]`` / ``type_schedule[i]`` list the indices of the
    edges / type checks that become decidable once ``nodes[i]`` is bound.
    ``pre_edges`` / ``pre_types`` are decidable before any node of this body
    is bound; they only occur in negated bodies, whose outer labels and
    metavariables are already fixed when the body is searched.
    """

    nodes: Tuple[ConstraintNode, ...] = ()
    edges: Tuple[ControlEdge, ...] = ()
    type_checks: Tuple[TypeCheck, ...] = ()
    edge_schedule: Tuple[Tuple[int, ...], ...] = ()
    type_schedule: Tuple[Tuple[int, ...], ...] = ()
    pre_edges: Tuple[int, ...] = ()
    pre_types: Tuple[int, ...] = ()


@dataclass(frozen=True, slots=True)
class CompiledPattern:
    name: str
    metavars: Tuple[Tuple[str, MetaVarKind], ...]
    positive: ConstraintBody
    negatives: Tuple[ConstraintBody, ...] = ()
    primary: Optional[str] = None
    severity: Severity = Severity.WARNING
    message: Optional[str] = None
    description: Optional[str] = None
    source: str = "<string>"
    loc: SourcePos = field(default=_NO_POS, repr=False, compare=False)

    def metavar_kinds(self) -> Dict[str, MetaVarKind]:
        return dict(self.metavars)

    @property
    def title(self) -> str:
        return self.message or self.description or self.name


__all__ = [
    "OpWild",
    "OpVar",
    "OpLit",
    "OpProj",
    "OperandPattern",
    "TyWild",
    "TyVar",
    "TyShape",
    "TypePattern",
    "NodeKind",
    "ConstraintNode",
    "ControlEdge",
    "TypeCheck",
    "ConstraintBody",
    "CompiledPattern",
]
