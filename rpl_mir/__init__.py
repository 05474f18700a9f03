"""rpl_mir: mid-level program representation for RPL.

The matching engine only ever sees the shapes defined here: functions as
arena-indexed control-flow graphs of basic blocks, statements and
terminators tagged with an :class:`~rpl_mir.mir.OpKind`, places with
projection paths, and structural type shapes.

Submodules
----------
mir
    The representation itself (``Function``, ``BasicBlock``, ``Place`` ...).
loader
    JSON dump reader used as the adapter to the host toolchain.
"""

from __future__ import annotations

from rpl_mir.mir import (
    BasicBlock,
    BlockId,
    Const,
    Function,
    Location,
    OpKind,
    Place,
    Span,
    Statement,
    Terminator,
    TypeKind,
    TypeShape,
)
from rpl_mir.loader import (
    MirDump,
    RepresentationUnavailable,
    UnavailableFunction,
    load_dump,
    loads_dump,
)

__all__ = [
    "BasicBlock",
    "BlockId",
    "Const",
    "Function",
    "Location",
    "OpKind",
    "Place",
    "Span",
    "Statement",
    "Terminator",
    "TypeKind",
    "TypeShape",
    "MirDump",
    "RepresentationUnavailable",
    "UnavailableFunction",
    "load_dump",
    "loads_dump",
]
