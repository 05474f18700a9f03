"""
rpl_mir.mir
===========

Mid-level representation (MIR) of one compiled function, as handed to the
matching engine by the host toolchain.

A :class:`Function` is a control-flow graph whose nodes are
:class:`BasicBlock`s.  Blocks live in an arena (a tuple) and refer to each
other only through integer indices, so cyclic CFGs need no back-pointers
and can be shared read-only between worker threads or pickled to worker
processes.

Public API
----------
    TypeKind / TypeShape   - structural type descriptors
    ProjectionElem / Place - storage locations
    Const                  - constant operands
    OpKind                 - closed set of statement / terminator kinds
    Statement / Terminator - the two kinds of CFG entities
    BasicBlock / Function  - the CFG itself
    Location / BlockId     - addresses of CFG entities
    Span                   - source positions

Typical usage::

    from rpl_mir.mir import Function, BasicBlock, Statement, Terminator, OpKind, Place, Const

    bb0 = BasicBlock(0, (Statement(OpKind.USE, (Place(1), Const(5))),),
                     Terminator(OpKind.RETURN))
    fn = Function("demo::f", [bb0], local_types=[UNIT, prim("i32")])
    for loc, stmt in fn.statements():
        print(loc, stmt)

Implementation notes
--------------------
* For assignment kinds the first operand is the destination place.
* The terminator of block ``b`` sits at ``Location(b, len(statements))``
  so that statements and terminators share a single total order inside a
  block.
* Predecessor sets are computed once at construction time.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import (
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Tuple,
    Union,
)

# ---------------------------------------------------------------------------
# Source positions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True, order=True)
class Span:
    """A position in the analyzed program's source."""

    file: str = "<unknown>"
    line: int = 0
    column: int = 0

    def __str__(self) -> str:
        if self.column > 0:
            return f"{self.file}:{self.line}:{self.column}"
        return f"{self.file}:{self.line}"


NO_SPAN = Span()


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


class TypeKind(enum.Enum):
    """Constructor of a :class:`TypeShape`."""

    PRIM = "prim"
    REF = "ref"
    REF_MUT = "ref-mut"
    PTR = "ptr"
    PTR_MUT = "ptr-mut"
    SLICE = "slice"
    ARRAY = "array"
    TUPLE = "tuple"
    ADT = "adt"
    FN = "fn"


_POINTER_KINDS = frozenset({TypeKind.REF, TypeKind.REF_MUT, TypeKind.PTR, TypeKind.PTR_MUT})


@dataclass(frozen=True, slots=True)
class TypeShape:
    """Structural type descriptor.

    ``name`` is only meaningful for ``PRIM`` (``"i32"``, ``"bool"`` ...) and
    ``ADT`` (``"Vec"``, ``"alloc::string::String"`` ...).  Concrete shapes
    never contain wildcards; those only exist on the pattern side.
    """

    kind: TypeKind
    name: str = ""
    args: Tuple["TypeShape", ...] = ()

    @property
    def is_pointer(self) -> bool:
        return self.kind in _POINTER_KINDS

    def pointee(self) -> Optional[TypeShape]:
        """The target type of a reference or raw pointer."""
        if self.kind in _POINTER_KINDS and self.args:
            return self.args[0]
        return None

    def __str__(self) -> str:
        k = self.kind
        if k is TypeKind.PRIM:
            return self.name
        if k is TypeKind.REF:
            return f"&{self.args[0]}"
        if k is TypeKind.REF_MUT:
            return f"&mut {self.args[0]}"
        if k is TypeKind.PTR:
            return f"*const {self.args[0]}"
        if k is TypeKind.PTR_MUT:
            return f"*mut {self.args[0]}"
        if k is TypeKind.SLICE:
            return f"[{self.args[0]}]"
        if k is TypeKind.ARRAY:
            return f"[{self.args[0]}; _]"
        if k is TypeKind.TUPLE:
            inner = ", ".join(str(a) for a in self.args)
            return f"({inner},)" if len(self.args) == 1 else f"({inner})"
        if k is TypeKind.ADT:
            if not self.args:
                return self.name
            return f"{self.name}<{', '.join(str(a) for a in self.args)}>"
        if k is TypeKind.FN:
            return f"fn({', '.join(str(a) for a in self.args)})"
        raise AssertionError(f"unhandled type kind {k!r}")


def prim(name: str) -> TypeShape:
    return TypeShape(TypeKind.PRIM, name)


def ref(inner: TypeShape) -> TypeShape:
    return TypeShape(TypeKind.REF, args=(inner,))


def ref_mut(inner: TypeShape) -> TypeShape:
    return TypeShape(TypeKind.REF_MUT, args=(inner,))


def ptr(inner: TypeShape) -> TypeShape:
    return TypeShape(TypeKind.PTR, args=(inner,))


def ptr_mut(inner: TypeShape) -> TypeShape:
    return TypeShape(TypeKind.PTR_MUT, args=(inner,))


def adt(name: str, *args: TypeShape) -> TypeShape:
    return TypeShape(TypeKind.ADT, name, tuple(args))


def tuple_of(*args: TypeShape) -> TypeShape:
    return TypeShape(TypeKind.TUPLE, args=tuple(args))


UNIT = tuple_of()


# ---------------------------------------------------------------------------
# Operands
# ---------------------------------------------------------------------------


class ProjectionKind(enum.Enum):
    DEREF = "deref"
    FIELD = "field"
    INDEX = "index"
    DOWNCAST = "downcast"


@dataclass(frozen=True, slots=True)
class ProjectionElem:
    """One step of a place projection.

    ``index`` is the field number for ``FIELD``, the index local for
    ``INDEX`` and the variant number for ``DOWNCAST``.
    """

    kind: ProjectionKind
    index: Optional[int] = None


DEREF = ProjectionElem(ProjectionKind.DEREF)


@dataclass(frozen=True, slots=True)
class Place:
    """A storage location: a local plus a projection path."""

    local: int
    projection: Tuple[ProjectionElem, ...] = ()

    def base(self) -> Optional[Place]:
        """The place with the last projection step removed."""
        if not self.projection:
            return None
        return Place(self.local, self.projection[:-1])

    def last(self) -> Optional[ProjectionElem]:
        return self.projection[-1] if self.projection else None

    def deref(self) -> Place:
        return Place(self.local, self.projection + (DEREF,))

    def field(self, index: int) -> Place:
        return Place(self.local, self.projection + (ProjectionElem(ProjectionKind.FIELD, index),))

    def __str__(self) -> str:
        text = f"_{self.local}"
        for elem in self.projection:
            if elem.kind is ProjectionKind.DEREF:
                text = f"(*{text})"
            elif elem.kind is ProjectionKind.FIELD:
                text = f"{text}.{elem.index}"
            elif elem.kind is ProjectionKind.INDEX:
                text = f"{text}[_{elem.index}]"
            else:
                text = f"({text} as #{elem.index})"
        return text


@dataclass(frozen=True, slots=True)
class Const:
    """A constant operand; string values also name callees."""

    value: Union[int, float, str, bool]
    ty: Optional[TypeShape] = None

    def __str__(self) -> str:
        if isinstance(self.value, str):
            return f"const {self.value!r}"
        if isinstance(self.value, bool):
            return f"const {str(self.value).lower()}"
        return f"const {self.value}"


Operand = Union[Place, Const]


@dataclass(frozen=True, slots=True, order=True)
class BlockId:
    """A basic block index used as a bound value."""

    index: int

    def __str__(self) -> str:
        return f"bb{self.index}"


@dataclass(frozen=True, slots=True, order=True)
class Location:
    """Address of a statement or terminator: ``bbN[i]``."""

    block: int
    index: int

    def __str__(self) -> str:
        return f"bb{self.block}[{self.index}]"


# ---------------------------------------------------------------------------
# Statements & terminators
# ---------------------------------------------------------------------------


class OpKind(enum.Enum):
    """Operation tag shared by statements and terminators."""

    # assignment rvalues (operands[0] is the destination)
    USE = "use"
    MOVE = "move"
    REF = "ref"
    REF_MUT = "ref-mut"
    ADDR_OF = "addr-of"
    ADDR_OF_MUT = "addr-of-mut"
    CAST = "cast"
    ADD = "add"
    SUB = "sub"
    MUL = "mul"
    DIV = "div"
    REM = "rem"
    BIT_AND = "bit-and"
    BIT_OR = "bit-or"
    BIT_XOR = "bit-xor"
    SHL = "shl"
    SHR = "shr"
    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LE = "le"
    GT = "gt"
    GE = "ge"
    NEG = "neg"
    NOT = "not"
    LEN = "len"
    DISCRIMINANT = "discriminant"
    AGGREGATE = "aggregate"
    # other statements
    STORAGE_LIVE = "storage-live"
    STORAGE_DEAD = "storage-dead"
    NOP = "nop"
    # terminators
    GOTO = "goto"
    SWITCH_INT = "switch-int"
    RETURN = "return"
    UNREACHABLE = "unreachable"
    RESUME = "resume"
    DROP = "drop"
    CALL = "call"
    ASSERT = "assert"

    @property
    def is_terminator(self) -> bool:
        return self in TERMINATOR_KINDS


TERMINATOR_KINDS: FrozenSet[OpKind] = frozenset({
    OpKind.GOTO,
    OpKind.SWITCH_INT,
    OpKind.RETURN,
    OpKind.UNREACHABLE,
    OpKind.RESUME,
    OpKind.DROP,
    OpKind.CALL,
    OpKind.ASSERT,
})


@dataclass(frozen=True, slots=True)
class Statement:
    kind: OpKind
    operands: Tuple[Operand, ...] = ()
    span: Span = NO_SPAN

    def __str__(self) -> str:
        ops = ", ".join(str(o) for o in self.operands)
        return f"{self.kind.value}({ops})"


@dataclass(frozen=True, slots=True)
class Terminator:
    kind: OpKind
    operands: Tuple[Operand, ...] = ()
    targets: Tuple[int, ...] = ()
    span: Span = NO_SPAN

    def __str__(self) -> str:
        ops = ", ".join(str(o) for o in self.operands)
        tgt = ", ".join(f"bb{t}" for t in self.targets)
        return f"{self.kind.value}({ops}) -> [{tgt}]"


Entity = Union[Statement, Terminator]


@dataclass(frozen=True, slots=True)
class BasicBlock:
    """Straight-line statements followed by exactly one terminator."""

    index: int
    statements: Tuple[Statement, ...]
    terminator: Terminator

    @property
    def terminator_index(self) -> int:
        return len(self.statements)

    @property
    def successors(self) -> Tuple[int, ...]:
        return self.terminator.targets

    def entity(self, index: int) -> Entity:
        if index == len(self.statements):
            return self.terminator
        return self.statements[index]


# ---------------------------------------------------------------------------
# Function (the CFG)
# ---------------------------------------------------------------------------


class Function:
    """Control-flow graph of one function.

    Attributes
    ----------
    name : str
        Fully qualified function identifier.
    blocks : tuple[BasicBlock, ...]
        Arena of blocks; ``blocks[i].index == i``.  Block 0 is the entry.
    local_types : tuple[TypeShape, ...]
        Declared type of every local, indexed by local number.
    file : str
        Source file the function was compiled from.
    """

    ENTRY = 0

    def __init__(
        self,
        name: str,
        blocks: Iterable[BasicBlock],
        local_types: Sequence[TypeShape] = (),
        file: str = "<unknown>",
        span: Span = NO_SPAN,
    ) -> None:
        self.name = name
        self.blocks: Tuple[BasicBlock, ...] = tuple(blocks)
        self.local_types: Tuple[TypeShape, ...] = tuple(local_types)
        self.file = file
        self.span = span if span is not NO_SPAN else Span(file)
        for i, bb in enumerate(self.blocks):
            if bb.index != i:
                raise ValueError(f"{name}: block at position {i} has index {bb.index}")
            for t in bb.successors:
                if not 0 <= t < len(self.blocks):
                    raise ValueError(f"{name}: bb{i} jumps to missing block bb{t}")
        preds: List[set] = [set() for _ in self.blocks]
        for bb in self.blocks:
            for t in bb.successors:
                preds[t].add(bb.index)
        self._preds: Tuple[FrozenSet[int], ...] = tuple(frozenset(p) for p in preds)

    def __repr__(self) -> str:
        return f"Function({self.name!r}, {len(self.blocks)} blocks)"

    # ----- graph queries ----------------------------------------------------

    @property
    def num_blocks(self) -> int:
        return len(self.blocks)

    def block(self, index: int) -> BasicBlock:
        return self.blocks[index]

    def successors(self, index: int) -> Tuple[int, ...]:
        return self.blocks[index].successors

    def predecessors(self, index: int) -> FrozenSet[int]:
        return self._preds[index]

    # ----- entity queries ---------------------------------------------------

    def statements(self) -> Iterator[Tuple[Location, Statement]]:
        """All statements in block-then-index order."""
        for bb in self.blocks:
            for i, stmt in enumerate(bb.statements):
                yield Location(bb.index, i), stmt

    def terminators(self) -> Iterator[Tuple[Location, Terminator]]:
        for bb in self.blocks:
            yield Location(bb.index, bb.terminator_index), bb.terminator

    def entity_at(self, loc: Location) -> Entity:
        return self.blocks[loc.block].entity(loc.index)

    def span_of(self, loc: Location) -> Span:
        span = self.entity_at(loc).span
        if span.line == 0:
            return self.span
        return span

    # ----- types ------------------------------------------------------------

    def type_of(self, operand: Operand) -> Optional[TypeShape]:
        """Derive the type of an operand, or ``None`` when it is unknown."""
        if isinstance(operand, Const):
            return operand.ty
        if not 0 <= operand.local < len(self.local_types):
            return None
        ty: Optional[TypeShape] = self.local_types[operand.local]
        for elem in operand.projection:
            if ty is None:
                return None
            if elem.kind is ProjectionKind.DEREF:
                ty = ty.pointee()
            elif elem.kind is ProjectionKind.FIELD:
                if ty.kind is TypeKind.TUPLE and elem.index is not None and elem.index < len(ty.args):
                    ty = ty.args[elem.index]
                else:
                    return None
            elif elem.kind is ProjectionKind.INDEX:
                ty = ty.args[0] if ty.kind in (TypeKind.SLICE, TypeKind.ARRAY) else None
            else:
                # downcast keeps the enum type
                continue
        return ty


__all__ = [
    "Span",
    "NO_SPAN",
    "TypeKind",
    "TypeShape",
    "prim",
    "ref",
    "ref_mut",
    "ptr",
    "ptr_mut",
    "adt",
    "tuple_of",
    "UNIT",
    "ProjectionKind",
    "ProjectionElem",
    "DEREF",
    "Place",
    "Const",
    "Operand",
    "BlockId",
    "Location",
    "OpKind",
    "TERMINATOR_KINDS",
    "Statement",
    "Terminator",
    "Entity",
    "BasicBlock",
    "Function",
]
