"""
rpl_mir.loader
==============

Reads MIR dumps written by the host toolchain.

A dump is a JSON document describing every function of one crate::

    {"crate": "demo",
     "functions": [
       {"name": "demo::f", "file": "src/lib.rs",
        "locals": ["()", ["ref-mut", "i32"]],
        "blocks": [
          {"statements": [{"kind": "use",
                           "operands": [{"place": 1, "proj": ["deref"]},
                                        {"const": 5, "ty": "i32"}],
                           "span": [3, 5]}],
           "terminator": {"kind": "return", "span": [4, 1]}}]},
       {"name": "demo::g", "error": "MIR unavailable: const fn"}]}

Functions that the host could not lower carry an ``"error"`` member.  They
are returned as :class:`UnavailableFunction` records instead of being
raised, so that one broken function never hides the others.  A function
entry that is itself malformed is treated the same way.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

from rpl.errors import RepresentationUnavailable
from rpl_mir.mir import (
    BasicBlock,
    Const,
    Function,
    OpKind,
    Operand,
    Place,
    ProjectionElem,
    ProjectionKind,
    Span,
    Statement,
    Terminator,
    TypeKind,
    TypeShape,
    UNIT,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class UnavailableFunction:
    name: str
    reason: str
    file: str = "<unknown>"


@dataclass(frozen=True, slots=True)
class MirDump:
    """Everything read from one dump file."""

    crate: str
    functions: Tuple[Function, ...] = ()
    unavailable: Tuple[UnavailableFunction, ...] = ()
    source: str = "<string>"


# ---------------------------------------------------------------------------
# Element decoders
# ---------------------------------------------------------------------------

_TYPE_CTORS = {k.value: k for k in TypeKind if k not in (TypeKind.PRIM, TypeKind.ADT)}

_PRIMITIVES = frozenset({
    "bool", "char", "str", "!",
    "i8", "i16", "i32", "i64", "i128", "isize",
    "u8", "u16", "u32", "u64", "u128", "usize",
    "f32", "f64",
})


def parse_type(obj: Any) -> TypeShape:
    """Decode a type: ``"i32"``, ``"Vec"``, ``"()"`` or ``[ctor, arg...]``."""
    if isinstance(obj, str):
        if obj == "()":
            return UNIT
        if obj in _PRIMITIVES:
            return TypeShape(TypeKind.PRIM, obj)
        return TypeShape(TypeKind.ADT, obj)
    if isinstance(obj, list) and obj and isinstance(obj[0], str):
        head, rest = obj[0], obj[1:]
        if head == "adt":
            if not rest or not isinstance(rest[0], str):
                raise ValueError(f"adt type needs a name: {obj!r}")
            return TypeShape(TypeKind.ADT, rest[0], tuple(parse_type(a) for a in rest[1:]))
        kind = _TYPE_CTORS.get(head)
        if kind is None:
            raise ValueError(f"unknown type constructor {head!r}")
        return TypeShape(kind, args=tuple(parse_type(a) for a in rest))
    raise ValueError(f"malformed type: {obj!r}")


def _parse_projection(obj: Any) -> ProjectionElem:
    if obj == "deref":
        return ProjectionElem(ProjectionKind.DEREF)
    if isinstance(obj, list) and len(obj) == 2 and isinstance(obj[1], int):
        return ProjectionElem(ProjectionKind(obj[0]), obj[1])
    raise ValueError(f"malformed projection element: {obj!r}")


def parse_operand(obj: Any) -> Operand:
    if not isinstance(obj, dict):
        raise ValueError(f"operand must be an object: {obj!r}")
    if "place" in obj:
        proj = tuple(_parse_projection(p) for p in obj.get("proj", ()))
        return Place(int(obj["place"]), proj)
    if "const" in obj:
        ty = parse_type(obj["ty"]) if obj.get("ty") is not None else None
        return Const(obj["const"], ty)
    raise ValueError(f"operand needs 'place' or 'const': {obj!r}")


def _parse_span(obj: Any, file: str) -> Span:
    if obj is None:
        return Span(file)
    line, column = obj
    return Span(file, int(line), int(column))


def _parse_statement(obj: Dict[str, Any], file: str) -> Statement:
    kind = OpKind(obj["kind"])
    if kind.is_terminator:
        raise ValueError(f"{kind.value!r} is a terminator, not a statement")
    operands = tuple(parse_operand(o) for o in obj.get("operands", ()))
    return Statement(kind, operands, _parse_span(obj.get("span"), file))


def _parse_terminator(obj: Dict[str, Any], file: str) -> Terminator:
    kind = OpKind(obj["kind"])
    if not kind.is_terminator:
        raise ValueError(f"{kind.value!r} is not a terminator")
    operands = tuple(parse_operand(o) for o in obj.get("operands", ()))
    targets = tuple(int(t) for t in obj.get("targets", ()))
    return Terminator(kind, operands, targets, _parse_span(obj.get("span"), file))


def parse_function(obj: Dict[str, Any], default_file: str = "<unknown>") -> Function:
    """Decode one function entry.

    Raises
    ------
    RepresentationUnavailable
        If the host marked the function as unavailable or the entry is
        malformed.
    """
    if not isinstance(obj, dict):
        raise RepresentationUnavailable("<anonymous>", f"function entry must be an object: {obj!r}")
    name = str(obj.get("name", "<anonymous>"))
    if "error" in obj:
        raise RepresentationUnavailable(name, str(obj["error"]))
    file = str(obj.get("file", default_file))
    try:
        local_types = [parse_type(t) for t in obj.get("locals", ())]
        blocks = []
        for i, b in enumerate(obj["blocks"]):
            stmts = tuple(_parse_statement(s, file) for s in b.get("statements", ()))
            term = _parse_terminator(b["terminator"], file)
            blocks.append(BasicBlock(i, stmts, term))
        span = _parse_span(obj.get("span"), file)
        return Function(name, blocks, local_types, file=file, span=span)
    except (KeyError, TypeError, ValueError) as e:
        raise RepresentationUnavailable(name, f"malformed MIR: {e}") from e


def loads_dump(text: str, *, source: str = "<string>") -> MirDump:
    """Decode a dump document from a string."""
    doc = json.loads(text)
    if not isinstance(doc, dict) or not isinstance(doc.get("functions"), list):
        raise ValueError(f"{source}: expected an object with a 'functions' list")
    crate = str(doc.get("crate", Path(source).stem))
    default_file = str(doc.get("file", "<unknown>"))
    functions: List[Function] = []
    unavailable: List[UnavailableFunction] = []
    for entry in doc["functions"]:
        try:
            functions.append(parse_function(entry, default_file))
        except RepresentationUnavailable as e:
            logger.debug("%s: %s", source, e)
            file = entry.get("file", default_file) if isinstance(entry, dict) else default_file
            unavailable.append(UnavailableFunction(e.function, e.reason, str(file)))
    return MirDump(crate, tuple(functions), tuple(unavailable), source)


def load_dump(path: Union[str, Path]) -> MirDump:
    """Read and decode a dump file."""
    p = Path(path)
    return loads_dump(p.read_text(encoding="utf-8"), source=str(p))


__all__ = [
    "RepresentationUnavailable",
    "UnavailableFunction",
    "MirDump",
    "parse_type",
    "parse_operand",
    "parse_function",
    "loads_dump",
    "load_dump",
]
