#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
rpl/builtins.py
===============

The fixed vocabulary that pattern names are resolved against.

Operation kinds
---------------
Every operation symbol usable in ``(stmt L (OP ...))`` or
``(term L (OP ...))`` maps onto one :class:`rpl_mir.mir.OpKind`.  Besides
the canonical spelling (``add``, ``ref-mut``, ``storage-dead`` ...) a few
operator aliases are accepted (``+``, ``&mut``, ``copy`` ...).  Each entry
also fixes the operand arity the template must use, so that a template can
never silently fail to match because it has one operand too many.

Type descriptors
----------------
- **Primitives**: ``bool char str ! i8..i128 isize u8..u128 usize f32 f64``
  and ``unit`` (the empty tuple).
- **Generic shapes**: ``ref ref-mut ptr ptr-mut slice array`` (one
  argument), ``tuple fn`` (any number) and ``adt NAME`` (any number).
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple

from rpl_mir.mir import OpKind, TypeKind, TypeShape, UNIT

__all__ = [
    "OpCategory",
    "OpSpec",
    "OPERATIONS",
    "ALIASES",
    "lookup_operation",
    "PRIMITIVE_TYPES",
    "TYPE_CONSTRUCTORS",
    "lookup_primitive",
]


class OpCategory(Enum):
    ASSIGN = "assign"
    ARITH = "arith"
    COMPARE = "compare"
    MEMORY = "memory"
    CALL = "call"
    CONTROL = "control"


@dataclass(frozen=True, slots=True)
class OpSpec:
    """Vocabulary entry for one operation kind.

    ``arity`` is the exact operand count, or the minimum when ``variadic``.
    """

    kind: OpKind
    category: OpCategory
    arity: int
    variadic: bool = False

    @property
    def is_terminator(self) -> bool:
        return self.kind.is_terminator

    def accepts(self, n: int) -> bool:
        return n >= self.arity if self.variadic else n == self.arity

    def describe_arity(self) -> str:
        return f"at least {self.arity}" if self.variadic else str(self.arity)


def _spec(kind: OpKind, category: OpCategory, arity: int, variadic: bool = False) -> Tuple[str, OpSpec]:
    return kind.value, OpSpec(kind, category, arity, variadic)


OPERATIONS: Dict[str, OpSpec] = dict([
    # data movement: (dest, src)
    _spec(OpKind.USE, OpCategory.ASSIGN, 2),
    _spec(OpKind.MOVE, OpCategory.ASSIGN, 2),
    _spec(OpKind.CAST, OpCategory.ASSIGN, 2),
    _spec(OpKind.AGGREGATE, OpCategory.ASSIGN, 1, variadic=True),
    _spec(OpKind.DISCRIMINANT, OpCategory.ASSIGN, 2),
    _spec(OpKind.LEN, OpCategory.ASSIGN, 2),
    # arithmetic: (dest, lhs, rhs) / (dest, operand)
    _spec(OpKind.ADD, OpCategory.ARITH, 3),
    _spec(OpKind.SUB, OpCategory.ARITH, 3),
    _spec(OpKind.MUL, OpCategory.ARITH, 3),
    _spec(OpKind.DIV, OpCategory.ARITH, 3),
    _spec(OpKind.REM, OpCategory.ARITH, 3),
    _spec(OpKind.BIT_AND, OpCategory.ARITH, 3),
    _spec(OpKind.BIT_OR, OpCategory.ARITH, 3),
    _spec(OpKind.BIT_XOR, OpCategory.ARITH, 3),
    _spec(OpKind.SHL, OpCategory.ARITH, 3),
    _spec(OpKind.SHR, OpCategory.ARITH, 3),
    _spec(OpKind.NEG, OpCategory.ARITH, 2),
    _spec(OpKind.NOT, OpCategory.ARITH, 2),
    # comparisons
    _spec(OpKind.EQ, OpCategory.COMPARE, 3),
    _spec(OpKind.NE, OpCategory.COMPARE, 3),
    _spec(OpKind.LT, OpCategory.COMPARE, 3),
    _spec(OpKind.LE, OpCategory.COMPARE, 3),
    _spec(OpKind.GT, OpCategory.COMPARE, 3),
    _spec(OpKind.GE, OpCategory.COMPARE, 3),
    # memory
    _spec(OpKind.REF, OpCategory.MEMORY, 2),
    _spec(OpKind.REF_MUT, OpCategory.MEMORY, 2),
    _spec(OpKind.ADDR_OF, OpCategory.MEMORY, 2),
    _spec(OpKind.ADDR_OF_MUT, OpCategory.MEMORY, 2),
    _spec(OpKind.STORAGE_LIVE, OpCategory.MEMORY, 1),
    _spec(OpKind.STORAGE_DEAD, OpCategory.MEMORY, 1),
    _spec(OpKind.NOP, OpCategory.MEMORY, 0),
    _spec(OpKind.DROP, OpCategory.MEMORY, 1),
    # calls: (dest, callee, arg...)
    _spec(OpKind.CALL, OpCategory.CALL, 2, variadic=True),
    # control flow
    _spec(OpKind.GOTO, OpCategory.CONTROL, 0),
    _spec(OpKind.SWITCH_INT, OpCategory.CONTROL, 1),
    _spec(OpKind.RETURN, OpCategory.CONTROL, 0),
    _spec(OpKind.UNREACHABLE, OpCategory.CONTROL, 0),
    _spec(OpKind.RESUME, OpCategory.CONTROL, 0),
    _spec(OpKind.ASSERT, OpCategory.CONTROL, 1),
])

ALIASES: Dict[str, str] = {
    "copy": "use",
    "&": "ref",
    "&mut": "ref-mut",
    "&raw": "addr-of",
    "&raw-mut": "addr-of-mut",
    "as": "cast",
    "+": "add",
    "-": "sub",
    "*": "mul",
    "/": "div",
    "%": "rem",
    "|": "bit-or",
    "^": "bit-xor",
    "<<": "shl",
    ">>": "shr",
    "==": "eq",
    "!=": "ne",
    "<": "lt",
    "<=": "le",
    ">": "gt",
    ">=": "ge",
    "!": "not",
    "switch": "switch-int",
}


def lookup_operation(name: str) -> Optional[OpSpec]:
    """Resolve an operation symbol (canonical or alias)."""
    return OPERATIONS.get(ALIASES.get(name, name))


PRIMITIVE_TYPES: FrozenSet[str] = frozenset({
    "bool", "char", "str", "!",
    "i8", "i16", "i32", "i64", "i128", "isize",
    "u8", "u16", "u32", "u64", "u128", "usize",
    "f32", "f64",
})

#: constructor symbol -> (kind, exact arity or None for any)
TYPE_CONSTRUCTORS: Dict[str, Tuple[TypeKind, Optional[int]]] = {
    "ref": (TypeKind.REF, 1),
    "ref-mut": (TypeKind.REF_MUT, 1),
    "ptr": (TypeKind.PTR, 1),
    "ptr-mut": (TypeKind.PTR_MUT, 1),
    "slice": (TypeKind.SLICE, 1),
    "array": (TypeKind.ARRAY, 1),
    "tuple": (TypeKind.TUPLE, None),
    "fn": (TypeKind.FN, None),
    "adt": (TypeKind.ADT, None),
}


def lookup_primitive(name: str) -> Optional[TypeShape]:
    if name == "unit":
        return UNIT
    if name in PRIMITIVE_TYPES:
        return TypeShape(TypeKind.PRIM, name)
    return None
