# tests/conftest.py
"""
Shared fixtures, pattern texts and MIR builders for the RPL test-suite.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, Sequence

import pytest

from rpl.constraints import CompiledPattern
from rpl.lowering import lower_pattern
from rpl.parser import parse_pattern
from rpl_mir.mir import (
    BasicBlock,
    Const,
    Function,
    OpKind,
    Place,
    Span,
    Statement,
    Terminator,
    TypeShape,
    UNIT,
    prim,
)


# ═══════════════════════════════════════════════════════════════════════════
# PATTERN TEXTS
# ═══════════════════════════════════════════════════════════════════════════

WRITE_THEN_READ_RPL = """
; a value stored into ?p and read back with no store in between
(pattern write-then-read
  (meta (place ?p) (place ?d))
  (severity warning)
  (message "value written and read back")
  (description "A place is assigned a constant and read without an intervening write.")
  (primary r)
  (body
    (stmt w (use ?p 42))
    (stmt r (use ?d ?p))
    (precedes w r)
    (not
      (stmt w2 (use ?p _))
      (precedes w w2)
      (precedes w2 r))))
"""

USE_AFTER_DEAD_RPL = """
(pattern use-after-storage-dead
  (meta (place ?p) (place ?d))
  (severity error)
  (message "place used after its storage ended")
  (primary u)
  (body
    (stmt dead (storage-dead ?p))
    (stmt u (use ?d ?p))
    (precedes dead u)
    (not
      (stmt live (storage-live ?p))
      (precedes dead live)
      (precedes live u))))
"""

RAW_DEREF_RPL = """
(pattern raw-pointer-read
  (meta (place ?p) (place ?d) (type ?T))
  (severity style)
  (body
    (stmt s (use ?d (deref ?p)))
    (type-of ?p (ptr-mut ?T))))
"""

BRANCH_RPL = """
(pattern branch-to-return
  (meta (place ?c) (block ?t) (block ?e))
  (body
    (term sw (switch-int ?c) (targets ?t ?e))
    (block then ?t)
    (term ret (return) (in ?t))))
"""

CONST_ARG_RPL = """
(pattern copies-constant
  (meta (const ?k))
  (body
    (stmt s (use _ ?k))))
"""

GUARDED_RPL = """
(pattern guarded
  (meta (place ?x))
  (body
    (stmt a (use ?x 1))
    (stmt b (use _ ?x))
    (only-through b a)))
"""

EDGE_RPL = """
(pattern adjacent
  (meta (place ?x))
  (body
    (stmt a (use ?x 1))
    (stmt b (use _ ?x))
    (edge a b)))
"""

UNIQUE_PRED_RPL = """
(pattern single-entry
  (meta (place ?x))
  (body
    (stmt a (use ?x 1))
    (stmt b (use _ ?x))
    (unique-pred a b)))
"""

TWO_PATTERNS_RPL = WRITE_THEN_READ_RPL + USE_AFTER_DEAD_RPL

BAD_SYNTAX_RPL = "(pattern broken (body (stmt s (use _ _))"

UNKNOWN_OP_RPL = """
(pattern unknown-op
  (body (stmt s (frobnicate _ _))))
"""


# ═══════════════════════════════════════════════════════════════════════════
# MIR BUILDERS
# ═══════════════════════════════════════════════════════════════════════════

I32 = prim("i32")


def place(local: int) -> Place:
    return Place(local)


def const(value, ty: TypeShape = I32) -> Const:
    return Const(value, ty)


def stmt(kind: OpKind, *operands, line: int = 0) -> Statement:
    return Statement(kind, tuple(operands), Span("src/lib.rs", line, 1 if line else 0))


def assign(dest: int, src, line: int = 0) -> Statement:
    """``_dest = src``; ``src`` is a local number or an operand."""
    value = Place(src) if isinstance(src, int) and not isinstance(src, bool) else src
    return stmt(OpKind.USE, Place(dest), value, line=line)


def goto(target: int) -> Terminator:
    return Terminator(OpKind.GOTO, targets=(target,))


def switch(local: int, *targets: int) -> Terminator:
    return Terminator(OpKind.SWITCH_INT, (Place(local),), tuple(targets))


def ret() -> Terminator:
    return Terminator(OpKind.RETURN)


def make_fn(
    blocks: Sequence[tuple],
    *,
    name: str = "demo::f",
    locals_: Sequence[TypeShape] = (),
) -> Function:
    """Build a function from ``(statements, terminator)`` pairs."""
    bbs = [BasicBlock(i, tuple(stmts), term) for i, (stmts, term) in enumerate(blocks)]
    types = list(locals_) or [UNIT] + [I32] * 9
    return Function(name, bbs, types, file="src/lib.rs")


def permute_blocks(fn: Function, order: Dict[int, int]) -> Function:
    """Renumber the blocks of ``fn`` (old index → new index); entry must stay 0."""
    assert order.get(0, 0) == 0
    mapping = {i: order.get(i, i) for i in range(fn.num_blocks)}
    new = [None] * fn.num_blocks
    for bb in fn.blocks:
        t = bb.terminator
        term = Terminator(t.kind, t.operands, tuple(mapping[x] for x in t.targets), t.span)
        new[mapping[bb.index]] = BasicBlock(mapping[bb.index], bb.statements, term)
    return Function(fn.name, new, fn.local_types, file=fn.file)


def compile_one(text: str) -> CompiledPattern:
    return lower_pattern(parse_pattern(text))


# ═══════════════════════════════════════════════════════════════════════════
# MIR DUMPS
# ═══════════════════════════════════════════════════════════════════════════

DEMO_DUMP = {
    "crate": "demo",
    "functions": [
        {
            "name": "demo::flagged",
            "file": "src/lib.rs",
            "locals": ["()", "i32", "i32"],
            "blocks": [
                {
                    "statements": [
                        {"kind": "use", "operands": [{"place": 1}, {"const": 42, "ty": "i32"}],
                         "span": [3, 5]},
                        {"kind": "use", "operands": [{"place": 2}, {"place": 1}],
                         "span": [4, 5]},
                    ],
                    "terminator": {"kind": "return", "span": [5, 1]},
                },
            ],
        },
        {
            "name": "demo::clean",
            "file": "src/lib.rs",
            "locals": ["()", "i32", "i32"],
            "blocks": [
                {
                    "statements": [
                        {"kind": "use", "operands": [{"place": 1}, {"const": 42, "ty": "i32"}],
                         "span": [10, 5]},
                        {"kind": "use", "operands": [{"place": 1}, {"const": 7, "ty": "i32"}],
                         "span": [11, 5]},
                        {"kind": "use", "operands": [{"place": 2}, {"place": 1}],
                         "span": [12, 5]},
                    ],
                    "terminator": {"kind": "return", "span": [13, 1]},
                },
            ],
        },
        {"name": "demo::opaque", "file": "src/ffi.rs", "error": "MIR unavailable: foreign item"},
    ],
}


# ═══════════════════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def write_then_read() -> CompiledPattern:
    return compile_one(WRITE_THEN_READ_RPL)


@pytest.fixture
def pattern_dir(tmp_path: Path) -> Path:
    d = tmp_path / "patterns"
    d.mkdir()
    (d / "write-then-read.rpl").write_text(WRITE_THEN_READ_RPL, encoding="utf-8")
    (d / "storage.rpl").write_text(USE_AFTER_DEAD_RPL, encoding="utf-8")
    return d


@pytest.fixture
def demo_dump_path(tmp_path: Path) -> Path:
    p = tmp_path / "demo.mir.json"
    p.write_text(json.dumps(DEMO_DUMP), encoding="utf-8")
    return p
