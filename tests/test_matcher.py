# tests/test_matcher.py
"""
Tests for the backtracking matcher.
"""

import pytest

from rpl.errors import EngineTimeout
from rpl.matcher import Bindings, EngineConfig, Matcher, match_function
from rpl_mir.mir import (
    UNIT,
    BlockId,
    Const,
    Location,
    OpKind,
    Place,
    prim,
    ptr,
    ptr_mut,
)
from tests.conftest import (
    BRANCH_RPL,
    CONST_ARG_RPL,
    EDGE_RPL,
    GUARDED_RPL,
    I32,
    RAW_DEREF_RPL,
    UNIQUE_PRED_RPL,
    USE_AFTER_DEAD_RPL,
    assign,
    compile_one,
    const,
    goto,
    make_fn,
    permute_blocks,
    ret,
    stmt,
    switch,
)


def _sites(results):
    return [r.site for r in results]


# ═══════════════════════════════════════════════════════════════════════════
# WRITE-THEN-READ (positive body + one negation)
# ═══════════════════════════════════════════════════════════════════════════

class TestWriteThenRead:

    def test_straight_line_match(self, write_then_read):
        fn = make_fn([([assign(1, const(42), line=3), assign(2, 1, line=4)], ret())])
        (m,) = match_function(write_then_read, fn)
        assert m.pattern == "write-then-read"
        assert m.function == "demo::f"
        assert m.site == "bb0[1]"
        assert str(m.location) == "src/lib.rs:4:1"
        assert m.bindings == (("?p", "_1"), ("?d", "_2"))
        assert m.binding("?p") == "_1"
        assert m.binding("?missing") is None
        assert m.message == "value written and read back"

    def test_intervening_write_suppresses(self, write_then_read):
        fn = make_fn([([assign(1, const(42)), assign(1, const(7)), assign(2, 1)], ret())])
        assert match_function(write_then_read, fn) == []

    def test_write_on_other_branch_does_not_suppress(self, write_then_read):
        fn = make_fn([
            ([], switch(9, 1, 2)),
            ([assign(1, const(42))], goto(3)),
            ([assign(1, const(7))], goto(3)),
            ([assign(2, 1)], ret()),
        ])
        (m,) = match_function(write_then_read, fn)
        assert m.site == "bb3[0]"

    def test_read_before_write_is_not_matched(self, write_then_read):
        fn = make_fn([([assign(2, 1), assign(1, const(42))], ret())])
        assert match_function(write_then_read, fn) == []

    def test_literal_must_match(self, write_then_read):
        fn = make_fn([([assign(1, const(41)), assign(2, 1)], ret())])
        assert match_function(write_then_read, fn) == []

    def test_every_read_is_reported(self, write_then_read):
        fn = make_fn([([assign(1, const(42)), assign(2, 1), assign(3, 1)], ret())])
        assert _sites(match_function(write_then_read, fn)) == ["bb0[1]", "bb0[2]"]

    def test_loop_terminates(self, write_then_read):
        fn = make_fn([
            ([assign(1, const(42))], goto(1)),
            ([assign(2, 1), assign(1, 3)], switch(4, 1, 2)),
            ([], ret()),
        ])
        # the write at bb1[1] reaches the read again around the back edge
        assert match_function(write_then_read, fn) == []

    def test_block_numbering_does_not_change_matches(self, write_then_read):
        fn = make_fn([
            ([], switch(9, 1, 2)),
            ([assign(1, const(42))], goto(3)),
            ([assign(1, const(7))], goto(3)),
            ([assign(2, 1)], ret()),
        ])
        before = match_function(write_then_read, fn)
        for order in ({1: 3, 3: 1}, {1: 2, 2: 1}, {1: 2, 2: 3, 3: 1}):
            after = match_function(write_then_read, permute_blocks(fn, order))
            assert len(after) == len(before) == 1
            assert after[0].bindings == before[0].bindings

    def test_no_statements_no_matches(self, write_then_read):
        assert match_function(write_then_read, make_fn([([], ret())])) == []


class TestStorage:

    def test_use_after_dead(self):
        cp = compile_one(USE_AFTER_DEAD_RPL)
        fn = make_fn([([
            stmt(OpKind.STORAGE_LIVE, Place(1)),
            assign(1, const(1)),
            stmt(OpKind.STORAGE_DEAD, Place(1)),
            assign(2, 1, line=9),
        ], ret())])
        (m,) = match_function(cp, fn)
        assert m.site == "bb0[3]"
        assert m.severity.value == "error"

    def test_revived_storage_is_fine(self):
        cp = compile_one(USE_AFTER_DEAD_RPL)
        fn = make_fn([([
            stmt(OpKind.STORAGE_DEAD, Place(1)),
            stmt(OpKind.STORAGE_LIVE, Place(1)),
            assign(2, 1),
        ], ret())])
        assert match_function(cp, fn) == []


# ═══════════════════════════════════════════════════════════════════════════
# CONTROL RELATIONS
# ═══════════════════════════════════════════════════════════════════════════

def _diamond():
    # bb0 -> bb1 | bb2 -> bb3; the write is on one arm only
    return make_fn([
        ([], switch(9, 1, 2)),
        ([assign(1, const(1))], goto(3)),
        ([], goto(3)),
        ([assign(2, 1)], ret()),
    ])


def _chain():
    return make_fn([
        ([], goto(1)),
        ([assign(1, const(1))], goto(2)),
        ([assign(2, 1)], ret()),
    ])


class TestRelations:

    @pytest.mark.parametrize("text, diamond, chain", [
        (EDGE_RPL, 1, 1),
        (UNIQUE_PRED_RPL, 0, 1),
        (GUARDED_RPL, 0, 1),
    ])
    def test_relation(self, text, diamond, chain):
        cp = compile_one(text)
        assert len(match_function(cp, _diamond())) == diamond
        assert len(match_function(cp, _chain())) == chain

    def test_edge_needs_direct_successor(self):
        cp = compile_one(EDGE_RPL)
        fn = make_fn([
            ([assign(1, const(1))], goto(1)),
            ([], goto(2)),
            ([assign(2, 1)], ret()),
        ])
        assert match_function(cp, fn) == []

    def test_only_through_within_one_block(self):
        cp = compile_one(GUARDED_RPL)
        fn = make_fn([([assign(1, const(1)), assign(2, 1)], ret())])
        assert len(match_function(cp, fn)) == 1

    def test_only_through_bypassed_by_other_path(self):
        cp = compile_one(GUARDED_RPL)
        fn = make_fn([
            ([], switch(9, 1, 2)),
            ([assign(1, const(1))], goto(2)),
            ([assign(2, 1)], ret()),
        ])
        assert match_function(cp, fn) == []

    def test_negated_orders_in_both_directions(self):
        # a and b on mutually exclusive arms
        cp = compile_one(
            "(pattern exclusive (meta (place ?x))"
            " (body (stmt a (use ?x 1)) (stmt b (use _ ?x))"
            " (not (precedes a b)) (not (precedes b a))))"
        )
        fn = make_fn([
            ([], switch(9, 1, 2)),
            ([assign(1, const(1))], goto(3)),
            ([assign(2, 1)], goto(3)),
            ([], ret()),
        ])
        (m,) = match_function(cp, fn)
        assert m.site == "bb1[0]"
        assert match_function(cp, _chain()) == []


# ═══════════════════════════════════════════════════════════════════════════
# OPERANDS, TYPES, TERMINATORS
# ═══════════════════════════════════════════════════════════════════════════

class TestOperands:

    def test_type_constraint_binds_type_metavar(self):
        cp = compile_one(RAW_DEREF_RPL)
        fn = make_fn(
            [([assign(2, Place(1).deref()), assign(2, Place(3).deref())], ret())],
            locals_=[UNIT, ptr_mut(I32), I32, ptr(I32)],
        )
        (m,) = match_function(cp, fn)
        assert m.site == "bb0[0]"
        assert dict(m.bindings) == {"?p": "_1", "?d": "_2", "?T": "i32"}
        assert m.severity.value == "style"

    def test_type_of_unknown_local(self):
        cp = compile_one(RAW_DEREF_RPL)
        fn = make_fn([([assign(2, Place(1).deref())], ret())], locals_=[UNIT])
        assert match_function(cp, fn) == []

    def test_const_metavar_only_binds_constants(self):
        cp = compile_one(CONST_ARG_RPL)
        fn = make_fn([([assign(1, 2), assign(1, const(5))], ret())])
        (m,) = match_function(cp, fn)
        assert m.binding("?k") == "const 5"

    def test_place_metavar_rejects_constant(self):
        cp = compile_one("(pattern copies-place (meta (place ?x)) (body (stmt s (use _ ?x))))")
        fn = make_fn([([stmt(OpKind.USE, Place(1), Const(42, I32)), assign(1, 2)], ret())])
        (m,) = match_function(cp, fn)
        assert m.site == "bb0[1]" and m.binding("?x") == "_2"

    @pytest.mark.parametrize("value, expected", [
        (1, 1),
        (True, 0),
        (1.0, 0),
        ("1", 0),
    ])
    def test_literal_types_are_distinct(self, value, expected):
        cp = compile_one("(pattern one (body (stmt s (use _ 1))))")
        fn = make_fn([([assign(1, Const(value, prim("i32")))], ret())])
        assert len(match_function(cp, fn)) == expected

    def test_labels_bind_distinct_statements(self):
        cp = compile_one("(pattern two (body (stmt a (nop)) (stmt b (nop))))")
        one = make_fn([([stmt(OpKind.NOP)], ret())])
        two = make_fn([([stmt(OpKind.NOP), stmt(OpKind.NOP)], ret())])
        assert match_function(cp, one) == []
        assert len(match_function(cp, two)) == 2


class TestTerminators:

    def test_switch_to_returning_block(self):
        cp = compile_one(BRANCH_RPL)
        fn = make_fn([([], switch(1, 1, 2)), ([], ret()), ([], ret())])
        (m,) = match_function(cp, fn)
        assert m.site == "bb0[0]"
        assert dict(m.bindings) == {"?c": "_1", "?t": "bb1", "?e": "bb2"}

    def test_then_block_must_return(self):
        cp = compile_one(BRANCH_RPL)
        fn = make_fn([([], switch(1, 1, 2)), ([], goto(2)), ([], ret())])
        assert match_function(cp, fn) == []

    def test_target_count_must_agree(self):
        cp = compile_one(BRANCH_RPL)
        fn = make_fn([([], switch(1, 1, 2, 3)), ([], ret()), ([], ret()), ([], ret())])
        assert match_function(cp, fn) == []

    def test_numeric_target(self):
        cp = compile_one("(pattern g (body (term t (goto) (targets 2))))")
        fn = make_fn([([], goto(1)), ([], goto(2)), ([], ret())])
        assert _sites(match_function(cp, fn)) == ["bb1[0]"]

    def test_block_label_as_primary(self):
        cp = compile_one("(pattern b (meta (block ?b)) (body (block blk ?b)))")
        fn = make_fn([([assign(1, const(1), line=7)], goto(1)), ([], ret())])
        results = match_function(cp, fn)
        assert _sites(results) == ["bb0", "bb1"]
        assert results[0].location.line == 7

    def test_empty_body_matches_once(self):
        cp = compile_one("(pattern anything (body))")
        fn = make_fn([([], ret())])
        (m,) = match_function(cp, fn)
        assert m.site == "" and m.bindings == ()
        assert m.location.file == "src/lib.rs"


# ═══════════════════════════════════════════════════════════════════════════
# BUDGET & BINDINGS
# ═══════════════════════════════════════════════════════════════════════════

class TestBudget:

    def test_timeout(self, write_then_read):
        fn = make_fn([([assign(i, const(42)) for i in range(1, 9)], ret())])
        with pytest.raises(EngineTimeout) as info:
            match_function(write_then_read, fn, EngineConfig(max_steps=5))
        assert info.value.steps == 5
        assert info.value.function == "demo::f"
        assert info.value.pattern == "write-then-read"

    def test_steps_are_counted(self, write_then_read):
        fn = make_fn([([assign(1, const(42)), assign(2, 1)], ret())])
        m = Matcher(write_then_read, fn)
        m.run()
        assert 0 < m.steps <= EngineConfig().max_steps

    def test_config_validation(self):
        assert EngineConfig().validate() == []
        assert EngineConfig(max_steps=0).validate() == ["max_steps must be positive"]


class TestBindings:

    def test_undo_restores_state(self):
        b = Bindings()
        b.bind("?x", Place(1))
        mark = b.mark()
        b.bind("a", Location(0, 0))
        b.bind("?t", BlockId(2))
        assert len(b) == 3 and b.is_taken(Location(0, 0))
        b.undo(mark)
        assert len(b) == 1
        assert "a" not in b and not b.is_taken(Location(0, 0))
        assert b.get("?x") == Place(1)

    def test_rebinding_is_an_error(self):
        b = Bindings()
        b.bind("?x", Place(1))
        with pytest.raises(KeyError):
            b.bind("?x", Place(2))

    def test_items(self):
        b = Bindings()
        b.bind("?x", Place(1))
        b.bind("s", Location(1, 2))
        assert dict(b.items()) == {"?x": Place(1), "s": Location(1, 2)}
