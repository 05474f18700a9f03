# tests/test_parser.py
"""
Tests for the pattern parser: source text → AST nodes, and back.
"""

import pytest

from rpl import ast as A
from rpl.errors import ErrorCode, ParseError
from rpl.parser import parse, parse_pattern, unparse
from tests.conftest import (
    BRANCH_RPL,
    CONST_ARG_RPL,
    RAW_DEREF_RPL,
    TWO_PATTERNS_RPL,
    USE_AFTER_DEAD_RPL,
    WRITE_THEN_READ_RPL,
)


class TestParseEmpty:

    def test_empty_string(self):
        pf = parse("")
        assert pf.patterns == ()

    def test_comment_only(self):
        pf = parse("; nothing here\n;; (pattern x (body))\n")
        assert pf.patterns == ()


class TestParseDeclaration:

    def test_header_fields(self):
        p = parse_pattern(WRITE_THEN_READ_RPL)
        assert p.name == "write-then-read"
        assert p.severity is A.Severity.WARNING
        assert p.message == "value written and read back"
        assert p.description.startswith("A place is assigned")
        assert p.primary == "r"

    def test_metavars_in_order(self):
        p = parse_pattern(WRITE_THEN_READ_RPL)
        assert [(m.name, m.kind) for m in p.metavars] == [
            ("?p", A.MetaVarKind.PLACE),
            ("?d", A.MetaVarKind.PLACE),
        ]

    def test_meta_after_body_is_accepted(self):
        p = parse_pattern("(pattern late (body (stmt s (use ?x _))) (meta (place ?x)))")
        assert p.metavar("?x").kind is A.MetaVarKind.PLACE

    def test_defaults(self):
        p = parse_pattern("(pattern bare (body (stmt s (nop))))")
        assert p.severity is A.Severity.WARNING
        assert p.message is None and p.description is None and p.primary is None

    def test_two_patterns(self):
        pf = parse(TWO_PATTERNS_RPL, filename="both.rpl")
        assert [p.name for p in pf.patterns] == ["write-then-read", "use-after-storage-dead"]
        assert pf.find("use-after-storage-dead").severity is A.Severity.ERROR
        assert pf.find("missing") is None


class TestParseBody:

    def test_statement_templates(self):
        p = parse_pattern(WRITE_THEN_READ_RPL)
        w, r = list(p.templates())
        assert w == A.StmtTemplate("w", "use", (A.MetaRef("?p"), A.Literal(42)))
        assert r == A.StmtTemplate("r", "use", (A.MetaRef("?d"), A.MetaRef("?p")))

    def test_order_constraint(self):
        p = parse_pattern(WRITE_THEN_READ_RPL)
        orders = [it for it in p.body if isinstance(it, A.OrderConstraint)]
        assert orders == [A.OrderConstraint(A.Relation.PRECEDES, "w", "r")]

    def test_negation(self):
        p = parse_pattern(WRITE_THEN_READ_RPL)
        (neg,) = list(p.negations())
        assert neg.body[0] == A.StmtTemplate("w2", "use", (A.MetaRef("?p"), A.Wildcard()))
        assert len(neg.body) == 3

    def test_projection_and_type(self):
        p = parse_pattern(RAW_DEREF_RPL)
        (s,) = list(p.templates())
        assert s.operands[1] == A.Deref(A.MetaRef("?p"))
        tc = p.body[1]
        assert isinstance(tc, A.TypeConstraint)
        assert tc.type_expr == A.TypeCtor("ptr-mut", (A.MetaRef("?T"),))

    def test_terminator_targets_and_in(self):
        p = parse_pattern(BRANCH_RPL)
        sw, blk, ret = list(p.templates())
        assert sw.targets == (A.MetaRef("?t"), A.MetaRef("?e"))
        assert blk == A.BlockTemplate("then", "?t")
        assert ret.block == "?t" and ret.targets is None

    def test_literals(self):
        p = parse_pattern(
            '(pattern lits (body (stmt s (use _ true)) (stmt t (use _ "x")) (stmt u (use _ 1.5))))'
        )
        values = [t.operands[1] for t in p.templates()]
        assert values == [A.Literal(True), A.Literal("x"), A.Literal(1.5)]

    def test_field_projection(self):
        p = parse_pattern("(pattern f (meta (place ?p)) (body (stmt s (use _ (field (deref ?p) 2)))))")
        (s,) = list(p.templates())
        assert s.operands[1] == A.FieldOf(A.Deref(A.MetaRef("?p")), 2)

    def test_adt_type(self):
        p = parse_pattern(
            "(pattern v (meta (place ?p)) (body (stmt s (use ?p _)) (type-of ?p (adt Vec u8))))"
        )
        assert p.body[1].type_expr == A.TypeCtor("adt", (A.TypeName("u8"),), name="Vec")


class TestParseErrors:

    def _err(self, text: str) -> ParseError:
        with pytest.raises(ParseError) as info:
            parse(text, filename="bad.rpl")
        return info.value

    def test_unclosed_paren(self):
        e = self._err("(pattern p (body)")
        assert e.code is ErrorCode.UNBALANCED
        assert (e.pos.line, e.pos.col) == (1, 1)

    def test_stray_close_paren(self):
        e = self._err("(pattern p (body)))")
        assert e.code is ErrorCode.UNBALANCED

    def test_top_level_garbage(self):
        e = self._err("hello")
        assert e.code is ErrorCode.UNEXPECTED_FORM
        assert e.expected

    def test_undeclared_metavar_position(self):
        e = self._err("(pattern p\n  (meta (place ?p))\n  (body (stmt s (use ?q _))))")
        assert e.code is ErrorCode.UNDECLARED_METAVAR
        assert e.pos.file == "bad.rpl"
        assert e.pos.line == 3
        assert e.pattern == "p"

    def test_duplicate_metavar(self):
        e = self._err("(pattern p (meta (place ?p) (const ?p)) (body))")
        assert e.code is ErrorCode.DUPLICATE_METAVAR

    def test_wrong_metavar_kind(self):
        e = self._err("(pattern p (meta (block ?b)) (body (stmt s (use ?b _))))")
        assert e.code is ErrorCode.METAVAR_KIND

    def test_type_metavar_as_operand(self):
        e = self._err("(pattern p (meta (type ?T)) (body (stmt s (use ?T _))))")
        assert e.code is ErrorCode.METAVAR_KIND

    def test_nested_negation(self):
        e = self._err(
            "(pattern p (body (stmt a (nop)) (not (stmt b (nop)) (not (stmt c (nop))))))"
        )
        assert e.code is ErrorCode.NESTED_NEGATION

    def test_duplicate_label(self):
        e = self._err("(pattern p (body (stmt a (nop)) (stmt a (nop))))")
        assert e.code is ErrorCode.DUPLICATE_LABEL

    def test_label_reused_inside_negation(self):
        e = self._err("(pattern p (body (stmt a (nop)) (not (stmt a (nop)))))")
        assert e.code is ErrorCode.DUPLICATE_LABEL

    def test_undefined_label(self):
        e = self._err("(pattern p (body (stmt a (nop)) (precedes a zz)))")
        assert e.code is ErrorCode.UNDEFINED_LABEL

    def test_negated_label_not_visible_outside(self):
        e = self._err("(pattern p (body (stmt a (nop)) (not (stmt b (nop))) (precedes a b)))")
        assert e.code is ErrorCode.UNDEFINED_LABEL

    def test_primary_must_be_positive(self):
        e = self._err("(pattern p (primary b) (body (stmt a (nop)) (not (stmt b (nop)))))")
        assert e.code is ErrorCode.UNDEFINED_LABEL

    def test_duplicate_pattern_name(self):
        e = self._err("(pattern p (body)) (pattern p (body))")
        assert e.code is ErrorCode.DUPLICATE_PATTERN

    def test_unknown_severity(self):
        e = self._err("(pattern p (severity fatal) (body))")
        assert "expected" in e.message

    def test_missing_body(self):
        e = self._err("(pattern p (severity error))")
        assert "(body ...)" in e.expected

    def test_unknown_body_form(self):
        e = self._err("(pattern p (body (loop a)))")
        assert "precedes" in e.expected

    def test_error_to_dict(self):
        d = self._err("(pattern p (body (stmt a (nop)) (stmt a (nop))))").to_dict()
        assert d["code"] == "RPL-1008"
        assert d["kind"] == "ParseError"
        assert d["location"]["file"] == "bad.rpl"


class TestRoundTrip:

    @pytest.mark.parametrize("text", [
        WRITE_THEN_READ_RPL,
        USE_AFTER_DEAD_RPL,
        RAW_DEREF_RPL,
        BRANCH_RPL,
        CONST_ARG_RPL,
    ])
    def test_parse_unparse_parse(self, text):
        pf = parse(text)
        assert parse(unparse(pf)) == pf

    def test_unparse_is_canonical(self):
        once = unparse(parse(TWO_PATTERNS_RPL))
        assert unparse(parse(once)) == once

    def test_quoted_strings_survive(self):
        p = parse_pattern('(pattern q (message "say \\"hi\\"") (body (stmt s (use _ "a b"))))')
        assert parse_pattern(unparse(p)) == p
