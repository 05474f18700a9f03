"""rpl/parser.py – S-expression → RPL pattern AST parser.

Converts pattern-language source text into the frozen AST defined in
:mod:`rpl.ast`.  The S-expressions themselves are read with ``sexpdata``;
this module only maps the resulting nested lists onto AST nodes and checks
the scoping rules of the language.

Design principles
-----------------
* **Form splitting first** – the text is cut into top-level forms by a
  small scanner that understands strings and ``;`` comments.  This gives
  every error a real byte offset / line / column, which ``sexpdata`` does
  not track.
* **Head-symbol dispatch** – every list ``(tag ...)`` is dispatched on its
  head symbol to a ``_parse_<tag>`` helper registered with ``@_register``.
* **Fail-fast with location** – :class:`~rpl.errors.ParseError` carries a
  :class:`~rpl.errors.SourcePos` and a description of what was expected.
* **Scope checks in the parser** – duplicate metavariables, undeclared or
  wrongly-kinded metavariables, duplicate / undefined labels and nested
  negation are all rejected here, before lowering ever runs.

Public API
----------
``parse(text, filename=...) -> PatternFile``
``parse_file(path) -> PatternFile``
``parse_pattern(text) -> PatternDef``      single declaration
``unparse(node) -> str``                   canonical text, round-trips

Surface syntax
--------------
::

    (pattern write-then-read
      (meta (place ?p) (place ?d))
      (severity warning)
      (message "value written and read back")
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

from __future__ import annotations

import bisect
from dataclasses import dataclass
from pathlib import Path
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
    Set,
    Tuple,
    Union,
)

import sexpdata
from sexpdata import Symbol

from rpl import ast as A
from rpl.errors import ErrorCode, ParseError, SourcePos

Sexp = Any  # Union[list, Symbol, str, int, float]


# ═══════════════════════════════════════════════════════════════════════
#  Source positions
# ═══════════════════════════════════════════════════════════════════════

class _LineIndex:
    """Maps character offsets of one source text to ``SourcePos``."""

    def __init__(self, text: str, filename: str) -> None:
        self._text = text
        self._file = filename
        self._starts = [0]
        for i, ch in enumerate(text):
            if ch == "\n":
                self._starts.append(i + 1)

    def pos(self, offset: int) -> SourcePos:
        line = bisect.bisect_right(self._starts, offset) - 1
        col = offset - self._starts[line]
        byte_offset = len(self._text[:offset].encode("utf-8"))
        return SourcePos(self._file, byte_offset, line + 1, col + 1)


@dataclass(frozen=True, slots=True)
class _Form:
    start: int
    end: int
    text: str


def _split_forms(text: str, index: _LineIndex) -> List[_Form]:
    """Cut *text* into balanced top-level forms, blanking out comments."""
    buf = list(text)
    forms: List[_Form] = []
    opens: List[int] = []
    string_start = -1
    i, n = 0, len(text)
    while i < n:
        c = text[i]
        if string_start >= 0:
            if c == "\\":
                i += 2
                continue
            if c == '"':
                string_start = -1
            i += 1
            continue
        if c == ";":
            j = text.find("\n", i)
            j = n if j < 0 else j
            for k in range(i, j):
                buf[k] = " "
            i = j
            continue
        if c == '"':
            if not opens:
                raise ParseError("string literal outside of a form", expected="'(pattern'",
                                 code=ErrorCode.UNEXPECTED_FORM, pos=index.pos(i))
            string_start = i
        elif c == "(":
            opens.append(i)
        elif c == ")":
            if not opens:
                raise ParseError("unbalanced ')'", expected="'(' or end of input",
                                 code=ErrorCode.UNBALANCED, pos=index.pos(i))
            start = opens.pop()
            if not opens:
                forms.append(_Form(start, i + 1, ""))
        elif not c.isspace() and not opens:
            raise ParseError(f"unexpected {c!r} at top level", expected="'(pattern'",
                             code=ErrorCode.UNEXPECTED_FORM, pos=index.pos(i))
        i += 1
    if string_start >= 0:
        raise ParseError("unterminated string literal", expected="'\"'",
                         code=ErrorCode.UNBALANCED, pos=index.pos(string_start))
    if opens:
        raise ParseError("unclosed '('", expected="')'",
                         code=ErrorCode.UNBALANCED, pos=index.pos(opens[-1]))
    cleaned = "".join(buf)
    return [_Form(f.start, f.end, cleaned[f.start:f.end]) for f in forms]


# ═══════════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════════

def _is_symbol(s: Sexp) -> bool:
    return isinstance(s, Symbol)


def _sym_name(s: Sexp) -> str:
    return s.value() if hasattr(s, "value") else str(s)


def _is_string(s: Sexp) -> bool:
    return isinstance(s, str) and not isinstance(s, Symbol)


def _is_int(s: Sexp) -> bool:
    return isinstance(s, int) and not isinstance(s, bool)


def _describe(s: Sexp) -> str:
    if _is_symbol(s):
        return f"symbol '{_sym_name(s)}'"
    if isinstance(s, list):
        return f"({_sym_name(s[0])} ...)" if s and _is_symbol(s[0]) else "a list"
    return f"{type(s).__name__} {s!r}"


def _unparse_raw(s: Sexp) -> str:
    """Re-serialise a raw sexpdata fragment to locate it in the source."""
    if _is_symbol(s):
        return _sym_name(s)
    if isinstance(s, list):
        return "(" + " ".join(_unparse_raw(x) for x in s) + ")"
    if _is_string(s):
        return _quote(s)
    return str(s)


def _needle(s: Sexp) -> str:
    if isinstance(s, list):
        return "(" + _sym_name(s[0]) if s and _is_symbol(s[0]) else ""
    return _unparse_raw(s)


_ITEM_DISPATCH: Dict[str, Callable[..., None]] = {}
_BODY_DISPATCH: Dict[str, Callable[..., A.BodyItem]] = {}
_TYPE_CTORS = ("ref", "ref-mut", "ptr", "ptr-mut", "slice", "array", "tuple", "adt", "fn")


def _register(table: dict, tag: str):
    """Decorator: register a parser function under *tag* in *table*."""
    def deco(fn):
        table[tag] = fn
        return fn
    return deco


# ═══════════════════════════════════════════════════════════════════════
#  Per-pattern parsing context
# ═══════════════════════════════════════════════════════════════════════

class _Ctx:
    """State while parsing one ``(pattern ...)`` form."""

    def __init__(self, form: _Form, index: _LineIndex) -> None:
        self.form = form
        self.index = index
        self.pattern: Optional[str] = None
        self.metavars: Dict[str, A.MetaVarDecl] = {}
        self.fields: Dict[str, Any] = {}
        self._cursor = 0

    # -- positions -------------------------------------------------------

    def pos_of(self, s: Sexp) -> SourcePos:
        """Best-effort position of *s*: the next occurrence of its text."""
        needle = _needle(s)
        if needle:
            hit = self.form.text.find(needle, self._cursor)
            if hit < 0:
                hit = self.form.text.find(needle)
            if hit >= 0:
                self._cursor = hit
                return self.index.pos(self.form.start + hit)
        return self.index.pos(self.form.start)

    def error(self, message: str, at: Sexp = None, *, expected: Optional[str] = None,
              code: ErrorCode = ErrorCode.UNEXPECTED_FORM) -> ParseError:
        pos = self.pos_of(at) if at is not None else self.index.pos(self.form.start)
        return ParseError(message, expected=expected, code=code, pos=pos, pattern=self.pattern)

    # -- shape checks ----------------------------------------------------

    def expect_list(self, s: Sexp, what: str, min_len: int = 1) -> list:
        if not isinstance(s, list) or len(s) < min_len:
            raise self.error(f"malformed {what}: got {_describe(s)}", s, expected=what)
        return s

    def head(self, s: list, what: str) -> str:
        if not s or not _is_symbol(s[0]):
            raise self.error(f"expected a form, got {_describe(s)}", s, expected=what)
        return _sym_name(s[0])

    def name(self, s: Sexp, what: str) -> str:
        if not _is_symbol(s):
            raise self.error(f"expected {what}, got {_describe(s)}", s, expected=what)
        text = _sym_name(s)
        if text.startswith("?") or text == "_":
            raise self.error(f"{text!r} cannot be used as {what}", s, expected=what)
        return text

    def string(self, s: Sexp, what: str) -> str:
        if _is_string(s):
            return str(s)
        if hasattr(sexpdata, "String") and isinstance(s, sexpdata.String) and not _is_symbol(s):
            return _sym_name(s)
        raise self.error(f"expected {what}, got {_describe(s)}", s, expected="a string literal")

    # -- metavariables ---------------------------------------------------

    def metaref(self, s: Sexp, kinds: Tuple[A.MetaVarKind, ...]) -> A.MetaRef:
        text = _sym_name(s)
        decl = self.metavars.get(text)
        if decl is None:
            raise self.error(f"undeclared metavariable {text}", s,
                             code=ErrorCode.UNDECLARED_METAVAR,
                             expected="a metavariable declared in (meta ...)")
        if decl.kind not in kinds:
            wanted = " or ".join(k.value for k in kinds)
            raise self.error(f"metavariable {text} is a {decl.kind.value}, not a {wanted}", s,
                             code=ErrorCode.METAVAR_KIND, expected=f"a {wanted} metavariable")
        return A.MetaRef(text, loc=self.pos_of(s))


def _is_metavar(s: Sexp) -> bool:
    return _is_symbol(s) and _sym_name(s).startswith("?") and len(_sym_name(s)) > 1


def _is_wildcard(s: Sexp) -> bool:
    return _is_symbol(s) and _sym_name(s) == "_"


_OPERAND_KINDS = (A.MetaVarKind.PLACE, A.MetaVarKind.CONST)
_PLACE_KIND = (A.MetaVarKind.PLACE,)
_BLOCK_KIND = (A.MetaVarKind.BLOCK,)
_TYPE_KIND = (A.MetaVarKind.TYPE,)


# ═══════════════════════════════════════════════════════════════════════
#  Templates
# ═══════════════════════════════════════════════════════════════════════

def _parse_operand(ctx: _Ctx, s: Sexp, *, place_only: bool = False) -> A.OperandTemplate:
    if _is_wildcard(s):
        return A.Wildcard()
    if _is_metavar(s):
        return ctx.metaref(s, _PLACE_KIND if place_only else _OPERAND_KINDS)
    if not place_only:
        if _is_symbol(s) and _sym_name(s) in ("true", "false"):
            return A.Literal(_sym_name(s) == "true")
        if _is_int(s) or isinstance(s, float):
            return A.Literal(s)
        if _is_string(s):
            return A.Literal(ctx.string(s, "a string literal"))
    if isinstance(s, list) and s and _is_symbol(s[0]):
        tag = _sym_name(s[0])
        if tag == "deref" and len(s) == 2:
            return A.Deref(_parse_operand(ctx, s[1], place_only=True))
        if tag == "field" and len(s) == 3 and _is_int(s[2]):
            return A.FieldOf(_parse_operand(ctx, s[1], place_only=True), s[2])
    expected = "a place template" if place_only else "an operand (_, ?var, literal, (deref ..), (field .. N))"
    raise ctx.error(f"invalid operand {_describe(s)}", s, expected=expected)


def _parse_target(ctx: _Ctx, s: Sexp) -> A.TargetTemplate:
    if _is_wildcard(s):
        return A.Wildcard()
    if _is_metavar(s):
        return ctx.metaref(s, _BLOCK_KIND)
    if _is_int(s) and s >= 0:
        return A.Literal(s)
    raise ctx.error(f"invalid branch target {_describe(s)}", s,
                    expected="_, a block metavariable or a block number")


def _parse_type(ctx: _Ctx, s: Sexp) -> A.TypeExpr:
    if _is_wildcard(s):
        return A.Wildcard()
    if _is_metavar(s):
        return ctx.metaref(s, _TYPE_KIND)
    if _is_symbol(s):
        return A.TypeName(_sym_name(s), loc=ctx.pos_of(s))
    if isinstance(s, list) and s and _is_symbol(s[0]):
        ctor = _sym_name(s[0])
        loc = ctx.pos_of(s)
        if ctor == "adt":
            if len(s) < 2 or not (_is_symbol(s[1]) or _is_string(s[1])):
                raise ctx.error("adt type needs a name", s, expected="(adt NAME type...)")
            name = _sym_name(s[1]) if _is_symbol(s[1]) else str(s[1])
            return A.TypeCtor("adt", tuple(_parse_type(ctx, a) for a in s[2:]), name=name, loc=loc)
        return A.TypeCtor(ctor, tuple(_parse_type(ctx, a) for a in s[1:]), loc=loc)
    raise ctx.error(f"invalid type {_describe(s)}", s, expected="a type expression")


def _parse_op(ctx: _Ctx, s: Sexp) -> Tuple[str, Tuple[A.OperandTemplate, ...]]:
    lst = ctx.expect_list(s, "(OP operand...)")
    op = ctx.head(lst, "an operation name")
    return op, tuple(_parse_operand(ctx, o) for o in lst[1:])


def _parse_in(ctx: _Ctx, s: Sexp) -> str:
    lst = ctx.expect_list(s, "(in ?block)", 2)
    if len(lst) != 2 or not _is_metavar(lst[1]):
        raise ctx.error("malformed (in ...)", s, expected="(in ?block)")
    return ctx.metaref(lst[1], _BLOCK_KIND).name


# ═══════════════════════════════════════════════════════════════════════
#  Body items
# ═══════════════════════════════════════════════════════════════════════

def _parse_body_item(ctx: _Ctx, s: Sexp, *, negated: bool) -> A.BodyItem:
    lst = ctx.expect_list(s, "a body item")
    tag = ctx.head(lst, "a body item")
    if tag == "not":
        if negated:
            raise ctx.error("negation inside a negated region", s,
                            code=ErrorCode.NESTED_NEGATION,
                            expected="a template or constraint (only one level of (not ...) is allowed)")
        loc = ctx.pos_of(s)
        if len(lst) < 2:
            raise ctx.error("empty (not ...)", s, expected="at least one template")
        return A.Negate(tuple(_parse_body_item(ctx, x, negated=True) for x in lst[1:]), loc=loc)
    fn = _BODY_DISPATCH.get(tag)
    if fn is None:
        raise ctx.error(f"unknown body form ({tag} ...)", s,
                        expected="one of " + ", ".join(sorted(list(_BODY_DISPATCH) + ["not"])))
    return fn(ctx, lst)


@_register(_BODY_DISPATCH, "stmt")
def _parse_stmt(ctx: _Ctx, s: list) -> A.StmtTemplate:
    if len(s) not in (3, 4):
        raise ctx.error("malformed stmt", s, expected="(stmt LABEL (OP operand...) [(in ?block)])")
    loc = ctx.pos_of(s)
    label = ctx.name(s[1], "a label")
    op, operands = _parse_op(ctx, s[2])
    block = _parse_in(ctx, s[3]) if len(s) == 4 else None
    return A.StmtTemplate(label, op, operands, block, loc=loc)


@_register(_BODY_DISPATCH, "term")
def _parse_term(ctx: _Ctx, s: list) -> A.TermTemplate:
    if len(s) not in (3, 4, 5):
        raise ctx.error("malformed term", s,
                        expected="(term LABEL (OP operand...) [(targets ...)] [(in ?block)])")
    loc = ctx.pos_of(s)
    label = ctx.name(s[1], "a label")
    op, operands = _parse_op(ctx, s[2])
    targets: Optional[Tuple[A.TargetTemplate, ...]] = None
    block: Optional[str] = None
    for extra in s[3:]:
        sub = ctx.expect_list(extra, "(targets ...) or (in ?block)")
        tag = ctx.head(sub, "(targets ...) or (in ?block)")
        if tag == "targets" and targets is None:
            targets = tuple(_parse_target(ctx, t) for t in sub[1:])
        elif tag == "in" and block is None:
            block = _parse_in(ctx, sub)
        else:
            raise ctx.error(f"unexpected ({tag} ...) in term", extra,
                            expected="one (targets ...) and one (in ?block) at most")
    return A.TermTemplate(label, op, operands, targets, block, loc=loc)


@_register(_BODY_DISPATCH, "block")
def _parse_block(ctx: _Ctx, s: list) -> A.BlockTemplate:
    if len(s) != 3 or not _is_metavar(s[2]):
        raise ctx.error("malformed block", s, expected="(block LABEL ?block)")
    loc = ctx.pos_of(s)
    label = ctx.name(s[1], "a label")
    return A.BlockTemplate(label, ctx.metaref(s[2], _BLOCK_KIND).name, loc=loc)


def _parse_order(relation: A.Relation):
    def parse(ctx: _Ctx, s: list) -> A.OrderConstraint:
        if len(s) != 3:
            raise ctx.error(f"malformed {relation.value}", s,
                            expected=f"({relation.value} LABEL LABEL)")
        loc = ctx.pos_of(s)
        return A.OrderConstraint(relation, ctx.name(s[1], "a label"), ctx.name(s[2], "a label"), loc=loc)
    return parse


for _rel in A.Relation:
    _register(_BODY_DISPATCH, _rel.value)(_parse_order(_rel))


@_register(_BODY_DISPATCH, "type-of")
def _parse_type_of(ctx: _Ctx, s: list) -> A.TypeConstraint:
    if len(s) != 3 or not _is_metavar(s[1]):
        raise ctx.error("malformed type-of", s, expected="(type-of ?var TYPE)")
    loc = ctx.pos_of(s)
    subject = ctx.metaref(s[1], _OPERAND_KINDS).name
    return A.TypeConstraint(subject, _parse_type(ctx, s[2]), loc=loc)


# ═══════════════════════════════════════════════════════════════════════
#  Pattern-level items
# ═══════════════════════════════════════════════════════════════════════

def _once(ctx: _Ctx, key: str, s: list) -> None:
    if key in ctx.fields:
        raise ctx.error(f"duplicate ({key} ...)", s, expected=f"a single ({key} ...)")


@_register(_ITEM_DISPATCH, "meta")
def _parse_meta(ctx: _Ctx, s: list) -> None:
    _once(ctx, "meta", s)
    ctx.fields["meta"] = True
    for decl in s[1:]:
        d = ctx.expect_list(decl, "(KIND ?name)", 2)
        kind_name = ctx.head(d, "a metavariable kind")
        try:
            kind = A.MetaVarKind(kind_name)
        except ValueError:
            raise ctx.error(f"unknown metavariable kind {kind_name!r}", decl,
                            expected="place, type, const or block") from None
        if len(d) != 2 or not _is_metavar(d[1]):
            raise ctx.error("malformed metavariable declaration", decl, expected=f"({kind_name} ?name)")
        name = _sym_name(d[1])
        if name in ctx.metavars:
            raise ctx.error(f"duplicate metavariable {name}", d[1],
                            code=ErrorCode.DUPLICATE_METAVAR,
                            expected="a metavariable name not declared before in this pattern")
        ctx.metavars[name] = A.MetaVarDecl(name, kind, loc=ctx.pos_of(d[1]))


@_register(_ITEM_DISPATCH, "severity")
def _parse_severity(ctx: _Ctx, s: list) -> None:
    _once(ctx, "severity", s)
    if len(s) != 2 or not _is_symbol(s[1]):
        raise ctx.error("malformed severity", s, expected="(severity LEVEL)")
    try:
        ctx.fields["severity"] = A.Severity(_sym_name(s[1]))
    except ValueError:
        raise ctx.error(f"unknown severity {_sym_name(s[1])!r}", s[1],
                        expected=" | ".join(v.value for v in A.Severity)) from None


def _string_item(key: str):
    def parse(ctx: _Ctx, s: list) -> None:
        _once(ctx, key, s)
        if len(s) != 2:
            raise ctx.error(f"malformed {key}", s, expected=f'({key} "text")')
        ctx.fields[key] = ctx.string(s[1], "a string literal")
    return parse


_register(_ITEM_DISPATCH, "message")(_string_item("message"))
_register(_ITEM_DISPATCH, "description")(_string_item("description"))


@_register(_ITEM_DISPATCH, "primary")
def _parse_primary(ctx: _Ctx, s: list) -> None:
    _once(ctx, "primary", s)
    if len(s) != 2:
        raise ctx.error("malformed primary", s, expected="(primary LABEL)")
    ctx.fields["primary"] = ctx.name(s[1], "a label")
    ctx.fields["primary_at"] = s[1]


@_register(_ITEM_DISPATCH, "body")
def _parse_body(ctx: _Ctx, s: list) -> None:
    _once(ctx, "body", s)
    ctx.fields["body"] = (s, tuple(_parse_body_item(ctx, x, negated=False) for x in s[1:]))


# ═══════════════════════════════════════════════════════════════════════
#  Label scoping
# ═══════════════════════════════════════════════════════════════════════

def _check_labels(ctx: _Ctx, body: Tuple[A.BodyItem, ...]) -> None:
    """Labels are unique per pattern; negated regions may see outer labels."""
    outer: Set[str] = set()
    seen: Set[str] = set()

    def declare(item: A.Template, scope: Set[str]) -> None:
        if item.label in seen:
            raise ParseError(f"duplicate label {item.label!r}", code=ErrorCode.DUPLICATE_LABEL,
                             expected="a label not used before in this pattern",
                             pos=item.loc, pattern=ctx.pattern)
        seen.add(item.label)
        scope.add(item.label)

    for item in body:
        if isinstance(item, (A.StmtTemplate, A.TermTemplate, A.BlockTemplate)):
            declare(item, outer)
    inner_scopes: List[Tuple[A.Negate, Set[str]]] = []
    for item in body:
        if isinstance(item, A.Negate):
            scope: Set[str] = set()
            for sub in item.body:
                if isinstance(sub, (A.StmtTemplate, A.TermTemplate, A.BlockTemplate)):
                    declare(sub, scope)
            inner_scopes.append((item, scope))

    def check_refs(items: Tuple[A.BodyItem, ...], visible: Set[str]) -> None:
        for it in items:
            if isinstance(it, A.OrderConstraint):
                for label in (it.first, it.second):
                    if label not in visible:
                        raise ParseError(f"undefined label {label!r}", code=ErrorCode.UNDEFINED_LABEL,
                                         expected="a label of a stmt, term or block template",
                                         pos=it.loc, pattern=ctx.pattern)

    check_refs(body, outer)
    for neg, scope in inner_scopes:
        check_refs(neg.body, outer | scope)

    primary = ctx.fields.get("primary")
    if primary is not None and primary not in outer:
        raise ctx.error(f"primary label {primary!r} is not a positive template",
                        ctx.fields["primary_at"], code=ErrorCode.UNDEFINED_LABEL,
                        expected="a label declared outside (not ...)")


# ═══════════════════════════════════════════════════════════════════════
#  Pattern & file parsers
# ═══════════════════════════════════════════════════════════════════════

def _parse_pattern_form(form: _Form, index: _LineIndex) -> A.PatternDef:
    ctx = _Ctx(form, index)
    try:
        raw = sexpdata.loads(form.text, nil=None, true=None, false=None)
    except Exception as e:
        raise ParseError(f"S-expression syntax error: {e}", code=ErrorCode.SEXP_SYNTAX,
                         expected="a well-formed S-expression", pos=index.pos(form.start)) from e

    if not isinstance(raw, list) or not raw or not _is_symbol(raw[0]) or _sym_name(raw[0]) != "pattern":
        raise ctx.error(f"expected a pattern declaration, got {_describe(raw)}", raw,
                        expected="(pattern NAME ...)")
    if len(raw) < 2:
        raise ctx.error("pattern without a name", raw, expected="(pattern NAME ...)")
    ctx.pattern = ctx.name(raw[1], "a pattern name")
    loc = index.pos(form.start)

    # Declarations must be known before templates reference them.
    items = raw[2:]
    ordered = sorted(
        items,
        key=lambda it: 0 if isinstance(it, list) and it and _is_symbol(it[0]) and _sym_name(it[0]) == "meta" else 1,
    )
    for item in ordered:
        lst = ctx.expect_list(item, "a pattern item")
        tag = ctx.head(lst, "a pattern item")
        fn = _ITEM_DISPATCH.get(tag)
        if fn is None:
            raise ctx.error(f"unknown pattern item ({tag} ...)", item,
                            expected="one of " + ", ".join(sorted(_ITEM_DISPATCH)))
        fn(ctx, lst)

    if "body" not in ctx.fields:
        raise ctx.error("pattern has no body", raw, expected="(body ...)")
    _, body = ctx.fields["body"]
    _check_labels(ctx, body)

    return A.PatternDef(
        name=ctx.pattern,
        metavars=tuple(ctx.metavars.values()),
        body=body,
        severity=ctx.fields.get("severity", A.Severity.WARNING),
        message=ctx.fields.get("message"),
        description=ctx.fields.get("description"),
        primary=ctx.fields.get("primary"),
        loc=loc,
    )


def parse(text: str, *, filename: str = "<string>") -> A.PatternFile:
    """Parse a pattern file.

    Parameters
    ----------
    text:
        Full source text; zero or more ``(pattern ...)`` forms.
    filename:
        Used in :class:`~rpl.errors.SourcePos` of errors and nodes.

    Raises
    ------
    ParseError
        On the first malformed form.  The whole file is rejected.
    """
    index = _LineIndex(text, filename)
    patterns: List[A.PatternDef] = []
    names: Set[str] = set()
    for form in _split_forms(text, index):
        pat = _parse_pattern_form(form, index)
        if pat.name in names:
            raise ParseError(f"duplicate pattern {pat.name!r}", code=ErrorCode.DUPLICATE_PATTERN,
                             expected="a unique pattern name", pos=pat.loc, pattern=pat.name)
        names.add(pat.name)
        patterns.append(pat)
    return A.PatternFile(filename, tuple(patterns))


def parse_pattern(text: str, *, filename: str = "<string>") -> A.PatternDef:
    """Parse text holding exactly one pattern declaration."""
    pf = parse(text, filename=filename)
    if len(pf.patterns) != 1:
        raise ParseError(f"expected exactly one pattern, found {len(pf.patterns)}",
                         expected="(pattern NAME ...)", pos=SourcePos(filename))
    return pf.patterns[0]


def parse_file(path: Union[str, Path]) -> A.PatternFile:
    """Read and parse a pattern file from disk."""
    p = Path(path)
    return parse(p.read_text(encoding="utf-8"), filename=str(p))


# ═══════════════════════════════════════════════════════════════════════
#  Roundtrip support: AST → S-expression text
# ═══════════════════════════════════════════════════════════════════════

def _quote(s: str) -> str:
    return '"' + s.replace("\\", "\\\\").replace('"', '\\"') + '"'


class Unparser:
    """Convert AST nodes back to canonical pattern text.

    ``parse(unparse(f)) == f`` for every file ``f`` produced by :func:`parse`.
    """

    def __init__(self, indent: str = "  ") -> None:
        self._indent = indent

    def file(self, pf: A.PatternFile) -> str:
        return "\n\n".join(self.pattern(p) for p in pf.patterns) + ("\n" if pf.patterns else "")

    def pattern(self, p: A.PatternDef) -> str:
        ind = self._indent
        lines = [f"(pattern {p.name}"]
        if p.metavars:
            decls = " ".join(f"({m.kind.value} {m.name})" for m in p.metavars)
            lines.append(f"{ind}(meta {decls})")
        lines.append(f"{ind}(severity {p.severity.value})")
        if p.message is not None:
            lines.append(f"{ind}(message {_quote(p.message)})")
        if p.description is not None:
            lines.append(f"{ind}(description {_quote(p.description)})")
        if p.primary is not None:
            lines.append(f"{ind}(primary {p.primary})")
        lines.append(f"{ind}(body")
        for item in p.body:
            lines.append(self.body_item(item, 2))
        lines[-1] += "))"
        return "\n".join(lines)

    def body_item(self, item: A.BodyItem, depth: int) -> str:
        pad = self._indent * depth
        if isinstance(item, A.Negate):
            inner = [self.body_item(x, depth + 1) for x in item.body]
            inner[-1] += ")"
            return f"{pad}(not\n" + "\n".join(inner)
        return pad + self.item(item)

    def item(self, item: A.BodyItem) -> str:
        if isinstance(item, A.StmtTemplate):
            text = f"(stmt {item.label} {self.op(item.op, item.operands)}"
            if item.block is not None:
                text += f" (in {item.block})"
            return text + ")"
        if isinstance(item, A.TermTemplate):
            text = f"(term {item.label} {self.op(item.op, item.operands)}"
            if item.targets is not None:
                text += " (targets" + "".join(" " + self.operand(t) for t in item.targets) + ")"
            if item.block is not None:
                text += f" (in {item.block})"
            return text + ")"
        if isinstance(item, A.BlockTemplate):
            return f"(block {item.label} {item.metavar})"
        if isinstance(item, A.OrderConstraint):
            return f"({item.relation.value} {item.first} {item.second})"
        if isinstance(item, A.TypeConstraint):
            return f"(type-of {item.metavar} {self.type_expr(item.type_expr)})"
        raise TypeError(f"cannot unparse {type(item).__name__}")

    def op(self, op: str, operands: Tuple[A.OperandTemplate, ...]) -> str:
        return "(" + " ".join([op] + [self.operand(o) for o in operands]) + ")"

    def operand(self, o: A.OperandTemplate) -> str:
        if isinstance(o, A.Wildcard):
            return "_"
        if isinstance(o, A.MetaRef):
            return o.name
        if isinstance(o, A.Literal):
            v = o.value
            if isinstance(v, bool):
                return "true" if v else "false"
            if isinstance(v, str):
                return _quote(v)
            return repr(v)
        if isinstance(o, A.Deref):
            return f"(deref {self.operand(o.inner)})"
        if isinstance(o, A.FieldOf):
            return f"(field {self.operand(o.inner)} {o.index})"
        raise TypeError(f"cannot unparse operand {type(o).__name__}")

    def type_expr(self, t: A.TypeExpr) -> str:
        if isinstance(t, A.Wildcard):
            return "_"
        if isinstance(t, A.MetaRef):
            return t.name
        if isinstance(t, A.TypeName):
            return t.name
        if isinstance(t, A.TypeCtor):
            parts = [t.ctor]
            if t.name is not None:
                plain = t.name and not any(c.isspace() or c in '()";' for c in t.name)
                parts.append(t.name if plain else _quote(t.name))
            parts.extend(self.type_expr(a) for a in t.args)
            return "(" + " ".join(parts) + ")"
        raise TypeError(f"cannot unparse type {type(t).__name__}")


def unparse(node: Union[A.PatternFile, A.PatternDef]) -> str:
    """Convert a file or a single pattern back to pattern text."""
    u = Unparser()
    if isinstance(node, A.PatternFile):
        return u.file(node)
    if isinstance(node, A.PatternDef):
        return u.pattern(node) + "\n"
    raise TypeError(f"Cannot unparse {type(node).__name__}")


__all__ = [
    "parse",
    "parse_pattern",
    "parse_file",
    "Unparser",
    "unparse",
]
