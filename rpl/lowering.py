"""
rpl/lowering.py
===============

Lowers pattern ASTs to :class:`~rpl.constraints.CompiledPattern`.

Passes, in order, for each pattern:

1. **Resolution** – operation symbols and type names are looked up in
   :mod:`rpl.builtins`; misses raise :class:`~rpl.errors.UnresolvedSymbol`.
2. **Linearization** – all control-edge constraints (positive and negated)
   are put into one label graph and topologically sorted; a cycle raises
   :class:`~rpl.errors.CyclicMetavarConstraint`.
3. **Scheduling** – for every body, each edge and type check is attached to
   the first node after which all of its inputs are bound.  A type check on
   a metavariable no template can bind raises
   :class:`~rpl.errors.UnboundMetavar`.

Lowering is a pure function of its input: the same AST always yields an
equal ``CompiledPattern``.
"""

from __future__ import annotations

import heapq
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from rpl import ast as A
from rpl.builtins import TYPE_CONSTRUCTORS, lookup_operation, lookup_primitive
from rpl.constraints import (
    CompiledPattern,
    ConstraintBody,
    ConstraintNode,
    ControlEdge,
    NodeKind,
    OperandPattern,
    OpLit,
    OpProj,
    OpVar,
    OpWild,
    TyShape,
    TypeCheck,
    TypePattern,
    TyVar,
    TyWild,
)
from rpl.errors import (
    CyclicMetavarConstraint,
    LoweringError,
    UnboundMetavar,
    UnresolvedSymbol,
)
from rpl_mir.mir import DEREF, ProjectionElem, ProjectionKind, TypeKind

logger = logging.getLogger(__name__)


class _Lowerer:
    """Lowers one :class:`~rpl.ast.PatternDef`."""

    def __init__(self, pattern: A.PatternDef) -> None:
        self.pattern = pattern
        self.kinds: Dict[str, A.MetaVarKind] = {m.name: m.kind for m in pattern.metavars}

    def fail(self, exc_type, *args, pos=None) -> LoweringError:
        return exc_type(*args, pos=pos or self.pattern.loc, pattern=self.pattern.name)

    # -- resolution -------------------------------------------------------

    def operand(self, o: A.OperandTemplate) -> OperandPattern:
        if isinstance(o, A.Wildcard):
            return OpWild()
        if isinstance(o, A.MetaRef):
            return OpVar(o.name, self.kinds[o.name])
        if isinstance(o, A.Literal):
            return OpLit(o.value)
        if isinstance(o, A.Deref):
            return OpProj(self.operand(o.inner), DEREF)
        if isinstance(o, A.FieldOf):
            return OpProj(self.operand(o.inner), ProjectionElem(ProjectionKind.FIELD, o.index))
        raise TypeError(f"unexpected operand node {type(o).__name__}")

    def type_pattern(self, t: A.TypeExpr) -> TypePattern:
        if isinstance(t, A.Wildcard):
            return TyWild()
        if isinstance(t, A.MetaRef):
            return TyVar(t.name)
        if isinstance(t, A.TypeName):
            shape = lookup_primitive(t.name)
            if shape is None:
                raise self.fail(UnresolvedSymbol, t.name, "type", pos=t.loc)
            return TyShape(shape.kind, shape.name)
        if isinstance(t, A.TypeCtor):
            entry = TYPE_CONSTRUCTORS.get(t.ctor)
            if entry is None:
                raise self.fail(UnresolvedSymbol, t.ctor, "type constructor", pos=t.loc)
            kind, arity = entry
            if arity is not None and len(t.args) != arity:
                raise self.fail(UnresolvedSymbol, f"{t.ctor}/{len(t.args)}",
                                "type constructor signature", pos=t.loc)
            args = tuple(self.type_pattern(a) for a in t.args)
            name = (t.name or "") if kind is TypeKind.ADT else ""
            return TyShape(kind, name, args)
        raise TypeError(f"unexpected type node {type(t).__name__}")

    def node(self, item: A.Template) -> ConstraintNode:
        if isinstance(item, A.BlockTemplate):
            return ConstraintNode(item.label, NodeKind.BLOCK, block_var=item.metavar, loc=item.loc)
        sig = lookup_operation(item.op)
        want_term = isinstance(item, A.TermTemplate)
        if sig is None:
            raise self.fail(UnresolvedSymbol, item.op, "operation", pos=item.loc)
        if sig.is_terminator != want_term:
            namespace = "terminator operation" if want_term else "statement operation"
            raise self.fail(UnresolvedSymbol, item.op, namespace, pos=item.loc)
        if not sig.accepts(len(item.operands)):
            raise self.fail(UnresolvedSymbol, f"{item.op}/{len(item.operands)}",
                            f"operation signature (expected {sig.describe_arity()} operands)",
                            pos=item.loc)
        operands = tuple(self.operand(o) for o in item.operands)
        if want_term:
            targets = None
            if item.targets is not None:
                targets = tuple(self.operand(t) for t in item.targets)
            return ConstraintNode(item.label, NodeKind.TERMINATOR, sig.kind, operands,
                                  targets, item.block, loc=item.loc)
        return ConstraintNode(item.label, NodeKind.STATEMENT, sig.kind, operands,
                              None, item.block, loc=item.loc)

    # -- linearization ----------------------------------------------------

    def check_acyclic(self, edges: Sequence[A.OrderConstraint]) -> None:
        # (only-through x gate) orders the gate before x.
        pairs = [
            (e.second, e.first, e) if e.relation is A.Relation.ONLY_THROUGH else (e.first, e.second, e)
            for e in edges
        ]
        labels: Set[str] = set()
        succ: Dict[str, Set[str]] = {}
        indeg: Dict[str, int] = {}
        for src, dst, _ in pairs:
            labels.update((src, dst))
        for label in labels:
            succ[label] = set()
            indeg[label] = 0
        for src, dst, _ in pairs:
            if dst not in succ[src]:
                succ[src].add(dst)
                indeg[dst] += 1
        ready = [label for label in labels if indeg[label] == 0]
        heapq.heapify(ready)
        done = 0
        while ready:
            label = heapq.heappop(ready)
            done += 1
            for nxt in sorted(succ[label]):
                indeg[nxt] -= 1
                if indeg[nxt] == 0:
                    heapq.heappush(ready, nxt)
        if done != len(labels):
            stuck = sorted(label for label in labels if indeg[label] > 0)
            first = next(e for src, dst, e in pairs if src in stuck and dst in stuck)
            raise self.fail(
                CyclicMetavarConstraint,
                "ordering constraints between " + ", ".join(stuck) + " cannot be linearized",
                pos=first.loc,
            )

    # -- scheduling -------------------------------------------------------

    def body(self, items: Iterable[A.BodyItem], outer_labels: Set[str],
             outer_vars: Set[str]) -> ConstraintBody:
        items = list(items)
        nodes = tuple(self.node(it) for it in items
                      if isinstance(it, (A.StmtTemplate, A.TermTemplate, A.BlockTemplate)))
        orders = [it for it in items if isinstance(it, A.OrderConstraint)]
        types = [it for it in items if isinstance(it, A.TypeConstraint)]

        label_at = {n.label: i for i, n in enumerate(nodes)}
        binds_at: Dict[str, int] = {}
        for i, n in enumerate(nodes):
            for name in _node_vars(n):
                binds_at.setdefault(name, i)

        edges = tuple(ControlEdge(o.relation, o.first, o.second) for o in orders)
        edge_schedule: List[List[int]] = [[] for _ in nodes]
        pre_edges: List[int] = []
        for k, o in enumerate(orders):
            ready = max(-1 if l in outer_labels else label_at[l] for l in (o.first, o.second))
            (pre_edges if ready < 0 else edge_schedule[ready]).append(k)

        checks = []
        type_schedule: List[List[int]] = [[] for _ in nodes]
        pre_types: List[int] = []
        for k, t in enumerate(types):
            checks.append(TypeCheck(t.metavar, self.type_pattern(t.type_expr)))
            if t.metavar in outer_vars:
                pre_types.append(k)
            elif t.metavar in binds_at:
                type_schedule[binds_at[t.metavar]].append(k)
            else:
                raise self.fail(
                    UnboundMetavar,
                    f"type constraint on {t.metavar}, which no template in the same body binds",
                    pos=t.loc,
                )

        return ConstraintBody(
            nodes=nodes,
            edges=edges,
            type_checks=tuple(checks),
            edge_schedule=tuple(tuple(s) for s in edge_schedule),
            type_schedule=tuple(tuple(s) for s in type_schedule),
            pre_edges=tuple(pre_edges),
            pre_types=tuple(pre_types),
        )

    def lower(self, source: str) -> CompiledPattern:
        p = self.pattern
        # Each negated region only has to be consistent with the positive body.
        orders = [it for it in p.body if isinstance(it, A.OrderConstraint)]
        self.check_acyclic(orders)
        for neg in p.negations():
            self.check_acyclic(orders + [it for it in neg.body if isinstance(it, A.OrderConstraint)])

        positive_items = [it for it in p.body if not isinstance(it, A.Negate)]
        positive = self.body(positive_items, set(), set())
        outer_labels = {n.label for n in positive.nodes}
        outer_vars: Set[str] = set()
        for n in positive.nodes:
            outer_vars.update(_node_vars(n))
        for check in positive.type_checks:
            outer_vars.update(_type_vars(check.shape))
        negatives = tuple(self.body(neg.body, outer_labels, outer_vars) for neg in p.negations())

        primary = p.primary
        if primary is None and positive.nodes:
            primary = positive.nodes[0].label
        return CompiledPattern(
            name=p.name,
            metavars=tuple((m.name, m.kind) for m in p.metavars),
            positive=positive,
            negatives=negatives,
            primary=primary,
            severity=p.severity,
            message=p.message,
            description=p.description,
            source=source,
            loc=p.loc,
        )


def _operand_vars(o: OperandPattern) -> Iterable[str]:
    if isinstance(o, OpVar):
        yield o.name
    elif isinstance(o, OpProj):
        yield from _operand_vars(o.inner)


def _node_vars(n: ConstraintNode) -> List[str]:
    names: List[str] = []
    for o in n.operands:
        names.extend(_operand_vars(o))
    for t in n.targets or ():
        names.extend(_operand_vars(t))
    if n.block_var is not None:
        names.append(n.block_var)
    return names


def _type_vars(t: TypePattern) -> Iterable[str]:
    if isinstance(t, TyVar):
        yield t.name
    elif isinstance(t, TyShape):
        for a in t.args:
            yield from _type_vars(a)


def lower_pattern(pattern: A.PatternDef, *, source: Optional[str] = None) -> CompiledPattern:
    """Lower one pattern declaration.

    Raises
    ------
    LoweringError
        ``UnresolvedSymbol``, ``CyclicMetavarConstraint`` or
        ``UnboundMetavar``.
    """
    return _Lowerer(pattern).lower(source or pattern.loc.file)


def lower_file(pf: A.PatternFile) -> Tuple[List[CompiledPattern], List[LoweringError]]:
    """Lower every pattern of a file; failing patterns are reported, not raised."""
    compiled: List[CompiledPattern] = []
    errors: List[LoweringError] = []
    for p in pf.patterns:
        try:
            compiled.append(lower_pattern(p, source=pf.path))
        except LoweringError as e:
            logger.warning("pattern definition error: %s", e)
            errors.append(e)
    return compiled, errors


__all__ = ["lower_pattern", "lower_file"]
