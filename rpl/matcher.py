"""
rpl/matcher.py
==============

Backtracking matcher: finds every way one compiled pattern can be embedded
in one function's CFG.

Search
------
Constraint nodes are bound one at a time in declaration order.  For each
node the candidate entities are tried in block-then-index order; every
binding goes through :class:`Bindings`, whose trail lets a failed branch be
rolled back to the choice point exactly.  After node ``i`` is bound, the
control-edge and type checks that :mod:`rpl.lowering` scheduled for ``i``
are evaluated, so an impossible branch is cut as early as possible.

When every positive node is bound, each negated body is searched under the
current bindings.  The branch is a match only if none of them has a
solution.

Budget
------
Every candidate tried and every check evaluated costs one step.  A search
that exceeds :attr:`EngineConfig.max_steps` raises
:class:`~rpl.errors.EngineTimeout`.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import (
    Any,
    Dict,
    FrozenSet,
    Iterator,
    List,
    Optional,
    Tuple,
    Union,
)

from rpl.ast import MetaVarKind, Relation, Severity
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
from rpl.errors import EngineTimeout
from rpl_mir.mir import (
    BlockId,
    Const,
    Function,
    Location,
    Operand,
    Place,
    Span,
    TypeShape,
)

logger = logging.getLogger(__name__)

#: A value a label or metavariable can be bound to.
Entity = Union[Location, BlockId, Place, Const, TypeShape]


# ═══════════════════════════════════════════════════════════════════════
#  Configuration & results
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class EngineConfig:
    """Tuning knobs for one (pattern, function) search."""
    max_steps: int = 100_000

    def validate(self) -> List[str]:
        """Return a list of validation warnings (empty if valid)."""
        warnings: List[str] = []
        if self.max_steps <= 0:
            warnings.append("max_steps must be positive")
        return warnings


@dataclass(frozen=True, slots=True)
class MatchResult:
    """One successful embedding of a pattern.

    ``bindings`` holds the rendered value of every bound metavariable, in
    declaration order.  ``site`` is the CFG address of the primary label.
    """

    pattern: str
    function: str
    location: Span
    site: str
    bindings: Tuple[Tuple[str, str], ...] = ()
    severity: Severity = Severity.WARNING
    message: str = ""

    def binding(self, name: str) -> Optional[str]:
        for key, value in self.bindings:
            if key == name:
                return value
        return None


# ═══════════════════════════════════════════════════════════════════════
#  Binding environment
# ═══════════════════════════════════════════════════════════════════════

class Bindings:
    """Name → entity map with an undo trail.

    Labels and metavariables share one namespace (metavariable names start
    with ``?``).  Statement and terminator locations are additionally
    recorded in a *taken* set, so that two labels never bind the same
    location within one branch.
    """

    __slots__ = ("_values", "_taken", "_trail")

    def __init__(self) -> None:
        self._values: Dict[str, Entity] = {}
        self._taken: Dict[Location, str] = {}
        self._trail: List[str] = []

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def __len__(self) -> int:
        return len(self._values)

    def get(self, name: str) -> Optional[Entity]:
        return self._values.get(name)

    def is_taken(self, loc: Location) -> bool:
        return loc in self._taken

    def bind(self, name: str, value: Entity) -> None:
        if name in self._values:
            raise KeyError(f"{name} is already bound")
        self._values[name] = value
        if isinstance(value, Location):
            self._taken[value] = name
        self._trail.append(name)

    def mark(self) -> int:
        return len(self._trail)

    def undo(self, mark: int) -> None:
        """Unbind everything bound since :meth:`mark` returned ``mark``."""
        while len(self._trail) > mark:
            name = self._trail.pop()
            value = self._values.pop(name)
            if isinstance(value, Location):
                del self._taken[value]

    def items(self) -> Iterator[Tuple[str, Entity]]:
        return iter(self._values.items())


# ═══════════════════════════════════════════════════════════════════════
#  Matcher
# ═══════════════════════════════════════════════════════════════════════

class Matcher:
    """Search state for one (pattern, function) pair."""

    def __init__(
        self,
        pattern: CompiledPattern,
        function: Function,
        config: Optional[EngineConfig] = None,
    ) -> None:
        self.pattern = pattern
        self.function = function
        self.config = config or EngineConfig()
        self.bindings = Bindings()
        self.steps = 0
        self._reach: Dict[int, FrozenSet[int]] = {}

    # -- budget ----------------------------------------------------------

    def _tick(self) -> None:
        self.steps += 1
        if self.steps > self.config.max_steps:
            raise EngineTimeout(self.pattern.name, self.function.name, self.config.max_steps)

    # -- public ----------------------------------------------------------

    def run(self) -> List[MatchResult]:
        """All matches, one per successful branch, in discovery order."""
        results: List[MatchResult] = []
        for _ in self._solve(self.pattern.positive, negatives=self.pattern.negatives):
            results.append(self._result())
        logger.debug("%s on %s: %d match(es) in %d steps",
                     self.pattern.name, self.function.name, len(results), self.steps)
        return results

    def _result(self) -> MatchResult:
        p = self.pattern
        rendered = tuple(
            (name, str(self.bindings.get(name)))
            for name, _kind in p.metavars
            if name in self.bindings
        )
        site, span = "", self.function.span
        anchor = self.bindings.get(p.primary) if p.primary else None
        if isinstance(anchor, Location):
            site, span = str(anchor), self.function.span_of(anchor)
        elif isinstance(anchor, BlockId):
            site, span = str(anchor), self.function.span_of(Location(anchor.index, 0))
        return MatchResult(
            pattern=p.name,
            function=self.function.name,
            location=span,
            site=site,
            bindings=rendered,
            severity=p.severity,
            message=p.title,
        )

    # -- search ----------------------------------------------------------

    def _solve(
        self,
        body: ConstraintBody,
        negatives: Tuple[ConstraintBody, ...] = (),
    ) -> Iterator[None]:
        """Yield once per solution of ``body``; bindings are live at each yield."""
        mark = self.bindings.mark()
        try:
            if all(self._edge_holds(body.edges[k]) for k in body.pre_edges) and \
                    all(self._type_holds(body.type_checks[k]) for k in body.pre_types):
                yield from self._extend(body, 0, negatives)
        finally:
            self.bindings.undo(mark)

    def _extend(
        self,
        body: ConstraintBody,
        i: int,
        negatives: Tuple[ConstraintBody, ...],
    ) -> Iterator[None]:
        if i == len(body.nodes):
            if not any(self._has_solution(neg) for neg in negatives):
                yield None
            return
        node = body.nodes[i]
        for _ in self._candidates(node):
            if all(self._type_holds(body.type_checks[k]) for k in body.type_schedule[i]) and \
                    all(self._edge_holds(body.edges[k]) for k in body.edge_schedule[i]):
                yield from self._extend(body, i + 1, negatives)

    def _has_solution(self, body: ConstraintBody) -> bool:
        search = self._solve(body)
        try:
            for _ in search:
                return True
            return False
        finally:
            search.close()

    # -- node candidates ---------------------------------------------------

    def _candidates(self, node: ConstraintNode) -> Iterator[None]:
        """Bind ``node`` to each compatible entity in turn.

        Yields with the node's bindings in place and removes them before
        moving on to the next candidate.
        """
        fn = self.function
        blocks = fn.blocks
        if node.block_var is not None:
            pinned = self.bindings.get(node.block_var)
            if isinstance(pinned, BlockId):
                blocks = (fn.block(pinned.index),)

        for bb in blocks:
            if node.kind is NodeKind.BLOCK:
                self._tick()
                mark = self.bindings.mark()
                if self._unify(node.block_var, BlockId(bb.index)):
                    self.bindings.bind(node.label, BlockId(bb.index))
                    yield None
                self.bindings.undo(mark)
                continue
            if node.kind is NodeKind.TERMINATOR:
                entities = ((bb.terminator_index, bb.terminator),)
            else:
                entities = enumerate(bb.statements)
            for index, entity in entities:
                self._tick()
                loc = Location(bb.index, index)
                if entity.kind is not node.op or len(entity.operands) != len(node.operands):
                    continue
                if self.bindings.is_taken(loc):
                    continue
                mark = self.bindings.mark()
                if self._match_entity(node, loc, entity):
                    self.bindings.bind(node.label, loc)
                    yield None
                self.bindings.undo(mark)

    def _match_entity(self, node: ConstraintNode, loc: Location, entity: Any) -> bool:
        if node.block_var is not None and not self._unify(node.block_var, BlockId(loc.block)):
            return False
        for pat, operand in zip(node.operands, entity.operands):
            if not self._match_operand(pat, operand):
                return False
        if node.targets is not None:
            targets = entity.targets
            if len(targets) != len(node.targets):
                return False
            for pat, target in zip(node.targets, targets):
                if not self._match_target(pat, target):
                    return False
        return True

    def _unify(self, name: str, value: Entity) -> bool:
        bound = self.bindings.get(name)
        if bound is None:
            self.bindings.bind(name, value)
            return True
        return bound == value

    def _match_operand(self, pat: OperandPattern, operand: Operand) -> bool:
        if isinstance(pat, OpWild):
            return True
        if isinstance(pat, OpVar):
            if pat.name not in self.bindings:
                if pat.kind is MetaVarKind.PLACE and not isinstance(operand, Place):
                    return False
                if pat.kind is MetaVarKind.CONST and not isinstance(operand, Const):
                    return False
            return self._unify(pat.name, operand)
        if isinstance(pat, OpLit):
            return (
                isinstance(operand, Const)
                and type(operand.value) is type(pat.value)
                and operand.value == pat.value
            )
        if isinstance(pat, OpProj):
            if not isinstance(operand, Place) or operand.last() != pat.elem:
                return False
            return self._match_operand(pat.inner, operand.base())
        raise TypeError(f"unexpected operand pattern {pat!r}")

    def _match_target(self, pat: OperandPattern, target: int) -> bool:
        if isinstance(pat, OpWild):
            return True
        if isinstance(pat, OpVar):
            return self._unify(pat.name, BlockId(target))
        if isinstance(pat, OpLit):
            return type(pat.value) is int and pat.value == target
        return False

    # -- type checks ---------------------------------------------------------

    def _type_holds(self, check: TypeCheck) -> bool:
        self._tick()
        subject = self.bindings.get(check.subject)
        if not isinstance(subject, (Place, Const)):
            return False
        concrete = self.function.type_of(subject)
        if concrete is None:
            return False
        return self._unify_type(check.shape, concrete)

    def _unify_type(self, pat: TypePattern, concrete: TypeShape) -> bool:
        """One-directional unification; bindings made here are undone by the caller."""
        if isinstance(pat, TyWild):
            return True
        if isinstance(pat, TyVar):
            return self._unify(pat.name, concrete)
        if isinstance(pat, TyShape):
            if pat.kind is not concrete.kind or pat.name != concrete.name:
                return False
            if len(pat.args) != len(concrete.args):
                return False
            return all(self._unify_type(p, c) for p, c in zip(pat.args, concrete.args))
        raise TypeError(f"unexpected type pattern {pat!r}")

    # -- control edges -------------------------------------------------------

    def _position(self, label: str) -> Tuple[int, int]:
        value = self.bindings.get(label)
        if isinstance(value, Location):
            return value.block, value.index
        if isinstance(value, BlockId):
            # a whole block sits before its first statement
            return value.index, -1
        raise KeyError(f"label {label} is not bound")

    def _edge_holds(self, edge: ControlEdge) -> bool:
        self._tick()
        src_block, src_index = self._position(edge.source)
        dst_block, dst_index = self._position(edge.target)
        fn = self.function
        rel = edge.relation
        if rel is Relation.PRECEDES:
            if src_block == dst_block and src_index < dst_index:
                return True
            return dst_block in self._reachable(src_block)
        if rel is Relation.EDGE:
            return dst_block in fn.successors(src_block)
        if rel is Relation.UNIQUE_PRED:
            return fn.predecessors(dst_block) == frozenset((src_block,))
        if rel is Relation.ONLY_THROUGH:
            # source is reached from entry only through target (the gate)
            return self._gated(src_block, src_index, dst_block, dst_index)
        raise AssertionError(f"unhandled relation {rel!r}")

    def _reachable(self, start: int) -> FrozenSet[int]:
        """Blocks reachable from ``start`` along one or more CFG edges."""
        cached = self._reach.get(start)
        if cached is not None:
            return cached
        seen = set()
        queue = deque(self.function.successors(start))
        while queue:
            b = queue.popleft()
            if b in seen:
                continue
            self._tick()
            seen.add(b)
            queue.extend(self.function.successors(b))
        result = frozenset(seen)
        self._reach[start] = result
        return result

    def _gated(self, block: int, index: int, gate_block: int, gate_index: int) -> bool:
        if block == gate_block:
            return gate_index < index
        entry = Function.ENTRY
        if entry == gate_block:
            return True
        seen = {gate_block}
        queue = deque([entry])
        while queue:
            b = queue.popleft()
            if b in seen:
                continue
            self._tick()
            if b == block:
                return False
            seen.add(b)
            queue.extend(self.function.successors(b))
        return True


def match_function(
    pattern: CompiledPattern,
    function: Function,
    config: Optional[EngineConfig] = None,
) -> List[MatchResult]:
    """Match one compiled pattern against one function.

    Raises
    ------
    EngineTimeout
        If the search needs more than ``config.max_steps`` steps.
    """
    return Matcher(pattern, function, config).run()


__all__ = [
    "EngineConfig",
    "MatchResult",
    "Bindings",
    "Matcher",
    "match_function",
]
