"""
jsr_subroutines.subroutines
===========================

Partitions a method body into JSR/RET subroutines plus the top level.

A *subroutine* here is stricter than the informal notion the JVM uses for
``jsr``/``ret`` code: it is the code reachable from the target of a ``jsr`` /
``jsr_w`` up to, and not past, its single matching ``ret``; no instruction
may belong to two subroutines (or to a subroutine and the top level);
subroutine code may not be protected by an exception handler; and no
subroutine may be entered while another one on the call path uses the same
return-address slot.  The *top level* is modelled as a special
:class:`Subroutine` holding everything reachable from the method entry and
from exception handlers without entering a ``jsr`` target.

Public API
----------
    SubroutineConfig     - tunables for table construction
    Subroutine           - one region (or the top level)
    Subroutines          - the validated table of regions for one method
    build_subroutines    - build a table for a MethodCode
    check_subroutines    - build, turning structural violations into diagnostics
    subroutine_summary   - human-readable multi-line summary

Typical usage::

    from jsr_subroutines import parse_listing, build_subroutines

    method = parse_listing('''
            jsr Fin
            return
    Fin:    astore_1
            ret 1
    ''')
    subs = build_subroutines(method)
    for sub in subs.subroutines:
        print(sub.local_variable, sorted(sub.accessed_local_indices()))

Construction
------------
1. collect every ``jsr`` target (the subroutine *leaders*);
2. create one region per leader, reading its return-address slot from the
   leader, which must be an ``astore``;
3. attach each ``jsr`` to the region it targets;
4. breadth-first search from every leader (and, for the top level, from the
   method entry and every handler entry) using
   :func:`~jsr_subroutines.successors.successors_of`, assigning each visited
   instruction to exactly one region;
5. find the unique ``ret`` of every region and match its slot;
6. reject any subroutine instruction inside a protected range;
7. run :func:`~jsr_subroutines.recursion.check_no_recursive_calls`.

Any failure raises a
:class:`~jsr_subroutines.errors.StructuralCodeConstraintError`; no partial
table is ever returned.  After construction the table is read-only.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Deque,
    Dict,
    FrozenSet,
    Iterable,
    Iterator,
    List,
    Optional,
    Set,
    Tuple,
)

from .diagnostics import Diagnostic
from .errors import (
    AssertionViolatedError,
    InvalidSubroutineEntryError,
    MissingRetError,
    MultipleRetError,
    ProtectedSubroutineError,
    RetSlotMismatchError,
    SharedInstructionError,
    StructuralCodeConstraintError,
)
from .instructions import InstructionHandle, MethodCode
from .recursion import check_no_recursive_calls
from .successors import successors_of

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SubroutineConfig:
    """Tunables for building a :class:`Subroutines` table."""

    # Log a one-line INFO summary after each table is built.
    verbose: bool = False
    # Level used when subroutine_of() meets an instruction in dead code.
    dead_code_log_level: int = logging.DEBUG
    # Memoise local-slot and nesting queries once the table is sealed.
    cache_queries: bool = True


# ---------------------------------------------------------------------------
# Subroutine
# ---------------------------------------------------------------------------

class Subroutine:
    """One JSR/RET region of a method, or the top level.

    Attributes
    ----------
    entry : InstructionHandle
        The leader: the ``astore`` every ``jsr`` of this subroutine targets,
        or the method's first instruction for the top level.

    Instances are created and populated only by :class:`Subroutines`.
    Asking the top level for its ``jsr`` or ``ret`` instructions is a
    programming error and raises :class:`AssertionViolatedError`.
    """

    __slots__ = (
        "_table",
        "entry",
        "_top_level",
        "_local_variable",
        "_instructions",
        "_jsrs",
        "_ret",
        "_cache",
    )

    def __init__(
        self,
        table: "Subroutines",
        entry: InstructionHandle,
        top_level: bool = False,
    ) -> None:
        self._table = table
        self.entry = entry
        self._top_level = top_level
        self._local_variable: Optional[int] = None
        self._instructions: Set[InstructionHandle] = set()
        self._jsrs: Set[InstructionHandle] = set()
        self._ret: Optional[InstructionHandle] = None
        self._cache: Dict[str, Any] = {}

    # ----- construction (package internal) ----------------------------------

    def _set_local_variable(self, index: int) -> None:
        if self._top_level:
            raise AssertionViolatedError("The top level has no return-address slot.")
        if self._local_variable is not None:
            raise AssertionViolatedError("localVariable set twice.")
        self._local_variable = index

    def _add_entering_jsr(self, jsr: InstructionHandle) -> None:
        if not jsr.instruction.is_jsr:
            raise AssertionViolatedError("Expecting a jsr/jsr_w instruction handle.")
        if self._local_variable is None:
            raise AssertionViolatedError("Set the local variable first!")
        target = jsr.instruction.target
        if not isinstance(target, InstructionHandle) or target.instruction.index != self._local_variable:
            raise AssertionViolatedError("Setting a wrong jsr instruction.")
        self._jsrs.add(jsr)

    def _add_instruction(self, handle: InstructionHandle) -> None:
        if self._table.sealed:
            raise AssertionViolatedError("Subroutine table is sealed.")
        if self._ret is not None:
            raise AssertionViolatedError(
                "All instructions must have been added before the leaving RET is set."
            )
        self._instructions.add(handle)

    def _set_leaving_ret(self, method: str = "") -> None:
        if self._top_level or self._local_variable is None:
            raise AssertionViolatedError(
                "_set_leaving_ret() called for the top level or before the "
                "local variable was set."
            )
        rets = sorted(
            (h for h in self._instructions if h.instruction.is_ret),
            key=lambda h: h.position,
        )
        if not rets:
            raise MissingRetError(
                f"Subroutine at {self.entry.position} without a RET detected.",
                instructions=[self.entry],
                subroutines=[self],
                method=method,
            )
        if len(rets) > 1:
            raise MultipleRetError(
                f"Subroutine at {self.entry.position} with more than one RET "
                f"detected: '{rets[0]}' and '{rets[1]}'.",
                instructions=rets,
                subroutines=[self],
                method=method,
            )
        ret = rets[0]
        if ret.instruction.index != self._local_variable:
            raise RetSlotMismatchError(
                f"Subroutine uses '{ret}' which does not match the correct "
                f"local variable '{self._local_variable}'.",
                instructions=[ret, self.entry],
                subroutines=[self],
                method=method,
            )
        self._ret = ret

    # ----- plain reads ------------------------------------------------------

    @property
    def is_top_level(self) -> bool:
        return self._top_level

    @property
    def local_variable(self) -> Optional[int]:
        """Slot the return address is stored in; ``None`` for the top level."""
        return self._local_variable

    @property
    def entering_jsr_instructions(self) -> FrozenSet[InstructionHandle]:
        """The ``jsr``/``jsr_w`` instructions targeting this subroutine."""
        if self._top_level:
            raise AssertionViolatedError(
                "entering_jsr_instructions requested on the top level pseudo-subroutine."
            )
        return frozenset(self._jsrs)

    @property
    def leaving_ret(self) -> InstructionHandle:
        """The single ``ret`` leaving this subroutine."""
        if self._top_level:
            raise AssertionViolatedError(
                "leaving_ret requested on the top level pseudo-subroutine."
            )
        if self._ret is None:
            raise AssertionViolatedError("leaving_ret requested before it was resolved.")
        return self._ret

    @property
    def instructions(self) -> Tuple[InstructionHandle, ...]:
        """Member instructions in method order."""
        return tuple(sorted(self._instructions, key=lambda h: h.position))

    def contains(self, handle: InstructionHandle) -> bool:
        return handle in self._instructions

    def __contains__(self, handle: object) -> bool:
        return handle in self._instructions

    def __len__(self) -> int:
        return len(self._instructions)

    # ----- derived queries --------------------------------------------------

    def _cached(self, key: str, compute: Callable[[], Any]) -> Any:
        table = self._table
        if not (table.sealed and table.config.cache_queries):
            return compute()
        if key not in self._cache:
            self._cache[key] = compute()
        return self._cache[key]

    def accessed_local_indices(self) -> FrozenSet[int]:
        """Local slots read or written by this region's own instructions.

        Includes the ``ret`` slot, and the upper half of every ``long`` or
        ``double`` access.
        """
        if self._ret is None and not self._top_level:
            raise AssertionViolatedError(
                "This subroutine object must be built up completely before "
                "calculating accessed locals."
            )
        return self._cached("accessed", self._compute_accessed)

    def _compute_accessed(self) -> FrozenSet[int]:
        acc: Set[int] = set()
        for h in self._instructions:
            acc.update(h.instruction.accessed_slots())
        return frozenset(acc)

    def recursively_accessed_local_indices(self) -> FrozenSet[int]:
        """Slots accessed here or in any transitively nested subroutine."""
        return self._cached("recursive", self._compute_recursive)

    def _compute_recursive(self) -> FrozenSet[int]:
        acc: Set[int] = set(self.accessed_local_indices())
        seen: Set[Subroutine] = {self}
        worklist: List[Subroutine] = list(self.sub_subs())
        while worklist:
            sub = worklist.pop()
            if sub in seen:
                continue
            seen.add(sub)
            acc.update(sub.accessed_local_indices())
            worklist.extend(sub.sub_subs())
        return frozenset(acc)

    def sub_subs(self) -> FrozenSet["Subroutine"]:
        """Subroutines called directly from this region."""
        return self._cached("subs", self._compute_sub_subs)

    def _compute_sub_subs(self) -> FrozenSet["Subroutine"]:
        subs: Set[Subroutine] = set()
        for h in self._instructions:
            ins = h.instruction
            if ins.is_jsr:
                assert isinstance(ins.target, InstructionHandle)
                subs.add(self._table.get_subroutine(ins.target))
        return frozenset(subs)

    # ----- display ----------------------------------------------------------

    @property
    def label(self) -> str:
        if self._top_level:
            return "top-level"
        return f"sub@{self.entry.position}"

    def describe(self) -> str:
        """Verbose multi-line description, for debugging."""
        lines = [f"Subroutine {self.label}:"]
        if not self._top_level:
            jsrs = sorted(h.position for h in self._jsrs)
            ret = self._ret.position if self._ret is not None else None
            lines.append(f"  local variable: {self._local_variable}")
            lines.append(f"  JSRs: {jsrs}")
            lines.append(f"  RET: {ret}")
        lines.append(f"  instructions: {[h.position for h in self.instructions]}")
        if self._top_level or self._ret is not None:
            lines.append(
                f"  accessed local variable slots: "
                f"{sorted(self.accessed_local_indices())}"
            )
            lines.append(
                f"  recursively accessed local variable slots: "
                f"{sorted(self.recursively_accessed_local_indices())}"
            )
        return "\n".join(lines)

    def __repr__(self) -> str:
        if self._top_level:
            return f"Subroutine(top-level, ninstructions={len(self._instructions)})"
        return (
            f"Subroutine(entry={self.entry.position}, "
            f"local_variable={self._local_variable}, "
            f"ninstructions={len(self._instructions)})"
        )


# ---------------------------------------------------------------------------
# Subroutines (the table)
# ---------------------------------------------------------------------------

class Subroutines:
    """All subroutines of one method, validated at construction.

    Attributes
    ----------
    method : MethodCode
        The analysed method body (not owned; only referenced).
    config : SubroutineConfig
    top_level : Subroutine
        The special top-level region.

    Raises
    ------
    StructuralCodeConstraintError
        If the method violates the subroutine constraints.
    """

    def __init__(
        self,
        method: MethodCode,
        config: Optional[SubroutineConfig] = None,
    ) -> None:
        self.method = method
        self.config = config or SubroutineConfig()
        self.sealed = False
        first = method.instructions.first
        assert first is not None
        self.top_level = Subroutine(self, first, top_level=True)
        # leader -> region; the top level is not in here
        self._subroutines: Dict[InstructionHandle, Subroutine] = {}
        # instruction -> owning region; absent means dead code
        self._owner: Dict[InstructionHandle, Subroutine] = {}

        _SubroutineTableBuilder(self).build()
        self.sealed = True

        if self.config.verbose:
            stats = self.statistics()
            logger.info(
                "%s: %d subroutine(s), %d reachable / %d dead instruction(s)",
                method.name,
                stats["subroutines"],
                stats["reachable_instructions"],
                stats["dead_instructions"],
            )

    # ----- lookup -----------------------------------------------------------

    def get_subroutine(self, leader: InstructionHandle) -> Subroutine:
        """Return the subroutine whose first instruction is *leader*.

        Must not be used for the top level; see :attr:`top_level`.
        """
        if leader is self.top_level.entry:
            raise AssertionViolatedError(
                "TOPLEVEL special subroutine requested; use top_level."
            )
        sub = self._subroutines.get(leader)
        if sub is None:
            raise AssertionViolatedError(
                f"Subroutine requested for '{leader}', which is not the leader "
                f"of a subroutine."
            )
        return sub

    def subroutine_of(self, handle: InstructionHandle) -> Optional[Subroutine]:
        """Return the region containing *handle*, or ``None`` for dead code."""
        sub = self._owner.get(handle)
        if sub is None:
            logger.log(
                self.config.dead_code_log_level,
                "%s: instruction '%s' lies in dead code",
                self.method.name,
                handle,
            )
        return sub

    @property
    def subroutines(self) -> List[Subroutine]:
        """Real subroutines (without the top level), by leader position."""
        return [self._subroutines[k] for k in sorted(self._subroutines, key=lambda h: h.position)]

    @property
    def leaders(self) -> List[InstructionHandle]:
        return sorted(self._subroutines, key=lambda h: h.position)

    def dead_instructions(self) -> List[InstructionHandle]:
        """Instructions no region reaches."""
        return [h for h in self.method.instructions if h not in self._owner]

    def __iter__(self) -> Iterator[Subroutine]:
        yield self.top_level
        yield from self.subroutines

    def __len__(self) -> int:
        return len(self._subroutines) + 1

    # ----- derived ----------------------------------------------------------

    def nesting_depth(self, sub: Optional[Subroutine] = None) -> int:
        """Longest chain of nested calls starting at *sub* (default: top level)."""
        memo: Dict[Subroutine, int] = {}

        def depth(s: Subroutine) -> int:
            if s not in memo:
                memo[s] = max((1 + depth(c) for c in s.sub_subs()), default=0)
            return memo[s]

        return depth(sub or self.top_level)

    def statistics(self) -> Dict[str, Any]:
        """Return a dict with summary statistics."""
        reachable = len(self._owner)
        return {
            "method": self.method.name,
            "instructions": len(self.method.instructions),
            "reachable_instructions": reachable,
            "dead_instructions": len(self.method.instructions) - reachable,
            "subroutines": len(self._subroutines),
            "top_level_instructions": len(self.top_level),
            "instructions_per_subroutine": {
                s.entry.position: len(s) for s in self.subroutines
            },
            "max_nesting_depth": self.nesting_depth(),
        }

    # ----- serialisation ----------------------------------------------------

    def to_dot(self, title: Optional[str] = None) -> str:
        """Return a Graphviz DOT representation of the region call graph."""
        lines = ["digraph Subroutines {"]
        lines.append("  rankdir=TB;")
        if title:
            escaped_title = title.replace('"', '\\"')
            lines.append(f'  label="{escaped_title}";')
        lines.append('  node [shape=box, fontname="Helvetica", fontsize=10];')
        for sub in self:
            if sub.is_top_level:
                attrs = 'style=filled, fillcolor="#ccffcc", shape=invhouse'
                text = f"top-level\\n{len(sub)} instr"
            else:
                attrs = 'style=filled, fillcolor="#ddeeff"'
                text = (
                    f"{sub.label}\\nslot {sub.local_variable}, "
                    f"ret @{sub.leaving_ret.position}\\n{len(sub)} instr"
                )
            lines.append(f'  "{sub.label}" [label="{text}", {attrs}];')
        for sub in self:
            for callee in sorted(sub.sub_subs(), key=lambda s: s.entry.position):
                sites = sorted(
                    h.position for h in callee.entering_jsr_instructions if h in sub
                )
                lines.append(
                    f'  "{sub.label}" -> "{callee.label}" '
                    f'[label="jsr {",".join(str(p) for p in sites)}"];'
                )
        lines.append("}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (
            f"Subroutines({self.method.name!r}, subroutines={len(self._subroutines)})"
        )


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

class _SubroutineTableBuilder:
    """Runs the construction steps on a fresh :class:`Subroutines`."""

    def __init__(self, table: Subroutines) -> None:
        self.table = table
        self.method = table.method
        self.name = table.method.name
        self.all: Tuple[InstructionHandle, ...] = table.method.instructions.handles

    def build(self) -> None:
        leaders = self._discover_leaders()
        self._create_subroutines(leaders)
        self._attach_jsrs()
        self._partition()
        self._resolve_rets()
        self._check_exception_handlers()
        check_no_recursive_calls(self.table.top_level, self.name)

    # step 1
    def _discover_leaders(self) -> List[InstructionHandle]:
        found: Dict[InstructionHandle, None] = {}
        for h in self.all:
            if h.instruction.is_jsr:
                target = h.instruction.target
                assert isinstance(target, InstructionHandle)
                found[target] = None
        leaders = sorted(found, key=lambda h: h.position)
        logger.debug(
            "%s: subroutine leaders at %s", self.name, [h.position for h in leaders]
        )
        return leaders

    # step 2
    def _create_subroutines(self, leaders: Iterable[InstructionHandle]) -> None:
        first = self.table.top_level.entry
        for leader in leaders:
            if leader is first:
                raise InvalidSubroutineEntryError(
                    f"A JSR targets the first instruction '{leader}' of the method; "
                    f"the method entry cannot start a subroutine.",
                    instructions=[leader, *self._jsrs_targeting(leader)],
                    method=self.name,
                )
            if not leader.instruction.is_return_address_store:
                raise InvalidSubroutineEntryError(
                    f"JSR target '{leader}' is not an ASTORE storing the return "
                    f"address.",
                    instructions=[leader, *self._jsrs_targeting(leader)],
                    method=self.name,
                )
            sub = Subroutine(self.table, leader)
            assert leader.instruction.index is not None
            sub._set_local_variable(leader.instruction.index)
            self.table._subroutines[leader] = sub

    def _jsrs_targeting(self, leader: InstructionHandle) -> List[InstructionHandle]:
        return [
            h for h in self.all
            if h.instruction.is_jsr and h.instruction.target is leader
        ]

    # step 3
    def _attach_jsrs(self) -> None:
        for h in self.all:
            if h.instruction.is_jsr:
                target = h.instruction.target
                assert isinstance(target, InstructionHandle)
                self.table.get_subroutine(target)._add_entering_jsr(h)

    # step 4
    def _partition(self) -> None:
        top = self.table.top_level
        seeds: List[Tuple[Subroutine, List[InstructionHandle]]] = [
            (top, [top.entry] + [eh.handler for eh in self.method.handlers])
        ]
        seeds.extend((sub, [sub.entry]) for sub in self.table.subroutines)

        owner = self.table._owner
        for region, roots in seeds:
            reached = _bfs(roots)
            for h in self.all:
                if h not in reached:
                    continue
                previous = owner.get(h)
                if previous is not None:
                    raise SharedInstructionError(
                        f"Instruction '{h}' is part of more than one subroutine "
                        f"(or of the top level and a subroutine): "
                        f"{previous.label} and {region.label}.",
                        instructions=[h],
                        subroutines=[previous, region],
                        method=self.name,
                    )
                owner[h] = region
                region._add_instruction(h)
            logger.debug(
                "%s: %s holds %d instruction(s)", self.name, region.label, len(region)
            )

    # step 5
    def _resolve_rets(self) -> None:
        for sub in self.table.subroutines:
            sub._set_leaving_ret(self.name)

    # step 6
    def _check_exception_handlers(self) -> None:
        owner = self.table._owner
        for eh in self.method.handlers:
            for h in eh.covered():
                sub = owner.get(h)
                if sub is not None and not sub.is_top_level:
                    raise ProtectedSubroutineError(
                        f"Subroutine instruction '{h}' is protected by an exception "
                        f"handler, '{eh}'. Subroutines must not be protected by "
                        f"exception handlers.",
                        instructions=[h],
                        subroutines=[sub],
                        handler=eh,
                        method=self.name,
                    )


def _bfs(roots: Iterable[InstructionHandle]) -> Set[InstructionHandle]:
    """Handles reachable from *roots* via :func:`successors_of`."""
    seen: Set[InstructionHandle] = set()
    queue: Deque[InstructionHandle] = deque()
    for r in roots:
        if r not in seen:
            seen.add(r)
            queue.append(r)
    while queue:
        u = queue.popleft()
        for v in successors_of(u):
            if v not in seen:
                seen.add(v)
                queue.append(v)
    return seen


# ---------------------------------------------------------------------------
# Convenience utilities
# ---------------------------------------------------------------------------

def build_subroutines(
    method: MethodCode,
    config: Optional[SubroutineConfig] = None,
) -> Subroutines:
    """Build the validated :class:`Subroutines` table for *method*.

    Raises
    ------
    StructuralCodeConstraintError
        If the method's JSR/RET structure is malformed.
    """
    return Subroutines(method, config=config)


def check_subroutines(
    method: MethodCode,
    config: Optional[SubroutineConfig] = None,
) -> Tuple[Optional[Subroutines], List[Diagnostic]]:
    """Build the table, reporting a structural violation as a diagnostic.

    Returns ``(table, [])`` on success and ``(None, [diagnostic])`` when the
    method is rejected.  Internal assertion violations propagate.
    """
    try:
        table = Subroutines(method, config=config)
    except StructuralCodeConstraintError as exc:
        logger.debug("%s rejected: %s", method.name, exc)
        return None, [exc.to_diagnostic()]
    return table, []


def subroutine_summary(table: Subroutines) -> str:
    """Return a human-readable multi-line summary."""
    stats = table.statistics()
    lines = [
        f"Subroutines of {stats['method']}",
        f"  Instructions:         {stats['instructions']}",
        f"  Reachable:            {stats['reachable_instructions']}",
        f"  Dead:                 {stats['dead_instructions']}",
        f"  Subroutines:          {stats['subroutines']}",
        f"  Max nesting depth:    {stats['max_nesting_depth']}",
        f"",
        f"Regions:",
    ]
    for sub in table:
        calls = sorted(c.label for c in sub.sub_subs())
        if sub.is_top_level:
            lines.append(
                f"  top-level: {len(sub)} instr, calls [{', '.join(calls)}]"
            )
            continue
        jsrs = sorted(h.position for h in sub.entering_jsr_instructions)
        lines.append(
            f"  {sub.label}: slot {sub.local_variable}, "
            f"ret @{sub.leaving_ret.position}, jsrs {jsrs}, "
            f"{len(sub)} instr, locals {sorted(sub.accessed_local_indices())}, "
            f"calls [{', '.join(calls)}]"
        )
    return "\n".join(lines)
