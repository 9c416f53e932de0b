"""
bpfvlog/dependencies.py
═══════════════════════

Backward data-flow trace over the frozen per-line machine states.

Given a line and a storage location, the resolver answers *which earlier
lines produced the value held there*.  It follows ``last_write`` links
backwards and keeps going through "copy-like" instructions, i.e. the ones
that read exactly one location::

    0: r1 = r10         reads {r10}      ◀─┐
    1: r1 += -8         reads {r1}       ◀─┤  dependencies(2, "r1") == {0, 1}
    2: call helper      reads {r1..r5}   ──┘

The walk stops at an origin:

  * an instruction reading zero locations (constant load), or
  * an instruction reading two or more locations (a join of values), or
  * a location with no recorded writer.

The walk is iterative and remembers every ``(line, slot)`` pair it has
visited, so it terminates even on a corrupted ``last_write`` chain.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Set, Tuple

from bpfvlog.instructions import distinct_reads
from bpfvlog.line_parser import InstructionLine, ParsedLine
from bpfvlog.simulator import Effect, MachineState

logger = logging.getLogger(__name__)


class DependencyResolver:
    """Queries over one pass's ``lines`` and ``states`` (both read-only)."""

    def __init__(self, lines: Sequence[ParsedLine], states: Sequence[MachineState]) -> None:
        self.lines = lines
        self.states = states

    def _instruction_line(self, idx: int) -> Optional[InstructionLine]:
        if 0 <= idx < len(self.lines):
            line = self.lines[idx]
            if isinstance(line, InstructionLine):
                return line
        return None

    def _state(self, idx: int) -> Optional[MachineState]:
        if 0 <= idx < len(self.states):
            return self.states[idx]
        return None

    def _step(self, idx: int, slot: str) -> Tuple[Optional[int], Optional[Tuple[int, str]]]:
        """One link of the chain.

        Returns ``(contributor, next)``: the line index to report (or None)
        and the ``(line, slot)`` pair to continue from (or None to stop).
        """
        if self._instruction_line(idx) is None:
            return None, None
        state = self._state(idx)
        if state is None or slot not in state.values:
            return None, None
        dep = state.last_write.get(slot)
        if dep is None:
            return None, None
        dep_line = self._instruction_line(dep)
        if dep_line is None:
            return None, None

        if dep == idx and state.effect_of(slot) is Effect.UPDATE:
            # the line updated the slot in place: the value came from the
            # previous writer, which is reported instead of the line itself
            prev = self._state(idx - 1)
            if prev is None:
                return None, None
            prior = prev.last_write.get(slot)
            if prior is None or self._instruction_line(prior) is None:
                return None, None
            return prior, (prior, slot)

        reads = distinct_reads(dep_line.ins)
        if len(reads) == 1:
            return dep, (dep, reads[0])
        return dep, None

    def dependencies(self, idx: int, slot: str) -> Set[int]:
        """Indices of the lines that contributed the value of *slot* at *idx*."""
        deps: Set[int] = set()
        visited: Set[Tuple[int, str]] = set()
        cursor: Optional[Tuple[int, str]] = (idx, slot)
        while cursor is not None and cursor not in visited:
            visited.add(cursor)
            contributor, cursor = self._step(*cursor)
            if contributor is not None:
                deps.add(contributor)
        return deps

    def retarget_slot(self, idx: int, slot: str) -> str:
        """Slot a selection on *idx* should actually be traced through.

        Selecting the destination of ``r6 = r0`` asks where the value came
        from, which is the single read (``r0``) rather than the line itself.
        """
        line = self._instruction_line(idx)
        if line is None:
            return slot
        ins = line.ins
        if slot in ins.writes and slot not in ins.reads:
            reads = distinct_reads(ins)
            if len(reads) == 1:
                return reads[0]
        return slot

    def selection_dependencies(self, idx: int, slot: str) -> Set[int]:
        target = self.retarget_slot(idx, slot)
        if target != slot:
            logger.debug("line %d: selection %s retargeted to %s", idx, slot, target)
        return self.dependencies(idx, target)

    def chain(self, idx: int, slot: str) -> List[int]:
        """``dependencies`` sorted from the most recent line backwards."""
        return sorted(self.dependencies(idx, slot), reverse=True)


__all__ = ["DependencyResolver"]
