"""
bpfvlog/simulator.py
════════════════════

Deterministic replay of machine state over a parsed verifier log.

The simulator does not execute anything.  It folds the instruction records
(and the values the verifier printed next to them) into one ``MachineState``
per log line::

    initial ─▶ step(line 0) ─▶ state 0 ─▶ step(line 1) ─▶ state 1 ─▶ ...

A state records, for every storage location seen so far, the last known
value and how the line at hand touched it (the *effect*), plus the index
of the line that last wrote it.  ``last_write`` is what the dependency
resolver walks backwards.

Call frames
───────────

    call pc+N ──▶ push caller state; callee sees r1-r5 (READ), r0/r6-r9
                  cleared (WRITE), fresh r10, caller stack slots as fp[<n>]-<off>
    exit      ──▶ pop caller state; r1-r5 scratched (WRITE), r0 carries the
                  callee's return value, writes to fp[<n>]-<off> are copied back

The stack of saved caller states lives on the ``StateSimulator`` instance
for the duration of one pass.  An ``exit`` with nothing to pop (a log that
starts mid-subprogram) yields a fresh initial frame instead of failing.

Frame depth always comes from this stack; a ``frame<n>:`` prefix printed by
the verifier does not move it.

Loads and stores through a register that holds a stack pointer (``r3`` with
value ``fp-8``, or ``fp[0]-8`` inside a callee) are resolved to the stack
slot they touch, so a spill through a pointer shows up in ``last_write``.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from bpfvlog.errors import VlogErrorCodes
from bpfvlog.instructions import (
    CALLEE_SAVED_REGS,
    FRAME_POINTER_REG,
    RETURN_REG,
    SCRATCH_REGS,
    AluInstruction,
    BpfInstruction,
    ExitInstruction,
    MemRef,
    OperandType,
    SubprogramCallInstruction,
    stack_slot_id,
)
from bpfvlog.line_parser import InstructionLine, ParsedLine
from bpfvlog.state_exprs import StateExpr

logger = logging.getLogger(__name__)

CONTEXT_REG = "r1"
DEFAULT_CONTEXT_VALUE = "ctx()"
DEFAULT_FRAME_BASE_VALUE = "fp-0"

RE_STACK_POINTER = re.compile(r"^fp(?:\[([0-9]+)\])?(-?[0-9]+)$")


class Effect(enum.Enum):
    NONE = "NONE"
    READ = "READ"
    WRITE = "WRITE"
    UPDATE = "UPDATE"  # read, then written: r0 += 1


@dataclass(frozen=True, slots=True)
class SlotValue:
    value: str
    effect: Effect = Effect.NONE
    prev_value: Optional[str] = None  # value before an UPDATE

    def to_dict(self) -> Dict[str, str]:
        d = {"value": self.value, "effect": self.effect.value}
        if self.prev_value is not None:
            d["prev_value"] = self.prev_value
        return d


@dataclass(frozen=True)
class MachineState:
    """State of registers and stack slots after one log line.

    ``values`` and ``last_write`` are read-only mapping views; a state is
    never modified once the simulator has produced it.
    """

    values: Mapping[str, SlotValue] = field(default_factory=lambda: MappingProxyType({}))
    last_write: Mapping[str, int] = field(default_factory=lambda: MappingProxyType({}))
    frame: int = 0
    idx: int = 0
    pc: int = 0

    def value_of(self, slot: str) -> Optional[str]:
        sv = self.values.get(slot)
        return sv.value if sv is not None else None

    def effect_of(self, slot: str) -> Optional[Effect]:
        sv = self.values.get(slot)
        return sv.effect if sv is not None else None

    def touched(self) -> Dict[str, Effect]:
        """Slots whose effect on this line is not NONE."""
        return {k: v.effect for k, v in self.values.items() if v.effect is not Effect.NONE}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "idx": self.idx,
            "pc": self.pc,
            "frame": self.frame,
            "values": {k: v.to_dict() for k, v in self.values.items()},
            "last_write": dict(self.last_write),
        }


def _freeze(
    values: Dict[str, SlotValue],
    last_write: Dict[str, int],
    frame: int,
    idx: int,
    pc: int,
) -> MachineState:
    return MachineState(
        values=MappingProxyType(values),
        last_write=MappingProxyType(last_write),
        frame=frame,
        idx=idx,
        pc=pc,
    )


def initial_state(
    idx: int = 0,
    pc: int = 0,
    context_value: str = DEFAULT_CONTEXT_VALUE,
    frame_base_value: str = DEFAULT_FRAME_BASE_VALUE,
) -> MachineState:
    """Program entry: r1 holds the context, r10 the frame base, the rest empty."""
    values: Dict[str, SlotValue] = {f"r{i}": SlotValue("") for i in range(10)}
    values[CONTEXT_REG] = SlotValue(context_value)
    values[FRAME_POINTER_REG] = SlotValue(frame_base_value)
    return _freeze(values, {}, 0, idx, pc)


def _reset_effects(values: Mapping[str, SlotValue]) -> Dict[str, SlotValue]:
    return {k: SlotValue(v.value) for k, v in values.items()}


def _apply_state_exprs(
    values: Dict[str, SlotValue],
    exprs: Iterable[StateExpr],
) -> None:
    """Overwrite values with what the verifier reported; effects are kept."""
    for expr in exprs:
        prior = values.get(expr.id)
        effect = prior.effect if prior is not None else Effect.NONE
        prev_value = prior.prev_value if prior is not None else None
        values[expr.id] = SlotValue(expr.value, effect, prev_value)


def split_stack_slot(slot_id: str) -> Optional[Tuple[Optional[int], int]]:
    """``fp-8`` -> ``(None, -8)``, ``fp[1]-64`` -> ``(1, -64)``, else None."""
    m = RE_STACK_POINTER.match(slot_id)
    if m is None:
        return None
    frame = int(m.group(1)) if m.group(1) is not None else None
    return frame, int(m.group(2))


def frame_slot_id(slot_frame: int, offset: int, current_frame: int) -> str:
    """Id of a stack slot of *slot_frame* as seen from *current_frame*."""
    local = stack_slot_id(offset)
    if slot_frame == current_frame:
        return local
    return f"fp[{slot_frame}]{local[2:]}"


class StateSimulator:
    """Folds parsed lines into machine states.

    Parameters
    ----------
    context_value : str
        Initial value of ``r1`` (the program context).
    frame_base_value : str
        Value of ``r10`` in every fresh frame.
    """

    def __init__(
        self,
        context_value: str = DEFAULT_CONTEXT_VALUE,
        frame_base_value: str = DEFAULT_FRAME_BASE_VALUE,
    ) -> None:
        self.context_value = context_value
        self.frame_base_value = frame_base_value
        self._call_stack: List[MachineState] = []
        self.unbalanced_exits = 0

    @property
    def depth(self) -> int:
        return len(self._call_stack)

    def initial(self, idx: int = 0, pc: int = 0) -> MachineState:
        return initial_state(idx, pc, self.context_value, self.frame_base_value)

    # ─────────────────────────────────────────────────────────────────
    #  Frame transitions
    # ─────────────────────────────────────────────────────────────────

    def _push_frame(self, prev: MachineState, line: InstructionLine, pc: int) -> MachineState:
        self._call_stack.append(prev)
        frame = prev.frame + 1
        values: Dict[str, SlotValue] = {}
        last_write: Dict[str, int] = {}
        for reg in SCRATCH_REGS:
            values[reg] = SlotValue(prev.value_of(reg) or "", Effect.READ)
            if reg in prev.last_write:
                last_write[reg] = prev.last_write[reg]
        for reg in (RETURN_REG,) + CALLEE_SAVED_REGS:
            values[reg] = SlotValue("", Effect.WRITE)
        values[FRAME_POINTER_REG] = SlotValue(self.frame_base_value)

        # caller stack slots stay addressable as fp[<caller frame>]-<off>
        for slot_id, sv in prev.values.items():
            slot = split_stack_slot(slot_id)
            if slot is None:
                continue
            slot_frame, offset = slot
            nested = frame_slot_id(prev.frame if slot_frame is None else slot_frame, offset, frame)
            values[nested] = SlotValue(sv.value)
            if slot_id in prev.last_write:
                last_write[nested] = prev.last_write[slot_id]

        # a subprogram call line may carry the callee's entry state
        _apply_state_exprs(values, line.state_exprs)
        return _freeze(values, last_write, frame, line.idx, pc)

    def _pop_frame(self, inner: MachineState, line: InstructionLine, pc: int) -> MachineState:
        if not self._call_stack:
            self.unbalanced_exits += 1
            logger.debug(
                "[%s] line %d: exit with empty call stack, fresh frame",
                VlogErrorCodes.UNBALANCED_EXIT, line.idx,
            )
            return self.initial(line.idx, pc)

        caller = self._call_stack.pop()
        values = _reset_effects(caller.values)
        last_write = dict(caller.last_write)
        for reg in SCRATCH_REGS:
            values[reg] = SlotValue("", Effect.WRITE)
            last_write.pop(reg, None)

        # writes the callee made to its callers' stack slots
        for slot_id, writer in inner.last_write.items():
            slot = split_stack_slot(slot_id)
            if slot is None or slot[0] is None or slot[0] > caller.frame:
                continue
            local = frame_slot_id(slot[0], slot[1], caller.frame)
            last_write[local] = writer
            if slot_id in inner.values:
                values[local] = SlotValue(inner.values[slot_id].value)

        values[RETURN_REG] = SlotValue(inner.value_of(RETURN_REG) or "")
        if RETURN_REG in inner.last_write:
            last_write[RETURN_REG] = inner.last_write[RETURN_REG]
        else:
            last_write.pop(RETURN_REG, None)
        return _freeze(values, last_write, caller.frame, line.idx, pc)

    # ─────────────────────────────────────────────────────────────────
    #  Instructions
    # ─────────────────────────────────────────────────────────────────

    def _stack_slot_behind(
        self, values: Mapping[str, SlotValue], memref: MemRef, frame: int
    ) -> Optional[str]:
        """Stack slot a dereference of a stack pointer lands on, if any."""
        base = values.get(memref.address_reg)
        pointer = split_stack_slot(base.value) if base is not None else None
        if pointer is None:
            return None
        slot_frame, offset = pointer
        if slot_frame is None:
            slot_frame = frame
        return frame_slot_id(slot_frame, offset + memref.offset, frame)

    def _apply_indirect_access(
        self,
        values: Dict[str, SlotValue],
        last_write: Dict[str, int],
        line: InstructionLine,
        ins: AluInstruction,
        frame: int,
    ) -> None:
        reported = {e.id: e.value for e in line.state_exprs}
        dst, src = ins.dst, ins.src
        if dst.type is OperandType.MEM and dst.memref is not None:
            slot = self._stack_slot_behind(values, dst.memref, frame)
            if slot is not None:
                stored = values.get(src.id)
                value = reported.get(slot) or (stored.value if stored is not None else "")
                values[slot] = SlotValue(value, Effect.WRITE)
                last_write[slot] = line.idx
        if src.type is OperandType.MEM and src.memref is not None:
            slot = self._stack_slot_behind(values, src.memref, frame)
            if slot is not None:
                known = values.get(slot)
                value = reported.get(slot) or (known.value if known is not None else "")
                values[slot] = SlotValue(value, Effect.READ)
                if dst.id not in reported:
                    values[dst.id] = SlotValue(value, Effect.WRITE)

    def _apply_instruction(
        self, prev: MachineState, line: InstructionLine, ins: BpfInstruction, pc: int
    ) -> MachineState:
        values = _reset_effects(prev.values)
        last_write = dict(prev.last_write)

        for slot in ins.reads:
            current = values.get(slot)
            values[slot] = SlotValue(current.value if current else "", Effect.READ)
        for slot in ins.writes:
            if slot in ins.reads:
                values[slot] = SlotValue("", Effect.UPDATE, values[slot].value or None)
            else:
                values[slot] = SlotValue("", Effect.WRITE)
            last_write[slot] = line.idx

        _apply_state_exprs(values, line.state_exprs)
        if isinstance(ins, AluInstruction) and ins.operator == "=":
            self._apply_indirect_access(values, last_write, line, ins, prev.frame)
        return _freeze(values, last_write, prev.frame, line.idx, pc)

    # ─────────────────────────────────────────────────────────────────
    #  Fold
    # ─────────────────────────────────────────────────────────────────

    def step(self, prev: MachineState, line: ParsedLine) -> MachineState:
        """State after *line*, given the state after the previous line."""
        if not isinstance(line, InstructionLine):
            values = _reset_effects(prev.values)
            return _freeze(values, dict(prev.last_write), prev.frame, prev.idx, prev.pc)

        ins = line.ins
        pc = ins.pc if ins.pc is not None else 0
        if isinstance(ins, SubprogramCallInstruction):
            return self._push_frame(prev, line, pc)
        if isinstance(ins, ExitInstruction):
            return self._pop_frame(prev, line, pc)
        return self._apply_instruction(prev, line, ins, pc)

    def run(self, lines: Iterable[ParsedLine]) -> List[MachineState]:
        """One state per line, in order."""
        self._call_stack = []
        self.unbalanced_exits = 0
        states: List[MachineState] = []
        state = self.initial()
        for line in lines:
            state = self.step(state, line)
            states.append(state)
        if self._call_stack:
            logger.debug("log ends inside %d unfinished call frame(s)", len(self._call_stack))
        self._call_stack = []
        return states


def simulate(lines: Iterable[ParsedLine], **kwargs: Any) -> List[MachineState]:
    """Convenience wrapper: ``StateSimulator(**kwargs).run(lines)``."""
    return StateSimulator(**kwargs).run(lines)


__all__ = [
    "Effect",
    "SlotValue",
    "MachineState",
    "initial_state",
    "split_stack_slot",
    "frame_slot_id",
    "StateSimulator",
    "simulate",
]
