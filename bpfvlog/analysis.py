"""
bpfvlog/analysis.py
═══════════════════

Single-pass pipeline from raw log lines to queryable results.

    raw lines ──▶ parse_line ──▶ known-message fix-ups ──▶ (frozen lines)
                                                               │
                       ┌───────────────────────────────────────┤
                       ▼                                       ▼
               StateSimulator.run                     SourceMapBuilder
                       │                                       │
                       ▼                                       ▼
                 (frozen states)                         (SourceMap)
                       └──────────────┬────────────────────────┘
                                      ▼
                             VerifierLogState ──▶ dependencies(idx, slot)

Data flows forward exactly once; afterwards ``VerifierLogState`` is only
read.  Nothing in the pass raises on odd input: unknown lines are kept as
``UnrecognizedLine`` records and still get a (copied) machine state.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from bpfvlog.config import AnalysisConfig
from bpfvlog.dependencies import DependencyResolver
from bpfvlog.instructions import HelperCallInstruction, SubprogramCallInstruction
from bpfvlog.line_parser import (
    GlobalFuncValidInfo,
    InstructionLine,
    KnownMessageLine,
    ParsedLine,
    StateExprsInfo,
    parse_line,
)
from bpfvlog.simulator import MachineState, StateSimulator, initial_state
from bpfvlog.source_map import SourceMap, build_source_map

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# RESULT
# ═══════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class VerifierLogState:
    """Everything one pass produced, indexed by log line."""

    lines: Tuple[ParsedLine, ...] = ()
    states: Tuple[MachineState, ...] = ()
    source_map: SourceMap = field(default_factory=SourceMap)
    last_ins_idx: int = 0
    _resolver: DependencyResolver = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_resolver", DependencyResolver(self.lines, self.states))

    def __len__(self) -> int:
        return len(self.lines)

    def state_at(self, idx: int) -> MachineState:
        """State at *idx*, clamped to the last line; initial state when empty."""
        if not self.states or idx < 0:
            return initial_state()
        return self.states[min(idx, len(self.states) - 1)]

    def dependencies(self, idx: int, slot: str) -> Set[int]:
        return self._resolver.dependencies(idx, slot)

    def retarget_slot(self, idx: int, slot: str) -> str:
        return self._resolver.retarget_slot(idx, slot)

    def selection_dependencies(self, idx: int, slot: str) -> Set[int]:
        return self._resolver.selection_dependencies(idx, slot)

    def instruction_lines(self) -> List[InstructionLine]:
        return [ln for ln in self.lines if isinstance(ln, InstructionLine)]

    def summary(self) -> Dict[str, int]:
        counts = Counter(ln.type.value for ln in self.lines)
        return {
            "lines": len(self.lines),
            "instructions": counts.get("INSTRUCTION", 0),
            "source_lines": counts.get("SOURCE", 0),
            "known_messages": counts.get("KNOWN_MESSAGE", 0),
            "unrecognized": counts.get("UNRECOGNIZED", 0),
            "source_ids": len(self.source_map),
            "max_frame": max((s.frame for s in self.states), default=0),
            "last_ins_idx": self.last_ins_idx,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lines": [ln.to_dict() for ln in self.lines],
            "states": [s.to_dict() for s in self.states],
            "source_map": self.source_map.to_dict(),
            "last_ins_idx": self.last_ins_idx,
        }


# ═══════════════════════════════════════════════════════════════════════════
# KNOWN-MESSAGE FIX-UPS
# ═══════════════════════════════════════════════════════════════════════════


def _previous_instruction(lines: Sequence[ParsedLine], idx: int) -> Optional[int]:
    for i in range(idx - 1, -1, -1):
        if isinstance(lines[i], InstructionLine):
            return i
    return None


def fold_global_func_call(lines: List[ParsedLine], idx: int, info: GlobalFuncValidInfo) -> bool:
    """Turn the subprogram call right before *idx* into a helper call."""
    if idx == 0:
        return False
    call_line = lines[idx - 1]
    if not isinstance(call_line, InstructionLine):
        return False
    call = call_line.ins
    if not isinstance(call, SubprogramCallInstruction):
        return False
    helper = HelperCallInstruction(
        opcode=call.opcode,
        target=info.func_name,
        pc=call.pc,
        location=call.location,
    )
    lines[idx - 1] = replace(call_line, ins=helper)
    logger.debug("line %d: %s folded into a helper call", idx - 1, info.func_name)
    return True


def merge_bare_state_exprs(lines: List[ParsedLine], idx: int, info: StateExprsInfo) -> bool:
    """Append a bare state block to the closest preceding instruction line."""
    prev_idx = _previous_instruction(lines, idx)
    if prev_idx is None:
        return False
    prev = lines[prev_idx]
    lines[prev_idx] = replace(prev, state_exprs=prev.state_exprs + info.state_exprs)
    logger.debug("line %d: %d state exprs merged into line %d", idx, len(info.state_exprs), prev_idx)
    return True


def apply_known_messages(lines: List[ParsedLine], config: AnalysisConfig) -> int:
    """Rewrite *lines* in place according to the known messages; returns the count."""
    applied = 0
    for idx, line in enumerate(list(lines)):
        if not isinstance(line, KnownMessageLine):
            continue
        info = line.info
        if isinstance(info, GlobalFuncValidInfo):
            if config.fold_global_func_calls and fold_global_func_call(lines, idx, info):
                applied += 1
        elif isinstance(info, StateExprsInfo):
            if config.merge_bare_state_exprs and merge_bare_state_exprs(lines, idx, info):
                applied += 1
        else:
            raise TypeError(f"unknown known-message info: {type(info).__name__}")
    return applied


# ═══════════════════════════════════════════════════════════════════════════
# PASS
# ═══════════════════════════════════════════════════════════════════════════


def _last_instruction_idx(lines: Sequence[ParsedLine]) -> int:
    for line in reversed(lines):
        if isinstance(line, InstructionLine):
            return line.idx
    return 0


def process_raw_lines(
    raw_lines: Iterable[str],
    config: Optional[AnalysisConfig] = None,
) -> VerifierLogState:
    """Parse, fix up, simulate and map one verifier log."""
    config = config or AnalysisConfig()
    for warning in config.validate():
        logger.warning("analysis config: %s", warning)

    lines: List[ParsedLine] = [parse_line(raw, idx) for idx, raw in enumerate(raw_lines)]
    fixups = apply_known_messages(lines, config)
    frozen_lines = tuple(lines)

    simulator = StateSimulator(
        context_value=config.initial_context_value,
        frame_base_value=config.frame_base_value,
    )
    states = tuple(simulator.run(frozen_lines))

    result = VerifierLogState(
        lines=frozen_lines,
        states=states,
        source_map=build_source_map(frozen_lines),
        last_ins_idx=_last_instruction_idx(frozen_lines),
    )
    summary = result.summary()
    logger.info(
        "processed %d lines: %d instructions, %d unrecognized, %d fix-ups, %d unbalanced exits",
        summary["lines"],
        summary["instructions"],
        summary["unrecognized"],
        fixups,
        simulator.unbalanced_exits,
    )
    return result


def process_text(text: str, config: Optional[AnalysisConfig] = None) -> VerifierLogState:
    """``process_raw_lines`` over the lines of *text*."""
    return process_raw_lines(text.splitlines(), config)


__all__ = [
    "VerifierLogState",
    "fold_global_func_call",
    "merge_bare_state_exprs",
    "apply_known_messages",
    "process_raw_lines",
    "process_text",
]
