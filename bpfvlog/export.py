"""
bpfvlog/export.py
═════════════════

S-expression rendering of pass results, via ``sexpdata``.

One top-level form per record::

    (line 1 instruction :pc 0 :ins ALU :reads () :writes ("r2")
          :exprs (("r2" "1")) :raw "0: (b7) r2 = 1 ; R2_w=1")
    (state 1 :pc 0 :frame 0 :slots (("r2" "1" WRITE 1) ("r1" "ctx()" NONE)))

Storage-location ids and values are emitted as strings (ids such as
``fp[1]-64`` are not valid symbols); keywords and enum tags are symbols.
``loads`` reads a form back into plain Python lists and strings.
"""

from __future__ import annotations

from typing import Any, Iterable, List

import sexpdata
from sexpdata import Symbol

from bpfvlog.instructions import is_jmp
from bpfvlog.line_parser import (
    GlobalFuncValidInfo,
    InstructionLine,
    KnownMessageLine,
    ParsedLine,
    SourceLine,
    StateExprsInfo,
    UnrecognizedLine,
)
from bpfvlog.simulator import MachineState
from bpfvlog.source_map import SourceMap
from bpfvlog.state_exprs import StateExpr


def _kw(name: str) -> Symbol:
    return Symbol(":" + name)


def _exprs(exprs: Iterable[StateExpr]) -> List[Any]:
    return [[e.id, e.value] for e in exprs]


def line_to_sexp(line: ParsedLine) -> List[Any]:
    head: List[Any] = [Symbol("line"), line.idx]
    if isinstance(line, InstructionLine):
        ins = line.ins
        if is_jmp(ins):
            kind = ins.jmp_kind.value
        else:
            kind = ins.kind.value
        return head + [
            Symbol("instruction"),
            _kw("pc"), ins.pc if ins.pc is not None else 0,
            _kw("ins"), Symbol(kind),
            _kw("reads"), list(ins.reads),
            _kw("writes"), list(ins.writes),
            _kw("exprs"), _exprs(line.state_exprs),
            _kw("raw"), line.raw,
        ]
    if isinstance(line, SourceLine):
        form = head + [
            Symbol("source"),
            _kw("id"), line.id,
            _kw("content"), line.content,
        ]
        if line.ignore:
            form.append(_kw("ignore"))
        return form
    if isinstance(line, KnownMessageLine):
        info = line.info
        if isinstance(info, GlobalFuncValidInfo):
            detail = [_kw("global-func"), info.func_name, _kw("func-id"), info.func_id]
        elif isinstance(info, StateExprsInfo):
            detail = [_kw("state-exprs"), _exprs(info.state_exprs), _kw("pc"), info.pc]
        else:
            raise TypeError(f"unknown known-message info: {type(info).__name__}")
        return head + [Symbol("known-message")] + detail
    if isinstance(line, UnrecognizedLine):
        return head + [Symbol("unrecognized"), _kw("raw"), line.raw]
    raise TypeError(f"not a parsed line: {type(line).__name__}")


def state_to_sexp(state: MachineState) -> List[Any]:
    slots: List[Any] = []
    for slot_id, sv in state.values.items():
        entry: List[Any] = [slot_id, sv.value, Symbol(sv.effect.value)]
        if slot_id in state.last_write:
            entry.append(state.last_write[slot_id])
        slots.append(entry)
    return [
        Symbol("state"), state.idx,
        _kw("pc"), state.pc,
        _kw("frame"), state.frame,
        _kw("slots"), slots,
    ]


def source_map_to_sexp(source_map: SourceMap) -> List[Any]:
    entries: List[Any] = []
    for source_id, line in source_map.source_lines.items():
        entries.append([
            source_id,
            line.content,
            sorted(source_map.log_lines_for(source_id)),
        ])
    ranges = [[f, lo, hi] for f, (lo, hi) in source_map.file_range.items()]
    return [Symbol("source-map"), _kw("lines"), entries, _kw("files"), ranges]


def dumps_lines(lines: Iterable[ParsedLine]) -> str:
    return "\n".join(sexpdata.dumps(line_to_sexp(ln)) for ln in lines)


def dumps_states(states: Iterable[MachineState]) -> str:
    return "\n".join(sexpdata.dumps(state_to_sexp(s)) for s in states)


def dumps_source_map(source_map: SourceMap) -> str:
    return sexpdata.dumps(source_map_to_sexp(source_map))


def _normalise(obj: Any) -> Any:
    if isinstance(obj, list):
        return [_normalise(x) for x in obj]
    if isinstance(obj, Symbol):
        return str(obj)
    return obj


def loads(text: str) -> Any:
    """Parse one form into nested lists; symbols become plain strings."""
    return _normalise(sexpdata.loads(text))


__all__ = [
    "line_to_sexp",
    "state_to_sexp",
    "source_map_to_sexp",
    "dumps_lines",
    "dumps_states",
    "dumps_source_map",
    "loads",
]
