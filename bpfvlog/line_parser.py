"""
bpfvlog/line_parser.py
══════════════════════

Turns one raw verifier-log line into a ``ParsedLine`` record.

The verifier log is not a formal language, so this is not a grammar-driven
parser.  It works like a hand-written LR scanner: each production consumes a
prefix of the remaining text with a regular expression and hands the rest to
the next production, building the record left to right.

    raw line
       │
       ├─ "; <code> @ <file>:<line>"          ──▶ SourceLine
       │
       ├─ "<pc>: (<op>) <body> [; <exprs>]"   ──▶ InstructionLine
       │        │
       │        └─ opcode class selects the body grammar
       │             ALU family ──▶ _parse_alu        (incl. addr_space_cast)
       │             JMP family ──▶ _parse_jmp        (goto/if/call/exit)
       │
       ├─ "Func#<n> ('<name>') is global ..."  ──▶ KnownMessageLine
       ├─ "<pc>: [frame<n>: ]<exprs>"          ──▶ KnownMessageLine
       │
       └─ anything else                        ──▶ UnrecognizedLine

``parse_line`` is total: a sub-grammar signals failure by raising a
``LineParseError`` subclass, which is caught here and turned into an
``UnrecognizedLine``.  It is also stateless and deterministic, so the same
``(raw, idx)`` always yields an equal record.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple, Union

from bpfvlog.errors import (
    InstructionParseError,
    LineParseError,
    LineSpan,
    OperandParseError,
    VlogErrorCodes,
)
from bpfvlog.instructions import (
    CONDITIONAL_JMP_CODES,
    IMM_ID,
    MEM_ID,
    AddrSpaceCastInstruction,
    AluInstruction,
    BpfAluCode,
    BpfInstruction,
    BpfInstructionClass,
    BpfJmpCode,
    BpfJmpKind,
    BpfOperand,
    ConditionalJmpInstruction,
    ExitInstruction,
    GotoInstruction,
    HelperCallInstruction,
    JmpCondition,
    MemRef,
    Opcode,
    OperandType,
    RawLineLocation,
    SubprogramCallInstruction,
    stack_slot_id,
)
from bpfvlog.state_exprs import (
    StateExpr,
    consume_spaces,
    parse_bare_state_exprs,
    parse_state_exprs,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Token patterns
# ---------------------------------------------------------------------------

RE_PROGRAM_COUNTER = re.compile(r"^([0-9]+):")
RE_BPF_OPCODE = re.compile(r"^\(([0-9a-f][0-9a-f])\)")
RE_REGISTER = re.compile(r"^(r10|r[0-9]|w[0-9])")
RE_MEMORY_REF = re.compile(
    r"^\*\((u8|u16|u32|u64) \*\)\((r10|r[0-9]) ([+-][0-9]+)\)"
)
RE_IMM_VALUE = re.compile(r"^(0x[0-9a-f]+|[+-]?[0-9]+)")
RE_CALL_TARGET = re.compile(r"^call ([0-9a-zA-Z_#+-]+)")
RE_JMP_TARGET = re.compile(r"^goto (pc[+-][0-9]+)")
RE_GOTO = re.compile(r"^(goto_or_nop|may_goto|gotol|goto) (pc[+-][0-9]+)")
RE_ADDR_SPACE_CAST = re.compile(
    r"^(r10|r[0-9]) = addr_space_cast\((r10|r[0-9]), ([0-9]+), ([0-9]+)\)"
)
RE_SOURCE_LINE = re.compile(r"^;(.*) @ ([^\s:]+):([0-9]+)\s*$")
RE_GLOBAL_FUNC_VALID = re.compile(
    r"^Func#([0-9]+) \('([^']+)'\) is global and assumed valid\."
)

CAST_TO_SIZE: Dict[str, int] = {"u8": 1, "u16": 2, "u32": 4, "u64": 8}

# Longest first: "<<=" must not be read as "<" followed by "<=".
BPF_ALU_OPERATORS: Tuple[str, ...] = (
    "s>>=", "s<<=", "<<=", ">>=",
    "+=", "-=", "*=", "/=", "%=", "&=", "|=", "^=",
    "=",
)
BPF_COND_OPERATORS: Tuple[str, ...] = (
    "s>=", "s<=", "==", "!=", "<=", ">=", "s<", "s>", "<", ">",
)

GOTO_KINDS: Dict[str, BpfJmpKind] = {
    "goto": BpfJmpKind.UNCONDITIONAL_GOTO,
    "gotol": BpfJmpKind.UNCONDITIONAL_GOTO,
    "may_goto": BpfJmpKind.MAY_GOTO,
    "goto_or_nop": BpfJmpKind.GOTO_OR_NOP,
}
JCOND_GOTOS = frozenset({"may_goto", "goto_or_nop"})


# ═══════════════════════════════════════════════════════════════════════════
# LINE RECORDS
# ═══════════════════════════════════════════════════════════════════════════


class ParsedLineType(enum.Enum):
    UNRECOGNIZED = "UNRECOGNIZED"
    INSTRUCTION = "INSTRUCTION"
    SOURCE = "SOURCE"
    KNOWN_MESSAGE = "KNOWN_MESSAGE"


class KnownMessageInfoType(enum.Enum):
    GLOBAL_FUNC_VALID = "GLOBAL_FUNC_VALID"
    STATE_EXPRS = "STATE_EXPRS"


@dataclass(frozen=True, slots=True)
class UnrecognizedLine:
    idx: int
    raw: str

    type = ParsedLineType.UNRECOGNIZED

    def to_dict(self) -> Dict[str, Any]:
        return {"idx": self.idx, "type": self.type.value, "raw": self.raw}


@dataclass(frozen=True, slots=True)
class InstructionLine:
    idx: int
    raw: str
    ins: BpfInstruction
    state_exprs: Tuple[StateExpr, ...] = ()

    type = ParsedLineType.INSTRUCTION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "idx": self.idx,
            "type": self.type.value,
            "raw": self.raw,
            "ins": self.ins.to_dict(),
            "state_exprs": [e.to_dict() for e in self.state_exprs],
        }


@dataclass(frozen=True, slots=True)
class SourceLine:
    """A ``; <code> @ <file>:<line>`` annotation."""

    idx: int
    raw: str
    file_name: str
    line_num: int
    content: str
    id: str
    ignore: bool = False

    type = ParsedLineType.SOURCE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "idx": self.idx,
            "type": self.type.value,
            "raw": self.raw,
            "file_name": self.file_name,
            "line_num": self.line_num,
            "content": self.content,
            "id": self.id,
            "ignore": self.ignore,
        }


@dataclass(frozen=True, slots=True)
class GlobalFuncValidInfo:
    func_id: int
    func_name: str

    type = KnownMessageInfoType.GLOBAL_FUNC_VALID

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "func_id": self.func_id, "func_name": self.func_name}


@dataclass(frozen=True, slots=True)
class StateExprsInfo:
    pc: int
    state_exprs: Tuple[StateExpr, ...]

    type = KnownMessageInfoType.STATE_EXPRS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "pc": self.pc,
            "state_exprs": [e.to_dict() for e in self.state_exprs],
        }


KnownMessageInfo = Union[GlobalFuncValidInfo, StateExprsInfo]


@dataclass(frozen=True, slots=True)
class KnownMessageLine:
    idx: int
    raw: str
    info: KnownMessageInfo

    type = ParsedLineType.KNOWN_MESSAGE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "idx": self.idx,
            "type": self.type.value,
            "raw": self.raw,
            "info": self.info.to_dict(),
        }


ParsedLine = Union[UnrecognizedLine, InstructionLine, SourceLine, KnownMessageLine]


# ═══════════════════════════════════════════════════════════════════════════
# OPERANDS
# ═══════════════════════════════════════════════════════════════════════════


def _location(before: str, after: str) -> RawLineLocation:
    """Byte range of the text consumed between *before* and *after*."""
    return RawLineLocation(offset=-len(before), size=len(before) - len(after))


def _register_operand(reg: str) -> BpfOperand:
    if reg.startswith("w"):
        return BpfOperand(OperandType.REG, "r" + reg[1:], 4)
    return BpfOperand(OperandType.REG, reg, 8)


def _imm_operand() -> BpfOperand:
    return BpfOperand(OperandType.IMM, IMM_ID, 8)


def _parse_register(text: str) -> Optional[Tuple[BpfOperand, str]]:
    m = RE_REGISTER.match(text)
    if m is None:
        return None
    return _register_operand(m.group(1)), text[m.end():]


def _parse_memory_ref(text: str) -> Optional[Tuple[BpfOperand, str]]:
    m = RE_MEMORY_REF.match(text)
    if m is None:
        return None
    size = CAST_TO_SIZE[m.group(1)]
    base = m.group(2)
    offset = int(m.group(3))
    memref = MemRef(address_reg=base, offset=offset)
    if base == "r10":
        op = BpfOperand(OperandType.FP, stack_slot_id(offset), size, memref)
    else:
        op = BpfOperand(OperandType.MEM, MEM_ID, size, memref)
    return op, text[m.end():]


def _parse_immediate(text: str) -> Optional[Tuple[BpfOperand, str]]:
    m = RE_IMM_VALUE.match(text)
    if m is None:
        return None
    return _imm_operand(), text[m.end():]


def _parse_operand(text: str, *alternatives) -> Tuple[BpfOperand, str]:
    """First matching alternative wins; the operand gets its location."""
    for alt in alternatives:
        parsed = alt(text)
        if parsed is not None:
            op, rest = parsed
            return replace(op, location=_location(text, rest)), rest
    raise OperandParseError(f"unrecognized operand: {text[:24]!r}", text=text)


def _consume_operator(text: str, operators: Tuple[str, ...]) -> Tuple[str, str]:
    for op in operators:
        if text.startswith(op):
            return op, consume_spaces(text[len(op):])
    raise InstructionParseError(
        f"unrecognized operator: {text[:8]!r}",
        text=text,
        code=VlogErrorCodes.UNKNOWN_OPERATOR,
    )


def _dedup(ids: List[str]) -> Tuple[str, ...]:
    return tuple(dict.fromkeys(ids))


def collect_alu_reads(operator: str, dst: BpfOperand, src: BpfOperand) -> Tuple[str, ...]:
    """Storage locations an ALU/load/store instruction reads.

    The destination is read unless the operator is a plain ``=``; the base
    register of a dereference is always read; the source is read unless it
    is an immediate.
    """
    reads: List[str] = []
    if operator != "=":
        reads.append(dst.id)
    if src.memref is not None:
        reads.append(src.memref.address_reg)
    if dst.memref is not None:
        reads.append(dst.memref.address_reg)
    if not src.is_immediate:
        reads.append(src.id)
    return _dedup(reads)


# ═══════════════════════════════════════════════════════════════════════════
# INSTRUCTION BODIES
# ═══════════════════════════════════════════════════════════════════════════


def _parse_addr_space_cast(text: str, opcode: Opcode) -> Optional[Tuple[BpfInstruction, str]]:
    m = RE_ADDR_SPACE_CAST.match(text)
    if m is None:
        return None
    dst = _register_operand(m.group(1))
    src = _register_operand(m.group(2))
    dst = replace(dst, location=RawLineLocation(-len(text), len(m.group(1))))
    src_start = m.start(2)
    src = replace(src, location=RawLineLocation(-(len(text) - src_start), len(m.group(2))))
    ins = AddrSpaceCastInstruction(
        opcode=opcode,
        dst=dst,
        src=src,
        direction=f"{m.group(4)}->{m.group(3)}",
        reads=(src.id,),
        writes=(dst.id,),
    )
    return ins, text[m.end():]


def _parse_alu(text: str, opcode: Opcode) -> Tuple[BpfInstruction, str]:
    if opcode.iclass is BpfInstructionClass.ALU64 and opcode.code == BpfAluCode.MOV:
        cast = _parse_addr_space_cast(text, opcode)
        if cast is not None:
            return cast

    dst, rest = _parse_operand(text, _parse_register, _parse_memory_ref)
    operator, rest = _consume_operator(consume_spaces(rest), BPF_ALU_OPERATORS)
    src, rest = _parse_operand(rest, _parse_register, _parse_memory_ref, _parse_immediate)

    ins = AluInstruction(
        opcode=opcode,
        operator=operator,
        dst=dst,
        src=src,
        reads=collect_alu_reads(operator, dst, src),
        writes=(dst.id,),
    )
    return ins, consume_spaces(rest)


def _parse_goto(text: str, opcode: Opcode, allowed: Optional[frozenset] = None) -> Tuple[BpfInstruction, str]:
    m = RE_GOTO.match(text)
    if m is None or (allowed is not None and m.group(1) not in allowed):
        raise InstructionParseError(
            f"expected goto: {text[:24]!r}",
            text=text,
            code=VlogErrorCodes.MISSING_JUMP_TARGET,
        )
    ins = GotoInstruction(
        opcode=opcode,
        jmp_kind=GOTO_KINDS[m.group(1)],
        goto=m.group(1),
        target=m.group(2),
        location=_location(text, text[m.end():]),
    )
    return ins, consume_spaces(text[m.end():])


def _parse_conditional_jmp(text: str, opcode: Opcode) -> Tuple[BpfInstruction, str]:
    if not text.startswith("if "):
        raise InstructionParseError(f"expected 'if': {text[:24]!r}", text=text)
    rest = text[len("if "):]
    left, rest = _parse_operand(rest, _parse_register, _parse_immediate)
    op, rest = _consume_operator(consume_spaces(rest), BPF_COND_OPERATORS)
    right, rest = _parse_operand(rest, _parse_register, _parse_immediate)

    m = RE_JMP_TARGET.match(consume_spaces(rest))
    if m is None:
        raise InstructionParseError(
            f"missing jump target: {rest[:24]!r}",
            text=text,
            code=VlogErrorCodes.MISSING_JUMP_TARGET,
        )
    rest = consume_spaces(rest)[m.end():]

    reads = _dedup([o.id for o in (left, right) if not o.is_immediate])
    ins = ConditionalJmpInstruction(
        opcode=opcode,
        cond=JmpCondition(left=left, op=op, right=right),
        target=m.group(1),
        reads=reads,
    )
    return ins, consume_spaces(rest)


def _parse_call(text: str, opcode: Opcode) -> Tuple[BpfInstruction, str]:
    m = RE_CALL_TARGET.match(text)
    if m is None:
        raise InstructionParseError(f"expected call: {text[:24]!r}", text=text)
    target = m.group(1)
    location = RawLineLocation(offset=-len(text), size=len(m.group(0)))
    ins: BpfInstruction
    if target.startswith("pc+") or target.startswith("pc-"):
        ins = SubprogramCallInstruction(opcode=opcode, target=target, location=location)
    else:
        ins = HelperCallInstruction(opcode=opcode, target=target, location=location)
    return ins, consume_spaces(text[m.end():])


def _parse_exit(text: str, opcode: Opcode) -> Tuple[BpfInstruction, str]:
    if not text.startswith("exit"):
        raise InstructionParseError(f"expected exit: {text[:24]!r}", text=text)
    return ExitInstruction(opcode=opcode), consume_spaces(text[len("exit"):])


def _parse_jmp(text: str, opcode: Opcode) -> Tuple[BpfInstruction, str]:
    code = opcode.code
    if code == BpfJmpCode.CALL:
        return _parse_call(text, opcode)
    if code == BpfJmpCode.EXIT:
        return _parse_exit(text, opcode)
    if code == BpfJmpCode.JA:
        return _parse_goto(text, opcode)
    if code == BpfJmpCode.JCOND:
        return _parse_goto(text, opcode, JCOND_GOTOS)
    if code in CONDITIONAL_JMP_CODES:
        return _parse_conditional_jmp(text, opcode)
    raise InstructionParseError(
        f"no grammar for jump code {code:#x}",
        text=text,
        code=VlogErrorCodes.UNSUPPORTED_OPCODE,
    )


def parse_instruction(text: str, opcode: Opcode) -> Tuple[BpfInstruction, str]:
    """Parse an instruction body; raises ``InstructionParseError``."""
    if opcode.is_alu_family:
        return _parse_alu(text, opcode)
    if opcode.is_jmp_family:
        return _parse_jmp(text, opcode)
    raise InstructionParseError(
        f"no grammar for class {opcode.iclass.name}",
        text=text,
        code=VlogErrorCodes.UNSUPPORTED_OPCODE,
    )


# ═══════════════════════════════════════════════════════════════════════════
# LINE DISPATCH
# ═══════════════════════════════════════════════════════════════════════════


def _parse_source_line(raw: str, idx: int) -> Optional[SourceLine]:
    m = RE_SOURCE_LINE.match(raw.strip())
    if m is None:
        return None
    content = m.group(1).strip()
    file_name = m.group(2)
    line_num = int(m.group(3))
    return SourceLine(
        idx=idx,
        raw=raw,
        file_name=file_name,
        line_num=line_num,
        content=content,
        id=f"{file_name}:{line_num}",
        ignore=not content or line_num == 0,
    )


def _parse_instruction_line(raw: str, idx: int) -> Optional[InstructionLine]:
    """``None`` when the line is not an instruction line at all.

    Raises ``InstructionParseError`` when the opcode matched but the body
    did not.
    """
    rest = consume_spaces(raw)
    pc_match = RE_PROGRAM_COUNTER.match(rest)
    if pc_match is None:
        return None
    rest = consume_spaces(rest[pc_match.end():])
    op_match = RE_BPF_OPCODE.match(rest)
    if op_match is None:
        return None
    opcode = Opcode.from_hex(op_match.group(1))
    ins, rest = parse_instruction(consume_spaces(rest[op_match.end():]), opcode)
    exprs, _ = parse_state_exprs(rest, require_marker=True)
    return InstructionLine(
        idx=idx,
        raw=raw,
        ins=replace(ins, pc=int(pc_match.group(1))),
        state_exprs=tuple(exprs),
    )


def _parse_known_message(raw: str, idx: int) -> Optional[KnownMessageLine]:
    m = RE_GLOBAL_FUNC_VALID.match(raw.strip())
    if m is not None:
        info = GlobalFuncValidInfo(func_id=int(m.group(1)), func_name=m.group(2))
        return KnownMessageLine(idx=idx, raw=raw, info=info)

    pc, exprs, _ = parse_bare_state_exprs(raw)
    if pc is not None and exprs:
        return KnownMessageLine(
            idx=idx, raw=raw, info=StateExprsInfo(pc=pc, state_exprs=tuple(exprs))
        )
    return None


def parse_line(raw: str, idx: int) -> ParsedLine:
    """Classify and parse one raw log line.  Never raises."""
    source = _parse_source_line(raw, idx)
    if source is not None:
        return source

    try:
        line = _parse_instruction_line(raw, idx)
    except LineParseError as exc:
        # opcode recognized, body not: the whole line is unrecognized
        exc.span = LineSpan(idx=idx, column=max(raw.find(exc.text), 0) if exc.text else 0)
        logger.debug("degraded: %s", exc)
        return UnrecognizedLine(idx=idx, raw=raw)
    if line is not None:
        return line

    known = _parse_known_message(raw, idx)
    if known is not None:
        return known

    return UnrecognizedLine(idx=idx, raw=raw)


__all__ = [
    "ParsedLineType",
    "KnownMessageInfoType",
    "UnrecognizedLine",
    "InstructionLine",
    "SourceLine",
    "GlobalFuncValidInfo",
    "StateExprsInfo",
    "KnownMessageInfo",
    "KnownMessageLine",
    "ParsedLine",
    "BPF_ALU_OPERATORS",
    "BPF_COND_OPERATORS",
    "collect_alu_reads",
    "parse_instruction",
    "parse_line",
]
