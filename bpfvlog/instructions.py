"""
bpfvlog/instructions.py
═══════════════════════

Instruction model for lines of a BPF verifier log.

The verifier prints every validated instruction as

    <pc>: (<opcode byte>) <human readable body>

This module holds the *decoded* form of such a line: the opcode byte split
into its fields, the operands with the exact byte ranges they were read from,
and the storage locations the instruction reads and writes.  Nothing here
parses text; see ``line_parser.py``.

Opcode layout (kernel encoding)
───────────────────────────────

    bit   7 6 5 4 │  3  │ 2 1 0
         ─────────┼─────┼───────
          op code │ src │ class

    ┌───────────────┬──────────────────────────────────────────────┐
    │ class         │ LD LDX ST STX ALU JMP JMP32 ALU64  (0 … 7)    │
    │ src           │ K (immediate operand) / X (register operand) │
    │ op code       │ BpfAluCode or BpfJmpCode, depending on class │
    └───────────────┴──────────────────────────────────────────────┘

Instruction variants
────────────────────

The instruction set is a closed sum type::

    BpfInstruction = AluInstruction
                   | AddrSpaceCastInstruction
                   | BpfJmpInstruction

    BpfJmpInstruction = ExitInstruction
                      | GotoInstruction            (goto / may_goto / goto_or_nop)
                      | ConditionalJmpInstruction
                      | HelperCallInstruction
                      | SubprogramCallInstruction

Every variant is a frozen dataclass carrying ``opcode``, ``reads``,
``writes``, an optional ``pc`` and an optional ``location``.

Precision limit: a dereference through any base register other than ``r10``
is collapsed to the single storage id ``MEM``.  Data flow through heap or
map memory therefore cannot be traced; only registers and stack slots are.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, Optional, Tuple, Union

# ---------------------------------------------------------------------------
# Register conventions
# ---------------------------------------------------------------------------

RETURN_REG = "r0"
FRAME_POINTER_REG = "r10"
SCRATCH_REGS: Tuple[str, ...] = ("r1", "r2", "r3", "r4", "r5")
CALLEE_SAVED_REGS: Tuple[str, ...] = ("r6", "r7", "r8", "r9")
ALL_GP_REGS: Tuple[str, ...] = (RETURN_REG,) + SCRATCH_REGS + CALLEE_SAVED_REGS

IMM_ID = "IMM"
MEM_ID = "MEM"
STACK_BASE_ID = "fp-0"

# ═══════════════════════════════════════════════════════════════════════════
# 1. OPCODE FIELDS
# ═══════════════════════════════════════════════════════════════════════════


class BpfInstructionClass(enum.IntEnum):
    LD = 0x0
    LDX = 0x1
    ST = 0x2
    STX = 0x3
    ALU = 0x4
    JMP = 0x5
    JMP32 = 0x6
    ALU64 = 0x7


class BpfAluCode(enum.IntEnum):
    ADD = 0x0
    SUB = 0x1
    MUL = 0x2
    DIV = 0x3
    OR = 0x4
    AND = 0x5
    LSH = 0x6
    RSH = 0x7
    NEG = 0x8
    MOD = 0x9
    XOR = 0xA
    MOV = 0xB
    ARSH = 0xC
    END = 0xD


class BpfJmpCode(enum.IntEnum):
    JA = 0x0
    JEQ = 0x1
    JGT = 0x2
    JGE = 0x3
    JSET = 0x4
    JNE = 0x5
    JSGT = 0x6
    JSGE = 0x7
    CALL = 0x8
    EXIT = 0x9
    JLT = 0xA
    JLE = 0xB
    JSLT = 0xC
    JSLE = 0xD
    JCOND = 0xE


ALU_FAMILY_CLASSES = frozenset(
    {
        BpfInstructionClass.LD,
        BpfInstructionClass.LDX,
        BpfInstructionClass.ST,
        BpfInstructionClass.STX,
        BpfInstructionClass.ALU,
        BpfInstructionClass.ALU64,
    }
)
JMP_FAMILY_CLASSES = frozenset({BpfInstructionClass.JMP, BpfInstructionClass.JMP32})

CONDITIONAL_JMP_CODES = frozenset(
    {
        BpfJmpCode.JEQ,
        BpfJmpCode.JGT,
        BpfJmpCode.JGE,
        BpfJmpCode.JNE,
        BpfJmpCode.JSGT,
        BpfJmpCode.JSGE,
        BpfJmpCode.JLT,
        BpfJmpCode.JLE,
        BpfJmpCode.JSLT,
        BpfJmpCode.JSLE,
    }
)


class OpcodeSource(enum.Enum):
    K = "K"  # 32-bit immediate as source operand
    X = "X"  # src_reg as source operand


@dataclass(frozen=True, slots=True)
class Opcode:
    """Decoded opcode byte."""

    iclass: BpfInstructionClass
    code: int
    source: OpcodeSource

    @classmethod
    def from_hex(cls, opcode_hex: str) -> "Opcode":
        """Decode a two-digit hex opcode such as ``"b7"`` or ``"85"``."""
        byte = int(opcode_hex, 16)
        source = OpcodeSource.X if byte & 0x08 else OpcodeSource.K
        return cls(
            iclass=BpfInstructionClass(byte & 0x07),
            code=(byte >> 4) & 0x0F,
            source=source,
        )

    @property
    def is_alu_family(self) -> bool:
        return self.iclass in ALU_FAMILY_CLASSES

    @property
    def is_jmp_family(self) -> bool:
        return self.iclass in JMP_FAMILY_CLASSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iclass": self.iclass.name,
            "code": self.code,
            "source": self.source.value,
        }


# ═══════════════════════════════════════════════════════════════════════════
# 2. OPERANDS
# ═══════════════════════════════════════════════════════════════════════════


class OperandType(enum.Enum):
    UNKNOWN = "UNKNOWN"
    REG = "REG"
    FP = "FP"
    IMM = "IMM"
    MEM = "MEM"


@dataclass(frozen=True, slots=True)
class RawLineLocation:
    """Byte range inside a raw log line.

    ``offset`` is negative and counted from the end of the line (``-10``
    means ``len(raw) - 10``), so it stays valid whatever prefix a consumer
    strips from the line.
    """

    offset: int
    size: int

    def resolve(self, raw: str) -> Tuple[int, int]:
        """Return the ``(start, end)`` slice bounds inside *raw*."""
        start = len(raw) + self.offset
        return start, start + self.size

    def text(self, raw: str) -> str:
        start, end = self.resolve(raw)
        return raw[start:end]

    def to_dict(self) -> Dict[str, int]:
        return {"offset": self.offset, "size": self.size}


@dataclass(frozen=True, slots=True)
class MemRef:
    """``*(uN *)(<address_reg> <offset>)``."""

    address_reg: str
    offset: int

    def to_dict(self) -> Dict[str, Any]:
        return {"address_reg": self.address_reg, "offset": self.offset}


@dataclass(frozen=True, slots=True)
class BpfOperand:
    """One operand of an instruction.

    Attributes
    ----------
    type : OperandType
        Register, stack slot (``FP``), immediate, generic memory or unknown.
    id : str
        Storage-location id: ``r0``..``r10``, ``fp-<off>``, ``IMM`` or ``MEM``.
    size : int
        Access size in bytes (``w`` registers are 4 bytes wide).
    memref : MemRef, optional
        Base register and offset of a dereference.
    location : RawLineLocation, optional
        Where the operand text sits in the raw line.
    """

    type: OperandType
    id: str
    size: int
    memref: Optional[MemRef] = None
    location: Optional[RawLineLocation] = None

    @property
    def is_immediate(self) -> bool:
        return self.type is OperandType.IMM

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"type": self.type.value, "id": self.id, "size": self.size}
        if self.memref is not None:
            d["memref"] = self.memref.to_dict()
        if self.location is not None:
            d["location"] = self.location.to_dict()
        return d


def stack_slot_id(offset: int) -> str:
    """Storage id of the stack slot at *offset* from the frame pointer."""
    if offset == 0:
        return STACK_BASE_ID
    return f"fp{offset}"


def canonical_slot_id(slot_id: str) -> str:
    """Rewrite the bare stack-base token ``fp0`` to ``fp-0``."""
    return STACK_BASE_ID if slot_id == "fp0" else slot_id


# ═══════════════════════════════════════════════════════════════════════════
# 3. INSTRUCTIONS
# ═══════════════════════════════════════════════════════════════════════════


class BpfInstructionKind(enum.Enum):
    ALU = "ALU"
    JMP = "JMP"
    ADDR_SPACE_CAST = "ADDR_SPACE_CAST"


class BpfJmpKind(enum.Enum):
    EXIT = "EXIT"
    UNCONDITIONAL_GOTO = "UNCONDITIONAL_GOTO"
    MAY_GOTO = "MAY_GOTO"
    GOTO_OR_NOP = "GOTO_OR_NOP"
    CONDITIONAL_GOTO = "CONDITIONAL_GOTO"
    HELPER_CALL = "HELPER_CALL"
    SUBPROGRAM_CALL = "SUBPROGRAM_CALL"


def _common_dict(ins: "BpfInstruction") -> Dict[str, Any]:
    d: Dict[str, Any] = {
        "kind": ins.kind.value,
        "opcode": ins.opcode.to_dict(),
        "pc": ins.pc,
        "reads": list(ins.reads),
        "writes": list(ins.writes),
    }
    if ins.location is not None:
        d["location"] = ins.location.to_dict()
    return d


@dataclass(frozen=True, slots=True)
class AluInstruction:
    """Arithmetic, load or store: ``<dst> <operator> <src>``."""

    opcode: Opcode
    operator: str
    dst: BpfOperand
    src: BpfOperand
    reads: Tuple[str, ...]
    writes: Tuple[str, ...]
    pc: Optional[int] = None
    location: Optional[RawLineLocation] = None

    kind: ClassVar[BpfInstructionKind] = BpfInstructionKind.ALU

    def to_dict(self) -> Dict[str, Any]:
        d = _common_dict(self)
        d.update(operator=self.operator, dst=self.dst.to_dict(), src=self.src.to_dict())
        return d


@dataclass(frozen=True, slots=True)
class AddrSpaceCastInstruction:
    """``rX = addr_space_cast(rY, <dst_as>, <src_as>)``."""

    opcode: Opcode
    dst: BpfOperand
    src: BpfOperand
    direction: str
    reads: Tuple[str, ...]
    writes: Tuple[str, ...]
    pc: Optional[int] = None
    location: Optional[RawLineLocation] = None

    kind: ClassVar[BpfInstructionKind] = BpfInstructionKind.ADDR_SPACE_CAST

    def to_dict(self) -> Dict[str, Any]:
        d = _common_dict(self)
        d.update(dst=self.dst.to_dict(), src=self.src.to_dict(), direction=self.direction)
        return d


@dataclass(frozen=True, slots=True)
class ExitInstruction:
    opcode: Opcode
    reads: Tuple[str, ...] = ()
    writes: Tuple[str, ...] = ALL_GP_REGS
    pc: Optional[int] = None
    location: Optional[RawLineLocation] = None

    kind: ClassVar[BpfInstructionKind] = BpfInstructionKind.JMP
    jmp_kind: ClassVar[BpfJmpKind] = BpfJmpKind.EXIT

    def to_dict(self) -> Dict[str, Any]:
        d = _common_dict(self)
        d["jmp_kind"] = self.jmp_kind.value
        return d


@dataclass(frozen=True, slots=True)
class GotoInstruction:
    """``goto``, ``may_goto`` or ``goto_or_nop``; no data effects."""

    opcode: Opcode
    jmp_kind: BpfJmpKind
    goto: str
    target: str
    reads: Tuple[str, ...] = ()
    writes: Tuple[str, ...] = ()
    pc: Optional[int] = None
    location: Optional[RawLineLocation] = None

    kind: ClassVar[BpfInstructionKind] = BpfInstructionKind.JMP

    def to_dict(self) -> Dict[str, Any]:
        d = _common_dict(self)
        d.update(jmp_kind=self.jmp_kind.value, goto=self.goto, target=self.target)
        return d


@dataclass(frozen=True, slots=True)
class JmpCondition:
    left: BpfOperand
    op: str
    right: BpfOperand

    def to_dict(self) -> Dict[str, Any]:
        return {"left": self.left.to_dict(), "op": self.op, "right": self.right.to_dict()}


@dataclass(frozen=True, slots=True)
class ConditionalJmpInstruction:
    opcode: Opcode
    cond: JmpCondition
    target: str
    reads: Tuple[str, ...]
    writes: Tuple[str, ...] = ()
    pc: Optional[int] = None
    location: Optional[RawLineLocation] = None

    kind: ClassVar[BpfInstructionKind] = BpfInstructionKind.JMP
    jmp_kind: ClassVar[BpfJmpKind] = BpfJmpKind.CONDITIONAL_GOTO

    def to_dict(self) -> Dict[str, Any]:
        d = _common_dict(self)
        d.update(jmp_kind=self.jmp_kind.value, target=self.target, cond=self.cond.to_dict())
        return d


@dataclass(frozen=True, slots=True)
class HelperCallInstruction:
    """Call to a kernel helper, kfunc or a global function: full clobber."""

    opcode: Opcode
    target: str
    reads: Tuple[str, ...] = SCRATCH_REGS
    writes: Tuple[str, ...] = (RETURN_REG,) + SCRATCH_REGS
    pc: Optional[int] = None
    location: Optional[RawLineLocation] = None

    kind: ClassVar[BpfInstructionKind] = BpfInstructionKind.JMP
    jmp_kind: ClassVar[BpfJmpKind] = BpfJmpKind.HELPER_CALL

    def to_dict(self) -> Dict[str, Any]:
        d = _common_dict(self)
        d.update(jmp_kind=self.jmp_kind.value, target=self.target)
        return d


@dataclass(frozen=True, slots=True)
class SubprogramCallInstruction:
    """``call pc+N``: enters a new stack frame."""

    opcode: Opcode
    target: str
    reads: Tuple[str, ...] = SCRATCH_REGS
    writes: Tuple[str, ...] = (RETURN_REG,) + CALLEE_SAVED_REGS
    pc: Optional[int] = None
    location: Optional[RawLineLocation] = None

    kind: ClassVar[BpfInstructionKind] = BpfInstructionKind.JMP
    jmp_kind: ClassVar[BpfJmpKind] = BpfJmpKind.SUBPROGRAM_CALL

    def to_dict(self) -> Dict[str, Any]:
        d = _common_dict(self)
        d.update(jmp_kind=self.jmp_kind.value, target=self.target)
        return d


BpfJmpInstruction = Union[
    ExitInstruction,
    GotoInstruction,
    ConditionalJmpInstruction,
    HelperCallInstruction,
    SubprogramCallInstruction,
]

BpfInstruction = Union[
    AluInstruction,
    AddrSpaceCastInstruction,
    BpfJmpInstruction,
]

JMP_INSTRUCTION_TYPES = (
    ExitInstruction,
    GotoInstruction,
    ConditionalJmpInstruction,
    HelperCallInstruction,
    SubprogramCallInstruction,
)


def is_jmp(ins: BpfInstruction) -> bool:
    return isinstance(ins, JMP_INSTRUCTION_TYPES)


def distinct_reads(ins: BpfInstruction) -> Tuple[str, ...]:
    """``ins.reads`` without duplicates, in first-seen order."""
    return tuple(dict.fromkeys(ins.reads))


__all__ = [
    "RETURN_REG",
    "FRAME_POINTER_REG",
    "SCRATCH_REGS",
    "CALLEE_SAVED_REGS",
    "ALL_GP_REGS",
    "IMM_ID",
    "MEM_ID",
    "STACK_BASE_ID",
    "BpfInstructionClass",
    "BpfAluCode",
    "BpfJmpCode",
    "CONDITIONAL_JMP_CODES",
    "OpcodeSource",
    "Opcode",
    "OperandType",
    "RawLineLocation",
    "MemRef",
    "BpfOperand",
    "stack_slot_id",
    "canonical_slot_id",
    "BpfInstructionKind",
    "BpfJmpKind",
    "AluInstruction",
    "AddrSpaceCastInstruction",
    "ExitInstruction",
    "GotoInstruction",
    "JmpCondition",
    "ConditionalJmpInstruction",
    "HelperCallInstruction",
    "SubprogramCallInstruction",
    "BpfJmpInstruction",
    "BpfInstruction",
    "is_jmp",
    "distinct_reads",
]
