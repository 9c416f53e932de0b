# bpfvlog/errors.py
"""
Error Types for the Verifier Log Pipeline

The analysis pass itself never aborts: every unexpected input shape degrades
to "no information".  The exceptions in this module are the *internal*
signalling mechanism behind that contract (a sub-grammar raises, the line
parser catches and emits an unrecognized record), plus the errors raised at
the outer surfaces (configuration loading, CLI queries).

Architecture Overview:
─────────────────────
┌─────────────────────────────────────────────────────────────────────────────┐
│                          Error Hierarchy                                     │
├─────────────────────────────────────────────────────────────────────────────┤
│  VlogError (base)                                                           │
│  ├── LineParseError        - A line does not match a grammar production     │
│  │   ├── OperandParseError     - Operand text not recognized                │
│  │   └── InstructionParseError - Opcode recognized, body not                │
│  ├── ConfigError           - Invalid analysis configuration                 │
│  └── QueryError            - Invalid dependency query from a caller         │
└─────────────────────────────────────────────────────────────────────────────┘

Error Codes:
────────────
Each error has a code of the form VLOG-NNNN:
  - 1000-1999: Parse errors
  - 2000-2999: Simulation errors
  - 3000-3999: Query errors
  - 4000-4999: Configuration errors
  - 9000-9999: Internal errors
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, unique
from typing import Optional


@unique
class ErrorPhase(Enum):
    """Pipeline phase where the error occurred."""

    PARSE = "parse"
    SIMULATION = "simulation"
    QUERY = "query"
    CONFIG = "config"
    INTERNAL = "internal"


class ErrorCode:
    """
    Structured error code.

    Error codes follow the pattern ``VLOG-NNNN``; the number range encodes the
    phase (see the module docstring).
    """

    __slots__ = ("prefix", "number", "phase", "summary")

    def __init__(
        self,
        number: int,
        phase: ErrorPhase,
        summary: str = "",
        prefix: str = "VLOG",
    ) -> None:
        self.prefix = prefix
        self.number = number
        self.phase = phase
        self.summary = summary

    @property
    def code(self) -> str:
        """Get the full error code string."""
        return f"{self.prefix}-{self.number:04d}"

    def __str__(self) -> str:
        return self.code

    def __repr__(self) -> str:
        return f"ErrorCode({self.code!r}, {self.phase.name})"

    def __hash__(self) -> int:
        return hash((self.prefix, self.number))

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ErrorCode):
            return self.prefix == other.prefix and self.number == other.number
        if isinstance(other, str):
            return self.code == other
        return False


class VlogErrorCodes:
    """Predefined error codes."""

    # ═══════════════════════════════════════════════════════════════════════
    # PARSE ERRORS (1000-1999)
    # ═══════════════════════════════════════════════════════════════════════

    UNRECOGNIZED_LINE = ErrorCode(1000, ErrorPhase.PARSE, "line matches no production")
    UNKNOWN_OPERAND = ErrorCode(1001, ErrorPhase.PARSE, "operand not recognized")
    UNKNOWN_OPERATOR = ErrorCode(1002, ErrorPhase.PARSE, "operator not recognized")
    MISSING_JUMP_TARGET = ErrorCode(1003, ErrorPhase.PARSE, "jump target missing")
    UNSUPPORTED_OPCODE = ErrorCode(1004, ErrorPhase.PARSE, "opcode has no sub-grammar")
    MALFORMED_BODY = ErrorCode(1005, ErrorPhase.PARSE, "instruction body malformed")

    # ═══════════════════════════════════════════════════════════════════════
    # SIMULATION ERRORS (2000-2999)
    # ═══════════════════════════════════════════════════════════════════════

    UNBALANCED_EXIT = ErrorCode(2000, ErrorPhase.SIMULATION, "exit with empty call stack")

    # ═══════════════════════════════════════════════════════════════════════
    # QUERY ERRORS (3000-3999)
    # ═══════════════════════════════════════════════════════════════════════

    LINE_OUT_OF_RANGE = ErrorCode(3000, ErrorPhase.QUERY, "line index out of range")
    EMPTY_SLOT_ID = ErrorCode(3001, ErrorPhase.QUERY, "empty storage-location id")

    # ═══════════════════════════════════════════════════════════════════════
    # CONFIGURATION ERRORS (4000-4999)
    # ═══════════════════════════════════════════════════════════════════════

    UNKNOWN_CONFIG_KEY = ErrorCode(4000, ErrorPhase.CONFIG, "unknown configuration key")
    INVALID_CONFIG_VALUE = ErrorCode(4001, ErrorPhase.CONFIG, "invalid configuration value")
    UNREADABLE_CONFIG = ErrorCode(4002, ErrorPhase.CONFIG, "configuration file unreadable")

    # ═══════════════════════════════════════════════════════════════════════
    # INTERNAL ERRORS (9000-9999)
    # ═══════════════════════════════════════════════════════════════════════

    INTERNAL_ERROR = ErrorCode(9000, ErrorPhase.INTERNAL, "internal error")


@dataclass(frozen=True, slots=True)
class LineSpan:
    """Position of an error inside the raw log: line index and column."""

    idx: int = -1
    column: int = 0

    def __str__(self) -> str:
        if self.idx < 0:
            return "<log>"
        return f"line {self.idx}:{self.column}"


class VlogError(Exception):
    """
    Base exception for all bpfvlog errors.

    Carries a structured code and an optional position inside the log.
    """

    default_code: ErrorCode = VlogErrorCodes.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        span: Optional[LineSpan] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.span = span or LineSpan()
        self.cause = cause

    @property
    def phase(self) -> ErrorPhase:
        return self.code.phase

    def __str__(self) -> str:
        loc = f" ({self.span})" if self.span.idx >= 0 else ""
        return f"[{self.code}] {self.message}{loc}"


class LineParseError(VlogError):
    """A line (or part of it) does not match the grammar being tried."""

    default_code = VlogErrorCodes.UNRECOGNIZED_LINE

    def __init__(
        self,
        message: str,
        text: str = "",
        code: Optional[ErrorCode] = None,
        span: Optional[LineSpan] = None,
    ) -> None:
        super().__init__(message, code=code, span=span)
        self.text = text


class OperandParseError(LineParseError):
    """Operand text is not a register, dereference or immediate."""

    default_code = VlogErrorCodes.UNKNOWN_OPERAND


class InstructionParseError(LineParseError):
    """The opcode was decoded but the instruction body did not parse."""

    default_code = VlogErrorCodes.MALFORMED_BODY


class ConfigError(VlogError):
    """Invalid analysis configuration."""

    default_code = VlogErrorCodes.INVALID_CONFIG_VALUE


class QueryError(VlogError):
    """A caller asked for something the frozen results cannot answer."""

    default_code = VlogErrorCodes.LINE_OUT_OF_RANGE


__all__ = [
    "ErrorPhase",
    "ErrorCode",
    "VlogErrorCodes",
    "LineSpan",
    "VlogError",
    "LineParseError",
    "OperandParseError",
    "InstructionParseError",
    "ConfigError",
    "QueryError",
]
