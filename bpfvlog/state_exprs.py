"""
bpfvlog/state_exprs.py
══════════════════════

Parser for the ``key=value`` facts the verifier prints after an instruction::

    0: (b7) r2 = 1                        ; R2_w=1
    1: (7b) *(u64 *)(r10 -24) = r2        ; R2_w=1 R10=fp0 fp-24_w=1
    101: frame1: R0=ringbuf_mem_or_null(id=5,ref_obj_id=5,sz=196) refs=5

Values may contain spaces inside parentheses
(``var_off=(0x0; 0xff)``), so a value only ends at a space at parenthesis
depth zero.  Keys are normalized into storage-location ids: the ``_w``
("written") suffix is dropped and the key is lower-cased, so ``R2_w`` names
the slot ``r2``.

Both entry points are stateless and never raise; unparseable input simply
yields no expressions and the unconsumed text.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from bpfvlog.instructions import canonical_slot_id

RE_PROGRAM_COUNTER = re.compile(r"^([0-9]+):")
RE_FRAME_ID = re.compile(r"^frame([0-9]+): ")
RE_STATE_KEY = re.compile(r"^([^\s=]+)=")
RE_WHITESPACE = re.compile(r"^\s+")

STATE_EXPRS_MARKER = "; "
WRITTEN_SUFFIX = "_w"


@dataclass(frozen=True, slots=True)
class StateExpr:
    """One verifier-reported fact about a storage location."""

    id: str
    value: str
    raw_key: str
    frame: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "value": self.value,
            "raw_key": self.raw_key,
            "frame": self.frame,
        }


def consume_spaces(text: str) -> str:
    m = RE_WHITESPACE.match(text)
    return text[m.end():] if m else text


def normalize_key(key: str) -> str:
    """``R2_w`` -> ``r2``; ``fp0`` -> ``fp-0``."""
    slot = key[: -len(WRITTEN_SUFFIX)] if key.endswith(WRITTEN_SUFFIX) else key
    return canonical_slot_id(slot.lower())


def _value_end(text: str, start: int) -> int:
    depth = 0
    i = start
    while i < len(text):
        ch = text[i]
        if ch == "(":
            depth += 1
        elif ch == ")" and depth > 0:
            depth -= 1
        elif ch == " " and depth == 0:
            break
        i += 1
    return i


def parse_state_expr(
    text: str, frame: Optional[int] = None
) -> Optional[Tuple[StateExpr, str]]:
    """Parse a single ``key=value`` token at the start of *text*."""
    m = RE_STATE_KEY.match(text)
    if m is None:
        return None
    key = m.group(1)
    end = _value_end(text, m.end())
    value = canonical_slot_id(text[m.end():end])
    expr = StateExpr(id=normalize_key(key), value=value, raw_key=key, frame=frame)
    return expr, text[end:]


def _consume_frame(text: str) -> Tuple[Optional[int], str]:
    m = RE_FRAME_ID.match(text)
    if m is None:
        return None, text
    return int(m.group(1)), text[m.end():]


def _consume_exprs(text: str, frame: Optional[int]) -> Tuple[List[StateExpr], str]:
    exprs: List[StateExpr] = []
    rest = text
    while rest:
        parsed = parse_state_expr(rest, frame)
        if parsed is None:
            break
        expr, rest = parsed
        rest = consume_spaces(rest)
        exprs.append(expr)
    return exprs, rest


def parse_state_exprs(
    text: str, require_marker: bool = False
) -> Tuple[List[StateExpr], str]:
    """Parse a block of state expressions.

    Parameters
    ----------
    text : str
        Text starting at the (optional) ``; `` marker.
    require_marker : bool
        When true, text without the leading ``; `` yields nothing.  The line
        parser sets this for the tail of instruction lines, where unmarked
        text (``goto pc+6 71: R0=...``) is not a state block.

    Returns
    -------
    (exprs, rest)
        The parsed expressions, in order, and the unconsumed remainder.
    """
    rest = text
    if rest.startswith(STATE_EXPRS_MARKER):
        rest = rest[len(STATE_EXPRS_MARKER):]
    elif require_marker:
        return [], text
    frame, rest = _consume_frame(rest)
    return _consume_exprs(rest, frame)


def parse_bare_state_exprs(text: str) -> Tuple[Optional[int], List[StateExpr], str]:
    """Parse ``<pc>: [frame<n>: ]<exprs>`` lines that carry no instruction.

    Returns ``(pc, exprs, rest)``; *pc* is ``None`` when the line does not
    start with a program counter, in which case no expressions are parsed.
    """
    stripped = consume_spaces(text)
    m = RE_PROGRAM_COUNTER.match(stripped)
    if m is None:
        return None, [], text
    pc = int(m.group(1))
    rest = consume_spaces(stripped[m.end():])
    frame, rest = _consume_frame(rest)
    exprs, rest = _consume_exprs(rest, frame)
    return pc, exprs, rest


__all__ = [
    "StateExpr",
    "consume_spaces",
    "normalize_key",
    "parse_state_expr",
    "parse_state_exprs",
    "parse_bare_state_exprs",
]
