"""
bpfvlog/source_map.py
═════════════════════

Association between source-code annotations and log lines.

When a program is built with BTF line info the verifier interleaves
annotations such as::

    ; for (int i = 0; i < STACK_MAX_LEN; ++i) { @ pyperf.h:313
    195: (07) r7 += 150                   ; R7=300
    196: (55) if r7 != 0x258 goto pc+4    ; R7=300

Every instruction line after an annotation, up to the next annotation,
belongs to that source line.  The same source line may be announced many
times (loops, inlining); its records are deduplicated by ``file:line`` and
the log lines of all occurrences are merged.

``SourceMapBuilder`` accumulates during the single forward pass and
``SourceMap`` is the frozen result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Set, Tuple

from bpfvlog.line_parser import InstructionLine, ParsedLine, SourceLine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceMap:
    """Read-only two-way mapping between source ids and log line indices."""

    source_lines: Mapping[str, SourceLine] = field(
        default_factory=lambda: MappingProxyType({})
    )
    log_line_to_source: Mapping[int, str] = field(
        default_factory=lambda: MappingProxyType({})
    )
    source_to_log_lines: Mapping[str, FrozenSet[int]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    file_range: Mapping[str, Tuple[int, int]] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def source_line(self, source_id: str) -> Optional[SourceLine]:
        return self.source_lines.get(source_id)

    def log_lines_for(self, source_id: str) -> FrozenSet[int]:
        return self.source_to_log_lines.get(source_id, frozenset())

    def source_id_for(self, idx: int) -> Optional[str]:
        return self.log_line_to_source.get(idx)

    def range_for(self, file_name: str) -> Optional[Tuple[int, int]]:
        return self.file_range.get(file_name)

    def __len__(self) -> int:
        return len(self.source_lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_lines": {k: v.to_dict() for k, v in self.source_lines.items()},
            "log_line_to_source": {str(k): v for k, v in self.log_line_to_source.items()},
            "source_to_log_lines": {
                k: sorted(v) for k, v in self.source_to_log_lines.items()
            },
            "file_range": {k: list(v) for k, v in self.file_range.items()},
        }


class SourceMapBuilder:
    """Linear accumulator fed with every parsed line, in order."""

    def __init__(self) -> None:
        self._source_lines: Dict[str, SourceLine] = {}
        self._log_line_to_source: Dict[int, str] = {}
        self._source_to_log_lines: Dict[str, Set[int]] = {}
        self._file_range: Dict[str, List[int]] = {}
        self._current: Optional[SourceLine] = None
        self._pending: List[int] = []

    def add_source_line(self, line: SourceLine, idxs: List[int]) -> None:
        """Register *line* as the origin of log lines *idxs*."""
        if line.id not in self._source_lines:
            self._source_lines[line.id] = line
        idx_set = self._source_to_log_lines.setdefault(line.id, set())
        for idx in idxs:
            self._log_line_to_source[idx] = line.id
            idx_set.add(idx)

        if line.ignore:
            return
        rng = self._file_range.get(line.file_name)
        if rng is None:
            self._file_range[line.file_name] = [line.line_num, line.line_num]
        else:
            rng[0] = min(rng[0], line.line_num)
            rng[1] = max(rng[1], line.line_num)

    def _flush(self) -> None:
        if self._current is not None:
            self.add_source_line(self._current, self._pending)
        self._pending = []

    def feed(self, line: ParsedLine) -> None:
        if isinstance(line, SourceLine):
            self._flush()
            self._current = line
        elif isinstance(line, InstructionLine):
            self._pending.append(line.idx)

    def build(self) -> SourceMap:
        self._flush()
        self._current = None
        logger.debug(
            "source map: %d source lines across %d files",
            len(self._source_lines),
            len(self._file_range),
        )
        return SourceMap(
            source_lines=MappingProxyType(dict(self._source_lines)),
            log_line_to_source=MappingProxyType(dict(self._log_line_to_source)),
            source_to_log_lines=MappingProxyType(
                {k: frozenset(v) for k, v in self._source_to_log_lines.items()}
            ),
            file_range=MappingProxyType(
                {k: (v[0], v[1]) for k, v in self._file_range.items()}
            ),
        )


def build_source_map(lines) -> SourceMap:
    builder = SourceMapBuilder()
    for line in lines:
        builder.feed(line)
    return builder.build()


__all__ = ["SourceMap", "SourceMapBuilder", "build_source_map"]
