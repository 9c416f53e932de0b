# tests/test_export.py
"""
Tests for the S-expression export of pass results.
"""

from bpfvlog.export import (
    dumps_lines,
    dumps_source_map,
    dumps_states,
    line_to_sexp,
    loads,
)
from bpfvlog.line_parser import parse_line
from tests.conftest import (
    GLOBAL_FUNC_LINE,
    LOOP_SOURCE_LOG,
    MIXED_LOG,
    MOV_IMM_LINE,
    SPILL_LOG,
    analyze,
)


def _keyword(form, name):
    return form[form.index(f":{name}") + 1]


class TestLineForms:

    def test_instruction(self):
        form = loads(dumps_lines([parse_line(MOV_IMM_LINE, 0)]))
        assert form[:3] == ["line", 0, "instruction"]
        assert _keyword(form, "pc") == 0
        assert _keyword(form, "ins") == "ALU"
        assert _keyword(form, "reads") == []
        assert _keyword(form, "writes") == ["r2"]
        assert _keyword(form, "exprs") == [["r2", "1"]]
        assert _keyword(form, "raw") == MOV_IMM_LINE

    def test_jump_uses_jump_kind(self):
        form = loads(dumps_lines([parse_line("3028: (95) exit", 4)]))
        assert _keyword(form, "ins") == "EXIT"

    def test_known_message(self):
        form = loads(dumps_lines([parse_line(GLOBAL_FUNC_LINE, 2)]))
        assert form[2] == "known-message"
        assert _keyword(form, "global-func") == "my_global_func"
        assert _keyword(form, "func-id") == 123

    def test_ignored_source(self):
        form = line_to_sexp(parse_line("; @ prog.c:0", 0))
        assert str(form[-1]) == ":ignore"

    def test_one_form_per_line(self):
        state = analyze(MIXED_LOG)
        text = dumps_lines(state.lines)
        forms = [loads(chunk) for chunk in text.splitlines()]
        assert [f[2] for f in forms] == [
            "unrecognized",
            "known-message",
            "source",
            "instruction",
            "instruction",
            "unrecognized",
            "unrecognized",
        ]


class TestStateForms:

    def test_slots(self):
        state = analyze(SPILL_LOG)
        form = loads(dumps_states(state.states[1:2]))
        assert form[:2] == ["state", 1]
        assert _keyword(form, "frame") == 0
        slots = {entry[0]: entry[1:] for entry in _keyword(form, "slots")}
        assert slots["fp-24"] == ["1", "WRITE", 1]
        assert slots["r1"] == ["ctx()", "NONE"]


class TestSourceMapForm:

    def test_entries(self):
        form = loads(dumps_source_map(analyze(LOOP_SOURCE_LOG).source_map))
        assert form[0] == "source-map"
        lines = _keyword(form, "lines")
        assert lines == [["pyperf.h:313", "for (int i = 0; i < STACK_MAX_LEN; ++i) {", [1, 2, 4, 5]]]
        assert _keyword(form, "files") == [["pyperf.h", 313, 313]]
