# tests/test_state_exprs.py
"""
Tests for the state-expression sub-parser: ``R2_w=1 R10=fp0 ...`` → StateExpr.
"""

from bpfvlog.state_exprs import (
    StateExpr,
    normalize_key,
    parse_bare_state_exprs,
    parse_state_expr,
    parse_state_exprs,
)


class TestNormalizeKey:

    def test_strips_written_suffix(self):
        assert normalize_key("R2_w") == "r2"

    def test_lower_cases(self):
        assert normalize_key("R10") == "r10"

    def test_stack_slot_unchanged(self):
        assert normalize_key("fp-24_w") == "fp-24"

    def test_bare_frame_base(self):
        assert normalize_key("fp0") == "fp-0"


class TestParseStateExprs:

    def test_three_expressions(self):
        exprs, rest = parse_state_exprs("R2_w=1 R10=fp0 fp-24_w=1")
        assert [e.id for e in exprs] == ["r2", "r10", "fp-24"]
        assert [e.value for e in exprs] == ["1", "fp-0", "1"]
        assert rest == ""

    def test_raw_key_kept(self):
        exprs, _ = parse_state_exprs("R2_w=1")
        assert exprs[0] == StateExpr(id="r2", value="1", raw_key="R2_w", frame=None)

    def test_marker_is_optional_by_default(self):
        with_marker, _ = parse_state_exprs("; R0=1")
        without, _ = parse_state_exprs("R0=1")
        assert with_marker == without

    def test_marker_required(self):
        exprs, rest = parse_state_exprs("R0=1", require_marker=True)
        assert exprs == []
        assert rest == "R0=1"

    def test_frame_prefix(self):
        exprs, _ = parse_state_exprs("; frame1: R1_w=arena R8=scalar()")
        assert [e.id for e in exprs] == ["r1", "r8"]
        assert all(e.frame == 1 for e in exprs)

    def test_no_frame_is_none(self):
        exprs, _ = parse_state_exprs("; R1_w=arena")
        assert exprs[0].frame is None

    def test_value_with_spaces_inside_parens(self):
        text = "R1_w=scalar(smin=0,var_off=(0x0; 0xff)) R6=1"
        exprs, rest = parse_state_exprs(text)
        assert exprs[0].value == "scalar(smin=0,var_off=(0x0; 0xff))"
        assert exprs[1].id == "r6"
        assert rest == ""

    def test_multiple_spaces_between_exprs(self):
        exprs, _ = parse_state_exprs("R1=1    R2=2")
        assert [e.id for e in exprs] == ["r1", "r2"]

    def test_stops_at_non_expression(self):
        exprs, rest = parse_state_exprs("R1=1 trailing words")
        assert len(exprs) == 1
        assert rest == "trailing words"

    def test_empty_input(self):
        assert parse_state_exprs("") == ([], "")

    def test_empty_value(self):
        expr, rest = parse_state_expr("refs= R1=2")
        assert expr.id == "refs"
        assert expr.value == ""
        assert rest == " R1=2"


class TestParseBareStateExprs:

    def test_pc_frame_and_exprs(self):
        pc, exprs, rest = parse_bare_state_exprs(
            "101: frame1: R0=ringbuf_mem_or_null(id=5,ref_obj_id=5,sz=196) refs=5"
        )
        assert pc == 101
        assert [e.id for e in exprs] == ["r0", "refs"]
        assert exprs[0].frame == 1
        assert rest == ""

    def test_without_frame(self):
        pc, exprs, _ = parse_bare_state_exprs("0: R1=ctx() R10=fp0")
        assert pc == 0
        assert [e.value for e in exprs] == ["ctx()", "fp-0"]

    def test_no_pc(self):
        pc, exprs, rest = parse_bare_state_exprs("R1=ctx()")
        assert pc is None
        assert exprs == []
        assert rest == "R1=ctx()"

    def test_instruction_line_yields_no_exprs(self):
        _, exprs, _ = parse_bare_state_exprs("0: (b7) r2 = 1")
        assert exprs == []
