# tests/test_simulator.py
"""
Tests for the per-line machine-state replay, including call frames.
"""

import logging

import pytest

from bpfvlog.line_parser import parse_line
from bpfvlog.simulator import (
    Effect,
    MachineState,
    SlotValue,
    StateSimulator,
    frame_slot_id,
    initial_state,
    simulate,
    split_stack_slot,
)
from tests.conftest import (
    NESTED_CALLS_LOG,
    NESTED_STACK_LOG,
    PARENT_STACK_LOG,
    SPILL_LOG,
    SUBPROGRAM_LOG,
    UNBALANCED_EXIT_LOG,
    log_lines,
)


def _run(text):
    lines = [parse_line(raw, idx) for idx, raw in enumerate(log_lines(text))]
    sim = StateSimulator()
    return sim, sim.run(lines)


class TestInitialState:

    def test_registers(self):
        state = initial_state()
        assert state.value_of("r1") == "ctx()"
        assert state.value_of("r10") == "fp-0"
        for i in (0, 2, 3, 4, 5, 6, 7, 8, 9):
            assert state.value_of(f"r{i}") == ""
        assert dict(state.last_write) == {}
        assert state.frame == 0

    def test_no_effects(self):
        assert initial_state().touched() == {}

    def test_custom_values(self):
        state = StateSimulator(context_value="ctx(off=0)", frame_base_value="fp").initial(3, 7)
        assert state.value_of("r1") == "ctx(off=0)"
        assert state.value_of("r10") == "fp"
        assert (state.idx, state.pc) == (3, 7)

    def test_unknown_slot(self):
        state = initial_state()
        assert state.value_of("fp-8") is None
        assert state.effect_of("fp-8") is None


class TestStraightLine:

    def test_one_state_per_line(self):
        _, states = _run(SPILL_LOG)
        assert len(states) == 3
        assert [s.idx for s in states] == [0, 1, 2]
        assert [s.pc for s in states] == [0, 1, 2]

    def test_write_records_value_and_writer(self):
        _, states = _run(SPILL_LOG)
        assert states[0].values["r2"] == SlotValue("1", Effect.WRITE)
        assert states[0].last_write["r2"] == 0

    def test_stack_spill(self):
        _, states = _run(SPILL_LOG)
        s1 = states[1]
        assert s1.values["fp-24"] == SlotValue("1", Effect.WRITE)
        assert s1.effect_of("r10") is Effect.READ
        assert s1.effect_of("r2") is Effect.READ
        assert s1.last_write["fp-24"] == 1

    def test_effects_reset_between_lines(self):
        _, states = _run(SPILL_LOG)
        assert states[2].effect_of("r2") is Effect.NONE
        assert states[2].value_of("r2") == "1"

    def test_update_effect(self):
        lines = [parse_line("0: (07) r1 += 8", 0)]
        state = simulate(lines)[0]
        assert state.effect_of("r1") is Effect.UPDATE
        assert state.last_write["r1"] == 0

    def test_write_without_report_clears_value(self):
        lines = [parse_line("0: (bf) r3 = r1", 0)]
        state = simulate(lines)[0]
        assert state.values["r3"] == SlotValue("", Effect.WRITE)
        assert state.values["r1"] == SlotValue("ctx()", Effect.READ)

    def test_non_instruction_line_copies_state(self):
        lines = [
            parse_line("0: (b7) r2 = 1 ; R2_w=1", 0),
            parse_line("some verifier chatter", 1),
        ]
        states = simulate(lines)
        assert states[1].value_of("r2") == "1"
        assert states[1].touched() == {}
        assert states[1].idx == 0
        assert dict(states[1].last_write) == {"r2": 0}

    def test_reported_slot_without_effect(self):
        lines = [parse_line("0: (05) goto pc+1 ; refs=2", 0)]
        state = simulate(lines)[0]
        assert state.values["refs"] == SlotValue("2", Effect.NONE)

    def test_states_are_read_only(self):
        _, states = _run(SPILL_LOG)
        with pytest.raises(TypeError):
            states[0].values["r2"] = SlotValue("x")


class TestCallFrames:

    def test_frame_depths(self):
        _, states = _run(SUBPROGRAM_LOG)
        assert [s.frame for s in states] == [0, 0, 1, 1, 1, 0, 0]

    def test_callee_entry(self):
        _, states = _run(SUBPROGRAM_LOG)
        entry = states[2]
        assert entry.values["r1"] == SlotValue("7", Effect.READ)
        assert entry.effect_of("r2") is Effect.READ
        assert entry.values["r6"] == SlotValue("", Effect.WRITE)
        assert entry.values["r0"] == SlotValue("", Effect.WRITE)
        assert entry.values["r10"] == SlotValue("fp-0", Effect.NONE)
        assert entry.last_write["r1"] == 1
        assert "r6" not in entry.last_write

    def test_return_restores_caller(self):
        _, states = _run(SUBPROGRAM_LOG)
        ret = states[5]
        assert ret.values["r6"] == SlotValue("42", Effect.NONE)
        assert ret.values["r0"] == SlotValue("7", Effect.NONE)
        assert ret.last_write["r0"] == 3
        assert ret.last_write["r6"] == 0

    def test_return_scratches_arguments(self):
        _, states = _run(SUBPROGRAM_LOG)
        ret = states[5]
        for reg in ("r1", "r2", "r3", "r4", "r5"):
            assert ret.values[reg] == SlotValue("", Effect.WRITE)
            assert reg not in ret.last_write

    def test_nested_calls(self):
        sim, states = _run(NESTED_CALLS_LOG)
        assert [s.frame for s in states] == [1, 2, 2, 1, 0, 0]
        assert states[4].value_of("r0") == "1"
        assert sim.unbalanced_exits == 1

    def test_depth_cleared_after_run(self):
        sim, _ = _run("0: (85) call pc+1\n1: (b7) r0 = 0")
        assert sim.depth == 0

    def test_unbalanced_exit_yields_fresh_frame(self):
        sim, states = _run(UNBALANCED_EXIT_LOG)
        fresh = states[1]
        assert isinstance(fresh, MachineState)
        assert (fresh.idx, fresh.pc, fresh.frame) == (1, 1, 0)
        assert fresh.value_of("r1") == "ctx()"
        assert fresh.value_of("r0") == ""
        assert dict(fresh.last_write) == {}
        assert sim.unbalanced_exits == 2

    def test_unbalanced_exit_is_logged_with_code(self, caplog):
        with caplog.at_level(logging.DEBUG, logger="bpfvlog"):
            _run(UNBALANCED_EXIT_LOG)
        assert any("VLOG-2000" in r.getMessage() for r in caplog.records)

    def test_reported_frame_is_ignored(self):
        lines = [parse_line("0: (b4) w0 = 0 ; frame3: R0_w=0", 0)]
        assert simulate(lines)[0].frame == 0

    def test_step_is_pure_for_plain_lines(self):
        sim = StateSimulator()
        prev = sim.initial()
        line = parse_line("0: (b7) r2 = 1 ; R2_w=1", 0)
        assert sim.step(prev, line).to_dict() == sim.step(prev, line).to_dict()
        assert prev.value_of("r2") == ""


class TestPreviousValue:

    def test_update_keeps_previous_value(self):
        lines = [
            parse_line("0: (bf) r1 = r10 ; R1_w=fp0 R10=fp0", 0),
            parse_line("1: (07) r1 += -8 ; R1_w=fp-8", 1),
        ]
        state = simulate(lines)[1]
        assert state.values["r1"] == SlotValue("fp-8", Effect.UPDATE, "fp-0")
        assert state.values["r1"].to_dict() == {
            "value": "fp-8",
            "effect": "UPDATE",
            "prev_value": "fp-0",
        }

    def test_helper_call_arguments(self):
        lines = [
            parse_line("0: (bf) r1 = r10 ; R1_w=fp0 R10=fp0", 0),
            parse_line("1: (b7) r2 = 16 ; R2_w=16", 1),
            parse_line("2: (85) call bpf_probe_read_user#112", 2),
        ]
        call = simulate(lines)[2]
        assert call.values["r1"] == SlotValue("", Effect.UPDATE, "fp-0")
        assert call.values["r2"].prev_value == "16"
        assert call.values["r4"].prev_value is None
        assert call.values["r0"] == SlotValue("", Effect.WRITE)

    def test_cleared_on_next_line(self):
        lines = [
            parse_line("0: (07) r1 += 8 ; R1_w=ctx(off=8)", 0),
            parse_line("1: (b7) r2 = 0 ; R2_w=0", 1),
        ]
        assert simulate(lines)[1].values["r1"] == SlotValue("ctx(off=8)")

    def test_write_has_no_previous_value(self):
        _, states = _run(SPILL_LOG)
        assert states[0].values["r2"].prev_value is None
        assert "prev_value" not in states[0].values["r2"].to_dict()


class TestStackPointers:

    def test_split_stack_slot(self):
        assert split_stack_slot("fp-8") == (None, -8)
        assert split_stack_slot("fp[1]-64") == (1, -64)
        assert split_stack_slot("fp-0") == (None, 0)
        assert split_stack_slot("r1") is None
        assert split_stack_slot("ctx()") is None

    def test_frame_slot_id(self):
        assert frame_slot_id(0, -8, 0) == "fp-8"
        assert frame_slot_id(0, -8, 1) == "fp[0]-8"
        assert frame_slot_id(1, -64, 2) == "fp[1]-64"

    def test_store_and_load_through_pointer(self):
        text = """
0: (bf) r1 = r10                      ; R1_w=fp0 R10=fp0
1: (07) r1 += -16                     ; R1_w=fp-16
2: (7b) *(u64 *)(r1 -8) = r2          ; R1=fp-16 R2=5
3: (79) r3 = *(u64 *)(r1 -8)
"""
        _, states = _run(text)
        assert states[2].values["fp-24"] == SlotValue("5", Effect.WRITE)
        assert states[2].last_write["fp-24"] == 2
        assert states[3].values["fp-24"] == SlotValue("5", Effect.READ)
        assert states[3].values["r3"] == SlotValue("5", Effect.WRITE)

    def test_non_stack_pointer_stays_generic(self):
        lines = [parse_line("0: (7b) *(u64 *)(r6 +0) = r1", 0)]
        state = simulate(lines)[0]
        assert state.effect_of("MEM") is Effect.WRITE
        assert [k for k in state.values if k.startswith("fp")] == []


class TestParentStackSlots:

    def test_caller_slots_visible_in_callee(self):
        _, states = _run(PARENT_STACK_LOG)
        entry = states[5]
        assert entry.frame == 1
        assert entry.values["fp[0]-8"] == SlotValue("0")
        assert entry.last_write["fp[0]-8"] == 0
        assert "fp-8" not in entry.values

    def test_callee_reads_and_writes_parent_slot(self):
        _, states = _run(PARENT_STACK_LOG)
        assert states[7].values["fp[0]-8"] == SlotValue("0", Effect.READ)
        assert states[9].values["fp[0]-8"] == SlotValue("13", Effect.WRITE)
        assert states[9].last_write["fp[0]-8"] == 9

    def test_write_copied_back_on_exit(self):
        _, states = _run(PARENT_STACK_LOG)
        ret = states[11]
        assert ret.frame == 0
        assert ret.values["fp-8"] == SlotValue("13")
        assert ret.last_write["fp-8"] == 9
        assert "fp[0]-8" not in ret.values
        assert states[12].values["fp-8"] == SlotValue("13", Effect.READ)

    def test_nested_frames(self):
        _, states = _run(NESTED_STACK_LOG)
        assert [s.frame for s in states] == [0, 0, 0, 1, 2, 2, 2, 1, 0]
        assert states[4].values["fp[0]-64"] == SlotValue("42")
        assert states[4].last_write["fp[0]-64"] == 0
        assert states[6].values["fp[0]-64"] == SlotValue("7", Effect.WRITE)
        assert states[7].values["fp[0]-64"] == SlotValue("7")
        assert states[7].last_write["fp[0]-64"] == 6
        assert states[8].values["fp-64"] == SlotValue("7")
        assert states[8].last_write["fp-64"] == 6
