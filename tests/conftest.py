# tests/conftest.py
"""
Shared verifier-log samples for the bpfvlog test-suite.

Samples are plain strings; ``log_lines`` splits them the same way for every
test (the leading newline of a triple-quoted literal is dropped, so the first
log line has index 0).
"""

from typing import List

from bpfvlog.analysis import VerifierLogState, process_raw_lines
from bpfvlog.config import AnalysisConfig


def log_lines(text: str) -> List[str]:
    return text.lstrip("\n").splitlines()


def analyze(text: str, **config) -> VerifierLogState:
    return process_raw_lines(log_lines(text), AnalysisConfig(**config))


# ═══════════════════════════════════════════════════════════════════════
#  Single lines
# ═══════════════════════════════════════════════════════════════════════

MOV_IMM_LINE = "0: (b7) r2 = 1                        ; R2_w=1"
STACK_STORE_LINE = "1: (7b) *(u64 *)(r10 -24) = r2        ; R2_w=1 R10=fp0 fp-24_w=1"
STACK_LOAD_LINE = "2: (79) r3 = *(u64 *)(r10 -24)        ; R3_w=1 R10=fp0 fp-24=1"
MAP_STORE_LINE = "1649: (63) *(u32 *)(r2 +16) = r1      ; frame2: R1_w=0xfffffff9 R2=fp[1]-64"
ADD_REG_LINE = "528: (0f) r1 += r2"
ALU32_LINE = "2995: (b4) w0 = 0                     ; frame1: R0_w=0"
LD_IMM64_LINE = "96: (18) r1 = 0xffff888370cf0a00      ; frame1: R1_w=map_ptr(map=bpfj_log_map,ks=0,vs=0)"
XOR_NEG_IMM_LINE = "1641: (a7) r1 ^= -1                   ; frame2: R1_w=scalar()"
COND_JMP_LINE = "196: (55) if r7 != 0x258 goto pc+4    ; R7=300"
COND_JMP_REGS_LINE = "10: (3d) if r3 >= r2 goto pc+7"
COND_JMP_TRAILING_LINE = "99: (55) if r0 != 0x0 goto pc+13 113: R0_w=ptr_node_data(non_own_ref,off=16) R6=scalar()"
JSET_LINE = "12: (45) if r1 & 0x4 goto pc+2"
GOTO_LINE = "1650: (05) goto pc+27"
GOTOL_LINE = "40: (06) gotol pc+1000"
MAY_GOTO_LINE = "7: (e5) may_goto pc+2"
GOTO_OR_NOP_LINE = "8: (e5) goto_or_nop pc+3"
HELPER_CALL_LINE = "100: (85) call bpf_ringbuf_reserve#131"
KFUNC_CALL_LINE = "3: (85) call bpf_obj_new_impl#54651 ; R0_w=ptr_or_null_node_data(id=2,ref_obj_id=2) refs=2"
SUBPROG_CALL_LINE = "2835: (85) call pc+140"
EXIT_LINE = "3028: (95) exit"
ADDR_SPACE_CAST_LINE = "3172: (bf) r1 = addr_space_cast(r8, 0, 1) ; frame1: R1_w=arena R8=scalar()"
BAD_BODY_LINE = "5: (bf) r1 = map[id:12]"
GLOBAL_FUNC_LINE = "Func#123 ('my_global_func') is global and assumed valid."
BARE_STATE_LINE = "101: frame1: R0=ringbuf_mem_or_null(id=5,ref_obj_id=5,sz=196) refs=5"
SOURCE_ANNOTATION_LINE = "; for (int i = 0; i < STACK_MAX_LEN; ++i) { @ pyperf.h:313"
EMPTY_SOURCE_LINE = "; @ prog.c:0"


# ═══════════════════════════════════════════════════════════════════════
#  Whole logs
# ═══════════════════════════════════════════════════════════════════════

SPILL_LOG = """
0: (b7) r2 = 1                        ; R2_w=1
1: (7b) *(u64 *)(r10 -24) = r2        ; R2_w=1 R10=fp0 fp-24_w=1
2: (79) r3 = *(u64 *)(r10 -24)        ; R3_w=1 R10=fp0 fp-24=1
"""

POINTER_ARITH_LOG = """
0: (bf) r1 = r10
1: (07) r1 += -8
2: (85) call bpf_map_lookup_elem#1
"""

SUBPROGRAM_LOG = """
0: (b7) r6 = 42                       ; R6_w=42
1: (b7) r1 = 7                        ; R1_w=7
2: (85) call pc+3
3: (bf) r0 = r1                       ; R0_w=7 R1=7
4: (b7) r6 = 1                        ; R6_w=1
5: (95) exit
6: (bf) r7 = r0                       ; R0=7 R7_w=7
"""

NESTED_CALLS_LOG = """
0: (85) call pc+1
2: (85) call pc+2
5: (b7) r0 = 1                        ; R0_w=1
6: (95) exit
3: (95) exit
1: (95) exit
"""

UNBALANCED_EXIT_LOG = """
0: (b7) r0 = 0                        ; R0_w=0
1: (95) exit
2: (95) exit
"""

LOOP_SOURCE_LOG = """
; for (int i = 0; i < STACK_MAX_LEN; ++i) { @ pyperf.h:313
195: (07) r7 += 150                   ; R7=300
196: (55) if r7 != 0x258 goto pc+4    ; R7=300
; for (int i = 0; i < STACK_MAX_LEN; ++i) { @ pyperf.h:313
195: (07) r7 += 150                   ; R7_w=150
196: (55) if r7 != 0x258 goto pc+4    ; R7_w=150
"""

MULTI_FILE_SOURCE_LOG = """
; int x = 0; @ prog.c:10
0: (b7) r1 = 0                        ; R1_w=0
; x += bpf_get_prandom_u32(); @ prog.c:12
1: (85) call bpf_get_prandom_u32#7
; @ prog.c:0
2: (bf) r6 = r0
; return clamp(x); @ util.h:3
3: (95) exit
; int x = 0; @ prog.c:10
4: (b7) r1 = 0                        ; R1_w=0
"""

GLOBAL_FUNC_LOG = """
0: (b7) r2 = 1                        ; R2_w=1
1: (85) call pc+10
Func#123 ('my_global_func') is global and assumed valid.
2: (bf) r0 = r1                       ; R0_w=ctx() R1=ctx()
"""

BARE_STATE_LOG = """
96: (18) r1 = 0xffff888370cf0a00      ; frame1: R1_w=map_ptr(map=bpfj_log_map,ks=0,vs=0)
98: (b7) r2 = 196                     ; frame1: R2_w=196
99: (b7) r3 = 0                       ; frame1: R3_w=0
100: (85) call bpf_ringbuf_reserve#131
101: frame1: R0=ringbuf_mem_or_null(id=5,ref_obj_id=5,sz=196) refs=5
101: (bf) r7 = r0                     ; frame1: R0=ringbuf_mem_or_null(id=5,ref_obj_id=5,sz=196) R7_w=ringbuf_mem_or_null(id=5,ref_obj_id=5,sz=196) refs=5
"""

RINGBUF_VALUE = "ringbuf_mem_or_null(id=5,ref_obj_id=5,sz=196)"

STACK_SLOT_LOG = """
3172: (bf) r1 = addr_space_cast(r8, 0, 1) ; frame1: R1_w=arena R8=scalar()
3173: (7b) *(u64 *)(r10 -8) = r1 ; frame1: R1_w=arena R10=fp0 fp-8_w=arena
3314: (79) r1 = *(u64 *)(r10 -8) ; frame1: R1_w=arena R10=fp0 fp-8=arena
3315: (0f) r2 += r1
"""

MIXED_LOG = """
func#0 @0
0: R1=ctx() R10=fp0
; int handler(void *ctx) @ prog.bpf.c:20
0: (b7) r6 = 0                        ; R6_w=0
1: (bf) r1 = r6                       ; R1_w=0 R6_w=0
2: (bf) r1 = map[id:12]
processed 3 insns (limit 1000000) max_states_per_insn 0 total_states 0 peak_states 0 mark_read 0
"""

PARENT_STACK_LOG = """
2829: (7b) *(u64 *)(r10 -8) = r1      ; R1_w=0 R10=fp0 fp-8_w=0
2830: (bf) r3 = r10                   ; R3_w=fp0 R10=fp0
2831: (07) r3 += -8                   ; R3_w=fp-8
2832: (bf) r1 = r6                    ; R1_w=scalar(id=5800,umin=1) R6_w=scalar(id=5800,umin=1)
2833: (18) r2 = 0xdeadbeef            ; R2=0xdeadbeef
2835: (85) call pc+140
2976: frame1: R1=scalar(id=5800,umin=1) R2=0xdeadbeef R3=fp[0]-8 R10=fp0
2992: (79) r6 = *(u64 *)(r3 +0)       ; frame1: R6_w=0 R3=fp[0]-8
2993: (07) r6 += 13                   ; frame1: R6_w=13
2994: (7b) *(u64 *)(r3 +0) = r6       ; frame1: R3=fp[0]-8 R6=13
2995: (b4) w0 = 0                     ; frame1: R0_w=0
3028: (95) exit
3050: (79) r7 = *(u64 *)(r10 -8)      ; fp-8=13 R7_w=13
"""

NESTED_STACK_LOG = """
0: (7b) *(u64 *)(r10 -64) = r9        ; R9=42 R10=fp0 fp-64_w=42
1: (bf) r2 = r10                      ; R2_w=fp0
2: (07) r2 += -64                     ; R2_w=fp-64
3: (85) call pc+5
9: (85) call pc+9
19: (b7) r1 = 7                       ; frame2: R1_w=7
20: (7b) *(u64 *)(r2 +0) = r1         ; frame2: R1=7 R2=fp[0]-64
21: (95) exit
10: (95) exit
"""
