"""Detection of Aarch64 function epilogues by instruction analysis.

When the instruction pointer is inside an epilogue, fp and lr may already
have been restored while the stack pointer has not been adjusted yet. This
module walks forwards from the instruction pointer to the return or tail
call and derives an unwind rule from what the remaining epilogue does.
"""

from __future__ import annotations

import struct
from typing import Optional

from stackhop.aarch64.epilogue_instructions import (
    EpilogueInstructionKind,
    EpilogueStep,
    EpilogueTracker,
    analyze_instruction,
    instruction_adjusts_stack_pointer,
    is_auth_tail_call,
)
from stackhop.aarch64.unwind_rule import (
    NoOp,
    OffsetSp,
    OffsetSpAndRestoreFpAndLr,
    OffsetSpAndRestoreLr,
    UnwindRuleAarch64,
)

_AUTIBSP_BYTES = bytes([0xFF, 0x23, 0x03, 0xD5])
_U16_RANGE = range(0, 1 << 16)
_I16_RANGE = range(-(1 << 15), 1 << 15)


def _word_at(data: bytes, offset: int) -> int:
    (word,) = struct.unpack_from("<I", data, offset)
    return word


def _auth_tail_call_at(data: bytes, pc_offset: int, autibsp_offset: int) -> bool:
    """Whether an authenticated tail call starts ``autibsp_offset`` bytes before the pc."""
    if pc_offset < autibsp_offset:
        return False
    start = pc_offset - autibsp_offset
    return data[start : start + 4] == _AUTIBSP_BYTES and is_auth_tail_call(
        data[start + 4 :]
    )


def _analyze(data: bytes, pc_offset: int) -> Optional[EpilogueTracker]:
    """Return the tracker state at the return or tail call, or None if not in an epilogue."""
    if len(data) - pc_offset < 4:
        return None
    word = _word_at(data, pc_offset)
    kind, autibsp_offset = analyze_instruction(word)

    if kind is EpilogueInstructionKind.NOT_EXPECTED_IN_EPILOGUE:
        return None
    if kind is EpilogueInstructionKind.COULD_BE_TAIL_CALL:
        if autibsp_offset is not None and _auth_tail_call_at(
            data, pc_offset, autibsp_offset
        ):
            return EpilogueTracker()
        if pc_offset >= 4 and instruction_adjusts_stack_pointer(
            _word_at(data, pc_offset - 4)
        ):
            return EpilogueTracker()
        return None
    if kind is EpilogueInstructionKind.COULD_BE_PART_OF_AUTH_TAIL_CALL:
        if autibsp_offset is not None and _auth_tail_call_at(
            data, pc_offset, autibsp_offset
        ):
            return EpilogueTracker()
        return None

    tracker = EpilogueTracker()
    position = pc_offset
    while True:
        step = tracker.step_instruction(word)
        position += 4
        if step is EpilogueStep.NEED_MORE:
            if len(data) - position < 4:
                return None
            word = _word_at(data, position)
            continue
        if step is EpilogueStep.FOUND_BODY_INSTRUCTION:
            return None
        if step is EpilogueStep.COULD_BE_AUTH_TAIL_CALL and not is_auth_tail_call(
            data[position:]
        ):
            return None
        return tracker


def _trunc_div(value: int, divisor: int) -> int:
    quotient = abs(value) // divisor
    return -quotient if value < 0 else quotient


def _storage_offset_by_8(offset: int) -> Optional[int]:
    by_8 = _trunc_div(offset, 8)
    return by_8 if by_8 in _I16_RANGE else None


def unwind_rule_from_detected_epilogue(
    data: bytes, pc_offset: int
) -> UnwindRuleAarch64 | None:
    """Return an unwind rule if the instruction at ``pc_offset`` is inside an epilogue.

    ``data`` holds the function's code and ``pc_offset`` is the byte offset of
    the instruction pointer within it.
    """
    data = bytes(data)
    if not 0 <= pc_offset <= len(data):
        raise ValueError(f"pc offset {pc_offset} is outside of {len(data)} bytes of code")
    tracker = _analyze(data, pc_offset)
    if tracker is None:
        return None

    sp_offset_by_16 = _trunc_div(tracker.sp_offset, 16)
    if sp_offset_by_16 not in _U16_RANGE:
        return None
    fp_offset = tracker.fp_offset_from_initial_sp
    lr_offset = tracker.lr_offset_from_initial_sp

    if fp_offset is None and lr_offset is None:
        if sp_offset_by_16 == 0:
            return NoOp()
        return OffsetSp(sp_offset_by_16=sp_offset_by_16)
    if lr_offset is None:
        return None
    lr_by_8 = _storage_offset_by_8(lr_offset)
    if lr_by_8 is None:
        return None
    if fp_offset is None:
        return OffsetSpAndRestoreLr(
            sp_offset_by_16=sp_offset_by_16,
            lr_storage_offset_from_sp_by_8=lr_by_8,
        )
    fp_by_8 = _storage_offset_by_8(fp_offset)
    if fp_by_8 is None:
        return None
    return OffsetSpAndRestoreFpAndLr(
        sp_offset_by_16=sp_offset_by_16,
        fp_storage_offset_from_sp_by_8=fp_by_8,
        lr_storage_offset_from_sp_by_8=lr_by_8,
    )