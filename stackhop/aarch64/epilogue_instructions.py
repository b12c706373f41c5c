"""Classification and simulation of single Aarch64 epilogue instructions."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Optional

_RET = 0xD65F03C0
_RETAB = 0xD65F0FFF
_AUTIBSP = 0xD50323FF
_EOR_X16_LR_LR_LSL_1 = 0xCA1E07D0
_TBZ_X16_0X3E_8 = 0xB6F00050
_BRK_0XC471 = 0xD4388E20
_EOR_TBZ_BRK = bytes(
    [0xD0, 0x07, 0x1E, 0xCA, 0x50, 0x00, 0xF0, 0xB6, 0x20, 0x8E, 0x38, 0xD4]
)
_SP = 31
_FP = 29
_LR = 30
_X16 = 16


class EpilogueInstructionKind(enum.Enum):
    """How an instruction at the instruction pointer relates to an epilogue."""

    NOT_EXPECTED_IN_EPILOGUE = enum.auto()
    COULD_BE_TAIL_CALL = enum.auto()
    COULD_BE_PART_OF_AUTH_TAIL_CALL = enum.auto()
    VERY_LIKELY_PART_OF_EPILOGUE = enum.auto()


class EpilogueStep(enum.Enum):
    """The outcome of simulating one instruction of a suspected epilogue."""

    NEED_MORE = enum.auto()
    FOUND_BODY_INSTRUCTION = enum.auto()
    FOUND_RETURN = enum.auto()
    FOUND_TAIL_CALL = enum.auto()
    COULD_BE_AUTH_TAIL_CALL = enum.auto()


def _word_at(data: bytes, offset: int) -> int:
    (word,) = struct.unpack_from("<I", bytes(data[offset : offset + 4]))
    return word


def _is_b(word: int) -> bool:
    return word >> 26 == 0b000101


def _is_mov_x16(word: int) -> bool:
    return (word >> 23) & 0b111000111 == 0b110000101 and word & 0b11111 == _X16


def _is_braa_x16(word: int) -> bool:
    return word & 0xFFFFFC00 == 0xD71F0800 and word & 0b11111 == _X16


def _is_sp_pair_load(word: int) -> bool:
    return (word >> 22) & 0b1011111001 == 0b1010100001


def _is_add_imm_64(word: int) -> bool:
    return (word >> 23) & 0b111111111 == 0b100100010


def _imm7_scaled(word: int) -> int:
    """The signed 7-bit immediate of a register pair load, scaled by 8."""
    imm7 = (word >> 15) & 0b1111111
    if imm7 & 0b1000000:
        imm7 -= 0b10000000
    return imm7 * 8


def analyze_instruction(
    word: int,
) -> tuple[EpilogueInstructionKind, Optional[int]]:
    """Classify the instruction at the instruction pointer.

    Returns the kind together with the number of bytes before this
    instruction where an ``autibsp`` would be if it were part of an
    authenticated tail call, or ``None`` where that does not apply.
    """
    if word in (_RET, _RETAB):
        return EpilogueInstructionKind.VERY_LIKELY_PART_OF_EPILOGUE, None
    auth_sequence = {
        _AUTIBSP: 0,
        _EOR_X16_LR_LR_LSL_1: 4,
        _TBZ_X16_0X3E_8: 8,
        _BRK_0XC471: 12,
    }
    if word in auth_sequence:
        return (
            EpilogueInstructionKind.COULD_BE_PART_OF_AUTH_TAIL_CALL,
            auth_sequence[word],
        )
    # `b` and `br xX`: a branch inside this function or a tail call.
    if _is_b(word) or word & 0xFFFFFC1F == 0xD61F0000:
        return EpilogueInstructionKind.COULD_BE_TAIL_CALL, 16
    if _is_mov_x16(word):
        return EpilogueInstructionKind.COULD_BE_PART_OF_AUTH_TAIL_CALL, 16
    if _is_braa_x16(word):
        return EpilogueInstructionKind.COULD_BE_PART_OF_AUTH_TAIL_CALL, 20
    if _is_sp_pair_load(word):
        writeback_bits = (word >> 23) & 0b11
        if writeback_bits == 0b00 or (word >> 5) & 0b11111 != _SP:
            return EpilogueInstructionKind.NOT_EXPECTED_IN_EPILOGUE, None
        return EpilogueInstructionKind.VERY_LIKELY_PART_OF_EPILOGUE, None
    if _is_add_imm_64(word):
        if word & 0b11111 != _SP or (word >> 5) & 0b11111 != _SP:
            return EpilogueInstructionKind.NOT_EXPECTED_IN_EPILOGUE, None
        return EpilogueInstructionKind.VERY_LIKELY_PART_OF_EPILOGUE, None
    return EpilogueInstructionKind.NOT_EXPECTED_IN_EPILOGUE, None


def instruction_adjusts_stack_pointer(word: int) -> bool:
    """Whether ``word`` is an sp-relative load with writeback or an add to sp."""
    if (word >> 22) & 0b1011111011 == 0b1010100011 and (word >> 5) & 0b11111 == _SP:
        return True
    return _is_add_imm_64(word) and word & 0b11111 == _SP and (word >> 5) & 0b11111 == _SP


def is_auth_tail_call(data_after_autibsp: bytes) -> bool:
    """Whether the bytes after an ``autibsp`` form an authenticated tail call.

    The expected sequence is ``eor x16, lr, lr, lsl #1``, ``tbz x16, 0x3e,
    $+0x8``, ``brk #0xc471``, followed either by a ``b`` or by
    ``mov x16, #imm`` and ``braa xX, x16``.
    """
    if len(data_after_autibsp) < 16:
        return False
    if bytes(data_after_autibsp[:12]) != _EOR_TBZ_BRK:
        return False
    first_tail_call_word = _word_at(data_after_autibsp, 12)
    if _is_b(first_tail_call_word):
        return True
    if len(data_after_autibsp) < 20:
        return False
    if not _is_mov_x16(first_tail_call_word):
        return False
    return _is_braa_x16(_word_at(data_after_autibsp, 16))


@dataclass
class EpilogueTracker:
    """Tracks sp adjustments and fp / lr restore locations through an epilogue.

    Offsets are in bytes, relative to the stack pointer at the start of the
    simulation.
    """

    sp_offset: int = 0
    fp_offset_from_initial_sp: Optional[int] = None
    lr_offset_from_initial_sp: Optional[int] = None

    def _record_restore(self, reg: int, location: int) -> None:
        if reg == _FP:
            self.fp_offset_from_initial_sp = location
        elif reg == _LR:
            self.lr_offset_from_initial_sp = location

    def step_instruction(self, word: int) -> EpilogueStep:
        """Simulate one instruction and report how the epilogue continues."""
        if word in (_RET, _RETAB):
            return EpilogueStep.FOUND_RETURN
        if word == _AUTIBSP:
            return EpilogueStep.COULD_BE_AUTH_TAIL_CALL
        if _is_b(word):
            # Treat a branch as a tail call only if the stack was already
            # adjusted by the preceding epilogue instructions.
            if self.sp_offset != 0:
                return EpilogueStep.FOUND_TAIL_CALL
            return EpilogueStep.FOUND_BODY_INSTRUCTION
        if _is_sp_pair_load(word):
            writeback_bits = (word >> 23) & 0b11
            if writeback_bits == 0b00 or (word >> 5) & 0b11111 != _SP:
                return EpilogueStep.FOUND_BODY_INSTRUCTION
            is_preindexed = writeback_bits == 0b11
            is_postindexed = writeback_bits == 0b01
            imm = _imm7_scaled(word)
            location = self.sp_offset if is_postindexed else self.sp_offset + imm
            self._record_restore(word & 0b11111, location)
            self._record_restore((word >> 10) & 0b11111, location + 8)
            if is_preindexed or is_postindexed:
                self.sp_offset += imm
            return EpilogueStep.NEED_MORE
        if _is_add_imm_64(word):
            if word & 0b11111 != _SP or (word >> 5) & 0b11111 != _SP:
                return EpilogueStep.FOUND_BODY_INSTRUCTION
            imm12 = (word >> 10) & 0b111111111111
            if (word >> 22) & 0b1:
                imm12 <<= 12
            self.sp_offset += imm12
            return EpilogueStep.NEED_MORE
        return EpilogueStep.FOUND_BODY_INSTRUCTION