"""Detection of Aarch64 function prologues by instruction analysis.

When the instruction pointer is inside a prologue, the stack pointer may
already have been adjusted while fp and lr still hold the caller's values.
This module walks backwards from the instruction pointer to undo the stack
pointer adjustments made so far.
"""

from __future__ import annotations

import enum
import struct

from stackhop.aarch64.unwind_rule import NoOp, OffsetSp, UnwindRuleAarch64

_PACIBSP = 0xD503237F
_MOV_FP_SP = 0x910003FD
_SP = 31
_FP = 29


class _PrologueInstructionKind(enum.Enum):
    NOT_EXPECTED = enum.auto()
    COULD_BE_PART_IF_STACK_POINTER_SUB = enum.auto()
    VERY_LIKELY = enum.auto()


def _words(data: bytes) -> list[int]:
    """Decode whole little-endian 32-bit words, ignoring a trailing partial word."""
    usable = len(data) - len(data) % 4
    return [word for (word,) in struct.iter_unpack("<I", bytes(data[:usable]))]


def _imm7_scaled(word: int) -> int:
    """The signed 7-bit immediate of a register pair load/store, scaled by 8."""
    imm7 = (word >> 15) & 0b1111111
    if imm7 & 0b1000000:
        imm7 -= 0b10000000
    return imm7 * 8


def _classify(word: int) -> _PrologueInstructionKind:
    """Check whether the next instruction suggests that we are in a prologue."""
    if word in (_PACIBSP, _MOV_FP_SP):
        return _PrologueInstructionKind.VERY_LIKELY

    bits_22_to_32 = word >> 22

    # Stores of register pairs to the stack.
    if bits_22_to_32 & 0b1011111001 == 0b1010100000:
        writeback_bits = bits_22_to_32 & 0b110
        reference_reg = (word >> 5) & 0b11111
        if writeback_bits == 0b000 or reference_reg != _SP:
            return _PrologueInstructionKind.NOT_EXPECTED
        if writeback_bits == 0b100:
            # No writeback: could just as well be a store in the function body.
            return _PrologueInstructionKind.COULD_BE_PART_IF_STACK_POINTER_SUB
        return _PrologueInstructionKind.VERY_LIKELY

    # `sub sp, sp, #imm` and `add fp, sp, #imm`.
    if bits_22_to_32 & 0b1011111110 == 0b1001000100:
        result_reg = word & 0b11111
        input_reg = (word >> 5) & 0b11111
        is_sub = (word >> 30) & 0b1 == 0b1
        expected_result_reg = _SP if is_sub else _FP
        if input_reg != _SP or result_reg != expected_result_reg:
            return _PrologueInstructionKind.NOT_EXPECTED
        return _PrologueInstructionKind.VERY_LIKELY

    return _PrologueInstructionKind.NOT_EXPECTED


class _PrologueDetector:
    """Accumulates the stack pointer offset while stepping backwards."""

    def __init__(self) -> None:
        self.sp_offset = 0

    def reverse_step(self, word: int) -> bool:
        """Undo one already executed instruction; False if it is not a prologue one."""
        if word == _PACIBSP:
            return True

        if (word >> 22) & 0b1011111001 == 0b1010100000:
            writeback_bits = (word >> 23) & 0b11
            if writeback_bits == 0b00:
                return False
            if (word >> 5) & 0b11111 != _SP:
                return False
            if writeback_bits in (0b11, 0b01):
                self.sp_offset -= _imm7_scaled(word)
            return True

        if (word >> 23) & 0b111111111 == 0b110100010:
            result_reg = word & 0b11111
            input_reg = (word >> 5) & 0b11111
            if result_reg != _SP or input_reg != _SP:
                return False
            imm12 = (word >> 10) & 0b111111111111
            if (word >> 22) & 0b1:
                imm12 <<= 12
            self.sp_offset += imm12
            return True

        return False

    def analyze(self, slice_from_start: bytes, slice_to_end: bytes) -> int | None:
        """Return the stack pointer offset to undo, or None if not in a prologue.

        The function start known from unwind info may lie well before the
        actual function, so the walk goes backwards from the instruction
        pointer until an instruction not expected in a prologue is found.
        """
        if len(slice_to_end) < 4:
            return None
        (next_instruction,) = struct.unpack("<I", bytes(slice_to_end[:4]))
        kind = _classify(next_instruction)
        if kind is _PrologueInstructionKind.NOT_EXPECTED:
            return None
        for word in reversed(_words(slice_from_start)):
            if not self.reverse_step(word):
                break
        if (
            kind is _PrologueInstructionKind.COULD_BE_PART_IF_STACK_POINTER_SUB
            and self.sp_offset == 0
        ):
            return None
        return self.sp_offset


def _trunc_div(value: int, divisor: int) -> int:
    quotient = abs(value) // divisor
    return -quotient if value < 0 else quotient


def unwind_rule_from_detected_prologue(
    slice_from_start: bytes, slice_to_end: bytes
) -> UnwindRuleAarch64 | None:
    """Return an unwind rule if the instruction pointer is inside a prologue.

    ``slice_from_start`` holds the code before the instruction pointer and
    ``slice_to_end`` the code from the instruction pointer onwards.
    """
    sp_offset = _PrologueDetector().analyze(slice_from_start, slice_to_end)
    if sp_offset is None:
        return None
    sp_offset_by_16 = _trunc_div(sp_offset, 16)
    if not 0 <= sp_offset_by_16 < (1 << 16):
        return None
    if sp_offset_by_16 == 0:
        return NoOp()
    return OffsetSp(sp_offset_by_16=sp_offset_by_16)