"""Unwind rules from Mach-O compact unwind info opcodes on Aarch64."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Union

from stackhop.aarch64.unwind_rule import (
    NoOp,
    OffsetSp,
    UnwindRuleAarch64,
    UseFramePointer,
)


class CompactUnwindError(Exception):
    """The compact unwind info cannot be used to unwind this frame."""

    class Reason(enum.Enum):
        FUNCTION_HAS_NO_INFO = "the function has no unwind info"
        CALLER_CANNOT_BE_FRAMELESS = "a caller frame cannot be frameless"
        BAD_OPCODE_KIND = "unrecognized opcode kind"

    def __init__(
        self, reason: CompactUnwindError.Reason, opcode_kind: Optional[int] = None
    ) -> None:
        message = reason.value
        if opcode_kind is not None:
            message = f"{message} {opcode_kind}"
        super().__init__(message)
        self.reason = reason
        self.opcode_kind = opcode_kind


@dataclass(frozen=True)
class OpcodeNull:
    """The function has no compact unwind info."""


@dataclass(frozen=True)
class OpcodeFrameless:
    """A frameless function that moved sp down by ``stack_size_in_bytes``."""

    stack_size_in_bytes: int

    def __post_init__(self) -> None:
        if self.stack_size_in_bytes < 0:
            raise ValueError("stack size cannot be negative")


@dataclass(frozen=True)
class OpcodeDwarf:
    """Unwinding needs the eh_frame FDE at offset ``eh_frame_fde``."""

    eh_frame_fde: int


@dataclass(frozen=True)
class OpcodeFrameBased:
    """A function that uses the frame pointer."""


@dataclass(frozen=True)
class OpcodeUnrecognized:
    """An opcode of an unknown kind."""

    kind: int


Opcode = Union[OpcodeNull, OpcodeFrameless, OpcodeDwarf, OpcodeFrameBased, OpcodeUnrecognized]


@dataclass(frozen=True)
class NeedDwarf:
    """The frame must be unwound with the eh_frame FDE at ``eh_frame_fde``."""

    eh_frame_fde: int


def rule_from_opcode(
    opcode: Opcode,
    is_first_frame: bool,
    analysis_rule: Optional[UnwindRuleAarch64] = None,
) -> UnwindRuleAarch64 | NeedDwarf:
    """Choose the unwind rule for a function described by a compact unwind opcode.

    Opcodes describe only function bodies. For the first frame the pc may be
    in a prologue or epilogue, so ``analysis_rule``, the rule found by
    instruction analysis, takes precedence there when given.
    """
    if is_first_frame:
        if isinstance(opcode, OpcodeNull):
            return NoOp()
        if analysis_rule is not None:
            return analysis_rule

    if isinstance(opcode, OpcodeNull):
        raise CompactUnwindError(CompactUnwindError.Reason.FUNCTION_HAS_NO_INFO)
    if isinstance(opcode, OpcodeFrameless):
        if not is_first_frame:
            raise CompactUnwindError(CompactUnwindError.Reason.CALLER_CANNOT_BE_FRAMELESS)
        if opcode.stack_size_in_bytes == 0:
            return NoOp()
        return OffsetSp(sp_offset_by_16=opcode.stack_size_in_bytes // 16)
    if isinstance(opcode, OpcodeDwarf):
        return NeedDwarf(opcode.eh_frame_fde)
    if isinstance(opcode, OpcodeFrameBased):
        return UseFramePointer()
    if isinstance(opcode, OpcodeUnrecognized):
        raise CompactUnwindError(CompactUnwindError.Reason.BAD_OPCODE_KIND, opcode.kind)
    raise TypeError(f"not a compact unwind opcode: {opcode!r}")


def rule_for_stub_helper(offset: int) -> UnwindRuleAarch64:
    """The rule at ``offset`` bytes into the ``__stub_helper`` section.

    The shared helper code pushes 16 bytes (``stp x16, x17, [sp, #-0x10]!``)
    at offset 0x8 and jumps away at 0x14; the stubs after 0x18 never touch sp.
    """
    if offset < 0:
        raise ValueError(f"offset {offset} cannot be negative")
    if offset < 0xC:
        return NoOp()
    if offset < 0x18:
        return OffsetSp(sp_offset_by_16=1)
    return NoOp()