"""Translation of DWARF CFI rows into cacheable Aarch64 unwind rules."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional, Union

from stackhop.aarch64.unwind_rule import (
    NoOpIfFirstFrameOtherwiseFp,
    OffsetSp,
    OffsetSpAndRestoreFpAndLr,
    OffsetSpAndRestoreLr,
    OffsetSpIfFirstFrameOtherwiseStackEndsHere,
    UnwindRuleAarch64,
    UseFramePointer,
    UseFramepointerWithOffsets,
)

# DWARF register numbers on Aarch64.
REG_X29 = 29
REG_X30 = 30
REG_SP = 31

_U16_RANGE = range(0, 1 << 16)
_I16_RANGE = range(-(1 << 15), 1 << 15)


class ConversionError(Exception):
    """A DWARF CFI row could not be expressed as a cacheable unwind rule."""

    class Reason(enum.Enum):
        CFA_IS_EXPRESSION = "the CFA is computed by a DWARF expression"
        CFA_IS_OFFSET_FROM_UNKNOWN_REGISTER = "the CFA is an offset from an unknown register"
        SP_OFFSET_DOES_NOT_FIT = "the stack pointer offset does not fit"
        REGISTER_NOT_STORED_RELATIVE_TO_CFA = "a register is not stored relative to the CFA"
        RESTORING_FP_BUT_NOT_LR = "fp is restored but lr is not"
        LR_STORAGE_OFFSET_DOES_NOT_FIT = "the lr storage offset does not fit"
        FP_STORAGE_OFFSET_DOES_NOT_FIT = "the fp storage offset does not fit"
        SP_OFFSET_FROM_FP_DOES_NOT_FIT = "the stack pointer offset from fp does not fit"
        FRAME_POINTER_RULE_DOES_NOT_RESTORE_LR = "a frame pointer based CFA does not restore lr"
        FRAME_POINTER_RULE_DOES_NOT_RESTORE_FP = "a frame pointer based CFA does not restore fp"

    def __init__(self, reason: ConversionError.Reason) -> None:
        super().__init__(reason.value)
        self.reason = reason


@dataclass(frozen=True)
class RegisterAndOffset:
    """CFA rule: the CFA is ``register + offset``."""

    register: int
    offset: int


@dataclass(frozen=True)
class CfaExpression:
    """CFA rule: the CFA is computed by a DWARF expression."""

    expression: bytes = b""


CfaRule = Union[RegisterAndOffset, CfaExpression]


class RegisterRuleKind(enum.Enum):
    """The kinds of DWARF register recovery rules."""

    UNDEFINED = enum.auto()
    SAME_VALUE = enum.auto()
    OFFSET = enum.auto()
    VAL_OFFSET = enum.auto()
    REGISTER = enum.auto()
    EXPRESSION = enum.auto()
    VAL_EXPRESSION = enum.auto()
    ARCHITECTURAL = enum.auto()


@dataclass(frozen=True)
class RegisterRule:
    """A DWARF register rule; ``value`` is the offset or register it refers to."""

    kind: RegisterRuleKind
    value: Optional[int] = None

    def __post_init__(self) -> None:
        needs_value = self.kind in (
            RegisterRuleKind.OFFSET,
            RegisterRuleKind.VAL_OFFSET,
            RegisterRuleKind.REGISTER,
        )
        if needs_value and self.value is None:
            raise ValueError(f"a {self.kind.name} rule needs a value")


def register_rule_to_cfa_offset(rule: RegisterRule) -> int | None:
    """The offset from the CFA where the register is stored, or None if unchanged."""
    if rule.kind in (RegisterRuleKind.UNDEFINED, RegisterRuleKind.SAME_VALUE):
        return None
    if rule.kind is RegisterRuleKind.OFFSET:
        return rule.value
    raise ConversionError(ConversionError.Reason.REGISTER_NOT_STORED_RELATIVE_TO_CFA)


def _trunc_div(value: int, divisor: int) -> int:
    quotient = abs(value) // divisor
    return -quotient if value < 0 else quotient


def _fit(value: int, allowed: range, reason: ConversionError.Reason) -> int:
    if value not in allowed:
        raise ConversionError(reason)
    return value


def _translate_sp_based(
    offset: int, fp_rule: RegisterRule, lr_rule: RegisterRule
) -> UnwindRuleAarch64:
    reason = ConversionError.Reason
    sp_offset_by_16 = _fit(_trunc_div(offset, 16), _U16_RANGE, reason.SP_OFFSET_DOES_NOT_FIT)
    lr_cfa_offset = register_rule_to_cfa_offset(lr_rule)
    fp_cfa_offset = register_rule_to_cfa_offset(fp_rule)

    if lr_cfa_offset is None:
        if fp_cfa_offset is not None:
            raise ConversionError(reason.RESTORING_FP_BUT_NOT_LR)
        if lr_rule.kind is RegisterRuleKind.UNDEFINED:
            # An undefined return address either marks the root of the stack or
            # was omitted from the table when "same value" was meant; the latter
            # is only acceptable for the first frame.
            return OffsetSpIfFirstFrameOtherwiseStackEndsHere(sp_offset_by_16=sp_offset_by_16)
        return OffsetSp(sp_offset_by_16=sp_offset_by_16)

    lr_by_8 = _fit(
        _trunc_div(offset + lr_cfa_offset, 8), _I16_RANGE, reason.LR_STORAGE_OFFSET_DOES_NOT_FIT
    )
    if fp_cfa_offset is None:
        return OffsetSpAndRestoreLr(
            sp_offset_by_16=sp_offset_by_16, lr_storage_offset_from_sp_by_8=lr_by_8
        )
    fp_by_8 = _fit(
        _trunc_div(offset + fp_cfa_offset, 8), _I16_RANGE, reason.FP_STORAGE_OFFSET_DOES_NOT_FIT
    )
    return OffsetSpAndRestoreFpAndLr(
        sp_offset_by_16=sp_offset_by_16,
        fp_storage_offset_from_sp_by_8=fp_by_8,
        lr_storage_offset_from_sp_by_8=lr_by_8,
    )


def _translate_fp_based(
    offset: int, fp_rule: RegisterRule, lr_rule: RegisterRule
) -> UnwindRuleAarch64:
    reason = ConversionError.Reason
    lr_cfa_offset = register_rule_to_cfa_offset(lr_rule)
    if lr_cfa_offset is None:
        raise ConversionError(reason.FRAME_POINTER_RULE_DOES_NOT_RESTORE_LR)
    fp_cfa_offset = register_rule_to_cfa_offset(fp_rule)
    if fp_cfa_offset is None:
        raise ConversionError(reason.FRAME_POINTER_RULE_DOES_NOT_RESTORE_FP)
    if offset == 16 and fp_cfa_offset == -16 and lr_cfa_offset == -8:
        return UseFramePointer()
    sp_by_8 = _fit(_trunc_div(offset, 8), _U16_RANGE, reason.SP_OFFSET_FROM_FP_DOES_NOT_FIT)
    lr_by_8 = _fit(
        _trunc_div(offset + lr_cfa_offset, 8), _I16_RANGE, reason.LR_STORAGE_OFFSET_DOES_NOT_FIT
    )
    fp_by_8 = _fit(
        _trunc_div(offset + fp_cfa_offset, 8), _I16_RANGE, reason.FP_STORAGE_OFFSET_DOES_NOT_FIT
    )
    return UseFramepointerWithOffsets(
        sp_offset_from_fp_by_8=sp_by_8,
        fp_storage_offset_from_fp_by_8=fp_by_8,
        lr_storage_offset_from_fp_by_8=lr_by_8,
    )


def translate_into_unwind_rule(
    cfa_rule: CfaRule, fp_rule: RegisterRule, lr_rule: RegisterRule
) -> UnwindRuleAarch64:
    """Express a CFI row (CFA, fp and lr rules) as a cacheable unwind rule.

    Raises ``ConversionError`` if the row cannot be expressed that way.
    """
    if isinstance(cfa_rule, CfaExpression):
        raise ConversionError(ConversionError.Reason.CFA_IS_EXPRESSION)
    if cfa_rule.register == REG_SP:
        return _translate_sp_based(cfa_rule.offset, fp_rule, lr_rule)
    if cfa_rule.register == REG_X29:
        return _translate_fp_based(cfa_rule.offset, fp_rule, lr_rule)
    raise ConversionError(ConversionError.Reason.CFA_IS_OFFSET_FROM_UNKNOWN_REGISTER)


def rule_if_uncovered_by_fde() -> UnwindRuleAarch64:
    """The rule for addresses that no FDE covers."""
    return NoOpIfFirstFrameOtherwiseFp()