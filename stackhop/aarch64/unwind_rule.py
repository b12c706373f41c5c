"""Cacheable unwind rules for Aarch64 and their execution."""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Callable, Optional

from stackhop.aarch64.unwindregs import U64_MAX, UnwindRegsAarch64
from stackhop.add_signed import checked_add_signed

ReadStack = Callable[[int], Optional[int]]

_U16_RANGE = range(0, 1 << 16)
_I16_RANGE = range(-(1 << 15), 1 << 15)


class UnwindError(Exception):
    """Base class for errors raised while unwinding a frame."""


class DidNotAdvance(UnwindError):
    """The stack pointer did not move, so unwinding would loop forever."""

    def __init__(self) -> None:
        super().__init__("unwinding did not advance the stack pointer")


class IntegerOverflow(UnwindError):
    """An address computation overflowed or underflowed 64 bits."""

    def __init__(self) -> None:
        super().__init__("integer overflow during address computation")


class CouldNotReadStack(UnwindError):
    """Stack memory at ``address`` could not be read."""

    def __init__(self, address: int) -> None:
        super().__init__(f"could not read stack memory at {address:#x}")
        self.address = address


class FramepointerUnwindingMovedBackwards(UnwindError):
    """Frame pointer unwinding produced a frame below the current one."""

    def __init__(self) -> None:
        super().__init__("frame pointer unwinding moved backwards")


def _checked_add(lhs: int, rhs: int) -> int:
    result = lhs + rhs
    if result > U64_MAX:
        raise IntegerOverflow()
    return result


def _checked_add_signed(lhs: int, rhs: int) -> int:
    result = checked_add_signed(lhs, rhs)
    if result is None:
        raise IntegerOverflow()
    return result


def _read(read_stack: ReadStack, address: int) -> int:
    """Read one 64-bit word; ``None`` or a ``LookupError`` means it is unreadable."""
    try:
        value = read_stack(address)
    except LookupError as exc:
        raise CouldNotReadStack(address) from exc
    if value is None:
        raise CouldNotReadStack(address)
    return value


# (new_lr, new_sp, new_fp), or None if the stack ends here.
_Step = Optional[tuple[int, int, int]]


@dataclass(frozen=True)
class UnwindRuleAarch64:
    """A rule that computes the caller's lr, sp and fp from the current registers."""

    def __post_init__(self) -> None:
        for field in fields(self):
            value = getattr(self, field.name)
            allowed = _U16_RANGE if field.name.startswith("sp_") else _I16_RANGE
            if value not in allowed:
                raise ValueError(f"{field.name}={value} is out of range")

    def _step(
        self, is_first_frame: bool, regs: UnwindRegsAarch64, read_stack: ReadStack
    ) -> _Step:
        raise NotImplementedError

    def exec(
        self, is_first_frame: bool, regs: UnwindRegsAarch64, read_stack: ReadStack
    ) -> int | None:
        """Apply the rule to ``regs`` and return the caller's return address.

        Returns ``None`` when the stack ends here, in which case ``regs`` is left
        untouched. ``read_stack`` maps an address to the 64-bit word stored there,
        returning ``None`` or raising ``LookupError`` if it cannot be read.
        """
        sp = regs.sp
        step = self._step(is_first_frame, regs, read_stack)
        if step is None:
            return None
        new_lr, new_sp, new_fp = step
        return_address = regs.lr_mask.strip_ptr_auth(new_lr)
        if return_address == 0:
            return None
        if not is_first_frame and new_sp == sp:
            raise DidNotAdvance()
        regs.lr = new_lr
        regs.sp = new_sp
        regs.fp = new_fp
        return return_address


def _frame_pointer_step(regs: UnwindRegsAarch64, read_stack: ReadStack) -> tuple[int, int, int]:
    fp = regs.fp
    new_sp = _checked_add(fp, 16)
    new_lr = _read(read_stack, fp + 8)
    new_fp = _read(read_stack, fp)
    return new_lr, new_sp, new_fp


@dataclass(frozen=True)
class NoOp(UnwindRuleAarch64):
    """(sp, fp, lr) = (sp, fp, lr); only valid for the first frame."""

    def _step(self, is_first_frame, regs, read_stack):
        if not is_first_frame:
            raise DidNotAdvance()
        return regs.lr, regs.sp, regs.fp


@dataclass(frozen=True)
class NoOpIfFirstFrameOtherwiseFp(UnwindRuleAarch64):
    """No-op for the first frame, frame pointer unwinding otherwise."""

    def _step(self, is_first_frame, regs, read_stack):
        if is_first_frame:
            return regs.lr, regs.sp, regs.fp
        new_lr, new_sp, new_fp = _frame_pointer_step(regs, read_stack)
        if new_sp <= regs.sp:
            raise FramepointerUnwindingMovedBackwards()
        return new_lr, new_sp, new_fp


@dataclass(frozen=True)
class OffsetSp(UnwindRuleAarch64):
    """(sp, fp, lr) = (sp + 16x, fp, lr); only valid for the first frame."""

    sp_offset_by_16: int

    def _step(self, is_first_frame, regs, read_stack):
        if not is_first_frame:
            raise DidNotAdvance()
        new_sp = _checked_add(regs.sp, self.sp_offset_by_16 * 16)
        return regs.lr, new_sp, regs.fp


@dataclass(frozen=True)
class OffsetSpIfFirstFrameOtherwiseStackEndsHere(UnwindRuleAarch64):
    """(sp, fp, lr) = (sp + 16x, fp, lr) for the first frame; the stack ends otherwise."""

    sp_offset_by_16: int

    def _step(self, is_first_frame, regs, read_stack):
        if not is_first_frame:
            return None
        new_sp = _checked_add(regs.sp, self.sp_offset_by_16 * 16)
        return regs.lr, new_sp, regs.fp


@dataclass(frozen=True)
class OffsetSpAndRestoreLr(UnwindRuleAarch64):
    """(sp, fp, lr) = (sp + 16x, fp, *(sp + 8y))."""

    sp_offset_by_16: int
    lr_storage_offset_from_sp_by_8: int

    def _step(self, is_first_frame, regs, read_stack):
        sp = regs.sp
        new_sp = _checked_add(sp, self.sp_offset_by_16 * 16)
        lr_location = _checked_add_signed(sp, self.lr_storage_offset_from_sp_by_8 * 8)
        new_lr = _read(read_stack, lr_location)
        return new_lr, new_sp, regs.fp


@dataclass(frozen=True)
class OffsetSpAndRestoreFpAndLr(UnwindRuleAarch64):
    """(sp, fp, lr) = (sp + 16x, *(sp + 8y), *(sp + 8z))."""

    sp_offset_by_16: int
    fp_storage_offset_from_sp_by_8: int
    lr_storage_offset_from_sp_by_8: int

    def _step(self, is_first_frame, regs, read_stack):
        sp = regs.sp
        new_sp = _checked_add(sp, self.sp_offset_by_16 * 16)
        lr_location = _checked_add_signed(sp, self.lr_storage_offset_from_sp_by_8 * 8)
        new_lr = _read(read_stack, lr_location)
        fp_location = _checked_add_signed(sp, self.fp_storage_offset_from_sp_by_8 * 8)
        new_fp = _read(read_stack, fp_location)
        return new_lr, new_sp, new_fp


@dataclass(frozen=True)
class UseFramePointer(UnwindRuleAarch64):
    """(sp, fp, lr) = (fp + 16, *fp, *(fp + 8)).

    Frame-based functions store the caller's fp and lr next to each other on
    the stack and point fp at the stored fp.
    """

    def _step(self, is_first_frame, regs, read_stack):
        new_lr, new_sp, new_fp = _frame_pointer_step(regs, read_stack)
        if new_fp == 0:
            return None
        if new_fp <= regs.fp or new_sp <= regs.sp:
            raise FramepointerUnwindingMovedBackwards()
        return new_lr, new_sp, new_fp


@dataclass(frozen=True)
class UseFramepointerWithOffsets(UnwindRuleAarch64):
    """(sp, fp, lr) = (fp + 8x, *(fp + 8y), *(fp + 8z))."""

    sp_offset_from_fp_by_8: int
    fp_storage_offset_from_fp_by_8: int
    lr_storage_offset_from_fp_by_8: int

    def _step(self, is_first_frame, regs, read_stack):
        fp = regs.fp
        new_sp = _checked_add(fp, self.sp_offset_from_fp_by_8 * 8)
        lr_location = _checked_add_signed(fp, self.lr_storage_offset_from_fp_by_8 * 8)
        new_lr = _read(read_stack, lr_location)
        fp_location = _checked_add_signed(fp, self.fp_storage_offset_from_fp_by_8 * 8)
        new_fp = _read(read_stack, fp_location)
        if new_fp == 0:
            return None
        if new_fp <= fp or new_sp <= regs.sp:
            raise FramepointerUnwindingMovedBackwards()
        return new_lr, new_sp, new_fp


def rule_for_stub_functions() -> UnwindRuleAarch64:
    """The rule for stub functions, which never touch the stack."""
    return NoOp()


def rule_for_function_start() -> UnwindRuleAarch64:
    """The rule for the first instruction of a function."""
    return NoOp()


def fallback_rule() -> UnwindRuleAarch64:
    """The rule to use when nothing better is known."""
    return UseFramePointer()