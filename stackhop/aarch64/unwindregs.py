"""Registers used for unwinding on Aarch64, and pointer authentication masks."""

from __future__ import annotations

from dataclasses import dataclass

U64_MAX = (1 << 64) - 1


def _require_u64(name: str, value: int) -> int:
    if not 0 <= value <= U64_MAX:
        raise ValueError(f"{name} {value:#x} is not a 64-bit value")
    return value


@dataclass(frozen=True, order=True)
class PtrAuthMask:
    """Mask that strips pointer authentication bits from code pointers.

    Authenticated pointers keep the address in the low bits and an encrypted
    hash in the high bits; stack walkers need the raw address.
    """

    value: int

    def __post_init__(self) -> None:
        _require_u64("mask", self.value)

    @classmethod
    def new_no_strip(cls) -> PtrAuthMask:
        """A mask that keeps every bit of the pointer."""
        return cls(U64_MAX)

    @classmethod
    def new_24_40(cls) -> PtrAuthMask:
        """A mask for a 24-bit hash over a 40-bit pointer, as used by macOS arm64e."""
        return cls(U64_MAX >> 24)

    @classmethod
    def from_max_known_address(cls, address: int) -> PtrAuthMask:
        """A mask that reserves the leading zero bits of ``address`` for the hash."""
        _require_u64("address", address)
        return cls((1 << address.bit_length()) - 1)

    def strip_ptr_auth(self, ptr: int) -> int:
        """Apply the mask to ``ptr``."""
        return ptr & self.value


class UnwindRegsAarch64:
    """The lr (x30), sp and fp (x29) registers needed for unwinding on Aarch64.

    Values assigned to ``lr`` have the pointer authentication bits stripped with
    ``lr_mask``.
    """

    __slots__ = ("_lr_mask", "_lr", "_sp", "_fp")

    def __init__(self, lr: int, sp: int, fp: int) -> None:
        self._lr_mask = PtrAuthMask.new_no_strip()
        self._lr = _require_u64("lr", lr)
        self._sp = _require_u64("sp", sp)
        self._fp = _require_u64("fp", fp)

    @classmethod
    def with_ptr_auth_mask(
        cls, mask: PtrAuthMask, lr: int, sp: int, fp: int
    ) -> UnwindRegsAarch64:
        """Create registers that strip return addresses with ``mask``."""
        regs = cls(lr, sp, fp)
        regs._lr_mask = mask
        regs._lr = mask.strip_ptr_auth(lr)
        return regs

    @property
    def lr_mask(self) -> PtrAuthMask:
        """The mask applied to values of ``lr``."""
        return self._lr_mask

    @property
    def lr(self) -> int:
        return self._lr

    @lr.setter
    def lr(self, value: int) -> None:
        self._lr = self._lr_mask.strip_ptr_auth(_require_u64("lr", value))

    @property
    def sp(self) -> int:
        return self._sp

    @sp.setter
    def sp(self, value: int) -> None:
        self._sp = _require_u64("sp", value)

    @property
    def fp(self) -> int:
        return self._fp

    @fp.setter
    def fp(self, value: int) -> None:
        self._fp = _require_u64("fp", value)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, UnwindRegsAarch64):
            return NotImplemented
        return (self._lr_mask, self._lr, self._sp, self._fp) == (
            other._lr_mask,
            other._lr,
            other._sp,
            other._fp,
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return (
            f"UnwindRegsAarch64(lr={self._lr:#x}, sp={self._sp:#x}, fp={self._fp:#x})"
        )