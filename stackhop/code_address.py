"""Code addresses of stack frames."""

from __future__ import annotations

import enum
from dataclasses import dataclass

_U64_LIMIT = 1 << 64


class FrameAddressKind(enum.Enum):
    """Where a frame address came from."""

    INSTRUCTION_POINTER = "instruction_pointer"
    RETURN_ADDRESS = "return_address"


@dataclass(frozen=True)
class FrameAddress:
    """An absolute code address (AVMA) for a stack frame.

    It is either the instruction pointer, which unwinding starts with, or a
    return address, i.e. the address of the instruction after a call.
    """

    address: int
    kind: FrameAddressKind = FrameAddressKind.INSTRUCTION_POINTER

    def __post_init__(self) -> None:
        if not 0 <= self.address < _U64_LIMIT:
            raise ValueError(f"{self.address:#x} is not a 64-bit address")
        if self.kind is FrameAddressKind.RETURN_ADDRESS and self.address == 0:
            raise ValueError("a return address cannot be zero")

    @classmethod
    def from_instruction_pointer(cls, ip: int) -> FrameAddress:
        """Create an instruction pointer frame address."""
        return cls(ip, FrameAddressKind.INSTRUCTION_POINTER)

    @classmethod
    def from_return_address(cls, return_address: int) -> FrameAddress | None:
        """Create a return address frame address, or ``None`` if it is zero."""
        if return_address == 0:
            return None
        return cls(return_address, FrameAddressKind.RETURN_ADDRESS)

    def address_for_lookup(self) -> int:
        """The address to use when looking up unwind or debug information.

        For return addresses this is one byte less, so that it points inside the
        call instruction rather than at the instruction after it, which may
        belong to the next function if the call was to a noreturn function.
        """
        if self.kind is FrameAddressKind.RETURN_ADDRESS:
            return self.address - 1
        return self.address

    def is_return_address(self) -> bool:
        """Whether this address is a return address."""
        return self.kind is FrameAddressKind.RETURN_ADDRESS