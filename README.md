# stackhop

`stackhop` holds the building blocks of a stack unwinder for AArch64 (arm64)
code, as used by sampling profilers: given the register values of one frame and
a way to read stack memory, it computes the caller's registers and return
address.

It provides:

- `stackhop.code_address.FrameAddress`: an instruction pointer or a return
  address, with the adjusted address to use for looking up unwind or debug
  information.
- `stackhop.aarch64.unwindregs.UnwindRegsAarch64` and `PtrAuthMask`: the `lr`,
  `sp` and `fp` registers, with optional stripping of pointer-authentication
  bits from return addresses.
- `stackhop.aarch64.unwind_rule.UnwindRuleAarch64` and its variants (`NoOp`,
  `NoOpIfFirstFrameOtherwiseFp`, `OffsetSp`,
  `OffsetSpIfFirstFrameOtherwiseStackEndsHere`, `OffsetSpAndRestoreLr`,
  `OffsetSpAndRestoreFpAndLr`, `UseFramePointer`, `UseFramepointerWithOffsets`):
  small, hashable rules that describe how to step from one frame to its caller.
- Prologue and epilogue detection from raw instruction bytes, for when the
  sampled instruction pointer sits where the unwind tables are not accurate.
- Translation of already decoded DWARF CFI rows and Mach-O compact unwind
  opcodes into unwind rules.
- `stackhop.add_signed`: checked and wrapping addition of a signed offset to an
  unsigned integer of a given bit width (64 bits by default).

No third-party libraries are required.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Frame addresses

```python
from stackhop.code_address import FrameAddress

ip = FrameAddress.from_instruction_pointer(0x1000)
ret = FrameAddress.from_return_address(0x2000)

ip.address_for_lookup()    # 0x1000
ret.address_for_lookup()   # 0x1fff, points inside the call instruction
ret.is_return_address()    # True

FrameAddress.from_return_address(0)   # None: zero is never a return address
```

## Executing an unwind rule

A rule is applied to a set of registers together with a callable that reads one
64-bit value from the stack at a given address. The callable returns `None` or
raises `LookupError` when the address cannot be read. `exec` updates the
registers in place and returns the caller's return address, or `None` once the
end of the stack is reached (leaving the registers untouched).

```python
from stackhop.aarch64.unwind_rule import NoOp, UseFramePointer
from stackhop.aarch64.unwindregs import UnwindRegsAarch64

stack = [1, 2, 3, 4, 0x40, 0x100200, 5, 6, 0x70, 0x100100, 7, 8, 9, 10, 0, 0]

def read_stack(address):
    return stack[address // 8]

regs = UnwindRegsAarch64(lr=0x100300, sp=0x10, fp=0x20)

NoOp().exec(True, regs, read_stack)             # 0x100300
UseFramePointer().exec(False, regs, read_stack) # 0x100200
UseFramePointer().exec(False, regs, read_stack) # 0x100100
UseFramePointer().exec(False, regs, read_stack) # None, stack ends here
```

Failures raise a subclass of `UnwindError`: `DidNotAdvance`,
`IntegerOverflow`, `CouldNotReadStack` (with the failing `address`) or
`FramepointerUnwindingMovedBackwards`.

`rule_for_stub_functions()`, `rule_for_function_start()` and `fallback_rule()`
in the same module return the default rules for those situations.

## Pointer authentication

```python
from stackhop.aarch64.unwindregs import PtrAuthMask, UnwindRegsAarch64

mask = PtrAuthMask.from_max_known_address(0x0000aaaab54f7000)
mask.strip_ptr_auth(0xff12_aaaa_b54f_7000)   # 0x0000aaaab54f7000

regs = UnwindRegsAarch64.with_ptr_auth_mask(mask, 0x0012aaaab54f7010, 0x10, 0x20)
regs.lr   # 0x0000aaaab54f7010
```

`PtrAuthMask.new_no_strip()` keeps every bit and `PtrAuthMask.new_24_40()`
keeps the low 40 bits.

## Prologue and epilogue analysis

When the instruction pointer of the first frame is inside a prologue or an
epilogue, the unwind tables describe the function body rather than the current
state of the stack. The analysis functions look at the instruction bytes
instead:

```python
from stackhop.aarch64.instruction_analysis import (
    rule_from_epilogue_analysis,
    rule_from_prologue_analysis,
)

# ldp fp, lr, [sp, #0x40]; ldp x20, x19, [sp, #0x30]; ldp x22, x21, [sp, #0x20];
# add sp, sp, #0x50; ret
epilogue = bytes([
    0xfd, 0x7b, 0x44, 0xa9, 0xf4, 0x4f, 0x43, 0xa9, 0xf6, 0x57, 0x42, 0xa9,
    0xff, 0x43, 0x01, 0x91, 0xc0, 0x03, 0x5f, 0xd6,
])
rule_from_epilogue_analysis(epilogue, 0)
# OffsetSpAndRestoreFpAndLr(sp_offset_by_16=5,
#                           fp_storage_offset_from_sp_by_8=8,
#                           lr_storage_offset_from_sp_by_8=9)
rule_from_epilogue_analysis(epilogue, 16)   # NoOp()
```

`rule_from_prologue_analysis(text_bytes, pc_offset)` works the same way for
function prologues. Both return `None` when the instruction pointer appears to
be in the function body, and raise `ValueError` when `pc_offset` lies outside
`text_bytes`. The lower-level functions live in `stackhop.aarch64.prologue`,
`stackhop.aarch64.epilogue` and `stackhop.aarch64.epilogue_instructions`.

## DWARF and compact unwind info

`stackhop.aarch64.dwarf.translate_into_unwind_rule(cfa_rule, fp_rule, lr_rule)`
turns the CFA rule (`RegisterAndOffset` or `CfaExpression`) and the
`RegisterRule`s for `fp` and `lr` of a DWARF CFI row into an
`UnwindRuleAarch64`, raising `ConversionError` (with a `reason`) when the row
cannot be expressed as one. `rule_if_uncovered_by_fde()` gives the rule for
addresses that no FDE covers.

`stackhop.aarch64.compact_unwind.rule_from_opcode(opcode, is_first_frame,
analysis_rule)` does the same for a compact unwind opcode (`OpcodeNull`,
`OpcodeFrameless`, `OpcodeDwarf`, `OpcodeFrameBased`, `OpcodeUnrecognized`),
returning `NeedDwarf` when the opcode defers to the `eh_frame` section and
raising `CompactUnwindError` when it cannot be used. `rule_for_stub_helper`
covers the `__stub_helper` section.

## What the package does not do

`stackhop` supplies the rules and the analysis, not a complete unwinder. It
does not:

- read object files or extract their sections, or keep a list of loaded
  modules;
- parse or evaluate `eh_frame`, `debug_frame` or `__unwind_info` data itself;
  the DWARF and compact unwind helpers take rows and opcodes that have already
  been decoded;
- walk a whole stack or cache rules per address;
- support any architecture other than AArch64;
- offer a command-line tool.