import pytest

from stackhop.aarch64.prologue import unwind_rule_from_detected_prologue
from stackhop.aarch64.unwind_rule import NoOp, OffsetSp

PROLOGUE_1 = bytes(
    [
        0xFF, 0x43, 0x01, 0xD1, 0xF6, 0x57, 0x02, 0xA9, 0xF4, 0x4F, 0x03, 0xA9, 0xFD, 0x7B,
        0x04, 0xA9, 0xFD, 0x03, 0x01, 0x91, 0xF4, 0x03, 0x04, 0xAA, 0xF5, 0x03, 0x01, 0xAA,
    ]
)

PROLOGUE_WITH_PACIBSP = bytes(
    [
        0x08, 0x58, 0x29, 0xB8, 0xC0, 0x03, 0x5F, 0xD6, 0x7F, 0x23, 0x03, 0xD5, 0xF8, 0x5F,
        0xBC, 0xA9, 0xF6, 0x57, 0x01, 0xA9, 0xF4, 0x4F, 0x02, 0xA9, 0xFD, 0x7B, 0x03, 0xA9,
        0xFD, 0xC3, 0x00, 0x91, 0xF3, 0x03, 0x02, 0xAA, 0xF4, 0x03, 0x01, 0xAA,
    ]
)

PROLOGUE_WITH_MOV_FP_SP = bytes(
    [
        0x7F, 0x23, 0x03, 0xD5, 0xFD, 0x7B, 0xBF, 0xA9, 0xFD, 0x03, 0x00, 0x91, 0x68, 0x04,
        0x00, 0x51,
    ]
)

NO_PROLOGUE_DESPITE_STACK_STORE = bytes(
    [
        0xE8, 0x17, 0x00, 0xF9, 0x03, 0x00, 0x00, 0x14, 0xFF, 0xFF, 0x01, 0xA9, 0xFF, 0x17,
        0x00, 0xF9, 0xE0, 0x03, 0x00, 0x91,
    ]
)


def _at(data: bytes, offset: int):
    return unwind_rule_from_detected_prologue(data[:offset], data[offset:])


@pytest.mark.parametrize(
    "offset, expected",
    [
        (0, NoOp()),
        (4, OffsetSp(sp_offset_by_16=5)),
        (8, OffsetSp(sp_offset_by_16=5)),
        (12, OffsetSp(sp_offset_by_16=5)),
        (16, OffsetSp(sp_offset_by_16=5)),
        (20, None),
        (24, None),
        (28, None),
    ],
)
def test_prologue_1(offset, expected):
    assert _at(PROLOGUE_1, offset) == expected


@pytest.mark.parametrize(
    "offset, expected",
    [
        (0, None),
        (4, None),
        (8, NoOp()),
        (12, NoOp()),
        (16, OffsetSp(sp_offset_by_16=4)),
        (20, OffsetSp(sp_offset_by_16=4)),
        (24, OffsetSp(sp_offset_by_16=4)),
        (28, OffsetSp(sp_offset_by_16=4)),
        (32, None),
    ],
)
def test_prologue_with_pacibsp(offset, expected):
    assert _at(PROLOGUE_WITH_PACIBSP, offset) == expected


@pytest.mark.parametrize(
    "offset, expected",
    [
        (0, NoOp()),
        (4, NoOp()),
        (8, OffsetSp(sp_offset_by_16=1)),
        (12, None),
    ],
)
def test_prologue_with_mov_fp_sp(offset, expected):
    assert _at(PROLOGUE_WITH_MOV_FP_SP, offset) == expected


@pytest.mark.parametrize("offset", [0, 4, 8, 12, 16])
def test_no_prologue_despite_stack_store(offset):
    assert _at(NO_PROLOGUE_DESPITE_STACK_STORE, offset) is None


def test_no_next_instruction_gives_none():
    assert _at(PROLOGUE_1, len(PROLOGUE_1)) is None
    assert unwind_rule_from_detected_prologue(PROLOGUE_1[:4], PROLOGUE_1[4:7]) is None


def test_trailing_partial_word_before_pc_is_ignored():
    # A stray byte after the whole words before the pc does not change the result.
    result = unwind_rule_from_detected_prologue(PROLOGUE_1[:4] + b"\x00", PROLOGUE_1[4:])
    assert result == OffsetSp(sp_offset_by_16=5)


def test_accepts_bytearray_and_memoryview():
    data = bytearray(PROLOGUE_WITH_MOV_FP_SP)
    view = memoryview(data)
    assert unwind_rule_from_detected_prologue(view[:8], view[8:]) == OffsetSp(
        sp_offset_by_16=1
    )
    assert unwind_rule_from_detected_prologue(data[:4], data[4:]) == NoOp()