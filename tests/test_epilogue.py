import pytest

from stackhop.aarch64.epilogue import unwind_rule_from_detected_epilogue
from stackhop.aarch64.unwind_rule import (
    NoOp,
    OffsetSp,
    OffsetSpAndRestoreFpAndLr,
)


def test_epilogue_1():
    data = bytes(
        [
            0xFD, 0x7B, 0x44, 0xA9, 0xF4, 0x4F, 0x43, 0xA9, 0xF6, 0x57, 0x42, 0xA9,
            0xFF, 0x43, 0x01, 0x91, 0xC0, 0x03, 0x5F, 0xD6,
        ]
    )
    assert unwind_rule_from_detected_epilogue(data, 0) == OffsetSpAndRestoreFpAndLr(
        sp_offset_by_16=5,
        fp_storage_offset_from_sp_by_8=8,
        lr_storage_offset_from_sp_by_8=9,
    )
    assert unwind_rule_from_detected_epilogue(data, 4) == OffsetSp(sp_offset_by_16=5)
    assert unwind_rule_from_detected_epilogue(data, 8) == OffsetSp(sp_offset_by_16=5)
    assert unwind_rule_from_detected_epilogue(data, 12) == OffsetSp(sp_offset_by_16=5)
    assert unwind_rule_from_detected_epilogue(data, 16) == NoOp()
    assert unwind_rule_from_detected_epilogue(data, 20) is None


def test_epilogue_with_retab():
    data = bytes(
        [
            0xE0, 0x03, 0x16, 0xAA, 0xFD, 0x7B, 0x43, 0xA9, 0xF4, 0x4F, 0x42, 0xA9,
            0xF6, 0x57, 0x41, 0xA9, 0xF8, 0x5F, 0xC4, 0xA8, 0xFF, 0x0F, 0x5F, 0xD6,
            0xA0, 0x01, 0x80, 0x52, 0x20, 0x60, 0xA6, 0x72,
        ]
    )
    assert unwind_rule_from_detected_epilogue(data, 0) is None
    assert unwind_rule_from_detected_epilogue(data, 4) == OffsetSpAndRestoreFpAndLr(
        sp_offset_by_16=4,
        fp_storage_offset_from_sp_by_8=6,
        lr_storage_offset_from_sp_by_8=7,
    )
    assert unwind_rule_from_detected_epilogue(data, 8) == OffsetSp(sp_offset_by_16=4)
    assert unwind_rule_from_detected_epilogue(data, 12) == OffsetSp(sp_offset_by_16=4)
    assert unwind_rule_from_detected_epilogue(data, 16) == OffsetSp(sp_offset_by_16=4)
    assert unwind_rule_from_detected_epilogue(data, 20) == NoOp()
    assert unwind_rule_from_detected_epilogue(data, 24) is None


def test_epilogue_with_retab_2():
    data = bytes(
        [
            0x28, 0x01, 0x00, 0x79, 0xFD, 0x7B, 0xC1, 0xA8, 0xFF, 0x0F, 0x5F, 0xD6,
            0xE2, 0x03, 0x08, 0xAA, 0x38, 0x76, 0x00, 0x94,
        ]
    )
    assert unwind_rule_from_detected_epilogue(data, 0) is None
    assert unwind_rule_from_detected_epilogue(data, 4) == OffsetSpAndRestoreFpAndLr(
        sp_offset_by_16=1,
        fp_storage_offset_from_sp_by_8=0,
        lr_storage_offset_from_sp_by_8=1,
    )
    assert unwind_rule_from_detected_epilogue(data, 8) == NoOp()
    assert unwind_rule_from_detected_epilogue(data, 12) is None
    assert unwind_rule_from_detected_epilogue(data, 16) is None


def test_epilogue_with_regular_tail_call():
    data = bytes([0xFC, 0x6F, 0xC6, 0xA8, 0xBC, 0xBA, 0xFF, 0x17])
    assert unwind_rule_from_detected_epilogue(data, 0) == OffsetSp(sp_offset_by_16=6)


def test_epilogue_with_register_tail_call():
    data = bytes([0xFA, 0x67, 0xC5, 0xA8, 0x60, 0x00, 0x1F, 0xD6])
    assert unwind_rule_from_detected_epilogue(data, 4) == NoOp()


def test_epilogue_with_auth_tail_call():
    data = bytes(
        [
            0xE1, 0x03, 0x13, 0xAA, 0xFD, 0x7B, 0x42, 0xA9, 0xF4, 0x4F, 0x41, 0xA9,
            0xF6, 0x57, 0xC3, 0xA8, 0xFF, 0x23, 0x03, 0xD5, 0xD0, 0x07, 0x1E, 0xCA,
            0x50, 0x00, 0xF0, 0xB6, 0x20, 0x8E, 0x38, 0xD4, 0x13, 0x00, 0x00, 0x14,
            0xA0, 0x16, 0x78, 0xF9, 0x03, 0x3C, 0x40, 0xF9,
        ]
    )
    assert unwind_rule_from_detected_epilogue(data, 0) is None
    assert unwind_rule_from_detected_epilogue(data, 4) == OffsetSpAndRestoreFpAndLr(
        sp_offset_by_16=3,
        fp_storage_offset_from_sp_by_8=4,
        lr_storage_offset_from_sp_by_8=5,
    )
    assert unwind_rule_from_detected_epilogue(data, 8) == OffsetSp(sp_offset_by_16=3)
    assert unwind_rule_from_detected_epilogue(data, 12) == OffsetSp(sp_offset_by_16=3)
    assert unwind_rule_from_detected_epilogue(data, 16) == NoOp()
    assert unwind_rule_from_detected_epilogue(data, 20) == NoOp()
    assert unwind_rule_from_detected_epilogue(data, 24) == NoOp()
    assert unwind_rule_from_detected_epilogue(data, 28) == NoOp()


def test_epilogue_with_auth_tail_call_2():
    data = bytes(
        [
            0xE1, 0x03, 0x13, 0xAA, 0xFD, 0x7B, 0x41, 0xA9, 0xF4, 0x4F, 0xC2, 0xA8,
            0xFF, 0x23, 0x03, 0xD5, 0xD0, 0x07, 0x1E, 0xCA, 0x50, 0x00, 0xF0, 0xB6,
            0x20, 0x8E, 0x38, 0xD4, 0xF0, 0x77, 0x9C, 0xD2, 0x50, 0x08, 0x1F, 0xD7,
        ]
    )
    assert unwind_rule_from_detected_epilogue(data, 0) is None
    assert unwind_rule_from_detected_epilogue(data, 4) == OffsetSpAndRestoreFpAndLr(
        sp_offset_by_16=2,
        fp_storage_offset_from_sp_by_8=2,
        lr_storage_offset_from_sp_by_8=3,
    )
    assert unwind_rule_from_detected_epilogue(data, 8) == OffsetSp(sp_offset_by_16=2)
    assert unwind_rule_from_detected_epilogue(data, 12) == NoOp()
    assert unwind_rule_from_detected_epilogue(data, 16) == NoOp()
    assert unwind_rule_from_detected_epilogue(data, 20) == NoOp()
    assert unwind_rule_from_detected_epilogue(data, 24) == NoOp()
    assert unwind_rule_from_detected_epilogue(data, 28) == NoOp()


def test_epilogue_without_return_reaches_end():
    # ldp fp, lr, [sp, #0x40] with nothing after it.
    data = bytes([0xFD, 0x7B, 0x44, 0xA9])
    assert unwind_rule_from_detected_epilogue(data, 0) is None


def test_accepts_bytearray():
    data = bytearray([0xFC, 0x6F, 0xC6, 0xA8, 0xBC, 0xBA, 0xFF, 0x17])
    assert unwind_rule_from_detected_epilogue(data, 0) == OffsetSp(sp_offset_by_16=6)


@pytest.mark.parametrize("pc_offset", [-4, 12])
def test_pc_offset_outside_code_raises(pc_offset):
    data = bytes([0xFC, 0x6F, 0xC6, 0xA8, 0xBC, 0xBA, 0xFF, 0x17])
    with pytest.raises(ValueError):
        unwind_rule_from_detected_epilogue(data, pc_offset)