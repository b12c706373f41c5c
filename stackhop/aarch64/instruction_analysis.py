"""Unwind rules from prologue and epilogue analysis of Aarch64 code."""

from __future__ import annotations

from stackhop.aarch64.epilogue import unwind_rule_from_detected_epilogue
from stackhop.aarch64.prologue import unwind_rule_from_detected_prologue
from stackhop.aarch64.unwind_rule import UnwindRuleAarch64


def _check_offset(text_bytes: bytes, pc_offset: int) -> None:
    if not 0 <= pc_offset <= len(text_bytes):
        raise ValueError(
            f"pc offset {pc_offset} is outside of {len(text_bytes)} bytes of code"
        )


def rule_from_prologue_analysis(
    text_bytes: bytes, pc_offset: int
) -> UnwindRuleAarch64 | None:
    """Return a rule if the instruction at ``pc_offset`` is inside a prologue."""
    _check_offset(text_bytes, pc_offset)
    return unwind_rule_from_detected_prologue(
        text_bytes[:pc_offset], text_bytes[pc_offset:]
    )


def rule_from_epilogue_analysis(
    text_bytes: bytes, pc_offset: int
) -> UnwindRuleAarch64 | None:
    """Return a rule if the instruction at ``pc_offset`` is inside an epilogue."""
    _check_offset(text_bytes, pc_offset)
    return unwind_rule_from_detected_epilogue(text_bytes, pc_offset)