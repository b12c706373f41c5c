"""AArch64 registers, unwind rules, instruction analysis and unwind info translation."""