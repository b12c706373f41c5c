"""Frame addresses, checked address arithmetic and AArch64 stack unwinding rules."""

__version__ = "0.1.0"