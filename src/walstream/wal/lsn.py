"""Log sequence number helpers (``XXXXXXXX/XXXXXXXX`` <-> int)."""

from __future__ import annotations


def format_lsn(value: int) -> str:
    """Render a 64-bit LSN in PostgreSQL's ``hi/lo`` hex notation."""
    if value < 0:
        msg = f"LSN must be non-negative, got {value}"
        raise ValueError(msg)
    return f"{value >> 32:X}/{value & 0xFFFFFFFF:X}"


def parse_lsn(text: str) -> int:
    """Parse ``hi/lo`` hex notation into an integer LSN."""
    try:
        hi, lo = text.strip().split("/")
        return (int(hi, 16) << 32) | int(lo, 16)
    except ValueError as exc:
        msg = f"Invalid LSN: {text!r}"
        raise ValueError(msg) from exc
