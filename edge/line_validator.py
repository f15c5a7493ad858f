"""
Line validation for stored records.

A line enters an upload batch only if, after trimming, it is non-empty and
every character is printable ASCII (code points 32..126). Anything else is
treated as storage corruption and dropped without retry.
"""
import logging
from typing import Optional

logger = logging.getLogger("line_validator")

PRINTABLE_MIN = 32
PRINTABLE_MAX = 126

# ASCII whitespace only, 0xA0 and other latin-1 spaces count as corruption
WHITESPACE = " \t\n\r\x0b\x0c"


def is_corrupted(line: str) -> bool:
    """True if any character falls outside the printable ASCII band."""
    return any(ord(c) < PRINTABLE_MIN or ord(c) > PRINTABLE_MAX for c in line)


def is_blank(line: str) -> bool:
    """True for empty or whitespace-only content."""
    return not line.strip(WHITESPACE)


def clean_line(raw: str) -> Optional[str]:
    """
    Trim a raw line and return it if valid, None if it must be skipped.
    """
    line = raw.strip(WHITESPACE)
    if is_blank(line):
        return None
    if is_corrupted(line):
        logger.debug(f"Dropping corrupted line: {line!r}")
        return None
    return line
